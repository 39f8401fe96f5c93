import calendar
import datetime
import logging
import math
import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

from .config import LOG_LINE_DELIMITER

log = logging.getLogger("AbuseMonitor.LogProcessor")


MONTHS = {name: idx for idx, name in enumerate(
    ('Jan', 'Feb', 'Mar', 'Apr', 'May', 'Jun', 'Jul', 'Aug', 'Sep', 'Oct', 'Nov', 'Dec'))}

TIMESTAMP_RE = re.compile(
    r'^(\d{1,2})/([A-Za-z]{3})/(\d{4}):(\d{2}):(\d{2}):(\d{2})\s+([+-])(\d{2})(\d{2})$')

MIN_FIELDS = 6


@dataclass(frozen=True)
class LogEntry:
    source_ip: str
    timestamp: int  # epoch seconds, UTC
    domain: str
    method: str
    path: str
    status_code: int
    response_time_ms: int
    user_agent: str = ''


def parse_timestamp(timestamp_str: str) -> Optional[int]:
    """
    Parses 'DD/Mon/YYYY:HH:MM:SS +ZZZZ' into epoch seconds (UTC).

    A +HHMM offset means the wall clock is ahead of UTC, so
    UTC = wall clock - offset. Returns None for anything unparseable.
    """
    if not isinstance(timestamp_str, str):
        return None
    match = TIMESTAMP_RE.match(timestamp_str.strip())
    if not match:
        return None
    day, month_name, year, hour, minute, second, sign, off_h, off_m = match.groups()
    month_idx = MONTHS.get(month_name.capitalize())
    if month_idx is None:
        return None
    try:
        wall_clock = datetime.datetime(int(year), month_idx + 1, int(day), int(hour), int(minute), int(second))
    except ValueError:
        return None

    off_h, off_m = int(off_h), int(off_m)
    if off_m >= 60 or off_h > 23:
        return None
    offset_seconds = off_h * 3600 + off_m * 60
    if sign == '-':
        offset_seconds = -offset_seconds
    return calendar.timegm(wall_clock.timetuple()) - offset_seconds


def parse_log_line(line: str, delimiter: str = LOG_LINE_DELIMITER) -> Optional[LogEntry]:
    """
    Parses a single access-log line:

        ip**[10/Jan/2024:03:00:00 +0200]**domain**GET /path**200**0.123**user agent

    Returns None for malformed lines; never raises for bad input.
    """
    if not isinstance(line, str):
        return None
    parts = line.rstrip('\r\n').split(delimiter)
    if len(parts) < MIN_FIELDS:
        return None

    source_ip = parts[0].strip()
    if not source_ip:
        return None

    raw_ts = parts[1].strip()
    if not (raw_ts.startswith('[') and raw_ts.endswith(']')):
        return None
    timestamp = parse_timestamp(raw_ts[1:-1])
    if timestamp is None:
        return None

    method, _, path = parts[3].strip().partition(' ')

    try:
        status_code = int(parts[4].strip())
        response_seconds = float(parts[5].strip())
    except ValueError:
        return None
    if not math.isfinite(response_seconds) or response_seconds < 0:
        return None

    # The user agent is free text and may itself contain the delimiter.
    user_agent = delimiter.join(parts[6:]) if len(parts) > 6 else ''

    return LogEntry(
        source_ip=source_ip,
        timestamp=timestamp,
        domain=parts[2].strip(),
        method=method,
        path=path,
        status_code=status_code,
        response_time_ms=int(round(response_seconds * 1000)),
        user_agent=user_agent,
    )


def parse_log_lines(lines: Iterable[str], delimiter: str = LOG_LINE_DELIMITER) -> Tuple[List[LogEntry], int]:
    """Parses lines in order, returning (entries, dropped_count). Blank lines are not counted as dropped."""
    entries = []
    dropped = 0
    for line in lines:
        if not line.strip():
            continue
        entry = parse_log_line(line, delimiter)
        if entry is None:
            dropped += 1
            continue
        entries.append(entry)
    return entries, dropped


def parse_log_body(body: str, delimiter: str = LOG_LINE_DELIMITER) -> Tuple[List[LogEntry], int]:
    return parse_log_lines(body.splitlines(), delimiter)
