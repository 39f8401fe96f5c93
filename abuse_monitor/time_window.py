"""
Night-time harvesting window.

A node's logs are only harvested while its country's local time falls inside
[start_hour, end_hour] (inclusive).
"""

import datetime
import logging
from typing import Iterable, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .config import NIGHT_WINDOW_START_HOUR, NIGHT_WINDOW_END_HOUR

log = logging.getLogger("AbuseMonitor.TimeWindow")


# One representative zone per country (the most populous one for multi-zone countries).
COUNTRY_TIMEZONES = {
    'AE': 'Asia/Dubai', 'AR': 'America/Argentina/Buenos_Aires', 'AT': 'Europe/Vienna',
    'AU': 'Australia/Sydney', 'BD': 'Asia/Dhaka', 'BE': 'Europe/Brussels', 'BG': 'Europe/Sofia',
    'BR': 'America/Sao_Paulo', 'CA': 'America/Toronto', 'CH': 'Europe/Zurich', 'CL': 'America/Santiago',
    'CN': 'Asia/Shanghai', 'CO': 'America/Bogota', 'CY': 'Asia/Nicosia', 'CZ': 'Europe/Prague',
    'DE': 'Europe/Berlin', 'DK': 'Europe/Copenhagen', 'EE': 'Europe/Tallinn', 'EG': 'Africa/Cairo',
    'ES': 'Europe/Madrid', 'FI': 'Europe/Helsinki', 'FR': 'Europe/Paris', 'GB': 'Europe/London',
    'GR': 'Europe/Athens', 'HK': 'Asia/Hong_Kong', 'HR': 'Europe/Zagreb', 'HU': 'Europe/Budapest',
    'ID': 'Asia/Jakarta', 'IE': 'Europe/Dublin', 'IL': 'Asia/Jerusalem', 'IN': 'Asia/Kolkata',
    'IR': 'Asia/Tehran', 'IS': 'Atlantic/Reykjavik', 'IT': 'Europe/Rome', 'JP': 'Asia/Tokyo',
    'KE': 'Africa/Nairobi', 'KR': 'Asia/Seoul', 'KZ': 'Asia/Almaty', 'LT': 'Europe/Vilnius',
    'LU': 'Europe/Luxembourg', 'LV': 'Europe/Riga', 'MA': 'Africa/Casablanca', 'MD': 'Europe/Chisinau',
    'MX': 'America/Mexico_City', 'MY': 'Asia/Kuala_Lumpur', 'NG': 'Africa/Lagos', 'NL': 'Europe/Amsterdam',
    'NO': 'Europe/Oslo', 'NZ': 'Pacific/Auckland', 'PE': 'America/Lima', 'PH': 'Asia/Manila',
    'PK': 'Asia/Karachi', 'PL': 'Europe/Warsaw', 'PT': 'Europe/Lisbon', 'RO': 'Europe/Bucharest',
    'RS': 'Europe/Belgrade', 'RU': 'Europe/Moscow', 'SA': 'Asia/Riyadh', 'SE': 'Europe/Stockholm',
    'SG': 'Asia/Singapore', 'SI': 'Europe/Ljubljana', 'SK': 'Europe/Bratislava', 'TH': 'Asia/Bangkok',
    'TR': 'Europe/Istanbul', 'TW': 'Asia/Taipei', 'UA': 'Europe/Kiev', 'US': 'America/New_York',
    'VN': 'Asia/Ho_Chi_Minh', 'ZA': 'Africa/Johannesburg',
}


def local_hour(country_code: str, now: datetime.datetime) -> Optional[int]:
    """Hour of day in the country's timezone, or None if the country has no known zone."""
    zone_name = COUNTRY_TIMEZONES.get((country_code or '').upper())
    if zone_name is None:
        return None
    try:
        zone = ZoneInfo(zone_name)
    except ZoneInfoNotFoundError:
        log.error(f"Timezone '{zone_name}' for country '{country_code}' is not available on this system.")
        return None
    if now.tzinfo is None:
        now = now.replace(tzinfo=datetime.timezone.utc)
    return now.astimezone(zone).hour


class TimeWindowGate:
    def __init__(self, start_hour: int = NIGHT_WINDOW_START_HOUR, end_hour: int = NIGHT_WINDOW_END_HOUR):
        if not (0 <= start_hour <= 23 and 0 <= end_hour <= 23):
            raise ValueError(f"Window hours must be within 0-23, got {start_hour}-{end_hour}")
        self.start_hour = start_hour
        self.end_hour = end_hour

    def hour_in_window(self, hour: int) -> bool:
        if self.start_hour <= self.end_hour:
            return self.start_hour <= hour <= self.end_hour
        # Window wraps past midnight, e.g. 22-4
        return hour >= self.start_hour or hour <= self.end_hour

    def is_eligible(self, country_code: str, now: Optional[datetime.datetime] = None) -> bool:
        now = now or datetime.datetime.now(datetime.timezone.utc)
        hour = local_hour(country_code, now)
        if hour is None:
            log.info(f"No timezone known for country '{country_code}'; node skipped this cycle.")
            return False
        return self.hour_in_window(hour)

    def filter_nodes(self, nodes: Iterable, now: Optional[datetime.datetime] = None) -> List:
        now = now or datetime.datetime.now(datetime.timezone.utc)
        return [node for node in nodes if self.is_eligible(node.country, now)]
