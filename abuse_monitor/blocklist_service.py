"""
Block List Service

Owns the active block-status range snapshot. The snapshot is refreshed from
the upstream block-range endpoint when its TTL expires and replaced with a
single reference assignment, so readers always see a complete table.

Upstream payload: [{"startip": "...", "endip": "...", "isBlocked": 1, "countryCode": "US"}, ...]
"""

import asyncio
import enum
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import aiohttp

from .config import (
    BLOCKLIST_URL,
    BLOCKLIST_TTL_SECONDS,
    BLOCKLIST_RETRY_SECONDS,
    BLOCKLIST_FETCH_TIMEOUT_SECONDS,
    RANGE_CACHE_SIZE,
    UNKNOWN_COUNTRY,
)
from .range_table import Range, RangeTable

log = logging.getLogger("AbuseMonitor.BlockList")


class BlockStatus(enum.Enum):
    BLOCKED = 'blocked'
    NOT_BLOCKED = 'not_blocked'
    NOT_FOUND = 'not_found'


@dataclass(frozen=True)
class BlockLookup:
    status: BlockStatus
    country: str


NOT_FOUND_LOOKUP = BlockLookup(BlockStatus.NOT_FOUND, UNKNOWN_COUNTRY)


def normalize_country(value: Any) -> str:
    if value is None:
        return UNKNOWN_COUNTRY
    value = str(value).strip()
    return value or UNKNOWN_COUNTRY


def _is_blocked_flag(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ('1', 'true', 'yes')
    return bool(value)


class BlockListUnavailable(RuntimeError):
    """No block-list snapshot has been loaded yet."""


def _to_unsigned(value: Any) -> int:
    """Accepts unsigned or signed 32-bit bounds; anything else is malformed."""
    value = int(value)
    if -2 ** 31 <= value < 0:
        value += 2 ** 32
    if not 0 <= value <= 0xFFFFFFFF:
        raise ValueError(f"address bound {value} outside 32-bit range")
    return value


def parse_block_ranges(payload: List[Dict[str, Any]]) -> List[Range]:
    """Converts upstream entries to ranges with unsigned 32-bit bounds."""
    ranges = []
    skipped = 0
    for entry in payload:
        try:
            start = _to_unsigned(entry['startip'])
            end = _to_unsigned(entry['endip'])
        except (KeyError, TypeError, ValueError):
            skipped += 1
            continue
        status = BlockStatus.BLOCKED if _is_blocked_flag(entry.get('isBlocked')) else BlockStatus.NOT_BLOCKED
        ranges.append(Range(start, end, BlockLookup(status, normalize_country(entry.get('countryCode')))))
    if skipped:
        log.debug(f"Skipped {skipped} malformed block-list entries.")
    return ranges


class BlockListService:
    """
    TTL-cached block list.

    On refresh failure the last good snapshot stays active indefinitely; the
    next attempt is delayed by retry_interval so a dead upstream is not hit on
    every lookup.
    """

    def __init__(self, session: aiohttp.ClientSession, url: str = BLOCKLIST_URL,
                 ttl: float = BLOCKLIST_TTL_SECONDS, retry_interval: float = BLOCKLIST_RETRY_SECONDS,
                 timeout: float = BLOCKLIST_FETCH_TIMEOUT_SECONDS, cache_size: int = RANGE_CACHE_SIZE,
                 clock=time.monotonic):
        self.session = session
        self.url = url
        self.ttl = ttl
        self.retry_interval = retry_interval
        self.timeout = timeout
        self.cache_size = cache_size
        self._clock = clock
        self._table = RangeTable(cache_size=cache_size)
        self._loaded = False
        self._last_success: Optional[float] = None
        self._last_attempt: Optional[float] = None
        self._last_error: Optional[str] = None
        self._refresh_lock = asyncio.Lock()

    @property
    def table(self) -> RangeTable:
        return self._table

    @property
    def is_loaded(self) -> bool:
        return self._loaded

    def is_stale(self) -> bool:
        now = self._clock()
        if self._last_success is None or now - self._last_success >= self.ttl:
            # Expired; only worth retrying once the retry interval has passed
            return self._last_attempt is None or now - self._last_attempt >= self.retry_interval
        return False

    async def _fetch(self) -> Optional[List[Dict[str, Any]]]:
        log.info(f"Fetching block data from {self.url}")
        try:
            async with self.session.get(self.url, timeout=aiohttp.ClientTimeout(total=self.timeout)) as resp:
                if resp.status != 200:
                    self._last_error = f"HTTP {resp.status}"
                    log.warning(f"Block list endpoint returned status {resp.status}.")
                    return None
                data = await resp.json(content_type=None)
        except asyncio.TimeoutError:
            self._last_error = "timeout"
            log.warning(f"Block list fetch timed out after {self.timeout}s.")
            return None
        except (aiohttp.ClientError, ValueError) as e:
            self._last_error = str(e)
            log.warning(f"Error fetching block data: {e}")
            return None

        if not isinstance(data, list):
            self._last_error = "unexpected payload"
            log.warning(f"Block list payload has unexpected type {type(data).__name__}.")
            return None
        return data

    async def refresh(self) -> bool:
        """Fetches the full block list and swaps in a new snapshot. Returns True on success."""
        if self._refresh_lock.locked():
            if self._loaded:
                # Another refresh is in flight; keep serving the current snapshot.
                return False
            # Nothing to serve yet; wait for the in-flight refresh instead of fetching twice.
            async with self._refresh_lock:
                return self._loaded
        async with self._refresh_lock:
            self._last_attempt = self._clock()
            data = await self._fetch()
            if data is None:
                if self._loaded:
                    log.warning(f"Block list refresh failed; continuing with stale snapshot of {len(self._table)} ranges.")
                else:
                    log.warning("Block list refresh failed and no snapshot is loaded; batches cannot be classified.")
                return False

            table = RangeTable(parse_block_ranges(data), cache_size=self.cache_size)
            self._table = table
            self._loaded = True
            self._last_success = self._clock()
            self._last_error = None
            log.info(f"Block list refreshed: {len(table)} ranges active.")
            return True

    async def ensure_fresh(self):
        if self.is_stale() or (not self._loaded and self._refresh_lock.locked()):
            await self.refresh()

    def lookup(self, ip: str) -> BlockLookup:
        """Classifies against the current snapshot without triggering a refresh."""
        value, found = self._table.lookup(ip)
        if not found:
            return NOT_FOUND_LOOKUP
        return value

    async def classify(self, ip: str) -> BlockLookup:
        await self.ensure_fresh()
        return self.lookup(ip)

    def get_state(self) -> Dict[str, Any]:
        return {
            'loaded': self._loaded,
            'ranges': len(self._table),
            'last_success': self._last_success,
            'last_error': self._last_error,
        }
