"""
IP Range Tables

Sorted, non-overlapping IPv4 ranges searched by binary search, fronted by a
direct-mapped lookup cache. Used for the block list and the ASN / country
datasets.
"""

import bisect
import ipaddress
import logging
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional, Tuple

from .config import RANGE_CACHE_SIZE

log = logging.getLogger("AbuseMonitor.RangeTable")


def ip_to_int(ip: str) -> int:
    """Packs a dotted-quad IPv4 address into an unsigned 32-bit integer (big-endian)."""
    return int(ipaddress.IPv4Address(ip.strip()))


def int_to_ip(value: int) -> str:
    return str(ipaddress.IPv4Address(value))


@dataclass(frozen=True)
class Range:
    start: int
    end: int
    value: Any

    def contains(self, ip_int: int) -> bool:
        return self.start <= ip_int <= self.end


class RangeTable:
    """
    A snapshot of sorted IP ranges.

    The cache holds, per slot (ip_int % cache_size), the last range that
    answered a lookup for that slot. Entries are always checked against their
    own bounds before being returned, so concurrent overwrites or collisions
    only cost a binary search.
    """

    def __init__(self, ranges: Optional[Iterable[Range]] = None, cache_size: int = RANGE_CACHE_SIZE):
        self.cache_size = cache_size
        self._ranges: List[Range] = []
        self._starts: List[int] = []
        self._cache: List[Optional[Range]] = [None] * cache_size
        self.cache_hits = 0
        self.cache_misses = 0
        if ranges is not None:
            self.load(ranges)

    def __len__(self):
        return len(self._ranges)

    def __iter__(self):
        return iter(self._ranges)

    def load(self, ranges: Iterable[Range]):
        """Sorts the ranges by start address and replaces the table contents."""
        valid = []
        inverted = 0
        for r in ranges:
            if r.start > r.end:
                inverted += 1
                continue
            valid.append(r)
        if inverted:
            log.warning(f"Dropped {inverted} ranges with start > end.")

        valid.sort(key=lambda r: r.start)

        overlaps = sum(1 for prev, cur in zip(valid, valid[1:]) if cur.start <= prev.end)
        if overlaps:
            log.warning(f"Range table has {overlaps} overlapping ranges; lookups in those spans are undefined.")

        self._ranges = valid
        self._starts = [r.start for r in valid]
        self._cache = [None] * self.cache_size

    def find(self, ip_int: int) -> Optional[Range]:
        slot = ip_int % self.cache_size
        cached = self._cache[slot]
        if cached is not None and cached.contains(ip_int):
            self.cache_hits += 1
            return cached

        self.cache_misses += 1
        idx = bisect.bisect_right(self._starts, ip_int) - 1
        if idx < 0:
            return None
        candidate = self._ranges[idx]
        if ip_int <= candidate.end:
            self._cache[slot] = candidate
            return candidate
        return None

    def classify(self, ip_int: int) -> Tuple[Any, bool]:
        """Returns (value, found) for an integer address."""
        found = self.find(ip_int)
        if found is None:
            return None, False
        return found.value, True

    def lookup(self, ip: str) -> Tuple[Any, bool]:
        """Like classify() but takes a dotted-quad string; unparseable addresses are not found."""
        try:
            ip_int = ip_to_int(ip)
        except ValueError:
            return None, False
        return self.classify(ip_int)
