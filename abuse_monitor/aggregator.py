"""
Classification and aggregation of harvested log entries.

Each batch is classified per distinct IP, filtered by policy, collapsed to one
counter update per IP and written to the store as a single transaction
together with the country/ASN rollups.
"""

import asyncio
import functools
import logging
from collections import Counter
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Union

from .blocklist_service import BlockListService, BlockListUnavailable, BlockStatus
from .config import (
    DATABASE_FILE,
    DETAIL_RETENTION_SECONDS,
    EXCLUDED_COUNTRIES,
    INTERESTING_BLOCK_STATUS,
    UNKNOWN_ASN,
    UNKNOWN_COUNTRY,
)
from .database import blocking_apply_batch, blocking_prune_detail_rows
from .geo_catalog import GeoAsnCatalog
from .log_processor import LogEntry

log = logging.getLogger("AbuseMonitor.Aggregator")


@dataclass(frozen=True)
class IpClassification:
    ip: str
    status: BlockStatus
    country: str
    asn: str


@dataclass(frozen=True)
class BatchResult:
    entries_seen: int = 0
    entries_retained: int = 0
    unique_ips: int = 0


class ClassifierAggregator:
    def __init__(self, block_list: BlockListService, geo_catalog: GeoAsnCatalog, db_path: str = DATABASE_FILE,
                 db_executor=None, db_write_lock: Optional[asyncio.Lock] = None,
                 interesting_status: Union[BlockStatus, str] = INTERESTING_BLOCK_STATUS,
                 excluded_countries: Iterable[str] = EXCLUDED_COUNTRIES,
                 retention_seconds: int = DETAIL_RETENTION_SECONDS):
        self.block_list = block_list
        self.geo_catalog = geo_catalog
        self.db_path = db_path
        self.db_executor = db_executor
        self.db_write_lock = db_write_lock or asyncio.Lock()
        self.interesting_status = BlockStatus(interesting_status)
        self.excluded_countries = {c.lower() for c in excluded_countries}
        self.retention_seconds = retention_seconds

    async def _run_blocking(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self.db_executor, functools.partial(func, *args))

    def classify_ip(self, ip: str) -> IpClassification:
        block = self.block_list.lookup(ip)
        country = block.country
        if not country or country.lower() == UNKNOWN_COUNTRY:
            country = self.geo_catalog.lookup_country(ip) or UNKNOWN_COUNTRY
        asn = self.geo_catalog.lookup_asn(ip) or UNKNOWN_ASN
        return IpClassification(ip=ip, status=block.status, country=country, asn=asn)

    def is_interesting(self, classification: IpClassification) -> bool:
        return (classification.status == self.interesting_status
                and classification.country.lower() not in self.excluded_countries)

    def filter_entries(self, entries: Sequence[LogEntry]):
        """Returns (retained entries in original order, classification per retained IP)."""
        classifications = {}
        retained = []
        for entry in entries:
            info = classifications.get(entry.source_ip)
            if info is None:
                info = self.classify_ip(entry.source_ip)
                classifications[entry.source_ip] = info
            if self.is_interesting(info):
                retained.append(entry)
        return retained, classifications

    def build_updates(self, retained: Sequence[LogEntry], classifications) -> List[dict]:
        counts = Counter(entry.source_ip for entry in retained)
        last_seen = {}
        for entry in retained:
            if entry.timestamp > last_seen.get(entry.source_ip, 0):
                last_seen[entry.source_ip] = entry.timestamp

        updates = []
        for ip, count in counts.items():
            info = classifications[ip]
            updates.append({
                'ip': ip,
                'country_code': info.country,
                'asn': info.asn,
                'block_status': info.status.value,
                'is_blocked': 1 if info.status == BlockStatus.BLOCKED else 0,
                'request_count': count,
                'last_seen': last_seen[ip],
            })
        return updates

    async def process(self, entries: Sequence[LogEntry], node_address: str = '') -> BatchResult:
        """
        Classifies, filters, deduplicates and stores one batch.

        Store errors propagate to the caller so the batch can be retried, and
        BlockListUnavailable is raised while no block-list snapshot exists.
        """
        if not entries:
            return BatchResult()

        await self.block_list.ensure_fresh()
        if not self.block_list.is_loaded:
            raise BlockListUnavailable("no block-list snapshot loaded; batch not classified")
        retained, classifications = self.filter_entries(entries)
        if not retained:
            log.debug(f"[{node_address}] None of {len(entries)} entries passed the policy filter.")
            return BatchResult(entries_seen=len(entries))

        updates = self.build_updates(retained, classifications)
        detail_rows = [
            (node_address, e.source_ip, e.timestamp, e.domain, e.method, e.path, e.status_code,
             e.response_time_ms, e.user_agent)
            for e in retained
        ]

        async with self.db_write_lock:
            await self._run_blocking(
                blocking_apply_batch, self.db_path, detail_rows, updates, self.interesting_status.value)

        log.info(f"[{node_address}] Stored {len(retained)} of {len(entries)} entries from {len(updates)} IPs.")
        return BatchResult(entries_seen=len(entries), entries_retained=len(retained), unique_ips=len(updates))

    async def prune_detail_rows(self, now: Optional[float] = None) -> int:
        async with self.db_write_lock:
            return await self._run_blocking(
                blocking_prune_detail_rows, self.db_path, self.retention_seconds, now)
