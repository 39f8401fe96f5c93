"""
Log Harvester

Pulls the access log from every eligible edge node once per cycle with
bounded concurrency, keeps only lines newer than the node's watermark and
hands them to the aggregator. A node that fails (timeout, HTTP error, store
error) never affects the others.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

import aiohttp

from .config import (
    FETCH_CONCURRENCY,
    FETCH_TIMEOUT_SECONDS,
    LOG_LINE_DELIMITER,
    LOG_RESOURCE_PORT,
    LOG_RESOURCE_TEMPLATE,
)
from .blocklist_service import BlockListUnavailable
from .log_processor import parse_log_body
from .range_table import ip_to_int

log = logging.getLogger("AbuseMonitor.Harvester")

STATUS_OK = 'ok'
STATUS_EMPTY = 'empty'
STATUS_NO_NEW = 'no_new'
STATUS_FAILED = 'failed'


@dataclass
class NodeHarvestResult:
    address: str
    status: str
    lines_parsed: int = 0
    lines_dropped: int = 0
    entries_new: int = 0
    entries_retained: int = 0
    ips_upserted: int = 0
    error: Optional[str] = None


class LogHarvester:
    def __init__(self, session: aiohttp.ClientSession, aggregator, concurrency: int = FETCH_CONCURRENCY,
                 fetch_timeout: float = FETCH_TIMEOUT_SECONDS, port: int = LOG_RESOURCE_PORT,
                 delimiter: str = LOG_LINE_DELIMITER, url_template: str = LOG_RESOURCE_TEMPLATE):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.session = session
        self.aggregator = aggregator
        self.concurrency = concurrency
        self.fetch_timeout = fetch_timeout
        self.port = port
        self.delimiter = delimiter
        self.url_template = url_template
        # Newest log timestamp already handed to the aggregator, per node address
        self.watermarks: Dict[str, int] = {}

    def log_url(self, address: str) -> str:
        return self.url_template.format(address=address, port=self.port, ip_int=ip_to_int(address))

    def get_watermark(self, address: str) -> int:
        return self.watermarks.get(address, 0)

    async def fetch_log(self, address: str) -> Optional[str]:
        """Returns the log body, or None if the node could not be read."""
        url = self.log_url(address)
        try:
            async with self.session.get(url, timeout=aiohttp.ClientTimeout(total=self.fetch_timeout)) as resp:
                if resp.status != 200:
                    log.warning(f"[{address}] Log fetch returned status {resp.status}.")
                    return None
                return await resp.text(errors='replace')
        except asyncio.TimeoutError:
            log.warning(f"[{address}] Log fetch timed out after {self.fetch_timeout}s.")
            return None
        except aiohttp.ClientError as e:
            log.warning(f"[{address}] Log fetch failed: {e}")
            return None

    async def process_body(self, address: str, body: str) -> NodeHarvestResult:
        """
        Parses a log body, forwards entries newer than the watermark and then
        advances the watermark. Aggregator errors propagate and leave the
        watermark where it was, so the same lines are retried next cycle.
        """
        if not body or not body.strip():
            return NodeHarvestResult(address, STATUS_EMPTY)

        entries, dropped = parse_log_body(body, self.delimiter)
        if dropped:
            log.debug(f"[{address}] Dropped {dropped} malformed lines.")

        watermark = self.get_watermark(address)
        new_entries = [e for e in entries if e.timestamp > watermark]
        result = NodeHarvestResult(address, STATUS_NO_NEW, lines_parsed=len(entries), lines_dropped=dropped,
                                   entries_new=len(new_entries))
        if not new_entries:
            return result

        batch = await self.aggregator.process(new_entries, node_address=address)
        self.watermarks[address] = max(watermark, max(e.timestamp for e in new_entries))

        result.status = STATUS_OK
        result.entries_retained = batch.entries_retained
        result.ips_upserted = batch.unique_ips
        return result

    async def harvest_node(self, node, semaphore: asyncio.Semaphore) -> NodeHarvestResult:
        address = node.address
        try:
            async with semaphore:
                body = await self.fetch_log(address)
            if body is None:
                return NodeHarvestResult(address, STATUS_FAILED, error="fetch failed")
            return await self.process_body(address, body)
        except BlockListUnavailable as e:
            log.warning(f"[{address}] {e}; watermark kept at {self.get_watermark(address)}.")
            return NodeHarvestResult(address, STATUS_FAILED, error=str(e))
        except Exception as e:
            log.error(f"[{address}] Harvest failed; watermark kept at {self.get_watermark(address)}.", exc_info=True)
            return NodeHarvestResult(address, STATUS_FAILED, error=str(e))

    async def harvest_cycle(self, nodes: Iterable) -> List[NodeHarvestResult]:
        """Harvests every node once; duplicate addresses are fetched only once."""
        unique = {}
        for node in nodes:
            unique.setdefault(node.address, node)
        if not unique:
            return []

        semaphore = asyncio.Semaphore(self.concurrency)
        results = await asyncio.gather(*(self.harvest_node(node, semaphore) for node in unique.values()))

        failed = sum(1 for r in results if r.status == STATUS_FAILED)
        log.info(f"Harvest cycle finished: {len(results)} nodes, {failed} failed.")
        return list(results)
