import asyncio
import concurrent.futures
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .harvester import STATUS_EMPTY, STATUS_NO_NEW, STATUS_OK


@dataclass
class CycleStats:
    """Counters for one harvest cycle, plus running totals across cycles."""
    cycles: int = 0
    nodes_listed: int = 0
    nodes_eligible: int = 0
    nodes_ok: int = 0
    nodes_empty: int = 0
    nodes_no_new: int = 0
    nodes_failed: int = 0
    lines_parsed: int = 0
    lines_dropped: int = 0
    entries_new: int = 0
    entries_retained: int = 0
    ips_upserted: int = 0
    last_cycle_started: Optional[float] = None
    last_cycle_duration: Optional[float] = None

    # Running totals
    total_entries_retained: int = 0
    total_ips_upserted: int = 0
    total_failed_fetches: int = 0

    def start_cycle(self, started_at: float):
        self.cycles += 1
        self.last_cycle_started = started_at
        self.nodes_listed = self.nodes_eligible = 0
        self.nodes_ok = self.nodes_empty = self.nodes_no_new = self.nodes_failed = 0
        self.lines_parsed = self.lines_dropped = 0
        self.entries_new = self.entries_retained = self.ips_upserted = 0

    def add_result(self, result):
        """Folds a NodeHarvestResult into the cycle counters."""
        self.lines_parsed += result.lines_parsed
        self.lines_dropped += result.lines_dropped
        self.entries_new += result.entries_new
        self.entries_retained += result.entries_retained
        self.ips_upserted += result.ips_upserted
        self.total_entries_retained += result.entries_retained
        self.total_ips_upserted += result.ips_upserted
        if result.status == STATUS_OK:
            self.nodes_ok += 1
        elif result.status == STATUS_EMPTY:
            self.nodes_empty += 1
        elif result.status == STATUS_NO_NEW:
            self.nodes_no_new += 1
        else:
            self.nodes_failed += 1
            self.total_failed_fetches += 1

    def to_payload(self) -> Dict[str, Any]:
        return {
            'cycles': self.cycles,
            'nodes': {'listed': self.nodes_listed, 'eligible': self.nodes_eligible, 'ok': self.nodes_ok,
                      'empty': self.nodes_empty, 'no_new': self.nodes_no_new, 'failed': self.nodes_failed},
            'lines': {'parsed': self.lines_parsed, 'dropped': self.lines_dropped},
            'entries': {'new': self.entries_new, 'retained': self.entries_retained},
            'ips_upserted': self.ips_upserted,
            'last_cycle_duration': self.last_cycle_duration,
            'totals': {'entries_retained': self.total_entries_retained,
                       'ips_upserted': self.total_ips_upserted,
                       'failed_fetches': self.total_failed_fetches},
        }


@dataclass
class MonitorContext:
    """
    Long-lived components and shared resources of a running monitor.

    Built once by tasks.start_background_tasks() and passed explicitly to every
    task; nothing here lives at module level.
    """
    db_path: str
    session: Any = None  # aiohttp.ClientSession
    db_executor: Optional[concurrent.futures.ThreadPoolExecutor] = None
    db_write_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    geo_catalog: Any = None
    block_list: Any = None
    node_directory: Any = None
    time_gate: Any = None
    aggregator: Any = None
    harvester: Any = None
    stats: CycleStats = field(default_factory=CycleStats)
    tasks: List[asyncio.Task] = field(default_factory=list)
    settings: Dict[str, Any] = field(default_factory=dict)
