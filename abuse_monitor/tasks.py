import asyncio
import datetime
import logging
import time
from typing import Any, Dict, Optional

from .config import (
    HARVEST_INTERVAL_SECONDS,
    HEARTBEAT_INTERVAL_SECONDS,
    PROCESSING_CATEGORY,
    WARMUP_DELAY_SECONDS,
)
from .state import MonitorContext

log = logging.getLogger("AbuseMonitor.Tasks")


async def run_harvest_cycle(ctx: MonitorContext, now: Optional[datetime.datetime] = None):
    """One full cycle: list nodes, gate them, harvest, prune detail rows."""
    started = time.monotonic()
    stats = ctx.stats
    stats.start_cycle(time.time())
    category = ctx.settings.get('category', PROCESSING_CATEGORY)

    nodes = await ctx.node_directory.fetch()
    stats.nodes_listed = len(nodes)
    candidates = [node for node in nodes if node.category == category]
    eligible = ctx.time_gate.filter_nodes(candidates, now)
    stats.nodes_eligible = len(eligible)
    log.info(f"[CYCLE {stats.cycles}] {len(nodes)} nodes listed, {len(candidates)} in category {category}, "
             f"{len(eligible)} inside the night window.")

    if eligible:
        results = await ctx.harvester.harvest_cycle(eligible)
        for result in results:
            stats.add_result(result)

    await ctx.aggregator.prune_detail_rows()

    stats.last_cycle_duration = time.monotonic() - started
    log.info(f"[CYCLE {stats.cycles}] Done in {stats.last_cycle_duration:.2f}s: "
             f"{stats.nodes_ok} ok, {stats.nodes_failed} failed, {stats.entries_retained} entries stored.")
    return stats


async def harvest_scheduler_task(ctx: MonitorContext):
    interval = ctx.settings.get('interval', HARVEST_INTERVAL_SECONDS)
    warmup = ctx.settings.get('warmup', WARMUP_DELAY_SECONDS)
    log.info(f"Harvest scheduler started. First cycle in {warmup}s, then every {interval}s.")
    await asyncio.sleep(warmup)

    while True:
        started = time.monotonic()
        try:
            await run_harvest_cycle(ctx)
        except asyncio.CancelledError:
            log.info("Harvest scheduler cancelled.")
            break
        except Exception:
            log.error("Error in harvest cycle:", exc_info=True)

        elapsed = time.monotonic() - started
        try:
            await asyncio.sleep(max(0.0, interval - elapsed))
        except asyncio.CancelledError:
            log.info("Harvest scheduler cancelled.")
            break


async def heartbeat_task(ctx: MonitorContext):
    interval = ctx.settings.get('heartbeat_interval', HEARTBEAT_INTERVAL_SECONDS)
    log.info("Heartbeat task started.")
    while True:
        try:
            await asyncio.sleep(interval)
            payload = ctx.stats.to_payload()
            block_state = ctx.block_list.get_state() if ctx.block_list else {}
            log.info(
                f"[HEARTBEAT] Cycles: {payload['cycles']}, Nodes: {payload['nodes']}, "
                f"Block ranges: {block_state.get('ranges', 0)}, Watermarks: {len(ctx.harvester.watermarks)}, "
                f"Totals: {payload['totals']}"
            )
        except asyncio.CancelledError:
            break
        except Exception:
            log.error("Error in heartbeat task:", exc_info=True)


async def start_background_tasks(ctx: MonitorContext, start_tasks: bool = True):
    import concurrent.futures
    import sys

    import aiohttp

    from .aggregator import ClassifierAggregator
    from .blocklist_service import BlockListService
    from .config import (
        ASN_CSV_PATH,
        BLOCKLIST_URL,
        COUNTRY_CSV_PATH,
        DB_THREAD_POOL_SIZE,
        FETCH_CONCURRENCY,
        FETCH_TIMEOUT_SECONDS,
        GEOIP_DATABASE_PATH,
        INTERESTING_BLOCK_STATUS,
        NIGHT_WINDOW_END_HOUR,
        NIGHT_WINDOW_START_HOUR,
        NODE_LIST_URL,
    )
    from .database import init_db
    from .geo_catalog import GeoAsnCatalog
    from .harvester import LogHarvester
    from .node_directory import NodeDirectory
    from .time_window import TimeWindowGate

    settings = ctx.settings
    log.info("Starting background tasks...")

    ctx.db_executor = concurrent.futures.ThreadPoolExecutor(max_workers=DB_THREAD_POOL_SIZE)
    log.info(f"Database thread pool initialized with {DB_THREAD_POOL_SIZE} workers")
    loop = asyncio.get_running_loop()
    await loop.run_in_executor(ctx.db_executor, init_db, ctx.db_path)

    try:
        ctx.geo_catalog = await loop.run_in_executor(
            ctx.db_executor,
            GeoAsnCatalog.from_files,
            settings.get('asn_csv', ASN_CSV_PATH),
            settings.get('country_csv', COUNTRY_CSV_PATH),
            settings.get('geoip_db', GEOIP_DATABASE_PATH),
        )
    except FileNotFoundError as e:
        log.critical(f"ASN/country dataset not found: {e}. Exiting.")
        ctx.db_executor.shutdown(wait=False)
        sys.exit(1)

    if ctx.session is None:
        ctx.session = aiohttp.ClientSession()

    ctx.block_list = BlockListService(ctx.session, url=settings.get('blocklist_url', BLOCKLIST_URL))
    await ctx.block_list.refresh()

    ctx.node_directory = NodeDirectory(ctx.session, url=settings.get('node_list_url', NODE_LIST_URL))
    ctx.time_gate = TimeWindowGate(settings.get('window_start', NIGHT_WINDOW_START_HOUR),
                                   settings.get('window_end', NIGHT_WINDOW_END_HOUR))
    ctx.aggregator = ClassifierAggregator(
        ctx.block_list,
        ctx.geo_catalog,
        db_path=ctx.db_path,
        db_executor=ctx.db_executor,
        db_write_lock=ctx.db_write_lock,
        interesting_status=settings.get('interesting_status', INTERESTING_BLOCK_STATUS),
    )
    ctx.harvester = LogHarvester(
        ctx.session,
        ctx.aggregator,
        concurrency=settings.get('concurrency', FETCH_CONCURRENCY),
        fetch_timeout=settings.get('fetch_timeout', FETCH_TIMEOUT_SECONDS),
    )

    if start_tasks:
        ctx.tasks.extend([
            asyncio.create_task(harvest_scheduler_task(ctx)),
            asyncio.create_task(heartbeat_task(ctx)),
        ])
        log.info(f"{len(ctx.tasks)} background tasks started.")


async def cleanup_background_tasks(ctx: MonitorContext):
    log.warning("Application cleanup started.")

    for task in ctx.tasks:
        task.cancel()
    if ctx.tasks:
        await asyncio.gather(*ctx.tasks, return_exceptions=True)
    ctx.tasks.clear()
    log.info("Asyncio background tasks cancelled.")

    if ctx.session is not None and not ctx.session.closed:
        await ctx.session.close()
        log.info("HTTP session closed.")

    if ctx.geo_catalog is not None:
        ctx.geo_catalog.close()

    if ctx.db_executor is not None:
        ctx.db_executor.shutdown(wait=True)
        ctx.db_executor = None
        log.info("db_executor shut down.")


async def run_monitor(db_path: str, settings: Dict[str, Any]):
    """Runs the harvest scheduler until cancelled (Ctrl+C)."""
    ctx = MonitorContext(db_path=db_path, settings=settings)
    await start_background_tasks(ctx)
    try:
        await asyncio.gather(*ctx.tasks)
    finally:
        await cleanup_background_tasks(ctx)
