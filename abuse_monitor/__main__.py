import argparse
import asyncio
import logging
import os
import sys

# This boilerplate allows the script to be run directly (e.g., `python abuse_monitor/__main__.py`)
# by adding the project root to the Python path. This ensures that the absolute
# imports below will always resolve, regardless of the execution method.
if __package__ is None or __package__ == '':
    script_dir = os.path.dirname(os.path.abspath(__file__))
    project_root = os.path.dirname(script_dir)
    sys.path.insert(0, project_root)

from abuse_monitor import config, database, tasks
from abuse_monitor.blocklist_service import BlockListUnavailable
from abuse_monitor.state import MonitorContext

# --- Centralized Logging Configuration ---
log = logging.getLogger("AbuseMonitor")


def parse_ingest_target(value: str):
    """Splits 'NodeAddress:/path/to/log' into (node, path)."""
    node, sep, path = value.partition(':')
    if not sep or not node or not path:
        raise ValueError(f"Invalid format for --ingest-log: '{value}'. Expected 'NodeAddress:/path/to/log.log'.")
    return node, path


def build_settings(args) -> dict:
    """Collects CLI overrides; anything not given falls back to config defaults."""
    overrides = {
        'asn_csv': args.asn_csv,
        'country_csv': args.country_csv,
        'geoip_db': args.geoip_db,
        'blocklist_url': args.blocklist_url,
        'node_list_url': args.node_list_url,
        'interval': args.interval,
        'concurrency': args.concurrency,
        'fetch_timeout': args.fetch_timeout,
        'window_start': args.window_start,
        'window_end': args.window_end,
        'interesting_status': args.interesting_status,
    }
    return {key: value for key, value in overrides.items() if value is not None}


async def lookup_ip(db_path: str, settings: dict, ip: str) -> int:
    ctx = MonitorContext(db_path=db_path, settings=settings)
    await tasks.start_background_tasks(ctx, start_tasks=False)
    try:
        info = ctx.aggregator.classify_ip(ip)
        print(f"IP:           {ip}")
        print(f"Block status: {info.status.value}")
        print(f"Country:      {info.country}")
        print(f"ASN:          {info.asn}")
        asn_country = ctx.geo_catalog.lookup_asn_to_country(info.asn)
        if asn_country:
            print(f"ASN country:  {asn_country}")

        loop = asyncio.get_running_loop()
        stored = await loop.run_in_executor(ctx.db_executor, database.blocking_get_ip_stat, db_path, ip)
        if stored:
            print(f"Requests:     {stored['request_count']} (last seen {stored['last_seen']})")
        return 0
    finally:
        await tasks.cleanup_background_tasks(ctx)


async def ingest_log_file(db_path: str, settings: dict, node: str, log_path: str) -> int:
    """Reads a log file from start to finish through the same parser and aggregator as the harvester."""
    log.info(f"Starting ingestion for node '{node}' from log file '{log_path}'.")
    if not os.path.exists(log_path):
        log.critical(f"Log file not found: {log_path}")
        return 1

    with open(log_path, 'r', encoding='utf-8', errors='replace') as f:
        body = f.read()

    ctx = MonitorContext(db_path=db_path, settings=settings)
    await tasks.start_background_tasks(ctx, start_tasks=False)
    try:
        result = await ctx.harvester.process_body(node, body)
        await ctx.aggregator.prune_detail_rows()
    except BlockListUnavailable as e:
        log.critical(f"Ingestion aborted: {e}.")
        return 1
    finally:
        await tasks.cleanup_background_tasks(ctx)

    log.info(f"Ingestion complete. Lines parsed: {result.lines_parsed}, dropped: {result.lines_dropped}, "
             f"entries stored: {result.entries_retained}, IPs updated: {result.ips_upserted}.")
    return 0


def main():
    parser = argparse.ArgumentParser(
        description="Edge Abuse Monitor - harvests edge node access logs and aggregates traffic from blocked ranges",
        epilog="""
Examples:
  # Run the periodic harvester
  %(prog)s --asn-csv asn_ipv4.csv --country-csv country_ipv4.csv

  # Classify a single address and exit
  %(prog)s --lookup 203.0.113.7

  # One-time ingestion of a local log file
  %(prog)s --ingest-log "198.51.100.20:/var/log/edge/access.log"
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    mode_group = parser.add_mutually_exclusive_group()
    mode_group.add_argument('--lookup', metavar='IP',
                            help="LOOKUP MODE: Print block status, country and ASN for one IP and exit.")
    mode_group.add_argument('--ingest-log', metavar='NODE:PATH',
                            help="INGEST MODE: One-time ingestion of a log file into the database and exit.")

    parser.add_argument('--db', default=None, help=f"SQLite database path (default: {config.DATABASE_FILE}).")
    parser.add_argument('--asn-csv', help="ASN range CSV (start_ip,end_ip,asn,name,domain).")
    parser.add_argument('--country-csv', help="Country range CSV (start_ip,end_ip,country,...).")
    parser.add_argument('--geoip-db', help="Optional GeoLite2 City database used as country fallback.")
    parser.add_argument('--blocklist-url', help="Block-range endpoint URL.")
    parser.add_argument('--node-list-url', help="Node directory endpoint URL.")
    parser.add_argument('--interval', type=float, help="Seconds between harvest cycles.")
    parser.add_argument('--concurrency', type=int, help="Max concurrent node fetches.")
    parser.add_argument('--fetch-timeout', type=float, help="Per-node fetch timeout in seconds.")
    parser.add_argument('--window-start', type=int, help="First local hour of the night window (0-23).")
    parser.add_argument('--window-end', type=int, help="Last local hour of the night window (0-23).")
    parser.add_argument('--interesting-status', choices=['blocked', 'not_blocked', 'not_found'],
                        help="Block status that is recorded.")
    parser.add_argument('--debug', action='store_true', help="Enable debug logging.")

    args = parser.parse_args()

    log_level = logging.DEBUG if args.debug else logging.INFO
    logging.basicConfig(level=log_level, format='%(asctime)s [%(levelname)s] [%(name)s] %(message)s',
                        datefmt='%Y-%m-%d %H:%M:%S')

    db_path = args.db or config.DATABASE_FILE
    settings = build_settings(args)

    if args.lookup:
        sys.exit(asyncio.run(lookup_ip(db_path, settings, args.lookup)))

    if args.ingest_log:
        try:
            node, log_path = parse_ingest_target(args.ingest_log)
        except ValueError as e:
            log.critical(str(e))
            sys.exit(1)
        sys.exit(asyncio.run(ingest_log_file(db_path, settings, node, log_path)))

    try:
        asyncio.run(tasks.run_monitor(db_path, settings))
    except KeyboardInterrupt:
        log.info("Shutting down.")


if __name__ == "__main__":
    main()
