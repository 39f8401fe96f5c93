import datetime
import logging
import sqlite3
import time
from typing import Any, Dict, List, Optional, Sequence

from .config import (DATABASE_FILE, DB_CONNECTION_TIMEOUT, DB_MAX_RETRIES, DB_RETRY_BASE_DELAY,
                     DB_RETRY_MAX_DELAY)
from .db_utils import db_connection, get_optimized_connection, retry_on_db_lock

log = logging.getLogger("AbuseMonitor.Database")


def _resolve(db_path: Optional[str]) -> str:
    return db_path or DATABASE_FILE


def init_db(db_path: Optional[str] = None):
    db_path = _resolve(db_path)
    log.info(f"Connecting to database '{db_path}' and checking schema...")
    conn = get_optimized_connection(db_path, timeout=DB_CONNECTION_TIMEOUT)
    try:
        cursor = conn.cursor()
        cursor.execute('PRAGMA journal_mode;')
        mode = cursor.fetchone()
        if mode and mode[0].lower() == 'wal':
            log.info("Database journal mode is set to WAL.")
        else:
            log.warning(f"Failed to set database journal mode to WAL. Current mode: {mode[0] if mode else 'unknown'}")

        # --- Per-IP counters ---
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS ip_stats (
                ip TEXT PRIMARY KEY,
                country_code TEXT NOT NULL,
                asn TEXT NOT NULL,
                block_status TEXT NOT NULL,
                is_blocked INTEGER NOT NULL DEFAULT 0,
                request_count INTEGER NOT NULL DEFAULT 0,
                first_seen INTEGER NOT NULL,
                last_seen INTEGER NOT NULL
            )
        ''')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_ip_stats_country ON ip_stats (country_code);')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_ip_stats_asn ON ip_stats (asn);')

        # --- Rollups, rebuilt from ip_stats after every batch ---
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS country_stats (
                country_code TEXT PRIMARY KEY,
                total_ips INTEGER NOT NULL DEFAULT 0,
                total_requests INTEGER NOT NULL DEFAULT 0,
                last_updated TEXT
            )
        ''')
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS asn_stats (
                asn TEXT NOT NULL,
                country_code TEXT NOT NULL,
                total_ips INTEGER NOT NULL DEFAULT 0,
                total_requests INTEGER NOT NULL DEFAULT 0,
                last_updated TEXT,
                PRIMARY KEY (asn, country_code)
            )
        ''')

        # --- Raw request detail, pruned by age ---
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS log_entries (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                node_address TEXT,
                ip TEXT NOT NULL,
                timestamp INTEGER NOT NULL,
                domain TEXT,
                request_method TEXT,
                request_path TEXT,
                status_code INTEGER,
                response_time_ms INTEGER,
                user_agent TEXT
            )
        ''')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_log_entries_ip ON log_entries (ip);')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_log_entries_timestamp ON log_entries (timestamp);')
        conn.commit()
    finally:
        conn.close()
    log.info("Database schema is valid and ready.")


def _recompute_rollups(conn: sqlite3.Connection, interesting_status: str):
    now_iso = datetime.datetime.now(datetime.timezone.utc).isoformat()
    conn.execute('DELETE FROM country_stats')
    conn.execute('''
        INSERT INTO country_stats (country_code, total_ips, total_requests, last_updated)
        SELECT country_code, COUNT(*), SUM(request_count), ?
        FROM ip_stats WHERE block_status = ?
        GROUP BY country_code
    ''', (now_iso, interesting_status))
    conn.execute('DELETE FROM asn_stats')
    conn.execute('''
        INSERT INTO asn_stats (asn, country_code, total_ips, total_requests, last_updated)
        SELECT asn, country_code, COUNT(*), SUM(request_count), ?
        FROM ip_stats WHERE block_status = ?
        GROUP BY asn, country_code
    ''', (now_iso, interesting_status))


@retry_on_db_lock(max_attempts=DB_MAX_RETRIES, base_delay=DB_RETRY_BASE_DELAY, max_delay=DB_RETRY_MAX_DELAY)
def blocking_apply_batch(db_path: str, detail_rows: Sequence[tuple], ip_updates: List[Dict[str, Any]],
                         interesting_status: str) -> int:
    """
    Writes one node batch in a single transaction:
    detail rows, per-IP upserts and the full country/ASN rollup.

    detail_rows: (node_address, ip, timestamp, domain, method, path, status_code, response_time_ms, user_agent)
    ip_updates: dicts with ip, country_code, asn, block_status, is_blocked, request_count, last_seen

    Raises on failure; nothing is committed in that case.
    """
    if not ip_updates and not detail_rows:
        return 0

    with db_connection(_resolve(db_path), timeout=DB_CONNECTION_TIMEOUT) as conn:
        if detail_rows:
            conn.executemany('''
                INSERT INTO log_entries
                (node_address, ip, timestamp, domain, request_method, request_path, status_code, response_time_ms, user_agent)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ''', detail_rows)

        # Country/ASN/block snapshot is taken on first sight only; later batches just add counts.
        conn.executemany('''
            INSERT INTO ip_stats (ip, country_code, asn, block_status, is_blocked, request_count, first_seen, last_seen)
            VALUES (:ip, :country_code, :asn, :block_status, :is_blocked, :request_count, :last_seen, :last_seen)
            ON CONFLICT(ip) DO UPDATE SET
                request_count = request_count + excluded.request_count,
                last_seen = MAX(last_seen, excluded.last_seen)
        ''', ip_updates)

        _recompute_rollups(conn, interesting_status)

    log.info(f"Wrote batch: {len(detail_rows)} detail rows, {len(ip_updates)} IP upserts.")
    return len(ip_updates)


@retry_on_db_lock(max_attempts=DB_MAX_RETRIES, base_delay=DB_RETRY_BASE_DELAY, max_delay=DB_RETRY_MAX_DELAY)
def blocking_prune_detail_rows(db_path: str, retention_seconds: int, now: Optional[float] = None) -> int:
    """Deletes raw log_entries rows older than the retention window. Aggregates are untouched."""
    cutoff = int((now if now is not None else time.time()) - retention_seconds)
    with db_connection(_resolve(db_path), timeout=DB_CONNECTION_TIMEOUT) as conn:
        deleted = conn.execute('DELETE FROM log_entries WHERE timestamp < ?', (cutoff,)).rowcount
    if deleted:
        log.info(f"[PRUNER] Removed {deleted} detail rows older than {retention_seconds}s.")
    return deleted


# --- Read helpers for reporting ---

def _fetch_dicts(db_path: str, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
    with db_connection(_resolve(db_path), timeout=DB_CONNECTION_TIMEOUT) as conn:
        conn.row_factory = sqlite3.Row
        return [dict(row) for row in conn.execute(query, params).fetchall()]


def blocking_get_ip_stat(db_path: str, ip: str) -> Optional[Dict[str, Any]]:
    rows = _fetch_dicts(db_path, 'SELECT * FROM ip_stats WHERE ip = ?', (ip,))
    return rows[0] if rows else None


def blocking_get_country_stats(db_path: str, limit: int = 50) -> List[Dict[str, Any]]:
    return _fetch_dicts(db_path, '''
        SELECT country_code, total_ips, total_requests, last_updated
        FROM country_stats ORDER BY total_ips DESC, country_code LIMIT ?
    ''', (limit,))


def blocking_get_asn_stats(db_path: str, limit: int = 50) -> List[Dict[str, Any]]:
    return _fetch_dicts(db_path, '''
        SELECT asn, country_code, total_ips, total_requests, last_updated
        FROM asn_stats ORDER BY total_ips DESC, asn LIMIT ?
    ''', (limit,))


def blocking_get_ips_by_country(db_path: str, country_code: str) -> List[Dict[str, Any]]:
    return _fetch_dicts(db_path, '''
        SELECT ip, country_code, asn, request_count, block_status, last_seen
        FROM ip_stats WHERE country_code = ? ORDER BY request_count DESC
    ''', (country_code,))


def blocking_get_ips_by_asn(db_path: str, asn: str) -> List[Dict[str, Any]]:
    return _fetch_dicts(db_path, '''
        SELECT ip, country_code, asn, request_count, block_status, last_seen
        FROM ip_stats WHERE asn = ? ORDER BY request_count DESC
    ''', (asn,))


def blocking_get_recent_requests(db_path: str, ip: str, limit: int = 100) -> List[Dict[str, Any]]:
    return _fetch_dicts(db_path, '''
        SELECT ip, timestamp, domain, request_method, request_path, status_code, response_time_ms, user_agent
        FROM log_entries WHERE ip = ? ORDER BY timestamp DESC LIMIT ?
    ''', (ip, limit))


def blocking_count_ips(db_path: str, block_status: str) -> int:
    rows = _fetch_dicts(db_path, 'SELECT COUNT(*) AS total FROM ip_stats WHERE block_status = ?', (block_status,))
    return rows[0]['total'] if rows else 0
