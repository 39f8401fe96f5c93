import os

# --- Configuration ---
# The database file path.
# This is a relative path by default, so it will be created in the current
# working directory. It can be overridden with the ABUSE_MONITOR_DB_PATH
# environment variable.
DATABASE_FILE = os.getenv('ABUSE_MONITOR_DB_PATH', 'abuse_stats.db')

# --- Upstream Sources ---
BLOCKLIST_URL = os.getenv('ABUSE_MONITOR_BLOCKLIST_URL', 'http://blocking.middlewaresv.xyz/api/blockedip/all')
NODE_LIST_URL = os.getenv('ABUSE_MONITOR_NODE_LIST_URL', 'https://slave.host-palace.net/portugal_cdn/get_node_list')
ASN_CSV_PATH = os.getenv('ABUSE_MONITOR_ASN_CSV', 'asn_ipv4.csv')
COUNTRY_CSV_PATH = os.getenv('ABUSE_MONITOR_COUNTRY_CSV', 'country_ipv4.csv')
# Optional GeoLite2 City database used when the country CSV has no match.
# Leave empty to disable the fallback.
GEOIP_DATABASE_PATH = os.getenv('ABUSE_MONITOR_GEOIP_DB', '')

# --- Night Window (local hours, inclusive) ---
NIGHT_WINDOW_START_HOUR = int(os.getenv('START_TIME', '2'))
NIGHT_WINDOW_END_HOUR = int(os.getenv('END_TIME', '5'))

# --- Harvesting ---
HARVEST_INTERVAL_SECONDS = 120  # One harvest cycle every 2 minutes
WARMUP_DELAY_SECONDS = 4  # First cycle shortly after startup
FETCH_CONCURRENCY = 50  # Max in-flight node log fetches per cycle
FETCH_TIMEOUT_SECONDS = 10
PROCESSING_CATEGORY = 9  # Only nodes of this category are harvested
LOG_RESOURCE_PORT = 29876
LOG_RESOURCE_TEMPLATE = 'http://{address}:{port}/redirect{ip_int}.log'
LOG_LINE_DELIMITER = '**'
NODE_LIST_TIMEOUT_SECONDS = 15

# --- Block List ---
BLOCKLIST_TTL_SECONDS = 3600  # 1 hour
BLOCKLIST_RETRY_SECONDS = 60  # Wait before retrying a failed refresh
BLOCKLIST_FETCH_TIMEOUT_SECONDS = 10
UNKNOWN_COUNTRY = 'xx'
UNKNOWN_ASN = 'Unknown'

# --- Classification Policy ---
INTERESTING_BLOCK_STATUS = 'blocked'  # One of: blocked, not_blocked, not_found
EXCLUDED_COUNTRIES = {'xx', 'ww'}
RANGE_CACHE_SIZE = 100000

# --- Data Retention ---
DETAIL_RETENTION_SECONDS = 300  # Raw per-request rows are kept for 5 minutes

# --- Database Concurrency Configuration ---
DB_THREAD_POOL_SIZE = 4
DB_CONNECTION_TIMEOUT = 30.0  # seconds
DB_MAX_RETRIES = 3  # Number of retry attempts for locked database
DB_RETRY_BASE_DELAY = 0.5  # Base delay between retries (seconds)
DB_RETRY_MAX_DELAY = 5.0  # Maximum delay between retries (seconds)

# --- Diagnostics ---
HEARTBEAT_INTERVAL_SECONDS = 300
