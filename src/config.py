"""
Configuration settings for the Catalog Crawler.
"""

from pathlib import Path

# =============================================================================
# PATHS (using pathlib for cross-platform compatibility)
# =============================================================================

BASE_DIR = Path(__file__).parent.parent.resolve()  # Go up one level from src/ to project root
CATEGORIES_FILE = BASE_DIR / "configs" / "categories.json"
OUTPUT_DIR = BASE_DIR / "data"

# =============================================================================
# CATALOG SETTINGS
# =============================================================================

BASE_URL = "https://eshop.tesco.com.my"
CATEGORY_URL_TEMPLATE = "{base_url}/groceries/shop/{tag}/all?page={page}&count={page_limit}"

PAGE_LIMIT = 50       # Fixed by the catalog, pages never hold more than this
BATCH_LENGTH = 50     # Categories crawled concurrently (one page in flight each)

# Used when configs/categories.json is missing
DEFAULT_CATEGORIES = [
    {"label": "Fresh Food", "tag": "fresh-food"},
    {"label": "Grocery", "tag": "grocery"},
    {"label": "Baby", "tag": "baby"},
    {"label": "Chilled & Frozen", "tag": "chilled-and-frozen"},
    {"label": "Drinks", "tag": "drinks"},
    {"label": "Health & Beauty", "tag": "health-and-beauty"},
    {"label": "Household", "tag": "household"},
    {"label": "Pets", "tag": "pets"},
    {"label": "Non-Food & Gifting", "tag": "non-food-and-gifting"},
]

# =============================================================================
# TRANSPORT SETTINGS
# =============================================================================

MAX_RETRIES = 10                 # Extra attempts per page after the first one
RETRY_DELAY = 0.5                # Base backoff in seconds (doubled every attempt)
MAX_RETRY_DELAY = 30.0           # Backoff ceiling
REQUEST_TIMEOUT = 30             # Per-fetch timeout (seconds), covers all reads
CONNECT_TIMEOUT = 10
RETRYABLE_STATUSES = frozenset({429, 500, 502, 503, 504})

# Connection pool settings
CONNECTION_LIMIT_PER_HOST = 0    # 0 = bounded only by the worker count
DNS_CACHE_TTL = 300              # DNS cache time-to-live (seconds)
KEEPALIVE_TIMEOUT = 30           # Keep connections alive

# =============================================================================
# HTTP HEADERS
# =============================================================================

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

REQUEST_HEADERS = {
    "User-Agent": USER_AGENT,
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-GB,en;q=0.9,ms;q=0.8",
    "Accept-Encoding": "gzip, deflate",
    "Connection": "keep-alive",
}

# =============================================================================
# DASHBOARD
# =============================================================================

DASHBOARD_REFRESH = 0.5          # Seconds between polled redraws
ERROR_SCROLLBACK = 12            # Error lines shown in the live view

# =============================================================================
# FILE ENCODING (Cross-platform)
# =============================================================================

FILE_ENCODING = "utf-8"
CSV_NEWLINE = ""  # Required for proper CSV handling across platforms
CSV_DELIMITER = ";"
