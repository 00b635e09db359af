"""
Cache Engine Constants

Centralized defaults shared by configuration, services and tests.
"""

# Entry store
DEFAULT_CAPACITY = 10_000
MAX_KEY_LENGTH = 250
MAX_TAG_LENGTH = 100

# Expiration
DEFAULT_TTL_SECONDS = None  # None = entries never expire unless a TTL is given
MAX_TTL_SECONDS = 86400 * 365  # 1 year
DEFAULT_REFRESH_THRESHOLD_FRACTION = 0.1

# Backing store
DEFAULT_BACKING_STORE_TIMEOUT = 5.0

# Write-behind
DEFAULT_FLUSH_INTERVAL = 1.0
DEFAULT_FLUSH_BATCH_SIZE = 100
DEFAULT_MAX_FLUSH_RETRIES = 3
DEFAULT_RETRY_BASE_DELAY = 0.5
DEFAULT_RETRY_MAX_DELAY = 30.0
DEFAULT_RETRY_MULTIPLIER = 2.0

# Metrics
MAX_RECORDED_FAILURES = 1000
METRICS_NAMESPACE = "cache_engine"
