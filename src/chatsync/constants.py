from __future__ import annotations

DEFAULT_API_BASE_URL = "http://localhost:8080"
DEFAULT_LIVE_URL = "ws://localhost:8080/ws"

# History pagination (matches the server's default page).
PAGE_SIZE = 50

# Outbound delivery: attempts per item and the pause between them.
MAX_RETRIES = 3
RETRY_COOLDOWN_S = 5.0

# Read receipts issued within this window are merged into a single request.
MARK_READ_WINDOW_S = 1.0

# Upper bound for any single remote request.
REQUEST_TIMEOUT_S = 30.0

# Live-channel inactivity thresholds used for health classification.
STALE_CONNECTION_S = 45.0
CRITICAL_CONNECTION_S = 60.0

# Analytics cache lifetimes.
CHARTS_TTL_HOURS = 2
PRIORITY_TTL_HOURS = 3

CACHE_KEY_PREFIX = "analytics_cache"
OUTBOUND_QUEUE_KEY = "outbound_queue"
