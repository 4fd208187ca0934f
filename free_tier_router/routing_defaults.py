from __future__ import annotations

DEFAULT_PROVIDER_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_APP_REFERER = "https://signal-app.com"
DEFAULT_APP_TITLE = "Signal Analogy Engine"

DEFAULT_DAILY_LIMIT = 5
DEFAULT_QUOTA_KEY_PREFIX = "signal:usage"
QUOTA_TTL_SECONDS = 86400

DEFAULT_BURST_WINDOW_SECONDS = 60.0
DEFAULT_BURST_MAX_REQUESTS = 10
DEFAULT_BURST_MAX_CLIENTS = 50000

# Cheap paid models first, free models as the last resort.
DEFAULT_FALLBACK_MODELS = [
    "google/gemini-2.5-flash-lite",
    "google/gemini-2.0-flash-lite-001",
    "meta-llama/llama-4-scout",
    "meta-llama/llama-4-scout:free",
    "openrouter/free",
]
DEFAULT_MODEL = DEFAULT_FALLBACK_MODELS[0]
DEFAULT_NO_STRUCTURED_OUTPUT_MODELS = ["openrouter/free"]

# 402: payment/quota on free models, 404: model gone, 429: rate limited.
RETRYABLE_STATUSES = frozenset({402, 404, 429, 500, 502, 503, 504})
TRANSPORT_ERROR_STATUS = 503

DEFAULT_RETRY_MAX_ATTEMPTS = 5
DEFAULT_RETRY_BASE_DELAY_SECONDS = 1.0
DEFAULT_RETRY_MAX_DELAY_SECONDS = 32.0
DEFAULT_RETRY_JITTER = 0.25
