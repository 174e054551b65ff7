"""Static configuration for needmatch.

All operator-editable settings (matching breadth, throttle, judge, delivery)
live in a single JSON file for quick edits without touching Python. Set
NEEDMATCH_CONFIG to point at a different file.
"""

import json
import os

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))

CONFIG_PATH = os.getenv("NEEDMATCH_CONFIG") or os.path.join(PROJECT_ROOT, "config.json")


def _load_json_config() -> dict:
    if not os.path.exists(CONFIG_PATH):
        raise FileNotFoundError(f"Config file not found: {CONFIG_PATH}")

    with open(CONFIG_PATH, "r", encoding="utf-8") as handle:
        return json.load(handle)


def _resolve_path(path: str) -> str:
    return path if os.path.isabs(path) else os.path.join(PROJECT_ROOT, path)


_CONFIG = _load_json_config()

# Expose the raw config for modules that need structured access.
CONFIG = _CONFIG

DB_PATH = _resolve_path(_CONFIG.get("storage", {}).get("db_path", "needmatch.db"))

# Retrieval breadth and fan-out.
# - RADIUS_KM: only applied when both sides have coordinates; null disables it
# - VERIFICATION_TTL_DAYS: verified items older than this rank as unverified
_matching = _CONFIG.get("matching", {})
TOP_K = int(_matching.get("top_k", 50))
MAX_FANOUT_PER_ITEM = int(_matching.get("max_fanout_per_item", 5))
MIN_SIMILARITY = float(_matching.get("min_similarity", 0.0))
RADIUS_KM = _matching.get("radius_km")
VERIFICATION_TTL_DAYS = _matching.get("verification_ttl_days", 90)
EXCLUDE_CLOSED_CAPACITY = bool(_matching.get("exclude_closed_capacity", True))
MAX_CONCURRENT_ITEMS = int(_matching.get("max_concurrent_items", 4))

# Per-recipient notification cap over a fixed window.
_throttle = _CONFIG.get("throttle", {})
NOTIFICATION_CAP_PER_WINDOW = int(_throttle.get("notification_cap_per_window", 3))
WINDOW_HOURS = float(_throttle.get("window_hours", 24 * 7))

# Relevance judge. JUDGE_MODEL is any pydantic-ai model string; "similarity"
# uses the offline similarity thresholds instead of a reasoning service.
_judge = _CONFIG.get("judge", {})
JUDGE_FAILURE_MODE = _judge.get("failure_mode", "fail_closed")
JUDGE_BIAS_MODE = _judge.get("bias_mode", "generous")
JUDGE_TIMEOUT_SECONDS = float(_judge.get("timeout_seconds", 10))
JUDGE_MAX_CONCURRENCY = int(_judge.get("max_concurrency", 4))
JUDGE_BATCH_SIZE = int(_judge.get("batch_size", 8))
JUDGE_MODEL = _judge.get("model", "similarity")

_embeddings = _CONFIG.get("embeddings", {})
EMBEDDING_MODEL = _embeddings.get("model", "text-embedding-3-small")
EMBEDDING_MODEL_VERSION = _embeddings.get("embedding_model_version", EMBEDDING_MODEL)
EMBEDDING_DIMENSION = _embeddings.get("dimension")
EMBEDDING_BATCH_SIZE = int(_embeddings.get("batch_size", 16))
EMBEDDING_BASE_URL = _embeddings.get("base_url", "https://api.openai.com/v1")

# Delivery method switches adapters without changing core logic.
_delivery = _CONFIG.get("delivery", {})
DELIVERY_METHOD = _delivery.get("method", "expo")
DELIVERY_MAX_ATTEMPTS = int(_delivery.get("max_attempts", 3))
DELIVERY_BACKOFF_SECONDS = float(_delivery.get("backoff_seconds", 0.5))
DELIVERY_MAX_BACKOFF_SECONDS = float(_delivery.get("max_backoff_seconds", 4.0))
DELIVERY_MAX_CONCURRENCY = int(_delivery.get("max_concurrency", 5))
SNIPPET_CHARS = int(_delivery.get("snippet_chars", 200))

# Catch-up scan settings for startup backfill.
_catch_up = _CONFIG.get("catch_up", {})
CATCH_UP_ENABLED = bool(_catch_up.get("enabled", True))
CATCH_UP_LIMIT = int(_catch_up.get("limit", 0))

# Logging configuration (optional).
LOGGING = _CONFIG.get("logging", {})
