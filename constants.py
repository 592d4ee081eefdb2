import os

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)
REDIS_DB = int(os.getenv("REDIS_DB", 0))

# Presence TTLs (seconds)
PEER_TTL_SECONDS = int(os.getenv("PEER_TTL_SECONDS", 3600))
ROOM_TTL_SECONDS = int(os.getenv("ROOM_TTL_SECONDS", 3600))

# Independent windows, none derived from another
PENDING_REQUEST_TTL_SECONDS = int(os.getenv("PENDING_REQUEST_TTL_SECONDS", 300))
GRACE_PERIOD_SECONDS = float(os.getenv("GRACE_PERIOD_SECONDS", 300))
STALE_PEER_SECONDS = float(os.getenv("STALE_PEER_SECONDS", 300))
REAPER_INTERVAL_SECONDS = float(os.getenv("REAPER_INTERVAL_SECONDS", 900))

# Sessions that send no heartbeat for this long are closed
LIVENESS_TIMEOUT_SECONDS = float(os.getenv("LIVENESS_TIMEOUT_SECONDS", 180))

FALLBACK_OUTBOX_LIMIT = int(os.getenv("FALLBACK_OUTBOX_LIMIT", 500))

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

SERVICE_NAME = "ShareDrop Signaling"
SERVICE_VERSION = "1.0.0"
