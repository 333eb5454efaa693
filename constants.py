import os
import string

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)

REDIS_URL = os.getenv(
    "REDIS_URL",
    f"redis://:{REDIS_PASSWORD}@{REDIS_HOST}:{REDIS_PORT}" if REDIS_PASSWORD else f"redis://{REDIS_HOST}:{REDIS_PORT}",
)

# "redis" or "memory"
ROOM_BACKEND = os.getenv("ROOM_BACKEND", "redis")
# "redis", "memory" or "none"
STATS_BACKEND = os.getenv("STATS_BACKEND", "redis")

ROOM_TTL_SECONDS = int(os.getenv("ROOM_TTL_SECONDS", 60 * 60 * 12))

ROOM_CODE_LENGTH = int(os.getenv("ROOM_CODE_LENGTH", 4))
ROOM_CODE_ALPHABET = os.getenv("ROOM_CODE_ALPHABET", string.ascii_uppercase)
ROOM_CODE_MAX_ATTEMPTS = int(os.getenv("ROOM_CODE_MAX_ATTEMPTS", 20))

MIN_PLAYERS = int(os.getenv("MIN_PLAYERS", 1))
END_STARTS_NEXT_ROUND = os.getenv("END_STARTS_NEXT_ROUND", "true").lower() in ("1", "true", "yes")

PUBSUB_POLL_SECONDS = float(os.getenv("PUBSUB_POLL_SECONDS", 1.0))
