import os

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)
REDIS_DB = int(os.getenv("REDIS_DB", 0))

# Upper bound for a single persistence call
PERSISTENCE_TIMEOUT_SECONDS = float(os.getenv("PERSISTENCE_TIMEOUT_SECONDS", 5))

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", 8080))
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

# Rooms
ROOM_TTL_HOURS = float(os.getenv("ROOM_TTL_HOURS", 24))
MAX_ROOM_TTL_HOURS = float(os.getenv("MAX_ROOM_TTL_HOURS", 168))
ROOM_MAX_CAPACITY = int(os.getenv("ROOM_MAX_CAPACITY", 50))
TOKEN_GENERATION_ATTEMPTS = int(os.getenv("TOKEN_GENERATION_ATTEMPTS", 5))

# Sessions
SESSION_INACTIVE_MINUTES = int(os.getenv("SESSION_INACTIVE_MINUTES", 30))

# Rate limiting
RATE_LIMIT_MESSAGES_PER_MINUTE = int(os.getenv("RATE_LIMIT_MESSAGES_PER_MINUTE", 10))
RATE_LIMIT_ROOM_CREATE_PER_HOUR = int(os.getenv("RATE_LIMIT_ROOM_CREATE_PER_HOUR", 20))

# Messages
MAX_MESSAGE_LENGTH = int(os.getenv("MAX_MESSAGE_LENGTH", 2000))
MAX_FILE_SIZE_MB = int(os.getenv("MAX_FILE_SIZE_MB", 10))
HISTORY_PAGE_SIZE = int(os.getenv("HISTORY_PAGE_SIZE", 50))
MAX_HISTORY_PAGE_SIZE = int(os.getenv("MAX_HISTORY_PAGE_SIZE", 100))

# Scheduler
CLEANUP_INTERVAL_SECONDS = int(os.getenv("CLEANUP_INTERVAL_SECONDS", 600))
TTL_WARNING_INTERVAL_SECONDS = int(os.getenv("TTL_WARNING_INTERVAL_SECONDS", 60))
TTL_WARNING_WINDOW_SECONDS = int(os.getenv("TTL_WARNING_WINDOW_SECONDS", 300))
