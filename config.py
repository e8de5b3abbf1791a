"""
Runtime settings for the chat service.

Everything is read from the environment once at import time.
"""
import os


def _float(name: str, default: float) -> float:
    return float(os.getenv(name, default))


def _int(name: str, default: int) -> int:
    return int(os.getenv(name, default))


HOST = os.getenv("HOST", "0.0.0.0")
PORT = _int("PORT", 8000)
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

# Simulated network latency before a message is marked delivered
MESSAGE_DELIVERY_DELAY = _float("MESSAGE_DELIVERY_DELAY", 1.0)

# Typing indicator: timer clears after this many seconds,
# readers treat anything older than the stale window as gone
TYPING_CLEAR_AFTER = _float("TYPING_CLEAR_AFTER", 3.0)
TYPING_STALE_AFTER = _float("TYPING_STALE_AFTER", 5.0)

DEFAULT_PAGE_SIZE = _int("DEFAULT_PAGE_SIZE", 50)
MAX_PAGE_SIZE = _int("MAX_PAGE_SIZE", 100)

MIN_PASSWORD_LENGTH = 6
WELCOME_ROOM = {
    "name": "Welcome",
    "description": "Your first chat room",
    "avatar": "users",
    "type": "group",
}

# Client push channel
RECONNECT_BASE_DELAY = _float("RECONNECT_BASE_DELAY", 1.0)
RECONNECT_MAX_ATTEMPTS = _int("RECONNECT_MAX_ATTEMPTS", 5)
