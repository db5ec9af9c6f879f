"""Session store, health monitoring and validation."""

from .health_monitor import SessionHealthMonitor
from .invalidation import DebouncedInvalidator
from .session_store import SessionStore, parse_session_key, session_key
from .validation import SessionValidator

__all__ = [
    "DebouncedInvalidator",
    "SessionHealthMonitor",
    "SessionStore",
    "SessionValidator",
    "parse_session_key",
    "session_key",
]
