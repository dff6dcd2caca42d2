"""Session management module."""

from cachekeep.session.manager import SessionContext, SessionManager
from cachekeep.session.store import SessionKey, SessionState, SessionStore

__all__ = ["SessionContext", "SessionManager", "SessionKey", "SessionState", "SessionStore"]
