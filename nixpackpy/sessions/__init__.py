from nixpackpy.sessions.manager import (
    Session,
    SessionManager,
    SessionState,
    content_hash,
    sandbox_name,
)

__all__ = [
    "Session",
    "SessionManager",
    "SessionState",
    "content_hash",
    "sandbox_name",
]
