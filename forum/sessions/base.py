"""Session persistence capability handed to the authentication layer."""

from __future__ import annotations

from typing import Any, Dict, Optional, Protocol


class SessionPersistence(Protocol):
    """Get/set/destroy session records by session id."""

    async def get(self, sid: str) -> Optional[Dict[str, Any]]:
        """Return the session data, or None if missing or expired."""
        ...

    async def set(
        self, sid: str, data: Dict[str, Any], max_age: Optional[int] = None
    ) -> None:
        """Create or replace a session, expiring after ``max_age`` seconds."""
        ...

    async def destroy(self, sid: str) -> None:
        """Delete a session. Unknown ids are ignored."""
        ...
