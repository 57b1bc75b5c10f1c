"""
Active-session registry.

Owned by one CallSessionManager instance. There is deliberately no
module-level session map.
"""

from __future__ import annotations

from typing import Iterator, Optional

from errors import SessionAlreadyActive, SessionNotFound
from session.call_session import CallSession


class SessionRegistry:
    """Sessions keyed by ID; holds non-terminal sessions only."""

    def __init__(self) -> None:
        self._sessions: dict[str, CallSession] = {}

    def add(self, session: CallSession) -> None:
        """
        Raises:
            SessionAlreadyActive if the ID is taken.
        """
        if session.session_id in self._sessions:
            raise SessionAlreadyActive(f"session {session.session_id!r} is already active")
        self._sessions[session.session_id] = session

    def remove(self, session_id: str) -> Optional[CallSession]:
        return self._sessions.pop(session_id, None)

    def get(self, session_id: str) -> Optional[CallSession]:
        return self._sessions.get(session_id)

    def require(self, session_id: str) -> CallSession:
        """
        Raises:
            SessionNotFound
        """
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(f"no active session {session_id!r}")
        return session

    def active_ids(self) -> list[str]:
        return list(self._sessions)

    def __len__(self) -> int:
        return len(self._sessions)

    def __iter__(self) -> Iterator[CallSession]:
        return iter(list(self._sessions.values()))

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions
