"""
DeskPilot - In-memory session store.

Each session owns an ordered, append-only message log and its scoped tool
resources. Messages are immutable once stored; there is no edit or clear.
"""

import logging
import time
import uuid
from typing import Optional, Union

from .models import Message, Role, Session
from .tools import SessionResources

logger = logging.getLogger("deskpilot.sessions")


class SessionStore:
    """Holds sessions for the lifetime of the process."""

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}
        self._clock = 0.0

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def _tick(self) -> float:
        # Strictly increasing, so timestamps also encode insertion order.
        self._clock = max(time.time(), self._clock + 1e-6)
        return self._clock

    def create_session(self, session_id: Optional[str] = None) -> Session:
        session_id = session_id or str(uuid.uuid4())
        if session_id in self._sessions:
            raise ValueError(f"Session already exists: {session_id}")
        now = self._tick()
        session = Session(
            id=session_id,
            created_at=now,
            updated_at=now,
            resources=SessionResources(session_id),
        )
        self._sessions[session_id] = session
        logger.debug("Created session %s", session_id)
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def get_or_create(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            session = self.create_session(session_id)
        return session

    def list_sessions(self) -> list[Session]:
        """All sessions, most recently updated first."""
        return sorted(self._sessions.values(), key=lambda s: s.updated_at, reverse=True)

    async def delete_session(self, session_id: str) -> bool:
        """Remove a session and release its resources."""
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        if session.resources is not None:
            await session.resources.aclose()
        logger.debug("Deleted session %s", session_id)
        return True

    async def release_resources(self, session_id: str) -> None:
        """Release a session's tool resources but keep its log.

        The session gets a fresh resource scope, so a later message can
        acquire new resources.
        """
        session = self._sessions.get(session_id)
        if session is None or session.resources is None:
            return
        resources = session.resources
        session.resources = SessionResources(session_id)
        await resources.aclose()

    def add_message(self, session_id: str, role: Union[Role, str], content: str) -> Message:
        session = self._sessions.get(session_id)
        if session is None:
            raise KeyError(f"Unknown session: {session_id}")
        message = Message(role=Role(role), content=content, timestamp=self._tick())
        session.messages.append(message)
        session.updated_at = message.timestamp
        return message

    def get_messages(self, session_id: str, limit: Optional[int] = None) -> list[Message]:
        """Return the session log, or only its last ``limit`` messages."""
        session = self._sessions.get(session_id)
        if session is None:
            return []
        if limit is None:
            return list(session.messages)
        if limit <= 0:
            return []
        return session.messages[-limit:]
