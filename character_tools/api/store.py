"""Session store - in-memory pipeline sessions for the HTTP API."""

import asyncio
import logging
import threading
import uuid
from dataclasses import dataclass, field

from character_tools.domain.entities.pipeline_state import PipelineState

logger = logging.getLogger(__name__)


class SessionBusyError(RuntimeError):
    """A generation is already running for this session."""


@dataclass
class Session:
    """One improvement session: the current state plus the in-flight run, if any."""

    id: str
    state: PipelineState
    cancel_event: asyncio.Event | None = None
    running: bool = field(default=False)


class SessionStore:
    """Holds sessions by id. One generation in flight per session."""

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}
        self._lock = threading.Lock()

    def create(self, state: PipelineState) -> Session:
        session = Session(id=str(uuid.uuid4()), state=state)
        with self._lock:
            self._sessions[session.id] = session
        logger.info("Created session %s", session.id)
        return session

    def get(self, session_id: str) -> Session | None:
        with self._lock:
            return self._sessions.get(session_id)

    def update(self, session_id: str, state: PipelineState) -> Session | None:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is not None:
                session.state = state
            return session

    def delete(self, session_id: str) -> bool:
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is not None and session.cancel_event is not None:
            session.cancel_event.set()
        return session is not None

    def list_ids(self) -> list[str]:
        with self._lock:
            return list(self._sessions)

    def begin_run(self, session_id: str) -> asyncio.Event:
        """Mark a run as in flight and hand out its cancel event."""
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise KeyError(session_id)
            if session.running:
                raise SessionBusyError(session_id)
            session.running = True
            session.cancel_event = asyncio.Event()
            return session.cancel_event

    def end_run(self, session_id: str) -> None:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is not None:
                session.running = False
                session.cancel_event = None

    def cancel(self, session_id: str) -> bool:
        """Signal the in-flight run to stop. False when nothing is running."""
        with self._lock:
            session = self._sessions.get(session_id)
            event = session.cancel_event if session is not None and session.running else None
        if event is None:
            return False
        event.set()
        logger.info("Cancellation requested for session %s", session_id)
        return True
