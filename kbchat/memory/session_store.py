"""Per-session conversation state with pluggable persistence.

Purpose of this abstraction:
    Keep every chat session (`history`, rolling `summary`, `last_active`) isolated
    by session id, enforce the inactivity timeout, and make sure one session never
    has two requests mutating it at the same time.

Persistence backends:
    - `InMemorySessionBackend`: process-local dict, the default.
    - `JsonFileSessionBackend`: one JSON file per session under a directory, written
      atomically so an interrupted process never leaves a half-written session.

Lifecycle:
    - `open(session_id)` creates a session on first use, refreshes `last_active`
      otherwise, and raises `SessionExpired` (after destroying the session) when
      the session was idle longer than the timeout.
    - `reset(session_id)` clears history and summary, under the same expiry rule.
    - `sweep()` deletes records idle past the retention window; `open` runs it at
      most once per `sweep_interval`, so abandoned sessions do not accumulate.
    - `acquire(session_id)` is an async context manager that rejects a concurrent
      request for the same session with `SessionBusy`.
"""

import json
import logging
import os
import re
import threading
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol

from kbchat.errors import SessionBusy, SessionExpired


logger = logging.getLogger(__name__)

_SAFE_ID = re.compile(r"^[A-Za-z0-9_-]{1,128}$")


def new_session_id() -> str:
    return uuid.uuid4().hex


def atomic_json_save(path, data):
    """Persist JSON data atomically via temporary file replacement."""
    tmp = path + ".tmp"
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False)
    os.replace(tmp, path)


@dataclass
class Session:
    id: str
    history: List[dict] = field(default_factory=list)
    summary: str = ""
    last_active: float = field(default_factory=time.time)
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "history": list(self.history),
            "summary": self.summary,
            "last_active": self.last_active,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Session":
        return cls(
            id=str(data["id"]),
            history=[dict(m) for m in data.get("history", [])],
            summary=str(data.get("summary", "")),
            last_active=float(data.get("last_active", time.time())),
            created_at=float(data.get("created_at", time.time())),
        )


class SessionBackend(Protocol):
    """Storage contract for session records."""

    def get(self, session_id: str) -> Optional[Session]:
        ...

    def put(self, session: Session) -> None:
        ...

    def delete(self, session_id: str) -> None:
        ...

    def ids(self) -> List[str]:
        ...


class InMemorySessionBackend:
    """Process-local session storage."""

    def __init__(self):
        self._sessions: Dict[str, dict] = {}
        self._lock = threading.Lock()

    def get(self, session_id: str) -> Optional[Session]:
        with self._lock:
            data = self._sessions.get(session_id)
        return Session.from_dict(data) if data is not None else None

    def put(self, session: Session) -> None:
        with self._lock:
            self._sessions[session.id] = session.to_dict()

    def delete(self, session_id: str) -> None:
        with self._lock:
            self._sessions.pop(session_id, None)

    def ids(self) -> List[str]:
        with self._lock:
            return list(self._sessions)


class JsonFileSessionBackend:
    """One `<session_id>.json` file per session inside `directory`."""

    def __init__(self, directory: str):
        self.directory = directory
        os.makedirs(directory, exist_ok=True)

    def _path(self, session_id: str) -> str:
        if not _SAFE_ID.match(session_id):
            raise ValueError(f"Invalid session id: {session_id!r}")
        return os.path.join(self.directory, f"{session_id}.json")

    def get(self, session_id: str) -> Optional[Session]:
        path = self._path(session_id)
        if not os.path.exists(path):
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                return Session.from_dict(json.load(f))
        except (json.JSONDecodeError, UnicodeDecodeError, KeyError):
            logger.exception("Discarding unreadable session file %s", path)
            os.remove(path)
            return None

    def put(self, session: Session) -> None:
        atomic_json_save(self._path(session.id), session.to_dict())

    def delete(self, session_id: str) -> None:
        path = self._path(session_id)
        if os.path.exists(path):
            os.remove(path)

    def ids(self) -> List[str]:
        names = (name[: -len(".json")] for name in os.listdir(self.directory) if name.endswith(".json"))
        return [name for name in names if _SAFE_ID.match(name)]


class SessionStore:
    """Session lifecycle on top of a `SessionBackend`.

    Args:
        backend: Persistence backend.
        timeout_seconds: Maximum idle time before a session is considered expired.
        clock: Time source, injectable for tests.
        retention_seconds: Idle time after which `sweep` deletes a record outright.
            Never shorter than `timeout_seconds`; set it to the cookie lifetime so a
            returning client still sees its session expire instead of vanish.
        sweep_interval: Minimum seconds between two sweeps triggered by `open`.
    """

    def __init__(
        self,
        backend: SessionBackend,
        timeout_seconds: float = 30 * 60,
        clock=time.time,
        retention_seconds: Optional[float] = None,
        sweep_interval: float = 60,
    ):
        self.backend = backend
        self.timeout_seconds = timeout_seconds
        self.clock = clock
        self.retention_seconds = max(timeout_seconds, retention_seconds or 0)
        self.sweep_interval = sweep_interval
        self._in_flight = set()
        self._last_sweep = clock()

    def is_valid_id(self, session_id: Optional[str]) -> bool:
        return bool(session_id) and bool(_SAFE_ID.match(session_id))

    def _expire_if_idle(self, session: Session, now: float) -> None:
        idle = now - session.last_active
        if idle > self.timeout_seconds:
            self.backend.delete(session.id)
            logger.info("Session %s expired after %.0fs idle", session.id, idle)
            raise SessionExpired(session.id)

    def open(self, session_id: Optional[str]) -> Session:
        """Return the live session for `session_id`, creating it when missing.

        Raises:
            SessionExpired: The session was idle longer than the timeout. It is
                destroyed, so the following call creates a fresh one.
        """
        now = self.clock()
        if not self.is_valid_id(session_id):
            session_id = new_session_id()

        if now - self._last_sweep >= self.sweep_interval:
            self.sweep(keep=session_id)

        session = self.backend.get(session_id)

        if session is None:
            session = Session(id=session_id, last_active=now, created_at=now)
            self.backend.put(session)
            logger.debug("Created session %s", session_id)
            return session

        self._expire_if_idle(session, now)

        session.last_active = now
        self.backend.put(session)
        return session

    def save(self, session: Session) -> None:
        self.backend.put(session)

    def reset(self, session_id: str) -> Optional[Session]:
        """Clear history and summary of an existing session.

        Callers serving concurrent requests hold `acquire(session_id)` around this
        call so an in-flight answer cannot write the old history back.

        Raises:
            SessionExpired: Same idle rule as `open`; the session is destroyed.
        """
        session = self.backend.get(session_id) if self.is_valid_id(session_id) else None
        if session is None:
            return None

        now = self.clock()
        self._expire_if_idle(session, now)

        session.history = []
        session.summary = ""
        session.last_active = now
        self.backend.put(session)
        return session

    def destroy(self, session_id: str) -> None:
        if self.is_valid_id(session_id):
            self.backend.delete(session_id)

    def sweep(self, keep: Optional[str] = None) -> int:
        """Delete records idle longer than `retention_seconds`.

        Sessions with a request in flight and `keep` are left alone.

        Returns:
            Number of deleted sessions.
        """
        now = self.clock()
        self._last_sweep = now
        removed = 0

        for session_id in self.backend.ids():
            if session_id == keep or session_id in self._in_flight:
                continue
            session = self.backend.get(session_id)
            if session is not None and now - session.last_active > self.retention_seconds:
                self.backend.delete(session_id)
                removed += 1

        if removed:
            logger.info("Swept %d abandoned sessions", removed)
        return removed

    def is_busy(self, session_id: str) -> bool:
        return session_id in self._in_flight

    @asynccontextmanager
    async def acquire(self, session_id: str):
        """Mark `session_id` in flight for the duration of the block.

        Raises:
            SessionBusy: Another request already holds this session.
        """
        if session_id in self._in_flight:
            raise SessionBusy(session_id)

        self._in_flight.add(session_id)
        try:
            yield
        finally:
            self._in_flight.discard(session_id)


def build_backend(kind: str, directory: str) -> SessionBackend:
    if kind == "memory":
        return InMemorySessionBackend()
    if kind == "file":
        return JsonFileSessionBackend(directory)
    raise ValueError(f"Unsupported SESSION_BACKEND: {kind}")
