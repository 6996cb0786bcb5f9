"""Principal lookup and login session collaborators.

The authorization server does not authenticate users itself. An external
login UI establishes a session (identified by a cookie) and the server only
asks two questions: who is behind this session, and what claims does this
subject carry. The in-memory implementations here back development and tests.
"""

from __future__ import annotations

import json
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, Optional, Protocol

from contruum.logging import get_logger
from contruum.storage.models import Principal

logger = get_logger(__name__)


class PrincipalDirectory(Protocol):
    def find(self, subject: str) -> Optional[Principal]:
        ...


class SessionResolver(Protocol):
    def resolve(self, session_id: Optional[str]) -> Optional[Principal]:
        ...

    def end(self, session_id: Optional[str]) -> Optional[str]:
        ...


class StaticPrincipalDirectory:
    """Principals loaded from configuration, keyed by subject."""

    def __init__(self, principals: Iterable[Principal] = ()) -> None:
        self._principals: Dict[str, Principal] = {}
        self._lock = threading.Lock()
        for principal in principals:
            self.add(principal)

    @classmethod
    def from_file(cls, path: str) -> "StaticPrincipalDirectory":
        """Load ``[{"subject": ..., "claims": {...}}, ...]`` from a JSON file."""
        raw = json.loads(Path(path).read_text())
        if not isinstance(raw, list):
            raise ValueError("users file must contain a JSON list")
        principals = []
        for entry in raw:
            subject = entry.get("subject") or entry.get("sub")
            if not subject:
                raise ValueError("user entry requires a subject")
            principals.append(Principal(subject=str(subject), claims=dict(entry.get("claims") or {})))
        logger.info("principals_loaded", path=path, count=len(principals))
        return cls(principals)

    def add(self, principal: Principal) -> None:
        with self._lock:
            self._principals[principal.subject] = principal

    def find(self, subject: str) -> Optional[Principal]:
        with self._lock:
            return self._principals.get(subject)


@dataclass
class _LoginSession:
    subject: str
    authenticated_at: datetime


class InMemorySessionResolver:
    """Session ids issued by the login UI, mapped to the subject that signed in."""

    def __init__(self, directory: PrincipalDirectory) -> None:
        self.directory = directory
        self._sessions: Dict[str, _LoginSession] = {}
        self._lock = threading.Lock()

    def open(self, subject: str, *, authenticated_at: Optional[datetime] = None) -> str:
        session_id = secrets.token_urlsafe(32)
        with self._lock:
            self._sessions[session_id] = _LoginSession(
                subject=subject,
                authenticated_at=authenticated_at or datetime.now(timezone.utc),
            )
        return session_id

    def resolve(self, session_id: Optional[str]) -> Optional[Principal]:
        if not session_id:
            return None
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            return None
        principal = self.directory.find(session.subject)
        if principal is None:
            logger.warning("session_subject_unknown", subject=session.subject)
            return None
        return Principal(
            subject=principal.subject,
            claims=dict(principal.claims),
            authenticated_at=session.authenticated_at,
        )

    def end(self, session_id: Optional[str]) -> Optional[str]:
        """Terminate a session; returns the subject that was signed in, if any."""
        if not session_id:
            return None
        with self._lock:
            session = self._sessions.pop(session_id, None)
        return session.subject if session else None
