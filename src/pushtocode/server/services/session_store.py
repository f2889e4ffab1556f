"""Persistence of per-session metadata across server restarts.

Only the agent conversation ID and bookkeeping timestamps are stored, never
terminal content. The JSON file is shared between server processes, so every
read-modify-write happens under a file lock.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from filelock import FileLock

logger = logging.getLogger(__name__)


@dataclass
class SessionMetadata:
    """What is remembered about a session."""

    session_id: str
    agent_conversation_id: str | None = None
    project_path: str | None = None
    created_at: float = field(default_factory=time.time)
    last_activity_at: float = field(default_factory=time.time)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SessionMetadata":
        return cls(
            session_id=str(data["session_id"]),
            agent_conversation_id=data.get("agent_conversation_id"),
            project_path=data.get("project_path"),
            created_at=float(data.get("created_at", time.time())),
            last_activity_at=float(data.get("last_activity_at", time.time())),
        )


class SessionMetadataStore:
    """JSON file of SessionMetadata keyed by session ID, with expiry."""

    def __init__(self, path: Path, ttl_days: float = 7):
        self.path = Path(path)
        self.ttl_seconds = ttl_days * 24 * 60 * 60
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = FileLock(str(self.path) + ".lock", timeout=10)

    def _load(self) -> dict[str, SessionMetadata]:
        """Read entries, dropping expired ones (call with the file lock held)."""
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("Could not load session store %s: %s", self.path, e)
            return {}

        cutoff = time.time() - self.ttl_seconds
        entries = {}
        for item in raw.get("sessions", []) if isinstance(raw, dict) else []:
            try:
                meta = SessionMetadata.from_dict(item)
            except (KeyError, TypeError, ValueError):
                continue
            if meta.last_activity_at >= cutoff:
                entries[meta.session_id] = meta
        return entries

    def _save(self, entries: dict[str, SessionMetadata]) -> None:
        """Write entries atomically (call with the file lock held)."""
        payload = {"sessions": [asdict(meta) for meta in entries.values()]}
        try:
            fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=".sessions_", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(payload, f, indent=2)
                os.chmod(tmp_path, 0o600)
                os.replace(tmp_path, self.path)
            except Exception:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
                raise
        except OSError as e:
            logger.error("Could not save session store %s: %s", self.path, e)

    def get(self, session_id: str) -> SessionMetadata | None:
        with self._lock:
            return self._load().get(session_id)

    def list(self) -> list[SessionMetadata]:
        """All unexpired entries, most recently active first."""
        with self._lock:
            entries = self._load()
        return sorted(entries.values(), key=lambda m: m.last_activity_at, reverse=True)

    def upsert(
        self,
        session_id: str,
        *,
        agent_conversation_id: str | None = None,
        project_path: str | None = None,
    ) -> SessionMetadata:
        """Create or update an entry and bump its activity time.

        None arguments leave the stored value untouched.
        """
        with self._lock:
            entries = self._load()
            meta = entries.get(session_id) or SessionMetadata(session_id=session_id)
            if agent_conversation_id is not None:
                meta.agent_conversation_id = agent_conversation_id
            if project_path is not None:
                meta.project_path = project_path
            meta.last_activity_at = time.time()
            entries[session_id] = meta
            self._save(entries)
            return meta

    def remove(self, session_id: str) -> bool:
        with self._lock:
            entries = self._load()
            if entries.pop(session_id, None) is None:
                return False
            self._save(entries)
            return True

    def purge_expired(self) -> int:
        """Rewrite the file without expired entries. Returns how many were dropped."""
        with self._lock:
            before = self._count_raw()
            entries = self._load()
            self._save(entries)
        dropped = max(before - len(entries), 0)
        if dropped:
            logger.info("Expired %d session metadata entries", dropped)
        return dropped

    def _count_raw(self) -> int:
        if not self.path.exists():
            return 0
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except (json.JSONDecodeError, OSError):
            return 0
        return len(raw.get("sessions", [])) if isinstance(raw, dict) else 0
