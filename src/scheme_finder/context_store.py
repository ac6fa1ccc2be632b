"""
Session persistence: key-value backends with TTL, the session store on top of
them, and the per-session lease that serializes turns.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Optional, Tuple, Union

try:
    from src.scheme_finder.errors import PersistenceUnavailable, SessionBusy
    from src.scheme_finder.models import Session
except ImportError:
    from .errors import PersistenceUnavailable, SessionBusy
    from .models import Session

logger = logging.getLogger(__name__)

SESSION_KEY_PREFIX = "session:"


class KeyValueStore:
    """
    Minimal key-value contract: ``get`` returns None for unknown or expired keys.
    """

    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def put(self, key: str, value: str, ttl: Optional[float] = None) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError


class InMemoryKeyValueStore(KeyValueStore):
    """
    Process-local store with lazy TTL expiry.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._lock = threading.Lock()
        self._items: Dict[str, Tuple[str, Optional[float]]] = {}
        self._clock = clock

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            item = self._items.get(key)
            if item is None:
                return None
            value, expires_at = item
            if expires_at is not None and self._clock() >= expires_at:
                del self._items[key]
                return None
            return value

    def put(self, key: str, value: str, ttl: Optional[float] = None) -> None:
        expires_at = self._clock() + ttl if ttl else None
        with self._lock:
            self._items[key] = (value, expires_at)

    def delete(self, key: str) -> None:
        with self._lock:
            self._items.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


class SqliteKeyValueStore(KeyValueStore):
    """
    Single-table SQLite store; expiry uses wall-clock epoch seconds.
    """

    def __init__(self, db_path: Union[str, Path], clock: Callable[[], float] = time.time) -> None:
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._clock = clock
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._init_db()

    def _init_db(self) -> None:
        with self._lock:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS kv_store (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    expires_at REAL
                )
                """
            )
            self._conn.commit()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            row = self._conn.execute(
                "SELECT value, expires_at FROM kv_store WHERE key = ?",
                (key,),
            ).fetchone()
            if row is None:
                return None
            value, expires_at = row
            if expires_at is not None and self._clock() >= expires_at:
                self._conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
                self._conn.commit()
                return None
            return value

    def put(self, key: str, value: str, ttl: Optional[float] = None) -> None:
        expires_at = self._clock() + ttl if ttl else None
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO kv_store (key, value, expires_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, expires_at = excluded.expires_at
                """,
                (key, value, expires_at),
            )
            self._conn.commit()

    def delete(self, key: str) -> None:
        with self._lock:
            self._conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
            self._conn.commit()

    def close(self) -> None:
        with self._lock:
            self._conn.close()


class ContextStore:
    """
    Loads and saves whole Session records as JSON under ``session:<id>`` keys.
    """

    def __init__(self, backend: Optional[KeyValueStore] = None, ttl_seconds: Optional[float] = 86400) -> None:
        self.backend = backend if backend is not None else InMemoryKeyValueStore()
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def _key(session_id: str) -> str:
        return f"{SESSION_KEY_PREFIX}{session_id}"

    def load(self, session_id: str) -> Optional[Session]:
        """Return the session, or None when it is unknown, expired, or unreadable."""
        try:
            raw = self.backend.get(self._key(session_id))
        except Exception as exc:
            logger.warning("[ContextStore] Lookup for session %s failed (%s); treating as not found.", session_id, exc)
            return None
        if raw is None:
            return None
        try:
            return Session.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("[ContextStore] Stored session %s is unreadable (%s); treating as not found.", session_id, exc)
            return None

    def save(self, session: Session) -> None:
        payload = json.dumps(session.to_dict(), ensure_ascii=False, sort_keys=True)
        try:
            self.backend.put(self._key(session.session_id), payload, ttl=self.ttl_seconds)
        except Exception as exc:
            raise PersistenceUnavailable(f"Could not save session {session.session_id}: {exc}") from exc

    def delete(self, session_id: str) -> None:
        try:
            self.backend.delete(self._key(session_id))
        except Exception as exc:
            raise PersistenceUnavailable(f"Could not delete session {session_id}: {exc}") from exc


class SessionLeases:
    """
    Per-session re-entrant locks; a thread already holding a lease may re-acquire it.
    """

    def __init__(self, timeout: float = 10.0) -> None:
        self.timeout = timeout
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.RLock] = {}
        self._holders: Dict[str, int] = {}

    @contextmanager
    def hold(self, session_id: str, timeout: Optional[float] = None) -> Iterator[None]:
        lock = self._acquire_lock(session_id)
        wait = self.timeout if timeout is None else timeout
        if not lock.acquire(timeout=wait):
            self._release_ref(session_id)
            raise SessionBusy(session_id)
        try:
            yield
        finally:
            lock.release()
            self._release_ref(session_id)

    def _acquire_lock(self, session_id: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(session_id)
            if lock is None:
                lock = self._locks[session_id] = threading.RLock()
            self._holders[session_id] = self._holders.get(session_id, 0) + 1
            return lock

    def _release_ref(self, session_id: str) -> None:
        with self._guard:
            remaining = self._holders.get(session_id, 1) - 1
            if remaining <= 0:
                self._holders.pop(session_id, None)
                self._locks.pop(session_id, None)
            else:
                self._holders[session_id] = remaining

    def active(self) -> int:
        with self._guard:
            return len(self._locks)
