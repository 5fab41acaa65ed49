"""
Durable key-value storage for credentials, hints and cache mirrors.

Values are stored as text; composite values are JSON-encoded so that the
layout matches what existing installations already hold (e.g. the
`cached_players` key contains a JSON array of player records).

Usage:
    from core.durable_store import open_store, StorageKeys

    store = open_store("/var/lib/displayhub/session.db")   # or "" for memory
    store.set_json(StorageKeys.USER, {"id": "u1", "email": "a@b"})
    store.replace({StorageKeys.AUTH_TOKEN: token}, delete=[StorageKeys.REFRESH_TOKEN])
"""

import json
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional

from core.timestamps import isonow

logger = logging.getLogger(__name__)


class StorageKeys:
    """Durable key names."""

    AUTH_TOKEN = "authToken"
    REFRESH_TOKEN = "refreshToken"
    USER = "user"
    COMPANY_ID = "company_id"
    USER_ROLE = "user_role"
    LOGIN_ATTEMPTS = "loginAttempts"
    LOGIN_LOCKOUT_UNTIL = "loginLockoutUntil"

    CREDENTIAL_KEYS = (AUTH_TOKEN, REFRESH_TOKEN, USER, COMPANY_ID, USER_ROLE)

    @staticmethod
    def cached(family: str) -> str:
        """Mirror key for an entity family, e.g. cached_players."""
        return f"cached_{family}"


class DurableStore(ABC):
    """
    Key-value area that survives process restarts.

    `replace()` is the only multi-key write and is atomic: readers observe
    either all of its effects or none of them.
    """

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    def replace(self, values: Mapping[str, str], delete: Iterable[str] = ()) -> None:
        """Set `values` and delete `delete` keys in one transaction."""

    def set(self, key: str, value: str) -> None:
        self.replace({key: value})

    def delete(self, *keys: str) -> None:
        self.replace({}, delete=keys)

    def get_json(self, key: str, default: Any = None) -> Any:
        raw = self.get(key)
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            logger.warning(f"Discarding undecodable value for {key}")
            return default

    def set_json(self, key: str, value: Any) -> None:
        self.set(key, json.dumps(value))

    def close(self) -> None:
        pass


class MemoryStore(DurableStore):
    """Process-local store, used when no storage path is configured and in tests."""

    def __init__(self, initial: Optional[Mapping[str, str]] = None):
        self._data: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def replace(self, values: Mapping[str, str], delete: Iterable[str] = ()) -> None:
        staged = dict(self._data)
        for key in delete:
            staged.pop(key, None)
        staged.update(values)
        self._data = staged

    def keys(self) -> list[str]:
        return sorted(self._data)


class SqliteStore(DurableStore):
    """SQLite-backed store with a single kv_store table."""

    _SCHEMA = """
        CREATE TABLE IF NOT EXISTS kv_store (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """

    def __init__(self, path: str):
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(str(self._path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        with self._transaction() as cursor:
            cursor.execute(self._SCHEMA)
        logger.info(f"Durable store opened at {self._path}")

    @contextmanager
    def _transaction(self):
        with self._lock:
            cursor = self._conn.cursor()
            try:
                yield cursor
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            row = self._conn.execute(
                "SELECT value FROM kv_store WHERE key = ?", (key,)
            ).fetchone()
        return row["value"] if row else None

    def replace(self, values: Mapping[str, str], delete: Iterable[str] = ()) -> None:
        stamp = isonow()
        with self._transaction() as cursor:
            for key in delete:
                cursor.execute("DELETE FROM kv_store WHERE key = ?", (key,))
            for key, value in values.items():
                cursor.execute(
                    "INSERT OR REPLACE INTO kv_store (key, value, updated_at) VALUES (?, ?, ?)",
                    (key, value, stamp),
                )

    def close(self) -> None:
        with self._lock:
            self._conn.close()


def open_store(path: Optional[str] = None) -> DurableStore:
    """Open a SqliteStore at `path`, or a MemoryStore when path is empty."""
    if not path:
        logger.debug("No storage path configured, using in-memory store")
        return MemoryStore()
    return SqliteStore(path)
