"""Durable key-value store with prefix iteration, backed by SQLite."""

from abc import ABC, abstractmethod
import json
import logging
import os
import sqlite3
import threading
from typing import Any, Dict, List, Optional, Tuple

from deployer.models.exceptions import RecordNotFoundError


logger = logging.getLogger(__name__)

JsonValue = Any


def _json_dumps(payload: JsonValue) -> str:
    return json.dumps(payload, separators=(",", ":"), sort_keys=True)


def _json_loads(raw: str) -> JsonValue:
    return json.loads(raw)


class KeyValueStore(ABC):
    """Contract for the deployer's only shared mutable resource."""

    @abstractmethod
    def get(self, key: str) -> JsonValue:
        """Return the value stored under `key`.

        Raises:
            RecordNotFoundError: If the key is absent.
        """

    @abstractmethod
    def put(self, key: str, value: JsonValue) -> None:
        """Store `value` under `key`, last writer wins."""

    @abstractmethod
    def put_if_status(self, key: str, expected_status: Optional[str], value: JsonValue) -> bool:
        """Atomically write `value` only if the stored record has `expected_status`.

        `expected_status=None` means the key must be absent.
        """

    @abstractmethod
    def iterate_prefix(self, prefix: str) -> List[Tuple[str, JsonValue]]:
        """Return `(key, value)` pairs whose key starts with `prefix`, ordered by key."""

    @abstractmethod
    def close(self) -> None:
        """Release underlying resources."""


class SqliteKeyValueStore(KeyValueStore):
    """Thread-safe JSON key-value store in a single SQLite table."""

    def __init__(self, db_path: str) -> None:
        """Open (or create) the database at `db_path`."""
        try:
            self._db_path = db_path
            directory = os.path.dirname(os.path.abspath(db_path))
            os.makedirs(directory, exist_ok=True)
            self._conn = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
            self._conn.execute("PRAGMA journal_mode=WAL;")
            self._conn.execute("PRAGMA synchronous=NORMAL;")
            self._lock = threading.Lock()
            self._closed = False
            self._create_schema()
            logger.info("Key-value store opened path=%s", db_path)
        except Exception:
            logger.exception("Failed to open key-value store path=%s", db_path)
            raise

    def _create_schema(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS kv (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
            """
        )

    def _fetch(self, key: str) -> Optional[str]:
        row = self._conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        return row[0] if row else None

    def _write(self, key: str, encoded: str) -> None:
        self._conn.execute(
            "INSERT INTO kv(key, value) VALUES(?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
            (key, encoded),
        )

    def get(self, key: str) -> JsonValue:
        with self._lock:
            raw = self._fetch(key)
        if raw is None:
            raise RecordNotFoundError("Key not found: {0}".format(key))
        return _json_loads(raw)

    def put(self, key: str, value: JsonValue) -> None:
        encoded = _json_dumps(value)
        with self._lock:
            self._write(key, encoded)

    def put_if_status(self, key: str, expected_status: Optional[str], value: JsonValue) -> bool:
        encoded = _json_dumps(value)
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                raw = self._fetch(key)
                if expected_status is None:
                    matches = raw is None
                else:
                    current: Dict[str, Any] = _json_loads(raw) if raw is not None else {}
                    matches = raw is not None and current.get("status") == expected_status
                if matches:
                    self._write(key, encoded)
                self._conn.execute("COMMIT")
                return matches
            except Exception:
                self._conn.execute("ROLLBACK")
                logger.exception("Compare-and-swap failed key=%s expected_status=%s", key, expected_status)
                raise

    def iterate_prefix(self, prefix: str) -> List[Tuple[str, JsonValue]]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT key, value FROM kv WHERE substr(key, 1, ?) = ? ORDER BY key",
                (len(prefix), prefix),
            ).fetchall()
        return [(key, _json_loads(raw)) for key, raw in rows]

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._conn.close()
            self._closed = True
        logger.info("Key-value store closed path=%s", self._db_path)
