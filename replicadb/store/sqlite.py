"""
SQLite-backed object store for replicadb.

This backend keeps the same in-memory committed view as InMemoryBackend and
writes every committed transaction through to a single SQLite file, so the
replica (and its outbox) survives process restarts.

Invariants:
    - One SQLite file per database handle
    - Each committed transaction is persisted in one BEGIN IMMEDIATE block
    - schema_meta records the schema fingerprint; opening a file written by
      a different schema fails instead of misreading records

How to change safely:
    - Schema migrations must be backward compatible
    - Keep the record codec (store.codec) stable; persisted rows depend on it

Table schema:
    records:
        - store TEXT
        - key_json TEXT (JSON array of key components)
        - value_json TEXT (tagged JSON, see store.codec)
        - PRIMARY KEY (store, key_json)

    schema_meta:
        - name TEXT PRIMARY KEY
        - value TEXT
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, Optional

from . import codec
from .base import Key, ObjectStoreBackend, Record, StoreChanges, StoreError, StoreSpec

logger = logging.getLogger(__name__)


class SchemaMismatchError(StoreError):
    """The database file was written with a different schema fingerprint."""
    pass


class SqliteBackend(ObjectStoreBackend):
    """Persistent ObjectStoreBackend on a SQLite file.

    Attributes:
        path: Database file path
        wal_mode: Whether SQLite WAL journal mode is enabled
        busy_timeout_ms: SQLite busy timeout

    Example:
        >>> backend = SqliteBackend("/tmp/replica.sqlite")
        >>> await backend.open(specs, fingerprint=registry.fingerprint)
    """

    SCHEMA_VERSION = 1

    def __init__(self, path: str, wal_mode: bool = True, busy_timeout_ms: int = 5000) -> None:
        super().__init__()
        self.path = Path(path)
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Open a configured connection for one operation."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            str(self.path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit by default, explicit transactions
        )
        conn.row_factory = sqlite3.Row
        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            yield conn
        finally:
            conn.close()

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS schema_meta (
                name TEXT PRIMARY KEY,
                value TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS records (
                store TEXT NOT NULL,
                key_json TEXT NOT NULL,
                value_json TEXT NOT NULL,
                PRIMARY KEY (store, key_json)
            );
            """
        )

    def _check_fingerprint(self, conn: sqlite3.Connection, fingerprint: Optional[str]) -> None:
        rows = {
            row["name"]: row["value"]
            for row in conn.execute("SELECT name, value FROM schema_meta").fetchall()
        }
        stored = rows.get("fingerprint")
        if fingerprint is not None and stored is not None and stored != fingerprint:
            raise SchemaMismatchError(
                f"Database {self.path} was written with schema {stored}, expected {fingerprint}"
            )
        conn.execute("BEGIN IMMEDIATE")
        try:
            conn.execute(
                "INSERT OR REPLACE INTO schema_meta (name, value) VALUES ('version', ?)",
                (str(self.SCHEMA_VERSION),),
            )
            if fingerprint is not None:
                conn.execute(
                    "INSERT OR REPLACE INTO schema_meta (name, value) VALUES ('fingerprint', ?)",
                    (fingerprint,),
                )
            conn.execute("COMMIT")
        except Exception:
            conn.execute("ROLLBACK")
            raise

    async def _load(self, specs: Dict[str, StoreSpec], fingerprint: Optional[str]) -> Dict[str, Dict[Key, Record]]:
        committed: Dict[str, Dict[Key, Record]] = {name: {} for name in specs}
        with self._get_connection() as conn:
            self._create_schema(conn)
            self._check_fingerprint(conn, fingerprint)
            cursor = conn.execute("SELECT store, key_json, value_json FROM records")
            skipped = 0
            for row in cursor:
                store = committed.get(row["store"])
                if store is None:
                    skipped += 1
                    continue
                store[codec.loads_key(row["key_json"])] = codec.loads(row["value_json"])
        logger.info(
            "Loaded SQLite replica",
            extra={
                "path": str(self.path),
                "records": sum(len(s) for s in committed.values()),
                "skipped": skipped,
            },
        )
        return committed

    async def _persist(self, changes: Dict[str, StoreChanges]) -> None:
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                for store, staged in changes.items():
                    if staged.deletes:
                        conn.executemany(
                            "DELETE FROM records WHERE store = ? AND key_json = ?",
                            [(store, codec.dumps_key(key)) for key in staged.deletes],
                        )
                    if staged.puts:
                        conn.executemany(
                            "INSERT OR REPLACE INTO records (store, key_json, value_json) VALUES (?, ?, ?)",
                            [
                                (store, codec.dumps_key(key), codec.dumps(value))
                                for key, value in staged.puts.items()
                            ],
                        )
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

        logger.debug(
            "Persisted transaction",
            extra={
                "stores": sorted(changes),
                "puts": sum(len(c.puts) for c in changes.values()),
                "deletes": sum(len(c.deletes) for c in changes.values()),
            },
        )
