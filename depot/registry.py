"""
Partitioned registry using SQLite.

A key-value store keyed by (partition, namespace, key). A partition is a
persona id, or the system partition that holds persona records and unowned
files.

Alongside the entries table the registry keeps an explicit global key index
mapping (namespace, key) to the one partition currently holding it. Lookups
by key alone (``locate``) go through the index instead of scanning, and every
write keeps the two tables in step inside a single transaction.

Writes run under BEGIN IMMEDIATE so separate processes sharing the database
file serialize on the SQLite write lock. Within a process a lock guards the
shared connection; it is reentrant so an update callback can read
through the registry inside the open transaction.
"""

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterator, Optional

from .errors import Conflict, NotFound, StorageFailure

logger = logging.getLogger(__name__)

# The partition holding persona records and files with no explicit owner
SYSTEM_PARTITION = "admin"

SCHEMA_VERSION = 2


class PartitionedRegistry:
    """
    SQLite-backed partitioned key-value registry.

    Values are JSON objects. All methods raise StorageFailure when the
    database itself fails; NotFound and Conflict describe the data.
    """

    def __init__(self, db_path: Path):
        """
        Args:
            db_path: Path to SQLite database file
        """
        self._db_path = db_path
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self._init_db()

    def _init_db(self) -> None:
        """Initialize the SQLite database."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        # isolation_level=None gives us manual transaction control
        # so we can use BEGIN IMMEDIATE for multi-statement writes
        self._conn = sqlite3.connect(
            str(self._db_path), check_same_thread=False,
            isolation_level=None,
        )
        self._conn.row_factory = sqlite3.Row

        # Wait up to 5 seconds for locks instead of failing immediately
        self._conn.execute("PRAGMA busy_timeout=5000")
        # Enable WAL mode for better concurrent access across processes
        self._conn.execute("PRAGMA journal_mode=WAL")

        with self._write():
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS entries (
                    partition TEXT NOT NULL,
                    namespace TEXT NOT NULL,
                    key TEXT NOT NULL,
                    value_json TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (partition, namespace, key)
                )
            """)
            self._conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_entries_namespace
                ON entries(namespace, partition)
            """)
            self._migrate()

    def _migrate(self) -> None:
        """Bring an existing database up to SCHEMA_VERSION.

        Version 1 databases have entries but no key index. The index is
        created and backfilled from entries; if an old database holds the
        same key in several partitions, the most recently updated one wins and
        the other copies are dropped from entries.
        """
        version = self._conn.execute("PRAGMA user_version").fetchone()[0]
        if version >= SCHEMA_VERSION:
            return

        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS key_index (
                namespace TEXT NOT NULL,
                key TEXT NOT NULL,
                partition TEXT NOT NULL,
                PRIMARY KEY (namespace, key)
            )
        """)
        cursor = self._conn.execute("""
            INSERT OR REPLACE INTO key_index (namespace, key, partition)
            SELECT namespace, key, partition FROM entries
            ORDER BY updated_at ASC, partition ASC
        """)
        if version and cursor.rowcount:
            logger.info("Backfilled key index with %d entries", cursor.rowcount)
        cursor = self._conn.execute("""
            DELETE FROM entries
            WHERE partition != (
                SELECT k.partition FROM key_index k
                WHERE k.namespace = entries.namespace AND k.key = entries.key
            )
        """)
        if cursor.rowcount:
            logger.warning("Dropped %d duplicate entries held by stale partitions", cursor.rowcount)
        self._conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")

    def _now(self) -> str:
        """Current timestamp in ISO format."""
        return datetime.now(timezone.utc).isoformat()

    @contextmanager
    def _write(self) -> Iterator[None]:
        """Run a block as one IMMEDIATE transaction under the lock."""
        with self._lock:
            try:
                self._conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise StorageFailure(f"Registry unavailable: {e}") from e
            try:
                yield
                self._conn.execute("COMMIT")
            except sqlite3.Error as e:
                if self._conn.in_transaction:
                    self._conn.execute("ROLLBACK")
                raise StorageFailure(f"Registry write failed: {e}") from e
            except Exception:
                if self._conn.in_transaction:
                    self._conn.execute("ROLLBACK")
                raise

    def _query(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._lock:
            try:
                return self._conn.execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise StorageFailure(f"Registry read failed: {e}") from e

    def _indexed_partition(self, namespace: str, key: str) -> Optional[str]:
        """Index lookup for use inside an open transaction."""
        row = self._conn.execute("""
            SELECT partition FROM key_index
            WHERE namespace = ? AND key = ?
        """, (namespace, key)).fetchone()
        return row["partition"] if row else None

    def _put(self, partition: str, namespace: str, key: str, value: dict[str, Any]) -> None:
        self._conn.execute("""
            INSERT OR REPLACE INTO entries
            (partition, namespace, key, value_json, updated_at)
            VALUES (?, ?, ?, ?, ?)
        """, (partition, namespace, key, json.dumps(value, ensure_ascii=False), self._now()))
        self._conn.execute("""
            INSERT OR REPLACE INTO key_index (namespace, key, partition)
            VALUES (?, ?, ?)
        """, (namespace, key, partition))

    # -------------------------------------------------------------------------
    # Write Operations
    # -------------------------------------------------------------------------

    def set(self, partition: str, namespace: str, key: str, value: dict[str, Any]) -> None:
        """
        Insert or update a value in a partition.

        Idempotent. A key already held by a different partition is a
        Conflict: relocation goes through move() so the index never
        points at two places.
        """
        with self._write():
            holder = self._indexed_partition(namespace, key)
            if holder is not None and holder != partition:
                raise Conflict(
                    f"{namespace}/{key} is held by partition {holder!r}, not {partition!r}"
                )
            self._put(partition, namespace, key, value)

    def insert(self, partition: str, namespace: str, key: str, value: dict[str, Any]) -> None:
        """Create a value; Conflict if the key exists in any partition."""
        with self._write():
            holder = self._indexed_partition(namespace, key)
            if holder is not None:
                raise Conflict(f"{namespace}/{key} already exists in partition {holder!r}")
            self._put(partition, namespace, key, value)

    def delete(self, partition: str, namespace: str, key: str) -> None:
        """
        Delete a value and its index entry.

        Raises:
            NotFound: if the partition does not hold the key
        """
        with self._write():
            cursor = self._conn.execute("""
                DELETE FROM entries
                WHERE partition = ? AND namespace = ? AND key = ?
            """, (partition, namespace, key))
            if cursor.rowcount == 0:
                raise NotFound(f"{namespace}/{key} not found in partition {partition!r}")
            self._conn.execute("""
                DELETE FROM key_index
                WHERE namespace = ? AND key = ? AND partition = ?
            """, (namespace, key, partition))

    def move(
        self,
        src: str,
        dst: str,
        namespace: str,
        key: str,
        value: Optional[dict[str, Any]] = None,
    ) -> None:
        """
        Relocate a key from one partition to another.

        The entry, its index row and (when given) the replacement value are
        committed together, so no reader ever sees the key in both
        partitions, in neither, or in the new partition with stale content.

        Args:
            src: Partition currently holding the key
            dst: Destination partition
            namespace: Namespace of the key
            key: Key to move
            value: Replacement value; None keeps the stored one

        Raises:
            NotFound: if src does not hold the key
            Conflict: if dst already holds the key
        """
        with self._write():
            row = self._conn.execute("""
                SELECT value_json FROM entries
                WHERE partition = ? AND namespace = ? AND key = ?
            """, (src, namespace, key)).fetchone()
            if row is None:
                raise NotFound(f"{namespace}/{key} not found in partition {src!r}")
            if value is None:
                value = json.loads(row["value_json"])
            if src == dst:
                self._put(dst, namespace, key, value)
                return
            exists = self._conn.execute("""
                SELECT 1 FROM entries
                WHERE partition = ? AND namespace = ? AND key = ?
            """, (dst, namespace, key)).fetchone()
            if exists is not None:
                raise Conflict(f"{namespace}/{key} already exists in partition {dst!r}")
            self._conn.execute("""
                DELETE FROM entries
                WHERE partition = ? AND namespace = ? AND key = ?
            """, (src, namespace, key))
            self._put(dst, namespace, key, value)
        logger.debug("Moved %s/%s from %s to %s", namespace, key, src, dst)

    def update(
        self,
        partition: Optional[str],
        namespace: str,
        key: str,
        fn: Callable[[dict[str, Any]], dict[str, Any]],
        place: Optional[Callable[[dict[str, Any]], str]] = None,
    ) -> tuple[str, dict[str, Any]]:
        """
        Read, modify and write back a value in one transaction.

        ``fn`` receives the stored value and returns the new one. It runs
        inside the transaction: it may read through the registry but must
        not write, and an exception it raises aborts the update.

        Args:
            partition: Partition holding the key; None looks it up in the index
            namespace: Namespace of the key
            key: Key to update
            fn: Maps the stored value to its replacement
            place: Maps the new value to the partition it belongs in; the
                key is relocated when that differs from where it is

        Returns:
            (partition now holding the key, new value)

        Raises:
            NotFound: if the key does not exist (in ``partition``, when given)
            Conflict: if relocation finds the destination already holds it
        """
        with self._write():
            src = partition if partition is not None else self._indexed_partition(namespace, key)
            row = None
            if src is not None:
                row = self._conn.execute("""
                    SELECT value_json FROM entries
                    WHERE partition = ? AND namespace = ? AND key = ?
                """, (src, namespace, key)).fetchone()
            if row is None:
                raise NotFound(f"{namespace}/{key} not found")
            value = fn(json.loads(row["value_json"]))
            dst = place(value) if place is not None else src
            if dst != src:
                exists = self._conn.execute("""
                    SELECT 1 FROM entries
                    WHERE partition = ? AND namespace = ? AND key = ?
                """, (dst, namespace, key)).fetchone()
                if exists is not None:
                    raise Conflict(f"{namespace}/{key} already exists in partition {dst!r}")
                self._conn.execute("""
                    DELETE FROM entries
                    WHERE partition = ? AND namespace = ? AND key = ?
                """, (src, namespace, key))
            self._put(dst, namespace, key, value)
        if dst != src:
            logger.debug("Moved %s/%s from %s to %s", namespace, key, src, dst)
        return dst, value

    # -------------------------------------------------------------------------
    # Read Operations
    # -------------------------------------------------------------------------

    def get(self, partition: str, namespace: str, key: str) -> dict[str, Any]:
        """
        Get a value.

        Raises:
            NotFound: if the partition does not hold the key
        """
        rows = self._query("""
            SELECT value_json FROM entries
            WHERE partition = ? AND namespace = ? AND key = ?
        """, (partition, namespace, key))
        if not rows:
            raise NotFound(f"{namespace}/{key} not found in partition {partition!r}")
        return json.loads(rows[0]["value_json"])

    def locate(self, namespace: str, key: str) -> str:
        """
        Return the partition currently holding a key.

        Raises:
            NotFound: if no partition holds it
        """
        rows = self._query("""
            SELECT partition FROM key_index
            WHERE namespace = ? AND key = ?
        """, (namespace, key))
        if not rows:
            raise NotFound(f"{namespace}/{key} not found")
        return rows[0]["partition"]

    def list_namespace(self, partition: str, namespace: str) -> dict[str, dict[str, Any]]:
        """All keys and values of one namespace within one partition."""
        rows = self._query("""
            SELECT key, value_json FROM entries
            WHERE partition = ? AND namespace = ?
            ORDER BY key
        """, (partition, namespace))
        return {row["key"]: json.loads(row["value_json"]) for row in rows}

    def dump_namespace(self, namespace: str) -> dict[str, dict[str, dict[str, Any]]]:
        """
        All values of a namespace across every partition.

        Read in one statement, so the result is a consistent snapshot.

        Returns:
            Dict mapping partition -> {key: value}
        """
        rows = self._query("""
            SELECT partition, key, value_json FROM entries
            WHERE namespace = ?
            ORDER BY partition, key
        """, (namespace,))
        result: dict[str, dict[str, dict[str, Any]]] = {}
        for row in rows:
            result.setdefault(row["partition"], {})[row["key"]] = json.loads(row["value_json"])
        return result

    def list_partitions(self, namespace: Optional[str] = None) -> list[str]:
        """List partitions holding any key (optionally within one namespace)."""
        if namespace is None:
            rows = self._query("SELECT DISTINCT partition FROM entries ORDER BY partition")
        else:
            rows = self._query("""
                SELECT DISTINCT partition FROM entries
                WHERE namespace = ?
                ORDER BY partition
            """, (namespace,))
        return [row["partition"] for row in rows]

    def count(self, namespace: str, partition: Optional[str] = None) -> int:
        """Count keys in a namespace, optionally within one partition."""
        if partition is None:
            rows = self._query(
                "SELECT COUNT(*) FROM entries WHERE namespace = ?", (namespace,)
            )
        else:
            rows = self._query("""
                SELECT COUNT(*) FROM entries
                WHERE namespace = ? AND partition = ?
            """, (namespace, partition))
        return rows[0][0]

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __del__(self):
        self.close()
