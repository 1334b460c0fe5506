"""
Snapshot Storage Module

Provides abstract snapshot storage interface and implementations for in-memory
(testing), JSON files and SQLite. A snapshot is a whole collection of records
(plain dicts); writes replace the collection, never patch it. Monetary values
are stored as Decimal strings by the records themselves.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union
import json
import os
import sqlite3
import tempfile
import threading
from pathlib import Path


class CorruptSnapshotError(Exception):
    """Stored snapshot exists but cannot be decoded"""

    def __init__(self, collection: str, reason: str):
        super().__init__(f"Snapshot '{collection}' is corrupt: {reason}")
        self.collection = collection
        self.reason = reason


class SnapshotStorage(ABC):
    """Abstract interface for snapshot backends"""

    @abstractmethod
    def read(self, collection: str) -> Optional[List[Dict[str, Any]]]:
        """
        Read a whole collection.

        Returns:
            The stored records, or None if the collection was never written

        Raises:
            CorruptSnapshotError: stored content cannot be decoded
        """
        pass

    @abstractmethod
    def write(self, collection: str, records: List[Dict[str, Any]]) -> None:
        """Replace a whole collection"""
        pass

    @abstractmethod
    def exists(self, collection: str) -> bool:
        """Check if a collection has been written"""
        pass

    def close(self) -> None:
        """Release backend resources (default no-op)"""
        pass


class InMemorySnapshotStorage(SnapshotStorage):
    """In-memory snapshot storage for testing"""

    def __init__(self):
        self._data: Dict[str, str] = {}
        self._lock = threading.RLock()

    def read(self, collection: str) -> Optional[List[Dict[str, Any]]]:
        with self._lock:
            raw = self._data.get(collection)
            if raw is None:
                return None
            return _decode(collection, raw)

    def write(self, collection: str, records: List[Dict[str, Any]]) -> None:
        # Serialized so that later mutation of the records cannot leak in
        with self._lock:
            self._data[collection] = json.dumps(records)

    def exists(self, collection: str) -> bool:
        with self._lock:
            return collection in self._data

    def put_raw(self, collection: str, raw: str) -> None:
        """Store undecoded content, for exercising corrupt snapshots"""
        with self._lock:
            self._data[collection] = raw


class JSONFileSnapshotStorage(SnapshotStorage):
    """One ``<collection>.json`` file per collection in a data directory"""

    def __init__(self, data_dir: Union[str, Path] = "."):
        self.data_dir = Path(data_dir)
        self._lock = threading.RLock()

    def path_for(self, collection: str) -> Path:
        return self.data_dir / f"{collection}.json"

    def read(self, collection: str) -> Optional[List[Dict[str, Any]]]:
        path = self.path_for(collection)
        with self._lock:
            if not path.exists():
                return None
            try:
                raw = path.read_text(encoding="utf-8")
            except UnicodeDecodeError as e:
                raise CorruptSnapshotError(collection, str(e)) from e
            return _decode(collection, raw)

    def write(self, collection: str, records: List[Dict[str, Any]]) -> None:
        """
        Write to a temp file in the same directory, fsync, then rename over
        the old snapshot. A failed write leaves the previous snapshot intact.
        """
        path = self.path_for(collection)
        with self._lock:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{collection}.", suffix=".tmp", dir=str(self.data_dir)
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    json.dump(records, fh, indent=2)
                    fh.flush()
                    os.fsync(fh.fileno())
                os.replace(tmp_name, path)
            except BaseException:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    pass
                raise

    def exists(self, collection: str) -> bool:
        return self.path_for(collection).exists()


class SQLiteSnapshotStorage(SnapshotStorage):
    """SQLite snapshot storage, one table per collection"""

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False)
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()

        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = FULL")
                self._connection.commit()

    @staticmethod
    def _table(collection: str) -> str:
        if not collection.replace("_", "").isalnum():
            raise ValueError(f"Invalid collection name: {collection!r}")
        return f"snapshot_{collection}"

    def _ensure_table(self, table: str) -> None:
        self._connection.execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                position INTEGER PRIMARY KEY,
                data TEXT NOT NULL
            )
        """)

    def read(self, collection: str) -> Optional[List[Dict[str, Any]]]:
        table = self._table(collection)
        with self._lock:
            if not self.exists(collection):
                return None
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} ORDER BY position
            """)
            records = []
            for row in cursor.fetchall():
                try:
                    records.append(json.loads(row['data']))
                except json.JSONDecodeError as e:
                    raise CorruptSnapshotError(collection, str(e)) from e
            return records

    def write(self, collection: str, records: List[Dict[str, Any]]) -> None:
        table = self._table(collection)
        with self._lock:
            try:
                self._ensure_table(table)
                self._connection.execute(f"DELETE FROM {table}")
                self._connection.executemany(
                    f"INSERT INTO {table} (position, data) VALUES (?, ?)",
                    [(i, json.dumps(record)) for i, record in enumerate(records)]
                )
                self._connection.commit()
            except Exception:
                self._connection.rollback()
                raise

    def exists(self, collection: str) -> bool:
        table = self._table(collection)
        with self._lock:
            cursor = self._connection.execute(
                "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?",
                (table,)
            )
            return cursor.fetchone() is not None

    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def _decode(collection: str, raw: str) -> List[Dict[str, Any]]:
    """Decode a JSON snapshot, insisting on a list of objects"""
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise CorruptSnapshotError(collection, str(e)) from e
    if not isinstance(data, list) or not all(isinstance(item, dict) for item in data):
        raise CorruptSnapshotError(collection, "expected a list of records")
    return data
