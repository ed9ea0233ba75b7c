"""
Storage Backend Module

Provides the abstract Account Store interface and implementations for
in-memory (testing) and SQLite (persistence). All monetary values are stored
as Decimal strings.

Records that are mutated concurrently carry an integer ``version`` field and
are only ever replaced through ``compare_and_swap`` so that a stale
read-check-write sequence fails instead of overwriting a newer value.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Set, Tuple, Union
from decimal import Decimal
from datetime import datetime, timezone
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager

from .errors import StorageError, StorageConflictError, StorageUnavailableError


# Marks an insert expectation: the record must not exist at commit time
_ABSENT = object()


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        result['created_at'] = self.created_at.isoformat()
        result['updated_at'] = self.updated_at.isoformat()
        for key, value in result.items():
            if isinstance(value, Decimal):
                result[key] = str(value)
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageRecord':
        """Create instance from dictionary"""
        if 'created_at' in data and isinstance(data['created_at'], str):
            data['created_at'] = datetime.fromisoformat(data['created_at'])
        if 'updated_at' in data and isinstance(data['updated_at'], str):
            data['updated_at'] = datetime.fromisoformat(data['updated_at'])

        return cls(**data)


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save (insert or replace) a record"""
        pass

    @abstractmethod
    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert a new record, raising StorageConflictError if the id exists"""
        pass

    @abstractmethod
    def compare_and_swap(
        self,
        table: str,
        record_id: str,
        expected_version: int,
        data: Dict[str, Any]
    ) -> None:
        """Replace a record only if its stored version equals expected_version"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        pass

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        pass

    @abstractmethod
    def count(self, table: str) -> int:
        """Count records in table"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    def begin_transaction(self) -> None:
        """Start a database transaction (default no-op)"""
        pass

    def commit(self) -> None:
        """Commit current transaction (default no-op)"""
        pass

    def rollback(self) -> None:
        """Rollback current transaction (default no-op)"""
        pass

    @contextmanager
    def atomic(self):
        """Context manager for atomic operations"""
        self.begin_transaction()
        try:
            yield
            self.commit()
        except Exception:
            self.rollback()
            raise


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for key, value in filters.items():
        if key not in record or record[key] != value:
            return False
    return True


class _StagedTransaction:
    """Writes and commit-time expectations buffered by one thread"""

    def __init__(self):
        self.depth = 0
        self.rollback_only = False
        self.writes: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.expected: Dict[Tuple[str, str], Any] = {}


class InMemoryStorage(StorageInterface):
    """
    In-memory storage implementation for testing

    Transactions are per thread and optimistic. Writes made inside
    ``atomic()`` are staged and only visible to the writing thread; commit
    re-validates every insert and compare-and-swap against the committed data
    and then applies all staged writes at once.
    """

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._local = threading.local()

    @staticmethod
    def _copy(record: Dict[str, Any]) -> Dict[str, Any]:
        # Deep copy to prevent external mutation
        return json.loads(json.dumps(record, default=str))

    def _txn(self) -> Optional[_StagedTransaction]:
        return getattr(self._local, 'txn', None)

    def _committed(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        return self._data.get(table, {}).get(record_id)

    def _visible(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        txn = self._txn()
        if txn and (table, record_id) in txn.writes:
            return txn.writes[(table, record_id)]
        with self._lock:
            return self._committed(table, record_id)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        record = self._copy(data)
        txn = self._txn()
        if txn:
            txn.writes[(table, record_id)] = record
            return
        with self._lock:
            self._data.setdefault(table, {})[record_id] = record

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert a new record"""
        record = self._copy(data)
        txn = self._txn()
        if txn:
            if self._visible(table, record_id) is not None:
                raise StorageConflictError(f"Record {record_id} already exists in {table}")
            txn.expected.setdefault((table, record_id), _ABSENT)
            txn.writes[(table, record_id)] = record
            return
        with self._lock:
            if self._committed(table, record_id) is not None:
                raise StorageConflictError(f"Record {record_id} already exists in {table}")
            self._data.setdefault(table, {})[record_id] = record

    def compare_and_swap(
        self,
        table: str,
        record_id: str,
        expected_version: int,
        data: Dict[str, Any]
    ) -> None:
        """Replace a record if its version is unchanged"""
        record = self._copy(data)
        txn = self._txn()
        if txn:
            key = (table, record_id)
            current = self._visible(table, record_id)
            if current is None or current.get('version') != expected_version:
                raise StorageConflictError(f"Record {record_id} in {table} was modified concurrently")
            if key not in txn.writes:
                txn.expected.setdefault(key, expected_version)
            txn.writes[key] = record
            return
        with self._lock:
            current = self._committed(table, record_id)
            if current is None or current.get('version') != expected_version:
                raise StorageConflictError(f"Record {record_id} in {table} was modified concurrently")
            self._data.setdefault(table, {})[record_id] = record

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        record = self._visible(table, record_id)
        if record is not None:
            return self._copy(record)
        return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            records = dict(self._data.get(table, {}))
        txn = self._txn()
        if txn:
            for (staged_table, record_id), record in txn.writes.items():
                if staged_table == table:
                    records[record_id] = record
        return [self._copy(record) for record in records.values()]

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        return self._visible(table, record_id) is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        return [record for record in self.load_all(table) if _matches(record, filters)]

    def count(self, table: str) -> int:
        """Count records in table"""
        return len(self.load_all(table))

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass

    def begin_transaction(self) -> None:
        """Start (or join) this thread's transaction"""
        txn = self._txn()
        if txn is None:
            txn = _StagedTransaction()
            self._local.txn = txn
        txn.depth += 1

    def commit(self) -> None:
        """Validate expectations and apply staged writes"""
        txn = self._txn()
        if txn is None:
            return
        txn.depth -= 1
        if txn.depth > 0:
            return
        self._local.txn = None

        if txn.rollback_only:
            raise StorageError("Transaction was rolled back by a nested unit of work")

        with self._lock:
            for (table, record_id), expected in txn.expected.items():
                current = self._committed(table, record_id)
                if expected is _ABSENT:
                    if current is not None:
                        raise StorageConflictError(f"Record {record_id} already exists in {table}")
                elif current is None or current.get('version') != expected:
                    raise StorageConflictError(f"Record {record_id} in {table} was modified concurrently")

            for (table, record_id), record in txn.writes.items():
                self._data.setdefault(table, {})[record_id] = record

    def rollback(self) -> None:
        """Discard staged writes"""
        txn = self._txn()
        if txn is None:
            return
        txn.depth -= 1
        if txn.depth > 0:
            txn.rollback_only = True
            return
        self._local.txn = None


class SQLiteStorage(StorageInterface):
    """
    SQLite storage implementation for persistence

    A transaction holds the connection lock from begin to commit or rollback,
    so writers are serialized and reads from other threads wait for the
    outcome.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level='DEFERRED')
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._rollback_only = False
        self._tables: Set[str] = set()

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._execute("PRAGMA journal_mode = WAL")
                self._execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        try:
            return self._connection.execute(sql, params)
        except sqlite3.IntegrityError as e:
            raise StorageConflictError(str(e)) from e
        except sqlite3.Error as e:
            raise StorageUnavailableError(str(e)) from e

    def _commit_unless_in_transaction(self) -> None:
        if self._depth == 0:
            try:
                self._connection.commit()
            except sqlite3.Error as e:
                raise StorageUnavailableError(str(e)) from e

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        self._execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id TEXT PRIMARY KEY,
                data TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self._execute(f"""
            CREATE INDEX IF NOT EXISTS idx_{table}_created_at
            ON {table}(created_at)
        """)
        self._commit_unless_in_transaction()
        self._tables.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        with self._lock:
            self._ensure_table(table)

            now = datetime.now(timezone.utc).isoformat()
            data_json = json.dumps(data, default=str)

            # Use INSERT OR REPLACE to handle updates
            self._execute(f"""
                INSERT OR REPLACE INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?,
                    COALESCE((SELECT created_at FROM {table} WHERE id = ?), ?),
                    ?)
            """, (record_id, data_json, record_id, now, now))
            self._commit_unless_in_transaction()

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert a new record into SQLite"""
        with self._lock:
            self._ensure_table(table)

            now = datetime.now(timezone.utc).isoformat()
            self._execute(f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?, ?, ?)
            """, (record_id, json.dumps(data, default=str), now, now))
            self._commit_unless_in_transaction()

    def compare_and_swap(
        self,
        table: str,
        record_id: str,
        expected_version: int,
        data: Dict[str, Any]
    ) -> None:
        """Replace a record if its stored version is unchanged"""
        with self._lock:
            self._ensure_table(table)

            now = datetime.now(timezone.utc).isoformat()
            cursor = self._execute(f"""
                UPDATE {table} SET data = ?, updated_at = ?
                WHERE id = ? AND json_extract(data, '$.version') = ?
            """, (json.dumps(data, default=str), now, record_id, expected_version))
            if cursor.rowcount == 0:
                raise StorageConflictError(f"Record {record_id} in {table} was modified concurrently")
            self._commit_unless_in_transaction()

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            row = self._execute(f"""
                SELECT data FROM {table} WHERE id = ?
            """, (record_id,)).fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._execute(f"""
                SELECT data FROM {table} ORDER BY created_at
            """)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._execute(f"""
                SELECT 1 FROM {table} WHERE id = ? LIMIT 1
            """, (record_id,))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (simple JSON key matching)"""
        return [record for record in self.load_all(table) if _matches(record, filters)]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._execute(f"""
                SELECT COUNT(*) as count FROM {table}
            """)
            return cursor.fetchone()['count']

    def begin_transaction(self) -> None:
        """Start a database transaction, holding the connection lock"""
        self._lock.acquire()
        self._depth += 1

    def commit(self) -> None:
        """Commit current transaction"""
        if self._depth == 0:
            return
        try:
            self._depth -= 1
            if self._depth == 0:
                if self._rollback_only:
                    self._reset_transaction()
                    raise StorageError("Transaction was rolled back by a nested unit of work")
                try:
                    self._connection.commit()
                except sqlite3.Error as e:
                    self._reset_transaction()
                    raise StorageUnavailableError(str(e)) from e
        finally:
            self._lock.release()

    def rollback(self) -> None:
        """Rollback current transaction"""
        if self._depth == 0:
            return
        try:
            self._depth -= 1
            if self._depth == 0:
                self._reset_transaction()
            else:
                self._rollback_only = True
        finally:
            self._lock.release()

    def _reset_transaction(self) -> None:
        self._rollback_only = False
        # Tables created inside the transaction are rolled back too
        self._tables.clear()
        self._connection.rollback()

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None
