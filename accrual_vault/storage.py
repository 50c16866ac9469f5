"""
Storage Backend Module

Provides the abstract storage interface and implementations for in-memory
(testing) and SQLite (persistence). Integer amounts are stored as strings so
values up to 2**256 survive every backend unchanged.
"""

from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional, Any, Tuple, Union
from datetime import datetime, timezone
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager


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

    def __init__(self):
        # One list of rollback callbacks per open atomic() level
        self._compensations: List[List[Callable[[], None]]] = []

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to storage"""
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
    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from storage"""
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
    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    def begin_transaction(self) -> None:
        """Start a (possibly nested) transaction (default no-op)"""
        pass

    def commit(self) -> None:
        """Commit the innermost transaction (default no-op)"""
        pass

    def rollback(self) -> None:
        """Roll back the innermost transaction (default no-op)"""
        pass

    @property
    def in_transaction(self) -> bool:
        """Whether a transaction is currently open"""
        return False

    def on_rollback(self, callback: Callable[[], None]) -> None:
        """
        Register an action that undoes a side effect outside storage

        The callback runs if the innermost open atomic block, or any block
        enclosing it, rolls back. It is dropped once the outermost block
        commits. Outside an atomic block nothing can roll back, so the
        callback is never run.
        """
        if self._compensations:
            self._compensations[-1].append(callback)

    @contextmanager
    def atomic(self):
        """Context manager for atomic operations; nested blocks act as savepoints"""
        self.begin_transaction()
        self._compensations.append([])
        try:
            yield
        except BaseException:
            pending = self._compensations.pop()
            try:
                _run_compensations(pending)
            finally:
                self.rollback()
            raise

        pending = self._compensations.pop()
        try:
            self.commit()
        except BaseException:
            _run_compensations(pending)
            raise
        if self._compensations:
            self._compensations[-1].extend(pending)


def _run_compensations(callbacks: List[Callable[[], None]]) -> None:
    for callback in reversed(callbacks):
        callback()


_MISSING = object()


class InMemoryStorage(StorageInterface):
    """
    In-memory storage implementation for testing

    Each open transaction level keeps an undo journal holding the prior value
    of every record it touches, so rollback restores only those records. The
    storage lock is held from the outermost begin until the matching commit
    or rollback, so concurrent callers are serialized per operation.
    """

    def __init__(self):
        super().__init__()
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._journals: List[Dict[Tuple[str, str], Any]] = []

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}

    def _remember(self, table: str, record_id: str) -> None:
        """Journal a record's prior value the first time this level touches it"""
        if not self._journals:
            return
        journal = self._journals[-1]
        key = (table, record_id)
        if key not in journal:
            journal[key] = self._data.get(table, {}).get(record_id, _MISSING)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        with self._lock:
            self._ensure_table(table)
            self._remember(table, record_id)
            # Deep copy to prevent external mutation
            self._data[table][record_id] = json.loads(json.dumps(data, default=str))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record:
                return json.loads(json.dumps(record))
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            return [json.loads(json.dumps(record)) for record in self._data[table].values()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from memory"""
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                self._remember(table, record_id)
                del self._data[table][record_id]
                return True
            return False

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            return record_id in self._data[table]

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        with self._lock:
            self._ensure_table(table)
            results = []
            for record in self._data[table].values():
                match = True
                for key, value in filters.items():
                    if key not in record or record[key] != value:
                        match = False
                        break
                if match:
                    results.append(json.loads(json.dumps(record)))
            return results

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            return len(self._data[table])

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            for record_id in self._data.get(table, {}):
                self._remember(table, record_id)
            self._data[table] = {}

    def begin_transaction(self) -> None:
        """Open a journal level; released by commit or rollback"""
        self._lock.acquire()
        self._journals.append({})

    def commit(self) -> None:
        """Keep the innermost level's changes, handing its journal to the enclosing level"""
        if not self._journals:
            return
        journal = self._journals.pop()
        if self._journals:
            parent = self._journals[-1]
            for key, prior in journal.items():
                parent.setdefault(key, prior)
        self._lock.release()

    def rollback(self) -> None:
        """Restore every record the innermost level touched"""
        if not self._journals:
            return
        journal = self._journals.pop()
        try:
            for (table, record_id), prior in journal.items():
                records = self._data.setdefault(table, {})
                if prior is _MISSING:
                    records.pop(record_id, None)
                else:
                    records[record_id] = prior
        finally:
            self._lock.release()

    @property
    def in_transaction(self) -> bool:
        return bool(self._journals)

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        super().__init__()
        self.db_path = str(db_path)
        # Autocommit mode; transactions are opened explicitly with BEGIN/SAVEPOINT
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._tables: set = set()

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        with self._lock:
            self._connection.execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    data TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            self._connection.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_created_at
                ON {table}(created_at)
            """)
            # Inside a transaction the table may vanish again on rollback
            if self._depth == 0:
                self._tables.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        with self._lock:
            self._ensure_table(table)

            now = datetime.now(timezone.utc).isoformat()
            data_json = json.dumps(data, default=str)

            # Use INSERT OR REPLACE to handle updates
            self._connection.execute(f"""
                INSERT OR REPLACE INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?,
                    COALESCE((SELECT created_at FROM {table} WHERE id = ?), ?),
                    ?)
            """, (record_id, data_json, record_id, now, now))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} WHERE id = ?
            """, (record_id,))
            row = cursor.fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} ORDER BY created_at, rowid
            """)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                DELETE FROM {table} WHERE id = ?
            """, (record_id,))
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT 1 FROM {table} WHERE id = ? LIMIT 1
            """, (record_id,))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (simple JSON key matching)"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} ORDER BY created_at, rowid
            """)

            results = []
            for row in cursor.fetchall():
                record = json.loads(row['data'])
                match = True
                for key, value in filters.items():
                    if key not in record or record[key] != value:
                        match = False
                        break
                if match:
                    results.append(record)

            return results

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT COUNT(*) as count FROM {table}
            """)
            return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._ensure_table(table)
            self._connection.execute(f"DELETE FROM {table}")

    def begin_transaction(self) -> None:
        """Start a transaction, or a savepoint when one is already open"""
        self._lock.acquire()
        try:
            if self._depth == 0:
                self._connection.execute("BEGIN")
            else:
                self._connection.execute(f"SAVEPOINT sp_{self._depth}")
        except sqlite3.Error:
            self._lock.release()
            raise
        self._depth += 1

    def commit(self) -> None:
        """
        Commit the innermost transaction level

        If SQLite refuses the COMMIT or RELEASE (for example "database is
        locked"), the level is rolled back instead and the error re-raised,
        so the lock and the nesting depth stay consistent.
        """
        if self._depth == 0:
            return
        level = self._depth - 1
        try:
            if level == 0:
                self._connection.execute("COMMIT")
            else:
                self._connection.execute(f"RELEASE SAVEPOINT sp_{level}")
        except sqlite3.Error:
            self.rollback()
            raise
        self._depth = level
        self._lock.release()

    def rollback(self) -> None:
        """Roll back the innermost transaction level"""
        if self._depth == 0:
            return
        self._depth -= 1
        try:
            # SQLite may already have rolled back on its own after an error
            if not self._connection.in_transaction:
                return
            if self._depth == 0:
                self._connection.execute("ROLLBACK")
            else:
                self._connection.execute(f"ROLLBACK TO SAVEPOINT sp_{self._depth}")
                self._connection.execute(f"RELEASE SAVEPOINT sp_{self._depth}")
        finally:
            self._lock.release()

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(config) -> StorageInterface:
    """Create the storage backend named by the configuration"""
    backend = config.storage_backend.lower()
    if backend == "memory":
        return InMemoryStorage()
    if backend == "sqlite":
        return SQLiteStorage(config.database_path)
    raise ValueError(f"Unknown storage backend: {config.storage_backend}")
