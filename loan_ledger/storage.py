"""
Storage Backend Module

Provides the abstract document-store interface the ledger depends on and
implementations for in-memory (testing) and SQLite (persistence).
All monetary values are stored as Decimal strings and every record carries an
integer version used for optimistic compare-and-swap writes.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple, Union
from decimal import Decimal
from datetime import date, datetime, timezone
from enum import Enum
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager

from .exceptions import ConflictError, DependencyError


def _serialize_value(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        return {key: _serialize_value(value) for key, value in result.items()}

    @staticmethod
    def parse_datetime(value: Union[str, datetime]) -> datetime:
        if isinstance(value, datetime):
            return value
        parsed = datetime.fromisoformat(value)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed

    @staticmethod
    def parse_date(value: Optional[Union[str, date]]) -> Optional[date]:
        if value is None or value == "":
            return None
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, date):
            return value
        return date.fromisoformat(value[:10])


# (field, (lower, upper)) inclusive bounds, None for an open end
RangeFilters = Dict[str, Tuple[Optional[Any], Optional[Any]]]


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record unconditionally"""
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
        """Find records matching equality filters"""
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
    def compare_and_swap(
        self,
        table: str,
        record_id: str,
        data: Dict[str, Any],
        expected_version: Optional[int]
    ) -> int:
        """
        Write a record only if its stored version matches expected_version.

        An expected_version of None means "insert, the record must not exist".

        Returns:
            The new version number (stored in data['version'])

        Raises:
            ConflictError: If another writer changed (or created) the record first
        """
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    def query(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        ranges: Optional[RangeFilters] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """
        Equality, range and order-by query.

        Range bounds compare stored values directly, so they are meant for
        ISO-8601 date/time fields and integers, not Decimal strings.
        """
        results = self.find(table, filters or {})

        for field_name, (lower, upper) in (ranges or {}).items():
            lower = _serialize_value(lower)
            upper = _serialize_value(upper)
            results = [
                r for r in results
                if r.get(field_name) is not None
                and (lower is None or r[field_name] >= lower)
                and (upper is None or r[field_name] <= upper)
            ]

        if order_by:
            present = [r for r in results if r.get(order_by) is not None]
            missing = [r for r in results if r.get(order_by) is None]
            present.sort(key=lambda r: r[order_by], reverse=descending)
            results = present + missing

        if limit is not None:
            results = results[:limit]
        return results

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


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._depth = 0
        # (table, record_id) -> record as it was before the open unit touched it
        self._undo: Dict[Tuple[str, str], Optional[Dict[str, Any]]] = {}

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}

    @staticmethod
    def _copy(data: Dict[str, Any]) -> Dict[str, Any]:
        # JSON round trip detaches the stored record from caller objects
        return json.loads(json.dumps(data, default=str))

    def _remember(self, table: str, record_id: str) -> None:
        if self._depth and (table, record_id) not in self._undo:
            self._undo[(table, record_id)] = self._data[table].get(record_id)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        with self._lock:
            self._ensure_table(table)
            self._remember(table, record_id)
            self._data[table][record_id] = self._copy(data)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record:
                return self._copy(record)
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            return [self._copy(record) for record in self._data[table].values()]

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
        filters = {k: _serialize_value(v) for k, v in filters.items()}
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
                    results.append(self._copy(record))
            return results

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            return len(self._data[table])

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._ensure_table(table)
            for record_id in list(self._data[table]):
                self._remember(table, record_id)
            self._data[table] = {}

    def compare_and_swap(
        self,
        table: str,
        record_id: str,
        data: Dict[str, Any],
        expected_version: Optional[int]
    ) -> int:
        """Versioned write under the store lock"""
        with self._lock:
            self._ensure_table(table)
            current = self._data[table].get(record_id)

            if expected_version is None:
                if current is not None:
                    raise ConflictError(f"{table}/{record_id} already exists",
                                        table=table, record_id=record_id)
                new_version = 1
            else:
                stored_version = current.get('version', 0) if current is not None else None
                if stored_version != expected_version:
                    raise ConflictError(
                        f"{table}/{record_id} changed concurrently "
                        f"(expected version {expected_version}, found {stored_version})",
                        table=table, record_id=record_id
                    )
                new_version = expected_version + 1

            self._remember(table, record_id)
            record = self._copy(data)
            record['version'] = new_version
            self._data[table][record_id] = record
            data['version'] = new_version
            return new_version

    @contextmanager
    def atomic(self):
        """
        All-or-nothing unit of work.

        Holds the store lock for the whole unit. Each record the unit touches
        is remembered once, and those records are put back if the block
        raises. Nested blocks join the outermost one.
        """
        with self._lock:
            self._depth += 1
            try:
                yield
            except Exception:
                if self._depth == 1:
                    self._restore()
                raise
            finally:
                if self._depth == 1:
                    self._undo = {}
                self._depth -= 1

    def _restore(self) -> None:
        for (table, record_id), record in self._undo.items():
            if record is None:
                self._data[table].pop(record_id, None)
            else:
                self._data[table][record_id] = record

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:", timeout: float = 5.0):
        self.db_path = str(db_path)
        # Set isolation_level to 'DEFERRED' to enable manual transaction control
        self._connection = sqlite3.connect(
            self.db_path, timeout=timeout, check_same_thread=False, isolation_level='DEFERRED'
        )
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._in_transaction = False
        self._depth = 0
        self._tables: set = set()

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

    @contextmanager
    def _store_call(self, table: str, action: str):
        """Report driver failures (locked database, I/O errors) as DependencyError"""
        try:
            yield
        except sqlite3.Error as e:
            raise DependencyError(
                f"SQLite {action} on {table} failed: {e}",
                operation=f"store:{table}", cause=e, action=action
            ) from e

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        with self._lock:
            self._connection.execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    data TEXT NOT NULL,
                    version INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            self._connection.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_created_at
                ON {table}(created_at)
            """)
            if not self._in_transaction:
                self._connection.commit()
            self._tables.add(table)

    def _maybe_commit(self) -> None:
        # Only commit if not in transaction
        if not self._in_transaction:
            self._connection.commit()

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        with self._lock, self._store_call(table, "save"):
            self._ensure_table(table)

            now = datetime.now(timezone.utc).isoformat()
            data_json = json.dumps(data, default=str)

            # Use INSERT OR REPLACE to handle updates
            self._connection.execute(f"""
                INSERT OR REPLACE INTO {table} (id, data, version, created_at, updated_at)
                VALUES (?, ?, ?,
                    COALESCE((SELECT created_at FROM {table} WHERE id = ?), ?),
                    ?)
            """, (record_id, data_json, int(data.get('version', 0)), record_id, now, now))
            self._maybe_commit()

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with self._lock, self._store_call(table, "load"):
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
        with self._lock, self._store_call(table, "load_all"):
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} ORDER BY created_at
            """)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from SQLite"""
        with self._lock, self._store_call(table, "delete"):
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                DELETE FROM {table} WHERE id = ?
            """, (record_id,))
            self._maybe_commit()
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock, self._store_call(table, "exists"):
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT 1 FROM {table} WHERE id = ? LIMIT 1
            """, (record_id,))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (simple JSON key matching)"""
        filters = {k: _serialize_value(v) for k, v in filters.items()}
        with self._lock, self._store_call(table, "find"):
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} ORDER BY created_at
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
        with self._lock, self._store_call(table, "count"):
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT COUNT(*) as count FROM {table}
            """)
            return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock, self._store_call(table, "clear_table"):
            self._ensure_table(table)
            self._connection.execute(f"DELETE FROM {table}")
            self._maybe_commit()

    def compare_and_swap(
        self,
        table: str,
        record_id: str,
        data: Dict[str, Any],
        expected_version: Optional[int]
    ) -> int:
        """Versioned write using a conditional UPDATE on the version column"""
        with self._lock, self._store_call(table, "compare_and_swap"):
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()

            if expected_version is None:
                new_version = 1
                payload = dict(data, version=new_version)
                try:
                    self._connection.execute(f"""
                        INSERT INTO {table} (id, data, version, created_at, updated_at)
                        VALUES (?, ?, ?, ?, ?)
                    """, (record_id, json.dumps(payload, default=str), new_version, now, now))
                except sqlite3.IntegrityError as e:
                    raise ConflictError(f"{table}/{record_id} already exists",
                                        table=table, record_id=record_id) from e
            else:
                new_version = expected_version + 1
                payload = dict(data, version=new_version)
                cursor = self._connection.execute(f"""
                    UPDATE {table} SET data = ?, version = ?, updated_at = ?
                    WHERE id = ? AND version = ?
                """, (json.dumps(payload, default=str), new_version, now, record_id, expected_version))
                if cursor.rowcount == 0:
                    raise ConflictError(
                        f"{table}/{record_id} changed concurrently (expected version {expected_version})",
                        table=table, record_id=record_id
                    )

            self._maybe_commit()
            data['version'] = new_version
            return new_version

    def begin_transaction(self) -> None:
        """Start a database transaction"""
        with self._lock:
            if not self._in_transaction:
                # SQLite with isolation_level='DEFERRED' automatically starts transactions
                # We just need to track the state
                self._in_transaction = True

    def commit(self) -> None:
        """Commit current transaction"""
        with self._lock:
            if self._in_transaction:
                with self._store_call("transaction", "commit"):
                    self._connection.commit()
                self._in_transaction = False

    def rollback(self) -> None:
        """Rollback current transaction"""
        with self._lock:
            if self._in_transaction:
                with self._store_call("transaction", "rollback"):
                    self._connection.rollback()
                self._in_transaction = False
                # DDL issued inside the transaction was rolled back too
                self._tables.clear()

    @contextmanager
    def atomic(self):
        """All-or-nothing unit of work; the connection lock is held until commit"""
        with self._lock:
            self._depth += 1
            if self._depth == 1:
                self.begin_transaction()
            try:
                yield
                if self._depth == 1:
                    self.commit()
            except Exception:
                if self._depth == 1:
                    self.rollback()
                raise
            finally:
                self._depth -= 1

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(backend: str = "memory", database_path: Union[str, Path] = ":memory:") -> StorageInterface:
    """Build a storage backend by name ("memory" or "sqlite")"""
    if backend == "memory":
        return InMemoryStorage()
    if backend == "sqlite":
        return SQLiteStorage(database_path)
    raise ValueError(f"Unknown storage backend: {backend}")
