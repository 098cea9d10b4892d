"""
Storage Backend Module

Provides the abstract document storage interface and implementations for
in-memory (testing) and SQLite (persistence). Every document carries a
version number that changes on each write; transactions record the versions
they read and commit only if none of them has moved. All monetary values
are stored as Decimal strings.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Tuple, Union
from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, asdict
from pathlib import Path
import sqlite3
import json
import threading

from .exceptions import TransactionConflictError


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


# (table, record_id) -> version observed by a transaction, None if absent
ReadSet = Dict[Tuple[str, str], Optional[int]]


@dataclass
class PendingWrite:
    """A write buffered by a transaction until commit"""
    table: str
    record_id: str
    kind: str  # "set", "update" or "delete"
    data: Optional[Dict[str, Any]] = None


_OPERATORS = ("in", "not_in", "lt", "lte", "gt", "gte", "ne")


def _split_filter_key(key: str) -> Tuple[str, str]:
    field, _, op = key.rpartition("__")
    if field and op in _OPERATORS:
        return field, op
    return key, "eq"


def matches_filters(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    """
    Check a record against query filters.

    Plain keys test equality. Suffixed keys select another operator:
    ``status__in``, ``status__not_in``, ``due_date__lt``, ``due_date__lte``,
    ``due_date__gt``, ``due_date__gte`` and ``status__ne``.
    """
    for key, expected in filters.items():
        field, op = _split_filter_key(key)
        if field not in record:
            return False
        actual = record[field]
        if op == "eq":
            ok = actual == expected
        elif op == "ne":
            ok = actual != expected
        elif op == "in":
            ok = actual in expected
        elif op == "not_in":
            ok = actual not in expected
        elif actual is None:
            ok = False
        elif op == "lt":
            ok = actual < expected
        elif op == "lte":
            ok = actual <= expected
        elif op == "gt":
            ok = actual > expected
        else:
            ok = actual >= expected
        if not ok:
            return False
    return True


def apply_query(
    rows: List[Tuple[Dict[str, Any], int]],
    filters: Optional[Dict[str, Any]] = None,
    order_by: Optional[str] = None,
    descending: bool = False,
    limit: Optional[int] = None
) -> List[Tuple[Dict[str, Any], int]]:
    """Filter, order and limit (document, version) rows"""
    if filters:
        rows = [row for row in rows if matches_filters(row[0], filters)]
    if order_by:
        # Documents missing the field sort last in either direction
        present = [row for row in rows if row[0].get(order_by) is not None]
        missing = [row for row in rows if row[0].get(order_by) is None]
        present.sort(key=lambda row: row[0][order_by], reverse=descending)
        rows = present + missing
    if limit is not None:
        rows = rows[:limit]
    return rows


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to storage"""
        pass

    @abstractmethod
    def load_versioned(self, table: str, record_id: str) -> Tuple[Optional[Dict[str, Any]], Optional[int]]:
        """Load a record together with its current version"""
        pass

    @abstractmethod
    def scan_versioned(self, table: str) -> List[Tuple[Dict[str, Any], int]]:
        """Load every record of a table with its version, in insertion order"""
        pass

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from storage"""
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
    def commit_changes(self, reads: ReadSet, writes: List[PendingWrite]) -> None:
        """
        Atomically validate a read set and apply buffered writes.

        Raises:
            TransactionConflictError: If any read document changed since it was read
        """
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        data, _ = self.load_versioned(table, record_id)
        return data

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        return [data for data, _ in self.scan_versioned(table)]

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        return self.load(table, record_id) is not None

    def find_versioned(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None
    ) -> List[Tuple[Dict[str, Any], int]]:
        """Find records matching filters, returning (record, version) pairs"""
        return apply_query(self.scan_versioned(table), filters, order_by, descending, limit)

    def find(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        return [data for data, _ in self.find_versioned(table, filters, order_by, descending, limit)]


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._versions: Dict[str, Dict[str, int]] = {}
        self._clock = 0
        self._lock = threading.RLock()

    def _ensure_table(self, table: str) -> None:
        if table not in self._data:
            self._data[table] = {}
            self._versions[table] = {}

    def _next_version(self) -> int:
        self._clock += 1
        return self._clock

    @staticmethod
    def _copy(data: Dict[str, Any]) -> Dict[str, Any]:
        # Deep copy to prevent external mutation
        return json.loads(json.dumps(data, default=str))

    def _put(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        self._ensure_table(table)
        self._data[table][record_id] = self._copy(data)
        self._versions[table][record_id] = self._next_version()

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        with self._lock:
            self._put(table, record_id, data)

    def load_versioned(self, table: str, record_id: str) -> Tuple[Optional[Dict[str, Any]], Optional[int]]:
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record is None:
                return None, None
            return self._copy(record), self._versions[table][record_id]

    def scan_versioned(self, table: str) -> List[Tuple[Dict[str, Any], int]]:
        with self._lock:
            self._ensure_table(table)
            return [
                (self._copy(record), self._versions[table][record_id])
                for record_id, record in self._data[table].items()
            ]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from memory"""
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                del self._data[table][record_id]
                del self._versions[table][record_id]
                return True
            return False

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            return len(self._data[table])

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._data[table] = {}
            self._versions[table] = {}

    def commit_changes(self, reads: ReadSet, writes: List[PendingWrite]) -> None:
        with self._lock:
            for (table, record_id), version in reads.items():
                self._ensure_table(table)
                if self._versions[table].get(record_id) != version:
                    raise TransactionConflictError(
                        f"Document {table}/{record_id} changed during transaction"
                    )

            # Resolve updates before touching anything so a failure leaves no partial writes
            resolved = []
            for write in writes:
                self._ensure_table(write.table)
                if write.kind == "update":
                    current = self._data[write.table].get(write.record_id)
                    if current is None:
                        raise ValueError(f"Cannot update missing document {write.table}/{write.record_id}")
                    merged = dict(current)
                    merged.update(write.data)
                    resolved.append(PendingWrite(write.table, write.record_id, "set", merged))
                else:
                    resolved.append(write)

            for write in resolved:
                if write.kind == "delete":
                    self._data[write.table].pop(write.record_id, None)
                    self._versions[write.table].pop(write.record_id, None)
                else:
                    self._put(write.table, write.record_id, write.data)

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        # Autocommit mode; commit_changes opens explicit IMMEDIATE transactions
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._tables: set = set()

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
                    version INTEGER NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            self._connection.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_created_at
                ON {table}(created_at)
            """)
            self._tables.add(table)

    def _put(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        self._ensure_table(table)
        now = datetime.now(timezone.utc).isoformat()
        data_json = json.dumps(data, default=str)
        self._connection.execute(f"""
            INSERT INTO {table} (id, data, version, created_at, updated_at)
            VALUES (?, ?, 1, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                data = excluded.data,
                version = {table}.version + 1,
                updated_at = excluded.updated_at
        """, (record_id, data_json, now, now))

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        with self._lock:
            self._put(table, record_id, data)

    def load_versioned(self, table: str, record_id: str) -> Tuple[Optional[Dict[str, Any]], Optional[int]]:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data, version FROM {table} WHERE id = ?
            """, (record_id,))
            row = cursor.fetchone()
            if row:
                return json.loads(row['data']), row['version']
            return None, None

    def scan_versioned(self, table: str) -> List[Tuple[Dict[str, Any], int]]:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data, version FROM {table} ORDER BY created_at, rowid
            """)
            return [(json.loads(row['data']), row['version']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                DELETE FROM {table} WHERE id = ?
            """, (record_id,))
            return cursor.rowcount > 0

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

    def commit_changes(self, reads: ReadSet, writes: List[PendingWrite]) -> None:
        with self._lock:
            for table in {table for table, _ in reads} | {write.table for write in writes}:
                self._ensure_table(table)

            self._connection.execute("BEGIN IMMEDIATE")
            try:
                for (table, record_id), version in reads.items():
                    row = self._connection.execute(
                        f"SELECT version FROM {table} WHERE id = ?", (record_id,)
                    ).fetchone()
                    current = row['version'] if row else None
                    if current != version:
                        raise TransactionConflictError(
                            f"Document {table}/{record_id} changed during transaction"
                        )

                for write in writes:
                    if write.kind == "delete":
                        self._connection.execute(
                            f"DELETE FROM {write.table} WHERE id = ?", (write.record_id,)
                        )
                    elif write.kind == "update":
                        row = self._connection.execute(
                            f"SELECT data FROM {write.table} WHERE id = ?", (write.record_id,)
                        ).fetchone()
                        if row is None:
                            raise ValueError(
                                f"Cannot update missing document {write.table}/{write.record_id}"
                            )
                        merged = json.loads(row['data'])
                        merged.update(write.data)
                        self._put(write.table, write.record_id, merged)
                    else:
                        self._put(write.table, write.record_id, write.data)

                self._connection.execute("COMMIT")
            except Exception:
                self._connection.execute("ROLLBACK")
                raise

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str) -> StorageInterface:
    """
    Create a storage backend from a database URL

    Supported: ``memory://`` and ``sqlite:///path/to.db`` (``sqlite://`` alone
    is an in-memory SQLite database).
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite://"):].lstrip("/") or ":memory:"
        if database_url.startswith("sqlite:////"):
            path = "/" + path
        return SQLiteStorage(path)
    raise ValueError(f"Unsupported database URL: {database_url}")
