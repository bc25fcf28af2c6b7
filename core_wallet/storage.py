"""
Storage Backend Module

Provides the transactional storage interface and implementations for in-memory
(testing), SQLite (single node persistence) and PostgreSQL (production).
All monetary values are stored as Decimal strings and timestamps as ISO strings.

Every read-modify-write goes through a Transaction handle. A handle that leaves
its scope without commit() is rolled back, so no exit path can leak a partial
write or hold a lock.
"""

from abc import ABC, abstractmethod
from typing import Dict, Iterable, Iterator, List, Optional, Any, Tuple, Union
from decimal import Decimal
from datetime import datetime
import sqlite3
import threading
from dataclasses import dataclass, asdict, field
from pathlib import Path
from contextlib import contextmanager
from urllib.parse import urlparse

from .errors import (
    StorageError, UniqueConstraintError, LockTimeoutError, StorageUnavailableError
)
from .logging_config import get_logger


logger = get_logger("core_wallet.storage")


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        for key, value in result.items():
            if isinstance(value, datetime):
                result[key] = value.isoformat()
            elif isinstance(value, Decimal):
                result[key] = str(value)
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageRecord':
        """Create instance from dictionary"""
        data = dict(data)
        # Convert ISO strings back to datetime objects
        if 'created_at' in data and isinstance(data['created_at'], str):
            data['created_at'] = datetime.fromisoformat(data['created_at'])
        if 'updated_at' in data and isinstance(data['updated_at'], str):
            data['updated_at'] = datetime.fromisoformat(data['updated_at'])

        return cls(**data)


@dataclass(frozen=True)
class Column:
    """Column description; every column is stored as text"""
    name: str
    nullable: bool = True
    unique: bool = False
    references: Optional[str] = None  # parent table, rows cascade on parent delete


@dataclass(frozen=True)
class TableSchema:
    """Table description shared by all backends. `id` is always the primary key."""
    name: str
    columns: Tuple[Column, ...] = field(default_factory=tuple)

    @property
    def column_names(self) -> Tuple[str, ...]:
        return ("id",) + tuple(c.name for c in self.columns)

    @property
    def unique_columns(self) -> Tuple[str, ...]:
        return tuple(c.name for c in self.columns if c.unique)

    @property
    def foreign_keys(self) -> Tuple[Column, ...]:
        return tuple(c for c in self.columns if c.references)


class Transaction(ABC):
    """
    Scoped transaction handle.

    Use as a context manager: leaving the block without commit() rolls back.
    All reads see committed data plus this transaction's own writes.
    """

    def __init__(self, storage: 'StorageInterface'):
        self.storage = storage
        self._closed = False

    def __enter__(self) -> 'Transaction':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if not self._closed:
            if exc_type is not None:
                logger.debug("transaction rolled back due to %s", exc_type.__name__)
            self.rollback()

    @property
    def closed(self) -> bool:
        return self._closed

    def _ensure_open(self) -> None:
        if self._closed:
            raise StorageError("Transaction is already closed")

    @abstractmethod
    def get(self, table: str, record_id: str, for_update: bool = False) -> Optional[Dict[str, Any]]:
        """Load one row by id, optionally taking its row lock first"""

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find rows whose columns equal the given values"""

    @abstractmethod
    def insert(self, table: str, data: Dict[str, Any]) -> None:
        """Insert a new row; raises UniqueConstraintError on duplicates"""

    @abstractmethod
    def update(self, table: str, record_id: str, fields: Dict[str, Any]) -> bool:
        """Update columns of one row; False if the row does not exist"""

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """Delete one row and every row referencing it"""

    @abstractmethod
    def lock(self, table: str, record_ids: Iterable[str]) -> None:
        """Take row locks in ascending id order"""

    @abstractmethod
    def count(self, table: str) -> int:
        """Count rows in table"""

    @abstractmethod
    def commit(self) -> None:
        """Commit and release all locks"""

    @abstractmethod
    def rollback(self) -> None:
        """Discard all writes and release all locks. Safe to call twice."""

    def find_one(self, table: str, filters: Dict[str, Any],
                 for_update: bool = False) -> Optional[Dict[str, Any]]:
        """Return the first matching row, if any"""
        rows = self.find(table, filters)
        if not rows:
            return None
        if for_update:
            return self.get(table, rows[0]['id'], for_update=True)
        return rows[0]


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    def __init__(self, schemas: Iterable[TableSchema], lock_timeout: float = 5.0):
        self.schemas: Dict[str, TableSchema] = {s.name: s for s in schemas}
        self.lock_timeout = lock_timeout
        for schema in self.schemas.values():
            for fk in schema.foreign_keys:
                if fk.references not in self.schemas:
                    raise StorageError(
                        f"{schema.name}.{fk.name} references unknown table {fk.references}"
                    )

    def schema(self, table: str) -> TableSchema:
        try:
            return self.schemas[table]
        except KeyError:
            raise StorageError(f"Unknown table: {table}")

    def check_columns(self, table: str, columns: Iterable[str]) -> TableSchema:
        schema = self.schema(table)
        unknown = set(columns) - set(schema.column_names)
        if unknown:
            raise StorageError(f"Unknown columns for {table}: {', '.join(sorted(unknown))}")
        return schema

    def children_of(self, table: str) -> List[Tuple[TableSchema, Column]]:
        """Tables (and their referencing column) that cascade from `table`"""
        return [
            (schema, fk)
            for schema in self.schemas.values()
            for fk in schema.foreign_keys
            if fk.references == table
        ]

    @abstractmethod
    def begin_transaction(self) -> Transaction:
        """Open a new transaction"""

    @contextmanager
    def atomic(self) -> Iterator[Transaction]:
        """Context manager for atomic operations: commit on success, rollback on any error"""
        tx = self.begin_transaction()
        try:
            yield tx
            if not tx.closed:
                tx.commit()
        except BaseException:
            tx.rollback()
            raise

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record outside of any caller transaction"""
        with self.atomic() as tx:
            return tx.get(table, record_id)

    def find_one(self, table: str, filters: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        with self.atomic() as tx:
            return tx.find_one(table, filters)

    def count(self, table: str) -> int:
        with self.atomic() as tx:
            return tx.count(table)

    def close(self) -> None:
        """Close storage connection (default no-op)"""
        pass


def _matches(row: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for key, value in filters.items():
        if key not in row or row[key] != value:
            return False
    return True


def _sort_key(row: Dict[str, Any]) -> Tuple[str, str]:
    return (row.get('created_at') or "", row['id'])


class InMemoryTransaction(Transaction):
    """Buffered transaction over InMemoryStorage with per-row locks"""

    def __init__(self, storage: 'InMemoryStorage'):
        super().__init__(storage)
        self.storage: InMemoryStorage = storage
        self._writes: Dict[str, Dict[str, Optional[Dict[str, Any]]]] = {}
        self._held: List[Tuple[str, str]] = []

    def _read(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        pending = self._writes.get(table, {})
        if record_id in pending:
            row = pending[record_id]
            return dict(row) if row is not None else None
        return self.storage._committed_row(table, record_id)

    def _view(self, table: str) -> List[Dict[str, Any]]:
        rows = {r['id']: r for r in self.storage._committed_rows(table)}
        for record_id, row in self._writes.get(table, {}).items():
            if row is None:
                rows.pop(record_id, None)
            else:
                rows[record_id] = dict(row)
        return sorted(rows.values(), key=_sort_key)

    def _check_unique(self, table: str, row: Dict[str, Any]) -> None:
        schema = self.storage.schema(table)
        for column in schema.unique_columns:
            value = row.get(column)
            if value is None:
                continue
            for other in self._view(table):
                if other['id'] != row['id'] and other.get(column) == value:
                    raise UniqueConstraintError(table, column)

    def _check_references(self, table: str, row: Dict[str, Any]) -> None:
        for fk in self.storage.schema(table).foreign_keys:
            parent_id = row.get(fk.name)
            if parent_id is not None and self._read(fk.references, parent_id) is None:
                raise StorageError(
                    f"{table}.{fk.name} references missing {fk.references} row"
                )

    def get(self, table: str, record_id: str, for_update: bool = False) -> Optional[Dict[str, Any]]:
        self._ensure_open()
        self.storage.schema(table)
        if for_update:
            self.lock(table, [record_id])
        return self._read(table, record_id)

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        self._ensure_open()
        self.storage.check_columns(table, filters)
        return [row for row in self._view(table) if _matches(row, filters)]

    def insert(self, table: str, data: Dict[str, Any]) -> None:
        self._ensure_open()
        schema = self.storage.check_columns(table, data)
        row = {name: data.get(name) for name in schema.column_names}
        if not row['id']:
            raise StorageError(f"Insert into {table} requires an id")
        self.lock(table, [row['id']])
        if self._read(table, row['id']) is not None:
            raise UniqueConstraintError(table, "id")
        for column in schema.columns:
            if not column.nullable and row.get(column.name) is None:
                raise StorageError(f"{table}.{column.name} may not be null")
        self._check_unique(table, row)
        self._check_references(table, row)
        self._writes.setdefault(table, {})[row['id']] = row

    def update(self, table: str, record_id: str, fields: Dict[str, Any]) -> bool:
        self._ensure_open()
        self.storage.check_columns(table, fields)
        if fields.get('id', record_id) != record_id:
            raise StorageError("Primary key is immutable")
        self.lock(table, [record_id])
        current = self._read(table, record_id)
        if current is None:
            return False
        updated = {**current, **fields}
        self._check_unique(table, updated)
        self._check_references(table, updated)
        self._writes.setdefault(table, {})[record_id] = updated
        return True

    def delete(self, table: str, record_id: str) -> bool:
        self._ensure_open()
        self.storage.schema(table)
        self.lock(table, [record_id])
        if self._read(table, record_id) is None:
            return False
        for child, fk in self.storage.children_of(table):
            for row in self.find(child.name, {fk.name: record_id}):
                self.delete(child.name, row['id'])
        self._writes.setdefault(table, {})[record_id] = None
        return True

    def lock(self, table: str, record_ids: Iterable[str]) -> None:
        self._ensure_open()
        for record_id in sorted(set(record_ids)):
            key = (table, record_id)
            if key in self._held:
                continue
            if not self.storage._acquire_row(key):
                raise LockTimeoutError(context={"table": table})
            self._held.append(key)

    def count(self, table: str) -> int:
        self._ensure_open()
        self.storage.schema(table)
        return len(self._view(table))

    def commit(self) -> None:
        self._ensure_open()
        try:
            self.storage._apply(self._writes)
        finally:
            self._close()

    def rollback(self) -> None:
        if self._closed:
            return
        self._close()

    def _close(self) -> None:
        self._writes = {}
        for key in reversed(self._held):
            self.storage._release_row(key)
        self._held = []
        self._closed = True


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self, schemas: Iterable[TableSchema], lock_timeout: float = 5.0):
        super().__init__(schemas, lock_timeout)
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {name: {} for name in self.schemas}
        self._commit_lock = threading.RLock()
        self._locks_guard = threading.Lock()
        # key -> [lock, number of transactions holding or waiting for it]
        self._row_locks: Dict[Tuple[str, str], List[Any]] = {}

    def begin_transaction(self) -> InMemoryTransaction:
        return InMemoryTransaction(self)

    def _acquire_row(self, key: Tuple[str, str]) -> bool:
        with self._locks_guard:
            entry = self._row_locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        if entry[0].acquire(timeout=self.lock_timeout):
            return True
        self._forget_row(key)
        return False

    def _release_row(self, key: Tuple[str, str]) -> None:
        with self._locks_guard:
            row_lock = self._row_locks[key][0]
        row_lock.release()
        self._forget_row(key)

    def _forget_row(self, key: Tuple[str, str]) -> None:
        with self._locks_guard:
            entry = self._row_locks[key]
            entry[1] -= 1
            if entry[1] == 0:
                del self._row_locks[key]

    def active_row_locks(self) -> int:
        """Number of rows currently locked or waited on"""
        with self._locks_guard:
            return len(self._row_locks)

    def _committed_row(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._commit_lock:
            row = self._data[table].get(record_id)
            return dict(row) if row is not None else None

    def _committed_rows(self, table: str) -> List[Dict[str, Any]]:
        with self._commit_lock:
            return [dict(row) for row in self._data[table].values()]

    def _apply(self, writes: Dict[str, Dict[str, Optional[Dict[str, Any]]]]) -> None:
        """Validate and apply a transaction's writes as one atomic step"""
        with self._commit_lock:
            for table, rows in writes.items():
                schema = self.schemas[table]
                for column in schema.unique_columns:
                    claimed: Dict[Any, str] = {}
                    for record_id, row in self._data[table].items():
                        if record_id in rows:
                            continue
                        if row.get(column) is not None:
                            claimed[row[column]] = record_id
                    for record_id, row in rows.items():
                        if row is None or row.get(column) is None:
                            continue
                        if row[column] in claimed and claimed[row[column]] != record_id:
                            raise UniqueConstraintError(table, column)
                        claimed[row[column]] = record_id
            for table, rows in writes.items():
                for record_id, row in rows.items():
                    if row is None:
                        self._data[table].pop(record_id, None)
                    else:
                        self._data[table][record_id] = dict(row)

    def get_all_data(self) -> Dict[str, Dict[str, Dict[str, Any]]]:
        """Get all committed data for debugging/inspection"""
        with self._commit_lock:
            return {table: {k: dict(v) for k, v in rows.items()} for table, rows in self._data.items()}


def _ddl(schema: TableSchema) -> List[str]:
    """CREATE statements for one table, valid for both SQLite and PostgreSQL"""
    lines = ["id TEXT PRIMARY KEY"]
    for column in schema.columns:
        parts = [column.name, "TEXT"]
        if not column.nullable:
            parts.append("NOT NULL")
        if column.unique:
            parts.append("UNIQUE")
        if column.references:
            parts.append(f"REFERENCES {column.references}(id) ON DELETE CASCADE")
        lines.append(" ".join(parts))
    body = ",\n    ".join(lines)
    statements = [f"CREATE TABLE IF NOT EXISTS {schema.name} (\n    {body}\n)"]
    for column in schema.foreign_keys:
        statements.append(
            f"CREATE INDEX IF NOT EXISTS idx_{schema.name}_{column.name} "
            f"ON {schema.name}({column.name})"
        )
    return statements


class SQLiteTransaction(Transaction):
    """
    SQLite transaction opened with BEGIN IMMEDIATE.

    The reserved lock taken at BEGIN serialises writers for the whole database,
    which subsumes row locking.
    """

    def __init__(self, storage: 'SQLiteStorage', connection: sqlite3.Connection,
                 release: Optional[threading.Lock] = None):
        super().__init__(storage)
        self.storage: SQLiteStorage = storage
        self._connection = connection
        self._release = release
        with self._translate_errors():
            self._connection.execute("BEGIN IMMEDIATE")

    @contextmanager
    def _translate_errors(self, table: Optional[str] = None):
        try:
            yield
        except sqlite3.IntegrityError as e:
            message = str(e)
            if message.startswith("UNIQUE constraint failed:"):
                target = message.split(":", 1)[1].strip().split(",")[0]
                failed_table, _, column = target.partition(".")
                raise UniqueConstraintError(failed_table or (table or ""), column or "id")
            raise StorageError(message)
        except sqlite3.OperationalError as e:
            message = str(e).lower()
            if "locked" in message or "busy" in message:
                raise LockTimeoutError()
            raise StorageError(str(e))
        except sqlite3.DatabaseError as e:
            raise StorageUnavailableError(str(e))

    def get(self, table: str, record_id: str, for_update: bool = False) -> Optional[Dict[str, Any]]:
        self._ensure_open()
        self.storage.schema(table)
        with self._translate_errors(table):
            row = self._connection.execute(
                f"SELECT * FROM {table} WHERE id = ?", (record_id,)
            ).fetchone()
        return dict(row) if row else None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        self._ensure_open()
        self.storage.check_columns(table, filters)
        where = " AND ".join(f"{key} = ?" for key in filters) or "1 = 1"
        with self._translate_errors(table):
            rows = self._connection.execute(
                f"SELECT * FROM {table} WHERE {where} ORDER BY created_at, id",
                tuple(filters.values())
            ).fetchall()
        return [dict(row) for row in rows]

    def insert(self, table: str, data: Dict[str, Any]) -> None:
        self._ensure_open()
        schema = self.storage.check_columns(table, data)
        columns = [name for name in schema.column_names if name in data]
        placeholders = ", ".join("?" for _ in columns)
        with self._translate_errors(table):
            self._connection.execute(
                f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})",
                tuple(data[name] for name in columns)
            )

    def update(self, table: str, record_id: str, fields: Dict[str, Any]) -> bool:
        self._ensure_open()
        self.storage.check_columns(table, fields)
        fields = {k: v for k, v in fields.items() if k != 'id'}
        if not fields:
            return self.get(table, record_id) is not None
        assignments = ", ".join(f"{key} = ?" for key in fields)
        with self._translate_errors(table):
            cursor = self._connection.execute(
                f"UPDATE {table} SET {assignments} WHERE id = ?",
                tuple(fields.values()) + (record_id,)
            )
        return cursor.rowcount > 0

    def delete(self, table: str, record_id: str) -> bool:
        self._ensure_open()
        self.storage.schema(table)
        with self._translate_errors(table):
            cursor = self._connection.execute(
                f"DELETE FROM {table} WHERE id = ?", (record_id,)
            )
        return cursor.rowcount > 0

    def lock(self, table: str, record_ids: Iterable[str]) -> None:
        self._ensure_open()
        self.storage.schema(table)

    def count(self, table: str) -> int:
        self._ensure_open()
        self.storage.schema(table)
        with self._translate_errors(table):
            return self._connection.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]

    def commit(self) -> None:
        self._ensure_open()
        try:
            with self._translate_errors():
                self._connection.execute("COMMIT")
        except Exception:
            self._finish(rollback=True)
            raise
        self._finish(rollback=False)

    def rollback(self) -> None:
        if self._closed:
            return
        self._finish(rollback=True)

    def _finish(self, rollback: bool) -> None:
        try:
            if rollback and self._connection.in_transaction:
                self._connection.execute("ROLLBACK")
        finally:
            self._closed = True
            if self._release is not None:
                self._release.release()
            else:
                self._connection.close()


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:",
                 schemas: Iterable[TableSchema] = (), lock_timeout: float = 5.0):
        super().__init__(schemas, lock_timeout)
        self.db_path = str(db_path)
        self._memory_connection: Optional[sqlite3.Connection] = None
        self._memory_lock = threading.Lock()

        if self.db_path == ":memory:":
            # One private database per connection, so share a single connection
            self._memory_connection = self._connect()
        else:
            connection = self._connect()
            try:
                # Enable WAL mode for better concurrent access
                connection.execute("PRAGMA journal_mode = WAL")
                connection.execute("PRAGMA synchronous = NORMAL")
            finally:
                connection.close()
        self._ensure_tables()

    def _connect(self) -> sqlite3.Connection:
        connection = sqlite3.connect(
            self.db_path,
            timeout=self.lock_timeout,
            isolation_level=None,  # We handle transactions manually
            check_same_thread=False
        )
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON")
        return connection

    def _ensure_tables(self) -> None:
        """Ensure tables exist with proper schema"""
        with self.atomic() as tx:
            for schema in self.schemas.values():
                for statement in _ddl(schema):
                    tx._connection.execute(statement)

    def begin_transaction(self) -> SQLiteTransaction:
        if self._memory_connection is not None:
            if not self._memory_lock.acquire(timeout=self.lock_timeout):
                raise LockTimeoutError()
            try:
                return SQLiteTransaction(self, self._memory_connection, release=self._memory_lock)
            except Exception:
                self._memory_lock.release()
                raise
        connection = self._connect()
        try:
            return SQLiteTransaction(self, connection)
        except Exception:
            connection.close()
            raise

    def close(self) -> None:
        """Close SQLite connection"""
        if self._memory_connection is not None:
            self._memory_connection.close()
            self._memory_connection = None


# PostgreSQL error classes (SQLSTATE) that mean "roll back and retry"
_PG_RETRYABLE_CODES = {
    "55P03",  # lock_not_available
    "40001",  # serialization_failure
    "40P01",  # deadlock_detected
    "57014",  # query_canceled (statement_timeout)
}


class PostgreSQLTransaction(Transaction):
    """READ COMMITTED transaction with explicit FOR UPDATE row locks"""

    def __init__(self, storage: 'PostgreSQLStorage', connection):
        super().__init__(storage)
        self.storage: PostgreSQLStorage = storage
        self._connection = connection
        timeout_ms = max(1, int(storage.lock_timeout * 1000))
        self._execute("SET LOCAL lock_timeout = %s", (f"{timeout_ms}ms",))

    def _execute(self, sql: str, params: Tuple = (), table: Optional[str] = None):
        psycopg2 = self.storage.psycopg2
        try:
            cursor = self._connection.cursor()
            cursor.execute(sql, params)
            return cursor
        except psycopg2.IntegrityError as e:
            if getattr(e, 'pgcode', None) == "23505":
                constraint = getattr(getattr(e, 'diag', None), 'constraint_name', None) or ""
                failed_table, column = self.storage.unique_constraint_target(constraint, table)
                raise UniqueConstraintError(failed_table, column)
            raise StorageError(str(e))
        except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
            if getattr(e, 'pgcode', None) in _PG_RETRYABLE_CODES:
                raise LockTimeoutError()
            raise StorageUnavailableError(str(e))
        except psycopg2.DatabaseError as e:
            if getattr(e, 'pgcode', None) in _PG_RETRYABLE_CODES:
                raise LockTimeoutError()
            raise StorageError(str(e))

    def get(self, table: str, record_id: str, for_update: bool = False) -> Optional[Dict[str, Any]]:
        self._ensure_open()
        self.storage.schema(table)
        suffix = " FOR UPDATE" if for_update else ""
        cursor = self._execute(f"SELECT * FROM {table} WHERE id = %s{suffix}", (record_id,), table)
        try:
            row = cursor.fetchone()
        finally:
            cursor.close()
        return dict(row) if row else None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        self._ensure_open()
        self.storage.check_columns(table, filters)
        where = " AND ".join(f"{key} = %s" for key in filters) or "TRUE"
        cursor = self._execute(
            f"SELECT * FROM {table} WHERE {where} ORDER BY created_at, id",
            tuple(filters.values()), table
        )
        try:
            return [dict(row) for row in cursor.fetchall()]
        finally:
            cursor.close()

    def insert(self, table: str, data: Dict[str, Any]) -> None:
        self._ensure_open()
        schema = self.storage.check_columns(table, data)
        columns = [name for name in schema.column_names if name in data]
        placeholders = ", ".join("%s" for _ in columns)
        cursor = self._execute(
            f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})",
            tuple(data[name] for name in columns), table
        )
        cursor.close()

    def update(self, table: str, record_id: str, fields: Dict[str, Any]) -> bool:
        self._ensure_open()
        self.storage.check_columns(table, fields)
        fields = {k: v for k, v in fields.items() if k != 'id'}
        if not fields:
            return self.get(table, record_id) is not None
        assignments = ", ".join(f"{key} = %s" for key in fields)
        cursor = self._execute(
            f"UPDATE {table} SET {assignments} WHERE id = %s",
            tuple(fields.values()) + (record_id,), table
        )
        try:
            return cursor.rowcount > 0
        finally:
            cursor.close()

    def delete(self, table: str, record_id: str) -> bool:
        self._ensure_open()
        self.storage.schema(table)
        cursor = self._execute(f"DELETE FROM {table} WHERE id = %s", (record_id,), table)
        try:
            return cursor.rowcount > 0
        finally:
            cursor.close()

    def lock(self, table: str, record_ids: Iterable[str]) -> None:
        self._ensure_open()
        self.storage.schema(table)
        for record_id in sorted(set(record_ids)):
            cursor = self._execute(
                f"SELECT id FROM {table} WHERE id = %s FOR UPDATE", (record_id,), table
            )
            cursor.close()

    def count(self, table: str) -> int:
        self._ensure_open()
        self.storage.schema(table)
        cursor = self._execute(f"SELECT COUNT(*) AS count FROM {table}", (), table)
        try:
            return cursor.fetchone()['count']
        finally:
            cursor.close()

    def commit(self) -> None:
        self._ensure_open()
        psycopg2 = self.storage.psycopg2
        try:
            self._connection.commit()
        except psycopg2.Error as e:
            self._finish(rollback=True)
            if getattr(e, 'pgcode', None) in _PG_RETRYABLE_CODES:
                raise LockTimeoutError()
            raise StorageUnavailableError(str(e))
        self._finish(rollback=False)

    def rollback(self) -> None:
        if self._closed:
            return
        self._finish(rollback=True)

    def _finish(self, rollback: bool) -> None:
        broken = False
        try:
            if rollback:
                self._connection.rollback()
        except self.storage.psycopg2.Error:
            broken = True
            logger.warning("rollback failed, discarding connection")
        finally:
            self._closed = True
            self.storage._release(self._connection, broken or bool(self._connection.closed))


class PostgreSQLStorage(StorageInterface):
    """PostgreSQL storage backend with ACID transaction support"""

    def __init__(self, connection_string: str, schemas: Iterable[TableSchema] = (),
                 lock_timeout: float = 5.0, pool_size: int = 5):
        super().__init__(schemas, lock_timeout)
        try:
            import psycopg2
            import psycopg2.extras
            import psycopg2.pool
            self.psycopg2 = psycopg2
            self.extras = psycopg2.extras
        except ImportError:
            raise ImportError("psycopg2 is required for PostgreSQL storage. Install with: pip install psycopg2-binary")

        self.connection_string = connection_string
        try:
            self._pool = psycopg2.pool.ThreadedConnectionPool(
                1, pool_size, connection_string,
                cursor_factory=self.extras.RealDictCursor
            )
        except psycopg2.OperationalError as e:
            raise StorageUnavailableError(str(e))
        self._ensure_tables()

    def unique_constraint_target(self, constraint: str, table: Optional[str]) -> Tuple[str, str]:
        """Map a PostgreSQL default constraint name (<table>_<column>_key) to its column"""
        for schema in self.schemas.values():
            for column in schema.unique_columns:
                if constraint == f"{schema.name}_{column}_key":
                    return schema.name, column
        if constraint.endswith("_pkey"):
            return constraint[:-len("_pkey")], "id"
        return table or "", constraint

    def _ensure_tables(self) -> None:
        """Ensure tables exist with proper schema"""
        with self.atomic() as tx:
            for schema in self.schemas.values():
                for statement in _ddl(schema):
                    tx._execute(statement).close()

    def begin_transaction(self) -> PostgreSQLTransaction:
        try:
            connection = self._pool.getconn()
        except self.psycopg2.pool.PoolError as e:
            raise StorageUnavailableError(str(e))
        connection.autocommit = False  # We handle transactions manually
        try:
            return PostgreSQLTransaction(self, connection)
        except Exception:
            self._release(connection, True)
            raise

    def _release(self, connection, broken: bool) -> None:
        if connection.closed or broken:
            self._pool.putconn(connection, close=True)
        else:
            self._pool.putconn(connection)

    def close(self) -> None:
        """Close PostgreSQL connection pool"""
        self._pool.closeall()


def storage_from_config(config, schemas: Iterable[TableSchema]) -> StorageInterface:
    """Select a storage backend from config.database_url"""
    url = config.database_url
    scheme = urlparse(url).scheme

    if scheme == "memory":
        return InMemoryStorage(schemas, lock_timeout=config.lock_timeout_seconds)
    if scheme == "sqlite":
        path = url[len("sqlite:///"):] if url.startswith("sqlite:///") else ":memory:"
        return SQLiteStorage(path or ":memory:", schemas, lock_timeout=config.lock_timeout_seconds)
    if scheme in ("postgresql", "postgres"):
        return PostgreSQLStorage(
            url, schemas,
            lock_timeout=config.lock_timeout_seconds,
            pool_size=config.database_pool_size
        )
    raise StorageError(f"Unsupported database_url scheme: {scheme or url}")
