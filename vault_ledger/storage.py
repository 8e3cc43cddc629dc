"""
Storage Backend Module

Provides the abstract storage interface and implementations for in-memory
(testing), SQLite (single-file persistence) and PostgreSQL. Records are JSON
documents keyed by id; monetary values are stored as Decimal strings.

Every backend offers:
- all-or-nothing transactions (``atomic()``), scoped to the calling thread
- pessimistic row locks held until commit/rollback (``lock_for_update``)
- unique constraints on selected document fields
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union, Tuple
from decimal import Decimal
from datetime import datetime, timezone
import sqlite3
import json
import threading
import logging
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager

from .exceptions import StorageError, DuplicateRecordError, LockTimeoutError


logger = logging.getLogger(__name__)


# Unique document fields per table; None values never conflict
SCHEMA_UNIQUE_FIELDS: Dict[str, List[str]] = {
    "accounts": ["account_number"],
    "users": ["username", "auxiliary_user_id"],
    "system_keys": ["key_name"],
}

DEFAULT_LOCK_TIMEOUT = 10.0


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: int
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        # Convert datetime objects to ISO strings
        result['created_at'] = self.created_at.isoformat()
        result['updated_at'] = self.updated_at.isoformat()
        # Convert Decimal objects to strings
        for key, value in result.items():
            if isinstance(value, Decimal):
                result[key] = str(value)
        return result


def _copy(data: Any) -> Any:
    """Deep copy through JSON to prevent external mutation"""
    return json.loads(json.dumps(data, default=str))


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: Union[int, str], data: Dict[str, Any]) -> None:
        """Insert or replace a record"""
        pass

    @abstractmethod
    def insert(self, table: str, data: Dict[str, Any]) -> int:
        """
        Insert a new record under the next auto-increment id.

        The assigned id is written into the stored document as ``id``.

        Raises:
            DuplicateRecordError: If a unique field value is already taken
        """
        pass

    @abstractmethod
    def load(self, table: str, record_id: Union[int, str]) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table, oldest first"""
        pass

    @abstractmethod
    def delete(self, table: str, record_id: Union[int, str]) -> bool:
        """Delete a record from storage"""
        pass

    @abstractmethod
    def exists(self, table: str, record_id: Union[int, str]) -> bool:
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

    @abstractmethod
    def begin_transaction(self) -> None:
        """Start (or join) a transaction for the calling thread"""
        pass

    @abstractmethod
    def commit(self) -> None:
        """Commit the calling thread's transaction once the outermost level exits"""
        pass

    @abstractmethod
    def rollback(self) -> None:
        """Abort the calling thread's whole transaction and release its locks"""
        pass

    @abstractmethod
    def lock_for_update(self, table: str, record_id: Union[int, str]) -> Optional[Dict[str, Any]]:
        """
        Take an exclusive row lock and return the current record.

        Must be called inside a transaction; the lock is released by
        commit or rollback.
        """
        pass

    @property
    @abstractmethod
    def in_transaction(self) -> bool:
        """Whether the calling thread has an open transaction"""
        pass

    @contextmanager
    def atomic(self):
        """Context manager for atomic operations"""
        self.begin_transaction()
        try:
            yield
        except BaseException:
            try:
                self.rollback()
            except Exception:
                # Best effort: surface the original failure, not the rollback's
                logger.exception("Rollback failed")
            raise
        self.commit()


class _InMemoryTransaction:
    """Per-thread transaction state for InMemoryStorage"""

    def __init__(self):
        self.depth = 0
        self.writes: Dict[str, Dict[str, Optional[Dict[str, Any]]]] = {}
        self.row_locks: Dict[Tuple[str, str], threading.Lock] = {}


class InMemoryStorage(StorageInterface):
    """
    In-memory storage implementation for testing.

    Transactions buffer their writes and apply them on commit, so other
    threads never observe uncommitted data. Row locks are real per-row
    locks, which makes lock ordering between concurrent transactions
    observable in tests.
    """

    def __init__(
        self,
        unique_fields: Optional[Dict[str, List[str]]] = None,
        lock_timeout: Optional[float] = DEFAULT_LOCK_TIMEOUT
    ):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._sequences: Dict[str, int] = {}
        self._row_locks: Dict[Tuple[str, str], threading.Lock] = {}
        self._lock = threading.RLock()
        self._local = threading.local()
        self.unique_fields = SCHEMA_UNIQUE_FIELDS if unique_fields is None else unique_fields
        self.lock_timeout = lock_timeout

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}

    def _current(self) -> Optional[_InMemoryTransaction]:
        return getattr(self._local, "transaction", None)

    @property
    def in_transaction(self) -> bool:
        return self._current() is not None

    def _visible(self, table: str) -> Dict[str, Dict[str, Any]]:
        """Committed rows overlaid with the calling thread's pending writes"""
        self._ensure_table(table)
        rows = dict(self._data[table])
        transaction = self._current()
        if transaction:
            for record_id, data in transaction.writes.get(table, {}).items():
                if data is None:
                    rows.pop(record_id, None)
                else:
                    rows[record_id] = data
        return rows

    def _check_unique(self, table: str, record_id: str, data: Dict[str, Any],
                      rows: Dict[str, Dict[str, Any]]) -> None:
        for field_name in self.unique_fields.get(table, []):
            value = data.get(field_name)
            if value is None:
                continue
            for other_id, other in rows.items():
                if other_id != record_id and other.get(field_name) == value:
                    raise DuplicateRecordError(
                        f"Duplicate value for {table}.{field_name}"
                    )

    def _write(self, table: str, record_id: str, data: Optional[Dict[str, Any]]) -> None:
        """Apply a write directly or buffer it in the open transaction"""
        transaction = self._current()
        if transaction:
            transaction.writes.setdefault(table, {})[record_id] = data
        elif data is None:
            self._data[table].pop(record_id, None)
        else:
            self._data[table][record_id] = data

    def save(self, table: str, record_id: Union[int, str], data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        key = str(record_id)
        with self._lock:
            rows = self._visible(table)
            self._check_unique(table, key, data, rows)
            self._write(table, key, _copy(data))

    def insert(self, table: str, data: Dict[str, Any]) -> int:
        """Insert a record under the next sequence value"""
        with self._lock:
            rows = self._visible(table)
            # Sequence values are never reused, even after a rollback
            record_id = self._sequences.get(table, 0) + 1
            self._sequences[table] = record_id
            record = _copy(data)
            record['id'] = record_id
            self._check_unique(table, str(record_id), record, rows)
            self._write(table, str(record_id), record)
            return record_id

    def load(self, table: str, record_id: Union[int, str]) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        with self._lock:
            record = self._visible(table).get(str(record_id))
            if record:
                return _copy(record)
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            return [_copy(record) for record in self._visible(table).values()]

    def delete(self, table: str, record_id: Union[int, str]) -> bool:
        """Delete a record from memory"""
        key = str(record_id)
        with self._lock:
            if key in self._visible(table):
                self._write(table, key, None)
                return True
            return False

    def exists(self, table: str, record_id: Union[int, str]) -> bool:
        """Check if a record exists"""
        with self._lock:
            return str(record_id) in self._visible(table)

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        with self._lock:
            results = []
            for record in self._visible(table).values():
                match = True
                for key, value in filters.items():
                    if key not in record or record[key] != value:
                        match = False
                        break
                if match:
                    results.append(_copy(record))
            return results

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            return len(self._visible(table))

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._data[table] = {}

    def begin_transaction(self) -> None:
        """Start or join the calling thread's transaction"""
        transaction = self._current()
        if transaction is None:
            transaction = _InMemoryTransaction()
            self._local.transaction = transaction
        transaction.depth += 1

    def commit(self) -> None:
        """Apply buffered writes once the outermost transaction level commits"""
        transaction = self._current()
        if transaction is None:
            return
        transaction.depth -= 1
        if transaction.depth > 0:
            return

        try:
            with self._lock:
                # Re-check unique fields against rows other threads committed meanwhile
                for table, writes in transaction.writes.items():
                    self._ensure_table(table)
                    merged = dict(self._data[table])
                    for record_id, data in writes.items():
                        if data is None:
                            merged.pop(record_id, None)
                        else:
                            merged[record_id] = data
                    for record_id, data in writes.items():
                        if data is not None:
                            self._check_unique(table, record_id, data, merged)

                for table, writes in transaction.writes.items():
                    for record_id, data in writes.items():
                        if data is None:
                            self._data[table].pop(record_id, None)
                        else:
                            self._data[table][record_id] = data
        finally:
            self._end(transaction)

    def rollback(self) -> None:
        """Discard buffered writes and release row locks"""
        transaction = self._current()
        if transaction is None:
            return
        self._end(transaction)

    def _end(self, transaction: _InMemoryTransaction) -> None:
        self._local.transaction = None
        for row_lock in transaction.row_locks.values():
            row_lock.release()
        transaction.row_locks.clear()
        transaction.writes.clear()

    def lock_for_update(self, table: str, record_id: Union[int, str]) -> Optional[Dict[str, Any]]:
        """Block until the row lock is ours, then return the row"""
        transaction = self._current()
        if transaction is None:
            raise StorageError("lock_for_update requires an open transaction")

        key = (table, str(record_id))
        if key not in transaction.row_locks:
            with self._lock:
                row_lock = self._row_locks.setdefault(key, threading.Lock())

            timeout = -1 if self.lock_timeout is None else self.lock_timeout
            if not row_lock.acquire(timeout=timeout):
                raise LockTimeoutError(f"Timed out waiting for lock on {table} row {record_id}")
            transaction.row_locks[key] = row_lock

        return self.load(table, record_id)

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


class SQLiteStorage(StorageInterface):
    """
    SQLite storage implementation for persistence.

    SQLite has no row-level locks. A transaction holds the connection lock
    from BEGIN IMMEDIATE to COMMIT/ROLLBACK, which serializes writers at
    database granularity.
    """

    def __init__(
        self,
        db_path: Union[str, Path] = ":memory:",
        unique_fields: Optional[Dict[str, List[str]]] = None,
        lock_timeout: Optional[float] = DEFAULT_LOCK_TIMEOUT
    ):
        self.db_path = str(db_path)
        self.unique_fields = SCHEMA_UNIQUE_FIELDS if unique_fields is None else unique_fields
        self.lock_timeout = lock_timeout
        # Autocommit mode; transactions are opened explicitly with BEGIN IMMEDIATE
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._tx_owner: Optional[int] = None
        self._tx_depth = 0
        self._tables: set = set()

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")

    @property
    def in_transaction(self) -> bool:
        return self._tx_owner == threading.get_ident()

    def _execute(self, sql: str, params: Tuple = ()) -> sqlite3.Cursor:
        try:
            return self._connection.execute(sql, params)
        except sqlite3.IntegrityError as e:
            raise DuplicateRecordError(str(e)) from e
        except sqlite3.Error as e:
            raise StorageError(f"SQLite error: {e}") from e

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema and unique indexes"""
        if table in self._tables:
            return
        with self._lock:
            self._execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    data TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            # Create index on timestamps for better query performance
            self._execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_created_at
                ON {table}(created_at)
            """)
            for field_name in self.unique_fields.get(table, []):
                self._execute(f"""
                    CREATE UNIQUE INDEX IF NOT EXISTS ux_{table}_{field_name}
                    ON {table}(json_extract(data, '$.{field_name}'))
                """)
            # DDL issued inside a transaction may still be rolled back
            if not self.in_transaction:
                self._tables.add(table)

    def save(self, table: str, record_id: Union[int, str], data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        with self._lock:
            self._ensure_table(table)

            now = datetime.now(timezone.utc).isoformat()
            data_json = json.dumps(data, default=str)

            # Update in place first so a row never conflicts with its own unique values
            cursor = self._execute(f"""
                UPDATE {table} SET data = ?, updated_at = ? WHERE id = ?
            """, (data_json, now, str(record_id)))
            if cursor.rowcount == 0:
                self._execute(f"""
                    INSERT INTO {table} (id, data, created_at, updated_at)
                    VALUES (?, ?, ?, ?)
                """, (str(record_id), data_json, now, now))

    def insert(self, table: str, data: Dict[str, Any]) -> int:
        """Insert a record under MAX(id) + 1"""
        with self._lock:
            self._ensure_table(table)

            row = self._execute(f"""
                SELECT COALESCE(MAX(CAST(id AS INTEGER)), 0) + 1 AS next_id FROM {table}
            """).fetchone()
            record_id = int(row['next_id'])

            record = dict(data)
            record['id'] = record_id
            now = datetime.now(timezone.utc).isoformat()
            self._execute(f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?, ?, ?)
            """, (str(record_id), json.dumps(record, default=str), now, now))
            return record_id

    def load(self, table: str, record_id: Union[int, str]) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._execute(f"""
                SELECT data FROM {table} WHERE id = ?
            """, (str(record_id),))
            row = cursor.fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._execute(f"""
                SELECT data FROM {table} ORDER BY created_at, rowid
            """)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: Union[int, str]) -> bool:
        """Delete a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._execute(f"""
                DELETE FROM {table} WHERE id = ?
            """, (str(record_id),))
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: Union[int, str]) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._execute(f"""
                SELECT 1 FROM {table} WHERE id = ? LIMIT 1
            """, (str(record_id),))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (simple JSON key matching)"""
        results = []
        for record in self.load_all(table):
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
            cursor = self._execute(f"""
                SELECT COUNT(*) as count FROM {table}
            """)
            return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._ensure_table(table)
            self._execute(f"DELETE FROM {table}")

    def begin_transaction(self) -> None:
        """Start a database transaction, holding the connection until it ends"""
        if self.in_transaction:
            self._tx_depth += 1
            return

        timeout = -1 if self.lock_timeout is None else self.lock_timeout
        if not self._lock.acquire(timeout=timeout):
            raise LockTimeoutError("Timed out waiting for the SQLite connection")
        try:
            self._execute("BEGIN IMMEDIATE")
        except Exception:
            self._lock.release()
            raise
        self._tx_owner = threading.get_ident()
        self._tx_depth = 1

    def commit(self) -> None:
        """Commit current transaction"""
        if not self.in_transaction:
            return
        self._tx_depth -= 1
        if self._tx_depth > 0:
            return
        try:
            self._execute("COMMIT")
        except Exception:
            self._connection.rollback()
            raise
        finally:
            self._finish()

    def rollback(self) -> None:
        """Rollback current transaction"""
        if not self.in_transaction:
            return
        try:
            self._execute("ROLLBACK")
        finally:
            self._finish()

    def _finish(self) -> None:
        self._tx_owner = None
        self._tx_depth = 0
        self._lock.release()

    def lock_for_update(self, table: str, record_id: Union[int, str]) -> Optional[Dict[str, Any]]:
        """Read a row inside the write transaction (the whole database is locked)"""
        if not self.in_transaction:
            raise StorageError("lock_for_update requires an open transaction")
        return self.load(table, record_id)

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


class PostgreSQLStorage(StorageInterface):
    """
    PostgreSQL storage backend with ACID transaction support.

    Row locks use SELECT ... FOR UPDATE. The single connection is held by
    one thread for the duration of its transaction.
    """

    def __init__(
        self,
        connection_string: str,
        unique_fields: Optional[Dict[str, List[str]]] = None,
        lock_timeout: Optional[float] = DEFAULT_LOCK_TIMEOUT
    ):
        try:
            import psycopg2
            import psycopg2.errors
            import psycopg2.extras
            self.psycopg2 = psycopg2
            self.extras = psycopg2.extras
        except ImportError:
            raise ImportError("psycopg2 is required for PostgreSQL storage. Install with: pip install psycopg2-binary")

        self.connection_string = connection_string
        self.unique_fields = SCHEMA_UNIQUE_FIELDS if unique_fields is None else unique_fields
        self.lock_timeout = lock_timeout
        self._connection = None
        self._lock = threading.RLock()
        self._tx_owner: Optional[int] = None
        self._tx_depth = 0
        self._tables: set = set()
        self._connect()

    def _connect(self) -> None:
        """Establish database connection"""
        with self._lock:
            try:
                self._connection = self.psycopg2.connect(
                    self.connection_string,
                    cursor_factory=self.extras.RealDictCursor
                )
            except self.psycopg2.Error as e:
                raise StorageError(f"PostgreSQL connection failed: {e}") from e
            self._connection.autocommit = False  # We handle transactions manually
            if self.lock_timeout is not None:
                with self._connection.cursor() as cursor:
                    cursor.execute("SET lock_timeout = %s", (f"{int(self.lock_timeout * 1000)}ms",))
                self._connection.commit()

    @property
    def in_transaction(self) -> bool:
        return self._tx_owner == threading.get_ident()

    def _run(self, sql: str, params: Any = None, fetch: Optional[str] = None) -> Any:
        """Execute a statement, committing immediately outside a transaction"""
        with self._lock:
            cursor = self._connection.cursor()
            try:
                cursor.execute(sql, params)
                if fetch == "one":
                    result = cursor.fetchone()
                elif fetch == "all":
                    result = cursor.fetchall()
                else:
                    result = cursor.rowcount
                if not self.in_transaction:
                    self._connection.commit()
                return result
            except self.psycopg2.Error as e:
                if not self.in_transaction:
                    self._connection.rollback()
                if isinstance(e, self.psycopg2.errors.UniqueViolation):
                    raise DuplicateRecordError(str(e)) from e
                if isinstance(e, self.psycopg2.errors.LockNotAvailable):
                    raise LockTimeoutError(str(e)) from e
                raise StorageError(f"PostgreSQL error: {e}") from e
            finally:
                cursor.close()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        self._run(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id TEXT PRIMARY KEY,
                data JSONB NOT NULL,
                created_at TIMESTAMP DEFAULT NOW(),
                updated_at TIMESTAMP DEFAULT NOW()
            )
        """)
        self._run(f"""
            CREATE INDEX IF NOT EXISTS idx_{table}_created_at
            ON {table}(created_at)
        """)
        for field_name in self.unique_fields.get(table, []):
            self._run(f"""
                CREATE UNIQUE INDEX IF NOT EXISTS ux_{table}_{field_name}
                ON {table} ((data ->> '{field_name}'))
            """)
        if not self.in_transaction:
            self._tables.add(table)

    def save(self, table: str, record_id: Union[int, str], data: Dict[str, Any]) -> None:
        """Save a record to PostgreSQL using UPSERT"""
        self._ensure_table(table)
        now = datetime.now(timezone.utc)
        self._run(f"""
            INSERT INTO {table} (id, data, created_at, updated_at)
            VALUES (%s, %s, %s, %s)
            ON CONFLICT (id) DO UPDATE SET
                data = EXCLUDED.data,
                updated_at = EXCLUDED.updated_at
        """, (str(record_id), json.dumps(data, default=str), now, now))

    def insert(self, table: str, data: Dict[str, Any]) -> int:
        """Insert a record under MAX(id) + 1"""
        self._ensure_table(table)
        with self._lock:
            row = self._run(f"""
                SELECT COALESCE(MAX(id::bigint), 0) + 1 AS next_id FROM {table}
            """, fetch="one")
            record_id = int(row['next_id'])
            record = dict(data)
            record['id'] = record_id
            now = datetime.now(timezone.utc)
            self._run(f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (%s, %s, %s, %s)
            """, (str(record_id), json.dumps(record, default=str), now, now))
            return record_id

    def load(self, table: str, record_id: Union[int, str]) -> Optional[Dict[str, Any]]:
        """Load a record from PostgreSQL"""
        self._ensure_table(table)
        row = self._run(f"SELECT data FROM {table} WHERE id = %s", (str(record_id),), fetch="one")
        if row:
            return dict(row['data'])
        return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        self._ensure_table(table)
        rows = self._run(f"SELECT data FROM {table} ORDER BY created_at, id", fetch="all")
        return [dict(row['data']) for row in rows]

    def delete(self, table: str, record_id: Union[int, str]) -> bool:
        """Delete a record from PostgreSQL"""
        self._ensure_table(table)
        return self._run(f"DELETE FROM {table} WHERE id = %s", (str(record_id),)) > 0

    def exists(self, table: str, record_id: Union[int, str]) -> bool:
        """Check if a record exists"""
        self._ensure_table(table)
        row = self._run(f"SELECT 1 FROM {table} WHERE id = %s LIMIT 1", (str(record_id),), fetch="one")
        return row is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters using JSONB containment"""
        self._ensure_table(table)
        if not filters:
            return self.load_all(table)
        rows = self._run(f"""
            SELECT data FROM {table}
            WHERE data @> %s::jsonb
            ORDER BY created_at, id
        """, (json.dumps(filters, default=str),), fetch="all")
        return [dict(row['data']) for row in rows]

    def count(self, table: str) -> int:
        """Count records in table"""
        self._ensure_table(table)
        return self._run(f"SELECT COUNT(*) AS count FROM {table}", fetch="one")['count']

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        self._ensure_table(table)
        self._run(f"DELETE FROM {table}")

    def begin_transaction(self) -> None:
        """Start a database transaction"""
        if self.in_transaction:
            self._tx_depth += 1
            return
        timeout = -1 if self.lock_timeout is None else self.lock_timeout
        if not self._lock.acquire(timeout=timeout):
            raise LockTimeoutError("Timed out waiting for the PostgreSQL connection")
        # PostgreSQL transactions start implicitly with the first statement
        self._tx_owner = threading.get_ident()
        self._tx_depth = 1

    def commit(self) -> None:
        """Commit current transaction"""
        if not self.in_transaction:
            return
        self._tx_depth -= 1
        if self._tx_depth > 0:
            return
        try:
            self._connection.commit()
        except self.psycopg2.Error as e:
            self._connection.rollback()
            raise StorageError(f"Commit failed: {e}") from e
        finally:
            self._finish()

    def rollback(self) -> None:
        """Rollback current transaction"""
        if not self.in_transaction:
            return
        try:
            self._connection.rollback()
        finally:
            self._finish()

    def _finish(self) -> None:
        self._tx_owner = None
        self._tx_depth = 0
        self._lock.release()

    def lock_for_update(self, table: str, record_id: Union[int, str]) -> Optional[Dict[str, Any]]:
        """SELECT ... FOR UPDATE inside the current transaction"""
        if not self.in_transaction:
            raise StorageError("lock_for_update requires an open transaction")
        self._ensure_table(table)
        row = self._run(f"SELECT data FROM {table} WHERE id = %s FOR UPDATE",
                        (str(record_id),), fetch="one")
        if row:
            return dict(row['data'])
        return None

    def close(self) -> None:
        """Close PostgreSQL connection"""
        with self._lock:
            if self._connection:
                try:
                    self._connection.close()
                except self.psycopg2.Error:
                    logger.warning("Error while closing PostgreSQL connection", exc_info=True)
                self._connection = None
