"""
Storage Backend Module

Provides the abstract storage interface and implementations for in-memory
(testing), SQLite (single node persistence) and PostgreSQL.

Besides plain keyed save/load, every backend offers the primitives the ledger
relies on for race safety:

- insert(): unique-keyed insert, raises DuplicateRecordError atomically
- update_where(): compare-and-set on a record's fields
- next_sequence(): monotonically increasing integer ids
- atomic(): nestable unit of work (nested blocks become savepoints)
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union
from decimal import Decimal
from datetime import date, datetime, timezone
from enum import Enum
import copy
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager

from .errors import DuplicateRecordError, StorageFailure, InvalidRequest


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: Union[int, str]
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        for key, value in result.items():
            if isinstance(value, (datetime, date)):
                result[key] = value.isoformat()
            elif isinstance(value, Decimal):
                result[key] = str(value)
            elif isinstance(value, Enum):
                result[key] = value.value
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
        """Save (upsert) a record"""
        pass

    @abstractmethod
    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert a new record; raises DuplicateRecordError if the id is taken"""
        pass

    @abstractmethod
    def update_where(self, table: str, record_id: str,
                     expected: Dict[str, Any], changes: Dict[str, Any]) -> bool:
        """Apply changes only if every expected field still matches; returns True if applied"""
        pass

    @abstractmethod
    def next_sequence(self, name: str) -> int:
        """Return the next value of a named counter, starting at 1"""
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
        """Find records whose fields equal every filter value"""
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
        """Context manager for atomic operations; nested blocks join the outer one"""
        self.begin_transaction()
        try:
            yield
        except BaseException:
            self.rollback()
            raise
        self.commit()


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for key, value in filters.items():
        if key not in record or record[key] != value:
            return False
    return True


class InMemoryStorage(StorageInterface):
    """
    In-memory storage implementation for testing.

    A unit of work holds the storage lock from begin to commit/rollback, so
    concurrent units of work are serialized. Each nesting level keeps a
    snapshot to restore on rollback.
    """

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._sequences: Dict[str, int] = {}
        self._lock = threading.RLock()
        self._snapshots: List[Any] = []

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}

    @staticmethod
    def _copy(data: Dict[str, Any]) -> Dict[str, Any]:
        # JSON round trip prevents external mutation and mirrors what the SQL backends return
        return json.loads(json.dumps(data, default=str))

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            self._data[table][record_id] = self._copy(data)

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                raise DuplicateRecordError(table, record_id)
            self._data[table][record_id] = self._copy(data)

    def update_where(self, table: str, record_id: str,
                     expected: Dict[str, Any], changes: Dict[str, Any]) -> bool:
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record is None or not _matches(record, expected):
                return False
            record.update(self._copy(changes))
            return True

    def next_sequence(self, name: str) -> int:
        with self._lock:
            value = self._sequences.get(name, 0) + 1
            self._sequences[name] = value
            return value

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record:
                return self._copy(record)
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            return [self._copy(record) for record in self._data[table].values()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                del self._data[table][record_id]
                return True
            return False

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            return record_id in self._data[table]

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            return [
                self._copy(record) for record in self._data[table].values()
                if _matches(record, filters)
            ]

    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            return len(self._data[table])

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._data[table] = {}

    def begin_transaction(self) -> None:
        self._lock.acquire()
        self._snapshots.append((copy.deepcopy(self._data), dict(self._sequences)))

    def commit(self) -> None:
        if not self._snapshots:
            return
        self._snapshots.pop()
        self._lock.release()

    def rollback(self) -> None:
        if not self._snapshots:
            return
        self._data, self._sequences = self._snapshots.pop()
        self._lock.release()

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


class SQLiteStorage(StorageInterface):
    """
    SQLite storage implementation for persistence.

    The connection runs in autocommit mode; atomic() issues BEGIN IMMEDIATE for
    the outermost block and SAVEPOINTs for nested ones.
    """

    SEQUENCE_TABLE = "ledger_sequences"

    def __init__(self, db_path: Union[str, Path] = ":memory:", timeout: float = 30.0):
        self.db_path = str(db_path)
        self._connection = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None, timeout=timeout
        )
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._execute("PRAGMA journal_mode = WAL")
                self._execute("PRAGMA synchronous = NORMAL")

        self._execute(f"""
            CREATE TABLE IF NOT EXISTS {self.SEQUENCE_TABLE} (
                name TEXT PRIMARY KEY,
                value INTEGER NOT NULL
            )
        """)

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        try:
            return self._connection.execute(sql, params)
        except sqlite3.OperationalError as e:
            raise StorageFailure("SQLite operation failed", str(e)) from e

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
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

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            data_json = json.dumps(data, default=str)
            self._execute(f"""
                INSERT OR REPLACE INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?,
                    COALESCE((SELECT created_at FROM {table} WHERE id = ?), ?),
                    ?)
            """, (record_id, data_json, record_id, now, now))

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            try:
                self._execute(f"""
                    INSERT INTO {table} (id, data, created_at, updated_at)
                    VALUES (?, ?, ?, ?)
                """, (record_id, json.dumps(data, default=str), now, now))
            except sqlite3.IntegrityError as e:
                raise DuplicateRecordError(table, record_id) from e

    def update_where(self, table: str, record_id: str,
                     expected: Dict[str, Any], changes: Dict[str, Any]) -> bool:
        with self.atomic():
            self._ensure_table(table)
            row = self._execute(f"SELECT data FROM {table} WHERE id = ?", (record_id,)).fetchone()
            if row is None:
                return False
            record = json.loads(row['data'])
            if not _matches(record, expected):
                return False
            record.update(json.loads(json.dumps(changes, default=str)))
            self._execute(f"""
                UPDATE {table} SET data = ?, updated_at = ? WHERE id = ?
            """, (json.dumps(record), datetime.now(timezone.utc).isoformat(), record_id))
            return True

    def next_sequence(self, name: str) -> int:
        with self.atomic():
            self._execute(f"""
                INSERT INTO {self.SEQUENCE_TABLE} (name, value) VALUES (?, 1)
                ON CONFLICT(name) DO UPDATE SET value = value + 1
            """, (name,))
            row = self._execute(
                f"SELECT value FROM {self.SEQUENCE_TABLE} WHERE name = ?", (name,)
            ).fetchone()
            return row['value']

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            row = self._execute(f"""
                SELECT data FROM {table} WHERE id = ?
            """, (record_id,)).fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            cursor = self._execute(f"""
                SELECT data FROM {table} ORDER BY created_at
            """)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            cursor = self._execute(f"""
                DELETE FROM {table} WHERE id = ?
            """, (record_id,))
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            cursor = self._execute(f"""
                SELECT 1 FROM {table} WHERE id = ? LIMIT 1
            """, (record_id,))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters using json_extract"""
        with self._lock:
            self._ensure_table(table)
            conditions = []
            params: List[Any] = []
            for key, value in filters.items():
                if value is None:
                    conditions.append("json_extract(data, ?) IS NULL")
                    params.append(f"$.{key}")
                else:
                    conditions.append("json_extract(data, ?) = ?")
                    params.extend([f"$.{key}", value])
            where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""
            cursor = self._execute(f"""
                SELECT data FROM {table} {where_clause} ORDER BY created_at
            """, tuple(params))
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            cursor = self._execute(f"""
                SELECT COUNT(*) as count FROM {table}
            """)
            return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._ensure_table(table)
            self._execute(f"DELETE FROM {table}")

    def begin_transaction(self) -> None:
        self._lock.acquire()
        try:
            if self._depth == 0:
                self._execute("BEGIN IMMEDIATE")
            else:
                self._execute(f"SAVEPOINT sp_{self._depth}")
        except Exception:
            self._lock.release()
            raise
        self._depth += 1

    def commit(self) -> None:
        if self._depth == 0:
            return
        self._depth -= 1
        try:
            if self._depth == 0:
                try:
                    self._execute("COMMIT")
                except StorageFailure:
                    self._connection.execute("ROLLBACK")
                    raise
            else:
                self._execute(f"RELEASE SAVEPOINT sp_{self._depth}")
        finally:
            self._lock.release()

    def rollback(self) -> None:
        if self._depth == 0:
            return
        self._depth -= 1
        try:
            if self._depth == 0:
                self._execute("ROLLBACK")
            else:
                self._execute(f"ROLLBACK TO SAVEPOINT sp_{self._depth}")
                self._execute(f"RELEASE SAVEPOINT sp_{self._depth}")
        finally:
            self._lock.release()

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


class PostgreSQLStorage(StorageInterface):
    """PostgreSQL storage backend with ACID transaction support"""

    SEQUENCE_TABLE = "ledger_sequences"

    def __init__(self, connection_string: str):
        try:
            import psycopg2
            import psycopg2.extras
            self.psycopg2 = psycopg2
            self.extras = psycopg2.extras
        except ImportError:
            raise ImportError("psycopg2 is required for PostgreSQL storage. Install with: pip install psycopg2-binary")

        self.connection_string = connection_string
        self._connection = None
        self._lock = threading.RLock()
        self._depth = 0
        self._connect()
        with self._cursor() as cursor:
            cursor.execute(f"""
                CREATE TABLE IF NOT EXISTS {self.SEQUENCE_TABLE} (
                    name TEXT PRIMARY KEY,
                    value BIGINT NOT NULL
                )
            """)

    def _connect(self) -> None:
        """Establish database connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
            self._connection = self.psycopg2.connect(
                self.connection_string,
                cursor_factory=self.extras.RealDictCursor
            )
            self._connection.autocommit = False  # We handle transactions manually

    @contextmanager
    def _cursor(self):
        """Cursor that commits on its own outside a unit of work"""
        with self._lock:
            cursor = self._connection.cursor()
            try:
                yield cursor
                if self._depth == 0:
                    self._connection.commit()
            except self.psycopg2.OperationalError as e:
                if self._depth == 0:
                    self._connection.rollback()
                raise StorageFailure("PostgreSQL operation failed", str(e)) from e
            except Exception:
                if self._depth == 0:
                    self._connection.rollback()
                raise
            finally:
                cursor.close()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        with self._cursor() as cursor:
            cursor.execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    data JSONB NOT NULL,
                    created_at TIMESTAMP DEFAULT NOW(),
                    updated_at TIMESTAMP DEFAULT NOW()
                )
            """)
            cursor.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_data
                ON {table} USING gin(data)
            """)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to PostgreSQL using UPSERT"""
        self._ensure_table(table)
        now = datetime.now(timezone.utc)
        with self._cursor() as cursor:
            cursor.execute(f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (id) DO UPDATE SET
                    data = EXCLUDED.data,
                    updated_at = EXCLUDED.updated_at
            """, (record_id, json.dumps(data, default=str), now, now))

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Unique insert; concurrent inserters of the same id block until the winner commits"""
        self._ensure_table(table)
        now = datetime.now(timezone.utc)
        with self._cursor() as cursor:
            cursor.execute(f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (id) DO NOTHING
            """, (record_id, json.dumps(data, default=str), now, now))
            inserted = cursor.rowcount > 0
        if not inserted:
            raise DuplicateRecordError(table, record_id)

    def update_where(self, table: str, record_id: str,
                     expected: Dict[str, Any], changes: Dict[str, Any]) -> bool:
        self._ensure_table(table)
        with self._cursor() as cursor:
            cursor.execute(f"""
                UPDATE {table}
                SET data = data || %s::jsonb, updated_at = %s
                WHERE id = %s AND data @> %s::jsonb
            """, (json.dumps(changes, default=str), datetime.now(timezone.utc),
                  record_id, json.dumps(expected, default=str)))
            return cursor.rowcount > 0

    def next_sequence(self, name: str) -> int:
        with self._cursor() as cursor:
            cursor.execute(f"""
                INSERT INTO {self.SEQUENCE_TABLE} (name, value) VALUES (%s, 1)
                ON CONFLICT (name) DO UPDATE SET value = {self.SEQUENCE_TABLE}.value + 1
                RETURNING value
            """, (name,))
            return cursor.fetchone()['value']

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        self._ensure_table(table)
        with self._cursor() as cursor:
            cursor.execute(f"SELECT data FROM {table} WHERE id = %s", (record_id,))
            row = cursor.fetchone()
            if row:
                return dict(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        self._ensure_table(table)
        with self._cursor() as cursor:
            cursor.execute(f"SELECT data FROM {table} ORDER BY created_at")
            return [dict(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        self._ensure_table(table)
        with self._cursor() as cursor:
            cursor.execute(f"DELETE FROM {table} WHERE id = %s", (record_id,))
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        self._ensure_table(table)
        with self._cursor() as cursor:
            cursor.execute(f"SELECT 1 FROM {table} WHERE id = %s LIMIT 1", (record_id,))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters using JSONB containment"""
        self._ensure_table(table)
        with self._cursor() as cursor:
            if not filters:
                cursor.execute(f"SELECT data FROM {table} ORDER BY created_at")
            else:
                cursor.execute(f"""
                    SELECT data FROM {table}
                    WHERE data @> %s::jsonb
                    ORDER BY created_at
                """, (json.dumps(filters, default=str),))
            return [dict(row['data']) for row in cursor.fetchall()]

    def count(self, table: str) -> int:
        self._ensure_table(table)
        with self._cursor() as cursor:
            cursor.execute(f"SELECT COUNT(*) as count FROM {table}")
            return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        self._ensure_table(table)
        with self._cursor() as cursor:
            cursor.execute(f"DELETE FROM {table}")

    def begin_transaction(self) -> None:
        self._lock.acquire()
        if self._depth > 0:
            try:
                with self._cursor() as cursor:
                    cursor.execute(f"SAVEPOINT sp_{self._depth}")
            except Exception:
                self._lock.release()
                raise
        # The outermost transaction starts implicitly with the first statement
        self._depth += 1

    def commit(self) -> None:
        if self._depth == 0:
            return
        self._depth -= 1
        try:
            if self._depth == 0:
                self._connection.commit()
            else:
                with self._cursor() as cursor:
                    cursor.execute(f"RELEASE SAVEPOINT sp_{self._depth}")
        finally:
            self._lock.release()

    def rollback(self) -> None:
        if self._depth == 0:
            return
        self._depth -= 1
        try:
            if self._depth == 0:
                self._connection.rollback()
            else:
                with self._cursor() as cursor:
                    cursor.execute(f"ROLLBACK TO SAVEPOINT sp_{self._depth}")
        finally:
            self._lock.release()

    def close(self) -> None:
        """Close PostgreSQL connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str) -> StorageInterface:
    """
    Build a storage backend from a URL.

    memory://                 in-memory (tests)
    sqlite:///path/to/file.db SQLite file; sqlite:// or sqlite:///:memory: for in-memory SQLite
    postgresql://...          PostgreSQL (needs psycopg2)
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite://"):]
        if path.startswith("/"):
            path = path[1:]
        return SQLiteStorage(path or ":memory:")
    if database_url.startswith(("postgresql://", "postgres://")):
        return PostgreSQLStorage(database_url)
    raise InvalidRequest(f"Unsupported database URL: {database_url}")
