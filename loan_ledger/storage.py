"""
Storage Backend Module

Provides the persistent store interface the ledger mirrors its state into,
with in-memory (testing) and SQLite (persistence) implementations. Records
are JSON documents; every row carries the owning account_id and callers
scope their reads with find(table, {"account_id": ...}).

Backends report failures as structured StoreError subclasses so the engine
can tell "permission denied" and "schema missing" apart from bad data.
"""

from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional, Any, Union
from decimal import Decimal
from datetime import datetime, timezone
import sqlite3
import json
import threading
import logging
from dataclasses import dataclass
from pathlib import Path
from contextlib import contextmanager

from .dates import parse_timestamp
from .errors import (
    ConflictOrDuplicate, FieldRejected, PermissionDenied, SchemaMissing,
    StoreUnavailable
)

BORROWERS_TABLE = "borrowers"
LOANS_TABLE = "loans"
AUDIT_TABLE = "audit_logs"
LEDGER_TABLES = (BORROWERS_TABLE, LOANS_TABLE, AUDIT_TABLE)

logger = logging.getLogger("loan_ledger.storage")


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert the common fields to their stored form"""
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
        }

    @staticmethod
    def parse_timestamps(data: Dict[str, Any]) -> Dict[str, Any]:
        """Convert ISO strings back to aware datetime objects"""
        for key in ('created_at', 'updated_at'):
            if key in data and isinstance(data[key], str):
                data[key] = parse_timestamp(data[key])
        return data


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


ChangeListener = Callable[[str, str, str, str], None]


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    def __init__(self, max_field_bytes: Optional[int] = None):
        self.max_field_bytes = max_field_bytes
        self._listeners: List[ChangeListener] = []

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to storage"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
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

    def add_change_listener(self, listener: ChangeListener) -> None:
        """
        Register a callback invoked as listener(table, record_id, account_id, action)
        after every successful write. Used to emulate the remote store's
        live-update feed.
        """
        self._listeners.append(listener)

    def _notify(self, table: str, record_id: str, data: Optional[Dict[str, Any]], action: str) -> None:
        account_id = (data or {}).get('account_id', '')
        for listener in list(self._listeners):
            try:
                listener(table, record_id, account_id, action)
            except Exception as e:
                # The write is already committed
                logger.error(f"Change listener failed for {table}:{record_id}: {e}")

    def _check_field_sizes(self, data: Dict[str, Any]) -> None:
        """Reject any single field whose encoded size exceeds the backend limit"""
        if not self.max_field_bytes:
            return
        for key, value in data.items():
            size = len(json.dumps(value, default=_json_default).encode('utf-8'))
            if size > self.max_field_bytes:
                raise FieldRejected(key, f"{size} bytes exceeds limit of {self.max_field_bytes}")


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self, max_field_bytes: Optional[int] = None):
        super().__init__(max_field_bytes)
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        self._check_field_sizes(data)
        with self._lock:
            self._ensure_table(table)
            # Deep copy to prevent external mutation
            self._data[table][record_id] = json.loads(json.dumps(data, default=_json_default))
        self._notify(table, record_id, data, "upsert")

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record:
                return json.loads(json.dumps(record))
            return None

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from memory"""
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].pop(record_id, None)
        if record is None:
            return False
        self._notify(table, record_id, record, "delete")
        return True

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

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


class SQLiteStorage(StorageInterface):
    """
    SQLite storage implementation for persistence.

    With auto_create_tables=False the ledger tables must be provisioned with
    create_schema() first; reading an unprovisioned table raises
    SchemaMissing, mirroring a remote store whose setup script was never run.
    """

    def __init__(
        self,
        db_path: Union[str, Path] = ":memory:",
        auto_create_tables: bool = True,
        max_field_bytes: Optional[int] = None
    ):
        super().__init__(max_field_bytes)
        self.db_path = str(db_path)
        self.auto_create_tables = auto_create_tables
        try:
            # Set isolation_level to 'DEFERRED' to enable manual transaction control
            self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level='DEFERRED')
        except sqlite3.Error as e:
            raise StoreUnavailable(f"Cannot open ledger database: {e}", {"db_path": self.db_path})
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._in_transaction = False
        self._known_tables: set = set()

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock, self._translate_errors("configure"):
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

    @contextmanager
    def _translate_errors(self, table: str):
        """Map sqlite3 exceptions onto the ledger's store error taxonomy"""
        try:
            yield
        except sqlite3.IntegrityError as e:
            raise ConflictOrDuplicate(f"Constraint violation on {table}: {e}", {"table": table})
        except sqlite3.OperationalError as e:
            text = str(e).lower()
            if "no such table" in text:
                raise SchemaMissing(f"Table '{table}' not found. Run create_schema() first.", {"table": table})
            if "readonly" in text or "permission" in text or "authoriz" in text:
                raise PermissionDenied(f"Access denied on {table}: {e}", {"table": table})
            raise StoreUnavailable(f"Database error on {table}: {e}", {"table": table})
        except sqlite3.Error as e:
            raise StoreUnavailable(f"Database error on {table}: {e}", {"table": table})

    def _create_table(self, table: str) -> None:
        self._connection.execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id TEXT PRIMARY KEY,
                data TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        # Create index on timestamps for better query performance
        self._connection.execute(f"""
            CREATE INDEX IF NOT EXISTS idx_{table}_created_at
            ON {table}(created_at)
        """)

    def create_schema(self, tables=LEDGER_TABLES) -> None:
        """Provision the ledger tables"""
        with self._lock, self._translate_errors("schema"):
            for table in tables:
                self._create_table(table)
                self._known_tables.add(table)
            self._connection.commit()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._known_tables or not self.auto_create_tables:
            return
        with self._lock:
            self._create_table(table)
            self._connection.commit()
            self._known_tables.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        self._check_field_sizes(data)
        with self._lock, self._translate_errors(table):
            self._ensure_table(table)

            now = datetime.now(timezone.utc).isoformat()
            data_json = json.dumps(data, default=_json_default)

            # Use INSERT OR REPLACE to handle updates
            self._connection.execute(f"""
                INSERT OR REPLACE INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?,
                    COALESCE((SELECT created_at FROM {table} WHERE id = ?), ?),
                    ?)
            """, (record_id, data_json, record_id, now, now))

            # Only commit if not in transaction
            if not self._in_transaction:
                self._connection.commit()
        self._notify(table, record_id, data, "upsert")

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with self._lock, self._translate_errors(table):
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} WHERE id = ?
            """, (record_id,))
            row = cursor.fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from SQLite"""
        existing = self.load(table, record_id)
        with self._lock, self._translate_errors(table):
            cursor = self._connection.execute(f"""
                DELETE FROM {table} WHERE id = ?
            """, (record_id,))

            # Only commit if not in transaction
            if not self._in_transaction:
                self._connection.commit()
            deleted = cursor.rowcount > 0
        if deleted:
            self._notify(table, record_id, existing, "delete")
        return deleted

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock, self._translate_errors(table):
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT 1 FROM {table} WHERE id = ? LIMIT 1
            """, (record_id,))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (simple JSON key matching)"""
        with self._lock, self._translate_errors(table):
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
        with self._lock, self._translate_errors(table):
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT COUNT(*) as count FROM {table}
            """)
            return cursor.fetchone()['count']

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(
    backend: str = "memory",
    database_path: str = "loan_ledger.db",
    max_field_bytes: Optional[int] = None
) -> StorageInterface:
    """Build the configured storage backend"""
    if backend == "sqlite":
        return SQLiteStorage(database_path, max_field_bytes=max_field_bytes)
    if backend == "memory":
        return InMemoryStorage(max_field_bytes)
    raise ValueError(f"Unknown storage backend: {backend}")
