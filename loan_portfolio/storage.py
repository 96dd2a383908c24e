"""
Storage Backend Module

Provides the key-value persisted store interface and implementations for
in-memory (testing) and SQLite (persistence). Values are JSON text; every
portfolio owner's ledger, alerts and notification log live under their own
keys.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Union
from datetime import datetime, timezone
from pathlib import Path
from contextlib import contextmanager
import sqlite3
import json
import threading

from .exceptions import PersistenceError


KEY_PREFIX = "loan_portfolio"


def owner_key(owner_id: str, name: str) -> str:
    """Storage key for one of an owner's documents, e.g. loan_portfolio:alice:loans"""
    return f"{KEY_PREFIX}:{owner_id}:{name}"


OWNERS_KEY = f"{KEY_PREFIX}:owners"


class StorageInterface(ABC):
    """Abstract interface for key-value storage backends"""
    
    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Get the value stored under key, or None"""
        pass
    
    @abstractmethod
    def set(self, key: str, value: str) -> None:
        """Store value under key, replacing any previous value"""
        pass
    
    @abstractmethod
    def remove(self, key: str) -> bool:
        """Remove key; returns True if it existed"""
        pass
    
    @abstractmethod
    def keys(self, prefix: str = "") -> List[str]:
        """List stored keys starting with prefix"""
        pass
    
    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass
    
    def get_json(self, key: str, default: Any = None) -> Any:
        """Get and decode a JSON value"""
        raw = self.get(key)
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            raise PersistenceError(f"Stored value for {key} is not valid JSON: {e}")
    
    def set_json(self, key: str, value: Any) -> None:
        """Encode and store a JSON value"""
        self.set(key, json.dumps(value, default=str))
    
    def begin_transaction(self) -> None:
        """Start a transaction (default no-op)"""
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
        self._data: Dict[str, str] = {}
        self._lock = threading.RLock()
        self._snapshot: Optional[Dict[str, str]] = None
    
    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)
    
    def set(self, key: str, value: str) -> None:
        if not isinstance(value, str):
            raise PersistenceError(f"Value for {key} must be a string, got {type(value).__name__}")
        with self._lock:
            self._data[key] = value
    
    def remove(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None
    
    def keys(self, prefix: str = "") -> List[str]:
        with self._lock:
            return sorted(k for k in self._data if k.startswith(prefix))
    
    def begin_transaction(self) -> None:
        with self._lock:
            if self._snapshot is None:
                self._snapshot = dict(self._data)
    
    def commit(self) -> None:
        with self._lock:
            self._snapshot = None
    
    def rollback(self) -> None:
        with self._lock:
            if self._snapshot is not None:
                self._data = self._snapshot
                self._snapshot = None
    
    @contextmanager
    def atomic(self):
        # Other threads' writes wait until the transaction ends
        with self._lock:
            with super().atomic():
                yield
    
    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""
    
    TABLE = "kv_store"
    
    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        self._lock = threading.RLock()
        self._in_transaction = False
        try:
            self._connection = sqlite3.connect(
                self.db_path, check_same_thread=False, isolation_level='DEFERRED'
            )
            self._connection.row_factory = sqlite3.Row
            
            # Enable WAL mode for better concurrent access
            if self.db_path != ":memory:":
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
            
            self._connection.execute(f"""
                CREATE TABLE IF NOT EXISTS {self.TABLE} (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            self._connection.commit()
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot open store at {self.db_path}: {e}")
    
    def _require_connection(self) -> sqlite3.Connection:
        if self._connection is None:
            raise PersistenceError("Store is closed")
        return self._connection
    
    def get(self, key: str) -> Optional[str]:
        with self._lock:
            try:
                cursor = self._require_connection().execute(
                    f"SELECT value FROM {self.TABLE} WHERE key = ?", (key,)
                )
                row = cursor.fetchone()
            except sqlite3.Error as e:
                raise PersistenceError(f"Failed to read {key}: {e}")
            return row['value'] if row else None
    
    def set(self, key: str, value: str) -> None:
        if not isinstance(value, str):
            raise PersistenceError(f"Value for {key} must be a string, got {type(value).__name__}")
        with self._lock:
            now = datetime.now(timezone.utc).isoformat()
            try:
                connection = self._require_connection()
                connection.execute(
                    f"INSERT OR REPLACE INTO {self.TABLE} (key, value, updated_at) VALUES (?, ?, ?)",
                    (key, value, now)
                )
                # Only commit if not in transaction
                if not self._in_transaction:
                    connection.commit()
            except sqlite3.Error as e:
                raise PersistenceError(f"Failed to write {key}: {e}")
    
    def remove(self, key: str) -> bool:
        with self._lock:
            try:
                connection = self._require_connection()
                cursor = connection.execute(f"DELETE FROM {self.TABLE} WHERE key = ?", (key,))
                if not self._in_transaction:
                    connection.commit()
            except sqlite3.Error as e:
                raise PersistenceError(f"Failed to remove {key}: {e}")
            return cursor.rowcount > 0
    
    def keys(self, prefix: str = "") -> List[str]:
        with self._lock:
            try:
                cursor = self._require_connection().execute(
                    f"SELECT key FROM {self.TABLE} WHERE substr(key, 1, ?) = ? ORDER BY key",
                    (len(prefix), prefix)
                )
                return [row['key'] for row in cursor.fetchall()]
            except sqlite3.Error as e:
                raise PersistenceError(f"Failed to list keys: {e}")
    
    def begin_transaction(self) -> None:
        with self._lock:
            if not self._in_transaction:
                self._in_transaction = True
    
    def commit(self) -> None:
        with self._lock:
            if self._in_transaction:
                try:
                    self._require_connection().commit()
                except sqlite3.Error as e:
                    raise PersistenceError(f"Commit failed: {e}")
                finally:
                    self._in_transaction = False
    
    def rollback(self) -> None:
        with self._lock:
            if self._in_transaction:
                self._require_connection().rollback()
                self._in_transaction = False
    
    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None
    
    @contextmanager
    def atomic(self):
        # Other threads' writes wait until the transaction ends
        with self._lock:
            with super().atomic():
                yield


def create_storage(backend: str = "sqlite", database_path: str = "loan_portfolio.db") -> StorageInterface:
    """Create a storage backend by name"""
    if backend == "memory":
        return InMemoryStorage()
    if backend == "sqlite":
        return SQLiteStorage(database_path)
    raise ValueError(f"Unknown storage backend: {backend}")
