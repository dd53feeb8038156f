"""
Parley - Durable local key storage.

Created by orpheus497
Version: 1.0.0

Persists conversation keys and the local user key in a per-installation
key-value store. Keys never leave the device except through an explicit,
password-protected backup export.

Thread safety:
- SQLiteKeyValueBackend guards its connection with a threading.Lock
- Writes are last-writer-wins; there is no key versioning
"""

import base64
import json
import logging
import os
import secrets
import sqlite3
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from argon2.low_level import Type, hash_secret_raw
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .constants import (
    ARGON2_HASH_LEN,
    ARGON2_MEMORY_COST,
    ARGON2_PARALLELISM,
    ARGON2_TIME_COST,
    BACKUP_NONCE_SIZE,
    BACKUP_SALT_SIZE,
    BACKUP_VERSION,
    CHAT_KEY_PREFIX,
    USER_KEY_BYTES,
    USER_KEY_PREFIX,
)
from .errors import (
    ErrorCode,
    KeyBackupError,
    KeyUnavailableError,
    LocalStorageError,
)

logger = logging.getLogger(__name__)


class KeyValueBackend(ABC):
    """Local durable key-value collaborator consumed by KeyStore."""

    @abstractmethod
    def get(self, key: str) -> Optional[bytes]:
        """Return the stored value or None."""

    @abstractmethod
    def set(self, key: str, value: bytes) -> None:
        """Store ``value`` under ``key``, replacing any previous value."""

    @abstractmethod
    def remove_all(self, keys: Iterable[str]) -> int:
        """Remove every listed key and return how many existed."""

    @abstractmethod
    def keys(self, prefix: str = "") -> List[str]:
        """List stored keys starting with ``prefix``."""

    def close(self) -> None:
        """Release backend resources."""


class SQLiteKeyValueBackend(KeyValueBackend):
    """
    Single-table SQLite key-value backend.

    Thread Safety:
        All database operations are protected by a threading.Lock to prevent
        concurrent access to the shared connection.
    """

    def __init__(self, db_path: Path):
        """
        Open (and create if needed) the key database.

        Args:
            db_path: Path to SQLite database file

        Raises:
            LocalStorageError: If the database cannot be opened
        """
        self.db_path = Path(db_path)
        self.conn: Optional[sqlite3.Connection] = None
        self._db_lock = threading.Lock()

        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._init_database()
        except (OSError, sqlite3.Error) as e:
            logger.error(f"Failed to open key database {self.db_path}: {e}")
            raise LocalStorageError(
                ErrorCode.E301_STORAGE_OPEN_FAILED,
                f"Cannot open key database: {e}",
                {"path": str(self.db_path)},
            ) from e

    def _init_database(self) -> None:
        """Initialize database schema with thread-safe connection."""
        with self._db_lock:
            self.conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS key_values (
                    scope TEXT PRIMARY KEY,
                    value BLOB NOT NULL
                )
            """
            )
            self.conn.commit()
        logger.info(f"Key database initialized: {self.db_path}")

    def _require_connection(self) -> sqlite3.Connection:
        if self.conn is None:
            raise LocalStorageError(
                ErrorCode.E301_STORAGE_OPEN_FAILED, "Key database is closed"
            )
        return self.conn

    def get(self, key: str) -> Optional[bytes]:
        try:
            with self._db_lock:
                cursor = self._require_connection().execute(
                    "SELECT value FROM key_values WHERE scope = ?", (key,)
                )
                row = cursor.fetchone()
        except sqlite3.Error as e:
            raise LocalStorageError(
                ErrorCode.E302_STORAGE_READ_FAILED, f"Failed to read key: {e}", {"scope": key}
            ) from e
        return bytes(row[0]) if row else None

    def set(self, key: str, value: bytes) -> None:
        try:
            with self._db_lock:
                conn = self._require_connection()
                conn.execute(
                    "INSERT OR REPLACE INTO key_values (scope, value) VALUES (?, ?)",
                    (key, sqlite3.Binary(value)),
                )
                conn.commit()
        except sqlite3.Error as e:
            raise LocalStorageError(
                ErrorCode.E303_STORAGE_WRITE_FAILED, f"Failed to write key: {e}", {"scope": key}
            ) from e

    def remove_all(self, keys: Iterable[str]) -> int:
        scopes = [(key,) for key in keys]
        if not scopes:
            return 0
        try:
            with self._db_lock:
                conn = self._require_connection()
                before = conn.total_changes
                conn.executemany("DELETE FROM key_values WHERE scope = ?", scopes)
                conn.commit()
                removed = conn.total_changes - before
        except sqlite3.Error as e:
            raise LocalStorageError(
                ErrorCode.E303_STORAGE_WRITE_FAILED, f"Failed to remove keys: {e}"
            ) from e
        return removed

    def keys(self, prefix: str = "") -> List[str]:
        # LIKE would treat "_" in the prefixes as a wildcard
        try:
            with self._db_lock:
                cursor = self._require_connection().execute(
                    "SELECT scope FROM key_values WHERE substr(scope, 1, ?) = ? ORDER BY scope",
                    (len(prefix), prefix),
                )
                return [row[0] for row in cursor.fetchall()]
        except sqlite3.Error as e:
            raise LocalStorageError(
                ErrorCode.E302_STORAGE_READ_FAILED, f"Failed to list keys: {e}"
            ) from e

    def close(self) -> None:
        """Close database connection with thread-safe access."""
        with self._db_lock:
            if self.conn:
                self.conn.close()
                self.conn = None
                logger.debug("Key database closed")

    def __enter__(self) -> "SQLiteKeyValueBackend":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.close()
        return False


def _derive_backup_key(password: str, salt: bytes) -> bytes:
    """Derive the backup encryption key from a password using Argon2id."""
    return hash_secret_raw(
        secret=password.encode("utf-8"),
        salt=salt,
        time_cost=ARGON2_TIME_COST,
        memory_cost=ARGON2_MEMORY_COST,
        parallelism=ARGON2_PARALLELISM,
        hash_len=ARGON2_HASH_LEN,
        type=Type.ID,
    )


class KeyStore:
    """
    Conversation and user key persistence.

    One entry per conversation (``chat_key_<id>``) and one per local user
    (``user_key_<id>``). Reads have no side effects. The async interface
    matches the rest of the pipeline; the backend itself is synchronous.
    """

    def __init__(self, backend: KeyValueBackend):
        self.backend = backend

    @classmethod
    def open(cls, db_path: Path) -> "KeyStore":
        """Create a key store backed by an SQLite file."""
        return cls(SQLiteKeyValueBackend(db_path))

    async def get(self, scope_id: str) -> Optional[bytes]:
        return self.backend.get(scope_id)

    async def set(self, scope_id: str, key_material: bytes) -> None:
        self.backend.set(scope_id, bytes(key_material))
        logger.debug(f"Stored key material for scope {scope_id}")

    async def remove_all(self, prefix: str) -> int:
        """Remove every entry whose scope starts with ``prefix``."""
        removed = self.backend.remove_all(self.backend.keys(prefix))
        logger.info(f"Removed {removed} key entries with prefix '{prefix}'")
        return removed

    # Conversation keys

    async def get_conversation_key(self, conversation_id: str) -> Optional[bytes]:
        return await self.get(f"{CHAT_KEY_PREFIX}{conversation_id}")

    async def set_conversation_key(self, conversation_id: str, key_material: bytes) -> None:
        await self.set(f"{CHAT_KEY_PREFIX}{conversation_id}", key_material)

    async def list_conversations(self) -> List[str]:
        """Return the ids of all conversations with a stored key."""
        return [scope[len(CHAT_KEY_PREFIX):] for scope in self.backend.keys(CHAT_KEY_PREFIX)]

    # User keys

    async def get_user_key(self, user_id: str) -> Optional[bytes]:
        return await self.get(f"{USER_KEY_PREFIX}{user_id}")

    async def initialize_user_key(self, user_id: str) -> bytes:
        """
        Create the local user's key if it does not exist yet.

        Args:
            user_id: Local user identifier

        Returns:
            The stored (existing or newly generated) user key
        """
        existing = await self.get_user_key(user_id)
        if existing:
            return existing

        key = secrets.token_hex(USER_KEY_BYTES).encode("ascii")
        await self.set(f"{USER_KEY_PREFIX}{user_id}", key)
        logger.info(f"Generated user key for {user_id}")
        return key

    async def clear_all_keys(self) -> int:
        """Remove every user and conversation key. Returns the number removed."""
        removed = await self.remove_all(USER_KEY_PREFIX)
        removed += await self.remove_all(CHAT_KEY_PREFIX)
        return removed

    # Backup and restore

    async def export_backup(self, user_id: str, password: str) -> Dict[str, str]:
        """
        Export the user key and every conversation key, encrypted with a password.

        Uses Argon2id for key derivation and AES-256-GCM for encryption,
        with a unique salt and nonce per backup.

        Args:
            user_id: Local user whose key is exported
            password: Backup password

        Returns:
            Dictionary with base64 salt, nonce, ciphertext and version

        Raises:
            KeyUnavailableError: If the user has no key
        """
        user_key = await self.get_user_key(user_id)
        if not user_key:
            raise KeyUnavailableError("User key not found", {"user_id": user_id})

        chat_keys: Dict[str, str] = {}
        for conversation_id in await self.list_conversations():
            key = await self.get_conversation_key(conversation_id)
            if key:
                chat_keys[conversation_id] = base64.b64encode(key).decode("ascii")

        document = {
            "user_key": base64.b64encode(user_key).decode("ascii"),
            "chat_keys": chat_keys,
        }

        salt = os.urandom(BACKUP_SALT_SIZE)
        nonce = os.urandom(BACKUP_NONCE_SIZE)
        aesgcm = AESGCM(_derive_backup_key(password, salt))
        ciphertext = aesgcm.encrypt(nonce, json.dumps(document).encode("utf-8"), None)

        logger.info(f"Exported backup with {len(chat_keys)} conversation keys")
        return {
            "salt": base64.b64encode(salt).decode("utf-8"),
            "nonce": base64.b64encode(nonce).decode("utf-8"),
            "ciphertext": base64.b64encode(ciphertext).decode("utf-8"),
            "version": BACKUP_VERSION,
        }

    async def import_backup(self, user_id: str, backup: Dict[str, Any], password: str) -> int:
        """
        Restore keys from an encrypted backup.

        Raises KeyBackupError if:
        - Password is incorrect
        - Backup is corrupted or has an unsupported version

        Returns:
            Number of conversation keys restored
        """
        if not isinstance(backup, dict):
            raise KeyBackupError(
                ErrorCode.E204_KEY_RESTORE_FAILED, "Backup file is not a JSON object"
            )
        if backup.get("version") != BACKUP_VERSION:
            raise KeyBackupError(
                ErrorCode.E204_KEY_RESTORE_FAILED,
                "Unsupported backup version",
                {"version": backup.get("version")},
            )

        try:
            salt = base64.b64decode(backup["salt"])
            nonce = base64.b64decode(backup["nonce"])
            ciphertext = base64.b64decode(backup["ciphertext"])
            aesgcm = AESGCM(_derive_backup_key(password, salt))
            document = json.loads(aesgcm.decrypt(nonce, ciphertext, None).decode("utf-8"))
            user_key = base64.b64decode(document["user_key"])
            chat_keys = {
                conversation_id: base64.b64decode(encoded)
                for conversation_id, encoded in document["chat_keys"].items()
            }
        except (InvalidTag, AttributeError, KeyError, TypeError, ValueError) as e:
            raise KeyBackupError(
                ErrorCode.E204_KEY_RESTORE_FAILED,
                "Failed to decrypt backup. Incorrect password or corrupted file.",
            ) from e

        await self.set(f"{USER_KEY_PREFIX}{user_id}", user_key)
        for conversation_id, key in chat_keys.items():
            await self.set_conversation_key(conversation_id, key)

        logger.info(f"Restored {len(chat_keys)} conversation keys for {user_id}")
        return len(chat_keys)

    def close(self) -> None:
        self.backend.close()
