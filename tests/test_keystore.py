"""
Parley - Key store tests.

Created by orpheus497

Tests for SQLite key persistence, user keys and password-protected backups.
"""

import base64
import json
import os

import pytest
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from parley.constants import BACKUP_NONCE_SIZE, BACKUP_SALT_SIZE, BACKUP_VERSION
from parley.errors import ErrorCode, KeyBackupError, KeyUnavailableError, LocalStorageError
from parley.keystore import KeyStore, SQLiteKeyValueBackend, _derive_backup_key


class TestSQLiteBackend:
    """Test the raw key-value backend."""

    def test_get_missing(self, temp_dir):
        with SQLiteKeyValueBackend(temp_dir / "kv.db") as backend:
            assert backend.get("chat_key_r1") is None

    def test_set_get_overwrite(self, temp_dir):
        with SQLiteKeyValueBackend(temp_dir / "kv.db") as backend:
            backend.set("chat_key_r1", b"first")
            backend.set("chat_key_r1", b"second")
            assert backend.get("chat_key_r1") == b"second"

    def test_persists_across_connections(self, temp_dir):
        with SQLiteKeyValueBackend(temp_dir / "kv.db") as backend:
            backend.set("chat_key_r1", b"ab12")
        with SQLiteKeyValueBackend(temp_dir / "kv.db") as backend:
            assert backend.get("chat_key_r1") == b"ab12"

    def test_prefix_is_literal(self, temp_dir):
        """Underscores in prefixes are not wildcards."""
        with SQLiteKeyValueBackend(temp_dir / "kv.db") as backend:
            backend.set("chat_key_r1", b"a")
            backend.set("chatXkeyXr2", b"b")
            backend.set("user_key_u1", b"c")
            assert backend.keys("chat_key_") == ["chat_key_r1"]
            assert len(backend.keys()) == 3

    def test_remove_all_counts(self, temp_dir):
        with SQLiteKeyValueBackend(temp_dir / "kv.db") as backend:
            backend.set("a", b"1")
            backend.set("b", b"2")
            assert backend.remove_all(["a", "b", "missing"]) == 2
            assert backend.remove_all([]) == 0

    def test_closed_backend_raises(self, temp_dir):
        backend = SQLiteKeyValueBackend(temp_dir / "kv.db")
        backend.close()
        with pytest.raises(LocalStorageError) as exc_info:
            backend.get("a")
        assert exc_info.value.code == ErrorCode.E301_STORAGE_OPEN_FAILED

    def test_unopenable_path(self, temp_dir):
        blocker = temp_dir / "file"
        blocker.write_text("not a directory")
        with pytest.raises(LocalStorageError) as exc_info:
            SQLiteKeyValueBackend(blocker / "keys.db")
        assert exc_info.value.code == ErrorCode.E301_STORAGE_OPEN_FAILED


@pytest.mark.asyncio
class TestKeyStore:
    """Test conversation and user key operations."""

    async def test_conversation_keys(self, keystore):
        assert await keystore.get_conversation_key("r1") is None
        await keystore.set_conversation_key("r1", b"ab12")
        assert await keystore.get_conversation_key("r1") == b"ab12"
        assert await keystore.get("chat_key_r1") == b"ab12"

    async def test_list_conversations(self, keystore):
        await keystore.set_conversation_key("r1", b"a")
        await keystore.set_conversation_key("r2", b"b")
        await keystore.initialize_user_key("u1")
        assert sorted(await keystore.list_conversations()) == ["r1", "r2"]

    async def test_initialize_user_key_once(self, keystore):
        key = await keystore.initialize_user_key("u1")
        assert len(key) == 64
        int(key.decode("ascii"), 16)
        assert await keystore.initialize_user_key("u1") == key
        assert await keystore.get_user_key("u1") == key

    async def test_clear_all_keys(self, keystore):
        await keystore.set_conversation_key("r1", b"a")
        await keystore.initialize_user_key("u1")
        await keystore.set("unrelated", b"x")
        assert await keystore.clear_all_keys() == 2
        assert await keystore.list_conversations() == []
        assert await keystore.get_user_key("u1") is None
        assert await keystore.get("unrelated") == b"x"

    async def test_remove_all_by_prefix(self, keystore):
        await keystore.set_conversation_key("r1", b"a")
        await keystore.set_conversation_key("r2", b"b")
        assert await keystore.remove_all("chat_key_") == 2


@pytest.mark.slow
@pytest.mark.asyncio
class TestKeyBackup:
    """Test password-protected export and import."""

    async def test_export_import(self, keystore, temp_dir):
        user_key = await keystore.initialize_user_key("u1")
        await keystore.set_conversation_key("r1", b"ab12")
        await keystore.set_conversation_key("r2", b"cd34")

        backup = await keystore.export_backup("u1", "correct horse")
        assert set(backup) == {"salt", "nonce", "ciphertext", "version"}

        other = KeyStore.open(temp_dir / "restored.db")
        try:
            assert await other.import_backup("u1", backup, "correct horse") == 2
            assert await other.get_user_key("u1") == user_key
            assert await other.get_conversation_key("r1") == b"ab12"
            assert await other.get_conversation_key("r2") == b"cd34"
        finally:
            other.close()

    async def test_export_without_user_key(self, keystore):
        with pytest.raises(KeyUnavailableError):
            await keystore.export_backup("nobody", "password")

    async def test_wrong_password(self, keystore):
        await keystore.initialize_user_key("u1")
        backup = await keystore.export_backup("u1", "right")
        with pytest.raises(KeyBackupError) as exc_info:
            await keystore.import_backup("u1", backup, "wrong")
        assert exc_info.value.code == ErrorCode.E204_KEY_RESTORE_FAILED

    async def test_unsupported_version(self, keystore):
        await keystore.initialize_user_key("u1")
        backup = await keystore.export_backup("u1", "password")
        backup["version"] = "0.1"
        with pytest.raises(KeyBackupError):
            await keystore.import_backup("u1", backup, "password")

    async def test_corrupted_backup(self, keystore):
        with pytest.raises(KeyBackupError):
            await keystore.import_backup("u1", {"version": "1.0", "salt": "AAAA"}, "password")

    async def test_backup_not_an_object(self, keystore):
        with pytest.raises(KeyBackupError) as exc_info:
            await keystore.import_backup("u1", ["1.0"], "password")
        assert exc_info.value.code == ErrorCode.E204_KEY_RESTORE_FAILED

    async def test_malformed_document_restores_nothing(self, keystore):
        salt = os.urandom(BACKUP_SALT_SIZE)
        nonce = os.urandom(BACKUP_NONCE_SIZE)
        document = json.dumps({"user_key": "AAAA", "chat_keys": ["r1"]}).encode("utf-8")
        ciphertext = AESGCM(_derive_backup_key("password", salt)).encrypt(nonce, document, None)
        backup = {
            "salt": base64.b64encode(salt).decode("utf-8"),
            "nonce": base64.b64encode(nonce).decode("utf-8"),
            "ciphertext": base64.b64encode(ciphertext).decode("utf-8"),
            "version": BACKUP_VERSION,
        }

        with pytest.raises(KeyBackupError):
            await keystore.import_backup("u1", backup, "password")
        assert await keystore.get_user_key("u1") is None
