"""
Pytest configuration and fixtures for Parley tests.

Created by orpheus497

Provides common fixtures and test utilities for unit and integration tests.
"""

import asyncio
import shutil
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Generator, List, Optional

import pytest

from parley.cipher import XorCipherEngine
from parley.keystore import KeyStore
from parley.pipeline import MessagePipeline
from parley.remote import RemoteMessageStore
from parley.resolver import KeyResolver

LOCAL_USER = "u1"
OTHER_USER = "u2"


class FakeRemoteStore(RemoteMessageStore):
    """
    In-memory remote message store.

    Messages get sequential ids (``m1``, ``m2``...) and creation times one
    second apart. Set ``fail_create``/``fail_list``/``fail_update`` to an
    exception to make the next calls raise it. Gates are asyncio.Events that
    hold a call until set: ``create_gate`` before create_message() stores the
    record, ``ack_gate`` after it is stored but before it is returned, and
    ``list_gate`` after list_messages() has taken its snapshot.
    """

    def __init__(self):
        self.messages: Dict[str, Dict[str, Any]] = {}
        self.create_calls: List[Dict[str, Any]] = []
        self.update_calls: List[Any] = []
        self.fail_create: Optional[Exception] = None
        self.fail_list: Optional[Exception] = None
        self.fail_update: Optional[Exception] = None
        self.create_gate: Optional[asyncio.Event] = None
        self.ack_gate: Optional[asyncio.Event] = None
        self.list_gate: Optional[asyncio.Event] = None
        self._counter = 0
        self._clock = datetime(2025, 1, 1, tzinfo=timezone.utc)

    def add(
        self,
        conversation_id: str,
        sender_id: str,
        content: str,
        kind: str = "text",
        media_ref: Optional[str] = None,
        created_at: Optional[str] = None,
        **fields: Any,
    ) -> Dict[str, Any]:
        """Insert a record directly, as if another client had written it."""
        self._counter += 1
        message_id = f"m{self._counter}"
        record = {
            "id": message_id,
            "conversation_id": conversation_id,
            "sender_id": sender_id,
            "content": content,
            "kind": kind,
            "media_ref": media_ref,
            "created_at": created_at
            or (self._clock + timedelta(seconds=self._counter)).isoformat(),
            "is_delivered": False,
            "is_read": False,
        }
        record.update(fields)
        self.messages[message_id] = record
        return dict(record)

    async def create_message(self, conversation_id, sender_id, ciphertext, kind, media_ref=None):
        self.create_calls.append(
            {
                "conversation_id": conversation_id,
                "sender_id": sender_id,
                "ciphertext": ciphertext,
                "kind": kind,
                "media_ref": media_ref,
            }
        )
        if self.create_gate is not None:
            await self.create_gate.wait()
        if self.fail_create is not None:
            raise self.fail_create
        stored = self.add(conversation_id, sender_id, ciphertext, kind, media_ref)
        if self.ack_gate is not None:
            await self.ack_gate.wait()
        return stored

    async def list_messages(self, conversation_id, limit, offset=0):
        if self.fail_list is not None:
            raise self.fail_list
        matching = [
            dict(m) for m in self.messages.values() if m["conversation_id"] == conversation_id
        ]
        if self.list_gate is not None:
            await self.list_gate.wait()
        return matching[offset : offset + limit]

    async def update_message(self, message_id, fields):
        self.update_calls.append((message_id, dict(fields)))
        if self.fail_update is not None:
            raise self.fail_update
        self.messages[message_id].update(fields)
        return dict(self.messages[message_id])


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """
    Create a temporary directory for test data.

    Yields:
        Path: Temporary directory path
    """
    tmp = Path(tempfile.mkdtemp(prefix="parley_test_"))
    try:
        yield tmp
    finally:
        shutil.rmtree(tmp, ignore_errors=True)


@pytest.fixture
def keystore(temp_dir: Path) -> Generator[KeyStore, None, None]:
    """SQLite-backed key store in the temporary directory."""
    store = KeyStore.open(temp_dir / "keys.db")
    try:
        yield store
    finally:
        store.close()


@pytest.fixture
def engine() -> XorCipherEngine:
    return XorCipherEngine()


@pytest.fixture
def resolver(keystore: KeyStore, engine: XorCipherEngine) -> KeyResolver:
    return KeyResolver(keystore, engine)


@pytest.fixture
def remote() -> FakeRemoteStore:
    return FakeRemoteStore()


@pytest.fixture
def pipeline(remote: FakeRemoteStore, resolver: KeyResolver) -> MessagePipeline:
    """Pipeline for the local user ``u1``."""
    return MessagePipeline(remote, resolver, LOCAL_USER)


# Pytest marks
def pytest_configure(config):
    """
    Configure pytest markers.

    Args:
        config: Pytest configuration object
    """
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")
    config.addinivalue_line("markers", "slow: mark test as slow running")


# Test collection hooks
def pytest_collection_modifyitems(config, items):
    """
    Modify test collection to add markers based on test location.

    Args:
        config: Pytest configuration
        items: List of collected test items
    """
    for item in items:
        if "unit" in Path(str(item.fspath)).parts:
            item.add_marker(pytest.mark.unit)

        if "integration" in Path(str(item.fspath)).name:
            item.add_marker(pytest.mark.integration)
