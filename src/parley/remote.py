"""
Parley - Remote message store interface.

Created by orpheus497

The remote message store (a hosted document database in the chat client)
is an external collaborator. Only its interface is defined here; transport,
authentication and timeouts belong to the implementation.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Mapping, Optional


class RemoteMessageStore(ABC):
    """Asynchronous interface of the remote message store.

    Mappings use the keys ``id``, ``conversation_id``, ``sender_id``,
    ``content`` (ciphertext), ``kind``, ``media_ref``, ``created_at``,
    ``is_delivered`` and ``is_read``. Implementations raise any exception
    on failure; the pipeline wraps it into RemoteWriteError or
    RemoteReadError.
    """

    @abstractmethod
    async def create_message(
        self,
        conversation_id: str,
        sender_id: str,
        ciphertext: str,
        kind: str,
        media_ref: Optional[str] = None,
    ) -> Mapping[str, Any]:
        """Persist a new message and return the stored mapping (with ``id`` and ``created_at``)."""

    @abstractmethod
    async def list_messages(
        self, conversation_id: str, limit: int, offset: int = 0
    ) -> List[Mapping[str, Any]]:
        """Return up to ``limit`` messages of a conversation in creation order."""

    @abstractmethod
    async def update_message(self, message_id: str, fields: Dict[str, Any]) -> Mapping[str, Any]:
        """Apply a partial update to a message and return the stored mapping."""
