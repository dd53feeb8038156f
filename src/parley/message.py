"""
Parley - Message model.

Created by orpheus497
Version: 1.0.0

Defines the in-memory Message held in conversation lists and the
MessageRecord exchanged with the remote message store. A Message carries
plaintext (or a placeholder); a MessageRecord carries ciphertext.
"""

from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from .constants import MESSAGE_KIND_IMAGE, MESSAGE_KIND_TEXT, TEMP_ID_PREFIX
from .errors import ErrorCode, MessageError, RemoteStoreError
from .utils import generate_temp_id, utc_now_iso


class MessageKind(Enum):
    """Kind of message body."""

    TEXT = MESSAGE_KIND_TEXT
    IMAGE = MESSAGE_KIND_IMAGE

    @classmethod
    def parse(cls, value: Any) -> "MessageKind":
        """Accept a MessageKind or its string value."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise MessageError(
                ErrorCode.E501_INVALID_MESSAGE, f"Unknown message kind: {value}"
            ) from None


def is_temp_id(message_id: str) -> bool:
    """Check if an id was generated locally for an unconfirmed message."""
    return message_id.startswith(TEMP_ID_PREFIX)


@dataclass(frozen=True)
class Message:
    """
    A message as shown in a conversation timeline.

    Instances are immutable; state transitions produce a new instance via
    with_changes() so conversation lists can be replaced wholesale.
    """

    message_id: str
    conversation_id: str
    sender_id: str
    content: str
    kind: MessageKind = MessageKind.TEXT
    media_ref: Optional[str] = None
    created_at: str = field(default_factory=utc_now_iso)
    is_delivered: bool = False
    is_read: bool = False

    @property
    def is_optimistic(self) -> bool:
        """True while the message only exists locally."""
        return is_temp_id(self.message_id)

    @classmethod
    def optimistic(
        cls,
        conversation_id: str,
        sender_id: str,
        content: str,
        kind: MessageKind = MessageKind.TEXT,
        media_ref: Optional[str] = None,
    ) -> "Message":
        """Create an optimistic entry with a temporary id and the original plaintext."""
        return cls(
            message_id=generate_temp_id(),
            conversation_id=conversation_id,
            sender_id=sender_id,
            content=content,
            kind=kind,
            media_ref=media_ref,
        )

    def with_changes(self, **changes: Any) -> "Message":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        """Convert message to dictionary."""
        data = asdict(self)
        data["kind"] = self.kind.value
        return data

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "Message":
        """Create message from dictionary."""
        return Message(
            message_id=data["message_id"],
            conversation_id=data["conversation_id"],
            sender_id=data["sender_id"],
            content=data.get("content", ""),
            kind=MessageKind.parse(data.get("kind", MESSAGE_KIND_TEXT)),
            media_ref=data.get("media_ref"),
            created_at=data.get("created_at") or utc_now_iso(),
            is_delivered=data.get("is_delivered", False),
            is_read=data.get("is_read", False),
        )


@dataclass(frozen=True)
class MessageRecord:
    """A message as stored by the remote message store (content is ciphertext)."""

    message_id: str
    conversation_id: str
    sender_id: str
    ciphertext: str
    kind: MessageKind
    media_ref: Optional[str]
    created_at: str
    is_delivered: bool = False
    is_read: bool = False

    @classmethod
    def from_dict(
        cls, data: Mapping[str, Any], conversation_id: Optional[str] = None
    ) -> "MessageRecord":
        """
        Create a record from a remote mapping.

        Args:
            data: Mapping returned by the remote store
            conversation_id: Used when the mapping omits its conversation

        Raises:
            RemoteStoreError: If the mapping has no id
        """
        message_id = data.get("id") or data.get("message_id")
        if not message_id:
            raise RemoteStoreError(
                ErrorCode.E403_INVALID_RECORD, "Remote record has no id", {"keys": sorted(data)}
            )

        return cls(
            message_id=str(message_id),
            conversation_id=data.get("conversation_id") or conversation_id or "",
            sender_id=data.get("sender_id", ""),
            ciphertext=data.get("content") or "",
            kind=MessageKind.parse(data.get("kind") or MESSAGE_KIND_TEXT),
            media_ref=data.get("media_ref"),
            created_at=data.get("created_at") or utc_now_iso(),
            is_delivered=bool(data.get("is_delivered", False)),
            is_read=bool(data.get("is_read", False)),
        )

    def to_message(self, content: str) -> Message:
        """Build the timeline message for this record with decrypted ``content``."""
        return Message(
            message_id=self.message_id,
            conversation_id=self.conversation_id,
            sender_id=self.sender_id,
            content=content,
            kind=self.kind,
            media_ref=self.media_ref,
            created_at=self.created_at,
            is_delivered=self.is_delivered,
            is_read=self.is_read,
        )
