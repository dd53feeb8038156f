"""
Parley - Message send/receive pipeline.

Created by orpheus497
Version: 1.0.0

Coordinates the conversation message lists shown to the user:

- send: optimistic insert, encrypt, remote write, reconciliation by
  temporary id (or rollback on failure)
- load: remote read, per-message decryption through the key resolver,
  best-effort read marking
- mark_read / mark_delivered / delete_message: single-message updates

Concurrency model:
- Single-threaded asyncio; suspension only at remote and key store awaits
- Each conversation list is an immutable tuple replaced wholesale, with no
  await between reading the current tuple and publishing the next one
- Sends of one conversation are serialized by an asyncio.Lock in issuance
  order; the optimistic insert happens before the lock so callers see it
  immediately
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Tuple

from .constants import DEFAULT_PAGE_SIZE, DELETED_MESSAGE_PLACEHOLDER
from .errors import (
    CipherError,
    ErrorCode,
    MessageError,
    ParleyError,
    RemoteReadError,
    RemoteStoreError,
    RemoteWriteError,
)
from .message import Message, MessageKind, MessageRecord, is_temp_id
from .remote import RemoteMessageStore
from .resolver import KeyResolver
from .utils import parse_timestamp

logger = logging.getLogger(__name__)

MessageList = Tuple[Message, ...]
Subscriber = Callable[[MessageList], None]


def _insert_by_time(messages: MessageList, message: Message) -> MessageList:
    """Insert a confirmed message before later ones and before any optimistic entry."""
    stamp = parse_timestamp(message.created_at)
    index = len(messages)
    for position, existing in enumerate(messages):
        if existing.is_optimistic or parse_timestamp(existing.created_at) > stamp:
            index = position
            break
    return messages[:index] + (message,) + messages[index:]


class ConversationState(Enum):
    """Load state of a conversation list."""

    EMPTY = "empty"
    LOADING = "loading"
    LOADED = "loaded"


class MessagePipeline:
    """
    Owns every conversation list and the send/receive flows that mutate them.

    Components are injected once and shared by all conversations.

    Attributes:
        remote: Remote message store collaborator
        resolver: Key resolver used for every encryption and decryption
        local_user_id: Id of the signed-in user (for read marking)
        page_size: Default number of messages fetched by load()
        mark_read_on_load: Whether load() marks incoming messages as read
    """

    def __init__(
        self,
        remote: RemoteMessageStore,
        resolver: KeyResolver,
        local_user_id: str,
        page_size: int = DEFAULT_PAGE_SIZE,
        mark_read_on_load: bool = True,
    ):
        self.remote = remote
        self.resolver = resolver
        self.local_user_id = local_user_id
        self.page_size = page_size
        self.mark_read_on_load = mark_read_on_load

        self._lists: Dict[str, MessageList] = {}
        self._states: Dict[str, ConversationState] = {}
        self._pending: Dict[str, Set[str]] = {}
        # Temp ids whose entry a load replaced with the fetched server copy
        self._absorbed: Dict[str, Set[str]] = {}
        # One set per running load, collecting ids confirmed meanwhile
        self._load_watches: Dict[str, List[Set[str]]] = {}
        self._send_locks: Dict[str, asyncio.Lock] = {}
        self._subscribers: Dict[str, List[Subscriber]] = {}

    @classmethod
    def from_config(
        cls, config: Any, remote: RemoteMessageStore, local_user_id: str
    ) -> "MessagePipeline":
        """
        Build the key store, cipher engine, resolver and pipeline from configuration.

        Args:
            config: parley.config.Config instance
            remote: Remote message store collaborator
            local_user_id: Id of the signed-in user
        """
        from .cipher import create_cipher_engine
        from .keystore import KeyStore

        keystore = KeyStore.open(config.keystore_path())
        engine = create_cipher_engine(config.get("cipher", "engine"))
        resolver = KeyResolver(
            keystore,
            engine,
            sentinel=config.get("messages", "sentinel"),
            plaintext_ratio=config.get("messages", "plaintext_ratio"),
            plaintext_max_length=config.get("messages", "plaintext_max_length"),
        )
        logger.info(f"Pipeline configured with '{engine.name}' cipher engine")
        return cls(
            remote,
            resolver,
            local_user_id,
            page_size=config.get("messages", "page_size", DEFAULT_PAGE_SIZE),
            mark_read_on_load=config.get("messages", "mark_read_on_load", True),
        )

    # Read access

    def get_messages(self, conversation_id: str) -> MessageList:
        """Current list of a conversation (empty tuple if never loaded)."""
        return self._lists.get(conversation_id, ())

    def state(self, conversation_id: str) -> ConversationState:
        return self._states.get(conversation_id, ConversationState.EMPTY)

    def pending_sends(self, conversation_id: str) -> int:
        """Number of sends of a conversation that are still in flight."""
        return len(self._pending.get(conversation_id, ()))

    def subscribe(self, conversation_id: str, callback: Subscriber) -> Callable[[], None]:
        """
        Register a callback invoked with every list published for a conversation.

        Returns:
            Function that removes the subscription
        """
        self._subscribers.setdefault(conversation_id, []).append(callback)

        def unsubscribe() -> None:
            callbacks = self._subscribers.get(conversation_id, [])
            if callback in callbacks:
                callbacks.remove(callback)

        return unsubscribe

    def clear(self, conversation_id: str) -> None:
        """Forget the cached list of a conversation."""
        self._absorbed.pop(conversation_id, None)
        self._publish(conversation_id, ())
        self._states[conversation_id] = ConversationState.EMPTY

    # List mutation (copy-on-write)

    def _publish(self, conversation_id: str, messages: Sequence[Message]) -> None:
        published = tuple(messages)
        self._lists[conversation_id] = published
        for callback in list(self._subscribers.get(conversation_id, [])):
            try:
                callback(published)
            except Exception as e:
                logger.error(f"Subscriber for {conversation_id} failed: {e}", exc_info=True)

    def _update(self, conversation_id: str, transform: Callable[[MessageList], MessageList]) -> None:
        self._publish(conversation_id, transform(self.get_messages(conversation_id)))

    def _replace_message(self, message_id: str, transform: Callable[[Message], Message]) -> None:
        """Apply ``transform`` to the cached copy of a message, wherever it is."""
        for conversation_id, messages in list(self._lists.items()):
            if any(m.message_id == message_id for m in messages):
                self._publish(
                    conversation_id,
                    [transform(m) if m.message_id == message_id else m for m in messages],
                )

    def _lock_for(self, conversation_id: str) -> asyncio.Lock:
        lock = self._send_locks.get(conversation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._send_locks[conversation_id] = lock
        return lock

    # Send

    async def send(
        self,
        conversation_id: str,
        sender_id: str,
        content: str,
        kind: Any = MessageKind.TEXT,
        media_ref: Optional[str] = None,
        participants: Optional[Sequence[str]] = None,
    ) -> Message:
        """
        Send a message with an optimistic local entry.

        The entry is visible immediately with the original plaintext. On
        success it is replaced in place by the confirmed message (keeping the
        known plaintext); on failure it is removed and the error is raised.

        Args:
            conversation_id: Conversation identifier
            sender_id: Sending user id
            content: Plaintext body (caption for images, may be empty)
            kind: MessageKind or "text"/"image"
            media_ref: Media reference for image messages
            participants: Participant ids, used if the conversation has no key yet

        Returns:
            The confirmed message

        Raises:
            MessageError: If the message is invalid
            EncryptionError: If the body cannot be encrypted
            RemoteWriteError: If the remote store rejects the write
            LocalStorageError: If the conversation key cannot be read or stored
        """
        kind = MessageKind.parse(kind)
        if kind is MessageKind.TEXT and not content:
            raise MessageError(ErrorCode.E501_INVALID_MESSAGE, "Text message must have content")
        if kind is MessageKind.IMAGE and not media_ref:
            raise MessageError(ErrorCode.E501_INVALID_MESSAGE, "Image message must have media")

        entry = Message.optimistic(conversation_id, sender_id, content, kind, media_ref)
        temp_id = entry.message_id
        self._update(conversation_id, lambda messages: messages + (entry,))
        pending = self._pending.setdefault(conversation_id, set())
        pending.add(temp_id)

        confirmed: Optional[Message] = None
        try:
            async with self._lock_for(conversation_id):
                record = await self._write_remote(
                    conversation_id, sender_id, content, kind, media_ref, participants
                )
            confirmed = record.to_message(content)
            if confirmed.media_ref is None and media_ref:
                confirmed = confirmed.with_changes(media_ref=media_ref)
        finally:
            pending.discard(temp_id)
            absorbed = self._absorbed.get(conversation_id, set())
            was_absorbed = temp_id in absorbed
            absorbed.discard(temp_id)
            if confirmed is None:
                self._update(
                    conversation_id,
                    lambda messages: tuple(m for m in messages if m.message_id != temp_id),
                )
                logger.error(f"Send failed for {conversation_id}, optimistic entry rolled back")

        self._update(
            conversation_id,
            lambda messages: self._reconcile(messages, temp_id, confirmed, was_absorbed),
        )
        for watch in self._load_watches.get(conversation_id, []):
            watch.add(confirmed.message_id)
        logger.debug(f"Message {confirmed.message_id} confirmed in {conversation_id}")
        return confirmed

    async def send_image(
        self,
        conversation_id: str,
        sender_id: str,
        media_ref: str,
        caption: str = "",
        participants: Optional[Sequence[str]] = None,
    ) -> Message:
        """Send an image message; the optional caption is encrypted like text."""
        return await self.send(
            conversation_id, sender_id, caption, MessageKind.IMAGE, media_ref, participants
        )

    async def _write_remote(
        self,
        conversation_id: str,
        sender_id: str,
        content: str,
        kind: MessageKind,
        media_ref: Optional[str],
        participants: Optional[Sequence[str]],
    ) -> MessageRecord:
        ciphertext = ""
        if content:
            # The remote schema has no tag column; only the ciphertext is stored
            ciphertext, _ = await self.resolver.encrypt_for_sending(
                conversation_id, content, participants
            )

        try:
            stored = await self.remote.create_message(
                conversation_id, sender_id, ciphertext, kind.value, media_ref
            )
        except ParleyError:
            raise
        except Exception as e:
            raise RemoteWriteError(
                f"Failed to create message: {e}", {"conversation_id": conversation_id}
            ) from e

        return MessageRecord.from_dict(stored, conversation_id)

    @staticmethod
    def _reconcile(
        messages: MessageList, temp_id: str, confirmed: Message, absorbed: bool = False
    ) -> MessageList:
        """
        Swap the optimistic entry for its confirmed counterpart.

        ``absorbed`` means a load already dropped the optimistic entry in
        favour of a fetched record; if that record was not the confirmed one,
        the confirmed message is inserted by creation time.
        """
        if any(m.message_id == confirmed.message_id for m in messages):
            # A load already fetched the confirmed copy; keep its position
            return tuple(
                confirmed if m.message_id == confirmed.message_id else m
                for m in messages
                if m.message_id != temp_id
            )
        if any(m.message_id == temp_id for m in messages):
            return tuple(confirmed if m.message_id == temp_id else m for m in messages)
        if absorbed:
            return _insert_by_time(messages, confirmed)
        return messages

    # Load

    async def load(
        self,
        conversation_id: str,
        limit: Optional[int] = None,
        offset: int = 0,
        participants: Optional[Sequence[str]] = None,
    ) -> MessageList:
        """
        Fetch, decrypt and publish the messages of a conversation.

        A message that cannot be decrypted is shown as the sentinel; it never
        aborts the batch. Sends still in flight stay at the end of the list,
        unless the page already holds their server copy. Sends confirmed while
        the page was being fetched are kept.

        Args:
            conversation_id: Conversation identifier
            limit: Page size (defaults to the configured page size)
            offset: Number of messages to skip
            participants: Participant ids, used if the conversation has no key yet

        Returns:
            The published list, ascending by creation time

        Raises:
            RemoteReadError: If the remote store cannot be read
            LocalStorageError: If the conversation key cannot be read or stored
        """
        previous = self.state(conversation_id)
        self._states[conversation_id] = ConversationState.LOADING
        watch: Set[str] = set()
        watches = self._load_watches.setdefault(conversation_id, [])
        watches.append(watch)

        try:
            try:
                raw = await self.remote.list_messages(
                    conversation_id, limit or self.page_size, offset
                )
            except ParleyError:
                raise
            except Exception as e:
                raise RemoteReadError(
                    f"Failed to list messages: {e}", {"conversation_id": conversation_id}
                ) from e

            records = sorted(
                (MessageRecord.from_dict(item, conversation_id) for item in raw),
                key=lambda record: parse_timestamp(record.created_at),
            )
            loaded = [
                record.to_message(await self._decrypt_record(record, participants))
                for record in records
            ]
        except Exception:
            self._states[conversation_id] = previous
            raise
        finally:
            watches.remove(watch)

        self._update(
            conversation_id,
            lambda current: self._merge_loaded(conversation_id, loaded, current, watch),
        )
        self._states[conversation_id] = ConversationState.LOADED
        logger.info(f"Loaded {len(loaded)} messages for {conversation_id}")

        if self.mark_read_on_load:
            await self._mark_incoming_read(loaded)

        return self.get_messages(conversation_id)

    def _merge_loaded(
        self,
        conversation_id: str,
        loaded: List[Message],
        current: MessageList,
        confirmed_meanwhile: Set[str],
    ) -> MessageList:
        """
        Combine a fetched page with the entries the page cannot know about.

        Messages confirmed while the fetch was running are kept in creation
        order. A pending entry whose server copy was already fetched is
        dropped, so each send shows once; the rest stay at the tail.
        """
        pending = self._pending.get(conversation_id, set())
        absorbed = self._absorbed.setdefault(conversation_id, set())
        taken = {m.message_id for m in current if not m.is_optimistic}

        tail: List[Message] = []
        for entry in reversed(current):
            if entry.message_id not in pending:
                continue
            copy = self._find_server_copy(entry, loaded, taken)
            if copy is None:
                tail.insert(0, entry)
                continue
            taken.add(copy.message_id)
            absorbed.add(entry.message_id)
            logger.debug(f"Pending {entry.message_id} already stored as {copy.message_id}")

        merged: MessageList = tuple(loaded)
        loaded_ids = {m.message_id for m in loaded}
        for entry in current:
            if entry.message_id in confirmed_meanwhile and entry.message_id not in loaded_ids:
                merged = _insert_by_time(merged, entry)
        return merged + tuple(tail)

    @staticmethod
    def _find_server_copy(
        entry: Message, loaded: Sequence[Message], taken: Set[str]
    ) -> Optional[Message]:
        for candidate in reversed(loaded):
            if (
                candidate.message_id not in taken
                and candidate.sender_id == entry.sender_id
                and candidate.kind is entry.kind
                and candidate.media_ref == entry.media_ref
                and candidate.content == entry.content
            ):
                return candidate
        return None

    async def _decrypt_record(
        self, record: MessageRecord, participants: Optional[Sequence[str]] = None
    ) -> str:
        if not record.ciphertext:
            return ""
        try:
            return await self.resolver.decrypt_content(
                record.conversation_id, record.ciphertext, participants=participants
            )
        except CipherError as e:
            logger.warning(f"Message {record.message_id} could not be decrypted: {e.code.value}")
            return self.resolver.sentinel

    async def _mark_incoming_read(self, messages: Sequence[Message]) -> None:
        """Best-effort read marking; failures are logged, never raised."""
        for message in messages:
            if message.sender_id == self.local_user_id or message.is_read:
                continue
            try:
                await self.mark_read(message.message_id)
            except RemoteStoreError as e:
                logger.warning(f"Failed to mark {message.message_id} as read: {e}")

    # Single-message updates

    async def _set_flag(self, message_id: str, flag: str) -> None:
        if is_temp_id(message_id):
            raise MessageError(
                ErrorCode.E502_MESSAGE_NOT_CONFIRMED,
                "Message is not confirmed yet",
                {"message_id": message_id},
            )

        try:
            await self.remote.update_message(message_id, {flag: True})
        except ParleyError:
            raise
        except Exception as e:
            raise RemoteWriteError(
                f"Failed to update message: {e}", {"message_id": message_id, "field": flag}
            ) from e

        self._replace_message(message_id, lambda m: m.with_changes(**{flag: True}))

    async def mark_read(self, message_id: str) -> None:
        """Mark a confirmed message as read. Idempotent."""
        await self._set_flag(message_id, "is_read")

    async def mark_delivered(self, message_id: str) -> None:
        """Mark a confirmed message as delivered. Idempotent."""
        await self._set_flag(message_id, "is_delivered")

    async def mark_conversation_read(self, conversation_id: str) -> int:
        """
        Mark every cached unread message from other users as read.

        Returns:
            Number of messages marked
        """
        unread = [
            m
            for m in self.get_messages(conversation_id)
            if not m.is_optimistic and m.sender_id != self.local_user_id and not m.is_read
        ]
        for message in unread:
            await self.mark_read(message.message_id)
        return len(unread)

    async def delete_message(self, conversation_id: str, message_id: str) -> None:
        """
        Replace a message body with the deleted placeholder.

        The placeholder is encrypted like any other body, so it reads back
        through the normal decryption chain.
        """
        if is_temp_id(message_id):
            raise MessageError(
                ErrorCode.E502_MESSAGE_NOT_CONFIRMED,
                "Message is not confirmed yet",
                {"message_id": message_id},
            )

        # Stored without its integrity tag, like every other body
        ciphertext, _ = await self.resolver.encrypt_for_sending(
            conversation_id, DELETED_MESSAGE_PLACEHOLDER
        )
        try:
            await self.remote.update_message(
                message_id, {"content": ciphertext, "kind": MessageKind.TEXT.value}
            )
        except ParleyError:
            raise
        except Exception as e:
            raise RemoteWriteError(
                f"Failed to delete message: {e}", {"message_id": message_id}
            ) from e

        self._replace_message(
            message_id,
            lambda m: m.with_changes(content=DELETED_MESSAGE_PLACEHOLDER, kind=MessageKind.TEXT),
        )
        logger.info(f"Deleted message {message_id} in {conversation_id}")

    def close(self) -> None:
        """Release the key store."""
        self.resolver.keystore.close()
