"""
Parley - Conversation key resolution and the decryption fallback chain.

Created by orpheus497
Version: 1.0.0

Keys can be missing (new device), stale (conversation created elsewhere)
or unrecoverable (key reset). The resolver turns a conversation id into a
usable key and, when decrypting, walks an ordered list of strategies:

1. ResolvedKeyStrategy: the persisted key, or a derived key that is
   persisted on first use (write-through)
2. FallbackKeyStrategy: the per-room deterministic fallback key
3. PlaintextStrategy: content that already looks like plaintext
4. The unrecoverable-key sentinel

Each strategy returns plaintext or None to pass to the next one. Cipher
failures never escape the chain; local storage failures do.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from cryptography.hazmat.primitives import hashes

from .cipher import CipherEngine, rolling_hash
from .constants import (
    FALLBACK_HASH_WIDTH,
    FALLBACK_KEY_TEMPLATE,
    KEY_HEX_LENGTH,
    PLAINTEXT_MAX_LENGTH,
    PLAINTEXT_MIN_RATIO,
    ROOM_KEY_SEPARATOR,
    UNRECOVERABLE_SENTINEL,
)
from .errors import CipherError, EncryptionError, KeyDerivationError
from .keystore import KeyStore
from .utils import printable_ascii_ratio

logger = logging.getLogger(__name__)


def derive_room_key(participant_a: str, participant_b: str) -> bytes:
    """
    Derive the initial key of a two-party conversation.

    The participant ids are sorted before hashing, so both sides derive the
    same key regardless of who created the conversation.

    Args:
        participant_a: First participant id
        participant_b: Second participant id

    Returns:
        32 lowercase hex characters as ASCII bytes

    Raises:
        KeyDerivationError: If either id is empty
    """
    if not participant_a or not participant_b:
        raise KeyDerivationError(
            "Both participant ids are required to derive a room key",
            {"participants": [participant_a, participant_b]},
        )

    combined = ROOM_KEY_SEPARATOR.join(sorted([participant_a, participant_b]))
    digest = hashes.Hash(hashes.SHA256())
    digest.update(combined.encode("utf-8"))
    return digest.finalize().hex()[:KEY_HEX_LENGTH].encode("ascii")


def derive_fallback_key(conversation_id: str) -> bytes:
    """
    Derive the per-room deterministic fallback key from a conversation id alone.

    The rolling hash of ``chatroom_<id>_key`` is zero-padded to 8 hex digits
    and repeated to 32 characters. Every device computes the same value.
    """
    base = FALLBACK_KEY_TEMPLATE.format(conversation_id=conversation_id)
    block = format(abs(rolling_hash(base)), "x").zfill(FALLBACK_HASH_WIDTH)
    repeats = KEY_HEX_LENGTH // FALLBACK_HASH_WIDTH
    return (block * repeats).encode("ascii")


def is_likely_plaintext(
    content: str,
    min_ratio: float = PLAINTEXT_MIN_RATIO,
    max_length: int = PLAINTEXT_MAX_LENGTH,
) -> bool:
    """
    Heuristic check for content that was never encrypted.

    Returns True if at least ``min_ratio`` of the characters are printable
    ASCII and the content is shorter than ``max_length``.
    """
    if not content or len(content) >= max_length:
        return False
    return printable_ascii_ratio(content) >= min_ratio


@dataclass(frozen=True)
class DecryptionAttempt:
    """Inputs shared by every strategy while decrypting one message."""

    conversation_id: str
    ciphertext: str
    tag: Optional[str] = None
    participants: Optional[Tuple[str, ...]] = None


class DecryptionStrategy:
    """One link of the fallback chain."""

    name = "strategy"

    async def attempt(self, resolver: "KeyResolver", attempt: DecryptionAttempt) -> Optional[str]:
        raise NotImplementedError


class ResolvedKeyStrategy(DecryptionStrategy):
    """Decrypt with the key returned by KeyResolver.resolve()."""

    name = "resolved-key"

    async def attempt(self, resolver: "KeyResolver", attempt: DecryptionAttempt) -> Optional[str]:
        key = await resolver.resolve(attempt.conversation_id, attempt.participants)
        try:
            plaintext = resolver.engine.decrypt(attempt.ciphertext, key)
        except CipherError as e:
            logger.debug(f"Resolved key failed for {attempt.conversation_id}: {e.code.value}")
            return None

        if attempt.tag and not resolver.engine.verify_tag(plaintext, attempt.tag, key):
            logger.warning(
                f"Integrity tag mismatch for {attempt.conversation_id}, trying other methods"
            )
            return None
        return plaintext


class FallbackKeyStrategy(DecryptionStrategy):
    """
    Decrypt with the deterministic fallback key.

    On success the fallback key is persisted only when the conversation has
    no stored key; an existing key is never overwritten.
    """

    name = "fallback-key"

    async def attempt(self, resolver: "KeyResolver", attempt: DecryptionAttempt) -> Optional[str]:
        fallback = derive_fallback_key(attempt.conversation_id)
        stored = await resolver.keystore.get_conversation_key(attempt.conversation_id)
        if stored == fallback:
            # Already tried as the resolved key
            return None

        try:
            plaintext = resolver.engine.decrypt(attempt.ciphertext, fallback)
        except CipherError:
            logger.debug(f"Fallback key failed for {attempt.conversation_id}")
            return None

        if attempt.tag and not resolver.engine.verify_tag(plaintext, attempt.tag, fallback):
            return None

        if stored is None:
            await resolver.keystore.set_conversation_key(attempt.conversation_id, fallback)
        logger.info(f"Decrypted with fallback key for {attempt.conversation_id}")
        return plaintext


class PlaintextStrategy(DecryptionStrategy):
    """Return content unchanged when it already looks like plaintext."""

    name = "plaintext"

    async def attempt(self, resolver: "KeyResolver", attempt: DecryptionAttempt) -> Optional[str]:
        if is_likely_plaintext(
            attempt.ciphertext, resolver.plaintext_ratio, resolver.plaintext_max_length
        ):
            logger.info(f"Content appears to be plain text for {attempt.conversation_id}")
            return attempt.ciphertext
        return None


def default_strategies() -> List[DecryptionStrategy]:
    """The fallback chain in its fixed order."""
    return [ResolvedKeyStrategy(), FallbackKeyStrategy(), PlaintextStrategy()]


class KeyResolver:
    """
    Resolves conversation keys and decrypts message bodies.

    Attributes:
        keystore: Durable key storage (the only writer of key material)
        engine: Cipher engine used for every conversation
        strategies: Ordered decryption strategies
        sentinel: Placeholder returned when every strategy passes
    """

    def __init__(
        self,
        keystore: KeyStore,
        engine: CipherEngine,
        strategies: Optional[Sequence[DecryptionStrategy]] = None,
        sentinel: str = UNRECOVERABLE_SENTINEL,
        plaintext_ratio: float = PLAINTEXT_MIN_RATIO,
        plaintext_max_length: int = PLAINTEXT_MAX_LENGTH,
    ):
        self.keystore = keystore
        self.engine = engine
        self.strategies = list(strategies) if strategies is not None else default_strategies()
        self.sentinel = sentinel
        self.plaintext_ratio = plaintext_ratio
        self.plaintext_max_length = plaintext_max_length

    async def resolve(
        self, conversation_id: str, participants: Optional[Sequence[str]] = None
    ) -> bytes:
        """
        Return the key of a conversation, creating and persisting it if needed.

        1. The persisted key, if any
        2. Otherwise the room key (exactly two participants given) or the
           deterministic fallback key, written through to the key store

        There is no suspension between the lookup miss and the write, so
        concurrent resolutions of one conversation converge on one key.

        Args:
            conversation_id: Conversation identifier
            participants: Optional participant ids of a two-party conversation

        Returns:
            Key material
        """
        key = await self.keystore.get_conversation_key(conversation_id)
        if key:
            return key

        unique = sorted(set(participants or ()))
        if len(unique) == 2:
            key = derive_room_key(unique[0], unique[1])
            source = "room"
        else:
            key = derive_fallback_key(conversation_id)
            source = "fallback"

        await self.keystore.set_conversation_key(conversation_id, key)
        logger.info(f"No key found for {conversation_id}, persisted {source} key")
        return key

    async def create_conversation_key(
        self, conversation_id: str, participants: Sequence[str]
    ) -> bytes:
        """
        Initialize the key of a newly created two-party conversation.

        Raises:
            KeyDerivationError: Unless exactly two distinct participants are given
        """
        if len(set(participants)) != 2:
            raise KeyDerivationError(
                "Only one-to-one conversations are supported",
                {"participants": list(participants)},
            )
        return await self.resolve(conversation_id, participants)

    async def encrypt_for_sending(
        self,
        conversation_id: str,
        plaintext: str,
        participants: Optional[Sequence[str]] = None,
    ) -> Tuple[str, str]:
        """
        Encrypt a message body with the conversation key.

        Returns:
            Tuple of (ciphertext, integrity tag)

        Raises:
            EncryptionError: If the cipher fails
            LocalStorageError: If the key cannot be read or persisted
        """
        key = await self.resolve(conversation_id, participants)
        try:
            ciphertext = self.engine.encrypt(plaintext, key)
        except EncryptionError:
            raise
        except CipherError as e:
            raise EncryptionError(message=e.message, details=e.details) from e
        return ciphertext, self.engine.integrity_tag(plaintext, key)

    async def decrypt_content(
        self,
        conversation_id: str,
        ciphertext: str,
        tag: Optional[str] = None,
        participants: Optional[Sequence[str]] = None,
    ) -> str:
        """
        Decrypt a message body, degrading to plaintext detection or the sentinel.

        Never raises for undecryptable content.

        Raises:
            LocalStorageError: If the key store cannot be read or written
        """
        attempt = DecryptionAttempt(
            conversation_id=conversation_id,
            ciphertext=ciphertext,
            tag=tag,
            participants=tuple(participants) if participants else None,
        )

        for strategy in self.strategies:
            plaintext = await strategy.attempt(self, attempt)
            if plaintext is not None:
                logger.debug(f"Strategy '{strategy.name}' succeeded for {conversation_id}")
                return plaintext

        logger.warning(f"All decryption strategies failed for {conversation_id}")
        return self.sentinel
