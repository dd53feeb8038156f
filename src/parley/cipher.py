"""
Parley - Message body cipher engines.

Created by orpheus497

This module implements the symmetric primitives used to obscure message
bodies at rest in the remote message store:

- XorCipherEngine: repeating-keystream XOR over UTF-8 bytes, base64 encoded.
  Deterministic and compatible with every existing conversation, but it is
  NOT authenticated encryption: there is no nonce and no tamper protection.
- AeadCipherEngine: AES-256-GCM with a random nonce and an HKDF-derived key.
  Same encrypt/decrypt contract, so the key resolver and message pipeline
  work unchanged when it is selected.

Both engines share the rolling integrity checksum. The checksum is a cheap
corruption check and must never be treated as a MAC.

All authenticated primitives come from the cryptography library
(Apache 2.0/BSD License).
"""

import base64
import binascii
import os
from typing import Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .constants import (
    AEAD_HKDF_INFO,
    AEAD_KEY_SIZE,
    AEAD_NONCE_SIZE,
    CIPHER_ENGINE_AEAD,
    CIPHER_ENGINE_XOR,
)
from .errors import (
    ConfigError,
    DecryptionError,
    EncryptionError,
    ErrorCode,
    MalformedCiphertextError,
)

KeyMaterial = Union[bytes, str]


def _key_bytes(key: KeyMaterial) -> bytes:
    """Normalize key material to bytes. String keys are used as UTF-8."""
    if isinstance(key, str):
        return key.encode("utf-8")
    return bytes(key)


def rolling_hash(text: str) -> int:
    """
    Compute the 32-bit rolling hash ``h = h * 31 + ord(c)`` over ``text``.

    The accumulator wraps like a signed 32-bit integer after every step,
    so the result lies in ``[-2**31, 2**31)``. Key derivation and the
    integrity checksum both build on this value.
    """
    value = 0
    for char in text:
        value = (value * 31 + ord(char)) & 0xFFFFFFFF
    if value >= 0x80000000:
        value -= 0x100000000
    return value


def rolling_hash_hex(text: str) -> str:
    """Absolute value of rolling_hash() as lowercase hex without padding."""
    return format(abs(rolling_hash(text)), "x")


def _b64decode_strict(ciphertext: str) -> bytes:
    try:
        return base64.b64decode(ciphertext, validate=True)
    except (binascii.Error, ValueError) as e:
        raise MalformedCiphertextError("Ciphertext is not valid base64", {"error": str(e)}) from e


class CipherEngine:
    """
    Base class for message body ciphers.

    Subclasses implement encrypt() and decrypt(). The integrity checksum
    is shared by every engine.
    """

    name = ""

    def encrypt(self, plaintext: str, key: KeyMaterial) -> str:
        raise NotImplementedError

    def decrypt(self, ciphertext: str, key: KeyMaterial) -> str:
        raise NotImplementedError

    def integrity_tag(self, plaintext: str, key: KeyMaterial) -> str:
        """
        Compute the rolling checksum over ``plaintext + key``.

        Args:
            plaintext: Message body
            key: Conversation key material

        Returns:
            Lowercase hex checksum
        """
        key_text = key if isinstance(key, str) else _key_bytes(key).decode("utf-8", "replace")
        return rolling_hash_hex(plaintext + key_text)

    def verify_tag(self, plaintext: str, tag: str, key: KeyMaterial) -> bool:
        """Return True if ``tag`` matches the checksum of ``plaintext`` under ``key``."""
        return self.integrity_tag(plaintext, key) == tag


class XorCipherEngine(CipherEngine):
    """
    Repeating-keystream XOR cipher.

    Byte ``i`` of the UTF-8 encoded plaintext is XORed with
    ``key[i % len(key)]`` and the result is base64 encoded. Working on bytes
    rather than code units means every Unicode string round-trips, including
    characters outside the Basic Multilingual Plane.
    """

    name = CIPHER_ENGINE_XOR

    @staticmethod
    def _xor(data: bytes, key: bytes) -> bytes:
        key_length = len(key)
        return bytes(byte ^ key[index % key_length] for index, byte in enumerate(data))

    def encrypt(self, plaintext: str, key: KeyMaterial) -> str:
        """
        Encrypt a message body.

        Args:
            plaintext: Message body to encrypt
            key: Non-empty key material

        Returns:
            Base64 ciphertext

        Raises:
            EncryptionError: If the key is empty or the text cannot be encoded
        """
        key_bytes = _key_bytes(key)
        if not key_bytes:
            raise EncryptionError(ErrorCode.E103_INVALID_KEY, "Encryption key must not be empty")

        try:
            data = plaintext.encode("utf-8")
        except UnicodeEncodeError as e:
            raise EncryptionError(message=f"Plaintext is not encodable: {e}") from e

        return base64.b64encode(self._xor(data, key_bytes)).decode("ascii")

    def decrypt(self, ciphertext: str, key: KeyMaterial) -> str:
        """
        Decrypt a message body.

        Raises:
            DecryptionError: If the key is empty
            MalformedCiphertextError: If the input is not base64 or the
                recovered bytes are not valid UTF-8
        """
        key_bytes = _key_bytes(key)
        if not key_bytes:
            raise DecryptionError(ErrorCode.E103_INVALID_KEY, "Decryption key must not be empty")

        data = self._xor(_b64decode_strict(ciphertext), key_bytes)
        try:
            return data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedCiphertextError(
                "Recovered bytes are not valid UTF-8", {"position": e.start}
            ) from e


class AeadCipherEngine(CipherEngine):
    """
    AES-256-GCM cipher with the same contract as XorCipherEngine.

    The AES key is derived from the conversation key material with
    HKDF-SHA256, so any existing key (hex string or raw bytes) can be used.
    Output layout is ``base64(nonce || ciphertext || tag)``. A fresh random
    nonce is used per message, so output is not deterministic.
    """

    name = CIPHER_ENGINE_AEAD

    @staticmethod
    def _derive(key_bytes: bytes) -> bytes:
        hkdf = HKDF(
            algorithm=hashes.SHA256(),
            length=AEAD_KEY_SIZE,
            salt=None,
            info=AEAD_HKDF_INFO,
        )
        return hkdf.derive(key_bytes)

    def encrypt(self, plaintext: str, key: KeyMaterial) -> str:
        key_bytes = _key_bytes(key)
        if not key_bytes:
            raise EncryptionError(ErrorCode.E103_INVALID_KEY, "Encryption key must not be empty")

        try:
            aesgcm = AESGCM(self._derive(key_bytes))
            nonce = os.urandom(AEAD_NONCE_SIZE)
            sealed = aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)
        except (UnicodeEncodeError, ValueError) as e:
            raise EncryptionError(message=f"AEAD encryption failed: {e}") from e

        return base64.b64encode(nonce + sealed).decode("ascii")

    def decrypt(self, ciphertext: str, key: KeyMaterial) -> str:
        key_bytes = _key_bytes(key)
        if not key_bytes:
            raise DecryptionError(ErrorCode.E103_INVALID_KEY, "Decryption key must not be empty")

        raw = _b64decode_strict(ciphertext)
        # 16-byte GCM tag follows the ciphertext
        if len(raw) < AEAD_NONCE_SIZE + 16:
            raise MalformedCiphertextError("Ciphertext is too short", {"length": len(raw)})

        nonce, sealed = raw[:AEAD_NONCE_SIZE], raw[AEAD_NONCE_SIZE:]
        try:
            plaintext = AESGCM(self._derive(key_bytes)).decrypt(nonce, sealed, None)
        except InvalidTag as e:
            raise DecryptionError(message="Authentication tag verification failed") from e

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedCiphertextError("Recovered bytes are not valid UTF-8") from e


def create_cipher_engine(name: str = CIPHER_ENGINE_XOR) -> CipherEngine:
    """
    Create a cipher engine by configuration name.

    Args:
        name: "xor" or "aead"

    Returns:
        CipherEngine instance

    Raises:
        ConfigError: If the engine name is unknown
    """
    engines = {
        CIPHER_ENGINE_XOR: XorCipherEngine,
        CIPHER_ENGINE_AEAD: AeadCipherEngine,
    }
    try:
        return engines[name.lower()]()
    except KeyError:
        raise ConfigError(
            ErrorCode.E703_INVALID_CONFIG,
            f"Unknown cipher engine: {name}",
            {"available": sorted(engines)},
        ) from None
