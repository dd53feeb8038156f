"""
Parley - Custom Exception Classes and Error Codes

This module defines all custom exceptions and error codes used throughout
the Parley pipeline. Each error has a unique code for logging and debugging.

Author: orpheus497
Version: 1.0.0
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Enumeration of all Parley error codes."""

    # General Errors (E001-E099)
    E001_UNKNOWN_ERROR = "E001"
    E002_INVALID_ARGUMENT = "E002"
    E005_OPERATION_FAILED = "E005"

    # Cipher Errors (E100-E199)
    E100_CIPHER_ERROR = "E100"
    E101_ENCRYPTION_FAILED = "E101"
    E102_DECRYPTION_FAILED = "E102"
    E103_INVALID_KEY = "E103"
    E104_MALFORMED_CIPHERTEXT = "E104"

    # Key Errors (E200-E299)
    E200_KEY_ERROR = "E200"
    E201_KEY_UNAVAILABLE = "E201"
    E202_KEY_DERIVATION_FAILED = "E202"
    E203_KEY_BACKUP_FAILED = "E203"
    E204_KEY_RESTORE_FAILED = "E204"

    # Local Storage Errors (E300-E399)
    E300_LOCAL_STORAGE_ERROR = "E300"
    E301_STORAGE_OPEN_FAILED = "E301"
    E302_STORAGE_READ_FAILED = "E302"
    E303_STORAGE_WRITE_FAILED = "E303"

    # Remote Store Errors (E400-E499)
    E400_REMOTE_ERROR = "E400"
    E401_REMOTE_WRITE_FAILED = "E401"
    E402_REMOTE_READ_FAILED = "E402"
    E403_INVALID_RECORD = "E403"

    # Message Errors (E500-E599)
    E500_MESSAGE_ERROR = "E500"
    E501_INVALID_MESSAGE = "E501"
    E502_MESSAGE_NOT_CONFIRMED = "E502"

    # Config Errors (E700-E799)
    E700_CONFIG_ERROR = "E700"
    E701_CONFIG_LOAD_FAILED = "E701"
    E702_CONFIG_SAVE_FAILED = "E702"
    E703_INVALID_CONFIG = "E703"
    E704_CONFIG_PARSE_ERROR = "E704"


class ParleyError(Exception):
    """Base exception class for all Parley errors.

    All custom exceptions in Parley inherit from this class.
    Provides standardized error handling and logging.

    Attributes:
        code: Error code from ErrorCode enum
        message: Human-readable error message
        details: Additional error details (optional)
    """

    def __init__(self, code: ErrorCode, message: str, details: Optional[Dict[str, Any]] = None):
        """Initialize a Parley error.

        Args:
            code: Error code from ErrorCode enum
            message: Human-readable error message
            details: Additional error context (optional)
        """
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(f"[{code.value}] {message}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for serialization.

        Returns:
            Dictionary containing error information
        """
        return {"code": self.code.value, "message": self.message, "details": self.details}


class CipherError(ParleyError):
    """Exception raised for cipher engine failures.

    This includes encryption, decryption, malformed input and invalid keys.
    """

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E100_CIPHER_ERROR,
        message: str = "Cipher operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class EncryptionError(CipherError):
    """Encrypting a message body failed. Fatal for the send in progress."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E101_ENCRYPTION_FAILED,
        message: str = "Encryption failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class DecryptionError(CipherError):
    """Decrypting a message body failed. Recoverable per message."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E102_DECRYPTION_FAILED,
        message: str = "Decryption failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class MalformedCiphertextError(DecryptionError):
    """Ciphertext is not valid base64 or does not decode to valid UTF-8."""

    def __init__(
        self,
        message: str = "Ciphertext is malformed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(ErrorCode.E104_MALFORMED_CIPHERTEXT, message, details)


class KeyMaterialError(ParleyError):
    """Exception raised for conversation and user key failures."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E200_KEY_ERROR,
        message: str = "Key operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class KeyUnavailableError(KeyMaterialError):
    """No usable key exists for the requested scope."""

    def __init__(
        self,
        message: str = "Key unavailable",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(ErrorCode.E201_KEY_UNAVAILABLE, message, details)


class KeyDerivationError(KeyMaterialError):
    """A deterministic key could not be derived from the given inputs."""

    def __init__(
        self,
        message: str = "Key derivation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(ErrorCode.E202_KEY_DERIVATION_FAILED, message, details)


class KeyBackupError(KeyMaterialError):
    """Exporting or restoring a key backup failed."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E203_KEY_BACKUP_FAILED,
        message: str = "Key backup operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class LocalStorageError(ParleyError):
    """Exception raised for local durable storage failures.

    Treated as fatal for the operation that needed the storage.
    """

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E300_LOCAL_STORAGE_ERROR,
        message: str = "Local storage operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class RemoteStoreError(ParleyError):
    """Exception raised for remote message-store failures."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E400_REMOTE_ERROR,
        message: str = "Remote store operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class RemoteWriteError(RemoteStoreError):
    """Creating or updating a remote message failed."""

    def __init__(
        self,
        message: str = "Remote write failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(ErrorCode.E401_REMOTE_WRITE_FAILED, message, details)


class RemoteReadError(RemoteStoreError):
    """Listing remote messages failed."""

    def __init__(
        self,
        message: str = "Remote read failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(ErrorCode.E402_REMOTE_READ_FAILED, message, details)


class MessageError(ParleyError):
    """Exception raised for invalid message operations.

    This includes state transitions on messages that are not yet confirmed.
    """

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E500_MESSAGE_ERROR,
        message: str = "Message operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class ConfigError(ParleyError):
    """Exception raised for configuration failures.

    This includes loading, parsing, and validating configuration files.
    """

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E700_CONFIG_ERROR,
        message: str = "Configuration operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)
