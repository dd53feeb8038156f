"""
Parley - Encrypted conversation message pipeline

Key resolution, message body encryption and optimistic send/receive
reconciliation for a chat client backed by a remote message store.

Author: orpheus497
Version: 1.0.0
License: MIT
"""

__version__ = "1.0.0"
__author__ = "orpheus497"
__license__ = "MIT"

from .cipher import AeadCipherEngine, CipherEngine, XorCipherEngine, create_cipher_engine
from .config import Config, setup_logging
from .constants import APP_NAME, VERSION
from .errors import (
    CipherError,
    ConfigError,
    DecryptionError,
    EncryptionError,
    ErrorCode,
    KeyMaterialError,
    LocalStorageError,
    MessageError,
    ParleyError,
    RemoteReadError,
    RemoteStoreError,
    RemoteWriteError,
)
from .keystore import KeyStore
from .message import Message, MessageKind
from .pipeline import ConversationState, MessagePipeline
from .remote import RemoteMessageStore
from .resolver import KeyResolver

__all__ = [
    "APP_NAME",
    "VERSION",
    "AeadCipherEngine",
    "CipherEngine",
    "CipherError",
    "Config",
    "ConfigError",
    "ConversationState",
    "DecryptionError",
    "EncryptionError",
    "ErrorCode",
    "KeyMaterialError",
    "KeyResolver",
    "KeyStore",
    "LocalStorageError",
    "Message",
    "MessageError",
    "MessageKind",
    "MessagePipeline",
    "ParleyError",
    "RemoteMessageStore",
    "RemoteReadError",
    "RemoteStoreError",
    "RemoteWriteError",
    "XorCipherEngine",
    "create_cipher_engine",
    "setup_logging",
    "__author__",
    "__license__",
    "__version__",
]
