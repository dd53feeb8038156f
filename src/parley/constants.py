"""
Parley - Global Constants and Configuration Values

This module defines all constants used throughout the Parley pipeline.
All magic numbers, storage prefixes and fixed strings are centralized here.

Author: orpheus497
Version: 1.0.0
"""

# Version Information
VERSION = "1.0.0"
APP_NAME = "Parley"
AUTHOR = "orpheus497"

# Key Store Scopes
CHAT_KEY_PREFIX = "chat_key_"
USER_KEY_PREFIX = "user_key_"
USER_KEY_BYTES = 32  # 256 bits of random material, stored hex encoded

# Key Derivation
KEY_HEX_LENGTH = 32  # derived room/fallback keys are 32 hex characters
FALLBACK_KEY_TEMPLATE = "chatroom_{conversation_id}_key"
FALLBACK_HASH_WIDTH = 8  # hex digits of the rolling hash before repetition
ROOM_KEY_SEPARATOR = ":"

# Authenticated Cipher (AEAD engine)
AEAD_KEY_SIZE = 32  # AES-256
AEAD_NONCE_SIZE = 12  # 96 bits for GCM
AEAD_HKDF_INFO = b"parley-conversation-key-aes-gcm"

# Key Backup (Argon2id + AES-256-GCM)
BACKUP_VERSION = "1.0"
BACKUP_SALT_SIZE = 16  # 128 bits
BACKUP_NONCE_SIZE = 12
ARGON2_TIME_COST = 3
ARGON2_MEMORY_COST = 65536  # 64 MB
ARGON2_PARALLELISM = 1
ARGON2_HASH_LEN = 32

# Plaintext Heuristic
PLAINTEXT_MIN_RATIO = 0.7  # share of printable ASCII characters
PLAINTEXT_MAX_LENGTH = 1000  # content at or above this length is never plaintext

# Placeholders shown in the timeline
UNRECOVERABLE_SENTINEL = "[content encrypted with an unrecoverable key]"
DELETED_MESSAGE_PLACEHOLDER = "[Message deleted]"

# Message Pipeline
TEMP_ID_PREFIX = "temp-"
DEFAULT_PAGE_SIZE = 50
MESSAGE_KIND_TEXT = "text"
MESSAGE_KIND_IMAGE = "image"

# File Paths
DEFAULT_DATA_DIR = "~/.parley"
CONFIG_FILENAME = "config.toml"
KEYSTORE_FILENAME = "keys.db"
LOG_FILENAME = "parley.log"

# Logging Configuration
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_MAX_BYTES = 10 * 1024 * 1024  # 10 MB
LOG_BACKUP_COUNT = 5

# Cipher engines
CIPHER_ENGINE_XOR = "xor"
CIPHER_ENGINE_AEAD = "aead"
DEFAULT_CIPHER_ENGINE = CIPHER_ENGINE_XOR
