"""
Capsule - Global Constants and Configuration Values

This module defines all constants used throughout the Capsule application.
All magic numbers and configuration defaults are centralized here.

Author: orpheus497
Version: 1.0.0
"""

# Version Information
VERSION = "1.0.0"
APP_NAME = "Capsule"
AUTHOR = "orpheus497"

# Key Derivation
ROOM_KEY_SALT = b"capsule:v1"  # Public application constant, not a secret
PBKDF2_ITERATIONS = 200_000
PBKDF2_MIN_ITERATIONS = 100_000
ARGON2_TIME_COST = 3
ARGON2_MEMORY_COST = 65536  # 64 MB
ARGON2_PARALLELISM = 1
KDF_PBKDF2 = "pbkdf2"
KDF_ARGON2ID = "argon2id"
ITEM_KEY_INFO_PREFIX = "item:"

# Cryptography Constants
KEY_SIZE = 32  # 256 bits
IV_SIZE = 12  # 96 bits for AES-GCM
ITEM_SALT_SIZE = 32
GCM_TAG_SIZE = 16
PASSPHRASE_BYTES = 32

# Item Identifiers
ITEM_ID_PREFIX = "itm_"
ITEM_ID_HASH_LENGTH = 12

# Signaling
DATA_CHANNEL_LABEL = "data"
ICE_GATHERING_TIMEOUT = 1.2  # seconds, upper bound before proceeding
DEFAULT_ICE_SERVERS = [
    {"urls": ["stun:stun.l.google.com:19302", "stun:stun.cloudflare.com:3478"]},
]

# Transfer Channel
FILE_CHUNK_SIZE = 256 * 1024  # 256 KiB
MAX_TEXT_FRAME_SIZE = 256 * 1024
SEND_BUFFER_HIGH_WATER = 4 * 1024 * 1024  # pause sending above this many queued bytes
SEND_BUFFER_LOW_WATER = 1 * 1024 * 1024  # resume once the queue drains to this
FRAME_DELIMITER = b"\n"
FRAME_KIND_CHAT = "chat"
FRAME_KIND_FILE_META = "file-meta"
FRAME_KIND_FILE_CHUNK = "file-chunk"
FRAME_KIND_LOCATION = "location"
DEFAULT_MIME_TYPE = "application/octet-stream"

# Vault Layout
VAULT_ITEMS_DIR = "items"
VAULT_CHUNKS_DIR = "chunks"
VAULT_CHUNK_SUFFIX = ".chunk"
VAULT_META_SUFFIX = ".json"
VAULT_SHARD_LENGTH = 2

# Export Archive
ARCHIVE_MAGIC = b"CAPV"
ARCHIVE_VERSION = 1
ARCHIVE_FILENAME = "vault-export.bin"

# File Paths
DEFAULT_DATA_DIR = "~/.capsule"
CONFIG_FILENAME = "config.toml"
VAULT_DIR = "vault"
DOWNLOADS_DIR = "downloads"
LOGS_DIR = "logs"
LOG_FILENAME = "capsule.log"

# Logging Configuration
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_MAX_BYTES = 10 * 1024 * 1024  # 10 MB
LOG_BACKUP_COUNT = 5

# Signaling State Machine
STATE_HISTORY_LIMIT = 100
