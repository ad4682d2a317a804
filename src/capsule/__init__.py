"""
Capsule - Passphrase-encrypted peer-to-peer file transfer and vault

Two peers sharing a passphrase link up over WebRTC with manual (copy/paste
or QR) signaling, chat, and exchange files encrypted under per-item keys.
The same keys protect a local encrypted vault.

Author: orpheus497
Version: 1.0.0
License: MIT
"""

__version__ = "1.0.0"
__author__ = "orpheus497"
__license__ = "MIT"

# Import core modules for easy access
from .config import Config
from .constants import APP_NAME, VERSION
from .crypto import SecretManager, compute_item_id, generate_passphrase
from .errors import (
    AuthenticationFailed,
    CapsuleError,
    ConfigError,
    CryptoError,
    ErrorCode,
    FileTransferError,
    MalformedBlob,
    MalformedFrame,
    NoRoomKey,
    NotConnected,
    ProtocolError,
    QRCodeError,
    SecretRequired,
    SignalingError,
    VaultError,
)
from .file_transfer import ReceivedFile, TransferChannel
from .items import FileItem
from .signaling import SignalingBlob, SignalingSession, SignalingState
from .storage import FilesystemDirectory, MemoryDirectory, open_storage
from .vault import VaultStore, parse_archive

__all__ = [
    "APP_NAME",
    "VERSION",
    "AuthenticationFailed",
    "CapsuleError",
    "Config",
    "ConfigError",
    "CryptoError",
    "ErrorCode",
    "FileItem",
    "FileTransferError",
    "FilesystemDirectory",
    "MalformedBlob",
    "MalformedFrame",
    "MemoryDirectory",
    "NoRoomKey",
    "NotConnected",
    "ProtocolError",
    "QRCodeError",
    "ReceivedFile",
    "SecretManager",
    "SecretRequired",
    "SignalingBlob",
    "SignalingError",
    "SignalingSession",
    "SignalingState",
    "TransferChannel",
    "VaultError",
    "VaultStore",
    "compute_item_id",
    "generate_passphrase",
    "open_storage",
    "parse_archive",
    "__author__",
    "__license__",
    "__version__",
]
