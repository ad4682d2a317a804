"""
Capsule - Custom Exception Classes and Error Codes

This module defines all custom exceptions and error codes used throughout
the Capsule application. Each error has a unique code for logging and debugging.

Author: orpheus497
Version: 1.0.0
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Enumeration of all Capsule error codes."""

    # General Errors (E001-E099)
    E001_UNKNOWN_ERROR = "E001"
    E002_INVALID_ARGUMENT = "E002"
    E003_FILE_NOT_FOUND = "E003"
    E004_PERMISSION_DENIED = "E004"

    # Crypto Errors (E100-E199)
    E100_CRYPTO_ERROR = "E100"
    E101_SECRET_REQUIRED = "E101"
    E102_NO_ROOM_KEY = "E102"
    E103_INVALID_KEY = "E103"
    E104_AUTHENTICATION_FAILED = "E104"
    E105_KEY_DERIVATION_FAILED = "E105"

    # Signaling Errors (E200-E299)
    E200_SIGNALING_ERROR = "E200"
    E201_MALFORMED_BLOB = "E201"
    E202_WRONG_ROLE = "E202"
    E203_CONNECTION_CLOSED = "E203"
    E204_CHANNEL_TIMEOUT = "E204"

    # Protocol Errors (E300-E399)
    E300_PROTOCOL_ERROR = "E300"
    E301_MALFORMED_FRAME = "E301"
    E302_NOT_CONNECTED = "E302"
    E303_FRAME_TOO_LARGE = "E303"

    # File Transfer Errors (E600-E699)
    E600_FILE_TRANSFER_ERROR = "E600"
    E601_NOT_A_FILE = "E601"

    # Config Errors (E700-E799)
    E700_CONFIG_ERROR = "E700"
    E701_CONFIG_LOAD_FAILED = "E701"
    E702_CONFIG_SAVE_FAILED = "E702"
    E704_CONFIG_PARSE_ERROR = "E704"

    # Vault Errors (E800-E899)
    E800_VAULT_ERROR = "E800"
    E801_ITEM_NOT_FOUND = "E801"
    E802_CORRUPT_METADATA = "E802"
    E803_INVALID_ARCHIVE = "E803"

    # QR Code Errors (E900-E999)
    E900_QR_ERROR = "E900"
    E901_QR_UNAVAILABLE = "E901"
    E902_QR_NOT_FOUND = "E902"


class CapsuleError(Exception):
    """Base exception class for all Capsule errors.

    Attributes:
        code: Error code from ErrorCode enum
        message: Human-readable error message
        details: Additional error details (optional)
    """

    def __init__(self, code: ErrorCode, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(f"[{code.value}] {message}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for serialization."""
        return {"code": self.code.value, "message": self.message, "details": self.details}


class CryptoError(CapsuleError):
    """Exception raised for cryptographic operation failures."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E100_CRYPTO_ERROR,
        message: str = "Cryptographic operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class SecretRequired(CryptoError):
    """Raised when an operation needs a room key and none is set."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E101_SECRET_REQUIRED,
        message: str = "Room key required - set a passphrase first",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class NoRoomKey(SecretRequired):
    """Raised by item-key derivation when no room key has been derived."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E102_NO_ROOM_KEY,
        message: str = "Room key not derived",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class AuthenticationFailed(CryptoError):
    """Raised when an AEAD integrity check fails.

    Wrong key, tampered ciphertext, and malformed IVs all end up here.
    """

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E104_AUTHENTICATION_FAILED,
        message: str = "Decryption failed: authentication tag mismatch",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class SignalingError(CapsuleError):
    """Exception raised for connection establishment failures."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E200_SIGNALING_ERROR,
        message: str = "Signaling operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class MalformedBlob(SignalingError):
    """Raised when a pasted or scanned signaling blob cannot be decoded."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E201_MALFORMED_BLOB,
        message: str = "Malformed signaling blob",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class ProtocolError(CapsuleError):
    """Exception raised for wire protocol violations."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E300_PROTOCOL_ERROR,
        message: str = "Protocol error",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class MalformedFrame(ProtocolError):
    """Raised when a data channel frame cannot be parsed."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E301_MALFORMED_FRAME,
        message: str = "Malformed frame",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class NotConnected(ProtocolError):
    """Raised when sending without an open data channel."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E302_NOT_CONNECTED,
        message: str = "Not connected",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class FileTransferError(CapsuleError):
    """Exception raised for file transfer failures.

    This includes missing source files and unreadable inputs.
    """

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E600_FILE_TRANSFER_ERROR,
        message: str = "File transfer operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class ConfigError(CapsuleError):
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


class VaultError(CapsuleError):
    """Exception raised for vault storage failures.

    This includes missing items, corrupt metadata, and invalid archives.
    """

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E800_VAULT_ERROR,
        message: str = "Vault operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)


class QRCodeError(CapsuleError):
    """Exception raised for QR code generation and scanning failures."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.E900_QR_ERROR,
        message: str = "QR code operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code, message, details)
