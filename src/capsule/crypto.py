"""
Capsule - Passphrase key hierarchy and payload encryption.

Created by orpheus497

This module implements the two-level key hierarchy shared by file transfer
and the local vault:
- Room key: 32 bytes derived from the shared passphrase with PBKDF2-HMAC-SHA256
  (or Argon2id when configured) and a fixed, public application salt
- Item keys: 32 bytes per file, HKDF-SHA256 keyed by the room key with a fresh
  random salt and the item identifier as context
- Payload encryption: AES-256-GCM with a random 12-byte IV per call

The salt used for an item key travels with the ciphertext (file-meta frame or
vault metadata) so that the peer, or the vault later, can re-derive the key.

All cryptographic operations use well-tested, open-source libraries:
- cryptography library (Apache 2.0/BSD License)
- argon2-cffi (MIT License)
"""

import base64
import hashlib
import logging
import os
import secrets
import time
from typing import Optional, Tuple

from argon2.low_level import Type, hash_secret_raw
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .constants import (
    ARGON2_MEMORY_COST,
    ARGON2_PARALLELISM,
    ARGON2_TIME_COST,
    ITEM_ID_HASH_LENGTH,
    ITEM_ID_PREFIX,
    ITEM_KEY_INFO_PREFIX,
    ITEM_SALT_SIZE,
    IV_SIZE,
    KDF_ARGON2ID,
    KDF_PBKDF2,
    KEY_SIZE,
    PASSPHRASE_BYTES,
    PBKDF2_ITERATIONS,
    PBKDF2_MIN_ITERATIONS,
    ROOM_KEY_SALT,
)
from .errors import AuthenticationFailed, CryptoError, ErrorCode, NoRoomKey

logger = logging.getLogger(__name__)


class SecretManager:
    """
    Holds the room key derived from the shared passphrase.

    One instance is created per application and handed to every component
    that encrypts or decrypts. Only derive() and clear() change the key.

    Attributes:
        kdf: Key derivation function name ("pbkdf2" or "argon2id")
        iterations: PBKDF2 iteration count
    """

    def __init__(self, kdf: str = KDF_PBKDF2, iterations: int = PBKDF2_ITERATIONS):
        if kdf not in (KDF_PBKDF2, KDF_ARGON2ID):
            raise CryptoError(
                ErrorCode.E103_INVALID_KEY,
                f"Unsupported key derivation function: {kdf}",
                {"kdf": kdf},
            )
        if iterations < PBKDF2_MIN_ITERATIONS:
            raise CryptoError(
                ErrorCode.E103_INVALID_KEY,
                f"PBKDF2 iteration count too low: {iterations} < {PBKDF2_MIN_ITERATIONS}",
                {"iterations": iterations, "minimum": PBKDF2_MIN_ITERATIONS},
            )

        self.kdf = kdf
        self.iterations = iterations
        self._room_key: Optional[bytes] = None

    def derive(self, passphrase: Optional[str]) -> Optional[bytes]:
        """
        Derive the room key from a passphrase.

        An empty passphrase clears the key and returns None. The same
        passphrase always yields the same 32 bytes, on this side and on the
        peer's, because the salt is a public application constant.
        """
        if not passphrase:
            self.clear()
            return None

        secret = passphrase.encode("utf-8")
        try:
            if self.kdf == KDF_ARGON2ID:
                key = hash_secret_raw(
                    secret=secret,
                    salt=ROOM_KEY_SALT,
                    time_cost=ARGON2_TIME_COST,
                    memory_cost=ARGON2_MEMORY_COST,
                    parallelism=ARGON2_PARALLELISM,
                    hash_len=KEY_SIZE,
                    type=Type.ID,
                )
            else:
                kdf = PBKDF2HMAC(
                    algorithm=hashes.SHA256(),
                    length=KEY_SIZE,
                    salt=ROOM_KEY_SALT,
                    iterations=self.iterations,
                )
                key = kdf.derive(secret)
        except Exception as e:
            raise CryptoError(
                ErrorCode.E105_KEY_DERIVATION_FAILED,
                f"Room key derivation failed: {e}",
                {"kdf": self.kdf, "error": str(e)},
            )

        self._room_key = key
        logger.info(f"Room key derived ({self.kdf})")
        return key

    def clear(self) -> None:
        """Forget the room key."""
        if self._room_key is not None:
            logger.info("Room key cleared")
        self._room_key = None

    def current_key(self) -> Optional[bytes]:
        """Get the current room key without deriving anything."""
        return self._room_key

    @property
    def has_key(self) -> bool:
        return self._room_key is not None

    def derive_item_key(self, item_id: str) -> Tuple[bytes, bytes]:
        """
        Derive a fresh key for one item.

        Returns:
            (item_key, salt) where salt is 32 new random bytes

        Raises:
            NoRoomKey: If no passphrase has been set
        """
        salt = os.urandom(ITEM_SALT_SIZE)
        return self.rederive_item_key(item_id, salt), salt

    def rederive_item_key(self, item_id: str, salt: bytes) -> bytes:
        """
        Re-derive an item key from its persisted or transmitted salt.

        Raises:
            NoRoomKey: If no passphrase has been set
        """
        if self._room_key is None:
            raise NoRoomKey(details={"item_id": item_id})

        hkdf = HKDF(
            algorithm=hashes.SHA256(),
            length=KEY_SIZE,
            salt=bytes(salt),
            info=(ITEM_KEY_INFO_PREFIX + item_id).encode("utf-8"),
        )
        return hkdf.derive(self._room_key)

    @staticmethod
    def encrypt(key: bytes, plaintext: bytes) -> Tuple[bytes, bytes]:
        """
        Encrypt with AES-256-GCM under a fresh random IV.

        Returns:
            (iv, ciphertext) where ciphertext carries the 16-byte tag
        """
        iv = os.urandom(IV_SIZE)
        ciphertext = AESGCM(key).encrypt(iv, bytes(plaintext), None)
        return iv, ciphertext

    @staticmethod
    def decrypt(key: bytes, iv: bytes, ciphertext: bytes) -> bytes:
        """
        Decrypt and verify an AES-256-GCM ciphertext.

        Raises:
            AuthenticationFailed: On wrong key, tampered data or a bad IV
        """
        if len(iv) != IV_SIZE:
            raise AuthenticationFailed(
                message=f"Invalid IV length: {len(iv)}", details={"iv_length": len(iv)}
            )
        try:
            return AESGCM(key).decrypt(bytes(iv), bytes(ciphertext), None)
        except (InvalidTag, ValueError) as e:
            raise AuthenticationFailed(details={"error": type(e).__name__})


def generate_passphrase() -> str:
    """
    Generate a random passphrase suitable for sharing out-of-band.

    32 random bytes encoded as URL-safe base64 without padding (43 characters).
    """
    raw = secrets.token_bytes(PASSPHRASE_BYTES)
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def sha256_hex(data: bytes) -> str:
    """Hex-encoded SHA-256 digest."""
    return hashlib.sha256(data).hexdigest()


def compute_item_id(
    name: str, size: int, mime_type: str, timestamp_ms: Optional[int] = None
) -> str:
    """
    Compute an item identifier from file attributes and a timestamp.

    Format: "itm_" + first 12 hex characters of
    SHA-256(name + size + mime_type + timestamp_ms). Unique in practice,
    not against an adversary.
    """
    if timestamp_ms is None:
        timestamp_ms = int(time.time() * 1000)
    material = f"{name}{size}{mime_type}{timestamp_ms}".encode("utf-8")
    return ITEM_ID_PREFIX + sha256_hex(material)[:ITEM_ID_HASH_LENGTH]
