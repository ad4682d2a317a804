"""
Capsule - Encrypted Vault

This module keeps files encrypted at rest. Every file becomes one item with
its own item key (derived from the room key and a random salt) and is stored
as one encrypted unit per chunk plus a JSON metadata record:

    items/<itemId>.json
    chunks/<itemId[:2]>/<itemId>-<idx>.chunk     (iv || ciphertext)

The whole vault can be exported as a single archive:

    b"CAPV" | version (u8) | header length (u32 BE) | JSON header | chunk units

The header is {"items": [metadata, ...]} in createdAt order, and the chunk
units follow in header order with no separators; each chunk's "len" splits
them.

Author: orpheus497
Version: 1.0.0
"""

import json
import logging
import re
import struct
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Tuple

import aiofiles

from .constants import (
    ARCHIVE_MAGIC,
    ARCHIVE_VERSION,
    FILE_CHUNK_SIZE,
    IV_SIZE,
    VAULT_CHUNK_SUFFIX,
    VAULT_CHUNKS_DIR,
    VAULT_ITEMS_DIR,
    VAULT_META_SUFFIX,
    VAULT_SHARD_LENGTH,
)
from .crypto import SecretManager, compute_item_id
from .errors import ErrorCode, SecretRequired, VaultError
from .items import ChunkRef, FileItem, describe_file, iter_file_chunks
from .storage import StorageDirectory, open_storage
from .utils import sanitize_filename, unique_path, utc_timestamp

logger = logging.getLogger(__name__)

ARCHIVE_PREAMBLE = struct.Struct(">4sBI")
ITEM_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


def chunk_unit_path(item_id: str, index: int) -> str:
    """Storage path of one chunk unit, relative to the vault root."""
    shard = item_id[:VAULT_SHARD_LENGTH]
    return f"{VAULT_CHUNKS_DIR}/{shard}/{item_id}-{index}{VAULT_CHUNK_SUFFIX}"


def parse_archive(data: bytes) -> Tuple[List[FileItem], Dict[str, bytes]]:
    """
    Split an export archive into item metadata and chunk units.

    Returns:
        (items, {unit path: iv || ciphertext})

    Raises:
        VaultError: E803 if the archive is truncated, has the wrong magic or
            version, or its header does not describe its contents
    """
    data = bytes(data)
    if len(data) < ARCHIVE_PREAMBLE.size:
        raise VaultError(ErrorCode.E803_INVALID_ARCHIVE, "Archive too short")

    magic, version, header_length = ARCHIVE_PREAMBLE.unpack_from(data)
    if magic != ARCHIVE_MAGIC:
        raise VaultError(
            ErrorCode.E803_INVALID_ARCHIVE, "Not a Capsule archive", {"magic": magic.hex()}
        )
    if version != ARCHIVE_VERSION:
        raise VaultError(
            ErrorCode.E803_INVALID_ARCHIVE,
            f"Unsupported archive version: {version}",
            {"version": version},
        )

    offset = ARCHIVE_PREAMBLE.size
    if offset + header_length > len(data):
        raise VaultError(ErrorCode.E803_INVALID_ARCHIVE, "Archive header truncated")

    try:
        header = json.loads(data[offset : offset + header_length].decode("utf-8"))
        items = [FileItem.from_dict(entry) for entry in header["items"]]
    except (ValueError, KeyError, TypeError) as e:
        raise VaultError(
            ErrorCode.E803_INVALID_ARCHIVE, f"Invalid archive header: {e}", {"error": str(e)}
        )
    offset += header_length

    units: Dict[str, bytes] = {}
    for item in items:
        if not ITEM_ID_PATTERN.match(item.item_id):
            raise VaultError(
                ErrorCode.E803_INVALID_ARCHIVE,
                f"Invalid item id in archive: {item.item_id!r}",
            )
        for ref in item.chunks:
            if ref.path != chunk_unit_path(item.item_id, ref.idx) or ref.len < 0:
                raise VaultError(
                    ErrorCode.E803_INVALID_ARCHIVE,
                    f"Invalid chunk descriptor for {item.item_id}",
                    {"path": ref.path, "len": ref.len},
                )
            if offset + ref.len > len(data):
                raise VaultError(
                    ErrorCode.E803_INVALID_ARCHIVE,
                    f"Archive truncated in {ref.path}",
                    {"path": ref.path},
                )
            units[ref.path] = data[offset : offset + ref.len]
            offset += ref.len

    if offset != len(data):
        raise VaultError(
            ErrorCode.E803_INVALID_ARCHIVE,
            f"Archive has {len(data) - offset} unexpected trailing bytes",
        )

    return items, units


class VaultStore:
    """Encrypted item store on top of a storage directory.

    Callers serialize add() calls; reads may interleave freely.

    Attributes:
        secrets: Holder of the room key
        storage: Vault root directory
        chunk_size: Plaintext bytes per stored chunk
    """

    def __init__(
        self,
        secrets: SecretManager,
        storage: Optional[StorageDirectory] = None,
        chunk_size: int = FILE_CHUNK_SIZE,
    ):
        if chunk_size <= 0:
            raise VaultError(ErrorCode.E002_INVALID_ARGUMENT, f"Invalid chunk size: {chunk_size}")

        self.secrets = secrets
        self.storage = storage if storage is not None else open_storage(None)
        self.chunk_size = chunk_size

    # Storage helpers

    async def _items_dir(self) -> StorageDirectory:
        return await self.storage.get_directory(VAULT_ITEMS_DIR)

    async def _write_unit(self, path: str, data: bytes) -> None:
        directory, name = await self._resolve(path)
        await directory.write_file(name, data)

    async def _read_unit(self, path: str) -> bytes:
        directory, name = await self._resolve(path, create=False)
        return await directory.read_file(name)

    async def _resolve(self, path: str, create: bool = True) -> Tuple[StorageDirectory, str]:
        parts = path.split("/")
        directory = self.storage
        for part in parts[:-1]:
            directory = await directory.get_directory(part, create=create)
        return directory, parts[-1]

    async def _write_metadata(self, item: FileItem) -> None:
        items_dir = await self._items_dir()
        record = json.dumps(item.to_dict(), indent=2).encode("utf-8")
        await items_dir.write_file(f"{item.item_id}{VAULT_META_SUFFIX}", record)

    # Adding

    async def add(self, file_paths: Iterable[Path]) -> List[FileItem]:
        """
        Encrypt and store files.

        Returns:
            The stored items, in the order given

        Raises:
            SecretRequired: If no room key is set
            FileTransferError: If a path is missing or not a file
        """
        if not self.secrets.has_key:
            raise SecretRequired(message="Set a passphrase before adding to the vault")

        return [await self.add_file(Path(path)) for path in file_paths]

    async def add_file(self, file_path: Path, mime_type: Optional[str] = None) -> FileItem:
        """Encrypt and store one file."""
        info = describe_file(file_path, mime_type)
        item_id = compute_item_id(info["name"], info["size"], info["mime_type"])
        key, salt = self.secrets.derive_item_key(item_id)

        item = FileItem(
            item_id=item_id,
            name=info["name"],
            mime_type=info["mime_type"],
            size=info["size"],
            chunk_size=self.chunk_size,
            salt=salt,
            created_at=utc_timestamp(),
        )

        index = 0
        total = 0
        async for chunk in iter_file_chunks(Path(file_path), self.chunk_size):
            iv, ciphertext = self.secrets.encrypt(key, chunk)
            unit = iv + ciphertext
            path = chunk_unit_path(item_id, index)
            await self._write_unit(path, unit)
            item.chunks.append(ChunkRef(idx=index, path=path, len=len(unit)))
            total += len(chunk)
            index += 1

        # Size is what was stored, even if the file changed since stat
        if total != item.size:
            logger.warning(f"{item.name} changed while being added: {item.size} -> {total} bytes")
            item.size = total

        # Metadata last: an item is listed only once all its chunks exist
        await self._write_metadata(item)

        logger.info(f"Vault item added: {item.name} ({item.size} bytes, {index} chunks) as {item_id}")
        return item

    # Reading

    async def list(self) -> List[FileItem]:
        """
        All stored items, oldest first.

        Unreadable metadata records are skipped with a warning.
        """
        items_dir = await self._items_dir()
        items = []
        for name, is_dir in await items_dir.entries():
            if is_dir or not name.endswith(VAULT_META_SUFFIX):
                continue
            try:
                items.append(FileItem.from_dict(json.loads(await items_dir.read_file(name))))
            except (OSError, ValueError, KeyError, TypeError) as e:
                logger.warning(f"Skipping unreadable vault record {name}: {e}")

        items.sort(key=lambda item: item.created_at)
        return items

    async def get_item(self, item_id: str) -> FileItem:
        """
        Load one item's metadata.

        Raises:
            VaultError: E801 if the item does not exist, E802 if its record is corrupt
        """
        if not ITEM_ID_PATTERN.match(item_id or ""):
            raise VaultError(ErrorCode.E801_ITEM_NOT_FOUND, f"No such item: {item_id!r}")

        items_dir = await self._items_dir()
        try:
            raw = await items_dir.read_file(f"{item_id}{VAULT_META_SUFFIX}")
        except FileNotFoundError:
            raise VaultError(
                ErrorCode.E801_ITEM_NOT_FOUND, f"No such item: {item_id}", {"item_id": item_id}
            )

        try:
            return FileItem.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            raise VaultError(
                ErrorCode.E802_CORRUPT_METADATA,
                f"Corrupt metadata for {item_id}: {e}",
                {"item_id": item_id},
            )

    async def iter_chunks(self, item_id: str) -> AsyncIterator[bytes]:
        """
        Decrypt an item chunk by chunk, in index order.

        Raises:
            NoRoomKey: If no room key is set
            AuthenticationFailed: If a chunk fails authentication
            VaultError: If the item or one of its chunks is missing
        """
        item = await self.get_item(item_id)
        key = self.secrets.rederive_item_key(item.item_id, item.salt)

        for ref in item.chunks:
            try:
                unit = await self._read_unit(ref.path)
            except FileNotFoundError:
                raise VaultError(
                    ErrorCode.E802_CORRUPT_METADATA,
                    f"Missing chunk {ref.idx} of {item_id}",
                    {"item_id": item_id, "path": ref.path},
                )
            if len(unit) != ref.len or len(unit) < IV_SIZE:
                raise VaultError(
                    ErrorCode.E802_CORRUPT_METADATA,
                    f"Chunk {ref.idx} of {item_id} has length {len(unit)}, expected {ref.len}",
                    {"item_id": item_id, "path": ref.path},
                )
            yield self.secrets.decrypt(key, unit[:IV_SIZE], unit[IV_SIZE:])

    async def read_item(self, item_id: str) -> bytes:
        """Decrypt a whole item into memory."""
        data = bytearray()
        async for chunk in self.iter_chunks(item_id):
            data.extend(chunk)
        return bytes(data)

    async def export_item(self, item_id: str, directory: Path) -> Path:
        """
        Decrypt an item back to a plain file in directory.

        Nothing is written unless every chunk authenticates.

        Returns:
            Path of the written file
        """
        item = await self.get_item(item_id)
        data = await self.read_item(item_id)

        directory = Path(directory)
        directory.mkdir(parents=True, exist_ok=True)
        target = unique_path(directory, sanitize_filename(item.name))
        async with aiofiles.open(target, "wb") as f:
            await f.write(data)

        logger.info(f"Exported vault item {item_id} to {target}")
        return target

    # Archives

    async def export_archive(self) -> bytes:
        """Serialize every item and chunk unit into one archive."""
        items = await self.list()
        header = json.dumps({"items": [item.to_dict() for item in items]}).encode("utf-8")

        parts = [ARCHIVE_PREAMBLE.pack(ARCHIVE_MAGIC, ARCHIVE_VERSION, len(header)), header]
        for item in items:
            for ref in item.chunks:
                try:
                    parts.append(await self._read_unit(ref.path))
                except FileNotFoundError:
                    raise VaultError(
                        ErrorCode.E802_CORRUPT_METADATA,
                        f"Missing chunk {ref.idx} of {item.item_id}",
                        {"item_id": item.item_id, "path": ref.path},
                    )

        archive = b"".join(parts)
        logger.info(f"Vault archive built: {len(items)} items, {len(archive)} bytes")
        return archive

    async def write_archive(self, path: Path) -> Path:
        """Export the vault archive to a local file."""
        path = Path(path)
        archive = await self.export_archive()
        path.parent.mkdir(parents=True, exist_ok=True)
        async with aiofiles.open(path, "wb") as f:
            await f.write(archive)
        return path

    parse_archive = staticmethod(parse_archive)

    async def import_archive(self, data: bytes) -> List[FileItem]:
        """
        Store the items of an archive in this vault.

        Items already present are left untouched. Imported items keep their
        salts, so they decrypt under the same passphrase they were added with.

        Returns:
            The newly imported items
        """
        items, units = parse_archive(data)
        items_dir = await self._items_dir()

        imported = []
        for item in items:
            if await items_dir.exists(f"{item.item_id}{VAULT_META_SUFFIX}"):
                logger.info(f"Skipping existing vault item {item.item_id}")
                continue
            for ref in item.chunks:
                await self._write_unit(ref.path, units[ref.path])
            await self._write_metadata(item)
            imported.append(item)

        logger.info(f"Imported {len(imported)} of {len(items)} archive items")
        return imported

    async def stats(self) -> Dict[str, Any]:
        """
        Get vault statistics.

        Returns:
            Dictionary with item count, plaintext and stored byte totals
        """
        items = await self.list()
        return {
            "items": len(items),
            "total_bytes": sum(item.size for item in items),
            "stored_bytes": sum(ref.len for item in items for ref in item.chunks),
        }
