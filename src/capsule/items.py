"""
Capsule - File items shared by transfer and vault.

Created by orpheus497

A file item is the unit both the transfer channel and the vault operate on:
an identifier, the file's name, type and size, the chunk size it is split
into, the salt its item key was derived with, and (for stored items) one
descriptor per encrypted chunk.
"""

import base64
import logging
import mimetypes
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional

import aiofiles

from .constants import DEFAULT_MIME_TYPE, FILE_CHUNK_SIZE
from .errors import ErrorCode, FileTransferError

logger = logging.getLogger(__name__)


@dataclass
class ChunkRef:
    """Location and stored length (iv + ciphertext) of one vault chunk."""

    idx: int
    path: str
    len: int

    def to_dict(self) -> Dict[str, Any]:
        return {"idx": self.idx, "path": self.path, "len": self.len}

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "ChunkRef":
        return ChunkRef(idx=int(data["idx"]), path=str(data["path"]), len=int(data["len"]))


@dataclass
class FileItem:
    """Metadata for one file sent over the channel or kept in the vault.

    Attributes:
        item_id: "itm_" + truncated SHA-256 of the file attributes
        name: Original file name
        mime_type: MIME type (may be empty)
        size: Plaintext size in bytes
        chunk_size: Plaintext bytes per chunk
        salt: Item key salt
        created_at: ISO-8601 UTC creation time (vault items)
        chunks: Stored chunk descriptors (vault items)
    """

    item_id: str
    name: str
    mime_type: str
    size: int
    chunk_size: int = FILE_CHUNK_SIZE
    salt: bytes = b""
    created_at: str = ""
    chunks: List[ChunkRef] = field(default_factory=list)

    @property
    def total_chunks(self) -> int:
        return (self.size + self.chunk_size - 1) // self.chunk_size

    def to_dict(self) -> Dict[str, Any]:
        """Serialize as a vault metadata record."""
        return {
            "id": self.item_id,
            "name": self.name,
            "type": self.mime_type,
            "size": self.size,
            "chunkSize": self.chunk_size,
            "salt": base64.b64encode(self.salt).decode("ascii"),
            "createdAt": self.created_at,
            "chunks": [chunk.to_dict() for chunk in self.chunks],
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "FileItem":
        """Load a vault metadata record."""
        return FileItem(
            item_id=str(data["id"]),
            name=str(data["name"]),
            mime_type=str(data.get("type", "")),
            size=int(data["size"]),
            chunk_size=int(data.get("chunkSize", FILE_CHUNK_SIZE)),
            salt=base64.b64decode(data["salt"]),
            created_at=str(data["createdAt"]),
            chunks=sorted(
                (ChunkRef.from_dict(c) for c in data.get("chunks", [])), key=lambda c: c.idx
            ),
        )


def describe_file(file_path: Path, mime_type: Optional[str] = None) -> Dict[str, Any]:
    """Collect name, size and MIME type of a local file.

    Raises:
        FileTransferError: If the path does not exist or is not a regular file
    """
    file_path = Path(file_path)
    if not file_path.exists():
        raise FileTransferError(ErrorCode.E003_FILE_NOT_FOUND, f"File not found: {file_path}")

    if not file_path.is_file():
        raise FileTransferError(ErrorCode.E601_NOT_A_FILE, f"Not a file: {file_path}")

    if mime_type is None:
        mime_type = mimetypes.guess_type(file_path.name)[0] or DEFAULT_MIME_TYPE

    return {"name": file_path.name, "size": file_path.stat().st_size, "mime_type": mime_type}


async def iter_file_chunks(file_path: Path, chunk_size: int) -> AsyncIterator[bytes]:
    """Read a file in chunk_size slices without blocking the event loop."""
    async with aiofiles.open(file_path, "rb") as f:
        while True:
            data = await f.read(chunk_size)
            if not data:
                break
            yield data
