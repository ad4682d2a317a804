"""
Capsule - Private storage directories.

Created by orpheus497

The vault writes through a small directory capability rather than touching
paths directly. Two implementations exist: a local filesystem directory and
an in-process memory directory. Names are single path components; nesting
goes through get_directory().
"""

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

import aiofiles
import aiofiles.os

logger = logging.getLogger(__name__)

TEMP_PREFIX = ".tmp-"


def _check_name(name: str) -> str:
    if not name or name in (".", "..") or "/" in name or "\\" in name or "\x00" in name:
        raise ValueError(f"Invalid storage entry name: {name!r}")
    return name


class StorageDirectory(ABC):
    """A directory of named byte files and subdirectories."""

    @abstractmethod
    async def get_directory(self, name: str, create: bool = True) -> "StorageDirectory":
        """
        Open a subdirectory.

        Raises:
            FileNotFoundError: If it does not exist and create is False
        """

    @abstractmethod
    async def write_file(self, name: str, data: bytes) -> None:
        """Replace the contents of a file in one step."""

    @abstractmethod
    async def read_file(self, name: str) -> bytes:
        """
        Read a whole file.

        Raises:
            FileNotFoundError: If the file does not exist
        """

    @abstractmethod
    async def entries(self) -> List[Tuple[str, bool]]:
        """List (name, is_directory) pairs sorted by name."""

    @abstractmethod
    async def exists(self, name: str) -> bool:
        pass


class FilesystemDirectory(StorageDirectory):
    """Storage backed by a local directory.

    Writes go to a temporary file that is renamed over the target, so a
    reader never sees a half-written file.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path).expanduser()
        self.path.mkdir(parents=True, exist_ok=True)

    async def get_directory(self, name: str, create: bool = True) -> "FilesystemDirectory":
        target = self.path / _check_name(name)
        if not await aiofiles.os.path.isdir(target):
            if not create:
                raise FileNotFoundError(f"No such directory: {target}")
            await aiofiles.os.makedirs(target, exist_ok=True)
        return FilesystemDirectory(target)

    async def write_file(self, name: str, data: bytes) -> None:
        target = self.path / _check_name(name)
        temp = self.path / f"{TEMP_PREFIX}{name}"
        async with aiofiles.open(temp, "wb") as f:
            await f.write(data)
        await aiofiles.os.replace(temp, target)

    async def read_file(self, name: str) -> bytes:
        async with aiofiles.open(self.path / _check_name(name), "rb") as f:
            return await f.read()

    async def entries(self) -> List[Tuple[str, bool]]:
        return sorted(
            (entry.name, entry.is_dir())
            for entry in await aiofiles.os.scandir(self.path)
            if not entry.name.startswith(TEMP_PREFIX)
        )

    async def exists(self, name: str) -> bool:
        return await aiofiles.os.path.exists(self.path / _check_name(name))

    def __repr__(self) -> str:
        return f"FilesystemDirectory({str(self.path)!r})"


class MemoryDirectory(StorageDirectory):
    """Storage kept in process memory; gone when the process exits."""

    def __init__(self):
        self._files: Dict[str, bytes] = {}
        self._dirs: Dict[str, "MemoryDirectory"] = {}

    async def get_directory(self, name: str, create: bool = True) -> "MemoryDirectory":
        _check_name(name)
        if name not in self._dirs:
            if not create:
                raise FileNotFoundError(f"No such directory: {name}")
            if name in self._files:
                raise FileExistsError(f"A file named {name} exists")
            self._dirs[name] = MemoryDirectory()
        return self._dirs[name]

    async def write_file(self, name: str, data: bytes) -> None:
        _check_name(name)
        if name in self._dirs:
            raise IsADirectoryError(f"A directory named {name} exists")
        self._files[name] = bytes(data)

    async def read_file(self, name: str) -> bytes:
        try:
            return self._files[_check_name(name)]
        except KeyError:
            raise FileNotFoundError(f"No such file: {name}")

    async def entries(self) -> List[Tuple[str, bool]]:
        names = [(name, False) for name in self._files]
        names.extend((name, True) for name in self._dirs)
        return sorted(names)

    async def exists(self, name: str) -> bool:
        return name in self._files or name in self._dirs


def open_storage(path: Optional[Union[str, Path]] = None) -> StorageDirectory:
    """
    Open the storage root for a vault.

    Args:
        path: Local directory, or None for in-memory storage
    """
    if path is None:
        logger.info("Using in-memory vault storage")
        return MemoryDirectory()

    storage = FilesystemDirectory(path)
    logger.info(f"Using vault storage at {storage.path}")
    return storage
