"""
Capsule - Transfer Channel

This module runs chat and encrypted file transfer over an open peer data
channel. Each file gets one item key (derived once, salt announced in the
file-meta frame) and every chunk is encrypted under a fresh IV.

The receive side is a single consumer loop: frames are queued by the
channel's message event and dispatched one at a time, so a receive context
is always fully updated before the next frame is looked at. Only one item is
received at a time; a new file-meta abandons the unfinished one.

The channel is created ordered and reliable. A gap in sequence indices is
treated as a protocol violation and abandons the item.

Chat frames are NOT encrypted at the application layer. Their confidentiality
rests on the transport's DTLS only, as it does for the browser peer.

Author: orpheus497
Version: 1.0.0
"""

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

import aiofiles

from .constants import (
    DEFAULT_MIME_TYPE,
    FILE_CHUNK_SIZE,
    SEND_BUFFER_HIGH_WATER,
    SEND_BUFFER_LOW_WATER,
)
from .crypto import SecretManager, compute_item_id
from .errors import (
    AuthenticationFailed,
    ErrorCode,
    FileTransferError,
    MalformedFrame,
    NoRoomKey,
    NotConnected,
    SecretRequired,
)
from .items import FileItem, describe_file, iter_file_chunks
from .protocol import (
    ChatFrame,
    FileChunkFrame,
    FileMetaFrame,
    Frame,
    LocationFrame,
    Protocol,
    UnknownFrame,
)
from .utils import sanitize_filename, unique_path

logger = logging.getLogger(__name__)

SEND = "send"
RECEIVE = "receive"

_CLOSED = object()


@dataclass
class ReceivedFile:
    """A completely received and decrypted file."""

    item: FileItem
    data: bytes

    async def save(self, directory: Path) -> Path:
        """Write the file into directory without overwriting anything.

        Returns:
            Path of the written file
        """
        directory = Path(directory)
        directory.mkdir(parents=True, exist_ok=True)
        target = unique_path(directory, sanitize_filename(self.item.name))

        try:
            async with aiofiles.open(target, "wb") as f:
                await f.write(self.data)
        except OSError as e:
            raise FileTransferError(
                ErrorCode.E600_FILE_TRANSFER_ERROR,
                f"Failed to save received file: {e}",
                {"path": str(target), "error": str(e)},
            )

        logger.info(f"Saved received file: {target} ({self.item.size} bytes)")
        return target


@dataclass
class ReceiveIdle:
    """No file is being received."""


@dataclass
class Receiving:
    """A file is being received.

    Attributes:
        item: Metadata announced by the file-meta frame
        key: Item key re-derived from the announced salt
        buffer: Decrypted bytes so far
        expected_index: Sequence index the next chunk must carry
    """

    item: FileItem
    key: bytes
    buffer: bytearray = field(default_factory=bytearray)
    expected_index: int = 0

    @property
    def received(self) -> int:
        return len(self.buffer)


ReceiveState = Union[ReceiveIdle, Receiving]


class TransferChannel:
    """Chat and encrypted file transfer over one data channel.

    The channel object must expose ``readyState``, ``send(data)``,
    ``bufferedAmount`` and ``on(event, handler)`` for the "message", "close"
    and "bufferedamountlow" events, which is what aiortc's RTCDataChannel
    provides.

    File sends pause while more than ``buffer_high_water`` bytes are queued
    on the channel and resume once it drains to ``buffer_low_water``.

    Attributes:
        channel: The open data channel
        secrets: Holder of the room key
        chunk_size: Plaintext bytes per chunk
        state: Current receive state
    """

    def __init__(
        self,
        channel: Any,
        secrets: SecretManager,
        chunk_size: int = FILE_CHUNK_SIZE,
        on_chat: Optional[Callable[[str], None]] = None,
        on_file: Optional[Callable[[ReceivedFile], None]] = None,
        on_progress: Optional[Callable[[str, FileItem, int, int], None]] = None,
        on_location: Optional[Callable[[Dict[str, Any]], None]] = None,
        buffer_high_water: int = SEND_BUFFER_HIGH_WATER,
        buffer_low_water: int = SEND_BUFFER_LOW_WATER,
    ):
        if chunk_size <= 0:
            raise FileTransferError(
                ErrorCode.E002_INVALID_ARGUMENT, f"Invalid chunk size: {chunk_size}"
            )
        if not 0 <= buffer_low_water < buffer_high_water:
            raise FileTransferError(
                ErrorCode.E002_INVALID_ARGUMENT,
                f"Invalid send buffer limits: {buffer_low_water}/{buffer_high_water}",
            )

        self.channel = channel
        self.secrets = secrets
        self.chunk_size = chunk_size
        self.on_chat = on_chat
        self.on_file = on_file
        self.on_progress = on_progress
        self.on_location = on_location
        self.state: ReceiveState = ReceiveIdle()
        self.buffer_high_water = buffer_high_water

        self._inbox: asyncio.Queue = asyncio.Queue()
        self._drained = asyncio.Event()
        self._drained.set()
        channel.bufferedAmountLowThreshold = buffer_low_water
        channel.on("message", self._inbox.put_nowait)
        channel.on("close", self._on_channel_close)
        channel.on("bufferedamountlow", self._drained.set)

    @property
    def is_open(self) -> bool:
        return getattr(self.channel, "readyState", None) == "open"

    def _ensure_open(self) -> None:
        if not self.is_open:
            raise NotConnected(
                details={"ready_state": getattr(self.channel, "readyState", None)}
            )

    # Sending

    def send_chat(self, text: str) -> None:
        """Send a plaintext chat message.

        Raises:
            NotConnected: If the channel is not open
        """
        self._ensure_open()
        self.channel.send(Protocol.encode_chat(text))
        logger.debug(f"Sent chat message ({len(text)} chars)")

    def send_location(self, payload: Dict[str, Any]) -> None:
        """Send an opaque location payload.

        Raises:
            NotConnected: If the channel is not open
        """
        self._ensure_open()
        self.channel.send(Protocol.encode_location(payload))

    async def send_file(self, file_path: Path, mime_type: Optional[str] = None) -> FileItem:
        """Send one file as a file-meta frame followed by encrypted chunks.

        Args:
            file_path: File to send
            mime_type: MIME type override (guessed from the name otherwise)

        Returns:
            The item that was sent

        Raises:
            NotConnected: If the channel is not open or closes mid-transfer
            SecretRequired: If no room key is set
            FileTransferError: If the file cannot be read
        """
        self._ensure_open()
        if not self.secrets.has_key:
            raise SecretRequired()

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
        )

        logger.info(f"Sending file: {item.name} ({item.size} bytes) as {item_id}")

        self.channel.send(
            Protocol.encode_file_meta(
                FileMetaFrame(
                    item_id=item_id,
                    name=item.name,
                    mime_type=item.mime_type,
                    size=item.size,
                    chunk_size=item.chunk_size,
                    salt=salt,
                )
            )
        )

        sent = 0
        index = 0
        try:
            async for chunk in iter_file_chunks(Path(file_path), self.chunk_size):
                self._ensure_open()
                iv, ciphertext = self.secrets.encrypt(key, chunk)
                self.channel.send(Protocol.encode_file_chunk(item_id, index, iv, ciphertext))
                sent += len(chunk)
                index += 1
                self._report(SEND, item, sent)
                logger.debug(f"Sent chunk {index}/{item.total_chunks} of {item_id}")
                await self._wait_for_buffer()
        except OSError as e:
            raise FileTransferError(
                ErrorCode.E600_FILE_TRANSFER_ERROR,
                f"Failed to read {file_path}: {e}",
                {"item_id": item_id, "error": str(e)},
            )

        if item.size == 0:
            self._report(SEND, item, 0)

        logger.info(f"File sent: {item.name} ({sent} bytes, {index} chunks)")
        return item

    async def _wait_for_buffer(self) -> None:
        """Yield to the loop, and block while the channel's send queue is over the high-water mark.

        Raises:
            NotConnected: If the channel closes while waiting
        """
        await asyncio.sleep(0)
        while self.channel.bufferedAmount > self.buffer_high_water:
            logger.debug(f"Send buffer at {self.channel.bufferedAmount} bytes, waiting to drain")
            self._drained.clear()
            await self._drained.wait()
            self._ensure_open()

    async def send_files(self, file_paths: Iterable[Path]) -> List[FileItem]:
        """Send several files one after another."""
        return [await self.send_file(Path(path)) for path in file_paths]

    # Receiving

    async def run(self) -> None:
        """Consume frames until the channel closes.

        Closing the channel discards any partially received item.
        """
        while True:
            data = await self._inbox.get()
            if data is _CLOSED:
                break
            self.handle_frame(data)

        self._abandon("channel closed")
        logger.info("Transfer channel receive loop finished")

    def _on_channel_close(self) -> None:
        self._inbox.put_nowait(_CLOSED)
        # Wake a sender blocked on the buffer
        self._drained.set()

    def handle_frame(self, data: Union[str, bytes]) -> Optional[Frame]:
        """Decode and dispatch one received frame.

        Malformed frames are dropped with a warning.

        Returns:
            The decoded frame, or None if it was malformed
        """
        try:
            frame = Protocol.decode_frame(data)
        except MalformedFrame as e:
            logger.warning(f"Dropping malformed frame: {e}")
            return None

        if isinstance(frame, ChatFrame):
            self._emit(self.on_chat, frame.text)
        elif isinstance(frame, FileMetaFrame):
            self._begin_receive(frame)
        elif isinstance(frame, FileChunkFrame):
            self._receive_chunk(frame)
        elif isinstance(frame, LocationFrame):
            self._emit(self.on_location, frame.payload)
        elif isinstance(frame, UnknownFrame):
            logger.debug(f"Ignoring frame of unknown kind: {frame.kind}")

        return frame

    def _begin_receive(self, meta: FileMetaFrame) -> None:
        self._abandon(f"new item {meta.item_id} announced")

        try:
            key = self.secrets.rederive_item_key(meta.item_id, meta.salt)
        except NoRoomKey:
            logger.warning(f"Cannot receive {meta.item_id}: no room key set")
            return

        item = FileItem(
            item_id=meta.item_id,
            name=meta.name,
            mime_type=meta.mime_type or DEFAULT_MIME_TYPE,
            size=meta.size,
            chunk_size=meta.chunk_size,
            salt=meta.salt,
        )
        self.state = Receiving(item=item, key=key)
        logger.info(f"Receiving file: {item.name} ({item.size} bytes) as {item.item_id}")

        if item.size == 0:
            self._finish()

    def _receive_chunk(self, chunk: FileChunkFrame) -> None:
        state = self.state
        if not isinstance(state, Receiving) or state.item.item_id != chunk.item_id:
            logger.debug(f"Dropping chunk {chunk.sequence_index} for inactive item {chunk.item_id}")
            return

        if chunk.sequence_index != state.expected_index:
            logger.warning(
                f"Out-of-sequence chunk for {chunk.item_id}: "
                f"got {chunk.sequence_index}, expected {state.expected_index}"
            )
            self._abandon("sequence gap")
            return

        try:
            plaintext = self.secrets.decrypt(state.key, chunk.iv, chunk.ciphertext)
        except AuthenticationFailed as e:
            logger.warning(f"Chunk {chunk.sequence_index} of {chunk.item_id} failed to decrypt: {e}")
            self._abandon("authentication failed")
            return

        state.buffer.extend(plaintext)
        state.expected_index += 1

        if state.received > state.item.size:
            logger.warning(
                f"Item {chunk.item_id} exceeded its declared size "
                f"({state.received} > {state.item.size})"
            )
            self._abandon("size overrun")
            return

        self._report(RECEIVE, state.item, state.received)

        if state.received == state.item.size:
            self._finish()

    def _finish(self) -> None:
        state = self.state
        if not isinstance(state, Receiving):
            return
        received = ReceivedFile(item=state.item, data=bytes(state.buffer))
        self.state = ReceiveIdle()
        logger.info(f"File received: {received.item.name} ({len(received.data)} bytes)")
        self._emit(self.on_file, received)

    def _abandon(self, reason: str) -> None:
        state = self.state
        if isinstance(state, Receiving):
            logger.warning(
                f"Abandoning incomplete item {state.item.item_id} "
                f"({state.received}/{state.item.size} bytes): {reason}"
            )
        self.state = ReceiveIdle()

    def _report(self, direction: str, item: FileItem, done: int) -> None:
        if self.on_progress:
            self._emit(self.on_progress, direction, item, done, item.size)

    @staticmethod
    def _emit(callback: Optional[Callable[..., None]], *args: Any) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            logger.error(f"Transfer callback error: {e}")
