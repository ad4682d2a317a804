"""
Capsule - File transfer tests.

Created by orpheus497

Tests for chat and encrypted file transfer over an in-memory channel pair.
"""

import asyncio
import os

import pytest

from capsule.constants import PBKDF2_MIN_ITERATIONS
from capsule.crypto import SecretManager
from capsule.errors import FileTransferError, NotConnected, SecretRequired
from capsule.file_transfer import RECEIVE, SEND, ReceiveIdle, Receiving, TransferChannel
from capsule.protocol import FileMetaFrame, Protocol


def peer_secrets(passphrase: str = "unit-test-pass") -> SecretManager:
    """Secret manager of the other peer, derived independently."""
    manager = SecretManager(iterations=PBKDF2_MIN_ITERATIONS)
    manager.derive(passphrase)
    return manager


async def wait_until(condition, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def meta_frame(secrets, item_id: str, size: int, chunk_size: int = 5):
    key, salt = secrets.derive_item_key(item_id)
    frame = Protocol.encode_file_meta(
        FileMetaFrame(
            item_id=item_id,
            name=f"{item_id}.bin",
            mime_type="application/octet-stream",
            size=size,
            chunk_size=chunk_size,
            salt=salt,
        )
    )
    return key, frame


def chunk_frame(secrets, key: bytes, item_id: str, index: int, data: bytes) -> bytes:
    iv, ciphertext = secrets.encrypt(key, data)
    return Protocol.encode_file_chunk(item_id, index, iv, ciphertext)


@pytest.mark.asyncio
class TestTransferOverChannel:
    """End-to-end transfers between two TransferChannel instances."""

    async def test_file_transfer(self, secrets, channel_pair, temp_dir):
        """A multi-chunk file arrives intact on the other side."""
        left, right = channel_pair
        received = []
        progress = []

        sender = TransferChannel(
            left, secrets, chunk_size=1024, on_progress=lambda *args: progress.append(args)
        )
        receiver = TransferChannel(right, peer_secrets(), chunk_size=1024, on_file=received.append)
        loop_task = asyncio.ensure_future(receiver.run())

        content = os.urandom(5000)
        source = temp_dir / "data.bin"
        source.write_bytes(content)

        item = await sender.send_file(source)
        await wait_until(lambda: received)

        assert item.total_chunks == 5
        assert received[0].item.item_id == item.item_id
        assert received[0].item.name == "data.bin"
        assert received[0].data == content

        sent_progress = [p for p in progress if p[0] == SEND]
        assert [p[2] for p in sent_progress] == [1024, 2048, 3072, 4096, 5000]
        assert all(p[3] == 5000 for p in sent_progress)

        left.close()
        await asyncio.wait_for(loop_task, 1.0)

    async def test_several_files_in_order(self, secrets, channel_pair, temp_dir):
        left, right = channel_pair
        received = []
        sender = TransferChannel(left, secrets, chunk_size=7)
        receiver = TransferChannel(right, peer_secrets(), chunk_size=7, on_file=received.append)
        loop_task = asyncio.ensure_future(receiver.run())

        paths = []
        for name, body in (("one.txt", b"first file body"), ("two.txt", b"second")):
            path = temp_dir / name
            path.write_bytes(body)
            paths.append(path)

        await sender.send_files(paths)
        await wait_until(lambda: len(received) == 2)

        assert [r.item.name for r in received] == ["one.txt", "two.txt"]
        assert [r.data for r in received] == [b"first file body", b"second"]

        right.close()
        await asyncio.wait_for(loop_task, 1.0)

    async def test_empty_file(self, secrets, channel_pair, temp_dir):
        left, right = channel_pair
        received = []
        sender = TransferChannel(left, secrets)
        receiver = TransferChannel(right, peer_secrets(), on_file=received.append)
        loop_task = asyncio.ensure_future(receiver.run())

        source = temp_dir / "empty.txt"
        source.write_bytes(b"")

        await sender.send_file(source)
        await wait_until(lambda: received)
        assert received[0].data == b""

        left.close()
        await asyncio.wait_for(loop_task, 1.0)

    async def test_chat_and_location(self, secrets, channel_pair):
        left, right = channel_pair
        messages = []
        locations = []
        sender = TransferChannel(left, secrets)
        receiver = TransferChannel(
            right, peer_secrets(), on_chat=messages.append, on_location=locations.append
        )
        loop_task = asyncio.ensure_future(receiver.run())

        sender.send_chat("hello")
        sender.send_location({"lat": 1.5, "lng": 2.5})
        await wait_until(lambda: messages and locations)

        assert messages == ["hello"]
        assert locations == [{"lat": 1.5, "lng": 2.5}]

        left.close()
        await asyncio.wait_for(loop_task, 1.0)

    async def test_wrong_passphrase_never_delivers(self, secrets, channel_pair, temp_dir):
        left, right = channel_pair
        received = []
        sender = TransferChannel(left, secrets, chunk_size=4)
        receiver = TransferChannel(right, peer_secrets("other"), on_file=received.append)
        loop_task = asyncio.ensure_future(receiver.run())

        source = temp_dir / "secret.txt"
        source.write_bytes(b"top secret data")
        await sender.send_file(source)
        await asyncio.sleep(0.05)

        assert received == []
        assert isinstance(receiver.state, ReceiveIdle)

        left.close()
        await asyncio.wait_for(loop_task, 1.0)

    async def test_close_abandons_partial_item(self, secrets, channel_pair):
        left, right = channel_pair
        receiver = TransferChannel(right, secrets)
        loop_task = asyncio.ensure_future(receiver.run())

        key, meta = meta_frame(secrets, "A", size=10)
        left.send(meta)
        left.send(chunk_frame(secrets, key, "A", 0, b"12345"))
        await wait_until(lambda: isinstance(receiver.state, Receiving) and receiver.state.received == 5)

        left.close()
        await asyncio.wait_for(loop_task, 1.0)
        assert isinstance(receiver.state, ReceiveIdle)

    async def test_send_waits_for_buffer_to_drain(self, secrets, channel_pair, temp_dir):
        """The sender stops queueing chunks above the high-water mark."""
        left, right = channel_pair
        received = []
        progress = []
        sender = TransferChannel(
            left,
            secrets,
            chunk_size=1024,
            on_progress=lambda *args: progress.append(args[2]),
            buffer_high_water=2048,
            buffer_low_water=512,
        )
        receiver = TransferChannel(right, peer_secrets(), chunk_size=1024, on_file=received.append)
        loop_task = asyncio.ensure_future(receiver.run())
        assert left.bufferedAmountLowThreshold == 512

        content = os.urandom(5000)
        source = temp_dir / "data.bin"
        source.write_bytes(content)

        left.paused = True
        send_task = asyncio.ensure_future(sender.send_file(source))
        await wait_until(lambda: left.bufferedAmount > 2048)
        await asyncio.sleep(0.05)

        assert not send_task.done()
        assert progress == [1024, 2048]
        assert len([frame for frame in left.sent if isinstance(frame, bytes)]) == 2
        assert received == []

        left.resume()
        item = await asyncio.wait_for(send_task, 1.0)
        await wait_until(lambda: received)

        assert progress[-1] == item.size == 5000
        assert received[0].data == content

        left.close()
        await asyncio.wait_for(loop_task, 1.0)

    async def test_close_while_buffer_full(self, secrets, channel_pair, temp_dir):
        left, _ = channel_pair
        sender = TransferChannel(
            left, secrets, chunk_size=1024, buffer_high_water=2048, buffer_low_water=512
        )
        source = temp_dir / "data.bin"
        source.write_bytes(os.urandom(5000))

        left.paused = True
        send_task = asyncio.ensure_future(sender.send_file(source))
        await wait_until(lambda: left.bufferedAmount > 2048)
        assert not send_task.done()

        left.close()
        with pytest.raises(NotConnected):
            await asyncio.wait_for(send_task, 1.0)


@pytest.mark.asyncio
class TestReceivePath:
    """Receive-side frame handling."""

    async def test_second_meta_abandons_first_item(self, secrets, channel_pair):
        """Meta for B discards A; later chunks of A are ignored."""
        _, right = channel_pair
        files = []
        transfer = TransferChannel(right, secrets, on_file=files.append)

        key_a, meta_a = meta_frame(secrets, "A", size=10)
        key_b, meta_b = meta_frame(secrets, "B", size=3)

        transfer.handle_frame(meta_a)
        transfer.handle_frame(chunk_frame(secrets, key_a, "A", 0, b"aaaaa"))
        assert transfer.state.received == 5

        transfer.handle_frame(meta_b)
        assert transfer.state.item.item_id == "B"
        assert transfer.state.received == 0

        transfer.handle_frame(chunk_frame(secrets, key_a, "A", 1, b"aaaaa"))
        assert transfer.state.item.item_id == "B"
        assert transfer.state.received == 0

        transfer.handle_frame(chunk_frame(secrets, key_b, "B", 0, b"bbb"))
        assert [f.item.item_id for f in files] == ["B"]
        assert files[0].data == b"bbb"
        assert isinstance(transfer.state, ReceiveIdle)

    async def test_tampered_chunk_abandons_item(self, secrets, channel_pair):
        _, right = channel_pair
        files = []
        transfer = TransferChannel(right, secrets, on_file=files.append)

        key, meta = meta_frame(secrets, "A", size=10)
        transfer.handle_frame(meta)

        iv, ciphertext = secrets.encrypt(key, b"12345")
        tampered = bytes([ciphertext[0] ^ 0xFF]) + ciphertext[1:]
        transfer.handle_frame(Protocol.encode_file_chunk("A", 0, iv, tampered))

        assert isinstance(transfer.state, ReceiveIdle)

        transfer.handle_frame(chunk_frame(secrets, key, "A", 1, b"67890"))
        assert files == []

    async def test_sequence_gap_abandons_item(self, secrets, channel_pair):
        _, right = channel_pair
        files = []
        transfer = TransferChannel(right, secrets, on_file=files.append)

        key, meta = meta_frame(secrets, "A", size=10)
        transfer.handle_frame(meta)
        transfer.handle_frame(chunk_frame(secrets, key, "A", 1, b"67890"))

        assert isinstance(transfer.state, ReceiveIdle)
        assert files == []

    async def test_size_overrun_abandons_item(self, secrets, channel_pair):
        _, right = channel_pair
        files = []
        transfer = TransferChannel(right, secrets, on_file=files.append)

        key, meta = meta_frame(secrets, "A", size=4)
        transfer.handle_frame(meta)
        transfer.handle_frame(chunk_frame(secrets, key, "A", 0, b"12345"))

        assert isinstance(transfer.state, ReceiveIdle)
        assert files == []

    async def test_chunk_without_meta_is_dropped(self, secrets, channel_pair):
        _, right = channel_pair
        transfer = TransferChannel(right, secrets)
        key, _ = secrets.derive_item_key("A")

        frame = transfer.handle_frame(chunk_frame(secrets, key, "A", 0, b"12345"))

        assert frame is not None
        assert isinstance(transfer.state, ReceiveIdle)

    async def test_meta_without_room_key_is_ignored(self, secrets, empty_secrets, channel_pair):
        _, right = channel_pair
        transfer = TransferChannel(right, empty_secrets)
        _, meta = meta_frame(secrets, "A", size=10)

        transfer.handle_frame(meta)
        assert isinstance(transfer.state, ReceiveIdle)

    async def test_malformed_frame_is_dropped(self, secrets, channel_pair):
        _, right = channel_pair
        transfer = TransferChannel(right, secrets)

        assert transfer.handle_frame("{broken") is None
        assert transfer.handle_frame(b'{"kind":"file-chunk"}\nxx') is None

    async def test_receive_progress(self, secrets, channel_pair):
        _, right = channel_pair
        progress = []
        transfer = TransferChannel(right, secrets, on_progress=lambda *args: progress.append(args))

        key, meta = meta_frame(secrets, "A", size=10)
        transfer.handle_frame(meta)
        transfer.handle_frame(chunk_frame(secrets, key, "A", 0, b"12345"))
        transfer.handle_frame(chunk_frame(secrets, key, "A", 1, b"67890"))

        assert [(p[0], p[2], p[3]) for p in progress] == [(RECEIVE, 5, 10), (RECEIVE, 10, 10)]

    async def test_callback_errors_are_contained(self, secrets, channel_pair):
        _, right = channel_pair

        def explode(_):
            raise RuntimeError("boom")

        transfer = TransferChannel(right, secrets, on_chat=explode)
        assert transfer.handle_frame(Protocol.encode_chat("hi")) is not None


@pytest.mark.asyncio
class TestSendPreconditions:
    """Send-side failures."""

    async def test_send_requires_open_channel(self, secrets, channel_pair, temp_dir):
        left, right = channel_pair
        transfer = TransferChannel(left, secrets)
        left.close()

        with pytest.raises(NotConnected):
            transfer.send_chat("hi")

        source = temp_dir / "a.txt"
        source.write_bytes(b"data")
        with pytest.raises(NotConnected):
            await transfer.send_file(source)

    async def test_send_file_requires_room_key(self, empty_secrets, channel_pair, temp_dir):
        left, _ = channel_pair
        transfer = TransferChannel(left, empty_secrets)
        source = temp_dir / "a.txt"
        source.write_bytes(b"data")

        with pytest.raises(SecretRequired):
            await transfer.send_file(source)
        assert left.sent == []

    async def test_send_missing_file(self, secrets, channel_pair, temp_dir):
        left, _ = channel_pair
        transfer = TransferChannel(left, secrets)

        with pytest.raises(FileTransferError):
            await transfer.send_file(temp_dir / "missing.txt")

        with pytest.raises(FileTransferError):
            await transfer.send_file(temp_dir)


@pytest.mark.asyncio
class TestReceivedFile:
    """Saving completed transfers."""

    async def test_save_does_not_overwrite(self, secrets, channel_pair, temp_dir):
        _, right = channel_pair
        files = []
        transfer = TransferChannel(right, secrets, on_file=files.append)

        for payload in (b"abc", b"xyz"):
            key, meta = meta_frame(secrets, "A", size=3)
            transfer.handle_frame(meta)
            transfer.handle_frame(chunk_frame(secrets, key, "A", 0, payload))

        first = await files[0].save(temp_dir)
        second = await files[1].save(temp_dir)

        assert first.name == "A.bin"
        assert second.name == "A (1).bin"
        assert first.read_bytes() == b"abc"
        assert second.read_bytes() == b"xyz"
