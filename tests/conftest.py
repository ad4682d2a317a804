"""
Pytest configuration and fixtures for Capsule tests.

Created by orpheus497

Provides common fixtures and test doubles for unit and integration tests.
The data channel and peer connection doubles mirror the aiortc surface the
transfer and signaling code relies on, so links can be exercised without
ICE or network access.
"""

import asyncio
import itertools
import os
import shutil
import tempfile
from collections import defaultdict
from pathlib import Path
from typing import Generator, Tuple

import pytest
from aiortc import RTCSessionDescription

from capsule.constants import PBKDF2_MIN_ITERATIONS
from capsule.crypto import SecretManager

# Minimum allowed count keeps key derivation fast in tests
TEST_ITERATIONS = PBKDF2_MIN_ITERATIONS


class EventSource:
    """Minimal event emitter with the on(event, handler) signature aiortc uses."""

    def __init__(self):
        self._handlers = defaultdict(list)

    def on(self, event, handler=None):
        def register(f):
            self._handlers[event].append(f)
            return f

        return register(handler) if handler is not None else register

    def emit(self, event, *args):
        for handler in list(self._handlers[event]):
            handler(*args)


class FakeDataChannel(EventSource):
    """In-memory data channel; send() delivers to the linked peer in order.

    While ``paused`` is set, sent frames are held and counted in
    ``bufferedAmount`` until ``resume()`` flushes them.
    """

    def __init__(self, label: str = "data"):
        super().__init__()
        self.label = label
        self.readyState = "connecting"
        self.peer = None
        self.sent = []
        self.paused = False
        self.bufferedAmount = 0
        self.bufferedAmountLowThreshold = 0
        self._held = []

    def open(self) -> None:
        self.readyState = "open"
        self.emit("open")

    def send(self, data) -> None:
        if self.readyState != "open":
            raise RuntimeError("RTCDataChannel is not open")
        self.sent.append(data)
        if self.paused:
            self._held.append(data)
            self.bufferedAmount += len(data.encode("utf-8") if isinstance(data, str) else data)
        elif self.peer is not None:
            self.peer.emit("message", data)

    def resume(self) -> None:
        """Deliver held frames and signal that the buffer drained."""
        self.paused = False
        held, self._held = self._held, []
        for data in held:
            if self.peer is not None:
                self.peer.emit("message", data)
        was_above = self.bufferedAmount > self.bufferedAmountLowThreshold
        self.bufferedAmount = 0
        if was_above:
            self.emit("bufferedamountlow")

    def close(self) -> None:
        if self.readyState == "closed":
            return
        self.readyState = "closed"
        self.emit("close")
        if self.peer is not None:
            self.peer.close()


def make_channel_pair() -> Tuple[FakeDataChannel, FakeDataChannel]:
    """Two open channels wired to each other."""
    left, right = FakeDataChannel(), FakeDataChannel()
    left.peer, right.peer = right, left
    left.open()
    right.open()
    return left, right


class FakePeerConnection(EventSource):
    """Peer connection double producing unique descriptions.

    Args:
        complete_gathering: Finish ICE gathering shortly after the local
            description is set; when False gathering never completes.
    """

    _sessions = itertools.count(1)

    def __init__(self, complete_gathering: bool = True):
        super().__init__()
        self.complete_gathering = complete_gathering
        self.iceGatheringState = "new"
        self.connectionState = "new"
        self.localDescription = None
        self.remoteDescription = None
        self.channels = []
        self.closed = False

    def createDataChannel(self, label, ordered=True):
        channel = FakeDataChannel(label)
        self.channels.append(channel)
        return channel

    def _description(self, kind: str) -> RTCSessionDescription:
        session = next(self._sessions)
        sdp = f"v=0\r\no=- {session} 2 IN IP4 127.0.0.1\r\ns=-\r\nt=0 0\r\n"
        return RTCSessionDescription(sdp=sdp, type=kind)

    async def createOffer(self):
        return self._description("offer")

    async def createAnswer(self):
        if self.remoteDescription is None:
            raise RuntimeError("Cannot create answer without a remote description")
        return self._description("answer")

    async def setLocalDescription(self, description):
        self.localDescription = description
        self.iceGatheringState = "gathering"
        if self.complete_gathering:
            asyncio.get_running_loop().call_soon(self._finish_gathering)

    def _finish_gathering(self):
        self.iceGatheringState = "complete"
        self.emit("icegatheringstatechange")

    async def setRemoteDescription(self, description):
        if not description.sdp.startswith("v=0"):
            raise ValueError("Invalid SDP")
        self.remoteDescription = description

    def fail(self):
        self.connectionState = "failed"
        self.emit("connectionstatechange")

    async def close(self):
        if self.closed:
            return
        self.closed = True
        for channel in self.channels:
            channel.close()
        self.connectionState = "closed"
        self.emit("connectionstatechange")


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """
    Create a temporary directory for test data.

    Yields:
        Path: Temporary directory path
    """
    tmp = Path(tempfile.mkdtemp(prefix="capsule_test_"))
    try:
        yield tmp
    finally:
        shutil.rmtree(tmp, ignore_errors=True)


@pytest.fixture
def secrets() -> SecretManager:
    """Secret manager holding the room key for "unit-test-pass"."""
    manager = SecretManager(iterations=TEST_ITERATIONS)
    manager.derive("unit-test-pass")
    return manager


@pytest.fixture
def empty_secrets() -> SecretManager:
    """Secret manager without a room key."""
    return SecretManager(iterations=TEST_ITERATIONS)


@pytest.fixture
def channel_pair() -> Tuple[FakeDataChannel, FakeDataChannel]:
    return make_channel_pair()


@pytest.fixture
def peer_factory():
    """Factory of FakePeerConnection objects; created connections are kept in .created."""

    class Factory:
        def __init__(self):
            self.created = []
            self.complete_gathering = True

        def __call__(self):
            pc = FakePeerConnection(complete_gathering=self.complete_gathering)
            self.created.append(pc)
            return pc

    return Factory()


@pytest.fixture(autouse=True)
def isolate_environment(monkeypatch):
    """Keep host CAPSULE_* variables out of configuration tests."""
    for name in list(os.environ):
        if name.startswith("CAPSULE_"):
            monkeypatch.delenv(name, raising=False)


# Pytest marks
def pytest_configure(config):
    """
    Configure pytest markers.

    Args:
        config: Pytest configuration object
    """
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")
    config.addinivalue_line("markers", "slow: mark test as slow running")


# Test collection hooks
def pytest_collection_modifyitems(config, items):
    """
    Add markers based on test location.

    Args:
        config: Pytest configuration
        items: List of collected test items
    """
    for item in items:
        if "unit" in str(item.path):
            item.add_marker(pytest.mark.unit)

        if "integration" in str(item.path):
            item.add_marker(pytest.mark.integration)
