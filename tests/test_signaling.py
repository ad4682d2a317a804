"""
Capsule - Signaling tests.

Created by orpheus497

Tests for signaling blobs, the connection state machine, and offer/answer
sessions driven over fake peer connections.
"""

import base64
import json

import pytest

from capsule.errors import ErrorCode, MalformedBlob, SecretRequired, SignalingError
from capsule.signaling import (
    Role,
    SignalingBlob,
    SignalingEvent,
    SignalingSession,
    SignalingState,
    SignalingStateMachine,
    build_ice_servers,
)


def encode_raw(body) -> str:
    return base64.b64encode(json.dumps(body).encode("utf-8")).decode("ascii")


class TestSignalingBlob:
    """Tests for blob encoding."""

    def test_round_trip(self):
        blob = SignalingBlob(type="offer", sdp="v=0\r\n")
        decoded = SignalingBlob.decode(blob.encode())

        assert decoded == blob
        assert decoded.role is Role.OFFERER

    def test_wire_format(self):
        """A blob is base64 of the JSON description."""
        text = SignalingBlob(type="answer", sdp="v=0").encode()
        assert json.loads(base64.b64decode(text)) == {"type": "answer", "sdp": "v=0"}

    def test_tolerates_whitespace(self):
        text = SignalingBlob(type="offer", sdp="v=0").encode()
        wrapped = "\n".join(text[i : i + 10] for i in range(0, len(text), 10))

        assert SignalingBlob.decode(f"  {wrapped}\n").sdp == "v=0"

    @pytest.mark.parametrize(
        "text",
        [
            "",
            "not base64 at all!",
            base64.b64encode(b"not json").decode(),
            encode_raw(["offer", "v=0"]),
            encode_raw({"type": "pranswer", "sdp": "v=0"}),
            encode_raw({"type": "offer"}),
            encode_raw({"type": "offer", "sdp": 42}),
        ],
    )
    def test_malformed(self, text):
        with pytest.raises(MalformedBlob) as exc_info:
            SignalingBlob.decode(text)
        assert exc_info.value.code == ErrorCode.E201_MALFORMED_BLOB


class TestSignalingStateMachine:
    """Tests for state transitions."""

    def test_happy_path(self):
        fsm = SignalingStateMachine()
        changes = []
        fsm.on_state_change = lambda old, new: changes.append((old, new))

        assert fsm.transition(SignalingEvent.DESCRIPTION_REQUESTED)
        assert fsm.transition(SignalingEvent.GATHERING_COMPLETE)
        assert fsm.transition(SignalingEvent.CHANNEL_OPEN)

        assert fsm.get_state() == SignalingState.CONNECTED
        assert changes[-1] == (SignalingState.HAVE_LOCAL_DESCRIPTION, SignalingState.CONNECTED)
        assert len(fsm.get_history()) == 3

    def test_invalid_transition_ignored(self):
        fsm = SignalingStateMachine()

        assert not fsm.transition(SignalingEvent.CHANNEL_OPEN)
        assert fsm.get_state() == SignalingState.NEW

    def test_terminal_states(self):
        fsm = SignalingStateMachine()
        fsm.transition(SignalingEvent.DESCRIPTION_REQUESTED)
        fsm.transition(SignalingEvent.TRANSPORT_FAILED)

        assert fsm.is_terminal()
        assert not fsm.transition(SignalingEvent.GATHERING_COMPLETE)

        fsm.reset()
        assert fsm.get_state() == SignalingState.NEW
        assert not fsm.is_terminal()

    def test_callback_error_contained(self):
        fsm = SignalingStateMachine()

        def explode(old, new):
            raise RuntimeError("boom")

        fsm.on_state_change = explode
        assert fsm.transition(SignalingEvent.DESCRIPTION_REQUESTED)

    def test_statistics(self):
        fsm = SignalingStateMachine()
        fsm.transition(SignalingEvent.DESCRIPTION_REQUESTED)
        fsm.transition(SignalingEvent.GATHERING_TIMEOUT)

        stats = fsm.get_statistics()
        assert stats["current_state"] == "HAVE_LOCAL_DESCRIPTION"
        assert stats["event_counts"] == {"DESCRIPTION_REQUESTED": 1, "GATHERING_TIMEOUT": 1}


def test_build_ice_servers():
    servers = build_ice_servers(
        [
            {"urls": "stun:stun.example.org:3478"},
            {"urls": ["turn:turn.example.org"], "username": "u", "credential": "p"},
            {"username": "no-urls"},
        ]
    )

    assert len(servers) == 2
    assert servers[0].urls == ["stun:stun.example.org:3478"]
    assert servers[1].username == "u"


@pytest.mark.asyncio
class TestSignalingSession:
    """Offer/answer sessions over fake peer connections."""

    async def test_offer_requires_room_key(self, empty_secrets, peer_factory):
        session = SignalingSession(empty_secrets, peer_factory=peer_factory)

        with pytest.raises(SecretRequired):
            await session.create_offer()
        assert peer_factory.created == []

    async def test_offer_after_derive(self, empty_secrets, peer_factory):
        """Once a passphrase is set, offers succeed and differ per attempt."""
        session = SignalingSession(empty_secrets, peer_factory=peer_factory)
        empty_secrets.derive("x")

        first = await session.create_offer()
        second = await session.create_offer()

        assert first and second
        assert first != second
        assert SignalingBlob.decode(first).role is Role.OFFERER
        assert session.state == SignalingState.HAVE_LOCAL_DESCRIPTION
        assert peer_factory.created[0].closed

    async def test_answer_requires_room_key(self, empty_secrets, peer_factory):
        session = SignalingSession(empty_secrets, peer_factory=peer_factory)
        offer = SignalingBlob(type="offer", sdp="v=0").encode()

        with pytest.raises(SecretRequired):
            await session.create_answer(offer)

    async def test_gathering_timeout_is_tolerated(self, secrets, peer_factory):
        peer_factory.complete_gathering = False
        session = SignalingSession(secrets, peer_factory=peer_factory, gathering_timeout=0.05)

        blob = await session.create_offer()

        assert SignalingBlob.decode(blob).type == "offer"
        assert session.state == SignalingState.HAVE_LOCAL_DESCRIPTION
        events = [t.event for t in session.fsm.get_history()]
        assert SignalingEvent.GATHERING_TIMEOUT in events

    async def test_offer_answer_connects(self, secrets, peer_factory):
        """Full exchange: offerer channel opens, answerer receives it."""
        offerer = SignalingSession(secrets, peer_factory=peer_factory)
        answerer = SignalingSession(secrets, peer_factory=peer_factory)
        opened = []
        answerer.on_channel = opened.append

        offer = await offerer.create_offer()
        answer = await answerer.create_answer(offer)
        await offerer.accept_answer(answer)

        offer_pc, answer_pc = peer_factory.created
        assert offer_pc.remoteDescription.type == "answer"
        assert answer_pc.remoteDescription.type == "offer"

        # The transport delivers the offerer's channel to the answerer
        local_channel = offer_pc.channels[0]
        assert local_channel.label == "data"
        remote_channel = type(local_channel)("data")
        local_channel.peer, remote_channel.peer = remote_channel, local_channel
        local_channel.open()
        remote_channel.open()
        answer_pc.emit("datachannel", remote_channel)

        assert await offerer.wait_channel(timeout=1.0) is local_channel
        assert await answerer.wait_channel(timeout=1.0) is remote_channel
        assert offerer.state == SignalingState.CONNECTED
        assert answerer.state == SignalingState.CONNECTED
        assert opened == [remote_channel]

        await offerer.close()
        assert offerer.state == SignalingState.CLOSED
        assert offerer.channel is None
        assert answerer.state == SignalingState.CLOSED

    async def test_accept_answer_without_offer(self, secrets, peer_factory):
        session = SignalingSession(secrets, peer_factory=peer_factory)
        answer = SignalingBlob(type="answer", sdp="v=0").encode()

        with pytest.raises(SignalingError) as exc_info:
            await session.accept_answer(answer)
        assert exc_info.value.code == ErrorCode.E202_WRONG_ROLE

    async def test_accept_answer_rejects_offer_blob(self, secrets, peer_factory):
        session = SignalingSession(secrets, peer_factory=peer_factory)
        offer = await session.create_offer()

        with pytest.raises(MalformedBlob):
            await session.accept_answer(offer)

    async def test_accept_answer_rejects_garbage(self, secrets, peer_factory):
        session = SignalingSession(secrets, peer_factory=peer_factory)
        await session.create_offer()

        with pytest.raises(MalformedBlob):
            await session.accept_answer("%%%")

        bad_sdp = SignalingBlob(type="answer", sdp="garbage").encode()
        with pytest.raises(MalformedBlob):
            await session.accept_answer(bad_sdp)

    async def test_create_answer_rejects_answer_blob(self, secrets, peer_factory):
        session = SignalingSession(secrets, peer_factory=peer_factory)
        answer = SignalingBlob(type="answer", sdp="v=0").encode()

        with pytest.raises(MalformedBlob):
            await session.create_answer(answer)
        assert peer_factory.created == []

    async def test_create_answer_with_bad_sdp_fails_attempt(self, secrets, peer_factory):
        session = SignalingSession(secrets, peer_factory=peer_factory)
        offer = SignalingBlob(type="offer", sdp="garbage").encode()

        with pytest.raises(MalformedBlob):
            await session.create_answer(offer)
        assert session.state == SignalingState.FAILED

    async def test_transport_failure_invalidates_channel(self, secrets, peer_factory):
        session = SignalingSession(secrets, peer_factory=peer_factory)
        await session.create_offer()
        pc = peer_factory.created[0]
        pc.channels[0].open()
        assert session.channel is not None

        pc.fail()

        assert session.state == SignalingState.FAILED
        assert session.channel is None
        with pytest.raises(SignalingError):
            await session.wait_channel(timeout=0.1)

    async def test_wait_channel_timeout(self, secrets, peer_factory):
        session = SignalingSession(secrets, peer_factory=peer_factory)
        await session.create_offer()

        with pytest.raises(SignalingError) as exc_info:
            await session.wait_channel(timeout=0.05)
        assert exc_info.value.code == ErrorCode.E204_CHANNEL_TIMEOUT

    async def test_new_attempt_ignores_stale_connection(self, secrets, peer_factory):
        session = SignalingSession(secrets, peer_factory=peer_factory)
        await session.create_offer()
        await session.create_offer()
        stale, current = peer_factory.created

        stale.fail()

        assert session.pc is current
        assert session.state == SignalingState.HAVE_LOCAL_DESCRIPTION
