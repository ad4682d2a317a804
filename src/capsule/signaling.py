"""
Capsule - Manual signaling and connection state machine.

Created by orpheus497

This module establishes the single peer link without a signaling server.
One side creates an offer blob, the other turns it into an answer blob, and
the blobs travel out-of-band (copy/paste or QR). A blob is the base64 of the
JSON session description {"type", "sdp"}; the "type" is the role marker.

ICE candidates are not trickled: a blob is produced only after candidate
gathering completes or a short timeout expires, whichever comes first.
Proceeding after the timeout with partial candidates is normal.

The WebRTC stack (ICE, DTLS, SCTP) is aiortc. Any peer connection object
with the same surface can be injected through peer_factory.
"""

import asyncio
import base64
import binascii
import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Callable, Dict, List, Optional

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription

from .constants import (
    DATA_CHANNEL_LABEL,
    DEFAULT_ICE_SERVERS,
    ICE_GATHERING_TIMEOUT,
    STATE_HISTORY_LIMIT,
)
from .crypto import SecretManager
from .errors import ErrorCode, MalformedBlob, SecretRequired, SignalingError

logger = logging.getLogger(__name__)


class Role(Enum):
    """Side of the link."""

    OFFERER = "offer"
    ANSWERER = "answer"


class SignalingState(Enum):
    """Connection attempt states."""

    NEW = auto()  # Nothing created yet
    GATHERING = auto()  # Local description set, gathering candidates
    HAVE_LOCAL_DESCRIPTION = auto()  # Blob ready for out-of-band exchange
    CONNECTED = auto()  # Data channel open
    FAILED = auto()  # Transport failed
    CLOSED = auto()  # Closed locally or by the peer


class SignalingEvent(Enum):
    """Events that trigger state transitions."""

    DESCRIPTION_REQUESTED = auto()  # create_offer / create_answer called
    GATHERING_COMPLETE = auto()  # All candidates gathered
    GATHERING_TIMEOUT = auto()  # Gathering bound reached
    CHANNEL_OPEN = auto()  # Data channel open
    TRANSPORT_FAILED = auto()  # ICE/DTLS failure or setup error
    TRANSPORT_CLOSED = auto()  # Peer or transport closed
    CLOSE_REQUESTED = auto()  # Local close


TERMINAL_STATES = (SignalingState.FAILED, SignalingState.CLOSED)


@dataclass
class StateTransition:
    """Represents a state transition."""

    from_state: SignalingState
    event: SignalingEvent
    to_state: SignalingState
    timestamp: float = field(default_factory=time.time)


class SignalingStateMachine:
    """
    Finite state machine for one connection attempt.

    new -> gathering -> have-local-description -> connected | failed | closed
    """

    TRANSITIONS: Dict[SignalingState, Dict[SignalingEvent, SignalingState]] = {
        SignalingState.NEW: {
            SignalingEvent.DESCRIPTION_REQUESTED: SignalingState.GATHERING,
            SignalingEvent.CLOSE_REQUESTED: SignalingState.CLOSED,
        },
        SignalingState.GATHERING: {
            SignalingEvent.GATHERING_COMPLETE: SignalingState.HAVE_LOCAL_DESCRIPTION,
            SignalingEvent.GATHERING_TIMEOUT: SignalingState.HAVE_LOCAL_DESCRIPTION,
            SignalingEvent.TRANSPORT_FAILED: SignalingState.FAILED,
            SignalingEvent.TRANSPORT_CLOSED: SignalingState.CLOSED,
            SignalingEvent.CLOSE_REQUESTED: SignalingState.CLOSED,
        },
        SignalingState.HAVE_LOCAL_DESCRIPTION: {
            SignalingEvent.CHANNEL_OPEN: SignalingState.CONNECTED,
            SignalingEvent.TRANSPORT_FAILED: SignalingState.FAILED,
            SignalingEvent.TRANSPORT_CLOSED: SignalingState.CLOSED,
            SignalingEvent.CLOSE_REQUESTED: SignalingState.CLOSED,
        },
        SignalingState.CONNECTED: {
            SignalingEvent.TRANSPORT_FAILED: SignalingState.FAILED,
            SignalingEvent.TRANSPORT_CLOSED: SignalingState.CLOSED,
            SignalingEvent.CLOSE_REQUESTED: SignalingState.CLOSED,
        },
        SignalingState.FAILED: {},
        SignalingState.CLOSED: {},
    }

    def __init__(self, initial_state: SignalingState = SignalingState.NEW):
        self.current_state = initial_state
        self.previous_state: Optional[SignalingState] = None
        self.state_entry_time = time.time()
        self.transition_history: List[StateTransition] = []
        self.max_history = STATE_HISTORY_LIMIT

        self.on_state_change: Optional[Callable[[SignalingState, SignalingState], None]] = None

    def transition(self, event: SignalingEvent) -> bool:
        """
        Attempt state transition based on event.

        Returns:
            True if transition successful, False otherwise
        """
        if not self.is_valid_transition(self.current_state, event):
            logger.debug(f"Ignored event {event.name} in state {self.current_state.name}")
            return False

        new_state = self.TRANSITIONS[self.current_state][event]

        old_state = self.current_state
        self.previous_state = old_state
        self.current_state = new_state
        self.state_entry_time = time.time()

        self.transition_history.append(StateTransition(old_state, event, new_state))
        if len(self.transition_history) > self.max_history:
            self.transition_history = self.transition_history[-self.max_history :]

        logger.info(
            f"Signaling transition: {old_state.name} -> {new_state.name} (event: {event.name})"
        )

        if self.on_state_change:
            try:
                self.on_state_change(old_state, new_state)
            except Exception as e:
                logger.error(f"State change callback error: {e}")

        return True

    def is_valid_transition(self, from_state: SignalingState, event: SignalingEvent) -> bool:
        return event in self.TRANSITIONS.get(from_state, {})

    def get_state(self) -> SignalingState:
        return self.current_state

    def is_terminal(self) -> bool:
        return self.current_state in TERMINAL_STATES

    def get_time_in_state(self) -> float:
        """Get time spent in current state (seconds)."""
        return time.time() - self.state_entry_time

    def reset(self) -> None:
        """Start a new attempt from NEW, keeping the history."""
        old_state = self.current_state
        self.previous_state = old_state
        self.current_state = SignalingState.NEW
        self.state_entry_time = time.time()
        logger.debug(f"Signaling state reset: {old_state.name} -> NEW")

    def get_history(self, count: int = 10) -> List[StateTransition]:
        return self.transition_history[-count:]

    def get_statistics(self) -> Dict[str, Any]:
        """
        Get state machine statistics.

        Returns:
            Dictionary with statistics
        """
        event_counts: Dict[str, int] = {}
        for transition in self.transition_history:
            event_counts[transition.event.name] = event_counts.get(transition.event.name, 0) + 1

        return {
            "current_state": self.current_state.name,
            "previous_state": self.previous_state.name if self.previous_state else None,
            "time_in_state": self.get_time_in_state(),
            "total_transitions": len(self.transition_history),
            "event_counts": event_counts,
            "is_terminal": self.is_terminal(),
        }

    def __repr__(self) -> str:
        return (
            f"SignalingStateMachine(state={self.current_state.name}, "
            f"time_in_state={self.get_time_in_state():.1f}s)"
        )


@dataclass
class SignalingBlob:
    """Session description exchanged out-of-band.

    Attributes:
        type: "offer" or "answer"
        sdp: Session description text
    """

    type: str
    sdp: str

    @property
    def role(self) -> Role:
        return Role(self.type)

    def encode(self) -> str:
        """Base64 of the JSON description."""
        raw = json.dumps({"type": self.type, "sdp": self.sdp}).encode("utf-8")
        return base64.b64encode(raw).decode("ascii")

    @staticmethod
    def decode(text: str) -> "SignalingBlob":
        """
        Parse a pasted or scanned blob.

        Raises:
            MalformedBlob: On bad base64, bad JSON or missing fields
        """
        if not isinstance(text, str) or not text.strip():
            raise MalformedBlob(message="Empty signaling blob")

        compact = "".join(text.split())
        try:
            raw = base64.b64decode(compact, validate=True)
            body = json.loads(raw.decode("utf-8"))
        except (binascii.Error, ValueError) as e:
            raise MalformedBlob(
                message=f"Signaling blob could not be decoded: {e}", details={"error": str(e)}
            )

        if not isinstance(body, dict):
            raise MalformedBlob(message="Signaling blob is not a JSON object")

        blob_type = body.get("type")
        sdp = body.get("sdp")
        if blob_type not in (Role.OFFERER.value, Role.ANSWERER.value) or not isinstance(sdp, str):
            raise MalformedBlob(
                message="Signaling blob must carry type offer/answer and an sdp string",
                details={"type": blob_type},
            )

        return SignalingBlob(type=blob_type, sdp=sdp)


def build_ice_servers(servers: List[Dict[str, Any]]) -> List[RTCIceServer]:
    """Convert configuration dictionaries into aiortc ICE server entries."""
    result = []
    for server in servers:
        urls = server.get("urls")
        if isinstance(urls, str):
            urls = [urls]
        if not urls:
            logger.warning(f"Skipping ICE server without urls: {server}")
            continue
        result.append(
            RTCIceServer(
                urls=urls,
                username=server.get("username"),
                credential=server.get("credential"),
            )
        )
    return result


class SignalingSession:
    """
    Drives one peer link through offer/answer exchange.

    A new create_offer() or create_answer() discards the previous peer
    connection. Failed or closed attempts are never retried automatically.

    Attributes:
        secrets: Holder of the room key (gates every attempt)
        role: Role of the current attempt
        pc: Current peer connection
        channel: Shared data channel once open, None otherwise
        fsm: State machine of the current attempt
    """

    def __init__(
        self,
        secrets: SecretManager,
        peer_factory: Optional[Callable[[], Any]] = None,
        ice_servers: Optional[List[Dict[str, Any]]] = None,
        gathering_timeout: float = ICE_GATHERING_TIMEOUT,
        on_channel: Optional[Callable[[Any], None]] = None,
        on_state_change: Optional[Callable[[SignalingState, SignalingState], None]] = None,
    ):
        self.secrets = secrets
        self.ice_servers = ice_servers if ice_servers is not None else DEFAULT_ICE_SERVERS
        self.gathering_timeout = gathering_timeout
        self.on_channel = on_channel
        self._peer_factory = peer_factory or self._create_peer_connection

        self.fsm = SignalingStateMachine()
        self.fsm.on_state_change = self._handle_state_change
        self._on_state_change = on_state_change

        self.role: Optional[Role] = None
        self.pc: Any = None
        self.channel: Any = None
        self._attempt = 0
        self._channel_ready: Optional[asyncio.Future] = None

    @property
    def state(self) -> SignalingState:
        return self.fsm.get_state()

    def _create_peer_connection(self) -> RTCPeerConnection:
        configuration = RTCConfiguration(iceServers=build_ice_servers(self.ice_servers))
        return RTCPeerConnection(configuration=configuration)

    def _require_secret(self) -> None:
        if not self.secrets.has_key:
            raise SecretRequired()

    async def create_offer(self) -> str:
        """
        Start an attempt as the offerer.

        Returns:
            Offer blob to hand to the peer

        Raises:
            SecretRequired: If no room key is set
            SignalingError: If the local description cannot be produced
        """
        self._require_secret()
        pc = await self._new_attempt(Role.OFFERER)
        self._attach_channel(pc.createDataChannel(DATA_CHANNEL_LABEL, ordered=True))

        try:
            offer = await pc.createOffer()
            await pc.setLocalDescription(offer)
        except Exception as e:
            self.fsm.transition(SignalingEvent.TRANSPORT_FAILED)
            raise SignalingError(
                ErrorCode.E200_SIGNALING_ERROR, f"Failed to create offer: {e}", {"error": str(e)}
            )

        await self._wait_gathering(pc)
        return self._local_blob(pc)

    async def accept_answer(self, blob: str) -> None:
        """
        Apply the peer's answer to the pending offer.

        Raises:
            MalformedBlob: If the blob cannot be decoded or applied
            SignalingError: If no offer is pending
        """
        if self.role is not Role.OFFERER or self.pc is None:
            raise SignalingError(ErrorCode.E202_WRONG_ROLE, "No offer pending - create an offer first")
        if self.fsm.is_terminal():
            raise SignalingError(
                ErrorCode.E203_CONNECTION_CLOSED,
                f"Connection attempt is {self.state.name.lower()} - create a new offer",
            )

        answer = SignalingBlob.decode(blob)
        if answer.role is not Role.ANSWERER:
            raise MalformedBlob(message="Expected an answer blob, got an offer")

        try:
            await self.pc.setRemoteDescription(
                RTCSessionDescription(sdp=answer.sdp, type=answer.type)
            )
        except Exception as e:
            raise MalformedBlob(
                message=f"Answer could not be applied: {e}", details={"error": str(e)}
            )

        logger.info("Remote answer applied")

    async def create_answer(self, offer_blob: str) -> str:
        """
        Start an attempt as the answerer from the peer's offer.

        Returns:
            Answer blob to hand back to the peer

        Raises:
            SecretRequired: If no room key is set
            MalformedBlob: If the offer cannot be decoded or applied
            SignalingError: If the local description cannot be produced
        """
        self._require_secret()
        offer = SignalingBlob.decode(offer_blob)
        if offer.role is not Role.OFFERER:
            raise MalformedBlob(message="Expected an offer blob, got an answer")

        pc = await self._new_attempt(Role.ANSWERER)

        try:
            await pc.setRemoteDescription(RTCSessionDescription(sdp=offer.sdp, type=offer.type))
        except Exception as e:
            self.fsm.transition(SignalingEvent.TRANSPORT_FAILED)
            raise MalformedBlob(
                message=f"Offer could not be applied: {e}", details={"error": str(e)}
            )

        try:
            answer = await pc.createAnswer()
            await pc.setLocalDescription(answer)
        except Exception as e:
            self.fsm.transition(SignalingEvent.TRANSPORT_FAILED)
            raise SignalingError(
                ErrorCode.E200_SIGNALING_ERROR, f"Failed to create answer: {e}", {"error": str(e)}
            )

        await self._wait_gathering(pc)
        return self._local_blob(pc)

    async def wait_channel(self, timeout: Optional[float] = None) -> Any:
        """
        Wait until the shared data channel is open.

        Raises:
            SignalingError: If no attempt is running, the attempt ends
                without a channel, or the timeout expires
        """
        if self._channel_ready is None:
            raise SignalingError(ErrorCode.E202_WRONG_ROLE, "No connection attempt in progress")

        try:
            await asyncio.wait_for(asyncio.shield(self._channel_ready), timeout)
        except asyncio.TimeoutError:
            raise SignalingError(
                ErrorCode.E204_CHANNEL_TIMEOUT,
                f"Data channel did not open within {timeout}s",
                {"timeout": timeout},
            )

        if self.channel is None:
            raise SignalingError(
                ErrorCode.E203_CONNECTION_CLOSED,
                f"Connection attempt ended: {self.state.name.lower()}",
            )
        return self.channel

    async def close(self) -> None:
        """Close the current peer connection."""
        pc = self.pc
        self.fsm.transition(SignalingEvent.CLOSE_REQUESTED)
        if pc is not None:
            await pc.close()
        logger.info("Signaling session closed")

    async def _new_attempt(self, role: Role) -> Any:
        """Discard the previous attempt and create a fresh peer connection."""
        previous = self.pc
        self._attempt += 1
        attempt = self._attempt

        self.pc = None
        self._invalidate_channel()
        if previous is not None:
            try:
                await previous.close()
            except Exception as e:
                logger.warning(f"Error closing previous peer connection: {e}")

        self.fsm.reset()
        self.role = role
        self._channel_ready = asyncio.get_running_loop().create_future()

        pc = self._peer_factory()
        self.pc = pc

        def on_datachannel(channel: Any) -> None:
            if attempt == self._attempt:
                self._attach_channel(channel)

        def on_connectionstatechange() -> None:
            if attempt != self._attempt:
                return
            state = pc.connectionState
            logger.debug(f"Peer connection state: {state}")
            if state == "failed":
                self.fsm.transition(SignalingEvent.TRANSPORT_FAILED)
            elif state == "closed":
                self.fsm.transition(SignalingEvent.TRANSPORT_CLOSED)

        pc.on("datachannel", on_datachannel)
        pc.on("connectionstatechange", on_connectionstatechange)

        self.fsm.transition(SignalingEvent.DESCRIPTION_REQUESTED)
        logger.info(f"New connection attempt #{attempt} as {role.name.lower()}")
        return pc

    async def _wait_gathering(self, pc: Any) -> None:
        """Wait for ICE gathering to complete, bounded by gathering_timeout."""
        if pc.iceGatheringState != "complete":
            done = asyncio.Event()

            def on_gathering_change() -> None:
                if pc.iceGatheringState == "complete":
                    done.set()

            pc.on("icegatheringstatechange", on_gathering_change)
            try:
                await asyncio.wait_for(done.wait(), self.gathering_timeout)
            except asyncio.TimeoutError:
                logger.info(
                    f"ICE gathering not complete after {self.gathering_timeout}s, "
                    "continuing with gathered candidates"
                )
                self.fsm.transition(SignalingEvent.GATHERING_TIMEOUT)
                return

        self.fsm.transition(SignalingEvent.GATHERING_COMPLETE)

    def _local_blob(self, pc: Any) -> str:
        description = pc.localDescription
        if description is None:
            raise SignalingError(ErrorCode.E200_SIGNALING_ERROR, "No local description available")
        return SignalingBlob(type=description.type, sdp=description.sdp).encode()

    def _attach_channel(self, channel: Any) -> None:
        if self.channel is not None and self.channel is not channel:
            logger.warning("Ignoring additional data channel; one link per session")
            return

        self.channel = channel
        channel.on("open", lambda: self._on_channel_open(channel))
        channel.on("close", lambda: self._on_channel_close(channel))
        if channel.readyState == "open":
            self._on_channel_open(channel)

    def _on_channel_open(self, channel: Any) -> None:
        if channel is not self.channel:
            return
        if self._channel_ready is not None and self._channel_ready.done():
            return

        self.fsm.transition(SignalingEvent.CHANNEL_OPEN)
        if self._channel_ready is not None:
            self._channel_ready.set_result(channel)
        logger.info("Data channel open")

        if self.on_channel:
            try:
                self.on_channel(channel)
            except Exception as e:
                logger.error(f"Channel callback error: {e}")

    def _on_channel_close(self, channel: Any) -> None:
        if channel is not self.channel:
            return
        logger.info("Data channel closed")
        self.fsm.transition(SignalingEvent.TRANSPORT_CLOSED)

    def _handle_state_change(self, old_state: SignalingState, new_state: SignalingState) -> None:
        if new_state in TERMINAL_STATES:
            self._invalidate_channel()
        if self._on_state_change:
            self._on_state_change(old_state, new_state)

    def _invalidate_channel(self) -> None:
        self.channel = None
        if self._channel_ready is not None and not self._channel_ready.done():
            self._channel_ready.set_result(None)
