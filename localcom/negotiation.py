"""
Call state machine for one peer.

`CallStateMachine.handle` is a synchronous transition function: it takes one
event, updates the link/call state and the optional negotiation session, and
returns the actions the peer connector must carry out. Anything asynchronous
(media capture, SDP work, relay sends) happens in the connector, which reports
back by posting further events. Keeping this module free of I/O lets it run
against a fake backend in tests.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from . import signaling
from .message_cache import REMOTE
from .signaling import SignalingMessage

logger = logging.getLogger(__name__)

CALLER = "caller"
CALLEE = "callee"


class LinkState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class CallState(str, Enum):
    IDLE = "idle"
    CALLING = "calling"
    IN_CALL = "in-call"


@dataclass(eq=False)
class NegotiationSession:
    """Everything owned by the single in-flight call. Compared by identity."""

    role: str
    peer: Any = None
    audio: Any = None
    channel: Any = None
    remote_sink: Any = None
    remote_description_set: bool = False
    pending_candidates: List[Dict[str, Any]] = field(default_factory=list)


# ------------------------------------------------------------------ events

@dataclass(frozen=True)
class LinkOpening:
    pass


@dataclass(frozen=True)
class LinkOpened:
    pass


@dataclass(frozen=True)
class LinkLost:
    reason: str = ""


@dataclass(frozen=True)
class CallRequested:
    pass


@dataclass(frozen=True)
class HangUpRequested:
    pass


@dataclass(frozen=True)
class SignalReceived:
    message: SignalingMessage


@dataclass(frozen=True)
class LocalDescriptionReady:
    session: NegotiationSession
    message: SignalingMessage


@dataclass(frozen=True)
class RemoteDescriptionApplied:
    session: NegotiationSession


@dataclass(frozen=True)
class MediaDenied:
    session: NegotiationSession
    error: Exception


@dataclass(frozen=True)
class NegotiationFailed:
    session: NegotiationSession
    step: str
    error: Exception


@dataclass(frozen=True)
class RemoteTrack:
    session: NegotiationSession
    track: Any = None


@dataclass(frozen=True)
class PeerFailed:
    session: NegotiationSession


@dataclass(frozen=True)
class ChannelStateChanged:
    session: NegotiationSession
    state: str


@dataclass(frozen=True)
class ChatReceived:
    text: str


# ----------------------------------------------------------------- actions

@dataclass(frozen=True)
class PrepareOffer:
    session: NegotiationSession


@dataclass(frozen=True)
class PrepareAnswer:
    session: NegotiationSession
    description: Dict[str, Any]


@dataclass(frozen=True)
class ApplyRemoteDescription:
    session: NegotiationSession
    description: Dict[str, Any]


@dataclass(frozen=True)
class ApplyCandidate:
    session: NegotiationSession
    candidate: Dict[str, Any]


@dataclass(frozen=True)
class AttachRemoteAudio:
    session: NegotiationSession
    track: Any


@dataclass(frozen=True)
class SendSignal:
    message: SignalingMessage


@dataclass(frozen=True)
class Teardown:
    session: NegotiationSession


@dataclass(frozen=True)
class Notify:
    kind: str
    data: Any


@dataclass(frozen=True)
class RecordChat:
    text: str
    sender: str


class CallStateMachine:
    def __init__(self):
        self.link = LinkState.DISCONNECTED
        self.call = CallState.IDLE
        self.session: Optional[NegotiationSession] = None
        self._handlers = {
            LinkOpening: self._link_opening,
            LinkOpened: self._link_opened,
            LinkLost: self._link_lost,
            CallRequested: self._call_requested,
            HangUpRequested: self._hang_up,
            SignalReceived: self._signal,
            LocalDescriptionReady: self._local_description,
            RemoteDescriptionApplied: self._remote_applied,
            MediaDenied: self._media_denied,
            NegotiationFailed: self._negotiation_failed,
            RemoteTrack: self._remote_track,
            PeerFailed: self._peer_failed,
            ChannelStateChanged: self._channel_state,
            ChatReceived: self._chat_received,
        }

    def handle(self, event) -> List[Any]:
        handler = self._handlers.get(type(event))
        if handler is None:
            raise TypeError(f"unknown event {event!r}")
        return handler(event)

    # ---------------------------------------------------------- helpers
    def _is_current(self, session) -> bool:
        if session is None or session is not self.session:
            logger.debug("Ignoring event for a session that is no longer active")
            return False
        return True

    def _set_link(self, state) -> List[Any]:
        if self.link == state:
            return []
        self.link = state
        return [Notify("link", state.value)]

    def _set_call(self, state) -> List[Any]:
        if self.call == state:
            return []
        self.call = state
        return [Notify("call", state.value)]

    def _open_session(self, role) -> NegotiationSession:
        self.session = NegotiationSession(role=role)
        return self.session

    def _teardown(self) -> List[Any]:
        actions = []
        if self.session is not None:
            actions.append(Teardown(self.session))
            self.session = None
        return actions + self._set_call(CallState.IDLE)

    # ---------------------------------------------------------- relay link
    def _link_opening(self, event):
        return self._set_link(LinkState.CONNECTING)

    def _link_opened(self, event):
        return self._set_link(LinkState.CONNECTED)

    def _link_lost(self, event):
        actions = self._set_link(LinkState.DISCONNECTED)
        if self.session is not None:
            logger.warning("Signaling link lost during a call; tearing the session down")
        return actions + self._teardown()

    # ---------------------------------------------------------- local intent
    def _call_requested(self, event):
        if self.link != LinkState.CONNECTED:
            logger.warning("Call requested while the signaling link is %s", self.link.value)
            return [Notify("error", "Not connected to the signaling relay.")]
        if self.session is not None:
            logger.warning("Call requested while a %s session is active", self.session.role)
            return [Notify("error", "A call is already in progress.")]
        session = self._open_session(CALLER)
        return self._set_call(CallState.CALLING) + [PrepareOffer(session)]

    def _hang_up(self, event):
        if self.session is None and self.call == CallState.IDLE:
            return []
        return self._teardown()

    # ---------------------------------------------------------- inbound signals
    def _signal(self, event):
        message = event.message
        if message.kind == signaling.OFFER:
            return self._offer(message.payload)
        if message.kind == signaling.ANSWER:
            return self._answer(message.payload)
        return self._candidate(message.payload)

    def _offer(self, description):
        if self.session is not None:
            logger.warning("Existing %s session; ignoring offer", self.session.role)
            return []
        session = self._open_session(CALLEE)
        return self._set_call(CallState.CALLING) + [PrepareAnswer(session, description)]

    def _answer(self, description):
        session = self.session
        if session is None or session.role != CALLER:
            logger.warning("Ignoring answer with no outgoing call")
            return []
        if session.remote_description_set:
            logger.warning("Ignoring duplicate answer")
            return []
        return [ApplyRemoteDescription(session, description)]

    def _candidate(self, candidate):
        session = self.session
        if session is None:
            logger.debug("Discarding candidate; no session to attach it to")
            return []
        if not session.remote_description_set:
            session.pending_candidates.append(candidate)
            return []
        return [ApplyCandidate(session, candidate)]

    # ---------------------------------------------------------- executor feedback
    def _local_description(self, event):
        if not self._is_current(event.session):
            return []
        if event.message.kind == signaling.OFFER:
            status = "Offer sent – waiting for answer…"
        else:
            status = "Answer sent – awaiting media…"
        return [SendSignal(event.message), Notify("status", status)]

    def _remote_applied(self, event):
        session = event.session
        if not self._is_current(session):
            return []
        session.remote_description_set = True
        pending, session.pending_candidates = session.pending_candidates, []
        return [ApplyCandidate(session, c) for c in pending]

    def _media_denied(self, event):
        if not self._is_current(event.session):
            return []
        logger.warning("Microphone unavailable: %s", event.error)
        return self._teardown() + [Notify("error", f"Could not access the microphone: {event.error}")]

    def _negotiation_failed(self, event):
        if not self._is_current(event.session):
            return []
        logger.error("Negotiation step %s failed: %s", event.step, event.error)
        return [Notify("error", f"Negotiation step '{event.step}' failed: {event.error}")]

    def _remote_track(self, event):
        if not self._is_current(event.session):
            return []
        actions = []
        if event.track is not None:
            actions.append(AttachRemoteAudio(event.session, event.track))
        if self.call == CallState.CALLING:
            actions += self._set_call(CallState.IN_CALL)
        return actions

    def _peer_failed(self, event):
        if not self._is_current(event.session):
            return []
        logger.warning("Peer connection failed; ending call")
        return self._teardown() + [Notify("error", "The peer connection failed.")]

    def _channel_state(self, event):
        if not self._is_current(event.session):
            return []
        return [Notify("status", f"Data channel {event.state}")]

    def _chat_received(self, event):
        return [RecordChat(event.text, REMOTE)]

