"""
Signaling envelope exchanged through the relay.

Every frame carries exactly one of three keys::

    {"offer": {"type": "offer", "sdp": "..."}}
    {"answer": {"type": "answer", "sdp": "..."}}
    {"candidate": {"candidate": "candidate:...", "sdpMid": "0", "sdpMLineIndex": 0}}

The relay never looks inside these; only the peer connectors do.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, ValidationError, model_validator

from .errors import SignalingFormatError

OFFER = "offer"
ANSWER = "answer"
CANDIDATE = "candidate"
KINDS = (OFFER, ANSWER, CANDIDATE)


class SessionDescription(BaseModel):
    """SDP offer or answer"""

    model_config = ConfigDict(extra="allow")

    type: Literal["offer", "answer"]
    sdp: str


class IceCandidate(BaseModel):
    """Trickled ICE candidate; an empty string marks end-of-candidates"""

    model_config = ConfigDict(extra="allow")

    candidate: str
    sdpMid: Optional[str] = None
    sdpMLineIndex: Optional[int] = None


class Envelope(BaseModel):
    """One relay frame. Keys other than the three kinds are ignored."""

    model_config = ConfigDict(extra="ignore")

    offer: Optional[SessionDescription] = None
    answer: Optional[SessionDescription] = None
    candidate: Optional[IceCandidate] = None

    @model_validator(mode="after")
    def _exactly_one_kind(self):
        present = [k for k in KINDS if getattr(self, k) is not None]
        if not present:
            raise ValueError("no offer, answer or candidate in frame")
        if len(present) > 1:
            raise ValueError(f"ambiguous frame with keys {present}")
        return self

    @property
    def kind(self) -> str:
        return next(k for k in KINDS if getattr(self, k) is not None)


@dataclass(frozen=True)
class SignalingMessage:
    kind: str
    payload: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {self.kind: self.payload}


def offer(description: Dict[str, Any]) -> SignalingMessage:
    return SignalingMessage(OFFER, description)


def answer(description: Dict[str, Any]) -> SignalingMessage:
    return SignalingMessage(ANSWER, description)


def candidate(ice_candidate: Dict[str, Any]) -> SignalingMessage:
    return SignalingMessage(CANDIDATE, ice_candidate)


def encode(message: SignalingMessage) -> str:
    return json.dumps(message.to_dict(), separators=(",", ":"))


def decode(raw: Union[str, bytes]) -> SignalingMessage:
    """
    Parse and validate one relay frame.

    Raises SignalingFormatError when the frame is not JSON, is not an object,
    does not hold exactly one known key, or its payload does not have the
    description/candidate shape.
    """
    try:
        envelope = Envelope.model_validate_json(raw)
    except ValidationError as e:
        raise SignalingFormatError(f"invalid signaling frame: {e}") from e
    kind = envelope.kind
    return SignalingMessage(kind, getattr(envelope, kind).model_dump(exclude_unset=True))
