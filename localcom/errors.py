"""Exceptions raised by the relay, the negotiation controller and the UI bridge."""


class LocalComError(Exception):
    """Base class for every refusal or failure this package raises."""


class MediaAccessError(LocalComError):
    """The local microphone could not be opened (denied, missing or busy)."""


class ChannelNotAvailableError(LocalComError):
    """A chat message was sent while the data channel is not open."""


class CallInProgressError(LocalComError):
    """A call was started while a negotiation session already exists."""


class LinkUnavailableError(LocalComError):
    """The signaling link to the relay is not connected."""


class NegotiationError(LocalComError):
    """A description or candidate step was rejected by the peer connection."""


class SignalingFormatError(LocalComError, ValueError):
    """A relay frame is not a well-formed offer/answer/candidate envelope."""
