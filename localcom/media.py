"""
aiortc-backed media and negotiation primitives used by the peer connector.

The connector only talks to this class and to aiortc-shaped peer connection /
data channel objects (`on(...)` handlers, `createOffer`, `readyState`, ...), so
a fake with the same surface can stand in for it.
"""

import logging
import platform

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.contrib.media import MediaBlackhole, MediaPlayer, MediaRecorder
from aiortc.sdp import candidate_from_sdp

from . import config
from .errors import MediaAccessError

logger = logging.getLogger(__name__)


def default_audio_input():
    """Platform microphone as (device, format) for MediaPlayer."""
    system = platform.system()
    if system == "Darwin":
        return ":0", "avfoundation"
    if system == "Windows":
        return "audio=Microphone", "dshow"
    return "default", "pulse"


class LocalAudio:
    """Microphone capture handle; stopping it releases the device."""

    def __init__(self, player):
        self.player = player
        self.tracks = [player.audio]

    def stop(self):
        for track in self.tracks:
            track.stop()
        self.tracks = []


class AiortcBackend:
    def __init__(self, stun_urls=None, audio_device=config.AUDIO_DEVICE,
                 audio_format=config.AUDIO_FORMAT, remote_audio_path=config.REMOTE_AUDIO_PATH):
        self.stun_urls = config.STUN_URLS if stun_urls is None else stun_urls
        if audio_device is None:
            audio_device, default_format = default_audio_input()
            audio_format = audio_format or default_format
        self.audio_device = audio_device
        self.audio_format = audio_format
        self.remote_audio_path = remote_audio_path

    async def acquire_local_audio(self):
        try:
            player = MediaPlayer(self.audio_device, format=self.audio_format)
        except Exception as e:
            raise MediaAccessError(f"cannot open {self.audio_device!r} ({self.audio_format}): {e}") from e
        if player.audio is None:
            raise MediaAccessError(f"{self.audio_device!r} has no audio stream")
        logger.info("Microphone %s opened", self.audio_device)
        return LocalAudio(player)

    def create_peer_connection(self):
        ice = [RTCIceServer(url) for url in self.stun_urls]
        return RTCPeerConnection(RTCConfiguration(iceServers=ice))

    def parse_description(self, data):
        return RTCSessionDescription(sdp=data["sdp"], type=data["type"])

    def describe(self, description):
        return {"sdp": description.sdp, "type": description.type}

    def parse_candidate(self, data):
        """Browser-style candidate dict to RTCIceCandidate; None for end-of-candidates."""
        line = data.get("candidate") or ""
        if not line:
            return None
        if line.startswith("candidate:"):
            line = line[len("candidate:"):]
        candidate = candidate_from_sdp(line)
        candidate.sdpMid = data.get("sdpMid")
        candidate.sdpMLineIndex = data.get("sdpMLineIndex")
        return candidate

    async def attach_remote_audio(self, track):
        if self.remote_audio_path:
            sink = MediaRecorder(self.remote_audio_path)
        else:
            sink = MediaBlackhole()
        sink.addTrack(track)
        await sink.start()
        return sink
