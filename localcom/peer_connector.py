# peer_connector.py
# --------------------------------------------------------------------
# Negotiation controller: relay link, call state machine, aiortc peer
# connection and chat history for one peer.
# --------------------------------------------------------------------

import asyncio
import contextlib
import logging

from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from . import config, signaling
from .errors import (CallInProgressError, ChannelNotAvailableError, LinkUnavailableError,
                     MediaAccessError, SignalingFormatError)
from .message_cache import LOCAL, ChatRecord
from .negotiation import (ApplyCandidate, ApplyRemoteDescription, AttachRemoteAudio,
                          CallRequested, CallState, CallStateMachine, ChannelStateChanged,
                          ChatReceived, HangUpRequested, LinkLost, LinkOpened, LinkOpening,
                          LinkState, LocalDescriptionReady, MediaDenied, NegotiationFailed,
                          Notify, PeerFailed, PrepareAnswer, PrepareOffer, RecordChat,
                          RemoteDescriptionApplied, RemoteTrack, SendSignal, SignalReceived,
                          Teardown)

logger = logging.getLogger(__name__)


class PeerConnector:
    """
    Drives one peer's side of a call.

    Every input (user intent, relay frames, aiortc callbacks) becomes an event
    on a single queue. One pump task feeds each event to the CallStateMachine
    and awaits the resulting actions in order, so at most one negotiation
    sequence runs at a time.

    Args:
        backend: media/negotiation primitives, normally `AiortcBackend`.
        cache: a `MessageCache` holding chat history.
        notify: callable `(kind, data)` receiving link/call/chat/status/error updates.
    """

    def __init__(self, backend, cache, notify=None):
        self.backend = backend
        self.cache = cache
        self.notify = notify
        self.machine = CallStateMachine()
        self.history = []
        self.link = None
        self._events = asyncio.Queue()
        self._pump_task = None
        self._executors = {
            PrepareOffer: self._prepare_offer,
            PrepareAnswer: self._prepare_answer,
            ApplyRemoteDescription: self._apply_remote_description,
            ApplyCandidate: self._apply_candidate,
            AttachRemoteAudio: self._attach_remote_audio,
            SendSignal: self._send_signal,
            Teardown: self._teardown,
            Notify: self._notify,
            RecordChat: self._record_chat,
        }

    # ------------------------------------------------------------ state
    @property
    def link_state(self):
        return self.machine.link

    @property
    def call_state(self):
        return self.machine.call

    @property
    def session(self):
        return self.machine.session

    def status(self):
        session = self.machine.session
        channel = session.channel if session else None
        return {
            "link": self.machine.link.value,
            "call": self.machine.call.value,
            "channel": channel.readyState if channel is not None else None,
        }

    # ------------------------------------------------------------ lifecycle
    async def start(self):
        """Hydrate history from the cache and start processing events."""
        if self._pump_task is not None:
            return
        self.history = self.cache.read_all()
        self._emit("history", [r.model_dump() for r in self.history])
        self._pump_task = asyncio.create_task(self._pump())

    async def run(self, url=config.SIGNAL_URL):
        """Hold the relay link open until it drops. No reconnect."""
        self.post(LinkOpening())
        try:
            async with connect(url) as ws:
                self.attach_link(ws)
                async for raw in ws:
                    self.feed(raw)
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            logger.error("Signalling error: %s", e)
            self._emit("error", f"Signalling error: {e}")
        finally:
            self.detach_link()

    def attach_link(self, link):
        self.link = link
        self.post(LinkOpened())

    def detach_link(self):
        self.link = None
        self.post(LinkLost())

    async def drain(self):
        """Wait until every queued event, and everything it triggered, has been handled."""
        await self._events.join()

    async def close(self):
        self.hang_up()
        if self.link is not None:
            await self.link.close()
        await self.drain()
        if self._pump_task is not None:
            self._pump_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._pump_task
            self._pump_task = None

    # ------------------------------------------------------------ user intent
    def start_call(self):
        if self.machine.link != LinkState.CONNECTED:
            raise LinkUnavailableError("Not connected to the signaling relay.")
        if self.machine.session is not None or self.machine.call != CallState.IDLE:
            raise CallInProgressError("A call is already in progress.")
        self.post(CallRequested())

    def hang_up(self):
        self.post(HangUpRequested())

    def send_chat(self, text):
        if not text:
            return None
        session = self.machine.session
        channel = session.channel if session is not None else None
        if channel is None or channel.readyState != "open":
            raise ChannelNotAvailableError("The chat channel is not open. Start a call first.")
        record = ChatRecord.create(text, LOCAL)
        self._store(record)
        channel.send(text)
        return record

    # ------------------------------------------------------------ inbound
    def feed(self, raw):
        try:
            message = signaling.decode(raw)
        except SignalingFormatError as e:
            logger.warning("Ignoring signaling frame: %s", e)
            return
        logger.debug("Received signaling message: %s", message.kind)
        self.post(SignalReceived(message))

    def post(self, event):
        self._events.put_nowait(event)

    async def _pump(self):
        while True:
            event = await self._events.get()
            try:
                actions = self.machine.handle(event)
            except Exception:
                logger.exception("Error while handling %s", type(event).__name__)
                actions = []
            for action in actions:
                try:
                    await self._executors[type(action)](action)
                except Exception:
                    logger.exception("Error while running %s", type(action).__name__)
            self._events.task_done()

    # ------------------------------------------------------------ actions
    async def _prepare_offer(self, action):
        session = action.session
        if not await self._acquire_audio(session):
            return
        pc = self._open_peer(session)
        for track in session.audio.tracks:
            pc.addTrack(track)
        self._wire_channel(session, pc.createDataChannel(config.CHAT_CHANNEL))
        try:
            await pc.setLocalDescription(await pc.createOffer())
        except Exception as e:
            self.post(NegotiationFailed(session, "create-offer", e))
            return
        description = self.backend.describe(pc.localDescription)
        self.post(LocalDescriptionReady(session, signaling.offer(description)))

    async def _prepare_answer(self, action):
        session = action.session
        if not await self._acquire_audio(session):
            return
        pc = self._open_peer(session)
        try:
            await pc.setRemoteDescription(self.backend.parse_description(action.description))
        except Exception as e:
            self.post(NegotiationFailed(session, "apply-offer", e))
            return
        self.post(RemoteDescriptionApplied(session))
        for track in session.audio.tracks:
            pc.addTrack(track)
        try:
            await pc.setLocalDescription(await pc.createAnswer())
        except Exception as e:
            self.post(NegotiationFailed(session, "create-answer", e))
            return
        description = self.backend.describe(pc.localDescription)
        self.post(LocalDescriptionReady(session, signaling.answer(description)))

    async def _apply_remote_description(self, action):
        session = action.session
        try:
            await session.peer.setRemoteDescription(self.backend.parse_description(action.description))
        except Exception as e:
            self.post(NegotiationFailed(session, "apply-answer", e))
            return
        self.post(RemoteDescriptionApplied(session))

    async def _apply_candidate(self, action):
        session = action.session
        try:
            candidate = self.backend.parse_candidate(action.candidate)
            if candidate is None:
                return
            await session.peer.addIceCandidate(candidate)
        except Exception as e:
            self.post(NegotiationFailed(session, "add-candidate", e))

    async def _attach_remote_audio(self, action):
        session = action.session
        if session.remote_sink is not None:
            return
        session.remote_sink = await self.backend.attach_remote_audio(action.track)

    async def _send_signal(self, action):
        if self.link is None:
            logger.warning("No signaling link; dropped %s", action.message.kind)
            return
        try:
            await self.link.send(signaling.encode(action.message))
        except ConnectionClosed as e:
            logger.warning("Signaling link closed while sending %s: %s", action.message.kind, e)

    async def _teardown(self, action):
        session = action.session
        sink, session.remote_sink = session.remote_sink, None
        audio, session.audio = session.audio, None
        peer, session.peer = session.peer, None
        session.channel = None
        try:
            if sink is not None:
                await sink.stop()
        except Exception:
            logger.exception("Failed to stop remote audio sink")
        try:
            if audio is not None:
                audio.stop()
        except Exception:
            logger.exception("Failed to release the microphone")
        try:
            if peer is not None:
                await peer.close()
        except Exception:
            logger.exception("Failed to close peer connection")
        self._emit("status", "Call ended")

    async def _notify(self, action):
        self._emit(action.kind, action.data)

    async def _record_chat(self, action):
        self._store(ChatRecord.create(action.text, action.sender))

    # ------------------------------------------------------------ helpers
    async def _acquire_audio(self, session):
        try:
            session.audio = await self.backend.acquire_local_audio()
        except MediaAccessError as e:
            self.post(MediaDenied(session, e))
            return False
        return True

    def _open_peer(self, session):
        pc = self.backend.create_peer_connection()
        session.peer = pc

        @pc.on("track")
        def _on_track(track):
            if track.kind == "audio":
                self.post(RemoteTrack(session, track))

        @pc.on("datachannel")
        def _on_datachannel(channel):
            self._wire_channel(session, channel)
            self.post(ChannelStateChanged(session, channel.readyState))

        @pc.on("connectionstatechange")
        def _on_state():
            logger.debug("Peer connection state: %s", pc.connectionState)
            if pc.connectionState == "failed":
                self.post(PeerFailed(session))

        return pc

    def _wire_channel(self, session, channel):
        session.channel = channel

        @channel.on("open")
        def _open():
            self.post(ChannelStateChanged(session, "open"))

        @channel.on("close")
        def _close():
            self.post(ChannelStateChanged(session, "closed"))

        @channel.on("message")
        def _msg(payload):
            if isinstance(payload, bytes):
                payload = payload.decode("utf-8", errors="replace")
            self.post(ChatReceived(payload))

    def _store(self, record):
        self.cache.append(record)
        self.history.append(record)
        self._emit("chat", record.model_dump())

    def _emit(self, kind, data):
        if self.notify is None:
            return
        try:
            self.notify(kind, data)
        except Exception:
            logger.exception("Notification handler failed for %s", kind)
