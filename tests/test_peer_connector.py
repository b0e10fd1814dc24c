"""Tests for the negotiation controller against fake aiortc objects."""

import asyncio
import json

import pytest

from localcom import signaling
from localcom.errors import CallInProgressError, ChannelNotAvailableError, LinkUnavailableError
from localcom.message_cache import LOCAL, REMOTE, ChatRecord, MessageCache
from localcom.negotiation import CALLEE, CALLER, CallState, LinkState
from localcom.peer_connector import PeerConnector
from localcom.relay import SignalingRelay

from fakes import FakeBackend, FakeChannel, FakeLink, FakeTrack, join_relay, settle

OFFER = {"type": "offer", "sdp": "remote-offer"}
ANSWER = {"type": "answer", "sdp": "remote-answer"}


def candidate(n):
    return {"candidate": f"candidate:{n} 1 udp 2122260223 10.0.0.{n} 5000{n} typ host",
            "sdpMid": "0", "sdpMLineIndex": 0}


def frame(message):
    return signaling.encode(message)


class Recorder:
    def __init__(self):
        self.events = []

    def __call__(self, kind, data):
        self.events.append((kind, data))

    def kinds(self, kind):
        return [d for k, d in self.events if k == kind]


async def linked_connector(tmp_path, backend=None, name="peer"):
    notes = Recorder()
    connector = PeerConnector(backend or FakeBackend(),
                              MessageCache(str(tmp_path / f"{name}.json")), notify=notes)
    await connector.start()
    link = FakeLink()
    connector.attach_link(link)
    await connector.drain()
    return connector, link, notes


def test_call_through_relay_reaches_in_call(tmp_path) -> None:
    async def scenario():
        relay = SignalingRelay()
        backend_a, backend_b = FakeBackend(), FakeBackend()
        a = PeerConnector(backend_a, MessageCache(str(tmp_path / "a.json")))
        b = PeerConnector(backend_b, MessageCache(str(tmp_path / "b.json")))
        await a.start()
        await b.start()
        end_a = join_relay(relay, a)
        end_b = join_relay(relay, b)
        await settle(a, b)

        a.start_call()
        await settle(a, b)
        states = (a.call_state, b.call_state, b.session.role)

        pc_a, pc_b = backend_a.peers[0], backend_b.peers[0]
        pc_a.emit("track", FakeTrack("audio"))
        pc_b.emit("track", FakeTrack("audio"))
        await settle(a, b)
        return a, b, end_a, end_b, pc_a, pc_b, backend_a, states

    a, b, end_a, end_b, pc_a, pc_b, backend_a, states = asyncio.run(scenario())

    assert states == (CallState.CALLING, CallState.CALLING, CALLEE)
    assert [list(json.loads(f)) for f in end_b.received] == [["offer"]]
    assert [list(json.loads(f)) for f in end_a.received] == [["answer"]]
    assert pc_b.remoteDescription.type == "offer"
    assert pc_a.remoteDescription.type == "answer"
    assert pc_a.channels[0].label == "chat"
    assert pc_a.tracks == backend_a.audio[0].tracks
    assert a.call_state == b.call_state == CallState.IN_CALL
    assert a.session.remote_sink is not None


def test_chat_is_delivered_and_cached_on_both_sides(tmp_path) -> None:
    async def scenario():
        relay = SignalingRelay()
        backend_a, backend_b = FakeBackend(), FakeBackend()
        a = PeerConnector(backend_a, MessageCache(str(tmp_path / "a.json")))
        b = PeerConnector(backend_b, MessageCache(str(tmp_path / "b.json")))
        await a.start()
        await b.start()
        join_relay(relay, a)
        join_relay(relay, b)
        a.start_call()
        await settle(a, b)

        channel_a = backend_a.peers[0].channels[0]
        channel_b = FakeChannel("chat", readyState="open")
        backend_b.peers[0].emit("datachannel", channel_b)
        channel_a.peer, channel_b.peer = channel_b, channel_a
        channel_a.readyState = "open"
        channel_a.emit("open")
        await settle(a, b)

        sent = a.send_chat("hello")
        await settle(a, b)
        await a.close()
        await b.close()
        return sent, channel_a

    sent, channel_a = asyncio.run(scenario())

    assert channel_a.sent == ["hello"]
    assert sent.sender == LOCAL
    [received] = MessageCache(str(tmp_path / "b.json")).read_all()
    assert (received.text, received.sender) == ("hello", REMOTE)
    assert MessageCache(str(tmp_path / "a.json")).read_all() == [sent]


def test_history_is_hydrated_once_at_start(tmp_path) -> None:
    cache = MessageCache(str(tmp_path / "history.json"))
    old = ChatRecord.create("earlier", REMOTE)
    cache.append(old)

    async def scenario():
        notes = Recorder()
        connector = PeerConnector(FakeBackend(), cache, notify=notes)
        await connector.start()
        await connector.start()
        return connector, notes

    connector, notes = asyncio.run(scenario())

    assert connector.history == [old]
    assert notes.kinds("history") == [[old.model_dump()]]


def test_start_call_refused_without_link(tmp_path) -> None:
    async def scenario():
        connector = PeerConnector(FakeBackend(), MessageCache(str(tmp_path / "m.json")))
        await connector.start()
        with pytest.raises(LinkUnavailableError):
            connector.start_call()

    asyncio.run(scenario())


def test_relay_connect_timeout_is_reported(tmp_path, monkeypatch) -> None:
    def timed_out(url):
        raise asyncio.TimeoutError()

    monkeypatch.setattr("localcom.peer_connector.connect", timed_out)

    async def scenario():
        notes = Recorder()
        connector = PeerConnector(FakeBackend(), MessageCache(str(tmp_path / "m.json")),
                                  notify=notes)
        await connector.start()
        await connector.run("ws://127.0.0.1:9/api/ws")
        await connector.drain()
        return connector, notes

    connector, notes = asyncio.run(scenario())

    assert connector.link_state == LinkState.DISCONNECTED
    assert notes.kinds("link") == ["connecting", "disconnected"]
    assert len(notes.kinds("error")) == 1


def test_start_call_refused_while_in_call(tmp_path) -> None:
    async def scenario():
        connector, link, _ = await linked_connector(tmp_path)
        connector.start_call()
        await connector.drain()
        with pytest.raises(CallInProgressError):
            connector.start_call()
        return connector, link

    connector, link = asyncio.run(scenario())

    assert connector.session.role == CALLER
    assert [list(json.loads(f)) for f in link.sent] == [["offer"]]


def test_send_chat_requires_open_channel(tmp_path) -> None:
    async def scenario():
        connector, _, _ = await linked_connector(tmp_path)
        with pytest.raises(ChannelNotAvailableError):
            connector.send_chat("no call yet")
        connector.start_call()
        await connector.drain()
        with pytest.raises(ChannelNotAvailableError):
            connector.send_chat("still connecting")
        return connector

    connector = asyncio.run(scenario())

    assert connector.history == []
    assert connector.send_chat("") is None


def test_second_offer_is_ignored(tmp_path) -> None:
    async def scenario():
        backend = FakeBackend()
        connector, link, _ = await linked_connector(tmp_path, backend)
        connector.feed(frame(signaling.offer(OFFER)))
        connector.feed(frame(signaling.offer({"type": "offer", "sdp": "another"})))
        await connector.drain()
        return connector, link, backend

    connector, link, backend = asyncio.run(scenario())

    assert len(backend.peers) == 1
    assert backend.peers[0].remoteDescription.sdp == "remote-offer"
    assert [list(json.loads(f)) for f in link.sent] == [["answer"]]
    assert connector.call_state == CallState.CALLING


def test_candidates_before_and_after_answer_are_applied(tmp_path) -> None:
    async def scenario():
        backend = FakeBackend()
        connector, _, _ = await linked_connector(tmp_path, backend)
        connector.feed(frame(signaling.candidate(candidate(0))))   # no session yet
        connector.start_call()
        await connector.drain()
        connector.feed(frame(signaling.candidate(candidate(1))))
        await connector.drain()
        connector.feed(frame(signaling.answer(ANSWER)))
        connector.feed(frame(signaling.candidate(candidate(2))))
        await connector.drain()
        connector.feed(frame(signaling.candidate(candidate(3))))
        await connector.drain()
        return backend.peers[0]

    pc = asyncio.run(scenario())

    assert pc.candidates == [candidate(1), candidate(2), candidate(3)]


def test_callee_buffers_candidates_racing_the_offer(tmp_path) -> None:
    async def scenario():
        backend = FakeBackend()
        connector, _, _ = await linked_connector(tmp_path, backend)
        connector.feed(frame(signaling.offer(OFFER)))
        connector.feed(frame(signaling.candidate(candidate(1))))
        await connector.drain()
        return backend.peers[0]

    pc = asyncio.run(scenario())

    assert pc.candidates == [candidate(1)]


def test_microphone_denied_on_caller_reverts_to_idle(tmp_path) -> None:
    async def scenario():
        backend = FakeBackend(deny_media=True)
        connector, link, notes = await linked_connector(tmp_path, backend)
        connector.start_call()
        await connector.drain()
        return connector, link, notes, backend

    connector, link, notes, backend = asyncio.run(scenario())

    assert connector.call_state == CallState.IDLE
    assert connector.session is None
    assert backend.peers == []
    assert link.sent == []
    assert any("microphone" in e for e in notes.kinds("error"))
    assert notes.kinds("call") == ["calling", "idle"]


def test_microphone_denied_on_callee_sends_nothing(tmp_path) -> None:
    async def scenario():
        connector, link, _ = await linked_connector(tmp_path, FakeBackend(deny_media=True))
        connector.feed(frame(signaling.offer(OFFER)))
        await connector.drain()
        return connector, link

    connector, link = asyncio.run(scenario())

    assert connector.call_state == CallState.IDLE
    assert link.sent == []


def test_rejected_offer_is_reported_but_session_kept(tmp_path) -> None:
    async def scenario():
        connector, link, notes = await linked_connector(tmp_path, FakeBackend(fail_remote=True))
        connector.feed(frame(signaling.offer(OFFER)))
        await connector.drain()
        return connector, link, notes

    connector, link, notes = asyncio.run(scenario())

    assert connector.call_state == CallState.CALLING
    assert connector.session is not None
    assert link.sent == []
    assert any("apply-offer" in e for e in notes.kinds("error"))


def test_failed_candidate_does_not_end_call(tmp_path) -> None:
    async def scenario():
        connector, _, notes = await linked_connector(tmp_path, FakeBackend(fail_candidate=True))
        connector.feed(frame(signaling.offer(OFFER)))
        connector.feed(frame(signaling.candidate(candidate(1))))
        await connector.drain()
        return connector, notes

    connector, notes = asyncio.run(scenario())

    assert connector.call_state == CallState.CALLING
    assert any("add-candidate" in e for e in notes.kinds("error"))


def test_hang_up_releases_everything_and_is_idempotent(tmp_path) -> None:
    async def scenario():
        backend = FakeBackend()
        connector, _, notes = await linked_connector(tmp_path, backend)
        connector.start_call()
        await connector.drain()
        backend.peers[0].emit("track", FakeTrack("audio"))
        await connector.drain()
        connector.hang_up()
        await connector.drain()
        connector.hang_up()
        await connector.drain()
        return connector, backend, notes

    connector, backend, notes = asyncio.run(scenario())

    assert connector.call_state == CallState.IDLE
    assert connector.session is None
    assert backend.peers[0].closed
    assert backend.audio[0].stopped
    assert backend.sinks[0].stopped
    assert notes.kinds("call") == ["calling", "in-call", "idle"]


def test_hang_up_releases_media_when_sink_fails_to_stop(tmp_path) -> None:
    async def scenario():
        backend = FakeBackend(fail_sink_stop=True)
        connector, _, notes = await linked_connector(tmp_path, backend)
        connector.start_call()
        await connector.drain()
        backend.peers[0].emit("track", FakeTrack("audio"))
        await connector.drain()
        connector.hang_up()
        await connector.drain()
        return connector, backend, notes

    connector, backend, notes = asyncio.run(scenario())

    assert connector.call_state == CallState.IDLE
    assert backend.audio[0].stopped
    assert backend.peers[0].closed
    assert notes.kinds("call") == ["calling", "in-call", "idle"]
    assert "Call ended" in notes.kinds("status")


def test_link_loss_tears_down_call(tmp_path) -> None:
    async def scenario():
        backend = FakeBackend()
        connector, _, _ = await linked_connector(tmp_path, backend)
        connector.feed(frame(signaling.offer(OFFER)))
        await connector.drain()
        connector.detach_link()
        await connector.drain()
        return connector, backend

    connector, backend = asyncio.run(scenario())

    assert connector.link_state == LinkState.DISCONNECTED
    assert connector.call_state == CallState.IDLE
    assert backend.peers[0].closed
    assert backend.audio[0].stopped


def test_failed_peer_connection_ends_call(tmp_path) -> None:
    async def scenario():
        backend = FakeBackend()
        connector, _, _ = await linked_connector(tmp_path, backend)
        connector.start_call()
        await connector.drain()
        pc = backend.peers[0]
        pc.connectionState = "failed"
        pc.emit("connectionstatechange")
        await connector.drain()
        return connector, pc

    connector, pc = asyncio.run(scenario())

    assert connector.call_state == CallState.IDLE
    assert pc.closed


def test_malformed_frames_are_ignored(tmp_path) -> None:
    async def scenario():
        connector, link, _ = await linked_connector(tmp_path)
        connector.feed("not json")
        connector.feed('{"type": "ready"}')
        await connector.drain()
        return connector, link

    connector, link = asyncio.run(scenario())

    assert connector.session is None
    assert link.sent == []


def test_status_reports_channel_state(tmp_path) -> None:
    async def scenario():
        connector, _, _ = await linked_connector(tmp_path)
        before = connector.status()
        connector.start_call()
        await connector.drain()
        return before, connector.status()

    before, during = asyncio.run(scenario())

    assert before == {"link": "connected", "call": "idle", "channel": None}
    assert during == {"link": "connected", "call": "calling", "channel": "connecting"}
