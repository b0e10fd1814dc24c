# relay.py
# --------------------------------------------------------------------
# Single-room broadcast relay for signaling traffic. Every frame one
# endpoint sends is forwarded verbatim to every other endpoint.
# --------------------------------------------------------------------

import asyncio
import logging
from http import HTTPStatus
from urllib.parse import urlsplit

from websockets.asyncio.server import serve
from websockets.exceptions import ConnectionClosed

from . import config

logger = logging.getLogger(__name__)

SLOW_PEER_CLOSE_CODE = 1011


class RelayPeer:
    """One registered endpoint: the connection plus its outbound queue and writer task."""

    def __init__(self, connection, queue_size):
        self.connection = connection
        self.queue = asyncio.Queue(maxsize=queue_size)
        self.open = True
        self.writer = None
        self.dropped = 0


class ConnectionRegistry:
    """
    The relay's set of live endpoints.

    All mutation happens on the relay's event loop and none of these methods
    await, so add/remove/snapshot never interleave with each other.
    """

    def __init__(self):
        self._peers = {}

    def add(self, peer):
        self._peers[id(peer.connection)] = peer

    def remove(self, connection):
        return self._peers.pop(id(connection), None)

    def get(self, connection):
        return self._peers.get(id(connection))

    def snapshot(self):
        return list(self._peers.values())

    def __len__(self):
        return len(self._peers)

    def __contains__(self, connection):
        return id(connection) in self._peers


class SignalingRelay:
    def __init__(self, path=config.RELAY_PATH, queue_size=config.QUEUE_SIZE,
                 send_timeout=config.SEND_TIMEOUT):
        self.path = path
        self.queue_size = queue_size
        self.send_timeout = send_timeout
        self.registry = ConnectionRegistry()

    # ---------------------------------------------------------------- routing
    def accept(self, connection):
        peer = RelayPeer(connection, self.queue_size)
        self.registry.add(peer)
        peer.writer = asyncio.create_task(self._write_loop(peer))
        logger.info("Client connected. Total clients: %d", len(self.registry))
        return peer

    def on_message(self, connection, payload):
        """Queue payload for every other open endpoint. Returns how many accepted it."""
        queued = 0
        for peer in self.registry.snapshot():
            if peer.connection is connection or not peer.open:
                continue
            try:
                peer.queue.put_nowait(payload)
                queued += 1
            except asyncio.QueueFull:
                peer.dropped += 1
                logger.warning("Outbound queue full for %s; dropped frame (%d dropped so far)",
                               _describe(peer.connection), peer.dropped)
        return queued

    def on_close(self, connection):
        peer = self.registry.remove(connection)
        if peer is None:
            return
        peer.open = False
        if peer.writer is not None and peer.writer is not asyncio.current_task():
            peer.writer.cancel()
        logger.info("Client disconnected. Total clients: %d", len(self.registry))

    def on_error(self, connection, exc):
        logger.error("WebSocket error from %s: %s", _describe(connection), exc)
        self.on_close(connection)

    async def _write_loop(self, peer):
        while peer.open:
            payload = await peer.queue.get()
            try:
                await asyncio.wait_for(peer.connection.send(payload), self.send_timeout)
            except asyncio.TimeoutError:
                logger.warning("Send to %s timed out after %.1fs; closing",
                               _describe(peer.connection), self.send_timeout)
                self.on_close(peer.connection)
                await peer.connection.close(SLOW_PEER_CLOSE_CODE, "slow consumer")
                return
            except ConnectionClosed:
                # the reader side sees the same close and deregisters
                return
            except Exception:
                logger.exception("Writer for %s failed; closing", _describe(peer.connection))
                self.on_close(peer.connection)
                await peer.connection.close(SLOW_PEER_CLOSE_CODE, "relay write failed")
                return

    # ---------------------------------------------------------- websockets glue
    def process_request(self, connection, request):
        if urlsplit(request.path).path != self.path:
            logger.warning("Rejected upgrade on %s", request.path)
            return connection.respond(HTTPStatus.NOT_FOUND, "Not Found\n")
        return None

    async def handler(self, connection):
        self.accept(connection)
        try:
            async for message in connection:
                self.on_message(connection, message)
        except ConnectionClosed as e:
            self.on_error(connection, e)
        finally:
            self.on_close(connection)

    def serve(self, host=config.RELAY_HOST, port=config.RELAY_PORT, **kwargs):
        """Return the websockets server context manager for this relay."""
        return serve(self.handler, host, port, process_request=self.process_request, **kwargs)


def _describe(connection):
    remote = getattr(connection, "remote_address", None)
    return f"{remote[0]}:{remote[1]}" if remote else repr(connection)
