"""
Flask front door for a local LocalCom peer.

The app hosts one `PeerConnector` on a dedicated asyncio loop thread and
exposes it over HTTP for actions (start call, hang up, send chat) and over a
flask-sock WebSocket (`/ws`) that pushes every connector notification to the
page as `{"kind": ..., "data": ...}`.
"""
import argparse
import asyncio
import json
import logging
import threading

from flask import Flask, jsonify, request
from flask_sock import Sock

from . import __version__, config
from .errors import (CallInProgressError, ChannelNotAvailableError, LinkUnavailableError,
                     LocalComError, MediaAccessError)
from .media import AiortcBackend
from .message_cache import MessageCache
from .peer_connector import PeerConnector

logger = logging.getLogger(__name__)

CALL_TIMEOUT = 5.0

ERROR_STATUS = {
    CallInProgressError: 409,
    LinkUnavailableError: 409,
    ChannelNotAvailableError: 503,
    MediaAccessError: 403,
}


class UiBridge:
    """Forwards connector notifications to the browser's WebSocket, if one is attached."""

    def __init__(self):
        self.sock = None
        self._lock = threading.Lock()

    def set_sock(self, sock):
        with self._lock:
            self.sock = sock

    def post(self, kind, data=""):
        with self._lock:
            sock = self.sock
        if sock is None:
            logger.debug("No UI socket; dropping %s notification", kind)
            return
        try:
            sock.send(json.dumps({"kind": kind, "data": data}))
        except Exception as e:
            logger.warning("Error sending message via WebSocket: %s", e)


class ConnectorHost:
    """
    Runs a PeerConnector on its own event loop in a daemon thread.

    Calls from Flask's request threads go through `call`, which runs the
    function on the loop and re-raises whatever it raised.
    """

    def __init__(self, connector):
        self.connector = connector
        self.loop = asyncio.new_event_loop()
        self.thread = threading.Thread(target=self.loop.run_forever, daemon=True)

    def start(self, signal_url=None):
        self.thread.start()
        self.call(self.connector.start)
        if signal_url:
            asyncio.run_coroutine_threadsafe(self.connector.run(signal_url), self.loop)

    def call(self, fn, *args, timeout=CALL_TIMEOUT):
        async def _invoke():
            result = fn(*args)
            if asyncio.iscoroutine(result):
                result = await result
            return result

        return asyncio.run_coroutine_threadsafe(_invoke(), self.loop).result(timeout)

    def stop(self):
        self.call(self.connector.close)
        self.loop.call_soon_threadsafe(self.loop.stop)
        self.thread.join(timeout=CALL_TIMEOUT)


def create_app(host, bridge):
    app = Flask(__name__)
    sock = Sock(app)

    @app.errorhandler(LocalComError)
    def _refused(e):
        status = ERROR_STATUS.get(type(e), 400)
        return jsonify({"status": "error", "message": str(e)}), status

    @app.route("/")
    def index():
        return jsonify({"status": "healthy", "version": __version__, **host.call(host.connector.status)})

    @app.route("/status")
    def status():
        return jsonify(host.call(host.connector.status))

    @app.route("/messages")
    def messages():
        records = host.call(lambda: [r.model_dump() for r in host.connector.history])
        return jsonify({"messages": records})

    @app.route("/start-call", methods=["POST"])
    def start_call():
        host.call(host.connector.start_call)
        return jsonify({"status": "calling"})

    @app.route("/hang-up", methods=["POST"])
    def hang_up():
        host.call(host.connector.hang_up)
        return jsonify({"status": "idle"})

    @app.route("/send-message", methods=["POST"])
    def send_message():
        data = request.get_json(silent=True) or {}
        message = data.get("message")
        if not isinstance(message, str) or not message.strip():
            return jsonify({"status": "error", "message": "Message not provided"}), 400
        record = host.call(host.connector.send_chat, message)
        return jsonify({"status": "message sent", "record": record.model_dump()})

    @sock.route("/ws")
    def ws_updates(ws):
        logger.info("UI WebSocket connected")
        bridge.set_sock(ws)
        try:
            while True:
                data = ws.receive(timeout=None)
                if data is None:
                    break
                try:
                    client_msg = json.loads(data)
                except json.JSONDecodeError:
                    continue
                if isinstance(client_msg, dict) and client_msg.get("type") == "ping":
                    bridge.post("pong", "PONG from server")
        finally:
            logger.info("UI WebSocket closed")
            bridge.set_sock(None)

    return app


def main(argv=None):
    parser = argparse.ArgumentParser(description="LocalCom peer")
    parser.add_argument("--port", type=int, default=5000, help="Port to run the server on")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--signal-url", default=config.SIGNAL_URL, help="Relay WebSocket URL")
    parser.add_argument("--cache", default=config.CACHE_PATH, help="Chat history file")
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args(argv)

    config.configure_logging(args.log_level)
    bridge = UiBridge()
    connector = PeerConnector(AiortcBackend(), MessageCache(args.cache), notify=bridge.post)
    host = ConnectorHost(connector)
    host.start(args.signal_url)

    app = create_app(host, bridge)
    try:
        app.run(host=args.host, port=args.port, debug=False, use_reloader=False)
    finally:
        host.stop()


if __name__ == "__main__":
    main()
