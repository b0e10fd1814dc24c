# config.py
# --------------------------------------------------------------------
# Defaults for the relay and the peer connector, overridable from the
# environment. Entry points layer argparse flags on top of these.
# --------------------------------------------------------------------

import logging
import os
import sys

SIGNAL_URL = os.environ.get("LOCALCOM_SIGNAL_URL", "ws://localhost:3000/api/ws")

RELAY_PATH = os.environ.get("LOCALCOM_RELAY_PATH", "/api/ws")
RELAY_HOST = os.environ.get("LOCALCOM_RELAY_HOST", "0.0.0.0")
RELAY_PORT = int(os.environ.get("LOCALCOM_RELAY_PORT", "3000"))
SEND_TIMEOUT = float(os.environ.get("LOCALCOM_SEND_TIMEOUT", "5.0"))
QUEUE_SIZE = int(os.environ.get("LOCALCOM_QUEUE_SIZE", "32"))

STUN_URLS = [
    u.strip()
    for u in os.environ.get("LOCALCOM_STUN_URLS", "stun:stun.l.google.com:19302").split(",")
    if u.strip()
]

# MediaPlayer arguments for the microphone, e.g. device="default", format="pulse"
AUDIO_DEVICE = os.environ.get("LOCALCOM_AUDIO_DEVICE") or None
AUDIO_FORMAT = os.environ.get("LOCALCOM_AUDIO_FORMAT") or None
REMOTE_AUDIO_PATH = os.environ.get("LOCALCOM_REMOTE_AUDIO") or None

CACHE_PATH = os.environ.get("LOCALCOM_CACHE_PATH", "localcom_messages.json")

CHAT_CHANNEL = "chat"

DEFAULT_FORMAT = "[%(asctime)s] %(levelname)-8s %(name)s: %(message)s"


def configure_logging(level=logging.INFO, format=None):
    """Configure the root logger once; leave an existing configuration alone."""
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)

    if logging.getLogger().handlers:
        return

    logging.basicConfig(
        level=level,
        format=format or DEFAULT_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
    )
