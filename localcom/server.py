import argparse
import asyncio
import logging

from . import config
from .relay import SignalingRelay

logger = logging.getLogger(__name__)


async def run_relay(host, port, path, queue_size, send_timeout):
    relay = SignalingRelay(path=path, queue_size=queue_size, send_timeout=send_timeout)
    async with relay.serve(host, port):
        logger.info("Signalling relay listening on ws://%s:%d%s", host, port, path)
        await asyncio.Future()        # run forever


def main(argv=None):
    parser = argparse.ArgumentParser(description="LocalCom signaling relay")
    parser.add_argument("--host", default=config.RELAY_HOST, help="Bind host")
    parser.add_argument("--port", type=int, default=config.RELAY_PORT, help="Bind port")
    parser.add_argument("--path", default=config.RELAY_PATH, help="Only path accepted for upgrades")
    parser.add_argument("--queue-size", type=int, default=config.QUEUE_SIZE,
                        help="Frames buffered per client before new ones are dropped")
    parser.add_argument("--send-timeout", type=float, default=config.SEND_TIMEOUT,
                        help="Seconds a client may take to accept a frame before it is closed")
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args(argv)

    config.configure_logging(args.log_level)
    try:
        asyncio.run(run_relay(args.host, args.port, args.path, args.queue_size, args.send_timeout))
    except KeyboardInterrupt:
        logger.info("Relay stopped")


if __name__ == "__main__":
    main()
