"""
LocalCom: two-peer audio and chat over aiortc, set up through a WebSocket
signaling relay.
"""

__version__ = "0.1.0"
