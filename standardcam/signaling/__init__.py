"""
Signaling module for StandardCam.
Handles room membership and relaying of handshake messages.
"""

from .registry import RoomRegistry
from .relay import SignalingRelay
from .client import SignalingClient
from .messages import MessageKind, SignalingMessage, decode_description, decode_candidate

__all__ = [
    'RoomRegistry',
    'SignalingRelay',
    'SignalingClient',
    'MessageKind',
    'SignalingMessage',
    'decode_description',
    'decode_candidate',
]
