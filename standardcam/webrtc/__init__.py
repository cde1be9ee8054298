"""
WebRTC module for StandardCam.
Peer transports, point-cloud channel, per-peer sessions and their manager.
"""

from .transport import PeerTransport, AiortcPeerTransport
from .pointcloud import (
    PointBatch,
    PointCloudChannel,
    ViewMode,
    ControlType,
    encode_batch,
    encode_json_batch,
    decode_batch,
)
from .session import PeerSession, SessionRole, SessionState, SessionEvent
from .manager import SessionManager

__all__ = [
    'PeerTransport',
    'AiortcPeerTransport',
    'PointBatch',
    'PointCloudChannel',
    'ViewMode',
    'ControlType',
    'encode_batch',
    'encode_json_batch',
    'decode_batch',
    'PeerSession',
    'SessionRole',
    'SessionState',
    'SessionEvent',
    'SessionManager',
]
