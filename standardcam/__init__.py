"""
StandardCam: room signaling relay and point-cloud peer transport.
"""

__version__ = "0.1.0"

from .bridge import CapabilityBridge
from .core import RelayConfig, SessionConfig, setup_logging
from .signaling import SignalingRelay, SignalingClient
from .webrtc import PeerSession, SessionManager, PointBatch, ViewMode

__all__ = [
    'CapabilityBridge',
    'RelayConfig',
    'SessionConfig',
    'setup_logging',
    'SignalingRelay',
    'SignalingClient',
    'PeerSession',
    'SessionManager',
    'PointBatch',
    'ViewMode',
]
