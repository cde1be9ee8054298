"""
Core module for StandardCam.
Contains configuration, logging, metrics, and common exceptions.
"""

from .config import RelayConfig, SessionConfig
from .logging import setup_logging, debug_log, LoggerMixin
from .metrics import MetricsSink, InMemoryMetricsSink
from .exceptions import (
    StandardCamError,
    SignalingError,
    HandshakeError,
    InvalidPointBatch,
    TransportOverflow,
    TransportSaturated,
)

__all__ = [
    'RelayConfig',
    'SessionConfig',
    'setup_logging',
    'debug_log',
    'LoggerMixin',
    'MetricsSink',
    'InMemoryMetricsSink',
    'StandardCamError',
    'SignalingError',
    'HandshakeError',
    'InvalidPointBatch',
    'TransportOverflow',
    'TransportSaturated',
]
