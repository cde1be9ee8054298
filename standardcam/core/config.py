"""
Configuration management for StandardCam.
"""
import os
from dataclasses import dataclass, field
from typing import List, Optional

from aiortc import RTCConfiguration, RTCIceServer


DEFAULT_STUN_URL = "stun:stun.l.google.com:19302"


@dataclass
class RelayConfig:
    """Signaling relay server settings."""

    host: str = "0.0.0.0"
    port: int = 3001
    socketio_path: str = "socket.io"
    cors_origins: str = "*"
    log_level: str = "INFO"
    log_file: Optional[str] = "standardcam_relay.log"

    def __post_init__(self):
        """Initialize configuration from environment variables."""
        self.host = os.environ.get('STANDARDCAM_HOST', self.host)
        self.port = int(os.environ.get('STANDARDCAM_PORT', self.port))
        self.cors_origins = os.environ.get('STANDARDCAM_CORS_ORIGINS', self.cors_origins)
        self.log_level = os.environ.get('STANDARDCAM_LOG_LEVEL', self.log_level)

    def __str__(self) -> str:
        return f"RelayConfig(host={self.host}, port={self.port}, path={self.socketio_path})"


@dataclass
class SessionConfig:
    """Participant-side session and point-cloud transport settings."""

    server_url: str = "http://localhost:3001"
    socketio_path: str = "socket.io"

    # ICE servers
    stun_url: str = DEFAULT_STUN_URL
    turn_address: Optional[str] = None
    turn_username: str = "user"
    turn_password: str = "password"

    # Point-cloud transport
    data_channel_label: str = "pointcloud"
    send_interval: float = 0.5
    buffer_ceiling: int = 5_000_000
    downsample_stride: int = 10
    binary_point_cloud: bool = True
    point_cloud_mode: bool = False

    rtc_config: Optional[RTCConfiguration] = field(default=None, repr=False)

    def __post_init__(self):
        """Initialize configuration from environment variables."""
        self.server_url = os.environ.get('STANDARDCAM_SERVER_URL', self.server_url)
        self.stun_url = os.environ.get('STUN_URL', self.stun_url)
        self.turn_address = os.environ.get('TURN_ADDRESS', self.turn_address)
        self.turn_username = os.environ.get('TURN_USERNAME', self.turn_username)
        self.turn_password = os.environ.get('TURN_PASSWORD', self.turn_password)
        self.downsample_stride = int(os.environ.get('STANDARDCAM_STRIDE', self.downsample_stride))

        if self.send_interval <= 0:
            raise ValueError(f"send_interval must be positive, got {self.send_interval}")
        if self.downsample_stride < 1:
            raise ValueError(f"downsample_stride must be >= 1, got {self.downsample_stride}")

        self._build_rtc_config()

    def _build_rtc_config(self):
        """Build WebRTC configuration from the configured ICE servers."""
        ice_servers: List[RTCIceServer] = []
        if self.stun_url:
            ice_servers.append(RTCIceServer(urls=self.stun_url))

        if self.turn_address:
            ice_servers.append(
                RTCIceServer(
                    urls=f"turn:{self.turn_address}",
                    username=self.turn_username,
                    credential=self.turn_password
                )
            )

        self.rtc_config = RTCConfiguration(iceServers=ice_servers)

    def __str__(self) -> str:
        return (f"SessionConfig(server_url={self.server_url}, interval={self.send_interval}, "
                f"ceiling={self.buffer_ceiling}, stride={self.downsample_stride})")
