"""
Capability bridge: the boundary to acquisition and rendering components.

Camera capture, point-cloud construction and rendering live outside this
package. They plug in by subclassing `CapabilityBridge`; every hook has a
no-op default.
"""
from typing import Any, List

import numpy as np
from aiortc import MediaStreamTrack


class CapabilityBridge:
    """Hooks the session layer calls into the local application."""

    def media_tracks(self) -> List[MediaStreamTrack]:
        """Local audio/video tracks to attach to every peer connection."""
        return []

    def on_point_batch(self, member_id: str, positions: np.ndarray, colors: np.ndarray) -> None:
        pass

    def on_view_mode_change(self, member_id: str, mode: str) -> None:
        pass

    def on_remote_track(self, member_id: str, track: Any) -> None:
        pass

    def on_status(self, member_id: str, state: str) -> None:
        """Connection-status indicator: negotiating, connected, failed or closed."""
        pass
