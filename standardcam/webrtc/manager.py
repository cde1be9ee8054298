"""
Session manager: one PeerSession per counterparty in the joined room.
"""
import datetime
from typing import Any, Callable, Dict, List, Optional, Set

from aiortc.contrib.media import MediaRelay

from standardcam.bridge import CapabilityBridge
from standardcam.core.config import SessionConfig
from standardcam.core.logging import LoggerMixin, debug_log
from standardcam.core.metrics import MetricsSink
from standardcam.signaling.client import SignalingClient
from standardcam.signaling.messages import (
    EVENT_ROOM_JOINED,
    EVENT_USER_CONNECTED,
    EVENT_USER_DISCONNECTED,
    MessageKind,
    SignalingMessage,
)
from standardcam.webrtc.pointcloud import PointBatch, ViewMode
from standardcam.webrtc.session import PeerSession, SessionRole, SessionState, TransportFactory
from standardcam.webrtc.transport import AiortcPeerTransport, PeerTransport


class SessionManager(LoggerMixin):
    """Turns relay events into peer sessions and fans point batches out to them."""

    def __init__(self, member_id: str, config: Optional[SessionConfig] = None,
                 bridge: Optional[CapabilityBridge] = None, metrics: Optional[MetricsSink] = None,
                 signaling: Optional[SignalingClient] = None,
                 transport_factory: Optional[TransportFactory] = None):
        super().__init__()
        self.member_id = member_id
        self.config = config or SessionConfig()
        self.bridge = bridge or CapabilityBridge()
        self.metrics = metrics or MetricsSink()
        self.signaling = signaling or SignalingClient(
            self.config.server_url, member_id, self.config.socketio_path
        )
        self._transport_factory = transport_factory or self._create_aiortc_transport
        self._media_relay = MediaRelay()

        self.room_id: Optional[str] = None
        self.sessions: Dict[str, PeerSession] = {}
        self.room_users: Set[str] = set()
        self.point_cloud_mode = self.config.point_cloud_mode
        self.view_mode = ViewMode.POINT_CLOUD if self.point_cloud_mode else ViewMode.COLOR

        self.callbacks: Dict[str, Set[Callable]] = {
            'user_joined': set(),
            'user_left': set(),
            'session_connected': set(),
            'session_disconnected': set(),
            'session_failed': set(),
            'session_saturated': set(),
        }

        self.signaling.on(EVENT_ROOM_JOINED, self._on_room_joined)
        self.signaling.on(EVENT_USER_CONNECTED, self._on_user_connected)
        self.signaling.on(EVENT_USER_DISCONNECTED, self._on_user_disconnected)
        self.signaling.on(MessageKind.OFFER.value, self._signal_handler(MessageKind.OFFER))
        self.signaling.on(MessageKind.ANSWER.value, self._signal_handler(MessageKind.ANSWER))
        self.signaling.on(MessageKind.ICE_CANDIDATE.value, self._signal_handler(MessageKind.ICE_CANDIDATE))
        self.signaling.on('disconnect', self._on_signaling_disconnect)

    def add_callback(self, event: str, callback: Callable):
        if event in self.callbacks:
            self.callbacks[event].add(callback)

    def remove_callback(self, event: str, callback: Callable):
        if event in self.callbacks:
            self.callbacks[event].discard(callback)

    def _notify_callbacks(self, event: str, peer_id: str, data: Any = None):
        for callback in list(self.callbacks.get(event, ())):
            try:
                callback(peer_id, data)
            except Exception as e:
                self.log_error("Error in manager callback", {
                    "event": event,
                    "peer_id": peer_id,
                    "error": str(e)
                })

    # Room lifecycle

    async def join(self, room_id: str):
        """Connect to the relay and join `room_id`."""
        self.room_id = room_id
        if not self.signaling.connected:
            await self.signaling.connect()
        await self.signaling.join_room(room_id)

    async def _on_room_joined(self, data: Dict[str, Any]):
        self.room_id = data.get('room', self.room_id)
        users = [user for user in data.get('users') or [] if user != self.member_id]
        debug_log(f"🚪 [Manager] Joined room", {
            "room_id": self.room_id,
            "existing_users": users
        })
        # The newcomer offers to everyone already in the room
        for user in users:
            self.room_users.add(user)
            self._notify_callbacks('user_joined', user)
            await self._open_session(user, SessionRole.INITIATOR)

    async def _on_user_connected(self, user_id: str):
        if user_id == self.member_id:
            return
        self.room_users.add(user_id)
        self._notify_callbacks('user_joined', user_id)
        # Existing members wait for the newcomer's offer
        if user_id not in self.sessions:
            await self._open_session(user_id, SessionRole.RESPONDER)

    async def _on_user_disconnected(self, user_id: str):
        self.room_users.discard(user_id)
        session = self.sessions.pop(user_id, None)
        if session is not None:
            session.close("peer left")
        self._notify_callbacks('user_left', user_id)

    async def _on_signaling_disconnect(self, *args):
        self.log_warning("Signaling connection lost, closing all sessions", {
            "session_count": len(self.sessions)
        })
        self._close_all("signaling lost")

    def _signal_handler(self, kind: MessageKind):
        async def handler(payload: Any, sender_id: str):
            await self._on_signal(SignalingMessage(
                kind=kind,
                payload=payload,
                sender=sender_id,
                target=self.member_id,
                room=self.room_id or ""
            ))
        return handler

    async def _on_signal(self, message: SignalingMessage):
        session = self.sessions.get(message.sender)

        if message.kind == MessageKind.OFFER:
            if session is None or not session.awaiting_offer:
                if session is not None:
                    self.log_info("Replacing session on new offer", {
                        "peer_id": message.sender,
                        "state": session.state.value
                    })
                    self.sessions.pop(message.sender, None)
                    session.close("replaced")
                self.room_users.add(message.sender)
                session = await self._open_session(message.sender, SessionRole.RESPONDER)
        elif session is None:
            self.log_warning(f"No session for {message.kind.value}", {"peer_id": message.sender})
            return

        await session.handle_signal(message)

    # Sessions

    def _create_aiortc_transport(self, peer_id: str, role: SessionRole) -> PeerTransport:
        tracks = [self._media_relay.subscribe(track) for track in self.bridge.media_tracks()]
        return AiortcPeerTransport(
            rtc_config=self.config.rtc_config,
            label=self.config.data_channel_label,
            media_tracks=tracks
        )

    async def _send_signal(self, kind: MessageKind, payload: Any, target_id: str):
        await self.signaling.send(kind, payload, target_id)

    async def _open_session(self, peer_id: str, role: SessionRole) -> PeerSession:
        existing = self.sessions.pop(peer_id, None)
        if existing is not None:
            existing.close("replaced")

        session = PeerSession(
            peer_id=peer_id,
            role=role,
            send_signal=self._send_signal,
            transport_factory=self._transport_factory,
            config=self.config,
            metrics=self.metrics,
            view_mode=ViewMode.POINT_CLOUD if self.point_cloud_mode else None
        )
        session.on_state_change = self._on_session_state
        session.on_connected = lambda s: self._notify_callbacks('session_connected', s.peer_id)
        session.on_disconnected = self._on_session_disconnected
        session.on_failed = self._on_session_failed
        session.on_saturated = self._on_session_saturated
        session.on_point_batch = self._on_point_batch
        session.on_view_mode_change = self._on_view_mode_change
        session.on_remote_track = self.bridge.on_remote_track

        self.sessions[peer_id] = session
        debug_log(f"🔗 [Manager] Opening session", {
            "peer_id": peer_id,
            "role": role.value,
            "timestamp": datetime.datetime.now().isoformat()
        })
        await session.start()
        return session

    def _on_session_state(self, session: PeerSession, old: SessionState, new: SessionState):
        self.bridge.on_status(session.peer_id, new.value)

    def _on_session_disconnected(self, session: PeerSession, reason: str):
        if self.sessions.get(session.peer_id) is session:
            del self.sessions[session.peer_id]
        self._notify_callbacks('session_disconnected', session.peer_id, reason)

    def _on_session_failed(self, session: PeerSession, error: Exception):
        self._notify_callbacks('session_failed', session.peer_id, error)
        # A failed session is not retried; the next offer builds a new one
        session.close("failed")

    def _on_session_saturated(self, session: PeerSession, error: Exception):
        self._notify_callbacks('session_saturated', session.peer_id, error)

    def _on_point_batch(self, peer_id: str, batch: PointBatch):
        self.bridge.on_point_batch(peer_id, batch.positions, batch.colors)

    def _on_view_mode_change(self, peer_id: str, mode: ViewMode):
        self.bridge.on_view_mode_change(peer_id, mode.value)

    # Outgoing data

    def submit_point_batch(self, positions: Any, colors: Any) -> int:
        """
        Offer one point batch to every live session.

        Raises InvalidPointBatch for malformed input; returns how many
        sessions accepted it.
        """
        batch = PointBatch.from_sequences(positions, colors)
        accepted = 0
        for session in list(self.sessions.values()):
            if session.send_point_batch(batch.positions, batch.colors):
                accepted += 1
        return accepted

    def send_view_mode_change(self, mode: str) -> int:
        """Ask every connected counterparty to switch rendering mode."""
        view_mode = ViewMode(mode)
        self.view_mode = view_mode
        sent = 0
        for session in list(self.sessions.values()):
            if session.send_view_mode(view_mode):
                sent += 1
        return sent

    def set_point_cloud_mode(self, enabled: bool):
        self.point_cloud_mode = enabled
        debug_log(f"☁️ [Manager] Point-cloud mode {'enabled' if enabled else 'disabled'}")
        if enabled:
            self.send_view_mode_change(ViewMode.POINT_CLOUD.value)

    def set_stride(self, stride: int):
        for session in self.sessions.values():
            session.set_stride(stride)

    # Introspection

    def get_room_users(self) -> List[str]:
        return sorted(self.room_users)

    def get_connected_users(self) -> List[str]:
        return sorted(peer_id for peer_id, session in self.sessions.items() if session.connected)

    def session_states(self) -> Dict[str, str]:
        return {peer_id: session.state.value for peer_id, session in self.sessions.items()}

    def status(self) -> Dict[str, Any]:
        return {
            "member_id": self.member_id,
            "room_id": self.room_id,
            "room_users": self.get_room_users(),
            "sessions": {peer_id: session.status() for peer_id, session in self.sessions.items()},
        }

    # Shutdown

    def _close_all(self, reason: str):
        sessions, self.sessions = list(self.sessions.values()), {}
        for session in sessions:
            session.close(reason)

    async def close(self):
        """Close every session and leave the relay."""
        self._close_all("closed")
        self.room_users.clear()
        await self.signaling.disconnect()
