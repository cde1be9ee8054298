"""
Socket.IO signaling client used by participants.
"""
import asyncio
from typing import Any, Callable, Dict, Optional, Set

import socketio

from standardcam.core.exceptions import SignalingError
from standardcam.core.logging import LoggerMixin, debug_log
from standardcam.signaling.messages import (
    EVENT_JOIN_ROOM,
    EVENT_ROOM_JOINED,
    EVENT_SERVER_MESSAGE,
    EVENT_USER_CONNECTED,
    EVENT_USER_DISCONNECTED,
    MessageKind,
)

CLIENT_EVENTS = (
    'connect',
    'disconnect',
    EVENT_SERVER_MESSAGE,
    EVENT_ROOM_JOINED,
    EVENT_USER_CONNECTED,
    EVENT_USER_DISCONNECTED,
    MessageKind.OFFER.value,
    MessageKind.ANSWER.value,
    MessageKind.ICE_CANDIDATE.value,
)


class SignalingClient(LoggerMixin):
    """Connects one member to the relay and dispatches relay events to callbacks."""

    def __init__(self, server_url: str, member_id: str, socketio_path: str = "socket.io",
                 sio: Optional[socketio.AsyncClient] = None):
        super().__init__()
        self.server_url = server_url
        self.member_id = member_id
        self.socketio_path = socketio_path
        self.room_id: Optional[str] = None
        self.socket_id: Optional[str] = None
        self.sio = sio or socketio.AsyncClient(reconnection_attempts=5)
        self.callbacks: Dict[str, Set[Callable]] = {event: set() for event in CLIENT_EVENTS}
        self._setup_handlers()

    def on(self, event: str, callback: Callable):
        """Add a callback for a relay event; coroutine callbacks are awaited."""
        if event not in self.callbacks:
            raise ValueError(f"Unknown signaling event: {event}")
        self.callbacks[event].add(callback)

    def off(self, event: str, callback: Callable):
        if event in self.callbacks:
            self.callbacks[event].discard(callback)

    async def _dispatch(self, event: str, *args: Any):
        for callback in list(self.callbacks.get(event, ())):
            try:
                result = callback(*args)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                self.log_error("Error in signaling callback", {
                    "event": event,
                    "error": str(e),
                    "error_type": type(e).__name__
                })

    def _setup_handlers(self):
        """Forward every relay event to the registered callbacks."""

        def forward(event: str):
            async def handler(*args):
                if event == EVENT_SERVER_MESSAGE and args and isinstance(args[0], dict):
                    if args[0].get('type') == 'welcome':
                        self.socket_id = args[0].get('socketId')
                        debug_log(f"📡 [Signaling] Welcome from relay", args[0])
                elif event == 'connect' and self.room_id:
                    # The relay drops membership with the old connection
                    self.log_info("Reconnected, rejoining room", {"room_id": self.room_id})
                    await self.sio.emit(EVENT_JOIN_ROOM, (self.room_id, self.member_id))
                await self._dispatch(event, *args)
            return handler

        for event in CLIENT_EVENTS:
            self.sio.on(event, forward(event))

    @property
    def connected(self) -> bool:
        return self.sio.connected

    async def connect(self):
        """Connect to the relay."""
        debug_log(f"📡 [Signaling] Connecting to relay", {
            "server_url": self.server_url,
            "member_id": self.member_id
        })
        try:
            await self.sio.connect(
                self.server_url,
                socketio_path=self.socketio_path,
                transports=['websocket', 'polling']
            )
        except socketio.exceptions.ConnectionError as e:
            raise SignalingError("Cannot connect to signaling server",
                                 {"server_url": self.server_url, "error": str(e)})

    async def join_room(self, room_id: str):
        if not self.sio.connected:
            raise SignalingError("Not connected to signaling server", {"room_id": room_id})
        self.room_id = room_id
        await self.sio.emit(EVENT_JOIN_ROOM, (room_id, self.member_id))

    async def send(self, kind: MessageKind, payload: Any, target_id: str):
        """Send a handshake message to one member of the current room."""
        if not self.sio.connected:
            self.log_warning("Dropping signaling message: not connected", {
                "kind": kind.value,
                "target_id": target_id
            })
            return
        await self.sio.emit(kind.value, (payload, target_id))

    async def send_offer(self, payload: Any, target_id: str):
        await self.send(MessageKind.OFFER, payload, target_id)

    async def send_answer(self, payload: Any, target_id: str):
        await self.send(MessageKind.ANSWER, payload, target_id)

    async def send_ice_candidate(self, payload: Any, target_id: str):
        await self.send(MessageKind.ICE_CANDIDATE, payload, target_id)

    async def disconnect(self):
        if self.sio.connected:
            await self.sio.disconnect()
