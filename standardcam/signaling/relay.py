"""
Room-based signaling relay.

The relay brokers offer/answer/ice-candidate messages between two named
members of the same room and announces membership changes. It keeps no
handshake state: every message is forwarded (or dropped) as it arrives.
"""
from typing import Any, Awaitable, Callable, Dict, Optional

import socketio

from standardcam.core.logging import LoggerMixin, debug_log
from standardcam.signaling.messages import (
    EVENT_JOIN_ROOM,
    EVENT_ROOM_JOINED,
    EVENT_SERVER_MESSAGE,
    EVENT_USER_CONNECTED,
    EVENT_USER_DISCONNECTED,
    MessageKind,
)
from standardcam.signaling.registry import RoomRegistry

# (event, data, connection_id); tuple data is sent as multiple event arguments
Emitter = Callable[[str, Any, str], Awaitable[None]]


class SignalingRelay(LoggerMixin):
    """Routes handshake messages between members of a room."""

    def __init__(self, emit: Optional[Emitter] = None, registry: Optional[RoomRegistry] = None):
        super().__init__()
        self.registry = registry or RoomRegistry()
        self._emit = emit
        self.relayed_count = 0
        self.dropped_count = 0

    def set_emitter(self, emit: Emitter):
        self._emit = emit

    async def _send(self, event: str, data: Any, connection_id: str):
        if self._emit is None:
            raise RuntimeError("SignalingRelay has no emitter configured")
        await self._emit(event, data, connection_id)

    async def welcome(self, connection_id: str):
        """Send the connection-level welcome message."""
        await self._send(EVENT_SERVER_MESSAGE, {
            'type': 'welcome',
            'message': 'Connected to signaling server',
            'socketId': connection_id
        }, connection_id)

    async def join(self, room_id: str, member_id: str, connection_id: str):
        """
        Register `connection_id` as `member_id` in `room_id`.

        A duplicate member id silently replaces the previous connection
        (reconnect flows reuse ids). Other members hear about the member once;
        a replacement join does not announce it again.
        """
        previous = self.registry.room_of(connection_id)
        if previous is not None and previous != (room_id, member_id):
            await self.leave(connection_id)

        async with self.registry.locked(room_id):
            already_member = self.registry.lookup(room_id, member_id) is not None
            self.registry.join(room_id, member_id, connection_id)
            members = self.registry.members(room_id)

            debug_log(f"🚪 [Relay] Member joined room", {
                "room_id": room_id,
                "member_id": member_id,
                "connection_id": connection_id,
                "replaced": already_member,
                "members": members
            })

            if not already_member:
                for other_id in members:
                    if other_id == member_id:
                        continue
                    other_connection = self.registry.lookup(room_id, other_id)
                    await self._send(EVENT_USER_CONNECTED, member_id, other_connection)

            await self._send(EVENT_ROOM_JOINED, {
                'room': room_id,
                'id': member_id,
                'users': members
            }, connection_id)

    async def relay(self, kind: MessageKind, room_id: str, sender_id: str,
                    target_id: Optional[str], payload: Any) -> bool:
        """
        Forward `(kind, payload, sender_id)` to `target_id` within `room_id`.

        Returns False when the target is not in the room; the message is then
        dropped without telling the sender.
        """
        if room_id not in self.registry.rooms:
            return self._drop(kind, room_id, sender_id, target_id)

        async with self.registry.locked(room_id):
            target_connection = self.registry.lookup(room_id, target_id) if target_id else None
            if target_connection is None:
                return self._drop(kind, room_id, sender_id, target_id)

            await self._send(kind.value, (payload, sender_id), target_connection)
            self.relayed_count += 1
            return True

    def _drop(self, kind: MessageKind, room_id: str, sender_id: str, target_id: Optional[str]) -> bool:
        self.dropped_count += 1
        self.log_debug(f"Dropping {kind.value}: target not in room", {
            "room_id": room_id,
            "sender_id": sender_id,
            "target_id": target_id
        })
        return False

    async def relay_from(self, connection_id: str, kind: MessageKind, payload: Any,
                         target_id: Optional[str]) -> bool:
        """Relay on behalf of a connection, using its registered membership as sender."""
        membership = self.registry.room_of(connection_id)
        if membership is None:
            self.dropped_count += 1
            self.log_warning(f"Dropping {kind.value} from connection that has not joined", {
                "connection_id": connection_id
            })
            return False
        room_id, sender_id = membership
        return await self.relay(kind, room_id, sender_id, target_id, payload)

    async def leave(self, connection_id: str):
        """Remove the connection's member and tell the rest of the room."""
        membership = self.registry.room_of(connection_id)
        if membership is None:
            return
        room_id, _ = membership

        async with self.registry.locked(room_id):
            removed = self.registry.leave(connection_id)
            if removed is None:
                return
            _, member_id = removed

            debug_log(f"🚪 [Relay] Member left room", {
                "room_id": room_id,
                "member_id": member_id,
                "connection_id": connection_id
            })

            for other_id in self.registry.members(room_id):
                other_connection = self.registry.lookup(room_id, other_id)
                await self._send(EVENT_USER_DISCONNECTED, member_id, other_connection)

    def status(self) -> Dict[str, Any]:
        return {
            'rooms': {room_id: self.registry.members(room_id) for room_id in self.registry.rooms},
            'room_count': self.registry.room_count(),
            'member_count': self.registry.member_count(),
            'relayed_count': self.relayed_count,
            'dropped_count': self.dropped_count
        }

    def attach(self, sio: socketio.AsyncServer):
        """Bind the relay to a Socket.IO server's events."""

        async def emit(event: str, data: Any, connection_id: str):
            await sio.emit(event, data, to=connection_id)

        self.set_emitter(emit)

        @sio.event
        async def connect(sid, environ):
            self.log_info("Client connected", {"sid": sid})
            await self.welcome(sid)

        @sio.event
        async def disconnect(sid, *args):
            self.log_info("Client disconnected", {"sid": sid})
            await self.leave(sid)

        @sio.on(EVENT_JOIN_ROOM)
        async def join_room(sid, room_id=None, member_id=None):
            if not room_id or not member_id:
                self.log_warning("Invalid join-room request", {
                    "sid": sid,
                    "room_id": room_id,
                    "member_id": member_id
                })
                return
            await self.join(str(room_id), str(member_id), sid)

        def make_handler(kind: MessageKind):
            async def handler(sid, payload=None, target_id=None):
                await self.relay_from(sid, kind, payload, target_id)
            return handler

        for kind in MessageKind:
            sio.on(kind.value, make_handler(kind))
