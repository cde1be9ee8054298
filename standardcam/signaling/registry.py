"""
Room registry: the single source of truth for room membership.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List, Optional, Tuple

from standardcam.core.logging import LoggerMixin


class RoomRegistry(LoggerMixin):
    """Maps room ids to members and members to their relay connection."""

    def __init__(self):
        super().__init__()
        # room_id -> member_id -> connection_id
        self.rooms: Dict[str, Dict[str, str]] = {}
        # connection_id -> (room_id, member_id)
        self.connections: Dict[str, Tuple[str, str]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        # room_id -> tasks holding or waiting on the room lock
        self._lock_users: Dict[str, int] = {}

    def lock(self, room_id: str) -> asyncio.Lock:
        """Serialization point for all mutations of one room."""
        room_lock = self._locks.get(room_id)
        if room_lock is None:
            room_lock = asyncio.Lock()
            self._locks[room_id] = room_lock
        return room_lock

    @asynccontextmanager
    async def locked(self, room_id: str) -> AsyncIterator[None]:
        """Hold the room lock; the lock is dropped once the room is gone and nobody uses it."""
        room_lock = self.lock(room_id)
        self._lock_users[room_id] = self._lock_users.get(room_id, 0) + 1
        try:
            async with room_lock:
                yield
        finally:
            self._lock_users[room_id] -= 1
            if not self._lock_users[room_id]:
                del self._lock_users[room_id]
            self.release_lock(room_id)

    def release_lock(self, room_id: str):
        """Forget the lock of a destroyed room unless it is held or awaited."""
        if room_id in self.rooms or self._lock_users.get(room_id):
            return
        room_lock = self._locks.get(room_id)
        if room_lock is not None and not room_lock.locked():
            del self._locks[room_id]

    def join(self, room_id: str, member_id: str, connection_id: str) -> Optional[str]:
        """
        Register `connection_id` as the holder of `member_id` in `room_id`.

        Returns the connection id that previously held the member, if any.
        A connection holds at most one membership, so joining again moves it.
        """
        current = self.connections.get(connection_id)
        if current is not None and current != (room_id, member_id):
            self._remove(connection_id)

        members = self.rooms.setdefault(room_id, {})
        replaced = members.get(member_id)
        if replaced == connection_id:
            replaced = None
        elif replaced is not None:
            self.connections.pop(replaced, None)
            self.log_info("Member connection replaced", {
                "room_id": room_id,
                "member_id": member_id,
                "old_connection": replaced,
                "new_connection": connection_id
            })

        members[member_id] = connection_id
        self.connections[connection_id] = (room_id, member_id)
        return replaced

    def leave(self, connection_id: str) -> Optional[Tuple[str, str]]:
        """Remove the membership held by `connection_id`; returns (room_id, member_id)."""
        if connection_id not in self.connections:
            return None
        return self._remove(connection_id)

    def _remove(self, connection_id: str) -> Tuple[str, str]:
        room_id, member_id = self.connections.pop(connection_id)
        members = self.rooms.get(room_id, {})
        if members.get(member_id) == connection_id:
            del members[member_id]
        if not members:
            self.rooms.pop(room_id, None)
            self.release_lock(room_id)
            self.log_debug("Room destroyed", {"room_id": room_id})
        return room_id, member_id

    def lookup(self, room_id: str, member_id: str) -> Optional[str]:
        """Connection id of a member, or None when the member is not in the room."""
        return self.rooms.get(room_id, {}).get(member_id)

    def members(self, room_id: str) -> List[str]:
        return list(self.rooms.get(room_id, {}).keys())

    def room_of(self, connection_id: str) -> Optional[Tuple[str, str]]:
        return self.connections.get(connection_id)

    def room_count(self) -> int:
        return len(self.rooms)

    def member_count(self) -> int:
        return len(self.connections)
