"""
Session Registry: which live connection is bound to which room, as whom.

All operations are synchronous and only ever called from the event loop
thread, so each one is atomic with respect to every other connection.
A connection is bound to at most one room at a time.
"""

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class Binding:
    room_id: str
    user_id: str


class SessionRegistry:
    def __init__(self):
        self._bindings: dict[str, Binding] = {}
        # room_id -> {conn_id: user_id}
        self._rooms: dict[str, dict[str, str]] = {}

    def bind(self, conn_id: str, room_id: str, user_id: str) -> Optional[Binding]:
        """
        Bind ``conn_id`` to ``room_id``.

        Rebinding to the same room is a no-op; binding to another room moves
        the connection. Returns the previous binding when the connection was
        moved away from a different room.
        """
        previous = self._bindings.get(conn_id)
        if previous is not None and previous.room_id == room_id and previous.user_id == user_id:
            return None
        if previous is not None:
            self._detach(conn_id, previous)

        self._bindings[conn_id] = Binding(room_id, user_id)
        self._rooms.setdefault(room_id, {})[conn_id] = user_id
        if previous is not None and previous.room_id != room_id:
            return previous
        return None

    def unbind(self, conn_id: str) -> Optional[Binding]:
        binding = self._bindings.pop(conn_id, None)
        if binding is not None:
            self._detach(conn_id, binding)
        return binding

    def _detach(self, conn_id: str, binding: Binding) -> None:
        members = self._rooms.get(binding.room_id)
        if members is None:
            return
        members.pop(conn_id, None)
        if not members:
            del self._rooms[binding.room_id]

    def binding_of(self, conn_id: str) -> Optional[Binding]:
        return self._bindings.get(conn_id)

    def members_of(self, room_id: str) -> list[str]:
        return list(self._rooms.get(room_id, {}))

    def connections_of(self, room_id: str, user_id: str) -> list[str]:
        return [c for c, u in self._rooms.get(room_id, {}).items() if u == user_id]

    def rooms(self) -> list[str]:
        return list(self._rooms)

    def evict_room(self, room_id: str) -> list[tuple[str, Binding]]:
        """Remove every binding of ``room_id`` and return what was removed."""
        members = self._rooms.pop(room_id, {})
        removed = []
        for conn_id in members:
            binding = self._bindings.pop(conn_id, None)
            if binding is not None:
                removed.append((conn_id, binding))
        return removed
