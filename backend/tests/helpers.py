"""Socket-free doubles for coordinator tests."""
from collections import defaultdict

from sqlalchemy.exc import OperationalError

from coderoom.services.lifecycle import RoomLifecycleManager
from coderoom.services.relay import RelayTransport
from coderoom.services.room_coordinator import RoomCoordinator
from coderoom.services.room_store import RoomStore
from coderoom.services.session_registry import SessionRegistry

PASSWORD = "secret-password"


class RecordingTransport(RelayTransport):
    """Relay without sockets: frames are recorded per connection."""

    def __init__(self, registry):
        super().__init__(registry)
        self.sent = defaultdict(list)
        self.closed = {}

    def deliver_to(self, conn_id, frame):
        self.sent[conn_id].append(frame)
        return True

    def close(self, conn_id, code, reason):
        self.closed[conn_id] = code

    def types(self, conn_id):
        return [f["type"] for f in self.sent[conn_id]]


class FlakyStore(RoomStore):
    """Fails the first ``failures`` saves."""

    def __init__(self, failures):
        super().__init__()
        self.failures = failures
        self.attempts = 0

    async def save(self, state):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise OperationalError("UPDATE team_rooms", {}, Exception("database unavailable"))
        return await super().save(state)


def build(store=None):
    store = store or RoomStore()
    registry = SessionRegistry()
    transport = RecordingTransport(registry)
    coordinator = RoomCoordinator(store, registry, transport)
    return RoomLifecycleManager(store, coordinator), coordinator, transport
