"""
Shared fixtures: an in-memory homeserver that stores published keys and
queues to-device messages, and clients wired to it.
"""

import pytest

from e2ee import Crypto, OlmDevice
from e2ee.models import Room, RoomMember

ROOM_ID = "!room:example.org"
ALICE = "@alice:example.org"
BOB = "@bob:example.org"
CAROL = "@carol:example.org"


class FakeHomeserver:
    """Key directory and to-device queues shared by FakeBaseApis instances"""

    def __init__(self):
        self.device_keys = {}
        self.one_time_keys = {}
        self.to_device = {}


class FakeBaseApis:
    """Same interface as e2ee.BaseApis, served from a FakeHomeserver"""

    def __init__(self, server, user_id, device_id):
        self.server = server
        self.user_id = user_id
        self.device_id = device_id
        self.sent = []

    async def upload_keys(self, device_keys=None, one_time_keys=None):
        if device_keys is not None:
            self.server.device_keys.setdefault(self.user_id, {})[self.device_id] = device_keys
        if one_time_keys:
            self.server.one_time_keys.setdefault(self.user_id, {}).setdefault(
                self.device_id, {}
            ).update(one_time_keys)
        count = len(self.server.one_time_keys.get(self.user_id, {}).get(self.device_id, {}))
        return {"one_time_key_counts": {"signed_curve25519": count}}

    async def query_keys(self, user_ids):
        return {"device_keys": {
            user_id: dict(self.server.device_keys.get(user_id, {})) for user_id in user_ids
        }}

    async def claim_one_time_keys(self, devices, key_algorithm="signed_curve25519"):
        claimed = {}
        for user_id, device_id in devices:
            keys = self.server.one_time_keys.get(user_id, {}).get(device_id, {})
            for key_id in list(keys):
                if key_id.startswith(key_algorithm + ":"):
                    claimed.setdefault(user_id, {})[device_id] = {key_id: keys.pop(key_id)}
                    break
        return {"one_time_keys": claimed}

    async def send_to_device(self, event_type, messages):
        self.sent.append((event_type, messages))
        for user_id, devices in messages.items():
            for device_id, content in devices.items():
                self.server.to_device.setdefault((user_id, device_id), []).append({
                    "type": event_type,
                    "sender": self.user_id,
                    "content": content,
                })
        return {}


class Client:
    """One device: its OlmDevice, its API handle and its crypto manager"""

    def __init__(self, server, user_id, device_id):
        self.server = server
        self.user_id = user_id
        self.device_id = device_id
        self.olm_device = OlmDevice(user_id, device_id)
        self.base_apis = FakeBaseApis(server, user_id, device_id)
        self.crypto = Crypto(self.base_apis, self.olm_device)

    async def sync_to_device(self):
        """Process the to-device events waiting for this device"""
        events = self.server.to_device.pop((self.user_id, self.device_id), [])
        return [await self.crypto.on_to_device_event(event) for event in events]


def room_event(encrypted, sender, event_id="$event1", room_id=ROOM_ID):
    """Wrap an encrypted event the way it comes back from the server"""
    return dict(encrypted, sender=sender, event_id=event_id, room_id=room_id)


@pytest.fixture
def server():
    return FakeHomeserver()


@pytest.fixture
def make_client(server):
    def _make(user_id, device_id):
        return Client(server, user_id, device_id)
    return _make


@pytest.fixture
def room():
    return Room(ROOM_ID, [RoomMember(ALICE), RoomMember(BOB)])
