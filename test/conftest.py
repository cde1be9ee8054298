"""Shared fakes and fixtures for the StandardCam test suite."""
import asyncio
from collections import defaultdict

import pytest

from standardcam.bridge import CapabilityBridge
from standardcam.core.config import SessionConfig
from standardcam.core.exceptions import TransportOverflow
from standardcam.signaling.messages import MessageKind
from standardcam.webrtc.transport import PeerTransport

FAKE_SDP = "v=0\r\no=- 0 0 IN IP4 127.0.0.1\r\ns=-\r\nt=0 0\r\n"
CANDIDATE_LINE = "candidate:842163049 1 udp 1677729535 192.168.1.2 58240 typ srflx raddr 0.0.0.0 rport 0"


class FakeTransport(PeerTransport):
    """In-memory PeerTransport; tests drive its lifecycle explicitly."""

    def __init__(self, peer_id="peer", role=None):
        super().__init__()
        self.peer_id = peer_id
        self.role = role
        self.sent = []
        self.signals = []
        self.buffered = 0
        self.overflow = False
        self.is_connected = False
        self.is_open = False
        self.closed = False
        self.initiated = False
        self.accepted = None

    async def initiate(self):
        self.initiated = True
        await self._fire('on_signal', MessageKind.OFFER, {"type": "offer", "sdp": FAKE_SDP})

    async def accept(self, offer):
        self.accepted = offer
        await self._fire('on_signal', MessageKind.ANSWER, {"type": "answer", "sdp": FAKE_SDP})

    async def signal(self, payload):
        self.signals.append(payload)

    def send(self, data):
        if self.overflow:
            raise TransportOverflow("send queue is full")
        if not self.is_open:
            return False
        self.sent.append(data)
        return True

    def outstanding_bytes(self):
        return self.buffered

    @property
    def connected(self):
        return self.is_connected

    @property
    def data_ready(self):
        return self.is_open

    async def close(self):
        self.closed = True

    # Test drivers

    async def open(self):
        self.is_connected = True
        self.is_open = True
        await self._fire('on_connected')
        await self._fire('on_data_open')

    async def deliver(self, data):
        await self._fire('on_data', data)

    async def drop(self):
        self.is_connected = False
        self.is_open = False
        await self._fire('on_closed')

    @property
    def binary(self):
        return [message for message in self.sent if isinstance(message, bytes)]

    @property
    def text(self):
        return [message for message in self.sent if isinstance(message, str)]


class FakeTransportFactory:
    """Transport factory that remembers every transport it built."""

    def __init__(self):
        self.created = []

    def __call__(self, peer_id, role):
        transport = FakeTransport(peer_id, role)
        self.created.append(transport)
        return transport

    @property
    def last(self):
        return self.created[-1]

    def for_peer(self, peer_id):
        return [t for t in self.created if t.peer_id == peer_id][-1]


class RecordingEmitter:
    """Relay emitter that records (connection_id, event, data)."""

    def __init__(self):
        self.events = []

    async def __call__(self, event, data, connection_id):
        self.events.append((connection_id, event, data))

    def to(self, connection_id, event=None):
        return [(e, d) for c, e, d in self.events
                if c == connection_id and (event is None or e == event)]


class SignalRecorder:
    """Stands in for the signaling sender a PeerSession is given."""

    def __init__(self):
        self.sent = []

    async def __call__(self, kind, payload, target_id):
        self.sent.append((kind, payload, target_id))

    def kinds(self):
        return [kind for kind, _, _ in self.sent]


class FakeSignaling:
    """SignalingClient double: records outgoing calls, lets tests fire relay events."""

    def __init__(self):
        self.handlers = defaultdict(list)
        self.sent = []
        self.joined = []
        self.connected = False

    def on(self, event, callback):
        self.handlers[event].append(callback)

    async def connect(self):
        self.connected = True

    async def join_room(self, room_id):
        self.joined.append(room_id)

    async def send(self, kind, payload, target_id):
        self.sent.append((kind, payload, target_id))

    async def disconnect(self):
        self.connected = False

    async def fire(self, event, *args):
        for callback in list(self.handlers[event]):
            result = callback(*args)
            if asyncio.iscoroutine(result):
                await result


class RecordingBridge(CapabilityBridge):
    def __init__(self):
        self.batches = []
        self.view_modes = []
        self.tracks = []
        self.statuses = []

    def on_point_batch(self, member_id, positions, colors):
        self.batches.append((member_id, positions, colors))

    def on_view_mode_change(self, member_id, mode):
        self.view_modes.append((member_id, mode))

    def on_remote_track(self, member_id, track):
        self.tracks.append((member_id, track))

    def on_status(self, member_id, state):
        self.statuses.append((member_id, state))


@pytest.fixture
def emitter():
    return RecordingEmitter()


@pytest.fixture
def transports():
    return FakeTransportFactory()


@pytest.fixture
def signals():
    return SignalRecorder()


@pytest.fixture
def session_config(monkeypatch):
    """Fast gate, no downsampling, no environment overrides."""
    for name in ('STANDARDCAM_SERVER_URL', 'STUN_URL', 'TURN_ADDRESS', 'STANDARDCAM_STRIDE'):
        monkeypatch.delenv(name, raising=False)
    return SessionConfig(send_interval=0.05, downsample_stride=1)
