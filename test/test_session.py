"""Tests for the peer session state machine."""
import asyncio
import json

import numpy as np
import pytest

from standardcam.core.exceptions import HandshakeError, InvalidPointBatch, TransportSaturated
from standardcam.core.metrics import InMemoryMetricsSink
from standardcam.signaling.messages import MessageKind, SignalingMessage
from standardcam.webrtc.pointcloud import PointBatch, ViewMode, encode_batch
from standardcam.webrtc.session import PeerSession, SessionRole, SessionState

from conftest import CANDIDATE_LINE, FAKE_SDP

POSITIONS = [1, 2, 3, 4, 5, 6]
COLORS = [.1, .2, .3, .4, .5, .6]


def message(kind, payload, sender="B"):
    return SignalingMessage(kind=kind, payload=payload, sender=sender, target="A", room="r1")


class Recorder:
    """Collects every session notification."""

    def __init__(self, session):
        self.states = []
        self.connected = 0
        self.disconnected = []
        self.failed = []
        self.saturated = []
        self.batches = []
        self.view_modes = []
        session.on_state_change = lambda s, old, new: self.states.append(new)
        session.on_connected = lambda s: self._connected()
        session.on_disconnected = lambda s, reason: self.disconnected.append(reason)
        session.on_failed = lambda s, error: self.failed.append(error)
        session.on_saturated = lambda s, error: self.saturated.append(error)
        session.on_point_batch = lambda peer_id, batch: self.batches.append((peer_id, batch))
        session.on_view_mode_change = lambda peer_id, mode: self.view_modes.append((peer_id, mode))

    def _connected(self):
        self.connected += 1


@pytest.fixture
def make_session(transports, signals, session_config):
    def factory(role=SessionRole.INITIATOR, **kwargs):
        kwargs.setdefault('config', session_config)
        session = PeerSession("B", role, signals, transports, **kwargs)
        return session, Recorder(session)
    return factory


async def connected_session(make_session, transports, **kwargs):
    session, recorder = make_session(**kwargs)
    await session.start()
    await transports.last.open()
    return session, recorder, transports.last


class TestHandshake:
    async def test_initiator_sends_offer_on_start(self, make_session, transports, signals):
        session, recorder = make_session()

        await session.start()

        assert session.state == SessionState.NEGOTIATING
        assert transports.last.initiated
        [(kind, payload, target)] = signals.sent
        assert kind == MessageKind.OFFER
        assert payload["sdp"] == FAKE_SDP
        assert target == "B"

    async def test_responder_waits_for_offer(self, make_session, transports, signals):
        session, _ = make_session(role=SessionRole.RESPONDER)

        await session.start()

        assert session.awaiting_offer
        assert not transports.last.initiated
        assert signals.sent == []

    async def test_responder_answers_offer(self, make_session, transports, signals):
        session, _ = make_session(role=SessionRole.RESPONDER)
        await session.start()

        await session.handle_signal(message(MessageKind.OFFER, {"sdp": FAKE_SDP}))

        assert transports.last.accepted.type == "offer"
        assert signals.kinds() == [MessageKind.ANSWER]
        assert not session.awaiting_offer

    async def test_offer_before_start_starts_responder(self, make_session, transports, signals):
        session, _ = make_session(role=SessionRole.RESPONDER)

        await session.handle_signal(message(MessageKind.OFFER, {"type": "offer", "sdp": FAKE_SDP}))

        assert session.state == SessionState.NEGOTIATING
        assert signals.kinds() == [MessageKind.ANSWER]

    async def test_initiator_applies_answer_and_candidates(self, make_session, transports):
        session, _ = make_session()
        await session.start()

        await session.handle_signal(message(MessageKind.ANSWER, {"type": "answer", "sdp": FAKE_SDP}))
        await session.handle_signal(message(MessageKind.ICE_CANDIDATE, {"candidate": CANDIDATE_LINE}))
        await session.handle_signal(message(MessageKind.ICE_CANDIDATE, {"candidate": ""}))

        answer, candidate, end = transports.last.signals
        assert answer.type == "answer"
        assert candidate.ip == "192.168.1.2"
        assert end is None
        assert session.remote_candidate_count == 1

    async def test_unrepairable_offer_fails_session(self, make_session):
        session, recorder = make_session(role=SessionRole.RESPONDER)
        await session.start()

        await session.handle_signal(message(MessageKind.OFFER, {"foo": "bar"}))

        assert session.state == SessionState.FAILED
        assert isinstance(recorder.failed[0], HandshakeError)
        assert not session.media_active

    async def test_malformed_candidate_fails_session(self, make_session):
        session, recorder = make_session()
        await session.start()

        await session.handle_signal(message(MessageKind.ICE_CANDIDATE, {"candidate": "candidate:junk"}))

        assert session.state == SessionState.FAILED
        assert len(recorder.failed) == 1

    async def test_answer_to_responder_is_ignored(self, make_session, transports):
        session, _ = make_session(role=SessionRole.RESPONDER)
        await session.start()

        await session.handle_signal(message(MessageKind.ANSWER, {"sdp": FAKE_SDP}))

        assert session.state == SessionState.NEGOTIATING
        assert transports.last.signals == []

    async def test_signals_ignored_after_failure(self, make_session, transports):
        session, _ = make_session(role=SessionRole.RESPONDER)
        await session.handle_signal(message(MessageKind.OFFER, {"foo": "bar"}))

        await session.handle_signal(message(MessageKind.ICE_CANDIDATE, CANDIDATE_LINE))

        assert transports.last.signals == []

    async def test_transport_error_fails_session(self, make_session, transports):
        session, recorder = make_session()
        await session.start()

        await transports.last._fire('on_error', RuntimeError("ice failed"))

        assert session.state == SessionState.FAILED
        assert str(recorder.failed[0]) == "ice failed"


class TestConnected:
    async def test_connect_marks_media_active_and_sends_test(self, make_session, transports):
        metrics = InMemoryMetricsSink()
        session, recorder, transport = await connected_session(make_session, transports, metrics=metrics)

        assert session.state == SessionState.CONNECTED
        assert session.media_active
        assert recorder.connected == 1
        assert recorder.states == [SessionState.NEGOTIATING, SessionState.CONNECTED]
        assert [json.loads(m)["type"] for m in transport.text] == ["test"]
        assert "webrtc.connection_time" in metrics.summary()["metrics"]

    async def test_view_mode_announced_in_point_cloud_mode(self, make_session, transports):
        _, _, transport = await connected_session(make_session, transports, view_mode=ViewMode.POINT_CLOUD)

        types = [json.loads(m) for m in transport.text]
        assert {"type": "viewModeChange", "mode": "pointCloud"} in types

    async def test_pending_batch_flushed_on_connect(self, make_session, transports):
        session, _ = make_session()
        await session.start()

        assert session.send_point_batch(POSITIONS, COLORS) is True
        assert transports.last.binary == []

        await transports.last.open()

        assert len(transports.last.binary) == 1

    async def test_point_batches_reach_callback(self, make_session, transports):
        session, recorder, transport = await connected_session(make_session, transports)

        await transport.deliver(encode_batch(PointBatch.from_sequences(POSITIONS, COLORS)))

        [(peer_id, batch)] = recorder.batches
        assert peer_id == "B"
        np.testing.assert_allclose(batch.positions, POSITIONS)

    async def test_view_mode_requests_reach_callback(self, make_session, transports):
        _, recorder, transport = await connected_session(make_session, transports)

        await transport.deliver(json.dumps({"type": "viewModeChange", "mode": "infrared"}))

        assert recorder.view_modes == [("B", ViewMode.INFRARED)]

    async def test_invalid_batch_raises_to_caller(self, make_session, transports):
        session, _, transport = await connected_session(make_session, transports)

        with pytest.raises(InvalidPointBatch):
            session.send_point_batch([1, 2, 3], [.1, .2])
        await asyncio.sleep(0.1)

        assert transport.binary == []

    async def test_send_view_mode_only_when_connected(self, make_session, transports):
        session, _ = make_session()
        await session.start()
        assert session.send_view_mode(ViewMode.DEPTH) is False

        await transports.last.open()
        assert session.send_view_mode(ViewMode.DEPTH) is True
        assert {"type": "viewModeChange", "mode": "depth"} in [json.loads(m) for m in transports.last.text]

    async def test_json_point_cloud_mode_from_config(self, make_session, transports, session_config):
        session_config.binary_point_cloud = False
        session, _, transport = await connected_session(make_session, transports)

        session.send_point_batch(POSITIONS, COLORS)
        await asyncio.sleep(0.1)

        assert transport.binary == []
        assert json.loads(transport.text[-1])["type"] == "pointCloudData"
        assert session.status()["point_cloud"]["binary"] is False


class TestOverflow:
    async def test_first_overflow_reconnects_second_saturates(self, make_session, transports, signals):
        session, recorder, first = await connected_session(make_session, transports)
        first.overflow = True

        session.send_point_batch(POSITIONS, COLORS)
        await asyncio.sleep(0.1)

        assert session.state == SessionState.NEGOTIATING
        assert session.reconnect_count == 1
        assert first.closed
        second = transports.last
        assert second is not first
        assert second.initiated
        assert signals.kinds() == [MessageKind.OFFER, MessageKind.OFFER]

        await second.open()
        assert session.state == SessionState.CONNECTED
        second.overflow = True

        session.send_point_batch(POSITIONS, COLORS)
        await asyncio.sleep(0.1)

        assert len(recorder.saturated) == 1
        assert isinstance(recorder.saturated[0], TransportSaturated)
        assert session.reconnect_count == 1
        assert session.state == SessionState.CONNECTED

    async def test_stale_transport_callbacks_ignored_after_reconnect(self, make_session, transports):
        session, recorder, first = await connected_session(make_session, transports)
        first.overflow = True
        session.send_point_batch(POSITIONS, COLORS)
        await asyncio.sleep(0.1)

        await first.deliver(encode_batch(PointBatch.from_sequences(POSITIONS, COLORS)))
        await first.drop()

        assert recorder.batches == []
        assert session.state == SessionState.NEGOTIATING

    async def test_responder_reoffers_after_overflow(self, make_session, transports, signals):
        session, _ = make_session(role=SessionRole.RESPONDER)
        await session.handle_signal(message(MessageKind.OFFER, {"sdp": FAKE_SDP}))
        await transports.last.open()
        transports.last.overflow = True

        session.send_point_batch(POSITIONS, COLORS)
        await asyncio.sleep(0.1)

        assert session.role == SessionRole.INITIATOR
        assert signals.kinds() == [MessageKind.ANSWER, MessageKind.OFFER]


class TestClose:
    async def test_counterparty_disconnect_closes_once(self, make_session, transports):
        session, recorder, transport = await connected_session(make_session, transports)

        await transport.drop()

        assert session.state == SessionState.CLOSED
        assert recorder.disconnected == ["transport closed"]

        await transport.deliver(encode_batch(PointBatch.from_sequences(POSITIONS, COLORS)))
        session.channel.receive(encode_batch(PointBatch.from_sequences(POSITIONS, COLORS)))
        session.close("again")
        await transport.drop()

        assert recorder.batches == []
        assert recorder.disconnected == ["transport closed"]

    async def test_close_cancels_gate_and_transport(self, make_session, transports):
        session, recorder, transport = await connected_session(make_session, transports)
        session.send_point_batch(POSITIONS, COLORS)

        session.close("user hangup")
        await asyncio.sleep(0.1)

        assert transport.binary == []
        assert transport.closed
        assert session.close_reason == "user hangup"
        assert session.send_point_batch(POSITIONS, COLORS) is False
        assert recorder.states[-1] == SessionState.CLOSED

    async def test_failed_session_can_be_closed(self, make_session):
        session, recorder = make_session(role=SessionRole.RESPONDER)
        await session.handle_signal(message(MessageKind.OFFER, {"foo": "bar"}))

        session.close("failed")

        assert session.state == SessionState.CLOSED
        assert recorder.disconnected == ["failed"]

    async def test_signals_after_close_are_ignored(self, make_session, transports, signals):
        session, _ = make_session(role=SessionRole.RESPONDER)
        session.close()

        await session.handle_signal(message(MessageKind.OFFER, {"sdp": FAKE_SDP}))

        assert transports.created == []
        assert signals.sent == []

    async def test_status_snapshot(self, make_session, transports):
        session, _, _ = await connected_session(make_session, transports)
        status = session.status()
        assert status["state"] == "connected"
        assert status["role"] == "initiator"
        assert status["point_cloud"]["ready"] is True
