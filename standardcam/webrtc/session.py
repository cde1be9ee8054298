"""
Peer session: one handshake and its transports for one counterparty.

The session is an explicit state machine. Transport callbacks and inbound
signaling are translated into `SessionEvent`s and posted; `post` applies the
transition table and runs entry actions, queueing events posted while an
earlier one is still being handled.

    IDLE -> NEGOTIATING -> CONNECTED -> CLOSED
    NEGOTIATING | CONNECTED -> FAILED -> CLOSED
    CONNECTED -> NEGOTIATING   (single data-transport reconnect after overflow)
"""
import asyncio
import time
from collections import deque
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, Set, Tuple

from standardcam.core.config import SessionConfig
from standardcam.core.exceptions import (
    HandshakeError,
    StandardCamError,
    TransportSaturated,
)
from standardcam.core.logging import LoggerMixin, debug_log
from standardcam.core.metrics import MetricsSink
from standardcam.signaling.messages import (
    MessageKind,
    SignalingMessage,
    decode_candidate,
    decode_description,
)
from standardcam.webrtc.pointcloud import PointBatch, PointCloudChannel, ViewMode
from standardcam.webrtc.transport import PeerTransport


class SessionRole(str, Enum):
    INITIATOR = "initiator"
    RESPONDER = "responder"


class SessionState(str, Enum):
    IDLE = "idle"
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    FAILED = "failed"
    CLOSED = "closed"


class SessionEvent(str, Enum):
    START = "start"
    REMOTE_OFFER = "remote_offer"
    REMOTE_ANSWER = "remote_answer"
    REMOTE_CANDIDATE = "remote_candidate"
    TRANSPORT_CONNECTED = "transport_connected"
    DATA_OPEN = "data_open"
    DATA_CLOSED = "data_closed"
    HANDSHAKE_ERROR = "handshake_error"
    TRANSPORT_ERROR = "transport_error"
    TRANSPORT_CLOSED = "transport_closed"
    OVERFLOW = "overflow"
    RECONNECT = "reconnect"
    CLOSE = "close"


S, E = SessionState, SessionEvent

TRANSITIONS: Dict[Tuple[SessionState, SessionEvent], SessionState] = {
    (S.IDLE, E.START): S.NEGOTIATING,
    (S.NEGOTIATING, E.TRANSPORT_CONNECTED): S.CONNECTED,
    (S.NEGOTIATING, E.HANDSHAKE_ERROR): S.FAILED,
    (S.NEGOTIATING, E.TRANSPORT_ERROR): S.FAILED,
    (S.CONNECTED, E.HANDSHAKE_ERROR): S.FAILED,
    (S.CONNECTED, E.TRANSPORT_ERROR): S.FAILED,
    (S.CONNECTED, E.RECONNECT): S.NEGOTIATING,
    (S.NEGOTIATING, E.TRANSPORT_CLOSED): S.CLOSED,
    (S.CONNECTED, E.TRANSPORT_CLOSED): S.CLOSED,
    (S.IDLE, E.CLOSE): S.CLOSED,
    (S.NEGOTIATING, E.CLOSE): S.CLOSED,
    (S.CONNECTED, E.CLOSE): S.CLOSED,
    (S.FAILED, E.CLOSE): S.CLOSED,
}

del S, E

SignalSender = Callable[[MessageKind, Any, str], Awaitable[None]]
TransportFactory = Callable[[str, SessionRole], PeerTransport]


class PeerSession(LoggerMixin):
    """Owns the handshake, media transport and point-cloud channel for one counterparty."""

    def __init__(self, peer_id: str, role: SessionRole, send_signal: SignalSender,
                 transport_factory: TransportFactory, config: Optional[SessionConfig] = None,
                 metrics: Optional[MetricsSink] = None, view_mode: Optional[ViewMode] = None):
        super().__init__()
        self.peer_id = peer_id
        self.role = SessionRole(role)
        self.config = config or SessionConfig()
        self.metrics = metrics or MetricsSink()
        self.state = SessionState.IDLE
        self.view_mode = view_mode

        self._send_signal = send_signal
        self._transport_factory = transport_factory
        self.transport: Optional[PeerTransport] = None
        self.media_active = False
        self.remote_tracks = []

        self.channel = PointCloudChannel(
            send_interval=self.config.send_interval,
            buffer_ceiling=self.config.buffer_ceiling,
            stride=self.config.downsample_stride,
            metrics=self.metrics,
            peer_id=peer_id,
            binary=self.config.binary_point_cloud
        )
        self.channel.on_point_batch = self._on_point_batch
        self.channel.on_view_mode_change = self._on_view_mode_change
        self.channel.on_overflow = lambda error: self.post(SessionEvent.OVERFLOW, error)

        self.offer_received = False
        self.overflow_count = 0
        self.reconnect_count = 0
        self.remote_candidate_count = 0
        self.last_error: Optional[Exception] = None
        self.close_reason: Optional[str] = None
        self._negotiation_started_at: Optional[float] = None
        self._data_announced = False

        self._queue: Deque[Tuple[SessionEvent, Any]] = deque()
        self._dispatching = False
        self._tasks: Set[asyncio.Task] = set()

        # Caller-facing notifications
        self.on_state_change: Optional[Callable[["PeerSession", SessionState, SessionState], None]] = None
        self.on_connected: Optional[Callable[["PeerSession"], None]] = None
        self.on_disconnected: Optional[Callable[["PeerSession", str], None]] = None
        self.on_failed: Optional[Callable[["PeerSession", Exception], None]] = None
        self.on_saturated: Optional[Callable[["PeerSession", TransportSaturated], None]] = None
        self.on_point_batch: Optional[Callable[[str, PointBatch], None]] = None
        self.on_view_mode_change: Optional[Callable[[str, ViewMode], None]] = None
        self.on_remote_track: Optional[Callable[[str, Any], None]] = None

    # Event dispatch

    def post(self, event: SessionEvent, payload: Any = None):
        """Post an event; events posted during dispatch run after the current one."""
        self._queue.append((SessionEvent(event), payload))
        if self._dispatching:
            return
        self._dispatching = True
        try:
            while self._queue:
                self._dispatch(*self._queue.popleft())
        finally:
            self._dispatching = False

    def _dispatch(self, event: SessionEvent, payload: Any):
        if self.state == SessionState.CLOSED:
            self.log_debug("Ignoring event on closed session", {
                "peer_id": self.peer_id,
                "event": event.value
            })
            return

        next_state = TRANSITIONS.get((self.state, event))
        if next_state is not None:
            self._transition(next_state, event, payload)
            return

        handler = {
            SessionEvent.DATA_OPEN: self._handle_data_open,
            SessionEvent.DATA_CLOSED: self._handle_data_closed,
            SessionEvent.OVERFLOW: self._handle_overflow,
        }.get(event)
        if handler is not None:
            handler(payload)
        else:
            self.log_debug("Event has no effect in current state", {
                "peer_id": self.peer_id,
                "state": self.state.value,
                "event": event.value
            })

    def _transition(self, new_state: SessionState, event: SessionEvent, payload: Any):
        old_state = self.state
        self.state = new_state

        debug_log(f"🔁 [Session] {self.peer_id}: {old_state.value} -> {new_state.value}", {
            "peer_id": self.peer_id,
            "role": self.role.value,
            "event": event.value
        })

        entry = {
            SessionState.NEGOTIATING: self._enter_negotiating,
            SessionState.CONNECTED: self._enter_connected,
            SessionState.FAILED: self._enter_failed,
            SessionState.CLOSED: self._enter_closed,
        }[new_state]
        entry(event, payload)

        self._notify("on_state_change", self, old_state, new_state)

    def _notify(self, name: str, *args: Any):
        callback = getattr(self, name)
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            self.metrics.record_exception()
            self.log_error("Error in session callback", {
                "peer_id": self.peer_id,
                "callback": name,
                "error": str(e),
                "error_type": type(e).__name__
            })

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # Entry actions

    def _enter_negotiating(self, event: SessionEvent, payload: Any):
        self._negotiation_started_at = time.monotonic()
        if event == SessionEvent.RECONNECT:
            self.reconnect_count += 1
            self.media_active = False
            self._teardown_transport()
            # The rebuilding side always re-offers; the counterparty answers
            # the new offer as a fresh responder.
            self.role = SessionRole.INITIATOR
        self._build_transport()
        if self.role == SessionRole.INITIATOR:
            self._spawn(self._initiate(self.transport))

    def _enter_connected(self, event: SessionEvent, payload: Any):
        self.media_active = True
        if self._negotiation_started_at is not None:
            elapsed_ms = (time.monotonic() - self._negotiation_started_at) * 1000
            self.metrics.record_connection_time(elapsed_ms)
        self.metrics.record_ice_candidate_count(self.remote_candidate_count)

        if self.transport is not None and self.transport.data_ready:
            self._establish_data_channel()

        self._notify("on_connected", self)

    def _enter_failed(self, event: SessionEvent, payload: Any):
        self.last_error = payload if isinstance(payload, Exception) else StandardCamError(str(payload))
        self.media_active = False
        self.channel.transport_lost()
        self.metrics.record_exception()
        self.log_error("Peer session failed", {
            "peer_id": self.peer_id,
            "event": event.value,
            "error": str(self.last_error),
            "error_type": type(self.last_error).__name__
        })
        self._notify("on_failed", self, self.last_error)

    def _enter_closed(self, event: SessionEvent, payload: Any):
        self.close_reason = payload if isinstance(payload, str) else event.value
        self.media_active = False
        self.channel.close()
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        self._teardown_transport()
        self._queue.clear()
        self._notify("on_disconnected", self, self.close_reason)

    # Non-transition handlers

    def _handle_data_open(self, payload: Any):
        if self.state == SessionState.CONNECTED:
            self._establish_data_channel()

    def _handle_data_closed(self, payload: Any):
        self._data_announced = False
        self.channel.transport_lost()

    def _handle_overflow(self, error: Any):
        self.overflow_count += 1
        if self.overflow_count == 1 and self.state == SessionState.CONNECTED:
            self.log_warning("Data channel overflow, rebuilding peer connection", {
                "peer_id": self.peer_id
            })
            self.post(SessionEvent.RECONNECT, error)
            return

        saturated = TransportSaturated("Data transport saturated after reconnect", {
            "peer_id": self.peer_id,
            "overflow_count": self.overflow_count,
            "stride": self.channel.stride
        })
        self.last_error = saturated
        self._notify("on_saturated", self, saturated)

    def _establish_data_channel(self):
        """Mark the data channel usable, flush queued points and send a liveness test."""
        self.channel.transport_ready()
        if self._data_announced:
            return
        self._data_announced = True
        self.channel.send_test()
        if self.view_mode is not None:
            self.channel.send_view_mode(self.view_mode)

    # Transport wiring

    def _build_transport(self):
        transport = self._transport_factory(self.peer_id, self.role)
        self.transport = transport
        self._data_announced = False
        self.channel.bind(transport)

        def guarded(handler):
            # Late callbacks from a replaced transport are ignored
            def callback(*args):
                if transport is not self.transport or self.state == SessionState.CLOSED:
                    return None
                return handler(*args)
            return callback

        transport.on_signal = guarded(self._on_local_signal)
        transport.on_connected = guarded(lambda: self.post(SessionEvent.TRANSPORT_CONNECTED))
        transport.on_data_open = guarded(lambda: self.post(SessionEvent.DATA_OPEN))
        transport.on_data_closed = guarded(lambda: self.post(SessionEvent.DATA_CLOSED))
        transport.on_data = guarded(self.channel.receive)
        transport.on_track = guarded(self._on_track)
        transport.on_error = guarded(lambda error: self.post(SessionEvent.TRANSPORT_ERROR, error))
        transport.on_closed = guarded(lambda: self.post(SessionEvent.TRANSPORT_CLOSED, "transport closed"))

    def _teardown_transport(self):
        transport, self.transport = self.transport, None
        self.channel.transport_lost()
        if transport is not None:
            # Not tracked in _tasks: closing must be allowed to finish
            asyncio.ensure_future(transport.close())

    async def _initiate(self, transport: PeerTransport):
        await self._run_transport_step(transport, transport.initiate())

    async def _run_transport_step(self, transport: PeerTransport, step: Awaitable[Any]):
        """Run a transport coroutine, turning its failures into session events."""
        try:
            await step
        except HandshakeError as e:
            if transport is self.transport:
                self.post(SessionEvent.HANDSHAKE_ERROR, e)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if transport is self.transport:
                self.post(SessionEvent.TRANSPORT_ERROR, e)

    async def _on_local_signal(self, kind: MessageKind, payload: Any):
        await self._send_signal(kind, payload, self.peer_id)

    def _on_track(self, track: Any):
        self.remote_tracks.append(track)
        self._notify("on_remote_track", self.peer_id, track)

    def _on_point_batch(self, batch: PointBatch):
        if self.state == SessionState.CLOSED:
            return
        self._notify("on_point_batch", self.peer_id, batch)

    def _on_view_mode_change(self, mode: ViewMode):
        if self.state == SessionState.CLOSED:
            return
        self._notify("on_view_mode_change", self.peer_id, mode)

    # Public API

    async def start(self):
        """Begin negotiation; an initiator produces its offer immediately."""
        if self.state != SessionState.IDLE:
            return
        self.post(SessionEvent.START)
        await self._wait_tasks()

    async def _wait_tasks(self):
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @property
    def awaiting_offer(self) -> bool:
        return (self.role == SessionRole.RESPONDER and not self.offer_received
                and self.state in (SessionState.IDLE, SessionState.NEGOTIATING))

    async def handle_signal(self, message: SignalingMessage):
        """Apply an inbound handshake message from the counterparty."""
        if self.state in (SessionState.CLOSED, SessionState.FAILED):
            self.log_debug("Ignoring signal for inactive session", {
                "peer_id": self.peer_id,
                "state": self.state.value,
                "kind": message.kind.value
            })
            return

        if self.state == SessionState.IDLE:
            self.post(SessionEvent.START)

        transport = self.transport
        try:
            if message.kind == MessageKind.OFFER:
                if self.role != SessionRole.RESPONDER or self.offer_received:
                    self.log_warning("Ignoring unexpected offer", {
                        "peer_id": self.peer_id,
                        "role": self.role.value
                    })
                    return
                description = decode_description(message.payload, MessageKind.OFFER)
                self.offer_received = True
                self.post(SessionEvent.REMOTE_OFFER)
                step = transport.accept(description)
            elif message.kind == MessageKind.ANSWER:
                if self.role != SessionRole.INITIATOR:
                    self.log_warning("Ignoring answer sent to responder", {"peer_id": self.peer_id})
                    return
                description = decode_description(message.payload, MessageKind.ANSWER)
                self.post(SessionEvent.REMOTE_ANSWER)
                step = transport.signal(description)
            else:
                candidate = decode_candidate(message.payload)
                if candidate is not None:
                    self.remote_candidate_count += 1
                self.post(SessionEvent.REMOTE_CANDIDATE)
                step = transport.signal(candidate)
        except HandshakeError as e:
            self.post(SessionEvent.HANDSHAKE_ERROR, e)
            return

        await self._run_transport_step(transport, step)

    def send_point_batch(self, positions: Any, colors: Any) -> bool:
        """
        Submit an outgoing point batch.

        Raises InvalidPointBatch for malformed input. Returns False when the
        session can no longer send (failed or closed).
        """
        if self.state in (SessionState.FAILED, SessionState.CLOSED):
            PointBatch.from_sequences(positions, colors)
            return False
        return self.channel.send(positions, colors)

    def send_view_mode(self, mode: ViewMode) -> bool:
        self.view_mode = ViewMode(mode)
        if self.state != SessionState.CONNECTED:
            return False
        return self.channel.send_view_mode(self.view_mode)

    def set_stride(self, stride: int):
        self.channel.set_stride(stride)

    def close(self, reason: str = "closed"):
        """Close the session; terminal and idempotent."""
        self.post(SessionEvent.CLOSE, reason)

    @property
    def connected(self) -> bool:
        return self.state == SessionState.CONNECTED

    def status(self) -> Dict[str, Any]:
        return {
            "peer_id": self.peer_id,
            "role": self.role.value,
            "state": self.state.value,
            "media_active": self.media_active,
            "overflow_count": self.overflow_count,
            "reconnect_count": self.reconnect_count,
            "close_reason": self.close_reason,
            "last_error": str(self.last_error) if self.last_error else None,
            "point_cloud": self.channel.stats(),
        }
