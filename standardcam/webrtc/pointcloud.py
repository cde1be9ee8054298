"""
Point-cloud transport protocol.

Point batches travel over the peer's data channel as one binary message:
float32 little-endian ``[positions..., colors...]``, split at the midpoint on
receipt. Channels built with `binary=False` send the same batch as a JSON
``pointCloudData`` envelope instead. Small JSON control envelopes (``{"type": ...}``) share the channel.

Sending is throttled to one batch per interval (the latest submitted batch
wins), skipped while the channel's send buffer is above a ceiling, and
downsampled by a fixed point stride.
"""
import asyncio
import json
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, Union

import numpy as np

from standardcam.core.exceptions import InvalidPointBatch, TransportOverflow
from standardcam.core.logging import LoggerMixin, debug_log
from standardcam.core.metrics import MetricsSink

WIRE_DTYPE = np.dtype('<f4')


class ViewMode(str, Enum):
    """Rendering modes a participant can ask its counterparty to switch to."""

    COLOR = "color"
    DEPTH = "depth"
    INFRARED = "infrared"
    POINT_CLOUD = "pointCloud"


class ControlType(str, Enum):
    POINT_CLOUD_DATA = "pointCloudData"
    VIEW_MODE_CHANGE = "viewModeChange"
    TEST = "test"
    TEST_RESPONSE = "testResponse"


def _as_flat_array(values: Any, name: str) -> np.ndarray:
    try:
        array = np.asarray(values, dtype=np.float32)
    except (TypeError, ValueError) as e:
        raise InvalidPointBatch(f"{name} is not numeric", {"error": str(e)})
    if array.ndim == 2 and array.shape[1] == 3:
        array = array.reshape(-1)
    if array.ndim != 1:
        raise InvalidPointBatch(f"{name} must be a flat sequence", {"shape": array.shape})
    return array


@dataclass(frozen=True)
class PointBatch:
    """One frame of points: flat xyz positions and matching flat rgb colors."""

    positions: np.ndarray
    colors: np.ndarray

    @classmethod
    def from_sequences(cls, positions: Any, colors: Any) -> "PointBatch":
        """Validate and build a batch; raises InvalidPointBatch on any shape violation."""
        if positions is None or colors is None:
            raise InvalidPointBatch("positions and colors are required")

        positions = _as_flat_array(positions, "positions")
        colors = _as_flat_array(colors, "colors")

        if len(positions) == 0:
            raise InvalidPointBatch("Point batch is empty")
        if len(positions) != len(colors):
            raise InvalidPointBatch("positions and colors differ in length", {
                "positions": len(positions),
                "colors": len(colors)
            })
        if len(positions) % 3 != 0:
            raise InvalidPointBatch("Lengths must be multiples of 3", {"length": len(positions)})

        return cls(positions=positions, colors=colors)

    @property
    def point_count(self) -> int:
        return len(self.positions) // 3

    def downsample(self, stride: int) -> "PointBatch":
        """Keep every `stride`-th point, applied identically to positions and colors."""
        if stride <= 1:
            return self
        return PointBatch(
            positions=self.positions.reshape(-1, 3)[::stride].reshape(-1),
            colors=self.colors.reshape(-1, 3)[::stride].reshape(-1),
        )


def encode_batch(batch: PointBatch) -> bytes:
    """Concatenate positions and colors into one float32 buffer."""
    if len(batch.positions) != len(batch.colors):
        raise InvalidPointBatch("positions and colors differ in length", {
            "positions": len(batch.positions),
            "colors": len(batch.colors)
        })
    combined = np.concatenate((batch.positions, batch.colors)).astype(WIRE_DTYPE, copy=False)
    return combined.tobytes()


def encode_json_batch(batch: PointBatch) -> str:
    """JSON ``pointCloudData`` envelope carrying the batch as plain number lists."""
    return json.dumps({
        'type': ControlType.POINT_CLOUD_DATA.value,
        'positions': batch.positions.tolist(),
        'colors': batch.colors.tolist(),
    })


def decode_batch(data: bytes) -> PointBatch:
    """Split a binary point message at its midpoint."""
    if not data:
        raise InvalidPointBatch("Empty point message")
    if len(data) % WIRE_DTYPE.itemsize != 0:
        raise InvalidPointBatch("Point message is not a float32 buffer", {"byte_length": len(data)})

    values = np.frombuffer(data, dtype=WIRE_DTYPE).astype(np.float32)
    if len(values) % 2 != 0:
        raise InvalidPointBatch("Point message has an odd element count", {"elements": len(values)})

    half = len(values) // 2
    return PointBatch.from_sequences(values[:half], values[half:])


def parse_control(raw: Union[str, bytes]) -> Optional[Dict[str, Any]]:
    """Return the control envelope carried by `raw`, or None when it is not one."""
    if isinstance(raw, (bytes, bytearray, memoryview)):
        raw = bytes(raw)
        stripped = raw.strip()
        if not (stripped.startswith(b'{') and stripped.endswith(b'}')):
            return None
        try:
            raw = stripped.decode('utf-8')
        except UnicodeDecodeError:
            return None

    try:
        message = json.loads(raw)
    except (TypeError, ValueError):
        return None

    if isinstance(message, dict) and 'type' in message:
        return message
    return None


def _now_ms() -> int:
    return int(time.time() * 1000)


class PointCloudChannel(LoggerMixin):
    """Rate-gated, backpressure-aware point-cloud sender and receiver for one peer."""

    def __init__(self, send_interval: float = 0.5, buffer_ceiling: int = 5_000_000,
                 stride: int = 10, metrics: Optional[MetricsSink] = None, peer_id: str = "",
                 binary: bool = True):
        super().__init__()
        if send_interval <= 0:
            raise ValueError("send_interval must be positive")
        self.send_interval = send_interval
        self.buffer_ceiling = buffer_ceiling
        self.stride = 1
        self.set_stride(stride)
        self.metrics = metrics or MetricsSink()
        self.peer_id = peer_id
        self.binary = binary

        self.transport = None
        self.ready = False
        self.closed = False
        self.remote_view_mode: Optional[ViewMode] = None
        self.last_rtt_ms: Optional[float] = None

        self.on_point_batch: Optional[Callable[[PointBatch], None]] = None
        self.on_view_mode_change: Optional[Callable[[ViewMode], None]] = None
        self.on_overflow: Optional[Callable[[TransportOverflow], None]] = None

        self._pending: Optional[PointBatch] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._fps_window_start = time.monotonic()
        self._fps_window_count = 0

        self.counters = {
            'submitted': 0,
            'transmitted': 0,
            'coalesced': 0,
            'skipped_backpressure': 0,
            'received': 0,
            'dropped_inbound': 0,
            'bytes_sent': 0,
            'bytes_received': 0,
        }

    def set_stride(self, stride: int):
        if stride < 1:
            raise ValueError(f"stride must be >= 1, got {stride}")
        self.stride = stride

    # Transport binding

    def bind(self, transport):
        """Attach to a (new) transport; sending waits until `transport_ready`."""
        self._cancel_timer()
        self.transport = transport
        self.ready = False

    def transport_ready(self):
        """The data channel is open: flush whatever was queued meanwhile."""
        if self.closed or self.transport is None:
            return
        self.ready = True
        if self._pending is not None:
            self.flush()

    def transport_lost(self):
        self.ready = False
        self._cancel_timer()

    # Send path

    def send(self, positions: Any, colors: Any) -> bool:
        """
        Submit a batch for transmission.

        Invalid batches raise InvalidPointBatch with no side effect. Valid
        batches replace any batch still waiting for the gate; the gate then
        transmits only the latest one. Returns False only when closed.
        """
        batch = PointBatch.from_sequences(positions, colors)
        if self.closed:
            return False

        self.counters['submitted'] += 1
        if self._pending is not None:
            self.counters['coalesced'] += 1
        self._pending = batch

        if self.ready:
            self._arm_timer()
        return True

    def _arm_timer(self):
        if self._timer is not None:
            return
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.send_interval, self._on_gate_open)

    def _cancel_timer(self):
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_gate_open(self):
        self._timer = None
        self.flush()

    def _encode(self, batch: PointBatch) -> Union[bytes, str]:
        return encode_batch(batch) if self.binary else encode_json_batch(batch)

    def flush(self) -> bool:
        """Transmit the pending batch now, subject to the backpressure gate."""
        if self.closed or not self.ready or self._pending is None:
            return False

        batch, self._pending = self._pending, None

        outstanding = self.transport.outstanding_bytes()
        if outstanding >= self.buffer_ceiling:
            self.counters['skipped_backpressure'] += 1
            self.log_warning("Data channel buffer full, skipping point batch", {
                "peer_id": self.peer_id,
                "outstanding_mb": outstanding / 1_000_000,
                "ceiling_mb": self.buffer_ceiling / 1_000_000
            })
            return False

        payload = self._encode(batch.downsample(self.stride))
        try:
            sent = self.transport.send(payload)
        except TransportOverflow as e:
            self.log_error("Data channel send queue overflow", {
                "peer_id": self.peer_id,
                "payload_bytes": len(payload),
                "error": str(e)
            })
            if self.on_overflow is not None:
                self.on_overflow(e)
            return False

        if not sent:
            self.ready = False
            self._pending = batch
            return False

        self.counters['transmitted'] += 1
        self.counters['bytes_sent'] += len(payload)
        self.metrics.record_bytes_sent(len(payload))
        self.log_debug("Point batch sent", {
            "peer_id": self.peer_id,
            "points": batch.point_count,
            "bytes": len(payload)
        })
        return True

    def send_control(self, message: Dict[str, Any]) -> bool:
        """Send a control envelope immediately; control messages bypass the gate."""
        if self.closed or not self.ready:
            return False
        try:
            return self.transport.send(json.dumps(message))
        except TransportOverflow as e:
            self.log_warning("Control message dropped, send queue full", {
                "type": message.get('type'),
                "error": str(e)
            })
            return False

    def send_view_mode(self, mode: Union[ViewMode, str]) -> bool:
        mode = ViewMode(mode)
        return self.send_control({'type': ControlType.VIEW_MODE_CHANGE.value, 'mode': mode.value})

    def send_test(self) -> bool:
        return self.send_control({
            'type': ControlType.TEST.value,
            'message': 'data channel test',
            'timestamp': _now_ms()
        })

    # Receive path

    def receive(self, raw: Union[str, bytes]):
        """Handle one inbound data-channel message; malformed input is logged and dropped."""
        if self.closed:
            return

        message = parse_control(raw)
        if message is not None:
            self._handle_control(message)
            return

        if isinstance(raw, str):
            self._drop_inbound("Text message is not a control envelope", {"preview": raw[:100]})
            return

        try:
            batch = decode_batch(bytes(raw))
        except InvalidPointBatch as e:
            self._drop_inbound("Malformed binary point message", {"error": str(e)})
            return

        self.counters['bytes_received'] += len(raw)
        self.metrics.record_bytes_received(len(raw))
        self._deliver(batch)

    def _drop_inbound(self, reason: str, data: Dict[str, Any]):
        self.counters['dropped_inbound'] += 1
        self.log_warning(reason, dict(data, peer_id=self.peer_id))

    def _handle_control(self, message: Dict[str, Any]):
        message_type = message.get('type')

        if message_type == ControlType.POINT_CLOUD_DATA.value:
            try:
                batch = PointBatch.from_sequences(message.get('positions'), message.get('colors'))
            except InvalidPointBatch as e:
                self._drop_inbound("Invalid JSON point-cloud message", {"error": str(e)})
                return
            self._deliver(batch)

        elif message_type == ControlType.VIEW_MODE_CHANGE.value:
            try:
                mode = ViewMode(message.get('mode'))
            except ValueError:
                self.log_warning("Rejecting unknown view mode", {
                    "peer_id": self.peer_id,
                    "mode": message.get('mode')
                })
                return
            self.remote_view_mode = mode
            debug_log(f"🖼️ [PointCloud] View mode change requested", {
                "peer_id": self.peer_id,
                "mode": mode.value
            })
            if self.on_view_mode_change is not None:
                self._call("on_view_mode_change", self.on_view_mode_change, mode)

        elif message_type == ControlType.TEST.value:
            self.log_info("Data channel test message received", {"peer_id": self.peer_id})
            self.send_control({
                'type': ControlType.TEST_RESPONSE.value,
                'message': 'test response',
                'originalTimestamp': message.get('timestamp'),
                'timestamp': _now_ms()
            })

        elif message_type == ControlType.TEST_RESPONSE.value:
            original = message.get('originalTimestamp')
            if isinstance(original, (int, float)):
                self.last_rtt_ms = _now_ms() - original
                self.metrics.record_latency('round_trip', self.last_rtt_ms)
                self.log_info("Data channel round trip", {
                    "peer_id": self.peer_id,
                    "rtt_ms": self.last_rtt_ms
                })

        else:
            self.log_debug("Ignoring control message of unknown type", {"type": message_type})

    def _deliver(self, batch: PointBatch):
        self.counters['received'] += 1
        self._track_frame_rate()
        if self.on_point_batch is None:
            self.log_debug("Point batch received but no handler is set")
            return
        self._call("on_point_batch", self.on_point_batch, batch)

    def _track_frame_rate(self):
        self._fps_window_count += 1
        elapsed = time.monotonic() - self._fps_window_start
        if elapsed >= 1.0:
            self.metrics.record_frame_rate(self._fps_window_count / elapsed)
            self._fps_window_start = time.monotonic()
            self._fps_window_count = 0

    def _call(self, name: str, callback: Callable, *args: Any):
        try:
            callback(*args)
        except Exception as e:
            self.metrics.record_exception()
            self.log_error("Error in point-cloud callback", {
                "callback": name,
                "error": str(e),
                "error_type": type(e).__name__
            })

    # Lifecycle

    def close(self):
        """Stop the gate, drop pending data and silence all further callbacks."""
        self.closed = True
        self.ready = False
        self._cancel_timer()
        self._pending = None

    @property
    def has_pending(self) -> bool:
        return self._pending is not None

    def stats(self) -> Dict[str, Any]:
        return dict(
            self.counters,
            stride=self.stride,
            binary=self.binary,
            ready=self.ready,
            pending=self.has_pending,
            last_rtt_ms=self.last_rtt_ms,
            remote_view_mode=self.remote_view_mode.value if self.remote_view_mode else None
        )
