"""
Metrics sinks for session and transport observability.

Sessions and point-cloud channels receive a sink at construction time. The
base class ignores everything, so callers only override what they collect.
"""
import time
from collections import defaultdict, deque
from typing import Any, Deque, Dict


class MetricsSink:
    """No-op metrics sink; subclasses override the hooks they care about."""

    def record_latency(self, stage: str, milliseconds: float) -> None:
        pass

    def record_frame_rate(self, fps: float) -> None:
        pass

    def record_connection_time(self, milliseconds: float) -> None:
        pass

    def record_ice_candidate_count(self, count: int) -> None:
        pass

    def record_bytes_sent(self, count: int) -> None:
        pass

    def record_bytes_received(self, count: int) -> None:
        pass

    def record_exception(self) -> None:
        pass


class InMemoryMetricsSink(MetricsSink):
    """Keeps a bounded window of samples per metric."""

    def __init__(self, max_samples: int = 1000):
        self.max_samples = max_samples
        self.samples: Dict[str, Deque[float]] = defaultdict(lambda: deque(maxlen=self.max_samples))
        self.exception_count = 0
        self.total_bytes_sent = 0
        self.total_bytes_received = 0
        self.started_at = time.monotonic()

    def _add(self, name: str, value: float):
        self.samples[name].append(float(value))

    def record_latency(self, stage: str, milliseconds: float) -> None:
        self._add(f"latency.{stage}", milliseconds)

    def record_frame_rate(self, fps: float) -> None:
        self._add("stability.frame_rate", fps)

    def record_connection_time(self, milliseconds: float) -> None:
        self._add("webrtc.connection_time", milliseconds)

    def record_ice_candidate_count(self, count: int) -> None:
        self._add("webrtc.candidate_count", count)

    def record_bytes_sent(self, count: int) -> None:
        self.total_bytes_sent += count
        self._add("network.bytes_sent", count)

    def record_bytes_received(self, count: int) -> None:
        self.total_bytes_received += count
        self._add("network.bytes_received", count)

    def record_exception(self) -> None:
        self.exception_count += 1

    def summary(self) -> Dict[str, Any]:
        """Aggregate count/min/max/avg for every metric seen so far."""
        metrics = {}
        for name, values in self.samples.items():
            if not values:
                continue
            metrics[name] = {
                "count": len(values),
                "min": min(values),
                "max": max(values),
                "avg": sum(values) / len(values),
            }
        return {
            "uptime_seconds": time.monotonic() - self.started_at,
            "exception_count": self.exception_count,
            "total_bytes_sent": self.total_bytes_sent,
            "total_bytes_received": self.total_bytes_received,
            "metrics": metrics,
        }
