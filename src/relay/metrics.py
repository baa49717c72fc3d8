"""Prometheus-compatible metrics for relay observability.

Tracks connection churn, matchmaking throughput and message forwarding:
- Connections (total accepted, currently active)
- Matchmaking (pairings made, queue depth, how long pairs stay together)
- Forwarding (relayed, dropped on a closed socket, rejected as malformed)

Metrics are kept in memory and exposed via the health server's /metrics
endpoint in Prometheus exposition format. Nothing about call content or
participant identity is recorded.
"""

import logging
import threading
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass
class HistogramBucket:
    """Histogram bucket for duration distributions."""

    le: float  # Upper bound (less-than-or-equal)
    count: int = 0  # Cumulative observations <= le


@dataclass
class Histogram:
    """Histogram metric with fixed bucket boundaries.

    Buckets cover 1s to 1h, the useful range for how long a pairing lasts.
    """

    name: str
    help: str
    buckets: list[HistogramBucket] = field(
        default_factory=lambda: [
            HistogramBucket(le=1.0),
            HistogramBucket(le=5.0),
            HistogramBucket(le=15.0),
            HistogramBucket(le=30.0),
            HistogramBucket(le=60.0),
            HistogramBucket(le=300.0),
            HistogramBucket(le=900.0),
            HistogramBucket(le=3600.0),
            HistogramBucket(le=float("inf")),
        ]
    )
    sum: float = 0.0
    count: int = 0

    def observe(self, value: float) -> None:
        self.sum += value
        self.count += 1
        for bucket in self.buckets:
            if value <= bucket.le:
                bucket.count += 1

    def mean(self) -> float | None:
        if self.count == 0:
            return None
        return self.sum / self.count


@dataclass
class Counter:
    """Counter metric (monotonically increasing)."""

    name: str
    help: str
    value: float = 0.0

    def inc(self, amount: float = 1.0) -> None:
        self.value += amount


@dataclass
class Gauge:
    """Gauge metric (can go up or down)."""

    name: str
    help: str
    value: float = 0.0

    def set(self, value: float) -> None:
        self.value = value

    def inc(self, amount: float = 1.0) -> None:
        self.value += amount

    def dec(self, amount: float = 1.0) -> None:
        self.value -= amount


class MetricsCollector:
    """Thread-safe metrics collector with Prometheus-compatible output.

    Thread-safety: All public methods are thread-safe via mutex.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()

        self._counters: dict[str, Counter] = {
            "connections_total": Counter(
                name="connections_total",
                help="Total number of signaling connections accepted",
            ),
            "matches_total": Counter(
                name="matches_total",
                help="Total number of pairings made",
            ),
            "messages_forwarded_total": Counter(
                name="messages_forwarded_total",
                help="Total number of handshake envelopes relayed to a partner",
            ),
            "messages_dropped_total": Counter(
                name="messages_dropped_total",
                help="Total number of envelopes dropped (no partner or closed socket)",
            ),
            "messages_invalid_total": Counter(
                name="messages_invalid_total",
                help="Total number of envelopes rejected by schema validation",
            ),
        }
        self._gauges: dict[str, Gauge] = {
            "connections_active": Gauge(
                name="connections_active",
                help="Number of live signaling connections",
            ),
            "queue_depth": Gauge(
                name="queue_depth",
                help="Number of connections waiting for a partner",
            ),
        }
        self._histograms: dict[str, Histogram] = {
            "pair_duration_seconds": Histogram(
                name="pair_duration_seconds",
                help="How long a pairing lasted before next/leave/disconnect",
            ),
        }

        logger.info("MetricsCollector initialized")

    # === Connection metrics ===

    def record_connection_open(self) -> None:
        with self._lock:
            self._counters["connections_total"].inc()
            self._gauges["connections_active"].inc()

    def record_connection_close(self) -> None:
        with self._lock:
            self._gauges["connections_active"].dec()

    # === Matchmaking metrics ===

    def record_match(self) -> None:
        with self._lock:
            self._counters["matches_total"].inc()

    def record_pair_ended(self, duration_seconds: float) -> None:
        """Record the end of a pairing.

        Args:
            duration_seconds: Time between match and unpair
        """
        with self._lock:
            self._histograms["pair_duration_seconds"].observe(duration_seconds)

    def set_queue_depth(self, depth: int) -> None:
        with self._lock:
            self._gauges["queue_depth"].set(float(depth))

    # === Forwarding metrics ===

    def record_forwarded(self) -> None:
        with self._lock:
            self._counters["messages_forwarded_total"].inc()

    def record_dropped(self) -> None:
        with self._lock:
            self._counters["messages_dropped_total"].inc()

    def record_invalid(self) -> None:
        with self._lock:
            self._counters["messages_invalid_total"].inc()

    # === Export ===

    def export_prometheus(self) -> str:
        """Export all metrics in Prometheus exposition format.

        Returns:
            Metrics in Prometheus text format for scraping
        """
        with self._lock:
            lines: list[str] = []

            for counter in self._counters.values():
                lines.append(f"# HELP {counter.name} {counter.help}")
                lines.append(f"# TYPE {counter.name} counter")
                lines.append(f"{counter.name} {counter.value}")

            for gauge in self._gauges.values():
                lines.append(f"# HELP {gauge.name} {gauge.help}")
                lines.append(f"# TYPE {gauge.name} gauge")
                lines.append(f"{gauge.name} {gauge.value}")

            for histogram in self._histograms.values():
                lines.append(f"# HELP {histogram.name} {histogram.help}")
                lines.append(f"# TYPE {histogram.name} histogram")
                for bucket in histogram.buckets:
                    le = "+Inf" if bucket.le == float("inf") else str(bucket.le)
                    lines.append(f'{histogram.name}_bucket{{le="{le}"}} {bucket.count}')
                lines.append(f"{histogram.name}_sum {histogram.sum}")
                lines.append(f"{histogram.name}_count {histogram.count}")

            return "\n".join(lines) + "\n"

    def get_summary(self) -> dict[str, float | None]:
        """Get summary statistics for monitoring dashboard."""
        with self._lock:
            return {
                "connections_total": self._counters["connections_total"].value,
                "connections_active": self._gauges["connections_active"].value,
                "matches_total": self._counters["matches_total"].value,
                "queue_depth": self._gauges["queue_depth"].value,
                "messages_forwarded": self._counters["messages_forwarded_total"].value,
                "messages_dropped": self._counters["messages_dropped_total"].value,
                "messages_invalid": self._counters["messages_invalid_total"].value,
                "pair_duration_mean_s": self._histograms["pair_duration_seconds"].mean(),
            }
