"""
Simple in-memory metrics for Prometheus exposition.
Thread-safe counters.
"""
import threading
from typing import Dict

# Counter name -> help text, in exposition order
COUNTER_HELP: Dict[str, str] = {
    "build_submitted_total": "Total build jobs submitted",
    "build_started_total": "Total build pipelines started",
    "build_ready_total": "Total build jobs finished successfully",
    "build_failed_total": "Total build jobs failed",
    "build_cancelled_total": "Total build jobs cancelled",
    "build_rebuild_total": "Total rebuild requests accepted",
    "tool_invocations_total": "Total external tool invocations",
    "tool_timeouts_total": "Total external tool invocations killed on timeout",
    "cache_restored_total": "Total build cache restores",
    "cache_saved_total": "Total build cache saves",
    "media_published_total": "Total media files published",
    "media_uploaded_total": "Total client media attach requests stored",
    "best_effort_failures_total": "Total non-fatal step failures",
}


class Metrics:
    """Thread-safe metrics collection."""

    def __init__(self):
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = {
            "requests_total": 0,
            "requests_2xx": 0,
            "requests_4xx": 0,
            "requests_5xx": 0,
        }
        for name in COUNTER_HELP:
            self._counters[name] = 0

    def inc(self, name: str, value: int = 1) -> None:
        """Increment a counter."""
        with self._lock:
            if name not in self._counters:
                self._counters[name] = 0
            self._counters[name] += value

    def get(self, name: str) -> int:
        """Get a counter value."""
        with self._lock:
            return self._counters.get(name, 0)

    def get_all(self) -> Dict[str, int]:
        """Get all counter values."""
        with self._lock:
            return self._counters.copy()

    def to_prometheus(self) -> str:
        """Export metrics in Prometheus text format."""
        lines = []
        counters = self.get_all()

        lines.append("# HELP builder_requests_total Total HTTP requests")
        lines.append("# TYPE builder_requests_total counter")
        lines.append(f"builder_requests_total {counters['requests_total']}")

        lines.append("# HELP builder_requests_by_status HTTP requests by status class")
        lines.append("# TYPE builder_requests_by_status counter")
        for status_class in ("2xx", "4xx", "5xx"):
            lines.append(
                f'builder_requests_by_status{{status="{status_class}"}} '
                f'{counters[f"requests_{status_class}"]}'
            )

        for name, help_text in COUNTER_HELP.items():
            lines.append(f"# HELP builder_{name} {help_text}")
            lines.append(f"# TYPE builder_{name} counter")
            lines.append(f"builder_{name} {counters.get(name, 0)}")

        return "\n".join(lines) + "\n"


# Global metrics instance
metrics = Metrics()
