"""
In-memory metrics collector for modguard.

Counts validation verdicts and sandbox runs for the health and metrics
endpoints. Nothing is persisted.
"""

from dataclasses import asdict, dataclass
from threading import Lock
from typing import Any, Dict


@dataclass(frozen=True)
class MetricsSnapshot:
    """Immutable view of current pipeline metrics."""

    validations_started: int = 0
    validations_passed: int = 0
    validations_warning: int = 0
    validations_failed: int = 0
    validations_errored: int = 0
    validations_in_progress: int = 0
    sandbox_runs: int = 0
    sandbox_completed: int = 0
    sandbox_failed: int = 0
    sandbox_timeouts: int = 0
    avg_sandbox_duration_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class InMemoryMetricsCollector:
    """Thread-safe counters fed by the ValidationManager."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._verdicts: Dict[str, int] = {"passed": 0, "warning": 0, "failed": 0, "error": 0}
        self._started = 0
        self._sandbox: Dict[str, int] = {"completed": 0, "failed": 0, "timeout": 0}
        self._sandbox_runs = 0
        self._sandbox_duration_total = 0

    def record_validation_started(self) -> None:
        with self._lock:
            self._started += 1

    def record_validation_finished(self, overall_status: str) -> None:
        """Record a verdict; ``error`` for a validation that raised."""
        with self._lock:
            self._verdicts[overall_status] = self._verdicts.get(overall_status, 0) + 1

    def record_sandbox_run(self, status: str, duration_ms: int, timed_out: bool = False) -> None:
        """Record a sandbox run that reached a terminal state."""
        with self._lock:
            self._sandbox[status] = self._sandbox.get(status, 0) + 1
            if timed_out:
                self._sandbox["timeout"] += 1
            self._sandbox_runs += 1
            self._sandbox_duration_total += int(duration_ms)

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            verdicts = dict(self._verdicts)
            started = self._started
            sandbox = dict(self._sandbox)
            runs = self._sandbox_runs
            duration_total = self._sandbox_duration_total

        finished = sum(verdicts.values())
        avg = duration_total / runs if runs else 0.0

        return MetricsSnapshot(
            validations_started=started,
            validations_passed=verdicts.get("passed", 0),
            validations_warning=verdicts.get("warning", 0),
            validations_failed=verdicts.get("failed", 0),
            validations_errored=verdicts.get("error", 0),
            validations_in_progress=max(started - finished, 0),
            sandbox_runs=runs,
            sandbox_completed=sandbox.get("completed", 0),
            sandbox_failed=sandbox.get("failed", 0),
            sandbox_timeouts=sandbox.get("timeout", 0),
            avg_sandbox_duration_ms=round(avg, 2),
        )

    def reset(self) -> None:
        with self._lock:
            self._verdicts = {"passed": 0, "warning": 0, "failed": 0, "error": 0}
            self._started = 0
            self._sandbox = {"completed": 0, "failed": 0, "timeout": 0}
            self._sandbox_runs = 0
            self._sandbox_duration_total = 0
