"""
Sliding-window health metrics and the promotion-abort decision.

The monitor keeps, per deployment, the health-check samples whose own
``checked_at`` falls inside the trailing window and derives error rate, mean
latency and success rate from them. ``should_abort_promotion`` is advisory: it
never changes deployment state itself.
"""

import builtins
import threading
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta

from .models import HealthCheck, HealthCheckStatus, utcnow

DEFAULT_WINDOW = timedelta(minutes=5)
DEFAULT_MAX_SAMPLES = 1000


@dataclass(frozen=True)
class MetricThresholds:
    """Limits beyond which a promotion should be aborted."""

    error_rate: float = 5.0  # percentage
    max_latency: float = 1000.0  # milliseconds
    min_success_rate: float = 95.0  # percentage
    min_uptime: float = 99.0  # percentage, not consulted by should_abort_promotion


DEFAULT_THRESHOLDS = MetricThresholds()


@dataclass(frozen=True)
class DeploymentMetrics:
    """Statistics over the samples currently in the window."""

    deployment_id: str
    sample_count: int
    error_rate: float
    average_latency: float
    success_rate: float

    def to_dict(self) -> builtins.dict[str, float | int | str]:
        return {
            "deploymentId": self.deployment_id,
            "sampleCount": self.sample_count,
            "errorRate": self.error_rate,
            "avgLatency": self.average_latency,
            "successRate": self.success_rate,
        }


class MetricsMonitor:
    """Per-deployment sliding-window aggregation of health-check samples."""

    def __init__(
        self,
        window: timedelta = DEFAULT_WINDOW,
        max_samples: int = DEFAULT_MAX_SAMPLES,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.window = window
        self.max_samples = max_samples
        self._clock = clock
        self._samples: builtins.dict[str, deque[HealthCheck]] = {}
        self._lock = threading.Lock()

    def add_sample(self, check: HealthCheck) -> None:
        """Record a sample and drop those that have left the window."""
        with self._lock:
            samples = self._samples.get(check.deployment_id)
            if samples is None:
                samples = deque(maxlen=self.max_samples)
                self._samples[check.deployment_id] = samples
            samples.append(check)
            self._prune(check.deployment_id, self._clock())

    def add_samples(self, checks: Iterable[HealthCheck]) -> None:
        for check in checks:
            self.add_sample(check)

    def _prune(self, deployment_id: str, now: datetime) -> builtins.list[HealthCheck]:
        samples = self._samples.get(deployment_id)
        if not samples:
            return []
        kept = [c for c in samples if now - c.checked_at <= self.window]
        if len(kept) != len(samples):
            self._samples[deployment_id] = deque(kept, maxlen=self.max_samples)
        return kept

    def _window_samples(self, deployment_id: str) -> builtins.list[HealthCheck]:
        with self._lock:
            return self._prune(deployment_id, self._clock())

    def get_error_rate(self, deployment_id: str) -> float:
        return _error_rate(self._window_samples(deployment_id))

    def get_average_latency(self, deployment_id: str) -> float:
        return _average_latency(self._window_samples(deployment_id))

    def get_success_rate(self, deployment_id: str) -> float:
        return _success_rate(self._window_samples(deployment_id))

    def get_metrics(self, deployment_id: str) -> DeploymentMetrics:
        """All three statistics computed over one consistent view of the window."""
        samples = self._window_samples(deployment_id)
        return DeploymentMetrics(
            deployment_id=deployment_id,
            sample_count=len(samples),
            error_rate=_error_rate(samples),
            average_latency=_average_latency(samples),
            success_rate=_success_rate(samples),
        )

    def should_abort_promotion(
        self, deployment_id: str, thresholds: MetricThresholds = DEFAULT_THRESHOLDS
    ) -> bool:
        metrics = self.get_metrics(deployment_id)
        return (
            metrics.error_rate > thresholds.error_rate
            or metrics.average_latency > thresholds.max_latency
            or metrics.success_rate < thresholds.min_success_rate
        )

    def clear_old_checks(self) -> None:
        """Prune every tracked deployment against the current time."""
        with self._lock:
            now = self._clock()
            for deployment_id in list(self._samples):
                if not self._prune(deployment_id, now):
                    del self._samples[deployment_id]

    def tracked_deployments(self) -> builtins.list[str]:
        with self._lock:
            return [d for d, samples in self._samples.items() if samples]


def _error_rate(samples: builtins.list[HealthCheck]) -> float:
    if not samples:
        return 0.0
    failing = sum(1 for c in samples if c.status is HealthCheckStatus.FAILING)
    return 100 * failing / len(samples)


def _average_latency(samples: builtins.list[HealthCheck]) -> float:
    if not samples:
        return 0.0
    return sum(c.response_time or 0 for c in samples) / len(samples)


def _success_rate(samples: builtins.list[HealthCheck]) -> float:
    if not samples:
        return 100.0
    passing = sum(1 for c in samples if c.status is HealthCheckStatus.PASSING)
    return 100 * passing / len(samples)
