"""
Composition root for the deployment controller.

``BlueGreenService`` constructs exactly one audit log, metrics monitor,
persistence manager, traffic controller and registry, restores state at
startup and exposes the health-check ingestion path used by request
instrumentation.
"""

import builtins
import logging
import os
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from .audit import LogSink
from .config import BlueGreenSettings
from .models import (
    DeploymentStatus,
    HealthCheck,
    HealthCheckCreate,
    utcnow,
)
from .monitoring import DeploymentMetrics, MetricsMonitor, MetricThresholds
from .persistence import PersistenceManager
from .registry import DeploymentRegistry
from .traffic import TrafficController

logger = logging.getLogger(__name__)


class BlueGreenService:
    """Owns the controller components for one process."""

    def __init__(
        self,
        settings: BlueGreenSettings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings or BlueGreenSettings()
        self._clock = clock

        self.log_sink = LogSink(capacity=self.settings.log_capacity, clock=clock)
        self.monitor = MetricsMonitor(
            window=timedelta(seconds=self.settings.metrics_window_seconds),
            max_samples=self.settings.max_samples_per_deployment,
            clock=clock,
        )
        self.thresholds = MetricThresholds(
            error_rate=self.settings.error_rate_threshold,
            max_latency=self.settings.max_latency_ms,
            min_success_rate=self.settings.min_success_rate,
            min_uptime=self.settings.min_uptime,
        )
        self.persistence = PersistenceManager(
            self.settings.data_file, log_sink=self.log_sink, clock=clock
        )
        self.traffic = TrafficController(self.log_sink)
        self.registry = DeploymentRegistry(
            self.traffic, self.log_sink, self.persistence, clock=clock
        )
        self.started_at: datetime | None = None

    async def start(self) -> None:
        """Load (or initialize) persisted state and seed the monitor."""
        state = await self.persistence.load_or_initialize()
        self.registry.restore(state)
        self.monitor.add_samples(state.health_checks)

        for migration in self.persistence.applied_migrations:
            self.log_sink.info(
                f"Applied migration {migration.version}: {migration.description}",
                schema_version=migration.version,
            )
        if self.persistence.applied_migrations:
            self.persistence.schedule_save(self.registry.snapshot())

        self.started_at = self._clock()
        logger.info(
            "Deployment controller started",
            extra={
                "data_file": str(self.persistence.data_file),
                "schema_version": self.persistence.schema_version,
                "sample_data": self.persistence.initialized_from_sample,
            },
        )

    async def close(self) -> None:
        """Wait for pending snapshot writes."""
        await self.persistence.flush()
        logger.info("Deployment controller stopped")

    # Health-check ingestion

    async def ingest_health_check(
        self, spec: HealthCheckCreate | builtins.dict[str, Any]
    ) -> HealthCheck:
        """
        Record a health-check result, feed the monitor and flag threshold breaches.

        The abort decision is only reported in the audit log; promotion state
        is left for the caller to act on.
        """
        check = await self.registry.record_health_check(spec)
        self.monitor.add_sample(check)
        if self.monitor.should_abort_promotion(check.deployment_id, self.thresholds):
            self.log_sink.warn(
                f"Metrics threshold breached for deployment {check.deployment_id}. "
                "Promotion will be aborted.",
                deployment_id=check.deployment_id,
            )
            async with self.registry.lock:
                self.registry.schedule_snapshot()
        return check

    def should_abort_promotion(self, deployment_id: str) -> bool:
        return self.monitor.should_abort_promotion(deployment_id, self.thresholds)

    def metrics_for(self, deployment_id: str) -> DeploymentMetrics:
        return self.monitor.get_metrics(deployment_id)

    # Read models for the request layer

    async def health(self) -> builtins.dict[str, Any]:
        active = await self.registry.get_active()
        uptime = (self._clock() - self.started_at).total_seconds() if self.started_at else 0
        return {
            "status": "ok",
            "uptimeSeconds": int(uptime),
            "activeDeployment": active.to_dict() if active else None,
            "trafficSplit": self.traffic.get().to_dict(),
            "commit": os.getenv("COMMIT_HASH"),
        }

    async def summary(self) -> builtins.dict[str, Any]:
        deployments = await self.registry.get_all()
        active = next((d for d in deployments if d.status is DeploymentStatus.ACTIVE), None)
        total = len(deployments)
        successful = sum(
            1
            for d in deployments
            if d.status is DeploymentStatus.ACTIVE or d.health_check_status == "healthy"
        )
        realtime = None
        if active is not None:
            realtime = self.metrics_for(active.id).to_dict()
            realtime["shouldAbortPromotion"] = self.should_abort_promotion(active.id)
        return {
            "totalDeployments": total,
            "successRate": round(100 * successful / total, 1) if total else 0.0,
            "realtimeMetrics": realtime,
        }

    async def audit_trail(self, deployment_id: str) -> builtins.dict[str, Any]:
        deployment = await self.registry.get_by_id(deployment_id)
        health_checks = await self.registry.get_health_checks(deployment_id)
        logs = self.log_sink.query(deployment_id=deployment_id)
        return {
            "deployment": deployment.to_dict(),
            "healthChecks": [h.to_dict() for h in health_checks],
            "logs": [entry.to_dict() for entry in logs],
            "metrics": self.metrics_for(deployment_id).to_dict(),
        }
