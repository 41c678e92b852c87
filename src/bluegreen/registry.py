"""
Deployment registry and the promote/rollback state machine.

The registry owns every deployment record and the audit set of health checks.
All writes, and every read that spans several records, run under the lock it
shares with the traffic controller, so a promote or rollback sweep is never
observed half-applied. Each mutation appends to the audit log and schedules one
snapshot write once the whole change is in place.
"""

import builtins
import json
import logging
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime
from typing import Any

from .audit import LogSink
from .exceptions import NotFoundError, ValidationError
from .models import (
    Deployment,
    DeploymentCreate,
    DeploymentStatus,
    DeploymentUpdate,
    Environment,
    HealthCheck,
    HealthCheckCreate,
    PersistedState,
    TrafficSplit,
    new_id,
    parse_payload,
    parse_timestamp,
    utcnow,
)
from .persistence import CURRENT_SCHEMA_VERSION, PersistenceManager
from .traffic import TrafficController

logger = logging.getLogger(__name__)


def _coerce_environment(environment: Environment | str) -> Environment:
    try:
        return Environment(environment)
    except ValueError as e:
        raise ValidationError(
            f"Unknown environment: {environment}",
            details=[{"loc": ["environment"], "msg": "must be 'blue' or 'green'"}],
            cause=e,
        ) from e


def _newest_first(deployments: builtins.list[Deployment]) -> builtins.list[Deployment]:
    return sorted(deployments, key=lambda d: d.deployed_at, reverse=True)


class DeploymentRegistry:
    """Owns deployment records; composes traffic, audit log and persistence."""

    def __init__(
        self,
        traffic: TrafficController,
        log_sink: LogSink,
        persistence: PersistenceManager | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.traffic = traffic
        self.log_sink = log_sink
        self.persistence = persistence
        self._clock = clock
        self._lock = traffic.lock
        self._deployments: builtins.dict[str, Deployment] = {}
        self._health_checks: builtins.dict[str, HealthCheck] = {}

        if traffic.on_change is None:
            traffic.on_change = self.schedule_snapshot

    @property
    def lock(self):
        return self._lock

    # State transfer

    def restore(self, state: PersistedState) -> None:
        """Install loaded state (startup only, before any request is served)."""
        self._deployments = {d.id: d.copy() for d in state.deployments}
        self._health_checks = {h.id: replace(h) for h in state.health_checks}
        self.traffic.restore(state.traffic_split)
        self.log_sink.restore(state.logs)

    def snapshot(self) -> PersistedState:
        """Consistent copy of the full state for persistence."""
        return PersistedState(
            deployments=[d.copy() for d in self._deployments.values()],
            health_checks=[replace(h) for h in self._health_checks.values()],
            logs=self.log_sink.entries(),
            traffic_split=self.traffic.get(),
            schema_version=(
                self.persistence.schema_version if self.persistence else CURRENT_SCHEMA_VERSION
            ),
        )

    def schedule_snapshot(self) -> None:
        if self.persistence is not None:
            self.persistence.schedule_save(self.snapshot())

    def _require(self, deployment_id: str) -> Deployment:
        deployment = self._deployments.get(deployment_id)
        if deployment is None:
            raise NotFoundError(deployment_id)
        return deployment

    # Queries

    async def get_all(self) -> builtins.list[Deployment]:
        """All deployments, most recently deployed first."""
        async with self._lock:
            return [d.copy() for d in _newest_first(list(self._deployments.values()))]

    async def get_by_environment(self, environment: Environment | str) -> builtins.list[Deployment]:
        env = _coerce_environment(environment)
        async with self._lock:
            matching = [d for d in self._deployments.values() if d.environment is env]
            return [d.copy() for d in _newest_first(matching)]

    async def get_by_id(self, deployment_id: str) -> Deployment:
        async with self._lock:
            return self._require(deployment_id).copy()

    async def get_previous(self, environment: Environment | str) -> Deployment | None:
        """Second most recent deployment of an environment (the one before current)."""
        deployments = await self.get_by_environment(environment)
        return deployments[1] if len(deployments) > 1 else None

    async def get_current(self) -> builtins.dict[str, Deployment | None]:
        """Most recent deployment of each environment."""
        async with self._lock:
            ordered = _newest_first(list(self._deployments.values()))
        current: builtins.dict[str, Deployment | None] = {env.value: None for env in Environment}
        for deployment in ordered:
            if current[deployment.environment.value] is None:
                current[deployment.environment.value] = deployment.copy()
        return current

    async def get_active(self) -> Deployment | None:
        async with self._lock:
            for deployment in _newest_first(list(self._deployments.values())):
                if deployment.status is DeploymentStatus.ACTIVE:
                    return deployment.copy()
        return None

    # Mutations

    async def create(self, spec: DeploymentCreate | builtins.dict[str, Any]) -> Deployment:
        """Register a new deployment with a generated id, deployed now."""
        spec = parse_payload(DeploymentCreate, spec, "deployment")
        async with self._lock:
            deployment = Deployment(
                id=new_id(),
                environment=spec.environment,
                version=spec.version,
                commit_hash=spec.commit_hash,
                commit_message=spec.commit_message,
                status=spec.status,
                deployed_at=self._clock(),
                health_check_status=spec.health_check_status,
                metrics=dict(spec.metrics or {}),
            )
            self._deployments[deployment.id] = deployment
            self.log_sink.info(
                f"Deployment {deployment.version} created for {deployment.environment.value} environment",
                deployment_id=deployment.id,
            )
            self.schedule_snapshot()
            return deployment.copy()

    async def update(
        self, deployment_id: str, changes: DeploymentUpdate | builtins.dict[str, Any]
    ) -> Deployment:
        """Merge the supplied fields into an existing deployment."""
        update = parse_payload(DeploymentUpdate, changes, "deployment update")
        fields = update.changes()
        async with self._lock:
            existing = self._require(deployment_id)
            updated = existing.copy(**fields)
            self._deployments[deployment_id] = updated

            serialized = update.model_dump(mode="json", by_alias=True, include=set(fields))
            self.log_sink.info(
                f"Deployment {existing.version} updated: {json.dumps(serialized, sort_keys=True)}",
                deployment_id=deployment_id,
            )
            self.schedule_snapshot()
            return updated.copy()

    async def promote(self, deployment_id: str) -> Deployment:
        """
        Make a deployment active and route all traffic to its environment.

        Only deployments in the *other* environment are set idle; siblings in
        the target's own environment keep their status.
        """
        async with self._lock:
            target = self._require(deployment_id)
            target.status = DeploymentStatus.ACTIVE
            idled = []
            for deployment in self._deployments.values():
                if deployment.id != target.id and deployment.environment is not target.environment:
                    deployment.status = DeploymentStatus.IDLE
                    idled.append(deployment.id)

            env = target.environment.value
            self.traffic.apply(TrafficSplit.toward(target.environment))
            self.log_sink.info(
                f"Promoted {env} environment: {target.version} ({target.commit_hash}). "
                f"All traffic now routing to {env}.",
                deployment_id=target.id,
                idled=idled,
            )
            self.schedule_snapshot()
            return target.copy()

    async def rollback(self, deployment_id: str) -> Deployment:
        """
        Reactivate a deployment and force every other deployment idle.

        Leaves exactly one active deployment system-wide and all traffic on
        the target's environment.
        """
        async with self._lock:
            target = self._require(deployment_id)
            target.status = DeploymentStatus.ACTIVE
            idled = []
            for deployment in self._deployments.values():
                if deployment.id != target.id:
                    deployment.status = DeploymentStatus.IDLE
                    idled.append(deployment.id)

            env = target.environment.value
            self.traffic.apply(TrafficSplit.toward(target.environment))
            self.log_sink.warn(
                f"Rolled back to {env} environment: {target.version} ({target.commit_hash}). "
                f"All traffic now routing to {env}.",
                deployment_id=target.id,
                idled=idled,
            )
            self.schedule_snapshot()
            return target.copy()

    # Health checks

    async def record_health_check(
        self, spec: HealthCheckCreate | builtins.dict[str, Any]
    ) -> HealthCheck:
        """Store a health-check result in the audit set."""
        spec = parse_payload(HealthCheckCreate, spec, "health check")
        async with self._lock:
            check = HealthCheck(
                id=new_id(),
                deployment_id=spec.deployment_id,
                endpoint=spec.endpoint,
                status=spec.status,
                response_time=spec.response_time,
                checked_at=parse_timestamp(spec.checked_at) or self._clock(),
            )
            self._health_checks[check.id] = check
            self.schedule_snapshot()
            return replace(check)

    async def get_health_checks(self, deployment_id: str) -> builtins.list[HealthCheck]:
        async with self._lock:
            return [
                replace(h) for h in self._health_checks.values() if h.deployment_id == deployment_id
            ]
