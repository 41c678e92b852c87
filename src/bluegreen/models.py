"""
Data models for the blue/green deployment controller.

Domain records are plain dataclasses serialized to the camelCase JSON shape used
by the state snapshot and the HTTP API. Inbound payloads are validated with
pydantic models that accept both snake_case and camelCase keys.
"""

import builtins
import math
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictFloat,
    StrictInt,
    field_validator,
    model_validator,
)
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from .exceptions import ValidationError


class Environment(Enum):
    """Deployment slots."""

    BLUE = "blue"
    GREEN = "green"

    @property
    def opposite(self) -> "Environment":
        return Environment.GREEN if self is Environment.BLUE else Environment.BLUE


class DeploymentStatus(Enum):
    """Deployment status states."""

    ACTIVE = "active"
    IDLE = "idle"
    DEPLOYING = "deploying"
    FAILED = "failed"


class HealthCheckStatus(Enum):
    """Health check results."""

    PASSING = "passing"
    FAILING = "failing"
    PENDING = "pending"


class LogLevel(Enum):
    """Audit log levels."""

    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    DEBUG = "debug"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def format_timestamp(value: datetime | None) -> str | None:
    """Serialize a timestamp as ISO-8601."""
    if value is None:
        return None
    return value.isoformat()


def parse_timestamp(value: str | datetime | None) -> datetime | None:
    """Rehydrate an ISO-8601 timestamp; naive values are taken as UTC."""
    if value is None:
        return None
    parsed = value if isinstance(value, datetime) else datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class Deployment:
    """A version deployed into one of the two environments."""

    id: str
    environment: Environment
    version: str
    commit_hash: str
    status: DeploymentStatus = DeploymentStatus.IDLE
    deployed_at: datetime = field(default_factory=utcnow)
    commit_message: str | None = None
    health_check_status: str | None = None
    metrics: builtins.dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> builtins.dict[str, Any]:
        return {
            "id": self.id,
            "environment": self.environment.value,
            "version": self.version,
            "commitHash": self.commit_hash,
            "commitMessage": self.commit_message,
            "status": self.status.value,
            "deployedAt": format_timestamp(self.deployed_at),
            "healthCheckStatus": self.health_check_status,
            "metrics": dict(self.metrics),
        }

    @classmethod
    def from_dict(cls, data: builtins.dict[str, Any]) -> "Deployment":
        return cls(
            id=data["id"],
            environment=Environment(data["environment"]),
            version=data["version"],
            commit_hash=data["commitHash"],
            commit_message=data.get("commitMessage"),
            status=DeploymentStatus(data["status"]),
            deployed_at=parse_timestamp(data.get("deployedAt")) or utcnow(),
            health_check_status=data.get("healthCheckStatus"),
            metrics=dict(data.get("metrics") or {}),
        )

    def copy(self, **changes: Any) -> "Deployment":
        """Return a detached copy, optionally with fields replaced."""
        changes.setdefault("metrics", dict(self.metrics))
        return replace(self, **changes)


@dataclass
class HealthCheck:
    """A single timestamped health-check result for a deployment endpoint."""

    id: str
    deployment_id: str
    endpoint: str
    status: HealthCheckStatus
    response_time: float | None = None
    checked_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> builtins.dict[str, Any]:
        return {
            "id": self.id,
            "deploymentId": self.deployment_id,
            "endpoint": self.endpoint,
            "status": self.status.value,
            "responseTime": self.response_time,
            "checkedAt": format_timestamp(self.checked_at),
        }

    @classmethod
    def from_dict(cls, data: builtins.dict[str, Any]) -> "HealthCheck":
        return cls(
            id=data["id"],
            deployment_id=data["deploymentId"],
            endpoint=data["endpoint"],
            status=HealthCheckStatus(data["status"]),
            response_time=data.get("responseTime"),
            checked_at=parse_timestamp(data.get("checkedAt")) or utcnow(),
        )


@dataclass
class TrafficSplit:
    """Percentage of traffic routed to each environment."""

    blue: float = 100
    green: float = 0

    def to_dict(self) -> builtins.dict[str, float]:
        return {"blue": self.blue, "green": self.green}

    @classmethod
    def from_dict(cls, data: builtins.dict[str, Any]) -> "TrafficSplit":
        return cls(blue=data["blue"], green=data["green"])

    @classmethod
    def toward(cls, environment: Environment) -> "TrafficSplit":
        if environment is Environment.BLUE:
            return cls(blue=100, green=0)
        return cls(blue=0, green=100)


@dataclass
class LogEntry:
    """Audit log entry."""

    timestamp: datetime
    level: LogLevel
    message: str
    trace_id: str = field(default_factory=new_id)
    span_id: str = field(default_factory=new_id)
    metadata: builtins.dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> builtins.dict[str, Any]:
        return {
            "timestamp": format_timestamp(self.timestamp),
            "level": self.level.value,
            "message": self.message,
            "traceId": self.trace_id,
            "spanId": self.span_id,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: builtins.dict[str, Any]) -> "LogEntry":
        return cls(
            timestamp=parse_timestamp(data["timestamp"]),
            level=LogLevel(data["level"]),
            message=data["message"],
            trace_id=data.get("traceId") or new_id(),
            span_id=data.get("spanId") or new_id(),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class PersistedState:
    """Everything the snapshot file holds."""

    deployments: builtins.list[Deployment] = field(default_factory=list)
    health_checks: builtins.list[HealthCheck] = field(default_factory=list)
    logs: builtins.list[LogEntry] = field(default_factory=list)
    traffic_split: TrafficSplit = field(default_factory=TrafficSplit)
    schema_version: int = 1

    def to_dict(self) -> builtins.dict[str, Any]:
        return {
            "deployments": [d.to_dict() for d in self.deployments],
            "healthChecks": [h.to_dict() for h in self.health_checks],
            "logs": [entry.to_dict() for entry in self.logs],
            "trafficSplit": self.traffic_split.to_dict(),
            "schemaVersion": self.schema_version,
        }

    @classmethod
    def from_dict(cls, data: builtins.dict[str, Any]) -> "PersistedState":
        return cls(
            deployments=[Deployment.from_dict(d) for d in data["deployments"]],
            health_checks=[HealthCheck.from_dict(h) for h in data["healthChecks"]],
            logs=[LogEntry.from_dict(entry) for entry in data.get("logs") or []],
            traffic_split=TrafficSplit.from_dict(data["trafficSplit"]),
            schema_version=data["schemaVersion"],
        )


# Inbound payloads


def _is_finite(value: Any) -> bool:
    """False if ``value`` holds a NaN or infinite float at any depth."""
    if isinstance(value, float):
        return math.isfinite(value)
    if isinstance(value, dict):
        return all(_is_finite(v) for v in value.values())
    if isinstance(value, list | tuple):
        return all(_is_finite(v) for v in value)
    return True


class _Payload(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    @field_validator("metrics", check_fields=False)
    @classmethod
    def _finite_metrics(cls, value: Any) -> Any:
        if value is not None and not _is_finite(value):
            raise ValueError("metrics must not contain NaN or infinite numbers")
        return value


class DeploymentCreate(_Payload):
    """Fields accepted when registering a deployment."""

    environment: Environment
    version: str = Field(min_length=1)
    commit_hash: str = Field(min_length=1)
    commit_message: str | None = None
    status: DeploymentStatus = DeploymentStatus.IDLE
    health_check_status: str | None = None
    metrics: builtins.dict[str, Any] | None = None


class DeploymentUpdate(_Payload):
    """Partial deployment update; only explicitly supplied fields are merged."""

    environment: Environment | None = None
    version: str | None = Field(default=None, min_length=1)
    commit_hash: str | None = Field(default=None, min_length=1)
    commit_message: str | None = None
    status: DeploymentStatus | None = None
    health_check_status: str | None = None
    metrics: builtins.dict[str, Any] | None = None

    @model_validator(mode="after")
    def _required_fields_not_null(self) -> "DeploymentUpdate":
        for name in ("environment", "version", "commit_hash", "status", "metrics"):
            if name in self.model_fields_set and getattr(self, name) is None:
                raise ValueError(f"{name} cannot be null")
        return self

    def changes(self) -> builtins.dict[str, Any]:
        return {name: getattr(self, name) for name in self.model_fields_set}


class HealthCheckCreate(_Payload):
    """A health-check result reported by instrumentation."""

    deployment_id: str = Field(min_length=1)
    endpoint: str = Field(min_length=1)
    status: HealthCheckStatus
    response_time: StrictInt | StrictFloat | None = None
    checked_at: datetime | None = None

    @field_validator("response_time")
    @classmethod
    def _non_negative_latency(cls, value: float | None) -> float | None:
        if value is None:
            return value
        if not math.isfinite(value):
            raise ValueError("responseTime must be a finite number")
        if value < 0:
            raise ValueError("responseTime must be non-negative")
        return value


class TrafficSplitUpdate(_Payload):
    blue: StrictInt | StrictFloat
    green: StrictInt | StrictFloat


def parse_payload(model: type[_Payload], payload: Any, description: str) -> Any:
    """Validate ``payload`` against ``model``, raising the controller's ValidationError."""
    if isinstance(payload, model):
        return payload
    try:
        return model.model_validate(payload)
    except PydanticValidationError as e:
        raise ValidationError(
            f"Invalid {description} data",
            details=e.errors(include_url=False, include_context=False, include_input=False),
            cause=e,
        ) from e
