"""Built-in sample state used when no trusted snapshot can be loaded."""

import uuid
from datetime import datetime, timedelta

from ..models import (
    Deployment,
    DeploymentStatus,
    Environment,
    HealthCheck,
    HealthCheckStatus,
    LogEntry,
    LogLevel,
    PersistedState,
    TrafficSplit,
    utcnow,
)

SAMPLE_NAMESPACE = uuid.UUID("0b6f0c8e-2a57-4d0e-8f4c-5b1a3c9d7e21")

SAMPLE_ENDPOINTS = ("/health", "/api/users", "/api/products", "/metrics")
SAMPLE_RESPONSE_TIMES = (72, 118, 95, 64)

SAMPLE_LOG_MESSAGES = (
    (LogLevel.INFO, "Starting deployment to green environment"),
    (LogLevel.INFO, "Building application artifacts..."),
    (LogLevel.INFO, "Artifact build completed successfully"),
    (LogLevel.INFO, "Uploading to S3 bucket..."),
    (LogLevel.INFO, "Creating application version v2.5.0"),
    (LogLevel.WARN, "Environment capacity at 80%"),
    (LogLevel.INFO, "Deploying to Elastic Beanstalk..."),
    (LogLevel.INFO, "Health check initiated"),
    (LogLevel.INFO, "All health checks passed"),
    (LogLevel.INFO, "Deployment completed successfully"),
)


def _sample_id(name: str) -> str:
    return str(uuid.uuid5(SAMPLE_NAMESPACE, name))


def build_sample_state(schema_version: int, now: datetime | None = None) -> PersistedState:
    """
    Two deployments (blue active on v2.4.1, green idle on v2.5.0), four passing
    health checks each, a short deployment log and all traffic on blue.

    Identifiers and values are fixed; timestamps are offsets from ``now``.
    """
    now = now or utcnow()

    blue = Deployment(
        id=_sample_id("deployment:blue:v2.4.1"),
        environment=Environment.BLUE,
        version="v2.4.1",
        commit_hash="a3f7b2c",
        commit_message="Fix authentication bug",
        status=DeploymentStatus.ACTIVE,
        deployed_at=now - timedelta(hours=2),
        health_check_status="healthy",
        metrics={"successRate": 98.5, "avgResponseTime": 120, "uptime": 99.98},
    )
    green = Deployment(
        id=_sample_id("deployment:green:v2.5.0"),
        environment=Environment.GREEN,
        version="v2.5.0",
        commit_hash="d9e1c4a",
        commit_message="Add new dashboard features",
        status=DeploymentStatus.IDLE,
        deployed_at=now - timedelta(minutes=30),
        health_check_status="healthy",
        metrics={"successRate": 99.2, "avgResponseTime": 105, "uptime": 100},
    )

    health_checks = [
        HealthCheck(
            id=_sample_id(f"health:{deployment.id}:{endpoint}"),
            deployment_id=deployment.id,
            endpoint=endpoint,
            status=HealthCheckStatus.PASSING,
            response_time=response_time,
            checked_at=now,
        )
        for deployment in (blue, green)
        for endpoint, response_time in zip(SAMPLE_ENDPOINTS, SAMPLE_RESPONSE_TIMES)
    ]

    logs = [
        LogEntry(
            timestamp=now - timedelta(minutes=30 - offset),
            level=level,
            message=message,
            trace_id=_sample_id(f"log:trace:{offset}"),
            span_id=_sample_id(f"log:span:{offset}"),
        )
        for offset, (level, message) in enumerate(SAMPLE_LOG_MESSAGES)
    ]

    return PersistedState(
        deployments=[blue, green],
        health_checks=health_checks,
        logs=logs,
        traffic_split=TrafficSplit(blue=100, green=0),
        schema_version=schema_version,
    )
