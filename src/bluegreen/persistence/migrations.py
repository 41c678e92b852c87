"""
Snapshot schema migrations.

The chain is an ordered tuple of pure upgrade steps keyed by version. Each
step takes the snapshot document at ``version - 1`` and returns it at
``version``; each also carries the validation predicate that a document of
its version must satisfy before it is loaded or saved. Steps are idempotent,
and ``apply_migration`` skips a step the document has already passed.
"""

import builtins
import copy
import uuid
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any

Document = builtins.dict[str, Any]

_ENVIRONMENTS = {"blue", "green"}
_DEPLOYMENT_STATUSES = {"active", "idle", "deploying", "failed"}
_HEALTH_STATUSES = {"passing", "failing", "pending"}
_LOG_LEVELS = {"info", "warn", "error", "debug"}
_LEVEL_ALIASES = {"warning": "warn", "err": "error", "critical": "error", "fatal": "error"}

EPOCH_TIMESTAMP = "1970-01-01T00:00:00+00:00"
_LOG_ID_NAMESPACE = uuid.UUID("6f1c52c4-3d55-4f0b-9a43-2f1f0e0f9b7e")


@dataclass(frozen=True)
class Migration:
    """One step of the snapshot upgrade pipeline."""

    version: int
    description: str
    upgrade: Callable[[Document], Document]
    validate: Callable[[Document], bool]


def _is_number(value: Any) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool)


def _is_timestamp(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    try:
        datetime.fromisoformat(value)
    except ValueError:
        return False
    return True


# Version 1: initial schema (upgrades pre-versioned snapshots, version 0)


def _upgrade_v1(document: Document) -> Document:
    document.setdefault("deployments", [])
    document.setdefault("healthChecks", [])
    document.setdefault("logs", [])
    document.setdefault("trafficSplit", {"blue": 100, "green": 0})
    return document


def _validate_v1(document: Document) -> bool:
    if not isinstance(document, dict):
        return False
    deployments = document.get("deployments")
    health_checks = document.get("healthChecks")
    logs = document.get("logs")
    split = document.get("trafficSplit")
    if not isinstance(deployments, list) or not isinstance(health_checks, list):
        return False
    if not isinstance(logs, list) or not isinstance(split, dict):
        return False

    blue, green = split.get("blue"), split.get("green")
    if not (_is_number(blue) and _is_number(green)):
        return False
    if not (0 <= blue <= 100 and 0 <= green <= 100 and abs(blue + green - 100) < 1e-9):
        return False

    for deployment in deployments:
        if not isinstance(deployment, dict):
            return False
        if not all(isinstance(deployment.get(k), str) for k in ("id", "version", "commitHash")):
            return False
        if deployment.get("environment") not in _ENVIRONMENTS:
            return False
        if deployment.get("status") not in _DEPLOYMENT_STATUSES:
            return False
        deployed_at = deployment.get("deployedAt")
        if deployed_at is not None and not _is_timestamp(deployed_at):
            return False

    for check in health_checks:
        if not isinstance(check, dict):
            return False
        if not all(isinstance(check.get(k), str) for k in ("id", "deploymentId", "endpoint")):
            return False
        if check.get("status") not in _HEALTH_STATUSES:
            return False
        checked_at = check.get("checkedAt")
        if checked_at is not None and not _is_timestamp(checked_at):
            return False

    return all(isinstance(entry, dict) and "message" in entry for entry in logs)


# Version 2: optional deployment/health-check fields always present


def _upgrade_v2(document: Document) -> Document:
    for deployment in document["deployments"]:
        deployment.setdefault("commitMessage", None)
        deployment.setdefault("healthCheckStatus", None)
        if deployment.get("metrics") is None:
            deployment["metrics"] = {}
    for check in document["healthChecks"]:
        check.setdefault("responseTime", None)
    return document


def _validate_v2(document: Document) -> bool:
    if not _validate_v1(document):
        return False
    for deployment in document["deployments"]:
        if not {"commitMessage", "healthCheckStatus"} <= deployment.keys():
            return False
        if not isinstance(deployment.get("metrics"), dict):
            return False
    for check in document["healthChecks"]:
        if "responseTime" not in check:
            return False
        if check["responseTime"] is not None and not _is_number(check["responseTime"]):
            return False
    return True


# Version 3: structured audit entries


def _upgrade_v3(document: Document) -> Document:
    for index, entry in enumerate(document["logs"]):
        metadata = entry.get("metadata")
        metadata = metadata if isinstance(metadata, dict) else {}
        timestamp = entry.get("timestamp")
        if not _is_timestamp(timestamp):
            metadata = dict(metadata, legacy_timestamp=timestamp)
            entry["timestamp"] = EPOCH_TIMESTAMP
        entry["metadata"] = metadata

        level = str(entry.get("level", "info")).lower()
        level = _LEVEL_ALIASES.get(level, level)
        entry["level"] = level if level in _LOG_LEVELS else "info"

        seed = f"{index}:{entry['timestamp']}:{entry.get('message')}"
        entry.setdefault("traceId", str(uuid.uuid5(_LOG_ID_NAMESPACE, "trace:" + seed)))
        entry.setdefault("spanId", str(uuid.uuid5(_LOG_ID_NAMESPACE, "span:" + seed)))
    return document


def _validate_v3(document: Document) -> bool:
    if not _validate_v2(document):
        return False
    for entry in document["logs"]:
        if not _is_timestamp(entry.get("timestamp")):
            return False
        if entry.get("level") not in _LOG_LEVELS:
            return False
        if not isinstance(entry.get("message"), str):
            return False
        if not isinstance(entry.get("traceId"), str) or not isinstance(entry.get("spanId"), str):
            return False
        if not isinstance(entry.get("metadata"), dict):
            return False
    return True


MIGRATIONS: tuple[Migration, ...] = (
    Migration(1, "Initial schema", _upgrade_v1, _validate_v1),
    Migration(2, "Backfill optional deployment and health check fields", _upgrade_v2, _validate_v2),
    Migration(3, "Structured audit log entries", _upgrade_v3, _validate_v3),
)

CURRENT_SCHEMA_VERSION = MIGRATIONS[-1].version


def get_migration(version: int, migrations: Sequence[Migration] = MIGRATIONS) -> Migration | None:
    for migration in migrations:
        if migration.version == version:
            return migration
    return None


def pending_migrations(
    from_version: int,
    to_version: int = CURRENT_SCHEMA_VERSION,
    migrations: Iterable[Migration] = MIGRATIONS,
) -> builtins.list[Migration]:
    """Steps needed to go from ``from_version`` to ``to_version``, ascending."""
    steps = [m for m in migrations if from_version < m.version <= to_version]
    return sorted(steps, key=lambda m: m.version)


def apply_migration(document: Document, migration: Migration) -> Document:
    """
    Run one upgrade step on a copy of ``document``.

    A document already at or past the step's version is returned unchanged.
    """
    if document.get("schemaVersion", 0) >= migration.version:
        return document
    upgraded = migration.upgrade(copy.deepcopy(document))
    upgraded["schemaVersion"] = migration.version
    return upgraded


def validate_document(document: Document, migrations: Sequence[Migration] = MIGRATIONS) -> bool:
    """Run the validation predicate registered for the document's schema version."""
    if not isinstance(document, dict):
        return False
    migration = get_migration(document.get("schemaVersion"), migrations)
    if migration is None:
        return False
    return migration.validate(document)
