"""
Blue/Green Deployment Controller

Tracks blue and green deployment environments, decides which one serves live
traffic and gates promotion/rollback on sliding-window health metrics.
"""

__version__ = "1.0.0"

from .audit import LogSink
from .config import BlueGreenSettings, load_settings
from .exceptions import (
    BlueGreenError,
    InvalidSplit,
    InvariantViolation,
    NotFoundError,
    PersistenceFailure,
    SchemaDowngradeError,
    SchemaValidationError,
    SnapshotLoadError,
    ValidationError,
)
from .models import (
    Deployment,
    DeploymentCreate,
    DeploymentStatus,
    DeploymentUpdate,
    Environment,
    HealthCheck,
    HealthCheckCreate,
    HealthCheckStatus,
    LogEntry,
    LogLevel,
    PersistedState,
    TrafficSplit,
)
from .monitoring import DEFAULT_THRESHOLDS, DeploymentMetrics, MetricsMonitor, MetricThresholds
from .persistence import CURRENT_SCHEMA_VERSION, PersistenceManager
from .registry import DeploymentRegistry
from .service import BlueGreenService
from .traffic import TrafficController

__all__ = [
    "__version__",
    # Components
    "BlueGreenService",
    "DeploymentRegistry",
    "LogSink",
    "MetricsMonitor",
    "PersistenceManager",
    "TrafficController",
    # Configuration
    "BlueGreenSettings",
    "load_settings",
    "CURRENT_SCHEMA_VERSION",
    "DEFAULT_THRESHOLDS",
    "MetricThresholds",
    # Models
    "Deployment",
    "DeploymentCreate",
    "DeploymentMetrics",
    "DeploymentStatus",
    "DeploymentUpdate",
    "Environment",
    "HealthCheck",
    "HealthCheckCreate",
    "HealthCheckStatus",
    "LogEntry",
    "LogLevel",
    "PersistedState",
    "TrafficSplit",
    # Errors
    "BlueGreenError",
    "InvalidSplit",
    "InvariantViolation",
    "NotFoundError",
    "PersistenceFailure",
    "SchemaDowngradeError",
    "SchemaValidationError",
    "SnapshotLoadError",
    "ValidationError",
]
