"""
Deployment Controller Exceptions

Custom exceptions raised by the registry, traffic controller and persistence layer.
"""


class BlueGreenError(Exception):
    """Base exception for deployment controller errors."""

    def __init__(self, message: str, cause: Exception | None = None):
        super().__init__(message)
        self.message = message
        self.cause = cause


class ValidationError(BlueGreenError):
    """Raised when a create/update payload is malformed."""

    def __init__(self, message: str, details: list | None = None, cause: Exception | None = None):
        super().__init__(message, cause)
        self.details = details or []


class NotFoundError(BlueGreenError):
    """Raised when a deployment id is unknown."""

    def __init__(self, deployment_id: str):
        super().__init__(f"Deployment not found: {deployment_id}")
        self.deployment_id = deployment_id


class InvariantViolation(BlueGreenError):
    """Raised when a state change would break an invariant."""


class InvalidSplit(InvariantViolation):
    """Raised when a traffic split is out of range or does not total 100%."""

    def __init__(self, blue: float, green: float):
        super().__init__(
            f"Traffic split must total 100% with both values in [0, 100] (got blue={blue}, green={green})"
        )
        self.blue = blue
        self.green = green


class PersistenceFailure(BlueGreenError):
    """Raised when the state snapshot cannot be read or written."""


class SnapshotLoadError(PersistenceFailure):
    """Raised when the snapshot file is missing or unparseable."""


class SchemaValidationError(PersistenceFailure):
    """Raised when a snapshot fails the validation predicate of its schema version."""

    def __init__(self, message: str, schema_version: int | None = None, cause: Exception | None = None):
        super().__init__(message, cause)
        self.schema_version = schema_version


class SchemaDowngradeError(PersistenceFailure):
    """Raised when a snapshot was written by a newer schema than this build supports."""

    def __init__(self, found_version: int, supported_version: int):
        super().__init__(
            f"Snapshot schema version {found_version} is newer than supported version "
            f"{supported_version}; downgrade not supported"
        )
        self.found_version = found_version
        self.supported_version = supported_version
