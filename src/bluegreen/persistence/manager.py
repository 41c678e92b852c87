"""
Versioned JSON snapshot persistence.

The whole controller state lives in one JSON document. Loading migrates older
documents forward one version at a time (flushing after every step), refuses
documents newer than this build, and only trusts a document once the
validation predicate of its version passes. Saving is best effort: scheduled
writes run in the background, coalesce to the latest snapshot, and failures
are logged instead of raised.
"""

import asyncio
import builtins
import json
import logging
from collections.abc import Callable, Sequence
from datetime import datetime
from pathlib import Path
from typing import Any

import aiofiles
import aiofiles.os

from ..audit import LogSink
from ..exceptions import (
    PersistenceFailure,
    SchemaDowngradeError,
    SchemaValidationError,
    SnapshotLoadError,
)
from ..models import PersistedState, utcnow
from .migrations import (
    CURRENT_SCHEMA_VERSION,
    MIGRATIONS,
    Migration,
    apply_migration,
    pending_migrations,
    validate_document,
)
from .sample import build_sample_state

logger = logging.getLogger(__name__)


class PersistenceManager:
    """Reads, migrates and writes the state snapshot file."""

    def __init__(
        self,
        data_file: Path | str,
        log_sink: LogSink | None = None,
        migrations: Sequence[Migration] = MIGRATIONS,
        schema_version: int | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.data_file = Path(data_file)
        self.log_sink = log_sink
        self._clock = clock
        self.migrations = tuple(sorted(migrations, key=lambda m: m.version))
        if schema_version is None:
            schema_version = (
                self.migrations[-1].version if self.migrations else CURRENT_SCHEMA_VERSION
            )
        self.schema_version = schema_version

        self.applied_migrations: builtins.list[Migration] = []
        self.initialized_from_sample = False
        self.last_saved_at: datetime | None = None
        self.write_failures = 0

        self._write_lock = asyncio.Lock()
        self._pending: builtins.dict[str, Any] | None = None
        self._writer: asyncio.Task | None = None

    # Loading

    async def load(self) -> PersistedState:
        """
        Load, migrate and validate the snapshot.

        Raises:
            SnapshotLoadError: file missing, unreadable or not JSON
            SchemaDowngradeError: snapshot written by a newer schema
            SchemaValidationError: snapshot fails its validation predicate
        """
        self.applied_migrations = []
        document = await self._read_document()

        version = document.get("schemaVersion", 0)
        if isinstance(version, bool) or not isinstance(version, int) or version < 0:
            raise SchemaValidationError(f"Invalid schemaVersion: {version!r}")
        if version > self.schema_version:
            raise SchemaDowngradeError(version, self.schema_version)

        for migration in pending_migrations(version, self.schema_version, self.migrations):
            try:
                document = apply_migration(document, migration)
            except (KeyError, TypeError, AttributeError, ValueError) as e:
                raise SchemaValidationError(
                    f"Migration {migration.version} failed: {e}",
                    schema_version=migration.version,
                    cause=e,
                ) from e
            await self._write_document(document)
            self.applied_migrations.append(migration)
            logger.info(
                f"Applied migration {migration.version}: {migration.description}",
                extra={"schema_version": migration.version},
            )

        if not validate_document(document, self.migrations):
            raise SchemaValidationError(
                f"Snapshot failed validation for schema version {document.get('schemaVersion')}",
                schema_version=document.get("schemaVersion"),
            )

        try:
            state = PersistedState.from_dict(document)
        except (KeyError, TypeError, ValueError) as e:
            raise SchemaValidationError(
                f"Snapshot could not be deserialized: {e}",
                schema_version=document.get("schemaVersion"),
                cause=e,
            ) from e

        logger.info(
            f"Loaded snapshot from {self.data_file}",
            extra={
                "deployments": len(state.deployments),
                "health_checks": len(state.health_checks),
                "schema_version": state.schema_version,
            },
        )
        return state

    async def load_or_initialize(self) -> PersistedState:
        """
        Load the snapshot, falling back to sample data that is then persisted.

        A schema downgrade is not recoverable and is re-raised without touching
        the file.
        """
        self.initialized_from_sample = False
        try:
            return await self.load()
        except SchemaDowngradeError as e:
            logger.critical(f"Refusing to load snapshot: {e.message}")
            raise
        except PersistenceFailure as e:
            logger.warning(f"Could not load snapshot from {self.data_file}: {e.message}; using sample data")

        state = build_sample_state(schema_version=self.schema_version, now=self._clock())
        self.initialized_from_sample = True
        try:
            await self.save(state)
        except PersistenceFailure as e:
            self._report_failure(e)
        return state

    async def _read_document(self) -> builtins.dict[str, Any]:
        try:
            async with aiofiles.open(self.data_file, encoding="utf-8") as f:
                raw = await f.read()
        except FileNotFoundError as e:
            raise SnapshotLoadError(f"No snapshot at {self.data_file}", cause=e) from e
        except OSError as e:
            raise SnapshotLoadError(f"Cannot read snapshot {self.data_file}: {e}", cause=e) from e

        try:
            document = json.loads(raw)
        except json.JSONDecodeError as e:
            raise SnapshotLoadError(f"Snapshot is not valid JSON: {e}", cause=e) from e

        if not isinstance(document, dict):
            raise SchemaValidationError("Snapshot root must be a JSON object")
        return document

    # Saving

    async def save(self, state: PersistedState) -> None:
        """Validate and write ``state`` now; raises PersistenceFailure on error."""
        await self._write_document(self._serialize(state))

    def schedule_save(self, state: PersistedState) -> None:
        """
        Queue a background write of ``state`` and return immediately.

        Snapshots scheduled while a write is in flight replace each other, so
        only the latest is written next. Must be called from the event loop.
        """
        try:
            document = self._serialize(state)
        except PersistenceFailure as e:
            self._report_failure(e)
            return

        self._pending = document
        if self._writer is None or self._writer.done():
            self._writer = asyncio.get_running_loop().create_task(self._drain())

    async def flush(self) -> None:
        """Wait until every scheduled snapshot has been written (or has failed)."""
        while self._writer is not None and not self._writer.done():
            await self._writer

    async def _drain(self) -> None:
        while self._pending is not None:
            document, self._pending = self._pending, None
            try:
                await self._write_document(document)
            except PersistenceFailure as e:
                self._report_failure(e)
            except Exception as e:
                self._report_failure(PersistenceFailure(f"Unexpected snapshot write error: {e}", cause=e))

    def _serialize(self, state: PersistedState) -> builtins.dict[str, Any]:
        try:
            document = state.to_dict()
        except (TypeError, ValueError, AttributeError) as e:
            raise PersistenceFailure(f"Failed to serialize state: {e}", cause=e) from e
        if not validate_document(document, self.migrations):
            raise SchemaValidationError(
                "Invalid schema detected before save", schema_version=document.get("schemaVersion")
            )
        return document

    async def _write_document(self, document: builtins.dict[str, Any]) -> None:
        """Atomically replace the snapshot file with ``document``."""
        try:
            payload = json.dumps(document, indent=2)
        except (TypeError, ValueError) as e:
            raise PersistenceFailure(f"Failed to encode snapshot: {e}", cause=e) from e

        tmp_file = self.data_file.with_name(self.data_file.name + ".tmp")
        async with self._write_lock:
            try:
                self.data_file.parent.mkdir(parents=True, exist_ok=True)
                async with aiofiles.open(tmp_file, "w", encoding="utf-8") as f:
                    await f.write(payload)
                await aiofiles.os.replace(tmp_file, self.data_file)
            except OSError as e:
                raise PersistenceFailure(f"Failed to persist storage: {e}", cause=e) from e
        self.last_saved_at = self._clock()

    def _report_failure(self, error: PersistenceFailure) -> None:
        self.write_failures += 1
        logger.error(f"Snapshot write failed: {error.message}")
        if self.log_sink is not None:
            self.log_sink.error(f"Failed to persist storage: {error.message}")
