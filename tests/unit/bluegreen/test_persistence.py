"""
Snapshot persistence tests.

Covers loading with migration and fallback, downgrade refusal, and the
best-effort background writer.
"""

import json

import pytest

from bluegreen.exceptions import (
    PersistenceFailure,
    SchemaDowngradeError,
    SchemaValidationError,
    SnapshotLoadError,
)
from bluegreen.models import LogLevel, PersistedState, TrafficSplit
from bluegreen.persistence import MIGRATIONS, Migration, PersistenceManager, build_sample_state
from bluegreen.registry import DeploymentRegistry
from bluegreen.traffic import TrafficController


def _write_json(path, document):
    path.write_text(json.dumps(document))


def _read_json(path):
    return json.loads(path.read_text())


def _v1_document():
    return {
        "deployments": [
            {
                "id": "dep-1",
                "environment": "green",
                "version": "v1.4.0",
                "commitHash": "f00ba4",
                "status": "active",
                "deployedAt": "2024-04-30T10:00:00+00:00",
            }
        ],
        "healthChecks": [],
        "logs": [{"timestamp": "long ago", "level": "warning", "message": "legacy entry"}],
        "trafficSplit": {"blue": 0, "green": 100},
        "schemaVersion": 1,
    }


class TestLoad:
    @pytest.mark.asyncio
    async def test_round_trip(self, persistence, clock):
        state = build_sample_state(schema_version=3, now=clock.now)

        await persistence.save(state)
        loaded = await persistence.load()

        assert loaded == state
        assert loaded.deployments[0].deployed_at == state.deployments[0].deployed_at
        assert persistence.applied_migrations == []

    @pytest.mark.asyncio
    async def test_missing_file(self, persistence):
        with pytest.raises(SnapshotLoadError):
            await persistence.load()

    @pytest.mark.asyncio
    async def test_corrupt_file(self, persistence, data_file):
        data_file.write_text("{not json")

        with pytest.raises(SnapshotLoadError):
            await persistence.load()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("content", ["[]", '"text"', "42"])
    async def test_root_must_be_an_object(self, persistence, data_file, content):
        data_file.write_text(content)

        with pytest.raises(SchemaValidationError):
            await persistence.load()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("version", ["3", -1, True, 2.5])
    async def test_invalid_schema_version(self, persistence, data_file, version):
        document = build_sample_state(schema_version=3).to_dict()
        document["schemaVersion"] = version
        _write_json(data_file, document)

        with pytest.raises(SchemaValidationError):
            await persistence.load()

    @pytest.mark.asyncio
    async def test_newer_schema_is_refused(self, persistence, data_file):
        document = build_sample_state(schema_version=3).to_dict()
        document["schemaVersion"] = 4
        _write_json(data_file, document)

        with pytest.raises(SchemaDowngradeError) as exc_info:
            await persistence.load()

        assert exc_info.value.found_version == 4
        assert exc_info.value.supported_version == 3

    @pytest.mark.parametrize("version", [0, 2])
    def test_explicit_schema_version_is_kept(self, data_file, version):
        assert PersistenceManager(data_file, schema_version=version).schema_version == version

    def test_default_schema_version_follows_migrations(self, data_file):
        assert PersistenceManager(data_file).schema_version == MIGRATIONS[-1].version
        assert PersistenceManager(data_file, migrations=()).schema_version == 3

    @pytest.mark.asyncio
    async def test_pinned_older_version_refuses_current_snapshot(self, data_file):
        _write_json(data_file, build_sample_state(schema_version=3).to_dict())
        manager = PersistenceManager(data_file, schema_version=2)

        with pytest.raises(SchemaDowngradeError) as exc_info:
            await manager.load()

        assert exc_info.value.found_version == 3
        assert exc_info.value.supported_version == 2

    @pytest.mark.asyncio
    async def test_invalid_document_fails_validation(self, persistence, data_file):
        document = build_sample_state(schema_version=3).to_dict()
        document["trafficSplit"] = {"blue": 60, "green": 41}
        _write_json(data_file, document)

        with pytest.raises(SchemaValidationError):
            await persistence.load()


class TestMigrationOnLoad:
    @pytest.mark.asyncio
    async def test_v1_snapshot_is_upgraded_and_rewritten(self, persistence, data_file):
        _write_json(data_file, _v1_document())

        state = await persistence.load()

        assert [m.version for m in persistence.applied_migrations] == [2, 3]
        assert state.schema_version == 3
        assert state.deployments[0].commit_message is None
        assert state.deployments[0].metrics == {}
        assert state.traffic_split == TrafficSplit(blue=0, green=100)
        assert state.logs[0].level is LogLevel.WARN
        assert state.logs[0].metadata == {"legacy_timestamp": "long ago"}

        on_disk = _read_json(data_file)
        assert on_disk["schemaVersion"] == 3
        assert on_disk["logs"][0]["level"] == "warn"

    @pytest.mark.asyncio
    async def test_current_snapshot_is_not_rewritten(self, persistence, data_file):
        _write_json(data_file, _v1_document())
        await persistence.load()
        before = data_file.read_text()

        await persistence.load()

        assert persistence.applied_migrations == []
        assert data_file.read_text() == before

    @pytest.mark.asyncio
    async def test_each_step_is_flushed_before_the_next(self, data_file, log_sink):
        seen_on_disk = []

        def tracked_upgrade(document):
            seen_on_disk.append(_read_json(data_file).get("schemaVersion"))
            return MIGRATIONS[1].upgrade(document)

        chain = [
            MIGRATIONS[0],
            Migration(2, "Tracked", tracked_upgrade, MIGRATIONS[1].validate),
        ]
        manager = PersistenceManager(data_file, log_sink=log_sink, migrations=chain)
        _write_json(data_file, {"deployments": [], "healthChecks": []})

        state = await manager.load()

        assert seen_on_disk == [1]
        assert state.schema_version == 2
        assert _read_json(data_file)["schemaVersion"] == 2

    @pytest.mark.asyncio
    async def test_failing_step_stops_the_chain(self, data_file):
        def broken_upgrade(document):
            raise KeyError("missing")

        chain = [MIGRATIONS[0], Migration(2, "Broken", broken_upgrade, MIGRATIONS[1].validate)]
        manager = PersistenceManager(data_file, migrations=chain)
        _write_json(data_file, {"deployments": []})

        with pytest.raises(SchemaValidationError) as exc_info:
            await manager.load()

        assert exc_info.value.schema_version == 2
        assert [m.version for m in manager.applied_migrations] == [1]
        assert _read_json(data_file)["schemaVersion"] == 1


class TestLoadOrInitialize:
    @pytest.mark.asyncio
    async def test_missing_file_falls_back_to_sample_and_persists_it(self, persistence, data_file):
        state = await persistence.load_or_initialize()

        assert persistence.initialized_from_sample is True
        assert [d.version for d in state.deployments] == ["v2.4.1", "v2.5.0"]
        assert len(state.health_checks) == 8
        assert state.traffic_split == TrafficSplit(blue=100, green=0)
        assert _read_json(data_file)["schemaVersion"] == 3

    @pytest.mark.asyncio
    @pytest.mark.parametrize("content", ["{not json", "[]", '{"trafficSplit": "half"}'])
    async def test_unusable_file_is_replaced_by_sample(self, persistence, data_file, content):
        data_file.write_text(content)

        state = await persistence.load_or_initialize()

        assert persistence.initialized_from_sample is True
        assert len(state.deployments) == 2
        assert _read_json(data_file) == state.to_dict()

    @pytest.mark.asyncio
    async def test_downgrade_is_fatal_and_leaves_file_untouched(self, persistence, data_file):
        document = build_sample_state(schema_version=3).to_dict()
        document["schemaVersion"] = 9
        _write_json(data_file, document)
        before = data_file.read_text()

        with pytest.raises(SchemaDowngradeError):
            await persistence.load_or_initialize()

        assert data_file.read_text() == before

    @pytest.mark.asyncio
    async def test_existing_snapshot_is_used(self, persistence, data_file):
        _write_json(data_file, _v1_document())

        state = await persistence.load_or_initialize()

        assert persistence.initialized_from_sample is False
        assert [d.id for d in state.deployments] == ["dep-1"]

    @pytest.mark.asyncio
    async def test_unwritable_location_still_yields_sample(self, temp_dir, log_sink):
        blocker = temp_dir / "blocker"
        blocker.write_text("not a directory")
        manager = PersistenceManager(blocker / "storage-data.json", log_sink=log_sink)

        state = await manager.load_or_initialize()

        assert len(state.deployments) == 2
        assert manager.write_failures == 1


class TestWriter:
    @pytest.mark.asyncio
    async def test_save_raises_on_failure(self, temp_dir):
        blocker = temp_dir / "blocker"
        blocker.write_text("x")
        manager = PersistenceManager(blocker / "storage-data.json")

        with pytest.raises(PersistenceFailure):
            await manager.save(PersistedState(schema_version=3))

    @pytest.mark.asyncio
    async def test_save_leaves_no_temporary_file(self, persistence, data_file, temp_dir):
        await persistence.save(PersistedState(schema_version=3))

        assert sorted(p.name for p in temp_dir.iterdir()) == [data_file.name]
        assert persistence.last_saved_at is not None

    @pytest.mark.asyncio
    async def test_scheduled_saves_coalesce_to_latest(self, persistence, data_file):
        writes = []
        write_document = persistence._write_document

        async def counting_write(document):
            writes.append(document)
            await write_document(document)

        persistence._write_document = counting_write

        for blue in (90, 50, 10):
            persistence.schedule_save(
                PersistedState(traffic_split=TrafficSplit(blue=blue, green=100 - blue), schema_version=3)
            )
        await persistence.flush()

        assert len(writes) == 1
        assert _read_json(data_file)["trafficSplit"] == {"blue": 10, "green": 90}

    @pytest.mark.asyncio
    async def test_write_failure_is_logged_not_raised(self, temp_dir, log_sink):
        blocker = temp_dir / "blocker"
        blocker.write_text("x")
        manager = PersistenceManager(blocker / "storage-data.json", log_sink=log_sink)

        manager.schedule_save(PersistedState(schema_version=3))
        await manager.flush()

        assert manager.write_failures == 1
        entry = log_sink.recent()[0]
        assert entry.level is LogLevel.ERROR
        assert entry.message.startswith("Failed to persist storage: ")

    @pytest.mark.asyncio
    async def test_invalid_state_is_never_written(self, persistence, data_file, log_sink):
        persistence.schedule_save(
            PersistedState(traffic_split=TrafficSplit(blue=60, green=41), schema_version=3)
        )
        await persistence.flush()

        assert not data_file.exists()
        assert persistence.write_failures == 1
        assert log_sink.recent()[0].level is LogLevel.ERROR


class TestRegistryPersistence:
    @pytest.mark.asyncio
    async def test_each_mutation_schedules_one_snapshot(self, persistence, data_file, log_sink, clock):
        traffic = TrafficController(log_sink)
        registry = DeploymentRegistry(traffic, log_sink, persistence, clock=clock)
        scheduled = []
        schedule_save = persistence.schedule_save

        def recording_schedule(state):
            scheduled.append(state)
            schedule_save(state)

        persistence.schedule_save = recording_schedule

        blue = await registry.create({"environment": "blue", "version": "v1", "commitHash": "a1"})
        green = await registry.create({"environment": "green", "version": "v2", "commitHash": "b2"})
        await registry.promote(green.id)
        await registry.rollback(blue.id)
        await traffic.set(50, 50)
        await persistence.flush()

        assert len(scheduled) == 5
        promoted = scheduled[2]
        assert promoted.traffic_split == TrafficSplit(blue=0, green=100)
        assert {d.id: d.status.value for d in promoted.deployments} == {
            blue.id: "idle",
            green.id: "active",
        }
        assert _read_json(data_file)["trafficSplit"] == {"blue": 50, "green": 50}

    @pytest.mark.asyncio
    async def test_mutation_survives_write_failure(self, temp_dir, log_sink, clock):
        blocker = temp_dir / "blocker"
        blocker.write_text("x")
        manager = PersistenceManager(blocker / "storage-data.json", log_sink=log_sink)
        registry = DeploymentRegistry(TrafficController(log_sink), log_sink, manager, clock=clock)

        created = await registry.create({"environment": "blue", "version": "v1", "commitHash": "a1"})
        await manager.flush()

        assert (await registry.get_by_id(created.id)).version == "v1"
        assert manager.write_failures == 1
        assert any(e.message.startswith("Failed to persist storage") for e in log_sink.entries())