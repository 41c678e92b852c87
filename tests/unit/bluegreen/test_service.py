"""
Composition root tests.

Exercises startup restore, health-check ingestion and the read models the
HTTP layer serves.
"""

import json

import pytest

from bluegreen.exceptions import NotFoundError, SchemaDowngradeError
from bluegreen.models import DeploymentStatus, HealthCheckStatus, LogLevel
from bluegreen.service import BlueGreenService


@pytest.fixture
def service(settings, clock):
    return BlueGreenService(settings, clock=clock)


async def _active(service):
    return await service.registry.get_active()


class TestStartup:
    @pytest.mark.asyncio
    async def test_first_start_uses_sample_data(self, service, settings):
        await service.start()
        await service.close()

        deployments = await service.registry.get_all()
        assert [d.version for d in deployments] == ["v2.5.0", "v2.4.1"]
        assert service.persistence.initialized_from_sample is True
        assert service.traffic.get().to_dict() == {"blue": 100, "green": 0}
        assert len(service.log_sink) == 10
        assert settings.data_file.exists()

    @pytest.mark.asyncio
    async def test_monitor_is_seeded_from_persisted_checks(self, service):
        await service.start()

        active = await _active(service)
        metrics = service.metrics_for(active.id)
        assert metrics.sample_count == 4
        assert metrics.average_latency == (72 + 118 + 95 + 64) / 4
        assert service.should_abort_promotion(active.id) is False

    @pytest.mark.asyncio
    async def test_restart_reloads_persisted_state(self, settings, clock):
        first = BlueGreenService(settings, clock=clock)
        await first.start()
        created = await first.registry.create(
            {"environment": "green", "version": "v3.0.0", "commitHash": "c0ffee"}
        )
        await first.registry.promote(created.id)
        await first.close()

        second = BlueGreenService(settings, clock=clock)
        await second.start()

        assert second.persistence.initialized_from_sample is False
        reloaded = await second.registry.get_by_id(created.id)
        assert reloaded.status is DeploymentStatus.ACTIVE
        assert second.traffic.get().to_dict() == {"blue": 0, "green": 100}
        assert [e.message for e in second.log_sink.entries()] == [
            e.message for e in first.log_sink.entries()
        ]

    @pytest.mark.asyncio
    async def test_migrations_are_logged_and_saved(self, service, settings):
        settings.data_file.write_text(
            json.dumps(
                {
                    "deployments": [],
                    "healthChecks": [],
                    "logs": [],
                    "trafficSplit": {"blue": 100, "green": 0},
                    "schemaVersion": 1,
                }
            )
        )

        await service.start()
        await service.close()

        messages = [e.message for e in service.log_sink.entries()]
        assert messages[:2] == [
            "Applied migration 2: Backfill optional deployment and health check fields",
            "Applied migration 3: Structured audit log entries",
        ]
        on_disk = json.loads(settings.data_file.read_text())
        assert on_disk["schemaVersion"] == 3
        assert len(on_disk["logs"]) == 2

    @pytest.mark.asyncio
    async def test_newer_snapshot_stops_startup(self, service, settings):
        settings.data_file.write_text(json.dumps({"schemaVersion": 99}))

        with pytest.raises(SchemaDowngradeError):
            await service.start()


class TestIngestion:
    @pytest.mark.asyncio
    async def test_healthy_samples_do_not_warn(self, service):
        await service.start()
        active = await _active(service)

        check = await service.ingest_health_check(
            {"deploymentId": active.id, "endpoint": "/api/users", "status": "passing", "responseTime": 80}
        )

        assert check.status is HealthCheckStatus.PASSING
        assert service.metrics_for(active.id).sample_count == 5
        messages = [e.message for e in service.log_sink.entries()]
        assert not any(m.startswith("Metrics threshold breached") for m in messages)

    @pytest.mark.asyncio
    async def test_threshold_breach_is_reported(self, service):
        await service.start()
        active = await _active(service)

        await service.ingest_health_check(
            {"deploymentId": active.id, "endpoint": "/api/users", "status": "failing", "responseTime": 30}
        )

        assert service.should_abort_promotion(active.id) is True
        entry = service.log_sink.recent()[0]
        assert entry.level is LogLevel.WARN
        assert entry.message == (
            f"Metrics threshold breached for deployment {active.id}. Promotion will be aborted."
        )
        assert (await service.registry.get_by_id(active.id)).status is DeploymentStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_threshold_breach_warning_reaches_the_snapshot(self, service, settings):
        await service.start()
        active = await _active(service)

        await service.ingest_health_check(
            {"deploymentId": active.id, "endpoint": "/api/users", "status": "failing", "responseTime": 30}
        )
        await service.close()

        on_disk = json.loads(settings.data_file.read_text())
        expected = f"Metrics threshold breached for deployment {active.id}. Promotion will be aborted."
        warnings = [e for e in on_disk["logs"] if e["message"] == expected]
        assert len(warnings) == 1
        assert warnings[0]["level"] == "warn"

    @pytest.mark.asyncio
    async def test_samples_expire_with_the_window(self, service, clock):
        await service.start()
        active = await _active(service)
        await service.ingest_health_check(
            {"deploymentId": active.id, "endpoint": "/", "status": "failing"}
        )

        clock.advance(minutes=6)

        assert service.metrics_for(active.id).sample_count == 0
        assert service.should_abort_promotion(active.id) is False


class TestReadModels:
    @pytest.mark.asyncio
    async def test_health(self, service, clock, monkeypatch):
        monkeypatch.setenv("COMMIT_HASH", "deadbeef")
        await service.start()
        clock.advance(seconds=90)

        health = await service.health()

        assert health["status"] == "ok"
        assert health["uptimeSeconds"] == 90
        assert health["activeDeployment"]["version"] == "v2.4.1"
        assert health["trafficSplit"] == {"blue": 100, "green": 0}
        assert health["commit"] == "deadbeef"

    @pytest.mark.asyncio
    async def test_summary(self, service):
        await service.start()
        active = await _active(service)

        summary = await service.summary()

        assert summary["totalDeployments"] == 2
        assert summary["successRate"] == 100.0
        realtime = summary["realtimeMetrics"]
        assert realtime["deploymentId"] == active.id
        assert realtime["sampleCount"] == 4
        assert realtime["shouldAbortPromotion"] is False

    @pytest.mark.asyncio
    async def test_summary_without_deployments(self, service, settings):
        settings.data_file.write_text(
            json.dumps(
                {
                    "deployments": [],
                    "healthChecks": [],
                    "logs": [],
                    "trafficSplit": {"blue": 100, "green": 0},
                    "schemaVersion": 3,
                }
            )
        )
        await service.start()

        summary = await service.summary()

        assert summary == {"totalDeployments": 0, "successRate": 0.0, "realtimeMetrics": None}
        assert (await service.health())["activeDeployment"] is None

    @pytest.mark.asyncio
    async def test_audit_trail(self, service):
        await service.start()
        green = (await service.registry.get_by_environment("green"))[0]
        await service.registry.promote(green.id)

        trail = await service.audit_trail(green.id)

        assert trail["deployment"]["status"] == "active"
        assert len(trail["healthChecks"]) == 4
        assert [entry["level"] for entry in trail["logs"]] == ["info"]
        assert trail["logs"][0]["message"].startswith("Promoted green environment: v2.5.0")
        assert trail["metrics"]["sampleCount"] == 4

    @pytest.mark.asyncio
    async def test_audit_trail_unknown_deployment(self, service):
        await service.start()

        with pytest.raises(NotFoundError):
            await service.audit_trail("missing")
