import pytest

from delivery_controller.config import RolloutConfig
from delivery_controller.errors import ConfigError, NotFoundError, TransientHealthError
from delivery_controller.models import Deployment, DeploymentStatus, Verdict

from helpers import FAILING, WARMING_UP, run_ticks


class TestIdempotentOperations:
    """Repeated calls are no-op successes."""

    @pytest.mark.asyncio
    async def test_abort_twice(self, api, store):
        deployment_id = await api.start("web", "v2", "rolling", {"batch_size": 2}, launch=False)
        await run_ticks(api.engine, deployment_id, 2)

        first = await api.abort(deployment_id)
        assert first.status == DeploymentStatus.ROLLED_BACK
        assert first.applied is True
        revision = api.registry.get_group("web").revision

        second = await api.abort(deployment_id)
        assert second.status == DeploymentStatus.ROLLED_BACK
        assert second.applied is False
        assert second.terminal is True
        assert api.registry.get_group("web").revision == revision
        history = store.load_deployment(deployment_id).history
        assert sum(1 for h in history if h["event"] == "rolled_back") == 1

    @pytest.mark.asyncio
    async def test_duplicate_queued_aborts_roll_back_once(self, api, store):
        deployment_id = await api.start("web", "v2", "rolling", launch=False)
        await api.engine.tick(deployment_id)
        store.enqueue_command(deployment_id, "abort")
        store.enqueue_command(deployment_id, "abort")

        deployment = await api.engine.tick(deployment_id)
        assert deployment.status == DeploymentStatus.ROLLED_BACK
        assert sum(1 for h in deployment.history if h["event"] == "rolled_back") == 1

    @pytest.mark.asyncio
    async def test_pause_twice(self, api):
        deployment_id = await api.start("web", "v2", "rolling", launch=False)
        assert (await api.pause(deployment_id)).applied is True
        again = await api.pause(deployment_id)
        assert again.applied is False
        assert again.status == DeploymentStatus.PAUSED

    @pytest.mark.asyncio
    async def test_pause_of_pending_deployment_is_not_applied(self, api, store):
        deployment = Deployment.create(api.registry.snapshot("web"), "v2", "rolling", RolloutConfig())
        store.save_deployment(deployment)

        result = await api.pause(deployment.deployment_id)
        assert result.applied is False
        assert result.status == DeploymentStatus.PENDING

    @pytest.mark.asyncio
    async def test_resume_when_running_is_noop(self, api):
        deployment_id = await api.start("web", "v2", "rolling", launch=False)
        result = await api.resume(deployment_id)
        assert result.applied is False
        assert result.status == DeploymentStatus.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_commands_on_terminal_deployment(self, api):
        deployment_id = await api.start("web", "v2", "rolling", {"batch_percent": 100}, launch=False)
        await api.engine.tick(deployment_id)

        for call in (api.pause, api.resume, api.abort):
            result = await call(deployment_id)
            assert result.terminal is True
            assert result.applied is False
            assert result.status == DeploymentStatus.SUCCEEDED

    @pytest.mark.asyncio
    async def test_abort_paused_deployment_goes_through_in_progress(self, api):
        before = api.registry.snapshot("web").version_map()
        deployment_id = await api.start("web", "v2", "rolling", launch=False)
        await api.engine.tick(deployment_id)
        await api.pause(deployment_id)

        result = await api.abort(deployment_id)
        assert result.status == DeploymentStatus.ROLLED_BACK
        targets = [h["target"] for h in api.status(deployment_id).deployment.history if h["event"] == "transition"]
        assert targets[-3:] == ["paused", "in_progress", "rolled_back"]
        assert api.registry.get_group("web").version_map() == before


class TestRejectedStarts:

    @pytest.mark.asyncio
    async def test_unknown_strategy(self, api, store):
        with pytest.raises(ConfigError):
            await api.start("web", "v2", "big-bang")
        assert store.list_deployments() == []

    @pytest.mark.asyncio
    async def test_bad_config_never_enters_in_progress(self, api, store):
        with pytest.raises(ConfigError):
            await api.start("web", "v2", "canary", {"canary_steps": [50, 10]})
        assert store.list_deployments() == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("config", [{"custom_max": 5}, {"thresholds": "x"}])
    async def test_malformed_config_types_are_rejected(self, api, store, config):
        with pytest.raises(ConfigError):
            await api.start("web", "v2", "canary", config)
        assert store.list_deployments() == []

    @pytest.mark.asyncio
    async def test_unknown_group(self, api):
        with pytest.raises(NotFoundError):
            await api.start("nope", "v2", "rolling")

    @pytest.mark.asyncio
    async def test_empty_group(self, api):
        api.registry.register("empty", {})
        with pytest.raises(ConfigError):
            await api.start("empty", "v2", "rolling")

    @pytest.mark.asyncio
    async def test_empty_version(self, api):
        with pytest.raises(ConfigError):
            await api.start("web", "", "rolling")

    def test_status_of_unknown_deployment(self, api):
        with pytest.raises(NotFoundError):
            api.status("missing")


class TestHealthEscalation:

    @pytest.mark.asyncio
    async def test_metrics_outage_escalates_to_rollback(self, api, metrics):
        metrics.default = TransientHealthError("metrics backend down")
        deployment_id = await api.start("web", "v2", "canary", {"max_inconclusive_ticks": 1}, launch=False)

        deployment = await api.engine.tick(deployment_id)
        assert deployment.status == DeploymentStatus.IN_PROGRESS
        deployment = await api.engine.tick(deployment_id)
        assert deployment.status == DeploymentStatus.ROLLED_BACK
        assert api.registry.get_group("web").traffic_percent == 0

    @pytest.mark.asyncio
    async def test_control_loop_survives_metrics_connection_error(self, api, metrics, store):
        metrics.push(ConnectionError("metrics backend refused connection"))
        deployment_id = await api.start("web", "v2", "rolling", {"batch_size": 5})

        deployment = await api.wait(deployment_id, timeout=5)
        assert deployment.status == DeploymentStatus.SUCCEEDED
        snapshots = store.load_snapshots(deployment_id)
        assert snapshots[0].verdict == Verdict.INCONCLUSIVE
        assert len(snapshots) == 3

    @pytest.mark.asyncio
    async def test_slow_metrics_are_inconclusive_not_failed(self, api, metrics, store):
        metrics.delay = 0.3
        api.engine.evaluator.timeout_s = 0.05
        deployment_id = await api.start("web", "v2", "rolling", launch=False)

        deployment = await api.engine.tick(deployment_id)
        assert deployment.status == DeploymentStatus.IN_PROGRESS
        assert store.latest_snapshot(deployment_id).verdict == Verdict.INCONCLUSIVE

    @pytest.mark.asyncio
    async def test_zero_tolerance_for_inconclusive(self, api, metrics):
        metrics.push(WARMING_UP)
        deployment_id = await api.start("web", "v2", "rolling", {"max_inconclusive_ticks": 0}, launch=False)
        deployment = await api.engine.tick(deployment_id)
        assert deployment.status == DeploymentStatus.ROLLED_BACK

    @pytest.mark.asyncio
    async def test_fail_on_first_step_restores_single_instance(self, api, metrics):
        metrics.push(FAILING)
        deployment_id = await api.start("web", "v2", "rolling", launch=False)
        deployment = await api.engine.tick(deployment_id)
        assert deployment.status == DeploymentStatus.ROLLED_BACK
        assert set(api.registry.get_group("web").version_map().values()) == {"v1"}
