import asyncio
from enum import Enum

from .config import ControllerConfig, RolloutConfig
from .errors import (
    ActiveDeploymentError, ConfigError, ConflictError, IrrecoverableRollbackError, RollbackIncompleteError,
)
from .logger import get_logger
from .models import Deployment, DeploymentStatus, StrategyKind, Verdict
from .registry import retry_on_conflict
from .strategies import NextAction, strategy_for


class Command(str, Enum):
    PAUSE = "pause"
    RESUME = "resume"
    ABORT = "abort"


class StrategyEngine:
    """Drives deployments through their strategy, one control loop per deployment.

    A tick holds the deployment's lock from the first registry write until its
    state is persisted. Commands take the same lock, so they are applied
    between ticks and never in the middle of a registry mutation.
    """

    def __init__(self, registry, evaluator, rollback, store, config=None):
        self.registry = registry
        self.evaluator = evaluator
        self.rollback = rollback
        self.store = store
        self.config = config or ControllerConfig()
        self.logger = get_logger("engine")
        self._locks = {}
        self._wakeups = {}
        self._loops = {}
        self._start_lock = asyncio.Lock()

    def _lock_for(self, deployment_id):
        return self._locks.setdefault(deployment_id, asyncio.Lock())

    def get(self, deployment_id):
        return self.store.load_deployment(deployment_id)

    def is_running(self, deployment_id):
        task = self._loops.get(deployment_id)
        return task is not None and not task.done()

    @staticmethod
    def _coerce_config(kind, config):
        if config is None:
            config = RolloutConfig()
        elif isinstance(config, dict):
            try:
                config = RolloutConfig.from_dict(config)
            except (TypeError, ValueError) as e:
                raise ConfigError(str(e)) from e
        config.validate(kind)
        return config

    def _find_instances_to_update(self, group, version):
        """Find which instances need updates"""
        to_update = []
        already_updated = []
        for iid, instance in group.instances.items():
            if instance.version != version:
                to_update.append(iid)
            else:
                already_updated.append(iid)
        self.logger.info(f"Found {len(to_update)} instances to update, {len(already_updated)} already up to date")
        return to_update, already_updated

    async def start(self, group_id, version, strategy, config=None, launch=True):
        """Create a deployment of version onto group_id and start its control loop"""
        try:
            kind = StrategyKind(strategy)
        except ValueError:
            raise ConfigError(f"unknown strategy: {strategy}") from None
        config = self._coerce_config(kind, config)
        if not isinstance(version, str) or not version:
            raise ConfigError("version must be a non-empty string")

        async with self._start_lock:
            active = self.store.active_deployment(group_id)
            if active is not None:
                error = ActiveDeploymentError(group_id, active.deployment_id)
                self.logger.error(str(error))
                raise error

            group = self.registry.snapshot(group_id)
            if not group.instances:
                raise ConfigError(f"group {group_id} has no instances")

            deployment = Deployment.create(group, version, kind, config)
            state = strategy_for(kind).init(deployment, group)
            deployment.record("created", version=version, previous_version=deployment.previous_version,
                              strategy=kind.value, instances=group.total)
            self.store.save_deployment(deployment)

            to_update, _ = self._find_instances_to_update(group, version)
            deployment.transition(DeploymentStatus.IN_PROGRESS, reason="started")
            if not to_update and not group.standby:
                self.logger.info("All instances already up to date")
                deployment.record("no_updates_needed", count=0)
                deployment.transition(DeploymentStatus.SUCCEEDED, reason="no updates needed")
                self.store.save_deployment(deployment)
                return deployment

            self.store.save_strategy_state(state)
            self.store.save_deployment(deployment)

        self.logger.info(f"Starting {kind.value} deployment {deployment.deployment_id}: "
                         f"{group_id} {deployment.previous_version} -> {version}")
        if launch:
            self.launch(deployment.deployment_id)
        return deployment

    # Control loop

    def launch(self, deployment_id):
        task = self._loops.get(deployment_id)
        if task is not None and not task.done():
            return task
        task = asyncio.create_task(self._run(deployment_id))
        self._loops[deployment_id] = task
        return task

    async def _run(self, deployment_id):
        self.logger.info(f"Control loop started for {deployment_id}")
        try:
            while True:
                deployment = await self.tick(deployment_id)
                if deployment.is_terminal:
                    break
                await self._sleep(deployment_id)
        except Exception:
            self.logger.exception(f"Control loop for {deployment_id} crashed")
            raise
        finally:
            self._loops.pop(deployment_id, None)
        self.logger.info(f"Control loop finished for {deployment_id}: {deployment.status.value}")
        return deployment

    async def _sleep(self, deployment_id):
        event = self._wakeups.setdefault(deployment_id, asyncio.Event())
        interval = self.config.tick_interval_s
        if interval <= 0:
            await asyncio.sleep(0)
        else:
            try:
                await asyncio.wait_for(event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        event.clear()

    def _wake(self, deployment_id):
        event = self._wakeups.get(deployment_id)
        if event is not None:
            event.set()

    async def wait(self, deployment_id, timeout=None):
        """Wait for the control loop of a deployment to finish"""
        task = self._loops.get(deployment_id)
        if task is not None:
            await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        return self.store.load_deployment(deployment_id)

    async def recover(self, launch=True):
        """Reload persisted deployments after a restart and resume them where they stopped"""
        resumed = []
        for deployment in self.store.list_deployments():
            if deployment.is_terminal:
                continue
            if deployment.status == DeploymentStatus.PENDING:
                if self.store.load_strategy_state(deployment.deployment_id) is None:
                    group = self.registry.snapshot(deployment.group_id)
                    self.store.save_strategy_state(strategy_for(deployment.strategy).init(deployment, group))
                deployment.transition(DeploymentStatus.IN_PROGRESS, reason="recovered")
                self.store.save_deployment(deployment)
            self.logger.info(f"Recovered deployment {deployment.deployment_id} ({deployment.status.value})")
            resumed.append(deployment.deployment_id)
            if launch:
                self.launch(deployment.deployment_id)
        return resumed

    async def shutdown(self):
        tasks = list(self._loops.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # Ticks

    async def tick(self, deployment_id):
        """Run one step of a deployment; returns the deployment as persisted afterwards"""
        async with self._lock_for(deployment_id):
            try:
                await self._apply_commands(deployment_id)
            except IrrecoverableRollbackError as e:
                # Recorded on the deployment, which is now Failed
                self.logger.error(f"Abort of {deployment_id} needs operator action: {e}")
            deployment = self.store.load_deployment(deployment_id)
            if deployment.status != DeploymentStatus.IN_PROGRESS:
                return deployment
            return await self._step(deployment)

    async def _step(self, deployment):
        deployment_id = deployment.deployment_id
        strategy = strategy_for(deployment.strategy)
        state = self.store.load_strategy_state(deployment_id)
        if state is None:
            self.logger.warning(f"No strategy state for {deployment_id}, starting from the first step")
            state = strategy.init(deployment, self.registry.snapshot(deployment.group_id))
        if state.rollback_pending:
            return await self._roll_back(deployment, state, "retrying incomplete rollback")

        state.ticks += 1
        exposure = strategy.expose(deployment, state, self.registry.snapshot(deployment.group_id))
        try:
            await retry_on_conflict(
                lambda: self._expose_once(deployment, exposure),
                attempts=self.config.conflict_retry_attempts,
                base_delay_s=self.config.conflict_base_delay_s,
                logger=self.logger,
            )
        except ConflictError as e:
            self.logger.warning(f"Deployment {deployment_id} could not apply {strategy.describe(state)}: {e}; "
                                f"retrying on the next tick")
            self.store.save_strategy_state(state)
            return deployment

        snapshot = await self.evaluator.evaluate(
            deployment.group_id,
            exposure.evaluate,
            thresholds=deployment.config.thresholds,
            deployment_id=deployment_id,
            step=state.step_index,
            traffic_percent=exposure.traffic_percent,
        )
        self.store.append_snapshot(deployment_id, snapshot)

        step_name = strategy.describe(state)
        action = strategy.step(deployment, state, snapshot)
        deployment.record("evaluated", step=step_name, verdict=snapshot.verdict.value, action=action.value)

        if action == NextAction.ROLLBACK:
            if snapshot.verdict == Verdict.INCONCLUSIVE:
                reason = f"no conclusive verdict after {state.inconclusive_ticks} ticks at {step_name}"
            else:
                reason = f"{snapshot.verdict.value} at {step_name}: {snapshot.reason}"
            self.logger.error(f"DEPLOYMENT ABORTED: {deployment_id} {reason}")
            return await self._roll_back(deployment, state, reason)

        if action == NextAction.COMPLETE:
            return await self._complete(deployment, state)

        if action == NextAction.ADVANCE:
            self.logger.info(f"Deployment {deployment_id} passed {step_name}, advancing to {strategy.describe(state)}")
        else:
            self.logger.info(f"Deployment {deployment_id} holding at {step_name}: {snapshot.reason}")
        self.store.save_strategy_state(state)
        self.store.save_deployment(deployment)
        return deployment

    def _expose_once(self, deployment, exposure):
        """Bring the registry to the exposure; writes only what differs"""
        gid = deployment.group_id
        desired = deployment.desired_version
        group = self.registry.snapshot(gid)
        rev = group.revision

        if exposure.standby and group.active_color == deployment.baseline_color:
            ready = len(group.standby) == group.total and all(
                i.version == desired for i in group.standby.values())
            if not ready:
                rev = self.registry.provision_standby(gid, desired, expected_revision=rev)
        if exposure.flipped and group.active_color == deployment.baseline_color:
            rev = self.registry.flip(gid, expected_revision=rev)

        stale = [iid for iid in exposure.cohort if group.instances[iid].version != desired]
        if stale:
            self.logger.info(f"Moving {len(stale)} instances in {gid} to {desired}")
            rev = self.registry.set_instance_versions(gid, stale, desired, expected_revision=rev)
        if group.traffic_percent != exposure.traffic_percent:
            rev = self.registry.set_traffic(gid, exposure.traffic_percent, expected_revision=rev)
        return rev

    def _finalize_once(self, deployment):
        gid = deployment.group_id
        group = self.registry.snapshot(gid)
        rev = group.revision
        if group.standby:
            self.logger.info(f"Decommissioning {len(group.standby)} standby instances in {gid}")
            rev = self.registry.discard_standby(gid, expected_revision=rev)
        if group.traffic_percent:
            rev = self.registry.set_traffic(gid, 0, expected_revision=rev)
        return rev

    async def _complete(self, deployment, state):
        try:
            await retry_on_conflict(
                lambda: self._finalize_once(deployment),
                attempts=self.config.conflict_retry_attempts,
                base_delay_s=self.config.conflict_base_delay_s,
                logger=self.logger,
            )
        except ConflictError as e:
            # The final step is evaluated again on the next tick before completing
            self.logger.warning(f"Deployment {deployment.deployment_id} could not finalize: {e}; "
                                f"retrying on the next tick")
            self.store.save_strategy_state(state)
            self.store.save_deployment(deployment)
            return deployment
        group = self.registry.get_group(deployment.group_id)
        deployment.record("completed", version=deployment.desired_version, instances=group.total)
        deployment.transition(DeploymentStatus.SUCCEEDED, reason="all steps passed")
        self.store.save_deployment(deployment)
        self.store.delete_strategy_state(deployment.deployment_id)
        self.logger.info(f"SUCCESS: Deployment {deployment.deployment_id} completed - "
                         f"{group.total} instances on {deployment.desired_version}")
        return deployment

    async def _roll_back(self, deployment, state, reason, raise_fatal=False):
        if state is not None:
            state.rollback_pending = True
            self.store.save_strategy_state(state)
        deployment.record("rollback_started", reason=reason)
        self.store.save_deployment(deployment)
        try:
            return await self.rollback.rollback(deployment.deployment_id, reason=reason)
        except IrrecoverableRollbackError:
            if raise_fatal:
                raise
            return self.store.load_deployment(deployment.deployment_id)
        except (RollbackIncompleteError, ConflictError) as e:
            self.logger.warning(f"{e}; retrying on the next tick")
            return self.store.load_deployment(deployment.deployment_id)

    # Commands

    async def request(self, deployment_id, command):
        """Queue a command and apply it at the next safe point"""
        command = Command(command)
        self.store.load_deployment(deployment_id)
        self.store.enqueue_command(deployment_id, command.value)
        self._wake(deployment_id)
        async with self._lock_for(deployment_id):
            await self._apply_commands(deployment_id)
        return self.store.load_deployment(deployment_id)

    async def _apply_commands(self, deployment_id):
        for raw in self.store.drain_commands(deployment_id):
            await self._apply(deployment_id, Command(raw))

    async def _apply(self, deployment_id, command):
        deployment = self.store.load_deployment(deployment_id)
        if deployment.is_terminal:
            self.logger.info(f"Ignoring {command.value} for {deployment_id}: already {deployment.status.value}")
            return

        if command == Command.PAUSE:
            if deployment.status == DeploymentStatus.IN_PROGRESS:
                deployment.transition(DeploymentStatus.PAUSED, reason="paused by operator")
                self.store.save_deployment(deployment)
                self.logger.info(f"Deployment {deployment_id} paused")

        elif command == Command.RESUME:
            if deployment.status == DeploymentStatus.PAUSED:
                deployment.transition(DeploymentStatus.IN_PROGRESS, reason="resumed by operator")
                self.store.save_deployment(deployment)
                self.logger.info(f"Deployment {deployment_id} resumed")

        elif command == Command.ABORT:
            if deployment.status != DeploymentStatus.IN_PROGRESS:
                deployment.transition(DeploymentStatus.IN_PROGRESS, reason="abort")
            deployment.record("abort_requested")
            self.logger.warning(f"Aborting deployment {deployment_id}")
            state = self.store.load_strategy_state(deployment_id)
            await self._roll_back(deployment, state, "aborted by operator", raise_fatal=True)
