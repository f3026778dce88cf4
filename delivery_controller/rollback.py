import asyncio

from .artifacts import StaticArtifactCatalog
from .config import ControllerConfig
from .errors import InvalidTransitionError, IrrecoverableRollbackError, RollbackIncompleteError
from .logger import get_logger
from .models import DeploymentStatus
from .registry import retry_on_conflict
from .strategies import strategy_for


def is_restored(group, deployment):
    return (
        group.version_map() == deployment.baseline
        and not group.standby
        and group.traffic_percent == 0
        and group.active_color == deployment.baseline_color
    )


class RollbackCoordinator:
    """Returns a target group to the version set it had before a deployment"""

    def __init__(self, registry, store, artifacts=None, config=None):
        self.registry = registry
        self.store = store
        self.artifacts = artifacts or StaticArtifactCatalog()
        self.config = config or ControllerConfig()
        self.logger = get_logger("rollback")

    def _versions_to_redeploy(self, deployment):
        group = self.registry.get_group(deployment.group_id)
        live = group.instances
        if group.active_color != deployment.baseline_color and group.standby:
            # Flipping back reuses the old pool as it is
            live = group.standby
        return {
            version for iid, version in deployment.baseline.items()
            if iid not in live or live[iid].version != version
        }

    def _fail(self, deployment, message):
        state = self.store.load_strategy_state(deployment.deployment_id)
        snapshot = self.store.latest_snapshot(deployment.deployment_id)
        step = strategy_for(deployment.strategy).describe(state) if state else None

        if deployment.status != DeploymentStatus.IN_PROGRESS:
            deployment.transition(DeploymentStatus.IN_PROGRESS, reason="rollback")
        deployment.failure = {
            "error": "IrrecoverableRollbackError",
            "message": message,
            "step": step,
            "snapshot": snapshot.to_dict() if snapshot else None,
        }
        deployment.transition(DeploymentStatus.FAILED, reason=message)
        self.store.save_deployment(deployment)
        self.store.delete_strategy_state(deployment.deployment_id)
        self.logger.error(f"Deployment {deployment.deployment_id} FAILED at {step}: {message}")
        return IrrecoverableRollbackError(message, deployment.deployment_id, step, snapshot)

    def _restore(self, deployment):
        """One restoration pass; every write is checked against the revision just read"""
        gid = deployment.group_id
        group = self.registry.snapshot(gid)
        rev = group.revision

        if group.active_color != deployment.baseline_color and group.standby:
            rev = self.registry.flip(gid, expected_revision=rev)
            group = self.registry.snapshot(gid)
        if group.standby:
            rev = self.registry.discard_standby(gid, expected_revision=rev)
        if group.traffic_percent:
            rev = self.registry.set_traffic(gid, 0, expected_revision=rev)

        by_version = {}
        for iid, version in deployment.baseline.items():
            instance = group.instances.get(iid)
            if instance is not None and instance.version != version:
                by_version.setdefault(version, []).append(iid)
        for version, instance_ids in by_version.items():
            self.logger.debug(f"Reverting {len(instance_ids)} instances in {gid} to {version}")
            rev = self.registry.set_instance_versions(gid, instance_ids, version, expected_revision=rev)
        return rev

    async def rollback(self, deployment_id, reason="rollback requested"):
        deployment = self.store.load_deployment(deployment_id)
        if deployment.status == DeploymentStatus.ROLLED_BACK:
            self.logger.info(f"Deployment {deployment_id} already rolled back")
            return deployment
        if deployment.is_terminal:
            raise InvalidTransitionError(f"deployment {deployment_id} is {deployment.status.value}")

        self.logger.warning(f"Starting rollback of {deployment_id} on {deployment.group_id}: {reason}")

        undeployable = sorted(v for v in self._versions_to_redeploy(deployment)
                              if not self.artifacts.is_deployable(v))
        if undeployable:
            raise self._fail(deployment, f"previous version no longer deployable: {', '.join(undeployable)}")

        attempts = max(1, self.config.rollback_max_attempts)
        for attempt in range(1, attempts + 1):
            await retry_on_conflict(
                lambda: self._restore(deployment),
                attempts=self.config.conflict_retry_attempts,
                base_delay_s=self.config.conflict_base_delay_s,
                logger=self.logger,
            )
            if is_restored(self.registry.get_group(deployment.group_id), deployment):
                break
            self.logger.warning(f"Rollback attempt {attempt} of {deployment_id} left the group partially restored")
            if attempt < attempts:
                await asyncio.sleep(min((2 ** (attempt - 1)) * self.config.conflict_base_delay_s, 30.0))
        else:
            raise RollbackIncompleteError(f"deployment {deployment_id} not fully restored after {attempts} attempts")

        if deployment.status != DeploymentStatus.IN_PROGRESS:
            deployment.transition(DeploymentStatus.IN_PROGRESS, reason="rollback")
        deployment.record("rolled_back", restored=len(deployment.baseline), version=deployment.previous_version)
        deployment.transition(DeploymentStatus.ROLLED_BACK, reason=reason)
        self.store.save_deployment(deployment)
        self.store.delete_strategy_state(deployment_id)
        self.logger.info(f"Rollback completed: {deployment.group_id} back on {deployment.previous_version}")
        return deployment
