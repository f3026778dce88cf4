import asyncio
from dataclasses import dataclass

from .artifacts import StaticArtifactCatalog
from .config import ControllerConfig
from .engine import Command, StrategyEngine
from .errors import IrrecoverableRollbackError
from .health import HealthEvaluator
from .logger import get_logger
from .models import DeploymentStatus
from .registry import TargetRegistry
from .rollback import RollbackCoordinator


@dataclass
class OperationResult:
    """Outcome of a pause/resume/abort call"""
    deployment_id: str
    status: DeploymentStatus
    applied: bool = True  # False when the call was a no-op
    terminal: bool = False  # The deployment had already finished
    in_progress: bool = False  # Abort still running in the background

    def to_dict(self):
        return {
            "deployment_id": self.deployment_id,
            "status": self.status.value,
            "applied": self.applied,
            "terminal": self.terminal,
            "in_progress": self.in_progress,
        }


@dataclass
class StatusReport:
    deployment: object
    snapshot: object = None  # Latest CohortSnapshot
    state: object = None  # StrategyState while the deployment is active

    def to_dict(self):
        return {
            "deployment": self.deployment.to_dict(),
            "snapshot": self.snapshot.to_dict() if self.snapshot else None,
            "state": self.state.to_dict() if self.state else None,
        }


class OrchestrationAPI:
    """Entry point for external tooling: start, pause, resume, abort and status"""

    def __init__(self, engine, config=None):
        self.engine = engine
        self.config = config or engine.config
        self.logger = get_logger("api")
        self._background = set()

    @classmethod
    def build(cls, store, metrics, registry=None, artifacts=None, config=None):
        """Wire up a controller around a state store and a metrics source"""
        config = config or ControllerConfig()
        registry = registry or TargetRegistry.load(store)
        evaluator = HealthEvaluator(registry, metrics, timeout_s=config.evaluation_timeout_s)
        coordinator = RollbackCoordinator(registry, store, artifacts or StaticArtifactCatalog(), config)
        engine = StrategyEngine(registry, evaluator, coordinator, store, config)
        return cls(engine, config)

    @property
    def registry(self):
        return self.engine.registry

    async def start(self, group_id, version, strategy, config=None, launch=True):
        deployment = await self.engine.start(group_id, version, strategy, config, launch=launch)
        return deployment.deployment_id

    async def _control(self, deployment_id, command, expected):
        deployment = self.engine.get(deployment_id)
        if deployment.is_terminal:
            return OperationResult(deployment_id, deployment.status, applied=False, terminal=True)
        if deployment.status == expected:
            return OperationResult(deployment_id, deployment.status, applied=False)
        before = deployment.status
        deployment = await self.engine.request(deployment_id, command)
        return OperationResult(deployment_id, deployment.status, applied=deployment.status != before)

    async def pause(self, deployment_id):
        return await self._control(deployment_id, Command.PAUSE, DeploymentStatus.PAUSED)

    async def resume(self, deployment_id):
        return await self._control(deployment_id, Command.RESUME, DeploymentStatus.IN_PROGRESS)

    async def abort(self, deployment_id):
        """Roll the deployment back from whatever step it is at.

        Waits at most abort_timeout_s; after that the rollback keeps going in
        the background and the result is flagged in_progress.
        """
        deployment = self.engine.get(deployment_id)
        if deployment.is_terminal:
            return OperationResult(deployment_id, deployment.status, applied=False, terminal=True)

        task = asyncio.ensure_future(self.engine.request(deployment_id, Command.ABORT))
        try:
            deployment = await asyncio.wait_for(asyncio.shield(task), timeout=self.config.abort_timeout_s)
        except asyncio.TimeoutError:
            self.logger.warning(f"Abort of {deployment_id} still running after {self.config.abort_timeout_s}s")
            self._background.add(task)
            task.add_done_callback(self._background.discard)
            task.add_done_callback(self._report_background_abort)
            current = self.engine.get(deployment_id)
            return OperationResult(deployment_id, current.status, in_progress=True)

        if deployment.status == DeploymentStatus.FAILED and deployment.failure:
            raise IrrecoverableRollbackError(
                deployment.failure["message"], deployment_id,
                deployment.failure.get("step"), self.engine.store.latest_snapshot(deployment_id),
            )
        return OperationResult(deployment_id, deployment.status,
                               in_progress=not deployment.is_terminal)

    def _report_background_abort(self, task):
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self.logger.error(f"Background abort failed: {error}")

    def status(self, deployment_id):
        store = self.engine.store
        return StatusReport(
            deployment=store.load_deployment(deployment_id),
            snapshot=store.latest_snapshot(deployment_id),
            state=store.load_strategy_state(deployment_id),
        )

    async def recover(self, launch=True):
        return await self.engine.recover(launch=launch)

    async def wait(self, deployment_id, timeout=None):
        return await self.engine.wait(deployment_id, timeout)

    async def close(self):
        await self.engine.shutdown()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
