from .models import (
    Health, Color, StrategyKind, Verdict, DeploymentStatus,
    InstanceState, TargetGroup, CohortSnapshot, StrategyState, Deployment
)
from .config import HealthThresholds, RolloutConfig, ControllerConfig
from .errors import (
    DeliveryError, ConfigError, NotFoundError, ConflictError, ActiveDeploymentError,
    InvalidTransitionError, TransientHealthError, RollbackIncompleteError, IrrecoverableRollbackError
)
from .registry import TargetRegistry
from .metrics import MetricsSample, MetricsSource, StaticMetricsSource, ScriptedMetricsSource, FileMetricsSource
from .artifacts import ArtifactCatalog, StaticArtifactCatalog
from .health import HealthEvaluator
from .rollback import RollbackCoordinator
from .engine import StrategyEngine, Command
from .store import JsonStateStore
from .api import OrchestrationAPI, OperationResult, StatusReport

__all__ = [
    "Health", "Color", "StrategyKind", "Verdict", "DeploymentStatus",
    "InstanceState", "TargetGroup", "CohortSnapshot", "StrategyState", "Deployment",
    "HealthThresholds", "RolloutConfig", "ControllerConfig",
    "DeliveryError", "ConfigError", "NotFoundError", "ConflictError", "ActiveDeploymentError",
    "InvalidTransitionError", "TransientHealthError", "RollbackIncompleteError", "IrrecoverableRollbackError",
    "TargetRegistry",
    "MetricsSample", "MetricsSource", "StaticMetricsSource", "ScriptedMetricsSource", "FileMetricsSource",
    "ArtifactCatalog", "StaticArtifactCatalog",
    "HealthEvaluator", "RollbackCoordinator", "StrategyEngine", "Command",
    "JsonStateStore", "OrchestrationAPI", "OperationResult", "StatusReport",
]
