from collections import Counter
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
import uuid

from .errors import InvalidTransitionError


def utcnow():
    return datetime.now(timezone.utc)


def _ts(value):
    return value.isoformat() if value else None


def _parse_ts(value):
    return datetime.fromisoformat(value) if value else None


class Health(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    FAILED = "failed"


class Color(str, Enum):
    BLUE = "blue"
    GREEN = "green"

    def other(self):
        return Color.GREEN if self == Color.BLUE else Color.BLUE


class StrategyKind(str, Enum):
    ROLLING = "rolling"
    BLUE_GREEN = "blue-green"
    CANARY = "canary"


class Verdict(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    INCONCLUSIVE = "inconclusive"


class DeploymentStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    PAUSED = "paused"
    SUCCEEDED = "succeeded"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"

    @property
    def is_terminal(self):
        return self in (DeploymentStatus.SUCCEEDED, DeploymentStatus.ROLLED_BACK, DeploymentStatus.FAILED)


# Paused only ever returns to InProgress
TRANSITIONS = {
    DeploymentStatus.PENDING: {DeploymentStatus.IN_PROGRESS},
    DeploymentStatus.IN_PROGRESS: {
        DeploymentStatus.PAUSED,
        DeploymentStatus.SUCCEEDED,
        DeploymentStatus.ROLLED_BACK,
        DeploymentStatus.FAILED,
    },
    DeploymentStatus.PAUSED: {DeploymentStatus.IN_PROGRESS},
}


@dataclass
class InstanceState:
    instance_id: str
    version: str
    health: Health = Health.HEALTHY


@dataclass
class TargetGroup:
    group_id: str
    instances: dict = field(default_factory=dict)  # instance_id -> InstanceState serving traffic
    standby: dict = field(default_factory=dict)  # Idle blue-green pool
    active_color: Color = Color.BLUE
    traffic_percent: int = 0  # Share of traffic routed to the canary cohort
    revision: int = 0  # Bumped on every mutation

    @property
    def total(self):
        return len(self.instances)

    def instance_ids(self):
        return list(self.instances)

    def version_map(self):
        return {iid: inst.version for iid, inst in self.instances.items()}

    def common_version(self):
        """Most common version in the live pool"""
        counts = Counter(inst.version for inst in self.instances.values())
        return counts.most_common(1)[0][0] if counts else None

    def to_dict(self):
        return {
            "group_id": self.group_id,
            "instances": [asdict(i) for i in self.instances.values()],
            "standby": [asdict(i) for i in self.standby.values()],
            "active_color": self.active_color.value,
            "traffic_percent": self.traffic_percent,
            "revision": self.revision,
        }

    @classmethod
    def from_dict(cls, data):
        def pool(items):
            result = {}
            for i in items or []:
                inst = InstanceState(i["instance_id"], i["version"], Health(i.get("health", "healthy")))
                result[inst.instance_id] = inst
            return result

        return cls(
            group_id=data["group_id"],
            instances=pool(data.get("instances")),
            standby=pool(data.get("standby")),
            active_color=Color(data.get("active_color", "blue")),
            traffic_percent=data.get("traffic_percent", 0),
            revision=data.get("revision", 0),
        )


@dataclass(frozen=True)
class CohortSnapshot:
    """One evaluation of the exposed cohort; never modified after creation"""
    group_id: str
    cohort: tuple
    verdict: Verdict
    reason: str = ""
    error_rate: float = None
    latency_p95_s: float = None
    sample_count: int = 0
    signals: dict = field(default_factory=dict)
    deployment_id: str = None
    step: int = None
    traffic_percent: int = 0
    taken_at: datetime = field(default_factory=utcnow)

    def to_dict(self):
        data = asdict(self)
        data["cohort"] = list(self.cohort)
        data["verdict"] = self.verdict.value
        data["taken_at"] = _ts(self.taken_at)
        return data

    @classmethod
    def from_dict(cls, data):
        data = dict(data)
        data["cohort"] = tuple(data.get("cohort", ()))
        data["verdict"] = Verdict(data["verdict"])
        data["taken_at"] = _parse_ts(data.get("taken_at"))
        return cls(**data)


@dataclass
class StrategyState:
    deployment_id: str
    kind: StrategyKind
    step_index: int = 0
    total_steps: int = 0
    traffic_percent: int = 0
    grace_remaining: int = 0
    inconclusive_ticks: int = 0  # Consecutive inconclusive verdicts at the current step
    ticks: int = 0
    rollback_pending: bool = False

    def to_dict(self):
        data = asdict(self)
        data["kind"] = self.kind.value
        return data

    @classmethod
    def from_dict(cls, data):
        data = dict(data)
        data["kind"] = StrategyKind(data["kind"])
        return cls(**data)


@dataclass
class Deployment:
    """One rollout attempt of a version onto a target group"""
    deployment_id: str
    group_id: str
    strategy: StrategyKind
    desired_version: str
    previous_version: str
    config: object = None  # RolloutConfig
    baseline: dict = field(default_factory=dict)  # instance_id -> version before the rollout
    baseline_color: Color = Color.BLUE
    status: DeploymentStatus = DeploymentStatus.PENDING
    started_at: datetime = field(default_factory=utcnow)
    last_transition_at: datetime = field(default_factory=utcnow)
    history: list = field(default_factory=list)
    failure: dict = None  # Set when operator action is needed

    @classmethod
    def create(cls, group, desired_version, strategy, config):
        return cls(
            deployment_id=uuid.uuid4().hex[:12],
            group_id=group.group_id,
            strategy=StrategyKind(strategy),
            desired_version=desired_version,
            previous_version=group.common_version(),
            config=config,
            baseline=group.version_map(),
            baseline_color=group.active_color,
        )

    @property
    def is_terminal(self):
        return self.status.is_terminal

    def record(self, event, **details):
        entry = {"event": event, "at": _ts(utcnow())}
        entry.update(details)
        self.history.append(entry)

    def transition(self, status, reason=None):
        status = DeploymentStatus(status)
        if status not in TRANSITIONS.get(self.status, set()):
            raise InvalidTransitionError(
                f"deployment {self.deployment_id}: {self.status.value} -> {status.value} is not allowed"
            )
        self.record("transition", source=self.status.value, target=status.value, reason=reason)
        self.status = status
        self.last_transition_at = utcnow()

    def to_dict(self):
        return {
            "deployment_id": self.deployment_id,
            "group_id": self.group_id,
            "strategy": self.strategy.value,
            "desired_version": self.desired_version,
            "previous_version": self.previous_version,
            "config": self.config.to_dict() if self.config is not None else None,
            "baseline": dict(self.baseline),
            "baseline_color": self.baseline_color.value,
            "status": self.status.value,
            "started_at": _ts(self.started_at),
            "last_transition_at": _ts(self.last_transition_at),
            "history": list(self.history),
            "failure": self.failure,
        }

    @classmethod
    def from_dict(cls, data):
        from .config import RolloutConfig

        return cls(
            deployment_id=data["deployment_id"],
            group_id=data["group_id"],
            strategy=StrategyKind(data["strategy"]),
            desired_version=data["desired_version"],
            previous_version=data["previous_version"],
            config=RolloutConfig.from_dict(data.get("config")),
            baseline=dict(data.get("baseline") or {}),
            baseline_color=Color(data.get("baseline_color", "blue")),
            status=DeploymentStatus(data["status"]),
            started_at=_parse_ts(data.get("started_at")),
            last_transition_at=_parse_ts(data.get("last_transition_at")),
            history=list(data.get("history") or []),
            failure=data.get("failure"),
        )
