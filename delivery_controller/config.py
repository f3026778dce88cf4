import json
from dataclasses import dataclass, field, asdict, fields

from .errors import ConfigError
from .models import StrategyKind

DEFAULT_CANARY_STEPS = (5, 25, 50, 100)

# Spellings accepted from pipeline job definitions
_ALIASES = {
    "errorRateMax": "error_rate_max",
    "latencyP95Max": "latency_p95_max_s",
    "minSampleSize": "min_sample_size",
    "evaluationWindow": "evaluation_window_s",
    "customMax": "custom_max",
    "batchSize": "batch_size",
    "batchPercent": "batch_percent",
    "canarySteps": "canary_steps",
    "steps": "canary_steps",
    "graceTicks": "grace_ticks",
    "maxInconclusiveTicks": "max_inconclusive_ticks",
}


@dataclass
class HealthThresholds:
    """Limits a cohort must stay within to pass evaluation"""
    error_rate_max: float = 0.01  # Fraction of failed requests (0-1)
    latency_p95_max_s: float = 0.5  # 95th percentile latency in seconds
    min_sample_size: int = 100  # Fewer samples than this is inconclusive
    evaluation_window_s: float = 60.0  # How far back the metrics query looks
    custom_max: dict = field(default_factory=dict)  # Upper bound per custom signal

    @classmethod
    def from_dict(cls, data):
        return cls(**_known_fields(cls, data, "thresholds"))

    def validate(self):
        if not 0 <= self.error_rate_max <= 1:
            raise ConfigError("error_rate_max must be between 0 and 1")
        if self.latency_p95_max_s <= 0:
            raise ConfigError("latency_p95_max_s must be > 0")
        if self.min_sample_size < 0:
            raise ConfigError("min_sample_size must be >= 0")
        if self.evaluation_window_s <= 0:
            raise ConfigError("evaluation_window_s must be > 0")
        if not isinstance(self.custom_max, dict):
            raise ConfigError("custom_max must be a mapping of signal name to limit")
        for name, limit in self.custom_max.items():
            if not isinstance(limit, (int, float)):
                raise ConfigError(f"custom_max[{name}] must be a number")


@dataclass
class RolloutConfig:
    """Per-deployment strategy parameters"""
    batch_size: int = None  # Rolling: instances per wave (default 1)
    batch_percent: float = None  # Rolling: share of the group per wave (0-100%)
    canary_steps: list = field(default_factory=lambda: list(DEFAULT_CANARY_STEPS))
    grace_ticks: int = 1  # Blue-green: passing ticks before the old pool is decommissioned
    max_inconclusive_ticks: int = 3  # Consecutive inconclusive verdicts tolerated
    thresholds: HealthThresholds = field(default_factory=HealthThresholds)

    @classmethod
    def from_dict(cls, data):
        if data is not None and not isinstance(data, dict):
            raise ConfigError("rollout config must be a mapping")
        data = dict(data or {})
        thresholds = {}
        for key in list(data):
            name = _ALIASES.get(key, key)
            if name in {f.name for f in fields(HealthThresholds)}:
                thresholds[name] = data.pop(key)
        nested = data.pop("thresholds", None) or {}
        if not isinstance(nested, dict):
            raise ConfigError("thresholds must be a mapping")
        thresholds.update(nested)
        values = _known_fields(cls, data, "rollout config")
        values["thresholds"] = HealthThresholds.from_dict(thresholds)
        if "canary_steps" in values:
            values["canary_steps"] = list(values["canary_steps"])
        return cls(**values)

    def to_dict(self):
        return asdict(self)

    def validate(self, kind):
        try:
            kind = StrategyKind(kind)
        except ValueError:
            raise ConfigError(f"unknown strategy: {kind}") from None
        try:
            self._check(kind)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"invalid rollout config: {e}") from e

    def _check(self, kind):
        self.thresholds.validate()
        if self.max_inconclusive_ticks < 0:
            raise ConfigError("max_inconclusive_ticks must be >= 0")

        if kind == StrategyKind.ROLLING:
            if self.batch_size is not None and self.batch_percent is not None:
                raise ConfigError("batch_size and batch_percent are mutually exclusive")
            if self.batch_size is not None and (not isinstance(self.batch_size, int) or self.batch_size <= 0):
                raise ConfigError("batch_size must be > 0")
            if self.batch_percent is not None and not 0 < self.batch_percent <= 100:
                raise ConfigError("batch_percent must be in (0, 100]")

        elif kind == StrategyKind.CANARY:
            steps = self.canary_steps
            if not steps:
                raise ConfigError("canary_steps must not be empty")
            if any(not isinstance(s, int) or not 0 < s <= 100 for s in steps):
                raise ConfigError("canary steps must be integers in (0, 100]")
            if any(b <= a for a, b in zip(steps, steps[1:])):
                raise ConfigError("canary steps must be strictly increasing")
            if steps[-1] != 100:
                raise ConfigError("the last canary step must be 100")

        elif kind == StrategyKind.BLUE_GREEN:
            if self.grace_ticks < 1:
                raise ConfigError("grace_ticks must be >= 1")


@dataclass
class ControllerConfig:
    """Process-wide controller settings"""
    tick_interval_s: float = 15.0
    evaluation_timeout_s: float = 5.0
    abort_timeout_s: float = 30.0
    conflict_retry_attempts: int = 5
    conflict_base_delay_s: float = 0.1
    rollback_max_attempts: int = 5

    @classmethod
    def from_dict(cls, data):
        return cls(**_known_fields(cls, data, "controller config"))


def _known_fields(cls, data, what):
    names = {f.name for f in fields(cls)}
    values = {}
    for key, value in (data or {}).items():
        name = _ALIASES.get(key, key)
        if name not in names:
            raise ConfigError(f"unknown {what} option: {key}")
        values[name] = value
    return values


def load_json_option(raw):
    """Accept inline JSON or @path to a JSON file; the result must be an object"""
    try:
        if raw.startswith("@"):
            with open(raw[1:]) as f:
                data = json.load(f)
        else:
            data = json.loads(raw)
    except (OSError, ValueError) as e:
        raise ConfigError(f"cannot read config: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError("config must be a JSON object")
    return data


def parse_rollout_config(raw):
    if raw is None:
        return RolloutConfig()
    data = load_json_option(raw)
    try:
        return RolloutConfig.from_dict(data)
    except (TypeError, ValueError) as e:
        raise ConfigError(str(e)) from e
