import asyncio
import json
from dataclasses import dataclass, field, replace
from datetime import datetime

from .errors import TransientHealthError
from .models import utcnow


@dataclass
class MetricsSample:
    """Aggregated signals for a set of instances over a window"""
    error_rate: float
    latency_p95_s: float
    sample_count: int
    signals: dict = field(default_factory=dict)  # Custom named signals
    collected_at: datetime = field(default_factory=utcnow)


def aggregate(samples):
    """Combine per-instance samples: error rate weighted by sample count,
    worst p95 latency, worst value of each custom signal."""
    samples = list(samples)
    if not samples:
        return MetricsSample(error_rate=0.0, latency_p95_s=0.0, sample_count=0)

    total = sum(s.sample_count for s in samples)
    if total:
        error_rate = sum(s.error_rate * s.sample_count for s in samples) / total
    else:
        error_rate = max(s.error_rate for s in samples)

    signals = {}
    for s in samples:
        for name, value in s.signals.items():
            signals[name] = max(value, signals.get(name, value))

    return MetricsSample(
        error_rate=error_rate,
        latency_p95_s=max(s.latency_p95_s for s in samples),
        sample_count=total,
        signals=signals,
    )


class MetricsSource:
    """Interface to the external metrics collaborator"""

    async def query_metrics(self, instance_ids, window_s):
        raise NotImplementedError


class StaticMetricsSource(MetricsSource):
    def __init__(self, sample):
        self.sample = sample

    async def query_metrics(self, instance_ids, window_s):
        return replace(self.sample, collected_at=utcnow())


class ScriptedMetricsSource(MetricsSource):
    """Replays a script of responses, one per query, then falls back to a default.

    Script entries may be a MetricsSample, an exception instance to raise, or a
    callable taking the queried instance ids and returning either of those.
    A delay makes every query slow, which is how evaluation timeouts are exercised.
    """

    def __init__(self, script=None, default=None, delay=0):
        self.script = list(script or [])
        self.default = default
        self.delay = delay
        self.queries = []

    def push(self, *entries):
        self.script.extend(entries)

    async def query_metrics(self, instance_ids, window_s):
        self.queries.append(list(instance_ids))
        if self.delay > 0:
            await asyncio.sleep(self.delay)

        entry = self.script.pop(0) if self.script else self.default
        if callable(entry) and not isinstance(entry, MetricsSample):
            entry = entry(list(instance_ids))
        if entry is None:
            raise TransientHealthError("no scripted metrics left")
        if isinstance(entry, BaseException):
            raise entry
        return replace(entry, collected_at=utcnow())


class FileMetricsSource(MetricsSource):
    """Reads metrics from a JSON file on every query.

    Layout: {"default": {...}, "instances": {"<instance_id>": {...}}} where each
    entry has error_rate, latency_p95_s, sample_count and optional signals.
    """

    def __init__(self, path):
        self.path = path

    async def query_metrics(self, instance_ids, window_s):
        try:
            with open(self.path) as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise TransientHealthError(f"cannot read metrics from {self.path}: {e}") from e

        per_instance = data.get("instances", {})
        default = data.get("default")
        samples = []
        for iid in instance_ids:
            raw = per_instance.get(iid, default)
            if raw is None:
                continue
            samples.append(MetricsSample(
                error_rate=float(raw.get("error_rate", 0.0)),
                latency_p95_s=float(raw.get("latency_p95_s", 0.0)),
                sample_count=int(raw.get("sample_count", 0)),
                signals=dict(raw.get("signals", {})),
            ))
        return aggregate(samples)
