import asyncio

from .config import HealthThresholds
from .errors import TransientHealthError
from .logger import get_logger
from .models import CohortSnapshot, Health, Verdict


def classify(sample, thresholds, unhealthy=()):
    """Three-way verdict for an aggregated sample.

    Returns (verdict, reason). Breaches only count once the sample is large
    enough; an instance tagged failed in the registry fails the cohort outright.
    """
    if unhealthy:
        return Verdict.FAIL, f"instances reported failed: {', '.join(unhealthy)}"

    if sample.sample_count < thresholds.min_sample_size:
        return Verdict.INCONCLUSIVE, f"{sample.sample_count} samples, need {thresholds.min_sample_size}"

    breaches = []
    if sample.error_rate > thresholds.error_rate_max:
        breaches.append(f"error rate {sample.error_rate:.4f} > {thresholds.error_rate_max}")
    if sample.latency_p95_s > thresholds.latency_p95_max_s:
        breaches.append(f"p95 latency {sample.latency_p95_s:.3f}s > {thresholds.latency_p95_max_s}s")
    for name, limit in thresholds.custom_max.items():
        value = sample.signals.get(name)
        if value is not None and value > limit:
            breaches.append(f"{name} {value} > {limit}")

    if breaches:
        return Verdict.FAIL, "; ".join(breaches)
    return Verdict.PASS, "all thresholds satisfied"


class HealthEvaluator:
    def __init__(self, registry, metrics, thresholds=None, timeout_s=5.0):
        self.registry = registry
        self.metrics = metrics
        self.thresholds = thresholds or HealthThresholds()
        self.timeout_s = timeout_s
        self.logger = get_logger("health")

    def _unhealthy(self, group_id, cohort_ids):
        group = self.registry.get_group(group_id)
        failed = []
        for iid in cohort_ids:
            instance = group.instances.get(iid) or group.standby.get(iid)
            if instance is not None and instance.health == Health.FAILED:
                failed.append(iid)
        return failed

    async def _query(self, cohort_ids, window_s):
        if self.timeout_s and self.timeout_s > 0:
            return await asyncio.wait_for(self.metrics.query_metrics(cohort_ids, window_s), timeout=self.timeout_s)
        return await self.metrics.query_metrics(cohort_ids, window_s)

    async def evaluate(self, group_id, cohort_ids, thresholds=None, deployment_id=None, step=None,
                       traffic_percent=0):
        """Evaluate the cohort and return an immutable CohortSnapshot"""
        thresholds = thresholds or self.thresholds
        cohort = tuple(cohort_ids)
        context = dict(group_id=group_id, cohort=cohort, deployment_id=deployment_id, step=step,
                       traffic_percent=traffic_percent)

        unhealthy = self._unhealthy(group_id, cohort)
        try:
            sample = await self._query(list(cohort), thresholds.evaluation_window_s)
        except asyncio.TimeoutError:
            self.logger.warning(f"Metrics query for {group_id} timed out after {self.timeout_s}s")
            return CohortSnapshot(verdict=Verdict.INCONCLUSIVE, reason="metrics query timed out", **context)
        except (TransientHealthError, OSError) as e:
            self.logger.warning(f"Metrics unavailable for {group_id}: {e}")
            return CohortSnapshot(verdict=Verdict.INCONCLUSIVE, reason=f"metrics unavailable: {e}", **context)

        verdict, reason = classify(sample, thresholds, unhealthy)
        self.logger.info(f"Cohort of {len(cohort)} in {group_id}: {verdict.value} ({reason})")
        return CohortSnapshot(
            verdict=verdict,
            reason=reason,
            error_rate=sample.error_rate,
            latency_p95_s=sample.latency_p95_s,
            sample_count=sample.sample_count,
            signals=dict(sample.signals),
            taken_at=sample.collected_at,
            **context,
        )
