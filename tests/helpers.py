from delivery_controller.config import ControllerConfig
from delivery_controller.metrics import MetricsSample

HEALTHY = MetricsSample(error_rate=0.001, latency_p95_s=0.12, sample_count=500)
FAILING = MetricsSample(error_rate=0.25, latency_p95_s=0.12, sample_count=500)
SLOW = MetricsSample(error_rate=0.0, latency_p95_s=2.5, sample_count=500)
WARMING_UP = MetricsSample(error_rate=0.0, latency_p95_s=0.1, sample_count=5)


def fast_config(**overrides):
    values = dict(
        tick_interval_s=0.01,
        evaluation_timeout_s=1.0,
        abort_timeout_s=5.0,
        conflict_base_delay_s=0.0,
        rollback_max_attempts=3,
    )
    values.update(overrides)
    return ControllerConfig(**values)


def make_fleet(registry, group_id="web", size=10, version="v1"):
    return registry.register(group_id, {f"{group_id}-{i}": version for i in range(size)})


async def run_ticks(engine, deployment_id, count):
    deployment = None
    for _ in range(count):
        deployment = await engine.tick(deployment_id)
    return deployment
