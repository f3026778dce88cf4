"""Per-strategy rollout logic.

Each strategy is a pair of plain functions looked up by StrategyKind:

  expose(deployment, state, group) -> Exposure
      what the registry must look like for the current step; derived only from
      persisted state so it can be re-applied after a restart
  step(deployment, state, snapshot) -> NextAction
      what to do with the verdict for that step; updates the state counters
"""
import math
from dataclasses import dataclass
from enum import Enum
from typing import Callable, NamedTuple

from .models import StrategyKind, StrategyState, Verdict
from .registry import standby_instance_id


class NextAction(str, Enum):
    ADVANCE = "advance"
    HOLD = "hold"
    COMPLETE = "complete"
    ROLLBACK = "rollback"


@dataclass(frozen=True)
class Exposure:
    cohort: tuple = ()  # Live instances that must run the desired version
    evaluate: tuple = ()  # Instances whose health gates this step
    traffic_percent: int = 0
    standby: bool = False  # Standby pool provisioned at the desired version
    flipped: bool = False  # Traffic routed to the former standby pool


def plan_batches(instances, batch_size):
    """Split instances into batches for deployment"""
    if batch_size <= 0:
        raise ValueError("batch_size must be > 0")

    instance_list = list(instances)
    batches = []
    for i in range(0, len(instance_list), batch_size):
        batches.append(instance_list[i:i + batch_size])
    return batches


def batch_size_for(total, config):
    if config.batch_size:
        return config.batch_size
    if config.batch_percent:
        return max(1, math.ceil(total * config.batch_percent / 100.0))
    return 1


def cohort_size(total, percent):
    return min(total, math.ceil(total * percent / 100.0))


def gate(deployment, state, snapshot):
    """Shared verdict handling; returns an action, or None when the step passed"""
    if snapshot.verdict == Verdict.FAIL:
        return NextAction.ROLLBACK
    if snapshot.verdict == Verdict.INCONCLUSIVE:
        state.inconclusive_ticks += 1
        if state.inconclusive_ticks > deployment.config.max_inconclusive_ticks:
            return NextAction.ROLLBACK
        return NextAction.HOLD
    state.inconclusive_ticks = 0
    return None


def _advance(state):
    if state.step_index + 1 >= state.total_steps:
        return NextAction.COMPLETE
    state.step_index += 1
    return NextAction.ADVANCE


# Rolling

def rolling_init(deployment, group):
    batches = plan_batches(group.instance_ids(), batch_size_for(group.total, deployment.config))
    return StrategyState(deployment.deployment_id, StrategyKind.ROLLING, total_steps=len(batches))


def rolling_expose(deployment, state, group):
    size = batch_size_for(len(deployment.baseline), deployment.config)
    exposed = list(deployment.baseline)[:size * (state.step_index + 1)]
    return Exposure(cohort=tuple(exposed), evaluate=tuple(exposed))


def rolling_step(deployment, state, snapshot):
    return gate(deployment, state, snapshot) or _advance(state)


def rolling_describe(state):
    return f"batch {state.step_index + 1}/{state.total_steps}"


# Blue-green: step 0 verifies the standby pool, step 1 runs on it with the old pool kept warm

def blue_green_init(deployment, group):
    return StrategyState(deployment.deployment_id, StrategyKind.BLUE_GREEN, total_steps=2,
                         grace_remaining=deployment.config.grace_ticks)


def blue_green_expose(deployment, state, group):
    color = deployment.baseline_color.other()
    twins = tuple(standby_instance_id(iid, color) for iid in deployment.baseline)
    if state.step_index == 0:
        return Exposure(evaluate=twins, standby=True)
    # After the flip the twins are the live pool
    return Exposure(evaluate=twins, traffic_percent=0, flipped=True)


def blue_green_step(deployment, state, snapshot):
    action = gate(deployment, state, snapshot)
    if action:
        return action
    if state.step_index == 0:
        state.grace_remaining = deployment.config.grace_ticks
        return _advance(state)
    state.grace_remaining -= 1
    if state.grace_remaining <= 0:
        return NextAction.COMPLETE
    return NextAction.HOLD


def blue_green_describe(state):
    if state.step_index == 0:
        return "verify standby"
    return f"grace period ({state.grace_remaining} ticks left)"


# Canary

def canary_init(deployment, group):
    return StrategyState(deployment.deployment_id, StrategyKind.CANARY,
                         total_steps=len(deployment.config.canary_steps))


def canary_expose(deployment, state, group):
    percent = deployment.config.canary_steps[state.step_index]
    state.traffic_percent = percent
    size = cohort_size(len(deployment.baseline), percent)
    exposed = tuple(list(deployment.baseline)[:size])
    return Exposure(cohort=exposed, evaluate=exposed, traffic_percent=percent)


def canary_step(deployment, state, snapshot):
    return gate(deployment, state, snapshot) or _advance(state)


def canary_describe(state):
    return f"canary {state.traffic_percent}% (step {state.step_index + 1}/{state.total_steps})"


class Strategy(NamedTuple):
    init: Callable
    expose: Callable
    step: Callable
    describe: Callable


STRATEGIES = {
    StrategyKind.ROLLING: Strategy(rolling_init, rolling_expose, rolling_step, rolling_describe),
    StrategyKind.BLUE_GREEN: Strategy(blue_green_init, blue_green_expose, blue_green_step, blue_green_describe),
    StrategyKind.CANARY: Strategy(canary_init, canary_expose, canary_step, canary_describe),
}


def strategy_for(kind):
    return STRATEGIES[StrategyKind(kind)]
