from delivery_controller.config import RolloutConfig
from delivery_controller.strategies import batch_size_for, cohort_size, plan_batches


def test_plan_respects_batch_size():
    ids = [f"n{i}" for i in range(10)]
    batches = plan_batches(ids, batch_size=3)
    lengths = [len(b) for b in batches]
    assert lengths == [3, 3, 3, 1]


def test_batch_size_defaults_to_one_instance():
    assert batch_size_for(10, RolloutConfig()) == 1


def test_batch_percent_rounds_up():
    assert batch_size_for(10, RolloutConfig(batch_percent=25)) == 3
    assert batch_size_for(3, RolloutConfig(batch_percent=1)) == 1


def test_canary_cohort_size():
    assert cohort_size(10, 5) == 1
    assert cohort_size(10, 25) == 3
    assert cohort_size(10, 50) == 5
    assert cohort_size(10, 100) == 10
