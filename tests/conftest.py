import pytest

from delivery_controller.api import OrchestrationAPI
from delivery_controller.artifacts import StaticArtifactCatalog
from delivery_controller.metrics import ScriptedMetricsSource
from delivery_controller.store import JsonStateStore

from helpers import HEALTHY, fast_config, make_fleet


@pytest.fixture
def store(tmp_path):
    return JsonStateStore(tmp_path / "state")


@pytest.fixture
def metrics():
    return ScriptedMetricsSource(default=HEALTHY)


@pytest.fixture
def artifacts():
    return StaticArtifactCatalog()


@pytest.fixture
def api(store, metrics, artifacts):
    api = OrchestrationAPI.build(store, metrics, artifacts=artifacts, config=fast_config())
    make_fleet(api.registry)
    return api
