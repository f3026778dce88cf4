import pytest

from delivery_controller.errors import ConflictError, NotFoundError
from delivery_controller.models import Color, Health
from delivery_controller.registry import TargetRegistry, retry_on_conflict, standby_instance_id

from helpers import make_fleet


class TestTargetRegistry:
    """Version assignment and optimistic concurrency."""

    def test_unknown_group_raises_not_found(self):
        registry = TargetRegistry()
        with pytest.raises(NotFoundError):
            registry.get_group("missing")

    def test_unknown_instance_raises_not_found(self):
        registry = TargetRegistry()
        make_fleet(registry, size=2)
        with pytest.raises(NotFoundError):
            registry.set_instance_versions("web", ["web-9"], "v2")

    def test_set_versions_bumps_revision(self):
        registry = TargetRegistry()
        make_fleet(registry, size=3)
        rev = registry.set_instance_versions("web", ["web-0", "web-1"], "v2", expected_revision=0)
        assert rev == 1
        assert registry.get_group("web").version_map() == {"web-0": "v2", "web-1": "v2", "web-2": "v1"}

    def test_stale_revision_is_rejected(self):
        registry = TargetRegistry()
        make_fleet(registry, size=3)
        stale = registry.snapshot("web").revision
        registry.set_instance_versions("web", ["web-0"], "v2")

        with pytest.raises(ConflictError) as exc_info:
            registry.set_instance_versions("web", ["web-1"], "v3", expected_revision=stale)
        assert exc_info.value.actual == stale + 1
        # The rejected write left no trace
        assert registry.get_group("web").instances["web-1"].version == "v1"

    def test_snapshot_is_a_copy(self):
        registry = TargetRegistry()
        make_fleet(registry, size=2)
        snap = registry.snapshot("web")
        snap.instances["web-0"].version = "tampered"
        assert registry.get_group("web").instances["web-0"].version == "v1"

    def test_standby_flip_and_discard(self):
        registry = TargetRegistry()
        make_fleet(registry, size=2)
        registry.provision_standby("web", "v2")
        group = registry.get_group("web")
        assert sorted(group.standby) == ["web-0-green", "web-1-green"]
        assert group.instances["web-0"].version == "v1"

        registry.flip("web")
        assert group.active_color == Color.GREEN
        assert group.version_map() == {"web-0-green": "v2", "web-1-green": "v2"}
        assert sorted(group.standby) == ["web-0", "web-1"]

        registry.discard_standby("web")
        assert group.standby == {}

    def test_flip_without_standby_fails(self):
        registry = TargetRegistry()
        make_fleet(registry, size=2)
        with pytest.raises(NotFoundError):
            registry.flip("web")

    def test_health_tags(self):
        registry = TargetRegistry()
        make_fleet(registry, size=2)
        registry.set_instance_health("web", ["web-1"], "failed")
        assert registry.get_group("web").instances["web-1"].health == Health.FAILED

    def test_traffic_bounds(self):
        registry = TargetRegistry()
        make_fleet(registry, size=2)
        with pytest.raises(ValueError):
            registry.set_traffic("web", 120)

    def test_groups_survive_reload(self, store):
        registry = TargetRegistry(store)
        make_fleet(registry, size=2)
        registry.set_instance_versions("web", ["web-0"], "v2")

        reloaded = TargetRegistry.load(store)
        group = reloaded.get_group("web")
        assert group.revision == 1
        assert group.version_map() == {"web-0": "v2", "web-1": "v1"}


def test_standby_names_alternate_between_colors():
    assert standby_instance_id("web-0", Color.GREEN) == "web-0-green"
    assert standby_instance_id("web-0-green", Color.BLUE) == "web-0-blue"


class TestRetryOnConflict:

    @pytest.mark.asyncio
    async def test_retries_until_write_goes_through(self):
        registry = TargetRegistry()
        make_fleet(registry, size=2)
        calls = []

        def write():
            rev = registry.snapshot("web").revision
            calls.append(rev)
            if len(calls) == 1:
                # Someone else writes between our read and our write
                registry.set_traffic("web", 10)
            return registry.set_instance_versions("web", ["web-0"], "v2", expected_revision=rev)

        await retry_on_conflict(write, attempts=3, base_delay_s=0)
        assert len(calls) == 2
        assert registry.get_group("web").instances["web-0"].version == "v2"

    @pytest.mark.asyncio
    async def test_gives_up_after_bounded_attempts(self):
        registry = TargetRegistry()
        make_fleet(registry, size=1)

        def always_stale():
            return registry.set_instance_versions("web", ["web-0"], "v2", expected_revision=-1)

        with pytest.raises(ConflictError):
            await retry_on_conflict(always_stale, attempts=2, base_delay_s=0)
