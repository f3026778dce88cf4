import asyncio
import copy

from .errors import ConflictError, NotFoundError
from .logger import get_logger
from .models import Health, InstanceState, TargetGroup


def standby_instance_id(instance_id, color):
    """Name of the blue-green twin of an instance in the given color"""
    base = instance_id
    for suffix in ("-blue", "-green"):
        if base.endswith(suffix):
            base = base[:-len(suffix)]
            break
    return f"{base}-{color.value}"


async def retry_on_conflict(operation, attempts=5, base_delay_s=0.1, logger=None):
    """Run operation(), re-running it after a ConflictError with exponential backoff.

    operation must re-read the group itself on every call.
    """
    logger = logger or get_logger("registry")
    attempts = max(1, attempts)
    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except ConflictError as e:
            if attempt >= attempts:
                logger.error(f"Giving up after {attempt} conflicting attempts: {e}")
                raise
            backoff_time = min((2 ** (attempt - 1)) * base_delay_s, 30.0)
            logger.info(f"Registry conflict ({e}), retrying in {backoff_time} seconds...")
            await asyncio.sleep(backoff_time)


class TargetRegistry:
    """Fleet of target groups with an optimistic revision counter per group.

    Every mutation is synchronous, so it can never be interleaved with another
    coroutine halfway through a write. Callers that read a snapshot and then
    write pass expected_revision and get ConflictError if someone else wrote
    in between.
    """

    def __init__(self, store=None):
        self.store = store
        self.groups = {}
        self.logger = get_logger("registry")

    @classmethod
    def load(cls, store):
        registry = cls(store)
        for group in store.load_groups():
            registry.groups[group.group_id] = group
        return registry

    def register(self, group_id, instances):
        """Add or replace a group. instances maps instance id to version, or is a list of InstanceState"""
        if isinstance(instances, dict):
            pool = {iid: InstanceState(iid, version) for iid, version in instances.items()}
        else:
            pool = {i.instance_id: i for i in instances}
        group = TargetGroup(group_id=group_id, instances=pool)
        self.groups[group_id] = group
        self._save(group)
        self.logger.info(f"Registered group {group_id} with {len(pool)} instances")
        return group

    def get_group(self, group_id):
        try:
            return self.groups[group_id]
        except KeyError:
            raise NotFoundError(f"group {group_id} not found") from None

    def snapshot(self, group_id):
        return copy.deepcopy(self.get_group(group_id))

    def _check(self, group, expected_revision):
        if expected_revision is not None and expected_revision != group.revision:
            raise ConflictError(group.group_id, expected_revision, group.revision)

    def _commit(self, group):
        group.revision += 1
        self._save(group)
        return group.revision

    def _save(self, group):
        if self.store is not None:
            self.store.save_group(group)

    def _lookup(self, group, instance_ids):
        missing = [iid for iid in instance_ids if iid not in group.instances]
        if missing:
            raise NotFoundError(f"group {group.group_id} has no instances {missing}")
        return [group.instances[iid] for iid in instance_ids]

    def set_instance_versions(self, group_id, instance_ids, version, expected_revision=None):
        group = self.get_group(group_id)
        self._check(group, expected_revision)
        for instance in self._lookup(group, instance_ids):
            instance.version = version
        self.logger.debug(f"Group {group_id}: {len(instance_ids)} instances set to {version}")
        return self._commit(group)

    def set_instance_health(self, group_id, instance_ids, health, expected_revision=None):
        group = self.get_group(group_id)
        self._check(group, expected_revision)
        for instance in self._lookup(group, instance_ids):
            instance.health = Health(health)
        return self._commit(group)

    def set_traffic(self, group_id, percent, expected_revision=None):
        if not 0 <= percent <= 100:
            raise ValueError("percent must be within 0-100")
        group = self.get_group(group_id)
        self._check(group, expected_revision)
        group.traffic_percent = percent
        self.logger.debug(f"Group {group_id}: {percent}% of traffic on the cohort")
        return self._commit(group)

    def provision_standby(self, group_id, version, expected_revision=None):
        """Create a full-size idle pool in the inactive color running version"""
        group = self.get_group(group_id)
        self._check(group, expected_revision)
        color = group.active_color.other()
        group.standby = {}
        for iid in group.instances:
            twin = standby_instance_id(iid, color)
            group.standby[twin] = InstanceState(twin, version)
        self.logger.info(f"Group {group_id}: provisioned {len(group.standby)} {color.value} instances at {version}")
        return self._commit(group)

    def flip(self, group_id, expected_revision=None):
        """Route traffic to the standby pool; the old live pool becomes standby"""
        group = self.get_group(group_id)
        self._check(group, expected_revision)
        if not group.standby:
            raise NotFoundError(f"group {group_id} has no standby pool to flip to")
        group.instances, group.standby = group.standby, group.instances
        group.active_color = group.active_color.other()
        self.logger.info(f"Group {group_id}: routing flipped to {group.active_color.value}")
        return self._commit(group)

    def discard_standby(self, group_id, expected_revision=None):
        group = self.get_group(group_id)
        self._check(group, expected_revision)
        group.standby = {}
        return self._commit(group)
