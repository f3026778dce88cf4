import json
import os

from .errors import NotFoundError
from .logger import get_logger
from .models import CohortSnapshot, Deployment, StrategyState, TargetGroup


class JsonStateStore:
    """Durable controller state kept as JSON files under a directory.

    deployments/<id>.json   deployment record
    state/<id>.json         strategy state, removed once the deployment is terminal
    snapshots/<id>.jsonl    cohort snapshot history, append only
    groups/<id>.json        target groups
    commands/<id>.jsonl     pause/resume/abort requests waiting for a safe point
    """

    def __init__(self, root):
        self.root = os.fspath(root)
        self.logger = get_logger("store")
        for sub in ("deployments", "state", "snapshots", "groups", "commands"):
            os.makedirs(os.path.join(self.root, sub), exist_ok=True)

    def _path(self, kind, name, ext="json"):
        return os.path.join(self.root, kind, f"{name}.{ext}")

    def _write(self, path, data):
        tmp = f"{path}.tmp"
        with open(tmp, "w") as f:
            json.dump(data, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)

    def _read(self, path):
        with open(path) as f:
            return json.load(f)

    def _append(self, path, data):
        with open(path, "a") as f:
            f.write(json.dumps(data) + "\n")

    def _read_lines(self, path):
        if not os.path.exists(path):
            return []
        with open(path) as f:
            return [json.loads(line) for line in f if line.strip()]

    # Deployments

    def save_deployment(self, deployment):
        self._write(self._path("deployments", deployment.deployment_id), deployment.to_dict())

    def load_deployment(self, deployment_id):
        path = self._path("deployments", deployment_id)
        if not os.path.exists(path):
            raise NotFoundError(f"deployment {deployment_id} not found")
        return Deployment.from_dict(self._read(path))

    def list_deployments(self):
        directory = os.path.join(self.root, "deployments")
        result = []
        for name in sorted(os.listdir(directory)):
            if name.endswith(".json"):
                result.append(Deployment.from_dict(self._read(os.path.join(directory, name))))
        return result

    def active_deployment(self, group_id):
        for deployment in self.list_deployments():
            if deployment.group_id == group_id and not deployment.is_terminal:
                return deployment
        return None

    # Strategy state

    def save_strategy_state(self, state):
        self._write(self._path("state", state.deployment_id), state.to_dict())

    def load_strategy_state(self, deployment_id):
        path = self._path("state", deployment_id)
        if not os.path.exists(path):
            return None
        return StrategyState.from_dict(self._read(path))

    def delete_strategy_state(self, deployment_id):
        path = self._path("state", deployment_id)
        if os.path.exists(path):
            os.remove(path)

    # Snapshot history

    def append_snapshot(self, deployment_id, snapshot):
        self._append(self._path("snapshots", deployment_id, "jsonl"), snapshot.to_dict())

    def load_snapshots(self, deployment_id):
        return [CohortSnapshot.from_dict(d) for d in self._read_lines(self._path("snapshots", deployment_id, "jsonl"))]

    def latest_snapshot(self, deployment_id):
        snapshots = self.load_snapshots(deployment_id)
        return snapshots[-1] if snapshots else None

    # Target groups

    def save_group(self, group):
        self._write(self._path("groups", group.group_id), group.to_dict())

    def load_groups(self):
        directory = os.path.join(self.root, "groups")
        return [
            TargetGroup.from_dict(self._read(os.path.join(directory, name)))
            for name in sorted(os.listdir(directory))
            if name.endswith(".json")
        ]

    # Queued commands

    def enqueue_command(self, deployment_id, command):
        self._append(self._path("commands", deployment_id, "jsonl"), {"command": command})

    def drain_commands(self, deployment_id):
        path = self._path("commands", deployment_id, "jsonl")
        if not os.path.exists(path):
            return []
        draining = f"{path}.draining"
        os.replace(path, draining)
        try:
            return [entry["command"] for entry in self._read_lines(draining)]
        finally:
            os.remove(draining)
