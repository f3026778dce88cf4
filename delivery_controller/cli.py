import argparse
import asyncio
import json
import os
import sys
from dataclasses import asdict

from .api import OrchestrationAPI, StatusReport
from .config import ControllerConfig, load_json_option, parse_rollout_config
from .engine import Command
from .errors import ActiveDeploymentError, ConfigError, IrrecoverableRollbackError, NotFoundError
from .logger import LOG_LEVELS, setup_logging, get_logger
from .metrics import FileMetricsSource
from .models import DeploymentStatus, Health, InstanceState, StrategyKind
from .registry import TargetRegistry
from .store import JsonStateStore

EXIT_OK = 0
EXIT_INVALID = 1
EXIT_CONFLICT = 2
EXIT_TERMINAL = 3
EXIT_ROLLOUT_FAILED = 4

# How often a remote abort polls the state directory
ABORT_POLL_S = 0.5


class ArgumentParser(argparse.ArgumentParser):
    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(EXIT_INVALID, f"{self.prog}: error: {message}\n")


def load_fleet(path):
    """Read target groups from JSON: a list of {"group_id", "instances": [...]}"""
    logger = get_logger("cli")
    try:
        with open(path) as f:
            data = json.load(f)
        if isinstance(data, dict):
            data = data.get("groups", [])
        groups = []
        for g in data:
            instances = []
            for i in g["instances"]:
                instances.append(InstanceState(
                    instance_id=i["instance_id"],
                    version=i["version"],
                    health=Health(i.get("health", "healthy")),
                ))
            groups.append((g["group_id"], instances))
        return groups
    except Exception as e:
        logger.error(f"Error loading fleet: {e}")
        raise


def save_fleet(path, registry):
    groups = []
    for group in registry.groups.values():
        groups.append({"group_id": group.group_id,
                       "instances": [asdict(i) for i in group.instances.values()]})
    with open(path, "w") as f:
        json.dump(groups, f, indent=2)


def _print(data):
    print(json.dumps(data, indent=2, default=str))


def build_parser():
    parser = ArgumentParser(prog="delivery-controller", description="Progressive delivery controller")
    parser.add_argument("--log-level", default="INFO", type=str.upper, choices=LOG_LEVELS)
    parser.add_argument("--state-dir", default=os.environ.get("DELIVERY_STATE_DIR", ".delivery"))
    parser.add_argument("--controller-config", help="controller settings as inline JSON or @path")
    parser.add_argument("--tick-interval", type=float, help="seconds between ticks (default 15)")
    parser.add_argument("--evaluation-timeout", type=float, help="metrics query timeout (default 5)")
    parser.add_argument("--abort-timeout", type=float, help="how long abort waits (default 30)")
    sub = parser.add_subparsers(dest="cmd", required=True)

    deploy = sub.add_parser("deploy")
    deploy.add_argument("group")
    deploy.add_argument("version")
    deploy.add_argument("--strategy", required=True, choices=[k.value for k in StrategyKind])
    deploy.add_argument("--config", help="inline JSON or @path to a JSON file")
    deploy.add_argument("--fleet", help="JSON file with target groups to register")
    deploy.add_argument("--metrics", help="JSON metrics file (default: <state-dir>/metrics.json)")
    deploy.add_argument("--detach", action="store_true", help="record the deployment and exit; 'run' drives it")

    for name in ("pause", "resume", "abort", "status"):
        cmd = sub.add_parser(name)
        cmd.add_argument("deployment_id")

    run = sub.add_parser("run", help="resume every persisted active deployment")
    run.add_argument("--metrics", help="JSON metrics file (default: <state-dir>/metrics.json)")
    return parser


def _controller_config(args):
    """Settings from --controller-config, overridden by the individual flags"""
    values = load_json_option(args.controller_config) if args.controller_config else {}
    flags = {
        "tick_interval_s": args.tick_interval,
        "evaluation_timeout_s": args.evaluation_timeout,
        "abort_timeout_s": args.abort_timeout,
    }
    values.update({name: value for name, value in flags.items() if value is not None})
    return ControllerConfig.from_dict(values)


def _build_api(args, store, registry=None):
    metrics = FileMetricsSource(args.metrics or os.path.join(args.state_dir, "metrics.json"))
    return OrchestrationAPI.build(store, metrics, registry=registry, config=_controller_config(args))


async def _deploy(args, store):
    registry = TargetRegistry.load(store)
    if args.fleet:
        for group_id, instances in load_fleet(args.fleet):
            if group_id not in registry.groups:
                registry.register(group_id, instances)

    api = _build_api(args, store, registry)
    try:
        try:
            deployment_id = await api.start(args.group, args.version, args.strategy,
                                            parse_rollout_config(args.config), launch=not args.detach)
        except ActiveDeploymentError as e:
            print(f"Error: {e}")
            return EXIT_CONFLICT
        except (ConfigError, NotFoundError) as e:
            print(f"Error: {e}")
            return EXIT_INVALID

        if args.detach:
            _print({"deployment_id": deployment_id})
            return EXIT_OK

        deployment = await api.wait(deployment_id)
        _print(api.status(deployment_id).to_dict())
        if args.fleet:
            save_fleet(args.fleet, registry)
        return EXIT_OK if deployment.status == DeploymentStatus.SUCCEEDED else EXIT_ROLLOUT_FAILED
    finally:
        await api.close()


async def _run(args, store):
    api = _build_api(args, store)
    try:
        deployment_ids = await api.recover()
        outcome = EXIT_OK
        for deployment_id in deployment_ids:
            deployment = await api.wait(deployment_id)
            _print(api.status(deployment_id).to_dict())
            if deployment.status != DeploymentStatus.SUCCEEDED:
                outcome = EXIT_ROLLOUT_FAILED
        return outcome
    finally:
        await api.close()


async def _control(args, store):
    """Queue a command for the controller process that owns the deployment"""
    deployment = store.load_deployment(args.deployment_id)
    if deployment.is_terminal:
        _print({"deployment_id": deployment.deployment_id, "status": deployment.status.value,
                "applied": False, "terminal": True})
        return EXIT_TERMINAL

    command = Command(args.cmd)
    already = {Command.PAUSE: DeploymentStatus.PAUSED, Command.RESUME: DeploymentStatus.IN_PROGRESS}
    if already.get(command) == deployment.status:
        _print({"deployment_id": deployment.deployment_id, "status": deployment.status.value, "applied": False})
        return EXIT_OK

    store.enqueue_command(args.deployment_id, command.value)
    if command != Command.ABORT:
        _print({"deployment_id": deployment.deployment_id, "status": deployment.status.value, "queued": command.value})
        return EXIT_OK

    loop = asyncio.get_running_loop()
    deadline = loop.time() + _controller_config(args).abort_timeout_s
    while not deployment.is_terminal and loop.time() < deadline:
        await asyncio.sleep(ABORT_POLL_S)
        deployment = store.load_deployment(args.deployment_id)

    _print({"deployment_id": deployment.deployment_id, "status": deployment.status.value,
            "in_progress": not deployment.is_terminal, "failure": deployment.failure})
    if deployment.status == DeploymentStatus.FAILED:
        return EXIT_ROLLOUT_FAILED
    return EXIT_OK


def _status(args, store):
    report = StatusReport(
        deployment=store.load_deployment(args.deployment_id),
        snapshot=store.latest_snapshot(args.deployment_id),
        state=store.load_strategy_state(args.deployment_id),
    )
    _print(report.to_dict())
    return EXIT_OK


def dispatch(args):
    store = JsonStateStore(args.state_dir)
    try:
        if args.cmd == "deploy":
            return asyncio.run(_deploy(args, store))
        if args.cmd == "run":
            return asyncio.run(_run(args, store))
        if args.cmd == "status":
            return _status(args, store)
        return asyncio.run(_control(args, store))
    except (ConfigError, NotFoundError) as e:
        print(f"Error: {e}")
        return EXIT_INVALID
    except IrrecoverableRollbackError as e:
        print(f"Error: {e} (step: {e.step})")
        return EXIT_ROLLOUT_FAILED
    except (OSError, ValueError, KeyError) as e:
        print(f"Error: {e}")
        return EXIT_INVALID


def main(argv=None):
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level)
    sys.exit(dispatch(args))


if __name__ == "__main__":
    main()
