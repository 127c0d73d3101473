"""CLI entry point: python main.py deploy production registry.example.com/app:v2"""

import argparse
import sys
from typing import List, Optional

import httpx

from src.backup import BackupKind, BackupManager
from src.deployment import (
    DeploymentConfig,
    DeploymentError,
    DeploymentOrchestrator,
    EnvironmentConfig,
    HealthCheckMode,
    HealthMonitor,
    HealthProbe,
    RemoteContainerRuntime,
    RollbackCoordinator,
    RollbackMode,
)
from src.deployment.clock import SYSTEM_CLOCK, Clock
from src.deployment.runtime import ContainerRuntime
from src.logging_config import (
    InvocationContext,
    LogFormat,
    LoggingConfig,
    LogLevel,
    configure_logging,
    get_logger,
)
from src.logging_config.performance import PerformanceTimer
from src.settings import Settings, get_settings, load_environment

logger = get_logger("slotswitch")


# ── Wiring (replaced in tests) ───────────────────────────────────────


def build_runtime(config: EnvironmentConfig, settings: Settings) -> ContainerRuntime:
    return RemoteContainerRuntime(config, command_timeout=settings.command_timeout)


def build_http_client(deploy_config: DeploymentConfig) -> httpx.Client:
    return httpx.Client(timeout=deploy_config.request_timeout_seconds)


def build_clock() -> Clock:
    return SYSTEM_CLOCK


# ── Commands ─────────────────────────────────────────────────────────


def cmd_deploy(args, config, runtime, probe, clock, settings) -> int:
    backups = BackupManager(runtime, config, clock=clock)
    orchestrator = DeploymentOrchestrator(
        runtime, config, probe, backups=backups, clock=clock, owner=settings.owner or None
    )
    with PerformanceTimer("deploy", threshold_ms=15 * 60 * 1000):
        deployment = orchestrator.deploy(args.image)

    print(f"Deployment {deployment.deployment_id}: {deployment.state.value}")
    if deployment.succeeded:
        print(f"  {config.container_name(deployment.target_color)} serves {args.image} "
              f"on port {config.production_port}")
        return 0
    print(f"  failed during: {deployment.failed_from.value if deployment.failed_from else 'init'}")
    print(f"  reason: {deployment.failure_reason}")
    if deployment.production_unbound:
        print("  WARNING: production port has no confirmed-good slot; "
              f"run 'rollback {config.environment}'")
    if deployment.incident_report:
        print(f"  incident report: {deployment.incident_report}")
    return 1


def cmd_rollback(args, config, runtime, probe, clock, settings) -> int:
    backups = BackupManager(runtime, config, clock=clock)
    coordinator = RollbackCoordinator(
        runtime, config, probe, backups=backups, clock=clock, owner=settings.owner or None
    )
    if args.list:
        options = coordinator.list_options()
        print(f"Active slot: {options.active.value if options.active else 'none'}")
        for color, info in options.slots.items():
            state = f"{info.status} {info.image}" if info else "absent"
            print(f"  {color}: {state}")
        if options.last_known_good:
            print(f"Last known good: {options.last_known_good.image} "
                  f"({options.last_known_good.color.value})")
        if options.previous:
            print(f"Previous known good: {options.previous.image} "
                  f"({options.previous.color.value})")
        print(f"Data backups: {len(options.data_backups)}")
        for record in options.data_backups[:10]:
            print(f"  {record.filename}  {record.size_bytes} bytes")
        return 0

    try:
        result = coordinator.rollback(RollbackMode(args.mode))
    except DeploymentError as exc:
        print(f"Rollback failed: {exc}")
        report = exc.details.get("incident_report")
        if report:
            print(f"  incident report: {report}")
        return 1

    print(f"Rollback {result.rollback_id}: success via {result.tier.value} tier")
    print(f"  {config.container_name(result.color)} serves {result.image}")
    if result.incident_report:
        print(f"  incident report: {result.incident_report}")
    return 0


def cmd_health(args, config, runtime, probe, clock, settings) -> int:
    monitor = HealthMonitor(runtime, config, probe, clock=clock)
    report = monitor.run(HealthCheckMode(args.mode))
    print(report.render())
    return 0 if report.ok else 1


def cmd_backup(args, config, runtime, probe, clock, settings) -> int:
    manager = BackupManager(runtime, config, clock=clock)
    if args.list:
        summary = manager.summary()
        print(f"Backups in {summary['backup_dir']}:")
        for kind, info in summary["kinds"].items():
            print(f"  {kind:<10} {info['count']:>4} files  {info['size_bytes']:>12} bytes  "
                  f"latest: {info['latest'] or '-'}")
        return 0
    if args.verify:
        ok = manager.verify(args.verify)
        print(f"{args.verify}: {'OK' if ok else 'CORRUPT'}")
        return 0 if ok else 1

    if args.kind == "all":
        records = manager.create_all()
    else:
        record = manager.create(BackupKind(args.kind))
        records = [record] if record else []
    for record in records:
        print(f"{record.kind.value:<10} {record.path} "
              f"({'verified' if record.verified else 'VERIFICATION FAILED'})")
    if not args.no_prune:
        manager.prune()
    return 0 if all(r.verified for r in records) else 1


COMMANDS = {
    "deploy": cmd_deploy,
    "rollback": cmd_rollback,
    "health": cmd_health,
    "backup": cmd_backup,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="slotswitch",
        description="Blue/green container deployment with health-gated switch and rollback",
    )
    parser.add_argument(
        "--config-dir", default=None,
        help="Directory holding <environment>.env files (default: configs)"
    )
    parser.add_argument(
        "--log-level", choices=[level.value for level in LogLevel], default=None,
        help="Log level (default: INFO, or SLOTSWITCH_LOG_LEVEL)"
    )
    parser.add_argument(
        "--log-format", choices=[f.value for f in LogFormat], default=None,
        help="Log output format (default: console, or SLOTSWITCH_LOG_FORMAT)"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    deploy = sub.add_parser("deploy", help="Roll an image out to the idle slot")
    deploy.add_argument("environment")
    deploy.add_argument("image", help="Full image reference, e.g. registry/app:v2")

    rollback = sub.add_parser("rollback", help="Restore a previously known-good slot")
    rollback.add_argument("environment")
    rollback.add_argument(
        "--mode", choices=[m.value for m in RollbackMode], default=RollbackMode.AUTO.value,
        help="auto tries container then backup (default: auto)"
    )
    rollback.add_argument(
        "--list", action="store_true",
        help="Show slots, last known good and backups, then exit"
    )

    health = sub.add_parser("health", help="Run operational health checks")
    health.add_argument("environment")
    health.add_argument(
        "--mode", choices=[m.value for m in HealthCheckMode],
        default=HealthCheckMode.FULL.value,
    )

    backup = sub.add_parser("backup", help="Create, list or verify backups")
    backup.add_argument("environment")
    backup.add_argument(
        "--kind", choices=[k.value for k in BackupKind] + ["all"], default="all",
    )
    backup.add_argument("--list", action="store_true", help="Summarize existing backups")
    backup.add_argument("--verify", metavar="FILE", help="Verify one archive and exit")
    backup.add_argument(
        "--no-prune", action="store_true", help="Skip retention cleanup after creating"
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    logging_config = LoggingConfig()
    if args.log_level:
        logging_config.level = LogLevel(args.log_level)
    if args.log_format:
        logging_config.format = LogFormat(args.log_format)
    configure_logging(logging_config)

    settings = get_settings()
    with InvocationContext(environment=args.environment, operation=args.command):
        try:
            config = load_environment(args.environment, args.config_dir)
        except DeploymentError as exc:
            logger.error("%s", exc)
            print(f"Configuration error: {exc}")
            return 1

        deploy_config = DeploymentConfig()
        clock = build_clock()
        runtime = build_runtime(config, settings)
        with build_http_client(deploy_config) as client, HealthProbe(
            runtime, config, deploy_config, http_client=client, clock=clock,
        ) as probe:
            try:
                return COMMANDS[args.command](args, config, runtime, probe, clock, settings)
            except (DeploymentError, OSError) as exc:
                logger.error("%s failed: %s", args.command, exc)
                print(f"{args.command} failed: {exc}")
                return 1


if __name__ == "__main__":
    sys.exit(main())
