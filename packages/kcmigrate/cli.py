"""
kcmigrate command line

Subcommands:
    plan          Show the version steps for a profile
    validate      Run the preflight gate only
    migrate       Run the migration (--dry-run stops before the first backup)
    verify-audit  Check HMAC signatures in the audit trail

This is the only module that reads the environment, configures logging and
maps errors to process exit codes.
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

import httpx

from .adapters.registry import create_database_adapter, create_deployment_adapter
from .audit import AuditReader
from .config import EngineSettings
from .coordinator import RunCoordinator, run_migration
from .errors import MigrationError
from .exit_codes import ExitCode
from .planner import StaticHopTable, load_hop_table, plan
from .profile import Strategy, load_profile

logger = logging.getLogger("kcmigrate")

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="kcmigrate",
        description="Multi-version Keycloak migration with preflight gating and automatic rollback",
    )
    parser.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Console log level")
    parser.add_argument("--log-file", type=Path, default=None, help="Also write logs to this file")
    parser.add_argument("--workspace", type=Path, default=None, help="State/audit directory (default: $KCMIGRATE_WORKSPACE or .kcmigrate)")

    sub = parser.add_subparsers(dest="command", required=True)

    def _profile_args(p: argparse.ArgumentParser) -> None:
        p.add_argument("--profile", "-p", type=Path, required=True, help="Migration profile YAML")
        p.add_argument("--strategy", choices=[s.value for s in Strategy], default=None, help="Override migration.strategy")
        p.add_argument("--timeout", type=int, default=None, help="Override migration.timeout_per_version (seconds)")
        p.add_argument("--hop-table", type=Path, default=None, help="Waypoint YAML (default: migration.waypoints)")
        p.add_argument("--json", action="store_true", help="Print a JSON report instead of text")

    p_plan = sub.add_parser("plan", help="Show the version steps")
    _profile_args(p_plan)

    p_validate = sub.add_parser("validate", help="Run preflight checks only")
    _profile_args(p_validate)
    p_validate.add_argument("--allow-replica", action="store_true", help="Downgrade replica targets to a warning")
    p_validate.add_argument("--service-offline", action="store_true", help="Skip service reachability and admin checks")

    p_migrate = sub.add_parser("migrate", help="Run the migration")
    _profile_args(p_migrate)
    p_migrate.add_argument("--dry-run", action="store_true", help="Preflight and plan only; mutate nothing")
    p_migrate.add_argument("--resume", action="store_true", help="Skip steps committed by an earlier run of this plan")
    p_migrate.add_argument("--skip-tests", action="store_true", help="Do not run the smoke suite")
    p_migrate.add_argument("--allow-replica", action="store_true", help="Downgrade replica targets to a warning")
    p_migrate.add_argument("--service-offline", action="store_true", help="Skip service reachability and admin checks")

    p_verify = sub.add_parser("verify-audit", help="Verify audit trail signatures")
    p_verify.add_argument("--audit-file", type=Path, default=None, help="Audit JSONL (default: <workspace>/audit/audit.jsonl)")

    return parser


def configure_logging(level: str, log_file: Optional[Path] = None) -> None:
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    logging.basicConfig(level=getattr(logging, level), format=LOG_FORMAT, handlers=handlers, force=True)
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _load(args):
    profile = load_profile(args.profile)
    overrides = {
        "strategy": Strategy(args.strategy) if args.strategy else None,
        "timeout_per_version": args.timeout,
    }
    if getattr(args, "skip_tests", False):
        overrides["run_smoke_tests"] = False
    if getattr(args, "allow_replica", False):
        overrides["allow_replica"] = True
    if getattr(args, "service_offline", False):
        overrides["service_offline"] = True
    profile = profile.with_overrides(**overrides)

    hop_table = load_hop_table(args.hop_table) if args.hop_table else StaticHopTable(profile.migration.waypoints)
    if not len(hop_table):
        logger.warning("No waypoints declared; planning a direct hop to the target version")
    return profile, hop_table


def _emit(args, payload: dict, text: str) -> None:
    if getattr(args, "json", False):
        print(json.dumps(payload, indent=2, default=str))
    else:
        print(text)


def cmd_plan(args, settings: EngineSettings) -> int:
    profile, hop_table = _load(args)
    steps = plan(profile.migration.current_version, profile.migration.target_version, hop_table)
    lines = [f"Profile {profile.name}: {profile.migration.current_version} → {profile.migration.target_version}"]
    if not steps:
        lines.append("  Already on target version; nothing to do.")
    for step in steps:
        lines.append(f"  {step.ordinal}. {step.from_version} → {step.to_version}")
    _emit(args, {"profile": profile.name, "steps": [s.to_dict() for s in steps]}, "\n".join(lines))
    return ExitCode.SUCCESS


def _coordinator(args, settings: EngineSettings, http_client: httpx.Client) -> RunCoordinator:
    profile, hop_table = _load(args)
    database = create_database_adapter(profile, probe_timeout=settings.probe_timeout)
    deployment = create_deployment_adapter(profile, http_client=http_client, probe_timeout=settings.probe_timeout)
    return RunCoordinator(
        profile, database, deployment,
        settings=settings, hop_table=hop_table, http_client=http_client,
    )


def cmd_validate(args, settings: EngineSettings) -> int:
    with httpx.Client() as client:
        coordinator = _coordinator(args, settings, client)
        report = coordinator.preflight()

    lines = [f"Preflight for {coordinator.profile.name}: {report.summary()}"]
    for check in report.checks:
        lines.append(f"  [{check.status.value.upper():4}] {check.name}: {check.message}")
    _emit(args, report.to_dict(), "\n".join(lines))
    return report.exit_code


def cmd_migrate(args, settings: EngineSettings) -> int:
    with httpx.Client() as client:
        coordinator = _coordinator(args, settings, client)
        report = run_migration(coordinator, dry_run=args.dry_run, resume=args.resume)

    _emit(args, report.to_dict(), report.summary())
    return report.exit_code


def cmd_verify_audit(args, settings: EngineSettings) -> int:
    if not settings.audit_hmac_key:
        print("[X] KCMIGRATE_AUDIT_HMAC_KEY is not set; nothing to verify against", file=sys.stderr)
        return ExitCode.CONFIG

    audit_file = args.audit_file or settings.audit_path
    reader = AuditReader(audit_file)
    bad = reader.verify(settings.audit_hmac_key)
    total = len(reader.read_all())
    if bad:
        print(f"{len(bad)} of {total} audit entries failed verification: {bad[:20]}")
        return ExitCode.AUDIT_VERIFY_FAILED
    print(f"All {total} audit entries verified ({audit_file})")
    return ExitCode.SUCCESS


COMMANDS = {
    "plan": cmd_plan,
    "validate": cmd_validate,
    "migrate": cmd_migrate,
    "verify-audit": cmd_verify_audit,
}


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level, args.log_file)

    settings = EngineSettings.from_env()
    if args.workspace is not None:
        settings = settings.with_workspace(args.workspace)

    try:
        return int(COMMANDS[args.command](args, settings))
    except MigrationError as e:
        print(f"[X] {e.code}: {e.message}", file=sys.stderr)
        return int(e.exit_code)
    except KeyboardInterrupt:
        print("[X] Interrupted", file=sys.stderr)
        return int(ExitCode.INTERRUPTED)
    except Exception as e:
        print(f"[X] Unexpected error: {e}", file=sys.stderr)
        import traceback
        traceback.print_exc()
        return int(ExitCode.INTERNAL)


if __name__ == "__main__":
    sys.exit(main())
