"""
Preflight Gate - Is it safe to start mutating anything?

Philosophy: the gate is the JUDGE, not the EXECUTOR.
- Runs a fixed list of checks, each yielding pass / warn / fail
- Any fail blocks the run before the first backup
- Warns never block, but are logged and land in the audit trail
- Computed fresh for every run; never cached

Checks and the exit category a failure maps to:
    configuration           CONFIG
    disk_space              DISK_SPACE
    memory                  MEMORY (warn only)
    network                 NETWORK
    backup_directory        CONFIG
    database_connectivity   DATABASE_HEALTH
    database_version        DATABASE_HEALTH (warn if unknown)
    database_size           DATABASE_HEALTH (warn if unknown)
    database_replication    DATABASE_HEALTH
    backup_space            DISK_SPACE
    service_reachability    SERVICE_HEALTH
    admin_credentials       SERVICE_HEALTH
    dependencies            DEPENDENCIES
"""

import logging
import os
import shutil
import tempfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx

from .adapters.base import DatabaseAdapter, DeploymentAdapter, ReplicationRole
from .config import GB, EngineSettings
from .errors import AdapterError
from .exit_codes import ExitCode
from .health import HealthCheckResult, http_health_check, tcp_port_check
from .profile import MigrationProfile, Strategy

logger = logging.getLogger(__name__)


class CheckStatus(Enum):
    PASS = "pass"
    WARN = "warn"
    FAIL = "fail"


@dataclass
class CheckResult:
    name: str
    status: CheckStatus
    message: str
    category: ExitCode
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "message": self.message,
            "category": self.category.name.lower(),
            "details": self.details,
        }


@dataclass
class PreflightReport:
    """Verdict of one preflight run."""
    checks: List[CheckResult] = field(default_factory=list)
    reserved_backup_bytes: int = 0
    effective_strategy: Optional[Strategy] = None

    @property
    def passed(self) -> List[CheckResult]:
        return [c for c in self.checks if c.status == CheckStatus.PASS]

    @property
    def warned(self) -> List[CheckResult]:
        return [c for c in self.checks if c.status == CheckStatus.WARN]

    @property
    def failed(self) -> List[CheckResult]:
        return [c for c in self.checks if c.status == CheckStatus.FAIL]

    @property
    def verdict(self) -> CheckStatus:
        if self.failed:
            return CheckStatus.FAIL
        if self.warned:
            return CheckStatus.WARN
        return CheckStatus.PASS

    @property
    def ok(self) -> bool:
        return not self.failed

    @property
    def exit_code(self) -> ExitCode:
        """Category of the first failed check (SUCCESS if none failed)."""
        failed = self.failed
        return failed[0].category if failed else ExitCode.SUCCESS

    def get(self, name: str) -> Optional[CheckResult]:
        for check in self.checks:
            if check.name == name:
                return check
        return None

    def summary(self) -> str:
        return (
            f"{len(self.passed)} passed, {len(self.warned)} warned, {len(self.failed)} failed "
            f"(verdict: {self.verdict.value})"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "verdict": self.verdict.value,
            "passed": len(self.passed),
            "warned": len(self.warned),
            "failed": len(self.failed),
            "reserved_backup_bytes": self.reserved_backup_bytes,
            "effective_strategy": self.effective_strategy.value if self.effective_strategy else None,
            "checks": [c.to_dict() for c in self.checks],
        }


class HostProbe:
    """Local resource lookups. Tests substitute a fake with the same methods."""

    def free_disk_bytes(self, path: Path) -> int:
        return shutil.disk_usage(_existing_ancestor(path)).free

    def available_memory_bytes(self) -> Optional[int]:
        try:
            return os.sysconf("SC_AVPHYS_PAGES") * os.sysconf("SC_PAGE_SIZE")
        except (ValueError, OSError, AttributeError):
            return None

    def tcp_reachable(self, host: str, port: int, timeout: float) -> HealthCheckResult:
        return tcp_port_check(host, port, timeout=timeout, name="network")

    def which(self, tool: str) -> Optional[str]:
        return shutil.which(tool)

    def backup_dir_writable(self, path: Path) -> Optional[str]:
        """None if writable, else the reason."""
        try:
            path.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(dir=path, prefix=".preflight-"):
                pass
        except OSError as e:
            return str(e)
        return None


def _existing_ancestor(path: Path) -> Path:
    path = Path(path).absolute()
    while not path.exists() and path != path.parent:
        path = path.parent
    return path


class PreflightGate:
    """
    Evaluates a profile against the host, the database and the service.

    Flow:
        1. run() executes every check in a fixed order
        2. Each check appends one CheckResult
        3. The report's verdict is derived, never stored
    """

    def __init__(
        self,
        profile: MigrationProfile,
        database: DatabaseAdapter,
        deployment: DeploymentAdapter,
        settings: Optional[EngineSettings] = None,
        probe: Optional[HostProbe] = None,
        http_client: Optional[httpx.Client] = None,
    ):
        self.profile = profile
        self.database = database
        self.deployment = deployment
        self.settings = settings or EngineSettings()
        self.probe = probe or HostProbe()
        self.http_client = http_client

    def run(self) -> PreflightReport:
        report = PreflightReport()
        migration = self.profile.migration
        backup_root = self.profile.backup_root

        report.checks.append(self._check_configuration(report))
        report.checks.append(self._check_disk_space(backup_root))
        report.checks.append(self._check_memory())
        report.checks.append(self._check_network())
        report.checks.append(self._check_backup_directory(backup_root))

        connectivity = self._check_database_connectivity()
        report.checks.append(connectivity)
        db_online = connectivity.status != CheckStatus.FAIL

        report.checks.append(self._check_database_version(db_online))
        size_check = self._check_database_size(db_online)
        report.checks.append(size_check)
        report.checks.append(self._check_replication(db_online))
        report.checks.append(self._check_backup_space(backup_root, size_check.details["size_bytes"], report))

        report.checks.append(self._check_service_reachability())
        report.checks.append(self._check_admin_credentials())
        report.checks.append(self._check_dependencies())

        for check in report.checks:
            if check.status == CheckStatus.FAIL:
                logger.error(f"[preflight] {check.name}: FAIL - {check.message}")
            elif check.status == CheckStatus.WARN:
                logger.warning(f"[preflight] {check.name}: WARN - {check.message}")
            else:
                logger.info(f"[preflight] {check.name}: ok - {check.message}")
        logger.info(f"Preflight for '{self.profile.name}': {report.summary()}")

        if report.effective_strategy is None:
            report.effective_strategy = migration.strategy
        return report

    # ==================== Checks ====================

    def _check_configuration(self, report: PreflightReport) -> CheckResult:
        migration = self.profile.migration
        problems = []
        warnings = []

        if not migration.backup_before_step:
            problems.append("backup_before_step is disabled; a verified backup is required before every step")

        if not self.deployment.supports(migration.strategy):
            warnings.append(
                f"strategy {migration.strategy.value} is not supported by "
                f"{self.profile.deployment.mode.value} deployments; falling back to inplace"
            )
            report.effective_strategy = Strategy.INPLACE

        if problems:
            return CheckResult("configuration", CheckStatus.FAIL, "; ".join(problems), ExitCode.CONFIG)
        if warnings:
            return CheckResult(
                "configuration", CheckStatus.WARN, "; ".join(warnings), ExitCode.CONFIG,
                details={"effective_strategy": Strategy.INPLACE.value},
            )
        return CheckResult("configuration", CheckStatus.PASS, "Profile is consistent", ExitCode.CONFIG)

    def _check_disk_space(self, backup_root: Path) -> CheckResult:
        required = int(self.profile.migration.min_disk_space_gb * GB)
        free = self.probe.free_disk_bytes(backup_root)
        details = {"free_bytes": free, "required_bytes": required, "path": str(backup_root)}
        if free < required:
            return CheckResult(
                "disk_space", CheckStatus.FAIL,
                f"{free / GB:.1f} GB free at {backup_root}, {required / GB:.1f} GB required",
                ExitCode.DISK_SPACE, details,
            )
        return CheckResult("disk_space", CheckStatus.PASS, f"{free / GB:.1f} GB free", ExitCode.DISK_SPACE, details)

    def _check_memory(self) -> CheckResult:
        available = self.probe.available_memory_bytes()
        minimum = int(self.settings.min_memory_gb * GB)
        if available is None:
            return CheckResult("memory", CheckStatus.WARN, "Available memory could not be determined", ExitCode.MEMORY)
        details = {"available_bytes": available, "recommended_bytes": minimum}
        if available < minimum:
            return CheckResult(
                "memory", CheckStatus.WARN,
                f"{available / GB:.1f} GB available, {self.settings.min_memory_gb} GB recommended",
                ExitCode.MEMORY, details,
            )
        return CheckResult("memory", CheckStatus.PASS, f"{available / GB:.1f} GB available", ExitCode.MEMORY, details)

    def _check_network(self) -> CheckResult:
        db = self.profile.database
        result = self.probe.tcp_reachable(db.host, db.port, self.settings.network_timeout)
        status = CheckStatus.PASS if result.passed else CheckStatus.FAIL
        return CheckResult("network", status, result.message, ExitCode.NETWORK, dict(result.details))

    def _check_backup_directory(self, backup_root: Path) -> CheckResult:
        reason = self.probe.backup_dir_writable(backup_root)
        if reason:
            return CheckResult(
                "backup_directory", CheckStatus.FAIL,
                f"Backup directory {backup_root} is not writable: {reason}", ExitCode.CONFIG,
            )
        return CheckResult("backup_directory", CheckStatus.PASS, f"{backup_root} is writable", ExitCode.CONFIG)

    def _check_database_connectivity(self) -> CheckResult:
        db = self.profile.database
        try:
            self.database.test_connection()
        except AdapterError as e:
            return CheckResult(
                "database_connectivity", CheckStatus.FAIL,
                f"Cannot connect to {db.type.value} at {db.host}:{db.port}/{db.name}: {e.message}",
                ExitCode.DATABASE_HEALTH, {"error": e.to_reason()},
            )
        return CheckResult(
            "database_connectivity", CheckStatus.PASS,
            f"Connected to {db.type.value} at {db.host}:{db.port}/{db.name}", ExitCode.DATABASE_HEALTH,
        )

    def _check_database_version(self, db_online: bool) -> CheckResult:
        version = self.database.get_version() if db_online else None
        if not version:
            return CheckResult("database_version", CheckStatus.WARN, "Database version unknown", ExitCode.DATABASE_HEALTH)
        return CheckResult(
            "database_version", CheckStatus.PASS, f"Server version {version}", ExitCode.DATABASE_HEALTH,
            {"version": version},
        )

    def _check_database_size(self, db_online: bool) -> CheckResult:
        size = self.database.get_size() if db_online else None
        if size is None:
            fallback = int(self.settings.fallback_db_size_gb * GB)
            return CheckResult(
                "database_size", CheckStatus.WARN,
                f"Database size unknown; assuming {self.settings.fallback_db_size_gb} GB for space reservation",
                ExitCode.DATABASE_HEALTH, {"size_bytes": fallback, "estimated": True},
            )
        return CheckResult(
            "database_size", CheckStatus.PASS, f"Database size {size / GB:.2f} GB",
            ExitCode.DATABASE_HEALTH, {"size_bytes": size, "estimated": False},
        )

    def _check_replication(self, db_online: bool) -> CheckResult:
        if not db_online:
            return CheckResult(
                "database_replication", CheckStatus.WARN,
                "Replication role not checked (database unreachable)", ExitCode.DATABASE_HEALTH,
            )

        status = self.database.get_replication_role()
        details = {"role": status.role.value, "lag_seconds": status.lag_seconds}

        if status.role == ReplicationRole.REPLICA:
            lag = f" (lag {status.lag_seconds:.0f}s)" if status.lag_seconds is not None else ""
            if self.profile.migration.allow_replica:
                return CheckResult(
                    "database_replication", CheckStatus.WARN,
                    f"Target database is a replica{lag}; proceeding because allow_replica is set",
                    ExitCode.DATABASE_HEALTH, details,
                )
            return CheckResult(
                "database_replication", CheckStatus.FAIL,
                f"Target database is a replica{lag}; migrations must run against the primary",
                ExitCode.DATABASE_HEALTH, details,
            )

        if status.role == ReplicationRole.UNKNOWN:
            return CheckResult(
                "database_replication", CheckStatus.WARN,
                f"Replication role unknown{': ' + status.detail if status.detail else ''}",
                ExitCode.DATABASE_HEALTH, details,
            )

        return CheckResult(
            "database_replication", CheckStatus.PASS, f"Database role: {status.role.value}",
            ExitCode.DATABASE_HEALTH, details,
        )

    def _check_backup_space(self, backup_root: Path, db_size: int, report: PreflightReport) -> CheckResult:
        multiplier = self.profile.migration.backup_space_multiplier
        required = int(db_size * multiplier)
        free = self.probe.free_disk_bytes(backup_root)
        details = {"required_bytes": required, "free_bytes": free, "multiplier": multiplier}

        if free < required:
            return CheckResult(
                "backup_space", CheckStatus.FAIL,
                f"Backups need {required / GB:.2f} GB ({multiplier}x database size), {free / GB:.2f} GB free",
                ExitCode.DISK_SPACE, details,
            )
        report.reserved_backup_bytes = required
        return CheckResult(
            "backup_space", CheckStatus.PASS, f"Reserved {required / GB:.2f} GB for backups",
            ExitCode.DISK_SPACE, details,
        )

    def _check_service_reachability(self) -> CheckResult:
        if self.profile.migration.service_offline:
            return CheckResult(
                "service_reachability", CheckStatus.PASS, "Skipped (service declared offline)",
                ExitCode.SERVICE_HEALTH, {"skipped": True},
            )
        result = http_health_check(
            self.profile.deployment.health_url,
            timeout=self.settings.network_timeout,
            client=self.http_client,
            name="service_reachability",
        )
        status = CheckStatus.PASS if result.passed else CheckStatus.FAIL
        return CheckResult("service_reachability", status, result.message, ExitCode.SERVICE_HEALTH, dict(result.details))

    def _check_admin_credentials(self) -> CheckResult:
        deployment = self.profile.deployment
        migration = self.profile.migration
        # Without smoke tests nothing in the run needs admin access
        severity = CheckStatus.FAIL if migration.run_smoke_tests else CheckStatus.WARN

        if migration.service_offline:
            return CheckResult(
                "admin_credentials", CheckStatus.PASS, "Skipped (service declared offline)",
                ExitCode.SERVICE_HEALTH, {"skipped": True},
            )

        if deployment.admin_password is None:
            return CheckResult(
                "admin_credentials", severity, "No admin password configured (set deployment.admin_password_env)",
                ExitCode.SERVICE_HEALTH,
            )

        url = f"{deployment.service_url.rstrip('/')}/realms/{deployment.admin_realm}/protocol/openid-connect/token"
        data = {
            "grant_type": "password",
            "client_id": "admin-cli",
            "username": deployment.admin_user,
            "password": deployment.admin_password.get_secret_value(),
        }
        try:
            if self.http_client is not None:
                response = self.http_client.post(url, data=data, timeout=self.settings.network_timeout)
            else:
                response = httpx.post(url, data=data, timeout=self.settings.network_timeout)
        except httpx.HTTPError as e:
            return CheckResult("admin_credentials", severity, f"Token endpoint unreachable: {e}", ExitCode.SERVICE_HEALTH)

        if response.status_code != 200:
            return CheckResult(
                "admin_credentials", severity,
                f"Admin login as {deployment.admin_user} rejected (HTTP {response.status_code})",
                ExitCode.SERVICE_HEALTH, {"status": response.status_code},
            )
        return CheckResult(
            "admin_credentials", CheckStatus.PASS, f"Admin login as {deployment.admin_user} succeeded",
            ExitCode.SERVICE_HEALTH,
        )

    def _check_dependencies(self) -> CheckResult:
        tools = sorted(set(self.database.required_tools()) | set(self.deployment.required_tools()))
        missing = [t for t in tools if not self.probe.which(t)]
        if missing:
            return CheckResult(
                "dependencies", CheckStatus.FAIL, f"Missing required tools: {', '.join(missing)}",
                ExitCode.DEPENDENCIES, {"missing": missing, "required": tools},
            )
        return CheckResult(
            "dependencies", CheckStatus.PASS, f"All {len(tools)} required tools found",
            ExitCode.DEPENDENCIES, {"required": tools},
        )


def run_preflight(
    profile: MigrationProfile,
    database: DatabaseAdapter,
    deployment: DeploymentAdapter,
    settings: Optional[EngineSettings] = None,
    probe: Optional[HostProbe] = None,
    http_client: Optional[httpx.Client] = None,
) -> PreflightReport:
    """Convenience wrapper around PreflightGate(...).run()."""
    return PreflightGate(profile, database, deployment, settings, probe, http_client).run()
