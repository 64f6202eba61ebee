"""
In-memory adapters and probes for engine tests.

Nothing here shells out or opens sockets.
"""

from pathlib import Path
from typing import Dict, List, Optional, Set

from kcmigrate import BackupArtifact, HealthCheckResult, SmokeReport, parse_profile
from kcmigrate.adapters import (
    DatabaseAdapter,
    Deployment,
    DeploymentAdapter,
    ReplicationRole,
    ReplicationStatus,
)
from kcmigrate.config import GB
from kcmigrate.errors import AdapterError
from kcmigrate.preflight import HostProbe


def make_profile(tmp_path: Path, **migration):
    """Profile pointing its backups into tmp_path."""
    document = {
        "profile": {"name": "test-keycloak", "environment": "test"},
        "database": {"type": "postgresql", "host": "db.local", "name": "keycloak", "user": "keycloak"},
        "deployment": {
            "mode": "standalone",
            "service_url": "http://kc.local:8080",
            "admin_password_env": "KC_ADMIN_PASSWORD",
        },
        "migration": {
            "current_version": "16.1.1",
            "target_version": "26.0.7",
            "waypoints": ["18.0", "21.0", "24.0"],
            "backup_dir": str(tmp_path / "backups"),
            "health_retries": 2,
            "health_initial_delay": 0,
            **migration,
        },
    }
    return parse_profile(document, environ={"KC_ADMIN_PASSWORD": "s3cret"})


class FakeDatabase(DatabaseAdapter):
    """Writes small files as backups and records every call."""

    backup_extension = "dump"

    def __init__(
        self,
        profile,
        size: Optional[int] = 1 * GB,
        version: Optional[str] = "15.4",
        role: ReplicationRole = ReplicationRole.PRIMARY,
        lag: Optional[float] = None,
        reachable: bool = True,
        fail_backup: bool = False,
        fail_restore: bool = False,
    ):
        super().__init__(profile)
        self.size = size
        self.version = version
        self.role = role
        self.lag = lag
        self.reachable = reachable
        self.fail_backup = fail_backup
        self.fail_restore = fail_restore
        self.calls: List[str] = []
        self.backups: List[BackupArtifact] = []
        self.restored: List[BackupArtifact] = []

    def test_connection(self) -> None:
        self.calls.append("test_connection")
        if not self.reachable:
            raise AdapterError("connection refused", code="TOOL_FAILED")

    def backup(self, target: Path, jobs: int = 1) -> BackupArtifact:
        self.calls.append("backup")
        if self.fail_backup:
            raise AdapterError("pg_dump: disk quota exceeded", code="TOOL_FAILED")
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(f"dump #{len(self.backups) + 1} before {target.name}\n", encoding="utf-8")
        artifact = BackupArtifact.create(target, db_type="postgresql")
        self.backups.append(artifact)
        return artifact

    def restore(self, artifact: BackupArtifact) -> None:
        self.calls.append("restore")
        if self.fail_restore:
            raise AdapterError("pg_restore: relation locked", code="TOOL_FAILED")
        self.restored.append(artifact)

    def get_version(self) -> Optional[str]:
        return self.version

    def get_size(self) -> Optional[int]:
        return self.size

    def get_replication_role(self) -> ReplicationStatus:
        self.calls.append("get_replication_role")
        return ReplicationStatus(self.role, lag_seconds=self.lag)

    def required_tools(self) -> List[str]:
        return ["pg_dump", "pg_restore"]


class FakeDeployment(DeploymentAdapter):
    """
    Tracks the serving version. Versions in `unhealthy` fail every health probe;
    versions in `broken` fail to deploy; versions in `no_cutover` fail to promote.
    """

    def __init__(
        self,
        profile,
        unhealthy: Set[str] = frozenset(),
        broken: Set[str] = frozenset(),
        no_cutover: Set[str] = frozenset(),
        fail_rollback: bool = False,
        unhealthy_after_rollback: bool = False,
    ):
        super().__init__(profile)
        self.serving = profile.migration.current_version
        self.unhealthy = set(unhealthy)
        self.broken = set(broken)
        self.no_cutover = set(no_cutover)
        self.fail_rollback = fail_rollback
        self.unhealthy_after_rollback = unhealthy_after_rollback
        self.history: List[str] = []

    def current_version(self) -> Optional[str]:
        return self.serving

    def deploy(self, version: str, strategy) -> Deployment:
        self.history.append(f"deploy:{version}")
        if version in self.broken:
            raise AdapterError(f"release {version} failed to start", code="TOOL_FAILED")
        self.serving = version
        return Deployment(
            version=version,
            strategy=strategy,
            endpoint=f"http://kc.local:8080/health?v={version}",
            service_url="http://kc.local:8080",
        )

    def rollback(self, prior: Deployment) -> Deployment:
        self.history.append(f"rollback:{prior.version}")
        if self.fail_rollback:
            raise AdapterError("systemctl start failed", code="TOOL_FAILED")
        self.serving = prior.version
        if self.unhealthy_after_rollback:
            self.unhealthy.add(prior.version)
        return prior

    def promote(self, deployment: Deployment) -> None:
        self.history.append(f"promote:{deployment.version}")
        if deployment.version in self.no_cutover:
            raise AdapterError(f"service selector patch for {deployment.version} rejected", code="TOOL_FAILED")

    def health_check(self, endpoint: str) -> HealthCheckResult:
        version = endpoint.split("v=")[-1] if "v=" in endpoint else self.serving
        if version in self.unhealthy:
            return HealthCheckResult("http_health", False, f"{version} returned 503", error_code="HEALTH_HTTP_503")
        return HealthCheckResult("http_health", True, f"{version} is UP")

    def required_tools(self) -> List[str]:
        return ["systemctl"]


class FakeProbe(HostProbe):
    def __init__(
        self,
        free_bytes: int = 100 * GB,
        memory_bytes: Optional[int] = 8 * GB,
        network_ok: bool = True,
        missing_tools: Set[str] = frozenset(),
    ):
        self.free_bytes = free_bytes
        self.memory_bytes = memory_bytes
        self.network_ok = network_ok
        self.missing_tools = set(missing_tools)

    def free_disk_bytes(self, path: Path) -> int:
        return self.free_bytes

    def available_memory_bytes(self) -> Optional[int]:
        return self.memory_bytes

    def tcp_reachable(self, host: str, port: int, timeout: float) -> HealthCheckResult:
        if self.network_ok:
            return HealthCheckResult("network", True, f"TCP {host}:{port} is open")
        return HealthCheckResult("network", False, f"TCP {host}:{port} not reachable", error_code="HEALTH_PORT_CLOSED")

    def which(self, tool: str) -> Optional[str]:
        return None if tool in self.missing_tools else f"/usr/bin/{tool}"


class FakeSmokeSuite:
    def __init__(self, passed: bool = True):
        self.passed = passed
        self.runs = 0

    def run(self) -> SmokeReport:
        self.runs += 1
        status = "ok" if self.passed else "failed"
        return SmokeReport(results=[HealthCheckResult("realm_listing", self.passed, status)])


def smoke_factory(suite: FakeSmokeSuite):
    return lambda deployed: suite


def healthy_service_client():
    """httpx.Client answering health and admin token requests like a live service."""
    import httpx

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/health"):
            return httpx.Response(200, json={"status": "UP"})
        if request.url.path.endswith("/protocol/openid-connect/token"):
            return httpx.Response(200, json={"access_token": "tok"})
        return httpx.Response(404)

    return httpx.Client(transport=httpx.MockTransport(handler))


def entries_by_step(entries) -> Dict[Optional[int], List[str]]:
    grouped: Dict[Optional[int], List[str]] = {}
    for entry in entries:
        grouped.setdefault(entry.step_ordinal, []).append(entry.transition)
    return grouped


class CrashingDeployment(FakeDeployment):
    """Raises a raw OSError from deploy() after touching the serving release."""

    def __init__(self, profile, crash_on: str):
        super().__init__(profile)
        self.crash_on = crash_on

    def deploy(self, version: str, strategy) -> Deployment:
        if version == self.crash_on:
            self.history.append(f"deploy:{version}")
            self.serving = None
            raise PermissionError(13, "Permission denied", "/opt/.keycloak.next")
        return super().deploy(version, strategy)
