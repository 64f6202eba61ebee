"""PostgreSQL (and CockroachDB) adapter built on psql / pg_dump / pg_restore."""

import logging
from pathlib import Path
from typing import Dict, List, Optional

from ..artifacts import BackupArtifact
from ..errors import AdapterError
from .base import DatabaseAdapter, ReplicationRole, ReplicationStatus
from .process import CommandRunner

logger = logging.getLogger(__name__)


class PostgresAdapter(DatabaseAdapter):
    """
    Custom-format dumps for a single job, directory-format dumps when
    parallel_jobs > 1 (pg_dump -j requires -Fd).
    """

    def __init__(self, profile, runner: Optional[CommandRunner] = None):
        super().__init__(profile)
        self.runner = runner or CommandRunner()

    @property
    def backup_extension(self) -> str:
        return "dump" if self.profile.migration.parallel_jobs <= 1 else "dir"

    def required_tools(self) -> List[str]:
        return ["psql", "pg_dump", "pg_restore"]

    def _env(self) -> Dict[str, str]:
        env = {}
        if self.database.password is not None:
            env["PGPASSWORD"] = self.database.password.get_secret_value()
        return env

    def _conn_args(self) -> List[str]:
        return [
            "-h", self.database.host,
            "-p", str(self.database.port),
            "-U", self.database.user,
        ]

    def _query(self, sql: str, timeout: Optional[float] = None) -> str:
        result = self.runner.run(
            ["psql", *self._conn_args(), "-d", self.database.name, "-tAc", sql],
            timeout=timeout or self.timeout,
            env=self._env(),
        )
        return result.stdout.strip()

    def test_connection(self) -> None:
        self._query("SELECT 1;", timeout=self.probe_timeout)

    def get_version(self) -> Optional[str]:
        try:
            out = self._query("SHOW server_version;", timeout=self.probe_timeout)
        except AdapterError as e:
            logger.warning(f"Could not read PostgreSQL version: {e.message}")
            return None
        return out.split()[0] if out else None

    def get_size(self) -> Optional[int]:
        try:
            out = self._query(f"SELECT pg_database_size('{self.database.name}');", timeout=self.probe_timeout)
            return int(out)
        except (AdapterError, ValueError) as e:
            logger.warning(f"Could not read database size: {e}")
            return None

    def get_replication_role(self) -> ReplicationStatus:
        try:
            in_recovery = self._query("SELECT pg_is_in_recovery();", timeout=self.probe_timeout)
        except AdapterError as e:
            return ReplicationStatus(ReplicationRole.UNKNOWN, detail=e.message)

        if in_recovery != "t":
            return ReplicationStatus(ReplicationRole.PRIMARY)

        lag = None
        try:
            raw = self._query(
                "SELECT COALESCE(EXTRACT(EPOCH FROM now() - pg_last_xact_replay_timestamp()), 0);",
                timeout=self.probe_timeout,
            )
            lag = float(raw)
        except (AdapterError, ValueError):
            pass
        return ReplicationStatus(ReplicationRole.REPLICA, lag_seconds=lag, detail="pg_is_in_recovery() = t")

    def backup(self, target: Path, jobs: int = 1) -> BackupArtifact:
        target = Path(target)
        target.parent.mkdir(parents=True, exist_ok=True)

        args = ["pg_dump", *self._conn_args(), "-d", self.database.name, "-f", str(target)]
        if jobs > 1:
            args += ["-Fd", "-j", str(jobs)]
        else:
            args += ["-Fc"]

        logger.info(f"Backing up {self.database.name} to {target} ({jobs} job(s))")
        self.runner.run(args, timeout=self.timeout, env=self._env())

        if not target.exists():
            raise AdapterError(f"pg_dump reported success but {target} does not exist", code="BACKUP_MISSING")
        return BackupArtifact.create(target, db_type=self.database.type.value)

    def restore(self, artifact: BackupArtifact) -> None:
        args = [
            "pg_restore", *self._conn_args(),
            "-d", self.database.name,
            "--clean", "--if-exists", "--no-owner",
        ]
        if artifact.path.is_dir():
            args += ["-j", str(self.profile.migration.parallel_jobs)]
        args.append(str(artifact.path))

        logger.info(f"Restoring {self.database.name} from {artifact.path}")
        self.runner.run(args, timeout=self.timeout, env=self._env())


class CockroachAdapter(PostgresAdapter):
    """CockroachDB speaks the PostgreSQL wire protocol but has no replica role."""

    def get_replication_role(self) -> ReplicationStatus:
        return ReplicationStatus(ReplicationRole.DISTRIBUTED, detail="multi-active cluster")

    def get_size(self) -> Optional[int]:
        return None
