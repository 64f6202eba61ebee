"""MySQL / MariaDB adapter built on the mysql client and mysqldump."""

import logging
import re
from pathlib import Path
from typing import Dict, List, Optional

from ..artifacts import BackupArtifact
from ..errors import AdapterError
from .base import DatabaseAdapter, ReplicationRole, ReplicationStatus
from .process import CommandRunner

logger = logging.getLogger(__name__)

_LAG_RE = re.compile(r"Seconds_Behind_(?:Master|Source):\s*(\S+)")


class MySQLAdapter(DatabaseAdapter):
    backup_extension = "sql"
    client = "mysql"
    dump_tool = "mysqldump"

    def __init__(self, profile, runner: Optional[CommandRunner] = None):
        super().__init__(profile)
        self.runner = runner or CommandRunner()

    def required_tools(self) -> List[str]:
        return [self.client, self.dump_tool]

    def _env(self) -> Dict[str, str]:
        if self.database.password is None:
            return {}
        return {"MYSQL_PWD": self.database.password.get_secret_value()}

    def _conn_args(self) -> List[str]:
        return [
            "-h", self.database.host,
            "-P", str(self.database.port),
            "-u", self.database.user,
        ]

    def _execute(self, sql: str, timeout: Optional[float] = None, vertical: bool = False) -> str:
        args = [self.client, *self._conn_args()]
        args += ["-e", sql] if vertical else ["-N", "-B", "-e", sql]
        result = self.runner.run(args, timeout=timeout or self.timeout, env=self._env())
        return result.stdout.strip()

    def test_connection(self) -> None:
        self._execute("SELECT 1;", timeout=self.probe_timeout)

    def get_version(self) -> Optional[str]:
        try:
            return self._execute("SELECT VERSION();", timeout=self.probe_timeout) or None
        except AdapterError as e:
            logger.warning(f"Could not read server version: {e.message}")
            return None

    def get_size(self) -> Optional[int]:
        sql = (
            "SELECT COALESCE(SUM(data_length + index_length), 0) "
            f"FROM information_schema.tables WHERE table_schema = '{self.database.name}';"
        )
        try:
            return int(self._execute(sql, timeout=self.probe_timeout))
        except (AdapterError, ValueError) as e:
            logger.warning(f"Could not read database size: {e}")
            return None

    def get_replication_role(self) -> ReplicationStatus:
        status = None
        for statement in ("SHOW REPLICA STATUS\\G", "SHOW SLAVE STATUS\\G"):
            try:
                status = self._execute(statement, timeout=self.probe_timeout, vertical=True)
                break
            except AdapterError:
                continue

        if status is None:
            return ReplicationStatus(ReplicationRole.UNKNOWN, detail="replication status unavailable")
        if not status:
            return ReplicationStatus(ReplicationRole.PRIMARY)

        lag = None
        match = _LAG_RE.search(status)
        if match and match.group(1).upper() != "NULL":
            lag = float(match.group(1))
        return ReplicationStatus(ReplicationRole.REPLICA, lag_seconds=lag, detail="replication status is non-empty")

    def backup(self, target: Path, jobs: int = 1) -> BackupArtifact:
        # mysqldump is single-threaded; jobs is accepted for interface parity
        target = Path(target)
        target.parent.mkdir(parents=True, exist_ok=True)

        logger.info(f"Backing up {self.database.name} to {target}")
        self.runner.run(
            [
                self.dump_tool, *self._conn_args(),
                "--single-transaction", "--routines", "--triggers",
                f"--result-file={target}",
                self.database.name,
            ],
            timeout=self.timeout,
            env=self._env(),
        )

        if not target.exists():
            raise AdapterError(f"{self.dump_tool} reported success but {target} does not exist", code="BACKUP_MISSING")
        return BackupArtifact.create(target, db_type=self.database.type.value)

    def restore(self, artifact: BackupArtifact) -> None:
        logger.info(f"Restoring {self.database.name} from {artifact.path}")
        self.runner.run(
            [self.client, *self._conn_args(), self.database.name, "-e", f"source {artifact.path}"],
            timeout=self.timeout,
            env=self._env(),
        )


class MariaDBAdapter(MySQLAdapter):
    client = "mariadb"
    dump_tool = "mariadb-dump"
