"""
Tests for concrete adapters

External tools are never executed: every adapter gets a RecordingRunner that
answers from a script and records the argv it was asked to run.
"""

import json
import subprocess
from pathlib import Path

import pytest

from kcmigrate import AdapterError, ProfileError, Strategy, parse_profile
from kcmigrate.adapters import (
    CockroachAdapter,
    DockerDeployment,
    KubernetesDeployment,
    MariaDBAdapter,
    MySQLAdapter,
    PostgresAdapter,
    ReplicationRole,
    StandaloneDeployment,
    create_database_adapter,
    create_deployment_adapter,
)
from kcmigrate.adapters.base import Deployment
from kcmigrate.adapters.kubernetes import SLOT_LABEL, slot_deployment


class RecordingRunner:
    """
    Stand-in for CommandRunner.

    `script` maps a predicate over argv to stdout (str) or an exception.
    Unmatched commands succeed with empty output.
    """

    def __init__(self, script=None):
        self.script = script or []
        self.calls = []

    def run(self, args, timeout, env=None, input_text=None, check=True):
        args = [str(a) for a in args]
        self.calls.append({"args": args, "env": env or {}, "input": input_text, "timeout": timeout})
        for predicate, response in self.script:
            if predicate(args):
                if isinstance(response, Exception):
                    raise response
                if callable(response):
                    response = response(args)
                return subprocess.CompletedProcess(args, 0, stdout=response, stderr="")
        return subprocess.CompletedProcess(args, 0, stdout="", stderr="")

    def commands(self):
        return [" ".join(c["args"]) for c in self.calls]


def _profile(tmp_path, database=None, deployment=None, **migration):
    return parse_profile({
        "profile": {"name": "adapters"},
        "database": {"type": "postgresql", "host": "db", "name": "keycloak", "user": "kc", "password_env": "DB_PW", **(database or {})},
        "deployment": deployment or {},
        "migration": {"current_version": "24.0.5", "target_version": "26.0.7", "backup_dir": str(tmp_path), **migration},
    }, environ={"DB_PW": "pw"})


def _has(*words):
    return lambda args: all(w in args for w in words)


def _writes_file(flag_prefix):
    """Create the file named by a -f / --result-file argument, like the real tool."""
    def respond(args):
        for i, arg in enumerate(args):
            if arg == flag_prefix:
                Path(args[i + 1]).write_text("dump", encoding="utf-8")
            elif flag_prefix.startswith("--") and arg.startswith(flag_prefix + "="):
                Path(arg.split("=", 1)[1]).write_text("dump", encoding="utf-8")
        return ""
    return respond


# ==================== PostgreSQL Tests ====================

def test_postgres_queries_pass_password_by_env(temp_workspace):
    runner = RecordingRunner([(_has("SHOW server_version;"), "15.4 (Debian 15.4-1)\n")])
    adapter = PostgresAdapter(_profile(temp_workspace), runner=runner)

    assert adapter.get_version() == "15.4"
    call = runner.calls[0]
    assert call["env"] == {"PGPASSWORD": "pw"}
    assert "pw" not in call["args"]
    assert call["args"][:7] == ["psql", "-h", "db", "-p", "5432", "-U", "kc"]


def test_postgres_primary_and_replica(temp_workspace):
    primary = PostgresAdapter(_profile(temp_workspace), runner=RecordingRunner([(_has("SELECT pg_is_in_recovery();"), "f\n")]))
    replica = PostgresAdapter(_profile(temp_workspace), runner=RecordingRunner([
        (_has("SELECT pg_is_in_recovery();"), "t\n"),
        (lambda args: "pg_last_xact_replay_timestamp" in args[-1], "4.5\n"),
    ]))

    assert primary.get_replication_role().role == ReplicationRole.PRIMARY
    status = replica.get_replication_role()
    assert status.role == ReplicationRole.REPLICA
    assert status.lag_seconds == 4.5


def test_postgres_role_unknown_on_error(temp_workspace):
    runner = RecordingRunner([(lambda args: True, AdapterError("psql exited with 2", code="TOOL_FAILED"))])

    status = PostgresAdapter(_profile(temp_workspace), runner=runner).get_replication_role()

    assert status.role == ReplicationRole.UNKNOWN


def test_postgres_backup_formats(temp_workspace):
    """Parallel jobs switch pg_dump to directory format."""
    single_runner = RecordingRunner([(_has("pg_dump"), _writes_file("-f"))])
    single = PostgresAdapter(_profile(temp_workspace, parallel_jobs=1), runner=single_runner)
    artifact = single.backup(temp_workspace / "b1.dump", jobs=1)

    assert single.backup_extension == "dump"
    assert "-Fc" in single_runner.calls[0]["args"]
    assert artifact.size_bytes == 4
    assert artifact.db_type == "postgresql"

    def write_dir(args):
        target = Path(args[args.index("-f") + 1])
        target.mkdir()
        (target / "toc.dat").write_text("toc", encoding="utf-8")
        return ""

    parallel_runner = RecordingRunner([(_has("pg_dump"), write_dir)])
    parallel = PostgresAdapter(_profile(temp_workspace, parallel_jobs=4), runner=parallel_runner)
    artifact = parallel.backup(temp_workspace / "b2.dir", jobs=4)

    assert parallel.backup_extension == "dir"
    args = parallel_runner.calls[0]["args"]
    assert args[args.index("-j") + 1] == "4"
    assert "-Fd" in args
    assert artifact.path.is_dir()


def test_postgres_backup_missing_output(temp_workspace):
    adapter = PostgresAdapter(_profile(temp_workspace), runner=RecordingRunner())

    with pytest.raises(AdapterError) as exc_info:
        adapter.backup(temp_workspace / "never.dump")
    assert exc_info.value.code == "BACKUP_MISSING"


def test_postgres_restore(temp_workspace):
    runner = RecordingRunner([(_has("pg_dump"), _writes_file("-f"))])
    adapter = PostgresAdapter(_profile(temp_workspace, parallel_jobs=1), runner=runner)
    artifact = adapter.backup(temp_workspace / "b.dump")

    adapter.restore(artifact)

    restore = runner.calls[-1]["args"]
    assert restore[0] == "pg_restore"
    assert "--clean" in restore and "--if-exists" in restore
    assert restore[-1] == str(artifact.path)


def test_cockroach_is_distributed(temp_workspace):
    adapter = CockroachAdapter(_profile(temp_workspace, database={"type": "cockroachdb"}), runner=RecordingRunner())

    assert adapter.get_replication_role().role == ReplicationRole.DISTRIBUTED
    assert adapter.database.port == 26257


# ==================== MySQL Tests ====================

def _mysql_profile(tmp_path, db_type="mysql"):
    return _profile(tmp_path, database={"type": db_type})


def test_mysql_primary_when_status_empty(temp_workspace):
    runner = RecordingRunner([(_has("SHOW REPLICA STATUS\\G"), "")])
    adapter = MySQLAdapter(_mysql_profile(temp_workspace), runner=runner)

    assert adapter.get_replication_role().role == ReplicationRole.PRIMARY
    assert runner.calls[0]["env"] == {"MYSQL_PWD": "pw"}


def test_mysql_replica_falls_back_to_slave_status(temp_workspace):
    """Older servers only understand SHOW SLAVE STATUS."""
    runner = RecordingRunner([
        (_has("SHOW REPLICA STATUS\\G"), AdapterError("syntax error", code="TOOL_FAILED")),
        (_has("SHOW SLAVE STATUS\\G"), "Slave_IO_Running: Yes\nSeconds_Behind_Master: 7\n"),
    ])
    status = MySQLAdapter(_mysql_profile(temp_workspace), runner=runner).get_replication_role()

    assert status.role == ReplicationRole.REPLICA
    assert status.lag_seconds == 7.0


def test_mysql_backup_uses_result_file(temp_workspace):
    runner = RecordingRunner([(_has("mysqldump"), _writes_file("--result-file"))])
    adapter = MySQLAdapter(_mysql_profile(temp_workspace), runner=runner)

    artifact = adapter.backup(temp_workspace / "b.sql")

    assert artifact.path.exists()
    assert "--single-transaction" in runner.calls[0]["args"]
    assert adapter.required_tools() == ["mysql", "mysqldump"]


def test_mariadb_tools(temp_workspace):
    adapter = MariaDBAdapter(_mysql_profile(temp_workspace, "mariadb"), runner=RecordingRunner())

    assert adapter.required_tools() == ["mariadb", "mariadb-dump"]


# ==================== Docker Tests ====================

def test_docker_replaces_container(temp_workspace):
    runner = RecordingRunner()
    profile = _profile(temp_workspace, deployment={"mode": "docker", "docker": {"run_args": ["-p", "8080:8080"]}})
    adapter = DockerDeployment(profile, runner=runner)

    deployed = adapter.deploy("25.0.6", Strategy.INPLACE)

    assert runner.commands() == [
        "docker pull quay.io/keycloak/keycloak:25.0.6",
        "docker stop keycloak",
        "docker rm keycloak",
        "docker run -d --name keycloak -p 8080:8080 quay.io/keycloak/keycloak:25.0.6",
    ]
    assert deployed.endpoint == "http://localhost:8080/health"


def test_docker_compose_passes_version(temp_workspace):
    runner = RecordingRunner()
    profile = _profile(temp_workspace, deployment={"mode": "docker-compose", "docker": {"compose_file": "compose.yml"}})

    DockerDeployment(profile, runner=runner).deploy("25.0.6", Strategy.INPLACE)

    assert all(c["env"] == {"KEYCLOAK_VERSION": "25.0.6"} for c in runner.calls)
    assert runner.calls[-1]["args"][-1] == "keycloak"


def test_docker_current_version(temp_workspace):
    runner = RecordingRunner([(_has("inspect"), "quay.io/keycloak/keycloak:24.0.5\n")])
    adapter = DockerDeployment(_profile(temp_workspace, deployment={"mode": "docker"}), runner=runner)

    assert adapter.current_version() == "24.0.5"


def test_docker_rejects_blue_green(temp_workspace):
    adapter = DockerDeployment(_profile(temp_workspace, deployment={"mode": "docker"}), runner=RecordingRunner())

    assert not adapter.supports(Strategy.BLUE_GREEN)
    with pytest.raises(AdapterError):
        adapter.deploy("25.0.6", Strategy.BLUE_GREEN)


# ==================== Kubernetes Tests ====================

BASE_DEPLOYMENT = {
    "metadata": {"name": "keycloak", "uid": "abc", "resourceVersion": "42", "labels": {"app": "keycloak"}},
    "spec": {
        "replicas": 2,
        "selector": {"matchLabels": {"app": "keycloak"}},
        "template": {
            "metadata": {"labels": {"app": "keycloak"}},
            "spec": {"containers": [{"name": "keycloak", "image": "quay.io/keycloak/keycloak:24.0.5"}]},
        },
    },
}


def _k8s_profile(tmp_path, **migration):
    return _profile(tmp_path, deployment={
        "mode": "kubernetes",
        "service_url": "https://sso.example.com",
        "kubernetes": {"namespace": "identity", "replicas": 2},
    }, **migration)


def test_kubernetes_rolling_update(temp_workspace):
    runner = RecordingRunner()
    adapter = KubernetesDeployment(_k8s_profile(temp_workspace), runner=runner)

    adapter.deploy("25.0.6", Strategy.ROLLING_UPDATE)

    assert runner.commands()[0] == "kubectl -n identity set image deployment/keycloak keycloak=quay.io/keycloak/keycloak:25.0.6"
    assert runner.commands()[1].startswith("kubectl -n identity rollout status deployment/keycloak")


def test_kubernetes_inplace_scales_down_first(temp_workspace):
    runner = RecordingRunner()
    KubernetesDeployment(_k8s_profile(temp_workspace), runner=runner).deploy("25.0.6", Strategy.INPLACE)

    commands = runner.commands()
    assert commands[0] == "kubectl -n identity scale deployment/keycloak --replicas=0"
    assert "kubectl -n identity scale deployment/keycloak --replicas=2" in commands


def test_kubernetes_blue_green_cutover_on_promote(temp_workspace):
    """The candidate runs beside the serving slot until promote()."""
    runner = RecordingRunner([
        (_has("get", "service", "-o", "json"), json.dumps({"spec": {"selector": {"app": "keycloak"}}})),
        (_has("get", "deployment", "keycloak", "-o", "json"), json.dumps(BASE_DEPLOYMENT)),
    ])
    adapter = KubernetesDeployment(_k8s_profile(temp_workspace), runner=runner)

    deployed = adapter.deploy("25.0.6", Strategy.BLUE_GREEN)

    assert deployed.environment == "green"
    assert deployed.endpoint == "http://keycloak-green.identity.svc:8080/health"
    applied = json.loads([c["input"] for c in runner.calls if c["input"]][0])
    assert [item["kind"] for item in applied["items"]] == ["Deployment", "Service"]
    assert not any("patch" in c for c in runner.commands())

    adapter.promote(deployed)

    patch = runner.calls[-1]["args"]
    assert patch[3:6] == ["patch", "service", "keycloak"]
    assert json.loads(patch[-1]) == {"spec": {"selector": {SLOT_LABEL: "green"}}}


def test_kubernetes_blue_green_rollback_discards_candidate(temp_workspace):
    runner = RecordingRunner([
        (_has("get", "service", "-o", "json"), json.dumps({"spec": {"selector": {SLOT_LABEL: "green"}}})),
        (_has("get", "deployment", "keycloak", "-o", "json"), json.dumps(BASE_DEPLOYMENT)),
    ])
    adapter = KubernetesDeployment(_k8s_profile(temp_workspace), runner=runner)
    prior = Deployment("24.0.5", Strategy.BLUE_GREEN, "https://sso.example.com/health")

    deployed = adapter.deploy("25.0.6", Strategy.BLUE_GREEN)
    restored = adapter.rollback(prior)

    assert deployed.environment == "blue"
    assert restored is prior
    assert "kubectl -n identity delete deployment keycloak-blue --ignore-not-found" in runner.commands()


def test_kubernetes_unreadable_deployment_json(temp_workspace):
    runner = RecordingRunner([(_has("get", "deployment", "keycloak", "-o", "json"), "<html>proxy error</html>")])
    adapter = KubernetesDeployment(_k8s_profile(temp_workspace), runner=runner)

    with pytest.raises(AdapterError) as exc_info:
        adapter.deploy("25.0.6", Strategy.BLUE_GREEN)
    assert exc_info.value.code == "TOOL_OUTPUT_INVALID"


def test_kubernetes_promote_without_slot(temp_workspace):
    runner = RecordingRunner()
    adapter = KubernetesDeployment(_k8s_profile(temp_workspace), runner=runner)

    with pytest.raises(AdapterError) as exc_info:
        adapter.promote(Deployment("25.0.6", Strategy.BLUE_GREEN, "http://keycloak-green/health"))
    assert exc_info.value.code == "SLOT_MISSING"
    assert runner.calls == []


def test_slot_deployment_strips_identity():
    manifest = slot_deployment(BASE_DEPLOYMENT, "keycloak-green", "green", "img:26", 3)

    assert "uid" not in manifest["metadata"]
    assert manifest["metadata"]["name"] == "keycloak-green"
    assert manifest["spec"]["selector"]["matchLabels"][SLOT_LABEL] == "green"
    assert manifest["spec"]["template"]["spec"]["containers"][0]["image"] == "img:26"
    assert BASE_DEPLOYMENT["spec"]["template"]["spec"]["containers"][0]["image"].endswith("24.0.5")


# ==================== Standalone Tests ====================

def _standalone(tmp_path, runner, distribution="predownloaded"):
    home = tmp_path / "opt" / "keycloak"
    profile = _profile(tmp_path, deployment={"home_dir": str(home), "distribution": distribution})
    return StandaloneDeployment(profile, runner=runner), home


def test_standalone_switches_release(temp_workspace):
    runner = RecordingRunner()
    adapter, home = _standalone(temp_workspace, runner)
    old = adapter.release_dir("24.0.5")
    new = adapter.release_dir("25.0.6")
    (old / "conf").mkdir(parents=True)
    (old / "conf" / "keycloak.conf").write_text("db=postgres\n", encoding="utf-8")
    new.mkdir(parents=True)
    home.symlink_to(old)

    assert adapter.current_version() == "24.0.5"

    adapter.deploy("25.0.6", Strategy.INPLACE)

    assert home.resolve() == new.resolve()
    assert (new / "conf" / "keycloak.conf").read_text(encoding="utf-8") == "db=postgres\n"
    assert runner.commands() == ["systemctl stop keycloak", "systemctl start keycloak"]

    adapter.rollback(Deployment("24.0.5", Strategy.INPLACE, "http://localhost:8080/health"))

    assert home.resolve() == old.resolve()


def test_standalone_missing_predownloaded_release(temp_workspace):
    adapter, _ = _standalone(temp_workspace, RecordingRunner())

    with pytest.raises(AdapterError) as exc_info:
        adapter.deploy("25.0.6", Strategy.INPLACE)
    assert exc_info.value.code == "RELEASE_MISSING"


def test_standalone_filesystem_error_is_adapter_error(temp_workspace):
    """A failed symlink flip after the unit was stopped surfaces as AdapterError."""
    runner = RecordingRunner()
    adapter, home = _standalone(temp_workspace, runner)
    adapter.release_dir("25.0.6").mkdir(parents=True)
    (home.parent / ".keycloak.next").mkdir()

    with pytest.raises(AdapterError) as exc_info:
        adapter.deploy("25.0.6", Strategy.INPLACE)
    assert exc_info.value.code == "FILESYSTEM_ERROR"
    assert runner.commands() == ["systemctl stop keycloak"]


def test_standalone_tools(temp_workspace):
    adapter, _ = _standalone(temp_workspace, RecordingRunner(), distribution="download")

    assert adapter.required_tools() == ["systemctl", "curl", "tar"]
    assert not adapter.supports(Strategy.ROLLING_UPDATE)


# ==================== Registry Tests ====================

def test_registry_resolves_adapters(temp_workspace):
    profile = _k8s_profile(temp_workspace)

    assert isinstance(create_database_adapter(profile), PostgresAdapter)
    assert isinstance(create_deployment_adapter(profile), KubernetesDeployment)


def test_registry_rejects_unknown_database(temp_workspace):
    profile = _profile(temp_workspace, database={"type": "oracle"})

    with pytest.raises(ProfileError, match="oracle"):
        create_database_adapter(profile)


def test_registry_applies_probe_timeout(temp_workspace):
    profile = _k8s_profile(temp_workspace)
    database = create_database_adapter(profile, probe_timeout=3.0)
    database.runner = RecordingRunner()

    database.test_connection()

    assert database.runner.calls[0]["timeout"] == 3.0
    assert create_deployment_adapter(profile, probe_timeout=2.0).probe_timeout == 2.0
    assert create_deployment_adapter(profile).probe_timeout == 10.0
