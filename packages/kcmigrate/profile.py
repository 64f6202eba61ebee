"""
Migration Profile - Immutable snapshot of one migration target

A profile is a versionable YAML document:

    profile:    name, environment
    database:   type, host, port, name, user, password_env
    deployment: mode, distribution, cluster_mode, service_url, admin_*, ...
                (the legacy section name "keycloak" is accepted too)
    migration:  strategy, current_version, target_version, waypoints,
                parallel_jobs, timeouts, toggles

It is loaded once per run. Overrides (CLI flags) never mutate a loaded
profile; with_overrides() returns a new snapshot.

Secrets are named by environment variable in the document and resolved
exactly once, at load time, into SecretStr fields.
"""

from __future__ import annotations

import logging
import os
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError, field_validator, model_validator

from .errors import ProfileError
from .versions import Version, parse_version

logger = logging.getLogger(__name__)


class DatabaseType(str, Enum):
    """Supported database engines."""
    POSTGRESQL = "postgresql"
    MYSQL = "mysql"
    MARIADB = "mariadb"
    ORACLE = "oracle"
    MSSQL = "mssql"
    COCKROACHDB = "cockroachdb"
    H2 = "h2"


DEFAULT_PORTS: Dict[DatabaseType, int] = {
    DatabaseType.POSTGRESQL: 5432,
    DatabaseType.MYSQL: 3306,
    DatabaseType.MARIADB: 3306,
    DatabaseType.ORACLE: 1521,
    DatabaseType.MSSQL: 1433,
    DatabaseType.COCKROACHDB: 26257,
    DatabaseType.H2: 9092,
}


class DeploymentMode(str, Enum):
    """Where the identity service runs."""
    STANDALONE = "standalone"
    DOCKER = "docker"
    DOCKER_COMPOSE = "docker-compose"
    KUBERNETES = "kubernetes"
    DECKHOUSE = "deckhouse"


class DistributionMode(str, Enum):
    """How new release bits reach the host."""
    DOWNLOAD = "download"
    PREDOWNLOADED = "predownloaded"
    CONTAINER = "container"
    HELM = "helm"


class ClusterMode(str, Enum):
    STANDALONE = "standalone"
    INFINISPAN = "infinispan"
    EXTERNAL = "external"


class Strategy(str, Enum):
    """How a step replaces the running version."""
    INPLACE = "inplace"
    ROLLING_UPDATE = "rolling_update"
    BLUE_GREEN = "blue_green"


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class DatabaseDescriptor(_Frozen):
    """Database connection description."""
    type: DatabaseType
    host: str = "localhost"
    port: int = Field(default=0, ge=0, le=65535)
    name: str = "keycloak"
    user: str = "keycloak"
    password_env: Optional[str] = None
    password: Optional[SecretStr] = None

    @model_validator(mode="before")
    @classmethod
    def _default_port(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("port") and data.get("type"):
            try:
                db_type = DatabaseType(data["type"])
            except ValueError:
                return data
            data = {**data, "port": DEFAULT_PORTS[db_type]}
        return data


class KubernetesSettings(_Frozen):
    namespace: str = "keycloak"
    deployment: str = "keycloak"
    container: str = "keycloak"
    service: str = "keycloak"
    replicas: int = Field(default=1, ge=1)
    green_endpoint: Optional[str] = None


class DockerSettings(_Frozen):
    container_name: str = "keycloak"
    compose_file: Optional[str] = None
    compose_service: str = "keycloak"
    run_args: List[str] = Field(default_factory=list)


class ContainerSettings(_Frozen):
    registry: str = "quay.io"
    image: str = "keycloak/keycloak"
    pull_policy: str = "IfNotPresent"

    def image_ref(self, version: str) -> str:
        return f"{self.registry}/{self.image}:{version}"


class DeploymentDescriptor(_Frozen):
    """Identity service deployment description."""
    mode: DeploymentMode = DeploymentMode.STANDALONE
    distribution: DistributionMode = DistributionMode.DOWNLOAD
    cluster_mode: ClusterMode = ClusterMode.STANDALONE

    service_url: str = "http://localhost:8080"
    management_url: Optional[str] = None
    health_path: str = "/health"

    admin_realm: str = "master"
    admin_user: str = "admin"
    admin_password_env: Optional[str] = None
    admin_password: Optional[SecretStr] = None

    # Standalone
    home_dir: str = "/opt/keycloak"
    service_name: str = "keycloak"
    download_url: str = "https://github.com/keycloak/keycloak/releases/download"

    kubernetes: KubernetesSettings = Field(default_factory=KubernetesSettings)
    docker: DockerSettings = Field(default_factory=DockerSettings)
    container: ContainerSettings = Field(default_factory=ContainerSettings)

    @property
    def health_url(self) -> str:
        base = (self.management_url or self.service_url).rstrip("/")
        return base + self.health_path


class MigrationSettings(_Frozen):
    """Plan, strategy and tunables for one run."""
    current_version: str
    target_version: str
    waypoints: List[str] = Field(default_factory=list)
    strategy: Strategy = Strategy.INPLACE

    parallel_jobs: int = Field(default=4, ge=1)
    timeout_per_version: int = Field(default=900, ge=1)

    health_timeout: float = Field(default=300.0, gt=0)
    health_retries: int = Field(default=5, ge=1)
    health_initial_delay: float = Field(default=5.0, ge=0)
    health_max_delay: float = Field(default=60.0, ge=0)

    run_smoke_tests: bool = True
    backup_before_step: bool = True
    backup_dir: str = "/var/backups/keycloak-migration"
    min_disk_space_gb: float = Field(default=10.0, ge=0)
    backup_space_multiplier: float = Field(default=3.0, ge=1)

    allow_replica: bool = False
    service_offline: bool = False

    @field_validator("current_version", "target_version", mode="before")
    @classmethod
    def _check_version(cls, value: Any) -> str:
        return str(parse_version(str(value)))

    @field_validator("waypoints", mode="before")
    @classmethod
    def _check_waypoints(cls, value: Any) -> List[str]:
        if value is None:
            return []
        return [str(parse_version(str(v))) for v in value]

    @property
    def current(self) -> Version:
        return parse_version(self.current_version)

    @property
    def target(self) -> Version:
        return parse_version(self.target_version)


class MigrationProfile(_Frozen):
    """Immutable per-run snapshot of everything the engine needs to know."""
    name: str = Field(min_length=1)
    environment: str = "production"
    database: DatabaseDescriptor
    deployment: DeploymentDescriptor = Field(default_factory=DeploymentDescriptor)
    migration: MigrationSettings

    @property
    def backup_root(self) -> Path:
        return Path(self.migration.backup_dir) / self.name

    def with_overrides(self, **changes: Any) -> "MigrationProfile":
        """
        Return a new profile with migration settings replaced.

        Only keys of the migration section are accepted; None values are ignored.

        Raises:
            ProfileError: Unknown key or invalid value
        """
        changes = {k: v for k, v in changes.items() if v is not None}
        if not changes:
            return self

        unknown = set(changes) - set(MigrationSettings.model_fields)
        if unknown:
            raise ProfileError(f"Unknown profile override(s): {', '.join(sorted(unknown))}")

        data = self.migration.model_dump()
        data.update(changes)
        try:
            migration = MigrationSettings.model_validate(data)
        except ValidationError as e:
            raise ProfileError(f"Invalid override: {e}") from e
        return self.model_copy(update={"migration": migration})

    def redacted(self) -> Dict[str, Any]:
        """Serializable view without secret values."""
        return self.model_dump(mode="json", exclude={
            "database": {"password"},
            "deployment": {"admin_password"},
        })


def _resolve_secret(section: Dict[str, Any], env_key: str, field: str, environ: Mapping[str, str]) -> None:
    var = section.get(env_key)
    if not var:
        return
    value = environ.get(var)
    if value is None:
        logger.warning(f"Environment variable {var} named by '{env_key}' is not set")
        return
    section[field] = value


def parse_profile(document: Dict[str, Any], environ: Optional[Mapping[str, str]] = None) -> MigrationProfile:
    """
    Build a profile from an already-parsed YAML mapping.

    Args:
        document: Mapping with profile/database/deployment/migration sections
        environ: Where *_env secret references are resolved (default: os.environ)

    Returns:
        MigrationProfile

    Raises:
        ProfileError: If the document is structurally invalid
    """
    env = os.environ if environ is None else environ

    if not isinstance(document, dict):
        raise ProfileError("Profile document must be a mapping")

    header = document.get("profile") or {}
    database = dict(document.get("database") or {})
    deployment = dict(document.get("deployment") or document.get("keycloak") or {})
    migration = dict(document.get("migration") or {})

    # Versions may live next to the deployment in older documents
    for key in ("current_version", "target_version"):
        if key in deployment:
            migration.setdefault(key, deployment.pop(key))

    _resolve_secret(database, "password_env", "password", env)
    _resolve_secret(deployment, "admin_password_env", "admin_password", env)

    try:
        return MigrationProfile(
            name=header.get("name", ""),
            environment=header.get("environment", "production"),
            database=database,
            deployment=deployment,
            migration=migration,
        )
    except ValidationError as e:
        raise ProfileError(f"Invalid profile: {e}") from e


def load_profile(path: Path, environ: Optional[Mapping[str, str]] = None) -> MigrationProfile:
    """
    Load a profile YAML file.

    Raises:
        ProfileError: If the file is missing, not YAML, or invalid
    """
    path = Path(path)
    if not path.exists():
        raise ProfileError(f"Profile not found: {path}")

    try:
        with open(path, "r", encoding="utf-8") as f:
            document = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ProfileError(f"Profile {path} is not valid YAML: {e}") from e

    profile = parse_profile(document or {}, environ)
    logger.info(f"Loaded profile '{profile.name}' from {path}")
    return profile
