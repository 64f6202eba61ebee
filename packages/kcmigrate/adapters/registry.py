"""
Adapter registry - name → implementation, resolved once per run

Callers plug in additional technologies with register_database_adapter /
register_deployment_adapter before the CLI builds the coordinator.
"""

import logging
from typing import Dict, Optional, Type

import httpx

from ..errors import ProfileError
from ..profile import MigrationProfile
from .base import DatabaseAdapter, DeploymentAdapter
from .docker import DockerDeployment
from .kubernetes import KubernetesDeployment
from .mysql import MariaDBAdapter, MySQLAdapter
from .postgres import CockroachAdapter, PostgresAdapter
from .standalone import StandaloneDeployment

logger = logging.getLogger(__name__)

DATABASE_ADAPTERS: Dict[str, Type[DatabaseAdapter]] = {
    "postgresql": PostgresAdapter,
    "cockroachdb": CockroachAdapter,
    "mysql": MySQLAdapter,
    "mariadb": MariaDBAdapter,
}

DEPLOYMENT_ADAPTERS: Dict[str, Type[DeploymentAdapter]] = {
    "standalone": StandaloneDeployment,
    "docker": DockerDeployment,
    "docker-compose": DockerDeployment,
    "kubernetes": KubernetesDeployment,
    "deckhouse": KubernetesDeployment,
}


def register_database_adapter(name: str, adapter_cls: Type[DatabaseAdapter]) -> None:
    DATABASE_ADAPTERS[name] = adapter_cls


def register_deployment_adapter(name: str, adapter_cls: Type[DeploymentAdapter]) -> None:
    DEPLOYMENT_ADAPTERS[name] = adapter_cls


def create_database_adapter(profile: MigrationProfile, probe_timeout: Optional[float] = None) -> DatabaseAdapter:
    """
    Raises:
        ProfileError: No adapter registered for the database type
    """
    name = profile.database.type.value
    adapter_cls = DATABASE_ADAPTERS.get(name)
    if adapter_cls is None:
        raise ProfileError(
            f"No database adapter for '{name}' (available: {', '.join(sorted(DATABASE_ADAPTERS))})"
        )
    logger.debug(f"Database adapter: {adapter_cls.__name__}")
    adapter = adapter_cls(profile)
    if probe_timeout is not None:
        adapter.probe_timeout = probe_timeout
    return adapter


def create_deployment_adapter(
    profile: MigrationProfile,
    http_client: Optional[httpx.Client] = None,
    probe_timeout: Optional[float] = None,
) -> DeploymentAdapter:
    """
    Raises:
        ProfileError: No adapter registered for the deployment mode
    """
    name = profile.deployment.mode.value
    adapter_cls = DEPLOYMENT_ADAPTERS.get(name)
    if adapter_cls is None:
        raise ProfileError(
            f"No deployment adapter for '{name}' (available: {', '.join(sorted(DEPLOYMENT_ADAPTERS))})"
        )
    logger.debug(f"Deployment adapter: {adapter_cls.__name__}")
    adapter = adapter_cls(profile, http_client=http_client)
    if probe_timeout is not None:
        adapter.probe_timeout = probe_timeout
    return adapter
