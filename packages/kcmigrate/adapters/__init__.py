"""
Adapters - concrete databases and deployment targets

The engine only sees DatabaseAdapter and DeploymentAdapter.
"""

from .base import (
    DatabaseAdapter,
    DeploymentAdapter,
    Deployment,
    ReplicationRole,
    ReplicationStatus
)

from .process import CommandRunner

from .postgres import PostgresAdapter, CockroachAdapter
from .mysql import MySQLAdapter, MariaDBAdapter
from .standalone import StandaloneDeployment
from .docker import DockerDeployment
from .kubernetes import KubernetesDeployment

from .registry import (
    DATABASE_ADAPTERS,
    DEPLOYMENT_ADAPTERS,
    create_database_adapter,
    create_deployment_adapter,
    register_database_adapter,
    register_deployment_adapter
)

__all__ = [
    # Contracts
    "DatabaseAdapter",
    "DeploymentAdapter",
    "Deployment",
    "ReplicationRole",
    "ReplicationStatus",

    # Plumbing
    "CommandRunner",

    # Databases
    "PostgresAdapter",
    "CockroachAdapter",
    "MySQLAdapter",
    "MariaDBAdapter",

    # Deployments
    "StandaloneDeployment",
    "DockerDeployment",
    "KubernetesDeployment",

    # Registry
    "DATABASE_ADAPTERS",
    "DEPLOYMENT_ADAPTERS",
    "create_database_adapter",
    "create_deployment_adapter",
    "register_database_adapter",
    "register_deployment_adapter"
]
