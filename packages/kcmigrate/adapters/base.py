"""
Adapter contracts - the only place concrete technologies are allowed

The engine talks to databases and deployment targets exclusively through
these two interfaces. Every method that touches the outside world has a
timeout and raises AdapterError on failure.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx

from ..artifacts import BackupArtifact
from ..health import HealthCheckResult, http_health_check
from ..profile import MigrationProfile, Strategy

logger = logging.getLogger(__name__)


class ReplicationRole(str, Enum):
    PRIMARY = "primary"
    REPLICA = "replica"
    DISTRIBUTED = "distributed"  # multi-primary, no replica concept
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ReplicationStatus:
    role: ReplicationRole
    lag_seconds: Optional[float] = None
    detail: str = ""


@dataclass(frozen=True)
class Deployment:
    """
    What a deploy produced: version, rollout strategy, and where to probe it
    (endpoint is the health URL). For blue-green both URLs point at the
    candidate environment.
    """
    version: str
    strategy: Strategy
    endpoint: str
    service_url: str = ""
    environment: str = "primary"
    details: Dict[str, Any] = field(default_factory=dict)


class DatabaseAdapter(ABC):
    """Backup, restore and inspection of the service database."""

    # File extension of backups this adapter writes
    backup_extension = "dump"
    # Seconds allowed for one quick inspection query
    probe_timeout = 10.0

    def __init__(self, profile: MigrationProfile):
        self.profile = profile
        self.database = profile.database
        self.timeout = profile.migration.timeout_per_version

    @abstractmethod
    def test_connection(self) -> None:
        """Raise AdapterError if the database cannot be reached with the profile credentials."""

    @abstractmethod
    def backup(self, target: Path, jobs: int = 1) -> BackupArtifact:
        """Write a full backup to target and describe it."""

    @abstractmethod
    def restore(self, artifact: BackupArtifact) -> None:
        """Replace the database contents with the artifact."""

    @abstractmethod
    def get_version(self) -> Optional[str]:
        """Server version string, or None if unknown."""

    @abstractmethod
    def get_size(self) -> Optional[int]:
        """Database size in bytes, or None if unknown."""

    @abstractmethod
    def get_replication_role(self) -> ReplicationStatus:
        """Whether the configured endpoint is a primary or a replica."""

    def required_tools(self) -> List[str]:
        return []


class DeploymentAdapter(ABC):
    """Rolls the identity service to a version and back."""

    supported_strategies = frozenset({Strategy.INPLACE})
    # Seconds allowed for one health probe
    probe_timeout = 10.0

    def __init__(self, profile: MigrationProfile, http_client: Optional[httpx.Client] = None):
        self.profile = profile
        self.deployment = profile.deployment
        self.timeout = profile.migration.timeout_per_version
        self.http_client = http_client

    def supports(self, strategy: Strategy) -> bool:
        return strategy in self.supported_strategies

    @abstractmethod
    def current_version(self) -> Optional[str]:
        """Version currently serving traffic, or None if it cannot be determined."""

    @abstractmethod
    def deploy(self, version: str, strategy: Strategy) -> Deployment:
        """
        Materialize version using strategy.

        inplace stops then starts; rolling_update keeps one instance serving;
        blue_green brings up a parallel environment without moving traffic.
        """

    @abstractmethod
    def rollback(self, prior: Deployment) -> Deployment:
        """Bring prior back as the serving deployment."""

    def promote(self, deployment: Deployment) -> None:
        """Move traffic to a verified deployment. No-op unless blue-green."""
        return None

    def describe_current(self) -> Deployment:
        """The serving deployment before any step runs."""
        version = self.current_version() or self.profile.migration.current_version
        return Deployment(
            version=version,
            strategy=self.profile.migration.strategy,
            endpoint=self.deployment.health_url,
            service_url=self.deployment.service_url,
        )

    def health_check(self, endpoint: str) -> HealthCheckResult:
        """One probe of endpoint. Adapters with non-HTTP probes override this."""
        return http_health_check(endpoint, timeout=self.probe_timeout, client=self.http_client)

    def required_tools(self) -> List[str]:
        return []
