"""
Rollback Controller - Restores the last committed state after a failed step

Restores the pair captured before the step: the database backup and the
prior deployment.

Flow:
    1. Verify the backup artifact (exists, checksum matches)
    2. Restore the database from it
    3. Redeploy the prior deployment
    4. Health-check the prior deployment (the smoke suite is not re-run)

Safety:
- Any failure raises RollbackFailure: fatal, never retried, never followed
  by a second automatic rollback. A human has to look.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .adapters.base import DatabaseAdapter, Deployment, DeploymentAdapter
from .artifacts import BackupArtifact, verify_artifact
from .errors import RollbackFailure, describe_error
from .health import HealthCheckResult, HealthProber
from .planner import VersionStep

logger = logging.getLogger(__name__)


@dataclass
class RollbackResult:
    step: VersionStep
    restored_version: str
    actions: List[str] = field(default_factory=list)
    health: Optional[HealthCheckResult] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ordinal": self.step.ordinal,
            "restored_version": self.restored_version,
            "actions": self.actions,
            "health": self.health.to_dict() if self.health else None,
        }


class RollbackController:
    """Restores database + deployment for a failed step."""

    def __init__(self, database: DatabaseAdapter, deployment: DeploymentAdapter, prober: HealthProber):
        self.database = database
        self.deployment = deployment
        self.prober = prober

    def rollback(self, step: VersionStep, artifact: BackupArtifact, prior: Deployment) -> RollbackResult:
        """
        Restore the state before step.

        Args:
            step: The failed step
            artifact: Backup taken at the start of the step
            prior: Deployment that was serving before the step

        Returns:
            RollbackResult

        Raises:
            RollbackFailure: If any restoration action fails
        """
        result = RollbackResult(step=step, restored_version=prior.version)
        logger.warning(f"Rolling back step {step.ordinal} ({step}) to {prior.version}")

        if artifact is None:
            raise RollbackFailure(f"Step {step.ordinal} has no backup artifact to restore")

        try:
            ok, message = verify_artifact(artifact)
        except OSError as e:
            ok, message = False, f"Cannot read backup {artifact.path}: {e}"
        if not ok:
            raise RollbackFailure(f"Backup verification failed: {message}")
        result.actions.append("artifact_verified")

        try:
            self.database.restore(artifact)
        except Exception as e:
            raise RollbackFailure(f"Database restore from {artifact.path} failed: {describe_error(e)}") from e
        result.actions.append("database_restored")

        try:
            restored = self.deployment.rollback(prior)
        except Exception as e:
            raise RollbackFailure(f"Redeploying {prior.version} failed: {describe_error(e)}") from e
        result.actions.append("deployment_restored")

        try:
            health = self.prober.wait_until_healthy(lambda: self.deployment.health_check(restored.endpoint))
        except Exception as e:
            raise RollbackFailure(f"Health check of restored {prior.version} raised {describe_error(e)}") from e
        result.health = health
        if not health.passed:
            raise RollbackFailure(
                f"Restored deployment {prior.version} is not healthy: {health.message}",
                code=f"ROLLBACK_{health.error_code}" if health.error_code else None,
            )
        result.actions.append("health_verified")

        logger.info(f"Rollback of step {step.ordinal} complete; serving {prior.version}")
        return result
