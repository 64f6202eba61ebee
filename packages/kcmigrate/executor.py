"""
Step Executor - Runs one version step through its state machine

Flow:
    1. PENDING → BACKING_UP: renew the run lease, back up the database, verify it
    2. BACKING_UP → DEPLOYING: deploy to_version with the run's strategy
    3. DEPLOYING → HEALTH_CHECKING: poll health with backoff
    4. HEALTH_CHECKING → SMOKE_TESTING: run the smoke suite (or record it skipped)
    5. SMOKE_TESTING → COMMITTED: promote (blue-green cutover), checkpoint

Every transition is audited before the next action starts and checkpointed
to the run store. The executor never decides to roll back on its own: a
failure after backup is returned to the caller, which may call roll_back().
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from .adapters.base import DatabaseAdapter, Deployment, DeploymentAdapter
from .artifacts import backup_path, verify_artifact
from .audit import AuditLogger
from .errors import (
    LockAcquisitionError,
    MigrationError,
    RollbackFailure,
    StepBackupFailure,
    StepDeployFailure,
    StepHealthFailure,
    StepSmokeFailure,
    describe_error,
)
from .health import HealthProber
from .planner import VersionStep
from .profile import MigrationProfile
from .rollback import RollbackController, RollbackResult
from .run_lock import RunLease
from .smoke import SmokeSuite
from .state_machine import StepResult, StepState
from .storage import RunStore

logger = logging.getLogger(__name__)


@dataclass
class StepOutcome:
    """What execute() hands back to the coordinator."""
    result: StepResult
    deployment: Optional[Deployment] = None  # set once deploy succeeded
    error: Optional[MigrationError] = None

    @property
    def committed(self) -> bool:
        return self.result.state == StepState.COMMITTED

    @property
    def needs_rollback(self) -> bool:
        return (
            self.error is not None
            and getattr(self.error, "requires_rollback", False)
            and not self.result.is_terminal
        )


SmokeFactory = Callable[[Deployment], SmokeSuite]


class StepExecutor:
    """Executes version steps one at a time against the configured adapters."""

    def __init__(
        self,
        profile: MigrationProfile,
        database: DatabaseAdapter,
        deployment: DeploymentAdapter,
        audit: AuditLogger,
        prober: HealthProber,
        smoke_factory: SmokeFactory,
        store: Optional[RunStore] = None,
        lease: Optional[RunLease] = None,
    ):
        self.profile = profile
        self.database = database
        self.deployment = deployment
        self.audit = audit
        self.prober = prober
        self.smoke_factory = smoke_factory
        self.store = store
        self.lease = lease
        self.rollback_controller = RollbackController(database, deployment, prober)

    def execute(self, step: VersionStep) -> StepOutcome:
        """
        Drive step forward until COMMITTED or the first failure.

        Returns:
            StepOutcome. On failure after backup the result is left in the
            failing state and outcome.needs_rollback is True.

        Raises:
            AuditWriteFailure: If the audit trail cannot be written
        """
        result = StepResult(step=step)
        outcome = StepOutcome(result=result)
        migration = self.profile.migration
        logger.info(f"Step {step.ordinal}: {step} ({migration.strategy.value})")

        # 1. Backup
        if self.lease is not None:
            try:
                self.lease.renew()
            except LockAcquisitionError as e:
                return self._fail(outcome, e, reason="run lease lost")

        self._transition(result, StepState.BACKING_UP, "started", detail={"strategy": migration.strategy.value})
        try:
            target = backup_path(self.profile.backup_root, str(step.to_version), self.database.backup_extension)
            artifact = self.database.backup(target, jobs=migration.parallel_jobs)
            ok, message = verify_artifact(artifact)
        except Exception as e:
            return self._fail(outcome, StepBackupFailure(f"Backup failed: {describe_error(e)}", step.ordinal))
        if not ok:
            return self._fail(outcome, StepBackupFailure(message, step.ordinal))
        result.artifact = artifact
        logger.info(message)

        # 2. Deploy (from here on any failure halts for rollback)
        self._transition(result, StepState.DEPLOYING, "started", detail={"artifact": artifact.to_dict()})
        try:
            deployed = self.deployment.deploy(str(step.to_version), migration.strategy)
        except Exception as e:
            return self._halt(outcome, StepDeployFailure(f"Deploy of {step.to_version} failed: {describe_error(e)}", step.ordinal), e)
        outcome.deployment = deployed

        # 3. Health
        self._transition(result, StepState.HEALTH_CHECKING, "started", detail={"endpoint": deployed.endpoint})
        try:
            health = self.prober.wait_until_healthy(lambda: self.deployment.health_check(deployed.endpoint))
        except Exception as e:
            return self._halt(outcome, StepHealthFailure(f"Health check of {step.to_version} raised {describe_error(e)}", step.ordinal), e)
        if not health.passed:
            return self._halt(outcome, StepHealthFailure(
                f"{step.to_version} did not become healthy: {health.message}",
                step.ordinal,
            ))

        # 4. Smoke
        if migration.run_smoke_tests:
            self._transition(result, StepState.SMOKE_TESTING, "started", detail={"health": health.to_dict()})
            try:
                report = self.smoke_factory(deployed).run()
            except Exception as e:
                return self._halt(outcome, StepSmokeFailure(f"Smoke tests on {step.to_version} raised {describe_error(e)}", step.ordinal), e)
            if not report.passed:
                failed = ", ".join(r.name for r in report.failures)
                return self._halt(outcome, StepSmokeFailure(
                    f"Smoke tests failed on {step.to_version}: {failed}",
                    step.ordinal,
                ))
            commit_detail = {"smoke": report.to_dict()}
        else:
            self._transition(result, StepState.SMOKE_TESTING, "skipped", detail={"health": health.to_dict()})
            commit_detail = {"smoke": "skipped"}

        # 5. Commit
        try:
            self.deployment.promote(deployed)
        except Exception as e:
            return self._halt(outcome, StepDeployFailure(f"Cutover to {step.to_version} failed: {describe_error(e)}", step.ordinal), e)

        self._transition(result, StepState.COMMITTED, "ok", detail={**commit_detail, "version": deployed.version})
        logger.info(f"Step {step.ordinal} committed: now on {deployed.version}")
        return outcome

    def roll_back(self, outcome: StepOutcome, prior: Deployment) -> RollbackResult:
        """
        Roll a failed step back to prior. Always ends the step in FAILED.

        Raises:
            RollbackFailure: Restoration failed; the step is FAILED and the
                run needs operator intervention
        """
        result = outcome.result
        self._transition(result, StepState.ROLLING_BACK, "started", detail={
            "restore_to": prior.version,
            "cause": outcome.error.to_reason() if outcome.error else None,
        })

        try:
            rollback = self.rollback_controller.rollback(result.step, result.artifact, prior)
        except RollbackFailure as e:
            logger.critical(f"Rollback of step {result.ordinal} FAILED: {e.message}")
            result.error = e.to_reason()
            self._transition(result, StepState.FAILED, "rollback_failed", detail={"error": e.to_reason()})
            raise

        result.rolled_back = True
        self._transition(result, StepState.FAILED, "rolled_back", detail=rollback.to_dict())
        return rollback

    def _fail(self, outcome: StepOutcome, error: MigrationError, reason: str = "") -> StepOutcome:
        """Terminal failure with nothing to roll back."""
        outcome.error = error
        outcome.result.error = error.to_reason()
        logger.error(f"Step {outcome.result.ordinal} failed: {error.message}")
        self._transition(outcome.result, StepState.FAILED, "failed", detail={"error": error.to_reason()}, reason=reason)
        return outcome

    def _halt(self, outcome: StepOutcome, error: MigrationError, cause: Optional[BaseException] = None) -> StepOutcome:
        """Failure after backup: leave the state as is for the coordinator to resolve."""
        outcome.error = error
        outcome.result.error = error.to_reason()
        unexpected = cause if cause is not None and not isinstance(cause, MigrationError) else None
        logger.error(f"Step {outcome.result.ordinal} failed in {outcome.result.state.value}: {error.message}", exc_info=unexpected)
        self._checkpoint(outcome.result)
        return outcome

    def _transition(self, result: StepResult, to_state: StepState, outcome: str, detail=None, reason: str = "") -> None:
        previous = result.transition(to_state, reason or outcome)
        self.audit.record(
            transition=to_state.value,
            outcome=outcome,
            step_ordinal=result.ordinal,
            detail={"from_state": previous.value, **(detail or {})},
        )
        self._checkpoint(result)

    def _checkpoint(self, result: StepResult) -> None:
        if self.store is not None:
            self.store.save_step(self.audit.run_id, result)
