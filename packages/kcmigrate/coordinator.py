"""
Run Coordinator - Owns one migration run from preflight to final report

Flow:
    1. Preflight gate (abort before any mutation on fail)
    2. Plan version steps
    3. Stop here for dry runs / already-migrated targets
    4. Acquire the run lease
    5. Execute steps strictly in order; step N commits before N+1 starts
    6. On step failure: roll back (if a backup exists), then stop
    7. Emit RunReport

The coordinator is the only component that decides whether to continue,
roll back or stop. RunState lives here and nowhere else.
"""

import logging
import signal
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional

import httpx

from .adapters.base import DatabaseAdapter, Deployment, DeploymentAdapter
from .audit import AuditLogger
from .config import EngineSettings
from .errors import (
    AuditWriteFailure,
    FatalPreflightFailure,
    LockAcquisitionError,
    MigrationError,
    PlanningError,
    RollbackFailure,
    RunInterrupted,
    describe_error,
)
from .executor import SmokeFactory, StepExecutor
from .exit_codes import ExitCode
from .health import HealthProber
from .planner import HopTable, StaticHopTable, VersionStep, plan, plan_fingerprint
from .preflight import HostProbe, PreflightGate, PreflightReport
from .profile import MigrationProfile
from .run_lock import RunLease
from .smoke import SmokeSuite
from .state_machine import StepResult
from .storage import RunStore

logger = logging.getLogger(__name__)


class RunStatus(str, Enum):
    COMPLETED = "completed"
    ALREADY_MIGRATED = "already_migrated"
    DRY_RUN = "dry_run"
    ABORTED = "aborted"
    FAILED = "failed"
    NEEDS_INTERVENTION = "needs_intervention"
    INTERRUPTED = "interrupted"


class CancellationToken:
    """Set by a signal handler; read by the coordinator at step boundaries."""

    def __init__(self):
        self.reason: Optional[str] = None

    def request(self, reason: str = "interrupted") -> None:
        if self.reason is None:
            logger.warning(f"Cancellation requested ({reason}); stopping after the current step")
        self.reason = reason

    @property
    def requested(self) -> bool:
        return self.reason is not None


@contextmanager
def interrupt_handlers(token: CancellationToken) -> Iterator[CancellationToken]:
    """Route SIGINT/SIGTERM to token for the duration of the block."""
    def _handler(signum, frame):
        token.request(signal.Signals(signum).name)

    previous = {}
    for sig in (signal.SIGINT, signal.SIGTERM):
        previous[sig] = signal.signal(sig, _handler)
    try:
        yield token
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


@dataclass
class RunState:
    profile: MigrationProfile
    steps: List[VersionStep] = field(default_factory=list)
    results: List[StepResult] = field(default_factory=list)
    current_index: int = 0
    committed_version: str = ""
    terminal: bool = False


@dataclass
class RunReport:
    """Final outcome of a run, for humans (summary) and machines (to_dict)."""
    run_id: str
    profile_name: str
    status: RunStatus
    exit_code: ExitCode
    committed_version: str
    target_version: str
    steps: List[VersionStep] = field(default_factory=list)
    results: List[StepResult] = field(default_factory=list)
    skipped: List[int] = field(default_factory=list)
    preflight: Optional[PreflightReport] = None
    error: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "profile": self.profile_name,
            "status": self.status.value,
            "exit_code": int(self.exit_code),
            "committed_version": self.committed_version,
            "target_version": self.target_version,
            "plan": [s.to_dict() for s in self.steps],
            "steps": [r.to_dict() for r in self.results],
            "skipped_committed": self.skipped,
            "preflight": self.preflight.to_dict() if self.preflight else None,
            "error": self.error,
        }

    def summary(self) -> str:
        lines = [f"Run {self.run_id} [{self.profile_name}]: {self.status.value}"]
        if self.preflight:
            lines.append(f"  preflight: {self.preflight.summary()}")
            for check in self.preflight.failed + self.preflight.warned:
                lines.append(f"    {check.status.value.upper():4} {check.name}: {check.message}")
        if self.steps:
            lines.append(f"  plan: {' → '.join([str(self.steps[0].from_version)] + [str(s.to_version) for s in self.steps])}")
        for ordinal in self.skipped:
            lines.append(f"  step {ordinal}: already committed (skipped)")
        for result in self.results:
            suffix = " (rolled back)" if result.rolled_back else ""
            lines.append(f"  step {result.ordinal} {result.step}: {result.state.value}{suffix}")
        lines.append(f"  version: {self.committed_version} (target {self.target_version})")
        if self.error:
            lines.append(f"  error [{self.error.get('code')}]: {self.error.get('message')}")
        return "\n".join(lines)


def generate_run_id() -> str:
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
    return f"run_{stamp}_{uuid.uuid4().hex[:8]}"


class RunCoordinator:
    """Coordinates preflight, planning and step execution for one profile."""

    def __init__(
        self,
        profile: MigrationProfile,
        database: DatabaseAdapter,
        deployment: DeploymentAdapter,
        settings: Optional[EngineSettings] = None,
        hop_table: Optional[HopTable] = None,
        probe: Optional[HostProbe] = None,
        http_client: Optional[httpx.Client] = None,
        prober: Optional[HealthProber] = None,
        smoke_factory: Optional[SmokeFactory] = None,
        store: Optional[RunStore] = None,
        cancel: Optional[CancellationToken] = None,
        run_id: Optional[str] = None,
    ):
        self.profile = profile
        self.database = database
        self.deployment = deployment
        self.settings = settings or EngineSettings()
        self.hop_table = hop_table if hop_table is not None else StaticHopTable(profile.migration.waypoints)
        self.probe = probe
        self.http_client = http_client
        self.prober = prober or HealthProber.from_settings(profile.migration)
        self.smoke_factory = smoke_factory or self._default_smoke_factory
        self.store = store or RunStore(self.settings.state_db_path)
        self.cancel = cancel or CancellationToken()
        self.run_id = run_id or generate_run_id()
        self.audit = AuditLogger(self.settings.audit_path, self.run_id, self.settings.audit_hmac_key)
        self.state = RunState(profile=profile, committed_version=profile.migration.current_version)

    def _default_smoke_factory(self, deployed: Deployment) -> SmokeSuite:
        d = self.state.profile.deployment
        return SmokeSuite(
            service_url=deployed.service_url or d.service_url,
            health_url=deployed.endpoint,
            realm=d.admin_realm,
            admin_user=d.admin_user,
            admin_password=d.admin_password.get_secret_value() if d.admin_password else None,
            client=self.http_client,
        )

    def _report(self, status: RunStatus, exit_code: ExitCode, preflight=None, error=None, skipped=None) -> RunReport:
        self.state.terminal = True
        return RunReport(
            run_id=self.run_id,
            profile_name=self.profile.name,
            status=status,
            exit_code=exit_code,
            committed_version=self.state.committed_version,
            target_version=self.profile.migration.target_version,
            steps=list(self.state.steps),
            results=list(self.state.results),
            skipped=skipped or [],
            preflight=preflight,
            error=error,
        )

    def preflight(self) -> PreflightReport:
        gate = PreflightGate(
            self.profile, self.database, self.deployment,
            settings=self.settings, probe=self.probe, http_client=self.http_client,
        )
        return gate.run()

    def run(self, dry_run: bool = False, resume: bool = False) -> RunReport:
        """
        Execute the run.

        Args:
            dry_run: Stop after preflight and planning
            resume: Skip steps committed by an earlier run of the same plan

        Returns:
            RunReport. Unexpected errors end the run as needs_intervention
            (exit 70) instead of propagating.
        """
        logger.info(f"Run {self.run_id} starting for profile '{self.profile.name}' (dry_run={dry_run})")
        try:
            return self._run(dry_run, resume)
        except AuditWriteFailure as e:
            logger.critical(f"Audit trail unavailable, run halted: {e.message}")
            self._finish_store(RunStatus.NEEDS_INTERVENTION, e.to_reason())
            return self._report(RunStatus.NEEDS_INTERVENTION, e.exit_code, error=e.to_reason())
        except Exception as e:
            logger.exception(f"Run {self.run_id} halted by an unexpected error")
            return self._halted(MigrationError(f"Unexpected error: {describe_error(e)}", code="INTERNAL_ERROR"))

    def _run(self, dry_run: bool, resume: bool) -> RunReport:
        # 1. Preflight
        report = self.preflight()
        self.audit.record("preflight", report.verdict.value, detail=report.to_dict())
        if not report.ok:
            failure = FatalPreflightFailure(
                f"Preflight failed: {', '.join(c.name for c in report.failed)}",
                report=report,
                exit_code=report.exit_code,
            )
            logger.error(failure.message)
            return self._report(RunStatus.ABORTED, failure.exit_code, preflight=report, error=failure.to_reason())

        if report.effective_strategy and report.effective_strategy != self.profile.migration.strategy:
            self.state.profile = self.profile.with_overrides(strategy=report.effective_strategy)

        # 2. Plan
        migration = self.state.profile.migration
        try:
            steps = plan(migration.current_version, migration.target_version, self.hop_table)
        except PlanningError as e:
            self.audit.record("plan", "failed", detail={"error": e.to_reason()})
            return self._finished(RunStatus.ABORTED, e.exit_code, report, e.to_reason())

        self.state.steps = steps
        fingerprint = plan_fingerprint(self.profile.name, steps)
        self.audit.record("plan", "ok", detail={
            "fingerprint": fingerprint,
            "strategy": migration.strategy.value,
            "steps": [s.to_dict() for s in steps],
        })
        logger.info(f"Plan: {len(steps)} step(s): {', '.join(str(s) for s in steps) or 'none'}")

        # 3. Nothing to mutate
        if not steps:
            return self._finished(RunStatus.ALREADY_MIGRATED, ExitCode.SUCCESS, report)
        if dry_run:
            return self._finished(RunStatus.DRY_RUN, ExitCode.SUCCESS, report)

        # 4. Lease
        lease = RunLease(
            self.profile.backup_root,
            self.profile.name,
            lease_seconds=self.settings.lock_lease_seconds,
            wait_seconds=self.settings.lock_wait_seconds,
        )
        try:
            with lease.hold(self.run_id):
                self.store.start_run(
                    self.run_id, self.profile.name, fingerprint,
                    migration.current_version, migration.target_version,
                )
                return self._execute_steps(lease, report, fingerprint, resume)
        except LockAcquisitionError as e:
            logger.error(e.message)
            return self._finished(RunStatus.ABORTED, e.exit_code, report, e.to_reason())

    def _execute_steps(self, lease: RunLease, report: PreflightReport, fingerprint: str, resume: bool) -> RunReport:
        executor = StepExecutor(
            self.state.profile, self.database, self.deployment, self.audit,
            self.prober, self.smoke_factory, store=self.store, lease=lease,
        )
        committed = self.store.committed_ordinals(self.profile.name, fingerprint) if resume else set()
        skipped = []
        prior = self.deployment.describe_current()

        for index, step in enumerate(self.state.steps):
            self.state.current_index = index

            if step.ordinal in committed:
                self.audit.record("skipped_committed", "skipped", step_ordinal=step.ordinal, detail=step.to_dict())
                skipped.append(step.ordinal)
                self.state.committed_version = str(step.to_version)
                continue

            if self.cancel.requested:
                e = RunInterrupted(f"Interrupted ({self.cancel.reason}) before step {step.ordinal}")
                return self._finished(RunStatus.INTERRUPTED, e.exit_code, report, e.to_reason(), skipped)

            outcome = executor.execute(step)
            self.state.results.append(outcome.result)

            if outcome.committed:
                prior = outcome.deployment
                self.state.committed_version = str(step.to_version)
                self.store.update_progress(self.run_id, index + 1, self.state.committed_version)
                continue

            error = outcome.error
            if isinstance(error, LockAcquisitionError):
                return self._finished(RunStatus.ABORTED, error.exit_code, report, error.to_reason(), skipped)

            if outcome.needs_rollback:
                try:
                    executor.roll_back(outcome, prior)
                except RollbackFailure as e:
                    return self._finished(RunStatus.NEEDS_INTERVENTION, e.exit_code, report, e.to_reason(), skipped)

            return self._finished(RunStatus.FAILED, error.exit_code, report, error.to_reason(), skipped)

        self.state.current_index = len(self.state.steps)
        return self._finished(RunStatus.COMPLETED, ExitCode.SUCCESS, report, skipped=skipped)

    def _finished(
        self,
        status: RunStatus,
        exit_code: ExitCode,
        preflight: PreflightReport,
        error: Optional[Dict[str, Any]] = None,
        skipped: Optional[List[int]] = None,
    ) -> RunReport:
        self.audit.record("run_finished", status.value, detail={
            "committed_version": self.state.committed_version,
            "exit_code": int(exit_code),
            "error": error,
        })
        self._finish_store(status, error)
        level = logging.INFO if exit_code == ExitCode.SUCCESS else logging.ERROR
        logger.log(level, f"Run {self.run_id} finished: {status.value} at {self.state.committed_version}")
        return self._report(status, exit_code, preflight=preflight, error=error, skipped=skipped)

    def _halted(self, error: MigrationError) -> RunReport:
        """Unexpected failure: record what is known and hand the target to an operator."""
        status = RunStatus.NEEDS_INTERVENTION
        try:
            self.audit.record("run_finished", status.value, detail={
                "committed_version": self.state.committed_version,
                "exit_code": int(error.exit_code),
                "error": error.to_reason(),
            })
        except AuditWriteFailure as audit_error:
            logger.critical(f"Could not audit the halt of run {self.run_id}: {audit_error.message}")
        self._finish_store(status, error.to_reason())
        return self._report(status, error.exit_code, error=error.to_reason())

    def _finish_store(self, status: RunStatus, error: Optional[Dict[str, Any]]) -> None:
        if self.store.get_run(self.run_id) is not None:
            self.store.finish_run(self.run_id, status.value, error)


def run_migration(coordinator: RunCoordinator, dry_run: bool = False, resume: bool = False) -> RunReport:
    """Run with SIGINT/SIGTERM routed to the coordinator's cancellation token."""
    with interrupt_handlers(coordinator.cancel):
        return coordinator.run(dry_run=dry_run, resume=resume)

