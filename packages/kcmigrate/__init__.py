"""
kcmigrate - Multi-version Keycloak migration engine

Philosophy: every hop is gated, checkpointed and reversible.

NOT a deploy script. This is a CONTROLLED upgrade:
- Preflight gate blocks the run before anything is touched
- Mandatory version waypoints are never skipped
- A verified database backup precedes every step
- A failed step is rolled back to the last committed version
- Every transition lands in an append-only audit trail

Architecture:
    Profile (YAML) → MigrationProfile
        ↓
    PreflightGate → pass / warn / fail
        ↓
    plan() → [VersionStep, ...]
        ↓
    StepExecutor → backup → deploy → health → smoke → commit
        ↓
    RollbackController (on failure) → restore backup + prior deployment
        ↓
    RunReport + audit.jsonl

Concrete databases and deployment targets live in kcmigrate.adapters.
"""

from .errors import (
    MigrationError,
    ProfileError,
    PlanningError,
    AdapterError,
    FatalPreflightFailure,
    StepFailure,
    StepBackupFailure,
    StepDeployFailure,
    StepHealthFailure,
    StepSmokeFailure,
    RollbackFailure,
    AuditWriteFailure,
    LockAcquisitionError,
    RunInterrupted
)

from .exit_codes import ExitCode

from .config import EngineSettings

from .versions import Version, parse_version

from .profile import (
    MigrationProfile,
    DatabaseDescriptor,
    DeploymentDescriptor,
    MigrationSettings,
    DatabaseType,
    DeploymentMode,
    Strategy,
    load_profile,
    parse_profile
)

from .planner import (
    VersionStep,
    HopTable,
    StaticHopTable,
    load_hop_table,
    plan
)

from .artifacts import BackupArtifact, verify_artifact

from .audit import AuditEntry, AuditLogger, AuditReader

from .run_lock import RunLease

from .state_machine import StepState, StepResult

from .health import HealthCheckResult, HealthProber

from .smoke import SmokeSuite, SmokeReport

from .preflight import (
    PreflightGate,
    PreflightReport,
    CheckResult,
    CheckStatus,
    HostProbe,
    run_preflight
)

from .rollback import RollbackController, RollbackResult

from .executor import StepExecutor, StepOutcome

from .storage import RunStore

from .coordinator import (
    RunCoordinator,
    RunReport,
    RunStatus,
    RunState,
    CancellationToken,
    run_migration
)

__all__ = [
    # Errors
    "MigrationError",
    "ProfileError",
    "PlanningError",
    "AdapterError",
    "FatalPreflightFailure",
    "StepFailure",
    "StepBackupFailure",
    "StepDeployFailure",
    "StepHealthFailure",
    "StepSmokeFailure",
    "RollbackFailure",
    "AuditWriteFailure",
    "LockAcquisitionError",
    "RunInterrupted",
    "ExitCode",

    # Configuration
    "EngineSettings",
    "MigrationProfile",
    "DatabaseDescriptor",
    "DeploymentDescriptor",
    "MigrationSettings",
    "DatabaseType",
    "DeploymentMode",
    "Strategy",
    "load_profile",
    "parse_profile",

    # Planning
    "Version",
    "parse_version",
    "VersionStep",
    "HopTable",
    "StaticHopTable",
    "load_hop_table",
    "plan",

    # Safety
    "BackupArtifact",
    "verify_artifact",
    "AuditEntry",
    "AuditLogger",
    "AuditReader",
    "RunLease",
    "PreflightGate",
    "PreflightReport",
    "CheckResult",
    "CheckStatus",
    "HostProbe",
    "run_preflight",

    # Execution
    "StepState",
    "StepResult",
    "HealthCheckResult",
    "HealthProber",
    "SmokeSuite",
    "SmokeReport",
    "StepExecutor",
    "StepOutcome",
    "RollbackController",
    "RollbackResult",
    "RunStore",
    "RunCoordinator",
    "RunReport",
    "RunStatus",
    "RunState",
    "CancellationToken",
    "run_migration"
]

__version__ = "1.0.0"
