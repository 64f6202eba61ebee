"""Error types raised by the migration engine, each carrying a code and exit code."""
from __future__ import annotations

from typing import Any, Dict, Optional

from .exit_codes import ExitCode


class MigrationError(Exception):
    """Base error: code + message, plus the process exit code it maps to."""
    code: str = "MIGRATION_ERROR"
    exit_code: ExitCode = ExitCode.INTERNAL

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_reason(self) -> dict:
        return {"code": self.code, "message": self.message}


class ProfileError(MigrationError):
    """Profile file missing, unreadable or invalid."""
    code = "PROFILE_INVALID"
    exit_code = ExitCode.CONFIG


class PlanningError(MigrationError):
    """Version pair cannot be planned (downgrade, unparseable version)."""
    code = "PLANNING_ERROR"
    exit_code = ExitCode.PLANNING


class AdapterError(MigrationError):
    """A database or deployment tool call failed."""
    code = "ADAPTER_ERROR"
    exit_code = ExitCode.INTERNAL

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, code)
        self.details = details or {}

    def to_reason(self) -> dict:
        reason = super().to_reason()
        if self.details:
            reason["details"] = self.details
        return reason


class FatalPreflightFailure(MigrationError):
    """At least one preflight check failed; nothing was mutated."""
    code = "PREFLIGHT_FAILED"
    exit_code = ExitCode.CONFIG

    def __init__(self, message: str, report=None, exit_code: ExitCode | None = None) -> None:
        super().__init__(message)
        self.report = report
        if exit_code is not None:
            self.exit_code = exit_code


class StepFailure(MigrationError):
    """Base for failures inside a single version step."""
    code = "STEP_FAILED"
    exit_code = ExitCode.STEP_FAILED
    # Whether the failure happened after a verified backup existed.
    requires_rollback: bool = True

    def __init__(self, message: str, ordinal: int | None = None, code: str | None = None) -> None:
        super().__init__(message, code)
        self.ordinal = ordinal

    def to_reason(self) -> dict:
        reason = super().to_reason()
        reason["step"] = self.ordinal
        return reason


class StepBackupFailure(StepFailure):
    code = "STEP_BACKUP_FAILED"
    requires_rollback = False


class StepDeployFailure(StepFailure):
    code = "STEP_DEPLOY_FAILED"


class StepHealthFailure(StepFailure):
    code = "STEP_HEALTH_FAILED"


class StepSmokeFailure(StepFailure):
    code = "STEP_SMOKE_FAILED"


class RollbackFailure(MigrationError):
    """Restoring the prior state failed. Operator intervention required."""
    code = "ROLLBACK_FAILED"
    exit_code = ExitCode.ROLLBACK_FAILED


class AuditWriteFailure(MigrationError):
    """The audit trail could not be durably appended."""
    code = "AUDIT_WRITE_FAILED"
    exit_code = ExitCode.AUDIT_WRITE_FAILED


class LockAcquisitionError(MigrationError):
    """Another run holds the lease for this target."""
    code = "LOCK_HELD"
    exit_code = ExitCode.LOCK_HELD


class RunInterrupted(MigrationError):
    """Operator interrupt honoured at a step boundary."""
    code = "INTERRUPTED"
    exit_code = ExitCode.INTERRUPTED


def describe_error(error: BaseException) -> str:
    """Message for logs and reasons; unexpected exceptions keep their type name."""
    if isinstance(error, MigrationError):
        return error.message
    return f"{type(error).__name__}: {error}"
