"""
Exit Codes - Process exit taxonomy for the kcmigrate CLI

Preflight categories keep the numbering of the original shell tooling
(10-16) so existing wrappers and CI jobs keep working.
"""

from enum import IntEnum


class ExitCode(IntEnum):
    """Process exit codes."""
    SUCCESS = 0

    # Preflight categories
    DISK_SPACE = 10
    MEMORY = 11
    NETWORK = 12
    DATABASE_HEALTH = 13
    SERVICE_HEALTH = 14
    DEPENDENCIES = 15
    CONFIG = 16

    # Run outcomes
    PLANNING = 20
    STEP_FAILED = 30
    ROLLBACK_FAILED = 40
    LOCK_HELD = 50
    AUDIT_VERIFY_FAILED = 60
    AUDIT_WRITE_FAILED = 61

    INTERNAL = 70
    INTERRUPTED = 130
