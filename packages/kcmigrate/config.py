"""
Engine Settings - Tunables that are not part of a migration profile

A profile describes WHAT to migrate. EngineSettings describes how this host
runs the engine: where the workspace lives, probe timeouts, lock lease length.

Settings are a plain value built once at the CLI boundary (from_env) and
passed down explicitly. Nothing below the CLI reads the environment.
"""

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Mapping, Optional

GB = 1024 ** 3

ENV_PREFIX = "KCMIGRATE_"


@dataclass(frozen=True)
class EngineSettings:
    """Host-level engine configuration."""
    workspace: Path = field(default_factory=lambda: Path(".kcmigrate"))

    # Preflight thresholds (disk minimum lives in the profile)
    min_memory_gb: float = 2.0
    network_timeout: float = 5.0
    probe_timeout: float = 10.0
    fallback_db_size_gb: float = 10.0

    # Run lock
    lock_lease_seconds: int = 7200
    lock_wait_seconds: int = 0

    # Audit trail
    audit_hmac_key: Optional[str] = None

    @property
    def audit_path(self) -> Path:
        return self.workspace / "audit" / "audit.jsonl"

    @property
    def state_db_path(self) -> Path:
        return self.workspace / "state.db"

    def with_workspace(self, workspace: Path) -> "EngineSettings":
        return replace(self, workspace=Path(workspace))

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "EngineSettings":
        """
        Build settings from KCMIGRATE_* environment variables.

        Only the CLI calls this. Unset variables keep their defaults.

        Args:
            environ: Mapping to read from (default: os.environ)

        Returns:
            EngineSettings
        """
        env = os.environ if environ is None else environ
        defaults = cls()

        def _get(name: str, default):
            raw = env.get(ENV_PREFIX + name)
            if raw is None or raw == "":
                return default
            return type(default)(raw) if default is not None else raw

        return cls(
            workspace=Path(env.get(ENV_PREFIX + "WORKSPACE", str(defaults.workspace))),
            min_memory_gb=_get("MIN_MEMORY_GB", defaults.min_memory_gb),
            network_timeout=_get("NETWORK_TIMEOUT", defaults.network_timeout),
            probe_timeout=_get("PROBE_TIMEOUT", defaults.probe_timeout),
            fallback_db_size_gb=_get("FALLBACK_DB_SIZE_GB", defaults.fallback_db_size_gb),
            lock_lease_seconds=_get("LOCK_LEASE_SECONDS", defaults.lock_lease_seconds),
            lock_wait_seconds=_get("LOCK_WAIT_SECONDS", defaults.lock_wait_seconds),
            audit_hmac_key=_get("AUDIT_HMAC_KEY", defaults.audit_hmac_key),
        )
