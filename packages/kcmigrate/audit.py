"""
Audit Trail - Durable, append-only record of every run transition

Philosophy:
- Append-only: entries are never rewritten or deleted
- Durable: each entry is flushed and fsynced before append() returns
- Write-only for the engine: no component reads the trail to decide anything
- Tail-safe: JSON Lines, one complete entry per line

Entry transitions:
- Run level (step_ordinal is None): preflight, plan, run_finished
- Step level: backing_up, deploying, health_checking, smoke_testing,
  committed, rolling_back, failed, skipped_committed

Optional signing: with an HMAC key every entry carries an HMAC-SHA256 of its
canonical JSON form; AuditReader.verify() detects edited or forged lines.
"""

import hashlib
import hmac
import json
import logging
import os
import threading
from dataclasses import dataclass, asdict, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import AuditWriteFailure

logger = logging.getLogger(__name__)


@dataclass
class AuditEntry:
    """One audited transition."""
    timestamp: str  # ISO8601 UTC
    run_id: str
    step_ordinal: Optional[int]
    transition: str
    outcome: str
    detail: Dict[str, Any] = field(default_factory=dict)
    signature: Optional[str] = None

    def canonical(self) -> str:
        """Serialized form that the signature covers."""
        data = asdict(self)
        data.pop("signature")
        return json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)

    def to_json(self) -> str:
        return json.dumps(asdict(self), separators=(",", ":"), default=str)

    @classmethod
    def from_json(cls, json_str: str) -> "AuditEntry":
        return cls(**json.loads(json_str))

    @classmethod
    def create(
        cls,
        run_id: str,
        transition: str,
        outcome: str,
        step_ordinal: Optional[int] = None,
        detail: Optional[Dict[str, Any]] = None,
    ) -> "AuditEntry":
        return cls(
            timestamp=datetime.now(timezone.utc).isoformat(),
            run_id=run_id,
            step_ordinal=step_ordinal,
            transition=transition,
            outcome=outcome,
            detail=detail or {},
        )


def _sign(key: str, entry: AuditEntry) -> str:
    return hmac.new(key.encode("utf-8"), entry.canonical().encode("utf-8"), hashlib.sha256).hexdigest()


class AuditLogger:
    """
    Appends entries to the audit JSONL file.

    Any I/O failure is raised as AuditWriteFailure; a run cannot continue
    without its audit trail.
    """

    def __init__(self, audit_file: Path, run_id: str, hmac_key: Optional[str] = None):
        """
        Initialize audit logger.

        Args:
            audit_file: Path to audit.jsonl
            run_id: Identifier stamped on every entry
            hmac_key: Optional signing key
        """
        self.audit_file = Path(audit_file)
        self.run_id = run_id
        self.hmac_key = hmac_key
        self._lock = threading.Lock()
        self.entries_written = 0

        try:
            self.audit_file.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise AuditWriteFailure(f"Cannot create audit directory {self.audit_file.parent}: {e}") from e

    def append(self, entry: AuditEntry) -> AuditEntry:
        """
        Durably append one entry.

        Returns:
            The entry as written (signed if a key is configured)

        Raises:
            AuditWriteFailure: If the entry could not be written and synced
        """
        if self.hmac_key:
            entry.signature = _sign(self.hmac_key, entry)

        line = entry.to_json() + "\n"
        with self._lock:
            try:
                with open(self.audit_file, "a", encoding="utf-8") as f:
                    f.write(line)
                    f.flush()
                    os.fsync(f.fileno())
            except OSError as e:
                logger.error(f"Audit write failed ({self.audit_file}): {e}")
                raise AuditWriteFailure(f"Cannot append to audit log {self.audit_file}: {e}") from e
            self.entries_written += 1

        return entry

    def record(
        self,
        transition: str,
        outcome: str,
        step_ordinal: Optional[int] = None,
        detail: Optional[Dict[str, Any]] = None,
    ) -> AuditEntry:
        """Create and append an entry for this run."""
        return self.append(AuditEntry.create(
            run_id=self.run_id,
            transition=transition,
            outcome=outcome,
            step_ordinal=step_ordinal,
            detail=detail,
        ))


class AuditReader:
    """Reads, filters and verifies an audit file (operators and tests only)."""

    def __init__(self, audit_file: Path):
        self.audit_file = Path(audit_file)

    def read_all(self) -> List[AuditEntry]:
        """All entries in file order. A torn final line is skipped."""
        if not self.audit_file.exists():
            return []

        entries = []
        with open(self.audit_file, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    entries.append(AuditEntry.from_json(line))
                except (json.JSONDecodeError, TypeError):
                    logger.warning(f"Skipping malformed audit line in {self.audit_file}")
        return entries

    def for_run(self, run_id: str, step_ordinal: Optional[int] = None) -> List[AuditEntry]:
        entries = [e for e in self.read_all() if e.run_id == run_id]
        if step_ordinal is not None:
            entries = [e for e in entries if e.step_ordinal == step_ordinal]
        return entries

    def verify(self, hmac_key: str) -> List[int]:
        """
        Check entry signatures.

        Returns:
            1-based positions of entries that are unsigned or whose signature does not match
        """
        bad = []
        for position, entry in enumerate(self.read_all(), start=1):
            if not entry.signature or not hmac.compare_digest(entry.signature, _sign(hmac_key, entry)):
                bad.append(position)
        return bad
