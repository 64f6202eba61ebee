"""
Run Store - Checkpoints for resumable migration runs

Provides:
- Run records (start, progress, end)
- Step results, upserted at every state change
- committed_ordinals(): which steps of a plan a previous run already committed
"""

import json
import logging
import sqlite3
from contextlib import closing
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from .schema import get_db_connection, init_state_db
from .state_machine import StepResult, StepState

logger = logging.getLogger(__name__)


@dataclass
class RunRecord:
    run_id: str
    profile_name: str
    plan_fingerprint: str
    status: str
    current_version: str
    target_version: str
    committed_version: Optional[str]
    current_index: int
    started_at: str
    ended_at: Optional[str]
    error_code: Optional[str]
    error_message: Optional[str]

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "RunRecord":
        return cls(**{key: row[key] for key in row.keys()})

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)


@dataclass
class StepRecord:
    run_id: str
    ordinal: int
    from_version: str
    to_version: str
    state: str
    rolled_back: bool
    started_at: str
    ended_at: Optional[str]
    artifact: Optional[Dict[str, Any]]
    error_code: Optional[str]
    error_message: Optional[str]

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "StepRecord":
        return cls(
            run_id=row["run_id"],
            ordinal=row["ordinal"],
            from_version=row["from_version"],
            to_version=row["to_version"],
            state=row["state"],
            rolled_back=bool(row["rolled_back"]),
            started_at=row["started_at"],
            ended_at=row["ended_at"],
            artifact=json.loads(row["artifact"]) if row["artifact"] else None,
            error_code=row["error_code"],
            error_message=row["error_message"],
        )


class RunStore:
    """SQLite-backed checkpoint store."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        init_state_db(self.db_path)

    def _connect(self) -> sqlite3.Connection:
        return get_db_connection(self.db_path)

    def start_run(
        self,
        run_id: str,
        profile_name: str,
        plan_fingerprint: str,
        current_version: str,
        target_version: str,
    ) -> None:
        with closing(self._connect()) as conn, conn:
            conn.execute(
                """
                INSERT INTO runs (run_id, profile_name, plan_fingerprint, status,
                                  current_version, target_version, started_at)
                VALUES (?, ?, ?, 'running', ?, ?, ?)
                """,
                (run_id, profile_name, plan_fingerprint, current_version, target_version, _now()),
            )

    def update_progress(self, run_id: str, current_index: int, committed_version: Optional[str]) -> None:
        with closing(self._connect()) as conn, conn:
            conn.execute(
                "UPDATE runs SET current_index = ?, committed_version = ? WHERE run_id = ?",
                (current_index, committed_version, run_id),
            )

    def finish_run(self, run_id: str, status: str, error: Optional[Dict[str, Any]] = None) -> None:
        error = error or {}
        with closing(self._connect()) as conn, conn:
            conn.execute(
                """
                UPDATE runs SET status = ?, ended_at = ?, error_code = ?, error_message = ?
                WHERE run_id = ?
                """,
                (status, _now(), error.get("code"), error.get("message"), run_id),
            )

    def save_step(self, run_id: str, result: StepResult) -> None:
        """Insert or update the checkpoint for one step."""
        error = result.error or {}
        artifact = result.artifact.to_json() if result.artifact else None
        with closing(self._connect()) as conn, conn:
            conn.execute(
                """
                INSERT INTO step_results (run_id, ordinal, from_version, to_version, state,
                                          rolled_back, started_at, ended_at, artifact,
                                          error_code, error_message)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(run_id, ordinal) DO UPDATE SET
                    state = excluded.state,
                    rolled_back = excluded.rolled_back,
                    ended_at = excluded.ended_at,
                    artifact = excluded.artifact,
                    error_code = excluded.error_code,
                    error_message = excluded.error_message
                """,
                (
                    run_id, result.ordinal,
                    str(result.step.from_version), str(result.step.to_version),
                    result.state.value, int(result.rolled_back),
                    result.started_at, result.ended_at, artifact,
                    error.get("code"), error.get("message"),
                ),
            )

    def get_run(self, run_id: str) -> Optional[RunRecord]:
        with closing(self._connect()) as conn:
            row = conn.execute("SELECT * FROM runs WHERE run_id = ?", (run_id,)).fetchone()
        return RunRecord.from_row(row) if row else None

    def list_steps(self, run_id: str) -> List[StepRecord]:
        with closing(self._connect()) as conn:
            rows = conn.execute(
                "SELECT * FROM step_results WHERE run_id = ? ORDER BY ordinal", (run_id,)
            ).fetchall()
        return [StepRecord.from_row(r) for r in rows]

    def latest_run(self, profile_name: str) -> Optional[RunRecord]:
        with closing(self._connect()) as conn:
            row = conn.execute(
                "SELECT * FROM runs WHERE profile_name = ? ORDER BY started_at DESC, rowid DESC LIMIT 1",
                (profile_name,),
            ).fetchone()
        return RunRecord.from_row(row) if row else None

    def committed_ordinals(self, profile_name: str, plan_fingerprint: str) -> Set[int]:
        """Ordinals committed by any earlier run of the same plan."""
        with closing(self._connect()) as conn:
            rows = conn.execute(
                """
                SELECT DISTINCT s.ordinal FROM step_results s
                JOIN runs r ON r.run_id = s.run_id
                WHERE r.profile_name = ? AND r.plan_fingerprint = ? AND s.state = ?
                """,
                (profile_name, plan_fingerprint, StepState.COMMITTED.value),
            ).fetchall()
        return {row["ordinal"] for row in rows}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()
