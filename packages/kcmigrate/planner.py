"""
Version Planner - Expands (current, target) into mandatory version hops

Philosophy:
- Deterministic: same inputs, same plan, every time
- Non-skippable: every declared waypoint between current and target is a hop
- No hidden knowledge: waypoints come from a hop table supplied by the caller

Example:
    plan("16.1.1", "26.0.7", StaticHopTable(["18.0", "21.0", "24.0"]))
    -> 16.1.1→18.0, 18.0→21.0, 21.0→24.0, 24.0→26.0.7
"""

import hashlib
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Protocol, Tuple

import yaml

from .errors import PlanningError
from .versions import Version, VersionLike, parse_version

logger = logging.getLogger(__name__)


class HopTable(Protocol):
    """Source of mandatory waypoint versions."""

    def waypoints(self) -> Tuple[Version, ...]:
        ...


class StaticHopTable:
    """Hop table backed by an explicit list of versions."""

    def __init__(self, versions: Iterable[VersionLike] = ()):
        try:
            parsed = {parse_version(v) for v in versions}
        except ValueError as e:
            raise PlanningError(f"Invalid hop table: {e}") from e
        self._waypoints = tuple(sorted(parsed))

    def waypoints(self) -> Tuple[Version, ...]:
        return self._waypoints

    def __len__(self):
        return len(self._waypoints)

    def __repr__(self):
        return f"StaticHopTable({[str(v) for v in self._waypoints]})"


def load_hop_table(path: Path) -> StaticHopTable:
    """
    Load a hop table YAML file.

    Format:
        waypoints:
          - "17.0.1"
          - "22.0.5"

    A bare YAML list is accepted as well.

    Raises:
        PlanningError: If the file cannot be read or has no waypoint list
    """
    path = Path(path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise PlanningError(f"Cannot read hop table {path}: {e}") from e

    if isinstance(data, dict):
        data = data.get("waypoints")
    if not isinstance(data, list):
        raise PlanningError(f"Hop table {path} must contain a 'waypoints' list")

    table = StaticHopTable(str(v) for v in data)
    logger.info(f"Loaded hop table with {len(table)} waypoint(s) from {path}")
    return table


@dataclass(frozen=True)
class VersionStep:
    """One upgrade hop."""
    ordinal: int
    from_version: Version
    to_version: Version

    def to_dict(self) -> Dict:
        return {
            "ordinal": self.ordinal,
            "from_version": str(self.from_version),
            "to_version": str(self.to_version),
        }

    def __str__(self):
        return f"{self.from_version}→{self.to_version}"


def plan(current: VersionLike, target: VersionLike, hop_table: HopTable) -> List[VersionStep]:
    """
    Build the ordered list of steps from current to target.

    Args:
        current: Version running now
        target: Version to end up on
        hop_table: Mandatory waypoints

    Returns:
        Steps with ordinals starting at 1; empty if already on target

    Raises:
        PlanningError: On unparseable versions or a downgrade request
    """
    try:
        cursor = parse_version(current)
        goal = parse_version(target)
    except ValueError as e:
        raise PlanningError(str(e)) from e

    if cursor > goal:
        raise PlanningError(f"Downgrade from {cursor} to {goal} is not supported")

    stops = [w for w in hop_table.waypoints() if cursor < w < goal]
    stops.append(goal)

    steps = []
    for ordinal, stop in enumerate(stops if cursor != goal else [], start=1):
        steps.append(VersionStep(ordinal=ordinal, from_version=cursor, to_version=stop))
        cursor = stop

    return steps


def plan_fingerprint(profile_name: str, steps: List[VersionStep]) -> str:
    """Stable identifier of a plan, used to match checkpoints on resume."""
    payload = json.dumps(
        {"profile": profile_name, "steps": [s.to_dict() for s in steps]},
        sort_keys=True,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]
