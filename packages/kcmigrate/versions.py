"""
Versions - Strict total order over dotted release versions

"18.0" and "18.0.0" compare equal; the string a user wrote is kept for
display so plans print the versions exactly as declared.
"""

import re
from dataclasses import dataclass, field
from functools import total_ordering
from typing import Tuple, Union

_VERSION_RE = re.compile(r"^v?(\d+(?:\.\d+)*)$")


@total_ordering
@dataclass(frozen=True, eq=False)
class Version:
    """Dotted numeric version."""
    raw: str
    parts: Tuple[int, ...] = field(repr=False)

    @property
    def key(self) -> Tuple[int, ...]:
        parts = list(self.parts)
        while len(parts) > 1 and parts[-1] == 0:
            parts.pop()
        return tuple(parts)

    @property
    def major(self) -> int:
        return self.parts[0]

    def __eq__(self, other):
        if not isinstance(other, Version):
            return NotImplemented
        return self.key == other.key

    def __lt__(self, other):
        if not isinstance(other, Version):
            return NotImplemented
        return self.key < other.key

    def __hash__(self):
        return hash(self.key)

    def __str__(self):
        return self.raw


VersionLike = Union[str, Version]


def parse_version(value: VersionLike) -> Version:
    """
    Parse a version string.

    Raises:
        ValueError: If the value is not a dotted numeric version
    """
    if isinstance(value, Version):
        return value
    text = str(value).strip()
    match = _VERSION_RE.match(text)
    if not match:
        raise ValueError(f"Invalid version: {value!r}")
    digits = match.group(1)
    return Version(raw=digits, parts=tuple(int(p) for p in digits.split(".")))
