"""
Backup Artifacts - Database snapshots taken before each step

An artifact is only usable for rollback if the file (or directory, for
parallel dump formats) still exists and its SHA-256 still matches the
checksum recorded at backup time.

Naming:
    <backup_dir>/<profile>/backup_before_<to_version>_<YYYYmmdd_HHMMSS>.<ext>
"""

import hashlib
import json
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Any

CHUNK_SIZE = 1024 * 1024


@dataclass(frozen=True)
class BackupArtifact:
    """Verified database backup."""
    path: Path
    checksum: str
    size_bytes: int
    db_type: str
    created_at: str

    @classmethod
    def create(cls, path: Path, db_type: str) -> "BackupArtifact":
        """Describe a freshly written backup, computing its checksum and size."""
        path = Path(path)
        return cls(
            path=path,
            checksum=compute_checksum(path),
            size_bytes=_size_of(path),
            db_type=db_type,
            created_at=datetime.now(timezone.utc).isoformat(),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["path"] = str(self.path)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BackupArtifact":
        return cls(**{**data, "path": Path(data["path"])})

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))


def backup_path(backup_root: Path, to_version: str, extension: str, now: datetime = None) -> Path:
    """Path for the backup taken before upgrading to to_version."""
    now = now or datetime.now(timezone.utc)
    stamp = now.strftime("%Y%m%d_%H%M%S")
    return Path(backup_root) / f"backup_before_{to_version}_{stamp}.{extension}"


def compute_checksum(path: Path) -> str:
    """
    SHA-256 of a file, or of a directory's files in sorted relative-path order.

    Raises:
        FileNotFoundError: If path does not exist
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(str(path))

    digest = hashlib.sha256()
    if path.is_dir():
        for member in sorted(p for p in path.rglob("*") if p.is_file()):
            digest.update(member.relative_to(path).as_posix().encode("utf-8"))
            _feed(digest, member)
    else:
        _feed(digest, path)
    return digest.hexdigest()


def verify_artifact(artifact: BackupArtifact) -> tuple:
    """
    Check that an artifact exists and is intact.

    Returns:
        (ok, message)
    """
    if not artifact.path.exists():
        return False, f"Backup missing: {artifact.path}"

    actual = compute_checksum(artifact.path)
    if actual != artifact.checksum:
        return False, (
            f"Checksum mismatch for {artifact.path}: "
            f"expected {artifact.checksum[:12]}, got {actual[:12]}"
        )
    return True, f"Backup verified: {artifact.path.name} ({artifact.size_bytes} bytes)"


def _feed(digest, path: Path) -> None:
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            digest.update(chunk)


def _size_of(path: Path) -> int:
    if path.is_dir():
        return sum(p.stat().st_size for p in path.rglob("*") if p.is_file())
    return path.stat().st_size
