"""Helper utilities for the backup tool."""
from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional

TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"
ARTIFACT_MARKER = "backup"

_ARTIFACT_RE = re.compile(
    r"^(?P<name>.+)-" + ARTIFACT_MARKER + r"-(?P<timestamp>\d{14})(?P<extension>(?:\.[0-9A-Za-z]+)*)$"
)


@dataclass(frozen=True)
class ArtifactName:
    name: str
    timestamp: datetime
    extension: str
    compressed: bool


def ensure_directory(path: Path) -> Path:
    """Create *path* if it does not exist and return it."""

    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)
    return path


def timestamp_for_filename(dt: Optional[datetime] = None) -> str:
    dt = dt or datetime.now()
    return dt.strftime(TIMESTAMP_FORMAT)


def artifact_name(name: str, timestamp: datetime, extension: str = "", compressed: bool = False) -> str:
    """Return ``<name>-backup-<yyyyMMddHHmmss><extension>[.gz]``.

    The timestamp is fixed width, so names produced for the same logical
    name sort in creation order.
    """

    if extension and not extension.startswith("."):
        extension = "." + extension
    result = f"{name}-{ARTIFACT_MARKER}-{timestamp_for_filename(timestamp)}{extension}"
    if compressed:
        result += ".gz"
    return result


def artifact_prefix(name: str) -> str:
    return f"{name}-{ARTIFACT_MARKER}-"


def parse_artifact_name(path) -> ArtifactName:
    """Split an artifact path back into the parts :func:`artifact_name` used.

    Raises :class:`ValueError` when the file name does not follow the
    artifact naming scheme.
    """

    filename = Path(str(path)).name
    match = _ARTIFACT_RE.match(filename)
    if not match:
        raise ValueError(f"'{filename}' is not a backup artifact name.")
    extension = match.group("extension")
    compressed = extension.endswith(".gz")
    if compressed:
        extension = extension[: -len(".gz")]
    return ArtifactName(
        name=match.group("name"),
        timestamp=datetime.strptime(match.group("timestamp"), TIMESTAMP_FORMAT),
        extension=extension,
        compressed=compressed,
    )


def latest_artifact(paths: Iterable[str], prefix: str) -> Optional[str]:
    """Return the newest of *paths* whose file name is an artifact of *prefix*.

    Names that merely start with the prefix but do not parse as an artifact
    of the same logical name are skipped.
    """

    candidates = []
    for path in paths:
        try:
            parsed = parse_artifact_name(path)
        except ValueError:
            continue
        if artifact_prefix(parsed.name) == prefix:
            candidates.append((parsed.timestamp, str(path)))
    if not candidates:
        return None
    return max(candidates)[1]


def artifact_extension(path) -> str:
    """Extension of *path* without the trailing ``.gz``."""

    try:
        return parse_artifact_name(path).extension
    except ValueError:
        name = Path(str(path)).name
        if name.endswith(".gz"):
            name = name[: -len(".gz")]
        return Path(name).suffix


def is_gzip_artifact(path) -> bool:
    try:
        return parse_artifact_name(path).compressed
    except ValueError:
        return str(path).endswith(".gz")


def mask_sensitive(value: str, secrets: Iterable[Optional[str]]) -> str:
    """Replace occurrences of secret values in *value* with '***'."""

    masked = value
    for secret in secrets:
        if secret:
            masked = masked.replace(secret, "***")
    return masked


__all__ = [
    "ArtifactName",
    "artifact_extension",
    "artifact_name",
    "artifact_prefix",
    "ensure_directory",
    "is_gzip_artifact",
    "latest_artifact",
    "mask_sensitive",
    "parse_artifact_name",
    "timestamp_for_filename",
]
