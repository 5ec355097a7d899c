from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import UTC, date, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any

import yaml

from syzygy.roles.base import Role

FENCE = "---"


class ArtifactFormatError(ValueError):
    """Raised when an artifact's front matter is missing or invalid."""

    def __init__(self, message: str, *, path: Path | None = None) -> None:
        super().__init__(f"{path}: {message}" if path is not None else message)
        self.path = path


class ArtifactType(StrEnum):
    SPEC = "spec"
    ARCHITECTURE = "architecture"
    TASK = "task"
    TEST = "test"
    IMPLEMENTATION = "implementation"
    REVIEW = "review"
    DOCUMENTATION = "documentation"


class ArtifactStatus(StrEnum):
    PENDING = "pending"
    CLAIMED = "claimed"
    COMPLETE = "complete"


class ArtifactPriority(StrEnum):
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


_STATUS_RANK = {ArtifactStatus.PENDING: 0, ArtifactStatus.CLAIMED: 1, ArtifactStatus.COMPLETE: 2}

_REQUIRED_FIELDS = ("type", "from", "to", "status", "featureName")


@dataclass(frozen=True, slots=True)
class ArtifactMetadata:
    type: ArtifactType
    from_role: Role
    to_role: Role
    status: ArtifactStatus
    feature_name: str
    claimed_by: str | None = None
    claimed_at: str | None = None
    priority: ArtifactPriority | None = None
    task_id: str | None = None

    def _advance(self, status: ArtifactStatus, **changes: Any) -> ArtifactMetadata:
        if _STATUS_RANK[status] <= _STATUS_RANK[self.status]:
            raise ArtifactFormatError(
                f"Artifact status cannot move from {self.status.value} to {status.value}"
            )
        return replace(self, status=status, **changes)

    def claimed(self, by: str) -> ArtifactMetadata:
        claimed_at = datetime.now(UTC).isoformat().replace("+00:00", "Z")
        return self._advance(ArtifactStatus.CLAIMED, claimed_by=by, claimed_at=claimed_at)

    def completed(self) -> ArtifactMetadata:
        return self._advance(ArtifactStatus.COMPLETE)

    def to_dict(self) -> dict[str, str]:
        data = {
            "type": self.type.value,
            "from": self.from_role.value,
            "to": self.to_role.value,
            "status": self.status.value,
            "featureName": self.feature_name,
        }
        if self.claimed_by is not None:
            data["claimedBy"] = self.claimed_by
        if self.claimed_at is not None:
            data["claimedAt"] = self.claimed_at
        if self.priority is not None:
            data["priority"] = self.priority.value
        if self.task_id is not None:
            data["taskId"] = self.task_id
        return data


@dataclass(frozen=True, slots=True)
class Artifact:
    path: Path
    metadata: ArtifactMetadata
    body: str


def _enum_field(
    enum_type: type[StrEnum], data: dict[str, Any], key: str, path: Path | None
) -> Any:
    value = data.get(key)
    try:
        return enum_type(value)
    except ValueError as exc:
        allowed = ", ".join(member.value for member in enum_type)
        raise ArtifactFormatError(
            f"Invalid {key!r} value {value!r} (expected one of: {allowed})", path=path
        ) from exc


def _optional_text(data: dict[str, Any], key: str, path: Path | None) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, datetime | date):
        return value.isoformat()
    if isinstance(value, str | int):
        return str(value)
    raise ArtifactFormatError(f"Field {key!r} must be a string", path=path)


def _split_front_matter(text: str, path: Path | None) -> tuple[str, str]:
    lines = text.lstrip("\ufeff").splitlines(keepends=True)
    if not lines or lines[0].strip() != FENCE:
        raise ArtifactFormatError("Missing front matter", path=path)
    for index in range(1, len(lines)):
        if lines[index].strip() == FENCE:
            header = "".join(lines[1:index])
            body = "".join(lines[index + 1 :])
            return header, body.lstrip("\n")
    raise ArtifactFormatError("Unterminated front matter", path=path)


def parse_metadata(data: Any, path: Path | None = None) -> ArtifactMetadata:
    if not isinstance(data, dict):
        raise ArtifactFormatError("Front matter must be a mapping", path=path)
    missing = [key for key in _REQUIRED_FIELDS if data.get(key) in (None, "")]
    if missing:
        raise ArtifactFormatError(f"Missing required fields: {', '.join(missing)}", path=path)
    feature_name = data["featureName"]
    if not isinstance(feature_name, str):
        raise ArtifactFormatError("Field 'featureName' must be a string", path=path)
    priority = None
    if data.get("priority") is not None:
        priority = _enum_field(ArtifactPriority, data, "priority", path)
    return ArtifactMetadata(
        type=_enum_field(ArtifactType, data, "type", path),
        from_role=_enum_field(Role, data, "from", path),
        to_role=_enum_field(Role, data, "to", path),
        status=_enum_field(ArtifactStatus, data, "status", path),
        feature_name=feature_name,
        claimed_by=_optional_text(data, "claimedBy", path),
        claimed_at=_optional_text(data, "claimedAt", path),
        priority=priority,
        task_id=_optional_text(data, "taskId", path),
    )


def parse_artifact(path: Path, text: str) -> Artifact:
    header, body = _split_front_matter(text, path)
    try:
        data = yaml.safe_load(header)
    except yaml.YAMLError as exc:
        raise ArtifactFormatError(f"Invalid YAML front matter: {exc}", path=path) from exc
    return Artifact(path=path, metadata=parse_metadata(data, path), body=body)


def read_artifact(path: Path) -> Artifact:
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ArtifactFormatError("Artifact is not valid UTF-8", path=path) from exc
    return parse_artifact(path, text)


def serialize_artifact(artifact: Artifact) -> str:
    header = yaml.safe_dump(
        artifact.metadata.to_dict(),
        sort_keys=False,
        allow_unicode=True,
        default_flow_style=False,
    )
    body = artifact.body
    if body and not body.endswith("\n"):
        body += "\n"
    return f"{FENCE}\n{header}{FENCE}\n\n{body}"


def write_artifact(artifact: Artifact) -> None:
    artifact.path.parent.mkdir(parents=True, exist_ok=True)
    artifact.path.write_text(serialize_artifact(artifact), encoding="utf-8")
