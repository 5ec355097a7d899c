from syzygy.stages.artifacts import (
    Artifact,
    ArtifactFormatError,
    ArtifactMetadata,
    ArtifactStatus,
    ArtifactType,
    parse_artifact,
    read_artifact,
    serialize_artifact,
)
from syzygy.stages.locks import CorruptLockError, LockError, LockInfo, LockManager
from syzygy.stages.pipeline import (
    MissingSourceError,
    Stage,
    StageError,
    StageName,
    StagePipeline,
    UnknownStageError,
)

__all__ = [
    "Artifact",
    "ArtifactFormatError",
    "ArtifactMetadata",
    "ArtifactStatus",
    "ArtifactType",
    "CorruptLockError",
    "LockError",
    "LockInfo",
    "LockManager",
    "MissingSourceError",
    "Stage",
    "StageError",
    "StageName",
    "StagePipeline",
    "UnknownStageError",
    "parse_artifact",
    "read_artifact",
    "serialize_artifact",
]
