"""Pipeline configuration: phase enums and the AnalysisConfig dataclass."""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import StrEnum

from src.analysis.errors import ConfigError
from src.config import Settings, settings


class AnalysisPhase(StrEnum):
    """Phases reported to the progress sink during a run."""

    WINDOWING = "windowing"
    UPLOADING = "uploading"
    PROCESSING = "processing"
    ANALYZING = "analyzing"
    RECONCILING = "reconciling"
    SYNTHESIZING = "synthesizing"


@dataclass(frozen=True)
class AnalysisConfig:
    """Immutable per-run configuration.

    Defaults mirror the service defaults: five-minute chunks, a 200 MiB
    upload ceiling and strictly sequential chunk processing.
    """

    chunk_length_seconds: float = 300.0
    max_artifact_bytes: int = 200 * 1024 * 1024
    max_source_bytes: int = 2 * 1024 * 1024 * 1024
    max_workers: int = 1
    delete_remote_files: bool = True

    @classmethod
    def from_settings(cls, source: Settings | None = None) -> AnalysisConfig:
        """Build a config from application settings (the global ones by default)."""
        s = source or settings
        return cls(
            chunk_length_seconds=s.chunk_length_seconds,
            max_artifact_bytes=s.max_artifact_bytes,
            max_source_bytes=s.max_source_bytes,
            max_workers=s.max_workers,
            delete_remote_files=s.delete_remote_files,
        )

    def validate(self) -> None:
        """Raise :class:`ConfigError` if any value is unusable."""
        if not math.isfinite(self.chunk_length_seconds) or self.chunk_length_seconds <= 0:
            raise ConfigError(
                f"chunk_length_seconds must be a positive number, got {self.chunk_length_seconds}"
            )
        if self.max_artifact_bytes <= 0:
            raise ConfigError(f"max_artifact_bytes must be positive, got {self.max_artifact_bytes}")
        if self.max_source_bytes <= 0:
            raise ConfigError(f"max_source_bytes must be positive, got {self.max_source_bytes}")
        if self.max_workers < 1:
            raise ConfigError(f"max_workers must be at least 1, got {self.max_workers}")
