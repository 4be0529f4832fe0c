"""Data models for the lesson analysis pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path

from src.analysis.timestamps import format_timestamp, parse_timestamp
from src.pipeline_config import AnalysisPhase


class FileState(StrEnum):
    """Processing state of an uploaded file on the remote store."""

    PROCESSING = "PROCESSING"
    ACTIVE = "ACTIVE"
    FAILED = "FAILED"

    @classmethod
    def parse(cls, value: str | None) -> FileState:
        """Map a raw service state; unknown values mean still processing."""
        try:
            return cls((value or "").upper())
        except ValueError:
            return cls.PROCESSING


class BloomLevel(StrEnum):
    """Bloom's taxonomy level of a teacher question."""

    REMEMBERING = "Remembering"
    UNDERSTANDING = "Understanding"
    APPLYING = "Applying"
    ANALYZING = "Analyzing"
    EVALUATING = "Evaluating"
    CREATING = "Creating"

    @classmethod
    def parse(cls, value: str) -> BloomLevel:
        """Match by word stem so "Remember", "analysis" or "APPLY" are accepted.

        Raises:
            ValueError: if no level matches.
        """
        normalized = value.strip().lower()
        for level, stem in _BLOOM_STEMS.items():
            if normalized.startswith(stem):
                return level
        raise ValueError(f"Unknown Bloom taxonomy level: {value!r}")


_BLOOM_STEMS: dict[BloomLevel, str] = {
    BloomLevel.REMEMBERING: "remem",
    BloomLevel.UNDERSTANDING: "underst",
    BloomLevel.APPLYING: "appl",
    BloomLevel.ANALYZING: "analy",
    BloomLevel.EVALUATING: "evaluat",
    BloomLevel.CREATING: "creat",
}


class SpeakerRole(StrEnum):
    """Who is speaking in an utterance."""

    PRIMARY = "Teacher"
    SECONDARY = "Student"

    @classmethod
    def parse(cls, value: str) -> SpeakerRole:
        """Case-insensitive match accepting plurals ("Students")."""
        normalized = value.strip().lower()
        if normalized.startswith("teacher"):
            return cls.PRIMARY
        if normalized.startswith("student"):
            return cls.SECONDARY
        raise ValueError(f"Unknown speaker role: {value!r}")


@dataclass(frozen=True)
class Chunk:
    """One contiguous slice of the source recording, materialized on disk."""

    index: int
    start_offset_seconds: float
    end_offset_seconds: float
    artifact: Path

    @property
    def duration_seconds(self) -> float:
        return self.end_offset_seconds - self.start_offset_seconds

    @property
    def start_timestamp(self) -> str:
        return format_timestamp(self.start_offset_seconds)

    @property
    def end_timestamp(self) -> str:
        return format_timestamp(self.end_offset_seconds)


@dataclass(frozen=True)
class RemoteHandle:
    """Reference to an uploaded chunk held by the remote file store."""

    uri: str
    name: str
    mime_type: str
    state: FileState = FileState.PROCESSING


@dataclass(frozen=True)
class Interaction:
    """A teacher question, the response it drew, and its wait time."""

    prompt: str
    response: str
    timestamp: str
    wait_seconds: float
    category: BloomLevel

    @property
    def seconds(self) -> int:
        return parse_timestamp(self.timestamp)


@dataclass(frozen=True)
class Utterance:
    """A timestamped speech segment."""

    speaker: SpeakerRole
    text: str
    timestamp: str

    @property
    def seconds(self) -> int:
        return parse_timestamp(self.timestamp)


@dataclass(frozen=True)
class ChunkResult:
    """Structured analysis of one chunk. Timestamps are chunk-relative."""

    teacher_seconds: float = 0.0
    student_seconds: float = 0.0
    silence_seconds: float = 0.0
    interactions: tuple[Interaction, ...] = ()
    utterances: tuple[Utterance, ...] = ()


@dataclass(frozen=True)
class ChunkAnalysis:
    """A chunk's window paired with its analysis result."""

    chunk: Chunk
    result: ChunkResult


@dataclass(frozen=True)
class UsageTotals:
    """Token counts accumulated across every inference call of a run."""

    analysis_prompt: int = 0
    analysis_completion: int = 0
    synthesis_prompt: int = 0
    synthesis_completion: int = 0

    @property
    def prompt_tokens(self) -> int:
        return self.analysis_prompt + self.synthesis_prompt

    @property
    def completion_tokens(self) -> int:
        return self.analysis_completion + self.synthesis_completion

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass(frozen=True)
class ReportDraft:
    """Aggregated metrics and timeline, before the narrative is synthesized."""

    teacher_pct: float
    student_pct: float
    silence_pct: float
    average_wait_seconds: float
    interactions: tuple[Interaction, ...] = ()
    utterances: tuple[Utterance, ...] = ()


@dataclass(frozen=True)
class Report:
    """Final, immutable result of one analysis run."""

    teacher_pct: float
    student_pct: float
    silence_pct: float
    average_wait_seconds: float
    interactions: tuple[Interaction, ...]
    utterances: tuple[Utterance, ...]
    narrative: str
    usage: UsageTotals = field(default_factory=UsageTotals)


@dataclass(frozen=True)
class ProgressUpdate:
    """A single observation pushed to the progress sink."""

    phase: AnalysisPhase
    current_chunk: int
    total_chunks: int
    message: str
    percent: int | None = None
