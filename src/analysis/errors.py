"""Error taxonomy for a lesson analysis run.

Every kind except :class:`SynthesisError` aborts the run and reaches the
caller unchanged. :class:`SynthesisError` is raised by the inference client
and recovered by the aggregator, which substitutes a default narrative.
"""

from __future__ import annotations


class AnalysisError(Exception):
    """Base class for all pipeline failures."""


class ConfigError(AnalysisError):
    """Invalid run configuration or unusable source, detected before any work."""


class CutError(AnalysisError):
    """The media cutting tool failed to probe or extract a chunk."""

    def __init__(self, message: str, returncode: int | None = None, stderr: str = "") -> None:
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class UploadError(AnalysisError):
    """Transport failure talking to the remote file store."""

    def __init__(self, message: str, status: int | None = None, body: str = "") -> None:
        super().__init__(message)
        self.status = status
        self.body = body


class TooLargeError(UploadError):
    """Chunk artifact exceeds the configured upload ceiling (raised before any I/O)."""

    def __init__(self, size: int, limit: int) -> None:
        super().__init__(
            f"Artifact is {size} bytes; maximum upload size is {limit} bytes.",
            status=413,
            body="",
        )
        self.size = size
        self.limit = limit


class ProcessingError(AnalysisError):
    """The remote service reported that it could not process a chunk."""


class SchemaError(AnalysisError):
    """A structured analysis response could not be parsed into a chunk result."""


class SynthesisError(AnalysisError):
    """The narrative synthesis call failed. Non-fatal."""
