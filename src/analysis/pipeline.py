"""End-to-end analysis run: window -> upload -> poll -> analyze -> reconcile -> report."""

from __future__ import annotations

import concurrent.futures
import logging
import threading
import time
from collections.abc import Callable
from enum import StrEnum
from pathlib import Path

from src.analysis.aggregator import build_report
from src.analysis.errors import ConfigError, UploadError
from src.analysis.file_store import GeminiFileStore
from src.analysis.inference import GeminiAnalyzer
from src.analysis.models import (
    Chunk,
    ChunkAnalysis,
    ProgressUpdate,
    RemoteHandle,
    Report,
)
from src.analysis.reconciler import reconcile
from src.analysis.timestamps import format_timestamp
from src.analysis.windower import MediaCutter, plan_chunks
from src.config import settings
from src.pipeline_config import AnalysisConfig, AnalysisPhase

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressUpdate], None]


class _RunAborted(Exception):
    """Raised inside a chunk task once another task has failed."""


class RunStatus(StrEnum):
    """Lifecycle of a single run. COMPLETE and FAILED are terminal.

    WINDOWING happens once, before any chunk. Each chunk then cycles through
    UPLOADING (its cut included), POLLING and ANALYZING.
    """

    IDLE = "idle"
    WINDOWING = "windowing"
    UPLOADING = "uploading"
    POLLING = "polling"
    ANALYZING = "analyzing"
    RECONCILING = "reconciling"
    SYNTHESIZING = "synthesizing"
    COMPLETE = "complete"
    FAILED = "failed"


class Throttle:
    """Enforce a minimum spacing between calls to one endpoint across threads."""

    def __init__(
        self,
        min_interval_seconds: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._interval = min_interval_seconds
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._last: float | None = None

    def wait(self) -> None:
        with self._lock:
            now = self._clock()
            if self._last is not None:
                delay = self._last + self._interval - now
                if delay > 0:
                    self._sleep(delay)
                    now = self._clock()
            self._last = now


def _duration_hint(seconds: float) -> str:
    if seconds < 90:
        return f"{round(seconds)} seconds"
    return f"{round(seconds / 60)} minutes"


class AnalysisPipeline:
    """Drives one analysis run over a single source recording.

    Chunks are processed as tasks on a thread pool of ``config.max_workers``
    (1 by default, i.e. strictly sequential). Within a task the steps are
    always cut -> upload -> poll -> analyze. A chunk is submitted only after
    an earlier task has succeeded, so at most ``max_workers`` are in flight.
    The first task failure stops new submissions, in-flight peers stop at
    their next step, and the failure is raised. Reconciliation starts only
    after every task has finished.

    The progress callback may be invoked from worker threads.
    """

    def __init__(
        self,
        config: AnalysisConfig,
        *,
        cutter: MediaCutter,
        file_store: GeminiFileStore,
        analyzer: GeminiAnalyzer,
        progress: ProgressCallback | None = None,
        upload_interval_seconds: float = 0.5,
        analysis_interval_seconds: float = 1.0,
    ) -> None:
        self._config = config
        self._cutter = cutter
        self._file_store = file_store
        self._analyzer = analyzer
        self._progress = progress
        self._upload_gate = Throttle(upload_interval_seconds)
        self._analysis_gate = Throttle(analysis_interval_seconds)
        self._status_lock = threading.Lock()
        self._abort = threading.Event()
        self.status = RunStatus.IDLE

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------
    def run(self, source: Path) -> Report:
        """Analyze *source* and return the finished report.

        Raises:
            ConfigError, CutError, UploadError, ProcessingError, SchemaError:
                unchanged from the step that failed; the run status is FAILED.
        """
        try:
            report = self._run(source)
        except BaseException:
            self._set_status(RunStatus.FAILED)
            raise
        self._set_status(RunStatus.COMPLETE)
        return report

    def _run(self, source: Path) -> Report:
        self._config.validate()
        self._check_source(source)

        self._set_status(RunStatus.WINDOWING)
        self._emit(AnalysisPhase.WINDOWING, 0, 1, "Reading recording duration...", percent=0)
        duration = self._cutter.probe_duration(source)
        windows = plan_chunks(duration, self._config.chunk_length_seconds)
        total = len(windows)
        logger.info(
            "Analyzing %s (%.1fs) in %d chunk(s) of up to %.0fs",
            source.name,
            duration,
            total,
            self._config.chunk_length_seconds,
        )

        analyses = self._process_all(source, windows)

        self._set_status(RunStatus.RECONCILING)
        self._emit(AnalysisPhase.RECONCILING, total, total, "Combining results...")
        timeline = reconcile(analyses)

        self._set_status(RunStatus.SYNTHESIZING)
        self._emit(AnalysisPhase.SYNTHESIZING, total, total, "Generating feedback...")
        report = build_report(
            [a.result for a in analyses],
            timeline,
            self._analyzer.synthesize,
            self._analyzer.usage,
        )

        logger.info(
            "Analysis complete: %d interactions, %d utterances, %d tokens",
            len(report.interactions),
            len(report.utterances),
            report.usage.total_tokens,
        )
        return report

    def _check_source(self, source: Path) -> None:
        if not source.is_file():
            raise ConfigError(f"Source recording not found: {source}")
        size = source.stat().st_size
        if size == 0:
            raise ConfigError(f"Source recording is empty: {source}")
        if size > self._config.max_source_bytes:
            raise ConfigError(
                f"Source recording is {size} bytes; maximum is {self._config.max_source_bytes}."
            )

    def _process_all(
        self,
        source: Path,
        windows: list[tuple[float, float]],
    ) -> list[ChunkAnalysis]:
        total = len(windows)
        workers = min(self._config.max_workers, total)
        remaining = iter(enumerate(windows))
        in_flight: set[concurrent.futures.Future[ChunkAnalysis]] = set()
        analyses: list[ChunkAnalysis] = []
        self._abort = threading.Event()

        with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as pool:

            def submit_next() -> None:
                item = next(remaining, None)
                if item is not None and not self._abort.is_set():
                    index, (start, end) = item
                    in_flight.add(
                        pool.submit(self._run_chunk_task, source, index, start, end, total)
                    )

            for _ in range(workers):
                submit_next()

            # A window is handed out only after an earlier task succeeded, so
            # at most ``workers`` chunks are ever in flight.
            while in_flight:
                done, _ = concurrent.futures.wait(
                    in_flight, return_when=concurrent.futures.FIRST_COMPLETED
                )
                in_flight -= done
                for future in done:
                    # Peers stopped by the abort flag defer to the failure that set it.
                    if isinstance(future.exception(), _RunAborted):
                        continue
                    analyses.append(future.result())
                    submit_next()

        analyses.sort(key=lambda a: a.chunk.index)
        return analyses

    # ------------------------------------------------------------------
    # Per-chunk task
    # ------------------------------------------------------------------
    def _run_chunk_task(
        self,
        source: Path,
        index: int,
        start: float,
        end: float,
        total: int,
    ) -> ChunkAnalysis:
        try:
            return self._process_chunk(source, index, start, end, total)
        except BaseException:
            self._abort.set()
            raise

    def _check_abort(self, index: int) -> None:
        if self._abort.is_set():
            raise _RunAborted(f"Chunk {index + 1} skipped: another chunk failed")

    def _process_chunk(
        self,
        source: Path,
        index: int,
        start: float,
        end: float,
        total: int,
    ) -> ChunkAnalysis:
        number = index + 1
        span = f"{format_timestamp(start)} - {format_timestamp(end)}"
        percent = round(100 * index / total)

        self._check_abort(index)
        # The lazy cut is the first step of the chunk's upload.
        self._set_status(RunStatus.UPLOADING)
        self._emit(
            AnalysisPhase.UPLOADING,
            number,
            total,
            f"Creating segment {number}/{total} ({span})...",
            percent=percent,
        )
        chunk = self._cutter.cut(source, index, start, end)

        handle = self._upload(chunk, total, span)

        try:
            self._check_abort(index)
            self._set_status(RunStatus.POLLING)
            self._emit(
                AnalysisPhase.PROCESSING,
                number,
                total,
                f"Processing segment {number}/{total} on server...",
                percent=percent,
            )
            handle = self._file_store.await_ready(handle)

            self._set_status(RunStatus.ANALYZING)
            self._emit(
                AnalysisPhase.ANALYZING,
                number,
                total,
                f"Analyzing segment {number}/{total} ({span})",
                percent=percent,
            )
            self._analysis_gate.wait()
            result = self._analyzer.analyze(
                handle, index, total, _duration_hint(chunk.duration_seconds)
            )
        finally:
            if self._config.delete_remote_files:
                self._delete_remote(handle)

        logger.info(
            "Chunk %d/%d analyzed: %d interactions, %d utterances",
            number,
            total,
            len(result.interactions),
            len(result.utterances),
        )
        return ChunkAnalysis(chunk=chunk, result=result)

    def _upload(self, chunk: Chunk, total: int, span: str) -> RemoteHandle:
        number = chunk.index + 1
        try:
            self._set_status(RunStatus.UPLOADING)
            self._emit(
                AnalysisPhase.UPLOADING,
                number,
                total,
                f"Uploading segment {number}/{total} ({span})...",
                percent=round(100 * chunk.index / total),
            )
            self._upload_gate.wait()
            return self._file_store.upload(chunk)
        finally:
            # Working storage holds at most one artifact per in-flight task.
            self._cutter.discard(chunk)

    def _delete_remote(self, handle: RemoteHandle) -> None:
        try:
            self._file_store.delete(handle)
        except UploadError as exc:
            logger.warning("Could not delete remote file %s: %s", handle.name or handle.uri, exc)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _set_status(self, status: RunStatus) -> None:
        with self._status_lock:
            self.status = status

    def _emit(
        self,
        phase: AnalysisPhase,
        current: int,
        total: int,
        message: str,
        percent: int | None = None,
    ) -> None:
        if self._progress is None:
            return
        self._progress(
            ProgressUpdate(
                phase=phase,
                current_chunk=current,
                total_chunks=total,
                message=message,
                percent=percent,
            )
        )


def run_analysis(
    source: str | Path,
    config: AnalysisConfig | None = None,
    progress: ProgressCallback | None = None,
) -> Report:
    """Analyze a lesson recording with collaborators built from settings.

    Args:
        source: Path to the recording.
        config: Per-run overrides; defaults come from settings.
        progress: Optional sink for :class:`ProgressUpdate` notifications.

    Returns:
        The finished :class:`Report`.
    """
    config = config or AnalysisConfig.from_settings()
    config.validate()
    if not settings.gemini_api_key:
        raise ConfigError("GEMINI_API_KEY is not configured.")

    analyzer = GeminiAnalyzer(
        settings.gemini_api_key,
        model=settings.gemini_model,
        max_attempts=settings.max_analysis_attempts,
        retry_base_delay_seconds=settings.retry_base_delay_seconds,
        analysis_max_output_tokens=settings.analysis_max_output_tokens,
        synthesis_max_output_tokens=settings.synthesis_max_output_tokens,
    )

    with (
        MediaCutter(settings.ffmpeg_binary, settings.ffprobe_binary) as cutter,
        GeminiFileStore(
            settings.gemini_api_key,
            base_url=settings.gemini_base_url,
            max_artifact_bytes=config.max_artifact_bytes,
            poll_interval_seconds=settings.poll_interval_seconds,
            timeout_seconds=settings.http_timeout_seconds,
        ) as file_store,
    ):
        pipeline = AnalysisPipeline(
            config,
            cutter=cutter,
            file_store=file_store,
            analyzer=analyzer,
            progress=progress,
            upload_interval_seconds=settings.upload_interval_seconds,
            analysis_interval_seconds=settings.analysis_interval_seconds,
        )
        return pipeline.run(Path(source))
