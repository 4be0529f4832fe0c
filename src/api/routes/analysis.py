"""Analyze endpoint: upload a lesson recording and run the chunked analysis."""

from __future__ import annotations

import asyncio
import logging
import tempfile
from dataclasses import replace
from pathlib import Path
from typing import Annotated

from fastapi import APIRouter, File, Form, HTTPException, UploadFile
from google.api_core import exceptions as google_exceptions

from src.analysis.errors import (
    ConfigError,
    CutError,
    ProcessingError,
    SchemaError,
    TooLargeError,
    UploadError,
)
from src.analysis.pipeline import run_analysis
from src.api.models import AnalysisResponse
from src.config import settings
from src.pipeline_config import AnalysisConfig

logger = logging.getLogger(__name__)

router = APIRouter()

# Uploads are spooled to disk in 1 MiB reads
_READ_SIZE = 1024 * 1024

VIDEO_EXTENSIONS = {"mp4", "mov", "m4v", "webm", "mkv", "avi"}


async def _spool_upload(file: UploadFile, limit: int) -> Path:
    """Copy the upload to a temp file, rejecting it with 413 once it passes *limit*."""
    filename = file.filename or ""
    ext = filename.rsplit(".", 1)[-1].lower() if "." in filename else ""
    suffix = f".{ext}" if ext in VIDEO_EXTENSIONS else ".mp4"

    written = 0
    with tempfile.NamedTemporaryFile(prefix="lesson-", suffix=suffix, delete=False) as tmp:
        path = Path(tmp.name)
        try:
            while block := await file.read(_READ_SIZE):
                written += len(block)
                if written > limit:
                    raise HTTPException(
                        status_code=413,
                        detail=f"File too large. Maximum size is {limit // (1024 * 1024)} MB.",
                    )
                tmp.write(block)
        except BaseException:
            tmp.close()
            path.unlink(missing_ok=True)
            raise

    if written == 0:
        path.unlink(missing_ok=True)
        raise HTTPException(status_code=400, detail="Uploaded file is empty.")
    return path


@router.post("/api/analyze", response_model=AnalysisResponse)
async def analyze(
    file: Annotated[UploadFile, File(...)],
    chunk_length_seconds: Annotated[float | None, Form()] = None,
    max_workers: Annotated[int | None, Form()] = None,
) -> AnalysisResponse:
    """Upload a lesson recording and return the reconciled analysis report.

    The recording is split into fixed-length chunks, each chunk is analyzed
    by Gemini, and the per-chunk results are merged into one timeline.
    Returns 501 if ``GEMINI_API_KEY`` is not configured.
    """
    if not settings.gemini_api_key:
        raise HTTPException(
            status_code=501,
            detail="Lesson analysis is not configured: GEMINI_API_KEY is not set.",
        )

    config = AnalysisConfig.from_settings(settings)
    if chunk_length_seconds is not None:
        config = replace(config, chunk_length_seconds=chunk_length_seconds)
    if max_workers is not None:
        config = replace(config, max_workers=max_workers)
    try:
        config.validate()
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    path = await _spool_upload(file, config.max_source_bytes)
    try:
        # Run the blocking pipeline in a thread to keep the event loop free.
        report = await asyncio.to_thread(run_analysis, path, config)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except TooLargeError as exc:
        raise HTTPException(status_code=413, detail=str(exc)) from exc
    except CutError as exc:
        raise HTTPException(status_code=422, detail=f"Could not split recording: {exc}") from exc
    except (UploadError, ProcessingError, SchemaError) as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    except google_exceptions.GoogleAPIError as exc:
        raise HTTPException(status_code=502, detail=f"Gemini request failed: {exc}") from exc
    finally:
        path.unlink(missing_ok=True)

    return AnalysisResponse.from_report(report)
