"""Gemini-powered chunk analysis and narrative synthesis."""

from __future__ import annotations

import json
import logging
import threading
import time
from collections.abc import Callable
from typing import Any

import google.generativeai as genai
from google.api_core import exceptions as google_exceptions

from src.analysis.errors import SchemaError, SynthesisError
from src.analysis.models import (
    BloomLevel,
    ChunkResult,
    Interaction,
    RemoteHandle,
    ReportDraft,
    SpeakerRole,
    UsageTotals,
    Utterance,
)

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gemini-2.0-flash"

SYSTEM_INSTRUCTION = (
    "You are an expert pedagogical analyst specializing in classroom observation "
    "and teacher feedback. You are given one segment of a video recording of a lesson.\n\n"
    "Analyze the ENTIRE segment from its first second to its last. Do not stop partway "
    "through.\n\n"
    "Measure:\n"
    "1. **Talk time**: seconds the teacher speaks, seconds students speak, and seconds "
    "of silence or group work.\n"
    "2. **Wait time**: for every question the teacher asks, the silence in seconds "
    "between the question and the first student response.\n"
    "3. **Q&A**: every teacher question with the student response, classified by "
    "Bloom's taxonomy (Remembering, Understanding, Applying, Analyzing, Evaluating, "
    "Creating).\n"
    "4. **Transcript**: a complete chronological transcript labelling each speaker "
    "as \"Teacher\" or \"Student\".\n\n"
    "All timestamps are MM:SS relative to the start of the segment."
)

# Response schema for one chunk (Gemini OpenAPI-subset dialect)
CHUNK_RESULT_SCHEMA: dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "teacherTalkSeconds": {
            "type": "NUMBER",
            "description": "Total seconds the teacher is speaking in this segment.",
        },
        "studentTalkSeconds": {
            "type": "NUMBER",
            "description": "Total seconds students are speaking in this segment.",
        },
        "silenceSeconds": {
            "type": "NUMBER",
            "description": "Total seconds of silence or group work in this segment.",
        },
        "qaPairs": {
            "type": "ARRAY",
            "items": {
                "type": "OBJECT",
                "properties": {
                    "question": {
                        "type": "STRING",
                        "description": "The question asked by the teacher.",
                    },
                    "answer": {
                        "type": "STRING",
                        "description": "The student's response (or 'No response').",
                    },
                    "timestamp": {
                        "type": "STRING",
                        "description": "Time in this segment of the question, e.g. '02:15'.",
                    },
                    "waitTimeSeconds": {
                        "type": "NUMBER",
                        "description": "Seconds of silence between question and answer.",
                    },
                    "bloomTaxonomyLevel": {
                        "type": "STRING",
                        "enum": [level.value for level in BloomLevel],
                        "description": "Bloom's taxonomy level of the question.",
                    },
                },
                "required": [
                    "question",
                    "answer",
                    "timestamp",
                    "waitTimeSeconds",
                    "bloomTaxonomyLevel",
                ],
            },
        },
        "transcript": {
            "type": "ARRAY",
            "items": {
                "type": "OBJECT",
                "properties": {
                    "speaker": {
                        "type": "STRING",
                        "enum": [role.value for role in SpeakerRole],
                        "description": "Who is speaking.",
                    },
                    "text": {"type": "STRING", "description": "The spoken content."},
                    "timestamp": {
                        "type": "STRING",
                        "description": "Time of speech in this segment, e.g. '02:15'.",
                    },
                },
                "required": ["speaker", "text", "timestamp"],
            },
        },
    },
    "required": [
        "teacherTalkSeconds",
        "studentTalkSeconds",
        "silenceSeconds",
        "qaPairs",
        "transcript",
    ],
}

_CHUNK_PROMPT_TEMPLATE = """\
Analyze this ENTIRE video segment completely from start to finish.

This is segment {number} of {total} from a longer lesson (approximately {duration_hint}).

Provide:
1. Total seconds the teacher speaks in this segment
2. Total seconds students speak in this segment
3. Total seconds of silence/group work in this segment
4. ALL question-answer interactions in this segment
5. COMPLETE transcript of EVERYTHING said in this segment from beginning to end

Timestamps should be relative to this segment (starting from 00:00)."""

_SYNTHESIS_PROMPT_TEMPLATE = """\
Based on the following classroom analysis data, provide a brief summary paragraph \
(approximately 50 words) with qualitative feedback on the lesson flow, teaching \
effectiveness, and student engagement.

Key metrics from the full video analysis:
- Teacher talk time: {teacher_pct:.1f}%
- Student talk time: {student_pct:.1f}%
- Silence/group work: {silence_pct:.1f}%
- Average wait time: {average_wait:.1f} seconds
- Total Q&A interactions: {interaction_count}

Sample questions asked:
{samples}

Provide constructive, actionable feedback in a supportive tone."""

SYNTHESIS_SAMPLE_SIZE = 5


class UsageTracker:
    """Thread-safe accumulator for token usage across a run."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counts = {
            "analysis_prompt": 0,
            "analysis_completion": 0,
            "synthesis_prompt": 0,
            "synthesis_completion": 0,
        }

    def add_analysis(self, prompt: int, completion: int) -> None:
        with self._lock:
            self._counts["analysis_prompt"] += prompt
            self._counts["analysis_completion"] += completion

    def add_synthesis(self, prompt: int, completion: int) -> None:
        with self._lock:
            self._counts["synthesis_prompt"] += prompt
            self._counts["synthesis_completion"] += completion

    def totals(self) -> UsageTotals:
        with self._lock:
            return UsageTotals(**self._counts)


class GeminiAnalyzer:
    """Runs the per-chunk analysis and the final synthesis against Gemini.

    One instance serves one run: its :class:`UsageTracker` accumulates the
    token counts of every call made through it.
    """

    def __init__(
        self,
        api_key: str,
        *,
        model: str = DEFAULT_MODEL,
        max_attempts: int = 3,
        retry_base_delay_seconds: float = 2.0,
        analysis_max_output_tokens: int = 8192,
        synthesis_max_output_tokens: int = 200,
        usage: UsageTracker | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        genai.configure(api_key=api_key)  # type: ignore[attr-defined]
        self._analysis_model = genai.GenerativeModel(  # type: ignore[attr-defined]
            model, system_instruction=SYSTEM_INSTRUCTION
        )
        self._synthesis_model = genai.GenerativeModel(model)  # type: ignore[attr-defined]
        self._max_attempts = max_attempts
        self._retry_base_delay = retry_base_delay_seconds
        self._analysis_max_tokens = analysis_max_output_tokens
        self._synthesis_max_tokens = synthesis_max_output_tokens
        self.usage = usage or UsageTracker()
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Chunk analysis
    # ------------------------------------------------------------------
    def analyze(
        self,
        handle: RemoteHandle,
        chunk_index: int,
        total_chunks: int,
        duration_hint: str,
    ) -> ChunkResult:
        """Analyze one ready chunk and return its chunk-relative result.

        Raises:
            SchemaError: the response cannot be parsed into a ChunkResult.
            google.api_core.exceptions.GoogleAPIError: any service failure
                (503s only after the retry budget is spent).
        """
        prompt = _CHUNK_PROMPT_TEMPLATE.format(
            number=chunk_index + 1,
            total=total_chunks,
            duration_hint=duration_hint,
        )
        contents = [
            {"file_data": {"file_uri": handle.uri, "mime_type": handle.mime_type}},
            prompt,
        ]
        generation_config = {
            "response_mime_type": "application/json",
            "response_schema": CHUNK_RESULT_SCHEMA,
            "max_output_tokens": self._analysis_max_tokens,
        }

        response = self._generate_with_retry(
            contents, generation_config, label=f"segment {chunk_index + 1}"
        )

        prompt_tokens, completion_tokens = _usage_counts(response)
        self.usage.add_analysis(prompt_tokens, completion_tokens)

        text = _response_text(response)
        if not text:
            raise SchemaError(f"No data returned from Gemini for segment {chunk_index + 1}.")
        return parse_chunk_result(text)

    def _generate_with_retry(
        self,
        contents: list[Any],
        generation_config: dict[str, Any],
        *,
        label: str,
    ) -> Any:
        """Call generate_content, retrying only when the service is overloaded (503)."""
        attempt = 0
        while True:
            attempt += 1
            try:
                return self._analysis_model.generate_content(
                    contents, generation_config=generation_config
                )
            except google_exceptions.ServiceUnavailable:
                if attempt >= self._max_attempts:
                    logger.error("Gemini still overloaded on %s after %d attempts", label, attempt)
                    raise
                delay = self._retry_base_delay * 2 ** (attempt - 1)
                logger.warning(
                    "Gemini API 503 overloaded on %s. Retrying attempt %d/%d in %.1fs",
                    label,
                    attempt + 1,
                    self._max_attempts,
                    delay,
                )
                self._sleep(delay)

    # ------------------------------------------------------------------
    # Synthesis
    # ------------------------------------------------------------------
    def synthesize(self, draft: ReportDraft) -> str:
        """Summarize the aggregated metrics into a short feedback paragraph.

        Raises:
            SynthesisError: on any failure, including an empty response.
        """
        samples = "\n".join(
            f'- "{i.prompt}" ({i.category.value})'
            for i in draft.interactions[:SYNTHESIS_SAMPLE_SIZE]
        )
        prompt = _SYNTHESIS_PROMPT_TEMPLATE.format(
            teacher_pct=draft.teacher_pct,
            student_pct=draft.student_pct,
            silence_pct=draft.silence_pct,
            average_wait=draft.average_wait_seconds,
            interaction_count=len(draft.interactions),
            samples=samples or "- (none recorded)",
        )

        try:
            response = self._synthesis_model.generate_content(
                [prompt],
                generation_config={"max_output_tokens": self._synthesis_max_tokens},
            )
        except Exception as exc:
            raise SynthesisError(f"Narrative synthesis failed: {exc}") from exc

        prompt_tokens, completion_tokens = _usage_counts(response)
        self.usage.add_synthesis(prompt_tokens, completion_tokens)

        text = _response_text(response).strip()
        if not text:
            raise SynthesisError("Narrative synthesis returned no text")
        return text


# ----------------------------------------------------------------------
# Response parsing
# ----------------------------------------------------------------------


def _usage_counts(response: Any) -> tuple[int, int]:
    usage = getattr(response, "usage_metadata", None)
    if usage is None:
        return 0, 0
    return (
        int(getattr(usage, "prompt_token_count", 0) or 0),
        int(getattr(usage, "candidates_token_count", 0) or 0),
    )


def _response_text(response: Any) -> str:
    """Return response text; blocked or empty candidates yield ``""``."""
    try:
        return response.text or ""
    except ValueError:
        # The SDK raises ValueError when no candidate carries text.
        return ""


def parse_chunk_result(text: str) -> ChunkResult:
    """Parse a schema-constrained JSON payload into a :class:`ChunkResult`.

    Raises:
        SchemaError: invalid JSON, missing fields, or unknown enum values.
    """
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise SchemaError(f"Gemini returned invalid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise SchemaError("Gemini returned JSON that is not an object")

    try:
        interactions = tuple(
            Interaction(
                prompt=str(qa["question"]),
                response=str(qa.get("answer", "")),
                timestamp=str(qa["timestamp"]),
                wait_seconds=float(qa.get("waitTimeSeconds", 0) or 0),
                category=BloomLevel.parse(str(qa["bloomTaxonomyLevel"])),
            )
            for qa in data.get("qaPairs") or []
        )
        utterances = tuple(
            Utterance(
                speaker=SpeakerRole.parse(str(seg["speaker"])),
                text=str(seg["text"]),
                timestamp=str(seg["timestamp"]),
            )
            for seg in data.get("transcript") or []
        )
        return ChunkResult(
            teacher_seconds=max(0.0, float(data["teacherTalkSeconds"] or 0)),
            student_seconds=max(0.0, float(data["studentTalkSeconds"] or 0)),
            silence_seconds=max(0.0, float(data["silenceSeconds"] or 0)),
            interactions=interactions,
            utterances=utterances,
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise SchemaError(f"Gemini response does not match the chunk schema: {exc!r}") from exc
