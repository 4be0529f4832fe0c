"""Pydantic response schemas for the Lesson Analysis API."""

from __future__ import annotations

from pydantic import BaseModel

from src.analysis.models import Report


class InteractionResponse(BaseModel):
    """A teacher question and the response it drew."""

    question: str
    answer: str
    timestamp: str
    wait_time_seconds: float
    bloom_taxonomy_level: str


class TranscriptSegmentResponse(BaseModel):
    """A single timestamped transcript line."""

    speaker: str
    text: str
    timestamp: str


class TokenUsageResponse(BaseModel):
    """Token usage for the run, with the per-call-type breakdown."""

    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    analysis_prompt_tokens: int
    analysis_completion_tokens: int
    synthesis_prompt_tokens: int
    synthesis_completion_tokens: int


class AnalysisResponse(BaseModel):
    """Response body for the /api/analyze endpoint."""

    teacher_talk_time_percentage: float
    student_talk_time_percentage: float
    silence_or_group_work_percentage: float
    average_wait_time_seconds: float
    qa_pairs: list[InteractionResponse] = []
    transcript: list[TranscriptSegmentResponse] = []
    overall_feedback: str
    token_usage: TokenUsageResponse

    @classmethod
    def from_report(cls, report: Report) -> AnalysisResponse:
        usage = report.usage
        return cls(
            teacher_talk_time_percentage=report.teacher_pct,
            student_talk_time_percentage=report.student_pct,
            silence_or_group_work_percentage=report.silence_pct,
            average_wait_time_seconds=report.average_wait_seconds,
            qa_pairs=[
                InteractionResponse(
                    question=i.prompt,
                    answer=i.response,
                    timestamp=i.timestamp,
                    wait_time_seconds=i.wait_seconds,
                    bloom_taxonomy_level=i.category.value,
                )
                for i in report.interactions
            ],
            transcript=[
                TranscriptSegmentResponse(
                    speaker=u.speaker.value,
                    text=u.text,
                    timestamp=u.timestamp,
                )
                for u in report.utterances
            ],
            overall_feedback=report.narrative,
            token_usage=TokenUsageResponse(
                prompt_tokens=usage.prompt_tokens,
                completion_tokens=usage.completion_tokens,
                total_tokens=usage.total_tokens,
                analysis_prompt_tokens=usage.analysis_prompt,
                analysis_completion_tokens=usage.analysis_completion,
                synthesis_prompt_tokens=usage.synthesis_prompt,
                synthesis_completion_tokens=usage.synthesis_completion,
            ),
        )
