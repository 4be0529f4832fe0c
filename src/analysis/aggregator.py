"""Fold per-chunk tallies and the reconciled timeline into the final report."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence

from src.analysis.errors import SynthesisError
from src.analysis.inference import UsageTracker
from src.analysis.models import ChunkResult, Interaction, Report, ReportDraft
from src.analysis.reconciler import Timeline

logger = logging.getLogger(__name__)

DEFAULT_NARRATIVE = (
    "The lesson demonstrated a structured approach to content delivery with "
    "opportunities for increased student participation."
)


def talk_time_percentages(results: Sequence[ChunkResult]) -> tuple[float, float, float]:
    """Return (teacher, student, silence) shares of observed time, in percent.

    Uses the raw per-chunk tallies; these are not deduplicated. All zero
    when nothing was observed.
    """
    teacher = sum(r.teacher_seconds for r in results)
    student = sum(r.student_seconds for r in results)
    silence = sum(r.silence_seconds for r in results)
    total = teacher + student + silence
    if total <= 0:
        return 0.0, 0.0, 0.0
    return (
        round(100 * teacher / total, 1),
        round(100 * student / total, 1),
        round(100 * silence / total, 1),
    )


def average_wait_seconds(interactions: Sequence[Interaction]) -> float:
    """Mean wait time over interactions with a measurable (positive) wait."""
    waits = [i.wait_seconds for i in interactions if i.wait_seconds > 0]
    if not waits:
        return 0.0
    return round(sum(waits) / len(waits), 1)


def build_draft(results: Sequence[ChunkResult], timeline: Timeline) -> ReportDraft:
    """Compute every quantitative field of the report."""
    teacher_pct, student_pct, silence_pct = talk_time_percentages(results)
    return ReportDraft(
        teacher_pct=teacher_pct,
        student_pct=student_pct,
        silence_pct=silence_pct,
        average_wait_seconds=average_wait_seconds(timeline.interactions),
        interactions=timeline.interactions,
        utterances=timeline.utterances,
    )


def build_report(
    results: Sequence[ChunkResult],
    timeline: Timeline,
    synthesize: Callable[[ReportDraft], str],
    usage: UsageTracker,
) -> Report:
    """Build the final report, degrading to a stock narrative if synthesis fails.

    Args:
        results: Raw per-chunk results (for talk-time tallies).
        timeline: Reconciled, deduplicated timeline.
        synthesize: Narrative generator, called exactly once.
        usage: Run usage tracker; read after synthesis so its tokens count.

    Returns:
        The immutable :class:`Report`.
    """
    draft = build_draft(results, timeline)

    try:
        narrative = synthesize(draft)
    except SynthesisError as exc:
        logger.warning("Using default narrative: %s", exc)
        narrative = DEFAULT_NARRATIVE

    return Report(
        teacher_pct=draft.teacher_pct,
        student_pct=draft.student_pct,
        silence_pct=draft.silence_pct,
        average_wait_seconds=draft.average_wait_seconds,
        interactions=draft.interactions,
        utterances=draft.utterances,
        narrative=narrative,
        usage=usage.totals(),
    )
