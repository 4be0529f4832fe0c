"""Merge per-chunk results into one absolute, deduplicated timeline.

Chunks are cut and analyzed independently, so the model may describe the
same moment twice from either side of a cut. Entries are remapped to
absolute time, stably sorted, then scanned left to right: a candidate is
dropped when an already-accepted entry has the same speaker, lies within a
short time window, and says (nearly) the same thing.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass, replace
from typing import TypeVar

from src.analysis.models import ChunkAnalysis, Interaction, Utterance
from src.analysis.timestamps import remap_timestamp

logger = logging.getLogger(__name__)

UTTERANCE_WINDOW_SECONDS = 10
INTERACTION_WINDOW_SECONDS = 15
SIMILARITY_THRESHOLD = 0.8

_WHITESPACE = re.compile(r"\s+")

EntryT = TypeVar("EntryT", Interaction, Utterance)


@dataclass(frozen=True)
class Timeline:
    """Globally ordered, deduplicated interactions and utterances."""

    interactions: tuple[Interaction, ...] = ()
    utterances: tuple[Utterance, ...] = ()


def normalize_text(text: str) -> str:
    """Lowercase, trim and collapse internal whitespace."""
    return _WHITESPACE.sub(" ", text.strip().lower())


def texts_similar(first: str, second: str, threshold: float = SIMILARITY_THRESHOLD) -> bool:
    """Return True when two texts are near-identical restatements.

    Matches on normalized equality, containment in either direction, or
    token overlap ``|A ∩ B| / max(|A|, |B|) >= threshold``.
    """
    a = normalize_text(first)
    b = normalize_text(second)

    if a == b:
        return True
    if a in b or b in a:
        return True

    words_a = set(a.split(" "))
    words_b = set(b.split(" "))
    overlap = len(words_a & words_b) / max(len(words_a), len(words_b))
    return overlap >= threshold


def _deduplicate(
    entries: Sequence[EntryT],
    window_seconds: int,
    role_of: Callable[[EntryT], object],
    text_of: Callable[[EntryT], str],
) -> list[EntryT]:
    accepted: list[EntryT] = []
    for candidate in entries:
        duplicate = any(
            role_of(kept) == role_of(candidate)
            and abs(kept.seconds - candidate.seconds) <= window_seconds
            and texts_similar(text_of(kept), text_of(candidate))
            for kept in accepted
        )
        if not duplicate:
            accepted.append(candidate)
    return accepted


def deduplicate_utterances(utterances: Sequence[Utterance]) -> list[Utterance]:
    """Drop utterances repeating an accepted one by the same speaker within 10s."""
    return _deduplicate(
        utterances,
        UTTERANCE_WINDOW_SECONDS,
        role_of=lambda u: u.speaker,
        text_of=lambda u: u.text,
    )


def deduplicate_interactions(interactions: Sequence[Interaction]) -> list[Interaction]:
    """Drop interactions whose question repeats an accepted one within 15s.

    Every interaction is a teacher question, so the speaker test always holds.
    """
    return _deduplicate(
        interactions,
        INTERACTION_WINDOW_SECONDS,
        role_of=lambda _: None,
        text_of=lambda i: i.prompt,
    )


def remap_analysis(analysis: ChunkAnalysis) -> tuple[list[Interaction], list[Utterance]]:
    """Shift a chunk's timestamps to absolute time, clamped to the chunk span."""
    offset = analysis.chunk.start_offset_seconds
    ceiling = analysis.chunk.duration_seconds
    interactions = [
        replace(i, timestamp=remap_timestamp(i.timestamp, offset, ceiling))
        for i in analysis.result.interactions
    ]
    utterances = [
        replace(u, timestamp=remap_timestamp(u.timestamp, offset, ceiling))
        for u in analysis.result.utterances
    ]
    return interactions, utterances


def reconcile(analyses: Sequence[ChunkAnalysis]) -> Timeline:
    """Remap, merge, sort and deduplicate every chunk's entries.

    Args:
        analyses: Per-chunk results in any order.

    Returns:
        A :class:`Timeline` ordered by absolute timestamp.
    """
    all_interactions: list[Interaction] = []
    all_utterances: list[Utterance] = []
    for analysis in sorted(analyses, key=lambda a: a.chunk.index):
        interactions, utterances = remap_analysis(analysis)
        all_interactions.extend(interactions)
        all_utterances.extend(utterances)

    # list.sort is stable, so ties keep chunk order.
    all_interactions.sort(key=lambda i: i.seconds)
    all_utterances.sort(key=lambda u: u.seconds)

    interactions = deduplicate_interactions(all_interactions)
    utterances = deduplicate_utterances(all_utterances)
    logger.info(
        "Reconciled %d/%d interactions and %d/%d utterances after deduplication",
        len(interactions),
        len(all_interactions),
        len(utterances),
        len(all_utterances),
    )
    return Timeline(interactions=tuple(interactions), utterances=tuple(utterances))
