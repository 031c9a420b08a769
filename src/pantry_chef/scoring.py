"""Candidate merge and scoring.

Merging is greedy and order-dependent: sources are folded in a fixed
precedence order and the first entry seen for an id wins outright. Scoring
starts from the source baseline and adds one signed adjustment per active
filter dimension, then only the top-scoring tier is kept.
"""
from __future__ import annotations

from typing import Iterable, Mapping, Sequence

from .models import Candidate, Filters

ATTRIBUTE_SOURCE = "attribute"
SIMILARITY_SOURCE = "similarity"

SOURCE_PRECEDENCE: tuple[str, ...] = (ATTRIBUTE_SOURCE, SIMILARITY_SOURCE)

SOURCE_BASELINES: dict[str, float] = {
    ATTRIBUTE_SOURCE: 0.0,
    SIMILARITY_SOURCE: 0.0,
}

CONSTRAINTS_SATISFIED = 1.0
CONSTRAINTS_VIOLATED = -10.0
CATEGORY_MATCH = 1.0
CATEGORY_MISMATCH = -1.0
TIME_WITHIN_BUDGET = 1.0
TIME_OVER_BUDGET = -1.0


def source_rank(source: str) -> tuple[int, str]:
    """Sort key placing known sources in precedence order, unknown ones after by name."""
    try:
        return (SOURCE_PRECEDENCE.index(source), "")
    except ValueError:
        return (len(SOURCE_PRECEDENCE), source)


def baseline_for(source: str) -> float:
    return SOURCE_BASELINES.get(source, 0.0)


def merge_candidates(
    existing: Sequence[Candidate],
    raw_by_source: Mapping[str, Sequence[Candidate]],
) -> list[Candidate]:
    """Fold staged per-source lists into one list keyed by id.

    When nothing is staged the existing merged list is returned unchanged, so
    a later routing pass keeps narrowing the same candidates. Otherwise the
    merge starts over from the staged lists.
    """
    if not any(raw_by_source.values()):
        return list(existing)

    merged: dict[str, Candidate] = {}
    for source in sorted(raw_by_source, key=source_rank):
        for candidate in raw_by_source[source]:
            if candidate.id in merged:
                continue
            merged[candidate.id] = candidate
    return list(merged.values())


def _constraints_met(candidate: Candidate, filters: Filters) -> bool:
    return filters.constraints <= candidate.tags


def _category_met(candidate: Candidate, filters: Filters) -> bool:
    return candidate.category.strip().lower() == filters.category.strip().lower()


def _time_met(candidate: Candidate, filters: Filters) -> bool:
    return candidate.duration <= filters.time_budget_minutes


def score_candidate(candidate: Candidate, filters: Filters) -> float:
    score = candidate.source_score

    if filters.constraints:
        score += CONSTRAINTS_SATISFIED if _constraints_met(candidate, filters) else CONSTRAINTS_VIOLATED

    if filters.category:
        score += CATEGORY_MATCH if _category_met(candidate, filters) else CATEGORY_MISMATCH

    if filters.time_budget_minutes > 0:
        score += TIME_WITHIN_BUDGET if _time_met(candidate, filters) else TIME_OVER_BUDGET

    return score


def satisfies_filters(candidate: Candidate, filters: Filters) -> bool:
    """True when the candidate meets every filter dimension that is set."""
    if filters.constraints and not _constraints_met(candidate, filters):
        return False
    if filters.category and not _category_met(candidate, filters):
        return False
    if filters.time_budget_minutes > 0 and not _time_met(candidate, filters):
        return False
    return True


def _ordering_key(candidate: Candidate) -> tuple[float, tuple[int, str], float, str]:
    return (-candidate.overall_score, source_rank(candidate.source), -candidate.relevance, candidate.id)


def top_tier(candidates: Iterable[Candidate]) -> list[Candidate]:
    ranked = list(candidates)
    if not ranked:
        return []
    best = max(candidate.overall_score for candidate in ranked)
    return [candidate for candidate in ranked if candidate.overall_score == best]


def rank_candidates(candidates: Iterable[Candidate], filters: Filters) -> list[Candidate]:
    """Score every candidate, sort best first and keep only the top-scoring tier."""
    scored = [
        candidate.model_copy(update={"overall_score": score_candidate(candidate, filters)})
        for candidate in candidates
    ]
    scored.sort(key=_ordering_key)
    return top_tier(scored)


def merge_and_rank(
    existing: Sequence[Candidate],
    raw_by_source: Mapping[str, Sequence[Candidate]],
    filters: Filters,
) -> list[Candidate]:
    return rank_candidates(merge_candidates(existing, raw_by_source), filters)
