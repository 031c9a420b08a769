from __future__ import annotations

from fakes import make_candidate
from pantry_chef.models import DietTag, Filters
from pantry_chef.scoring import (
    ATTRIBUTE_SOURCE,
    CONSTRAINTS_VIOLATED,
    SIMILARITY_SOURCE,
    merge_and_rank,
    merge_candidates,
    rank_candidates,
    satisfies_filters,
    score_candidate,
    top_tier,
)


def _attribute_results() -> list:
    return [
        make_candidate("r1", source=ATTRIBUTE_SOURCE, category="italian", duration=15, match={"relevance": 0.9}),
        make_candidate("r2", source=ATTRIBUTE_SOURCE, category="italian", duration=45, match={"relevance": 0.8}),
        make_candidate("r3", source=ATTRIBUTE_SOURCE, category="thai", duration=15, match={"relevance": 0.7}),
        make_candidate("r4", source=ATTRIBUTE_SOURCE, category="thai", duration=45, match={"relevance": 0.6}),
        make_candidate("r5", source=ATTRIBUTE_SOURCE, category="mexican", duration=90, match={"relevance": 0.5}),
    ]


def test_overlapping_sources_keep_attribute_version() -> None:
    similarity = [
        make_candidate("r2", source=SIMILARITY_SOURCE, category="italian", duration=45, match={"relevance": 0.99}),
        make_candidate("r4", source=SIMILARITY_SOURCE, category="thai", duration=45, match={"relevance": 0.98}),
    ]
    merged = merge_candidates([], {SIMILARITY_SOURCE: similarity, ATTRIBUTE_SOURCE: _attribute_results()})

    assert len(merged) == 5
    assert len({candidate.id for candidate in merged}) == 5
    by_id = {candidate.id: candidate for candidate in merged}
    assert by_id["r2"].source == ATTRIBUTE_SOURCE
    assert by_id["r4"].source == ATTRIBUTE_SOURCE


def test_distinct_scores_keep_only_the_best() -> None:
    filters = Filters(category="italian", time_budget_minutes=30)
    ranked = merge_and_rank([], {ATTRIBUTE_SOURCE: _attribute_results()}, filters)

    assert [candidate.id for candidate in ranked] == ["r1"]
    assert ranked[0].overall_score == 2.0


def test_merge_without_staged_results_keeps_existing() -> None:
    existing = [make_candidate("kept")]
    assert merge_candidates(existing, {}) == existing
    assert merge_candidates(existing, {ATTRIBUTE_SOURCE: []}) == existing


def test_merge_is_idempotent() -> None:
    staged = {ATTRIBUTE_SOURCE: _attribute_results()}
    once = merge_candidates([], staged)
    twice = merge_candidates([], {ATTRIBUTE_SOURCE: once})
    assert once == twice


def test_score_adjustments_per_filter_dimension() -> None:
    candidate = make_candidate("c", category="Thai", duration=20, tags=["vegan", "gluten_free"])

    assert score_candidate(candidate, Filters()) == 0.0
    assert score_candidate(candidate, Filters(constraints=["vegan"])) == 1.0
    assert score_candidate(candidate, Filters(constraints=["vegan", "nut_free"])) == CONSTRAINTS_VIOLATED
    assert score_candidate(candidate, Filters(category="thai")) == 1.0
    assert score_candidate(candidate, Filters(category="italian")) == -1.0
    assert score_candidate(candidate, Filters(time_budget_minutes=20)) == 1.0
    assert score_candidate(candidate, Filters(time_budget_minutes=19)) == -1.0


def test_satisfying_one_more_filter_never_lowers_the_score() -> None:
    base = make_candidate("c", category="thai", duration=60, tags=[DietTag.VEGAN])
    filters = Filters(constraints=["vegan"], category="thai", time_budget_minutes=30)
    better = base.model_copy(update={"duration": 25})
    assert score_candidate(better, filters) > score_candidate(base, filters)


def test_ties_keep_every_top_candidate_in_stable_order() -> None:
    candidates = [
        make_candidate("b", source=SIMILARITY_SOURCE, match={"relevance": 0.9}),
        make_candidate("a", source=ATTRIBUTE_SOURCE, match={"relevance": 0.1}),
        make_candidate("c", source=ATTRIBUTE_SOURCE, match={"relevance": 0.5}),
    ]
    ranked = rank_candidates(candidates, Filters())

    assert [candidate.id for candidate in ranked] == ["c", "a", "b"]


def test_top_tier_of_nothing_is_empty() -> None:
    assert top_tier([]) == []
    assert rank_candidates([], Filters(category="thai")) == []


def test_satisfies_filters_checks_only_the_dimensions_that_are_set() -> None:
    candidate = make_candidate("c", category="Thai", duration=20, tags=[DietTag.VEGAN])

    assert satisfies_filters(candidate, Filters())
    assert satisfies_filters(candidate, Filters(ingredients=["tofu"]))
    assert satisfies_filters(candidate, Filters(constraints=["vegan"], category="thai", time_budget_minutes=20))
    assert not satisfies_filters(candidate, Filters(category="french"))
    assert not satisfies_filters(candidate, Filters(time_budget_minutes=15))
    assert not satisfies_filters(candidate, Filters(constraints=["vegan", "nut_free"]))
