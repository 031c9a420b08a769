from __future__ import annotations

import pytest

from fakes import make_candidate
from pantry_chef import to_canonical_json
from pantry_chef.models import (
    ConversationState,
    DietTag,
    ExtractedFilters,
    Filters,
    Flags,
    Intent,
    Role,
    Turn,
    apply_update,
    normalize_intent,
)


def test_canonical_json_is_key_order_independent() -> None:
    left = {"b": 2, "a": 1, "nested": {"z": 9, "y": [3, 2, 1]}}
    right = {"nested": {"y": [3, 2, 1], "z": 9}, "a": 1, "b": 2}
    assert to_canonical_json(left) == to_canonical_json(right)


def test_canonical_json_sorts_sets() -> None:
    one = Filters(ingredients=["tofu", "rice"], constraints=["vegan", "gluten_free"])
    two = Filters(ingredients=["rice", "tofu"], constraints=["gluten_free", "vegan"])
    assert to_canonical_json(one) == to_canonical_json(two)
    assert '"ingredients":["rice","tofu"]' in to_canonical_json(one)


def test_checkpoint_json_reloads_to_equal_state() -> None:
    state = ConversationState(
        turns=[Turn.user("eggs"), Turn.assistant("How about shakshuka?")],
        filters=Filters(ingredients=["eggs"], constraints=["vegetarian"], time_budget_minutes=30),
        merged_candidates=[make_candidate("shakshuka", tags=["vegetarian"], missing_attributes=["feta"])],
        flags=Flags(did_retrieve=True),
        iterations=2,
    )
    assert ConversationState.model_validate_json(to_canonical_json(state)) == state


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("", Intent.SEARCH),
        (None, Intent.SEARCH),
        ("pick", Intent.PICK),
        ("Search-Substitutes", Intent.SEARCH_SUBSTITUTES),
        ("search_recipes", Intent.SEARCH),
        ("pick_candidate", Intent.PICK),
        ("tell me a joke", Intent.OTHER),
    ],
)
def test_normalize_intent(raw: object, expected: Intent) -> None:
    assert normalize_intent(raw) == expected


def test_filters_normalize_extracted_values() -> None:
    filters = ExtractedFilters(
        ingredients=[" Eggs ", "", "TOMATOES"],
        constraints=["Vegetarian", "keto", "gluten-free"],
        category="  Middle Eastern ",
        time_budget_minutes=-5,
        intent="search_recipes",
    ).to_filters()

    assert filters.ingredients == frozenset({"eggs", "tomatoes"})
    assert filters.constraints == frozenset({DietTag.VEGETARIAN, DietTag.GLUTEN_FREE})
    assert filters.category == "Middle Eastern"
    assert filters.time_budget_minutes == 0
    assert filters.intent == Intent.SEARCH


def test_fallback_filters_are_intent_other() -> None:
    fallback = Filters.fallback()
    assert fallback.intent == Intent.OTHER
    assert not fallback.ingredients


def test_apply_update_appends_turns_and_replaces_other_fields() -> None:
    state = ConversationState(turns=[Turn.user("hi")], iterations=1)
    updated = apply_update(state, {"turns": [Turn.assistant("hello")], "iterations": 2})

    assert [turn.role for turn in updated.turns] == [Role.USER, Role.ASSISTANT]
    assert updated.iterations == 2
    assert updated.filters == state.filters
    assert state.iterations == 1


def test_apply_update_with_empty_update_is_identity() -> None:
    state = ConversationState(iterations=3)
    assert apply_update(state, {}) is state
    assert apply_update(state, None) is state


def test_apply_update_rejects_unknown_fields() -> None:
    with pytest.raises(ValueError, match="unknown fields"):
        apply_update(ConversationState(), {"mood": "hungry"})


def test_state_helpers_read_recent_history() -> None:
    state = ConversationState(
        turns=[Turn.user("one"), Turn.assistant("two"), Turn.user("three")],
    )
    assert [turn.content for turn in state.recent_turns(2)] == ["two", "three"]
    assert state.recent_turns(0) == []
    assert state.last_user_text() == "three"
    assert state.last_assistant_turn() == Turn.assistant("two")
    assert ConversationState().last_user_text() == ""
