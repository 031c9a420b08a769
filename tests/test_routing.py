from __future__ import annotations

import pytest

from fakes import make_candidate
from pantry_chef.models import ConversationState, Filters, Flags, Intent
from pantry_chef.routing import ROUTER_TARGETS, NodeName, route


def _state(intent: Intent = Intent.SEARCH, candidates: int = 0, **flags: bool) -> ConversationState:
    return ConversationState(
        filters=Filters(intent=intent),
        merged_candidates=[make_candidate(f"c{idx}") for idx in range(candidates)],
        flags=Flags(**flags),
        iterations=1,
    )


@pytest.mark.parametrize(
    ("state", "expected"),
    [
        (_state(Intent.SEARCH_SUBSTITUTES, 1), NodeName.SUBSTITUTE_SEARCH),
        (_state(Intent.SEARCH_SUBSTITUTES, 1, did_search_substitutes=True), NodeName.RESPOND),
        (_state(Intent.PICK, 3), NodeName.RESPOND),
        (_state(Intent.OTHER), NodeName.RESPOND),
        (_state(Intent.SEARCH, 2), NodeName.ASK_NARROW),
        (_state(Intent.SEARCH, 2, did_ask_for_more_context=True), NodeName.ASK_PICK),
        (_state(Intent.SEARCH, 0), NodeName.RETRIEVE),
        (_state(Intent.SEARCH, 0, did_retrieve=True), NodeName.REPORT_EMPTY),
        (_state(Intent.SEARCH, 1), NodeName.RESPOND),
    ],
)
def test_routing_table(state: ConversationState, expected: NodeName) -> None:
    assert route(state) == expected
    assert route(state) in ROUTER_TARGETS


def test_routing_is_deterministic() -> None:
    state = _state(Intent.SEARCH, 4, did_ask_for_more_context=True)
    assert {route(state) for _ in range(20)} == {NodeName.ASK_PICK}


@pytest.mark.parametrize(
    ("candidates", "expected"),
    [(0, NodeName.REPORT_EMPTY), (1, NodeName.RESPOND), (5, NodeName.ASK_PICK)],
)
def test_pass_cap_forces_a_terminal_node(candidates: int, expected: NodeName) -> None:
    state = _state(Intent.SEARCH_SUBSTITUTES, candidates).model_copy(update={"iterations": 7})
    assert route(state, max_route_passes=6) == expected


def test_pass_cap_is_inclusive() -> None:
    state = _state(Intent.SEARCH, 0).model_copy(update={"iterations": 6})
    assert route(state, max_route_passes=6) == NodeName.RETRIEVE
