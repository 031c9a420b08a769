from __future__ import annotations

from enum import Enum

from .models import ConversationState, Intent

DEFAULT_MAX_ROUTE_PASSES = 6


class NodeName(str, Enum):
    PARSE = "parse"
    ROUTE = "route"
    RETRIEVE = "retrieve"
    ATTRIBUTE_SEARCH = "attribute_search"
    SIMILARITY_SEARCH = "similarity_search"
    SUBSTITUTE_SEARCH = "substitute_search"
    ASK_NARROW = "ask_narrow"
    ASK_PICK = "ask_pick"
    REPORT_EMPTY = "report_empty"
    RESPOND = "respond"


TERMINAL_NODES: frozenset[NodeName] = frozenset(
    {NodeName.ASK_NARROW, NodeName.ASK_PICK, NodeName.REPORT_EMPTY, NodeName.RESPOND}
)

# Every node the conditional edge out of ROUTE is allowed to reach.
ROUTER_TARGETS: frozenset[NodeName] = TERMINAL_NODES | {NodeName.RETRIEVE, NodeName.SUBSTITUTE_SEARCH}


class RoutingError(RuntimeError):
    """Raised when the routing policy resolves to a node the graph does not declare."""


def _terminal_fallback(state: ConversationState) -> NodeName:
    count = len(state.merged_candidates)
    if count == 0:
        return NodeName.REPORT_EMPTY
    if count == 1:
        return NodeName.RESPOND
    return NodeName.ASK_PICK


def route(state: ConversationState, *, max_route_passes: int = DEFAULT_MAX_ROUTE_PASSES) -> NodeName:
    """Pick the node that runs after a Route pass. First matching rule wins.

    Pure and total: reads only the snapshot and never raises, so the same
    state always routes the same way. ``iterations`` bounds the number of
    Route passes per turn independently of the flags.
    """
    filters = state.filters
    flags = state.flags
    candidates = state.merged_candidates

    if state.iterations > max_route_passes:
        return _terminal_fallback(state)

    if filters.intent == Intent.SEARCH_SUBSTITUTES:
        if flags.did_search_substitutes:
            return NodeName.RESPOND
        return NodeName.SUBSTITUTE_SEARCH

    if filters.intent != Intent.SEARCH:
        return NodeName.RESPOND

    if len(candidates) > 1:
        if flags.did_ask_for_more_context:
            return NodeName.ASK_PICK
        return NodeName.ASK_NARROW

    if not candidates:
        if not flags.did_retrieve:
            return NodeName.RETRIEVE
        return NodeName.REPORT_EMPTY

    return NodeName.RESPOND
