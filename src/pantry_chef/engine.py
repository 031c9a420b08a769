"""Orchestration engine for one conversational turn.

Graph:
    parse → route → [conditional]
        retrieve → attribute_search → similarity_search → route
        substitute_search → route
        ask_narrow | ask_pick | report_empty | respond → END

Nodes receive a state snapshot and return a partial update. The engine owns
merging: every ``updates`` event from the graph is folded into the engine's
own ConversationState with ``apply_update`` and checkpointed before the next
node runs. Only the four terminal nodes write to the token stream.
"""
from __future__ import annotations

import asyncio
import logging
import operator
import re
import weakref
from contextlib import aclosing
from functools import partial
from pathlib import Path
from typing import Annotated, Any, AsyncIterator, Callable, Sequence, TypedDict

from langchain_core.runnables import RunnableConfig
from langgraph.config import get_stream_writer
from langgraph.graph import END, START, StateGraph

from . import prompts
from .llm import LLMIntentExtractor, LLMResponseGenerator
from .models import (
    Candidate,
    ConversationState,
    Filters,
    Flags,
    Intent,
    StateUpdate,
    Substitute,
    Turn,
    apply_update,
)
from .ports import IntentExtractor, ResponseGenerator, RetrievalPort
from .retrieval import RecipeRetriever
from .routing import ROUTER_TARGETS, TERMINAL_NODES, NodeName, RoutingError, route
from .scoring import ATTRIBUTE_SOURCE, SIMILARITY_SOURCE, baseline_for, merge_and_rank, satisfies_filters
from .settings import RuntimeSettings
from .state_store import FileStateStore, StateStore, StateStoreError

logger = logging.getLogger(__name__)

RoutingPolicy = Callable[[ConversationState], NodeName]

_ORDINALS: dict[str, int] = {
    "first": 1,
    "second": 2,
    "third": 3,
    "fourth": 4,
    "fifth": 5,
    "last": -1,
}
_NUMBER_RE = re.compile(r"\b(\d{1,2})\b")
_NODE_NAMES = frozenset(node.value for node in NodeName)


class TurnInProgressError(RuntimeError):
    """Raised under the ``reject`` policy when a thread already has a turn running."""


class GraphState(TypedDict, total=False):
    turns: Annotated[list[Turn], operator.add]
    filters: Filters
    raw_candidates_by_source: dict[str, tuple[Candidate, ...]]
    merged_candidates: tuple[Candidate, ...]
    substitutes: tuple[Substitute, ...]
    flags: Flags
    iterations: int


def _snapshot(state: GraphState) -> ConversationState:
    return ConversationState.model_validate(dict(state))


def _graph_input(state: ConversationState) -> GraphState:
    return {
        "turns": list(state.turns),
        "filters": state.filters,
        "raw_candidates_by_source": dict(state.raw_candidates_by_source),
        "merged_candidates": state.merged_candidates,
        "substitutes": state.substitutes,
        "flags": state.flags,
        "iterations": state.iterations,
    }


def resolve_pick(text: str, candidates: Sequence[Candidate]) -> Candidate | None:
    """Find the candidate a user picked, by title mention or by position in the offered list."""
    if not candidates:
        return None
    lowered = text.lower()
    by_title = [candidate for candidate in candidates if candidate.title.lower() in lowered]
    if by_title:
        return max(by_title, key=lambda candidate: len(candidate.title))

    positions: list[int] = [_ORDINALS[word] for word in re.findall(r"[a-z]+", lowered) if word in _ORDINALS]
    positions.extend(int(match) for match in _NUMBER_RE.findall(lowered))
    for position in positions:
        if position == -1:
            return candidates[-1]
        if 1 <= position <= len(candidates):
            return candidates[position - 1]
    return None


def _describe_recipe(recipe_json: str | None, candidate: Candidate) -> str:
    if recipe_json is not None:
        return recipe_json
    return f"{candidate.title} ({candidate.category}, {candidate.duration} minutes)"


def _format_substitutes(substitutes: Sequence[Substitute]) -> str:
    lines = []
    for sub in substitutes:
        line = f"- {sub.original} -> {sub.replacement}"
        if sub.ratio:
            line += f" ({sub.ratio})"
        if sub.notes:
            line += f": {sub.notes}"
        lines.append(line)
    return "\n".join(lines)


class ConversationEngine:
    """Runs one user turn through the recipe graph and checkpoints after every node."""

    def __init__(
        self,
        *,
        retriever: RetrievalPort,
        extractor: IntentExtractor,
        generator: ResponseGenerator,
        store: StateStore,
        settings: RuntimeSettings | None = None,
        routing_policy: RoutingPolicy | None = None,
    ) -> None:
        self.retriever = retriever
        self.extractor = extractor
        self.generator = generator
        self.store = store
        self.settings = settings or RuntimeSettings()
        self.routing_policy = routing_policy or partial(route, max_route_passes=self.settings.max_route_passes)
        # Entries vanish once no turn holds or awaits the lock.
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()
        self.graph = self._build_graph().compile()

    @classmethod
    def from_settings(
        cls,
        settings: RuntimeSettings,
        repo_root: Path,
        *,
        reindex: bool = False,
    ) -> "ConversationEngine":
        return cls(
            retriever=RecipeRetriever.from_settings(settings, repo_root, reindex=reindex),
            extractor=LLMIntentExtractor.from_model(settings.parser_model, repo_root=repo_root),
            generator=LLMResponseGenerator.from_model(
                settings.chat_model, temperature=settings.temperature, repo_root=repo_root
            ),
            store=FileStateStore(settings.state_store_path(repo_root)),
            settings=settings,
        )

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(GraphState)
        graph.add_node(NodeName.PARSE.value, self._parse)
        graph.add_node(NodeName.ROUTE.value, self._route)
        graph.add_node(NodeName.RETRIEVE.value, self._retrieve)
        graph.add_node(NodeName.ATTRIBUTE_SEARCH.value, self._attribute_search)
        graph.add_node(NodeName.SIMILARITY_SEARCH.value, self._similarity_search)
        graph.add_node(NodeName.SUBSTITUTE_SEARCH.value, self._substitute_search)
        graph.add_node(NodeName.ASK_NARROW.value, self._ask_narrow)
        graph.add_node(NodeName.ASK_PICK.value, self._ask_pick)
        graph.add_node(NodeName.REPORT_EMPTY.value, self._report_empty)
        graph.add_node(NodeName.RESPOND.value, self._respond)

        graph.add_edge(START, NodeName.PARSE.value)
        graph.add_edge(NodeName.PARSE.value, NodeName.ROUTE.value)
        graph.add_conditional_edges(
            NodeName.ROUTE.value,
            self._select_next,
            {node.value: node.value for node in sorted(ROUTER_TARGETS, key=lambda n: n.value)},
        )
        graph.add_edge(NodeName.RETRIEVE.value, NodeName.ATTRIBUTE_SEARCH.value)
        graph.add_edge(NodeName.ATTRIBUTE_SEARCH.value, NodeName.SIMILARITY_SEARCH.value)
        graph.add_edge(NodeName.SIMILARITY_SEARCH.value, NodeName.ROUTE.value)
        graph.add_edge(NodeName.SUBSTITUTE_SEARCH.value, NodeName.ROUTE.value)
        for terminal in sorted(TERMINAL_NODES, key=lambda n: n.value):
            graph.add_edge(terminal.value, END)
        return graph

    # ------------------------------------------------------------------
    # Edge selection
    # ------------------------------------------------------------------

    def _select_next(self, state: GraphState) -> str:
        snapshot = _snapshot(state)
        decision = self.routing_policy(snapshot)
        try:
            node = NodeName(decision)
        except ValueError as exc:
            raise RoutingError(f"Routing policy returned unknown node {decision!r}") from exc
        if node not in ROUTER_TARGETS:
            raise RoutingError(f"Routing policy returned {node.value!r}, which is not a declared target of route")
        logger.info(
            "route pass %d: intent=%s candidates=%d -> %s",
            snapshot.iterations,
            snapshot.filters.intent.value,
            len(snapshot.merged_candidates),
            node.value,
        )
        return node.value

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    async def _parse(self, state: GraphState) -> StateUpdate:
        snapshot = _snapshot(state)
        try:
            filters = await self.extractor.extract(snapshot.recent_turns(self.settings.parse_window))
        except Exception as exc:  # noqa: BLE001
            logger.warning("Intent extractor raised, using fallback filters: %s", exc)
            filters = Filters.fallback()

        flags = snapshot.flags.model_copy(update={"did_retrieve": False, "did_search_substitutes": False})
        update: StateUpdate = {"filters": filters, "iterations": 0, "substitutes": ()}

        new_request = (
            filters.intent == Intent.SEARCH
            and bool(filters.ingredients)
            and filters.ingredients != snapshot.filters.ingredients
        )
        if new_request and snapshot.merged_candidates:
            logger.info("Ingredients changed, discarding %d previous candidates", len(snapshot.merged_candidates))
            update["merged_candidates"] = ()
            update["raw_candidates_by_source"] = {}
            flags = flags.model_copy(update={"did_ask_for_more_context": False})
        update["flags"] = flags
        return update

    async def _route(self, state: GraphState) -> StateUpdate:
        snapshot = _snapshot(state)
        filters = snapshot.filters
        ranked = merge_and_rank(
            snapshot.merged_candidates,
            snapshot.raw_candidates_by_source,
            filters,
        )
        update: StateUpdate = {
            "raw_candidates_by_source": {},
            "iterations": snapshot.iterations + 1,
        }
        stale = (
            filters.intent == Intent.SEARCH
            and not snapshot.flags.did_retrieve
            and bool(ranked)
            and not any(satisfies_filters(candidate, filters) for candidate in ranked)
        )
        if stale:
            # Carried-over candidates no longer fit the request; retrieve afresh.
            logger.info("None of %d previous candidates fit the new filters, discarding them", len(ranked))
            ranked = []
            update["flags"] = snapshot.flags.model_copy(update={"did_ask_for_more_context": False})
        update["merged_candidates"] = tuple(ranked)
        return update

    async def _retrieve(self, state: GraphState) -> StateUpdate:
        snapshot = _snapshot(state)
        return {
            "flags": snapshot.flags.model_copy(update={"did_retrieve": True}),
            "raw_candidates_by_source": {},
        }

    def _stage(self, snapshot: ConversationState, source: str, results: Sequence[Candidate]) -> StateUpdate:
        baseline = baseline_for(source)
        staged = tuple(
            candidate.model_copy(update={"source": source, "source_score": baseline}) for candidate in results
        )
        logger.debug("%s search staged %d candidates", source, len(staged))
        return {"raw_candidates_by_source": {**snapshot.raw_candidates_by_source, source: staged}}

    async def _attribute_search(self, state: GraphState) -> StateUpdate:
        snapshot = _snapshot(state)
        filters = snapshot.filters
        results: list[Candidate] = []
        if filters.ingredients:
            try:
                results = await self.retriever.search_by_attributes(
                    sorted(filters.ingredients),
                    sorted(filters.constraints, key=lambda tag: tag.value),
                    self.settings.graph_max_hops,
                )
            except Exception as exc:  # noqa: BLE001
                logger.warning("Attribute search failed, treating as empty: %s", exc)
                results = []
        return self._stage(snapshot, ATTRIBUTE_SOURCE, results)

    async def _similarity_search(self, state: GraphState) -> StateUpdate:
        snapshot = _snapshot(state)
        filters = snapshot.filters
        query_text = snapshot.last_user_text().strip()
        results: list[Candidate] = []
        if query_text:
            try:
                results = await self.retriever.search_by_similarity(
                    query_text,
                    sorted(filters.constraints, key=lambda tag: tag.value),
                    filters.time_budget_minutes,
                )
            except Exception as exc:  # noqa: BLE001
                logger.warning("Similarity search failed, treating as empty: %s", exc)
                results = []
        return self._stage(snapshot, SIMILARITY_SOURCE, results)

    async def _substitute_search(self, state: GraphState) -> StateUpdate:
        snapshot = _snapshot(state)
        substitutes: list[Substitute] = []
        if snapshot.merged_candidates:
            missing = list(snapshot.merged_candidates[0].missing_attributes)
            if missing:
                try:
                    substitutes = await self.retriever.search_substitutes(
                        missing,
                        sorted(snapshot.filters.constraints, key=lambda tag: tag.value),
                    )
                except Exception as exc:  # noqa: BLE001
                    logger.warning("Substitute search failed, treating as empty: %s", exc)
                    substitutes = []
        return {
            "substitutes": tuple(substitutes),
            "flags": snapshot.flags.model_copy(update={"did_search_substitutes": True}),
        }

    async def _ask_narrow(self, state: GraphState, config: RunnableConfig) -> StateUpdate:
        snapshot = _snapshot(state)
        candidates = snapshot.merged_candidates
        constraints = sorted({tag.value for candidate in candidates for tag in candidate.tags})
        categories = sorted({candidate.category for candidate in candidates if candidate.category})
        instructions = prompts.ASK_NARROW.format(
            constraints=", ".join(constraints) or "none",
            categories=", ".join(categories) or "none",
        )
        reply = await self._reply(instructions, snapshot.recent_turns(self.settings.history_window), config)
        return {
            "turns": [reply],
            "flags": snapshot.flags.model_copy(update={"did_ask_for_more_context": True}),
        }

    async def _ask_pick(self, state: GraphState, config: RunnableConfig) -> StateUpdate:
        snapshot = _snapshot(state)
        shortlist = snapshot.merged_candidates[: self.settings.pick_list_size]
        instructions = prompts.ASK_PICK.format(titles=", ".join(candidate.title for candidate in shortlist))
        reply = await self._reply(instructions, snapshot.recent_turns(self.settings.history_window), config)
        return {"turns": [reply], "merged_candidates": shortlist}

    async def _report_empty(self, state: GraphState, config: RunnableConfig) -> StateUpdate:
        reply = await self._reply(prompts.REPORT_EMPTY, [], config)
        return {"turns": [reply]}

    async def _respond(self, state: GraphState, config: RunnableConfig) -> StateUpdate:
        snapshot = _snapshot(state)
        history = snapshot.recent_turns(self.settings.history_window)
        intent = snapshot.filters.intent
        candidates = snapshot.merged_candidates

        if intent == Intent.OTHER:
            reply = await self._reply(prompts.RESPOND_OTHER, history, config)
            return {"turns": [reply]}

        if not candidates:
            reply = await self._reply(prompts.RESPOND_NOTHING_SELECTED, history, config)
            return {"turns": [reply]}

        chosen = candidates[0]
        if intent == Intent.PICK and len(candidates) > 1:
            picked = resolve_pick(snapshot.last_user_text(), candidates)
            if picked is None:
                logger.info("Could not resolve the user's pick, using the top candidate %s", chosen.id)
            else:
                chosen = picked

        recipe_json: str | None = None
        try:
            recipe = await self.retriever.get_recipe(chosen.id)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Recipe lookup for %s failed: %s", chosen.id, exc)
            recipe = None
        if recipe is not None:
            recipe_json = recipe.model_dump_json()

        instructions = prompts.RESPOND_RECIPE.format(recipe=_describe_recipe(recipe_json, chosen))
        if intent == Intent.SEARCH_SUBSTITUTES:
            if snapshot.substitutes:
                extra = prompts.RESPOND_SUBSTITUTES.format(substitutes=_format_substitutes(snapshot.substitutes))
            else:
                extra = prompts.RESPOND_NO_SUBSTITUTES.format(
                    missing=", ".join(chosen.missing_attributes) or "the missing ingredients"
                )
            instructions = f"{instructions}\n\n{extra}"

        reply = await self._reply(instructions, history, config)
        return {"turns": [reply], "merged_candidates": (chosen,)}

    async def _reply(self, instructions: str, history: Sequence[Turn], config: RunnableConfig) -> Turn:
        """Call the response generator, degrading to an apology on failure.

        Tokens go to the graph's custom stream only when the caller asked for them.
        """
        stream_tokens = bool((config.get("configurable") or {}).get("stream_tokens"))
        if not stream_tokens:
            try:
                return await self.generator.generate(instructions, history)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Response generation failed: %s", exc)
                return Turn.assistant(prompts.APOLOGY)

        writer = get_stream_writer()
        chunks: list[str] = []
        try:
            async for token in self.generator.stream(instructions, history):
                chunks.append(token)
                writer(token)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Response streaming failed after %d chunks: %s", len(chunks), exc)
            apology = prompts.APOLOGY if not chunks else f" {prompts.APOLOGY}"
            chunks.append(apology)
            writer(apology)
        return Turn.assistant("".join(chunks))

    # ------------------------------------------------------------------
    # Turn execution
    # ------------------------------------------------------------------

    def _lock_for(self, thread_id: str) -> asyncio.Lock:
        lock = self._locks.get(thread_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[thread_id] = lock
        if self.settings.concurrent_turn_policy == "reject" and lock.locked():
            raise TurnInProgressError(f"thread {thread_id} already has a turn in flight")
        return lock

    async def _events(self, thread_id: str, text: str, *, stream_tokens: bool) -> AsyncIterator[tuple[str, Any]]:
        if not text.strip():
            raise ValueError("user message must be non-empty")

        lock = self._lock_for(thread_id)
        async with lock:
            stored = await asyncio.to_thread(self.store.load, thread_id)
            state = apply_update(stored, {"turns": [Turn.user(text)]})
            turns_before = len(state.turns)
            config: RunnableConfig = {
                "recursion_limit": self.settings.recursion_limit,
                "configurable": {"thread_id": thread_id, "stream_tokens": stream_tokens},
            }
            stream_mode = ["updates", "custom"] if stream_tokens else ["updates"]
            events = self.graph.astream(_graph_input(state), config=config, stream_mode=stream_mode)
            try:
                async with aclosing(events):
                    async for mode, chunk in events:
                        if mode == "custom":
                            yield ("token", str(chunk))
                            continue
                        for node_name, update in chunk.items():
                            if node_name not in _NODE_NAMES:
                                continue
                            state = apply_update(state, update)
                            await asyncio.to_thread(self.store.save, thread_id, state)
                            logger.debug("thread %s: node %s committed", thread_id, node_name)
            except RoutingError:
                logger.error("Routing misconfiguration on thread %s", thread_id)
                raise
            except StateStoreError:
                logger.error("Checkpoint write failed on thread %s; previous checkpoint kept", thread_id)
                raise
            except Exception:
                logger.exception("Turn failed on thread %s", thread_id)
                if stream_tokens:
                    yield ("token", prompts.APOLOGY)
                yield ("reply", Turn.assistant(prompts.APOLOGY))
                return

            reply = state.last_assistant_turn() if len(state.turns) > turns_before else None
            if reply is None:
                logger.error("Turn on thread %s ended without a reply", thread_id)
                reply = Turn.assistant(prompts.APOLOGY)
            yield ("reply", reply)

    async def run_turn(self, thread_id: str, text: str) -> Turn:
        """Process one user message and return the assistant's reply."""
        reply: Turn | None = None
        async for kind, payload in self._events(thread_id, text, stream_tokens=False):
            if kind == "reply":
                reply = payload
        if reply is None:
            raise RuntimeError(f"turn on thread {thread_id} finished without producing a reply")
        return reply

    async def stream_turn(self, thread_id: str, text: str) -> AsyncIterator[str]:
        """Process one user message, yielding reply tokens from the terminal node only."""
        async for kind, payload in self._events(thread_id, text, stream_tokens=True):
            if kind == "token":
                yield payload

    async def get_state(self, thread_id: str) -> ConversationState:
        return await asyncio.to_thread(self.store.load, thread_id)
