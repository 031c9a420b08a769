"""Ingredient graph traversal used for attribute search.

Recipes require ingredients; substitution rules add directed edges from a
required ingredient to the ingredients that can stand in for it. A user
ingredient satisfies a required ingredient when it fuzzily matches the
required ingredient itself or something reachable within ``max_hops``
substitution edges. Each recipe's relevance is its satisfaction ratio times
the average (name similarity x substitution quality) of its matches.
"""
from __future__ import annotations

import logging
from collections import defaultdict, deque
from dataclasses import dataclass
from difflib import SequenceMatcher
from typing import Sequence

from .models import Candidate, DietTag, Recipe, SubstitutionRule

logger = logging.getLogger(__name__)

MATCH_THRESHOLD = 0.75
CONTAINMENT_SIMILARITY = 0.9
MAX_QUALITY = 3


@dataclass(frozen=True)
class SubstitutionEdge:
    target: str
    quality: int
    diets: frozenset[DietTag]
    restricted: bool

    def allowed_for(self, constraints: frozenset[DietTag]) -> bool:
        if not constraints or not self.restricted:
            return True
        return bool(self.diets & constraints)


@dataclass(frozen=True)
class IngredientMatch:
    required: str
    source: str
    match_type: str
    similarity: float
    quality: float

    @property
    def combined(self) -> float:
        return self.similarity * self.quality

    def as_dict(self) -> dict[str, object]:
        return {
            "required": self.required,
            "source": self.source,
            "match_type": self.match_type,
            "similarity": round(self.similarity, 4),
            "quality": round(self.quality, 4),
        }


def name_similarity(left: str, right: str) -> float:
    a = left.strip().lower()
    b = right.strip().lower()
    if not a or not b:
        return 0.0
    if a == b:
        return 1.0
    ratio = SequenceMatcher(None, a, b).ratio()
    if a in b or b in a:
        ratio = max(ratio, CONTAINMENT_SIMILARITY)
    return ratio


class IngredientGraph:
    def __init__(self, recipes: Sequence[Recipe], rules: Sequence[SubstitutionRule]) -> None:
        self.recipes = list(recipes)
        self.edges: dict[str, list[SubstitutionEdge]] = defaultdict(list)
        for rule in rules:
            source = rule.source.strip().lower()
            for target in rule.to:
                self.edges[source].append(
                    SubstitutionEdge(
                        target=target.strip().lower(),
                        quality=rule.quality,
                        diets=rule.diet_tags,
                        restricted=bool(rule.diets),
                    )
                )
        self.ingredients: frozenset[str] = frozenset(
            {name for recipe in self.recipes for name in recipe.ingredient_names}
            | set(self.edges)
            | {edge.target for edges in self.edges.values() for edge in edges}
        )

    def _resolve(self, user_ingredients: Sequence[str]) -> dict[str, tuple[str, float]]:
        """Map every known ingredient a user ingredient fuzzily matches to (user ingredient, similarity)."""
        resolved: dict[str, tuple[str, float]] = {}
        for wanted in user_ingredients:
            for known in self.ingredients:
                score = name_similarity(wanted, known)
                if score < MATCH_THRESHOLD:
                    continue
                if known not in resolved or score > resolved[known][1]:
                    resolved[known] = (wanted, score)
        return resolved

    def _reachable(self, required: str, constraints: frozenset[DietTag], max_hops: int) -> dict[str, float]:
        """Ingredients usable in place of *required*, with the best path quality in [0, 1]."""
        best: dict[str, float] = {required: 1.0}
        queue: deque[tuple[str, float, int]] = deque([(required, 1.0, 0)])
        while queue:
            node, quality, hops = queue.popleft()
            if hops >= max_hops:
                continue
            for edge in self.edges.get(node, ()):
                if not edge.allowed_for(constraints):
                    continue
                path_quality = quality * edge.quality / MAX_QUALITY
                if path_quality <= best.get(edge.target, 0.0):
                    continue
                best[edge.target] = path_quality
                queue.append((edge.target, path_quality, hops + 1))
        return best

    def _match_recipe(
        self,
        recipe: Recipe,
        resolved: dict[str, tuple[str, float]],
        constraints: frozenset[DietTag],
        max_hops: int,
    ) -> tuple[list[IngredientMatch], list[str]]:
        matches: list[IngredientMatch] = []
        missing: list[str] = []
        for item in recipe.ingredients:
            required = item.name.strip().lower()
            best_match: IngredientMatch | None = None
            for usable, quality in self._reachable(required, constraints, max_hops).items():
                if usable not in resolved:
                    continue
                wanted, similarity = resolved[usable]
                match = IngredientMatch(
                    required=required,
                    source=wanted,
                    match_type="direct" if usable == required else "substitute",
                    similarity=similarity,
                    quality=quality,
                )
                if best_match is None or match.combined > best_match.combined:
                    best_match = match
            if best_match is not None:
                matches.append(best_match)
            elif not item.optional:
                missing.append(required)
        return matches, missing

    def search(
        self,
        ingredients: Sequence[str],
        constraints: Sequence[DietTag],
        max_hops: int,
        *,
        limit: int = 10,
        source: str = "attribute",
    ) -> list[Candidate]:
        wanted = [name.strip().lower() for name in ingredients if name.strip()]
        if not wanted:
            return []
        diets = frozenset(constraints)
        resolved = self._resolve(wanted)
        if not resolved:
            logger.debug("No catalog ingredient matches %s", wanted)
            return []

        scored: list[tuple[float, Candidate]] = []
        for recipe in self.recipes:
            if diets and not (diets & recipe.diet):
                continue
            matches, missing = self._match_recipe(recipe, resolved, diets, max_hops)
            if not matches:
                continue
            satisfaction = len(matches) / len(recipe.ingredients)
            average = sum(match.combined for match in matches) / len(matches)
            relevance = satisfaction * average
            candidate = recipe.to_candidate(
                source=source,
                missing=missing,
                match={
                    "relevance": round(relevance, 6),
                    "satisfaction_ratio": round(satisfaction, 6),
                    "ingredient_matches": [match.as_dict() for match in matches],
                },
            )
            scored.append((relevance, candidate))

        scored.sort(key=lambda pair: (-pair[0], pair[1].id))
        return [candidate for _, candidate in scored[:limit]]
