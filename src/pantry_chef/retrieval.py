from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Sequence

from .catalog import RecipeCatalog
from .graph_search import MATCH_THRESHOLD, IngredientGraph, name_similarity
from .models import Candidate, DietTag, Recipe, Substitute, SubstitutionRule
from .scoring import ATTRIBUTE_SOURCE, SIMILARITY_SOURCE
from .settings import RuntimeSettings
from .vector_search import RecipeVectorIndex

logger = logging.getLogger(__name__)


def find_substitutes(
    rules: Sequence[SubstitutionRule],
    missing_attributes: Sequence[str],
    constraints: Sequence[DietTag],
) -> list[Substitute]:
    """Substitutions for each missing ingredient that respect the dietary constraints.

    A rule with no diet labels is always allowed; a labelled rule is allowed
    when it shares at least one label with the constraints.
    """
    wanted = frozenset(constraints)
    found: dict[tuple[str, str], Substitute] = {}
    for missing in missing_attributes:
        for rule in rules:
            if name_similarity(missing, rule.source) < MATCH_THRESHOLD:
                continue
            if wanted and rule.diets and not (rule.diet_tags & wanted):
                continue
            for replacement in rule.to:
                key = (missing.strip().lower(), replacement.strip().lower())
                if key in found:
                    continue
                found[key] = Substitute(
                    original=key[0],
                    replacement=replacement,
                    ratio=rule.ratio,
                    quality=rule.quality,
                    notes=rule.notes,
                    diets=rule.diet_tags,
                )
    return sorted(found.values(), key=lambda sub: (-sub.quality, sub.original, sub.replacement))


class RecipeRetriever:
    """Retrieval port over the bundled catalog.

    Blocking backends run in worker threads so the event loop stays free
    while a turn waits on them.
    """

    def __init__(
        self,
        catalog: RecipeCatalog,
        *,
        graph: IngredientGraph | None = None,
        vector_index: RecipeVectorIndex | None = None,
        attribute_limit: int = 10,
        similarity_limit: int = 10,
    ) -> None:
        self.catalog = catalog
        self.graph = graph or IngredientGraph(catalog.recipes, catalog.rules)
        self.vector_index = vector_index
        self.attribute_limit = attribute_limit
        self.similarity_limit = similarity_limit

    @classmethod
    def from_settings(cls, settings: RuntimeSettings, repo_root: Path, *, reindex: bool = False) -> "RecipeRetriever":
        catalog = RecipeCatalog.load()
        vector_index = RecipeVectorIndex(
            settings.vector_index_path(repo_root),
            embedding_model=settings.embedding_model,
            enabled=settings.similarity_enabled,
        )
        if vector_index.enabled and (reindex or len(vector_index) == 0):
            vector_index.index(catalog.recipes, rebuild=reindex)
        return cls(
            catalog,
            vector_index=vector_index,
            attribute_limit=settings.attribute_result_limit,
            similarity_limit=settings.similarity_result_limit,
        )

    async def search_by_attributes(
        self,
        ingredients: Sequence[str],
        constraints: Sequence[DietTag],
        max_hops: int,
    ) -> list[Candidate]:
        return await asyncio.to_thread(
            self.graph.search,
            ingredients,
            constraints,
            max_hops,
            limit=self.attribute_limit,
            source=ATTRIBUTE_SOURCE,
        )

    async def search_by_similarity(
        self,
        query_text: str,
        constraints: Sequence[DietTag],
        max_time: int,
    ) -> list[Candidate]:
        if self.vector_index is None or not self.vector_index.enabled:
            return []
        return await asyncio.to_thread(
            self.vector_index.search,
            query_text,
            constraints,
            max_time,
            limit=self.similarity_limit,
            source=SIMILARITY_SOURCE,
        )

    async def search_substitutes(
        self,
        missing_attributes: Sequence[str],
        constraints: Sequence[DietTag],
    ) -> list[Substitute]:
        return find_substitutes(self.catalog.rules, missing_attributes, constraints)

    async def get_recipe(self, recipe_id: str) -> Recipe | None:
        return self.catalog.get(recipe_id)
