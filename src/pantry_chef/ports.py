"""Interfaces of the collaborators the orchestration engine talks to."""
from __future__ import annotations

from typing import AsyncIterator, Protocol, Sequence

from .models import Candidate, DietTag, Filters, Recipe, Substitute, Turn


class RetrievalPort(Protocol):
    async def search_by_attributes(
        self,
        ingredients: Sequence[str],
        constraints: Sequence[DietTag],
        max_hops: int,
    ) -> list[Candidate]:
        ...

    async def search_by_similarity(
        self,
        query_text: str,
        constraints: Sequence[DietTag],
        max_time: int,
    ) -> list[Candidate]:
        ...

    async def search_substitutes(
        self,
        missing_attributes: Sequence[str],
        constraints: Sequence[DietTag],
    ) -> list[Substitute]:
        ...

    async def get_recipe(self, recipe_id: str) -> Recipe | None:
        ...


class IntentExtractor(Protocol):
    async def extract(self, recent_turns: Sequence[Turn]) -> Filters:
        """Return well-formed filters; failures degrade to ``Filters.fallback()``."""
        ...


class ResponseGenerator(Protocol):
    async def generate(self, instructions: str, recent_turns: Sequence[Turn]) -> Turn:
        ...

    def stream(self, instructions: str, recent_turns: Sequence[Turn]) -> AsyncIterator[str]:
        ...
