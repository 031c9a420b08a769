from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Sequence

import chromadb
from chromadb.api.types import Documents, EmbeddingFunction
from chromadb.utils import embedding_functions

from .llm import ensure_openai_api_key
from .models import Candidate, DietTag, Recipe

logger = logging.getLogger(__name__)

COLLECTION_NAME = "recipes"


def _normalize_embedding_model_name(value: str) -> str:
    model = value.strip()
    if model.startswith("openai:"):
        model = model.split(":", 1)[1].strip()
    if not model:
        raise ValueError("embedding_model must be non-empty")
    return model


def _build_embedding_function(*, model_name: str) -> EmbeddingFunction[Documents]:
    api_key = ensure_openai_api_key()
    return embedding_functions.OpenAIEmbeddingFunction(
        api_key=api_key,
        model_name=model_name,
    )


def recipe_document(recipe: Recipe) -> str:
    ingredients = ", ".join(recipe.ingredient_names)
    diets = ", ".join(sorted(tag.value for tag in recipe.diet))
    return f"{recipe.title}\n{recipe.cuisine}\n{ingredients}\n{diets}\n" + " ".join(recipe.steps)


def _recipe_metadata(recipe: Recipe) -> dict[str, str | int | float | bool]:
    return {
        "title": recipe.title,
        "cuisine": recipe.cuisine,
        "time_minutes": recipe.time_minutes,
        "diet": ",".join(sorted(tag.value for tag in recipe.diet)),
    }


class RecipeVectorIndex:
    """Chroma-backed semantic index over the recipe catalog.

    A disabled index answers every query with an empty list.
    """

    def __init__(
        self,
        root: Path,
        *,
        embedding_model: str = "text-embedding-3-small",
        enabled: bool = True,
    ) -> None:
        self.root = root
        self.enabled = enabled
        self.embedding_model = _normalize_embedding_model_name(embedding_model)
        self.collection: Any = None
        if not enabled:
            logger.info("Similarity search disabled by configuration")
            return
        self.root.mkdir(parents=True, exist_ok=True)
        self.embedding_function = _build_embedding_function(model_name=self.embedding_model)
        self.client = chromadb.PersistentClient(path=str(self.root))
        self.collection = self.client.get_or_create_collection(
            name=COLLECTION_NAME,
            embedding_function=self.embedding_function,
            metadata={"hnsw:space": "cosine", "embedding_model": self.embedding_model},
        )

    def __len__(self) -> int:
        if self.collection is None:
            return 0
        return int(self.collection.count())

    def index(self, recipes: Sequence[Recipe], *, rebuild: bool = False) -> int:
        """Upsert recipes into the collection; ``rebuild`` drops existing entries first."""
        if self.collection is None:
            return 0
        if rebuild:
            self.client.delete_collection(name=COLLECTION_NAME)
            self.collection = self.client.get_or_create_collection(
                name=COLLECTION_NAME,
                embedding_function=self.embedding_function,
                metadata={"hnsw:space": "cosine", "embedding_model": self.embedding_model},
            )
        if not recipes:
            return 0
        self.collection.upsert(
            ids=[recipe.id for recipe in recipes],
            documents=[recipe_document(recipe) for recipe in recipes],
            metadatas=[_recipe_metadata(recipe) for recipe in recipes],
        )
        logger.info("Indexed %d recipes into %s", len(recipes), self.root)
        return len(recipes)

    def search(
        self,
        query_text: str,
        constraints: Sequence[DietTag],
        max_time: int,
        *,
        limit: int = 10,
        source: str = "similarity",
    ) -> list[Candidate]:
        if self.collection is None or not query_text.strip():
            return []
        total = len(self)
        if total == 0:
            return []

        query: dict[str, Any] = {
            "query_texts": [query_text],
            "n_results": min(limit, total),
            "include": ["metadatas", "distances"],
        }
        if max_time > 0:
            query["where"] = {"time_minutes": {"$lte": max_time}}
        payload = self.collection.query(**query)

        ids = (payload.get("ids") or [[]])[0]
        metadatas = (payload.get("metadatas") or [[]])[0]
        distances = (payload.get("distances") or [[]])[0]
        wanted = frozenset(constraints)

        results: list[Candidate] = []
        for recipe_id, metadata, distance in zip(ids, metadatas, distances):
            tags = [tag for tag in str(metadata.get("diet", "")).split(",") if tag]
            candidate = Candidate(
                id=str(recipe_id),
                title=str(metadata.get("title", recipe_id)),
                category=str(metadata.get("cuisine", "")),
                duration=int(metadata.get("time_minutes", 0)),
                tags=tags,
                source=source,
                match={"relevance": round(1.0 - float(distance), 6), "distance": float(distance)},
            )
            if wanted and not wanted <= candidate.tags:
                continue
            results.append(candidate)
        return results
