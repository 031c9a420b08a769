from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path

from pydantic import TypeAdapter, ValidationError

from .models import Recipe, SubstitutionRule

logger = logging.getLogger(__name__)

_RECIPES = TypeAdapter(list[Recipe])
_RULES = TypeAdapter(list[SubstitutionRule])


def get_data_dir() -> Path:
    """Return package-relative path to the bundled catalog data."""
    return Path(__file__).resolve().parent / "data"


def _read_json(path: Path, label: str) -> object:
    if not path.is_file():
        raise FileNotFoundError(f"{label} not found: {path}")
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ValueError(f"{label} at {path} is not valid JSON") from exc


def load_recipes(path: Path | None = None) -> list[Recipe]:
    path = path or get_data_dir() / "recipes.json"
    try:
        recipes = _RECIPES.validate_python(_read_json(path, "recipe catalog"))
    except ValidationError as exc:
        raise ValueError(f"recipe catalog at {path} failed validation: {exc}") from exc
    ids = [recipe.id for recipe in recipes]
    if len(ids) != len(set(ids)):
        raise ValueError(f"recipe catalog at {path} contains duplicate ids")
    return recipes


def load_substitution_rules(path: Path | None = None) -> list[SubstitutionRule]:
    path = path or get_data_dir() / "substitutions.json"
    try:
        return _RULES.validate_python(_read_json(path, "substitution rules"))
    except ValidationError as exc:
        raise ValueError(f"substitution rules at {path} failed validation: {exc}") from exc


@dataclass(frozen=True)
class RecipeCatalog:
    recipes: tuple[Recipe, ...]
    rules: tuple[SubstitutionRule, ...]

    @classmethod
    def load(cls, data_dir: Path | None = None) -> "RecipeCatalog":
        root = data_dir or get_data_dir()
        catalog = cls(
            recipes=tuple(load_recipes(root / "recipes.json")),
            rules=tuple(load_substitution_rules(root / "substitutions.json")),
        )
        logger.info("Loaded %d recipes and %d substitution rules", len(catalog.recipes), len(catalog.rules))
        return catalog

    def get(self, recipe_id: str) -> Recipe | None:
        for recipe in self.recipes:
            if recipe.id == recipe_id:
                return recipe
        return None
