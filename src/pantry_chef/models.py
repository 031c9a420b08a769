from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Mapping, TypedDict

from pydantic import BaseModel, ConfigDict, Field, field_validator

logger = logging.getLogger(__name__)


class DietTag(str, Enum):
    VEGETARIAN = "vegetarian"
    VEGAN = "vegan"
    GLUTEN_FREE = "gluten_free"
    DAIRY_FREE = "dairy_free"
    NUT_FREE = "nut_free"
    HALAL_FRIENDLY = "halal_friendly"


class Intent(str, Enum):
    SEARCH = "search"
    PICK = "pick"
    SEARCH_SUBSTITUTES = "search_substitutes"
    OTHER = "other"


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


# Labels emitted by older prompts and by models that paraphrase the enum.
_INTENT_ALIASES: dict[str, Intent] = {
    "search_recipes": Intent.SEARCH,
    "search_recipe": Intent.SEARCH,
    "pick_candidate": Intent.PICK,
    "pick_recipe": Intent.PICK,
    "substitutes": Intent.SEARCH_SUBSTITUTES,
    "search_substitutions": Intent.SEARCH_SUBSTITUTES,
}


def normalize_intent(value: Any) -> Intent:
    """Map a raw intent label to ``Intent``; anything unrecognised becomes ``OTHER``."""
    if isinstance(value, Intent):
        return value
    label = str(value or "").strip().lower().replace("-", "_").replace(" ", "_")
    if not label:
        return Intent.SEARCH
    try:
        return Intent(label)
    except ValueError:
        pass
    if label in _INTENT_ALIASES:
        return _INTENT_ALIASES[label]
    logger.warning("Unrecognised intent label %r normalized to 'other'", value)
    return Intent.OTHER


def normalize_diet_tags(values: Any) -> frozenset[DietTag]:
    """Coerce raw diet labels into ``DietTag`` values, dropping unknown labels."""
    if values is None:
        return frozenset()
    if isinstance(values, (str, DietTag)):
        values = [values]
    tags: set[DietTag] = set()
    for value in values:
        if isinstance(value, DietTag):
            tags.add(value)
            continue
        label = str(value).strip().lower().replace("-", "_").replace(" ", "_")
        try:
            tags.add(DietTag(label))
        except ValueError:
            logger.warning("Dropping unknown diet tag %r", value)
    return frozenset(tags)


class Turn(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: Role
    content: str

    @classmethod
    def user(cls, content: str) -> "Turn":
        return cls(role=Role.USER, content=content)

    @classmethod
    def assistant(cls, content: str) -> "Turn":
        return cls(role=Role.ASSISTANT, content=content)


class Filters(BaseModel):
    """Structured interpretation of the latest user request.

    Replaced wholesale on every parse; fields are never merged with the
    previous extraction.
    """

    model_config = ConfigDict(frozen=True)

    ingredients: frozenset[str] = frozenset()
    constraints: frozenset[DietTag] = frozenset()
    category: str = ""
    time_budget_minutes: int = 0
    intent: Intent = Intent.SEARCH

    @field_validator("ingredients", mode="before")
    @classmethod
    def _normalize_ingredients(cls, value: Any) -> frozenset[str]:
        if value is None:
            return frozenset()
        if isinstance(value, str):
            value = [value]
        return frozenset(str(item).strip().lower() for item in value if str(item).strip())

    @field_validator("constraints", mode="before")
    @classmethod
    def _normalize_constraints(cls, value: Any) -> frozenset[DietTag]:
        return normalize_diet_tags(value)

    @field_validator("category", mode="before")
    @classmethod
    def _normalize_category(cls, value: Any) -> str:
        return str(value or "").strip()

    @field_validator("time_budget_minutes", mode="before")
    @classmethod
    def _normalize_time_budget(cls, value: Any) -> int:
        try:
            minutes = int(float(value or 0))
        except (TypeError, ValueError):
            return 0
        return max(minutes, 0)

    @field_validator("intent", mode="before")
    @classmethod
    def _normalize_intent(cls, value: Any) -> Intent:
        return normalize_intent(value)

    @classmethod
    def fallback(cls) -> "Filters":
        """Filters used when extraction fails: nothing requested, intent ``other``."""
        return cls(intent=Intent.OTHER)


class ExtractedFilters(BaseModel):
    """Schema handed to the language model for structured extraction."""

    ingredients: list[str] = Field(default_factory=list, description="Ingredients the user wants to cook with")
    constraints: list[str] = Field(
        default_factory=list,
        description="Dietary constraints, any of: " + ", ".join(tag.value for tag in DietTag),
    )
    category: str = Field(default="", description="Cuisine or dish category the user asked for, empty if none")
    time_budget_minutes: int = Field(default=0, description="Maximum cooking time in minutes, 0 if not given")
    intent: str = Field(
        default=Intent.SEARCH.value,
        description=(
            "search: looking for new recipes or narrowing the current list; "
            "pick: choosing one recipe from the list already offered; "
            "search_substitutes: asking what to use instead of a missing ingredient; "
            "other: anything else"
        ),
    )

    def to_filters(self) -> Filters:
        return Filters.model_validate(self.model_dump())


class Candidate(BaseModel):
    """One retrievable recipe as seen by the merge and scoring engine."""

    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    category: str = ""
    duration: int = 0
    tags: frozenset[DietTag] = frozenset()
    missing_attributes: tuple[str, ...] = ()
    source: str = ""
    match: dict[str, Any] = Field(default_factory=dict)
    source_score: float = 0.0
    overall_score: float = 0.0

    @field_validator("tags", mode="before")
    @classmethod
    def _normalize_tags(cls, value: Any) -> frozenset[DietTag]:
        return normalize_diet_tags(value)

    @property
    def relevance(self) -> float:
        return float(self.match.get("relevance", 0.0))


class Substitute(BaseModel):
    model_config = ConfigDict(frozen=True)

    original: str
    replacement: str
    ratio: str = ""
    quality: int = 1
    notes: str = ""
    diets: frozenset[DietTag] = frozenset()

    @field_validator("diets", mode="before")
    @classmethod
    def _normalize_diets(cls, value: Any) -> frozenset[DietTag]:
        return normalize_diet_tags(value)


class IngredientQty(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    amount: str = ""
    optional: bool = False


class Recipe(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    cuisine: str = ""
    diet: frozenset[DietTag] = frozenset()
    ingredients: tuple[IngredientQty, ...]
    steps: tuple[str, ...]
    time_minutes: int
    notes: tuple[str, ...] = ()

    @field_validator("diet", mode="before")
    @classmethod
    def _normalize_diet(cls, value: Any) -> frozenset[DietTag]:
        return normalize_diet_tags(value)

    @property
    def ingredient_names(self) -> list[str]:
        return [item.name.strip().lower() for item in self.ingredients]

    def to_candidate(self, *, source: str, missing: list[str] | None = None, match: dict[str, Any] | None = None) -> Candidate:
        return Candidate(
            id=self.id,
            title=self.title,
            category=self.cuisine,
            duration=self.time_minutes,
            tags=self.diet,
            missing_attributes=tuple(missing or ()),
            source=source,
            match=dict(match or {}),
        )


class SubstitutionRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    source: str = Field(alias="from")
    to: tuple[str, ...]
    diets: tuple[str, ...] = ()
    ratio: str = ""
    quality: int = Field(default=1, ge=1, le=3)
    notes: str = ""

    @property
    def diet_tags(self) -> frozenset[DietTag]:
        # Rules may carry labels outside DietTag (e.g. keto); only known tags gate matching.
        return frozenset(tag for tag in DietTag if tag.value in {d.lower() for d in self.diets})


class Flags(BaseModel):
    model_config = ConfigDict(frozen=True)

    did_retrieve: bool = False
    did_ask_for_more_context: bool = False
    did_search_substitutes: bool = False


class ConversationState(BaseModel):
    """The unit of checkpointing for one thread."""

    model_config = ConfigDict(frozen=True)

    turns: tuple[Turn, ...] = ()
    filters: Filters = Field(default_factory=Filters)
    raw_candidates_by_source: dict[str, tuple[Candidate, ...]] = Field(default_factory=dict)
    merged_candidates: tuple[Candidate, ...] = ()
    substitutes: tuple[Substitute, ...] = ()
    flags: Flags = Field(default_factory=Flags)
    iterations: int = 0

    def recent_turns(self, window: int) -> list[Turn]:
        if window <= 0:
            return []
        return list(self.turns[-window:])

    def last_user_text(self) -> str:
        for turn in reversed(self.turns):
            if turn.role == Role.USER:
                return turn.content
        return ""

    def last_assistant_turn(self) -> Turn | None:
        for turn in reversed(self.turns):
            if turn.role == Role.ASSISTANT:
                return turn
        return None


class StateUpdate(TypedDict, total=False):
    """Partial update returned by a node; names only the fields it replaces."""

    turns: list[Turn]
    filters: Filters
    raw_candidates_by_source: dict[str, tuple[Candidate, ...]]
    merged_candidates: tuple[Candidate, ...]
    substitutes: tuple[Substitute, ...]
    flags: Flags
    iterations: int


STATE_FIELDS: frozenset[str] = frozenset(ConversationState.model_fields)


def apply_update(state: ConversationState, update: Mapping[str, Any] | None) -> ConversationState:
    """Shallow-merge a node update into a state snapshot.

    Named fields replace the previous value; ``turns`` is appended to.

    Raises:
        ValueError: If the update names a field that ConversationState does not have.
    """
    if not update:
        return state
    unknown = set(update) - STATE_FIELDS
    if unknown:
        raise ValueError(f"State update names unknown fields: {', '.join(sorted(unknown))}")
    changes: dict[str, Any] = {}
    for key, value in update.items():
        if key == "turns":
            changes["turns"] = tuple(state.turns) + tuple(value)
        else:
            changes[key] = value
    return ConversationState.model_validate({**_shallow_fields(state), **changes})


def _shallow_fields(state: ConversationState) -> dict[str, Any]:
    return {name: getattr(state, name) for name in STATE_FIELDS}
