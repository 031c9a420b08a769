from importlib.metadata import version

from .canonical import to_canonical_json
from .catalog import RecipeCatalog, get_data_dir
from .engine import ConversationEngine, TurnInProgressError
from .models import (
    Candidate,
    ConversationState,
    DietTag,
    Filters,
    Flags,
    Intent,
    Recipe,
    Role,
    Substitute,
    SubstitutionRule,
    Turn,
    apply_update,
)
from .retrieval import RecipeRetriever
from .routing import NodeName, RoutingError, route
from .settings import RuntimeSettings
from .state_store import FileStateStore, MemoryStateStore, StateStoreError


def get_version() -> str:
    try:
        return version("pantry-chef")
    except Exception:
        return "0.0.0"


__all__ = [
    "Candidate",
    "ConversationEngine",
    "ConversationState",
    "DietTag",
    "FileStateStore",
    "Filters",
    "Flags",
    "Intent",
    "MemoryStateStore",
    "NodeName",
    "Recipe",
    "RecipeCatalog",
    "RecipeRetriever",
    "Role",
    "RoutingError",
    "RuntimeSettings",
    "StateStoreError",
    "Substitute",
    "SubstitutionRule",
    "Turn",
    "TurnInProgressError",
    "apply_update",
    "get_data_dir",
    "get_version",
    "route",
    "to_canonical_json",
]
