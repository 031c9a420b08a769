from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

CONCURRENT_TURN_POLICIES = frozenset({"queue", "reject"})


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    chat_model: str = "gpt-4o-mini"
    parser_model: str = "gpt-4o-mini"
    embedding_model: str = "text-embedding-3-small"
    temperature_tenths: int = 2
    state_store_root: str = "state_store/threads"
    vector_index_root: str = "state_store/recipe_index"
    similarity_enabled: bool = True
    graph_max_hops: int = 1
    attribute_result_limit: int = 10
    similarity_result_limit: int = 10
    parse_window: int = 2
    history_window: int = 2
    pick_list_size: int = 3
    max_route_passes: int = 6
    recursion_limit: int = 50
    concurrent_turn_policy: str = "queue"

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            chat_model=os.getenv("CHEF_CHAT_MODEL", "gpt-4o-mini"),
            parser_model=os.getenv("CHEF_PARSER_MODEL", "gpt-4o-mini"),
            embedding_model=os.getenv("CHEF_EMBEDDING_MODEL", "text-embedding-3-small"),
            temperature_tenths=_get_env_int("CHEF_TEMPERATURE_TENTHS", default=2, minimum=0, maximum=20),
            state_store_root=os.getenv("CHEF_STATE_STORE_ROOT", "state_store/threads"),
            vector_index_root=os.getenv("CHEF_VECTOR_INDEX_ROOT", "state_store/recipe_index"),
            similarity_enabled=_get_env_bool("CHEF_SIMILARITY_ENABLED", default=True),
            graph_max_hops=_get_env_int("CHEF_GRAPH_MAX_HOPS", default=1, minimum=0, maximum=4),
            attribute_result_limit=_get_env_int("CHEF_ATTRIBUTE_RESULT_LIMIT", default=10, minimum=1, maximum=100),
            similarity_result_limit=_get_env_int("CHEF_SIMILARITY_RESULT_LIMIT", default=10, minimum=1, maximum=100),
            parse_window=_get_env_int("CHEF_PARSE_WINDOW", default=2, minimum=1, maximum=2),
            history_window=_get_env_int("CHEF_HISTORY_WINDOW", default=2, minimum=0, maximum=50),
            pick_list_size=_get_env_int("CHEF_PICK_LIST_SIZE", default=3, minimum=1, maximum=20),
            max_route_passes=_get_env_int("CHEF_MAX_ROUTE_PASSES", default=6, minimum=2, maximum=50),
            recursion_limit=_get_env_int("CHEF_RECURSION_LIMIT", default=50, minimum=10, maximum=1_000),
            concurrent_turn_policy=os.getenv("CHEF_CONCURRENT_TURN_POLICY", "queue"),
        ).normalized()

    @property
    def temperature(self) -> float:
        return self.temperature_tenths / 10

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        chat_model = self.chat_model.strip()
        if not chat_model:
            raise ValueError("CHEF_CHAT_MODEL must be non-empty")
        parser_model = self.parser_model.strip()
        if not parser_model:
            raise ValueError("CHEF_PARSER_MODEL must be non-empty")
        embedding_model = self.embedding_model.strip()
        if not embedding_model:
            raise ValueError("CHEF_EMBEDDING_MODEL must be non-empty")

        if not self.state_store_root.strip():
            raise ValueError("CHEF_STATE_STORE_ROOT must be non-empty")
        if not self.vector_index_root.strip():
            raise ValueError("CHEF_VECTOR_INDEX_ROOT must be non-empty")

        # A turn needs at least parse, route, dispatch, two searches, route and a reply.
        if self.recursion_limit < self.max_route_passes * 4:
            raise ValueError(
                f"CHEF_RECURSION_LIMIT must be >= 4 * CHEF_MAX_ROUTE_PASSES ({self.max_route_passes * 4}), "
                f"got: {self.recursion_limit}"
            )

        policy = self.concurrent_turn_policy.strip().lower()
        if policy not in CONCURRENT_TURN_POLICIES:
            raise ValueError("CHEF_CONCURRENT_TURN_POLICY must be one of: queue, reject")

        return RuntimeSettings(
            chat_model=chat_model,
            parser_model=parser_model,
            embedding_model=embedding_model,
            temperature_tenths=self.temperature_tenths,
            state_store_root=self.state_store_root,
            vector_index_root=self.vector_index_root,
            similarity_enabled=self.similarity_enabled,
            graph_max_hops=self.graph_max_hops,
            attribute_result_limit=self.attribute_result_limit,
            similarity_result_limit=self.similarity_result_limit,
            parse_window=self.parse_window,
            history_window=self.history_window,
            pick_list_size=self.pick_list_size,
            max_route_passes=self.max_route_passes,
            recursion_limit=self.recursion_limit,
            concurrent_turn_policy=policy,
        )

    def state_store_path(self, repo_root: Path) -> Path:
        path = Path(self.state_store_root)
        return path if path.is_absolute() else repo_root / path

    def vector_index_path(self, repo_root: Path) -> Path:
        path = Path(self.vector_index_root)
        return path if path.is_absolute() else repo_root / path


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Args:
        name: Environment variable name.
        default: Value to return if the variable is unset.
        minimum: Inclusive lower bound.
        maximum: Inclusive upper bound.

    Returns:
        The parsed integer, guaranteed to be within [minimum, maximum].

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


def _get_env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in {"1", "true", "yes", "on"}:
        return True
    if value in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"{name} must be a boolean (true/false), got: {raw!r}")
