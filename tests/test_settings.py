from __future__ import annotations

from pathlib import Path

import pytest

from pantry_chef.settings import RuntimeSettings


def test_runtime_settings_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("CHEF_PARSE_WINDOW", "CHEF_PICK_LIST_SIZE", "CHEF_CONCURRENT_TURN_POLICY"):
        monkeypatch.delenv(name, raising=False)
    settings = RuntimeSettings.from_env()
    assert settings.parse_window == 2
    assert settings.pick_list_size == 3
    assert settings.concurrent_turn_policy == "queue"
    assert settings.temperature == pytest.approx(0.2)


def test_runtime_settings_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CHEF_CHAT_MODEL", " gpt-4.1 ")
    monkeypatch.setenv("CHEF_GRAPH_MAX_HOPS", "2")
    monkeypatch.setenv("CHEF_SIMILARITY_ENABLED", "off")
    monkeypatch.setenv("CHEF_CONCURRENT_TURN_POLICY", "REJECT")
    settings = RuntimeSettings.from_env()
    assert settings.chat_model == "gpt-4.1"
    assert settings.graph_max_hops == 2
    assert settings.similarity_enabled is False
    assert settings.concurrent_turn_policy == "reject"


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("CHEF_PARSE_WINDOW", "3"),
        ("CHEF_GRAPH_MAX_HOPS", "abc"),
        ("CHEF_SIMILARITY_ENABLED", "maybe"),
        ("CHEF_CONCURRENT_TURN_POLICY", "drop"),
        ("CHEF_CHAT_MODEL", "   "),
    ],
)
def test_runtime_settings_invalid_env_raises(monkeypatch: pytest.MonkeyPatch, name: str, value: str) -> None:
    monkeypatch.setenv(name, value)
    with pytest.raises(ValueError):
        RuntimeSettings.from_env()


def test_recursion_limit_must_cover_route_passes(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CHEF_MAX_ROUTE_PASSES", "20")
    monkeypatch.setenv("CHEF_RECURSION_LIMIT", "50")
    with pytest.raises(ValueError, match="CHEF_RECURSION_LIMIT"):
        RuntimeSettings.from_env()


def test_relative_paths_resolve_under_repo_root(tmp_path: Path) -> None:
    settings = RuntimeSettings(state_store_root="threads", vector_index_root=str(tmp_path / "index"))
    assert settings.state_store_path(tmp_path) == tmp_path / "threads"
    assert settings.vector_index_path(Path("/elsewhere")) == tmp_path / "index"
