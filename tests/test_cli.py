from __future__ import annotations

from pathlib import Path

import pytest

from fakes import FakeRetriever, RecordingGenerator, ScriptedExtractor
from pantry_chef import ConversationEngine
from pantry_chef.__main__ import main, parse_args
from pantry_chef.settings import RuntimeSettings
from pantry_chef.state_store import FileStateStore


def _fake_engine(store_root: Path):
    def _factory(settings: RuntimeSettings, repo_root: Path, *, reindex: bool = False) -> ConversationEngine:
        return ConversationEngine(
            retriever=FakeRetriever(),
            extractor=ScriptedExtractor(),
            generator=RecordingGenerator(tokens=["Hello ", "there."]),
            store=FileStateStore(store_root),
            settings=settings,
        )

    return _factory


def test_parse_args_defaults() -> None:
    args = parse_args([])
    assert args.thread_id is None
    assert args.message is None
    assert args.no_stream is False
    assert args.reindex is False


def test_one_shot_message_prints_reply(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    monkeypatch.setattr(ConversationEngine, "from_settings", _fake_engine(tmp_path))

    assert main(["--thread-id", "cli-thread", "--message", "hi", "--no-stream"]) == 0

    assert capsys.readouterr().out.strip() == "Hello there."
    assert [turn.content for turn in FileStateStore(tmp_path).load("cli-thread").turns] == ["hi", "Hello there."]


def test_one_shot_message_streams_reply(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    monkeypatch.setattr(ConversationEngine, "from_settings", _fake_engine(tmp_path))

    assert main(["--thread-id", "cli-thread", "--message", "hi"]) == 0

    assert capsys.readouterr().out == "Hello there.\n"


def test_invalid_thread_id_fails_fast(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(ConversationEngine, "from_settings", _fake_engine(tmp_path))
    assert main(["--thread-id", "../etc", "--message", "hi"]) == 1


def test_missing_api_key_fails_fast(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    assert main(["--message", "hi"]) == 1
