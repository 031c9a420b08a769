from __future__ import annotations

import fcntl
import logging
import os
import re
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Protocol

from pydantic import ValidationError

from .canonical import to_canonical_json
from .models import ConversationState

logger = logging.getLogger(__name__)

_LOCK_SUFFIX = ".lock"
_THREAD_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")


class StateStoreError(RuntimeError):
    """Checkpoint could not be read or written; the previous checkpoint stays authoritative."""


class StateStore(Protocol):
    def load(self, thread_id: str) -> ConversationState:
        ...

    def save(self, thread_id: str, state: ConversationState) -> None:
        ...


def validate_thread_id(thread_id: str) -> str:
    """Return *thread_id* unchanged if it is safe to use as a file stem.

    Raises:
        ValueError: If the identifier is empty or contains path characters.
    """
    if not _THREAD_ID_RE.match(thread_id or ""):
        raise ValueError(
            f"thread_id must match {_THREAD_ID_RE.pattern}, got: {thread_id!r}"
        )
    return thread_id


# ---------------------------------------------------------------------------
# File locking helpers
# ---------------------------------------------------------------------------


@contextmanager
def _locked_file(path: Path) -> Iterator[None]:
    """Acquire an exclusive file lock for the duration of the context.

    Uses a separate .lock sidecar file so the checkpoint itself can be
    atomically replaced via ``os.replace`` without disturbing the lock
    handle.
    """
    lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def _atomic_write_text(path: Path, content: str) -> None:
    """Write *content* to *path* atomically.

    Writes to a temporary file in the same directory, then renames
    (``os.replace``) into place, so readers see either the old checkpoint
    or the new one.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


class FileStateStore:
    """One canonical-JSON checkpoint file per thread under *root*.

    Reads and writes take an ``fcntl`` lock on a sidecar file so several
    processes sharing the directory never interleave a read-modify-write.
    """

    def __init__(self, root: Path) -> None:
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)

    def checkpoint_path(self, thread_id: str) -> Path:
        return self.root / f"{validate_thread_id(thread_id)}.json"

    def load(self, thread_id: str) -> ConversationState:
        """Read the latest checkpoint for a thread.

        Returns:
            The stored state, or the zero-value state if the thread is new.

        Raises:
            StateStoreError: If the checkpoint exists but cannot be read or validated.
        """
        path = self.checkpoint_path(thread_id)
        if not path.is_file():
            return ConversationState()
        with _locked_file(path):
            try:
                text = path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as exc:
                raise StateStoreError(f"checkpoint for thread {thread_id} at {path} is unreadable") from exc
        if not text.strip():
            raise StateStoreError(f"checkpoint for thread {thread_id} at {path} is empty")
        try:
            return ConversationState.model_validate_json(text)
        except ValidationError as exc:
            raise StateStoreError(f"checkpoint for thread {thread_id} at {path} failed validation: {exc}") from exc

    def save(self, thread_id: str, state: ConversationState) -> None:
        """Persist a checkpoint atomically under an exclusive lock.

        Raises:
            StateStoreError: If the checkpoint cannot be written.
        """
        path = self.checkpoint_path(thread_id)
        payload = to_canonical_json(state)
        try:
            with _locked_file(path):
                _atomic_write_text(path, payload)
        except OSError as exc:
            raise StateStoreError(f"failed to write checkpoint for thread {thread_id} at {path}") from exc
        logger.debug("Saved checkpoint for thread %s (%d turns)", thread_id, len(state.turns))


class MemoryStateStore:
    """Process-local store, used by tests and one-shot CLI runs."""

    def __init__(self) -> None:
        self._checkpoints: dict[str, ConversationState] = {}
        self.saves: int = 0

    def load(self, thread_id: str) -> ConversationState:
        return self._checkpoints.get(thread_id, ConversationState())

    def save(self, thread_id: str, state: ConversationState) -> None:
        self._checkpoints[thread_id] = state
        self.saves += 1
