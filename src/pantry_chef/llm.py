from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Generic, Literal, Protocol, Sequence, TypeVar

from dotenv import load_dotenv
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI
from pydantic import BaseModel, ValidationError

from .models import ExtractedFilters, Filters, Role, Turn
from .prompts import EXTRACTION_INSTRUCTIONS, with_persona

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)
StructuredOutputMethod = Literal["function_calling", "json_mode", "json_schema"]

_DEFAULT_TIMEOUT: int = 60
_DEFAULT_MAX_RETRIES: int = 2


class SupportsAsyncInvoke(Protocol):
    """Protocol for any LangChain-compatible runnable that supports ainvoke."""

    async def ainvoke(self, input: Any) -> Any:  # noqa: ANN401 - external runnable protocol.
        ...


@dataclass(slots=True)
class StructuredOutputAdapter(Generic[ModelT]):
    """Wraps a structured-output runnable and validates the response into ``schema``."""

    schema: type[ModelT]
    runnable: SupportsAsyncInvoke

    async def ainvoke(self, prompt: Any) -> ModelT:
        """Invoke the LLM and return a validated Pydantic model instance.

        Raises:
            RuntimeError: If the LLM returns unparseable or invalid output.
        """
        raw_output = await self.runnable.ainvoke(prompt)
        return normalize_structured_output(raw_output=raw_output, schema=self.schema)


def ensure_openai_api_key(repo_root: Path | None = None) -> str:
    """Load OPENAI_API_KEY from environment or .env and return it.

    Raises:
        RuntimeError: If OPENAI_API_KEY is unavailable after all sources are checked.
    """
    repo = repo_root if repo_root is not None else Path.cwd()
    env_path = repo / ".env"
    if env_path.is_file():
        load_dotenv(env_path)

    key = os.getenv("OPENAI_API_KEY", "").strip()
    if not key:
        raise RuntimeError("OPENAI_API_KEY is required to talk to the language model")
    return key


def get_chat_model(
    *,
    model_name: str,
    temperature: float = 0.0,
    timeout: int = _DEFAULT_TIMEOUT,
    max_retries: int = _DEFAULT_MAX_RETRIES,
    streaming: bool = False,
    repo_root: Path | None = None,
) -> ChatOpenAI:
    """Construct a ChatOpenAI instance with a validated API key.

    Raises:
        ValueError: If model_name is blank.
        RuntimeError: If OPENAI_API_KEY is not available.
    """
    if not model_name or not model_name.strip():
        raise ValueError("model_name must be a non-empty string")
    ensure_openai_api_key(repo_root=repo_root)
    return ChatOpenAI(
        model=model_name,
        temperature=temperature,
        timeout=timeout,
        max_retries=max_retries,
        streaming=streaming,
    )


def normalize_structured_output(*, raw_output: Any, schema: type[ModelT]) -> ModelT:
    """Normalize raw LLM structured output into a validated Pydantic model instance.

    Handles three input shapes:
    1. ``include_raw=True`` envelope: ``{"parsed": ..., "parsing_error": ..., "raw": ...}``
    2. Direct Pydantic BaseModel instance (same or different schema)
    3. Plain dict

    Raises:
        RuntimeError: If the output cannot be parsed or validated against the schema.
    """
    payload = raw_output
    if isinstance(payload, dict) and "parsed" in payload and "parsing_error" in payload:
        parsing_error = payload.get("parsing_error")
        if parsing_error is not None:
            raise RuntimeError(
                f"Structured output parsing failed for {schema.__name__}: {parsing_error!r}"
            )
        payload = payload.get("parsed")
        if payload is None:
            raise RuntimeError(f"Structured output returned no parsed payload for {schema.__name__}")

    if isinstance(payload, schema):
        return payload

    if isinstance(payload, BaseModel):
        candidate = payload.model_dump(mode="json")
    elif isinstance(payload, dict):
        candidate = payload
    else:
        raise RuntimeError(
            f"Structured output for {schema.__name__} returned unsupported payload type "
            f"{type(payload).__name__}"
        )

    try:
        return schema.model_validate(candidate)
    except ValidationError as exc:
        raise RuntimeError(f"Structured output validation failed for {schema.__name__}: {exc}") from exc


def get_structured_chat_model(
    *,
    model_name: str,
    schema: type[ModelT],
    temperature: float = 0.0,
    method: StructuredOutputMethod = "function_calling",
    include_raw: bool = False,
    repo_root: Path | None = None,
) -> StructuredOutputAdapter[ModelT]:
    """Build a StructuredOutputAdapter that invokes the LLM with schema-constrained output."""
    model = get_chat_model(model_name=model_name, temperature=temperature, repo_root=repo_root)
    runnable = model.with_structured_output(schema, method=method, include_raw=include_raw)
    return StructuredOutputAdapter(schema=schema, runnable=runnable)


def to_messages(turns: Sequence[Turn]) -> list[BaseMessage]:
    messages: list[BaseMessage] = []
    for turn in turns:
        if turn.role == Role.USER:
            messages.append(HumanMessage(content=turn.content))
        elif turn.role == Role.ASSISTANT:
            messages.append(AIMessage(content=turn.content))
        else:
            messages.append(SystemMessage(content=turn.content))
    return messages


class LLMIntentExtractor:
    """Intent extraction port backed by schema-guided generation."""

    def __init__(self, adapter: StructuredOutputAdapter[ExtractedFilters]) -> None:
        self.adapter = adapter

    @classmethod
    def from_model(cls, model_name: str, *, repo_root: Path | None = None) -> "LLMIntentExtractor":
        return cls(
            get_structured_chat_model(model_name=model_name, schema=ExtractedFilters, repo_root=repo_root)
        )

    async def extract(self, recent_turns: Sequence[Turn]) -> Filters:
        prompt = [SystemMessage(content=EXTRACTION_INSTRUCTIONS), *to_messages(recent_turns)]
        try:
            extracted = await self.adapter.ainvoke(prompt)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Intent extraction failed, falling back to 'other': %s", exc)
            return Filters.fallback()
        filters = extracted.to_filters()
        logger.debug("Extracted filters: %s", filters)
        return filters


class LLMResponseGenerator:
    """Response generation port backed by a streaming chat model."""

    def __init__(self, model: ChatOpenAI) -> None:
        self.model = model

    @classmethod
    def from_model(cls, model_name: str, *, temperature: float, repo_root: Path | None = None) -> "LLMResponseGenerator":
        return cls(get_chat_model(model_name=model_name, temperature=temperature, streaming=True, repo_root=repo_root))

    def _messages(self, instructions: str, recent_turns: Sequence[Turn]) -> list[BaseMessage]:
        return [SystemMessage(content=with_persona(instructions)), *to_messages(recent_turns)]

    async def generate(self, instructions: str, recent_turns: Sequence[Turn]) -> Turn:
        response = await self.model.ainvoke(self._messages(instructions, recent_turns))
        return Turn.assistant(str(response.content))

    async def stream(self, instructions: str, recent_turns: Sequence[Turn]) -> AsyncIterator[str]:
        async for chunk in self.model.astream(self._messages(instructions, recent_turns)):
            content = chunk.content
            if isinstance(content, str) and content:
                yield content
