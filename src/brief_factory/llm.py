from __future__ import annotations

import dataclasses
import json
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Generic, Literal, Protocol, TypeVar

from dotenv import load_dotenv
from langchain_openai import ChatOpenAI
from pydantic import BaseModel, ValidationError

from .errors import MalformedOutputError
from .model_selection import RuntimeModelSelection

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)
StructuredOutputMethod = Literal["function_calling", "json_mode", "json_schema"]

_DEFAULT_TIMEOUT: int = 120
_DEFAULT_MAX_RETRIES: int = 0

STRICT_JSON_INSTRUCTION = (
    "\n\nCRITICAL: You MUST return valid JSON only. No explanatory text before or after the JSON. "
    "Just the raw JSON object."
)


class SupportsAsyncInvoke(Protocol):
    """Protocol for any LangChain-compatible runnable that supports ainvoke."""

    async def ainvoke(self, input: Any) -> Any:  # noqa: ANN401 - external runnable protocol.
        ...


@dataclass(slots=True)
class StructuredOutputAdapter(Generic[ModelT]):
    """Adapter that wraps a structured-output runnable and validates the response.

    Calls the underlying LLM runnable and normalizes the raw output into the
    declared Pydantic schema, handling direct schema instances, plain JSON
    text and ``include_raw=True`` envelope shapes.
    """

    schema: type[ModelT]
    runnable: SupportsAsyncInvoke

    async def ainvoke(self, prompt: str) -> ModelT:
        """Invoke the LLM and return a validated Pydantic model instance.

        Args:
            prompt: The user prompt to send to the LLM.

        Returns:
            An instance of the declared schema type.

        Raises:
            MalformedOutputError: If the LLM returns unparseable or invalid output.
        """
        raw_output = await self.runnable.ainvoke(prompt)
        return normalize_structured_output(raw_output=raw_output, schema=self.schema)


def ensure_openai_api_key(repo_root: Path | None = None) -> str:
    """Load OPENAI_API_KEY from environment or .env and return it.

    Args:
        repo_root: Optional repo root path to search for .env file.

    Returns:
        The API key string.

    Raises:
        RuntimeError: If OPENAI_API_KEY is unavailable after all sources are checked.
    """
    repo = repo_root if repo_root is not None else Path.cwd()
    env_path = repo / ".env"
    if env_path.is_file():
        load_dotenv(env_path)

    key = os.getenv("OPENAI_API_KEY", "").strip()
    if not key:
        raise RuntimeError("OPENAI_API_KEY is required for LLM-backed generation")
    return key


def get_chat_model(
    *,
    model_name: str,
    temperature: float = 0.0,
    timeout: int = _DEFAULT_TIMEOUT,
    max_retries: int = _DEFAULT_MAX_RETRIES,
    max_completion_tokens: int | None = None,
    repo_root: Path | None = None,
) -> ChatOpenAI:
    """Construct a ChatOpenAI instance with validated API key.

    Client-side retries default to zero: transient failures are retried by the
    pipeline's own retry wrapper so attempt counts stay in one place.

    Args:
        model_name: OpenAI model identifier (e.g. 'gpt-4o', 'gpt-4o-mini').
        temperature: Sampling temperature.
        timeout: Request timeout in seconds.
        max_retries: Client-level retry attempts.
        max_completion_tokens: Maximum tokens for the completion response.
        repo_root: Optional repo root for .env file resolution.

    Returns:
        Configured ChatOpenAI instance.

    Raises:
        ValueError: If model_name is blank.
        RuntimeError: If OPENAI_API_KEY is not available.
    """
    if not model_name or not model_name.strip():
        raise ValueError("model_name must be a non-empty string")
    ensure_openai_api_key(repo_root=repo_root)
    kwargs: dict[str, Any] = {
        "model": model_name,
        "temperature": temperature,
        "timeout": timeout,
        "max_retries": max_retries,
    }
    if max_completion_tokens is not None:
        kwargs["max_completion_tokens"] = max_completion_tokens
    return ChatOpenAI(**kwargs)


def extract_json_payload(text: str) -> dict[str, Any]:
    """Extract a JSON object from free-form model text.

    Tries direct JSON, then a fenced code block, then the outermost braces.

    Raises:
        MalformedOutputError: If no JSON object can be recovered.
    """
    body = text.strip()
    if not body:
        raise MalformedOutputError("Model returned empty output; expected JSON object")

    try:
        parsed = json.loads(body)
    except json.JSONDecodeError:
        parsed = None
    if isinstance(parsed, dict):
        return parsed

    fenced = re.search(r"```(?:json)?\s*(\{.*?\})\s*```", body, flags=re.DOTALL)
    if fenced is not None:
        try:
            payload = json.loads(fenced.group(1))
        except json.JSONDecodeError:
            payload = None
        if isinstance(payload, dict):
            return payload

    start = body.find("{")
    end = body.rfind("}")
    if start != -1 and end > start:
        try:
            payload = json.loads(body[start : end + 1])
        except json.JSONDecodeError:
            payload = None
        if isinstance(payload, dict):
            return payload

    preview = body[:200].replace("\n", " ")
    raise MalformedOutputError(f"No JSON object found in model output: {preview!r}")


def normalize_structured_output(*, raw_output: Any, schema: type[ModelT]) -> ModelT:
    """Normalize raw LLM structured output into a validated Pydantic model instance.

    Handles four input shapes:
    1. ``include_raw=True`` envelope: ``{"parsed": ..., "parsing_error": ..., "raw": ...}``
    2. Direct Pydantic BaseModel instance (same or different schema)
    3. Plain dict
    4. Text containing a JSON object

    Raises:
        MalformedOutputError: If the output cannot be parsed or validated against the schema.
    """
    payload = raw_output
    if isinstance(payload, dict) and "parsed" in payload and "parsing_error" in payload:
        parsing_error = payload.get("parsing_error")
        if parsing_error is not None:
            cause = parsing_error if isinstance(parsing_error, BaseException) else None
            raise MalformedOutputError(
                f"Structured output parsing failed for {schema.__name__}: {parsing_error!r}"
            ) from cause
        payload = payload.get("parsed")
        if payload is None:
            raise MalformedOutputError(f"Structured output returned no parsed payload for {schema.__name__}")

    if isinstance(payload, schema):
        return payload

    if isinstance(payload, BaseModel):
        candidate = payload.model_dump(mode="json")
    elif isinstance(payload, dict):
        candidate = payload
    elif isinstance(payload, str):
        candidate = extract_json_payload(payload)
    else:
        raise MalformedOutputError(
            f"Structured output for {schema.__name__} returned unsupported payload type "
            f"{type(payload).__name__}"
        )

    try:
        return schema.model_validate(candidate)
    except ValidationError as exc:
        raise MalformedOutputError(f"Structured output validation failed for {schema.__name__}: {exc}") from exc


def get_structured_chat_model(
    *,
    model_name: str,
    schema: type[ModelT],
    temperature: float = 0.0,
    timeout: int = _DEFAULT_TIMEOUT,
    max_retries: int = _DEFAULT_MAX_RETRIES,
    max_completion_tokens: int | None = None,
    method: StructuredOutputMethod = "function_calling",
    strict: bool = False,
    include_raw: bool = True,
    repo_root: Path | None = None,
) -> StructuredOutputAdapter[ModelT]:
    """Build a StructuredOutputAdapter bound to ``schema`` via ``ChatOpenAI.with_structured_output``.

    ``include_raw`` defaults to True so parsing failures come back inside the
    envelope and surface as ``MalformedOutputError`` rather than as an
    exception from the client.

    Raises:
        ValueError: If strict=True with method='json_mode'.
        RuntimeError: If OPENAI_API_KEY is not available.
    """
    if method == "json_mode" and strict:
        raise ValueError("strict=True is not valid for method='json_mode'")

    model = get_chat_model(
        model_name=model_name,
        temperature=temperature,
        timeout=timeout,
        max_retries=max_retries,
        max_completion_tokens=max_completion_tokens,
        repo_root=repo_root,
    )
    runnable = model.with_structured_output(
        schema,
        method=method,
        include_raw=include_raw,
        strict=strict if method != "json_mode" else None,
    )
    return StructuredOutputAdapter(schema=schema, runnable=runnable)


# ---------------------------------------------------------------------------
# Generation service contract
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class GenerationRequest:
    """One call to the generation service: who is asking, what to say, what shape to return."""

    stage: str
    role: str
    prompt: str
    schema: type[BaseModel]
    strict: bool = False
    payload: dict[str, Any] = dataclasses.field(default_factory=dict)

    def stricter(self) -> "GenerationRequest":
        return dataclasses.replace(self, strict=True)


class GenerationService(Protocol):
    async def invoke(self, request: GenerationRequest) -> BaseModel:
        """Return an instance of ``request.schema`` or raise ``MalformedOutputError``."""
        ...


class LLMGenerationService:
    """Generation service backed by OpenAI chat models, one cached adapter per (model, schema)."""

    def __init__(
        self,
        *,
        selection: RuntimeModelSelection,
        temperature: float = 0.0,
        repo_root: Path | None = None,
    ) -> None:
        self.selection = selection
        self.temperature = temperature
        self.repo_root = repo_root
        self._adapters: dict[tuple[str, type[BaseModel]], StructuredOutputAdapter[Any]] = {}

    def _adapter(self, model_name: str, schema: type[BaseModel]) -> StructuredOutputAdapter[Any]:
        key = (model_name, schema)
        if key not in self._adapters:
            self._adapters[key] = get_structured_chat_model(
                model_name=model_name,
                schema=schema,
                temperature=self.temperature,
                repo_root=self.repo_root,
            )
        return self._adapters[key]

    async def invoke(self, request: GenerationRequest) -> BaseModel:
        model_name = self.selection.resolve(request.stage, request.role)
        prompt = request.prompt + (STRICT_JSON_INSTRUCTION if request.strict else "")
        logger.debug("Invoking %s for %s/%s (strict=%s)", model_name, request.stage, request.role, request.strict)
        return await self._adapter(model_name, request.schema).ainvoke(prompt)


async def invoke_with_parse_retry(
    service: GenerationService,
    request: GenerationRequest,
    *,
    fallback: ModelT | None = None,
) -> BaseModel:
    """Invoke once; on malformed output retry once with the stricter prompt.

    If the stricter attempt is malformed too, return ``fallback`` when the
    caller supplied one, otherwise re-raise the parse error.
    """
    try:
        return await service.invoke(request)
    except MalformedOutputError as first:
        logger.warning("Malformed output from %s/%s, retrying strictly: %s", request.stage, request.role, first)
    try:
        return await service.invoke(request.stricter())
    except MalformedOutputError as second:
        if fallback is not None:
            logger.warning("Using fallback output for %s/%s after strict retry: %s", request.stage, request.role, second)
            return fallback
        raise
