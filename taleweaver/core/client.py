"""
LLM backend for Taleweaver.

This module provides the backend boundary the engine and plugins talk to,
and the default backend for OpenAI-compatible servers (KoboldCpp, Ollama,
llama.cpp, hosted APIs).

Features:
- Structured JSON extraction via instructor
- Streaming narration with progress callbacks
- <think> tag parsing for reasoning models
- Abort of the in-flight request
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional, TypeVar

import instructor
import openai
from dotenv import load_dotenv
from openai import AsyncOpenAI
from pydantic import BaseModel, Field, ValidationError

try:
    from instructor.core import InstructorRetryException
except ImportError:  # instructor releases before the core package
    from instructor.exceptions import InstructorRetryException

from taleweaver.core.errors import BackendAborted, BackendFailure, SchemaValidationFailure
from taleweaver.core.prompts import Prompt

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

# Called with (visible text delta, tokens received so far)
TokenCallback = Callable[[str, int], None]

# Sampler parameters the OpenAI client accepts as keyword arguments.
# Anything else (min_p, dry_multiplier, ...) goes into the request body as-is.
OPENAI_PARAMS = frozenset({
    "temperature", "top_p", "max_tokens", "presence_penalty",
    "frequency_penalty", "seed", "stop",
})


class ThinkTagParser:
    """
    Stateful parser to detect and separate <think>...</think> content.

    Tags may span multiple chunks. Thinking content never becomes part of
    the narration.
    """

    OPEN_TAG = "<think>"
    CLOSE_TAG = "</think>"

    def __init__(self) -> None:
        self._buffer: str = ""
        self._in_think: bool = False

    def reset(self) -> None:
        """Reset parser state for a new stream."""
        self._buffer = ""
        self._in_think = False

    def feed(self, chunk: str) -> tuple[str, str]:
        """
        Process a chunk of streaming text.

        Returns:
            Tuple of (visible_text, thinking_text)
        """
        self._buffer += chunk
        visible: list[str] = []
        thinking: list[str] = []

        while True:
            tag = self.CLOSE_TAG if self._in_think else self.OPEN_TAG
            target = thinking if self._in_think else visible
            match = re.search(re.escape(tag), self._buffer, re.IGNORECASE)
            if match:
                target.append(self._buffer[:match.start()])
                self._buffer = self._buffer[match.end():]
                self._in_think = not self._in_think
                continue

            # Hold back enough characters to complete a split tag
            safe_length = len(self._buffer) - (len(tag) - 1)
            if safe_length > 0:
                target.append(self._buffer[:safe_length])
                self._buffer = self._buffer[safe_length:]
            break

        return "".join(visible), "".join(thinking)

    def flush(self) -> tuple[str, str]:
        """Flush remaining buffered content at end of stream."""
        remaining = self._buffer
        self._buffer = ""

        if self._in_think:
            # Unclosed think tag
            self._in_think = False
            return "", remaining
        return remaining, ""


class ConnectionSettings(BaseModel):
    """
    Connection and logging settings for an OpenAI-compatible server.

    GameState carries the same fields, so either can be a settings source.
    """

    api_url: str = "http://localhost:5001/v1/"
    api_key: str = ""
    model: str = ""
    generation_params: dict[str, Any] = Field(default_factory=dict)
    narration_params: dict[str, Any] = Field(default_factory=dict)
    log_prompts: bool = False
    log_params: bool = False
    log_responses: bool = False

    @classmethod
    def from_env(cls) -> ConnectionSettings:
        """Settings from LLM_BASE_URL, LLM_API_KEY and LLM_MODEL."""
        defaults = cls()
        return cls(
            api_url=os.getenv("LLM_BASE_URL", defaults.api_url),
            api_key=os.getenv("LLM_API_KEY", defaults.api_key),
            model=os.getenv("LLM_MODEL", defaults.model),
        )


class Backend(ABC):
    """
    The LLM boundary.

    Narration and structured objects are the only two request kinds.
    Every failure surfaces as a BackendFailure subclass; an aborted request
    surfaces as BackendAborted.
    """

    @abstractmethod
    async def get_narration(self, prompt: Prompt, on_token: Optional[TokenCallback] = None) -> str:
        """Generate free-form narration."""

    @abstractmethod
    async def get_object(
        self,
        prompt: Prompt,
        schema: type[T],
        on_token: Optional[TokenCallback] = None,
    ) -> T:
        """Generate an object validated against `schema`."""

    @abstractmethod
    def abort(self) -> None:
        """Abort the in-flight request, if any."""

    def is_abort_error(self, error: BaseException) -> bool:
        return isinstance(error, BackendAborted)


class OpenAIBackend(Backend):
    """
    Backend for any OpenAI-compatible chat completions endpoint.

    Connection settings are read from `settings_source` on every request,
    so edits to the game state take effect without rebuilding the backend.
    """

    NARRATION_MAX_TOKENS = 1000
    OBJECT_MAX_TOKENS = 2000

    def __init__(
        self,
        settings_source: Optional[Callable[[], Any]] = None,
        max_retries: int = 2,
    ) -> None:
        self._settings_source = settings_source or ConnectionSettings.from_env
        self.max_retries = max_retries
        self._inflight: set[asyncio.Task] = set()
        self._aborted: set[asyncio.Task] = set()
        self._client: Optional[AsyncOpenAI] = None
        self._client_key: Optional[tuple[str, str]] = None

    def _settings(self) -> Any:
        return self._settings_source()

    def _get_client(self, settings: Any) -> AsyncOpenAI:
        key = (settings.api_url, settings.api_key or "not-needed")
        if self._client is None or self._client_key != key:
            self._client = AsyncOpenAI(base_url=key[0], api_key=key[1])
            self._client_key = key
        return self._client

    @staticmethod
    def _split_params(params: dict[str, Any]) -> tuple[dict[str, Any], dict[str, Any]]:
        """Split sampler params into client kwargs and extra request body."""
        kwargs = {k: v for k, v in params.items() if k in OPENAI_PARAMS}
        extra = {k: v for k, v in params.items() if k not in OPENAI_PARAMS}
        return kwargs, extra

    def _log_request(self, settings: Any, prompt: Prompt, params: dict[str, Any]) -> None:
        if settings.log_prompts:
            logger.info("Prompt:\n%s\n\n%s", prompt.system, prompt.user)
        if settings.log_params:
            logger.info("Params: model=%s %s", settings.model, params)

    async def _run(self, coro: Any) -> Any:
        """
        Run a request as its own task so abort() can cancel just that task.

        Cancellation caused by abort() becomes BackendAborted; cancellation
        of the caller propagates unchanged.
        """
        task = asyncio.ensure_future(coro)
        self._inflight.add(task)
        try:
            return await task
        except asyncio.CancelledError:
            if task in self._aborted:
                raise BackendAborted() from None
            raise
        finally:
            self._inflight.discard(task)
            self._aborted.discard(task)

    def abort(self) -> None:
        for task in list(self._inflight):
            if not task.done():
                self._aborted.add(task)
                task.cancel()
        if self._aborted:
            logger.info("Aborting %d backend request(s)", len(self._aborted))

    async def get_narration(self, prompt: Prompt, on_token: Optional[TokenCallback] = None) -> str:
        settings = self._settings()
        params = dict(settings.narration_params)
        self._log_request(settings, prompt, params)
        text = await self._run(self._stream_narration(settings, prompt, params, on_token))
        if settings.log_responses:
            logger.info("Response:\n%s", text)
        return text

    async def _stream_narration(
        self,
        settings: Any,
        prompt: Prompt,
        params: dict[str, Any],
        on_token: Optional[TokenCallback],
    ) -> str:
        kwargs, extra = self._split_params(params)
        kwargs.setdefault("max_tokens", self.NARRATION_MAX_TOKENS)
        parser = ThinkTagParser()
        response = ""
        count = 0

        if on_token is not None:
            on_token("", 0)

        try:
            stream = await self._get_client(settings).chat.completions.create(
                model=settings.model,
                messages=prompt.to_messages(),
                stream=True,
                extra_body=extra or None,
                **kwargs,
            )
            async for chunk in stream:
                if not chunk.choices:
                    continue
                choice = chunk.choices[0]
                if choice.delta.content:
                    visible, _thinking = parser.feed(choice.delta.content)
                    count += 1
                    response += visible
                    if on_token is not None:
                        on_token(visible, count)
                if choice.finish_reason:
                    break
        except openai.APIError as e:
            raise BackendFailure(f"Narration request failed: {e}") from e

        visible, _thinking = parser.flush()
        response += visible
        return response.strip()

    async def get_object(
        self,
        prompt: Prompt,
        schema: type[T],
        on_token: Optional[TokenCallback] = None,
    ) -> T:
        settings = self._settings()
        params = dict(settings.generation_params)
        self._log_request(settings, prompt, params)
        if on_token is not None:
            on_token("", 0)

        result = await self._run(self._create_object(settings, prompt, schema, params))

        if on_token is not None:
            on_token("", 1)
        if settings.log_responses:
            logger.info("Response:\n%s", result.model_dump_json(indent=2))
        return result

    async def _create_object(
        self,
        settings: Any,
        prompt: Prompt,
        schema: type[T],
        params: dict[str, Any],
    ) -> T:
        kwargs, extra = self._split_params(params)
        kwargs.setdefault("max_tokens", self.OBJECT_MAX_TOKENS)
        client = instructor.from_openai(self._get_client(settings), mode=instructor.Mode.JSON)

        try:
            return await client.chat.completions.create(
                model=settings.model,
                messages=prompt.to_messages(),
                response_model=schema,
                max_retries=self.max_retries,
                extra_body=extra or None,
                **kwargs,
            )
        except (InstructorRetryException, ValidationError) as e:
            raise SchemaValidationFailure(
                f"Reply did not match {schema.__name__}: {e}"
            ) from e
        except openai.APIError as e:
            raise BackendFailure(f"Object request failed: {e}") from e
