from __future__ import annotations

import asyncio
import logging
import os
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence

import openai
from dotenv import load_dotenv
from openai import AsyncOpenAI

from .errors import CallTimeout, ProviderError, RateLimited, RemoteCallError, Unauthorized
from .tokens import estimate_message_tokens

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"
_ANSWER_OPEN_RE = re.compile(r"<answer>", re.IGNORECASE)
_ANSWER_CLOSE_RE = re.compile(r"</answer>", re.IGNORECASE)

Message = Dict[str, str]


class ModelVariant(str, Enum):
    STANDARD = "standard"
    REASONING = "reasoning"


@dataclass(frozen=True)
class ModelSpec:
    name: str
    variant: ModelVariant = ModelVariant.STANDARD
    reasoning_effort: str = "medium"

    @property
    def is_reasoning(self) -> bool:
        return self.variant is ModelVariant.REASONING


@dataclass
class ClientConfig:
    api_key: str
    base_url: str = DEFAULT_BASE_URL
    timeout_seconds: float = 60.0
    max_retries: int = 2
    backoff_base: float = 1.0
    backoff_cap: float = 8.0
    referer: Optional[str] = None
    title: Optional[str] = None
    # model name -> reasoning effort; models listed here are the reasoning variant.
    reasoning_models: Dict[str, str] = field(default_factory=dict)
    reasoning_top_p: float = 0.95
    log_token_estimates: bool = False

    @classmethod
    def from_env(cls, **overrides: Any) -> "ClientConfig":
        load_dotenv()
        api_key = overrides.pop("api_key", None) or os.getenv("OPENROUTER_API_KEY")
        if not api_key:
            raise RuntimeError("OPENROUTER_API_KEY is not set in the environment.")
        reasoning = {
            name.strip(): os.getenv("DILIGENCE_REASONING_EFFORT", "medium")
            for name in os.getenv("DILIGENCE_REASONING_MODELS", "").split(",")
            if name.strip()
        }
        kwargs: Dict[str, Any] = {
            "api_key": api_key,
            "base_url": os.getenv("OPENROUTER_BASE_URL", DEFAULT_BASE_URL),
            "timeout_seconds": float(os.getenv("DILIGENCE_TIMEOUT_SECONDS", "60")),
            "max_retries": int(os.getenv("DILIGENCE_MAX_RETRIES", "2")),
            "referer": os.getenv("OPENROUTER_REFERER"),
            "title": os.getenv("OPENROUTER_TITLE"),
            "reasoning_models": reasoning,
        }
        kwargs.update(overrides)
        return cls(**kwargs)

    def model(self, name: str) -> ModelSpec:
        """Resolve a model identifier to its spec; callers do this once and keep the spec."""
        effort = self.reasoning_models.get(name)
        if effort is None:
            return ModelSpec(name=name)
        return ModelSpec(name=name, variant=ModelVariant.REASONING, reasoning_effort=effort)


def extract_final_answer(text: str) -> str:
    """Content of the last <answer> block; text without a delimiter passes through unchanged."""
    openings = list(_ANSWER_OPEN_RE.finditer(text))
    if not openings:
        return text
    body = text[openings[-1].end() :]
    closing = _ANSWER_CLOSE_RE.search(body)
    if closing:
        body = body[: closing.start()]
    return body.strip()


def translate_error(exc: openai.APIError, call_context: str = "") -> RemoteCallError:
    prefix = f"{call_context}: " if call_context else ""
    status = getattr(exc, "status_code", None)
    message = f"{prefix}{exc.message if getattr(exc, 'message', None) else exc!r}"
    if isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError)) or status == 401:
        return Unauthorized(message, status_code=status)
    if isinstance(exc, openai.RateLimitError) or status == 429:
        return RateLimited(message, status_code=status)
    if isinstance(exc, openai.APITimeoutError) or status == 408:
        return CallTimeout(message, status_code=status)
    if isinstance(exc, (openai.BadRequestError, openai.NotFoundError, openai.UnprocessableEntityError)):
        return ProviderError(message, status_code=status, retryable=False)
    return ProviderError(message, status_code=status)


class RemoteCallClient:
    """Chat-completions client with a bounded per-call timeout and exponential-backoff retries.

    The instance is built once from a ClientConfig and injected into every component that
    needs it. It raises the error taxonomy in ``core.errors``; answer-level fallback text
    is the caller's business.
    """

    def __init__(
        self,
        config: ClientConfig,
        *,
        http_client: Any = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config
        headers: Dict[str, str] = {}
        if config.referer:
            headers["HTTP-Referer"] = config.referer
        if config.title:
            headers["X-Title"] = config.title
        self._client = AsyncOpenAI(
            api_key=config.api_key,
            base_url=config.base_url,
            timeout=config.timeout_seconds,
            max_retries=0,
            default_headers=headers or None,
            http_client=http_client,
        )
        self._sleep = sleep
        self.telemetry: Dict[str, int] = {"calls": 0, "attempts": 0, "input_tokens": 0, "output_tokens": 0}

    async def aclose(self) -> None:
        await self._client.close()

    async def call(
        self,
        messages: Sequence[Message],
        model: ModelSpec,
        temperature: float = 0.3,
        max_tokens: int = 1500,
        *,
        call_context: str = "",
    ) -> str:
        label = call_context or model.name
        request_args: Dict[str, Any] = {
            "model": model.name,
            "messages": [dict(msg) for msg in messages],
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if model.is_reasoning:
            request_args["top_p"] = self.config.reasoning_top_p
            request_args["extra_body"] = {"reasoning": {"effort": model.reasoning_effort}}
        if self.config.log_token_estimates:
            estimated = estimate_message_tokens(request_args["messages"], max_tokens, model.name)
            logger.info("[tokens] %s: est ~%d tokens (pre-call)", label, estimated)

        self.telemetry["calls"] += 1
        total_attempts = max(self.config.max_retries, 0) + 1
        for attempt in range(total_attempts):
            self.telemetry["attempts"] += 1
            started = time.time()
            cause: Optional[BaseException] = None
            try:
                raw = await asyncio.wait_for(self._complete(request_args, label), timeout=self.config.timeout_seconds)
            except asyncio.TimeoutError as exc:
                error: RemoteCallError = CallTimeout(f"{label}: no response within {self.config.timeout_seconds:.0f}s")
                cause = exc
            except openai.APIError as exc:
                error = translate_error(exc, label)
                cause = exc
            except RemoteCallError as exc:
                error = exc
            else:
                logger.debug("[call] %s: attempt %d ok in %.1fs", label, attempt + 1, time.time() - started)
                return extract_final_answer(raw) if model.is_reasoning else raw

            error.attempts = attempt + 1
            if not error.retryable:
                logger.error("[call] %s: non-retryable %s: %s", label, type(error).__name__, error)
                raise error from cause
            if attempt == total_attempts - 1:
                logger.error("[call] %s: failed after %d attempts (%s)", label, total_attempts, error)
                raise error from cause
            backoff = min(self.config.backoff_base * (2 ** attempt), self.config.backoff_cap)
            logger.warning(
                "[retry] %s: %s on attempt %d/%d; retrying in %.1fs",
                label,
                type(error).__name__,
                attempt + 1,
                total_attempts,
                backoff,
            )
            await self._sleep(backoff)
        raise AssertionError("unreachable")

    async def _complete(self, request_args: Dict[str, Any], label: str) -> str:
        resp = await self._client.chat.completions.create(**request_args)
        usage = getattr(resp, "usage", None)
        if usage is not None:
            self.telemetry["input_tokens"] += getattr(usage, "prompt_tokens", 0) or 0
            self.telemetry["output_tokens"] += getattr(usage, "completion_tokens", 0) or 0
        choices = getattr(resp, "choices", None) or []
        content = choices[0].message.content if choices and choices[0].message else None
        if not content:
            raise ProviderError(f"{label}: no text content in response")
        return str(content)
