"""Generation service adapters and the shared retry policy."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Protocol

import openai
from openai import AsyncOpenAI

from config import require_openai_api_key, settings

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]

TRANSIENT_STATUS_CODES = {503, 529}
_TRANSIENT_HINTS = (
    "503",
    "service unavailable",
    "overloaded",
    "temporarily unavailable",
)


class GenerationService(Protocol):
    async def send(self, prompt: str) -> str: ...


class GenerationServiceError(Exception):
    """Failure reported by the upstream generation service."""

    def __init__(self, message: str, *, transient: bool = False, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.transient = transient
        self.status_code = status_code


class GenerationUnavailableError(RuntimeError):
    """Raised when no generation provider is configured."""


class GenerationFailed(Exception):
    """Raised once the retry budget for a call site is exhausted."""

    def __init__(self, context: str, attempts: int, last_error: Optional[BaseException]) -> None:
        detail = str(last_error) if last_error else "Unknown error"
        super().__init__(f"{context} failed after {attempts} attempt(s). Last error: {detail}")
        self.context = context
        self.attempts = attempts
        self.last_error = last_error


def is_transient_error(exc: BaseException) -> bool:
    """Return True when an upstream failure signals server overload."""
    if isinstance(exc, GenerationServiceError):
        if exc.transient:
            return True
        if exc.status_code is not None:
            return exc.status_code in TRANSIENT_STATUS_CODES
    message = str(exc).lower()
    return any(hint in message for hint in _TRANSIENT_HINTS)


class OpenAIGenerationService:
    """Chat-completions adapter returning the raw JSON text of the reply."""

    def __init__(
        self,
        api_key: str,
        *,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_output_tokens: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
    ) -> None:
        self.client = AsyncOpenAI(
            api_key=api_key,
            timeout=float(timeout_seconds or settings.GENERATION_TIMEOUT_SECONDS),
            max_retries=0,
        )
        self.model = model or settings.GENERATION_MODEL
        self.temperature = settings.GENERATION_TEMPERATURE if temperature is None else temperature
        self.max_output_tokens = int(max_output_tokens or settings.GENERATION_MAX_OUTPUT_TOKENS)

    async def send(self, prompt: str) -> str:
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": prompt}],
                temperature=self.temperature,
                max_tokens=self.max_output_tokens,
                response_format={"type": "json_object"},
            )
        except openai.APIStatusError as exc:
            raise GenerationServiceError(
                f"{exc.status_code}: {exc.message}",
                transient=exc.status_code in TRANSIENT_STATUS_CODES,
                status_code=exc.status_code,
            ) from exc
        except openai.APITimeoutError as exc:
            raise GenerationServiceError(f"Upstream timeout: {exc}", transient=True) from exc
        except openai.APIConnectionError as exc:
            raise GenerationServiceError(f"Upstream connection error: {exc}", transient=True) from exc

        choices = response.choices or []
        content = choices[0].message.content if choices else None
        if not content:
            raise GenerationServiceError("Upstream returned an empty response", transient=False)
        return content


def build_generation_service() -> GenerationService:
    """Return the configured provider or raise ``GenerationUnavailableError``."""
    try:
        api_key = require_openai_api_key()
    except ValueError as exc:
        raise GenerationUnavailableError(str(exc)) from exc
    return OpenAIGenerationService(api_key)


class RetryingGenerationClient:
    """Bounded retry around one generation call.

    Only transient failures are retried; the wait before attempt ``n + 1`` is
    ``n * backoff_seconds``. Non-transient failures abort immediately.
    """

    def __init__(
        self,
        service: GenerationService,
        *,
        max_retries: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.service = service
        self.max_retries = max(int(settings.GENERATION_MAX_RETRIES if max_retries is None else max_retries), 1)
        self.backoff_seconds = float(
            settings.GENERATION_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds
        )
        self.sleep = sleep

    async def generate(self, prompt: str, context: str) -> str:
        last_error: Optional[BaseException] = None
        attempts = 0

        for attempt in range(1, self.max_retries + 1):
            attempts = attempt
            try:
                logger.debug("%s - attempt %s/%s", context, attempt, self.max_retries)
                text = await self.service.send(prompt)
                if attempt > 1:
                    logger.info("%s - succeeded on attempt %s", context, attempt)
                return text
            except Exception as exc:
                last_error = exc
                if not is_transient_error(exc):
                    logger.warning("%s - non-retryable failure on attempt %s: %s", context, attempt, exc)
                    break
                if attempt >= self.max_retries:
                    logger.warning("%s - transient failure on final attempt %s: %s", context, attempt, exc)
                    break
                delay = attempt * self.backoff_seconds
                logger.warning(
                    "%s - transient failure on attempt %s/%s: %s. Retrying in %ss...",
                    context,
                    attempt,
                    self.max_retries,
                    exc,
                    delay,
                )
                await self.sleep(delay)

        raise GenerationFailed(context, attempts, last_error)
