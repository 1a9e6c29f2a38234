"""
Remote text enhancement through litellm.

``EnhancementClient.enhance`` never raises for provider problems: every
outcome other than cancellation comes back as an ``EnhancementResult``
carrying either the enhanced text or an ``EnhancementErrorKind``.
Cancellation propagates as ``asyncio.CancelledError``.
"""

import asyncio
import os
import time
import warnings
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Tuple

import litellm
from litellm import acompletion, completion_cost
from pydantic import BaseModel, ConfigDict, Field, model_validator

from ...utils.logger import get_logger
from ..settings.config import (
    DEFAULT_BASE_TIMEOUT,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_DELAY,
    DEFAULT_RATE_LIMIT_INTERVAL,
)

logger = get_logger(__name__)

SleepFn = Callable[[float], Awaitable[Any]]


# provider id -> (display name, api_base, credential env var, default model)
PROVIDERS: Dict[str, tuple] = {
    "openai": ("OpenAI", None, "OPENAI_API_KEY", "gpt-4o-mini"),
    "anthropic": ("Anthropic", None, "ANTHROPIC_API_KEY", "claude-3-5-haiku-latest"),
    "openrouter": ("OpenRouter", None, "OPENROUTER_API_KEY", "openrouter/auto"),
    "ollama": ("Ollama (Local)", "http://localhost:11434", None, "ollama/llama3.2"),
    "gemini": ("Google Gemini", None, "GEMINI_API_KEY", "gemini/gemini-2.0-flash"),
    "other": ("Other", None, None, None),
}


class EnhancementErrorKind(Enum):
    NOT_CONFIGURED = "not_configured"
    EMPTY_TEXT = "empty_text"
    INVALID_RESPONSE = "invalid_response"
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"


class ProviderConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    model: str = ""
    api_key: Optional[str] = None
    api_base: Optional[str] = None


class RetryPolicy(BaseModel):
    model_config = ConfigDict(extra="ignore")

    max_attempts: int = Field(default=DEFAULT_MAX_ATTEMPTS, ge=1, le=10)
    base_timeout: float = Field(default=DEFAULT_BASE_TIMEOUT, gt=0)
    max_delay: float = Field(default=DEFAULT_MAX_DELAY, gt=0)

    @model_validator(mode="after")
    def ceiling_not_below_base(self):
        if self.max_delay < self.base_timeout:
            raise ValueError("max_delay must be >= base_timeout")
        return self

    def delay_before(self, attempt: int) -> float:
        """Backoff before ``attempt`` (1-indexed). The first attempt has none."""
        if attempt <= 1:
            return 0.0
        return min(self.base_timeout * (2 ** (attempt - 2)), self.max_delay)


@dataclass
class EnhancementRequest:
    text: str
    prompt: str
    provider: str
    model: Optional[str] = None


@dataclass
class EnhancementResult:
    text: Optional[str] = None
    error: Optional[EnhancementErrorKind] = None
    detail: Optional[str] = None
    attempts: int = 0
    cost_usd: Optional[float] = None
    usage: Optional[dict] = None  # prompt_tokens, completion_tokens, total_tokens

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def failure(
        cls, error: EnhancementErrorKind, detail: str = "", attempts: int = 0
    ) -> "EnhancementResult":
        return cls(error=error, detail=detail or None, attempts=attempts)


class RateLimiter:
    """
    Minimum interval between call starts, per provider.

    Each caller reserves its start slot inside the lock and then sleeps
    outside it, so one provider's wait never delays another provider.
    """

    def __init__(
        self,
        min_interval: float = DEFAULT_RATE_LIMIT_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
        sleep: SleepFn = asyncio.sleep,
    ):
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._last_call: Dict[str, float] = {}
        self._lock = asyncio.Lock()

    async def wait(self, provider: str) -> float:
        """Wait for the provider's next slot. Returns the seconds waited."""
        async with self._lock:
            now = self._clock()
            last = self._last_call.get(provider)
            slot = now if last is None else max(now, last + self.min_interval)
            self._last_call[provider] = slot

        delay = slot - now
        if delay > 0:
            logger.debug(f"Rate limiting '{provider}': waiting {delay:.2f}s")
            await self._sleep(delay)
        return delay


def classify_failure(exc: BaseException) -> Tuple[bool, EnhancementErrorKind]:
    """Return ``(transient, kind)`` for an exception raised by a provider call."""
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, litellm.Timeout)):
        return True, EnhancementErrorKind.TIMEOUT
    if isinstance(exc, litellm.RateLimitError):
        return True, EnhancementErrorKind.RATE_LIMITED

    status = getattr(exc, "status_code", None)
    if isinstance(status, int):
        if status == 429:
            return True, EnhancementErrorKind.RATE_LIMITED
        if status == 408 or status >= 500:
            return True, EnhancementErrorKind.TIMEOUT
        if 400 <= status < 500:
            return False, EnhancementErrorKind.INVALID_RESPONSE

    if isinstance(exc, (litellm.APIConnectionError, ConnectionError)):
        return True, EnhancementErrorKind.TIMEOUT
    return False, EnhancementErrorKind.INVALID_RESPONSE


def extract_content(response: Any) -> Optional[str]:
    """Pull the message text out of an OpenAI-style chat response."""
    try:
        choice = response.choices[0]
        message = choice.message
        content = message.content
    except (AttributeError, IndexError, KeyError, TypeError):
        try:
            content = response["choices"][0]["message"]["content"]
        except (IndexError, KeyError, TypeError):
            return None

    if not isinstance(content, str) or not content.strip():
        return None
    return content.strip()


def format_model_name(model: str, provider: str) -> str:
    known_prefixes = (
        "openrouter/",
        "ollama/",
        "gemini/",
        "openai/",
        "anthropic/",
        "azure/",
        "huggingface/",
    )

    if model.startswith(known_prefixes):
        return model

    prefix_map = {
        "openrouter": "openrouter/",
        "ollama": "ollama/",
        "gemini": "gemini/",
    }

    prefix = prefix_map.get(provider)
    if prefix:
        return f"{prefix}{model}"

    return model


class EnhancementClient:
    """
    Sends transcripts to a remote provider for enhancement.

    Transient failures (timeouts, connection errors, 5xx, 429) are retried
    with exponential backoff. Other failures return immediately.
    """

    def __init__(
        self,
        provider_configs: Optional[Mapping[str, ProviderConfig]] = None,
        retry_policy: Optional[RetryPolicy] = None,
        rate_limiter: Optional[RateLimiter] = None,
        sleep: SleepFn = asyncio.sleep,
        environ: Optional[Mapping[str, str]] = None,
    ):
        self.provider_configs: Dict[str, ProviderConfig] = dict(provider_configs or {})
        self.retry_policy = retry_policy or RetryPolicy()
        self.rate_limiter = rate_limiter or RateLimiter(sleep=sleep)
        self._sleep = sleep
        self._environ = environ if environ is not None else os.environ

    def get_credential(self, provider: str) -> Optional[str]:
        config = self.provider_configs.get(provider)
        if config is not None and config.api_key:
            return config.api_key
        env_var = PROVIDERS.get(provider, (None, None, None, None))[2]
        return self._environ.get(env_var) if env_var else None

    def is_configured(self, provider: str) -> bool:
        if provider not in PROVIDERS:
            return False
        if PROVIDERS[provider][2] is not None and not self.get_credential(provider):
            return False
        return self._resolve_model(provider, None) is not None

    def _resolve_model(self, provider: str, requested: Optional[str]) -> Optional[str]:
        config = self.provider_configs.get(provider)
        model = requested or (config.model if config else "") or PROVIDERS[provider][3]
        if not model:
            return None
        return format_model_name(model, provider)

    def _build_call(self, request: EnhancementRequest, model: str) -> dict:
        model_info = litellm.model_cost.get(model, {})
        if model_info.get("supports_system_messages", True):
            messages = [
                {"role": "system", "content": request.prompt},
                {"role": "user", "content": request.text},
            ]
        else:
            messages = [
                {"role": "user", "content": f"{request.prompt}\n\n{request.text}"}
            ]
            logger.debug(f"Merged system prompt with user prompt for {model}")

        kwargs = {
            "model": model,
            "messages": messages,
            "timeout": self.retry_policy.base_timeout,
            "max_retries": 0,
        }

        api_key = self.get_credential(request.provider)
        if api_key:
            kwargs["api_key"] = api_key

        config = self.provider_configs.get(request.provider)
        api_base = (config.api_base if config else None) or PROVIDERS[request.provider][1]
        if api_base:
            kwargs["api_base"] = api_base

        return kwargs

    async def enhance(self, request: EnhancementRequest) -> EnhancementResult:
        if request.provider not in PROVIDERS:
            logger.warning(f"Unknown enhancement provider '{request.provider}'")
            return EnhancementResult.failure(
                EnhancementErrorKind.NOT_CONFIGURED,
                f"Unknown provider '{request.provider}'",
            )
        if PROVIDERS[request.provider][2] is not None and not self.get_credential(
            request.provider
        ):
            return self._not_configured(request.provider)
        model = self._resolve_model(request.provider, request.model)
        if model is None:
            return self._not_configured(request.provider)

        if not request.text or not request.text.strip():
            return EnhancementResult.failure(
                EnhancementErrorKind.EMPTY_TEXT, "Transcript is empty"
            )

        kwargs = self._build_call(request, model)
        policy = self.retry_policy

        logger.info(
            f"Enhancing {len(request.text)} chars with {model} "
            f"(up to {policy.max_attempts} attempts)"
        )

        last_kind = EnhancementErrorKind.TIMEOUT
        last_detail = ""
        attempts = 0

        for attempt in range(1, policy.max_attempts + 1):
            if attempt > 1:
                delay = policy.delay_before(attempt)
                logger.info(
                    f"Retrying enhancement in {delay:.1f}s "
                    f"(attempt {attempt}/{policy.max_attempts})"
                )
                await self._sleep(delay)

            await self.rate_limiter.wait(request.provider)
            attempts = attempt

            try:
                response = await asyncio.wait_for(
                    acompletion(**kwargs), timeout=policy.base_timeout
                )
            except asyncio.CancelledError:
                logger.info(f"Enhancement cancelled during attempt {attempt}")
                raise
            except Exception as e:
                transient, kind = classify_failure(e)
                last_kind, last_detail = kind, str(e) or type(e).__name__
                if not transient:
                    logger.error(f"Enhancement failed permanently: {last_detail}")
                    return EnhancementResult.failure(kind, last_detail, attempts)
                logger.warning(
                    f"Enhancement attempt {attempt}/{policy.max_attempts} failed "
                    f"({kind.value}): {last_detail}"
                )
                continue

            content = extract_content(response)
            if content is None:
                logger.error("Enhancement response did not contain any text")
                return EnhancementResult.failure(
                    EnhancementErrorKind.INVALID_RESPONSE,
                    "Response did not contain message content",
                    attempts,
                )

            cost = self._cost(response)
            usage = self._usage(response)
            logger.info(
                f"Enhancement complete: {len(request.text)} -> {len(content)} chars, cost=${cost:.6f}"
                if cost
                else f"Enhancement complete: {len(request.text)} -> {len(content)} chars"
            )
            return EnhancementResult(
                text=content, attempts=attempts, cost_usd=cost, usage=usage
            )

        logger.error(
            f"Enhancement gave up after {attempts} attempts ({last_kind.value})"
        )
        return EnhancementResult.failure(last_kind, last_detail, attempts)

    def _not_configured(self, provider: str) -> EnhancementResult:
        logger.warning(f"Enhancement provider '{provider}' is not configured")
        return EnhancementResult.failure(
            EnhancementErrorKind.NOT_CONFIGURED,
            f"No credential or model configured for '{provider}'",
        )

    @staticmethod
    def _cost(response: Any) -> Optional[float]:
        try:
            with warnings.catch_warnings():
                warnings.filterwarnings(
                    "ignore",
                    message="Pydantic serializer warnings",
                    category=UserWarning,
                )
                cost = completion_cost(completion_response=response)
        except Exception:
            return None
        return cost if isinstance(cost, (int, float)) else None

    @staticmethod
    def _usage(response: Any) -> Optional[dict]:
        usage = getattr(response, "usage", None)
        if not usage:
            return None
        return {
            "prompt_tokens": getattr(usage, "prompt_tokens", None),
            "completion_tokens": getattr(usage, "completion_tokens", None),
            "total_tokens": getattr(usage, "total_tokens", None),
        }
