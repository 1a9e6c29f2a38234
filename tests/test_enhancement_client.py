"""
Tests for the enhancement client.

litellm's acompletion is patched; sleeps go through a fake clock so retry
and rate-limit timing is observable without waiting.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from pydantic import ValidationError

from voicepipe.core.enhancement.client import (
    EnhancementClient,
    EnhancementErrorKind,
    EnhancementRequest,
    ProviderConfig,
    RateLimiter,
    RetryPolicy,
    classify_failure,
    extract_content,
    format_model_name,
)

from conftest import FakeTime

ACOMPLETION = "voicepipe.core.enhancement.client.acompletion"


class StatusError(Exception):
    def __init__(self, status_code, message="provider error"):
        super().__init__(message)
        self.status_code = status_code


def make_response(content="Fixed text"):
    response = MagicMock()
    response.choices = [MagicMock()]
    response.choices[0].message.content = content
    response.usage = None
    return response


def make_client(fake_time, max_attempts=3, base_timeout=1.0, max_delay=1.5, min_interval=0.0, **kwargs):
    return EnhancementClient(
        provider_configs={"openai": ProviderConfig(model="gpt-4o-mini", api_key="test-key")},
        retry_policy=RetryPolicy(
            max_attempts=max_attempts, base_timeout=base_timeout, max_delay=max_delay
        ),
        rate_limiter=RateLimiter(
            min_interval=min_interval, clock=fake_time.clock, sleep=fake_time.sleep
        ),
        sleep=fake_time.sleep,
        environ={},
        **kwargs,
    )


def request(text="Original text", provider="openai"):
    return EnhancementRequest(text=text, prompt="Fix the text", provider=provider)


class TestFailFast:
    def test_missing_credential_is_not_configured(self, fake_time):
        client = EnhancementClient(environ={}, sleep=fake_time.sleep)

        with patch(ACOMPLETION, new=AsyncMock()) as mock_completion:
            result = asyncio.run(client.enhance(request()))

        assert result.error is EnhancementErrorKind.NOT_CONFIGURED
        assert result.attempts == 0
        mock_completion.assert_not_called()

    def test_credential_from_environment(self, fake_time):
        client = EnhancementClient(
            environ={"OPENAI_API_KEY": "env-key"},
            rate_limiter=RateLimiter(min_interval=0, clock=fake_time.clock, sleep=fake_time.sleep),
        )

        with patch(ACOMPLETION, new=AsyncMock(return_value=make_response())) as mock_completion:
            result = asyncio.run(client.enhance(request()))

        assert result.ok
        assert mock_completion.call_args.kwargs["api_key"] == "env-key"
        assert mock_completion.call_args.kwargs["model"] == "gpt-4o-mini"

    def test_unknown_provider_is_not_configured(self, fake_time):
        client = make_client(fake_time)

        with patch(ACOMPLETION, new=AsyncMock()) as mock_completion:
            result = asyncio.run(client.enhance(request(provider="nope")))

        assert result.error is EnhancementErrorKind.NOT_CONFIGURED
        mock_completion.assert_not_called()

    def test_other_provider_without_model_is_not_configured(self, fake_time):
        client = make_client(fake_time)

        with patch(ACOMPLETION, new=AsyncMock()) as mock_completion:
            result = asyncio.run(client.enhance(request(provider="other")))

        assert result.error is EnhancementErrorKind.NOT_CONFIGURED
        mock_completion.assert_not_called()

    @pytest.mark.parametrize("text", ["", "   ", "\n\t"])
    def test_empty_text(self, fake_time, text):
        client = make_client(fake_time)

        with patch(ACOMPLETION, new=AsyncMock()) as mock_completion:
            result = asyncio.run(client.enhance(request(text=text)))

        assert result.error is EnhancementErrorKind.EMPTY_TEXT
        mock_completion.assert_not_called()

    def test_local_provider_needs_no_credential(self, fake_time):
        client = EnhancementClient(
            environ={},
            rate_limiter=RateLimiter(min_interval=0, clock=fake_time.clock, sleep=fake_time.sleep),
        )

        with patch(ACOMPLETION, new=AsyncMock(return_value=make_response())) as mock_completion:
            result = asyncio.run(client.enhance(request(provider="ollama")))

        assert result.ok
        kwargs = mock_completion.call_args.kwargs
        assert kwargs["model"] == "ollama/llama3.2"
        assert kwargs["api_base"] == "http://localhost:11434"
        assert "api_key" not in kwargs


class TestSuccess:
    def test_calls_provider_and_normalizes(self, fake_time):
        client = make_client(fake_time)

        with patch(ACOMPLETION, new=AsyncMock(return_value=make_response("  Fixed text \n"))) as mock_completion:
            result = asyncio.run(client.enhance(request()))

        assert result.ok
        assert result.text == "Fixed text"
        assert result.attempts == 1
        kwargs = mock_completion.call_args.kwargs
        assert kwargs["model"] == "gpt-4o-mini"
        assert kwargs["api_key"] == "test-key"
        assert kwargs["timeout"] == 1.0
        assert kwargs["max_retries"] == 0
        assert kwargs["messages"][0] == {"role": "system", "content": "Fix the text"}
        assert kwargs["messages"][1] == {"role": "user", "content": "Original text"}

    def test_merges_prompt_when_system_messages_unsupported(self, fake_time):
        client = make_client(fake_time)

        with (
            patch(ACOMPLETION, new=AsyncMock(return_value=make_response())) as mock_completion,
            patch.dict(
                "litellm.model_cost",
                {"gpt-4o-mini": {"supports_system_messages": False}},
            ),
        ):
            asyncio.run(client.enhance(request()))

        messages = mock_completion.call_args.kwargs["messages"]
        assert messages == [{"role": "user", "content": "Fix the text\n\nOriginal text"}]

    def test_usage_is_reported(self, fake_time):
        client = make_client(fake_time)
        response = make_response()
        response.usage = MagicMock(prompt_tokens=10, completion_tokens=5, total_tokens=15)

        with patch(ACOMPLETION, new=AsyncMock(return_value=response)):
            result = asyncio.run(client.enhance(request()))

        assert result.usage == {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15}

    def test_dict_shaped_response(self, fake_time):
        client = make_client(fake_time)
        response = {"choices": [{"message": {"content": "From dict"}}]}

        with patch(ACOMPLETION, new=AsyncMock(return_value=response)):
            result = asyncio.run(client.enhance(request()))

        assert result.text == "From dict"


class TestRetry:
    def test_transient_failure_exhausts_attempts(self, fake_time):
        client = make_client(fake_time, max_attempts=3)

        with patch(ACOMPLETION, new=AsyncMock(side_effect=StatusError(503))) as mock_completion:
            result = asyncio.run(client.enhance(request()))

        assert result.error is EnhancementErrorKind.TIMEOUT
        assert result.attempts == 3
        assert mock_completion.call_count == 3

    def test_backoff_delays_are_exponential_and_capped(self, fake_time):
        client = make_client(fake_time, max_attempts=4, base_timeout=1.0, max_delay=3.0)

        with patch(ACOMPLETION, new=AsyncMock(side_effect=StatusError(500))):
            asyncio.run(client.enhance(request()))

        assert fake_time.sleeps == [1.0, 2.0, 3.0]

    def test_timeouts_are_retried(self, fake_time):
        client = make_client(fake_time)

        with patch(ACOMPLETION, new=AsyncMock(side_effect=asyncio.TimeoutError())) as mock_completion:
            result = asyncio.run(client.enhance(request()))

        assert result.error is EnhancementErrorKind.TIMEOUT
        assert mock_completion.call_count == 3

    def test_connection_errors_are_retried(self, fake_time):
        client = make_client(fake_time)

        with patch(ACOMPLETION, new=AsyncMock(side_effect=ConnectionResetError("reset"))) as mock_completion:
            result = asyncio.run(client.enhance(request()))

        assert result.error is EnhancementErrorKind.TIMEOUT
        assert mock_completion.call_count == 3

    def test_rate_limited_responses_are_retried(self, fake_time):
        client = make_client(fake_time)

        with patch(ACOMPLETION, new=AsyncMock(side_effect=StatusError(429))) as mock_completion:
            result = asyncio.run(client.enhance(request()))

        assert result.error is EnhancementErrorKind.RATE_LIMITED
        assert mock_completion.call_count == 3

    def test_recovers_after_transient_failure(self, fake_time):
        client = make_client(fake_time)
        side_effect = [StatusError(502), make_response("Recovered")]

        with patch(ACOMPLETION, new=AsyncMock(side_effect=side_effect)):
            result = asyncio.run(client.enhance(request()))

        assert result.ok
        assert result.text == "Recovered"
        assert result.attempts == 2

    @pytest.mark.parametrize("status", [400, 401, 403, 404, 422])
    def test_client_errors_fail_immediately(self, fake_time, status):
        client = make_client(fake_time)

        with patch(ACOMPLETION, new=AsyncMock(side_effect=StatusError(status))) as mock_completion:
            result = asyncio.run(client.enhance(request()))

        assert result.error is EnhancementErrorKind.INVALID_RESPONSE
        assert mock_completion.call_count == 1
        assert fake_time.sleeps == []

    @pytest.mark.parametrize("content", [None, "", "   ", 42])
    def test_malformed_body_fails_immediately(self, fake_time, content):
        client = make_client(fake_time)

        with patch(ACOMPLETION, new=AsyncMock(return_value=make_response(content))) as mock_completion:
            result = asyncio.run(client.enhance(request()))

        assert result.error is EnhancementErrorKind.INVALID_RESPONSE
        assert mock_completion.call_count == 1

    def test_missing_choices_fails_immediately(self, fake_time):
        client = make_client(fake_time)
        response = MagicMock()
        response.choices = []

        with patch(ACOMPLETION, new=AsyncMock(return_value=response)) as mock_completion:
            result = asyncio.run(client.enhance(request()))

        assert result.error is EnhancementErrorKind.INVALID_RESPONSE
        assert mock_completion.call_count == 1


class TestCancellation:
    def test_cancel_during_request(self, fake_time):
        client = make_client(fake_time)
        started = asyncio.Event()

        async def hang(**kwargs):
            started.set()
            await asyncio.sleep(60)

        async def scenario():
            task = asyncio.create_task(client.enhance(request()))
            await started.wait()
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        mock_completion = AsyncMock(side_effect=hang)
        with patch(ACOMPLETION, new=mock_completion):
            asyncio.run(asyncio.wait_for(scenario(), timeout=5))

        assert mock_completion.call_count == 1

    def test_cancel_during_backoff_stops_retries(self, fake_time):
        in_backoff = asyncio.Event()

        async def hanging_sleep(delay):
            in_backoff.set()
            await asyncio.sleep(60)

        client = EnhancementClient(
            provider_configs={"openai": ProviderConfig(api_key="k")},
            rate_limiter=RateLimiter(min_interval=0, clock=fake_time.clock, sleep=fake_time.sleep),
            sleep=hanging_sleep,
            environ={},
        )

        async def scenario():
            task = asyncio.create_task(client.enhance(request()))
            await in_backoff.wait()
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        mock_completion = AsyncMock(side_effect=StatusError(503))
        with patch(ACOMPLETION, new=mock_completion):
            asyncio.run(asyncio.wait_for(scenario(), timeout=5))

        assert mock_completion.call_count == 1


class TestRateLimiting:
    def test_back_to_back_calls_are_spaced(self, fake_time):
        client = make_client(fake_time, min_interval=1.0)
        call_starts = []

        async def record_start(**kwargs):
            call_starts.append(fake_time.now)
            return make_response()

        async def scenario():
            await client.enhance(request())
            await client.enhance(request())

        with patch(ACOMPLETION, new=AsyncMock(side_effect=record_start)):
            asyncio.run(scenario())

        assert len(call_starts) == 2
        assert call_starts[1] - call_starts[0] >= 1.0

    def test_concurrent_calls_are_spaced(self):
        async def no_sleep(delay):
            pass

        limiter = RateLimiter(min_interval=1.0, clock=lambda: 100.0, sleep=no_sleep)

        async def scenario():
            return await asyncio.gather(*(limiter.wait("openai") for _ in range(3)))

        waits = asyncio.run(scenario())

        assert sorted(waits) == [0.0, 1.0, 2.0]

    def test_late_call_waits_for_remaining_interval(self, fake_time):
        limiter = RateLimiter(min_interval=1.0, clock=fake_time.clock, sleep=fake_time.sleep)

        async def scenario():
            await limiter.wait("openai")
            fake_time.now += 0.25
            return await limiter.wait("openai")

        assert asyncio.run(scenario()) == pytest.approx(0.75)

    def test_providers_are_limited_independently(self, fake_time):
        limiter = RateLimiter(min_interval=1.0, clock=fake_time.clock, sleep=fake_time.sleep)

        async def scenario():
            await limiter.wait("openai")
            return await limiter.wait("anthropic")

        assert asyncio.run(scenario()) == 0
        assert fake_time.sleeps == []

    def test_call_after_interval_does_not_wait(self, fake_time):
        limiter = RateLimiter(min_interval=1.0, clock=fake_time.clock, sleep=fake_time.sleep)

        async def scenario():
            await limiter.wait("openai")
            fake_time.now += 5
            return await limiter.wait("openai")

        assert asyncio.run(scenario()) == 0


class TestRetryPolicy:
    def test_defaults(self):
        policy = RetryPolicy()
        assert policy.max_attempts == 3
        assert policy.base_timeout == 10.0
        assert policy.max_delay == 30.0

    def test_delays_non_decreasing_and_bounded(self):
        policy = RetryPolicy(max_attempts=6, base_timeout=10.0, max_delay=30.0)
        delays = [policy.delay_before(n) for n in range(1, 7)]

        assert delays == [0.0, 10.0, 20.0, 30.0, 30.0, 30.0]
        assert delays == sorted(delays)
        assert max(delays) <= policy.max_delay

    def test_ceiling_below_base_is_rejected(self):
        with pytest.raises(ValidationError):
            RetryPolicy(base_timeout=10.0, max_delay=5.0)

    def test_zero_attempts_is_rejected(self):
        with pytest.raises(ValidationError):
            RetryPolicy(max_attempts=0)


class TestHelpers:
    def test_classify_failure(self):
        assert classify_failure(asyncio.TimeoutError()) == (True, EnhancementErrorKind.TIMEOUT)
        assert classify_failure(StatusError(500)) == (True, EnhancementErrorKind.TIMEOUT)
        assert classify_failure(StatusError(408)) == (True, EnhancementErrorKind.TIMEOUT)
        assert classify_failure(StatusError(429)) == (True, EnhancementErrorKind.RATE_LIMITED)
        assert classify_failure(StatusError(400)) == (False, EnhancementErrorKind.INVALID_RESPONSE)
        assert classify_failure(ConnectionError()) == (True, EnhancementErrorKind.TIMEOUT)
        assert classify_failure(ValueError("bad json")) == (False, EnhancementErrorKind.INVALID_RESPONSE)

    def test_extract_content(self):
        assert extract_content(make_response("ok")) == "ok"
        assert extract_content(object()) is None
        assert extract_content({"choices": []}) is None

    def test_format_model_name(self):
        assert format_model_name("llama3", "ollama") == "ollama/llama3"
        assert format_model_name("ollama/llama3", "ollama") == "ollama/llama3"
        assert format_model_name("gemini-2.0-flash", "gemini") == "gemini/gemini-2.0-flash"
        assert format_model_name("gpt-4o", "openai") == "gpt-4o"

    def test_is_configured(self):
        client = EnhancementClient(
            provider_configs={"anthropic": ProviderConfig(api_key="k")},
            environ={"GEMINI_API_KEY": "g"},
        )
        assert client.is_configured("anthropic")
        assert client.is_configured("gemini")
        assert client.is_configured("ollama")
        assert not client.is_configured("openai")
        assert not client.is_configured("other")
        assert not client.is_configured("unknown")
