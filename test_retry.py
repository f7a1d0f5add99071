"""
Tests for provider error mapping and retry with backoff
"""
import asyncio

import httpx
import openai
import pytest

from tradingjournal.dataflows.llm_clients import map_provider_error, parse_retry_after
from tradingjournal.dataflows.retry import retry_with_backoff
from tradingjournal.exceptions import ProviderError, ProviderRateLimitError, ProviderTransientError

CHAT_URL = "https://api.openai.com/v1/chat/completions"


class SleepRecorder:
    def __init__(self):
        self.waits = []

    async def __call__(self, seconds):
        self.waits.append(seconds)


def _flaky(errors, result="ok"):
    """Operation that raises the queued errors before succeeding."""
    calls = []

    async def operation():
        calls.append(1)
        if errors:
            raise errors.pop(0)
        return result

    return operation, calls


def _openai_error(cls, status, headers=None, message="error"):
    response = httpx.Response(status, headers=headers or {}, request=httpx.Request("POST", CHAT_URL))
    return cls(message, response=response, body=None)


def test_rate_limit_header_is_mapped():
    error = _openai_error(openai.RateLimitError, 429, {"retry-after": "2"})
    mapped = map_provider_error(error)
    assert isinstance(mapped, ProviderRateLimitError)
    assert mapped.retry_after == 2.0


def test_retry_hint_from_message():
    assert parse_retry_after(Exception("Rate limit reached. Please try again in 250ms.")) == 0.25
    assert parse_retry_after(Exception("Please try again in 1.5s")) == 1.5
    assert parse_retry_after(Exception("quota exhausted")) is None


def test_server_errors_are_transient():
    mapped = map_provider_error(_openai_error(openai.InternalServerError, 503))
    assert isinstance(mapped, ProviderTransientError)
    assert mapped.status_code == 503
    bad_request = map_provider_error(_openai_error(openai.BadRequestError, 400))
    assert type(bad_request) is ProviderError


def test_retry_after_overrides_backoff():
    sleep = SleepRecorder()
    operation, calls = _flaky([ProviderRateLimitError("slow down", retry_after=2.0)])
    assert asyncio.run(retry_with_backoff(operation, sleep=sleep)) == "ok"
    assert sleep.waits == [2.0]
    assert len(calls) == 2


def test_backoff_doubles():
    sleep = SleepRecorder()
    operation, calls = _flaky([ProviderTransientError("503"), ProviderRateLimitError("429")])
    assert asyncio.run(retry_with_backoff(operation, base_delay=1.0, sleep=sleep)) == "ok"
    assert sleep.waits == [1.0, 2.0]


def test_permanent_error_not_retried():
    sleep = SleepRecorder()
    operation, calls = _flaky([ProviderError("bad request", status_code=400)])
    with pytest.raises(ProviderError):
        asyncio.run(retry_with_backoff(operation, sleep=sleep))
    assert len(calls) == 1
    assert sleep.waits == []


def test_gives_up_after_max_attempts():
    sleep = SleepRecorder()
    operation, calls = _flaky([ProviderTransientError("down") for _ in range(5)])
    with pytest.raises(ProviderTransientError):
        asyncio.run(retry_with_backoff(operation, max_attempts=3, base_delay=1.0, sleep=sleep))
    assert len(calls) == 3
    assert sleep.waits == [1.0, 2.0]
