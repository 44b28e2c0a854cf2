"""
tests/test_llm.py
Unit tests for apiforge.core.llm.LLMClient against an httpx mock transport.

Tests cover:
- Request shape of the chat completion call
- Timeout and non-success status mapping
- Retry of transient connection errors
"""

from __future__ import annotations

import json
from typing import List

import httpx
import pytest

from apiforge.core.config import Settings
from apiforge.core.exceptions import ProviderError, ProviderTimeout
from apiforge.core.llm import LLMClient


def _client(handler) -> LLMClient:
    config = Settings(LLM_API_KEY="test-key", LLM_BASE_URL="https://llm.test/v1/", LLM_MODEL="test-model")
    llm = LLMClient(config)
    llm.client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return llm


def _completion(content: str) -> httpx.Response:
    return httpx.Response(200, json={"choices": [{"message": {"role": "assistant", "content": content}}]})


class TestComplete:

    @pytest.mark.asyncio
    async def test_returns_first_choice(self) -> None:
        seen: List[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return _completion('{"tables": []}')

        llm = _client(handler)
        assert await llm.complete("system", "user") == '{"tables": []}'
        await llm.close()

        request = seen[0]
        assert str(request.url) == "https://llm.test/v1/chat/completions"
        assert request.headers["authorization"] == "Bearer test-key"
        payload = json.loads(request.content)
        assert payload["model"] == "test-model"
        assert payload["messages"] == [
            {"role": "system", "content": "system"},
            {"role": "user", "content": "user"},
        ]

    @pytest.mark.asyncio
    async def test_timeout_maps_to_provider_timeout(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("too slow", request=request)

        with pytest.raises(ProviderTimeout):
            await _client(handler).complete("system", "user")

    @pytest.mark.asyncio
    async def test_error_status_maps_to_provider_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(429, text="rate limited")

        with pytest.raises(ProviderError) as info:
            await _client(handler).complete("system", "user")
        assert info.value.details == {"upstreamStatus": 429, "upstreamMessage": "rate limited"}

    @pytest.mark.asyncio
    async def test_empty_choices(self) -> None:
        with pytest.raises(ProviderError):
            await _client(lambda request: httpx.Response(200, json={"choices": []})).complete("s", "u")

    @pytest.mark.asyncio
    async def test_connection_errors_are_retried(self, monkeypatch) -> None:
        monkeypatch.setattr(LLMClient._post_completion.retry, "sleep", _no_sleep)
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            if len(calls) < 3:
                raise httpx.ConnectError("refused", request=request)
            return _completion("ok")

        assert await _client(handler).complete("system", "user") == "ok"
        assert len(calls) == 3


async def _no_sleep(seconds: float) -> None:
    return None
