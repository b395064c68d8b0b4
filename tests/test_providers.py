from __future__ import annotations

import httpx
import pytest
from openai import AsyncOpenAI

from localrag.errors import GenerationError
from localrag.generation import GenerateOptions, NoneProvider, OnDeviceConfig, OnDeviceProvider
from localrag.generation.providers import clean_response


def _models_transport(status_code=200, models=("qwen2.5:0.5b",)):
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/models"
        return httpx.Response(status_code, json={"object": "list", "data": [{"id": model} for model in models]})

    return httpx.MockTransport(handler)


async def test_on_device_available_when_model_is_served():
    async with httpx.AsyncClient(transport=_models_transport()) as http_client:
        provider = OnDeviceProvider(OnDeviceConfig(base_url="http://runtime/v1"), http_client=http_client)
        assert await provider.is_available()


async def test_on_device_unavailable_when_model_missing_or_error():
    config = OnDeviceConfig(base_url="http://runtime/v1")
    async with httpx.AsyncClient(transport=_models_transport(models=("other",))) as http_client:
        assert not await OnDeviceProvider(config, http_client=http_client).is_available()
    async with httpx.AsyncClient(transport=_models_transport(status_code=503)) as http_client:
        assert not await OnDeviceProvider(config, http_client=http_client).is_available()


async def test_on_device_unreachable_runtime_is_unavailable():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http_client:
        provider = OnDeviceProvider(OnDeviceConfig(base_url="http://runtime/v1"), http_client=http_client)
        assert not await provider.is_available()


async def test_on_device_generate_uses_chat_completions():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["body"] = request.read()
        return httpx.Response(
            200,
            json={
                "id": "chatcmpl-1",
                "object": "chat.completion",
                "created": 0,
                "model": "qwen2.5:0.5b",
                "choices": [
                    {"index": 0, "message": {"role": "assistant", "content": "  Plants make food.  "}, "finish_reason": "stop"}
                ],
            },
        )

    client = AsyncOpenAI(
        base_url="http://runtime/v1",
        api_key="local",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    provider = OnDeviceProvider(OnDeviceConfig(base_url="http://runtime/v1"), client=client)

    text = await provider.generate("Question?", GenerateOptions(max_tokens=32, system_prompt="Be brief."))

    assert text == "Plants make food."
    assert seen["path"] == "/v1/chat/completions"
    assert b"Be brief." in seen["body"]
    assert b'"max_tokens":32' in seen["body"].replace(b" ", b"")
    await provider.cleanup()


async def test_on_device_generate_wraps_errors():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"error": {"message": "bad request"}})

    client = AsyncOpenAI(
        base_url="http://runtime/v1",
        api_key="local",
        max_retries=0,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    provider = OnDeviceProvider(client=client)
    with pytest.raises(GenerationError):
        await provider.generate("Question?")


async def test_none_provider_is_never_available():
    provider = NoneProvider()
    assert not await provider.is_available()
    with pytest.raises(GenerationError):
        await provider.initialize()
    with pytest.raises(GenerationError):
        await provider.generate("prompt")


def test_clean_response_drops_trailing_fragment():
    assert clean_response("Answer is here. ok") == "Answer is here."
    assert clean_response("Complete sentence.") == "Complete sentence."
    assert clean_response("No punctuation at all") == "No punctuation at all"


def test_clean_response_collapses_repeated_lines():
    assert clean_response("line a\nline a\nline a\nline a\nline b") == "line a\nline b"
