from __future__ import annotations

import asyncio

import pytest

from localrag.config import Settings
from localrag.errors import GenerationError, GenerationTimeoutError, GenerationUnavailableError
from localrag.generation import GenerateOptions, GenerationOrchestrator
from localrag.models import ProviderId, ProviderState


class FakeProvider:
    def __init__(self, provider_id, *, available=True, init_error=None, reply="generated", error=None, delay=0.0):
        self.provider_id = provider_id
        self.available = available
        self.init_error = init_error
        self.reply = reply
        self.error = error
        self.delay = delay
        self.probe_calls = 0
        self.init_calls = 0
        self.cleanup_calls = 0
        self.prompts = []

    async def is_available(self):
        self.probe_calls += 1
        await asyncio.sleep(0.01)
        return self.available

    async def initialize(self):
        self.init_calls += 1
        if self.init_error:
            raise self.init_error

    async def generate(self, prompt, options):
        self.prompts.append(prompt)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return self.reply

    async def cleanup(self):
        self.cleanup_calls += 1


def _orchestrator(on_device, local_model, **kwargs):
    return GenerationOrchestrator(
        {ProviderId.ON_DEVICE: on_device, ProviderId.LOCAL_MODEL: local_model},
        **kwargs,
    )


def test_fallback_order_drops_unknown_and_duplicate_entries():
    orchestrator = _orchestrator(
        FakeProvider(ProviderId.ON_DEVICE),
        FakeProvider(ProviderId.LOCAL_MODEL),
        fallback_order=[ProviderId.NONE, ProviderId.LOCAL_MODEL, ProviderId.LOCAL_MODEL, ProviderId.ON_DEVICE],
    )
    assert orchestrator.fallback_order == (ProviderId.LOCAL_MODEL, ProviderId.ON_DEVICE)


def test_empty_fallback_order_starts_with_preferred():
    orchestrator = _orchestrator(
        FakeProvider(ProviderId.ON_DEVICE),
        FakeProvider(ProviderId.LOCAL_MODEL),
        preferred=ProviderId.LOCAL_MODEL,
        fallback_order=[ProviderId.NONE],
    )
    assert orchestrator.fallback_order == (ProviderId.LOCAL_MODEL, ProviderId.ON_DEVICE)


def test_from_settings_drops_unknown_provider_ids():
    settings = Settings(environment="test", provider_fallback_order=("chrome-ai", "local-model", "local-model"))
    orchestrator = GenerationOrchestrator.from_settings(settings)
    assert orchestrator.fallback_order == (ProviderId.LOCAL_MODEL,)

    settings = Settings(environment="test", provider_fallback_order=("chrome-ai",), preferred_provider="local-model")
    orchestrator = GenerationOrchestrator.from_settings(settings)
    assert orchestrator.fallback_order == (ProviderId.LOCAL_MODEL, ProviderId.ON_DEVICE)


def test_timeout_for_uses_provider_defaults_and_overrides():
    orchestrator = _orchestrator(FakeProvider(ProviderId.ON_DEVICE), FakeProvider(ProviderId.LOCAL_MODEL))
    assert orchestrator.timeout_for(ProviderId.ON_DEVICE) == 5.0
    assert orchestrator.timeout_for(ProviderId.LOCAL_MODEL) == 10.0
    assert orchestrator.timeout_for(None) == 2.0

    tuned = _orchestrator(
        FakeProvider(ProviderId.ON_DEVICE),
        FakeProvider(ProviderId.LOCAL_MODEL),
        timeouts={ProviderId.ON_DEVICE: 1.5},
        fallback_timeout=0.5,
    )
    assert tuned.timeout_for(ProviderId.ON_DEVICE) == 1.5
    assert tuned.timeout_for(ProviderId.LOCAL_MODEL) == 10.0
    assert tuned.timeout_for(None) == 0.5


async def test_initialize_uses_first_available_provider():
    on_device = FakeProvider(ProviderId.ON_DEVICE, available=False)
    local_model = FakeProvider(ProviderId.LOCAL_MODEL)
    orchestrator = _orchestrator(on_device, local_model)

    await orchestrator.initialize()

    status = orchestrator.status()
    assert status.available
    assert status.provider is ProviderId.LOCAL_MODEL
    assert status.states[ProviderId.ON_DEVICE] is ProviderState.UNAVAILABLE
    assert status.states[ProviderId.LOCAL_MODEL] is ProviderState.READY
    assert on_device.init_calls == 0


async def test_initialize_failure_falls_through():
    on_device = FakeProvider(ProviderId.ON_DEVICE, init_error=RuntimeError("boom"))
    local_model = FakeProvider(ProviderId.LOCAL_MODEL)
    orchestrator = _orchestrator(on_device, local_model)

    await orchestrator.initialize()

    status = orchestrator.status()
    assert status.provider is ProviderId.LOCAL_MODEL
    assert status.states[ProviderId.ON_DEVICE] is ProviderState.FAILED
    assert status.last_errors[ProviderId.ON_DEVICE] == "boom"


async def test_concurrent_initialize_probes_once():
    on_device = FakeProvider(ProviderId.ON_DEVICE)
    orchestrator = _orchestrator(on_device, FakeProvider(ProviderId.LOCAL_MODEL))

    await asyncio.gather(*(orchestrator.initialize() for _ in range(5)))

    assert on_device.probe_calls == 1
    assert on_device.init_calls == 1
    assert orchestrator.active_provider is ProviderId.ON_DEVICE


async def test_generate_without_providers_is_unavailable():
    orchestrator = _orchestrator(
        FakeProvider(ProviderId.ON_DEVICE, available=False),
        FakeProvider(ProviderId.LOCAL_MODEL, available=False),
    )
    with pytest.raises(GenerationUnavailableError):
        await orchestrator.generate("prompt")
    assert not orchestrator.status().available


async def test_generate_returns_provider_text():
    on_device = FakeProvider(ProviderId.ON_DEVICE, reply="an answer")
    orchestrator = _orchestrator(on_device, FakeProvider(ProviderId.LOCAL_MODEL))

    assert await orchestrator.generate("prompt", GenerateOptions(max_tokens=20)) == "an answer"
    assert on_device.prompts == ["prompt"]


async def test_generate_timeout_keeps_provider_active():
    on_device = FakeProvider(ProviderId.ON_DEVICE, delay=0.2)
    orchestrator = _orchestrator(on_device, FakeProvider(ProviderId.LOCAL_MODEL))

    with pytest.raises(GenerationTimeoutError):
        await orchestrator.generate("prompt", GenerateOptions(timeout=0.05))

    status = orchestrator.status()
    assert status.provider is ProviderId.ON_DEVICE
    assert status.states[ProviderId.ON_DEVICE] is ProviderState.READY
    assert "timed out" in status.last_errors[ProviderId.ON_DEVICE]
    await asyncio.sleep(0.25)


async def test_generate_failure_marks_provider_failed_and_refalls():
    on_device = FakeProvider(ProviderId.ON_DEVICE, error=RuntimeError("model crashed"))
    local_model = FakeProvider(ProviderId.LOCAL_MODEL, reply="from local")
    orchestrator = _orchestrator(on_device, local_model)

    with pytest.raises(GenerationError):
        await orchestrator.generate("prompt")
    assert orchestrator.active_provider is None
    assert orchestrator.status().states[ProviderId.ON_DEVICE] is ProviderState.FAILED

    orchestrator.set_fallback_order([ProviderId.LOCAL_MODEL])
    assert await orchestrator.generate("prompt") == "from local"
    assert orchestrator.active_provider is ProviderId.LOCAL_MODEL


async def test_set_preferred_provider_moves_it_first():
    orchestrator = _orchestrator(FakeProvider(ProviderId.ON_DEVICE), FakeProvider(ProviderId.LOCAL_MODEL))
    await orchestrator.initialize()
    assert orchestrator.active_provider is ProviderId.ON_DEVICE

    orchestrator.set_preferred_provider(ProviderId.LOCAL_MODEL)
    assert orchestrator.fallback_order == (ProviderId.LOCAL_MODEL, ProviderId.ON_DEVICE)
    assert orchestrator.active_provider is None

    await orchestrator.initialize()
    assert orchestrator.active_provider is ProviderId.LOCAL_MODEL


async def test_cleanup_resets_providers():
    on_device = FakeProvider(ProviderId.ON_DEVICE)
    local_model = FakeProvider(ProviderId.LOCAL_MODEL)
    orchestrator = _orchestrator(on_device, local_model)
    await orchestrator.initialize()

    await orchestrator.cleanup()

    assert on_device.cleanup_calls == 1
    assert local_model.cleanup_calls == 1
    status = orchestrator.status()
    assert not status.available
    assert set(status.states.values()) == {ProviderState.UNINITIALIZED}
    assert status.to_dict()["provider"] is None
