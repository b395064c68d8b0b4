"""Provider selection, fallback and timeout discipline for text generation."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping

from localrag.config import Settings
from localrag.errors import GenerationError, GenerationTimeoutError, GenerationUnavailableError
from localrag.metrics.observability import PipelineMetrics, get_logger
from localrag.models import ProviderId, ProviderState

from .providers import (
    FALLBACK_TIMEOUT,
    PROVIDER_TIMEOUTS,
    GenerateOptions,
    GenerationProvider,
    LocalModelConfig,
    LocalModelProvider,
    OnDeviceConfig,
    OnDeviceProvider,
)

LOGGER = get_logger("orchestrator")


@dataclass(frozen=True)
class OrchestratorStatus:
    available: bool
    provider: ProviderId | None
    loading: bool
    states: Mapping[ProviderId, ProviderState] = field(default_factory=dict)
    last_errors: Mapping[ProviderId, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        return {
            "available": self.available,
            "provider": self.provider.value if self.provider else None,
            "loading": self.loading,
            "states": {provider.value: state.value for provider, state in self.states.items()},
            "last_errors": {provider.value: error for provider, error in self.last_errors.items()},
        }


class GenerationOrchestrator:
    """Picks one ready provider from an ordered fallback list and runs bounded generations.

    Initialisation is a single walk over the fallback order; concurrent callers await the
    same in-flight task. ``generate`` never switches provider mid-call: a provider that
    raises is marked failed and the next call re-runs the walk.
    """

    def __init__(
        self,
        providers: Mapping[ProviderId, GenerationProvider],
        *,
        preferred: ProviderId | None = None,
        fallback_order: Iterable[ProviderId] | None = None,
        timeouts: Mapping[ProviderId, float] | None = None,
        fallback_timeout: float = FALLBACK_TIMEOUT,
    ) -> None:
        self._providers: Dict[ProviderId, GenerationProvider] = {
            provider_id: provider for provider_id, provider in providers.items() if provider_id is not ProviderId.NONE
        }
        self._timeouts: Dict[ProviderId, float] = dict(PROVIDER_TIMEOUTS)
        self._timeouts.update(timeouts or {})
        self._fallback_timeout = fallback_timeout
        self._states: Dict[ProviderId, ProviderState] = {
            provider_id: ProviderState.UNINITIALIZED for provider_id in self._providers
        }
        self._last_errors: Dict[ProviderId, str] = {}
        self._preferred = preferred
        self._fallback_order = self._build_fallback_order(fallback_order)
        self._active: ProviderId | None = None
        self._init_task: asyncio.Task[None] | None = None
        self._init_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> "GenerationOrchestrator":
        providers: Dict[ProviderId, GenerationProvider] = {
            ProviderId.ON_DEVICE: OnDeviceProvider(
                OnDeviceConfig(
                    base_url=settings.on_device_base_url,
                    api_key=settings.on_device_api_key,
                    model=settings.on_device_model,
                    max_tokens=settings.generator_max_new_tokens,
                    temperature=settings.generator_temperature,
                    top_p=settings.generator_top_p,
                )
            ),
            ProviderId.LOCAL_MODEL: LocalModelProvider(
                LocalModelConfig(
                    model=settings.local_model_name,
                    max_new_tokens=settings.generator_max_new_tokens,
                    temperature=settings.generator_temperature,
                    top_k=settings.generator_top_k,
                    top_p=settings.generator_top_p,
                    repetition_penalty=settings.generator_repetition_penalty,
                    device=settings.local_model_device,
                )
            ),
        }
        preferred = _known_provider_ids([settings.preferred_provider])
        return cls(
            providers,
            preferred=preferred[0] if preferred else None,
            fallback_order=_known_provider_ids(settings.provider_fallback_order),
            timeouts={
                ProviderId.ON_DEVICE: settings.on_device_timeout_seconds,
                ProviderId.LOCAL_MODEL: settings.local_model_timeout_seconds,
            },
            fallback_timeout=settings.fallback_timeout_seconds,
        )

    def _build_fallback_order(self, order: Iterable[ProviderId] | None) -> List[ProviderId]:
        result: List[ProviderId] = []
        for provider_id in order or ():
            if provider_id is ProviderId.NONE or provider_id not in self._providers or provider_id in result:
                continue
            result.append(provider_id)
        if result:
            return result
        if self._preferred in self._providers:
            result.append(self._preferred)
        result.extend(provider_id for provider_id in self._providers if provider_id not in result)
        return result

    @property
    def fallback_order(self) -> tuple[ProviderId, ...]:
        return tuple(self._fallback_order)

    def set_fallback_order(self, order: Iterable[ProviderId]) -> None:
        self._fallback_order = self._build_fallback_order(order)
        self._active = None

    def set_preferred_provider(self, provider_id: ProviderId) -> None:
        self._preferred = provider_id
        self._fallback_order = self._build_fallback_order([provider_id, *self._fallback_order])
        self._active = None

    @property
    def active_provider(self) -> ProviderId | None:
        return self._active

    @property
    def loading(self) -> bool:
        return self._init_task is not None and not self._init_task.done()

    async def initialize(self) -> None:
        if self._active is not None:
            return
        async with self._init_lock:
            if self._init_task is None or self._init_task.done():
                self._init_task = asyncio.create_task(self._walk_fallback_order())
            task = self._init_task
        await asyncio.shield(task)

    async def _walk_fallback_order(self) -> None:
        for provider_id in self._fallback_order:
            if await self._try_provider(provider_id):
                return
        LOGGER.warning("generation.no_provider", order=[provider.value for provider in self._fallback_order])

    async def _try_provider(self, provider_id: ProviderId) -> bool:
        provider = self._providers[provider_id]
        self._states[provider_id] = ProviderState.PROBING
        try:
            available = await provider.is_available()
        except Exception as exc:
            LOGGER.warning("generation.probe_failed", provider=provider_id.value, error=str(exc))
            available = False
        if not available:
            self._states[provider_id] = ProviderState.UNAVAILABLE
            LOGGER.info("generation.provider_unavailable", provider=provider_id.value)
            return False
        try:
            await provider.initialize()
        except Exception as exc:
            self._states[provider_id] = ProviderState.FAILED
            self._last_errors[provider_id] = str(exc)
            LOGGER.warning("generation.provider_init_failed", provider=provider_id.value, error=str(exc))
            return False
        self._states[provider_id] = ProviderState.READY
        self._active = provider_id
        LOGGER.info("generation.provider_ready", provider=provider_id.value)
        return True

    def timeout_for(self, provider_id: ProviderId | None) -> float:
        if provider_id is None:
            return self._fallback_timeout
        return self._timeouts.get(provider_id, self._fallback_timeout)

    async def generate(self, prompt: str, options: GenerateOptions | None = None) -> str:
        if self._active is None:
            await self.initialize()
        provider_id = self._active
        if provider_id is None:
            raise GenerationUnavailableError("No generation provider available")
        options = options or GenerateOptions()
        provider = self._providers[provider_id]
        timeout = options.timeout or self.timeout_for(provider_id)

        started = time.perf_counter()
        task = asyncio.ensure_future(provider.generate(prompt, options))
        done, _ = await asyncio.wait({task}, timeout=timeout)
        elapsed = time.perf_counter() - started
        if not done:
            # the provider call keeps running; its outcome is discarded
            task.add_done_callback(_discard_result)
            self._last_errors[provider_id] = f"timed out after {timeout}s"
            PipelineMetrics.observe_generation(elapsed, provider_id.value, "timeout")
            LOGGER.warning("generation.timeout", provider=provider_id.value, timeout=timeout)
            raise GenerationTimeoutError(f"Generation timed out after {timeout}s")
        try:
            text = task.result()
        except Exception as exc:
            self._states[provider_id] = ProviderState.FAILED
            self._last_errors[provider_id] = str(exc)
            if self._active == provider_id:
                self._active = None
            PipelineMetrics.observe_generation(elapsed, provider_id.value, "error")
            LOGGER.warning("generation.failed", provider=provider_id.value, error=str(exc))
            if isinstance(exc, GenerationError):
                raise
            raise GenerationError(f"{provider_id.value} generation failed: {exc}") from exc
        PipelineMetrics.observe_generation(elapsed, provider_id.value, "success")
        return text

    def status(self) -> OrchestratorStatus:
        return OrchestratorStatus(
            available=self._active is not None,
            provider=self._active,
            loading=self.loading,
            states=dict(self._states),
            last_errors=dict(self._last_errors),
        )

    async def cleanup(self) -> None:
        if self._init_task is not None and not self._init_task.done():
            self._init_task.cancel()
        for provider_id, provider in self._providers.items():
            try:
                await provider.cleanup()
            except Exception as exc:
                LOGGER.error("generation.cleanup_failed", provider=provider_id.value, error=str(exc))
            self._states[provider_id] = ProviderState.UNINITIALIZED
        self._active = None
        self._init_task = None


def _known_provider_ids(values: Iterable[str]) -> List[ProviderId]:
    known: List[ProviderId] = []
    for value in values:
        try:
            known.append(ProviderId(value))
        except ValueError:
            LOGGER.warning("generation.unknown_provider", provider=value)
    return known


def _discard_result(task: asyncio.Future[str]) -> None:
    if not task.cancelled():
        task.exception()


__all__ = ["GenerationOrchestrator", "OrchestratorStatus"]
