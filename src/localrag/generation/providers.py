"""Generation providers that can be registered with the orchestrator."""

from __future__ import annotations

import asyncio
import importlib.util
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Protocol

import httpx
from openai import AsyncOpenAI

from localrag.errors import GenerationError
from localrag.metrics.observability import get_logger
from localrag.models import ProviderId

LOGGER = get_logger("generation")

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful AI assistant. Provide clear, concise answers based on the context provided. "
    "If you don't know something, say so. Be professional and friendly."
)

# Seconds allowed for one generate call when the caller does not pass a timeout.
PROVIDER_TIMEOUTS: Mapping[ProviderId, float] = {
    ProviderId.ON_DEVICE: 5.0,
    ProviderId.LOCAL_MODEL: 10.0,
}
FALLBACK_TIMEOUT = 2.0


@dataclass(frozen=True)
class GenerateOptions:
    system_prompt: str | None = None
    max_tokens: int | None = None
    temperature: float | None = None
    context: str | None = None
    timeout: float | None = None


class GenerationProvider(Protocol):
    """Async text generation capability."""

    provider_id: ProviderId

    async def is_available(self) -> bool:
        """Cheap probe; must not load the model."""

    async def initialize(self) -> None:
        """Prepare the provider; raises when it cannot be used."""

    async def generate(self, prompt: str, options: GenerateOptions | None = None) -> str:
        """Return generated text for ``prompt``."""

    async def cleanup(self) -> None:
        """Release held resources."""


@dataclass(frozen=True)
class OnDeviceConfig:
    base_url: str = "http://localhost:11434/v1"
    api_key: str = "local"
    model: str = "qwen2.5:0.5b"
    max_tokens: int = 150
    temperature: float = 0.7
    top_p: float = 0.9
    probe_timeout: float = 1.0
    system_prompt: str = DEFAULT_SYSTEM_PROMPT


class OnDeviceProvider:
    """Model served by a local OpenAI-compatible runtime (llama.cpp, Ollama, vLLM)."""

    provider_id = ProviderId.ON_DEVICE

    def __init__(
        self,
        config: OnDeviceConfig | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
        client: AsyncOpenAI | None = None,
    ) -> None:
        self._config = config or OnDeviceConfig()
        self._http_client = http_client
        self._client = client

    async def is_available(self) -> bool:
        url = f"{self._config.base_url.rstrip('/')}/models"
        headers = {"Authorization": f"Bearer {self._config.api_key}"}
        try:
            if self._http_client is not None:
                response = await self._http_client.get(url, headers=headers, timeout=self._config.probe_timeout)
            else:
                async with httpx.AsyncClient(timeout=self._config.probe_timeout) as client:
                    response = await client.get(url, headers=headers)
        except httpx.HTTPError as exc:
            LOGGER.info("generation.on_device_unreachable", url=url, error=str(exc))
            return False
        if response.status_code != 200:
            return False
        return self._config.model in _served_models(response)

    async def initialize(self) -> None:
        if self._client is None:
            self._client = AsyncOpenAI(base_url=self._config.base_url, api_key=self._config.api_key)
        LOGGER.info("generation.on_device_ready", model=self._config.model)

    async def generate(self, prompt: str, options: GenerateOptions | None = None) -> str:
        if self._client is None:
            await self.initialize()
        assert self._client is not None
        options = options or GenerateOptions()
        try:
            response = await self._client.chat.completions.create(
                model=self._config.model,
                messages=[
                    {"role": "system", "content": options.system_prompt or self._config.system_prompt},
                    {"role": "user", "content": prompt},
                ],
                temperature=options.temperature if options.temperature is not None else self._config.temperature,
                top_p=self._config.top_p,
                max_tokens=options.max_tokens or self._config.max_tokens,
            )
        except Exception as exc:
            raise GenerationError(f"On-device generation failed: {exc}") from exc
        return (response.choices[0].message.content or "").strip()

    async def cleanup(self) -> None:
        if self._client is not None:
            await self._client.close()
        self._client = None


def _served_models(response: httpx.Response) -> List[str]:
    try:
        payload = response.json()
    except ValueError:
        return []
    data = payload.get("data") if isinstance(payload, dict) else None
    return [str(item.get("id")) for item in data or [] if isinstance(item, dict)]


@dataclass(frozen=True)
class LocalModelConfig:
    """Configuration for in-process causal LM generation."""

    model: str = "Qwen/Qwen2.5-0.5B-Instruct"
    max_new_tokens: int = 150
    temperature: float = 0.7
    top_k: int = 50
    top_p: float = 0.9
    repetition_penalty: float = 1.2
    device: str | None = None
    system_prompt: str = DEFAULT_SYSTEM_PROMPT


class LocalModelProvider:
    """Generator that calls into a Hugging Face causal LM via Transformers."""

    provider_id = ProviderId.LOCAL_MODEL

    def __init__(self, config: LocalModelConfig | None = None) -> None:
        self._config = config or LocalModelConfig()
        self._tokenizer: Any = None
        self._model: Any = None

    async def is_available(self) -> bool:
        return importlib.util.find_spec("transformers") is not None and importlib.util.find_spec("torch") is not None

    async def initialize(self) -> None:
        if self._model is not None:
            return
        try:
            await asyncio.to_thread(self._load)
        except Exception as exc:
            self._tokenizer = None
            self._model = None
            raise GenerationError(f"Failed to load {self._config.model}: {exc}") from exc
        LOGGER.info("generation.local_model_loaded", model=self._config.model, device=self._config.device)

    def _load(self) -> None:
        from transformers import AutoModelForCausalLM, AutoTokenizer

        tokenizer = AutoTokenizer.from_pretrained(self._config.model, trust_remote_code=True)
        model = AutoModelForCausalLM.from_pretrained(self._config.model, trust_remote_code=True)
        if tokenizer.pad_token is None and tokenizer.eos_token is not None:
            tokenizer.pad_token = tokenizer.eos_token
        if getattr(model.config, "pad_token_id", None) is None and tokenizer.pad_token_id is not None:
            model.config.pad_token_id = tokenizer.pad_token_id
        if self._config.device:
            model.to(self._config.device)
        self._tokenizer = tokenizer
        self._model = model

    async def generate(self, prompt: str, options: GenerateOptions | None = None) -> str:
        if self._model is None:
            await self.initialize()
        options = options or GenerateOptions()
        try:
            generated = await asyncio.to_thread(self._generate_sync, prompt, options)
        except Exception as exc:
            raise GenerationError(f"Local model generation failed: {exc}") from exc
        return clean_response(generated)

    def _generate_sync(self, prompt: str, options: GenerateOptions) -> str:
        import torch

        system_prompt = options.system_prompt or self._config.system_prompt
        if hasattr(self._tokenizer, "apply_chat_template"):
            text = self._tokenizer.apply_chat_template(
                self._build_messages(prompt, system_prompt),
                tokenize=False,
                add_generation_prompt=True,
            )
        else:
            text = self._build_prompt(prompt, system_prompt)
        tokenized = self._tokenizer(text, return_tensors="pt", padding=True)
        input_ids = tokenized.input_ids
        attention_mask = tokenized.attention_mask
        prompt_length = input_ids.shape[1]
        if self._config.device:
            input_ids = input_ids.to(self._config.device)
            attention_mask = attention_mask.to(self._config.device)
        with torch.no_grad():
            output = self._model.generate(
                input_ids,
                attention_mask=attention_mask,
                max_new_tokens=options.max_tokens or self._config.max_new_tokens,
                temperature=options.temperature or self._config.temperature,
                top_k=self._config.top_k,
                top_p=self._config.top_p,
                repetition_penalty=self._config.repetition_penalty,
                do_sample=True,
            )
        return self._tokenizer.decode(output[0][prompt_length:], skip_special_tokens=True).strip()

    @staticmethod
    def _build_prompt(prompt: str, system_prompt: str) -> str:
        return f"{system_prompt}\n\n{prompt}\n\nAnswer:"

    @staticmethod
    def _build_messages(prompt: str, system_prompt: str) -> List[Dict[str, str]]:
        return [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": prompt},
        ]

    async def cleanup(self) -> None:
        self._model = None
        self._tokenizer = None


class NoneProvider:
    """Placeholder registered when generation is switched off; never available."""

    provider_id = ProviderId.NONE

    async def is_available(self) -> bool:
        return False

    async def initialize(self) -> None:
        raise GenerationError("No generation provider configured")

    async def generate(self, prompt: str, options: GenerateOptions | None = None) -> str:
        raise GenerationError("No generation provider configured")

    async def cleanup(self) -> None:
        return None


def clean_response(text: str) -> str:
    """Drop a trailing sentence fragment and collapse heavily repeated lines."""

    sentences = re.split(r"[.!?]+", text)
    if len(sentences) > 1 and len(sentences[-1].strip()) < 20:
        text = ". ".join(sentences[:-1]) + "."
    lines = text.split("\n")
    unique_lines = list(dict.fromkeys(lines))
    if len(unique_lines) < len(lines) / 2:
        text = "\n".join(unique_lines)
    return text.strip()


__all__ = [
    "DEFAULT_SYSTEM_PROMPT",
    "GenerateOptions",
    "GenerationProvider",
    "LocalModelConfig",
    "LocalModelProvider",
    "NoneProvider",
    "OnDeviceConfig",
    "OnDeviceProvider",
    "clean_response",
]
