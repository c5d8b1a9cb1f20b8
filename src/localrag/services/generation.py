"""Text generation providers for localrag."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Protocol, runtime_checkable

import httpx

from localrag.chunking import estimate_tokens
from localrag.config import Settings

LOGGER = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful assistant that answers questions based on the provided context. "
    "Answer only from the context. If the context does not contain enough information "
    "to answer the question, say so clearly."
)


class GenerationError(RuntimeError):
    """Raised when a provider fails to produce an answer."""

    def __init__(self, message: str, *, provider_id: str, operation: str = "generate") -> None:
        super().__init__(message)
        self.provider_id = provider_id
        self.operation = operation


@dataclass(frozen=True)
class GenerationConfig:
    """Configuration for answer generation."""

    model: str = "Qwen/Qwen2.5-1.8B-Instruct"
    max_new_tokens: int = 512
    temperature: float = 0.7
    device: str | None = None
    api_url: str = "https://api.openai.com/v1/chat/completions"
    api_key: str | None = None
    timeout: float = 60.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "GenerationConfig":
        return cls(
            model=settings.generator_model,
            max_new_tokens=settings.generator_max_new_tokens,
            temperature=settings.generator_temperature,
            device=settings.generator_device,
            api_url=settings.generation_api_url,
            api_key=settings.generation_api_key,
            timeout=settings.generation_timeout_seconds,
        )


@dataclass(frozen=True)
class GenerationOptions:
    temperature: float = 0.7
    max_tokens: int = 512
    system_prompt: str = DEFAULT_SYSTEM_PROMPT


@dataclass(frozen=True)
class GenerationResult:
    text: str
    tokens_used: int
    latency_ms: float
    model_id: str


@runtime_checkable
class TextGenerationProvider(Protocol):
    """Capability: turn a grounded prompt into an answer."""

    provider_id: str

    async def generate(self, prompt: str, options: GenerationOptions) -> GenerationResult:
        """Return the answer for ``prompt`` or raise ``GenerationError``."""


class TemplateGenerator:
    """Simple deterministic generator used for tests and offline environments.

    Echoes the first context passage of the prompt back as the answer.
    """

    provider_id = "template"

    def __init__(self, config: GenerationConfig | None = None) -> None:
        self._config = config

    async def generate(self, prompt: str, options: GenerationOptions) -> GenerationResult:
        start = time.perf_counter()
        question = ""
        summary = ""
        for line in prompt.splitlines():
            if line.startswith("Question:") and not question:
                question = line[len("Question:") :].strip()
            elif line.startswith("[1] ") and not summary:
                summary = line[len("[1] ") :].strip()
        if summary:
            text = (
                f"Summary: {summary}\n\n"
                f"Answer: Based on the provided documents, here is the best match for your question '{question}'."
            )
        else:
            text = "I do not have enough relevant context to answer that question."
        return GenerationResult(
            text=text,
            tokens_used=estimate_tokens(options.system_prompt) + estimate_tokens(prompt) + estimate_tokens(text),
            latency_ms=(time.perf_counter() - start) * 1000,
            model_id=self.provider_id,
        )


class TransformersGenerator:
    """Local causal language model through Hugging Face Transformers.

    Requires the ``models`` extra. Inference runs in a worker thread.
    """

    def __init__(self, config: GenerationConfig | None = None) -> None:
        self._config = config or GenerationConfig()
        self.provider_id = f"transformers:{self._config.model}"
        try:
            from transformers import AutoModelForCausalLM, AutoTokenizer

            self._tokenizer = AutoTokenizer.from_pretrained(self._config.model, trust_remote_code=True)
            self._model = AutoModelForCausalLM.from_pretrained(self._config.model, trust_remote_code=True)
        except Exception as exc:
            raise GenerationError(
                f"Failed to load generation model {self._config.model}: {exc}",
                provider_id=self.provider_id,
                operation="load_model",
            ) from exc
        if self._tokenizer.pad_token is None and self._tokenizer.eos_token is not None:
            self._tokenizer.pad_token = self._tokenizer.eos_token
        if getattr(self._model.config, "pad_token_id", None) is None and self._tokenizer.pad_token_id is not None:
            self._model.config.pad_token_id = self._tokenizer.pad_token_id
        if self._config.device:
            self._model.to(self._config.device)
        LOGGER.info("Loaded generation model %s", self._config.model)

    async def generate(self, prompt: str, options: GenerationOptions) -> GenerationResult:
        start = time.perf_counter()
        try:
            text, tokens_used = await asyncio.to_thread(self._generate_sync, prompt, options)
        except Exception as exc:
            raise GenerationError(f"Generation model failed: {exc}", provider_id=self.provider_id) from exc
        return GenerationResult(
            text=text,
            tokens_used=tokens_used,
            latency_ms=(time.perf_counter() - start) * 1000,
            model_id=self.provider_id,
        )

    def _generate_sync(self, prompt: str, options: GenerationOptions) -> tuple[str, int]:
        import torch

        messages = [
            {"role": "system", "content": options.system_prompt},
            {"role": "user", "content": prompt},
        ]
        if hasattr(self._tokenizer, "apply_chat_template"):
            rendered = self._tokenizer.apply_chat_template(messages, tokenize=False, add_generation_prompt=True)
        else:
            rendered = f"{options.system_prompt}\n\n{prompt}\nAnswer:"
        tokenized = self._tokenizer(rendered, return_tensors="pt", padding=True)
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
                max_new_tokens=options.max_tokens,
                temperature=options.temperature,
                do_sample=options.temperature > 0,
            )
        generated_tokens = output[0][prompt_length:]
        generated = self._tokenizer.decode(generated_tokens, skip_special_tokens=True)
        return generated.strip(), int(output.shape[1])


class OpenAICompatibleGenerator:
    """Chat completions against an OpenAI-compatible endpoint, hosted or self-hosted."""

    def __init__(
        self,
        config: GenerationConfig | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config or GenerationConfig(model="gpt-4o-mini")
        self.provider_id = f"openai:{self._config.model}"
        self._transport = transport

    async def generate(self, prompt: str, options: GenerationOptions) -> GenerationResult:
        payload: Dict[str, Any] = {
            "model": self._config.model,
            "messages": [
                {"role": "system", "content": options.system_prompt},
                {"role": "user", "content": prompt},
            ],
            "temperature": options.temperature,
            "max_tokens": options.max_tokens,
        }
        headers = {"Authorization": f"Bearer {self._config.api_key}"} if self._config.api_key else {}
        start = time.perf_counter()
        try:
            async with httpx.AsyncClient(timeout=self._config.timeout, transport=self._transport) as client:
                response = await client.post(self._config.api_url, json=payload, headers=headers)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as exc:
            LOGGER.error("Generation request failed (%s): %s", type(exc).__name__, exc)
            raise GenerationError(
                f"Generation request failed: {type(exc).__name__}",
                provider_id=self.provider_id,
            ) from exc
        except ValueError as exc:
            LOGGER.error("Generation response is not valid JSON: %s", exc)
            raise GenerationError("Generation response is not valid JSON", provider_id=self.provider_id) from exc
        latency_ms = (time.perf_counter() - start) * 1000
        text, tokens_used = self._extract(data, prompt, options)
        return GenerationResult(text=text, tokens_used=tokens_used, latency_ms=latency_ms, model_id=self.provider_id)

    def _extract(self, data: object, prompt: str, options: GenerationOptions) -> tuple[str, int]:
        try:
            content = data["choices"][0]["message"]["content"]  # type: ignore[index]
        except (KeyError, IndexError, TypeError) as exc:
            raise GenerationError("Generation response missing message content", provider_id=self.provider_id) from exc
        if not isinstance(content, str):
            raise GenerationError("Generation response content is not text", provider_id=self.provider_id)
        usage = data.get("usage") if isinstance(data, dict) else None
        total = usage.get("total_tokens") if isinstance(usage, dict) else None
        if not isinstance(total, int):
            total = estimate_tokens(options.system_prompt) + estimate_tokens(prompt) + estimate_tokens(content)
        return content.strip(), total


GenerationFactory = Callable[[GenerationConfig], TextGenerationProvider]

DEFAULT_GENERATION_FACTORIES: Mapping[str, GenerationFactory] = {
    "template": TemplateGenerator,
    "transformers": TransformersGenerator,
    "openai": OpenAICompatibleGenerator,
}


class GenerationProviderRegistry:
    """Maps provider identifiers to factories, resolved once at construction."""

    def __init__(self, factories: Mapping[str, GenerationFactory] | None = None) -> None:
        if factories is None:
            factories = DEFAULT_GENERATION_FACTORIES
        self._factories: Dict[str, GenerationFactory] = dict(factories)

    def register(self, provider_id: str, factory: GenerationFactory) -> None:
        self._factories[provider_id] = factory

    def available(self) -> List[str]:
        return sorted(self._factories)

    def create(self, provider_id: str, config: GenerationConfig | None = None) -> TextGenerationProvider:
        try:
            factory = self._factories[provider_id]
        except KeyError:
            raise KeyError(
                f"Unknown generation provider '{provider_id}'; available: {', '.join(self.available())}"
            ) from None
        return factory(config or GenerationConfig())
