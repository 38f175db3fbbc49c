"""LLM Runtime - provider adapter layer for code generation."""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import httpx
import structlog

from serverforge.config import settings
from serverforge.domain.errors import ConfigurationError, ExternalServiceError

from .provider_config import load_provider_bundle

logger = structlog.get_logger()


def _join_url(base_url: str, path: str) -> str:
    raw_path = str(path or "").strip()
    if raw_path.startswith("http://") or raw_path.startswith("https://"):
        return raw_path

    base = str(base_url or "").strip().rstrip("/")
    if not base:
        return raw_path
    normalized_path = raw_path if raw_path.startswith("/") else f"/{raw_path}"
    return f"{base}{normalized_path}"


def _upstream_message(response: httpx.Response) -> str:
    """Best-effort extraction of the provider's own error message."""
    try:
        data = response.json()
    except ValueError:
        return response.text.strip() or response.reason_phrase
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str) and error:
            return error
        if data.get("message"):
            return str(data["message"])
    return response.reason_phrase or f"HTTP {response.status_code}"


@dataclass
class LLMMessage:
    """A message in the conversation."""

    role: str  # system, user, assistant
    content: str


@dataclass
class LLMUsage:
    """Token usage information."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


@dataclass
class LLMResponse:
    """Response from LLM invocation."""

    content: str
    usage: LLMUsage = field(default_factory=LLMUsage)
    latency_ms: int = 0
    model: str = ""
    stop_reason: Optional[str] = None
    raw: Optional[Dict[str, Any]] = None


@dataclass
class LLMConfig:
    """Per-call configuration for LLM calls."""

    provider_id: Optional[str] = None
    model: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    timeout_seconds: Optional[int] = None
    extra: Dict[str, Any] = field(default_factory=dict)


def _pick(config: Optional[LLMConfig], attr: str, provider_config: Dict[str, Any], key: str, default: Any) -> Any:
    value = getattr(config, attr, None) if config else None
    if value is not None:
        return value
    value = provider_config.get(key)
    return default if value is None else value


class BaseLLMProvider(ABC):
    """Base class for all runtime providers."""

    @abstractmethod
    async def invoke(
        self,
        messages: List[LLMMessage],
        config: Optional[LLMConfig],
        provider_config: Dict[str, Any],
    ) -> LLMResponse:
        """Invoke model with the given messages."""


class AnthropicCompatProvider(BaseLLMProvider):
    """Anthropic Messages API via /v1/messages."""

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._transport = transport

    def _resolve_auth(self, config: Optional[LLMConfig], provider_config: Dict[str, Any]) -> Tuple[str, str]:
        api_key = (config.api_key if config else None) or provider_config.get("api_key")
        base_url = (
            (config.base_url if config else None)
            or provider_config.get("base_url")
            or "https://api.anthropic.com"
        )
        if not api_key:
            raise ConfigurationError("Anthropic API key is not configured")
        return str(api_key), str(base_url)

    def _resolve_model(self, config: Optional[LLMConfig], provider_config: Dict[str, Any]) -> str:
        return str(
            (config.model if config else None)
            or provider_config.get("model")
            or settings.anthropic_model
        )

    @staticmethod
    def _convert_messages(messages: List[LLMMessage]) -> Tuple[str, List[Dict[str, Any]]]:
        system_parts: List[str] = []
        anthropic_messages: List[Dict[str, Any]] = []

        for message in messages:
            if message.role == "system":
                if message.content:
                    system_parts.append(message.content)
                continue
            role = "assistant" if message.role == "assistant" else "user"
            anthropic_messages.append({"role": role, "content": message.content})

        system_prompt = "\n\n".join(system_parts).strip()
        return system_prompt, anthropic_messages

    async def invoke(
        self,
        messages: List[LLMMessage],
        config: Optional[LLMConfig],
        provider_config: Dict[str, Any],
    ) -> LLMResponse:
        api_key, base_url = self._resolve_auth(config, provider_config)
        model = self._resolve_model(config, provider_config)
        api_path = str(provider_config.get("api_path") or "/v1/messages")
        version = str(provider_config.get("anthropic_version") or "2023-06-01")
        timeout = _pick(config, "timeout_seconds", provider_config, "timeout", settings.llm_timeout_seconds)
        url = _join_url(base_url, api_path)

        system_prompt, anthropic_messages = self._convert_messages(messages)
        payload: Dict[str, Any] = {
            "model": model,
            "max_tokens": _pick(config, "max_tokens", provider_config, "max_tokens", settings.llm_max_tokens),
            "messages": anthropic_messages or [{"role": "user", "content": ""}],
        }
        temperature = _pick(config, "temperature", provider_config, "temperature", None)
        if temperature is not None:
            payload["temperature"] = temperature
        if system_prompt:
            payload["system"] = system_prompt
        if config and config.extra:
            payload.update(config.extra)

        headers = {
            "content-type": "application/json",
            "anthropic-version": version,
            "x-api-key": api_key,
        }

        start = time.time()
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                response = await client.post(url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise ExternalServiceError(f"Anthropic request failed: {e}") from e

        if response.is_error:
            message = _upstream_message(response)
            raise ExternalServiceError(
                f"Anthropic API error ({response.status_code}): {message}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise ExternalServiceError("Anthropic API returned a non-JSON body") from e

        chunks: List[str] = []
        for block in data.get("content") or []:
            if isinstance(block, dict) and block.get("type") == "text":
                chunks.append(str(block.get("text") or ""))
        output = "".join(chunks)

        usage_data = data.get("usage") if isinstance(data, dict) else {}
        usage = LLMUsage(
            prompt_tokens=int(usage_data.get("input_tokens") or 0) if isinstance(usage_data, dict) else 0,
            completion_tokens=int(usage_data.get("output_tokens") or 0) if isinstance(usage_data, dict) else 0,
        )
        usage.total_tokens = usage.prompt_tokens + usage.completion_tokens

        return LLMResponse(
            content=output,
            usage=usage,
            latency_ms=int((time.time() - start) * 1000),
            model=str(data.get("model") or model),
            stop_reason=data.get("stop_reason"),
            raw=data if isinstance(data, dict) else None,
        )


class OpenAICompatProvider(BaseLLMProvider):
    """OpenAI-compatible chat completions provider."""

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None):
        self._http_client = http_client

    def _resolve_auth(self, config: Optional[LLMConfig], provider_config: Dict[str, Any]) -> Tuple[str, str]:
        api_key = (config.api_key if config else None) or provider_config.get("api_key")
        base_url = (
            (config.base_url if config else None)
            or provider_config.get("base_url")
            or "https://api.openai.com/v1"
        )
        if not api_key:
            raise ConfigurationError("OpenAI API key is not configured")
        return str(api_key), str(base_url)

    def _resolve_model(self, config: Optional[LLMConfig], provider_config: Dict[str, Any]) -> str:
        model = (config.model if config else None) or provider_config.get("model") or settings.openai_model
        return str(model)

    async def invoke(
        self,
        messages: List[LLMMessage],
        config: Optional[LLMConfig],
        provider_config: Dict[str, Any],
    ) -> LLMResponse:
        import openai
        from openai import AsyncOpenAI

        api_key, base_url = self._resolve_auth(config, provider_config)
        model = self._resolve_model(config, provider_config)
        timeout = _pick(config, "timeout_seconds", provider_config, "timeout", settings.llm_timeout_seconds)
        client = AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            timeout=timeout,
            max_retries=0,
            http_client=self._http_client,
        )

        params: Dict[str, Any] = {
            "model": model,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "max_tokens": _pick(config, "max_tokens", provider_config, "max_tokens", settings.llm_max_tokens),
        }
        temperature = _pick(config, "temperature", provider_config, "temperature", None)
        if temperature is not None:
            params["temperature"] = temperature
        if config and config.extra:
            params.update(config.extra)

        start = time.time()
        try:
            response = await client.chat.completions.create(**params)
        except openai.APIStatusError as e:
            raise ExternalServiceError(
                f"OpenAI API error ({e.status_code}): {e.message}",
                status_code=e.status_code,
            ) from e
        except openai.APIError as e:
            raise ExternalServiceError(f"OpenAI request failed: {e}") from e
        latency_ms = int((time.time() - start) * 1000)

        choice = response.choices[0]
        usage = LLMUsage()
        if response.usage:
            usage = LLMUsage(
                prompt_tokens=response.usage.prompt_tokens or 0,
                completion_tokens=response.usage.completion_tokens or 0,
                total_tokens=response.usage.total_tokens or 0,
            )

        return LLMResponse(
            content=choice.message.content or "",
            usage=usage,
            latency_ms=latency_ms,
            model=response.model or model,
            stop_reason=choice.finish_reason,
            raw=response.model_dump() if hasattr(response, "model_dump") else None,
        )


class ProviderManager:
    """Registry for runtime provider implementations."""

    def __init__(self) -> None:
        self._providers: Dict[str, BaseLLMProvider] = {}
        self._register_defaults()

    def _register_defaults(self) -> None:
        self.register_provider("anthropic_compat", AnthropicCompatProvider())
        self.register_provider("openai_compat", OpenAICompatProvider())

    def register_provider(self, provider_type: str, provider: BaseLLMProvider) -> None:
        self._providers[str(provider_type)] = provider

    def get_provider(self, provider_type: str) -> Optional[BaseLLMProvider]:
        return self._providers.get(str(provider_type))

    def list_provider_types(self) -> List[str]:
        return sorted(self._providers.keys())


class LLMRuntime:
    """Central runtime for LLM operations with provider routing."""

    def __init__(
        self,
        provider: Optional[BaseLLMProvider] = None,
        provider_manager: Optional[ProviderManager] = None,
        provider_bundle: Optional[Dict[str, Any]] = None,
    ):
        self.provider_manager = provider_manager or ProviderManager()

        if provider is not None:
            self.provider_manager.register_provider("custom", provider)
            self.provider_bundle = {
                "default_provider_id": "custom",
                "providers": {"custom": {"type": "custom", "model": settings.anthropic_model}},
            }
        else:
            self.provider_bundle = provider_bundle or load_provider_bundle()

        self.default_provider_id = str(self.provider_bundle.get("default_provider_id") or "anthropic")
        providers = self.provider_bundle.get("providers")
        self.provider_configs: Dict[str, Dict[str, Any]] = providers if isinstance(providers, dict) else {}

    def _resolve_provider(
        self, config: Optional[LLMConfig]
    ) -> Tuple[BaseLLMProvider, Dict[str, Any], str]:
        provider_id = (config.provider_id if config else None) or self.default_provider_id
        provider_cfg = self.provider_configs.get(str(provider_id))

        if provider_cfg is None and self.provider_manager.get_provider(str(provider_id)) is not None:
            provider_cfg = {"type": str(provider_id)}

        if provider_cfg is None:
            raise ConfigurationError(f"unknown_provider_id: {provider_id}")

        provider_type = str(provider_cfg.get("type") or provider_id)
        provider = self.provider_manager.get_provider(provider_type)
        if provider is None:
            raise ConfigurationError(f"unsupported_provider_type: {provider_type}")

        return provider, provider_cfg, str(provider_id)

    async def chat(
        self,
        system_prompt: str,
        user_prompt: str,
        config: Optional[LLMConfig] = None,
    ) -> LLMResponse:
        messages = [
            LLMMessage(role="system", content=system_prompt),
            LLMMessage(role="user", content=user_prompt),
        ]
        provider, provider_cfg, provider_id = self._resolve_provider(config)
        logger.debug("llm_provider_selected", provider_id=provider_id, provider_type=provider_cfg.get("type"))
        response = await provider.invoke(messages, config, provider_cfg)
        logger.info(
            "llm_call_completed",
            provider_id=provider_id,
            model=response.model,
            latency_ms=response.latency_ms,
            total_tokens=response.usage.total_tokens,
        )
        return response


# Global runtime instance
_runtime: Optional[LLMRuntime] = None


def get_llm_runtime() -> LLMRuntime:
    """Get the global LLM runtime."""
    global _runtime
    if _runtime is None:
        _runtime = LLMRuntime()
    return _runtime


def reset_llm_runtime() -> None:
    """Reset global runtime (mainly for testing)."""
    global _runtime
    _runtime = None
