"""LLM runtime used by the code generation client."""

from serverforge.kernel.llm.llm_runtime import (
    AnthropicCompatProvider,
    BaseLLMProvider,
    LLMConfig,
    LLMMessage,
    LLMResponse,
    LLMRuntime,
    LLMUsage,
    OpenAICompatProvider,
    ProviderManager,
    get_llm_runtime,
    reset_llm_runtime,
)
from serverforge.kernel.llm.provider_config import (
    build_default_provider_bundle,
    load_provider_bundle,
)

__all__ = [
    "AnthropicCompatProvider",
    "BaseLLMProvider",
    "LLMConfig",
    "LLMMessage",
    "LLMResponse",
    "LLMRuntime",
    "LLMUsage",
    "OpenAICompatProvider",
    "ProviderManager",
    "build_default_provider_bundle",
    "get_llm_runtime",
    "load_provider_bundle",
    "reset_llm_runtime",
]
