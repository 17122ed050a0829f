from services.ai.llm_provider import (
    LLMClient,
    LLMProviderKind,
    MockLLMClient,
    get_llm_client,
    resolve_provider,
)

__all__ = [
    "LLMClient",
    "LLMProviderKind",
    "MockLLMClient",
    "get_llm_client",
    "resolve_provider",
]
