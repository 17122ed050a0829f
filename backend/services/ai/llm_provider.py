"""
LLM clients that summarize a generated opportunity in one sentence.

Supports: a deterministic mock, Ollama (native ``/api/generate``),
OpenRouter and DeepSeek (OpenAI-compatible chat completions).

Every client exposes the same coroutine::

    client = get_llm_client("openrouter")
    summary = await client.summarize(opp, context)

Network failures never propagate: remote clients answer with the mock
summary tagged ``fallback_from_<provider>`` and ``error`` set, so a scan
always completes.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from enum import Enum
from typing import Any, Optional, Protocol

import httpx

from config import settings
from models.opportunity import LLMSummary, Opportunity
from services.errors import ProviderError

logger = logging.getLogger(__name__)

MOCK_MODEL = "mock-v1"


class LLMProviderKind(str, Enum):
    """Supported LLM providers."""

    MOCK = "mock"
    OLLAMA = "ollama"
    OPENROUTER = "openrouter"
    DEEPSEEK = "deepseek"


class LLMClient(Protocol):
    provider: LLMProviderKind
    model: str

    async def summarize(self, opp: Opportunity, context: Optional[dict] = None) -> LLMSummary:
        ...


def build_prompt(opp: Opportunity) -> str:
    return (
        f"Analyze opportunity {opp.opp_id} for strategy {opp.strategy_id} "
        f"with score {_format_score(opp.score_baseline)}. Summarize in 1 sentence."
    )


def _format_score(score: Optional[float]) -> str:
    if score is None:
        return "None"
    return f"{score:g}"


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def _key_fingerprint(api_key: str) -> str:
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()[:8]


# ==================== RETRY LOGIC ====================

_MAX_RETRIES = 2
_BASE_DELAY = 0.5  # seconds


async def _retry_with_backoff(
    coro_factory, max_retries: int = _MAX_RETRIES, base_delay: float = _BASE_DELAY
) -> httpx.Response:
    """Run ``coro_factory()`` again on HTTP 429/5xx with exponential backoff.

    Transport errors (including timeouts) are not retried: the caller's
    timeout budget is already spent by then.
    """
    response: Optional[httpx.Response] = None
    for attempt in range(max_retries):
        response = await coro_factory()
        if response.status_code != 429 and response.status_code < 500:
            return response
        if attempt < max_retries - 1:
            delay = base_delay * (2**attempt)
            logger.warning(
                "LLM request returned %d, retrying in %.1fs (attempt %d/%d)",
                response.status_code,
                delay,
                attempt + 1,
                max_retries,
            )
            await asyncio.sleep(delay)
    return response  # type: ignore[return-value]


def _raise_for_status(provider: LLMProviderKind, response: httpx.Response) -> None:
    if response.status_code != 200:
        raise ProviderError(
            provider.value, f"Status {response.status_code}: {response.text[:200]}"
        )


def _error_detail(exc: Exception) -> str:
    if isinstance(exc, ProviderError):
        return exc.message
    return str(exc) or type(exc).__name__


def _chat_content(data: Any) -> Optional[str]:
    try:
        return data["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        return None


# ==================== CLIENTS ====================


class MockLLMClient:
    """Deterministic summaries derived from sha256(opp_id)."""

    provider = LLMProviderKind.MOCK
    model = MOCK_MODEL

    def summarize_sync(self, opp: Opportunity) -> LLMSummary:
        start = time.perf_counter()
        digest = hashlib.sha256((opp.opp_id or "default_seed").encode("utf-8")).hexdigest()
        confidence = 0.5 + (int(digest[:4], 16) / 65535) * 0.49
        if confidence > 0.8:
            potential = "strong"
        elif confidence > 0.6:
            potential = "moderate"
        else:
            potential = "weak"
        volatility_tag = "high_vol" if int(digest[0], 16) > 8 else "low_vol"
        return LLMSummary(
            provider=self.provider.value,
            model=self.model,
            summary=(
                f"[Mock] Opportunity {opp.opp_id} shows {potential} potential based on "
                f"{opp.strategy_id}. Baseline score: {_format_score(opp.score_baseline)}."
            ),
            confidence=round(confidence, 2),
            tags=["mock", "baseline", volatility_tag],
            latency_ms=_elapsed_ms(start),
            input_prompt=build_prompt(opp),
        )

    async def summarize(self, opp: Opportunity, context: Optional[dict] = None) -> LLMSummary:
        return self.summarize_sync(opp)


def _fallback_summary(
    opp: Opportunity, provider: LLMProviderKind, error: str, start: float
) -> LLMSummary:
    base = MockLLMClient().summarize_sync(opp)
    return base.model_copy(
        update={
            "summary": f"[Fallback] {base.summary}",
            "tags": [*base.tags, f"fallback_from_{provider.value}"],
            "error": f"{provider.value} error: {error}",
            "latency_ms": _elapsed_ms(start),
        }
    )


class OllamaClient:
    """Local Ollama server through its native generate endpoint."""

    provider = LLMProviderKind.OLLAMA

    def __init__(
        self,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.base_url = (base_url or settings.OLLAMA_BASE_URL).rstrip("/")
        self.model = model or settings.OLLAMA_MODEL
        self.timeout = timeout if timeout is not None else settings.OLLAMA_TIMEOUT_SECONDS

    @property
    def generate_url(self) -> str:
        if self.base_url.endswith("/api/generate") or self.base_url.endswith("/api/chat"):
            return self.base_url
        return f"{self.base_url}/api/generate"

    async def summarize(self, opp: Opportunity, context: Optional[dict] = None) -> LLMSummary:
        start = time.perf_counter()
        prompt = build_prompt(opp)
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    self.generate_url,
                    json={"model": self.model, "prompt": prompt, "stream": False},
                )
            _raise_for_status(self.provider, response)
            data = response.json()
            content = None
            if isinstance(data, dict):
                content = data.get("response") or (data.get("message") or {}).get("content")
        except (httpx.HTTPError, ProviderError, ValueError) as exc:
            logger.warning("Ollama unavailable, using mock summary: %s", exc)
            return _fallback_summary(opp, self.provider, _error_detail(exc), start)

        return LLMSummary(
            provider=self.provider.value,
            model=self.model,
            summary=content or "[Ollama] No content",
            confidence=0.7,
            tags=["ollama", "local"],
            latency_ms=_elapsed_ms(start),
            input_prompt=prompt,
        )


class OpenAICompatibleClient:
    """Chat-completions client shared by OpenRouter and DeepSeek."""

    def __init__(
        self,
        provider: LLMProviderKind,
        api_key: Optional[str],
        base_url: str,
        model: str,
        timeout: float,
        confidence: float,
        tags: list[str],
        extra_headers: Optional[dict[str, str]] = None,
    ):
        self.provider = provider
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self.confidence = confidence
        self.tags = tags
        self.extra_headers = extra_headers or {}
        if api_key:
            logger.info(
                "%s client initialized with key fingerprint %s",
                provider.value,
                _key_fingerprint(api_key),
            )

    def _missing_key_summary(self, opp: Opportunity, start: float) -> LLMSummary:
        if self.provider == LLMProviderKind.DEEPSEEK:
            return LLMSummary(
                provider=self.provider.value,
                model=self.model,
                summary="[DeepSeek] No API Key provided.",
                confidence=0.0,
                tags=["error", "no_key"],
                latency_ms=_elapsed_ms(start),
                error="Missing DEEPSEEK_API_KEY",
                input_prompt=build_prompt(opp),
            )
        logger.warning("%s has no API key, using mock summary", self.provider.value)
        return MockLLMClient().summarize_sync(opp)

    async def summarize(self, opp: Opportunity, context: Optional[dict] = None) -> LLMSummary:
        start = time.perf_counter()
        if not self.api_key:
            return self._missing_key_summary(opp, start)

        prompt = build_prompt(opp)
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            **self.extra_headers,
        }
        body = {"model": self.model, "messages": [{"role": "user", "content": prompt}]}
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await _retry_with_backoff(
                    lambda: client.post(
                        f"{self.base_url}/chat/completions", headers=headers, json=body
                    )
                )
            _raise_for_status(self.provider, response)
            content = _chat_content(response.json())
        except (httpx.HTTPError, ProviderError, ValueError) as exc:
            logger.warning(
                "%s failed (%s), falling back to mock summary",
                self.provider.value,
                exc,
            )
            return _fallback_summary(opp, self.provider, _error_detail(exc), start)

        return LLMSummary(
            provider=self.provider.value,
            model=self.model,
            summary=content or f"[{self.provider.value}] No content",
            confidence=self.confidence,
            tags=list(self.tags),
            latency_ms=_elapsed_ms(start),
            input_prompt=prompt,
        )


def _openrouter_client() -> OpenAICompatibleClient:
    return OpenAICompatibleClient(
        provider=LLMProviderKind.OPENROUTER,
        api_key=settings.OPENROUTER_API_KEY,
        base_url=settings.OPENROUTER_BASE_URL,
        model=settings.OPENROUTER_MODEL,
        timeout=settings.OPENROUTER_TIMEOUT_SECONDS,
        confidence=0.9,
        tags=["openrouter", "cloud"],
        extra_headers={"X-Title": "OppRadar"},
    )


def _deepseek_client() -> OpenAICompatibleClient:
    return OpenAICompatibleClient(
        provider=LLMProviderKind.DEEPSEEK,
        api_key=settings.DEEPSEEK_API_KEY,
        base_url=settings.DEEPSEEK_BASE_URL,
        model=settings.DEEPSEEK_MODEL,
        timeout=settings.DEEPSEEK_TIMEOUT_SECONDS,
        confidence=0.8,
        tags=["deepseek", "cloud"],
    )


_CLIENT_FACTORIES = {
    LLMProviderKind.MOCK: MockLLMClient,
    LLMProviderKind.OLLAMA: OllamaClient,
    LLMProviderKind.OPENROUTER: _openrouter_client,
    LLMProviderKind.DEEPSEEK: _deepseek_client,
}


def resolve_provider(name: Optional[str] = None) -> LLMProviderKind:
    """Map a provider name to its kind; unknown names resolve to mock.

    With no name the configured ``LLM_PROVIDER`` applies, where ``auto``
    prefers OpenRouter when a key is configured.
    """
    raw = (name or settings.LLM_PROVIDER or "").strip().lower()
    if raw == "auto" or not raw:
        return LLMProviderKind.OPENROUTER if settings.OPENROUTER_API_KEY else LLMProviderKind.MOCK
    try:
        return LLMProviderKind(raw)
    except ValueError:
        logger.debug("Unknown LLM provider %r, using mock", raw)
        return LLMProviderKind.MOCK


def get_llm_client(name: Optional[str] = None) -> LLMClient:
    return _CLIENT_FACTORIES[resolve_provider(name)]()
