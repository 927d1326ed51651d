"""
LLM access through OpenRouter's OpenAI-compatible endpoint.

All calls go through LangChain's ChatOpenAI with ``base_url`` pointed at
OpenRouter, so any model id OpenRouter serves ("openai/gpt-4o",
"anthropic/claude-3.5-sonnet", ...) can be requested per call.

Two layers:
    LLMClient          raw chat completion with response caching
    AnalysisTransform  payload -> analysis JSON, the opaque transform used by
                       the orchestrator (fence stripping, raw fallback,
                       degraded mode without a key, defensive validation)

The model output is untrusted: a response that is not JSON becomes
``{"raw": text}`` and schema violations are reported under
``schema_warnings`` instead of raising.
"""

import asyncio
import hashlib
import json
import re
from typing import Any, Literal

import structlog
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI
from pydantic import BaseModel, ConfigDict, ValidationError

from equity_insight.cache import CacheStore, FetchKey
from equity_insight.exceptions import ProviderError
from equity_insight.prompts import ANALYSIS_PROMPT, PROMPT_VERSION

logger = structlog.get_logger(__name__)

DEGRADED_SUMMARY_CHARS = 600

_FENCE_OPEN = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_FENCE_CLOSE = re.compile(r"\s*```$")


def create_openrouter_llm(
    model: str,
    api_key: str,
    base_url: str = "https://openrouter.ai/api/v1",
    timeout: int = 120,
    temperature: float = 0.2,
) -> BaseChatModel:
    """
    Create a ChatOpenAI instance bound to the OpenRouter endpoint.

    Retries are disabled: a failed call is reported to the caller, which
    either degrades or fails the request.
    """
    return ChatOpenAI(
        model=model,
        temperature=temperature,
        timeout=timeout,
        max_retries=0,
        api_key=api_key,
        base_url=base_url,
        streaming=False,
    )


def _extract_text_from_response(response) -> str:
    """Text content of a chat response; list-style content blocks are joined."""
    content = response.content
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return str(content)

    text_parts = []
    for block in content:
        if isinstance(block, str):
            text_parts.append(block)
        elif isinstance(block, dict) and "text" in block:
            text_parts.append(block["text"])
    return "\n".join(text_parts)


def _to_langchain(messages: list[dict[str, str]]) -> list[BaseMessage]:
    converted: list[BaseMessage] = []
    for message in messages:
        role = message.get("role")
        content = message.get("content", "")
        if role == "system":
            converted.append(SystemMessage(content=content))
        elif role == "assistant":
            converted.append(AIMessage(content=content))
        else:
            converted.append(HumanMessage(content=content))
    return converted


def content_hash(value: Any) -> str:
    """SHA-256 of the canonical JSON encoding (sorted keys)."""
    encoded = json.dumps(value, sort_keys=True, ensure_ascii=False, default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def strip_code_fence(text: str) -> str:
    """Remove a surrounding ```json ... ``` fence if present."""
    cleaned = (text or "").strip()
    cleaned = _FENCE_OPEN.sub("", cleaned)
    cleaned = _FENCE_CLOSE.sub("", cleaned)
    return cleaned.strip()


def parse_llm_json(text: str) -> Any:
    """Parse model output as JSON after fence stripping; ``{"raw": text}`` if that fails."""
    try:
        return json.loads(strip_code_fence(text))
    except (TypeError, ValueError):
        return {"raw": text}


class LLMClient:
    """Chat completions with per-(model, messages) response caching."""

    def __init__(
        self,
        api_key: str,
        cache: CacheStore,
        base_url: str = "https://openrouter.ai/api/v1",
        temperature: float = 0.2,
        timeout: int = 60,
    ):
        self.api_key = api_key
        self.cache = cache
        self.base_url = base_url
        self.temperature = temperature
        self.timeout = timeout
        self._instances: dict[tuple[str, int], BaseChatModel] = {}

    @property
    def available(self) -> bool:
        return bool(self.api_key)

    def _llm(self, model: str, timeout: int) -> BaseChatModel:
        key = (model, timeout)
        if key not in self._instances:
            self._instances[key] = create_openrouter_llm(
                model,
                self.api_key,
                base_url=self.base_url,
                timeout=timeout,
                temperature=self.temperature,
            )
        return self._instances[key]

    async def complete(
        self,
        messages: list[dict[str, str]],
        model: str,
        cache_prefix: str | None = None,
        ttl: float | None = None,
        timeout: int | None = None,
    ) -> str:
        """
        Return the completion text for ``messages``.

        With a cache_prefix the text is cached under
        ``<prefix>_<model>_<sha256(model, messages)>``. Empty responses are not
        cached. Raises ProviderError("OPENROUTER", ...) on any failure.
        """
        if not self.available:
            raise ProviderError("OPENROUTER", "Missing API key")

        key = None
        if cache_prefix:
            digest = content_hash({"model": model, "messages": messages})
            key = FetchKey(cache_prefix, tag=f"{model}_{digest}")
            cached = await self.cache.get(key, ttl)
            if cached:
                return cached

        timeout = timeout or self.timeout
        llm = self._llm(model, timeout)
        try:
            response = await asyncio.wait_for(
                llm.ainvoke(_to_langchain(messages)), timeout=timeout
            )
        except asyncio.TimeoutError as e:
            raise ProviderError("OPENROUTER", f"timeout after {timeout}s") from e
        except Exception as e:
            # openai / httpx raise their own hierarchies; all count as provider failure
            raise ProviderError("OPENROUTER", str(e) or type(e).__name__) from e

        text = _extract_text_from_response(response).strip()
        if text and key is not None:
            await self.cache.set(key, text)
        return text

    async def close(self) -> None:
        for llm in self._instances.values():
            client = getattr(llm, "root_async_client", None)
            close = getattr(client, "close", None)
            if close is not None:
                result = close()
                if asyncio.iscoroutine(result):
                    await result
        self._instances.clear()


# --- Analysis output schema (validated, never enforced) ---


class CatalystEntry(BaseModel):
    model_config = ConfigDict(extra="allow")

    event: str | None = None
    window: str | None = None
    why: str | None = None


class FiveIndicators(BaseModel):
    model_config = ConfigDict(extra="allow")

    alignment_score: float | None = None
    key_conflicts: list[str] = []
    valuation_rationale: str | None = None
    risk_factors: list[str] = []
    catalyst_timeline: list[CatalystEntry] = []


class FilingAnalysis(BaseModel):
    model_config = ConfigDict(extra="allow")

    form: str | None = None
    filingDate: str | None = None
    reportDate: str | None = None
    five_indicators: FiveIndicators | None = None
    explanation: str | None = None


class ConsensusView(BaseModel):
    model_config = ConfigDict(extra="allow")

    summary: str | None = None
    agreement_ratio: float | None = None


class TradeAction(BaseModel):
    model_config = ConfigDict(extra="allow")

    rating: Literal["BUY", "HOLD", "SELL"] | None = None
    target_price: float | None = None
    stop_loss: float | None = None
    rationale: str | None = None


class AnalysisOutput(BaseModel):
    model_config = ConfigDict(extra="allow")

    per_filing: list[FilingAnalysis] = []
    consensus_view: ConsensusView | None = None
    action: TradeAction | None = None
    profile: dict[str, Any] | None = None
    news_impact: dict[str, Any] | None = None


def validate_analysis(obj: Any) -> Any:
    """
    Check an analysis object against the expected shape.

    The object is returned unchanged except for an added ``schema_warnings``
    list when it deviates. Raw and degraded objects are passed through.
    """
    if not isinstance(obj, dict):
        return {"raw": obj, "schema_warnings": ["analysis is not a JSON object"]}
    if "raw" in obj or obj.get("degraded"):
        return obj
    try:
        AnalysisOutput.model_validate(obj)
    except ValidationError as e:
        warnings = [
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
            for err in e.errors()
        ]
        logger.warning("analysis_schema_mismatch", issues=len(warnings), first=warnings[0])
        return {**obj, "schema_warnings": warnings}
    return obj


def degraded_analysis(payload: dict[str, Any]) -> dict[str, Any]:
    """Per-filing summaries built from the excerpts alone, used without an LLM key."""
    per_filing = []
    for filing in payload.get("sec_filings") or []:
        excerpt = filing.get("mda_excerpt") or ""
        per_filing.append(
            {
                "form": filing.get("form"),
                "filingDate": filing.get("filingDate"),
                "reportDate": filing.get("reportDate"),
                "summary": excerpt[:DEGRADED_SUMMARY_CHARS],
            }
        )
    return {
        "degraded": True,
        "reason": "LLM credential not configured",
        "per_filing": per_filing,
        "consensus_view": None,
        "action": None,
    }


class AnalysisTransform:
    """The payload -> analysis JSON transform."""

    def __init__(self, client: LLMClient, cache: CacheStore, timeout: int = 120):
        self.client = client
        self.cache = cache
        self.timeout = timeout

    def cache_key(self, payload: dict[str, Any], model: str) -> FetchKey:
        return FetchKey("llm", tag=f"{model}_{PROMPT_VERSION}_{content_hash(payload)}")

    async def transform(
        self, payload: dict[str, Any], model: str, ttl: float | None = None
    ) -> dict[str, Any]:
        if not self.client.available:
            logger.warning("llm_degraded_mode", model=model)
            return degraded_analysis(payload)

        key = self.cache_key(payload, model)
        cached = await self.cache.get(key, ttl)
        if cached is not None:
            logger.info("llm_cache_hit", model=model)
            return cached

        text = await self.client.complete(
            ANALYSIS_PROMPT.messages(payload), model, timeout=self.timeout
        )
        parsed = parse_llm_json(text or "{}")
        if not isinstance(parsed, dict):
            parsed = {"raw": text}
        if "raw" in parsed:
            logger.warning("llm_output_not_json", model=model, chars=len(text or ""))

        result = validate_analysis(parsed)
        await self.cache.set(key, result)
        return result
