from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Protocol, TypeVar

import httpx
from openai import OpenAI

from ..config import Settings
from ..errors import ProviderFailure, StructureInvalid
from .fallback import Attempt, FallbackChain, FallbackResult

logger = logging.getLogger(__name__)

T = TypeVar("T")

CODE_FENCE_PATTERN = re.compile(r"```(?:json)?(.*?)```", re.IGNORECASE | re.DOTALL)
GEMINI_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"
OPENAI_PREFIXES = ("gpt-", "o1", "o3", "o4")
MAX_PROVIDERS = 2


class ProviderError(RuntimeError):
    """One provider call failed; the gateway decides whether another is tried."""


@dataclass(frozen=True)
class Prompt:
    system: str
    user: str


class GenerationProvider(Protocol):
    name: str

    async def complete(self, prompt: Prompt) -> str: ...


def detect_provider(model: str) -> str:
    lowered = (model or "").lower()
    return "openai" if lowered.startswith(OPENAI_PREFIXES) else "gemini"


def is_reasoning_model(model: str) -> bool:
    lowered = (model or "").lower()
    return lowered.startswith(("o1", "o3", "o4", "gpt-5"))


class OpenAIProvider:
    """OpenAI Responses API; the sync SDK client runs in a worker thread."""

    def __init__(
        self,
        model: str,
        *,
        api_key: Optional[str],
        timeout: float,
        max_output_tokens: int,
        reasoning_effort: Optional[str] = None,
        temperature: Optional[float] = None,
    ) -> None:
        self.model = model
        self.name = f"openai:{model}"
        self._api_key = api_key
        self._timeout = timeout
        self._max_output_tokens = max_output_tokens
        self._reasoning_effort = reasoning_effort
        self._temperature = temperature

    async def complete(self, prompt: Prompt) -> str:
        if not self._api_key:
            raise ProviderError("OpenAI not configured")
        return await asyncio.to_thread(self._complete_sync, prompt)

    def _complete_sync(self, prompt: Prompt) -> str:
        client = OpenAI(api_key=self._api_key, timeout=self._timeout, max_retries=0)
        payload: Dict[str, Any] = {
            "model": self.model,
            "input": [
                {"role": "system", "content": prompt.system},
                {"role": "user", "content": prompt.user},
            ],
            "max_output_tokens": self._max_output_tokens,
            "text": {"format": {"type": "json_object"}},
        }
        # reasoning models reject sampling parameters
        if is_reasoning_model(self.model):
            if self._reasoning_effort:
                payload["reasoning"] = {"effort": self._reasoning_effort}
        elif self._temperature is not None:
            payload["temperature"] = self._temperature

        try:
            response = client.responses.create(**payload)
        except Exception as exc:
            raise ProviderError(f"{self.name} request failed: {exc}") from exc
        if getattr(response, "status", "completed") != "completed":
            reason = getattr(getattr(response, "incomplete_details", None), "reason", "unknown")
            logger.error("OpenAI Responses API returned incomplete status: %s", reason)
            raise ProviderError(f"{self.name} did not complete ({reason})")
        text = _extract_response_text(response)
        if not text:
            raise ProviderError(f"{self.name} returned empty output")
        return text


class GeminiProvider:
    """Gemini `generateContent` over plain HTTP."""

    def __init__(
        self,
        model: str,
        *,
        api_key: Optional[str],
        timeout: float,
        max_output_tokens: int,
        temperature: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.model = model
        self.name = f"gemini:{model}"
        self._api_key = api_key
        self._timeout = timeout
        self._max_output_tokens = max_output_tokens
        self._temperature = temperature
        self._transport = transport

    async def complete(self, prompt: Prompt) -> str:
        if not self._api_key:
            raise ProviderError("Gemini not configured")
        generation_config: Dict[str, Any] = {
            "responseMimeType": "application/json",
            "maxOutputTokens": self._max_output_tokens,
        }
        if self._temperature is not None:
            generation_config["temperature"] = self._temperature
        body = {
            "systemInstruction": {"parts": [{"text": prompt.system}]},
            "contents": [{"role": "user", "parts": [{"text": prompt.user}]}],
            "generationConfig": generation_config,
        }
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                resp = await client.post(
                    GEMINI_URL.format(model=self.model),
                    json=body,
                    headers={"x-goog-api-key": self._api_key, "Content-Type": "application/json"},
                )
        except httpx.TimeoutException as exc:
            raise ProviderError(f"{self.name} timed out after {self._timeout}s") from exc
        except httpx.HTTPError as exc:
            raise ProviderError(f"Unable to reach {self.name}: {exc}") from exc

        if resp.status_code >= 400:
            logger.error("Gemini API returned %s: %s", resp.status_code, resp.text[:500])
            raise ProviderError(f"{self.name} returned HTTP {resp.status_code}")

        candidate = (resp.json().get("candidates") or [{}])[0]
        finish_reason = candidate.get("finishReason")
        if finish_reason in ("MAX_TOKENS", "SAFETY"):
            raise ProviderError(f"{self.name} stopped early ({finish_reason})")
        parts = (candidate.get("content") or {}).get("parts") or []
        text = "".join(part.get("text", "") for part in parts if isinstance(part, dict)).strip()
        if not text:
            raise ProviderError(f"{self.name} returned empty output")
        return text


def build_provider(model: str, settings: Settings) -> GenerationProvider:
    if detect_provider(model) == "openai":
        return OpenAIProvider(
            model,
            api_key=settings.openai_api_key,
            timeout=settings.provider_timeout_seconds,
            max_output_tokens=settings.plan_max_output_tokens,
            reasoning_effort=settings.plan_reasoning_effort,
            temperature=settings.plan_temperature,
        )
    return GeminiProvider(
        model,
        api_key=settings.gemini_api_key,
        timeout=settings.provider_timeout_seconds,
        max_output_tokens=settings.plan_max_output_tokens,
        temperature=settings.plan_temperature,
    )


def parse_json_output(text: str) -> Any:
    stripped = (text or "").strip()
    match = CODE_FENCE_PATTERN.search(stripped)
    if match:
        stripped = match.group(1).strip()
    try:
        return json.loads(stripped)
    except json.JSONDecodeError as exc:
        raise StructureInvalid(f"model returned invalid JSON: {exc}") from exc


class ProviderGateway:
    """Primary provider, then at most one secondary, each under a hard timeout."""

    def __init__(self, *, timeout: float) -> None:
        self.timeout = timeout

    async def generate(
        self,
        prompt: Prompt,
        primary: GenerationProvider,
        secondary: Optional[GenerationProvider],
        parse: Callable[[str], T],
    ) -> FallbackResult[T]:
        providers = [primary]
        if secondary is not None and secondary.name != primary.name:
            providers.append(secondary)

        def _call(provider: GenerationProvider):
            return lambda: provider.complete(prompt)

        chain: FallbackChain[Any] = FallbackChain(
            [Attempt(provider.name, _call(provider), timeout=self.timeout) for provider in providers],
            label="provider-gateway",
            max_attempts=MAX_PROVIDERS,
        )
        result = await chain.run(validate=parse)
        if not result.ok:
            raise ProviderFailure(
                "All generation providers failed",
                attempts=result.failure_details(),
            )
        return result


def _extract_response_text(response: Any) -> str:
    text = getattr(response, "output_text", None)
    if isinstance(text, str) and text.strip():
        return text.strip()
    chunks: list[str] = []
    for block in getattr(response, "output", None) or []:
        for content in getattr(block, "content", None) or []:
            part_text = getattr(content, "text", None)
            if part_text:
                chunks.append(part_text)
    return "".join(chunks).strip()
