from __future__ import annotations

import asyncio
import json
from typing import Any

import httpx


ANTHROPIC_VERSION = "2023-06-01"


class LLMClient:
    """Chat client for the configured validation provider (Anthropic or OpenAI)."""

    def __init__(
        self,
        provider: str,
        api_key: str,
        model: str,
        api_base: str,
        timeout_seconds: float = 20.0,
        max_retries: int = 1,
        backoff_seconds: float = 0.8,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.provider = provider
        self.api_key = api_key
        self.model = model
        self.api_base = api_base.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.max_retries = max(1, max_retries)
        self.backoff_seconds = backoff_seconds
        self.transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def chat(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float = 0.0,
        max_tokens: int = 120,
    ) -> str:
        if self.provider == "anthropic":
            return await self._chat_anthropic(messages, system, temperature, max_tokens)
        return await self._chat_openai(messages, system, temperature, max_tokens)

    async def _chat_anthropic(
        self,
        messages: list[dict[str, str]],
        system: str | None,
        temperature: float,
        max_tokens: int,
    ) -> str:
        payload: dict[str, Any] = {
            "model": self.model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": messages,
        }
        if system:
            payload["system"] = system

        data = await self._post_json(
            "/messages",
            payload,
            headers={"x-api-key": self.api_key, "anthropic-version": ANTHROPIC_VERSION},
        )
        content = data.get("content") or []
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict) and item.get("type") == "text":
                parts.append(str(item.get("text", "")))
        if not parts:
            raise RuntimeError("LLM returned no text content")
        return "".join(parts).strip()

    async def _chat_openai(
        self,
        messages: list[dict[str, str]],
        system: str | None,
        temperature: float,
        max_tokens: int,
    ) -> str:
        full_messages = list(messages)
        if system:
            full_messages.insert(0, {"role": "system", "content": system})
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": full_messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }

        data = await self._post_json(
            "/chat/completions",
            payload,
            headers={"Authorization": f"Bearer {self.api_key}"},
        )
        choices = data.get("choices") or []
        if not choices:
            raise RuntimeError("LLM returned no choices")

        message = choices[0].get("message") or {}
        content = message.get("content")

        if isinstance(content, str):
            return content.strip()

        if isinstance(content, list):
            parts: list[str] = []
            for item in content:
                if isinstance(item, dict) and item.get("type") == "text":
                    parts.append(str(item.get("text", "")))
                elif isinstance(item, str):
                    parts.append(item)
            return "".join(parts).strip()

        if isinstance(content, dict):
            return json.dumps(content)

        raise RuntimeError("Unable to parse LLM content")

    async def _post_json(
        self,
        path: str,
        payload: dict[str, Any],
        headers: dict[str, str],
    ) -> dict[str, Any]:
        if not self.api_key:
            raise RuntimeError(f"{self.provider} API key is not configured")

        url = f"{self.api_base}{path}"
        request_headers = {"Content-Type": "application/json", **headers}

        last_error: Exception | None = None
        for attempt in range(1, self.max_retries + 1):
            try:
                async with httpx.AsyncClient(
                    timeout=self.timeout_seconds, transport=self.transport
                ) as client:
                    response = await client.post(url, headers=request_headers, json=payload)

                if response.status_code in {408, 409, 429, 500, 502, 503, 504, 529}:
                    raise httpx.HTTPStatusError(
                        "Transient LLM error",
                        request=response.request,
                        response=response,
                    )

                response.raise_for_status()
                return response.json()
            except (httpx.RequestError, httpx.HTTPStatusError) as err:
                last_error = err
                if attempt >= self.max_retries:
                    break
                await asyncio.sleep(self.backoff_seconds * (2 ** (attempt - 1)))

        raise RuntimeError("Failed to call LLM") from last_error


def build_llm_client(settings: Any) -> LLMClient | None:
    """Client for the active provider, or None when no provider key is configured."""
    provider = settings.active_provider
    if provider == "openai":
        return LLMClient(
            provider="openai",
            api_key=settings.openai_api_key,
            model=settings.openai_model,
            api_base=settings.openai_api_base,
            timeout_seconds=settings.llm_timeout_seconds,
            max_retries=settings.llm_max_retries,
            backoff_seconds=settings.llm_retry_backoff_seconds,
        )
    if provider == "anthropic":
        return LLMClient(
            provider="anthropic",
            api_key=settings.anthropic_api_key,
            model=settings.anthropic_model,
            api_base=settings.anthropic_api_base,
            timeout_seconds=settings.llm_timeout_seconds,
            max_retries=settings.llm_max_retries,
            backoff_seconds=settings.llm_retry_backoff_seconds,
        )
    return None
