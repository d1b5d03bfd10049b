from __future__ import annotations

import logging
import re
from typing import AsyncIterator

import httpx


logger = logging.getLogger(__name__)


class TTSUnavailableError(RuntimeError):
    pass


class ElevenLabsService:
    BASE_URL = "https://api.elevenlabs.io/v1"

    def __init__(
        self,
        api_key: str,
        voice_id: str,
        model_id: str = "eleven_turbo_v2_5",
        timeout_seconds: float = 20.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.voice_id = voice_id
        self.model_id = model_id
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    @property
    def headers(self) -> dict[str, str]:
        return {
            "xi-api-key": self.api_key,
            "Content-Type": "application/json",
        }

    @staticmethod
    def language_code(language: str | None) -> str:
        tag = language.strip() if isinstance(language, str) and language.strip() else "en-US"
        candidate = tag.split("-")[0].lower()
        return candidate if re.fullmatch(r"[a-z]{2}", candidate) else "en"

    async def stream_speech(self, text: str, language: str | None = None) -> AsyncIterator[bytes]:
        """Start rendering ``text`` and return an iterator over MPEG audio chunks.

        The provider status is checked before the iterator is returned, so a
        failure surfaces here rather than halfway through a response.
        """
        if not self.api_key:
            raise TTSUnavailableError("ELEVENLABS_API_KEY is not configured")

        payload = {
            "text": text,
            "model_id": self.model_id,
            "language_code": self.language_code(language),
            "voice_settings": {
                "stability": 0.5,
                "similarity_boost": 0.75,
            },
        }

        client = httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport)
        try:
            request = client.build_request(
                "POST",
                f"{self.BASE_URL}/text-to-speech/{self.voice_id}/stream",
                headers=self.headers,
                json=payload,
            )
            response = await client.send(request, stream=True)
        except httpx.RequestError as err:
            await client.aclose()
            raise RuntimeError("Failed to reach ElevenLabs") from err

        if response.status_code >= 400:
            detail = await response.aread()
            await response.aclose()
            await client.aclose()
            logger.error("ElevenLabs API error %s: %s", response.status_code, detail[:300])
            raise RuntimeError(f"ElevenLabs API error: {response.status_code}")

        async def chunks() -> AsyncIterator[bytes]:
            try:
                async for chunk in response.aiter_bytes():
                    yield chunk
            finally:
                await response.aclose()
                await client.aclose()

        return chunks()
