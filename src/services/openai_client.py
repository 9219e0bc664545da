"""
OpenAI provider clients.

Thin async wrappers over the speech-to-text and chat-completions endpoints.
Both calls are bounded by timeouts from settings; a timeout, transport
failure or non-2xx response surfaces as ``ProviderError``. Nothing here
retries: idempotent stages make caller-side retries safe instead.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

import httpx

from src.config import Settings, get_settings
from src.errors import ProviderError
from src.logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class Transcription:
    text: str
    language: Optional[str]
    duration_seconds: float


class SpeechToTextClient:
    """Transcribes recorded audio via the ``audio/transcriptions`` endpoint."""

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()

    async def transcribe(self, audio: bytes, filename: str = "audio.webm") -> Transcription:
        url = f"{self.settings.openai_base_url}/audio/transcriptions"
        try:
            async with httpx.AsyncClient(timeout=self.settings.stt_timeout_seconds) as client:
                response = await client.post(
                    url,
                    headers={"Authorization": f"Bearer {self.settings.openai_api_key}"},
                    data={
                        "model": self.settings.transcription_model,
                        "response_format": "verbose_json",
                    },
                    files={"file": (filename, audio)},
                )
        except httpx.TimeoutException as e:
            logger.error("stt_timeout", timeout=self.settings.stt_timeout_seconds)
            raise ProviderError("Speech-to-text request timed out") from e
        except httpx.HTTPError as e:
            logger.error("stt_transport_error", error=str(e))
            raise ProviderError(f"Speech-to-text request failed: {e}") from e

        if response.status_code >= 400:
            logger.error("stt_failed", status=response.status_code, body=response.text[:500])
            raise ProviderError(f"Transcription failed: {response.text[:200]}")

        payload = response.json()
        return Transcription(
            text=payload.get("text") or "",
            language=payload.get("language"),
            duration_seconds=float(payload.get("duration") or 0),
        )


class TextGenerationClient:
    """Requests JSON-only completions via ``chat/completions``."""

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()

    async def complete_json(
        self,
        system_prompt: str,
        user_prompt: str,
        temperature: float = 0.0,
        max_tokens: int | None = None,
    ) -> str:
        """Return the raw message content; parsing is the caller's job."""
        body: dict[str, Any] = {
            "model": self.settings.extraction_model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "response_format": {"type": "json_object"},
            "temperature": temperature,
            "max_tokens": max_tokens or self.settings.extraction_max_tokens,
        }
        try:
            async with httpx.AsyncClient(timeout=self.settings.llm_timeout_seconds) as client:
                response = await client.post(
                    f"{self.settings.openai_base_url}/chat/completions",
                    headers={
                        "Authorization": f"Bearer {self.settings.openai_api_key}",
                        "Content-Type": "application/json",
                    },
                    json=body,
                )
        except httpx.TimeoutException as e:
            logger.error("llm_timeout", timeout=self.settings.llm_timeout_seconds)
            raise ProviderError("Text generation request timed out") from e
        except httpx.HTTPError as e:
            logger.error("llm_transport_error", error=str(e))
            raise ProviderError(f"Text generation request failed: {e}") from e

        if response.status_code >= 400:
            logger.error("llm_failed", status=response.status_code, body=response.text[:500])
            raise ProviderError(f"Extraction model failed: {response.text[:200]}")

        data = response.json()
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise ProviderError("Invalid response from extraction model") from e
        if not content:
            raise ProviderError("Invalid response from extraction model")
        return content
