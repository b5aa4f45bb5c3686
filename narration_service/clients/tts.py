from __future__ import annotations

import logging
from typing import Optional

import httpx

from narration_service.errors import UpstreamError


class OpenAISpeechClient:
    def __init__(
        self,
        api_key: str | None,
        model_id: str = "tts-1-hd",
        base_url: str = "https://api.openai.com",
        timeout: float = 60.0,
        transport: httpx.BaseTransport | None = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.api_key = (api_key or "").strip()
        self.model_id = model_id
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self.log = logger or logging.getLogger(__name__)

    def enabled(self) -> bool:
        return bool(self.api_key)

    def synthesize(self, text: str, voice: str, model: str | None = None) -> bytes:
        if not self.enabled():
            raise UpstreamError(None, message="speech synthesis is not configured")
        url = f"{self.base_url}/v1/audio/speech"
        payload = {
            "model": model or self.model_id,
            "input": text,
            "voice": voice,
            "response_format": "mp3",
            "speed": 1.0,
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                response = client.post(url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            raise UpstreamError(None, message=f"speech synthesis request failed: {exc}") from exc
        if response.status_code != 200:
            body = response.text
            self.log.error(
                "speech synthesis HTTP error",
                extra={"status": response.status_code, "body": body[:500], "voice": voice},
            )
            raise UpstreamError(response.status_code, body)
        audio = response.content
        self.log.info(
            "speech synthesis completed",
            extra={"voice": voice, "model_id": payload["model"], "content_length": len(audio)},
        )
        return audio
