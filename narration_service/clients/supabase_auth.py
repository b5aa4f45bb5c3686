from __future__ import annotations

import logging
from typing import Optional

import httpx

from narration_service.errors import AuthError


class SupabaseAuthClient:
    def __init__(
        self,
        api_url: str | None,
        api_key: str | None,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.api_url = (api_url or "").rstrip("/")
        self.api_key = (api_key or "").strip()
        self.timeout = timeout
        self._transport = transport
        self.log = logger or logging.getLogger(__name__)

    def is_configured(self) -> bool:
        return bool(self.api_url and self.api_key)

    def verify(self, token: str) -> str:
        token = (token or "").strip()
        if not token:
            raise AuthError("Unauthorized - Please log in")
        if not self.is_configured():
            raise AuthError("Unauthorized - Invalid session")
        url = f"{self.api_url}/auth/v1/user"
        headers = {"apikey": self.api_key, "Authorization": f"Bearer {token}"}
        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                response = client.get(url, headers=headers)
        except httpx.HTTPError as exc:
            self.log.warning("session verification request failed", extra={"error": str(exc)})
            raise AuthError("Unauthorized - Invalid session") from exc
        if response.status_code != 200:
            raise AuthError("Unauthorized - Invalid session")
        user_id = (response.json() or {}).get("id")
        if not user_id:
            raise AuthError("Unauthorized - Invalid session")
        return str(user_id)
