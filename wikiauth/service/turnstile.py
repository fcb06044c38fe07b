from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import httpx

from wikiauth.logging import get_logger

logger = get_logger(__name__)

ERROR_MESSAGES = {
    "missing-input-secret": "Server configuration error",
    "invalid-input-secret": "Server configuration error",
    "missing-input-response": "Please complete the CAPTCHA",
    "invalid-input-response": "Invalid CAPTCHA response. Please try again.",
    "bad-request": "Invalid request",
    "timeout-or-duplicate": "CAPTCHA expired. Please try again.",
    "internal-error": "Verification service error",
}


@dataclass(frozen=True)
class TurnstileResult:
    success: bool
    error: Optional[str] = None


class TurnstileVerifier:
    """Server-side verification of Cloudflare Turnstile challenge responses."""

    def __init__(
        self,
        secret_key: Optional[str],
        *,
        verify_url: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ) -> None:
        self.secret_key = secret_key
        self.verify_url = verify_url
        self.timeout = timeout
        self._client = client

    @property
    def is_configured(self) -> bool:
        return bool(self.secret_key)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout, connect=5.0))
        return self._client

    async def verify(self, token: Optional[str], remote_ip: Optional[str] = None) -> TurnstileResult:
        if not self.is_configured:
            logger.warning("turnstile_not_configured", action="skipping_verification")
            return TurnstileResult(True)
        if not token:
            return TurnstileResult(False, "Please complete the CAPTCHA verification")

        form = {"secret": self.secret_key, "response": token}
        if remote_ip:
            form["remoteip"] = remote_ip
        try:
            client = await self._get_client()
            response = await client.post(self.verify_url, data=form)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            logger.error("turnstile_api_error", status_code=e.response.status_code)
            return TurnstileResult(False, "Turnstile verification failed")
        except httpx.HTTPError as e:
            logger.error("turnstile_request_failed", error_type=type(e).__name__, error=str(e))
            return TurnstileResult(False, "Turnstile verification failed")
        except ValueError:
            logger.error("turnstile_invalid_response")
            return TurnstileResult(False, "Turnstile verification failed")

        if isinstance(data, dict) and data.get("success") is True:
            return TurnstileResult(True)

        codes = (data.get("error-codes") if isinstance(data, dict) else None) or []
        if codes:
            logger.warning("turnstile_rejected", error_codes=codes)
        message = ERROR_MESSAGES.get(codes[0] if codes else "unknown", "CAPTCHA verification failed")
        return TurnstileResult(False, message)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


__all__ = ["TurnstileVerifier", "TurnstileResult", "ERROR_MESSAGES"]
