"""
FIELDVOICE HTTP Providers
Network-tier STT, reasoning and TTS adapters speaking JSON over HTTP.

Wire contract (vendor-neutral):
    STT        POST <stt_url>        chunked 16-bit PCM body
               -> NDJSON lines {"text": str, "confidence": float, "final": bool}
    Reasoning  POST <reasoning_url>  {"transcript", "context", "language"}
               -> {"action", "entities", "confidence", "raw_response_text"}
    TTS        POST <tts_url>        {"text", "voice"} -> audio bytes
    Health     GET  <url>/health     2xx means healthy

HTTP 408/429/5xx and transport errors raise ProviderTransientError; other
error statuses and undecodable bodies raise MalformedProviderOutputError
(InvalidReasoningOutputError for the reasoning provider).
"""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Dict, Optional

import aiohttp

from fieldvoice.exceptions import (
    InvalidReasoningOutputError,
    MalformedProviderOutputError,
    ProviderTransientError,
)
from fieldvoice.providers import ReasoningRequest, TranscriptEvent
from fieldvoice.types import ProviderRole, ProviderTier

logger = logging.getLogger("FIELDVOICE.HttpProviders")


__all__ = [
    "HttpTranscriptionProvider",
    "HttpReasoningProvider",
    "HttpSynthesisProvider",
    "TRANSIENT_STATUSES",
]


TRANSIENT_STATUSES = frozenset({408, 429, 500, 502, 503, 504})


class _HttpProvider:
    """Shared session handling, auth header, status mapping and health check."""

    role: ProviderRole
    tier = ProviderTier.NETWORK
    malformed_error = MalformedProviderOutputError

    def __init__(
        self,
        name: str,
        url: str,
        api_key: Optional[str] = None,
        session: Optional[aiohttp.ClientSession] = None,
        health_url: Optional[str] = None,
    ):
        self.name = name
        self.url = url
        self.api_key = api_key
        self.health_url = health_url or f"{url.rstrip('/')}/health"
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={"User-Agent": "FIELDVOICE/1.0"}
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = dict(extra or {})
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _check_status(self, response: aiohttp.ClientResponse) -> None:
        status = response.status
        if status < 400:
            return
        if status in TRANSIENT_STATUSES or status >= 500:
            raise ProviderTransientError(
                f"{self.name} returned HTTP {status}",
                role=self.role,
                provider=self.name,
                status=status,
            )
        raise self.malformed_error(
            f"{self.name} rejected request with HTTP {status}",
            role=self.role,
            provider=self.name,
            status=status,
        )

    def _transport_error(self, error: Exception) -> ProviderTransientError:
        return ProviderTransientError(
            f"{self.name} transport error: {error}",
            role=self.role,
            provider=self.name,
        )

    async def health_check(self) -> bool:
        try:
            session = await self._get_session()
            async with session.get(self.health_url, headers=self._headers()) as response:
                return response.status < 400
        except aiohttp.ClientError as e:
            logger.debug(f"{self.name} health check failed: {e}")
            return False


class HttpTranscriptionProvider(_HttpProvider):
    """Streaming STT over a chunked POST with an NDJSON event response."""

    role = ProviderRole.STT

    def __init__(self, url: str, name: str = "http-stt", **kwargs: Any):
        super().__init__(name, url, **kwargs)

    async def transcribe(
        self,
        audio: AsyncIterator[bytes],
        *,
        sample_rate: int,
        language: str,
    ) -> AsyncIterator[TranscriptEvent]:
        headers = self._headers({
            "Content-Type": f"audio/L16; rate={sample_rate}; channels=1",
            "Accept": "application/x-ndjson",
            "X-Language": language,
        })
        try:
            session = await self._get_session()
            async with session.post(self.url, data=audio, headers=headers) as response:
                self._check_status(response)
                async for raw_line in response.content:
                    line = raw_line.strip()
                    if not line:
                        continue
                    yield self._parse_event(line)
        except aiohttp.ClientError as e:
            raise self._transport_error(e) from e

    def _parse_event(self, line: bytes) -> TranscriptEvent:
        try:
            data = json.loads(line)
            return TranscriptEvent(
                text=str(data["text"]),
                confidence=float(data.get("confidence", 0.0)),
                is_final=bool(data.get("final", False)),
            )
        except (ValueError, KeyError, TypeError) as e:
            raise MalformedProviderOutputError(
                f"Undecodable transcript event from {self.name}",
                role=self.role,
                provider=self.name,
            ) from e


class HttpReasoningProvider(_HttpProvider):
    """Cloud reasoning; returns the decoded reply, validated downstream."""

    role = ProviderRole.INTENT
    malformed_error = InvalidReasoningOutputError

    def __init__(self, url: str, name: str = "http-reasoning", **kwargs: Any):
        super().__init__(name, url, **kwargs)

    async def reason(self, request: ReasoningRequest) -> Dict[str, Any]:
        try:
            session = await self._get_session()
            async with session.post(
                self.url, json=request.to_dict(), headers=self._headers()
            ) as response:
                self._check_status(response)
                try:
                    return await response.json(content_type=None)
                except ValueError as e:
                    raise InvalidReasoningOutputError(
                        f"Reasoning reply from {self.name} is not JSON",
                        role=self.role,
                        provider=self.name,
                    ) from e
        except aiohttp.ClientError as e:
            raise self._transport_error(e) from e


class HttpSynthesisProvider(_HttpProvider):
    """TTS returning the audio payload as-is (WAV or raw PCM)."""

    role = ProviderRole.TTS

    def __init__(self, url: str, name: str = "http-tts", **kwargs: Any):
        super().__init__(name, url, **kwargs)

    async def synthesize(self, text: str, *, voice: str = "default") -> bytes:
        try:
            session = await self._get_session()
            async with session.post(
                self.url, json={"text": text, "voice": voice}, headers=self._headers()
            ) as response:
                self._check_status(response)
                return await response.read()
        except aiohttp.ClientError as e:
            raise self._transport_error(e) from e
