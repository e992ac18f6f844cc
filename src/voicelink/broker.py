import logging
from dataclasses import dataclass, field
from typing import List, Optional

import httpx

from .errors import NetworkError, SessionFetchFailed

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionCredential:
    """Short-lived, single-use client secret plus the model it is valid for."""
    secret: str
    model: str
    voice: Optional[str] = None


@dataclass
class SessionRequest:
    modalities: List[str] = field(default_factory=lambda: ["text", "audio"])
    instructions: Optional[str] = None
    voice: Optional[str] = None

    def to_json(self) -> dict:
        body: dict = {"modalities": list(self.modalities)}
        if self.instructions and self.instructions.strip():
            body["instructions"] = self.instructions.strip()
        if self.voice:
            body["voice"] = self.voice.strip()
        return body


class CredentialBroker:
    """Client for the relay's ``POST /session`` endpoint."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 20.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def fetch(self, request: SessionRequest) -> SessionCredential:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(f"{self.base_url}/session", json=request.to_json())
        except httpx.TransportError as e:
            logger.error(f"Session fetch error: {e}")
            raise NetworkError("/session", e) from e

        if response.is_error:
            raise SessionFetchFailed(response.status_code, response.text)

        try:
            data = response.json()
        except ValueError:
            data = None
        if not isinstance(data, dict) or not data.get("client_secret"):
            raise SessionFetchFailed(None, "invalid session response")

        return SessionCredential(
            secret=str(data["client_secret"]),
            model=str(data.get("model") or ""),
            voice=data.get("voice"),
        )
