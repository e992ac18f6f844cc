from typing import Optional

import httpx

from .errors import NetworkError, TTSFetchFailed


class TTSRelayClient:
    """Fetches rendered speech for one piece of text from the relay's ``/tts``."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def fetch(self, text: str, voice_id: Optional[str] = None) -> bytes:
        payload = {"text": text}
        if voice_id:
            payload["voiceId"] = voice_id

        chunks = []
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                async with client.stream("POST", f"{self.base_url}/tts", json=payload) as response:
                    if response.is_error:
                        detail = (await response.aread()).decode("utf-8", errors="ignore")
                        raise TTSFetchFailed(response.status_code, detail)
                    async for chunk in response.aiter_bytes():
                        chunks.append(chunk)
        except httpx.TransportError as e:
            raise NetworkError("/tts", e) from e
        return b"".join(chunks)
