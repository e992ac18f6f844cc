import logging
import time
from typing import Callable, List, Optional

import httpx

logger = logging.getLogger(__name__)


class VoiceCatalogError(Exception):
    pass


def _voice_entries(data: dict) -> List[dict]:
    voices = data.get("voices")
    if not isinstance(voices, list):
        return []
    return [voice for voice in voices if isinstance(voice, dict)]


class VoiceCatalog:
    """
    TTS provider voice list with a short in-memory cache.

    The raw provider payload is cached for ``ttl`` seconds so /voices and the
    /tts default-voice fallback do not hit the provider on every request.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.elevenlabs.io/v1",
        ttl: float = 300.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.ttl = ttl
        self._transport = transport
        self._clock = clock
        self._cached_at = 0.0
        self._data: Optional[dict] = None

    async def raw(self) -> dict:
        if not self.api_key:
            raise VoiceCatalogError("ELEVENLABS_API_KEY not configured")

        now = self._clock()
        if self._data is not None and (now - self._cached_at) < self.ttl:
            return self._data

        async with httpx.AsyncClient(timeout=20.0, transport=self._transport) as client:
            response = await client.get(f"{self.base_url}/voices", headers={"xi-api-key": self.api_key})
        if response.is_error:
            raise VoiceCatalogError(f"ElevenLabs voices error: {response.status_code}")

        try:
            data = response.json()
        except ValueError as e:
            raise VoiceCatalogError(f"ElevenLabs voices returned invalid JSON: {e}") from e
        if not isinstance(data, dict):
            raise VoiceCatalogError("ElevenLabs voices returned an unexpected payload")

        self._data = data
        self._cached_at = now
        return self._data

    async def list(self) -> List[dict]:
        data = await self.raw()
        return [
            {"id": voice.get("voice_id"), "name": voice.get("name")}
            for voice in _voice_entries(data)
        ]

    async def first_voice_id(self) -> str:
        try:
            voices = _voice_entries(await self.raw())
        except (VoiceCatalogError, httpx.HTTPError) as e:
            logger.warning(f"Could not resolve a default voice: {e}")
            return ""
        if not voices:
            return ""
        return str(voices[0].get("voice_id") or "")
