"""
Relay server.

Holds the long-lived provider API keys so clients never see them:
- POST /session mints an ephemeral realtime credential
- GET /voices lists TTS voices (cached)
- POST /tts streams synthesized speech back as audio/mpeg
"""

import logging
from typing import List, Optional
from urllib.parse import quote

import httpx
from fastapi import FastAPI
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from ..config import RelayConfig
from ..errors import truncate
from .voices import VoiceCatalog, VoiceCatalogError

logger = logging.getLogger(__name__)

UPSTREAM_DETAIL_LIMIT = 500

VOICE_SETTINGS = {
    "stability": 0.4,
    "similarity_boost": 0.7,
    "style": 0.55,
    "use_speaker_boost": True,
}


# --- Pydantic Models ---
class SessionBody(BaseModel):
    modalities: Optional[List[str]] = None
    instructions: Optional[str] = None
    voice: Optional[str] = None


class TTSBody(BaseModel):
    text: Optional[str] = None
    voiceId: Optional[str] = None
# ---------------------


class RelayServer:
    """
    Credential broker and TTS proxy.

    Usage:
        relay = RelayServer(RelayConfig.from_env())
        relay.mount(app)
    """

    def __init__(
        self,
        config: Optional[RelayConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config or RelayConfig()
        self._transport = transport
        self.voices = VoiceCatalog(
            self.config.elevenlabs_api_key,
            base_url=self.config.elevenlabs_url,
            ttl=self.config.voices_ttl,
            transport=transport,
        )

    def _client(self, timeout: Optional[float] = 30.0) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    def mount(self, app: FastAPI, prefix: str = ""):
        """
        Mount relay routes on a FastAPI app.

        Adds:
        - POST {prefix}/session - ephemeral realtime credential
        - GET {prefix}/voices - TTS voice catalog
        - POST {prefix}/tts - streamed speech for one text
        """

        @app.post(f"{prefix}/session")
        async def create_session(body: SessionBody):
            """Issue a short-lived client key for WebRTC."""
            return await self._create_session(body)

        @app.get(f"{prefix}/voices")
        async def list_voices():
            """List TTS voices as {id, name}."""
            if not self.config.elevenlabs_api_key:
                return JSONResponse(status_code=500, content={"error": "ELEVENLABS_API_KEY not configured"})
            try:
                return {"voices": await self.voices.list()}
            except (VoiceCatalogError, httpx.HTTPError) as e:
                logger.error(f"Error in /voices: {e}")
                return JSONResponse(status_code=500, content={"error": "Failed to fetch voices"})

        @app.post(f"{prefix}/tts")
        async def text_to_speech(body: TTSBody):
            """Stream speech for one piece of text."""
            return await self._text_to_speech(body)

    async def _create_session(self, body: SessionBody):
        payload = {
            "model": self.config.realtime_model,
            "modalities": body.modalities or ["text", "audio"],
            "turn_detection": {"type": "server_vad"},
        }
        if body.instructions:
            payload["instructions"] = body.instructions

        headers = {
            "Authorization": f"Bearer {self.config.openai_api_key}",
            "Content-Type": "application/json",
            "OpenAI-Beta": "realtime=v1",
        }
        try:
            async with self._client() as client:
                response = await client.post(self.config.sessions_url, headers=headers, json=payload)
        except httpx.HTTPError as e:
            logger.error(f"Error in /session: {e}")
            return JSONResponse(status_code=500, content={"error": "Internal error creating session"})

        if response.is_error:
            return JSONResponse(
                status_code=response.status_code,
                content={"error": "Failed to create realtime session", "details": truncate(response.text, UPSTREAM_DETAIL_LIMIT)},
            )

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}
        client_secret = data.get("client_secret")
        secret = client_secret.get("value") if isinstance(client_secret, dict) else None
        if not secret:
            return JSONResponse(status_code=502, content={"error": "Missing client_secret in upstream response"})

        logger.info(f"Issued realtime session for model {data.get('model') or self.config.realtime_model}")
        return {
            "client_secret": secret,
            "model": data.get("model") or self.config.realtime_model,
            "voice": data.get("voice") or body.voice or None,
        }

    async def _text_to_speech(self, body: TTSBody):
        if not self.config.elevenlabs_api_key:
            return JSONResponse(status_code=500, content={"error": "ELEVENLABS_API_KEY not configured"})

        text = (body.text or "").strip()
        if not text:
            return JSONResponse(status_code=400, content={"error": "Missing text"})

        voice_id = body.voiceId or self.config.elevenlabs_voice_id or await self.voices.first_voice_id()
        if not voice_id:
            return JSONResponse(
                status_code=400,
                content={"error": "Missing ElevenLabs voice id (no default available)"},
            )

        url = f"{self.config.elevenlabs_url}/text-to-speech/{quote(voice_id, safe='')}/stream"
        payload = {
            "text": text,
            "model_id": self.config.tts_model,
            "voice_settings": VOICE_SETTINGS,
        }
        headers = {
            "xi-api-key": self.config.elevenlabs_api_key,
            "Content-Type": "application/json",
            "Accept": "audio/mpeg",
        }

        client = self._client(timeout=None)
        try:
            request = client.build_request(
                "POST",
                url,
                params={"optimize_streaming_latency": 3},
                headers=headers,
                json=payload,
            )
            upstream = await client.send(request, stream=True)
        except httpx.HTTPError as e:
            await client.aclose()
            logger.error(f"Error in /tts: {e}")
            return JSONResponse(status_code=500, content={"error": "Internal TTS error"})

        if upstream.is_error:
            detail = (await upstream.aread()).decode("utf-8", errors="ignore")
            await upstream.aclose()
            await client.aclose()
            return JSONResponse(
                status_code=upstream.status_code,
                content={"error": "TTS upstream error", "details": truncate(detail, UPSTREAM_DETAIL_LIMIT)},
            )

        async def stream_audio():
            try:
                async for chunk in upstream.aiter_bytes():
                    yield chunk
            except httpx.HTTPError as e:
                logger.error(f"TTS stream error: {e}")
            finally:
                await upstream.aclose()
                await client.aclose()

        return StreamingResponse(
            stream_audio(),
            media_type="audio/mpeg",
            headers={"Cache-Control": "no-store"},
        )
