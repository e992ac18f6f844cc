"""
Standalone relay server.

Run with:
    python -m voicelink.relay.standalone

Then point the client at http://localhost:3000
"""

import logging
import os
from typing import Optional

import httpx
import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from ..config import RelayConfig
from .server import RelayServer
from .tls import ssl_options

logger = logging.getLogger(__name__)


def create_app(
    config: Optional[RelayConfig] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    config = config or RelayConfig.from_env()

    app = FastAPI(
        title="VoiceLink Relay",
        description="Ephemeral realtime credentials and TTS proxy",
        version="0.1.0",
    )

    # CORS for browser access
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    relay = RelayServer(config, transport=transport)
    relay.mount(app)
    app.state.relay = relay

    @app.get("/health")
    async def health():
        """Liveness probe."""
        return {"ok": True}

    # Static assets last so API routes win
    if config.static_dir and os.path.isdir(config.static_dir):
        app.mount("/", StaticFiles(directory=config.static_dir, html=True), name="static")
        logger.info(f"Serving static files from: {config.static_dir}")

    return app


def log_environment(config: RelayConfig):
    logger.info("Environment:")
    logger.info(f"  OPENAI_API_KEY: {config.masked_openai_key()}")
    logger.info(f"  REALTIME_MODEL: {config.realtime_model}")
    logger.info(f"  DEFAULT_VOICE: {config.default_voice}")
    logger.info(f"  ELEVENLABS_API_KEY: {'SET' if config.elevenlabs_api_key else 'NOT SET'}")
    logger.info(f"  ELEVENLABS_VOICE_ID: {config.elevenlabs_voice_id or 'NOT SET'}")
    if not config.openai_api_key:
        logger.warning("OPENAI_API_KEY is not set. /session will fail until configured.")


def main():
    """Run the standalone relay."""
    load_dotenv()
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    config = RelayConfig.from_env()
    log_environment(config)
    tls = ssl_options(config)
    scheme = "https" if tls else "http"
    logger.info(f"Server listening on {scheme}://localhost:{config.port}")

    uvicorn.run(
        create_app(config),
        host=config.host,
        port=config.port,
        log_level="info",
        **tls,
    )


if __name__ == "__main__":
    main()
