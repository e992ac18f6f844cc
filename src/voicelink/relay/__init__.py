"""
Relay - the server half of voicelink.

Keeps provider API keys server-side:
- Mints short-lived realtime credentials for clients
- Lists and caches TTS voices
- Streams TTS audio through without buffering
"""

from .server import RelayServer
from .standalone import create_app
from .voices import VoiceCatalog

__all__ = [
    "RelayServer",
    "VoiceCatalog",
    "create_app",
]
