"""Runtime configuration for the voice client and the relay.

Both configs are plain dataclasses populated from the environment. Entry
points load a ``.env`` file first so local development needs no exports.
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

DEFAULT_STUN_SERVER = "stun:stun.l.google.com:19302"
DEFAULT_REALTIME_URL = "https://api.openai.com/v1/realtime"


class OutputMode(Enum):
    """Where spoken replies come from. Chosen once per deployment."""
    DELEGATED = "delegated"  # model returns text, TTS relay speaks it
    NATIVE = "native"  # model audio arrives on the peer connection


def _env_flag(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str, default: List[str]) -> List[str]:
    value = os.environ.get(name, "").strip()
    if not value:
        return list(default)
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass
class ClientConfig:
    """Voice client configuration."""
    # Relay hosting /session and /tts
    relay_url: str = "http://localhost:3000"

    # Upstream signaling endpoint for the SDP offer/answer exchange
    realtime_url: str = DEFAULT_REALTIME_URL

    output_mode: OutputMode = OutputMode.NATIVE
    voice: str = "alloy"
    tts_voice: Optional[str] = None
    instructions: Optional[str] = None
    # Session modalities; empty means the output mode's default
    modalities: List[str] = field(default_factory=list)

    # STUN only; no TURN relays
    ice_servers: List[str] = field(default_factory=lambda: [DEFAULT_STUN_SERVER])

    # Timeouts (seconds)
    ice_gathering_timeout: float = 2.0
    http_timeout: float = 20.0

    # Audio
    sample_rate: int = 48000
    volume: float = 1.0

    @classmethod
    def from_env(cls) -> "ClientConfig":
        mode = os.environ.get("VOICELINK_OUTPUT_MODE", OutputMode.NATIVE.value).strip().lower()
        return cls(
            relay_url=os.environ.get("VOICELINK_RELAY_URL", "http://localhost:3000").rstrip("/"),
            realtime_url=os.environ.get("REALTIME_URL", DEFAULT_REALTIME_URL).rstrip("/"),
            output_mode=OutputMode(mode),
            voice=os.environ.get("VOICELINK_VOICE", "alloy").strip(),
            tts_voice=os.environ.get("VOICELINK_TTS_VOICE") or None,
            instructions=os.environ.get("VOICELINK_INSTRUCTIONS") or None,
            modalities=_env_list("VOICELINK_MODALITIES", []),
            ice_servers=_env_list("VOICELINK_STUN_SERVERS", [DEFAULT_STUN_SERVER]),
        )


@dataclass
class RelayConfig:
    """Relay (credential broker + TTS proxy) configuration."""
    openai_api_key: str = ""
    realtime_model: str = "gpt-realtime"
    default_voice: str = "alloy"
    elevenlabs_api_key: str = ""
    elevenlabs_voice_id: str = ""

    sessions_url: str = "https://api.openai.com/v1/realtime/sessions"
    elevenlabs_url: str = "https://api.elevenlabs.io/v1"
    tts_model: str = "eleven_multilingual_v2"
    voices_ttl: float = 300.0

    # Listener
    host: str = "0.0.0.0"
    port: int = 3000
    https: bool = False
    ssl_key: str = "./localhost-key.pem"
    ssl_cert: str = "./localhost.pem"
    static_dir: Optional[str] = None

    @classmethod
    def from_env(cls) -> "RelayConfig":
        return cls(
            openai_api_key=os.environ.get("OPENAI_API_KEY", ""),
            realtime_model=(os.environ.get("REALTIME_MODEL") or "gpt-realtime").strip(),
            default_voice=os.environ.get("VOICE") or "alloy",
            elevenlabs_api_key=os.environ.get("ELEVENLABS_API_KEY", ""),
            elevenlabs_voice_id=os.environ.get("ELEVENLABS_VOICE_ID", ""),
            host=os.environ.get("HOST", "0.0.0.0"),
            port=int(os.environ.get("PORT", "3000")),
            https=_env_flag("HTTPS"),
            ssl_key=os.environ.get("SSL_KEY", "./localhost-key.pem"),
            ssl_cert=os.environ.get("SSL_CERT", "./localhost.pem"),
            static_dir=os.environ.get("STATIC_DIR") or None,
        )

    def masked_openai_key(self) -> str:
        key = self.openai_api_key
        if not key:
            return "NOT SET"
        return f"{key[:8]}...{key[-4:]}"
