"""
VoiceLink - realtime voice conversations over WebRTC.

- Client captures the microphone and negotiates WebRTC with the provider
- A data channel carries transcript and turn events
- Replies play from the model's own audio track or through a TTS relay
- The relay (voicelink.relay) mints ephemeral credentials and proxies TTS
"""

from .client import VoiceClient
from .config import ClientConfig, OutputMode, RelayConfig
from .state import ConversationState, ConversationStateMachine

__all__ = [
    "VoiceClient",
    "ClientConfig",
    "RelayConfig",
    "OutputMode",
    "ConversationState",
    "ConversationStateMachine",
]
