"""
Realtime event types exchanged over the data channel.

Inbound messages are parsed into a closed set of ``EventKind`` values; every
unrecognised type maps to ``EventKind.OTHER``. Outbound control messages are
built by the helpers at the bottom of this module.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union


class EventKind(Enum):
    """Inbound realtime event kinds the client reacts to."""
    TURN_CREATED = "turn_created"
    TEXT_DELTA = "text_delta"
    AUDIO_TRANSCRIPT_DELTA = "audio_transcript_delta"
    TEXT_DONE = "text_done"
    TURN_COMPLETED = "turn_completed"
    AUDIO_TRANSCRIPT_DONE = "audio_transcript_done"
    TURN_DONE = "turn_done"
    SESSION_UPDATED = "session_updated"
    INPUT_AUDIO_COMMITTED = "input_audio_committed"
    OUTPUT_AUDIO_STARTED = "output_audio_started"
    ERROR = "error"
    RESPONSE_ERROR = "response_error"
    OTHER = "other"


# Wire type -> kind. Both the beta and GA spellings of the text and
# transcript events are accepted.
EVENT_TYPES: Dict[str, EventKind] = {
    "response.created": EventKind.TURN_CREATED,
    "response.output_text.delta": EventKind.TEXT_DELTA,
    "response.text.delta": EventKind.TEXT_DELTA,
    "response.audio_transcript.delta": EventKind.AUDIO_TRANSCRIPT_DELTA,
    "response.output_audio_transcript.delta": EventKind.AUDIO_TRANSCRIPT_DELTA,
    "response.output_text.done": EventKind.TEXT_DONE,
    "response.text.done": EventKind.TEXT_DONE,
    "response.completed": EventKind.TURN_COMPLETED,
    "response.audio_transcript.done": EventKind.AUDIO_TRANSCRIPT_DONE,
    "response.output_audio_transcript.done": EventKind.AUDIO_TRANSCRIPT_DONE,
    "response.done": EventKind.TURN_DONE,
    "session.updated": EventKind.SESSION_UPDATED,
    "input_audio_buffer.committed": EventKind.INPUT_AUDIO_COMMITTED,
    "output_audio_buffer.started": EventKind.OUTPUT_AUDIO_STARTED,
    "error": EventKind.ERROR,
    "response.error": EventKind.RESPONSE_ERROR,
}

DELTA_KINDS = frozenset({EventKind.TEXT_DELTA, EventKind.AUDIO_TRANSCRIPT_DELTA})
FLUSH_KINDS = frozenset({
    EventKind.TEXT_DONE,
    EventKind.TURN_COMPLETED,
    EventKind.AUDIO_TRANSCRIPT_DONE,
    EventKind.TURN_DONE,
})


@dataclass(frozen=True)
class RealtimeEvent:
    """One parsed inbound message."""
    kind: EventKind
    type: str
    delta: str = ""
    payload: Dict[str, Any] = field(default_factory=dict)


def parse_event(raw: Union[str, bytes]) -> Optional[RealtimeEvent]:
    """
    Parse one data channel message.

    Returns None for anything that is not a JSON object carrying a string
    ``type``; such payloads are expected noise on the channel.
    """
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError:
            return None
    try:
        message = json.loads(raw)
    except (TypeError, ValueError):
        return None
    if not isinstance(message, dict):
        return None

    event_type = message.get("type")
    if not isinstance(event_type, str) or not event_type:
        return None

    kind = EVENT_TYPES.get(event_type, EventKind.OTHER)
    delta = message.get("delta") if kind in DELTA_KINDS else ""
    return RealtimeEvent(
        kind=kind,
        type=event_type,
        delta=delta if isinstance(delta, str) else "",
        payload=message,
    )


def session_update(instructions: Optional[str] = None, voice: Optional[str] = None) -> Optional[dict]:
    """Build a ``session.update`` message, or None when there is nothing to update."""
    session: Dict[str, Any] = {}
    if instructions:
        session["instructions"] = instructions
    if voice:
        session["voice"] = voice
    if not session:
        return None
    return {"type": "session.update", "session": session}


def response_create(modalities: List[str]) -> dict:
    """Build a ``response.create`` message asking the model for a new turn."""
    return {
        "type": "response.create",
        "response": {"conversation": "auto", "modalities": list(modalities)},
    }


def encode(message: dict) -> str:
    return json.dumps(message)
