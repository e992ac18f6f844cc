"""
Realtime event channel.

Wraps the ``oai-events`` data channel. Inbound messages are queued and
consumed by one dispatcher task, so handlers run in arrival order and never
overlap. Malformed payloads are dropped silently.
"""

import asyncio
import logging
from typing import Callable, Dict, Optional

from .events import (
    EventKind,
    RealtimeEvent,
    encode,
    parse_event,
    response_create,
    session_update,
)
from .reconciler import OutputStrategy

logger = logging.getLogger(__name__)

CHANNEL_LABEL = "oai-events"
SUBTITLE_PREFIX = "AI: "


class ReplyBuffer:
    """Accumulates the deltas of the current model turn."""

    def __init__(self):
        self._parts = []

    def reset(self):
        self._parts = []

    def append(self, delta: str):
        if delta:
            self._parts.append(delta)

    def flush(self) -> str:
        text = "".join(self._parts).strip()
        self._parts = []
        return text

    @property
    def text(self) -> str:
        return "".join(self._parts)

    def __bool__(self) -> bool:
        return bool(self._parts)


class RealtimeEventChannel:
    """
    Structured event stream over one data channel.

    Args:
        channel: aiortc RTCDataChannel (or anything with the same surface)
        strategy: output strategy; supplies the variant policy
        instructions: system instructions sent in session.update on open
        voice: voice sent in session.update when the strategy wants it
        on_open: called once the channel is open and configured
        on_subtitle: receives each finished ``AI: ...`` line
        on_status: receives status text
    """

    def __init__(
        self,
        channel,
        strategy: OutputStrategy,
        instructions: Optional[str] = None,
        voice: Optional[str] = None,
        on_open: Optional[Callable[[], None]] = None,
        on_subtitle: Optional[Callable[[str], None]] = None,
        on_status: Optional[Callable[[str], None]] = None,
    ):
        self._channel = channel
        self.strategy = strategy
        self.instructions = instructions
        self.voice = voice
        self.on_open = on_open
        self.on_subtitle = on_subtitle
        self.on_status = on_status

        self.buffer = ReplyBuffer()
        self.configured = False
        self.acknowledged = False
        self._queue: asyncio.Queue = asyncio.Queue()
        self._dispatcher: Optional[asyncio.Task] = None
        self._closed = False

        self._handlers: Dict[EventKind, Callable[[RealtimeEvent], None]] = {
            EventKind.TURN_CREATED: self._on_turn_created,
            EventKind.TEXT_DELTA: self._on_delta,
            EventKind.AUDIO_TRANSCRIPT_DELTA: self._on_delta,
            EventKind.TEXT_DONE: self._on_turn_finished,
            EventKind.TURN_COMPLETED: self._on_turn_finished,
            EventKind.AUDIO_TRANSCRIPT_DONE: self._on_turn_finished,
            EventKind.TURN_DONE: self._on_turn_finished,
            EventKind.SESSION_UPDATED: self._on_session_updated,
            EventKind.INPUT_AUDIO_COMMITTED: self._on_input_committed,
            EventKind.OUTPUT_AUDIO_STARTED: self._on_output_started,
            EventKind.ERROR: self._on_error,
            EventKind.RESPONSE_ERROR: self._on_error,
            EventKind.OTHER: self._on_other,
        }
        missing = set(EventKind) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No handler for event kinds: {sorted(k.value for k in missing)}")

        channel.on("open", self._handle_open)
        channel.on("message", self._enqueue)
        channel.on("close", self._handle_close)

    @property
    def label(self) -> str:
        return getattr(self._channel, "label", CHANNEL_LABEL)

    @property
    def is_open(self) -> bool:
        return not self._closed and self._channel.readyState == "open"

    def start(self):
        """Start the dispatcher; replays open if the channel is already open."""
        if self._dispatcher is None:
            self._dispatcher = asyncio.ensure_future(self._dispatch())
        if self._channel.readyState == "open":
            self._handle_open()

    def send(self, message: Optional[dict]) -> bool:
        if message is None or not self.is_open:
            return False
        try:
            self._channel.send(encode(message))
        except Exception as e:
            logger.warning(f"Failed to send {message.get('type')}: {e}")
            return False
        logger.debug(f"sent: {message['type']}")
        return True

    def apply_instructions(self, text: str) -> bool:
        """Push new system instructions to a live session."""
        text = (text or "").strip()
        if not text:
            self._status("Instructions are empty")
            return False
        if not self.is_open:
            self._status("Instructions can be applied once connected")
            return False
        self.instructions = text
        if self.send(session_update(instructions=text)):
            self._status("Instructions sent")
            return True
        self._status("Failed to apply instructions")
        return False

    def close(self):
        if self._closed:
            return
        self._closed = True
        if self._dispatcher is not None:
            self._dispatcher.cancel()
            self._dispatcher = None
        try:
            self._channel.close()
        except Exception as e:
            logger.debug(f"Data channel already closed: {e}")

    # --- inbound ---

    def _enqueue(self, message):
        if not self._closed:
            self._queue.put_nowait(message)

    async def _dispatch(self):
        while True:
            message = await self._queue.get()
            try:
                self.handle_message(message)
            except Exception as e:
                logger.error(f"Realtime event handler failed: {e}")

    def handle_message(self, message) -> Optional[RealtimeEvent]:
        event = parse_event(message)
        if event is None:
            return None
        self._handlers[event.kind](event)
        return event

    def _handle_open(self):
        if self.configured or self._closed:
            return
        logger.info(f"Data channel {self.label} open")
        voice = self.voice if self.strategy.voice_in_session else None
        self.send(session_update(instructions=self.instructions, voice=voice))
        if self.strategy.start_turn_on_open:
            self.send(response_create(self.strategy.response_modalities))
        self.configured = True
        if self.on_open:
            self.on_open()

    def _handle_close(self):
        logger.info(f"Data channel {self.label} closed")

    # --- handlers ---

    def _on_turn_created(self, event: RealtimeEvent):
        # A new turn always starts clean, even if the last one never finished
        self.buffer.reset()

    def _on_delta(self, event: RealtimeEvent):
        self.buffer.append(event.delta)

    def _on_turn_finished(self, event: RealtimeEvent):
        text = self.buffer.flush()
        if not text:
            return
        if self.on_subtitle:
            self.on_subtitle(f"{SUBTITLE_PREFIX}{text}\n")
        self.strategy.submit(text)

    def _on_session_updated(self, event: RealtimeEvent):
        self.acknowledged = True
        self._status("Prompt applied")

    def _on_input_committed(self, event: RealtimeEvent):
        if self.strategy.reply_on_commit:
            self.send(response_create(self.strategy.response_modalities))

    def _on_output_started(self, event: RealtimeEvent):
        self.strategy.resume()

    def _on_error(self, event: RealtimeEvent):
        logger.error(f"Realtime error event: {event.payload}")

    def _on_other(self, event: RealtimeEvent):
        logger.debug(f"realtime event: {event.type}")

    def _status(self, text: str):
        if self.on_status:
            self.on_status(text)
