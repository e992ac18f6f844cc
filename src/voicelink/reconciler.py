"""
Output audio reconciliation.

Spoken replies reach the listener in exactly one of two ways, chosen once
from configuration:

- DelegatedSynthesis: the model replies in text; each finished reply is queued
  and spoken through the TTS relay, one at a time, in submission order.
- NativeSynthesis: the model's own audio arrives as an inbound WebRTC track and
  is attached straight to the speaker.

The strategy also carries the per-variant negotiation and channel policy, so
no other component branches on the output mode.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional

from .config import ClientConfig, OutputMode
from .media import AudioSink
from .tts_client import TTSRelayClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlaybackItem:
    text: str
    voice_hint: Optional[str] = None


class OutputStrategy:
    """Base policy; subclasses pick the audio path."""

    mode: OutputMode
    # Direction of the local audio transceiver
    local_direction: str = "sendrecv"
    # Add a receive-only audio transceiver before any remote track exists
    request_inbound_audio: bool = False
    # Include the selected voice in session.update
    voice_in_session: bool = False
    # Send response.create as soon as the event channel opens
    start_turn_on_open: bool = False
    # Answer input_audio_buffer.committed with response.create
    reply_on_commit: bool = False
    response_modalities: List[str] = ["audio", "text"]
    # Modalities requested when the session is minted
    session_modalities: List[str] = ["text", "audio"]

    def __init__(self, sink: AudioSink):
        self.sink = sink

    def submit(self, text: str, voice_hint: Optional[str] = None):
        """Hand a finished reply to the audio path."""

    def attach_track(self, track):
        """Handle an inbound media track from the peer connection."""

    def resume(self):
        """Nudge playback after an autoplay-style suspension."""

    def halt(self):
        """Stop all output immediately. Safe to call repeatedly."""
        self.sink.stop()


class DelegatedSynthesis(OutputStrategy):
    """Queued text-to-speech through the relay. At most one item plays at a time."""

    mode = OutputMode.DELEGATED
    local_direction = "sendonly"
    start_turn_on_open = True
    response_modalities = ["text"]
    session_modalities = ["text"]

    def __init__(self, sink: AudioSink, tts: TTSRelayClient, voice: Optional[str] = None):
        super().__init__(sink)
        self.tts = tts
        self.voice = voice
        self._queue: asyncio.Queue = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def submit(self, text: str, voice_hint: Optional[str] = None):
        text = (text or "").strip()
        if not text:
            return
        self._queue.put_nowait(PlaybackItem(text=text, voice_hint=voice_hint or self.voice))
        if self._worker is None or self._worker.done():
            self._worker = asyncio.ensure_future(self._run())

    async def _run(self):
        while True:
            item = await self._queue.get()
            try:
                data = await self.tts.fetch(item.text, item.voice_hint)
                await self.sink.play(data)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # One bad item must not stall the queue
                logger.error(f"TTS playback failed for {item.text[:40]!r}: {e}")

    def attach_track(self, track):
        logger.debug(f"Ignoring inbound {track.kind} track in delegated mode")

    def halt(self):
        self._queue = asyncio.Queue()
        if self._worker is not None:
            self._worker.cancel()
            self._worker = None
        self.sink.stop()


class NativeSynthesis(OutputStrategy):
    """The model's own audio track is played directly."""

    mode = OutputMode.NATIVE
    local_direction = "sendrecv"
    request_inbound_audio = True
    voice_in_session = True
    reply_on_commit = True
    response_modalities = ["audio", "text"]

    def attach_track(self, track):
        if track.kind != "audio":
            return
        logger.info("Attaching remote audio track")
        self.sink.attach(track)
        self.sink.resume()

    def resume(self):
        self.sink.resume()


def create_output_strategy(config: ClientConfig, sink: Optional[AudioSink] = None) -> OutputStrategy:
    sink = sink or AudioSink(sample_rate=config.sample_rate, volume=config.volume)
    if config.output_mode is OutputMode.DELEGATED:
        return DelegatedSynthesis(
            sink,
            TTSRelayClient(config.relay_url),
            voice=config.tts_voice,
        )
    return NativeSynthesis(sink)
