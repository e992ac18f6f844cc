"""
Local audio devices bridged onto aiortc.

- MicrophoneSource: sounddevice capture feeding an aiortc audio track
- AudioSink: plays inbound WebRTC tracks or encoded TTS bytes

sounddevice is imported on first use: it needs the PortAudio shared library
at import time, and a missing library is reported like any other device
failure.
"""

import asyncio
import fractions
import io
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

import av
import numpy as np
from aiortc import MediaStreamTrack
from aiortc.mediastreams import MediaStreamError

from .errors import PermissionDenied

logger = logging.getLogger(__name__)

SAMPLE_RATE = 48000
FRAME_SAMPLES = 960  # 20 ms at 48 kHz


def _sounddevice():
    import sounddevice
    return sounddevice


class AudioDeviceError(OSError):
    """A local audio device could not be opened or driven."""


@dataclass(frozen=True)
class AudioConstraints:
    """Capture constraints; the processing flags are requests, not guarantees."""
    echo_cancellation: bool = False
    noise_suppression: bool = False
    auto_gain_control: bool = False
    sample_rate: int = SAMPLE_RATE
    latency: str = "high"
    device: Optional[str] = None


ENHANCED_CONSTRAINTS = AudioConstraints(
    echo_cancellation=True,
    noise_suppression=True,
    auto_gain_control=True,
    latency="low",
)
MINIMAL_CONSTRAINTS = AudioConstraints()


class MicrophoneTrack(MediaStreamTrack):
    """
    Audio track fed from the capture callback.

    Captured PCM is re-chunked into 20 ms frames. While ``enabled`` is False
    the track keeps its timing but sends silence.
    """

    kind = "audio"

    def __init__(self, sample_rate: int = SAMPLE_RATE, max_pending: int = 50):
        super().__init__()
        self.sample_rate = sample_rate
        self.enabled = False
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_pending)
        self._pending = np.zeros(0, dtype=np.int16)
        self._timestamp = 0
        self._time_base = fractions.Fraction(1, sample_rate)

    def push(self, pcm: np.ndarray):
        """Queue captured int16 mono samples. Must run on the event loop."""
        self._pending = np.concatenate([self._pending, pcm.astype(np.int16, copy=False)])
        while len(self._pending) >= FRAME_SAMPLES:
            chunk, self._pending = self._pending[:FRAME_SAMPLES], self._pending[FRAME_SAMPLES:]
            if self._queue.full():
                # Drop the oldest frame rather than let latency grow
                self._queue.get_nowait()
            self._queue.put_nowait(chunk)

    async def recv(self) -> av.AudioFrame:
        if self.readyState != "live":
            raise MediaStreamError

        pcm = await self._queue.get()
        if not self.enabled:
            pcm = np.zeros_like(pcm)

        frame = av.AudioFrame.from_ndarray(pcm.reshape(1, -1), format="s16", layout="mono")
        frame.sample_rate = self.sample_rate
        frame.pts = self._timestamp
        frame.time_base = self._time_base
        self._timestamp += len(pcm)
        return frame


class MicrophoneSource:
    """One open capture stream and the track it feeds."""

    def __init__(self, constraints: AudioConstraints, loop: Optional[asyncio.AbstractEventLoop] = None):
        self.constraints = constraints
        self.track = MicrophoneTrack(sample_rate=constraints.sample_rate)
        self._loop = loop or asyncio.get_event_loop()
        self._stream = None
        self._stopped = False

    @property
    def tracks(self) -> List[MicrophoneTrack]:
        return [self.track]

    def start(self):
        sd = _sounddevice()
        try:
            self._stream = sd.InputStream(
                samplerate=self.constraints.sample_rate,
                channels=1,
                dtype="int16",
                blocksize=FRAME_SAMPLES,
                latency=self.constraints.latency,
                device=self.constraints.device,
                callback=self._on_audio,
            )
            self._stream.start()
        except sd.PortAudioError as e:
            raise AudioDeviceError(str(e)) from e
        logger.info(
            f"Microphone opened (device={self.constraints.device or 'default'}, "
            f"latency={self.constraints.latency})"
        )

    def _on_audio(self, indata, frames, time_info, status):
        # PortAudio thread
        if status:
            logger.debug(f"Capture status: {status}")
        self._loop.call_soon_threadsafe(self.track.push, indata[:, 0].copy())

    def set_enabled(self, enabled: bool):
        for track in self.tracks:
            track.enabled = enabled

    def stop(self):
        if self._stopped:
            return
        self._stopped = True
        self.set_enabled(False)
        if self._stream is not None:
            try:
                self._stream.stop()
                self._stream.close()
            except Exception as e:
                logger.debug(f"Capture stream already closed: {e}")
            self._stream = None
        self.track.stop()


def open_microphone(constraints: AudioConstraints) -> MicrophoneSource:
    source = MicrophoneSource(constraints)
    source.start()
    return source


def acquire_microphone(
    opener: Callable[[AudioConstraints], MicrophoneSource] = open_microphone,
    enhanced: AudioConstraints = ENHANCED_CONSTRAINTS,
    minimal: AudioConstraints = MINIMAL_CONSTRAINTS,
) -> MicrophoneSource:
    """
    Open the microphone, retrying once with minimal constraints.

    Raises:
        PermissionDenied: when both attempts fail.
    """
    try:
        source = opener(enhanced)
        logger.info("Microphone access granted with enhanced settings")
    except (OSError, ValueError) as first:
        logger.warning(f"Mic constraints failed, retrying with minimal settings: {first}")
        try:
            source = opener(minimal)
            logger.info("Microphone access granted with basic settings")
        except (OSError, ValueError) as second:
            logger.error(f"Mic error: {second}")
            raise PermissionDenied() from second

    source.set_enabled(False)
    return source


class AudioSink:
    """
    Speaker output.

    Plays either an inbound WebRTC track (native synthesis) or encoded audio
    bytes from the TTS relay (delegated synthesis). ``stop`` halts playback
    immediately.
    """

    def __init__(self, sample_rate: int = SAMPLE_RATE, volume: float = 1.0, device: Optional[str] = None):
        self.sample_rate = sample_rate
        self.device = device
        self._volume = 1.0
        self.volume = volume
        self._stream = None
        self._track_task: Optional[asyncio.Task] = None

    @property
    def volume(self) -> float:
        return self._volume

    @volume.setter
    def volume(self, value: float):
        self._volume = min(max(float(value), 0.0), 1.0)

    def _ensure_stream(self):
        sd = _sounddevice()
        try:
            if self._stream is None:
                self._stream = sd.OutputStream(
                    samplerate=self.sample_rate,
                    channels=1,
                    dtype="float32",
                    device=self.device,
                )
            if not self._stream.active:
                self._stream.start()
        except sd.PortAudioError as e:
            raise AudioDeviceError(str(e)) from e
        return self._stream

    def _resampler(self) -> av.AudioResampler:
        return av.AudioResampler(format="flt", layout="mono", rate=self.sample_rate)

    async def _write(self, frames: List[av.AudioFrame]):
        stream = self._ensure_stream()
        loop = asyncio.get_event_loop()
        for frame in frames:
            samples = frame.to_ndarray().reshape(-1, 1).astype(np.float32) * self._volume
            # Blocking write goes to the default executor
            await loop.run_in_executor(None, stream.write, samples)

    def attach(self, track: MediaStreamTrack):
        """Route an inbound track to the speaker, replacing any previous one."""
        if self._track_task is not None:
            self._track_task.cancel()
        self._track_task = asyncio.ensure_future(self._pump(track))

    async def _pump(self, track: MediaStreamTrack):
        resampler = self._resampler()
        logger.info(f"Playing remote {track.kind} track")
        try:
            while True:
                try:
                    frame = await track.recv()
                except MediaStreamError:
                    break
                await self._write(resampler.resample(frame))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Remote audio playback error: {e}")
        logger.info("Remote audio track ended")

    def resume(self):
        """Nudge playback back on after a suspension."""
        try:
            self._ensure_stream()
        except OSError as e:
            logger.debug(f"Could not resume audio output: {e}")

    async def play(self, data: bytes):
        """Decode encoded audio (e.g. audio/mpeg) and play it to completion."""
        resampler = self._resampler()
        with av.open(io.BytesIO(data), mode="r") as container:
            for frame in container.decode(audio=0):
                await self._write(resampler.resample(frame))
        await self._write(resampler.resample(None))

    def stop(self):
        if self._track_task is not None:
            self._track_task.cancel()
            self._track_task = None
        if self._stream is not None:
            try:
                self._stream.abort()
                self._stream.close()
            except Exception as e:
                logger.debug(f"Output stream already closed: {e}")
            self._stream = None
