"""
Conversation state machine.

Owns the single ``ConversationState`` value, the status line and the
transcript shown to the user. ``transition`` is the only code path that
changes the state, the status text or the microphone enablement.
"""

import logging
from enum import Enum
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)

PLACEHOLDER_TRANSCRIPT = "Tap the microphone to start speaking..."
READY_STATUS = "Ready to connect"


class ConversationState(Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECORDING = "recording"
    ERROR = "error"


# (field, value) pushed to listeners: field is "state", "status" or "transcript"
Listener = Callable[[str, str], None]


class ConversationStateMachine:
    """
    Tracks the conversation state and drives the user-facing surface.

    Usage:
        machine = ConversationStateMachine()
        machine.add_listener(lambda field, value: print(field, value))
        machine.transition(ConversationState.CONNECTING, "Connecting...")
    """

    def __init__(self):
        self.state = ConversationState.IDLE
        self.status = READY_STATUS
        self.transcript = PLACEHOLDER_TRANSCRIPT
        self._media = None
        self._listeners: List[Listener] = []

    def add_listener(self, listener: Listener):
        self._listeners.append(listener)

    @property
    def mic_enabled(self) -> bool:
        return self.state is ConversationState.RECORDING

    def bind_media(self, media):
        """Attach the current microphone source; its tracks follow the state from now on."""
        self._media = media
        self._assert_mic()

    def unbind_media(self):
        self._media = None

    def transition(self, state: ConversationState, status: Optional[str] = None):
        """
        Move to ``state`` and optionally replace the status line.

        Mic enablement is re-asserted on every call, including self-transitions,
        so a recreated media source can never stay live outside RECORDING.
        """
        previous = self.state
        self.state = state
        self._assert_mic()

        if previous is not state:
            logger.info(f"Conversation state: {previous.value} -> {state.value}")
            self._emit("state", state.value)

        if status is not None:
            self.status = status
            self._emit("status", status)

    def notify(self, status: str):
        """Status-only update; a self-transition."""
        self.transition(self.state, status)

    def fail(self, reason: str):
        """Surface a setup error. Errors are momentary and always settle in IDLE."""
        logger.error(f"Conversation error: {reason}")
        self.transition(ConversationState.ERROR, reason)
        self.transition(ConversationState.IDLE)

    def append_transcript(self, text: str):
        if not text:
            return
        base = "" if self.transcript in (PLACEHOLDER_TRANSCRIPT, "Connecting...") else self.transcript
        self.transcript = base + text
        self._emit("transcript", self.transcript)

    def set_transcript(self, text: str):
        self.transcript = text
        self._emit("transcript", text)

    def reset_transcript(self):
        self.set_transcript(PLACEHOLDER_TRANSCRIPT)

    def _assert_mic(self):
        if self._media is None:
            return
        try:
            self._media.set_enabled(self.mic_enabled)
        except Exception as e:
            logger.debug(f"Could not update microphone enablement: {e}")

    def _emit(self, name: str, value: str):
        for listener in list(self._listeners):
            try:
                listener(name, value)
            except Exception as e:
                logger.warning(f"State listener failed: {e}")
