"""Error taxonomy for the voice client.

Setup failures are raised as ``VoiceLinkError`` subclasses and funnelled into
one teardown path by ``VoiceClient``. Transport status changes are not
exceptions; they are classified with ``classify_connection_state``.
"""

from enum import Enum
from typing import Optional

DETAIL_LIMIT = 120


def truncate(text: Optional[str], limit: int = DETAIL_LIMIT) -> str:
    return (text or "")[:limit]


class VoiceLinkError(Exception):
    """Base class for failures that abort a connect attempt."""

    @property
    def status_message(self) -> str:
        return str(self)


class PermissionDenied(VoiceLinkError):
    """The microphone could not be opened, even with minimal constraints."""

    def __init__(self, message: str = "Microphone permission denied"):
        super().__init__(message)


class SessionFetchFailed(VoiceLinkError):
    """The credential broker refused or returned an unusable session."""

    def __init__(self, status: Optional[int], detail: str = ""):
        self.status = status
        self.detail = truncate(detail)
        if status is None:
            message = self.detail or "invalid session response"
        else:
            message = f"/session {status}: {self.detail or 'error'}"
        super().__init__(message)


class SdpExchangeFailed(VoiceLinkError):
    """The signaling endpoint rejected the local offer."""

    def __init__(self, status: int, detail: str = ""):
        self.status = status
        self.detail = truncate(detail)
        super().__init__(f"SDP exchange failed ({status})")


class NetworkError(VoiceLinkError):
    """An HTTP collaborator could not be reached at all."""

    def __init__(self, target: str, cause: Optional[BaseException] = None):
        self.target = target
        self.cause = cause
        super().__init__(f"failed to reach {target}")


class ConnectAborted(VoiceLinkError):
    """Teardown ran while a connect attempt was still suspended."""

    def __init__(self):
        super().__init__("connect aborted by teardown")


class TTSFetchFailed(VoiceLinkError):
    """The TTS relay returned an error for one playback item."""

    def __init__(self, status: int, detail: str = ""):
        self.status = status
        self.detail = truncate(detail)
        super().__init__(f"/tts {status}: {self.detail or 'error'}")


class TransportStatus(Enum):
    """How a peer connection state change should be treated."""
    OK = "ok"
    DEGRADED = "degraded"
    FATAL = "fatal"


def classify_connection_state(state: str) -> TransportStatus:
    # "disconnected" frequently recovers on its own; only failed/closed are terminal.
    if state in ("failed", "closed"):
        return TransportStatus.FATAL
    if state == "disconnected":
        return TransportStatus.DEGRADED
    return TransportStatus.OK
