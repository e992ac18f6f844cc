"""
Voice client coordinator.

``VoiceClient`` owns the conversation state machine, the single connection
slot, the negotiator and the output strategy. User gestures (tap the mic,
hold, end) and transport/channel signals are turned into state transitions
here; every failure ends in one idempotent ``teardown``.
"""

import logging
from typing import Optional

from .broker import CredentialBroker, SessionRequest
from .channel import RealtimeEventChannel
from .config import ClientConfig
from .errors import (
    ConnectAborted,
    TransportStatus,
    VoiceLinkError,
    classify_connection_state,
)
from .media import MicrophoneSource
from .negotiator import Connection, PeerConnectionNegotiator
from .reconciler import OutputStrategy, create_output_strategy
from .state import READY_STATUS, ConversationState, ConversationStateMachine

logger = logging.getLogger(__name__)

LISTENING_STATUS = "Listening..."
PAUSED_STATUS = "Connected - Tap mic to speak"
HOLD_STATUS = "Paused - Tap mic to resume"
DEGRADED_STATUS = "Connection temporarily lost, attempting to reconnect..."


class VoiceClient:
    """
    One realtime voice conversation at a time.

    Usage:
        client = VoiceClient(ClientConfig.from_env())
        client.state.add_listener(lambda field, value: print(field, value))
        await client.tap_mic()   # connect, then start recording on channel open
        await client.tap_mic()   # pause
        await client.end()
    """

    def __init__(
        self,
        config: ClientConfig,
        strategy: Optional[OutputStrategy] = None,
        negotiator: Optional[PeerConnectionNegotiator] = None,
        state: Optional[ConversationStateMachine] = None,
    ):
        self.config = config
        self.state = state or ConversationStateMachine()
        self.strategy = strategy or create_output_strategy(config)
        self.negotiator = negotiator or PeerConnectionNegotiator(
            config,
            CredentialBroker(config.relay_url, timeout=config.http_timeout),
            self.strategy,
        )
        self.instructions = config.instructions
        self._connection: Optional[Connection] = None

    @property
    def connection(self) -> Optional[Connection]:
        return self._connection

    @property
    def is_connected(self) -> bool:
        return self.state.state in (ConversationState.CONNECTED, ConversationState.RECORDING)

    def session_request(self) -> SessionRequest:
        return SessionRequest(
            modalities=list(self.config.modalities or self.strategy.session_modalities),
            instructions=self.instructions,
            voice=self.config.voice,
        )

    # --- user gestures ---

    async def tap_mic(self):
        current = self.state.state
        if current is ConversationState.IDLE:
            self.state.set_transcript("Connecting...")
            await self.connect()
        elif current is ConversationState.RECORDING:
            self.state.transition(ConversationState.CONNECTED, PAUSED_STATUS)
        elif current is ConversationState.CONNECTED:
            self.state.transition(ConversationState.RECORDING, LISTENING_STATUS)
        else:
            logger.debug(f"Ignoring mic tap while {current.value}")

    def hold(self):
        if self.state.state is ConversationState.RECORDING:
            self.state.transition(ConversationState.CONNECTED, HOLD_STATUS)

    async def end(self):
        await self.teardown()

    def apply_instructions(self, text: str) -> bool:
        """Send new instructions to the live session; kept for the next session too."""
        connection = self._connection
        channel = connection.channel if connection is not None else None
        if channel is None:
            self.state.notify("Instructions can be applied once connected")
            return False
        applied = channel.apply_instructions(text)
        if applied:
            self.instructions = channel.instructions
        return applied

    def set_volume(self, volume: float):
        self.strategy.sink.volume = volume

    # --- lifecycle ---

    async def connect(self) -> Optional[Connection]:
        """
        Establish a connection unless one already exists.

        Setup failures are not raised; they tear down and are surfaced as
        status text with the state back in IDLE.
        """
        if self._connection is not None:
            logger.debug("Already has a connection, ignoring connect")
            return self._connection

        connection = Connection()
        self._connection = connection
        self.state.transition(ConversationState.CONNECTING, "Connecting...")

        try:
            await self.negotiator.connect(
                connection,
                self.session_request(),
                on_media=self._on_media,
                on_channel=lambda channel: self._on_channel(connection, channel),
                on_transport_state=self._on_transport_state,
                on_status=self.state.notify,
            )
        except ConnectAborted:
            logger.info("Connect attempt abandoned after teardown")
            return None
        except VoiceLinkError as e:
            if self._is_stale(connection):
                logger.info(f"Ignoring failure of an abandoned connect attempt: {e}")
                return None
            logger.error(f"Connection failed: {e}")
            await self.teardown(reason=e.status_message, connection=connection)
            return None
        except Exception as e:
            if self._is_stale(connection):
                logger.info(f"Ignoring failure of an abandoned connect attempt: {e}")
                return None
            logger.exception(f"Unexpected error while connecting: {e}")
            await self.teardown(reason="Connection failed", connection=connection)
            return None

        return connection

    async def teardown(self, reason: Optional[str] = None, connection: Optional[Connection] = None):
        """
        Release everything and settle in IDLE. Safe from any state, any number
        of times, including while a connect attempt is suspended.

        When ``connection`` is given, only that connection is torn down; if it
        is no longer the current one this is a no-op.
        """
        if connection is not None and self._is_stale(connection):
            return
        connection, self._connection = self._connection, None
        if connection is not None:
            self.strategy.halt()
            self.state.unbind_media()
            await self.negotiator.release(connection)

        if reason:
            self.state.fail(reason)
        else:
            self.state.transition(ConversationState.IDLE, READY_STATUS)
        self.state.reset_transcript()

    def _is_stale(self, connection: Connection) -> bool:
        return connection.closed or connection is not self._connection

    # --- negotiator callbacks ---

    def _on_media(self, media: MicrophoneSource):
        self.state.bind_media(media)

    def _on_channel(self, connection: Connection, channel) -> RealtimeEventChannel:
        events = RealtimeEventChannel(
            channel,
            self.strategy,
            instructions=self.instructions,
            voice=self.config.voice,
            on_open=lambda: self._on_channel_open(connection),
            on_subtitle=self.state.append_transcript,
            on_status=self.state.notify,
        )
        events.start()
        return events

    def _on_channel_open(self, connection: Connection):
        if connection is not self._connection:
            return
        self.state.transition(ConversationState.RECORDING, LISTENING_STATUS)

    async def _on_transport_state(self, connection: Connection, state: str):
        if connection is not self._connection:
            return
        kind = classify_connection_state(state)
        if kind is TransportStatus.FATAL:
            await self.teardown(connection=connection)
        elif kind is TransportStatus.DEGRADED:
            self.state.notify(DEGRADED_STATUS)
        else:
            self.state.notify(state)
