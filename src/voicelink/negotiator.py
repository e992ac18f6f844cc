"""
WebRTC session negotiation against the realtime provider.

Non-trickle flow: the local offer is completed (ICE gathering finished or a
short timeout elapsed) and exchanged for an answer in one HTTP round trip,
authenticated with the ephemeral credential from the broker.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import httpx
from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription

from .broker import CredentialBroker, SessionCredential, SessionRequest
from .channel import CHANNEL_LABEL, RealtimeEventChannel
from .config import ClientConfig
from .errors import ConnectAborted, NetworkError, SdpExchangeFailed
from .media import MicrophoneSource, acquire_microphone
from .reconciler import OutputStrategy

logger = logging.getLogger(__name__)


@dataclass
class Connection:
    """Everything one live call holds. Filled in as negotiation progresses."""
    pc: Optional[RTCPeerConnection] = None
    channel: Optional[RealtimeEventChannel] = None
    media: Optional[MicrophoneSource] = None
    credential: Optional[SessionCredential] = None
    closed: bool = False


async def wait_for_ice_gathering(pc, timeout: float) -> bool:
    """
    Block until ICE gathering completes or ``timeout`` seconds pass.

    Returns True if gathering completed, False on timeout.
    """
    if pc.iceGatheringState == "complete":
        return True

    done = asyncio.get_event_loop().create_future()

    def check():
        if pc.iceGatheringState == "complete" and not done.done():
            done.set_result(True)

    pc.on("icegatheringstatechange", check)
    try:
        await asyncio.wait_for(done, timeout)
        return True
    except asyncio.TimeoutError:
        logger.warning(f"ICE gathering incomplete after {timeout}s, sending offer as is")
        return False
    finally:
        pc.remove_listener("icegatheringstatechange", check)


class PeerConnectionNegotiator:
    """
    Owns the WebRTC side of a connection attempt.

    The negotiator creates and destroys the media source, peer connection and
    data channel. It never touches track enablement; that belongs to the
    conversation state machine, which is handed the media via ``on_media``.
    """

    def __init__(
        self,
        config: ClientConfig,
        broker: CredentialBroker,
        strategy: OutputStrategy,
        media_factory: Callable[[], MicrophoneSource] = acquire_microphone,
        pc_factory: Callable[[RTCConfiguration], RTCPeerConnection] = RTCPeerConnection,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config
        self.broker = broker
        self.strategy = strategy
        self._media_factory = media_factory
        self._pc_factory = pc_factory
        self._transport = transport

    def _rtc_configuration(self) -> RTCConfiguration:
        return RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in self.config.ice_servers])

    async def connect(
        self,
        connection: Connection,
        request: SessionRequest,
        on_media: Callable[[MicrophoneSource], None],
        on_channel: Callable[[object], RealtimeEventChannel],
        on_transport_state: Callable[[Connection, str], Awaitable[None]],
        on_status: Optional[Callable[[str], None]] = None,
    ) -> Connection:
        """
        Run the full setup sequence, filling ``connection`` in place.

        Raises:
            PermissionDenied, SessionFetchFailed, SdpExchangeFailed,
            NetworkError, ConnectAborted
        """
        status = on_status or (lambda text: None)

        # 1. Local audio; tracks come back disabled
        media = self._media_factory()
        connection.media = media
        on_media(media)

        # 2. Ephemeral credential
        status("fetching session…")
        connection.credential = await self.broker.fetch(request)
        self._check(connection)

        # 3. Transport, STUN only
        pc = self._pc_factory(self._rtc_configuration())
        connection.pc = pc

        @pc.on("connectionstatechange")
        async def on_connectionstatechange():
            logger.info(f"pc.connectionState: {pc.connectionState}")
            await on_transport_state(connection, pc.connectionState)

        @pc.on("signalingstatechange")
        def on_signalingstatechange():
            logger.debug(f"pc.signalingState: {pc.signalingState}")

        @pc.on("iceconnectionstatechange")
        def on_iceconnectionstatechange():
            logger.debug(f"pc.iceConnectionState: {pc.iceConnectionState}")

        @pc.on("track")
        def on_track(track):
            logger.info(f"pc.ontrack: received remote {track.kind} track")
            self.strategy.attach_track(track)

        for track in media.tracks:
            pc.addTransceiver(track, direction=self.strategy.local_direction)
        if self.strategy.request_inbound_audio:
            pc.addTransceiver("audio", direction="recvonly")

        # 4. Exactly one event channel; a remotely opened one replaces ours
        connection.channel = on_channel(pc.createDataChannel(CHANNEL_LABEL))

        @pc.on("datachannel")
        def on_datachannel(channel):
            logger.info(f"Remote data channel: {channel.label}")
            previous = connection.channel
            connection.channel = on_channel(channel)
            if previous is not None:
                previous.close()

        # 5. Complete offer
        status("creating offer…")
        offer = await pc.createOffer()
        await pc.setLocalDescription(offer)
        await wait_for_ice_gathering(pc, self.config.ice_gathering_timeout)
        self._check(connection)

        # 6. One HTTP round trip for the answer
        status("exchanging SDP…")
        answer = await self.exchange_sdp(connection.credential, pc.localDescription.sdp)
        self._check(connection)

        await pc.setRemoteDescription(RTCSessionDescription(sdp=answer, type="answer"))
        logger.debug("Remote SDP applied")
        return connection

    async def exchange_sdp(self, credential: SessionCredential, offer_sdp: str) -> str:
        headers = {
            "Authorization": f"Bearer {credential.secret}",
            "Content-Type": "application/sdp",
            "Accept": "application/sdp",
            "OpenAI-Beta": "realtime=v1",
        }
        try:
            async with httpx.AsyncClient(timeout=self.config.http_timeout, transport=self._transport) as client:
                response = await client.post(
                    self.config.realtime_url,
                    params={"model": credential.model},
                    headers=headers,
                    content=offer_sdp,
                )
        except httpx.TransportError as e:
            logger.error(f"SDP exchange network error: {e}")
            raise NetworkError("realtime signaling endpoint", e) from e

        if response.is_error:
            logger.error(f"SDP exchange error: {response.text}")
            raise SdpExchangeFailed(response.status_code, response.text)
        return response.text

    async def release(self, connection: Connection):
        """Release everything the connection holds. Tolerates partial state."""
        connection.closed = True

        channel, connection.channel = connection.channel, None
        if channel is not None:
            channel.close()

        pc, connection.pc = connection.pc, None
        if pc is not None:
            try:
                await pc.close()
            except Exception as e:
                logger.debug(f"Peer connection already closed: {e}")

        media, connection.media = connection.media, None
        if media is not None:
            media.stop()

        connection.credential = None

    @staticmethod
    def _check(connection: Connection):
        if connection.closed:
            raise ConnectAborted()
