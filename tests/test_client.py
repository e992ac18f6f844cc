import asyncio
import json
import sys
from pathlib import Path

import httpx
from aiortc.exceptions import InvalidStateError

sys.path.append(str(Path(__file__).resolve().parents[1] / "src"))

from fakes import (
    DummyBroker,
    DummyMedia,
    DummyPeerConnection,
    DummySink,
    DummyTTS,
    deny_microphone,
    settle,
)
from voicelink.broker import CredentialBroker
from voicelink.client import DEGRADED_STATUS, HOLD_STATUS, PAUSED_STATUS, VoiceClient
from voicelink.config import ClientConfig, OutputMode
from voicelink.errors import SessionFetchFailed
from voicelink.negotiator import PeerConnectionNegotiator
from voicelink.reconciler import DelegatedSynthesis, NativeSynthesis
from voicelink.state import PLACEHOLDER_TRANSCRIPT, READY_STATUS, ConversationState

ANSWER_SDP = "v=0\r\no=- answer\r\n"


class CountingClient(VoiceClient):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.teardown_calls = 0

    async def teardown(self, reason=None, connection=None):
        self.teardown_calls += 1
        await super().teardown(reason, connection=connection)


class Harness:
    """A client wired to dummy media, peer connections and an in-memory signaling endpoint."""

    def __init__(self, mode=OutputMode.NATIVE, broker=None, media_factory=None, sdp_status=200, pc_class=DummyPeerConnection):
        self.config = ClientConfig(output_mode=mode, instructions="Be brief", ice_gathering_timeout=0.1)
        self.sink = DummySink()
        self.tts = DummyTTS()
        if mode is OutputMode.DELEGATED:
            self.strategy = DelegatedSynthesis(self.sink, self.tts, voice="rachel")
        else:
            self.strategy = NativeSynthesis(self.sink)
        self.broker = broker or DummyBroker()
        self.medias = []
        self.pcs = []
        self.sdp_requests = []
        self.sdp_status = sdp_status
        self.pc_class = pc_class

        negotiator = PeerConnectionNegotiator(
            self.config,
            self.broker,
            self.strategy,
            media_factory=media_factory or self._open_media,
            pc_factory=self._make_pc,
            transport=httpx.MockTransport(self._signaling),
        )
        self.client = CountingClient(self.config, strategy=self.strategy, negotiator=negotiator)

    def _open_media(self):
        media = DummyMedia()
        self.medias.append(media)
        return media

    def _make_pc(self, configuration):
        pc = self.pc_class(configuration)
        self.pcs.append(pc)
        return pc

    def _signaling(self, request):
        self.sdp_requests.append(request)
        if self.sdp_status != 200:
            return httpx.Response(self.sdp_status, text="upstream exploded")
        return httpx.Response(201, text=ANSWER_SDP)

    @property
    def raw_channel(self):
        return self.pcs[0].channels[0]

    async def connect_and_open(self):
        await self.client.tap_mic()
        await self.raw_channel.open()


def test_permission_denied_settles_idle_without_fetching_session():
    harness = Harness(media_factory=deny_microphone)
    asyncio.run(harness.client.tap_mic())

    assert harness.client.state.state is ConversationState.IDLE
    assert "permission" in harness.client.state.status.lower()
    assert harness.broker.requests == []
    assert harness.pcs == []
    assert harness.client.connection is None


def test_session_rejection_surfaces_status_code():
    def relay(request):
        return httpx.Response(401, json={"error": "OpenAI session error"})

    broker = CredentialBroker("http://relay.test", transport=httpx.MockTransport(relay))
    harness = Harness(broker=broker)
    asyncio.run(harness.client.connect())

    assert harness.client.state.state is ConversationState.IDLE
    assert "401" in harness.client.state.status
    assert harness.medias[0].stop_calls == 1
    assert harness.pcs == []


def test_sdp_failure_tears_down_exactly_once():
    harness = Harness(sdp_status=500)
    asyncio.run(harness.client.connect())

    assert harness.client.teardown_calls == 1
    assert harness.client.state.state is ConversationState.IDLE
    assert harness.client.state.status == "SDP exchange failed (500)"
    assert harness.medias[0].stop_calls == 1
    assert harness.medias[0].track.enabled is False
    assert harness.pcs[0].close_calls == 1
    assert harness.raw_channel.close_calls == 1


def test_successful_connect_records_on_channel_open():
    async def run():
        harness = Harness()
        await harness.client.tap_mic()
        assert harness.client.state.state is ConversationState.CONNECTING
        assert harness.medias[0].track.enabled is False
        await harness.raw_channel.open()
        return harness

    harness = asyncio.run(run())
    assert harness.client.state.state is ConversationState.RECORDING
    assert harness.client.state.status == "Listening..."
    assert harness.medias[0].track.enabled is True
    assert harness.pcs[0].remoteDescription.sdp == ANSWER_SDP


def test_signaling_request_carries_offer_and_credential():
    harness = Harness()
    asyncio.run(harness.client.connect())

    request = harness.sdp_requests[0]
    assert request.method == "POST"
    assert request.url.params["model"] == "gpt-realtime"
    assert request.headers["Authorization"] == "Bearer ek_test"
    assert request.headers["Content-Type"] == "application/sdp"
    assert request.content.decode() == harness.pcs[0].localDescription.sdp


def test_connect_twice_is_a_noop():
    async def run():
        harness = Harness()
        first, second = await asyncio.gather(harness.client.connect(), harness.client.connect())
        third = await harness.client.connect()
        return harness, first, second, third

    harness, first, second, third = asyncio.run(run())
    assert len(harness.broker.requests) == 1
    assert len(harness.pcs) == 1
    assert first is second is third


def test_teardown_is_idempotent():
    async def run():
        harness = Harness()
        await harness.connect_and_open()
        await harness.client.teardown()
        await harness.client.teardown()
        await harness.client.end()
        return harness

    harness = asyncio.run(run())
    assert harness.client.state.state is ConversationState.IDLE
    assert harness.client.state.status == READY_STATUS
    assert harness.client.state.transcript == PLACEHOLDER_TRANSCRIPT
    assert harness.medias[0].stop_calls == 1
    assert harness.pcs[0].close_calls == 1
    assert harness.raw_channel.close_calls == 1
    assert harness.sink.stop_calls == 1


def test_teardown_during_session_fetch_abandons_connect():
    class BlockingBroker(DummyBroker):
        def __init__(self):
            super().__init__()
            self.release = None

        async def fetch(self, request):
            self.release = asyncio.Event()
            await self.release.wait()
            return await super().fetch(request)

    async def run():
        broker = BlockingBroker()
        harness = Harness(broker=broker)
        task = asyncio.ensure_future(harness.client.connect())
        await settle()
        await harness.client.teardown()
        broker.release.set()
        result = await task
        return harness, result

    harness, result = asyncio.run(run())
    assert result is None
    assert harness.pcs == []
    assert harness.medias[0].stop_calls == 1
    assert harness.client.teardown_calls == 1
    assert harness.client.connection is None
    assert harness.client.state.state is ConversationState.IDLE


def test_failed_abandoned_attempt_leaves_new_call_alone():
    class LateFailingBroker(DummyBroker):
        def __init__(self):
            super().__init__()
            self.release = asyncio.Event()

        async def fetch(self, request):
            if not self.requests:
                self.requests.append(request)
                await self.release.wait()
                raise SessionFetchFailed(401, "expired")
            return await super().fetch(request)

    async def run():
        broker = LateFailingBroker()
        harness = Harness(broker=broker)
        first = asyncio.ensure_future(harness.client.connect())
        await settle()
        await harness.client.end()
        await harness.client.connect()
        await harness.pcs[0].channels[0].open()
        broker.release.set()
        result = await first
        return harness, result

    harness, result = asyncio.run(run())
    assert result is None
    assert harness.client.teardown_calls == 1
    assert harness.client.connection is not None
    assert harness.client.state.state is ConversationState.RECORDING
    assert harness.client.state.status == "Listening..."
    assert harness.medias[1].stop_calls == 0
    assert harness.medias[1].track.enabled is True


def test_hangup_during_offer_is_a_clean_end():
    harness = None

    class HangupDuringOffer(DummyPeerConnection):
        async def setLocalDescription(self, description):
            await harness.client.end()
            if self.close_calls:
                raise InvalidStateError("RTCPeerConnection is closed")
            await super().setLocalDescription(description)

    harness = Harness(pc_class=HangupDuringOffer)
    states = []
    harness.client.state.add_listener(lambda field, value: states.append(value) if field == "state" else None)
    result = asyncio.run(harness.client.connect())

    assert result is None
    assert harness.client.teardown_calls == 1
    assert harness.client.state.state is ConversationState.IDLE
    assert harness.client.state.status == READY_STATUS
    assert "error" not in states
    assert harness.sdp_requests == []


def test_disconnected_is_status_only():
    async def run():
        harness = Harness()
        await harness.connect_and_open()
        await harness.pcs[0].set_connection_state("disconnected")
        return harness

    harness = asyncio.run(run())
    assert harness.client.state.state is ConversationState.RECORDING
    assert harness.client.state.status == DEGRADED_STATUS
    assert harness.client.teardown_calls == 0


def test_failed_and_closed_tear_down():
    for state in ("failed", "closed"):
        async def run():
            harness = Harness()
            await harness.connect_and_open()
            await harness.pcs[0].set_connection_state(state)
            return harness

        harness = asyncio.run(run())
        assert harness.client.teardown_calls == 1
        assert harness.client.state.state is ConversationState.IDLE
        assert harness.client.connection is None
        assert harness.medias[0].stop_calls == 1


def test_stale_transport_events_are_ignored():
    async def run():
        harness = Harness()
        await harness.connect_and_open()
        old_pc = harness.pcs[0]
        await harness.client.teardown()
        await harness.client.connect()
        await harness.pcs[1].channels[0].open()
        await old_pc.set_connection_state("failed")
        return harness

    harness = asyncio.run(run())
    assert harness.client.teardown_calls == 1
    assert harness.client.state.state is ConversationState.RECORDING


def test_mic_taps_toggle_recording():
    async def run():
        harness = Harness()
        states = []
        await harness.connect_and_open()
        await harness.client.tap_mic()
        states.append((harness.client.state.state, harness.client.state.status, harness.medias[0].track.enabled))
        await harness.client.tap_mic()
        states.append((harness.client.state.state, harness.client.state.status, harness.medias[0].track.enabled))
        harness.client.hold()
        states.append((harness.client.state.state, harness.client.state.status, harness.medias[0].track.enabled))
        return states

    assert asyncio.run(run()) == [
        (ConversationState.CONNECTED, PAUSED_STATUS, False),
        (ConversationState.RECORDING, "Listening...", True),
        (ConversationState.CONNECTED, HOLD_STATUS, False),
    ]


def test_tap_while_connecting_is_ignored():
    async def run():
        harness = Harness()
        await harness.client.tap_mic()
        await harness.client.tap_mic()
        return harness

    harness = asyncio.run(run())
    assert harness.client.state.state is ConversationState.CONNECTING
    assert len(harness.broker.requests) == 1


def test_native_negotiates_inbound_audio():
    harness = Harness()
    asyncio.run(harness.client.connect())

    track = harness.medias[0].track
    assert harness.pcs[0].transceivers == [(track, "sendrecv"), ("audio", "recvonly")]
    assert harness.pcs[0].configuration.iceServers[0].urls == "stun:stun.l.google.com:19302"


def test_delegated_replies_are_spoken_in_order():
    async def run():
        harness = Harness(mode=OutputMode.DELEGATED)
        await harness.connect_and_open()
        channel = harness.client.connection.channel
        for text in ("hello", "world"):
            channel.handle_message(json.dumps({"type": "response.created"}))
            channel.handle_message(json.dumps({"type": "response.text.delta", "delta": text}))
            channel.handle_message(json.dumps({"type": "response.done"}))
        await asyncio.sleep(0.1)
        transcript = harness.client.state.transcript
        await harness.client.end()
        return harness, transcript

    harness, transcript = asyncio.run(run())
    assert harness.pcs[0].transceivers == [(harness.medias[0].track, "sendonly")]
    assert harness.raw_channel.sent_types()[:2] == ["session.update", "response.create"]
    assert [text for text, _ in harness.tts.requests] == ["hello", "world"]
    assert harness.sink.played == [b"hello", b"world"]
    assert harness.sink.max_active == 1
    assert transcript == "AI: hello\nAI: world\n"


def test_apply_instructions_needs_a_connection():
    async def run():
        harness = Harness()
        assert harness.client.apply_instructions("Speak French") is False
        await harness.connect_and_open()
        assert harness.client.apply_instructions("Speak French") is True
        return harness

    harness = asyncio.run(run())
    assert harness.client.instructions == "Speak French"
    assert harness.raw_channel.sent_messages()[-1] == {
        "type": "session.update",
        "session": {"instructions": "Speak French"},
    }


def test_session_modalities_follow_output_mode():
    native = Harness()
    delegated = Harness(mode=OutputMode.DELEGATED)
    asyncio.run(native.client.connect())
    asyncio.run(delegated.client.connect())
    assert native.broker.requests[0].modalities == ["text", "audio"]
    assert delegated.broker.requests[0].modalities == ["text"]

    override = Harness(mode=OutputMode.DELEGATED)
    override.config.modalities = ["text", "audio"]
    asyncio.run(override.client.connect())
    assert override.broker.requests[0].modalities == ["text", "audio"]
