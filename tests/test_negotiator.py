import asyncio
import sys
from pathlib import Path

import httpx
import pytest

sys.path.append(str(Path(__file__).resolve().parents[1] / "src"))

from fakes import DummyBroker, DummyDataChannel, DummyMedia, DummyPeerConnection, DummySink, settle
from voicelink.broker import SessionCredential, SessionRequest
from voicelink.config import ClientConfig
from voicelink.errors import ConnectAborted, NetworkError, SdpExchangeFailed
from voicelink.negotiator import Connection, PeerConnectionNegotiator, wait_for_ice_gathering
from voicelink.reconciler import NativeSynthesis


class Recorder:
    def __init__(self):
        self.media = []
        self.channels = []
        self.transport_states = []
        self.statuses = []

    def on_media(self, media):
        self.media.append(media)

    def on_channel(self, channel):
        self.channels.append(channel)
        return channel

    async def on_transport_state(self, connection, state):
        self.transport_states.append(state)


def make_negotiator(handler=None, pcs=None, **config):
    pcs = pcs if pcs is not None else []
    complete_gathering = config.pop("complete_gathering", True)

    def pc_factory(configuration):
        pc = DummyPeerConnection(configuration, complete_gathering=complete_gathering)
        pcs.append(pc)
        return pc

    handler = handler or (lambda request: httpx.Response(201, text="v=0\r\n"))
    negotiator = PeerConnectionNegotiator(
        ClientConfig(ice_gathering_timeout=0.05, **config),
        DummyBroker(),
        NativeSynthesis(DummySink()),
        media_factory=DummyMedia,
        pc_factory=pc_factory,
        transport=httpx.MockTransport(handler),
    )
    return negotiator, pcs


async def run_connect(negotiator, recorder, connection=None):
    connection = connection or Connection()
    await negotiator.connect(
        connection,
        SessionRequest(),
        on_media=recorder.on_media,
        on_channel=recorder.on_channel,
        on_transport_state=recorder.on_transport_state,
        on_status=recorder.statuses.append,
    )
    return connection


def test_ice_gathering_times_out():
    async def run():
        pc = DummyPeerConnection(complete_gathering=False)
        completed = await wait_for_ice_gathering(pc, 0.05)
        return pc, completed

    pc, completed = asyncio.run(run())
    assert completed is False
    assert pc.listeners("icegatheringstatechange") == []


def test_ice_gathering_completes_on_event():
    async def run():
        pc = DummyPeerConnection()
        waiter = asyncio.ensure_future(wait_for_ice_gathering(pc, 1.0))
        await settle()
        pc.iceGatheringState = "complete"
        await pc.emit("icegatheringstatechange")
        return await waiter

    assert asyncio.run(run()) is True


def test_offer_sent_after_gathering_timeout():
    negotiator, pcs = make_negotiator(complete_gathering=False)
    recorder = Recorder()
    connection = asyncio.run(run_connect(negotiator, recorder))

    assert pcs[0].remoteDescription.type == "answer"
    assert connection.credential.secret == "ek_test"
    assert recorder.statuses == ["fetching session…", "creating offer…", "exchanging SDP…"]


def test_exactly_one_event_channel_and_remote_replacement():
    async def run():
        negotiator, pcs = make_negotiator()
        recorder = Recorder()
        connection = await run_connect(negotiator, recorder)
        remote = DummyDataChannel()
        await pcs[0].emit("datachannel", remote)
        return connection, recorder, pcs

    connection, recorder, pcs = asyncio.run(run())
    assert len(pcs[0].channels) == 1
    assert pcs[0].channels[0].label == "oai-events"
    assert pcs[0].channels[0].close_calls == 1
    assert connection.channel is recorder.channels[-1]
    assert len(recorder.channels) == 2


def test_transport_state_forwarded():
    async def run():
        negotiator, pcs = make_negotiator()
        recorder = Recorder()
        await run_connect(negotiator, recorder)
        await pcs[0].set_connection_state("connected")
        return recorder

    assert asyncio.run(run()).transport_states == ["connected"]


def test_custom_stun_servers():
    negotiator, pcs = make_negotiator(ice_servers=["stun:stun.example.org:3478"])
    asyncio.run(run_connect(negotiator, Recorder()))
    assert [server.urls for server in pcs[0].configuration.iceServers] == ["stun:stun.example.org:3478"]


def test_sdp_error_status():
    negotiator, _ = make_negotiator(lambda request: httpx.Response(400, text="bad offer"))
    with pytest.raises(SdpExchangeFailed) as info:
        asyncio.run(negotiator.exchange_sdp(SessionCredential("ek", "gpt-realtime"), "v=0"))
    assert info.value.status == 400
    assert info.value.detail == "bad offer"


def test_sdp_network_error():
    def unreachable(request):
        raise httpx.ConnectError("connection refused")

    negotiator, _ = make_negotiator(unreachable)
    with pytest.raises(NetworkError):
        asyncio.run(negotiator.exchange_sdp(SessionCredential("ek", "gpt-realtime"), "v=0"))


def test_closed_connection_aborts_before_transport():
    negotiator, pcs = make_negotiator()
    connection = Connection(closed=True)
    with pytest.raises(ConnectAborted):
        asyncio.run(run_connect(negotiator, Recorder(), connection))
    assert pcs == []


def test_release_tolerates_partial_state():
    negotiator, _ = make_negotiator()
    media = DummyMedia()
    connection = Connection(media=media)
    asyncio.run(negotiator.release(connection))
    asyncio.run(negotiator.release(connection))
    assert media.stop_calls == 1
    assert connection.closed is True
