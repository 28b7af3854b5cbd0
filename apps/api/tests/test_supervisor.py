"""End-to-end recovery scenarios: two supervisors talking through an in-process rendezvous server."""
from __future__ import annotations

import asyncio

import pytest

from conftest import FakeSink, FakeSource, FakeTransport, LoopbackClient, TransportFactory, settle
from stereocast.peers.connectivity import ConnectivityMonitor, ConnectivityState
from stereocast.peers.session import SessionState
from stereocast.peers.supervisor import PublisherSupervisor, ReceiverSupervisor, ReconnectionSupervisor


class Peers:
    """A publisher and a receiver, each with its own relay client, monitor and transports."""

    def __init__(
        self,
        server,
        room_id: str = "demo",
        rx_transports: TransportFactory | None = None,
        pub_transports: TransportFactory | None = None,
    ) -> None:
        self.pub_client = LoopbackClient(server)
        self.rx_client = LoopbackClient(server)
        self.pub_net = ConnectivityMonitor()
        self.rx_net = ConnectivityMonitor()
        self.pub_transports = pub_transports or TransportFactory()
        self.rx_transports = rx_transports or TransportFactory()
        self.source = FakeSource()
        self.sink = FakeSink()
        self.publisher = PublisherSupervisor(
            self.pub_client,
            self.pub_net,
            self.source,
            room_id=room_id,
            transport_factory=self.pub_transports,
            retry_delay=0,
        )
        self.receiver = ReceiverSupervisor(
            self.rx_client,
            self.rx_net,
            self.sink,
            room_id=room_id,
            transport_factory=self.rx_transports,
            retry_delay=0,
        )

    async def start_publisher(self) -> None:
        await self.publisher.start()
        await self.pub_client.connect()
        await settle()

    async def start_receiver(self) -> None:
        await self.receiver.start()
        await self.rx_client.connect()
        await settle()

    async def connect_media(self) -> None:
        await self.pub_transports.last.emit_state("connected")
        await self.rx_transports.last.emit_state("connected")

    def offers(self) -> list[dict]:
        return [message for message in self.pub_client.sent if message["type"] == "offer"]

    async def stop(self) -> None:
        await self.publisher.stop()
        await self.receiver.stop()


@pytest.mark.asyncio
async def test_demo_room_round_trip_connects(rendezvous):
    peers = Peers(rendezvous)
    await peers.start_publisher()
    await peers.start_receiver()

    assert peers.pub_client.received_types()[0] == "request-offer"
    assert peers.pub_client.received_types().count("request-offer") == 1
    offer = peers.offers()[-1]
    answer = [m for m in peers.rx_client.sent if m["type"] == "answer"][-1]
    assert answer["generation"] == offer["generation"] == peers.publisher.generation

    pub_transport = peers.pub_transports.last
    rx_transport = peers.rx_transports.last
    assert pub_transport.remote == answer["sdp"]
    assert rx_transport.remote == offer["sdp"]
    assert pub_transport.applied_candidates and rx_transport.applied_candidates

    # The offer made before anyone listened was replaced, not renegotiated.
    assert peers.pub_transports.created[0].closed

    await peers.connect_media()
    assert peers.publisher.session.state is SessionState.CONNECTED
    assert peers.receiver.session.state is SessionState.CONNECTED
    assert rendezvous.rooms() == [{"room_id": "demo", "has_publisher": True, "receiver_count": 1}]

    await peers.stop()
    assert peers.sink.stopped


@pytest.mark.asyncio
async def test_receiver_first_waits_for_publisher_offer(rendezvous):
    peers = Peers(rendezvous)
    await peers.start_receiver()
    assert peers.rx_client.received == []

    await peers.start_publisher()

    assert "request-offer" not in peers.pub_client.received_types()
    assert peers.rx_client.received_types()[:2] == ["publisher-joined", "offer"]
    assert len(peers.offers()) == 1

    await peers.connect_media()
    assert peers.receiver.session.state is SessionState.CONNECTED
    await peers.stop()


@pytest.mark.asyncio
async def test_publisher_failure_while_offline_waits_for_network(rendezvous):
    peers = Peers(rendezvous)
    await peers.start_publisher()
    await peers.start_receiver()
    await peers.connect_media()
    failed_transport = peers.pub_transports.last
    generation = peers.publisher.generation
    offers_before = len(peers.offers())

    peers.pub_net.set_offline()
    await failed_transport.emit_state("failed")
    await settle()

    assert peers.publisher.recovery_pending
    assert peers.publisher.session is None
    assert failed_transport.closed
    assert len(peers.offers()) == offers_before

    # Later failure reports and offer requests do not start a second attempt.
    await failed_transport.emit_state("disconnected")
    await peers.pub_client._deliver({"type": "request-offer", "roomId": "demo", "receiverId": "late"})
    await settle()
    assert len(peers.offers()) == offers_before

    peers.pub_net.set_online()
    await settle()

    assert not peers.publisher.recovery_pending
    assert len(peers.offers()) == offers_before + 1
    assert peers.offers()[-1]["generation"] == generation + 1
    assert peers.publisher.generation == generation + 1
    # The receiver answered the new offer from a fresh session.
    assert peers.rx_transports.created[0].closed
    assert peers.rx_transports.last.remote == peers.offers()[-1]["sdp"]
    assert peers.pub_transports.last.remote is not None
    await peers.stop()


@pytest.mark.asyncio
async def test_stale_answer_is_discarded(rendezvous):
    peers = Peers(rendezvous)
    await peers.start_publisher()
    first = peers.publisher.generation

    await peers.pub_client._deliver({"type": "request-offer", "roomId": "demo", "receiverId": "r"})
    await settle()
    current = peers.publisher.generation
    assert current == first + 1

    stale = {"type": "answer", "roomId": "demo", "sdp": {"type": "answer", "sdp": "stale"}, "generation": first}
    await peers.pub_client._deliver(stale)
    assert peers.pub_transports.last.remote is None
    assert peers.publisher.session.state is SessionState.AWAITING_ANSWER

    fresh = {"type": "answer", "roomId": "demo", "sdp": {"type": "answer", "sdp": "fresh"}, "generation": current}
    await peers.pub_client._deliver(fresh)
    assert peers.pub_transports.last.remote == {"type": "answer", "sdp": "fresh"}
    await peers.stop()


@pytest.mark.asyncio
async def test_request_offer_for_other_room_is_ignored(rendezvous):
    peers = Peers(rendezvous)
    await peers.start_publisher()
    offers = len(peers.offers())

    await peers.pub_client._deliver({"type": "request-offer", "roomId": "elsewhere", "receiverId": "r"})
    await settle()

    assert len(peers.offers()) == offers
    await peers.stop()


@pytest.mark.asyncio
async def test_relay_reconnect_rejoins_once_without_disturbing_media(rendezvous):
    peers = Peers(rendezvous)
    await peers.start_publisher()
    await peers.start_receiver()
    await peers.connect_media()
    offers = len(peers.offers())

    await peers.pub_client.drop()
    assert peers.rx_client.received_types()[-1] == "publisher-left"
    assert peers.receiver.session.state is SessionState.CONNECTED

    await peers.pub_client.connect()
    await settle()

    assert peers.pub_client.sent_types().count("join") == 2
    assert len(peers.offers()) == offers
    assert peers.publisher.session.state is SessionState.CONNECTED
    assert peers.rx_client.received_types()[-1] == "publisher-joined"
    await peers.stop()


@pytest.mark.asyncio
async def test_receiver_reconnect_gets_fresh_session(rendezvous):
    peers = Peers(rendezvous)
    await peers.start_publisher()
    await peers.start_receiver()
    await peers.connect_media()
    old_rx = peers.rx_transports.last
    old_pub = peers.pub_transports.last

    await peers.rx_client.drop()
    assert peers.pub_client.received_types()[-1] == "receiver-left"

    await peers.rx_client.connect()
    await settle()

    assert peers.rx_client.sent_types().count("join") == 2
    assert old_rx.closed and old_pub.closed
    assert peers.rx_transports.last is not old_rx
    assert peers.rx_transports.last.remote == peers.offers()[-1]["sdp"]
    assert peers.receiver.session.state is SessionState.ANSWERING_OFFER
    await peers.stop()


class FailFirstRemote(TransportFactory):
    def __call__(self):
        transport = super().__call__()
        transport.fail_remote = len(self.created) == 1
        return transport


@pytest.mark.asyncio
async def test_receiver_negotiation_error_rejoins_for_new_offer(rendezvous):
    peers = Peers(rendezvous, rx_transports=FailFirstRemote())
    await peers.start_publisher()
    await peers.start_receiver()

    assert peers.rx_client.sent_types().count("join") == 2
    assert peers.rx_transports.created[0].closed
    assert len(peers.rx_transports.created) == 2
    assert not peers.receiver.recovery_pending

    answer = [m for m in peers.rx_client.sent if m["type"] == "answer"][-1]
    assert answer["generation"] == peers.publisher.generation
    assert peers.pub_transports.last.remote == answer["sdp"]
    await peers.stop()


@pytest.mark.asyncio
async def test_receiver_failure_while_offline_waits_for_network(rendezvous):
    peers = Peers(rendezvous)
    await peers.start_publisher()
    await peers.start_receiver()
    await peers.connect_media()

    peers.rx_net.set_offline()
    await peers.rx_transports.last.emit_state("disconnected")
    await settle()
    assert peers.receiver.session is None
    assert peers.rx_client.sent_types().count("join") == 1
    assert peers.rx_net.state is ConnectivityState.OFFLINE

    peers.rx_net.set_online()
    await settle()

    assert peers.rx_client.sent_types().count("join") == 2
    assert peers.receiver.session is not None
    assert peers.receiver.session.offer_generation == peers.publisher.generation
    await peers.stop()


class BlockingAnnounce(FakeTransport):
    """Holds the trickle of local candidates until released."""

    def __init__(self) -> None:
        super().__init__()
        self.release = asyncio.Event()

    async def announce_local_candidates(self) -> int:
        await self.release.wait()
        return await super().announce_local_candidates()


class BlockFirstAnnounce(TransportFactory):
    def __call__(self):
        transport = BlockingAnnounce() if not self.created else FakeTransport()
        self.created.append(transport)
        return transport


@pytest.mark.asyncio
async def test_request_offer_after_offer_sent_gets_fresh_offer(rendezvous):
    peers = Peers(rendezvous, pub_transports=BlockFirstAnnounce())
    await peers.start_publisher()
    first = peers.pub_transports.created[0]
    assert len(peers.offers()) == 1

    # The receiver joins while the first offer is still trickling candidates.
    await peers.start_receiver()
    assert peers.pub_client.received_types() == ["request-offer"]
    assert "offer" not in peers.rx_client.received_types()
    assert len(peers.offers()) == 1

    first.release.set()
    await settle()

    assert len(peers.offers()) == 2
    assert "offer" in peers.rx_client.received_types()
    answer = [m for m in peers.rx_client.sent if m["type"] == "answer"][-1]
    assert answer["generation"] == peers.offers()[-1]["generation"] == peers.publisher.generation
    assert peers.pub_transports.last.remote == answer["sdp"]
    await peers.stop()


@pytest.mark.asyncio
async def test_candidates_from_superseded_generation_are_dropped(rendezvous):
    peers = Peers(rendezvous)
    await peers.start_publisher()
    await peers.pub_client._deliver({"type": "request-offer", "roomId": "demo", "receiverId": "r"})
    await settle()
    current = peers.publisher.generation
    transport = peers.pub_transports.last

    late = {
        "type": "ice-candidate",
        "roomId": "demo",
        "candidate": {"candidate": "candidate:9 1 udp 1 10.0.0.9 9 typ host", "sdpMid": "0", "sdpMLineIndex": 0},
        "generation": current - 1,
    }
    await peers.pub_client._deliver(late)
    assert peers.publisher.session.pending_candidates == 0

    answer = {"type": "answer", "roomId": "demo", "sdp": {"type": "answer", "sdp": "v=0"}, "generation": current}
    await peers.pub_client._deliver(answer)
    assert transport.applied_candidates == []

    await peers.pub_client._deliver({**late, "generation": current})
    assert transport.applied_candidates == [late["candidate"]]
    await peers.stop()


@pytest.mark.asyncio
async def test_candidates_carry_negotiation_generation(rendezvous):
    peers = Peers(rendezvous)
    await peers.start_publisher()
    await peers.start_receiver()

    generation = peers.publisher.generation
    pub_candidates = [m for m in peers.pub_client.sent if m["type"] == "ice-candidate"]
    rx_candidates = [m for m in peers.rx_client.sent if m["type"] == "ice-candidate"]
    assert pub_candidates[-1]["generation"] == generation
    assert rx_candidates and all(m["generation"] == generation for m in rx_candidates)
    await peers.stop()


def test_base_supervisor_needs_a_role_specific_resume(rendezvous):
    with pytest.raises(TypeError):
        ReconnectionSupervisor(LoopbackClient(rendezvous), ConnectivityMonitor())
