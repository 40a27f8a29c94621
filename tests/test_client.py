"""End-to-end pairing flows over the in-process relay and fake transports."""

import pytest

from app.errors import InvalidNegotiationState, RelayError, RelaySubscriptionFailure
from helpers import FakeMedia, FakeNetwork, running, wait_for
from service.client import (
    CONNECTION_ERROR, CONNECTION_STATE, PARTNER_CHANGED, REMOTE_MEDIA_AVAILABLE,
    SEARCH_STARTED, SEARCH_STOPPED,
)
from service.relay import CHANNEL_ERROR, LocalRelay

SESSION = "private:chat_room_alice_bob"


class PrivateChannelsFail(LocalRelay):
    async def _attach(self, channel):
        if channel.topic.startswith("private:"):
            return CHANNEL_ERROR
        return await super()._attach(channel)


class WaitingPoolFails(LocalRelay):
    async def _attach(self, channel):
        return CHANNEL_ERROR


class OfferNotDelivered(LocalRelay):
    def _broadcast(self, sender, event, payload):
        if payload.get("type") == "offer":
            raise RelayError("Cannot reach relay")
        super()._broadcast(sender, event, payload)


def kinds(client):
    return [event.kind for event in client.history]


def connected(client):
    return client.snapshot()["connection_state"] == "connected"


async def pair(alice, bob, alice_media=None, bob_media=None):
    await alice.start_search(alice_media or FakeMedia())
    await bob.start_search(bob_media or FakeMedia())
    await wait_for(lambda: connected(alice) and connected(bob))


@pytest.mark.asyncio
async def test_two_clients_pair_and_connect(make_client, network):
    alice, bob = make_client("alice"), make_client("bob")
    async with running(alice, bob):
        await pair(alice, bob)

        assert alice.snapshot()["is_offerer"] is True
        assert bob.snapshot()["is_offerer"] is False
        assert alice.snapshot()["session_channel"] == SESSION
        assert alice.snapshot()["negotiation_phase"] == "connected"
        assert bob.partner_id == "alice"

        for client in (alice, bob):
            assert kinds(client)[:2] == [SEARCH_STARTED, PARTNER_CHANGED]
            assert kinds(client).count(REMOTE_MEDIA_AVAILABLE) == 1
            assert CONNECTION_ERROR not in kinds(client)
            assert [t.kind for t in client.remote_tracks] == ["audio", "video"]

        offerer_calls = alice.engine.transport.call_names()
        assert offerer_calls.index("create_offer") < offerer_calls.index("set_remote_description")


@pytest.mark.asyncio
async def test_paired_client_holds_only_the_session_channel(make_client, relay):
    alice, bob = make_client("alice"), make_client("bob")
    async with running(alice, bob):
        await pair(alice, bob)

        assert relay.subscriptions_for("alice") == [SESSION]
        assert relay.subscriptions_for("bob") == [SESSION]
        assert alice.coordinator.membership is None
        assert not alice.snapshot()["searching"]
        assert relay.presence("public:waiting_pool") == {}


@pytest.mark.asyncio
async def test_repeated_stop_is_a_no_op(make_client, relay):
    alice, bob = make_client("alice"), make_client("bob")
    alice_media = FakeMedia()
    async with running(alice, bob):
        await pair(alice, bob, alice_media=alice_media)
        transport = alice.engine.transport

        assert await alice.stop_search() is True
        first = alice.snapshot()
        assert await alice.stop_search() is False

        assert alice.snapshot() == first
        assert first["partner_id"] is None
        assert first["connection_state"] is None
        assert transport.call_names().count("close") == 1
        assert [track.stop_calls for track in alice_media.issued] == [1, 1]
        assert alice_media.stopped is False
        assert relay.subscriptions_for("alice") == []
        assert kinds(alice).count(SEARCH_STOPPED) == 1


@pytest.mark.asyncio
async def test_partner_leaving_tears_down_the_other_side(make_client):
    alice, bob = make_client("alice"), make_client("bob")
    async with running(alice, bob):
        await pair(alice, bob)

        await alice.stop_search()
        await wait_for(lambda: bob.engine is None)

        last_partner_change = [e for e in bob.history if e.kind == PARTNER_CHANGED][-1]
        assert last_partner_change.data == {"partner_id": None, "reason": "partner_left"}
        assert bob.snapshot()["session_channel"] is None
        assert bob.last_error is None


@pytest.mark.asyncio
async def test_answerer_without_media_buffers_until_attached(make_client):
    alice, bob = make_client("alice"), make_client("bob")
    async with running(alice, bob):
        await alice.start_search(FakeMedia())
        await bob.start_search()

        await wait_for(lambda: bob.snapshot()["queued_signals"] == 1)
        assert bob.snapshot()["negotiation_phase"] == "awaiting_resource"
        assert bob.snapshot()["has_local_media"] is False

        await bob.attach_media(FakeMedia())
        await wait_for(lambda: connected(alice) and connected(bob))

        assert bob.snapshot()["queued_signals"] == 0


@pytest.mark.asyncio
async def test_session_channel_failure_is_reported(make_client):
    relay = PrivateChannelsFail()
    alice, bob = make_client("alice", relay=relay), make_client("bob", relay=relay)
    async with running(alice, bob):
        await alice.start_search(FakeMedia())
        await bob.start_search(FakeMedia())

        await wait_for(lambda: alice.last_error is not None and bob.last_error is not None)
        await wait_for(lambda: SEARCH_STOPPED in kinds(alice))

        assert alice.last_error["error"] == "channel_transition_failure"
        assert alice.last_error["retry"] == "start_search"
        assert alice.snapshot()["partner_id"] is None
        assert alice.snapshot()["searching"] is False
        assert relay.subscriptions_for("alice") == []


@pytest.mark.asyncio
async def test_waiting_pool_failure_raises_and_reports(make_client):
    alice = make_client("alice", relay=WaitingPoolFails())
    async with running(alice):
        with pytest.raises(RelaySubscriptionFailure):
            await alice.start_search(FakeMedia())

        assert alice.last_error["error"] == "relay_subscription_failure"
        assert alice.snapshot()["in_pool"] is False
        assert SEARCH_STARTED not in kinds(alice)


@pytest.mark.asyncio
async def test_negotiation_failure_tears_down_both_sides(make_client):
    network = FakeNetwork(fail_on={"set_remote_description"})
    alice = make_client("alice", transport_factory=network.create)
    bob = make_client("bob", transport_factory=network.create)
    async with running(alice, bob):
        await alice.start_search(FakeMedia())
        await bob.start_search(FakeMedia())

        await wait_for(lambda: bob.last_error is not None)
        await wait_for(lambda: alice.engine is None and bob.engine is None)

        assert bob.last_error["error"] == "negotiation_step_failure"
        failed = [e.data["state"] for e in bob.history if e.kind == CONNECTION_STATE]
        assert failed == ["failed"]


@pytest.mark.asyncio
async def test_ice_failure_after_connect_is_reported(make_client):
    alice, bob = make_client("alice"), make_client("bob")
    async with running(alice, bob):
        await pair(alice, bob)
        transport = alice.engine.transport

        transport._emit_connectivity("failed")
        await wait_for(lambda: alice.engine is None)

        assert alice.last_error["error"] == "negotiation_step_failure"
        states = [e.data["state"] for e in alice.history if e.kind == CONNECTION_STATE]
        assert states[-1] == "failed"
        assert transport.closed


@pytest.mark.asyncio
async def test_search_is_refused_while_a_session_is_active(make_client):
    alice, bob = make_client("alice"), make_client("bob")
    async with running(alice, bob):
        await pair(alice, bob)

        assert await alice.start_search() is False
        assert alice.snapshot()["in_pool"] is False


@pytest.mark.asyncio
async def test_listeners_receive_events(make_client):
    alice = make_client("alice")
    async with running(alice):
        queue = alice.listen()
        await alice.start_search(FakeMedia())
        event = queue.get_nowait()
        alice.unlisten(queue)
        await alice.stop_search()

        assert event.to_dict() == {"kind": SEARCH_STARTED, "data": {"pool": "public:waiting_pool"}}
        assert queue.empty()


@pytest.mark.asyncio
async def test_undelivered_offer_fails_the_session(make_client):
    relay = OfferNotDelivered()
    alice, bob = make_client("alice", relay=relay), make_client("bob", relay=relay)
    async with running(alice, bob):
        await alice.start_search(FakeMedia())
        await bob.start_search(FakeMedia())

        await wait_for(lambda: alice.last_error is not None)
        await wait_for(lambda: alice.engine is None)

        assert alice.last_error["error"] == "negotiation_step_failure"
        assert CONNECTION_ERROR in kinds(alice)
        assert relay.subscriptions_for("alice") == []


@pytest.mark.asyncio
async def test_lost_waiting_pool_stops_the_search(make_client, relay):
    alice = make_client("alice")
    async with running(alice):
        await alice.start_search(FakeMedia())

        alice.coordinator.channel._lose("relay connection lost")
        await wait_for(lambda: SEARCH_STOPPED in kinds(alice))

        assert alice.last_error["error"] == "relay_subscription_failure"
        assert alice.snapshot()["in_pool"] is False
        stopped = [e for e in alice.history if e.kind == SEARCH_STOPPED][-1]
        assert stopped.data == {"reason": "relay_lost"}
        assert relay.subscriptions_for("alice") == []


@pytest.mark.asyncio
async def test_lost_session_channel_tears_down_the_session(make_client, relay):
    alice, bob = make_client("alice"), make_client("bob")
    async with running(alice, bob):
        await pair(alice, bob)
        transport = alice.engine.transport

        alice.session_channel._lose("relay connection lost")
        await wait_for(lambda: alice.engine is None)

        assert alice.last_error["error"] == "relay_error"
        assert transport.closed
        assert relay.subscriptions_for("alice") == []


@pytest.mark.asyncio
async def test_disconnect_and_recovery_keep_phase_in_step(make_client):
    alice, bob = make_client("alice"), make_client("bob")
    async with running(alice, bob):
        await pair(alice, bob)
        transport = alice.engine.transport

        transport._emit_connectivity("disconnected")
        await wait_for(lambda: alice.snapshot()["connection_state"] == "disconnected")
        assert alice.snapshot()["negotiation_phase"] == "negotiating"

        transport._emit_connectivity("connected")
        await wait_for(lambda: connected(alice))
        assert alice.snapshot()["negotiation_phase"] == "connected"
        assert alice.last_error is None


@pytest.mark.asyncio
async def test_replaced_media_is_stopped(make_client):
    alice = make_client("alice")
    first, second = FakeMedia(), FakeMedia()
    async with running(alice):
        await alice.attach_media(first)
        await alice.attach_media(second)
        await alice.attach_media(second)

        assert first.stopped is True
        assert second.stopped is False
        assert alice.snapshot()["has_local_media"] is True


@pytest.mark.asyncio
async def test_media_in_use_cannot_be_replaced(make_client):
    alice, bob = make_client("alice"), make_client("bob")
    alice_media = FakeMedia()
    async with running(alice, bob):
        await pair(alice, bob, alice_media=alice_media)

        with pytest.raises(InvalidNegotiationState):
            await alice.attach_media(FakeMedia())

        assert alice_media.stopped is False
        assert alice.local_media is alice_media
        assert connected(alice)
