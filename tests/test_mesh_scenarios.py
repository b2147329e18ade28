import signals
from negotiation import LinkState, Role, STATUS_CONNECTED, STATUS_CONNECTING, STATUS_DISCONNECTED
from signals import Envelope


async def test_second_joiner_is_offered_to_and_both_connect(mesh):
    a, b = mesh.add("a"), mesh.add("b")

    await a.join("r1", "Alice")
    [joined_a] = a.socket.envelopes()
    assert joined_a.kind == signals.JOINED and joined_a.members == []
    a.socket.inbox.clear()

    await b.join("r1", "Bob")
    [joined_b] = b.socket.envelopes()
    assert [m.participant_id for m in joined_b.members] == ["a"]
    assert [(e.kind, e.participant_id) for e in a.socket.envelopes()] == [(signals.PEER_JOINED, "b")]

    await mesh.settle()

    a_link, b_link = a.coordinator.link("b"), b.coordinator.link("a")
    assert (a_link.role, a_link.state) == (Role.INITIATOR, LinkState.CONNECTED)
    assert (b_link.role, b_link.state) == (Role.RESPONDER, LinkState.CONNECTED)
    assert a.statuses == [("b", STATUS_CONNECTING), ("b", STATUS_CONNECTED)]
    assert b.coordinator.known_peers == {"a": "Alice"}


async def test_screen_share_renegotiates_and_b_rebuilds_as_responder(mesh):
    a, b = mesh.add("a"), mesh.add("b")
    await a.join("r1")
    await b.join("r1")
    await mesh.settle()
    b_before = b.coordinator.link("a")

    await a.coordinator.switch_source("screen")
    await mesh.settle()

    a_link, b_link = a.coordinator.link("b"), b.coordinator.link("a")
    assert a_link.state == LinkState.CONNECTED and a_link.role == Role.INITIATOR
    assert b_link.state == LinkState.CONNECTED and b_link.role == Role.RESPONDER
    assert b_link is not b_before and b_before.state == LinkState.CLOSED
    assert "screen-video" in a_link.transport.tracks
    assert a.factory.for_peer("b")[0].replaced == ["screen-video"]
    assert LinkState.RENEGOTIATING in a.factory.states_at_creation
    assert a.factory.violations == [] and b.factory.violations == []
    assert a.statuses == [("b", STATUS_CONNECTING), ("b", STATUS_CONNECTED)] * 2


async def test_departed_peer_is_closed_and_late_candidates_dropped(mesh):
    a, b = mesh.add("a"), mesh.add("b")
    await a.join("r1")
    await b.join("r1")
    await mesh.settle()
    link = a.coordinator.link("b")

    await mesh.server.directory.disconnect("b")
    del mesh.peers["b"]
    await mesh.settle()

    assert link.state == LinkState.CLOSED
    assert a.coordinator.link("b") is None
    assert a.statuses[-1] == ("b", STATUS_DISCONNECTED)

    await a.coordinator.handle(Envelope(
        signals.ICE_CANDIDATE, sender="b", to="a",
        candidate={"candidate": "candidate:1 1 udp 1 10.0.0.2 5000 typ host", "sdpMid": "0"}))
    await a.coordinator.drain()
    assert a.coordinator.link("b") is None
    assert "b" not in a.coordinator._unbound
    assert len(a.factory.created) == 1


async def test_simultaneous_offers_end_with_one_link_per_pair(mesh):
    a, b = mesh.add("a"), mesh.add("b")
    await a.join("r1")
    await b.join("r1")
    a.socket.inbox.clear()
    b.socket.inbox.clear()

    await a.coordinator.handle(Envelope(signals.PEER_JOINED, participant_id="b"))
    await b.coordinator.handle(Envelope(signals.PEER_JOINED, participant_id="a"))
    await a.coordinator.drain()
    await b.coordinator.drain()
    assert a.coordinator.link("b").offer_pending and b.coordinator.link("a").offer_pending

    await mesh.settle()

    a_link, b_link = a.coordinator.link("b"), b.coordinator.link("a")
    assert a_link.state == LinkState.CONNECTED and b_link.state == LinkState.CONNECTED
    # "a" sorts first, so it accepts b's offer
    assert a_link.role == Role.RESPONDER and b_link.role == Role.INITIATOR
    assert len(b.factory.created) == 1
    live = [l for l in a.factory.created + b.factory.created if not l.destroyed]
    assert len(live) == 2
    assert a.factory.violations == [] and b.factory.violations == []


async def test_three_peers_form_a_full_mesh(mesh):
    peers = [mesh.add(pid) for pid in ("a", "b", "c")]
    for peer in peers:
        await peer.join("r1")
        await mesh.settle()

    for peer in peers:
        others = {p.id for p in peers} - {peer.id}
        assert set(peer.coordinator.links) == others
        assert all(peer.coordinator.state_of(rid) == LinkState.CONNECTED for rid in others)
