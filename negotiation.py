"""
Per-remote-peer negotiation for one local participant.

`NegotiationCoordinator` keeps one `PeerLink` per remote participant and
turns relayed offer/answer/candidate envelopes into established links. Every
remote id has its own mailbox processed by one asyncio task, so signals from
one peer are handled strictly in relay order while other peers progress
independently.

State machine per link::

    IDLE -> NEGOTIATING -> CONNECTED -> RENEGOTIATING -> (new link) NEGOTIATING
                 |             |
                 +--> FAILED <-+--> (retry) NEGOTIATING ... or stays FAILED
    any -> CLOSED on peer-left / teardown
"""
import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import signals
from mesh_errors import MediaUnavailable, NegotiationTimeout, RelayUnreachable
from signals import Envelope

logger = logging.getLogger(__name__)


class LinkState(str, Enum):
    IDLE = "idle"
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    RENEGOTIATING = "renegotiating"
    FAILED = "failed"
    CLOSED = "closed"


class Role(str, Enum):
    INITIATOR = "initiator"
    RESPONDER = "responder"


# per-peer status surfaced to the caller
STATUS_CONNECTING = "connecting"
STATUS_CONNECTED = "connected"
STATUS_FAILED = "failed"
STATUS_DISCONNECTED = "disconnected"

# transport connection states that mean the link is gone
LOST_STATES = frozenset({"failed", "disconnected", "closed"})


class DeferredSignalQueue:
    """FIFO of inbound envelopes a link cannot apply yet."""

    def __init__(self):
        self._items = deque()

    def push(self, envelope: Envelope) -> None:
        self._items.append(envelope)

    def drain(self) -> List[Envelope]:
        items = list(self._items)
        self._items.clear()
        return items

    def clear(self) -> None:
        self._items.clear()

    def __len__(self):
        return len(self._items)

    def __iter__(self):
        return iter(list(self._items))


class PeerLink:
    """One side's view of the connection to one remote participant.

    Owns its transport exclusively; `destroy()` releases it.
    """

    def __init__(self, remote_id: str, role: Role, queue: Optional[DeferredSignalQueue] = None):
        self.remote_id = remote_id
        self._role = role
        self.state = LinkState.IDLE
        self.transport = None
        self.queue = queue if queue is not None else DeferredSignalQueue()
        self.offer_pending = False
        self.remote_described = False
        self.applied_candidates = set()
        self._timer: Optional[asyncio.TimerHandle] = None

    @property
    def role(self) -> Role:
        return self._role

    def cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    async def destroy(self) -> None:
        self.cancel_timer()
        self.queue.clear()
        transport, self.transport = self.transport, None
        if transport is not None:
            await transport.destroy()

    def __repr__(self):
        return f"<PeerLink {self.remote_id} {self._role.value} {self.state.value}>"


@dataclass
class _Command:
    """Work item generated locally rather than received from the relay."""
    kind: str
    link: Optional[PeerLink] = None
    detail: Any = None


class NegotiationCoordinator:
    """Drives one PeerLink state machine per remote participant.

    Args:
        local_id: participant id the relay assigned to this client.
        send: coroutine function taking an Envelope; hands it to the relay.
        link_factory: ``factory(remote_id, role, tracks, on_state_change,
            on_candidate)`` returning a transport link (see rtc_link.RtcLink).
        media: shared outgoing track set (media_capture.LocalMedia) or None.
        retry_budget: recovery attempts after a failure before giving up.
        negotiation_timeout: seconds a link may stay NEGOTIATING.
        on_status: ``callback(remote_id, status)`` invoked once per change.
    """

    def __init__(self, local_id: Optional[str], send, link_factory, media=None,
                 retry_budget: int = 3, negotiation_timeout: float = 15.0,
                 on_status: Optional[Callable[[str, str], None]] = None):
        self.local_id = local_id
        self.media = media
        self.retry_budget = retry_budget
        self.negotiation_timeout = negotiation_timeout
        self._send = send
        self._link_factory = link_factory
        self._on_status = on_status

        self.links: Dict[str, PeerLink] = {}
        self.known_peers: Dict[str, Optional[str]] = {}
        self.status: Dict[str, str] = {}
        self._unbound: Dict[str, DeferredSignalQueue] = {}
        self._departed = set()
        self._rejoin = set()
        self._attempts: Dict[str, int] = {}

        self._inboxes: Dict[str, asyncio.Queue] = {}
        self._workers: Dict[str, asyncio.Task] = {}
        self._pending = 0
        self._idle = asyncio.Event()
        self._idle.set()

    # ------------------------------------------------------------ queries
    def link(self, remote_id: str) -> Optional[PeerLink]:
        return self.links.get(remote_id)

    def state_of(self, remote_id: str) -> LinkState:
        link = self.links.get(remote_id)
        return link.state if link is not None else LinkState.IDLE

    def snapshot(self) -> Dict[str, Dict[str, Optional[str]]]:
        peers = set(self.known_peers) | set(self.links) | set(self.status)
        out = {}
        for rid in sorted(peers):
            link = self.links.get(rid)
            out[rid] = {
                "displayName": self.known_peers.get(rid),
                "state": self.state_of(rid).value,
                "role": link.role.value if link else None,
                "status": self.status.get(rid),
            }
        return out

    async def drain(self) -> None:
        """Wait until every queued signal and command has been processed."""
        await self._idle.wait()

    # ------------------------------------------------------------- inbound
    async def handle(self, envelope: Envelope) -> None:
        """Entry point for every envelope received from the relay."""
        t = envelope.kind
        if t == signals.JOINED:
            self._on_joined(envelope.members)
        elif t == signals.PEER_JOINED:
            rid = envelope.participant_id
            if rid and rid != self.local_id:
                self._departed.discard(rid)
                self.known_peers[rid] = envelope.display_name
                self._enqueue(rid, _Command("open"))
        elif t == signals.PEER_LEFT:
            if envelope.participant_id:
                await self.close_peer(envelope.participant_id)
        elif t in signals.NEGOTIATION_KINDS:
            rid = envelope.sender
            if not rid or rid == self.local_id:
                logger.debug(f"Dropping {t} without a usable sender")
            elif rid in self._departed:
                logger.debug(f"Dropping late {t} from departed peer {rid}")
            else:
                self._enqueue(rid, envelope)
        else:
            logger.debug(f"Coordinator ignores {t}")

    def _on_joined(self, members) -> None:
        present = {m.participant_id for m in members}
        for m in members:
            if m.participant_id == self.local_id:
                continue
            self._departed.discard(m.participant_id)
            self.known_peers[m.participant_id] = m.display_name
            if m.participant_id in self._rejoin:
                # re-run from IDLE; a simultaneous offer from them is glare
                self._enqueue(m.participant_id, _Command("open"))
        for rid in self._rejoin - present:
            self.known_peers.pop(rid, None)
            self._set_status(rid, STATUS_DISCONNECTED)
        self._rejoin.clear()

    # ------------------------------------------------------- local changes
    async def switch_source(self, kind: str) -> None:
        """Swap the shared outgoing video source and renegotiate.

        Raises MediaUnavailable (leaving every link untouched) when the new
        source cannot be acquired.
        """
        if self.media is None:
            raise MediaUnavailable(kind, "no local media to replace")
        track, previous = await self.media.switch(kind)
        for link in self.links.values():
            if link.transport is not None:
                link.transport.replace_outgoing_track(self.media.subscribe(track))
        # every sender has moved off the old source by now
        self.media.release(previous)
        self.renegotiate()

    def renegotiate(self) -> None:
        for rid, link in list(self.links.items()):
            if link.state == LinkState.CONNECTED:
                self._enqueue(rid, _Command("renegotiate", link))

    async def close_peer(self, remote_id: str, departed: bool = True) -> None:
        """Tear down everything held for one remote peer.

        Cancels any in-flight negotiation step, destroys the link and its
        queued signals, and moves it to CLOSED.
        """
        worker = self._workers.pop(remote_id, None)
        inbox = self._inboxes.pop(remote_id, None)
        if worker is not None and worker is not asyncio.current_task():
            worker.cancel()
            await asyncio.gather(worker, return_exceptions=True)
        if inbox is not None:
            while not inbox.empty():
                inbox.get_nowait()
                inbox.task_done()
                self._done()

        link = self.links.pop(remote_id, None)
        if link is not None:
            await link.destroy()
            link.state = LinkState.CLOSED
            logger.info(f"Link to {remote_id} closed")
        self._unbound.pop(remote_id, None)
        self._attempts.pop(remote_id, None)
        self.known_peers.pop(remote_id, None)
        if departed:
            self._departed.add(remote_id)
        if remote_id in self.status:
            self._set_status(remote_id, STATUS_DISCONNECTED)

    async def close_all(self, departed: bool = True) -> None:
        """Close every link, e.g. on leaving the room.

        Closed peers count as departed until they show up in a member list
        again, so offers still in flight from them are dropped.
        """
        peers = set(self.links) | set(self._inboxes) | set(self.known_peers) | set(self._unbound)
        for rid in peers:
            await self.close_peer(rid, departed=departed)
        self._rejoin.clear()

    async def rebind(self, local_id: str) -> None:
        """Adopt a new relay-assigned id after the relay socket reconnected.

        Links built under the old id are unusable; every known peer is
        renegotiated once the room's member list arrives again.
        """
        rejoin = set(self.known_peers) | set(self.links)
        await self.close_all(departed=False)
        self._departed.clear()
        self._rejoin = rejoin
        self.local_id = local_id

    # ------------------------------------------------------------ mailbox
    def _enqueue(self, remote_id: str, item) -> None:
        inbox = self._inboxes.get(remote_id)
        if inbox is None:
            inbox = self._inboxes[remote_id] = asyncio.Queue()
            self._workers[remote_id] = asyncio.get_running_loop().create_task(
                self._work(remote_id, inbox))
        self._pending += 1
        self._idle.clear()
        inbox.put_nowait(item)

    def _done(self) -> None:
        self._pending -= 1
        if self._pending <= 0:
            self._pending = 0
            self._idle.set()

    async def _work(self, remote_id: str, inbox: asyncio.Queue) -> None:
        while True:
            item = await inbox.get()
            try:
                await self._process(remote_id, item)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Negotiation step with {remote_id} failed: {e!r}")
                await self._recover(remote_id, e)
            finally:
                inbox.task_done()
                self._done()

    async def _process(self, rid: str, item) -> None:
        if isinstance(item, _Command):
            if item.kind == "open":
                await self._on_peer_joined(rid)
                return
            if self.links.get(rid) is not item.link:
                logger.debug(f"Ignoring stale {item.kind} for {rid}")
                return
            if item.kind == "state":
                await self._on_transport_state(item.link, item.detail)
            elif item.kind == "timeout":
                if item.link.state == LinkState.NEGOTIATING:
                    await self._fail(item.link, NegotiationTimeout(rid, self.negotiation_timeout))
            elif item.kind == "renegotiate":
                if item.link.state == LinkState.CONNECTED:
                    item.link.state = LinkState.RENEGOTIATING
                    self._attempts.pop(rid, None)
                    logger.info(f"Renegotiating link to {rid}")
                    await self._open(rid, Role.INITIATOR)
            elif item.kind == "candidate":
                await self._relay(signals.ice_candidate(rid, item.detail))
            return

        if item.kind == signals.OFFER:
            await self._on_offer(rid, item)
        elif item.kind == signals.ANSWER:
            await self._on_answer(rid, item)
        elif item.kind == signals.ICE_CANDIDATE:
            await self._on_candidate(rid, item)

    async def _recover(self, rid: str, error: Exception) -> None:
        while True:
            link = self.links.get(rid)
            if link is None or link.state in (LinkState.FAILED, LinkState.CLOSED):
                return
            try:
                await self._fail(link, error)
                return
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Recovery of link to {rid} failed: {e!r}")
                error = e

    # --------------------------------------------------------- transitions
    async def _on_peer_joined(self, rid: str) -> None:
        link = self.links.get(rid)
        if link is not None and link.state in (
            LinkState.NEGOTIATING, LinkState.CONNECTED, LinkState.RENEGOTIATING
        ):
            logger.debug(f"Peer {rid} already has a live link")
            return
        self._attempts.pop(rid, None)
        await self._open(rid, Role.INITIATOR)

    async def _on_offer(self, rid: str, envelope: Envelope) -> None:
        link = self.links.get(rid)
        if (
            link is not None
            and link.state == LinkState.NEGOTIATING
            and link.role == Role.INITIATOR
            and link.offer_pending
        ):
            if not self._yields_to(rid):
                logger.info(f"Glare with {rid}: keeping own offer")
                return
            logger.info(f"Glare with {rid}: yielding to remote offer")
        elif link is not None and link.state == LinkState.CONNECTED:
            logger.info(f"Peer {rid} renegotiates")

        queue = self._unbound.pop(rid, None)
        link = await self._open(rid, Role.RESPONDER, queue)
        await link.transport.apply_signal(envelope.signal)
        link.remote_described = True
        await self._flush(link)
        answer = await self._generate(link)
        await self._relay(signals.answer(rid, answer))

    async def _on_answer(self, rid: str, envelope: Envelope) -> None:
        link = self.links.get(rid)
        if link is None or link.role != Role.INITIATOR or not link.offer_pending:
            logger.debug(f"Ignoring unexpected answer from {rid}")
            return
        await link.transport.apply_signal(envelope.signal)
        link.offer_pending = False
        link.remote_described = True
        await self._flush(link)

    async def _on_candidate(self, rid: str, envelope: Envelope) -> None:
        link = self.links.get(rid)
        if link is None:
            self._unbound.setdefault(rid, DeferredSignalQueue()).push(envelope)
            return
        if link.transport is None or link.state in (LinkState.FAILED, LinkState.CLOSED):
            logger.debug(f"Dropping candidate for {link!r}")
            return
        if not link.remote_described:
            link.queue.push(envelope)
            return
        await self._apply_candidate(link, envelope.candidate)

    async def _on_transport_state(self, link: PeerLink, state: str) -> None:
        rid = link.remote_id
        if state == "connected":
            if link.state == LinkState.NEGOTIATING:
                link.state = LinkState.CONNECTED
                link.cancel_timer()
                self._attempts.pop(rid, None)
                logger.info(f"Link to {rid} connected as {link.role.value}")
                self._set_status(rid, STATUS_CONNECTED)
        elif state in LOST_STATES:
            if link.state in (LinkState.NEGOTIATING, LinkState.CONNECTED):
                await self._fail(link, f"transport {state}")

    async def _fail(self, link: PeerLink, reason) -> None:
        rid = link.remote_id
        link.state = LinkState.FAILED
        attempts = self._attempts.get(rid, 0) + 1
        self._attempts[rid] = attempts
        if attempts > self.retry_budget:
            logger.warning(f"Giving up on {rid} after {attempts - 1} retries: {reason}")
            await link.destroy()
            self._set_status(rid, STATUS_FAILED)
            return
        logger.info(f"Link to {rid} failed ({reason}); retry {attempts}/{self.retry_budget}")
        await self._open(rid, Role.INITIATOR)

    # ------------------------------------------------------------- helpers
    async def _open(self, rid: str, role: Role, queue: Optional[DeferredSignalQueue] = None) -> PeerLink:
        """Replace whatever link exists for rid with a fresh one in NEGOTIATING.

        The old transport is destroyed before the new one is constructed;
        `self.links[rid]` keeps pointing at the old link until the swap.
        """
        old = self.links.get(rid)
        if old is not None:
            await old.destroy()

        link = PeerLink(rid, role, queue)
        link.transport = self._link_factory(
            rid,
            role,
            self.media.tracks() if self.media is not None else [],
            lambda state: self._on_link_event(link, "state", state),
            lambda candidate: self._on_link_event(link, "candidate", candidate),
        )
        link.state = LinkState.NEGOTIATING
        self.links[rid] = link
        if old is not None:
            old.state = LinkState.CLOSED
        self._arm_timer(link)
        self._set_status(rid, STATUS_CONNECTING)
        logger.info(f"Opened link to {rid} as {role.value}")

        if role == Role.INITIATOR:
            offer = await self._generate(link)
            link.offer_pending = True
            await self._relay(signals.offer(rid, offer))
        return link

    async def _generate(self, link: PeerLink):
        try:
            return await asyncio.wait_for(link.transport.generate_signal(), self.negotiation_timeout)
        except asyncio.TimeoutError:
            raise NegotiationTimeout(link.remote_id, self.negotiation_timeout) from None

    async def _flush(self, link: PeerLink) -> None:
        for envelope in link.queue.drain():
            if envelope.kind == signals.ICE_CANDIDATE:
                await self._apply_candidate(link, envelope.candidate)
            else:
                logger.debug(f"Discarding deferred {envelope.kind} for {link.remote_id}")

    async def _apply_candidate(self, link: PeerLink, candidate) -> None:
        key = candidate.get("candidate")
        if key in link.applied_candidates:
            return
        link.applied_candidates.add(key)
        await link.transport.apply_signal(candidate)

    def _on_link_event(self, link: PeerLink, kind: str, detail) -> None:
        # transport callbacks outlive replaced links; only the current one counts
        if self.links.get(link.remote_id) is link:
            self._enqueue(link.remote_id, _Command(kind, link, detail))

    def _arm_timer(self, link: PeerLink) -> None:
        loop = asyncio.get_running_loop()
        link._timer = loop.call_later(
            self.negotiation_timeout, self._on_link_event, link, "timeout", None)

    async def _relay(self, envelope: Envelope) -> None:
        try:
            await self._send(envelope)
        except RelayUnreachable as e:
            # the reconnect path renegotiates every peer anyway
            logger.debug(f"Relay down, {envelope.kind} to {envelope.to} dropped: {e}")

    def _set_status(self, rid: str, status: str) -> None:
        if self.status.get(rid) == status:
            return
        self.status[rid] = status
        if self._on_status is not None:
            self._on_status(rid, status)

    def _yields_to(self, remote_id: str) -> bool:
        """Glare tie-break: the smaller participant id accepts the other offer."""
        local = self.local_id or ""
        if local.isdigit() and remote_id.isdigit():
            return int(local) < int(remote_id)
        return local < remote_id
