"""
Swap Coordinator for atomicswap.

Facade over the state machine, race resolver, offer store and chain
gateways. Every public operation:

    1. takes the per-offer lock
    2. loads the current Offer from the store
    3. asks the resolver whether the intent is legal now
    4. asks the state machine for the next Offer (guards run first)
    5. saves it with a version check, then releases the lock
    6. emits (offer, legal actions) to listeners

Typed rejections never escape: they come back in `OfferResult.error`.
The coordinator keeps no durable state of its own; several instances can
share one store, the version check turns interleaved writes into `Conflict`.
"""

import contextlib
import logging
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Optional, Dict, List, Callable, Any, Union

from .config import CoordinatorConfig
from .core import OfferStatus, Side, LockStatus, verify_preimage
from .errors import SwapError, InvalidTerms, InvalidTransition, HashMismatch, StaleEvent
from .machine import OfferStateMachine
from .offer import Offer, OfferTerms, HTLCRef
from .resolver import RaceResolver, LegalActions, Action, ChainClock
from .store import OfferStore, MemoryOfferStore
from .chains.gateway import GatewayRegistry, ChainEvent

log = logging.getLogger(__name__)


@dataclass
class OfferResult:
    """Outcome of a coordinator call."""
    offer: Optional[Offer] = None
    actions: Optional[LegalActions] = None
    error: Optional[SwapError] = None
    offers: Optional[List[Offer]] = None
    payload: Optional[Dict[str, Any]] = None    # Unsigned tx from prepare_*

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> Offer:
        """The offer, or raise the rejection."""
        if self.error is not None:
            raise self.error
        return self.offer

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"ok": self.ok}
        if self.offer is not None:
            out["offer"] = self.offer.to_dict()
        if self.actions is not None:
            out["actions"] = self.actions.to_dict()
        if self.offers is not None:
            out["offers"] = [o.to_dict() for o in self.offers]
        if self.payload is not None:
            out["payload"] = self.payload
        if self.error is not None:
            out["error"] = self.error.to_dict()
        return out


def _side(value: Union[Side, str]) -> Side:
    if isinstance(value, Side):
        return value
    try:
        return Side(value)
    except ValueError:
        raise InvalidTerms(f"unknown side {value!r} (expected creator or taker)")


class SwapCoordinator:
    """
    Sequences offer intents and chain observations.

    Supports:
    - create / accept / lock / claim / expire / refund intents
    - chain observations ordered by per-leg finality marker
    - legality-checked preparation of unsigned gateway transactions
    """

    def __init__(self, store: OfferStore = None, gateways: GatewayRegistry = None,
                 config: CoordinatorConfig = None, now_fn: Callable[[], float] = time.time):
        self.config = config or CoordinatorConfig()
        self.store = store or MemoryOfferStore()
        self.gateways = gateways
        self.resolver = RaceResolver(self.config, now_fn)
        self.machine = OfferStateMachine(self.config)

        # Per-offer mutual exclusion: key -> [lock, holders], dropped when
        # the last holder leaves
        self._locks: Dict[str, list] = {}
        self._locks_guard = threading.Lock()

        self._handlers: Dict[str, List[Callable]] = {"offer": []}

    # =========================================================================
    # Listeners
    # =========================================================================

    def on(self, event: str, handler: Callable):
        """Register handler(offer, actions) for successful mutations."""
        if event in self._handlers:
            self._handlers[event].append(handler)

    def off(self, event: str, handler: Callable):
        if event in self._handlers and handler in self._handlers[event]:
            self._handlers[event].remove(handler)

    def _emit(self, event: str, *args):
        for handler in self._handlers.get(event, []):
            try:
                handler(*args)
            except Exception as e:
                log.error(f"Handler error for {event}: {e}")

    # =========================================================================
    # Plumbing
    # =========================================================================

    @contextlib.contextmanager
    def _offer_lock(self, key: str):
        with self._locks_guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = [threading.Lock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def _result(self, offer: Offer, **extra) -> OfferResult:
        return OfferResult(offer=offer, actions=self.resolver.legal_actions(offer), **extra)

    def _run(self, op: str, fn: Callable[[], OfferResult]) -> OfferResult:
        try:
            return fn()
        except SwapError as e:
            if e.retryable:
                log.error(f"{op} failed: {e}")
            else:
                log.warning(f"{op} rejected: {e}")
            return OfferResult(error=e)

    def _mutate(self, op: str, offer_id: str, apply: Callable[[Offer], Offer]) -> OfferResult:
        def run() -> OfferResult:
            with self._offer_lock(offer_id):
                current = self.store.load(offer_id)
                updated = apply(current)
                if updated is current:
                    log.debug(f"{op} on {offer_id}: already applied")
                    return self._result(current)
                stored = self.store.save(updated, expected_version=current.version)
            if stored.status is not current.status:
                log.info(f"Offer {offer_id}: {current.status.value} -> {stored.status.value} ({op})")
            else:
                log.info(f"Offer {offer_id}: {op}")
            result = self._result(stored)
            self._emit("offer", stored, result.actions)
            return result
        return self._run(op, run)

    def _chain_now(self, offer: Offer, side: Optional[Side]) -> int:
        return self.resolver.effective_now(offer.leg_chain(side) if side else None)

    # =========================================================================
    # Intents
    # =========================================================================

    def create_offer(self, terms: Union[OfferTerms, Dict[str, Any]],
                     idempotency_key: Optional[str] = None) -> OfferResult:
        """Validate terms and store a new OPEN offer."""
        def run() -> OfferResult:
            t = terms if isinstance(terms, OfferTerms) else OfferTerms.from_dict(terms)
            t.validate()
            if self.gateways is not None:
                for chain in (t.chain_from, t.chain_to):
                    if chain not in self.gateways:
                        raise InvalidTerms(f"unsupported chain {chain}",
                                           context={"supported": self.gateways.chains()})

            if idempotency_key:
                with self._offer_lock(f"idempotency:{idempotency_key}"):
                    existing = self.store.find_by_idempotency_key(idempotency_key)
                    if existing is not None:
                        log.info(f"create_offer replay for key {idempotency_key}: {existing.offer_id}")
                        return self._result(existing)
                    stored = self._insert(t, idempotency_key)
            else:
                stored = self._insert(t, None)

            log.info(f"Offer created: {stored.offer_id}, {stored.amount_from} {stored.token_from}"
                     f"@{stored.chain_from} -> {stored.amount_to} {stored.token_to}@{stored.chain_to}")
            result = self._result(stored)
            self._emit("offer", stored, result.actions)
            return result
        return self._run("create_offer", run)

    def _insert(self, terms: OfferTerms, idempotency_key: Optional[str]) -> Offer:
        offer = Offer.from_terms(f"offer_{uuid.uuid4().hex[:12]}", terms,
                                 self.resolver.wall_now(), idempotency_key)
        return self.store.save(offer)

    def accept_offer(self, offer_id: str, taker_addresses: Dict[str, str],
                     secret_hash: str) -> OfferResult:
        def apply(offer: Offer) -> Offer:
            return self.machine.accept(offer, taker_addresses, secret_hash,
                                       self.resolver.wall_now())
        return self._mutate("accept", offer_id, apply)

    def record_lock(self, offer_id: str, side: Union[Side, str],
                    htlc: Union[HTLCRef, Dict[str, Any]]) -> OfferResult:
        """Record that `side` locked its leg on chain."""
        def apply(offer: Offer) -> Offer:
            s = _side(side)
            ref = htlc if isinstance(htlc, HTLCRef) else HTLCRef.from_dict(htlc)
            self.resolver.check(offer, Action.LOCK, s)
            now = self._chain_now(offer, s)
            if s is Side.TAKER:
                return self.machine.taker_lock(offer, ref, now)
            return self.machine.creator_lock(offer, ref, now)
        return self._mutate("record_lock", offer_id, apply)

    def record_claim(self, offer_id: str, side: Union[Side, str],
                     secret_preimage: Optional[str] = None) -> OfferResult:
        """
        Record a claim by `side`.

        The creator claims the taker leg and must supply the preimage; the
        taker claims the creator leg with the preimage already recorded.
        """
        def apply(offer: Offer) -> Offer:
            s = _side(side)
            self.resolver.check(offer, Action.CLAIM, s)
            now = self._chain_now(offer, s.other)
            if s is Side.CREATOR:
                if not secret_preimage:
                    raise InvalidTerms("creator claim must supply the secret preimage")
                return self.machine.creator_claim(offer, secret_preimage, now)
            return self.machine.taker_claim(offer, now, secret_preimage)
        return self._mutate("record_claim", offer_id, apply)

    def record_expiry(self, offer_id: str, side: Union[Side, str] = Side.TAKER) -> OfferResult:
        """Expire the offer. Idempotent on an already EXPIRED offer."""
        def apply(offer: Offer) -> Offer:
            s = _side(side)
            if offer.status is OfferStatus.EXPIRED:
                return offer
            self.resolver.check(offer, Action.EXPIRE, s)
            now = self._chain_now(offer, self.machine.relevant_side(offer))
            return self.machine.expire(offer, s, now)
        return self._mutate("record_expiry", offer_id, apply)

    def record_refund(self, offer_id: str, side: Union[Side, str],
                      party: Optional[Union[Side, str]] = None) -> OfferResult:
        """Record that `side` refunded its own leg. `party` is the requester, if known."""
        def apply(offer: Offer) -> Offer:
            s = _side(side)
            requester = _side(party) if party is not None else None
            self.resolver.check(offer, Action.REFUND, s, requester)
            return self.machine.refund(offer, s, self._chain_now(offer, s))
        return self._mutate("record_refund", offer_id, apply)

    # =========================================================================
    # Observations
    # =========================================================================

    def observe_chain_event(self, offer_id: str,
                            event: Union[ChainEvent, Dict[str, Any]]) -> OfferResult:
        """
        Apply an on-chain outcome for one leg.

        Events must arrive in finality order per leg: anything at or below
        the last applied sequence is rejected as StaleEvent, as is a lock
        report for a leg that is already recorded.
        """
        def apply(offer: Offer) -> Offer:
            ev = event if isinstance(event, ChainEvent) else ChainEvent.from_dict(event)
            key = ev.side.value
            last = offer.sequences.get(key)
            if last is not None and ev.sequence <= last:
                raise StaleEvent(
                    f"{key} leg event at sequence {ev.sequence} is not newer than {last}",
                    context={"offer_id": offer.offer_id, "sequence": ev.sequence, "last": last},
                )
            chain = offer.leg_chain(ev.side)
            if ev.chain_time is not None:
                self.resolver.observe_clock(chain, ev.chain_time, ev.sequence)
            now = ev.chain_time if ev.chain_time is not None else self.resolver.effective_now(chain)

            if ev.status is LockStatus.LOCKED:
                if offer.has_leg(ev.side):
                    raise StaleEvent(
                        f"{key} lock reported after it was already recorded ({offer.status.value})",
                        context={"offer_id": offer.offer_id},
                    )
                if ev.htlc is None:
                    raise InvalidTerms("lock event must carry the HTLC reference")
                if ev.side is Side.TAKER:
                    updated = self.machine.taker_lock(offer, ev.htlc, now)
                else:
                    updated = self.machine.creator_lock(offer, ev.htlc, now)
            elif ev.status is LockStatus.CLAIMED:
                if offer.has_leg(ev.side) and offer.leg_claimed(ev.side):
                    raise StaleEvent(f"{key} leg claim already recorded",
                                     context={"offer_id": offer.offer_id})
                if ev.side is Side.TAKER:
                    # Creator claimed the taker leg; the secret is now public
                    updated = self.machine.creator_claim(offer, ev.secret or "", now)
                else:
                    updated = self.machine.taker_claim(offer, now, ev.secret)
            elif ev.status is LockStatus.REFUNDED:
                updated = self.machine.refund(offer, ev.side, now)
            else:
                updated = self.machine.expire(offer, ev.side, now)

            return updated.evolve(sequences={**updated.sequences, key: ev.sequence})
        return self._mutate("observe_chain_event", offer_id, apply)

    def observe_clock(self, chain: str, chain_time: int,
                      height: Optional[int] = None) -> ChainClock:
        return self.resolver.observe_clock(chain, chain_time, height)

    # =========================================================================
    # Queries
    # =========================================================================

    def query_offer(self, offer_id: str) -> OfferResult:
        return self._run("query_offer", lambda: self._result(self.store.load(offer_id)))

    def list_offers(self, status: Optional[Union[OfferStatus, str]] = None) -> OfferResult:
        """All offers, newest first, optionally filtered by status."""
        def run() -> OfferResult:
            wanted = None
            if status is not None:
                try:
                    wanted = status if isinstance(status, OfferStatus) else OfferStatus(status)
                except ValueError:
                    raise InvalidTerms(f"unknown status {status!r}")
            return OfferResult(offers=self.store.list(wanted))
        return self._run("list_offers", run)

    def active_offers(self) -> List[Offer]:
        """Offers whose legs may still change on chain (used by the watcher)."""
        active = []
        for offer in self.store.list():
            if offer.status is OfferStatus.CLOSED:
                continue
            if offer.status is OfferStatus.EXPIRED and all(
                    offer.leg(s).refunded for s in Side if offer.has_leg(s)):
                continue
            active.append(offer)
        return active

    # =========================================================================
    # Transaction preparation (read-only)
    # =========================================================================

    def _gateway_for(self, offer: Offer, side: Side):
        if self.gateways is None:
            raise InvalidTransition("no chain gateways configured")
        return self.gateways.get(offer.leg_chain(side))

    def prepare_lock(self, offer_id: str, side: Union[Side, str],
                     expires_at: Optional[int] = None) -> OfferResult:
        """Unsigned lock transaction for `side`, with a safe default expiry."""
        def run() -> OfferResult:
            s = _side(side)
            offer = self.store.load(offer_id)
            self.resolver.check(offer, Action.LOCK, s)
            actions = self.resolver.legal_actions(offer)
            allowed = actions.can_lock_taker if s is Side.TAKER else actions.can_lock_creator
            if not allowed:
                raise InvalidTransition(
                    f"{s.value} cannot lock now: {actions.next_actions[s.value]}",
                    context={"offer_id": offer_id, "status": offer.status.value},
                )
            expiry = expires_at
            if expiry is None:
                if s is Side.TAKER:
                    expiry = self._chain_now(offer, s) + self.config.default_lock_seconds
                else:
                    expiry = actions.deadlines["creator_lock_by"]
            tx = self._gateway_for(offer, s).build_lock(offer, s, expiry)
            return OfferResult(offer=offer, actions=actions,
                               payload={"expires_at": expiry, "tx": tx})
        return self._run("prepare_lock", run)

    def prepare_claim(self, offer_id: str, side: Union[Side, str],
                      secret: Optional[str] = None) -> OfferResult:
        """Unsigned claim transaction for `side` claiming the counterparty's leg."""
        def run() -> OfferResult:
            s = _side(side)
            offer = self.store.load(offer_id)
            self.resolver.check(offer, Action.CLAIM, s)
            actions = self.resolver.legal_actions(offer)
            allowed = actions.can_claim_creator if s is Side.CREATOR else actions.can_claim_taker
            if not allowed:
                raise InvalidTransition(
                    f"{s.value} cannot claim now: {actions.next_actions[s.value]}",
                    context={"offer_id": offer_id, "status": offer.status.value},
                )
            if s is Side.CREATOR:
                if not verify_preimage(secret, offer.secret_hash):
                    raise HashMismatch("secret does not hash to the offer secret_hash",
                                       context={"offer_id": offer_id})
                preimage = secret.lower()
            else:
                preimage = offer.revealed_secret()
            leg = offer.leg(s.other)
            tx = self._gateway_for(offer, s.other).build_claim(leg, preimage)
            return OfferResult(offer=offer, actions=actions, payload={"tx": tx})
        return self._run("prepare_claim", run)

    def prepare_refund(self, offer_id: str, side: Union[Side, str]) -> OfferResult:
        """Unsigned refund transaction for `side`'s own leg."""
        def run() -> OfferResult:
            s = _side(side)
            offer = self.store.load(offer_id)
            self.resolver.check(offer, Action.REFUND, s, s)
            leg = offer.leg(s)
            if leg.refunded:
                raise InvalidTransition(f"{s.value} leg already refunded",
                                        context={"offer_id": offer_id})
            tx = self._gateway_for(offer, s).build_refund(leg)
            return self._result(offer, payload={"tx": tx})
        return self._run("prepare_refund", run)
