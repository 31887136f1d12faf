"""
Race Resolver for atomicswap.

Answers "who may do what, until when" for an Offer, given each chain's last
observed clock. It never mutates anything.

Each chain's HTLC contract enforces expiry against its own clock, so the
resolver distinguishes:

    ACTIVE          - still claimable
    PENDING_EXPIRY  - wall clock says expired, but the chain has not been
                      observed past expiry and the skew grace has not elapsed
    EXPIRED         - chain observed past expiry, or wall clock is past
                      expiry + clock_skew_tolerance

Claims need ACTIVE. Refunds need EXPIRED and may only be made by the leg's
own owner.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Dict, Callable, Any

from .config import CoordinatorConfig
from .core import OfferStatus, Side
from .errors import InvalidTransition, ExpiryViolation
from .offer import Offer

log = logging.getLogger(__name__)


class LegWindow(Enum):
    NOT_LOCKED = "not_locked"
    ACTIVE = "active"
    PENDING_EXPIRY = "pending_expiry"
    EXPIRED = "expired"


class Action(Enum):
    LOCK = "lock"
    CLAIM = "claim"
    REFUND = "refund"
    EXPIRE = "expire"


@dataclass
class ChainClock:
    """Last observed time on one chain."""
    chain: str
    chain_time: int             # Block/ledger close time (unix seconds)
    height: Optional[int] = None
    observed_at: int = 0        # Wall time of the observation

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chain": self.chain,
            "chain_time": self.chain_time,
            "height": self.height,
            "observed_at": self.observed_at,
        }


@dataclass
class LegalActions:
    """Currently legal actions per party, plus deadlines and hints."""
    can_lock_taker: bool = False
    can_lock_creator: bool = False
    can_claim_creator: bool = False     # Creator claims taker leg (reveals secret)
    can_claim_taker: bool = False       # Taker claims creator leg
    can_refund_taker: bool = False      # Taker refunds own leg
    can_refund_creator: bool = False    # Creator refunds own leg
    can_expire: bool = False

    legs: Dict[str, str] = field(default_factory=dict)
    deadlines: Dict[str, int] = field(default_factory=dict)
    next_actions: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "can_lock_taker": self.can_lock_taker,
            "can_lock_creator": self.can_lock_creator,
            "can_claim_creator": self.can_claim_creator,
            "can_claim_taker": self.can_claim_taker,
            "can_refund_taker": self.can_refund_taker,
            "can_refund_creator": self.can_refund_creator,
            "can_expire": self.can_expire,
            "legs": dict(self.legs),
            "deadlines": dict(self.deadlines),
            "next_actions": dict(self.next_actions),
        }


class RaceResolver:
    """Computes legal action windows from offer state and chain clocks."""

    def __init__(self, config: CoordinatorConfig = None,
                 now_fn: Callable[[], float] = time.time):
        self.config = config or CoordinatorConfig()
        self.now_fn = now_fn
        self._clocks: Dict[str, ChainClock] = {}
        self._lock = threading.Lock()

    # -------------------------------------------------------------------------
    # Clocks
    # -------------------------------------------------------------------------

    def wall_now(self) -> int:
        return int(self.now_fn())

    def observe_clock(self, chain: str, chain_time: int,
                      height: Optional[int] = None) -> ChainClock:
        """Record a chain clock observation. Clocks never move backwards."""
        with self._lock:
            current = self._clocks.get(chain)
            if current and chain_time < current.chain_time:
                log.debug(f"Ignoring older {chain} clock {chain_time} < {current.chain_time}")
                return current
            clock = ChainClock(chain=chain, chain_time=int(chain_time),
                               height=height, observed_at=self.wall_now())
            self._clocks[chain] = clock
            return clock

    def clock(self, chain: str) -> Optional[ChainClock]:
        with self._lock:
            return self._clocks.get(chain)

    def clocks(self) -> Dict[str, ChainClock]:
        with self._lock:
            return dict(self._clocks)

    def effective_now(self, chain: Optional[str] = None) -> int:
        """Wall clock, or the chain's own clock if it has already moved further."""
        now = self.wall_now()
        clock = self.clock(chain) if chain else None
        if clock and clock.chain_time > now:
            return clock.chain_time
        return now

    # -------------------------------------------------------------------------
    # Leg windows
    # -------------------------------------------------------------------------

    def leg_window(self, offer: Offer, side: Side) -> LegWindow:
        if not offer.has_leg(side):
            return LegWindow.NOT_LOCKED
        leg = offer.leg(side)
        clock = self.clock(leg.chain)
        if clock and clock.chain_time >= leg.expires_at:
            return LegWindow.EXPIRED
        now = self.wall_now()
        if now >= leg.expires_at + self.config.clock_skew_tolerance:
            return LegWindow.EXPIRED
        if now >= leg.expires_at:
            return LegWindow.PENDING_EXPIRY
        return LegWindow.ACTIVE

    def _refundable(self, offer: Offer, side: Side) -> bool:
        if not offer.has_leg(side):
            return False
        leg = offer.leg(side)
        return (not leg.refunded
                and not offer.leg_claimed(side)
                and self.leg_window(offer, side) is LegWindow.EXPIRED)

    def _expirable(self, offer: Offer) -> bool:
        status = offer.status
        if status is OfferStatus.OPEN:
            return self.wall_now() >= offer.created_at + self.config.open_offer_ttl
        if status in (OfferStatus.TAKER_LOCKED, OfferStatus.BOTH_LOCKED):
            return self.leg_window(offer, Side.TAKER) is not LegWindow.ACTIVE
        return False

    # -------------------------------------------------------------------------
    # Legal action set
    # -------------------------------------------------------------------------

    def legal_actions(self, offer: Offer) -> LegalActions:
        status = offer.status
        taker_w = self.leg_window(offer, Side.TAKER)
        creator_w = self.leg_window(offer, Side.CREATOR)
        actions = LegalActions(legs={"taker": taker_w.value, "creator": creator_w.value})

        if status is OfferStatus.OPEN:
            actions.can_lock_taker = offer.has_taker
            actions.deadlines["open_until"] = offer.created_at + self.config.open_offer_ttl

        if offer.has_leg(Side.TAKER):
            taker_expiry = offer.taker_leg().expires_at
            creator_lock_by = taker_expiry - self.config.safety_margin
            if status is OfferStatus.TAKER_LOCKED:
                actions.deadlines["creator_lock_by"] = creator_lock_by
                actions.can_lock_creator = (taker_w is LegWindow.ACTIVE
                                            and self.effective_now(offer.chain_from) < creator_lock_by)
            actions.deadlines["creator_claim_by"] = taker_expiry
            actions.can_claim_creator = (status is OfferStatus.BOTH_LOCKED
                                         and taker_w is LegWindow.ACTIVE)

        if offer.has_leg(Side.CREATOR):
            actions.deadlines["taker_claim_by"] = offer.creator_leg().expires_at
            actions.can_claim_taker = (status is OfferStatus.CREATOR_CLAIMED
                                       and creator_w is LegWindow.ACTIVE)

        actions.can_refund_taker = self._refundable(offer, Side.TAKER)
        actions.can_refund_creator = self._refundable(offer, Side.CREATOR)
        actions.can_expire = self._expirable(offer)
        actions.next_actions = self._next_actions(offer, actions)
        return actions

    def _next_actions(self, offer: Offer, a: LegalActions) -> Dict[str, str]:
        status = offer.status
        creator = taker = "wait"

        if status is OfferStatus.OPEN:
            if a.can_expire:
                creator = taker = "offer is past its open window; call expire"
            elif not offer.has_taker:
                creator = "wait for a taker to accept"
                taker = "accept the offer with your addresses and a secret hash"
            else:
                creator = "wait for the taker to lock"
                taker = (f"lock {offer.amount_to} {offer.token_to} on {offer.chain_to} "
                         f"expiring at least {self.config.min_lock_window}s from now")
        elif status is OfferStatus.TAKER_LOCKED:
            if a.can_lock_creator:
                creator = (f"lock {offer.amount_from} {offer.token_from} on {offer.chain_from} "
                           f"expiring no later than {a.deadlines['creator_lock_by']}")
                taker = "wait for the creator to lock"
            else:
                creator = "too late to lock; do not lock"
                taker = "creator did not lock in time; call expire"
        elif status is OfferStatus.BOTH_LOCKED:
            if a.can_claim_creator:
                creator = (f"claim the taker leg on {offer.chain_to} with the secret "
                           f"before {a.deadlines['creator_claim_by']}")
                taker = "wait for the creator to reveal the secret"
            if a.can_expire:
                taker = "offer can be expired; call expire"
        elif status is OfferStatus.CREATOR_CLAIMED:
            creator = "done; wait for the taker to claim"
            if a.can_claim_taker:
                taker = (f"claim the creator leg on {offer.chain_from} with the revealed secret "
                         f"before {a.deadlines['taker_claim_by']}")
            else:
                taker = "creator leg is no longer claimable"
        elif status is OfferStatus.CLOSED:
            creator = taker = "none; swap complete"
        elif status is OfferStatus.EXPIRED:
            creator = taker = "none; offer expired"

        if a.can_refund_taker:
            taker = "your leg has already expired; call refund"
        elif offer.has_leg(Side.TAKER) and self._awaiting_refund(offer, Side.TAKER):
            taker = "your leg is expiring; wait for the chain to confirm, then call refund"
        if a.can_refund_creator:
            creator = "your leg has already expired; call refund"
        elif offer.has_leg(Side.CREATOR) and self._awaiting_refund(offer, Side.CREATOR):
            creator = "your leg is expiring; wait for the chain to confirm, then call refund"

        return {"creator": creator, "taker": taker}

    def _awaiting_refund(self, offer: Offer, side: Side) -> bool:
        return (not offer.leg(side).refunded
                and not offer.leg_claimed(side)
                and self.leg_window(offer, side) is LegWindow.PENDING_EXPIRY)

    # -------------------------------------------------------------------------
    # Intent checks
    # -------------------------------------------------------------------------

    def check(self, offer: Offer, action: Action, side: Side,
              party: Optional[Side] = None):
        """
        Raise the typed error explaining why an intent is illegal right now.

        Status-only problems are left to the state machine, which names the
        exact guard. This layer rejects what depends on clocks and ownership.
        """
        ctx = {"offer_id": offer.offer_id, "side": side.value}

        if action is Action.REFUND:
            if party is not None and party is not side:
                raise InvalidTransition(
                    f"only the {side.value} may refund the {side.value} leg", context=ctx)
            if not offer.has_leg(side):
                raise InvalidTransition(f"{side.value} leg is not locked", context=ctx)
            if offer.leg(side).refunded:
                return
            if offer.leg_claimed(side):
                raise InvalidTransition(
                    f"{side.value} leg was already claimed; nothing to refund", context=ctx)
            window = self.leg_window(offer, side)
            if window is LegWindow.PENDING_EXPIRY:
                raise ExpiryViolation(
                    f"{side.value} leg expiry not yet observed on {offer.leg_chain(side)}; "
                    f"retry after the chain passes {offer.leg(side).expires_at}", context=ctx)
            if window is LegWindow.ACTIVE:
                raise ExpiryViolation(
                    f"{side.value} leg is still claimable until {offer.leg(side).expires_at}; "
                    f"refund is not allowed yet", context=ctx)
            return

        if action is Action.CLAIM:
            claimed_leg = side.other
            if offer.has_leg(claimed_leg) and not offer.leg_claimed(claimed_leg):
                window = self.leg_window(offer, claimed_leg)
                if window is not LegWindow.ACTIVE:
                    raise ExpiryViolation(
                        f"{claimed_leg.value} leg expired at {offer.leg(claimed_leg).expires_at}; "
                        f"it can no longer be claimed", context=ctx)
            return

        if action is Action.LOCK and side is Side.CREATOR:
            if offer.status is OfferStatus.TAKER_LOCKED and \
                    self.leg_window(offer, Side.TAKER) is not LegWindow.ACTIVE:
                raise ExpiryViolation(
                    "taker leg has expired; the creator must not lock", context=ctx)
