"""
Offer State Machine for atomicswap.

Canonical HTLC ordering, never reordered:

    OPEN --accept--> OPEN (taker + hashlock recorded)
    OPEN --taker_lock--> TAKER_LOCKED
    TAKER_LOCKED --creator_lock--> BOTH_LOCKED
    BOTH_LOCKED --creator_claim(secret)--> CREATOR_CLAIMED
    CREATOR_CLAIMED --taker_claim--> CLOSED

    OPEN / TAKER_LOCKED / BOTH_LOCKED --expire--> EXPIRED

The creator claims the taker leg first; that claim publishes the preimage on
chain_to, after which the taker can claim the creator leg on chain_from.

Every method evaluates all guards before building the next Offer, and returns
a new Offer (the input is never modified). Replaying an already-applied
claim/expiry/refund returns the input object itself so callers can skip the
write.
"""

import logging
from dataclasses import replace
from typing import Optional, Dict

from .config import CoordinatorConfig
from .core import OfferStatus, Side, verify_preimage
from .errors import (
    InvalidTerms, AlreadyTaken, InvalidTransition, HashMismatch, ExpiryViolation,
)
from .offer import Offer, HTLCRef, require_addresses, check_secret_hash

log = logging.getLogger(__name__)


TRANSITIONS = {
    OfferStatus.OPEN: (OfferStatus.TAKER_LOCKED, OfferStatus.EXPIRED),
    OfferStatus.TAKER_LOCKED: (OfferStatus.BOTH_LOCKED, OfferStatus.EXPIRED),
    OfferStatus.BOTH_LOCKED: (OfferStatus.CREATOR_CLAIMED, OfferStatus.EXPIRED),
    OfferStatus.CREATOR_CLAIMED: (OfferStatus.CLOSED,),
    OfferStatus.CLOSED: (),
    OfferStatus.EXPIRED: (),
}


class OfferStateMachine:
    """Transition guards and application for a single Offer."""

    def __init__(self, config: CoordinatorConfig = None):
        self.config = config or CoordinatorConfig()

    def _advance(self, offer: Offer, to: OfferStatus, now: int, **changes) -> Offer:
        if to is not offer.status and to not in TRANSITIONS[offer.status]:
            raise InvalidTransition(
                f"cannot move from {offer.status.value} to {to.value}",
                context={"offer_id": offer.offer_id},
            )
        return offer.evolve(status=to, updated_at=now, **changes)

    def _reject_state(self, offer: Offer, action: str, expected: OfferStatus):
        raise InvalidTransition(
            f"{action} requires status {expected.value}, offer is {offer.status.value}",
            context={"offer_id": offer.offer_id, "status": offer.status.value},
        )

    def _check_leg(self, offer: Offer, side: Side, htlc: HTLCRef):
        """Leg metadata must match the offer's shared terms."""
        if not htlc.address:
            raise InvalidTerms(f"{side.value} HTLC reference has no address")
        chain = offer.leg_chain(side)
        if htlc.chain != chain:
            raise InvalidTransition(
                f"{side.value} leg must be locked on {chain}, got {htlc.chain}",
                context={"offer_id": offer.offer_id},
            )
        token = offer.leg_token(side)
        if htlc.token is not None and htlc.token != token:
            raise InvalidTransition(
                f"{side.value} leg must lock token {token}, got {htlc.token}",
                context={"offer_id": offer.offer_id},
            )
        amount = offer.leg_amount(side)
        if htlc.amount is not None and htlc.amount != amount:
            raise InvalidTransition(
                f"{side.value} leg must lock {amount} {token}, got {htlc.amount}",
                context={"offer_id": offer.offer_id},
            )
        if htlc.hashlock is not None and htlc.hashlock.lower() != offer.secret_hash:
            raise HashMismatch(
                f"{side.value} leg hashlock does not match the offer secret_hash",
                context={"offer_id": offer.offer_id},
            )
        recipient = offer.leg_recipient(side)
        if htlc.recipient is not None and htlc.recipient != recipient:
            raise InvalidTransition(
                f"{side.value} leg must pay {recipient}, got {htlc.recipient}",
                context={"offer_id": offer.offer_id},
            )

    # =========================================================================
    # Transitions
    # =========================================================================

    def accept(self, offer: Offer, taker_addresses: Dict[str, str],
               secret_hash: str, now: int) -> Offer:
        """Record the taker and the hashlock they chose. Status stays OPEN."""
        if offer.has_taker:
            raise AlreadyTaken(
                f"offer {offer.offer_id} already has a taker",
                context={"offer_id": offer.offer_id},
            )
        if offer.status is not OfferStatus.OPEN:
            self._reject_state(offer, "accept", OfferStatus.OPEN)

        require_addresses(taker_addresses, (offer.chain_from, offer.chain_to), "taker")
        for chain, address in offer.creator_addresses.items():
            if taker_addresses.get(chain) == address:
                raise InvalidTransition(
                    f"taker cannot be the offer creator (same {chain} address)",
                    context={"offer_id": offer.offer_id},
                )
        secret_hash = check_secret_hash(secret_hash)

        return offer.evolve(
            taker_addresses=dict(taker_addresses),
            secret_hash=secret_hash,
            updated_at=now,
        )

    def taker_lock(self, offer: Offer, htlc: HTLCRef, now: int) -> Offer:
        if offer.status is not OfferStatus.OPEN:
            self._reject_state(offer, "taker lock", OfferStatus.OPEN)
        if not offer.has_taker:
            raise InvalidTransition(
                "offer has no taker yet; accept it before locking",
                context={"offer_id": offer.offer_id},
            )
        self._check_leg(offer, Side.TAKER, htlc)

        earliest = now + self.config.min_lock_window
        if htlc.expires_at < earliest:
            raise ExpiryViolation(
                f"taker leg expires at {htlc.expires_at}, must be >= {earliest} "
                f"(now + {self.config.min_lock_window}s)",
                context={"offer_id": offer.offer_id, "expires_at": htlc.expires_at},
            )
        return self._advance(offer, OfferStatus.TAKER_LOCKED, now,
                             taker_htlc=replace(htlc, refunded=False))

    def creator_lock(self, offer: Offer, htlc: HTLCRef, now: int) -> Offer:
        if offer.status is not OfferStatus.TAKER_LOCKED:
            self._reject_state(offer, "creator lock", OfferStatus.TAKER_LOCKED)
        self._check_leg(offer, Side.CREATOR, htlc)

        latest = offer.taker_leg().expires_at - self.config.safety_margin
        if htlc.expires_at > latest:
            raise ExpiryViolation(
                f"creator leg expires at {htlc.expires_at}, must be <= {latest} "
                f"(taker leg expiry - {self.config.safety_margin}s)",
                context={"offer_id": offer.offer_id, "expires_at": htlc.expires_at},
            )
        if htlc.expires_at <= now:
            raise ExpiryViolation(
                f"creator leg already expired at {htlc.expires_at}",
                context={"offer_id": offer.offer_id, "expires_at": htlc.expires_at},
            )
        return self._advance(offer, OfferStatus.BOTH_LOCKED, now,
                             creator_htlc=replace(htlc, refunded=False))

    def creator_claim(self, offer: Offer, preimage: str, now: int) -> Offer:
        """Creator claims the taker leg, revealing the preimage."""
        if offer.status in (OfferStatus.CREATOR_CLAIMED, OfferStatus.CLOSED):
            if isinstance(preimage, str) and preimage.lower() == offer.secret_preimage:
                return offer
            raise InvalidTransition(
                "secret already revealed; the recorded preimage cannot be replaced",
                context={"offer_id": offer.offer_id},
            )
        if offer.status is not OfferStatus.BOTH_LOCKED:
            self._reject_state(offer, "creator claim", OfferStatus.BOTH_LOCKED)
        if not verify_preimage(preimage, offer.secret_hash):
            raise HashMismatch(
                "secret does not hash to the offer secret_hash",
                context={"offer_id": offer.offer_id},
            )
        taker_expiry = offer.taker_leg().expires_at
        if now >= taker_expiry:
            raise ExpiryViolation(
                f"taker leg expired at {taker_expiry}; it can no longer be claimed",
                context={"offer_id": offer.offer_id},
            )
        return self._advance(offer, OfferStatus.CREATOR_CLAIMED, now,
                             secret_preimage=preimage.lower())

    def taker_claim(self, offer: Offer, now: int, preimage: Optional[str] = None) -> Offer:
        """Taker claims the creator leg with the already-revealed preimage."""
        if preimage is not None and offer.secret_preimage and \
                preimage.lower() != offer.secret_preimage:
            raise HashMismatch(
                "supplied secret differs from the revealed preimage",
                context={"offer_id": offer.offer_id},
            )
        if offer.status is OfferStatus.CLOSED:
            return offer
        if offer.status is not OfferStatus.CREATOR_CLAIMED:
            raise InvalidTransition(
                f"taker can only claim after the creator revealed the secret "
                f"(offer is {offer.status.value})",
                context={"offer_id": offer.offer_id, "status": offer.status.value},
            )
        offer.revealed_secret()
        creator_expiry = offer.creator_leg().expires_at
        if now >= creator_expiry:
            raise ExpiryViolation(
                f"creator leg expired at {creator_expiry}; it can no longer be claimed",
                context={"offer_id": offer.offer_id},
            )
        return self._advance(offer, OfferStatus.CLOSED, now)

    def expiry_deadline(self, offer: Offer) -> int:
        """Time after which `expire()` is allowed for the offer's current state."""
        if offer.status is OfferStatus.OPEN:
            return offer.created_at + self.config.open_offer_ttl
        # The taker leg is claimed first and expires last, so once it has
        # expired neither claim is possible any more
        return offer.taker_leg().expires_at

    def relevant_side(self, offer: Offer) -> Optional[Side]:
        """The leg whose expiry decides `expire()`, None for an open offer."""
        if offer.status is OfferStatus.OPEN:
            return None
        return Side.TAKER

    def expire(self, offer: Offer, side: Side, now: int) -> Offer:
        if offer.status is OfferStatus.EXPIRED:
            return offer
        if offer.status in (OfferStatus.CREATOR_CLAIMED, OfferStatus.CLOSED):
            raise InvalidTransition(
                f"cannot expire: a claim already occurred (offer is {offer.status.value})",
                context={"offer_id": offer.offer_id},
            )
        deadline = self.expiry_deadline(offer)
        if now < deadline:
            raise ExpiryViolation(
                f"offer does not expire until {deadline} (now {now})",
                context={"offer_id": offer.offer_id, "deadline": deadline},
            )
        return self._advance(offer, OfferStatus.EXPIRED, now,
                             expired_side=self.relevant_side(offer))

    def refund(self, offer: Offer, side: Side, now: int) -> Offer:
        """Record that a leg's owner refunded it after expiry."""
        leg = offer.leg(side)
        if leg.refunded:
            return offer
        if offer.leg_claimed(side):
            raise InvalidTransition(
                f"{side.value} leg was already claimed; nothing to refund",
                context={"offer_id": offer.offer_id},
            )
        if now < leg.expires_at:
            raise ExpiryViolation(
                f"{side.value} leg is refundable only after {leg.expires_at} (now {now})",
                context={"offer_id": offer.offer_id, "expires_at": leg.expires_at},
            )
        refunded = {
            "taker_htlc" if side is Side.TAKER else "creator_htlc": replace(leg, refunded=True),
        }
        if offer.status in (OfferStatus.TAKER_LOCKED, OfferStatus.BOTH_LOCKED):
            return self._advance(offer, OfferStatus.EXPIRED, now, expired_side=side, **refunded)
        return offer.evolve(updated_at=now, **refunded)
