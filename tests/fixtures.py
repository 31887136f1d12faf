"""
Shared test fixtures: a controllable clock and a TON <-> Stellar offer.
"""

import os
import sys
from decimal import Decimal

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from atomicswap.coordinator import SwapCoordinator
from atomicswap.core import new_secret
from atomicswap.offer import HTLCRef

T0 = 1_700_000_000

CREATOR_ADDRESSES = {"ton": "EQ_creator_ton", "stellar": "GA_CREATOR_XLM"}
TAKER_ADDRESSES = {"ton": "EQ_taker_ton", "stellar": "GB_TAKER_XLM"}

TERMS = {
    "creator_addresses": CREATOR_ADDRESSES,
    "amount_from": "1000",
    "token_from": "TON",
    "chain_from": "ton",
    "amount_to": "980",
    "token_to": "XLM",
    "chain_to": "stellar",
}


class FakeClock:
    """Wall clock the test moves by hand."""

    def __init__(self, now: int = T0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: int):
        self.now += seconds


def taker_htlc(offer, expires_at, address="stellar_htlc_1"):
    """Taker leg: 980 XLM on stellar paying the creator."""
    return HTLCRef(
        chain="stellar",
        address=address,
        expires_at=expires_at,
        token="XLM",
        amount=Decimal("980"),
        hashlock=offer.secret_hash,
        recipient=CREATOR_ADDRESSES["stellar"],
        tx_id="xlm_tx_1",
    )


def creator_htlc(offer, expires_at, address="ton_htlc_1"):
    """Creator leg: 1000 TON on ton paying the taker."""
    return HTLCRef(
        chain="ton",
        address=address,
        expires_at=expires_at,
        token="TON",
        amount=Decimal("1000"),
        hashlock=offer.secret_hash,
        recipient=TAKER_ADDRESSES["ton"],
        tx_id="ton_tx_1",
    )


def make_coordinator(clock=None, **kwargs):
    clock = clock or FakeClock()
    return SwapCoordinator(now_fn=clock, **kwargs), clock


def accepted_offer(coordinator):
    """Create and accept an offer. Returns (offer, preimage)."""
    offer = coordinator.create_offer(dict(TERMS)).unwrap()
    preimage, secret_hash = new_secret()
    offer = coordinator.accept_offer(offer.offer_id, dict(TAKER_ADDRESSES), secret_hash).unwrap()
    return offer, preimage


def both_locked_offer(coordinator, clock):
    """Offer with taker leg at now+3600 and creator leg at now+3480."""
    offer, preimage = accepted_offer(coordinator)
    now = clock.now
    coordinator.record_lock(offer.offer_id, "taker", taker_htlc(offer, now + 3600)).unwrap()
    offer = coordinator.record_lock(offer.offer_id, "creator", creator_htlc(offer, now + 3480)).unwrap()
    return offer, preimage
