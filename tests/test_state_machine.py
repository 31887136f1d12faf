#!/usr/bin/env python3
"""
Offer state machine guards.

Each transition is checked against the canonical HTLC ordering:
taker lock -> creator lock -> creator claim -> taker claim.
"""

import os
import sys
import unittest
from dataclasses import replace
from decimal import Decimal

sys.path.insert(0, os.path.dirname(__file__))

from fixtures import T0, TERMS, TAKER_ADDRESSES, CREATOR_ADDRESSES, taker_htlc, creator_htlc
from atomicswap.config import CoordinatorConfig
from atomicswap.core import OfferStatus, Side, new_secret
from atomicswap.errors import (
    InvalidTerms, AlreadyTaken, InvalidTransition, HashMismatch, ExpiryViolation,
)
from atomicswap.machine import OfferStateMachine, TRANSITIONS
from atomicswap.offer import Offer, OfferTerms


def new_offer() -> Offer:
    return Offer.from_terms("offer_test", OfferTerms.from_dict(dict(TERMS)), T0)


class MachineTestCase(unittest.TestCase):

    def setUp(self):
        self.machine = OfferStateMachine(CoordinatorConfig())
        self.preimage, self.secret_hash = new_secret()
        self.offer = self.machine.accept(new_offer(), dict(TAKER_ADDRESSES), self.secret_hash, T0)

    def taker_locked(self):
        return self.machine.taker_lock(self.offer, taker_htlc(self.offer, T0 + 3600), T0)

    def both_locked(self):
        return self.machine.creator_lock(self.taker_locked(), creator_htlc(self.offer, T0 + 3480), T0)

    def creator_claimed(self):
        return self.machine.creator_claim(self.both_locked(), self.preimage, T0 + 10)


class TestAccept(MachineTestCase):

    def test_accept_keeps_open(self):
        self.assertIs(self.offer.status, OfferStatus.OPEN)
        self.assertEqual(self.offer.secret_hash, self.secret_hash)
        self.assertEqual(self.offer.taker_addresses, TAKER_ADDRESSES)

    def test_accept_does_not_modify_input(self):
        original = new_offer()
        self.machine.accept(original, dict(TAKER_ADDRESSES), self.secret_hash, T0)
        self.assertIsNone(original.taker_addresses)
        self.assertIsNone(original.secret_hash)

    def test_second_accept(self):
        with self.assertRaises(AlreadyTaken):
            self.machine.accept(self.offer, {"ton": "EQ_other", "stellar": "GC_OTHER"},
                                self.secret_hash, T0)

    def test_taker_cannot_be_creator(self):
        with self.assertRaises(InvalidTransition):
            self.machine.accept(new_offer(), dict(CREATOR_ADDRESSES), self.secret_hash, T0)

    def test_taker_needs_both_chains(self):
        with self.assertRaises(InvalidTerms):
            self.machine.accept(new_offer(), {"ton": "EQ_taker_ton"}, self.secret_hash, T0)

    def test_bad_secret_hash(self):
        with self.assertRaises(InvalidTerms):
            self.machine.accept(new_offer(), dict(TAKER_ADDRESSES), "nothex", T0)

    def test_secret_hash_lowercased(self):
        offer = self.machine.accept(new_offer(), dict(TAKER_ADDRESSES), self.secret_hash.upper(), T0)
        self.assertEqual(offer.secret_hash, self.secret_hash)


class TestLocks(MachineTestCase):

    def test_taker_lock(self):
        offer = self.taker_locked()
        self.assertIs(offer.status, OfferStatus.TAKER_LOCKED)
        self.assertEqual(offer.taker_leg().expires_at, T0 + 3600)

    def test_taker_lock_requires_taker(self):
        with self.assertRaises(InvalidTransition):
            self.machine.taker_lock(new_offer(), taker_htlc(self.offer, T0 + 3600), T0)

    def test_taker_lock_window_too_short(self):
        with self.assertRaises(ExpiryViolation):
            self.machine.taker_lock(self.offer, taker_htlc(self.offer, T0 + 299), T0)

    def test_taker_lock_wrong_chain(self):
        htlc = replace(taker_htlc(self.offer, T0 + 3600), chain="ton")
        with self.assertRaises(InvalidTransition):
            self.machine.taker_lock(self.offer, htlc, T0)

    def test_taker_lock_wrong_amount(self):
        htlc = replace(taker_htlc(self.offer, T0 + 3600), amount=Decimal("979.99"))
        with self.assertRaises(InvalidTransition):
            self.machine.taker_lock(self.offer, htlc, T0)

    def test_taker_lock_wrong_hashlock(self):
        htlc = replace(taker_htlc(self.offer, T0 + 3600), hashlock="00" * 32)
        with self.assertRaises(HashMismatch):
            self.machine.taker_lock(self.offer, htlc, T0)

    def test_taker_lock_wrong_recipient(self):
        htlc = replace(taker_htlc(self.offer, T0 + 3600), recipient=TAKER_ADDRESSES["stellar"])
        with self.assertRaises(InvalidTransition):
            self.machine.taker_lock(self.offer, htlc, T0)

    def test_creator_lock_before_taker(self):
        with self.assertRaises(InvalidTransition):
            self.machine.creator_lock(self.offer, creator_htlc(self.offer, T0 + 3480), T0)

    def test_creator_lock(self):
        offer = self.both_locked()
        self.assertIs(offer.status, OfferStatus.BOTH_LOCKED)
        self.assertEqual(offer.creator_leg().expires_at, T0 + 3480)

    def test_creator_lock_inside_safety_margin(self):
        with self.assertRaises(ExpiryViolation):
            self.machine.creator_lock(self.taker_locked(), creator_htlc(self.offer, T0 + 3481), T0)

    def test_creator_lock_already_expired(self):
        with self.assertRaises(ExpiryViolation):
            self.machine.creator_lock(self.taker_locked(), creator_htlc(self.offer, T0 + 100), T0 + 100)

    def test_legs_hidden_before_lock(self):
        with self.assertRaises(InvalidTransition):
            self.offer.taker_leg()
        with self.assertRaises(InvalidTransition):
            self.taker_locked().creator_leg()


class TestClaims(MachineTestCase):

    def test_creator_claim_reveals_secret(self):
        offer = self.creator_claimed()
        self.assertIs(offer.status, OfferStatus.CREATOR_CLAIMED)
        self.assertEqual(offer.revealed_secret(), self.preimage)

    def test_creator_claim_wrong_secret(self):
        offer = self.both_locked()
        with self.assertRaises(HashMismatch):
            self.machine.creator_claim(offer, "wrong-secret", T0 + 10)
        with self.assertRaises(HashMismatch):
            self.machine.creator_claim(offer, "00" * 32, T0 + 10)
        self.assertIsNone(offer.secret_preimage)
        self.assertIs(offer.status, OfferStatus.BOTH_LOCKED)

    def test_creator_claim_before_creator_lock(self):
        with self.assertRaises(InvalidTransition):
            self.machine.creator_claim(self.taker_locked(), self.preimage, T0 + 10)

    def test_creator_claim_after_taker_expiry(self):
        with self.assertRaises(ExpiryViolation):
            self.machine.creator_claim(self.both_locked(), self.preimage, T0 + 3600)

    def test_creator_claim_replay(self):
        offer = self.creator_claimed()
        self.assertIs(self.machine.creator_claim(offer, self.preimage, T0 + 20), offer)

    def test_revealed_secret_cannot_change(self):
        offer = self.creator_claimed()
        other, _ = new_secret()
        with self.assertRaises(InvalidTransition):
            self.machine.creator_claim(offer, other, T0 + 20)
        self.assertEqual(offer.secret_preimage, self.preimage)

    def test_taker_claim_before_reveal(self):
        with self.assertRaises(InvalidTransition):
            self.machine.taker_claim(self.both_locked(), T0 + 10)

    def test_taker_claim_closes(self):
        offer = self.machine.taker_claim(self.creator_claimed(), T0 + 20)
        self.assertIs(offer.status, OfferStatus.CLOSED)
        self.assertTrue(offer.leg_claimed(Side.CREATOR))

    def test_taker_claim_after_creator_expiry(self):
        with self.assertRaises(ExpiryViolation):
            self.machine.taker_claim(self.creator_claimed(), T0 + 3480)

    def test_taker_claim_with_different_secret(self):
        other, _ = new_secret()
        with self.assertRaises(HashMismatch):
            self.machine.taker_claim(self.creator_claimed(), T0 + 20, other)


class TestExpiryAndRefund(MachineTestCase):

    def test_open_offer_expires_after_ttl(self):
        with self.assertRaises(ExpiryViolation):
            self.machine.expire(self.offer, Side.TAKER, T0 + 86399)
        offer = self.machine.expire(self.offer, Side.TAKER, T0 + 86400)
        self.assertIs(offer.status, OfferStatus.EXPIRED)
        self.assertIsNone(offer.expired_side)

    def test_taker_locked_expires_at_taker_expiry(self):
        offer = self.taker_locked()
        with self.assertRaises(ExpiryViolation):
            self.machine.expire(offer, Side.TAKER, T0 + 3599)
        offer = self.machine.expire(offer, Side.CREATOR, T0 + 3600)
        self.assertIs(offer.status, OfferStatus.EXPIRED)
        self.assertIs(offer.expired_side, Side.TAKER)

    def test_both_locked_expires_with_taker_leg(self):
        offer = self.both_locked()
        with self.assertRaises(ExpiryViolation):
            self.machine.expire(offer, Side.CREATOR, T0 + 3490)
        offer = self.machine.expire(offer, Side.CREATOR, T0 + 3600)
        self.assertIs(offer.status, OfferStatus.EXPIRED)
        self.assertIs(offer.expired_side, Side.TAKER)

    def test_cannot_expire_after_claim(self):
        with self.assertRaises(InvalidTransition):
            self.machine.expire(self.creator_claimed(), Side.CREATOR, T0 + 5000)

    def test_expire_replay(self):
        offer = self.machine.expire(self.offer, Side.TAKER, T0 + 86400)
        self.assertIs(self.machine.expire(offer, Side.TAKER, T0 + 90000), offer)

    def test_refund_moves_both_locked_to_expired(self):
        offer = self.machine.refund(self.both_locked(), Side.CREATOR, T0 + 3480)
        self.assertIs(offer.status, OfferStatus.EXPIRED)
        self.assertTrue(offer.creator_leg().refunded)
        self.assertFalse(offer.taker_leg().refunded)

    def test_refund_too_early(self):
        with self.assertRaises(ExpiryViolation):
            self.machine.refund(self.both_locked(), Side.TAKER, T0 + 3599)

    def test_refund_claimed_leg(self):
        with self.assertRaises(InvalidTransition):
            self.machine.refund(self.creator_claimed(), Side.TAKER, T0 + 4000)

    def test_creator_refund_after_reveal_keeps_status(self):
        offer = self.machine.refund(self.creator_claimed(), Side.CREATOR, T0 + 3500)
        self.assertIs(offer.status, OfferStatus.CREATOR_CLAIMED)
        self.assertTrue(offer.creator_leg().refunded)


class TestTransitionGraph(unittest.TestCase):

    def test_terminal_states_have_no_exits(self):
        self.assertEqual(TRANSITIONS[OfferStatus.CLOSED], ())
        self.assertEqual(TRANSITIONS[OfferStatus.EXPIRED], ())

    def test_claimed_cannot_expire(self):
        self.assertNotIn(OfferStatus.EXPIRED, TRANSITIONS[OfferStatus.CREATOR_CLAIMED])


if __name__ == "__main__":
    unittest.main()
