#!/usr/bin/env python3
"""
Race resolver: leg windows, chain clocks and legal action sets.
"""

import os
import sys
import unittest

sys.path.insert(0, os.path.dirname(__file__))

from fixtures import T0, FakeClock, make_coordinator, accepted_offer, both_locked_offer, taker_htlc
from atomicswap.core import OfferStatus, Side
from atomicswap.errors import InvalidTransition, ExpiryViolation
from atomicswap.resolver import LegWindow, Action


class TestClocks(unittest.TestCase):

    def setUp(self):
        self.coordinator, self.clock = make_coordinator()
        self.resolver = self.coordinator.resolver

    def test_clock_never_moves_backwards(self):
        self.resolver.observe_clock("ton", T0 + 50, 1000)
        clock = self.resolver.observe_clock("ton", T0 + 10, 990)
        self.assertEqual(clock.chain_time, T0 + 50)
        self.assertEqual(self.resolver.clock("ton").height, 1000)

    def test_effective_now_uses_later_clock(self):
        self.assertEqual(self.resolver.effective_now("ton"), T0)
        self.resolver.observe_clock("ton", T0 + 40)
        self.assertEqual(self.resolver.effective_now("ton"), T0 + 40)
        self.assertEqual(self.resolver.effective_now("stellar"), T0)

    def test_clocks_snapshot(self):
        self.resolver.observe_clock("ton", T0)
        self.resolver.observe_clock("stellar", T0 + 1)
        self.assertEqual(sorted(self.resolver.clocks()), ["stellar", "ton"])


class TestLegWindows(unittest.TestCase):

    def setUp(self):
        self.coordinator, self.clock = make_coordinator()
        self.resolver = self.coordinator.resolver
        self.offer, self.preimage = both_locked_offer(self.coordinator, self.clock)

    def test_active(self):
        self.assertIs(self.resolver.leg_window(self.offer, Side.CREATOR), LegWindow.ACTIVE)
        self.assertIs(self.resolver.leg_window(self.offer, Side.TAKER), LegWindow.ACTIVE)

    def test_not_locked(self):
        offer, _ = accepted_offer(self.coordinator)
        self.assertIs(self.resolver.leg_window(offer, Side.TAKER), LegWindow.NOT_LOCKED)

    def test_pending_expiry_on_wall_clock_only(self):
        self.clock.advance(3480)
        self.assertIs(self.resolver.leg_window(self.offer, Side.CREATOR), LegWindow.PENDING_EXPIRY)

    def test_expired_after_skew_tolerance(self):
        self.clock.advance(3480 + 30)
        self.assertIs(self.resolver.leg_window(self.offer, Side.CREATOR), LegWindow.EXPIRED)

    def test_expired_on_chain_clock(self):
        self.resolver.observe_clock("ton", T0 + 3480)
        self.assertIs(self.resolver.leg_window(self.offer, Side.CREATOR), LegWindow.EXPIRED)
        self.assertIs(self.resolver.leg_window(self.offer, Side.TAKER), LegWindow.ACTIVE)


class TestLegalActions(unittest.TestCase):

    def setUp(self):
        self.coordinator, self.clock = make_coordinator()
        self.resolver = self.coordinator.resolver

    def test_open_without_taker(self):
        offer = self.coordinator.create_offer({
            "creator_addresses": {"ton": "EQ_c", "stellar": "GA_C"},
            "amount_from": "1", "amount_to": "2", "token_from": "TON",
            "token_to": "XLM", "chain_from": "ton", "chain_to": "stellar",
        }).unwrap()
        actions = self.resolver.legal_actions(offer)
        self.assertFalse(actions.can_lock_taker)
        self.assertEqual(actions.deadlines["open_until"], T0 + 86400)
        self.assertIn("accept", actions.next_actions["taker"])

    def test_accepted(self):
        offer, _ = accepted_offer(self.coordinator)
        actions = self.resolver.legal_actions(offer)
        self.assertTrue(actions.can_lock_taker)
        self.assertFalse(actions.can_lock_creator)
        self.assertFalse(actions.can_expire)

    def test_taker_locked(self):
        offer, _ = accepted_offer(self.coordinator)
        offer = self.coordinator.record_lock(offer.offer_id, "taker", taker_htlc(offer, T0 + 3600)).unwrap()
        actions = self.resolver.legal_actions(offer)
        self.assertTrue(actions.can_lock_creator)
        self.assertEqual(actions.deadlines["creator_lock_by"], T0 + 3480)
        self.assertIn(str(T0 + 3480), actions.next_actions["creator"])

    def test_creator_too_late_to_lock(self):
        offer, _ = accepted_offer(self.coordinator)
        offer = self.coordinator.record_lock(offer.offer_id, "taker", taker_htlc(offer, T0 + 3600)).unwrap()
        self.clock.advance(3480)
        actions = self.resolver.legal_actions(offer)
        self.assertFalse(actions.can_lock_creator)
        self.assertEqual(actions.next_actions["creator"], "too late to lock; do not lock")

    def test_both_locked(self):
        offer, _ = both_locked_offer(self.coordinator, self.clock)
        actions = self.resolver.legal_actions(offer)
        self.assertTrue(actions.can_claim_creator)
        self.assertFalse(actions.can_claim_taker)
        self.assertFalse(actions.can_refund_creator)
        self.assertFalse(actions.can_refund_taker)
        self.assertEqual(actions.deadlines["creator_claim_by"], T0 + 3600)
        self.assertEqual(actions.deadlines["taker_claim_by"], T0 + 3480)

    def test_both_locked_past_creator_expiry(self):
        offer, _ = both_locked_offer(self.coordinator, self.clock)
        self.clock.advance(3490)
        self.resolver.observe_clock("ton", T0 + 3490)
        actions = self.resolver.legal_actions(offer)
        self.assertTrue(actions.can_claim_creator)
        self.assertFalse(actions.can_expire)

        self.clock.advance(110 + 30)
        self.assertTrue(self.resolver.legal_actions(offer).can_expire)

    def test_creator_claimed(self):
        offer, preimage = both_locked_offer(self.coordinator, self.clock)
        offer = self.coordinator.record_claim(offer.offer_id, "creator", preimage).unwrap()
        actions = self.resolver.legal_actions(offer)
        self.assertTrue(actions.can_claim_taker)
        self.assertFalse(actions.can_claim_creator)
        self.assertFalse(actions.can_expire)

    def test_expired_leg_refund_hint(self):
        offer, _ = accepted_offer(self.coordinator)
        offer = self.coordinator.record_lock(offer.offer_id, "taker", taker_htlc(offer, T0 + 3600)).unwrap()
        self.clock.advance(3600 + 30)
        offer = self.coordinator.record_expiry(offer.offer_id, "taker").unwrap()
        actions = self.resolver.legal_actions(offer)
        self.assertTrue(actions.can_refund_taker)
        self.assertEqual(actions.next_actions["taker"], "your leg has already expired; call refund")

    def test_to_dict(self):
        offer, _ = accepted_offer(self.coordinator)
        data = self.resolver.legal_actions(offer).to_dict()
        self.assertTrue(data["can_lock_taker"])
        self.assertEqual(data["legs"], {"taker": "not_locked", "creator": "not_locked"})


class TestIntentChecks(unittest.TestCase):

    def setUp(self):
        self.coordinator, self.clock = make_coordinator()
        self.resolver = self.coordinator.resolver
        self.offer, self.preimage = both_locked_offer(self.coordinator, self.clock)

    def test_refund_by_other_party(self):
        with self.assertRaises(InvalidTransition):
            self.resolver.check(self.offer, Action.REFUND, Side.TAKER, Side.CREATOR)

    def test_refund_while_active(self):
        with self.assertRaises(ExpiryViolation):
            self.resolver.check(self.offer, Action.REFUND, Side.CREATOR, Side.CREATOR)

    def test_refund_pending_expiry(self):
        self.clock.advance(3490)
        with self.assertRaises(ExpiryViolation) as ctx:
            self.resolver.check(self.offer, Action.REFUND, Side.CREATOR)
        self.assertIn("not yet observed", str(ctx.exception))

    def test_refund_after_chain_expiry(self):
        self.resolver.observe_clock("ton", T0 + 3480)
        self.resolver.check(self.offer, Action.REFUND, Side.CREATOR, Side.CREATOR)

    def test_claim_expired_leg(self):
        self.resolver.observe_clock("stellar", T0 + 3600)
        with self.assertRaises(ExpiryViolation):
            self.resolver.check(self.offer, Action.CLAIM, Side.CREATOR)


if __name__ == "__main__":
    unittest.main()
