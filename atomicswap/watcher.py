"""
Chain Watcher for atomicswap.

Monitors chains for:
- Chain clocks (fed to the race resolver)
- Leg claims (secret reveals) and refunds
- Offers whose expiry the resolver now allows

Runs as a background service. It only reports observations to the
coordinator; it never signs or broadcasts anything.
"""

import time
import logging
import threading
from typing import Callable, Optional
from dataclasses import dataclass

from .core import OfferStatus, Side, LockStatus
from .errors import GatewayError, StaleEvent
from .offer import Offer
from .coordinator import SwapCoordinator
from .chains.gateway import GatewayRegistry, ChainEvent

log = logging.getLogger(__name__)


@dataclass
class WatcherConfig:
    """Watcher configuration."""
    poll_interval: int = 10     # seconds
    auto_expire: bool = True    # Record expiries as soon as they are legal


class ChainWatcher:
    """
    Background service feeding chain observations into the coordinator.

    Events:
    - on_secret_revealed: creator claimed the taker leg, preimage is public
    - on_offer_expired: an offer was moved to EXPIRED
    """

    def __init__(self, coordinator: SwapCoordinator, gateways: GatewayRegistry,
                 config: WatcherConfig = None):
        self.coordinator = coordinator
        self.gateways = gateways
        self.config = config or WatcherConfig()

        # Callbacks
        self.on_secret_revealed: Optional[Callable[[Offer, str], None]] = None
        self.on_offer_expired: Optional[Callable[[Offer], None]] = None

        # State
        self._running = False
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._running

    def start(self):
        """Start watcher in background thread."""
        if self._running:
            return

        self._running = True
        self._thread = threading.Thread(target=self._watch_loop, daemon=True)
        self._thread.start()
        log.info("Chain watcher started")

    def stop(self):
        """Stop watcher."""
        self._running = False
        if self._thread:
            self._thread.join(timeout=5)
        log.info("Chain watcher stopped")

    def _watch_loop(self):
        """Main watch loop."""
        last_poll = 0.0

        while self._running:
            now = time.time()
            if now - last_poll >= self.config.poll_interval:
                try:
                    self.poll_once()
                except Exception as e:
                    log.error(f"Watcher error: {e}")
                last_poll = now
            time.sleep(1)

    def poll_once(self):
        """One full pass: clocks, then legs, then expiries."""
        self._check_clocks()
        for offer in self.coordinator.active_offers():
            self._check_legs(offer)
        if self.config.auto_expire:
            self._check_expirations()

    def _check_clocks(self):
        for chain in self.gateways.chains():
            try:
                chain_time, height = self.gateways.get(chain).chain_time()
            except GatewayError as e:
                log.warning(f"Clock unavailable for {chain}: {e}")
                continue
            self.coordinator.observe_clock(chain, chain_time, height)

    @staticmethod
    def _known_status(offer: Offer, side: Side) -> LockStatus:
        if offer.leg(side).refunded:
            return LockStatus.REFUNDED
        if offer.leg_claimed(side):
            return LockStatus.CLAIMED
        return LockStatus.LOCKED

    def _check_legs(self, offer: Offer):
        for side in Side:
            if not offer.has_leg(side):
                continue
            leg = offer.leg(side)
            try:
                event = self.gateways.get(leg.chain).observe(side, leg)
            except GatewayError as e:
                log.warning(f"Cannot observe {side.value} leg of {offer.offer_id}: {e}")
                continue

            # Only recorded legs are observed, so LOCKED is never news
            if event.status in (LockStatus.LOCKED, self._known_status(offer, side)):
                continue
            # Only the taker leg expiring ends the offer
            if event.status is LockStatus.EXPIRED and (side is not Side.TAKER or offer.status not in (
                    OfferStatus.TAKER_LOCKED, OfferStatus.BOTH_LOCKED)):
                continue
            self._apply(offer, event)

    def _apply(self, offer: Offer, event: ChainEvent):
        result = self.coordinator.observe_chain_event(offer.offer_id, event)
        if result.ok:
            log.info(f"Offer {offer.offer_id}: {event.side.value} leg {event.status.value} "
                     f"at sequence {event.sequence}")
            if event.status is LockStatus.CLAIMED and event.side is Side.TAKER:
                if self.on_secret_revealed:
                    self.on_secret_revealed(result.offer, result.offer.secret_preimage)
            if result.offer.status is OfferStatus.EXPIRED and offer.status is not OfferStatus.EXPIRED:
                if self.on_offer_expired:
                    self.on_offer_expired(result.offer)
        elif isinstance(result.error, StaleEvent):
            log.debug(f"Stale observation for {offer.offer_id}: {result.error}")
        else:
            log.warning(f"Observation rejected for {offer.offer_id}: {result.error}")

    def _check_expirations(self):
        """Expire offers the resolver says may be expired."""
        resolver = self.coordinator.resolver
        for offer in self.coordinator.active_offers():
            if offer.status.terminal or offer.status is OfferStatus.CREATOR_CLAIMED:
                continue
            if not resolver.legal_actions(offer).can_expire:
                continue

            result = self.coordinator.record_expiry(offer.offer_id, Side.TAKER)
            if result.ok:
                log.info(f"Offer {offer.offer_id} expired ({offer.status.value})")
                if self.on_offer_expired:
                    self.on_offer_expired(result.offer)
            else:
                log.warning(f"Could not expire {offer.offer_id}: {result.error}")
