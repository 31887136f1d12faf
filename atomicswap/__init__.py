"""
atomicswap - Cross-Chain HTLC Swap Coordinator

Sequences two-party atomic swaps between account-based chains (TON-like,
Stellar/Soroban-like) using one shared SHA256 hashlock. The coordinator
never holds keys: parties sign and broadcast, the coordinator records,
checks timing and tells each side what it may do next.

Usage:
    from atomicswap import SwapCoordinator, JsonFileOfferStore, new_secret

    coordinator = SwapCoordinator(store=JsonFileOfferStore("~/.atomicswap/offers.json"))

    offer = coordinator.create_offer({
        "creator_addresses": {"ton": "EQ...", "stellar": "GA..."},
        "amount_from": "1000", "token_from": "TON", "chain_from": "ton",
        "amount_to": "980", "token_to": "XLM", "chain_to": "stellar",
    }).unwrap()

    preimage, secret_hash = new_secret()     # taker keeps the preimage
    coordinator.accept_offer(offer.offer_id, taker_addresses, secret_hash)
"""

from .core import (
    OfferStatus,
    Side,
    LockStatus,
    new_secret,
    hash_secret,
    verify_preimage,
    is_valid_hashlock,
)
from .errors import (
    ErrorCode,
    SwapError,
    InvalidTerms,
    NotFound,
    AlreadyTaken,
    InvalidTransition,
    HashMismatch,
    ExpiryViolation,
    StaleEvent,
    Conflict,
    StoreUnavailable,
    GatewayError,
)
from .config import CoordinatorConfig
from .offer import Offer, OfferTerms, HTLCRef
from .machine import OfferStateMachine
from .resolver import RaceResolver, LegalActions, LegWindow, ChainClock
from .store import OfferStore, MemoryOfferStore, JsonFileOfferStore
from .chains import ChainGateway, ChainEvent, GatewayRegistry, HttpChainGateway
from .coordinator import SwapCoordinator, OfferResult
from .watcher import ChainWatcher, WatcherConfig

__version__ = "0.1.0"
__all__ = [
    # Core types
    "OfferStatus",
    "Side",
    "LockStatus",
    # Secrets
    "new_secret",
    "hash_secret",
    "verify_preimage",
    "is_valid_hashlock",
    # Errors
    "ErrorCode",
    "SwapError",
    "InvalidTerms",
    "NotFound",
    "AlreadyTaken",
    "InvalidTransition",
    "HashMismatch",
    "ExpiryViolation",
    "StaleEvent",
    "Conflict",
    "StoreUnavailable",
    "GatewayError",
    # Offer
    "CoordinatorConfig",
    "Offer",
    "OfferTerms",
    "HTLCRef",
    "OfferStateMachine",
    "RaceResolver",
    "LegalActions",
    "LegWindow",
    "ChainClock",
    # Storage
    "OfferStore",
    "MemoryOfferStore",
    "JsonFileOfferStore",
    # Chains
    "ChainGateway",
    "ChainEvent",
    "GatewayRegistry",
    "HttpChainGateway",
    # Coordination
    "SwapCoordinator",
    "OfferResult",
    "ChainWatcher",
    "WatcherConfig",
]
