"""
Core types and secret utilities for atomicswap.
"""

import hashlib
import secrets
from enum import Enum


class OfferStatus(Enum):
    """Offer lifecycle states."""
    OPEN = "open"                       # Waiting for a taker / taker lock
    TAKER_LOCKED = "taker_locked"       # Taker HTLC locked on chain_to
    BOTH_LOCKED = "both_locked"         # Creator HTLC locked on chain_from
    CREATOR_CLAIMED = "creator_claimed" # Creator claimed taker leg, secret public
    CLOSED = "closed"                   # Taker claimed creator leg
    EXPIRED = "expired"                 # Timed out, locked legs refundable

    @property
    def terminal(self) -> bool:
        return self in (OfferStatus.CLOSED, OfferStatus.EXPIRED)

    @property
    def description(self) -> str:
        return STATUS_DESCRIPTIONS[self]


STATUS_DESCRIPTIONS = {
    OfferStatus.OPEN: "Open - ready to be accepted",
    OfferStatus.TAKER_LOCKED: "Pending - taker HTLC locked, creator must lock theirs",
    OfferStatus.BOTH_LOCKED: "Pending - both HTLCs locked, ready for claiming",
    OfferStatus.CREATOR_CLAIMED: "Claimed by creator - taker can now claim",
    OfferStatus.CLOSED: "Closed - claimed by taker, swap complete",
    OfferStatus.EXPIRED: "Expired - locked funds can be refunded",
}


class Side(Enum):
    """Which party's HTLC leg (or which party) an intent refers to."""
    CREATOR = "creator"
    TAKER = "taker"

    @property
    def other(self) -> "Side":
        return Side.TAKER if self is Side.CREATOR else Side.CREATOR


class LockStatus(Enum):
    """On-chain status of one HTLC leg as reported by a chain gateway."""
    LOCKED = "locked"
    CLAIMED = "claimed"
    REFUNDED = "refunded"
    EXPIRED = "expired"


# =============================================================================
# Secret Utilities
# =============================================================================

SECRET_BYTES = 32   # 256-bit preimage
HASH_HEX_LEN = 64   # SHA256 digest, hex


def new_secret() -> tuple[str, str]:
    """
    Generate a random secret and its SHA256 hashlock.

    Returns:
        (preimage_hex, hashlock_hex)
    """
    preimage = secrets.token_bytes(SECRET_BYTES)
    return preimage.hex(), hashlib.sha256(preimage).hexdigest()


def hash_secret(preimage_hex: str) -> str:
    """SHA256 of a hex preimage, as lowercase hex. Raises ValueError on bad hex."""
    return hashlib.sha256(bytes.fromhex(preimage_hex)).hexdigest()


def verify_preimage(preimage_hex: str, hashlock_hex: str) -> bool:
    """
    Verify that SHA256(preimage) == hashlock.

    Never raises: malformed input simply does not verify.
    """
    try:
        preimage = bytes.fromhex(preimage_hex)
        expected = bytes.fromhex(hashlock_hex)
    except (ValueError, TypeError, AttributeError):
        return False
    if len(expected) != 32:
        return False
    return hashlib.sha256(preimage).digest() == expected


def is_valid_hashlock(hashlock_hex) -> bool:
    """True if the value is a 32-byte digest in hex."""
    if not isinstance(hashlock_hex, str) or len(hashlock_hex) != HASH_HEX_LEN:
        return False
    try:
        bytes.fromhex(hashlock_hex)
    except ValueError:
        return False
    return True


# =============================================================================
# Constants
# =============================================================================

# Gap between leg expiries: creator leg must expire this much before the taker leg
SAFETY_MARGIN_SECONDS = 120

# Taker leg must stay claimable at least this long after it is recorded
MIN_LOCK_WINDOW_SECONDS = 300

# Wall clock vs chain clock disagreement tolerated before declaring expiry
CLOCK_SKEW_TOLERANCE_SECONDS = 30

# Open offers without a taker lock expire after this long
OPEN_OFFER_TTL_SECONDS = 86400

# Suggested taker HTLC duration (creator leg = this - SAFETY_MARGIN_SECONDS)
DEFAULT_LOCK_SECONDS = 3600
