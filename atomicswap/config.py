"""
Coordinator configuration.
"""

import os
from dataclasses import dataclass

from .core import (
    SAFETY_MARGIN_SECONDS, MIN_LOCK_WINDOW_SECONDS, CLOCK_SKEW_TOLERANCE_SECONDS,
    OPEN_OFFER_TTL_SECONDS, DEFAULT_LOCK_SECONDS,
)


@dataclass
class CoordinatorConfig:
    """Timing policy shared by the state machine and the race resolver."""
    # Creator leg must expire at least this long before the taker leg
    safety_margin: int = SAFETY_MARGIN_SECONDS

    # Taker leg must be claimable for at least this long when recorded
    min_lock_window: int = MIN_LOCK_WINDOW_SECONDS

    # Grace before a wall-clock expiry is trusted without a chain observation
    clock_skew_tolerance: int = CLOCK_SKEW_TOLERANCE_SECONDS

    # Untaken/unlocked offers expire after this long
    open_offer_ttl: int = OPEN_OFFER_TTL_SECONDS

    # Suggested taker lock duration handed to gateways
    default_lock_seconds: int = DEFAULT_LOCK_SECONDS

    def __post_init__(self):
        if self.safety_margin <= 0:
            raise ValueError("safety_margin must be > 0")
        if self.default_lock_seconds - self.safety_margin < self.min_lock_window:
            raise ValueError(
                f"default_lock_seconds ({self.default_lock_seconds}s) leaves no room for "
                f"safety_margin ({self.safety_margin}s) + min_lock_window ({self.min_lock_window}s)"
            )

    @classmethod
    def from_env(cls) -> "CoordinatorConfig":
        """Build from SWAP_* environment variables, falling back to defaults."""
        def _int(name: str, default: int) -> int:
            return int(os.environ.get(name, default))

        return cls(
            safety_margin=_int("SWAP_SAFETY_MARGIN", SAFETY_MARGIN_SECONDS),
            min_lock_window=_int("SWAP_MIN_LOCK_WINDOW", MIN_LOCK_WINDOW_SECONDS),
            clock_skew_tolerance=_int("SWAP_CLOCK_SKEW", CLOCK_SKEW_TOLERANCE_SECONDS),
            open_offer_ttl=_int("SWAP_OPEN_OFFER_TTL", OPEN_OFFER_TTL_SECONDS),
            default_lock_seconds=_int("SWAP_DEFAULT_LOCK_SECONDS", DEFAULT_LOCK_SECONDS),
        )
