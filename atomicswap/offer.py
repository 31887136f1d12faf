"""
Offer entity for atomicswap.

One Offer per swap negotiation. The creator gives `amount_from` of
`token_from` on `chain_from`; the taker gives `amount_to` of `token_to` on
`chain_to`. Each side locks its own funds in an HTLC ("leg"):

    taker leg   : chain_to,   amount_to,   pays creator's chain_to address
    creator leg : chain_from, amount_from, pays taker's chain_from address

Leg references and the revealed secret are only readable once the state
machine has reached a state that populates them.
"""

import copy
import time
from dataclasses import dataclass, field, replace
from decimal import Decimal, InvalidOperation
from typing import Optional, Dict, Any

from .core import OfferStatus, Side, is_valid_hashlock
from .errors import InvalidTerms, InvalidTransition


# States from which each leg reference is meaningful
LEG_STATES = {
    Side.TAKER: (
        OfferStatus.TAKER_LOCKED, OfferStatus.BOTH_LOCKED,
        OfferStatus.CREATOR_CLAIMED, OfferStatus.CLOSED, OfferStatus.EXPIRED,
    ),
    Side.CREATOR: (
        OfferStatus.BOTH_LOCKED, OfferStatus.CREATOR_CLAIMED,
        OfferStatus.CLOSED, OfferStatus.EXPIRED,
    ),
}

SECRET_STATES = (OfferStatus.CREATOR_CLAIMED, OfferStatus.CLOSED)


def to_decimal(value: Any, name: str) -> Decimal:
    """Parse an amount without going through binary floating point."""
    if isinstance(value, bool) or value is None:
        raise InvalidTerms(f"{name} must be a decimal number", context={"field": name})
    if isinstance(value, float):
        value = repr(value)
    try:
        amount = Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidTerms(f"{name} is not a decimal number: {value!r}", context={"field": name})
    if not amount.is_finite():
        raise InvalidTerms(f"{name} must be finite", context={"field": name})
    return amount


def _opt_decimal(value) -> Optional[Decimal]:
    return None if value is None else Decimal(str(value))


@dataclass
class HTLCRef:
    """On-chain reference to one locked HTLC leg."""
    chain: str
    address: str            # Contract address / HTLC id on that chain
    expires_at: int         # Unix timestamp the HTLC becomes refundable

    # Optional metadata, checked against the offer when present
    token: Optional[str] = None
    amount: Optional[Decimal] = None
    hashlock: Optional[str] = None
    recipient: Optional[str] = None
    tx_id: Optional[str] = None

    refunded: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chain": self.chain,
            "address": self.address,
            "expires_at": self.expires_at,
            "token": self.token,
            "amount": None if self.amount is None else str(self.amount),
            "hashlock": self.hashlock,
            "recipient": self.recipient,
            "tx_id": self.tx_id,
            "refunded": self.refunded,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HTLCRef":
        hashlock = data.get("hashlock")
        if hashlock is not None and not isinstance(hashlock, str):
            raise InvalidTerms(f"Malformed HTLC reference: hashlock must be a hex string, "
                               f"got {type(hashlock).__name__}")
        try:
            return cls(
                chain=str(data["chain"]),
                address=str(data["address"]),
                expires_at=int(data["expires_at"]),
                token=data.get("token"),
                amount=_opt_decimal(data.get("amount")),
                hashlock=hashlock,
                recipient=data.get("recipient"),
                tx_id=data.get("tx_id"),
                refunded=bool(data.get("refunded", False)),
            )
        except (KeyError, TypeError, ValueError, InvalidOperation) as e:
            raise InvalidTerms(f"Malformed HTLC reference: {e}")


@dataclass
class OfferTerms:
    """Validated input for creating an offer."""
    creator_addresses: Dict[str, str]
    amount_from: Decimal
    amount_to: Decimal
    token_from: str
    token_to: str
    chain_from: str
    chain_to: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OfferTerms":
        missing = [
            k for k in ("creator_addresses", "amount_from", "amount_to", "token_from",
                        "token_to", "chain_from", "chain_to")
            if data.get(k) in (None, "")
        ]
        if missing:
            raise InvalidTerms(f"Missing required fields: {', '.join(missing)}",
                               context={"missing": missing})
        terms = cls(
            creator_addresses=dict(data["creator_addresses"]),
            amount_from=to_decimal(data["amount_from"], "amount_from"),
            amount_to=to_decimal(data["amount_to"], "amount_to"),
            token_from=str(data["token_from"]),
            token_to=str(data["token_to"]),
            chain_from=str(data["chain_from"]),
            chain_to=str(data["chain_to"]),
        )
        terms.validate()
        return terms

    def validate(self):
        if self.amount_from <= 0:
            raise InvalidTerms("amount_from must be > 0", context={"amount_from": str(self.amount_from)})
        if self.amount_to <= 0:
            raise InvalidTerms("amount_to must be > 0", context={"amount_to": str(self.amount_to)})
        if self.chain_from == self.chain_to:
            raise InvalidTerms(f"chain_from and chain_to must differ (both {self.chain_from})")
        if not self.token_from or not self.token_to:
            raise InvalidTerms("token_from and token_to are required")
        require_addresses(self.creator_addresses, (self.chain_from, self.chain_to), "creator")


def require_addresses(addresses: Dict[str, str], chains, who: str):
    """A party must control an address on both chains."""
    if not isinstance(addresses, dict):
        raise InvalidTerms(f"{who} addresses must map chain -> address")
    missing = [c for c in chains if not addresses.get(c)]
    if missing:
        raise InvalidTerms(
            f"{who} must supply an address on every chain (missing: {', '.join(missing)})",
            context={"missing_chains": missing},
        )


@dataclass
class Offer:
    """A cross-chain swap offer."""
    offer_id: str
    creator_addresses: Dict[str, str]
    amount_from: Decimal
    amount_to: Decimal
    token_from: str
    token_to: str
    chain_from: str
    chain_to: str
    status: OfferStatus = OfferStatus.OPEN

    taker_addresses: Optional[Dict[str, str]] = None
    secret_hash: Optional[str] = None
    secret_preimage: Optional[str] = None
    taker_htlc: Optional[HTLCRef] = None
    creator_htlc: Optional[HTLCRef] = None

    created_at: int = field(default_factory=lambda: int(time.time()))
    updated_at: int = 0
    version: int = 0
    sequences: Dict[str, int] = field(default_factory=dict)
    idempotency_key: Optional[str] = None
    expired_side: Optional[Side] = None

    @classmethod
    def from_terms(cls, offer_id: str, terms: OfferTerms, now: int,
                   idempotency_key: Optional[str] = None) -> "Offer":
        return cls(
            offer_id=offer_id,
            creator_addresses=dict(terms.creator_addresses),
            amount_from=terms.amount_from,
            amount_to=terms.amount_to,
            token_from=terms.token_from,
            token_to=terms.token_to,
            chain_from=terms.chain_from,
            chain_to=terms.chain_to,
            created_at=now,
            updated_at=now,
            idempotency_key=idempotency_key,
        )

    # -------------------------------------------------------------------------
    # Parties and leg geometry
    # -------------------------------------------------------------------------

    @property
    def has_taker(self) -> bool:
        return bool(self.taker_addresses)

    def addresses(self, side: Side) -> Dict[str, str]:
        if side is Side.CREATOR:
            return self.creator_addresses
        return self.taker_addresses or {}

    def leg_chain(self, side: Side) -> str:
        return self.chain_to if side is Side.TAKER else self.chain_from

    def leg_token(self, side: Side) -> str:
        return self.token_to if side is Side.TAKER else self.token_from

    def leg_amount(self, side: Side) -> Decimal:
        return self.amount_to if side is Side.TAKER else self.amount_from

    def leg_recipient(self, side: Side) -> Optional[str]:
        """Address that may claim this side's leg (the counterparty's)."""
        return self.addresses(side.other).get(self.leg_chain(side))

    def leg_refund_address(self, side: Side) -> Optional[str]:
        return self.addresses(side).get(self.leg_chain(side))

    def expected_leg(self, side: Side) -> Dict[str, Any]:
        """Parameters a gateway needs to build this side's lock."""
        return {
            "side": side.value,
            "chain": self.leg_chain(side),
            "token": self.leg_token(side),
            "amount": str(self.leg_amount(side)),
            "hashlock": self.secret_hash,
            "recipient": self.leg_recipient(side),
            "refund_address": self.leg_refund_address(side),
        }

    # -------------------------------------------------------------------------
    # State-gated accessors
    # -------------------------------------------------------------------------

    def _raw_leg(self, side: Side) -> Optional[HTLCRef]:
        return self.taker_htlc if side is Side.TAKER else self.creator_htlc

    def has_leg(self, side: Side) -> bool:
        return self.status in LEG_STATES[side] and self._raw_leg(side) is not None

    def leg(self, side: Side) -> HTLCRef:
        htlc = self._raw_leg(side)
        if self.status not in LEG_STATES[side] or htlc is None:
            raise InvalidTransition(
                f"{side.value} leg is not locked in state {self.status.value}",
                context={"offer_id": self.offer_id, "status": self.status.value},
            )
        return htlc

    def taker_leg(self) -> HTLCRef:
        return self.leg(Side.TAKER)

    def creator_leg(self) -> HTLCRef:
        return self.leg(Side.CREATOR)

    def revealed_secret(self) -> str:
        if self.status not in SECRET_STATES or not self.secret_preimage:
            raise InvalidTransition(
                f"secret not revealed in state {self.status.value}",
                context={"offer_id": self.offer_id},
            )
        return self.secret_preimage

    def leg_claimed(self, side: Side) -> bool:
        """Whether this side's leg has been claimed by the counterparty."""
        if side is Side.TAKER:
            return self.status in SECRET_STATES
        return self.status is OfferStatus.CLOSED

    # -------------------------------------------------------------------------
    # Copy / persistence
    # -------------------------------------------------------------------------

    def evolve(self, **changes) -> "Offer":
        """Independent copy with changes applied; the original is untouched."""
        return replace(copy.deepcopy(self), **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "offer_id": self.offer_id,
            "status": self.status.value,
            "status_text": self.status.description,
            "creator_addresses": dict(self.creator_addresses),
            "taker_addresses": dict(self.taker_addresses) if self.taker_addresses else None,
            "amount_from": str(self.amount_from),
            "amount_to": str(self.amount_to),
            "token_from": self.token_from,
            "token_to": self.token_to,
            "chain_from": self.chain_from,
            "chain_to": self.chain_to,
            "secret_hash": self.secret_hash,
            "secret_preimage": self.secret_preimage,
            "taker_htlc": self.taker_htlc.to_dict() if self.taker_htlc else None,
            "creator_htlc": self.creator_htlc.to_dict() if self.creator_htlc else None,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "version": self.version,
            "sequences": dict(self.sequences),
            "idempotency_key": self.idempotency_key,
            "expired_side": self.expired_side.value if self.expired_side else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Offer":
        taker_htlc = data.get("taker_htlc")
        creator_htlc = data.get("creator_htlc")
        expired_side = data.get("expired_side")
        return cls(
            offer_id=data["offer_id"],
            status=OfferStatus(data["status"]),
            creator_addresses=dict(data["creator_addresses"]),
            taker_addresses=dict(data["taker_addresses"]) if data.get("taker_addresses") else None,
            amount_from=Decimal(data["amount_from"]),
            amount_to=Decimal(data["amount_to"]),
            token_from=data["token_from"],
            token_to=data["token_to"],
            chain_from=data["chain_from"],
            chain_to=data["chain_to"],
            secret_hash=data.get("secret_hash"),
            secret_preimage=data.get("secret_preimage"),
            taker_htlc=HTLCRef.from_dict(taker_htlc) if taker_htlc else None,
            creator_htlc=HTLCRef.from_dict(creator_htlc) if creator_htlc else None,
            created_at=int(data["created_at"]),
            updated_at=int(data.get("updated_at", 0)),
            version=int(data.get("version", 0)),
            sequences={k: int(v) for k, v in (data.get("sequences") or {}).items()},
            idempotency_key=data.get("idempotency_key"),
            expired_side=Side(expired_side) if expired_side else None,
        )


def check_secret_hash(secret_hash) -> str:
    if not is_valid_hashlock(secret_hash):
        raise InvalidTerms("secret_hash must be a 32-byte SHA256 digest (64 hex chars)")
    return secret_hash.lower()
