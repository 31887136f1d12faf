"""
Offer endpoints.

Thin HTTP layer over SwapCoordinator. Rejections keep their error code in
the response body and map to a fixed HTTP status per error type.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, Field

from atomicswap.coordinator import SwapCoordinator, OfferResult

log = logging.getLogger(__name__)

router = APIRouter()

# ---------------------------------------------------------------------------
# Coordinator set by server.py at init
# ---------------------------------------------------------------------------

_coordinator: Optional[SwapCoordinator] = None


def configure(coordinator: SwapCoordinator):
    """Configure offer routes. Called once at startup by server.py."""
    global _coordinator
    _coordinator = coordinator


def _get_coordinator() -> SwapCoordinator:
    if _coordinator is None:
        raise HTTPException(503, "Coordinator not configured")
    return _coordinator


def _respond(result: OfferResult) -> Dict[str, Any]:
    if result.error is not None:
        raise HTTPException(result.error.http_status, detail=result.error.to_dict())
    return result.to_dict()


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class CreateOfferRequest(BaseModel):
    creator_addresses: Dict[str, str] = Field(..., description="chain -> creator address")
    amount_from: Decimal = Field(..., description="Amount the creator gives")
    amount_to: Decimal = Field(..., description="Amount the creator receives")
    token_from: str = Field(..., examples=["TON"])
    token_to: str = Field(..., examples=["XLM"])
    chain_from: str = Field(..., examples=["ton"])
    chain_to: str = Field(..., examples=["stellar"])
    idempotency_key: Optional[str] = None


class AcceptOfferRequest(BaseModel):
    taker_addresses: Dict[str, str] = Field(..., description="chain -> taker address")
    secret_hash: str = Field(..., description="SHA256 of the taker's preimage (64 hex chars)")


class HTLCModel(BaseModel):
    chain: str
    address: str
    expires_at: int = Field(..., description="Unix timestamp the HTLC becomes refundable")
    token: Optional[str] = None
    amount: Optional[Decimal] = None
    hashlock: Optional[str] = None
    recipient: Optional[str] = None
    tx_id: Optional[str] = None


class LockRequest(BaseModel):
    side: str = Field(..., examples=["taker"])
    htlc: HTLCModel


class ClaimRequest(BaseModel):
    side: str = Field(..., examples=["creator"])
    secret: Optional[str] = Field(None, description="Preimage (required for the creator claim)")


class RefundRequest(BaseModel):
    side: str
    party: Optional[str] = Field(None, description="Requesting party, if known")


class ExpireRequest(BaseModel):
    side: str = "taker"


class ChainEventRequest(BaseModel):
    side: str
    status: str = Field(..., examples=["claimed"])
    sequence: int = Field(..., description="Block height / ledger sequence")
    htlc: Optional[HTLCModel] = None
    secret: Optional[str] = None
    chain_time: Optional[int] = None


class ClockRequest(BaseModel):
    chain_time: int
    height: Optional[int] = None


class PrepareLockRequest(BaseModel):
    side: str
    expires_at: Optional[int] = None


class PrepareClaimRequest(BaseModel):
    side: str
    secret: Optional[str] = None


class PrepareRefundRequest(BaseModel):
    side: str


# ---------------------------------------------------------------------------
# Offers
# ---------------------------------------------------------------------------

@router.post("/api/offers")
def create_offer(req: CreateOfferRequest):
    """Create an OPEN offer. Replays with the same idempotency_key return the same offer."""
    terms = req.model_dump(exclude={"idempotency_key"})
    return _respond(_get_coordinator().create_offer(terms, idempotency_key=req.idempotency_key))


@router.get("/api/offers")
def list_offers(status: Optional[str] = Query(None)):
    """List offers, newest first."""
    return _respond(_get_coordinator().list_offers(status))


@router.get("/api/offers/{offer_id}")
def get_offer(offer_id: str):
    """Offer snapshot with the currently legal actions for both parties."""
    return _respond(_get_coordinator().query_offer(offer_id))


@router.put("/api/offers/{offer_id}/accept")
def accept_offer(offer_id: str, req: AcceptOfferRequest):
    return _respond(_get_coordinator().accept_offer(offer_id, req.taker_addresses, req.secret_hash))


@router.post("/api/offers/{offer_id}/lock")
def record_lock(offer_id: str, req: LockRequest):
    return _respond(_get_coordinator().record_lock(offer_id, req.side, req.htlc.model_dump()))


@router.post("/api/offers/{offer_id}/claim")
def record_claim(offer_id: str, req: ClaimRequest):
    return _respond(_get_coordinator().record_claim(offer_id, req.side, req.secret))


@router.post("/api/offers/{offer_id}/refund")
def record_refund(offer_id: str, req: RefundRequest):
    return _respond(_get_coordinator().record_refund(offer_id, req.side, req.party))


@router.post("/api/offers/{offer_id}/expire")
def record_expiry(offer_id: str, req: ExpireRequest):
    return _respond(_get_coordinator().record_expiry(offer_id, req.side))


@router.post("/api/offers/{offer_id}/events")
def observe_chain_event(offer_id: str, req: ChainEventRequest):
    """Apply an on-chain observation (normally fed by the watcher)."""
    return _respond(_get_coordinator().observe_chain_event(offer_id, req.model_dump()))


# ---------------------------------------------------------------------------
# Unsigned transaction preparation
# ---------------------------------------------------------------------------

@router.post("/api/offers/{offer_id}/prepare/lock")
def prepare_lock(offer_id: str, req: PrepareLockRequest):
    return _respond(_get_coordinator().prepare_lock(offer_id, req.side, req.expires_at))


@router.post("/api/offers/{offer_id}/prepare/claim")
def prepare_claim(offer_id: str, req: PrepareClaimRequest):
    return _respond(_get_coordinator().prepare_claim(offer_id, req.side, req.secret))


@router.post("/api/offers/{offer_id}/prepare/refund")
def prepare_refund(offer_id: str, req: PrepareRefundRequest):
    return _respond(_get_coordinator().prepare_refund(offer_id, req.side))


# ---------------------------------------------------------------------------
# Chain clocks
# ---------------------------------------------------------------------------

@router.get("/api/chains/clocks")
def get_clocks():
    clocks = _get_coordinator().resolver.clocks()
    return {"clocks": {chain: clock.to_dict() for chain, clock in clocks.items()}}


@router.post("/api/chains/{chain}/clock")
def observe_clock(chain: str, req: ClockRequest):
    clock = _get_coordinator().observe_clock(chain, req.chain_time, req.height)
    log.debug(f"Clock {chain}: {clock.chain_time} (height {clock.height})")
    return clock.to_dict()
