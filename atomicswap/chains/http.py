"""
HTTP Chain Gateway.

Talks JSON to a per-chain gateway service that wraps the chain's RPC and
HTLC contract (TON wallet/contract wrapper, Soroban client, ...):

    POST /htlc/lock      {offer leg params, expires_at}  -> {"tx": ...}
    POST /htlc/claim     {"htlc": ..., "secret": ...}    -> {"tx": ...}
    POST /htlc/refund    {"htlc": ...}                   -> {"tx": ...}
    GET  /htlc/{address}                                 -> {"status", "sequence", "secret", "chain_time"}
    GET  /clock                                          -> {"chain_time", "height"}
"""

import logging
from typing import Optional, Dict, Any, Tuple

import httpx

from ..core import LockStatus, Side
from ..errors import GatewayError
from ..offer import Offer, HTLCRef
from .gateway import ChainGateway, ChainEvent

log = logging.getLogger(__name__)


class HttpChainGateway(ChainGateway):
    """Chain gateway backed by a remote JSON service."""

    def __init__(self, chain: str, base_url: str, timeout: float = 10.0,
                 client: Optional[httpx.Client] = None):
        self.chain = chain
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.Client(base_url=self.base_url, timeout=timeout)

    def close(self):
        if not self._client.is_closed:
            self._client.close()

    def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            response = self._client.request(method, path, json=payload)
            response.raise_for_status()
            return response.json()
        except httpx.TimeoutException as e:
            log.error(f"{self.chain} gateway timeout on {path}: {e}")
            raise GatewayError(f"{self.chain} gateway timed out", context={"path": path})
        except httpx.HTTPStatusError as e:
            log.error(f"{self.chain} gateway error on {path}: {e.response.status_code}")
            raise GatewayError(
                f"{self.chain} gateway returned {e.response.status_code}",
                context={"path": path, "status": e.response.status_code},
            )
        except (httpx.RequestError, ValueError) as e:
            log.error(f"{self.chain} gateway request failed on {path}: {e}")
            raise GatewayError(f"{self.chain} gateway unreachable: {e}", context={"path": path})

    def build_lock(self, offer: Offer, side: Side, expires_at: int) -> Dict[str, Any]:
        payload = dict(offer.expected_leg(side))
        payload["offer_id"] = offer.offer_id
        payload["expires_at"] = expires_at
        return self._request("POST", "/htlc/lock", payload)

    def build_claim(self, htlc: HTLCRef, secret: str) -> Dict[str, Any]:
        return self._request("POST", "/htlc/claim", {"htlc": htlc.to_dict(), "secret": secret})

    def build_refund(self, htlc: HTLCRef) -> Dict[str, Any]:
        return self._request("POST", "/htlc/refund", {"htlc": htlc.to_dict()})

    def observe(self, side: Side, htlc: HTLCRef) -> ChainEvent:
        data = self._request("GET", f"/htlc/{htlc.address}")
        secret = data.get("secret")
        if secret is not None and not isinstance(secret, str):
            raise GatewayError(f"{self.chain} gateway sent a non-string secret")
        try:
            return ChainEvent(
                side=side,
                status=LockStatus(data["status"]),
                sequence=int(data["sequence"]),
                htlc=htlc,
                secret=secret,
                chain_time=int(data["chain_time"]) if data.get("chain_time") is not None else None,
            )
        except (KeyError, TypeError, ValueError) as e:
            raise GatewayError(f"{self.chain} gateway sent malformed status: {e}")

    def chain_time(self) -> Tuple[int, Optional[int]]:
        data = self._request("GET", "/clock")
        try:
            height = data.get("height")
            return int(data["chain_time"]), int(height) if height is not None else None
        except (KeyError, TypeError, ValueError) as e:
            raise GatewayError(f"{self.chain} gateway sent malformed clock: {e}")
