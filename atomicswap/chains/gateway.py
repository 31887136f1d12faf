"""
Chain Gateway interface.

A gateway is the coordinator's only view of a chain. It builds unsigned
HTLC transactions for the parties to sign, and reports what happened to a
leg on chain. The coordinator never broadcasts and never holds keys.
"""

import logging
import time
from dataclasses import dataclass
from typing import Optional, Dict, Any, Iterator, Tuple, List

from ..core import LockStatus, Side
from ..errors import GatewayError, InvalidTerms
from ..offer import Offer, HTLCRef

log = logging.getLogger(__name__)


@dataclass
class ChainEvent:
    """One observed on-chain outcome for a leg, ordered by its finality marker."""
    side: Side
    status: LockStatus
    sequence: int                       # Block height / ledger sequence
    htlc: Optional[HTLCRef] = None      # Required for LOCKED
    secret: Optional[str] = None        # Present for CLAIMED
    chain_time: Optional[int] = None    # Chain clock at `sequence`

    def to_dict(self) -> Dict[str, Any]:
        return {
            "side": self.side.value,
            "status": self.status.value,
            "sequence": self.sequence,
            "htlc": self.htlc.to_dict() if self.htlc else None,
            "secret": self.secret,
            "chain_time": self.chain_time,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChainEvent":
        secret = data.get("secret")
        if secret is not None and not isinstance(secret, str):
            raise InvalidTerms(f"Malformed chain event: secret must be a hex string, "
                               f"got {type(secret).__name__}")
        try:
            return cls(
                side=Side(data["side"]),
                status=LockStatus(data["status"]),
                sequence=int(data["sequence"]),
                htlc=HTLCRef.from_dict(data["htlc"]) if data.get("htlc") else None,
                secret=secret,
                chain_time=int(data["chain_time"]) if data.get("chain_time") is not None else None,
            )
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidTerms(f"Malformed chain event: {e}")


class ChainGateway:
    """
    Per-chain capability used by the coordinator and the watcher.

    Subclasses implement the transport; see `HttpChainGateway`.
    """

    chain: str = ""

    def build_lock(self, offer: Offer, side: Side, expires_at: int) -> Dict[str, Any]:
        """Unsigned transaction locking `side`'s leg of `offer`."""
        raise NotImplementedError

    def build_claim(self, htlc: HTLCRef, secret: str) -> Dict[str, Any]:
        raise NotImplementedError

    def build_refund(self, htlc: HTLCRef) -> Dict[str, Any]:
        raise NotImplementedError

    def observe(self, side: Side, htlc: HTLCRef) -> ChainEvent:
        """Current on-chain status of a leg."""
        raise NotImplementedError

    def chain_time(self) -> Tuple[int, Optional[int]]:
        """(latest block time, height)."""
        raise NotImplementedError

    def close(self):
        pass

    def watch(self, side: Side, htlc: HTLCRef,
              poll_interval: float = 5.0, timeout: float = 3600) -> Iterator[ChainEvent]:
        """
        Yield each status change of a leg until it is claimed or refunded.

        Blocking; use from a worker thread or the CLI.
        """
        start = time.time()
        last: Optional[LockStatus] = None
        while time.time() - start < timeout:
            event = self.observe(side, htlc)
            if event.status is not last:
                last = event.status
                yield event
                if event.status in (LockStatus.CLAIMED, LockStatus.REFUNDED):
                    return
            time.sleep(poll_interval)
        raise TimeoutError(f"{self.chain} leg {htlc.address} unresolved after {timeout}s")


class GatewayRegistry:
    """Chain gateways keyed by chain identifier."""

    def __init__(self, gateways: Optional[List[ChainGateway]] = None):
        self._gateways: Dict[str, ChainGateway] = {}
        for gateway in gateways or []:
            self.register(gateway)

    def register(self, gateway: ChainGateway):
        if not gateway.chain:
            raise ValueError("gateway has no chain identifier")
        self._gateways[gateway.chain] = gateway
        log.info(f"Chain gateway registered: {gateway.chain}")

    def get(self, chain: str) -> ChainGateway:
        gateway = self._gateways.get(chain)
        if gateway is None:
            raise GatewayError(f"no gateway registered for chain {chain}",
                               context={"chain": chain})
        return gateway

    def chains(self) -> List[str]:
        return sorted(self._gateways)

    def __contains__(self, chain: str) -> bool:
        return chain in self._gateways

    def __len__(self) -> int:
        return len(self._gateways)
