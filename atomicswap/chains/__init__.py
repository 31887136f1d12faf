"""
Chain gateways for atomicswap.

Each gateway gives the coordinator a uniform view of one chain:
- building unsigned lock / claim / refund transactions
- reporting a leg's on-chain status with its finality marker
- reporting the chain clock
"""

from .gateway import ChainGateway, ChainEvent, GatewayRegistry
from .http import HttpChainGateway

__all__ = ["ChainGateway", "ChainEvent", "GatewayRegistry", "HttpChainGateway"]
