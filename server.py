#!/usr/bin/env python3
"""
atomicswap Coordinator Server
Cross-chain HTLC swap coordination between account-based chains.

The coordinator never holds keys: parties sign and broadcast their own HTLC
transactions, the coordinator records them, enforces ordering and timing,
and tells each side what it may do next.

Endpoints:
  GET  /api/status                        - Health check
  POST /api/offers                        - Create offer
  GET  /api/offers                        - List offers (?status=)
  GET  /api/offers/{id}                   - Offer + legal actions
  PUT  /api/offers/{id}/accept            - Taker accepts
  POST /api/offers/{id}/lock              - Record HTLC lock
  POST /api/offers/{id}/claim             - Record claim
  POST /api/offers/{id}/refund            - Record refund
  POST /api/offers/{id}/expire            - Expire offer
  POST /api/offers/{id}/events            - Apply chain observation
  POST /api/offers/{id}/prepare/{action}  - Unsigned lock/claim/refund tx
  GET  /api/chains/clocks                 - Last observed chain clocks
  POST /api/chains/{chain}/clock          - Record chain clock

Environment:
  SWAP_OFFER_DB     offer database file (default ~/.atomicswap/offers.json)
  SWAP_GATEWAYS     chain gateways, "ton=http://host:9001,stellar=http://host:9002"
  SWAP_POLL_INTERVAL watcher poll interval in seconds (default 10)
  SWAP_*            timing policy, see CoordinatorConfig.from_env
  PORT              listen port (default 8080)
"""

import os
import time
import logging
from collections import Counter

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from atomicswap import __version__
from atomicswap.config import CoordinatorConfig
from atomicswap.coordinator import SwapCoordinator
from atomicswap.store import JsonFileOfferStore
from atomicswap.chains import GatewayRegistry, HttpChainGateway
from atomicswap.watcher import ChainWatcher, WatcherConfig
from routes import offers as offer_routes

# =============================================================================
# LOGGING
# =============================================================================

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s'
)
log = logging.getLogger(__name__)

# =============================================================================
# CONFIGURATION
# =============================================================================

OFFER_DB = os.environ.get("SWAP_OFFER_DB", "~/.atomicswap/offers.json")
POLL_INTERVAL = int(os.environ.get("SWAP_POLL_INTERVAL", 10))


def parse_gateways(value: str) -> GatewayRegistry:
    """'ton=http://a:9001,stellar=http://b:9002' -> registry of HTTP gateways."""
    registry = GatewayRegistry()
    for item in filter(None, (part.strip() for part in value.split(","))):
        chain, sep, url = item.partition("=")
        if not sep or not chain or not url:
            raise ValueError(f"SWAP_GATEWAYS entry must be CHAIN=URL, got {item!r}")
        registry.register(HttpChainGateway(chain.strip(), url.strip()))
    return registry


GATEWAYS = parse_gateways(os.environ.get("SWAP_GATEWAYS", ""))

coordinator = SwapCoordinator(
    store=JsonFileOfferStore(OFFER_DB),
    gateways=GATEWAYS if len(GATEWAYS) else None,
    config=CoordinatorConfig.from_env(),
)
watcher = ChainWatcher(coordinator, GATEWAYS, WatcherConfig(poll_interval=POLL_INTERVAL))

# =============================================================================
# APP SETUP
# =============================================================================

app = FastAPI(
    title="atomicswap",
    description="Cross-chain HTLC swap coordinator",
    version=__version__,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

offer_routes.configure(coordinator)
app.include_router(offer_routes.router)


@app.get("/api/status")
def get_status():
    """Health check."""
    offers = coordinator.store.list()
    by_status = Counter(o.status.value for o in offers)
    return {
        "status": "ok",
        "version": __version__,
        "timestamp": int(time.time()),
        "offers_total": len(offers),
        "offers_by_status": dict(by_status),
        "chains": GATEWAYS.chains(),
        "watcher_running": watcher.running,
    }


# =============================================================================
# FASTAPI STARTUP/SHUTDOWN EVENTS
# =============================================================================

@app.on_event("startup")
async def startup_event():
    """Start the chain watcher when gateways are configured."""
    log.info(f"Offer db: {OFFER_DB}")
    if len(GATEWAYS):
        watcher.start()
        log.info(f"Watching chains: {', '.join(GATEWAYS.chains())}")
    else:
        log.warning("No SWAP_GATEWAYS configured - chain watcher disabled, "
                    "observations must be posted to /api/offers/{id}/events")


@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup on shutdown."""
    watcher.stop()
    for chain in GATEWAYS.chains():
        GATEWAYS.get(chain).close()
    log.info("Coordinator stopped")


# =============================================================================
# MAIN
# =============================================================================

if __name__ == "__main__":
    import uvicorn
    port = int(os.environ.get("PORT", 8080))
    log.info(f"Starting atomicswap coordinator on port {port}")
    log.info(f"Docs: http://0.0.0.0:{port}/docs")
    uvicorn.run(app, host="0.0.0.0", port=port)
