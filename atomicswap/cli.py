#!/usr/bin/env python3
"""
atomicswap admin CLI.

Operates directly on an offer database (JSON file). Every command prints the
coordinator result as JSON; the exit status is 0 on success or the error's
code (10-21) on rejection.

Usage:
    atomicswap secret
    atomicswap create --chain-from ton --token-from TON --amount-from 1000 \\
        --chain-to stellar --token-to XLM --amount-to 980 \\
        --creator-address ton=EQ... --creator-address stellar=GA...
    atomicswap accept OFFER_ID --taker-address ton=EQ... --taker-address stellar=GB... \\
        --secret-hash HASH
    atomicswap lock OFFER_ID taker --address HTLC_ADDR --expires-at 1700003600
    atomicswap claim OFFER_ID creator --secret PREIMAGE
    atomicswap get OFFER_ID
    atomicswap list --status open
"""

import argparse
import json
import logging
import os
import sys
from typing import Dict, List, Optional, Tuple

from .config import CoordinatorConfig
from .coordinator import SwapCoordinator, OfferResult
from .core import OfferStatus, Side, new_secret
from .store import JsonFileOfferStore

log = logging.getLogger(__name__)

DEFAULT_DB = os.environ.get("SWAP_OFFER_DB", "~/.atomicswap/offers.json")


def address_pair(value: str) -> Tuple[str, str]:
    """'ton=EQ..' -> ('ton', 'EQ..')"""
    chain, sep, address = value.partition("=")
    if not sep or not chain or not address:
        raise argparse.ArgumentTypeError(f"expected CHAIN=ADDRESS, got {value!r}")
    return chain, address


def parse_addresses(pairs: Optional[List[Tuple[str, str]]]) -> Dict[str, str]:
    return dict(pairs or [])


def _print(data):
    print(json.dumps(data, indent=2))


def _finish(result: OfferResult) -> int:
    _print(result.to_dict())
    if result.error is not None:
        return int(result.error.code)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="atomicswap",
        description="Cross-chain HTLC swap coordinator - offer administration",
    )
    parser.add_argument("--db", default=DEFAULT_DB,
                        help="Offer database file (default: $SWAP_OFFER_DB or %(default)s)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("secret", help="Generate a secret preimage and its hash")

    p = sub.add_parser("create", help="Create a new offer")
    p.add_argument("--chain-from", required=True)
    p.add_argument("--token-from", required=True)
    p.add_argument("--amount-from", required=True, help="Decimal string")
    p.add_argument("--chain-to", required=True)
    p.add_argument("--token-to", required=True)
    p.add_argument("--amount-to", required=True, help="Decimal string")
    p.add_argument("--creator-address", action="append", type=address_pair, metavar="CHAIN=ADDRESS",
                   help="Creator address on a chain (repeat for each chain)")
    p.add_argument("--idempotency-key", help="Replays with the same key return the same offer")

    p = sub.add_parser("accept", help="Accept an offer as taker")
    p.add_argument("offer_id")
    p.add_argument("--taker-address", action="append", type=address_pair, metavar="CHAIN=ADDRESS",
                   help="Taker address on a chain (repeat for each chain)")
    p.add_argument("--secret-hash", required=True, help="SHA256 of the taker's preimage (hex)")

    p = sub.add_parser("lock", help="Record an on-chain HTLC lock")
    p.add_argument("offer_id")
    p.add_argument("side", choices=[s.value for s in Side])
    p.add_argument("--address", required=True, help="HTLC contract address / id")
    p.add_argument("--expires-at", required=True, type=int, help="Unix timestamp")
    p.add_argument("--chain", help="Defaults to the leg's chain")
    p.add_argument("--token")
    p.add_argument("--amount")
    p.add_argument("--hashlock")
    p.add_argument("--recipient")
    p.add_argument("--tx-id")

    p = sub.add_parser("claim", help="Record a claim")
    p.add_argument("offer_id")
    p.add_argument("side", choices=[s.value for s in Side])
    p.add_argument("--secret", help="Preimage (required for the creator claim)")

    p = sub.add_parser("refund", help="Record a refund of the side's own leg")
    p.add_argument("offer_id")
    p.add_argument("side", choices=[s.value for s in Side])

    p = sub.add_parser("expire", help="Expire an offer")
    p.add_argument("offer_id")
    p.add_argument("--side", choices=[s.value for s in Side], default=Side.TAKER.value)

    p = sub.add_parser("get", help="Show an offer and its legal actions")
    p.add_argument("offer_id")

    p = sub.add_parser("list", help="List offers, newest first")
    p.add_argument("--status", choices=[s.value for s in OfferStatus])

    return parser


def run(args, coordinator: SwapCoordinator) -> int:
    cmd = args.command

    if cmd == "create":
        return _finish(coordinator.create_offer({
            "creator_addresses": parse_addresses(args.creator_address),
            "amount_from": args.amount_from,
            "amount_to": args.amount_to,
            "token_from": args.token_from,
            "token_to": args.token_to,
            "chain_from": args.chain_from,
            "chain_to": args.chain_to,
        }, idempotency_key=args.idempotency_key))

    if cmd == "accept":
        return _finish(coordinator.accept_offer(
            args.offer_id, parse_addresses(args.taker_address), args.secret_hash))

    if cmd == "lock":
        chain = args.chain
        if not chain:
            current = coordinator.query_offer(args.offer_id)
            if not current.ok:
                return _finish(current)
            chain = current.offer.leg_chain(Side(args.side))
        return _finish(coordinator.record_lock(args.offer_id, args.side, {
            "chain": chain,
            "address": args.address,
            "expires_at": args.expires_at,
            "token": args.token,
            "amount": args.amount,
            "hashlock": args.hashlock,
            "recipient": args.recipient,
            "tx_id": args.tx_id,
        }))

    if cmd == "claim":
        return _finish(coordinator.record_claim(args.offer_id, args.side, args.secret))

    if cmd == "refund":
        return _finish(coordinator.record_refund(args.offer_id, args.side, args.side))

    if cmd == "expire":
        return _finish(coordinator.record_expiry(args.offer_id, args.side))

    if cmd == "get":
        return _finish(coordinator.query_offer(args.offer_id))

    if cmd == "list":
        return _finish(coordinator.list_offers(args.status))

    raise ValueError(f"unknown command {cmd}")


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format='%(asctime)s [%(levelname)s] %(message)s'
    )

    if args.command is None:
        parser.print_help()
        return 2

    if args.command == "secret":
        preimage, secret_hash = new_secret()
        _print({"secret_preimage": preimage, "secret_hash": secret_hash})
        return 0

    log.debug(f"Using offer db {args.db}")
    coordinator = SwapCoordinator(
        store=JsonFileOfferStore(args.db),
        config=CoordinatorConfig.from_env(),
    )
    return run(args, coordinator)


if __name__ == "__main__":
    sys.exit(main())
