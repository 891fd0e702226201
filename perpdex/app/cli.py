from __future__ import annotations

import argparse
import json
import os
import sys
from dataclasses import asdict
from typing import Any, Dict, List, Optional

from perpdex.app.dispatcher import RequestDispatcher
from perpdex.app.runner import AppContext, build_context
from perpdex.auth.signing import address_from_key, sign_request
from perpdex.core.config import AppConfig, config_from_dict, load_config
from perpdex.core.errors import PerpDexError
from perpdex.core.types import TokenAccount, market_label

SIGNED_COMMANDS = {
    "init-market": "initialize_market",
    "update-market": "update_market",
    "update-funding": "update_funding",
    "open": "open_position",
    "close": "close_position",
    "liquidate": "liquidate_position",
    "mint": "deposit",
}


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="perpdex", description="Isolated-margin perpetuals ledger")
    parser.add_argument("--config", default=None, help="JSON config; static oracle in memory when omitted")
    parser.add_argument("--state-db", default=None, help="sqlite path, overrides storage.state_db")
    parser.add_argument("--secret-key", default=None, help="signing key, defaults to $PERPDEX_SECRET_KEY")
    parser.add_argument("--log-file", action="store_true", help="also write a rotating log file")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("init-market")
    p.add_argument("--market-id", required=True)
    p.add_argument("--oracle", required=True)
    p.add_argument("--min-collateral", type=int, required=True)
    p.add_argument("--max-leverage", type=int, required=True)
    p.add_argument("--liquidation-threshold", type=int, required=True)

    p = sub.add_parser("update-market")
    p.add_argument("--market-id", required=True)
    p.add_argument("--min-collateral", type=int)
    p.add_argument("--max-leverage", type=int)
    p.add_argument("--liquidation-threshold", type=int)
    state = p.add_mutually_exclusive_group()
    state.add_argument("--activate", dest="is_active", action="store_const", const=True)
    state.add_argument("--deactivate", dest="is_active", action="store_const", const=False)

    p = sub.add_parser("update-funding")
    p.add_argument("--market-id", required=True)
    p.add_argument("--index", type=int, required=True)

    p = sub.add_parser("open")
    p.add_argument("--market-id", required=True)
    p.add_argument("--side", choices=("long", "short"), required=True)
    p.add_argument("--collateral", type=int, required=True)
    p.add_argument("--leverage", type=int, required=True)
    p.add_argument("--mint", required=True)
    p.add_argument("--max-slippage-bps", type=int, default=0)
    p.add_argument("--expected-price", type=int)

    p = sub.add_parser("close")
    p.add_argument("--position", required=True)

    p = sub.add_parser("liquidate")
    p.add_argument("--position", required=True)
    p.add_argument("--trader", required=True)

    p = sub.add_parser("mint")
    p.add_argument("--mint", required=True)
    p.add_argument("--amount", type=int, required=True)
    p.add_argument("--owner")

    p = sub.add_parser("show-market")
    p.add_argument("--market-id", required=True)

    p = sub.add_parser("show-position")
    p.add_argument("--position", required=True)

    p = sub.add_parser("positions")
    p.add_argument("--trader")
    p.add_argument("--market-id")

    sub.add_parser("markets")

    p = sub.add_parser("events")
    p.add_argument("--kind", choices=("opened", "closed", "liquidated"))
    p.add_argument("--since", type=int, default=0)

    p = sub.add_parser("balance")
    p.add_argument("--owner", required=True)
    p.add_argument("--mint")
    return parser


def _request_params(args: argparse.Namespace) -> Dict[str, Any]:
    cmd = args.command
    if cmd == "init-market":
        return {
            "market_id": args.market_id,
            "oracle_ref": args.oracle,
            "min_collateral": args.min_collateral,
            "max_leverage": args.max_leverage,
            "liquidation_threshold": args.liquidation_threshold,
        }
    if cmd == "update-market":
        params: Dict[str, Any] = {"market_id": args.market_id}
        for name in ("min_collateral", "max_leverage", "liquidation_threshold", "is_active"):
            value = getattr(args, name)
            if value is not None:
                params[name] = value
        return params
    if cmd == "update-funding":
        return {"market_id": args.market_id, "new_index": args.index}
    if cmd == "open":
        params = {
            "market_id": args.market_id,
            "is_long": args.side == "long",
            "collateral_amount": args.collateral,
            "leverage": args.leverage,
            "collateral_mint": args.mint,
            "max_slippage_bps": args.max_slippage_bps,
        }
        if args.expected_price is not None:
            params["expected_price"] = args.expected_price
        return params
    if cmd == "close":
        return {"position": args.position}
    if cmd == "liquidate":
        return {"position": args.position, "trader": args.trader}
    if cmd == "mint":
        params = {"mint": args.mint, "amount": args.amount}
        if args.owner:
            params["owner"] = args.owner
        return params
    raise ValueError(cmd)


def _query(ctx: AppContext, args: argparse.Namespace) -> Any:
    cmd = args.command
    if cmd == "show-market":
        return ctx.registry.get(args.market_id).to_record()
    if cmd == "markets":
        return [dict(m.to_record(), label=m.label, vault=m.vault) for m in ctx.registry.all()]
    if cmd == "show-position":
        position = ctx.ledger.get(args.position)
        snap = ctx.controller.margin_snapshot(args.position)
        return {"position": dict(position.to_record(), key=position.key), "margin": asdict(snap)}
    if cmd == "positions":
        if args.trader:
            found = ctx.ledger.by_trader(args.trader)
        elif args.market_id:
            found = ctx.ledger.by_market(args.market_id)
        else:
            found = ctx.ledger.all()
        return [dict(p.to_record(), key=p.key, market=market_label(p.market_id)) for p in found]
    if cmd == "events":
        return [{"id": e.id, "ts": e.ts, "kind": e.kind, "data": e.data} for e in ctx.store.iter_events(args.kind, args.since)]
    if cmd == "balance":
        if args.mint:
            return {args.mint: ctx.tokens.balance_of(TokenAccount(owner=args.owner, mint=args.mint))}
        return ctx.tokens.balances(args.owner)
    raise ValueError(cmd)


def _load(args: argparse.Namespace) -> AppConfig:
    if args.config:
        return load_config(args.config)
    # Without a config the faucet only serves a throwaway in-memory ledger
    in_memory = args.state_db in (None, ":memory:")
    return config_from_dict({"collateral": {"faucet_enabled": in_memory}})


def main(argv: Optional[List[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    cfg = _load(args)
    ctx = build_context(cfg, state_db=args.state_db, file_logging=bool(args.log_file))
    try:
        if args.command in SIGNED_COMMANDS:
            secret = args.secret_key or os.environ.get("PERPDEX_SECRET_KEY")
            if not secret:
                parser.error("a signing key is required (--secret-key or PERPDEX_SECRET_KEY)")
            dispatcher = RequestDispatcher(
                ctx.controller,
                ctx.store,
                ctx.tokens,
                faucet_enabled=cfg.collateral.faucet_enabled,
                logger=ctx.logger.bind(component="dispatcher"),
            )
            request = sign_request(
                secret,
                SIGNED_COMMANDS[args.command],
                _request_params(args),
                dispatcher.next_nonce(address_from_key(secret), ctx.clock.millis()),
            )
            result = dispatcher.handle(request)
        else:
            result = _query(ctx, args)
    except PerpDexError as e:
        print(json.dumps({"error": e.code, "message": str(e)}), file=sys.stderr)
        return 1
    except ValueError as e:
        print(json.dumps({"error": "InvalidArgument", "message": str(e)}), file=sys.stderr)
        return 2
    finally:
        ctx.close()
    print(json.dumps(result, indent=2, sort_keys=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
