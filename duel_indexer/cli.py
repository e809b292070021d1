#!/usr/bin/env python3
"""Duel Arena tracker: duel history, wallet stats and live activity from chain events.

Usage:
  duel-indexer --config config.json stats 0xWallet
  duel-indexer --config config.json history 0xWallet --limit 50 --page 1
  duel-indexer --config config.json feed --limit 20
  duel-indexer --config config.json transactions 42
  duel-indexer --config config.json fees
  duel-indexer --config config.json watch
  duel-indexer --config config.json serve --port 3000

Notes:
- Results are JSON on stdout; progress and warnings go to stderr.
- Query results are cached in the SQLite file named by `db_path` between runs.
"""

import argparse
import asyncio
import sys
from typing import Any, Awaitable, Callable

from .config import ConfigError, load_config
from .live import LiveEventKind
from .service import DuelQueryService
from .utils import _json_dumps, _log, transaction_link


async def _with_service(service: DuelQueryService, action: Callable[[], Awaitable[Any]]) -> Any:
    await service.initialize()
    try:
        return await action()
    finally:
        await service.close()


async def _watch(service: DuelQueryService) -> None:
    def _print(kind: LiveEventKind) -> Callable[[Any], None]:
        def _emit(payload: Any) -> None:
            print(_json_dumps({"event": kind.value, "payload": vars(payload)}), flush=True)

        return _emit

    for kind in LiveEventKind:
        service.subscribe(kind, _print(kind))
    await service.watch()


def main() -> None:
    parser = argparse.ArgumentParser(description="Duel Arena tracker")
    parser.add_argument("--config", default="config.json", help="Path to config JSON")
    parser.add_argument("--no-delegate", action="store_true", help="Skip the delegate API, query the chain directly")

    sub = parser.add_subparsers(dest="command", required=True)

    stats_parser = sub.add_parser("stats", help="Wallet statistics")
    stats_parser.add_argument("address")

    history_parser = sub.add_parser("history", help="Duel history for a wallet")
    history_parser.add_argument("address")
    history_parser.add_argument("--limit", type=int, default=50)
    history_parser.add_argument("--page", type=int, default=1)

    feed_parser = sub.add_parser("feed", help="Recent duel activity")
    feed_parser.add_argument("--limit", type=int, default=20)

    tx_parser = sub.add_parser("transactions", help="Transactions of one duel, oldest first")
    tx_parser.add_argument("duel_id")
    tx_parser.add_argument("--links", action="store_true", help="Add explorer links")

    sub.add_parser("fees", help="Total platform fees collected by the escrow contract")
    sub.add_parser("watch", help="Stream live duel events")

    serve_parser = sub.add_parser("serve", help="Serve the tracker HTTP API")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=3000)

    args = parser.parse_args()
    try:
        cfg = load_config(args.config)
        use_delegate = not args.no_delegate and args.command not in ("serve", "watch")
        service = DuelQueryService.from_config(cfg, use_delegate=use_delegate)
    except (ConfigError, FileNotFoundError) as exc:
        _log(f"Config error: {exc}")
        sys.exit(2)

    if args.command == "serve":
        from aiohttp import web

        from .api import create_app

        web.run_app(create_app(service), host=args.host, port=args.port)
        return

    if args.command == "watch":
        try:
            asyncio.run(_with_service(service, lambda: _watch(service)))
        except KeyboardInterrupt:
            _log("Stopped")
        return

    try:
        _run_query(args, cfg, service)
    except ValueError as exc:
        _log(f"Invalid input: {exc}")
        sys.exit(2)


def _run_query(args: argparse.Namespace, cfg: Any, service: DuelQueryService) -> None:
    if args.command == "stats":
        result = asyncio.run(_with_service(service, lambda: service.get_wallet_stats(args.address)))
        print(_json_dumps(result.to_dict(), indent=2))
        return

    if args.command == "history":
        result = asyncio.run(
            _with_service(service, lambda: service.get_duel_history(args.address, args.limit, args.page))
        )
        print(_json_dumps(result.to_dict(), indent=2))
        return

    if args.command == "feed":
        duels = asyncio.run(_with_service(service, lambda: service.get_recent_duel_activity(args.limit)))
        print(_json_dumps([d.to_dict() for d in duels], indent=2))
        return

    if args.command == "transactions":
        transactions = asyncio.run(_with_service(service, lambda: service.get_duel_transactions(args.duel_id)))
        rows = [t.to_dict() for t in transactions]
        if args.links:
            for row in rows:
                row["link"] = transaction_link(cfg.explorer_url, row["transactionHash"])
        print(_json_dumps(rows, indent=2))
        return

    if args.command == "fees":
        result = asyncio.run(_with_service(service, service.get_ecosystem_stats))
        print(_json_dumps(result, indent=2))
        return


if __name__ == "__main__":
    main()
