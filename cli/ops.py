from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path
from typing import Any, List, Optional

from engine.config import EngineConfig
from engine.options_bot import OptionsBotConfig
from main import EngineApp


def _parse(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Operator commands for the options engine")
    parser.add_argument("--config", type=Path, default=None, help="Override engine config path")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("run", help="Run the engine until interrupted")

    rec = sub.add_parser("reconcile", help="Compare open ledger positions with the broker")
    rec.add_argument("--apply", action="store_true", help="Close positions missing at the broker (default: dry run)")
    rec.add_argument("--user", dest="user_id", default=None, help="Limit to one user")

    exits = sub.add_parser("exits", help="Inspect or control scheduled auto-exits")
    exits_sub = exits.add_subparsers(dest="exits_command", required=True)
    exits_sub.add_parser("status", help="Show scheduler status and pending exits")
    cancel = exits_sub.add_parser("cancel", help="Cancel one scheduled exit")
    cancel.add_argument("position_id")
    cancel.add_argument("--reason", default="Cancelled by operator")
    stop = exits_sub.add_parser("emergency-stop", help="Cancel every pending scheduled exit")
    stop.add_argument("--reason", default="Emergency stop")

    positions = sub.add_parser("positions", help="Close open positions at market")
    positions_sub = positions.add_subparsers(dest="positions_command", required=True)
    close = positions_sub.add_parser("close", help="Close one position (reason MANUAL)")
    close.add_argument("position_id")
    square = positions_sub.add_parser("square-off", help="Emergency exit of every open position")
    square.add_argument("--user", dest="user_id", default=None)
    square.add_argument("--bot-id", dest="bot_id", default=None)

    sig = sub.add_parser("signal", help="Send one trading signal through the options bot")
    sig.add_argument("--action", required=True)
    sig.add_argument("--price", required=True, type=float)
    sig.add_argument("--symbol", default="NIFTY")
    sig.add_argument("--capital", required=True, type=float)
    sig.add_argument("--risk-pct", dest="risk_pct", required=True, type=float)
    sig.add_argument("--delta", dest="delta_threshold", type=float, default=None)
    sig.add_argument("--user", dest="user_id", default="default")
    sig.add_argument("--bot-id", dest="bot_id", default=None)
    sig.add_argument("--signal-id", dest="signal_id", default=None)
    return parser.parse_args(argv)


def _dump(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True, default=str))


async def _reconcile(app: EngineApp, args: argparse.Namespace) -> None:
    results = await app.reconciler.reconcile(user_id=args.user_id)
    print(app.reconciler.generate_report(results))
    execution = await app.reconciler.execute(results, dry_run=not args.apply)
    _dump({"dry_run": execution.dry_run, "closed": execution.closed, "would_close": execution.would_close, "errors": execution.errors})


async def _exits(app: EngineApp, args: argparse.Namespace) -> None:
    if args.exits_command == "status":
        _dump({"status": app.scheduler.get_status(), "pending": app.scheduler.get_pending_exits()})
    elif args.exits_command == "cancel":
        cancelled = await app.scheduler.cancel_position_exit(args.position_id, args.reason)
        _dump({"position_id": args.position_id, "cancelled": cancelled})
    else:
        count = await app.scheduler.emergency_stop(args.reason)
        _dump({"cancelled": count})


async def _positions(app: EngineApp, args: argparse.Namespace) -> None:
    if args.positions_command == "close":
        result = await app.executor.close_position(args.position_id)
        _dump({args.position_id: result.as_dict()})
    else:
        outcome = await app.executor.emergency_square_off(user_id=args.user_id, bot_id=args.bot_id)
        _dump({pid: result.as_dict() for pid, result in outcome.items()})


async def _signal(app: EngineApp, args: argparse.Namespace) -> None:
    await app.start(start_monitor=False)
    payload = {"capital": args.capital, "risk_percentage": args.risk_pct, "user_id": args.user_id, "bot_id": args.bot_id}
    if args.delta_threshold is not None:
        payload["delta_threshold"] = args.delta_threshold
    config = OptionsBotConfig.from_dict(payload, defaults=app.cfg.options)
    result = await app.bot.execute(
        {"action": args.action, "price": args.price, "symbol": args.symbol, "signal_id": args.signal_id},
        config,
    )
    _dump(result.as_dict())


async def _dispatch(app: EngineApp, args: argparse.Namespace) -> None:
    if args.command == "run":
        await app.run()
        return
    try:
        if args.command == "reconcile":
            await _reconcile(app, args)
        elif args.command == "exits":
            await _exits(app, args)
        elif args.command == "positions":
            await _positions(app, args)
        elif args.command == "signal":
            await _signal(app, args)
    finally:
        await app.shutdown()


def main(argv: Optional[List[str]] = None) -> None:
    args = _parse(argv)
    cfg = EngineConfig.load(args.config)
    app = EngineApp(cfg)
    try:
        asyncio.run(_dispatch(app, args))
    except KeyboardInterrupt:  # pragma: no cover
        pass


if __name__ == "__main__":  # pragma: no cover
    main()
