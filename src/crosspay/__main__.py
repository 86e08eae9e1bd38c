"""Command line entry point.

Usage:
    python -m crosspay quote cUSD cEUR 10 --slippage 0.005
    python -m crosspay convert 25 cEUR FIAT
    python -m crosspay rates
    python -m crosspay config
"""

import argparse
import asyncio
import json
import logging
import sys

from crosspay.config import get_settings
from crosspay.contracts import QuoteResponse
from crosspay.engine import Engine
from crosspay.errors import SwapError, action_label

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="crosspay", description="Stable-token conversion engine")
    commands = parser.add_subparsers(dest="command", required=True)

    quote = commands.add_parser("quote", help="Quote a conversion")
    quote.add_argument("from_asset")
    quote.add_argument("to_asset")
    quote.add_argument("amount")
    quote.add_argument("--slippage", default=None, help="Tolerance as a fraction, e.g. 0.01")

    convert = commands.add_parser("convert", help="Convert with the exchange rate table")
    convert.add_argument("amount")
    convert.add_argument("from_unit")
    convert.add_argument("to_unit")
    convert.add_argument("--refresh", action="store_true", help="Fetch live rates first")

    rates = commands.add_parser("rates", help="Show the exchange rate table")
    rates.add_argument("--refresh", action="store_true", help="Fetch live rates first")

    commands.add_parser("config", help="Show the effective settings")
    return parser


async def _quote(engine: Engine, args) -> None:
    quote = await engine.get_quote(args.from_asset, args.to_asset, args.amount, args.slippage)
    print(QuoteResponse.from_quote(quote).model_dump_json(indent=2))


async def _convert(engine: Engine, args) -> None:
    if args.refresh:
        await engine.rates.refresh(force=True)
    value = engine.convert(args.amount, args.from_unit, args.to_unit)
    print(f"{engine.format(args.amount, args.from_unit)} = {engine.format(value, args.to_unit)}")


async def _rates(engine: Engine, args) -> None:
    table = await engine.rates.refresh(force=True) if args.refresh else engine.rates.table
    print(f"Provenance: {table.provenance.value} (currency {engine.rates.user_currency})")
    for pair, rate in sorted(table.rates.items()):
        print(f"  {pair:<14} {rate}")


COMMANDS = {
    "quote": _quote,
    "convert": _convert,
    "rates": _rates,
}


async def run(args) -> int:
    settings = get_settings()
    if args.command == "config":
        print(json.dumps(settings.get_safe_dict(), indent=2))
        return 0

    engine = Engine(settings)
    try:
        await engine.init(verify_chain=False, background=False)
        await COMMANDS[args.command](engine, args)
    except SwapError as e:
        logger.error(f"{e.message}: {e.details}")
        print(f"Error: {e.message} ({e.kind.value}) - {action_label(e.action)}", file=sys.stderr)
        return 1
    finally:
        await engine.dispose()
    return 0


def main(argv=None) -> int:
    settings = get_settings()
    log_level = logging.DEBUG if settings.debug else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    args = build_parser().parse_args(argv)
    return asyncio.run(run(args))


if __name__ == "__main__":
    sys.exit(main())
