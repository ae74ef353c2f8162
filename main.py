"""Entry point for the Solana new-pool sniper."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
from logging.handlers import RotatingFileHandler

from config import Settings, export_settings, import_settings, load_settings
from database.db import TradeJournal
from monitor.alerter import AlertDispatcher, LogNotifier, TelegramNotifier
from monitor.dexscreener import DexScreenerPoolSource, GeckoTerminalPoolSource, PoolDiscoveryFeed
from monitor.token_checker import RugCheckClient
from trading.auto_trader import SniperEngine
from trading.entry_gate import EntryGate
from trading.exit_evaluator import ExitEvaluator
from trading.live_executor import JupiterClient, LiveExecutor, PaperExecutor
from trading.position_store import PositionStore
from trading.price_cache import BaseCurrencyPriceSource, DexScreenerPriceSource, MarketPrices, PriceCache
from trading.profit_accountant import ProfitAccountant
from trading.wallet import SolanaRpcClient, Wallet, load_keypair
from utils.errors import ConfigError
from utils.http_client import ResilientHttpClient

logger = logging.getLogger(__name__)

_BROWSER_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
        "AppleWebKit/537.36 (KHTML, like Gecko) "
        "Chrome/122.0.0.0 Safari/537.36"
    ),
    "Accept": "application/json, text/plain, */*",
    "Accept-Language": "en-US,en;q=0.9",
}


def configure_logging(settings: Settings) -> None:
    m = settings.monitoring
    os.makedirs(m.log_dir, exist_ok=True)
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    file_handler = RotatingFileHandler(m.app_log_file, maxBytes=1_000_000, backupCount=5, encoding="utf-8")
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    root = logging.getLogger()
    root.setLevel(getattr(logging, m.log_level.upper(), logging.INFO))
    root.handlers.clear()
    root.addHandler(file_handler)
    root.addHandler(console_handler)

    # Avoid leaking bot token in verbose transport logs.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("telegram").setLevel(logging.INFO)


def build_engine(settings: Settings) -> SniperEngine:
    apis = settings.apis
    http_settings = settings.http
    dex_http = ResilientHttpClient(
        http_settings,
        timeout_seconds=apis.dex_timeout_seconds,
        headers=_BROWSER_HEADERS,
        source_limits={"dexscreener": 8, "geckoterminal": 5, "dex_price": 8, "base_price": 2},
    )
    rugcheck_http = ResilientHttpClient(
        http_settings, timeout_seconds=apis.rugcheck_timeout_seconds, source_limits={"rugcheck": 4}
    )
    jupiter_http = ResilientHttpClient(
        http_settings, timeout_seconds=apis.jupiter_timeout_seconds, source_limits={"jupiter": 4}
    )
    rpc_http = ResilientHttpClient(
        http_settings, timeout_seconds=settings.wallet.rpc_timeout_seconds, source_limits={"rpc": 8}
    )

    m = settings.monitoring
    base_prices = BaseCurrencyPriceSource(
        dex_http,
        apis.base_price_urls,
        settings.wallet.base_mint,
        ttl_seconds=m.base_price_ttl_seconds,
        fallback_usd=m.base_price_fallback_usd,
    )
    prices = MarketPrices(
        DexScreenerPriceSource(dex_http, apis.dexscreener_api, apis.chain_id),
        base_prices,
        PriceCache(m.price_cache_ttl_seconds),
    )

    sources = []
    if apis.dexscreener_enabled:
        sources.append(DexScreenerPoolSource(dex_http, apis, m, settings.wallet.base_mint, base_prices.base_usd))
    if apis.gecko_enabled:
        sources.append(GeckoTerminalPoolSource(dex_http, apis, m, settings.wallet.base_mint, base_prices.base_usd))
    feed = PoolDiscoveryFeed(sources, http=dex_http)

    gate = EntryGate(
        RugCheckClient(rugcheck_http, apis, settings.security),
        settings.security,
        settings.trading.min_liquidity_base,
    )

    rpc = SolanaRpcClient(rpc_http, settings.wallet)
    wallet = None
    if settings.trading.paper_mode:
        executor = PaperExecutor(JupiterClient(jupiter_http, apis, settings.trading), rpc, settings.trading, settings.wallet)
    else:
        wallet = Wallet(load_keypair(settings.wallet.private_key), rpc)
        jupiter = JupiterClient(jupiter_http, apis, settings.trading, wallet=wallet)
        executor = LiveExecutor(jupiter, wallet, settings.trading, settings.wallet)

    journal = TradeJournal(m.database_url)
    journal.init()

    if settings.telegram.notifications_enabled:
        notifier = TelegramNotifier.from_settings(settings.telegram)
    else:
        notifier = LogNotifier()
    dispatcher = AlertDispatcher(notifier, settings.telegram, settings.trading, journal=journal)

    return SniperEngine(
        settings=settings,
        feed=feed,
        gate=gate,
        executor=executor,
        store=PositionStore(),
        evaluator=ExitEvaluator(settings.trading),
        accountant=ProfitAccountant(stale_after_seconds=max(5.0, m.price_refresh_seconds * 10)),
        prices=prices,
        dispatcher=dispatcher,
        journal=journal,
        wallet=wallet,
        closers=(dex_http, rugcheck_http, jupiter_http, rpc_http),
    )


def history_lines(journal: TradeJournal, limit: int) -> list[str]:
    lines = []
    for trade in reversed(journal.recent_trades(limit)):
        pnl = "" if trade.pnl_base is None else f" pnl={trade.pnl_base:+.4f}"
        lines.append(
            f"{trade.created_at:%Y-%m-%d %H:%M:%S} {trade.side:<12} {trade.symbol or trade.asset_address} "
            f"base={trade.base_amount:.4f} units={trade.units:.4f}{pnl}"
        )
    lines.append(f"Realized PnL: {journal.realized_pnl():+.4f} SOL")
    return lines


async def run_engine(engine: SniperEngine, max_cycles: int | None) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, engine.stop)
        except (NotImplementedError, RuntimeError):
            # Windows event loops do not support signal handlers.
            pass
    try:
        await engine.run(max_cycles=max_cycles)
    finally:
        logger.info("Final stats: %s", engine.get_stats())
        await engine.shutdown()


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Solana new-pool sniper")
    parser.add_argument("--show-config", action="store_true", help="Print effective settings and exit")
    parser.add_argument("--export-config", metavar="PATH", help="Write effective settings (secrets redacted) to JSON")
    parser.add_argument("--import-config", metavar="PATH", help="Overlay settings from a JSON export")
    parser.add_argument("--max-cycles", type=int, default=None, help="Stop after N scan cycles")
    parser.add_argument("--history", type=int, metavar="N", help="Print the last N journal trades and exit")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        settings = load_settings()
        if args.import_config:
            settings = import_settings(settings, args.import_config)
        settings.validate()
    except ConfigError as exc:
        logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        logger.error("Configuration error: %s", exc)
        return 1

    if args.show_config:
        for line in settings.summary_lines():
            print(line)
        return 0
    if args.export_config:
        export_settings(settings, args.export_config)
        print(f"Settings exported to {args.export_config}")
        return 0
    if args.history:
        journal = TradeJournal(settings.monitoring.database_url)
        journal.init()
        for line in history_lines(journal, args.history):
            print(line)
        return 0

    configure_logging(settings)
    for line in settings.summary_lines():
        logger.info("CONFIG %s", line)
    try:
        engine = build_engine(settings)
    except ConfigError as exc:
        logger.error("Configuration error: %s", exc)
        return 1
    asyncio.run(run_engine(engine, args.max_cycles))
    return 0


if __name__ == "__main__":
    sys.exit(main())
