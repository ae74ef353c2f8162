"""Application configuration.

Settings are read once at startup into a frozen ``Settings`` value and handed
to every component constructor. Nothing reads environment variables after
``load_settings()`` returns.
"""

from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Tuple

from dotenv import load_dotenv

from utils.errors import ConfigError

WSOL_MINT = "So11111111111111111111111111111111111111112"


def _load_dotenv_safe(dotenv_path: str | None = None, *, override: bool = False) -> None:
    """Load dotenv using UTF-8-SIG so BOM-prefixed files don't break first key parsing."""
    try:
        load_dotenv(dotenv_path=dotenv_path, override=override, encoding="utf-8-sig")
    except TypeError:
        # Older python-dotenv versions may not expose the `encoding` argument.
        load_dotenv(dotenv_path=dotenv_path, override=override)


def load_environment() -> None:
    """Load base .env first, then the optional per-instance BOT_ENV_FILE override."""
    _load_dotenv_safe()
    bot_env_file = os.getenv("BOT_ENV_FILE", "").strip()
    if not bot_env_file:
        return
    bot_env_path = Path(bot_env_file).expanduser()
    if not bot_env_path.is_absolute():
        bot_env_path = (Path.cwd() / bot_env_path).resolve()
    if not bot_env_path.exists():
        raise FileNotFoundError(f"BOT_ENV_FILE does not exist: {bot_env_path}")
    if not bot_env_path.is_file():
        raise IsADirectoryError(f"BOT_ENV_FILE is not a file: {bot_env_path}")
    try:
        _load_dotenv_safe(str(bot_env_path), override=True)
    except (OSError, UnicodeError, ValueError) as exc:
        raise RuntimeError(f"Failed to load BOT_ENV_FILE '{bot_env_path}': {exc}") from exc


def _parse_source_rate_limits(raw: str) -> Dict[str, Tuple[int, float]]:
    out: Dict[str, Tuple[int, float]] = {}
    for chunk in str(raw or "").split(","):
        item = chunk.strip()
        if not item or ":" not in item:
            continue
        source_part, rate_part = item.split(":", 1)
        source = source_part.strip().lower()
        if not source or "/" not in rate_part:
            continue
        count_part, window_part = rate_part.split("/", 1)
        try:
            count = max(1, int(float(count_part.strip())))
            window_seconds = max(1.0, float(window_part.strip()))
        except ValueError:
            continue
        out[source] = (count, window_seconds)
    return out


def _parse_source_float_map(raw: str) -> Dict[str, float]:
    out: Dict[str, float] = {}
    for chunk in str(raw or "").split(","):
        item = chunk.strip()
        if not item or ":" not in item:
            continue
        source_part, value_part = item.split(":", 1)
        source = source_part.strip().lower()
        if not source:
            continue
        try:
            out[source] = max(0.0, float(value_part.strip()))
        except ValueError:
            continue
    return out


class _Env:
    """Typed accessors over an environment mapping."""

    def __init__(self, environ: Mapping[str, str]) -> None:
        self._environ = environ

    def str(self, key: str, default: str = "") -> str:
        return str(self._environ.get(key, default) or default).strip()

    def int(self, key: str, default: int) -> int:
        raw = self._environ.get(key)
        if raw is None or str(raw).strip() == "":
            return default
        try:
            return int(float(str(raw).strip()))
        except ValueError as exc:
            raise ConfigError(f"{key} must be an integer, got {raw!r}") from exc

    def float(self, key: str, default: float) -> float:
        raw = self._environ.get(key)
        if raw is None or str(raw).strip() == "":
            return default
        try:
            return float(str(raw).strip())
        except ValueError as exc:
            raise ConfigError(f"{key} must be a number, got {raw!r}") from exc

    def bool(self, key: str, default: bool) -> bool:
        raw = self._environ.get(key)
        if raw is None or str(raw).strip() == "":
            return default
        return str(raw).strip().lower() in {"1", "true", "yes", "on", "y"}

    def list(self, key: str, default: str) -> list[str]:
        raw = self.str(key, default)
        return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass(frozen=True)
class TradingSettings:
    position_size_base: float = 0.1
    max_open_positions: int = 5
    min_liquidity_base: float = 10.0
    max_slippage_bps: int = 1500
    paper_mode: bool = True
    min_wallet_reserve_base: float = 0.05
    # Exit rules
    max_hold_seconds: int = 1800
    stop_loss_percent: float = 50.0
    trailing_stop_enabled: bool = True
    trailing_stop_percent: float = 30.0
    profit_threshold_percent: float = 50.0
    sell_percentage: float = 75.0
    min_remaining_units_fraction: float = 0.02
    priority_fee_lamports: int = 15000


@dataclass(frozen=True)
class SecuritySettings:
    min_acceptable_score: int = 70
    strict: bool = True
    degraded_score: int = 70
    cache_ttl_seconds: int = 3600
    min_lp_locked_percent: float = 70.0
    max_top10_holders_percent: float = 30.0
    reject_active_authorities: bool = True


@dataclass(frozen=True)
class TelegramSettings:
    bot_token: str = ""
    chat_id: str = ""
    notifications_enabled: bool = False
    send_buy_alerts: bool = True
    send_sell_alerts: bool = True
    send_rejection_alerts: bool = True
    send_profit_summaries: bool = True
    alert_min_interval_seconds: float = 5.0
    time_alert_interval_seconds: int = 1800


@dataclass(frozen=True)
class HttpSettings:
    connector_limit: int = 30
    default_concurrency: int = 8
    retry_attempts: int = 2
    backoff_base_seconds: float = 0.5
    backoff_max_seconds: float = 4.0
    jitter_seconds: float = 0.25
    rate_limit_delay_seconds: float = 2.0
    cooldown_429_seconds: float = 30.0
    source_rate_limits: Dict[str, Tuple[int, float]] = field(default_factory=dict)
    source_429_cooldowns: Dict[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class ApiSettings:
    chain_id: str = "solana"
    dexscreener_enabled: bool = True
    dexscreener_api: str = "https://api.dexscreener.com/latest/dex"
    dex_search_queries: Tuple[str, ...] = ("SOL",)
    dex_timeout_seconds: float = 5.0
    gecko_enabled: bool = True
    gecko_api: str = "https://api.geckoterminal.com/api/v2"
    gecko_network: str = "solana"
    rugcheck_api: str = "https://api.rugcheck.xyz/v1"
    rugcheck_timeout_seconds: float = 5.0
    jupiter_quote_urls: Tuple[str, ...] = (
        "https://lite-api.jup.ag/swap/v1/quote",
        "https://quote-api.jup.ag/v6/quote",
    )
    jupiter_swap_url: str = "https://lite-api.jup.ag/swap/v1/swap"
    jupiter_api_key: str = ""
    jupiter_timeout_seconds: float = 10.0
    base_price_urls: Tuple[str, ...] = (
        "https://api.coingecko.com/api/v3/simple/price?ids=solana&vs_currencies=usd",
        "https://lite-api.jup.ag/price/v2?ids=" + WSOL_MINT,
    )


@dataclass(frozen=True)
class WalletSettings:
    private_key: str = ""
    rpc_url: str = "https://api.mainnet-beta.solana.com"
    rpc_timeout_seconds: float = 10.0
    confirm_timeout_seconds: float = 45.0
    base_mint: str = WSOL_MINT
    base_decimals: int = 9


@dataclass(frozen=True)
class MonitoringSettings:
    scan_interval_seconds: float = 2.0
    fast_scan_interval_seconds: float = 0.5
    price_refresh_seconds: float = 1.0
    price_cache_ttl_seconds: float = 1.0
    base_price_ttl_seconds: float = 300.0
    base_price_fallback_usd: float = 150.0
    token_age_max_seconds: int = 24 * 3600
    max_new_pools_per_scan: int = 10
    portfolio_summary_seconds: int = 15 * 60
    log_level: str = "INFO"
    log_dir: str = "logs"
    app_log_file: str = os.path.join("logs", "app.log")
    database_url: str = "sqlite:///sniper.db"


@dataclass(frozen=True)
class Settings:
    trading: TradingSettings = field(default_factory=TradingSettings)
    security: SecuritySettings = field(default_factory=SecuritySettings)
    telegram: TelegramSettings = field(default_factory=TelegramSettings)
    http: HttpSettings = field(default_factory=HttpSettings)
    apis: ApiSettings = field(default_factory=ApiSettings)
    wallet: WalletSettings = field(default_factory=WalletSettings)
    monitoring: MonitoringSettings = field(default_factory=MonitoringSettings)

    def validate(self) -> None:
        t = self.trading
        if t.position_size_base <= 0:
            raise ConfigError("POSITION_SIZE_BASE must be greater than 0")
        if t.max_open_positions <= 0:
            raise ConfigError("MAX_OPEN_POSITIONS must be at least 1")
        if not 0 < t.sell_percentage <= 100:
            raise ConfigError("SELL_PERCENTAGE must be in (0, 100]")
        for name in ("stop_loss_percent", "trailing_stop_percent", "profit_threshold_percent"):
            if float(getattr(t, name)) <= 0:
                raise ConfigError(f"{name.upper()} must be positive")
        if t.stop_loss_percent > 100 or t.trailing_stop_percent > 100:
            raise ConfigError("STOP_LOSS_PERCENT and TRAILING_STOP_PERCENT must not exceed 100")
        if t.max_hold_seconds <= 0:
            raise ConfigError("MAX_HOLD_SECONDS must be positive")
        if not 0 <= t.max_slippage_bps <= 10_000:
            raise ConfigError("MAX_SLIPPAGE_BPS must be within 0..10000")
        if not 0 <= self.security.min_acceptable_score <= 100:
            raise ConfigError("MIN_ACCEPTABLE_SCORE must be within 0..100")
        if not t.paper_mode and not self.wallet.private_key:
            raise ConfigError("SOLANA_PRIVATE_KEY is required when AUTO_TRADE_PAPER=false")
        if self.telegram.notifications_enabled and not (self.telegram.bot_token and self.telegram.chat_id):
            raise ConfigError("TELEGRAM_BOT_TOKEN and TELEGRAM_CHAT_ID are required when notifications are enabled")
        if not (self.apis.dexscreener_enabled or self.apis.gecko_enabled):
            raise ConfigError("At least one discovery source (DexScreener or GeckoTerminal) must be enabled")
        m = self.monitoring
        if m.scan_interval_seconds <= 0 or m.fast_scan_interval_seconds <= 0:
            raise ConfigError("Scan intervals must be positive")

    def to_dict(self, redact: bool = True) -> dict[str, Any]:
        out = asdict(self)
        if redact:
            if out["wallet"]["private_key"]:
                out["wallet"]["private_key"] = "***"
            if out["telegram"]["bot_token"]:
                out["telegram"]["bot_token"] = "***"
            if out["apis"]["jupiter_api_key"]:
                out["apis"]["jupiter_api_key"] = "***"
        return out

    def summary_lines(self) -> list[str]:
        t = self.trading
        s = self.security
        return [
            f"mode={'paper' if t.paper_mode else 'live'} position_size={t.position_size_base} max_positions={t.max_open_positions}",
            f"min_liquidity={t.min_liquidity_base} slippage_bps={t.max_slippage_bps}",
            (
                f"exit: hold={t.max_hold_seconds}s sl=-{t.stop_loss_percent}% "
                f"trail={t.trailing_stop_percent}%({'on' if t.trailing_stop_enabled else 'off'}) "
                f"tp=+{t.profit_threshold_percent}% sell={t.sell_percentage}%"
            ),
            f"security: min_score={s.min_acceptable_score} strict={s.strict}",
            f"telegram: enabled={self.telegram.notifications_enabled}",
        ]


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    if environ is None:
        load_environment()
        environ = os.environ
    env = _Env(environ)

    min_score = env.int("MIN_ACCEPTABLE_SCORE", 70)
    trading = TradingSettings(
        position_size_base=env.float("POSITION_SIZE_BASE", 0.1),
        max_open_positions=env.int("MAX_OPEN_POSITIONS", 5),
        min_liquidity_base=env.float("MIN_LIQUIDITY_BASE", 10.0),
        max_slippage_bps=env.int("MAX_SLIPPAGE_BPS", 1500),
        paper_mode=env.bool("AUTO_TRADE_PAPER", True),
        min_wallet_reserve_base=env.float("MIN_WALLET_RESERVE_BASE", 0.05),
        max_hold_seconds=env.int("MAX_HOLD_SECONDS", 1800),
        stop_loss_percent=env.float("STOP_LOSS_PERCENT", 50.0),
        trailing_stop_enabled=env.bool("TRAILING_STOP_ENABLED", True),
        trailing_stop_percent=env.float("TRAILING_STOP_PERCENT", 30.0),
        profit_threshold_percent=env.float("PROFIT_THRESHOLD_PERCENT", 50.0),
        sell_percentage=env.float("SELL_PERCENTAGE", 75.0),
        min_remaining_units_fraction=env.float("MIN_REMAINING_UNITS_FRACTION", 0.02),
        priority_fee_lamports=env.int("PRIORITY_FEE_LAMPORTS", 15000),
    )
    security = SecuritySettings(
        min_acceptable_score=min_score,
        strict=env.bool("SECURITY_STRICT", True),
        degraded_score=env.int("SECURITY_DEGRADED_SCORE", min_score),
        cache_ttl_seconds=env.int("SECURITY_CACHE_TTL_SECONDS", 3600),
        min_lp_locked_percent=env.float("MIN_LP_LOCKED_PERCENT", 70.0),
        max_top10_holders_percent=env.float("MAX_TOP10_HOLDERS_PERCENT", 30.0),
        reject_active_authorities=env.bool("REJECT_ACTIVE_AUTHORITIES", True),
    )
    telegram = TelegramSettings(
        bot_token=env.str("TELEGRAM_BOT_TOKEN"),
        chat_id=env.str("TELEGRAM_CHAT_ID"),
        notifications_enabled=env.bool("NOTIFICATIONS_ENABLED", bool(env.str("TELEGRAM_CHAT_ID"))),
        send_buy_alerts=env.bool("SEND_BUY_ALERTS", True),
        send_sell_alerts=env.bool("SEND_SELL_ALERTS", True),
        send_rejection_alerts=env.bool("SEND_REJECTION_ALERTS", True),
        send_profit_summaries=env.bool("SEND_PROFIT_SUMMARIES", True),
        alert_min_interval_seconds=env.float("ALERT_MIN_INTERVAL_SECONDS", 5.0),
        time_alert_interval_seconds=env.int("TIME_ALERT_INTERVAL_SECONDS", 1800),
    )
    http = HttpSettings(
        connector_limit=env.int("HTTP_CONNECTOR_LIMIT", 30),
        default_concurrency=env.int("HTTP_DEFAULT_CONCURRENCY", 8),
        retry_attempts=env.int("HTTP_RETRY_ATTEMPTS", 2),
        backoff_base_seconds=env.float("HTTP_BACKOFF_BASE_SECONDS", 0.5),
        backoff_max_seconds=env.float("HTTP_BACKOFF_MAX_SECONDS", 4.0),
        jitter_seconds=env.float("HTTP_JITTER_SECONDS", 0.25),
        rate_limit_delay_seconds=env.float("HTTP_RATE_LIMIT_DELAY_SECONDS", 2.0),
        cooldown_429_seconds=env.float("HTTP_429_COOLDOWN_SECONDS", 30.0),
        source_rate_limits=_parse_source_rate_limits(env.str("HTTP_SOURCE_RATE_LIMITS", "dexscreener:280/60,rugcheck:60/60")),
        source_429_cooldowns=_parse_source_float_map(env.str("HTTP_SOURCE_429_COOLDOWNS")),
    )
    default_apis = ApiSettings()
    apis = ApiSettings(
        chain_id=env.str("CHAIN_ID", default_apis.chain_id).lower(),
        dexscreener_enabled=env.bool("DEXSCREENER_ENABLED", True),
        dexscreener_api=env.str("DEXSCREENER_API", default_apis.dexscreener_api).rstrip("/"),
        dex_search_queries=tuple(env.list("DEX_SEARCH_QUERIES", "SOL")),
        dex_timeout_seconds=env.float("DEX_TIMEOUT", 5.0),
        gecko_enabled=env.bool("GECKO_ENABLED", True),
        gecko_api=env.str("GECKO_API", default_apis.gecko_api).rstrip("/"),
        gecko_network=env.str("GECKO_NETWORK", default_apis.gecko_network),
        rugcheck_api=env.str("RUGCHECK_API", default_apis.rugcheck_api).rstrip("/"),
        rugcheck_timeout_seconds=env.float("RUGCHECK_TIMEOUT", 5.0),
        jupiter_quote_urls=tuple(env.list("JUPITER_QUOTE_URLS", ",".join(default_apis.jupiter_quote_urls))),
        jupiter_swap_url=env.str("JUPITER_SWAP_URL", default_apis.jupiter_swap_url),
        jupiter_api_key=env.str("JUPITER_API_KEY"),
        jupiter_timeout_seconds=env.float("JUPITER_TIMEOUT", 10.0),
        base_price_urls=tuple(env.list("BASE_PRICE_URLS", ",".join(default_apis.base_price_urls))),
    )
    wallet = WalletSettings(
        private_key=env.str("SOLANA_PRIVATE_KEY"),
        rpc_url=env.str("SOLANA_RPC_URL", WalletSettings.rpc_url),
        rpc_timeout_seconds=env.float("RPC_TIMEOUT_SECONDS", 10.0),
        confirm_timeout_seconds=env.float("CONFIRM_TIMEOUT_SECONDS", 45.0),
    )
    log_dir = env.str("LOG_DIR", "logs")
    monitoring = MonitoringSettings(
        scan_interval_seconds=env.float("SCAN_INTERVAL_SECONDS", 2.0),
        fast_scan_interval_seconds=env.float("FAST_SCAN_INTERVAL_SECONDS", 0.5),
        price_refresh_seconds=env.float("PRICE_REFRESH_SECONDS", 1.0),
        price_cache_ttl_seconds=env.float("PRICE_CACHE_TTL_SECONDS", 1.0),
        base_price_ttl_seconds=env.float("BASE_PRICE_TTL_SECONDS", 300.0),
        base_price_fallback_usd=env.float("BASE_PRICE_FALLBACK_USD", 150.0),
        token_age_max_seconds=env.int("TOKEN_AGE_MAX", 24 * 3600),
        max_new_pools_per_scan=env.int("MAX_NEW_POOLS_PER_SCAN", 10),
        portfolio_summary_seconds=env.int("PORTFOLIO_SUMMARY_SECONDS", 15 * 60),
        log_level=env.str("LOG_LEVEL", "INFO"),
        log_dir=log_dir,
        app_log_file=env.str("APP_LOG_FILE", os.path.join(log_dir, "app.log")),
        database_url=env.str("DATABASE_URL", "sqlite:///sniper.db"),
    )
    return Settings(
        trading=trading,
        security=security,
        telegram=telegram,
        http=http,
        apis=apis,
        wallet=wallet,
        monitoring=monitoring,
    )


def export_settings(settings: Settings, path: str) -> None:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    with open(target, "w", encoding="utf-8") as f:
        json.dump(settings.to_dict(redact=True), f, ensure_ascii=False, indent=2, sort_keys=True)


def import_settings(base: Settings, path: str) -> Settings:
    """Overlay a JSON export onto ``base``. Redacted secrets keep the base value."""
    with open(path, "r", encoding="utf-8") as f:
        payload = json.load(f)
    if not isinstance(payload, dict):
        raise ConfigError(f"Settings file {path} must contain a JSON object")

    sections: dict[str, Any] = {}
    for section in fields(Settings):
        current = getattr(base, section.name)
        overlay = payload.get(section.name)
        if not isinstance(overlay, dict):
            sections[section.name] = current
            continue
        known = {f.name for f in fields(current)}
        changes: dict[str, Any] = {}
        for key, value in overlay.items():
            if key not in known or value == "***":
                continue
            if isinstance(getattr(current, key), tuple) and isinstance(value, list):
                value = tuple(value)
            changes[key] = value
        sections[section.name] = replace(current, **changes)
    imported = Settings(**sections)
    imported.validate()
    return imported
