"""Bot settings assembled from defaults, a YAML file, the environment and CLI flags."""
from __future__ import annotations

import dataclasses
import logging
import os
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

import yaml
from dotenv import dotenv_values, find_dotenv

from dexbot.src.trading.decision_engine.exceptions import ConfigurationError
from dexbot.src.trading.decision_engine.exchange import DEFAULT_BASE_URL
from dexbot.src.trading.decision_engine.models import (
    GasReserveSettings,
    PollingPolicy,
    to_decimal,
)
from dexbot.src.trading.decision_engine.signals import SIGNAL_NAMES

logger = logging.getLogger(__name__)

TICK_MODE_EXCLUSIVE = "exclusive"
TICK_MODE_INDEPENDENT = "independent"
TICK_MODES = (TICK_MODE_EXCLUSIVE, TICK_MODE_INDEPENDENT)

ARB_MODE_TRIANGULAR = "triangular"
ARB_MODE_FEE_TIER = "fee_tier"
ARB_MODES = (ARB_MODE_TRIANGULAR, ARB_MODE_FEE_TIER)

DEFAULT_TOKENS: Dict[str, str] = {
    "USDC": "GUSDC|Unit|none|none",
    "USDT": "GUSDT|Unit|none|none",
    "GALA": "GALA|Unit|none|none",
    "WETH": "GWETH|Unit|none|none",
}

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


@dataclass
class SignalSettings:
    ema_alpha: Decimal = Decimal("0.2")
    momentum_threshold: Decimal = Decimal("0.004")
    mean_reversion_threshold: Decimal = Decimal("0.006")
    fib_lookback: int = 96
    enabled: List[str] = field(default_factory=lambda: list(SIGNAL_NAMES))
    seed: Optional[int] = None


@dataclass
class ArbitrageSettings:
    enabled: bool = True
    path: List[str] = field(default_factory=lambda: ["USDC", "GALA", "WETH", "USDC"])
    start_usd: Decimal = Decimal("3")
    min_profit_bps: Decimal = Decimal("30")
    mode: str = ARB_MODE_TRIANGULAR
    fee_tiers: List[int] = field(default_factory=lambda: [500, 3000, 10000])


@dataclass
class BotSettings:
    """Everything the runner needs to wire up a bot."""

    wallet: Optional[str] = None
    signing_key: Optional[str] = None
    dry_run: bool = True
    base_url: str = DEFAULT_BASE_URL
    tokens: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_TOKENS))
    base_token: str = "GALA"
    stable_token: str = "USDC"
    stable_candidates: List[str] = field(default_factory=list)
    tracked_assets: List[str] = field(default_factory=lambda: ["GALA"])
    buy_assets: List[str] = field(default_factory=lambda: ["GALA"])
    buy_rotation_minutes: float = 10.0
    base_trade_usd: Decimal = Decimal("2")
    max_trade_usd: Decimal = Decimal("25")
    slippage_bps: Decimal = Decimal("50")
    min_profit_bps: Decimal = Decimal("10")
    profit_buffer_bps: Decimal = Decimal("0")
    tick_mode: str = TICK_MODE_EXCLUSIVE
    interval_minutes: float = 30.0
    jitter_seconds: float = 30.0
    confirmation_timeout_ms: int = 180_000
    ledger_path: Optional[str] = "positions.json"
    state_path: Optional[str] = None
    signals: SignalSettings = field(default_factory=SignalSettings)
    arbitrage: ArbitrageSettings = field(default_factory=ArbitrageSettings)
    gas: GasReserveSettings = field(default_factory=GasReserveSettings)
    gas_token: str = "GALA"
    polling: PollingPolicy = field(default_factory=PollingPolicy)

    def token_key(self, alias: str) -> str:
        """Resolve an alias such as ``USDC`` to its provider token class key."""

        if "|" in alias:
            return alias
        return self.tokens.get(alias.upper(), alias)

    @property
    def trade_notional(self) -> Decimal:
        return min(self.max_trade_usd, self.base_trade_usd)

    @property
    def arbitrage_path_keys(self) -> List[str]:
        return [self.token_key(alias) for alias in self.arbitrage.path]

    @property
    def buy_token_keys(self) -> List[str]:
        return [self.token_key(alias) for alias in self.buy_assets]

    @property
    def stable_candidate_keys(self) -> List[str]:
        return [self.token_key(alias) for alias in self.stable_candidates]

    @property
    def interval_seconds(self) -> float:
        return self.interval_minutes * 60.0

    @property
    def confirmation_timeout(self) -> float:
        return self.confirmation_timeout_ms / 1000.0

    def validate(self, *, require_wallet: bool = True) -> "BotSettings":
        if require_wallet:
            if not self.wallet:
                raise ConfigurationError("WALLET_ADDRESS is required (format: eth|0x...)")
            if not self.dry_run and not self.signing_key:
                raise ConfigurationError(
                    "PRIVATE_KEY is required when DRY_RUN is disabled; swaps cannot be signed"
                )
        if not Decimal("0") < self.signals.ema_alpha <= Decimal("1"):
            raise ConfigurationError("EMA_ALPHA must be within (0, 1]")
        if self.signals.fib_lookback <= 0:
            raise ConfigurationError("FIB_LOOKBACK must be positive")
        unknown = sorted(set(self.signals.enabled) - set(SIGNAL_NAMES))
        if unknown:
            raise ConfigurationError(
                f"Unknown signals {unknown}; choose from {list(SIGNAL_NAMES)}"
            )
        if not self.signals.enabled:
            raise ConfigurationError("At least one signal must be enabled")
        for name in ("base_trade_usd", "max_trade_usd"):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be positive")
        for name in ("slippage_bps", "min_profit_bps", "profit_buffer_bps"):
            if getattr(self, name) < 0:
                raise ConfigurationError(f"{name} must not be negative")
        if self.arbitrage.min_profit_bps < 0 or self.arbitrage.start_usd <= 0:
            raise ConfigurationError("Arbitrage start amount must be positive and min profit non-negative")
        self._validate_arbitrage()
        if not self.buy_assets:
            raise ConfigurationError("BUY_ASSETS must name at least one asset")
        if self.buy_rotation_minutes <= 0:
            raise ConfigurationError("BUY_ROTATION_MIN must be positive")
        if self.tick_mode not in TICK_MODES:
            raise ConfigurationError(f"tick_mode must be one of {list(TICK_MODES)}")
        if self.interval_minutes <= 0 or self.jitter_seconds < 0:
            raise ConfigurationError("Tick interval must be positive and jitter non-negative")
        if self.confirmation_timeout_ms <= 0:
            raise ConfigurationError("TX_WAIT_MS must be positive")
        if self.polling.max_attempts <= 0 or self.polling.interval_seconds < 0:
            raise ConfigurationError("Polling needs at least one attempt and a non-negative interval")
        if self.gas.min_reserve < 0 or self.gas.top_up_usd <= 0:
            raise ConfigurationError("Gas reserve must be non-negative and top-up notional positive")
        return self

    def _validate_arbitrage(self) -> None:
        arbitrage = self.arbitrage
        path = "-".join(arbitrage.path)
        if len(set(arbitrage.fee_tiers)) < 2 or min(arbitrage.fee_tiers) <= 0:
            raise ConfigurationError("ARB_FEE_TIERS needs at least two distinct positive tiers")
        if arbitrage.mode == ARB_MODE_TRIANGULAR:
            if len(arbitrage.path) != 4:
                raise ConfigurationError(
                    f"ARB_PATH needs 4 assets (e.g. USDC-GALA-WETH-USDC), got {path}"
                )
        elif arbitrage.mode == ARB_MODE_FEE_TIER:
            if len(arbitrage.path) != 3 or arbitrage.path[0] != arbitrage.path[-1]:
                raise ConfigurationError(
                    f"Fee-tier ARB_PATH needs a round trip of 3 assets (e.g. GALA-WETH-GALA), got {path}"
                )
        else:
            raise ConfigurationError(f"ARB_MODE must be one of {list(ARB_MODES)}")


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    raise ConfigurationError(f"Cannot interpret {value!r} as a boolean")


def _parse_decimal(value: Any) -> Decimal:
    try:
        return to_decimal(value)
    except ValueError as exc:
        raise ConfigurationError(str(exc)) from exc


def _parse_int(value: Any) -> int:
    try:
        return int(str(value).strip())
    except ValueError as exc:
        raise ConfigurationError(f"Cannot interpret {value!r} as an integer") from exc


def _parse_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Cannot interpret {value!r} as a number") from exc


def _parse_list(value: Any, separator: str = ",") -> List[str]:
    if isinstance(value, (list, tuple)):
        items = [str(item) for item in value]
    else:
        items = str(value).split(separator)
    return [item.strip() for item in items if item and item.strip()]


def parse_path(value: Any) -> List[str]:
    """``"usdc-gala-weth-usdc"`` -> ``["USDC", "GALA", "WETH", "USDC"]``."""

    return [item.upper() for item in _parse_list(value, "-")]


def _parse_symbols(value: Any) -> List[str]:
    return [item.upper() for item in _parse_list(value)]


def _parse_fee_tiers(value: Any) -> List[int]:
    return [_parse_int(item) for item in _parse_list(value)]


# (section, key) in YAML -> (attribute path, parser)
_YAML_FIELDS = {
    (None, "wallet"): ("wallet", str),
    (None, "private_key"): ("signing_key", str),
    (None, "dry_run"): ("dry_run", _parse_bool),
    (None, "ledger_path"): ("ledger_path", str),
    (None, "state_path"): ("state_path", str),
    (None, "tick_mode"): ("tick_mode", str),
    ("dex", "base_url"): ("base_url", str),
    ("dex", "tx_wait_ms"): ("confirmation_timeout_ms", _parse_int),
    ("trading", "base_token"): ("base_token", lambda v: str(v).upper()),
    ("trading", "stable_token"): ("stable_token", lambda v: str(v).upper()),
    ("trading", "stable_candidates"): ("stable_candidates", _parse_symbols),
    ("trading", "tracked_assets"): ("tracked_assets", _parse_symbols),
    ("trading", "buy_assets"): ("buy_assets", _parse_symbols),
    ("trading", "buy_rotation_minutes"): ("buy_rotation_minutes", _parse_float),
    ("trading", "base_trade_usd"): ("base_trade_usd", _parse_decimal),
    ("trading", "max_trade_usd"): ("max_trade_usd", _parse_decimal),
    ("trading", "slippage_bps"): ("slippage_bps", _parse_decimal),
    ("trading", "min_profit_bps"): ("min_profit_bps", _parse_decimal),
    ("trading", "profit_buffer_bps"): ("profit_buffer_bps", _parse_decimal),
    ("signals", "ema_alpha"): ("signals.ema_alpha", _parse_decimal),
    ("signals", "momentum_threshold"): ("signals.momentum_threshold", _parse_decimal),
    ("signals", "mean_reversion_threshold"): ("signals.mean_reversion_threshold", _parse_decimal),
    ("signals", "fib_lookback"): ("signals.fib_lookback", _parse_int),
    ("signals", "enabled"): ("signals.enabled", _parse_list),
    ("signals", "seed"): ("signals.seed", _parse_int),
    ("arbitrage", "enabled"): ("arbitrage.enabled", _parse_bool),
    ("arbitrage", "path"): ("arbitrage.path", parse_path),
    ("arbitrage", "start_usd"): ("arbitrage.start_usd", _parse_decimal),
    ("arbitrage", "min_profit_bps"): ("arbitrage.min_profit_bps", _parse_decimal),
    ("arbitrage", "mode"): ("arbitrage.mode", lambda v: str(v).strip().lower()),
    ("arbitrage", "fee_tiers"): ("arbitrage.fee_tiers", _parse_fee_tiers),
    ("gas", "token"): ("gas_token", lambda v: str(v).upper()),
    ("gas", "min_reserve"): ("gas.min_reserve", _parse_decimal),
    ("gas", "top_up_usd"): ("gas.top_up_usd", _parse_decimal),
    ("polling", "interval_seconds"): ("polling.interval_seconds", _parse_float),
    ("polling", "max_attempts"): ("polling.max_attempts", _parse_int),
    ("polling", "epsilon"): ("polling.epsilon", _parse_decimal),
    ("schedule", "interval_minutes"): ("interval_minutes", _parse_float),
    ("schedule", "jitter_seconds"): ("jitter_seconds", _parse_float),
}

ENV_FIELDS = {
    "WALLET_ADDRESS": ("wallet", str),
    "PRIVATE_KEY": ("signing_key", str),
    "DRY_RUN": ("dry_run", _parse_bool),
    "BASE_TRADE_USD": ("base_trade_usd", _parse_decimal),
    "MAX_TRADE_USD": ("max_trade_usd", _parse_decimal),
    "SLIPPAGE_BPS": ("slippage_bps", _parse_decimal),
    "MIN_PROFIT_BPS": ("min_profit_bps", _parse_decimal),
    "PROFIT_BUFFER_BPS": ("profit_buffer_bps", _parse_decimal),
    "EMA_ALPHA": ("signals.ema_alpha", _parse_decimal),
    "MOMENTUM_TH": ("signals.momentum_threshold", _parse_decimal),
    "MEANREV_TH": ("signals.mean_reversion_threshold", _parse_decimal),
    "FIB_LOOKBACK": ("signals.fib_lookback", _parse_int),
    "ARB_PATH": ("arbitrage.path", parse_path),
    "ARB_START_USD": ("arbitrage.start_usd", _parse_decimal),
    "ARB_MIN_PROFIT_BPS": ("arbitrage.min_profit_bps", _parse_decimal),
    "ARB_MODE": ("arbitrage.mode", lambda v: v.lower()),
    "ARB_FEE_TIERS": ("arbitrage.fee_tiers", _parse_fee_tiers),
    "BUY_ASSETS": ("buy_assets", _parse_symbols),
    "BUY_ROTATION_MIN": ("buy_rotation_minutes", _parse_float),
    "STABLE_CANDIDATES": ("stable_candidates", _parse_symbols),
    "BOT_INTERVAL_MIN": ("interval_minutes", _parse_float),
    "JITTER_SEC": ("jitter_seconds", _parse_float),
    "TX_WAIT_MS": ("confirmation_timeout_ms", _parse_int),
    "GAS_MIN_RESERVE": ("gas.min_reserve", _parse_decimal),
    "GAS_TOPUP_USD": ("gas.top_up_usd", _parse_decimal),
    "DEX_BASE_URL": ("base_url", str),
    "LEDGER_PATH": ("ledger_path", str),
    "STATE_PATH": ("state_path", str),
}


def _assign(settings: BotSettings, attribute: str, value: Any) -> None:
    if "." not in attribute:
        setattr(settings, attribute, value)
        return
    section_name, name = attribute.split(".", 1)
    section = getattr(settings, section_name)
    if dataclasses.is_dataclass(section) and section.__dataclass_params__.frozen:
        setattr(settings, section_name, dataclasses.replace(section, **{name: value}))
    else:
        setattr(section, name, value)


def load_yaml_config(config_path: Union[str, Path, None]) -> Dict[str, Any]:
    if not config_path:
        return {}
    path = Path(config_path).expanduser()
    if not path.exists():
        raise ConfigurationError(f"Config file {path} does not exist")
    try:
        data = yaml.safe_load(path.read_text()) or {}
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Unable to parse {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path} must contain a mapping at the top level")
    logger.debug("Loaded configuration from %s", path)
    return data


def apply_yaml(settings: BotSettings, data: Mapping[str, Any]) -> BotSettings:
    tokens = data.get("tokens")
    if isinstance(tokens, dict):
        settings.tokens.update({str(k).upper(): str(v) for k, v in tokens.items()})

    for (section, key), (attribute, parser) in _YAML_FIELDS.items():
        source = data if section is None else data.get(section)
        if not isinstance(source, dict) or key not in source:
            continue
        raw = source[key]
        if raw is None:
            continue
        _assign(settings, attribute, parser(raw))
    return settings


def apply_environment(settings: BotSettings, environ: Mapping[str, str]) -> BotSettings:
    for variable, (attribute, parser) in ENV_FIELDS.items():
        raw = environ.get(variable)
        if raw is None or not str(raw).strip():
            continue
        _assign(settings, attribute, parser(str(raw).strip()))
    for alias in list(settings.tokens):
        override = environ.get(f"TOKEN_{alias}")
        if override and override.strip():
            settings.tokens[alias] = override.strip()
    return settings


def load_env_file(env_file: Union[str, Path, None] = None) -> Dict[str, str]:
    """Read ``KEY=value`` pairs from ``env_file`` or the nearest ``.env`` upwards from the cwd."""

    if env_file:
        path = Path(env_file).expanduser()
        if not path.exists():
            raise ConfigurationError(f"Env file {path} does not exist")
    else:
        found = find_dotenv(usecwd=True)
        if not found:
            return {}
        path = Path(found)
    logger.debug("Loading environment defaults from %s", path)
    return {key: value for key, value in dotenv_values(path).items() if value is not None}


def load_settings(
    config_path: Union[str, Path, None] = None,
    *,
    environ: Optional[Mapping[str, str]] = None,
    overrides: Optional[Mapping[str, Any]] = None,
    require_wallet: bool = True,
    env_file: Union[str, Path, None] = None,
) -> BotSettings:
    """Build validated settings.

    Precedence, lowest first: dataclass defaults, ``config_path``, the
    ``.env`` file, ``environ`` (``os.environ`` when omitted), then
    ``overrides`` keyed by attribute path (``"signals.ema_alpha"``) with
    ``None`` values ignored. ``env_file`` names the dotenv file explicitly;
    without it a ``.env`` is searched for only when ``environ`` is omitted.
    """

    settings = BotSettings()
    apply_yaml(settings, load_yaml_config(config_path))
    if env_file or environ is None:
        dotenv = load_env_file(env_file)
    else:
        dotenv = {}
    apply_environment(settings, {**dotenv, **(os.environ if environ is None else environ)})
    for attribute, value in (overrides or {}).items():
        if value is not None:
            _assign(settings, attribute, value)
    return settings.validate(require_wallet=require_wallet)


def describe(settings: BotSettings) -> Dict[str, Any]:
    """Settings summary safe for logging; the signing key is masked."""

    return {
        "wallet": settings.wallet,
        "signing_key": "***" if settings.signing_key else None,
        "dry_run": settings.dry_run,
        "base_url": settings.base_url,
        "pair": f"{settings.base_token}/{settings.stable_token}",
        "trade_notional": str(settings.trade_notional),
        "slippage_bps": str(settings.slippage_bps),
        "tick_mode": settings.tick_mode,
        "signals": list(settings.signals.enabled),
        "buy_assets": list(settings.buy_assets),
        "stable_candidates": list(settings.stable_candidates),
        "arbitrage": (
            f"{settings.arbitrage.mode} {'-'.join(settings.arbitrage.path)}"
            if settings.arbitrage.enabled
            else None
        ),
        "interval_minutes": settings.interval_minutes,
        "jitter_seconds": settings.jitter_seconds,
    }


def enabled_signal_names(settings: BotSettings) -> Sequence[str]:
    return [name for name in SIGNAL_NAMES if name in settings.signals.enabled]
