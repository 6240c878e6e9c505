# config.py
import os
from dataclasses import dataclass, field
from typing import List, Tuple


def _get_env(name: str, default: str | None = None) -> str | None:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value


def _get_env_float(name: str, default: float) -> float:
    v = _get_env(name)
    if v is None:
        return default
    try:
        return float(v)
    except ValueError:
        return default


def _get_env_int(name: str, default: int) -> int:
    v = _get_env(name)
    if v is None:
        return default
    try:
        return int(v)
    except ValueError:
        return default


def _get_env_float_list(name: str, default: Tuple[float, ...]) -> Tuple[float, ...]:
    v = _get_env(name)
    if v is None:
        return default
    try:
        values = tuple(float(x) for x in v.split(",") if x.strip())
    except ValueError:
        return default
    return values or default


@dataclass
class TakeProfitConfig:
    percentage: float        # ganancia sobre el precio de entrada (100 = 2x)
    sell_percentage: float   # % de la cantidad restante a vender


def _default_take_profits() -> List[TakeProfitConfig]:
    return [
        TakeProfitConfig(percentage=100.0, sell_percentage=50.0),
        TakeProfitConfig(percentage=300.0, sell_percentage=25.0),
        TakeProfitConfig(percentage=900.0, sell_percentage=100.0),
    ]


@dataclass
class BotConfig:
    mode: str = "simulation"
    rpc_url: str | None = None
    wallet_private_key: str | None = None

    telegram_bot_token: str = ""
    telegram_chat_id: int | None = None

    invest_amount_sol: float = 0.1
    max_active_trades: int = 5

    stop_loss_percent: float = 50.0
    take_profit_levels: List[TakeProfitConfig] = field(default_factory=_default_take_profits)
    # multiplicador del precio de entrada al que sube el stop tras cada TP
    stop_ratchet_multipliers: Tuple[float, ...] = (1.0, 2.0, 5.0)
    slippage_percent: float = 5.0

    # precios
    fast_price_interval: float = 1.0
    slow_price_interval: float = 30.0
    price_stale_after: float = 10.0
    price_refresh_interval: float = 0.5
    price_history_size: int = 100

    # pool / confirmaciones
    pool_max_attempts: int = 5
    pool_retry_delay: float = 2.0
    confirmation_delay: float = 5.0
    retry_delay: float = 2.0
    max_sell_retries: int = 3
    rpc_timeout: float = 10.0
    commitment: str = "confirmed"

    # "dust": por debajo de esto la posición se da por cerrada
    min_remaining_tokens: float = 1.0
    min_remaining_percent: float = 1.0

    compute_unit_limit: int = 300_000
    compute_unit_price: int = 100_000

    positions_file: str = "./data/positions.json"
    history_file: str = "./data/trade_history.json"

    health_port: int = 8080
    log_level: str = "INFO"


def _load_take_profits() -> List[TakeProfitConfig]:
    levels = []
    for idx, default in enumerate(_default_take_profits(), start=1):
        levels.append(
            TakeProfitConfig(
                percentage=_get_env_float(f"TAKE_PROFIT_{idx}_PERCENT", default.percentage),
                sell_percentage=_get_env_float(
                    f"TAKE_PROFIT_{idx}_SELL_PERCENT", default.sell_percentage
                ),
            )
        )
    return levels


def load_config() -> BotConfig:
    mode = (_get_env("MODE", "simulation") or "simulation").lower()
    if mode not in ("simulation", "real"):
        mode = "simulation"

    telegram_chat_id_str = _get_env("TELEGRAM_CHAT_ID")
    try:
        telegram_chat_id = int(telegram_chat_id_str) if telegram_chat_id_str else None
    except ValueError:
        telegram_chat_id = None

    defaults = BotConfig()

    return BotConfig(
        mode=mode,
        rpc_url=_get_env("SOLANA_RPC_URL") or _get_env("HELIUS_RPC_URL"),
        wallet_private_key=_get_env("WALLET_PRIVATE_KEY"),

        telegram_bot_token=_get_env("TELEGRAM_BOT_TOKEN", "") or "",
        telegram_chat_id=telegram_chat_id,

        invest_amount_sol=_get_env_float("INVEST_AMOUNT_SOL", defaults.invest_amount_sol),
        max_active_trades=_get_env_int("MAX_ACTIVE_TRADES", defaults.max_active_trades),

        stop_loss_percent=_get_env_float("STOP_LOSS_PERCENT", defaults.stop_loss_percent),
        take_profit_levels=_load_take_profits(),
        stop_ratchet_multipliers=_get_env_float_list(
            "STOP_RATCHET_MULTIPLIERS", defaults.stop_ratchet_multipliers
        ),
        slippage_percent=_get_env_float("SLIPPAGE_PERCENT", defaults.slippage_percent),

        fast_price_interval=_get_env_float("FAST_PRICE_INTERVAL", defaults.fast_price_interval),
        slow_price_interval=_get_env_float("SLOW_PRICE_INTERVAL", defaults.slow_price_interval),
        price_stale_after=_get_env_float("PRICE_STALE_AFTER", defaults.price_stale_after),
        price_refresh_interval=_get_env_float(
            "PRICE_REFRESH_INTERVAL", defaults.price_refresh_interval
        ),
        price_history_size=_get_env_int("PRICE_HISTORY_SIZE", defaults.price_history_size),

        pool_max_attempts=_get_env_int("POOL_MAX_ATTEMPTS", defaults.pool_max_attempts),
        pool_retry_delay=_get_env_float("POOL_RETRY_DELAY", defaults.pool_retry_delay),
        confirmation_delay=_get_env_float("CONFIRMATION_DELAY", defaults.confirmation_delay),
        retry_delay=_get_env_float("RETRY_DELAY", defaults.retry_delay),
        max_sell_retries=_get_env_int("MAX_SELL_RETRIES", defaults.max_sell_retries),
        rpc_timeout=_get_env_float("RPC_TIMEOUT", defaults.rpc_timeout),
        commitment=(_get_env("SOLANA_COMMITMENT", defaults.commitment) or "confirmed").lower(),

        min_remaining_tokens=_get_env_float(
            "MIN_REMAINING_TOKENS", defaults.min_remaining_tokens
        ),
        min_remaining_percent=_get_env_float(
            "MIN_REMAINING_PERCENT", defaults.min_remaining_percent
        ),

        compute_unit_limit=_get_env_int("COMPUTE_UNIT_LIMIT", defaults.compute_unit_limit),
        compute_unit_price=_get_env_int("COMPUTE_UNIT_PRICE", defaults.compute_unit_price),

        positions_file=_get_env("POSITIONS_FILE", defaults.positions_file) or defaults.positions_file,
        history_file=_get_env("HISTORY_FILE", defaults.history_file) or defaults.history_file,

        health_port=_get_env_int("HEALTH_PORT", defaults.health_port),
        log_level=_get_env("LOG_LEVEL", "INFO") or "INFO",
    )


def validate_config(config: BotConfig) -> Tuple[List[str], List[str]]:
    """
    Devuelve (errores, avisos). Los errores impiden arrancar en modo real.
    """
    errors: List[str] = []
    warnings: List[str] = []

    # los precios salen de las reservas on-chain, sin RPC no hay bot
    if not config.rpc_url:
        errors.append("SOLANA_RPC_URL o HELIUS_RPC_URL requerido")

    if config.mode == "real" and not config.wallet_private_key:
        errors.append("WALLET_PRIVATE_KEY requerido en MODE=real")
    elif not config.wallet_private_key:
        warnings.append("Sin WALLET_PRIVATE_KEY: la simulación no valida TXs on-chain")

    if config.invest_amount_sol <= 0:
        errors.append("INVEST_AMOUNT_SOL debe ser > 0")

    if config.max_sell_retries < 1:
        errors.append("MAX_SELL_RETRIES debe ser >= 1")

    if not 0 < config.stop_loss_percent < 100:
        warnings.append("STOP_LOSS_PERCENT debería estar entre 0 y 100")

    if config.slippage_percent < 0.1 or config.slippage_percent > 50:
        warnings.append("SLIPPAGE_PERCENT debería estar entre 0.1% y 50%")

    levels = config.take_profit_levels
    for i in range(len(levels) - 1):
        if levels[i].percentage >= levels[i + 1].percentage:
            warnings.append(
                f"Take profit {i + 1} debería ser menor que take profit {i + 2}"
            )

    if len(config.stop_ratchet_multipliers) < len(levels):
        warnings.append(
            "STOP_RATCHET_MULTIPLIERS tiene menos valores que niveles de take profit"
        )

    return errors, warnings
