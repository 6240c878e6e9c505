# main.py
import asyncio
import logging
from typing import Optional

from dotenv import load_dotenv
from solders.keypair import Keypair

from config import BotConfig, load_config, validate_config
from events import EventBus
from health_server import start_health_server
from ledger import LedgerClient, load_keypair
from pool_resolver import PoolResolver
from price_monitor import PriceMonitor, PriceOracle
from pumpswap_executor import PumpSwapExecutor
from risk_engine import RiskEngine
from scheduler import AsyncioScheduler
from storage import JsonPositionStore, JsonTradeHistory
from telegram_bot import build_application
from trading_engine import PositionStateMachine

logger = logging.getLogger("main")


def build_engine(config: BotConfig, ledger: LedgerClient, keypair: Optional[Keypair]):
    """Arma el grafo completo: resolver -> executor -> motor -> monitor de precios."""
    resolver = PoolResolver(
        ledger,
        max_attempts=config.pool_max_attempts,
        retry_delay=config.pool_retry_delay,
    )
    executor = PumpSwapExecutor(config, ledger, resolver, keypair=keypair)
    scheduler = AsyncioScheduler()
    engine = PositionStateMachine(
        config=config,
        executor=executor,
        risk=RiskEngine.from_config(config),
        store=JsonPositionStore(config.positions_file, history_size=config.price_history_size),
        history=JsonTradeHistory(config.history_file),
        bus=EventBus(),
        scheduler=scheduler,
    )
    oracle = PriceOracle(
        ledger,
        resolver,
        refresh_interval=config.price_refresh_interval,
        timeout=config.rpc_timeout,
    )
    monitor = PriceMonitor(
        engine,
        oracle,
        fast_interval=config.fast_price_interval,
        slow_interval=config.slow_price_interval,
        stale_after=config.price_stale_after,
    )
    return engine, monitor, scheduler


async def run(config: BotConfig) -> None:
    keypair = load_keypair(config.wallet_private_key) if config.wallet_private_key else None
    if keypair is not None:
        logger.info("🔑 Wallet cargada: %s", keypair.pubkey())

    ledger = LedgerClient(config.rpc_url, commitment=config.commitment, timeout=config.rpc_timeout)
    engine, monitor, scheduler = build_engine(config, ledger, keypair)

    restored = engine.load()
    engine.resume()
    logger.info("📂 %d posiciones restauradas", restored)

    monitor.start(scheduler)
    health_task = asyncio.create_task(start_health_server(engine, port=config.health_port))

    app = None
    if config.telegram_bot_token:
        app = await build_application(config, engine)
    else:
        logger.warning("TELEGRAM_BOT_TOKEN no configurado, sin comandos ni notificaciones.")

    stop = asyncio.Event()
    try:
        if app is not None:
            async with app:
                await app.start()
                await app.updater.start_polling(drop_pending_updates=True)
                logger.info("✅ Telegram bot arrancando (polling) + PriceMonitor activo...")
                await stop.wait()
                await app.updater.stop()
                await app.stop()
        else:
            logger.info("✅ PriceMonitor activo...")
            await stop.wait()
    finally:
        monitor.stop()
        scheduler.cancel_all()
        health_task.cancel()
        await engine.bus.drain()
        await ledger.close()


def main() -> None:
    # Localmente lee .env; en Railway usas variables de entorno directas
    load_dotenv()

    config = load_config()

    # Logging global
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    errors, warnings = validate_config(config)
    for warning in warnings:
        logger.warning("⚠️  %s", warning)
    if errors:
        raise RuntimeError("Configuración inválida: " + "; ".join(errors))

    logger.info("🚀 Arrancando en MODE=%s", config.mode)
    try:
        asyncio.run(run(config))
    except KeyboardInterrupt:
        logger.info("⏹️  Bot detenido por el usuario (Ctrl+C).")


if __name__ == "__main__":
    main()
