# price_monitor.py
"""
Precios de tus posiciones leídos directamente de las reservas del pool
PumpSwap (sin APIs de terceros):

    precio (SOL/token) = (quote_reserve / 1e9) / (base_reserve / 10^decimals)

- Ruta rápida: lee las dos token accounts de reserva del pool (ATAs del pool
  para el mint y para WSOL).
- Ruta lenta: re-resuelve el pool si no está cacheado, lee la cuenta del
  pool y usa las token accounts que registra su layout.

PriceMonitor corre las dos cadencias: la rápida para todas las posiciones
vivas y la lenta sólo para las que llevan un rato sin precio válido.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import replace
from typing import Any, Callable, Dict, Optional, Tuple

from solders.pubkey import Pubkey
from spl.token.instructions import get_associated_token_address

from errors import TradingError
from models import PoolReserves, Position, PositionStatus, Price
from pool_resolver import WSOL_MINT, PoolResolver, derive_pool_address
from pumpswap_executor import PoolLayout

logger = logging.getLogger(__name__)

FAST = "fast"
SLOW = "slow"


def _as_pubkey(value: Any) -> Pubkey:
    if isinstance(value, Pubkey):
        return value
    return Pubkey.from_string(str(value))


class PriceOracle:
    def __init__(
        self,
        ledger: Any,
        resolver: PoolResolver,
        refresh_interval: float = 0.5,
        timeout: float = 10.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._ledger = ledger
        self._resolver = resolver
        self._refresh_interval = refresh_interval
        self._timeout = timeout
        self._clock = clock
        self._cache: Dict[Tuple[str, str], Price] = {}
        self.stats: Dict[str, int] = {
            "updates": 0,
            "cache_hits": 0,
            "unavailable": 0,
            "fast": 0,
            "slow": 0,
        }

    def invalidate(self, mint: str) -> None:
        for key in [k for k in self._cache if k[0] == str(mint)]:
            self._cache.pop(key, None)

    async def price(
        self,
        mint: str,
        pool_address: Optional[str] = None,
        decimals: int = 6,
        source: str = FAST,
    ) -> Price:
        mint = str(mint)
        pool_key = str(pool_address) if pool_address else ""
        key = (mint, pool_key)

        cached = self._cache.get(key)
        now = self._clock()
        if cached is not None and now - cached.timestamp < self._refresh_interval:
            self.stats["cache_hits"] += 1
            return replace(cached, cached=True)

        reader = self._read_fast if source == FAST else self._read_slow
        try:
            price = await asyncio.wait_for(
                reader(mint, pool_address, decimals), timeout=self._timeout
            )
        except asyncio.TimeoutError:
            price = Price.unavailable("timeout", source, pool_address=pool_key or None)
        except TradingError as exc:
            price = Price.unavailable(str(exc), source, pool_address=pool_key or None)
        except Exception as exc:
            # fallo de RPC en este ciclo: el siguiente lo vuelve a intentar
            logger.debug("[PriceOracle] Error leyendo %s: %r", mint, exc)
            price = Price.unavailable(repr(exc), source, pool_address=pool_key or None)

        if not price.valid:
            self.stats["unavailable"] += 1
            logger.debug("[PriceOracle] Sin precio %s para %s: %s", source, mint, price.reason)
            return price

        self.stats["updates"] += 1
        self.stats[source] = self.stats.get(source, 0) + 1
        self._cache[key] = price
        return price

    def _from_reserves(
        self, reserves: PoolReserves, source: str, pool_address: Pubkey
    ) -> Price:
        if not reserves.is_valid:
            return Price.unavailable(
                "reservas en cero", source, pool_address=str(pool_address)
            )
        return Price(
            value=reserves.spot_price(),
            source=source,
            timestamp=self._clock(),
            pool_address=str(pool_address),
        )

    async def _read_fast(self, mint: str, pool_address: Optional[str], decimals: int) -> Price:
        mint_pk = _as_pubkey(mint)
        pool = _as_pubkey(pool_address) if pool_address else derive_pool_address(mint_pk)
        base_account = get_associated_token_address(pool, mint_pk)
        quote_account = get_associated_token_address(pool, WSOL_MINT)
        return await self._read_reserves(base_account, quote_account, decimals, FAST, pool)

    async def _read_slow(self, mint: str, pool_address: Optional[str], decimals: int) -> Price:
        pool = _as_pubkey(pool_address) if pool_address else self._resolver.cached(mint)
        if pool is None:
            resolution = await self._resolver.resolve(mint)
            pool = resolution.pool_address

        data = await self._ledger.get_account_data(pool)
        if data is None:
            # la dirección cacheada ya no sirve, la próxima vez se re-resuelve
            self._resolver.forget(mint)
            return Price.unavailable("cuenta del pool no encontrada", SLOW, pool_address=str(pool))
        layout = PoolLayout.parse(data)
        return await self._read_reserves(
            layout.pool_base_token_account,
            layout.pool_quote_token_account,
            decimals,
            SLOW,
            pool,
        )

    async def _read_reserves(
        self,
        base_account: Pubkey,
        quote_account: Pubkey,
        decimals: int,
        source: str,
        pool: Pubkey,
    ) -> Price:
        base, quote = await asyncio.gather(
            self._ledger.get_token_balance(base_account),
            self._ledger.get_token_balance(quote_account),
        )
        if base is None or quote is None:
            return Price.unavailable("token accounts del pool ilegibles", source, str(pool))
        reserves = PoolReserves(
            base_reserve=base.amount,
            quote_reserve=quote.amount,
            base_decimals=base.decimals if base.decimals is not None else decimals,
            quote_decimals=quote.decimals if quote.decimals is not None else 9,
        )
        return self._from_reserves(reserves, source, pool)


class PriceMonitor:
    """
    Conecta el oráculo con el motor: cada precio válido va a
    engine.apply_price(), que actualiza la posición y evalúa SL/TP.
    """

    def __init__(
        self,
        engine: Any,
        oracle: PriceOracle,
        fast_interval: float = 1.0,
        slow_interval: float = 30.0,
        stale_after: float = 10.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.engine = engine
        self.oracle = oracle
        self.fast_interval = fast_interval
        self.slow_interval = slow_interval
        self.stale_after = stale_after
        self._clock = clock
        self._handles: list = []

    def _live_positions(self) -> list:
        return [
            p
            for p in self.engine.list_positions()
            if p.status in (PositionStatus.ACTIVE, PositionStatus.PENDING_SELL)
        ]

    async def _update(self, position: Position, source: str) -> Optional[Price]:
        price = await self.oracle.price(
            position.token_address,
            pool_address=position.pool_address if source == FAST else None,
            decimals=position.token_decimals,
            source=source,
        )
        if not price.valid:
            return None
        await self.engine.apply_price(position.id, price)
        return price

    async def tick_fast(self) -> int:
        positions = self._live_positions()
        if not positions:
            return 0
        # cada posición es independiente: una lectura lenta no bloquea al resto
        results = await asyncio.gather(
            *(self._update(p, FAST) for p in positions), return_exceptions=True
        )
        updated = 0
        for pos, result in zip(positions, results):
            if isinstance(result, Exception):
                logger.warning("[PriceMonitor] Error actualizando %s: %r", pos.symbol, result)
            elif result is not None:
                updated += 1
        return updated

    async def tick_slow(self) -> int:
        now = self._clock()
        stale = [
            p
            for p in self._live_positions()
            if p.last_price_update is None or now - p.last_price_update > self.stale_after
        ]
        if not stale:
            return 0
        logger.info("[PriceMonitor] %d posiciones sin precio reciente, ruta lenta", len(stale))
        results = await asyncio.gather(
            *(self._update(p, SLOW) for p in stale), return_exceptions=True
        )
        updated = 0
        for pos, result in zip(stale, results):
            if isinstance(result, Exception):
                logger.warning("[PriceMonitor] Error (lento) en %s: %r", pos.symbol, result)
            elif result is not None:
                updated += 1
        return updated

    def start(self, scheduler: Any) -> None:
        self._handles = [
            scheduler.every(self.fast_interval, self.tick_fast, name="price-fast"),
            scheduler.every(self.slow_interval, self.tick_slow, name="price-slow"),
        ]

    def stop(self) -> None:
        for handle in self._handles:
            handle.cancel()
        self._handles = []
