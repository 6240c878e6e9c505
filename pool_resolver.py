# pool_resolver.py
#
# Derivación del pool PumpSwap de un token (post-migración de pump.fun).
#
# La dirección del pool es una PDA determinista en dos pasos:
#   1) pool authority = PDA(["pool-authority", mint], PUMP_PROGRAM_ID)
#   2) pool           = PDA(["pool", u16_le(index), authority, mint, WSOL], PUMP_AMM_PROGRAM_ID)
#
# Después se comprueba que la cuenta exista; si todavía no se creó
# (migración en curso) se reintenta con un delay fijo.

import asyncio
import logging
import struct
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from solders.pubkey import Pubkey

from errors import PoolNotFound

logger = logging.getLogger(__name__)

# ----------------- CONSTANTES PUMP.FUN / PUMPSWAP -----------------

PUMP_PROGRAM_ID = Pubkey.from_string("6EF8rrecthR5Dkzon8Nwu78hRvfCKubJ14M5uBEwF6P")
PUMP_AMM_PROGRAM_ID = Pubkey.from_string("pAMMBay6oceH9fJKBRHGP5D4bD4sWpmSwMn52FMfXEA")
WSOL_MINT = Pubkey.from_string("So11111111111111111111111111111111111111112")

CANONICAL_POOL_INDEX = 0


def _as_pubkey(value: Any) -> Pubkey:
    if isinstance(value, Pubkey):
        return value
    return Pubkey.from_string(str(value))


def derive_pool_authority(mint: Any) -> Pubkey:
    authority, _ = Pubkey.find_program_address(
        [b"pool-authority", bytes(_as_pubkey(mint))],
        PUMP_PROGRAM_ID,
    )
    return authority


def derive_pool_address(
    mint: Any,
    pool_index: int = CANONICAL_POOL_INDEX,
    quote_mint: Pubkey = WSOL_MINT,
) -> Pubkey:
    mint_pk = _as_pubkey(mint)
    authority = derive_pool_authority(mint_pk)
    pool, _ = Pubkey.find_program_address(
        [
            b"pool",
            struct.pack("<H", pool_index),
            bytes(authority),
            bytes(mint_pk),
            bytes(quote_mint),
        ],
        PUMP_AMM_PROGRAM_ID,
    )
    return pool


def derive_bonding_curve(mint: Any) -> Pubkey:
    bonding_curve, _ = Pubkey.find_program_address(
        [b"bonding-curve", bytes(_as_pubkey(mint))],
        PUMP_PROGRAM_ID,
    )
    return bonding_curve


def token_addresses(mint: Any) -> Dict[str, str]:
    """Todas las direcciones relacionadas a un mint (pre y post migración)."""
    mint_pk = _as_pubkey(mint)
    return {
        "token_mint": str(mint_pk),
        "bonding_curve": str(derive_bonding_curve(mint_pk)),
        "pool_authority": str(derive_pool_authority(mint_pk)),
        "pool_address": str(derive_pool_address(mint_pk)),
    }


@dataclass
class PoolResolution:
    mint: str
    pool_address: Pubkey
    attempts: int
    retries: int
    cached: bool = False


class PoolResolver:
    """
    resolve(mint) -> PoolResolution, o PoolNotFound si tras max_attempts
    lecturas la cuenta del pool sigue sin existir.
    """

    def __init__(
        self,
        ledger: Any,
        max_attempts: int = 5,
        retry_delay: float = 2.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._ledger = ledger
        self._max_attempts = max(1, int(max_attempts))
        self._retry_delay = retry_delay
        self._sleep = sleep
        self._cache: Dict[str, Pubkey] = {}
        self.stats: Dict[str, int] = {
            "derivations": 0,
            "lookups": 0,
            "retries": 0,
            "not_found": 0,
            "cache_hits": 0,
        }

    def derive(self, mint: Any) -> Pubkey:
        self.stats["derivations"] += 1
        return derive_pool_address(mint)

    def cached(self, mint: str) -> Optional[Pubkey]:
        return self._cache.get(str(mint))

    def forget(self, mint: str) -> None:
        self._cache.pop(str(mint), None)

    async def _pool_exists(self, pool: Pubkey) -> bool:
        self.stats["lookups"] += 1
        try:
            data = await self._ledger.get_account_data(pool)
        except Exception as exc:
            # error de red = "no sabemos", se trata igual que ausente
            logger.debug("[PoolResolver] Error leyendo %s: %r", pool, exc)
            return False
        return data is not None

    async def resolve(self, mint: str) -> PoolResolution:
        mint = str(mint)
        cached = self._cache.get(mint)
        if cached is not None:
            self.stats["cache_hits"] += 1
            return PoolResolution(mint=mint, pool_address=cached, attempts=0, retries=0, cached=True)

        pool = self.derive(mint)

        for attempt in range(1, self._max_attempts + 1):
            if await self._pool_exists(pool):
                self._cache[mint] = pool
                logger.info(
                    "[PoolResolver] Pool %s para %s encontrado (intento %d)",
                    pool,
                    mint,
                    attempt,
                )
                return PoolResolution(
                    mint=mint, pool_address=pool, attempts=attempt, retries=attempt - 1
                )

            if attempt < self._max_attempts:
                self.stats["retries"] += 1
                logger.debug(
                    "[PoolResolver] Pool %s aún no creado, reintento %d/%d en %.1fs",
                    pool,
                    attempt,
                    self._max_attempts - 1,
                    self._retry_delay,
                )
                await self._sleep(self._retry_delay)

        self.stats["not_found"] += 1
        logger.warning(
            "[PoolResolver] Pool %s para %s no existe tras %d intentos",
            pool,
            mint,
            self._max_attempts,
        )
        raise PoolNotFound(mint, str(pool), self._max_attempts)
