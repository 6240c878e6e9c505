# risk_engine.py
"""
Reglas de salida: stop loss y niveles de take profit con stop escalonado.

- Stop loss: precio <= stop  -> vender 100% ("stop loss").
- Take profit: primer nivel no disparado (en orden ascendente) cuyo
  target se alcanzó -> se marca disparado y se vende su porcentaje.
- Tras cada TP aceptado el stop sube a entry * multiplicador del nivel
  (1.0 = breakeven, 2.0, 5.0). Nunca baja.
"""

import logging
import time
from dataclasses import dataclass
from typing import List, Optional, Sequence

from config import BotConfig, TakeProfitConfig
from models import Position, PositionStatus, TakeProfitLevel

logger = logging.getLogger(__name__)

STOP_LOSS_REASON = "stop loss"


@dataclass
class SellSignal:
    percentage: float
    reason: str
    level_index: Optional[int] = None
    price: float = 0.0

    @property
    def is_take_profit(self) -> bool:
        return self.level_index is not None


def take_profit_reason(level_index: int) -> str:
    return f"take profit {level_index + 1}"


class RiskEngine:
    def __init__(
        self,
        stop_loss_percent: float = 50.0,
        take_profits: Optional[Sequence[TakeProfitConfig]] = None,
        ratchet_multipliers: Sequence[float] = (1.0, 2.0, 5.0),
    ) -> None:
        self.stop_loss_percent = stop_loss_percent
        self.take_profits: List[TakeProfitConfig] = sorted(
            take_profits or [], key=lambda tp: tp.percentage
        )
        self.ratchet_multipliers = tuple(ratchet_multipliers)

    @classmethod
    def from_config(cls, config: BotConfig) -> "RiskEngine":
        return cls(
            stop_loss_percent=config.stop_loss_percent,
            take_profits=config.take_profit_levels,
            ratchet_multipliers=config.stop_ratchet_multipliers,
        )

    # ----- niveles iniciales -----

    def initial_stop_loss(self, entry_price: float) -> float:
        return entry_price * (1.0 - self.stop_loss_percent / 100.0)

    def build_take_profit_levels(self, entry_price: float) -> List[TakeProfitLevel]:
        return [
            TakeProfitLevel(
                target_price=entry_price * (1.0 + tp.percentage / 100.0),
                sell_percentage=tp.sell_percentage,
            )
            for tp in self.take_profits
        ]

    # ----- evaluación -----

    def evaluate(self, position: Position) -> Optional[SellSignal]:
        if position.status != PositionStatus.ACTIVE:
            return None
        price = position.current_price
        if price <= 0:
            return None

        if price <= position.stop_loss_price:
            logger.warning(
                "[Risk] Stop loss para %s: %.10f <= %.10f",
                position.symbol,
                price,
                position.stop_loss_price,
            )
            return SellSignal(percentage=100.0, reason=STOP_LOSS_REASON, price=price)

        ordered = sorted(
            range(len(position.take_profit_levels)),
            key=lambda i: position.take_profit_levels[i].target_price,
        )
        for idx in ordered:
            level = position.take_profit_levels[idx]
            if level.triggered:
                continue
            if price >= level.target_price:
                # se marca ya: un segundo tick no puede volver a dispararlo
                level.triggered = True
                level.triggered_at = time.time()
                level.triggered_price = price
                logger.info(
                    "[Risk] Take profit %d para %s: %.10f >= %.10f (vender %.0f%%)",
                    idx + 1,
                    position.symbol,
                    price,
                    level.target_price,
                    level.sell_percentage,
                )
                return SellSignal(
                    percentage=level.sell_percentage,
                    reason=take_profit_reason(idx),
                    level_index=idx,
                    price=price,
                )
            break
        return None

    def on_sell_result(self, position: Position, signal: SellSignal, accepted: bool) -> None:
        if not signal.is_take_profit:
            return
        idx = signal.level_index
        if idx is None or idx >= len(position.take_profit_levels):
            return

        if not accepted:
            level = position.take_profit_levels[idx]
            level.triggered = False
            level.triggered_at = None
            level.triggered_price = None
            logger.info(
                "[Risk] Venta de TP %d rechazada para %s, nivel rearmado",
                idx + 1,
                position.symbol,
            )
            return

        self.ratchet_stop(position, idx)

    def ratchet_stop(self, position: Position, level_index: int) -> float:
        if level_index >= len(self.ratchet_multipliers):
            return position.stop_loss_price
        candidate = position.entry_price * self.ratchet_multipliers[level_index]
        if candidate > position.stop_loss_price:
            logger.info(
                "[Risk] Stop de %s sube %.10f -> %.10f (TP %d)",
                position.symbol,
                position.stop_loss_price,
                candidate,
                level_index + 1,
            )
            position.stop_loss_price = candidate
        return position.stop_loss_price
