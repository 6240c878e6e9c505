# models.py
from __future__ import annotations

import time
from collections import deque
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

from errors import TradingError

# tolerancia relativa para la conservación de cantidades
QUANTITY_EPSILON = 1e-6


class TradeSide(str, Enum):
    BUY = "buy"
    SELL = "sell"


class PositionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    PENDING_SELL = "PENDING_SELL"
    CLOSED = "CLOSED"
    MANUAL_REVIEW_NEEDED = "MANUAL_REVIEW_NEEDED"


class ConfirmationState(str, Enum):
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"
    PENDING = "PENDING"


@dataclass
class Price:
    """
    Resultado tipado de una lectura de precio (SOL por token).
    Un precio inválido nunca es 0: se marca valid=False con la razón.
    """

    value: float
    source: str
    valid: bool = True
    timestamp: float = field(default_factory=time.time)
    pool_address: Optional[str] = None
    cached: bool = False
    reason: str = ""

    @classmethod
    def unavailable(
        cls, reason: str, source: str, pool_address: Optional[str] = None
    ) -> "Price":
        return cls(
            value=0.0,
            source=source,
            valid=False,
            pool_address=pool_address,
            reason=reason,
        )


@dataclass
class PricePoint:
    timestamp: float
    price: float
    source: str


@dataclass
class TakeProfitLevel:
    target_price: float
    sell_percentage: float
    triggered: bool = False
    triggered_at: Optional[float] = None
    triggered_price: Optional[float] = None


@dataclass
class PartialSell:
    timestamp: float
    sold_quantity: float
    proceeds: float
    realized_pnl: float
    reason: str
    signature: Optional[str]
    exact: bool = True
    terminal: bool = False


@dataclass
class Position:
    id: str
    token_address: str
    symbol: str

    entry_price: float            # SOL por token
    quantity: float               # tokens adquiridos
    remaining_quantity: float
    invested_amount: float        # SOL invertidos (coste base)

    stop_loss_price: float
    take_profit_levels: List[TakeProfitLevel] = field(default_factory=list)

    status: PositionStatus = PositionStatus.ACTIVE
    pool_address: Optional[str] = None
    token_decimals: int = 6

    # venta pendiente (sólo en PENDING_SELL)
    pending_tx_signature: Optional[str] = None
    pending_token_amount: Optional[float] = None
    pending_sell_percentage: Optional[float] = None
    pending_reason: Optional[str] = None
    pending_level_index: Optional[int] = None
    retry_count: int = 0

    partial_sells: List[PartialSell] = field(default_factory=list)
    total_realized_pnl: float = 0.0

    current_price: float = 0.0
    current_value: float = 0.0
    unrealized_pnl: float = 0.0
    last_price_source: Optional[str] = None
    last_price_update: Optional[float] = None
    price_history: Deque[PricePoint] = field(default_factory=lambda: deque(maxlen=100))

    # umbrales de "dust" propios; None = usar los globales
    min_remaining_tokens: Optional[float] = None
    min_remaining_percent: Optional[float] = None

    entry_time: float = field(default_factory=time.time)
    closed_at: Optional[float] = None
    close_reason: Optional[str] = None
    entry_signature: Optional[str] = None

    # ------------------------------------------------------------------

    @property
    def is_active(self) -> bool:
        return self.status == PositionStatus.ACTIVE

    @property
    def sold_quantity(self) -> float:
        return sum(s.sold_quantity for s in self.partial_sells)

    def quantity_conserved(self) -> bool:
        total = self.sold_quantity + self.remaining_quantity
        return abs(total - self.quantity) <= QUANTITY_EPSILON * max(self.quantity, 1.0)

    def cost_basis(self, sold_quantity: float) -> float:
        if self.quantity <= 0:
            return 0.0
        return sold_quantity / self.quantity * self.invested_amount

    def clear_pending(self) -> None:
        self.pending_tx_signature = None
        self.pending_token_amount = None
        self.pending_sell_percentage = None
        self.pending_reason = None
        self.pending_level_index = None

    def record_price(self, price: Price) -> None:
        self.current_price = price.value
        self.current_value = self.remaining_quantity * price.value
        self.unrealized_pnl = self.current_value - self.cost_basis(self.remaining_quantity)
        self.last_price_source = price.source
        self.last_price_update = price.timestamp
        self.price_history.append(
            PricePoint(timestamp=price.timestamp, price=price.value, source=price.source)
        )

    # ------------------------------------------------------------------
    # Serialización JSON
    # ------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["price_history"] = [asdict(p) for p in self.price_history]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any], history_size: int = 100) -> "Position":
        data = dict(data)
        data["status"] = PositionStatus(data.get("status", PositionStatus.ACTIVE.value))
        data["take_profit_levels"] = [
            TakeProfitLevel(**lvl) for lvl in data.get("take_profit_levels") or []
        ]
        data["partial_sells"] = [PartialSell(**s) for s in data.get("partial_sells") or []]
        data["price_history"] = deque(
            (PricePoint(**p) for p in data.get("price_history") or []),
            maxlen=history_size,
        )
        return cls(**data)


@dataclass
class PoolReserves:
    base_reserve: int             # tokens crudos del pool
    quote_reserve: int            # lamports (WSOL) del pool
    base_decimals: int = 6
    quote_decimals: int = 9

    @property
    def is_valid(self) -> bool:
        return self.base_reserve > 0 and self.quote_reserve > 0

    def spot_price(self) -> float:
        """SOL por token, normalizado por decimales."""
        base = self.base_reserve / (10 ** self.base_decimals)
        quote = self.quote_reserve / (10 ** self.quote_decimals)
        return quote / base


@dataclass
class TradeEvent:
    """
    Evento Buy/Sell decodificado de los logs de una transacción.
    Montos en unidades crudas (lamports / unidades mínimas del token).
    """

    event_type: TradeSide
    timestamp: int
    base_amount: int              # tokens exactos comprados/vendidos
    quote_amount: int             # lamports exactos pagados/recibidos por el usuario
    quote_limit: int              # max_quote_in (buy) / min_quote_out (sell)
    quote_amount_before_fees: int
    user_base_token_reserves: int
    user_quote_token_reserves: int
    pool_base_token_reserves: int
    pool_quote_token_reserves: int
    lp_fee_basis_points: int
    lp_fee: int
    protocol_fee_basis_points: int
    protocol_fee: int
    coin_creator_fee_basis_points: int = 0
    coin_creator_fee: int = 0

    @property
    def total_fees(self) -> int:
        return self.lp_fee + self.protocol_fee + self.coin_creator_fee


@dataclass
class SwapSubmission:
    signature: str
    side: TradeSide
    mint: str
    pool_address: str
    token_amount_raw: int         # tokens (estimados en buy, exactos pedidos en sell)
    quote_amount_raw: int         # lamports estimados
    quote_limit_raw: int
    token_decimals: int = 6
    simulated: bool = False
    pending: bool = True
    submitted_at: float = field(default_factory=time.time)


@dataclass
class SwapSettlement:
    """
    Montos finales de un swap. exact=False significa que NO vienen del
    evento on-chain (balance-delta o estimación previa).
    """

    signature: str
    side: TradeSide
    token_amount: float
    sol_amount: float
    fees_sol: float
    exact: bool
    source: str
    event: Optional[TradeEvent] = None


@dataclass
class SellRequestResult:
    accepted: bool
    position_id: str
    signature: Optional[str] = None
    error: Optional[TradingError] = None

    @property
    def reason(self) -> str:
        return str(self.error) if self.error else ""


@dataclass
class TradeRecord:
    position_id: str
    token_address: str
    symbol: str
    entry_time: float
    exit_time: float
    entry_price: float
    exit_price: float
    quantity: float
    invested_amount: float
    realized_pnl: float
    realized_pnl_percent: float
    exit_reason: str
    status: str
    sells: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
