# trading_engine.py
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections import deque
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from config import BotConfig
from errors import (
    ConfirmationTimeout,
    PositionNotFound,
    RetryBudgetExhausted,
    SellRejected,
    SubmissionFailed,
    TradingError,
)
from events import EventBus, EventType
from models import (
    ConfirmationState,
    PartialSell,
    Position,
    PositionStatus,
    Price,
    SellRequestResult,
    SwapSettlement,
    SwapSubmission,
    TradeRecord,
    TradeSide,
)
from pumpswap_executor import LAMPORTS_PER_SOL, SIMULATED_SIGNATURE_PREFIX, estimate_settlement
from risk_engine import STOP_LOSS_REASON, RiskEngine, SellSignal
from scheduler import AsyncioScheduler, ScheduledHandle, Scheduler
from storage import JsonPositionStore, JsonTradeHistory

logger = logging.getLogger(__name__)

FORCE_CLOSE_REASON = "force close"
EMERGENCY_REASON = "emergency stop"


class PositionStateMachine:
    """
    Dueño de las posiciones vivas.

    ACTIVE -> PENDING_SELL -> ACTIVE (venta parcial / reintento)
                           -> CLOSED (vendido todo o dust)
                           -> MANUAL_REVIEW_NEEDED (reintentos agotados)

    - PENDING_SELL es el mutex: sólo una venta en vuelo por posición.
    - Un asyncio.Lock por posición serializa las transiciones; nunca se
      mantiene durante I/O de red, así que tras cada await se revalida.
    - Se persiste tras cada transición y se publica en el EventBus.
    """

    def __init__(
        self,
        config: BotConfig,
        executor: Any,
        risk: Optional[RiskEngine] = None,
        store: Optional[JsonPositionStore] = None,
        history: Optional[JsonTradeHistory] = None,
        bus: Optional[EventBus] = None,
        scheduler: Optional[Scheduler] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.executor = executor
        self.risk = risk or RiskEngine.from_config(config)
        self.store = store
        self.history = history
        self.bus = bus or EventBus()
        self.scheduler = scheduler or AsyncioScheduler()
        self._sleep = sleep
        self._clock = clock

        # position_id -> Position (sólo ACTIVE / PENDING_SELL)
        self._positions: Dict[str, Position] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._handles: Dict[str, List[ScheduledHandle]] = {}
        self._submissions: Dict[str, SwapSubmission] = {}
        self._opening: Set[str] = set()

        self._stats: Dict[str, int] = {
            "sells_requested": 0,
            "sells_rejected": 0,
            "sells_submitted": 0,
            "sells_completed": 0,
            "submission_failures": 0,
            "confirmation_retries": 0,
            "manual_reviews": 0,
            "closed": 0,
        }
        self._total_realized_pnl_sol: float = 0.0
        self._total_trades: int = 0
        self._wins: int = 0
        self._losses: int = 0

        # bandera para aceptar nuevas posiciones
        self.active: bool = True

    # -------------------------------------------------------------------------
    # Acceso a posiciones
    # -------------------------------------------------------------------------

    def _lock_for(self, position_id: str) -> asyncio.Lock:
        lock = self._locks.get(position_id)
        if lock is None:
            lock = asyncio.Lock()
            # ids desconocidos o ya archivados no dejan entrada
            if position_id in self._positions:
                self._locks[position_id] = lock
        return lock

    def get_position(self, position_id: str) -> Optional[Position]:
        return self._positions.get(position_id)

    def list_positions(self) -> List[Position]:
        return list(self._positions.values())

    def find_by_token(self, token_address: str) -> Optional[Position]:
        for pos in self._positions.values():
            if pos.token_address == token_address:
                return pos
        return None

    def _persist(self) -> None:
        if self.store is None:
            return
        try:
            self.store.save(self._positions.values())
        except OSError as exc:
            logger.error("[Engine] No se pudo persistir posiciones: %r", exc)

    def _schedule(
        self,
        position_id: str,
        delay: float,
        callback: Callable[[], Awaitable[Any]],
        name: str,
    ) -> ScheduledHandle:
        handle = self.scheduler.call_later(delay, callback, name=name)
        handles = [h for h in self._handles.get(position_id, []) if not h.done]
        handles.append(handle)
        self._handles[position_id] = handles
        return handle

    def _cancel_scheduled(self, position_id: str) -> None:
        for handle in self._handles.pop(position_id, []):
            handle.cancel()

    # -------------------------------------------------------------------------
    # Carga / reanudación
    # -------------------------------------------------------------------------

    def load(self) -> int:
        """Restaura posiciones vivas desde el store (al arrancar)."""
        if self.store is None:
            return 0
        self._positions = self.store.load()
        return len(self._positions)

    def resume(self) -> None:
        """
        Tras un reinicio: ventas con firma vuelven a chequearse; ventas que
        quedaron en PENDING_SELL sin firma (crash a mitad de envío) vuelven
        a ACTIVE.
        """
        for pos in self._positions.values():
            if pos.status != PositionStatus.PENDING_SELL:
                continue
            if pos.pending_tx_signature:
                signature = pos.pending_tx_signature
                logger.info("[Engine] Reanudando confirmación de %s (%s)", pos.symbol, signature)
                self._schedule(
                    pos.id,
                    self.config.confirmation_delay,
                    lambda pid=pos.id, sig=signature: self._check_confirmation(pid, sig),
                    name=f"confirm-{pos.id}",
                )
            else:
                logger.warning("[Engine] %s quedó PENDING_SELL sin firma, vuelve a ACTIVE", pos.symbol)
                pos.clear_pending()
                pos.status = PositionStatus.ACTIVE
        self._persist()

    # -------------------------------------------------------------------------
    # Apertura de posiciones
    # -------------------------------------------------------------------------

    async def open_position(
        self, mint: str, symbol: str = "", sol_amount: Optional[float] = None
    ) -> Position:
        """
        Compra `sol_amount` SOL de `mint` por el executor y crea la posición
        cuando la compra confirma, con los montos liquidados.
        """
        size_sol = sol_amount if sol_amount is not None else self.config.invest_amount_sol

        if not self.active:
            raise TradingError(f"Bot desactivado, ignorando {symbol or mint}")
        if mint in self._opening or self.find_by_token(mint) is not None:
            raise TradingError(f"Ya existe posición para mint {mint}")
        if len(self._positions) + len(self._opening) >= self.config.max_active_trades:
            raise TradingError("Max active trades alcanzado")

        self._opening.add(mint)
        try:
            submission = await self.executor.buy(mint, size_sol)
            state = await self._await_buy_confirmation(submission)
            if state != ConfirmationState.CONFIRMED:
                raise SubmissionFailed(
                    f"Compra {submission.signature} no confirmada ({state.value})"
                )
            settlement = await self.executor.settle(submission)
        finally:
            self._opening.discard(mint)

        if settlement.token_amount <= 0 or settlement.sol_amount <= 0:
            raise SubmissionFailed(f"Compra {submission.signature} sin montos liquidados")

        if not settlement.exact:
            logger.warning(
                "[Engine] Compra de %s liquidada por %s (montos NO exactos)",
                symbol or mint,
                settlement.source,
            )

        return self.add_position(
            mint=mint,
            symbol=symbol,
            token_amount=settlement.token_amount,
            sol_amount=settlement.sol_amount,
            pool_address=submission.pool_address,
            token_decimals=submission.token_decimals,
            signature=submission.signature,
        )

    async def _await_buy_confirmation(self, submission: SwapSubmission) -> ConfirmationState:
        state = ConfirmationState.PENDING
        for attempt in range(1, max(1, self.config.max_sell_retries) + 1):
            if not submission.simulated:
                await self._sleep(self.config.confirmation_delay)
            try:
                state = await self.executor.confirmation_status(submission.signature)
            except ConfirmationTimeout as exc:
                logger.warning("[Engine] Timeout confirmando compra (intento %d): %s", attempt, exc)
                continue
            if state != ConfirmationState.PENDING:
                return state
        return state

    def add_position(
        self,
        mint: str,
        symbol: str,
        token_amount: float,
        sol_amount: float,
        pool_address: Optional[str] = None,
        token_decimals: int = 6,
        signature: Optional[str] = None,
    ) -> Position:
        """Registra una compra ya ejecutada (propia o externa)."""
        if token_amount <= 0 or sol_amount <= 0:
            raise ValueError("token_amount y sol_amount deben ser > 0")

        entry_price = sol_amount / token_amount
        pos = Position(
            id=uuid.uuid4().hex[:12],
            token_address=mint,
            symbol=symbol or mint[:6],
            entry_price=entry_price,
            quantity=token_amount,
            remaining_quantity=token_amount,
            invested_amount=sol_amount,
            stop_loss_price=self.risk.initial_stop_loss(entry_price),
            take_profit_levels=self.risk.build_take_profit_levels(entry_price),
            pool_address=pool_address,
            token_decimals=token_decimals,
            entry_signature=signature,
            entry_time=self._clock(),
        )
        pos.price_history = deque(maxlen=self.config.price_history_size)
        pos.record_price(Price(value=entry_price, source="entry", timestamp=self._clock()))

        self._positions[pos.id] = pos
        self._persist()

        logger.info(
            "[Engine] Nueva posición %s (%s) %.4f SOL -> %.2f tokens, entry=%.10f, SL=%.10f",
            pos.symbol,
            pos.id,
            sol_amount,
            token_amount,
            entry_price,
            pos.stop_loss_price,
        )
        self.bus.publish(
            EventType.POSITION_OPENED,
            pos.id,
            symbol=pos.symbol,
            token_address=mint,
            entry_price=entry_price,
            quantity=token_amount,
            invested_amount=sol_amount,
            stop_loss_price=pos.stop_loss_price,
            signature=signature,
        )
        return pos

    # -------------------------------------------------------------------------
    # Precios + SL / TP
    # -------------------------------------------------------------------------

    async def apply_price(self, position_id: str, price: Price) -> Optional[SellRequestResult]:
        """
        Actualiza los campos de precio y evalúa SL/TP. Si salta una regla
        se pide la venta y se informa el resultado al RiskEngine.
        """
        if not price.valid:
            return None

        async with self._lock_for(position_id):
            pos = self._positions.get(position_id)
            if pos is None or pos.status not in (PositionStatus.ACTIVE, PositionStatus.PENDING_SELL):
                return None
            pos.record_price(price)
            signal = self.risk.evaluate(pos)
            if signal is not None:
                # el nivel marcado debe sobrevivir a un reinicio
                self._persist()

        if signal is None:
            return None

        event_type = EventType.STOP_LOSS if signal.reason == STOP_LOSS_REASON else EventType.TAKE_PROFIT
        self.bus.publish(
            event_type,
            position_id,
            symbol=pos.symbol,
            reason=signal.reason,
            price=signal.price,
            percentage=signal.percentage,
            level_index=signal.level_index,
        )

        result = await self.request_sell(
            position_id, signal.percentage, signal.reason, level_index=signal.level_index
        )

        async with self._lock_for(position_id):
            self.risk.on_sell_result(pos, signal, result.accepted)
            if position_id in self._positions:
                self._persist()
        return result

    # -------------------------------------------------------------------------
    # Ventas
    # -------------------------------------------------------------------------

    async def request_sell(
        self,
        position_id: str,
        percentage: float,
        reason: str,
        level_index: Optional[int] = None,
    ) -> SellRequestResult:
        """
        Vende `percentage` % de la cantidad restante (>= 100 = todo).
        Nunca lanza por invariantes: el rechazo va tipado en el resultado.
        """
        lock = self._lock_for(position_id)
        async with lock:
            pos = self._positions.get(position_id)
            if pos is None:
                return SellRequestResult(
                    False, position_id, error=PositionNotFound(f"Posición {position_id} no existe")
                )
            if pos.status != PositionStatus.ACTIVE:
                self._stats["sells_rejected"] += 1
                logger.info(
                    "[Engine] Venta rechazada para %s: estado %s", pos.symbol, pos.status.value
                )
                return SellRequestResult(
                    False,
                    position_id,
                    error=SellRejected(f"Posición {pos.symbol} en estado {pos.status.value}"),
                )

            if percentage >= 100.0:
                amount = pos.remaining_quantity
            else:
                amount = pos.remaining_quantity * max(percentage, 0.0) / 100.0
            if amount <= 0:
                self._stats["sells_rejected"] += 1
                return SellRequestResult(
                    False, position_id, error=SellRejected("Cantidad a vender es 0")
                )

            pos.status = PositionStatus.PENDING_SELL
            pos.pending_token_amount = amount
            pos.pending_sell_percentage = percentage
            pos.pending_reason = reason
            pos.pending_level_index = level_index
            pos.pending_tx_signature = None
            self._stats["sells_requested"] += 1
            self._persist()
            token_address = pos.token_address
            decimals = pos.token_decimals
            symbol = pos.symbol

        logger.info(
            "[Engine] Venta %s de %s: %.2f%% (%.4f tokens)", reason, symbol, percentage, amount
        )
        self.bus.publish(
            EventType.SELL_REQUESTED,
            position_id,
            symbol=symbol,
            reason=reason,
            percentage=percentage,
            amount=amount,
        )

        try:
            submission = await self.executor.sell(token_address, amount, decimals=decimals)
        except Exception as exc:
            error = exc if isinstance(exc, TradingError) else SubmissionFailed(repr(exc))
            return await self._on_submission_failed(position_id, error)

        async with lock:
            pos = self._positions.get(position_id)
            if (
                pos is None
                or pos.status != PositionStatus.PENDING_SELL
                or pos.pending_tx_signature is not None
            ):
                # force close durante el envío
                logger.warning(
                    "[Engine] %s cambió durante el envío, firma %s sin seguimiento",
                    symbol,
                    submission.signature,
                )
                return SellRequestResult(
                    False,
                    position_id,
                    signature=submission.signature,
                    error=SellRejected("Posición cerrada durante el envío"),
                )

            pos.pending_tx_signature = submission.signature
            self._submissions[position_id] = submission
            self._stats["sells_submitted"] += 1
            self._persist()
            signature = submission.signature
            self._schedule(
                position_id,
                self.config.confirmation_delay,
                lambda: self._check_confirmation(position_id, signature),
                name=f"confirm-{position_id}",
            )

        self.bus.publish(
            EventType.SELL_SUBMITTED, position_id, symbol=symbol, signature=signature
        )
        return SellRequestResult(True, position_id, signature=signature)

    async def _on_submission_failed(
        self, position_id: str, error: TradingError
    ) -> SellRequestResult:
        async with self._lock_for(position_id):
            pos = self._positions.get(position_id)
            if pos is None or pos.status != PositionStatus.PENDING_SELL:
                return SellRequestResult(False, position_id, error=error)

            self._stats["submission_failures"] += 1
            pos.retry_count += 1
            level_index = pos.pending_level_index
            if level_index is not None:
                # el nivel vuelve a quedar armado: el siguiente precio puede dispararlo
                self.risk.on_sell_result(
                    pos,
                    SellSignal(
                        percentage=pos.pending_sell_percentage or 100.0,
                        reason=pos.pending_reason or "",
                        level_index=level_index,
                    ),
                    accepted=False,
                )
            pos.clear_pending()
            logger.error(
                "[Engine] Envío de venta falló para %s (%d/%d): %s",
                pos.symbol,
                pos.retry_count,
                self.config.max_sell_retries,
                error,
            )
            if pos.retry_count >= self.config.max_sell_retries:
                error = RetryBudgetExhausted(f"Envío fallido {pos.retry_count} veces: {error}")
                self._archive(pos, PositionStatus.MANUAL_REVIEW_NEEDED, str(error))
            else:
                pos.status = PositionStatus.ACTIVE
                self._persist()
            symbol = pos.symbol
            retry_count = pos.retry_count

        self.bus.publish(
            EventType.SELL_FAILED,
            position_id,
            symbol=symbol,
            error=str(error),
            retry_count=retry_count,
        )
        return SellRequestResult(False, position_id, error=error)

    async def _check_confirmation(self, position_id: str, signature: str) -> None:
        lock = self._lock_for(position_id)
        async with lock:
            pos = self._positions.get(position_id)
            if not self._still_pending(pos, signature):
                return
            submission = self._submissions.get(position_id) or self._rebuild_submission(pos)

        try:
            state = await self.executor.confirmation_status(signature)
        except ConfirmationTimeout as exc:
            logger.warning("[Engine] %s", exc)
            state = ConfirmationState.PENDING
        except Exception as exc:
            logger.warning("[Engine] Error consultando %s: %r", signature, exc)
            state = ConfirmationState.PENDING

        settlement: Optional[SwapSettlement] = None
        if state == ConfirmationState.CONFIRMED:
            try:
                settlement = await self.executor.settle(submission)
            except Exception as exc:
                logger.warning("[Engine] settle(%s) falló (%r), usando estimación", signature, exc)
                settlement = estimate_settlement(submission)

        async with lock:
            pos = self._positions.get(position_id)
            if not self._still_pending(pos, signature):
                return

            if settlement is not None:
                self._submissions.pop(position_id, None)
                sold = min(settlement.token_amount, pos.remaining_quantity)
                proceeds = settlement.sol_amount
                pnl = proceeds - pos.cost_basis(sold)
                self._complete_sell_locked(
                    pos, sold, proceeds, pnl, signature, pos.pending_reason or "", settlement.exact
                )
                return

            pos.retry_count += 1
            self._stats["confirmation_retries"] += 1
            logger.warning(
                "[Engine] Venta %s de %s no confirmada (%s), intento %d/%d",
                signature,
                pos.symbol,
                state.value,
                pos.retry_count,
                self.config.max_sell_retries,
            )
            if pos.retry_count >= self.config.max_sell_retries:
                self._submissions.pop(position_id, None)
                self._archive(
                    pos,
                    PositionStatus.MANUAL_REVIEW_NEEDED,
                    f"venta {pos.pending_reason} sin confirmar tras {pos.retry_count} intentos "
                    f"(última firma {signature})",
                )
                return

            percentage = pos.pending_sell_percentage or 100.0
            reason = pos.pending_reason or "retry"
            level_index = pos.pending_level_index
            pos.clear_pending()
            pos.status = PositionStatus.ACTIVE
            self._submissions.pop(position_id, None)
            self._persist()
            self._schedule(
                position_id,
                self.config.retry_delay,
                lambda: self._retry_sell(position_id, percentage, reason, level_index),
                name=f"retry-{position_id}",
            )

    async def _retry_sell(
        self, position_id: str, percentage: float, reason: str, level_index: Optional[int]
    ) -> None:
        result = await self.request_sell(position_id, percentage, reason, level_index=level_index)
        if not result.accepted:
            logger.info("[Engine] Reintento de venta %s no aceptado: %s", position_id, result.reason)

    @staticmethod
    def _still_pending(pos: Optional[Position], signature: str) -> bool:
        return (
            pos is not None
            and pos.status == PositionStatus.PENDING_SELL
            and pos.pending_tx_signature == signature
        )

    @staticmethod
    def _rebuild_submission(pos: Position) -> SwapSubmission:
        """Submission aproximada para una venta reanudada desde disco."""
        amount = pos.pending_token_amount or pos.remaining_quantity
        signature = pos.pending_tx_signature or ""
        return SwapSubmission(
            signature=signature,
            side=TradeSide.SELL,
            mint=pos.token_address,
            pool_address=pos.pool_address or "",
            token_amount_raw=int(round(amount * (10 ** pos.token_decimals))),
            quote_amount_raw=int(amount * pos.current_price * LAMPORTS_PER_SOL),
            quote_limit_raw=0,
            token_decimals=pos.token_decimals,
            simulated=signature.startswith(SIMULATED_SIGNATURE_PREFIX),
        )

    async def complete_sell(
        self,
        position_id: str,
        sold_quantity: float,
        proceeds: float,
        pnl: float,
        signature: Optional[str] = None,
        reason: str = "",
        exact: bool = True,
    ) -> Position:
        async with self._lock_for(position_id):
            pos = self._positions.get(position_id)
            if pos is None:
                raise PositionNotFound(f"Posición {position_id} no existe")
            return self._complete_sell_locked(
                pos, sold_quantity, proceeds, pnl, signature, reason, exact
            )

    def _is_dust(self, pos: Position, remaining: float) -> bool:
        min_tokens = (
            pos.min_remaining_tokens
            if pos.min_remaining_tokens is not None
            else self.config.min_remaining_tokens
        )
        min_percent = (
            pos.min_remaining_percent
            if pos.min_remaining_percent is not None
            else self.config.min_remaining_percent
        )
        remaining_percent = remaining / pos.quantity * 100.0 if pos.quantity > 0 else 0.0
        return remaining <= min_tokens or remaining_percent <= min_percent

    def _complete_sell_locked(
        self,
        pos: Position,
        sold_quantity: float,
        proceeds: float,
        pnl: float,
        signature: Optional[str],
        reason: str,
        exact: bool,
    ) -> Position:
        sold = min(max(sold_quantity, 0.0), pos.remaining_quantity)
        remaining = pos.remaining_quantity - sold
        closing = self._is_dust(pos, remaining)

        if closing and remaining > 0:
            # el dust se da por perdido: su coste entra en el PnL final
            pnl -= pos.cost_basis(remaining)
            sold += remaining
            remaining = 0.0

        pos.partial_sells.append(
            PartialSell(
                timestamp=self._clock(),
                sold_quantity=sold,
                proceeds=proceeds,
                realized_pnl=pnl,
                reason=reason,
                signature=signature,
                exact=exact,
                terminal=closing,
            )
        )
        pos.remaining_quantity = remaining
        pos.total_realized_pnl += pnl
        pos.retry_count = 0
        pos.clear_pending()
        if pos.current_price > 0:
            pos.current_value = remaining * pos.current_price
            pos.unrealized_pnl = pos.current_value - pos.cost_basis(remaining)
        self._stats["sells_completed"] += 1

        logger.info(
            "[Engine] Venta %s de %s completada: %.4f tokens -> %.6f SOL (PnL %.6f, %s)",
            reason,
            pos.symbol,
            sold,
            proceeds,
            pnl,
            "exacto" if exact else "estimado",
        )
        self.bus.publish(
            EventType.PARTIAL_SELL,
            pos.id,
            symbol=pos.symbol,
            reason=reason,
            sold_quantity=sold,
            proceeds=proceeds,
            realized_pnl=pnl,
            remaining_quantity=remaining,
            exact=exact,
            signature=signature,
        )

        if closing:
            self._archive(pos, PositionStatus.CLOSED, reason)
        else:
            pos.status = PositionStatus.ACTIVE
            self._persist()
        return pos

    # -------------------------------------------------------------------------
    # Cierre administrativo
    # -------------------------------------------------------------------------

    async def force_close(self, position_id: str, reason: str = FORCE_CLOSE_REASON) -> TradeRecord:
        """
        Cierra sin pasar por el swap, valorando lo restante al último precio
        conocido. Seguro aunque haya una venta en vuelo.
        """
        async with self._lock_for(position_id):
            pos = self._positions.get(position_id)
            if pos is None:
                raise PositionNotFound(f"Posición {position_id} no existe")

            self._cancel_scheduled(position_id)
            self._submissions.pop(position_id, None)
            if pos.pending_tx_signature:
                logger.warning(
                    "[Engine] Force close de %s con venta en vuelo %s",
                    pos.symbol,
                    pos.pending_tx_signature,
                )

            remaining = pos.remaining_quantity
            if remaining > 0:
                price = pos.current_price or pos.entry_price
                proceeds = remaining * price
                pnl = proceeds - pos.cost_basis(remaining)
                pos.partial_sells.append(
                    PartialSell(
                        timestamp=self._clock(),
                        sold_quantity=remaining,
                        proceeds=proceeds,
                        realized_pnl=pnl,
                        reason=reason,
                        signature=None,
                        exact=False,
                        terminal=True,
                    )
                )
                pos.total_realized_pnl += pnl
                pos.remaining_quantity = 0.0
                pos.current_value = 0.0
                pos.unrealized_pnl = 0.0

            logger.warning("[Engine] Force close de %s (%s)", pos.symbol, reason)
            return self._archive(pos, PositionStatus.CLOSED, reason)

    async def emergency_stop_all(self, reason: str = EMERGENCY_REASON) -> List[TradeRecord]:
        self.set_active(False)
        records: List[TradeRecord] = []
        for position_id in list(self._positions):
            try:
                records.append(await self.force_close(position_id, reason=reason))
            except PositionNotFound:
                # ya archivada por otra tarea
                continue
        logger.warning("[Engine] EMERGENCY STOP: %d posiciones cerradas", len(records))
        self.bus.publish(EventType.EMERGENCY_STOP, None, reason=reason, closed=len(records))
        return records

    # -------------------------------------------------------------------------
    # Archivo
    # -------------------------------------------------------------------------

    def _archive(self, pos: Position, status: PositionStatus, reason: str) -> TradeRecord:
        now = self._clock()
        pos.status = status
        pos.closed_at = now
        pos.close_reason = reason
        pos.clear_pending()
        self._cancel_scheduled(pos.id)
        self._positions.pop(pos.id, None)
        self._locks.pop(pos.id, None)

        sold = pos.sold_quantity
        proceeds = sum(s.proceeds for s in pos.partial_sells)
        exit_price = proceeds / sold if sold > 0 else (pos.current_price or pos.entry_price)
        pnl_percent = (
            pos.total_realized_pnl / pos.invested_amount * 100.0 if pos.invested_amount > 0 else 0.0
        )
        record = TradeRecord(
            position_id=pos.id,
            token_address=pos.token_address,
            symbol=pos.symbol,
            entry_time=pos.entry_time,
            exit_time=now,
            entry_price=pos.entry_price,
            exit_price=exit_price,
            quantity=pos.quantity,
            invested_amount=pos.invested_amount,
            realized_pnl=pos.total_realized_pnl,
            realized_pnl_percent=pnl_percent,
            exit_reason=reason,
            status=status.value,
            sells=len(pos.partial_sells),
        )

        if status == PositionStatus.MANUAL_REVIEW_NEEDED:
            self._stats["manual_reviews"] += 1
        else:
            self._stats["closed"] += 1
        self._register_closed_position(record)

        if self.history is not None:
            try:
                self.history.append(record)
            except OSError as exc:
                logger.error("[Engine] No se pudo escribir el histórico: %r", exc)
        self._persist()

        if status == PositionStatus.MANUAL_REVIEW_NEEDED:
            logger.error("[Engine] %s requiere REVISIÓN MANUAL: %s", pos.symbol, reason)
            self.bus.publish(
                EventType.MANUAL_REVIEW,
                pos.id,
                symbol=pos.symbol,
                reason=reason,
                remaining_quantity=pos.remaining_quantity,
            )
        else:
            logger.info(
                "[Engine] CERRADO %s, razón: %s, PnL %.6f SOL (%.2f%%)",
                pos.symbol,
                reason,
                pos.total_realized_pnl,
                pnl_percent,
            )
            self.bus.publish(
                EventType.POSITION_CLOSED,
                pos.id,
                symbol=pos.symbol,
                reason=reason,
                realized_pnl=pos.total_realized_pnl,
                realized_pnl_percent=pnl_percent,
                status=status.value,
            )
        return record

    def _register_closed_position(self, record: TradeRecord) -> None:
        self._total_trades += 1
        self._total_realized_pnl_sol += record.realized_pnl
        if record.status == PositionStatus.MANUAL_REVIEW_NEEDED.value:
            return
        if record.realized_pnl > 0:
            self._wins += 1
        else:
            self._losses += 1

    # -------------------------------------------------------------------------
    # Snapshots para Telegram / monitoreo
    # -------------------------------------------------------------------------

    def get_positions_snapshot(self) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        for pos in self._positions.values():
            last_price = pos.current_price or pos.entry_price
            pnl_percent = (
                (last_price - pos.entry_price) / pos.entry_price * 100.0
                if pos.entry_price > 0
                else 0.0
            )
            out.append(
                {
                    "id": pos.id,
                    "mint": pos.token_address,
                    "symbol": pos.symbol,
                    "status": pos.status.value,
                    "entry_price": pos.entry_price,
                    "last_price": last_price,
                    "pnl_percent": pnl_percent,
                    "quantity": pos.quantity,
                    "remaining_quantity": pos.remaining_quantity,
                    "invested_sol": pos.invested_amount,
                    "stop_loss_price": pos.stop_loss_price,
                    "realized_pnl": pos.total_realized_pnl,
                    "unrealized_pnl": pos.unrealized_pnl,
                    "take_profits_hit": sum(1 for lvl in pos.take_profit_levels if lvl.triggered),
                    "pending_signature": pos.pending_tx_signature,
                    "retry_count": pos.retry_count,
                    "price_source": pos.last_price_source,
                }
            )
        return out

    def get_stats_snapshot(self) -> Dict[str, Any]:
        decided = self._wins + self._losses
        win_rate = (self._wins / decided) * 100.0 if decided > 0 else 0.0
        stats: Dict[str, Any] = {
            "mode": self.config.mode,
            "active": self.active,
            "num_positions": len(self._positions),
            "pending_sells": sum(
                1 for p in self._positions.values() if p.status == PositionStatus.PENDING_SELL
            ),
            "total_realized_pnl_sol": self._total_realized_pnl_sol,
            "total_trades": self._total_trades,
            "wins": self._wins,
            "losses": self._losses,
            "win_rate": win_rate,
        }
        stats.update(self._stats)
        if self.history is not None:
            # el histórico sobrevive a reinicios, los contadores en memoria no
            summary = self.history.summary()
            stats["history"] = summary
            stats.update(
                total_trades=summary["total_trades"],
                total_realized_pnl_sol=summary["total_pnl"],
                wins=summary["wins"],
                losses=summary["losses"],
                win_rate=summary["win_rate"],
                manual_reviews=summary["manual_reviews"],
            )
        return stats

    # -------------------------------------------------------------------------
    # Control desde Telegram
    # -------------------------------------------------------------------------

    def set_active(self, value: bool) -> None:
        self.active = value
        logger.info("[Engine] Entradas nuevas %s", "activadas" if value else "pausadas")

    def is_active(self) -> bool:
        return self.active
