# telegram_bot.py
import logging
from typing import Any, Optional

from telegram import Update
from telegram.ext import (
    Application,
    CommandHandler,
    ContextTypes,
)

from config import BotConfig
from errors import TradingError
from events import Event, EventBus, EventType
from trading_engine import PositionStateMachine


logger = logging.getLogger(__name__)


# ----------------- NOTIFICACIONES -----------------

def format_event(event: Event) -> Optional[str]:
    """Texto Markdown para un evento del motor, None si no se notifica."""
    d = event.data
    symbol = d.get("symbol", event.position_id or "")

    if event.type == EventType.POSITION_OPENED:
        return (
            f"🟢 *Nueva posición* `{symbol}`\n"
            f"Invertido: `{d.get('invested_amount', 0.0):.4f} SOL`\n"
            f"Tokens: `{d.get('quantity', 0.0):.2f}`\n"
            f"Entrada: `{d.get('entry_price', 0.0):.10f} SOL`\n"
            f"Stop: `{d.get('stop_loss_price', 0.0):.10f} SOL`"
        )
    if event.type == EventType.TAKE_PROFIT:
        level = (d.get("level_index") or 0) + 1
        return (
            f"🎯 *Take profit {level}* `{symbol}` a `{d.get('price', 0.0):.10f} SOL`, "
            f"vendiendo `{d.get('percentage', 0.0):.0f}%`"
        )
    if event.type == EventType.STOP_LOSS:
        return f"🚨 *Stop loss* `{symbol}` a `{d.get('price', 0.0):.10f} SOL`"
    if event.type == EventType.PARTIAL_SELL:
        flag = "" if d.get("exact", True) else " (estimado)"
        return (
            f"💸 *Venta* `{symbol}` ({d.get('reason', '')})\n"
            f"Vendido: `{d.get('sold_quantity', 0.0):.2f}` -> `{d.get('proceeds', 0.0):.6f} SOL`{flag}\n"
            f"PnL: `{d.get('realized_pnl', 0.0):.6f} SOL`\n"
            f"Restante: `{d.get('remaining_quantity', 0.0):.2f}`"
        )
    if event.type == EventType.POSITION_CLOSED:
        return (
            f"💰 *CERRADO* `{symbol}`, razón: {d.get('reason', '')}\n"
            f"PnL: `{d.get('realized_pnl', 0.0):.6f} SOL` "
            f"(`{d.get('realized_pnl_percent', 0.0):.2f}%`)"
        )
    if event.type == EventType.MANUAL_REVIEW:
        return (
            f"⚠️ *REVISIÓN MANUAL* `{symbol}`\n"
            f"Motivo: {d.get('reason', '')}\n"
            f"Tokens sin vender: `{d.get('remaining_quantity', 0.0):.2f}`"
        )
    if event.type == EventType.SELL_FAILED:
        return (
            f"❌ Venta fallida `{symbol}` (intento {d.get('retry_count', 0)}): "
            f"{d.get('error', '')}"
        )
    if event.type == EventType.EMERGENCY_STOP:
        return f"🛑 *EMERGENCY STOP*: {d.get('closed', 0)} posiciones cerradas ({d.get('reason', '')})"
    return None


class TelegramNotifier:
    """
    Suscriptor del EventBus que manda los eventos al chat configurado.
    El chat se lee de la config en cada envío: /start puede fijarlo después.
    """

    def __init__(self, bot: Any, config: BotConfig) -> None:
        self.bot = bot
        self.config = config

    def attach(self, bus: EventBus) -> None:
        bus.subscribe(self.on_event)

    async def on_event(self, event: Event) -> None:
        chat_id = self.config.telegram_chat_id
        if chat_id is None:
            return
        text = format_event(event)
        if text is None:
            return
        try:
            await self.bot.send_message(chat_id=chat_id, text=text, parse_mode="Markdown")
        except Exception as exc:
            logger.warning("[Telegram] No se pudo enviar notificación: %r", exc)


# ----------------- COMANDOS -----------------

class TelegramController:
    def __init__(self, config: BotConfig, engine: PositionStateMachine) -> None:
        self.config = config
        self.engine = engine

    # --------- handlers ---------

    async def start(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not await self._is_authorized(update):
            return

        txt = (
            "🚀 *PumpSwap Position Bot*\n\n"
            f"Modo: `{self.config.mode}`\n"
            f"Activo: `{self.engine.is_active()}`\n\n"
            "Comandos:\n"
            "• /status – estado del bot\n"
            "• /positions – posiciones vivas\n"
            "• /history – resumen de trades cerrados\n"
            "• /buy <mint> [sol] – abrir posición\n"
            "• /forceclose <id> – cerrar posición sin swap\n"
            "• /emergency – cerrar todo y pausar\n"
            "• /activate – activar entradas nuevas\n"
            "• /deactivate – pausar entradas\n"
        )
        await update.message.reply_text(txt, parse_mode="Markdown")

    async def status(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not await self._is_authorized(update):
            return

        stats = self.engine.get_stats_snapshot()
        txt = (
            f"📊 *Status Bot*\n\n"
            f"Modo: `{stats['mode']}`\n"
            f"Activo: `{stats['active']}`\n"
            f"Posiciones vivas: `{stats['num_positions']}`\n"
            f"Ventas pendientes: `{stats['pending_sells']}`\n"
            f"Trades totales: `{stats['total_trades']}`\n"
            f"Win rate: `{stats['win_rate']:.1f}%`\n"
            f"P&L realizado: `{stats['total_realized_pnl_sol']:.4f} SOL`\n"
            f"Revisión manual: `{stats['manual_reviews']}`\n"
        )
        await update.message.reply_text(txt, parse_mode="Markdown")

    async def positions(
        self, update: Update, context: ContextTypes.DEFAULT_TYPE
    ) -> None:
        if not await self._is_authorized(update):
            return

        positions = self.engine.get_positions_snapshot()
        if not positions:
            await update.message.reply_text("No hay posiciones abiertas.")
            return

        lines = ["🏹 *Posiciones vivas:*", ""]
        for p in positions:
            lines.append(
                f"• `{p['symbol']}` id=`{p['id']}`\n"
                f"  Mint: `{p['mint']}`\n"
                f"  Estado: `{p['status']}`\n"
                f"  Entrada: `{p['entry_price']:.10f} SOL`\n"
                f"  Último: `{p['last_price']:.10f} SOL`\n"
                f"  PnL: `{p['pnl_percent']:.2f}%` sobre precio entrada\n"
                f"  Stop: `{p['stop_loss_price']:.10f} SOL`\n"
                f"  Restante: `{p['remaining_quantity']:.2f}` / `{p['quantity']:.2f}`\n"
            )

        await update.message.reply_text("\n".join(lines), parse_mode="Markdown")

    async def history(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not await self._is_authorized(update):
            return

        if self.engine.history is None:
            await update.message.reply_text("Histórico no configurado.")
            return
        s = self.engine.history.summary()
        last = self.engine.history.records()[-5:]
        lines = [
            "📜 *Histórico*",
            f"Trades: `{s['total_trades']}`  Wins: `{s['wins']}`  Losses: `{s['losses']}`",
            f"Win rate: `{s['win_rate']:.1f}%`",
            f"P&L total: `{s['total_pnl']:.4f} SOL`",
            f"Revisión manual: `{s['manual_reviews']}`",
            "",
        ]
        for r in reversed(last):
            lines.append(
                f"• `{r['symbol']}` {r['status']} {r['realized_pnl']:.4f} SOL ({r['exit_reason']})"
            )
        await update.message.reply_text("\n".join(lines), parse_mode="Markdown")

    async def buy(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not await self._is_authorized(update):
            return

        args = context.args or []
        if not args:
            await update.message.reply_text("Uso: /buy <mint> [sol]")
            return
        mint = args[0]
        try:
            sol_amount = float(args[1]) if len(args) > 1 else None
        except ValueError:
            await update.message.reply_text("Monto SOL inválido.")
            return

        await update.message.reply_text(f"⏳ Comprando `{mint}`...", parse_mode="Markdown")
        try:
            pos = await self.engine.open_position(mint, sol_amount=sol_amount)
        except TradingError as exc:
            await update.message.reply_text(f"❌ Compra fallida: {exc}")
            return
        await update.message.reply_text(
            f"✅ Posición `{pos.id}` abierta en `{pos.symbol}`", parse_mode="Markdown"
        )

    async def forceclose(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not await self._is_authorized(update):
            return

        args = context.args or []
        if not args:
            await update.message.reply_text("Uso: /forceclose <position_id>")
            return
        try:
            record = await self.engine.force_close(args[0], reason="force close (telegram)")
        except TradingError as exc:
            await update.message.reply_text(f"❌ {exc}")
            return
        await update.message.reply_text(
            f"✅ `{record.symbol}` cerrada, PnL `{record.realized_pnl:.6f} SOL`",
            parse_mode="Markdown",
        )

    async def emergency(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not await self._is_authorized(update):
            return
        records = await self.engine.emergency_stop_all(reason="emergency stop (telegram)")
        await update.message.reply_text(
            f"🛑 Emergency stop: {len(records)} posiciones cerradas, bot pausado."
        )

    async def activate(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if not await self._is_authorized(update):
            return
        self.engine.set_active(True)
        await update.message.reply_text("✅ Bot activado (aceptando nuevas entradas).")

    async def deactivate(
        self, update: Update, context: ContextTypes.DEFAULT_TYPE
    ) -> None:
        if not await self._is_authorized(update):
            return
        self.engine.set_active(False)
        await update.message.reply_text("⏸ Bot pausado (no entra en nuevos tokens).")

    # --------- auth ---------

    async def _is_authorized(self, update: Update) -> bool:
        if self.config.telegram_chat_id is None:
            # primera vez: fijamos chat como dueño
            if update.effective_chat:
                self.config.telegram_chat_id = update.effective_chat.id
                return True
            return False

        if update.effective_chat and update.effective_chat.id == self.config.telegram_chat_id:
            return True

        logger.warning(
            "[Telegram] Mensaje de chat no autorizado: %s",
            update.effective_chat.id if update.effective_chat else None,
        )
        return False


async def build_application(config: BotConfig, engine: PositionStateMachine) -> Application:
    app = Application.builder().token(config.telegram_bot_token).build()

    ctrl = TelegramController(config, engine)

    app.add_handler(CommandHandler("start", ctrl.start))
    app.add_handler(CommandHandler("status", ctrl.status))
    app.add_handler(CommandHandler("positions", ctrl.positions))
    app.add_handler(CommandHandler("history", ctrl.history))
    app.add_handler(CommandHandler("buy", ctrl.buy))
    app.add_handler(CommandHandler("forceclose", ctrl.forceclose))
    app.add_handler(CommandHandler("emergency", ctrl.emergency))
    app.add_handler(CommandHandler("activate", ctrl.activate))
    app.add_handler(CommandHandler("deactivate", ctrl.deactivate))

    TelegramNotifier(app.bot, config).attach(engine.bus)

    return app
