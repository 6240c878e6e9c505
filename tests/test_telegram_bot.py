"""Notificaciones y comandos de Telegram con un bot falso."""

from types import SimpleNamespace

from conftest import MINT_A, make_config
from events import Event, EventBus, EventType
from telegram_bot import TelegramController, TelegramNotifier, format_event


class _Bot:
    def __init__(self, fail: bool = False) -> None:
        self.sent = []
        self.fail = fail

    async def send_message(self, chat_id, text, parse_mode=None):
        if self.fail:
            raise RuntimeError("telegram caído")
        self.sent.append((chat_id, text))


class _Message:
    def __init__(self) -> None:
        self.replies = []

    async def reply_text(self, text, parse_mode=None):
        self.replies.append(text)


def _update(chat_id: int = 42):
    return SimpleNamespace(effective_chat=SimpleNamespace(id=chat_id), message=_Message())


class TestFormatEvent:
    def test_take_profit(self):
        text = format_event(
            Event(EventType.TAKE_PROFIT, "p1", {"symbol": "POP", "level_index": 1, "price": 2e-6, "percentage": 25})
        )
        assert "Take profit 2" in text
        assert "25%" in text

    def test_inexact_sell_is_flagged(self):
        text = format_event(Event(EventType.PARTIAL_SELL, "p1", {"symbol": "POP", "exact": False}))
        assert "(estimado)" in text

    def test_manual_review(self):
        text = format_event(Event(EventType.MANUAL_REVIEW, "p1", {"reason": "sin confirmar"}))
        assert "REVISIÓN MANUAL" in text

    def test_silent_events(self):
        assert format_event(Event(EventType.SELL_REQUESTED, "p1")) is None


class TestNotifier:
    async def test_sends_to_chat(self):
        bus, bot = EventBus(), _Bot()
        TelegramNotifier(bot, make_config(telegram_chat_id=7)).attach(bus)

        bus.publish(EventType.STOP_LOSS, "p1", symbol="POP", price=1e-7)
        await bus.drain()

        assert len(bot.sent) == 1
        assert bot.sent[0][0] == 7

    async def test_send_failure_is_logged(self):
        notifier = TelegramNotifier(_Bot(fail=True), make_config(telegram_chat_id=7))
        await notifier.on_event(Event(EventType.STOP_LOSS, "p1"))

    async def test_without_chat_nothing_is_sent(self):
        bot = _Bot()
        await TelegramNotifier(bot, make_config()).on_event(Event(EventType.STOP_LOSS, "p1"))
        assert bot.sent == []

    async def test_chat_assigned_after_start_receives_events(self, config, engine):
        bot = _Bot()
        TelegramNotifier(bot, config).attach(engine.bus)

        await TelegramController(config, engine).start(_update(42), SimpleNamespace(args=[]))
        engine.bus.publish(EventType.STOP_LOSS, "p1", symbol="POP", price=1e-7)
        await engine.bus.drain()

        assert [chat for chat, _ in bot.sent] == [42]


class TestController:
    async def test_first_chat_becomes_owner(self, config, engine):
        ctrl = TelegramController(config, engine)
        owner, stranger = _update(42), _update(99)

        await ctrl.deactivate(owner, SimpleNamespace(args=[]))
        await ctrl.activate(stranger, SimpleNamespace(args=[]))

        assert config.telegram_chat_id == 42
        assert not engine.is_active()
        assert stranger.message.replies == []

    async def test_forceclose_unknown_position(self, config, engine):
        config.telegram_chat_id = 42
        update = _update()
        await TelegramController(config, engine).forceclose(update, SimpleNamespace(args=["nope"]))
        assert update.message.replies[0].startswith("❌")

    async def test_buy_opens_position(self, config, engine):
        config.telegram_chat_id = 42
        update = _update()
        await TelegramController(config, engine).buy(update, SimpleNamespace(args=[MINT_A, "0.05"]))

        assert engine.find_by_token(MINT_A) is not None
        assert "abierta" in update.message.replies[-1]

    async def test_positions_listing(self, config, engine):
        config.telegram_chat_id = 42
        engine.add_position(MINT_A, "POP", 1_000.0, 0.01)
        update = _update()
        await TelegramController(config, engine).positions(update, SimpleNamespace(args=[]))
        assert "POP" in update.message.replies[0]
