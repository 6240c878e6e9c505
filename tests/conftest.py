"""Fakes compartidos: ledger en memoria, executor scriptable y scheduler manual."""

import struct
from typing import Any, Callable, Dict, List, Optional

import pytest
from solders.pubkey import Pubkey

from config import BotConfig
from errors import SubmissionFailed
from events import EventBus
from ledger import SignatureStatus, TokenBalance
from models import ConfirmationState, SwapSettlement, SwapSubmission, TradeSide
from scheduler import ScheduledHandle, Scheduler
from storage import JsonPositionStore, JsonTradeHistory
from trading_engine import PositionStateMachine


MINT_A = "7GCihgDB8fe6KNjn2MYtkzZcRjQy3t9GHdC8uHYmW2hr"
MINT_B = "EKpQGSJtjMFqKZ9KQanSqYXRcF8fBopzLHYxdM65zcjm"


def pool_account_bytes(
    base_mint: Pubkey,
    quote_mint: Pubkey,
    base_account: Pubkey,
    quote_account: Pubkey,
    coin_creator: Optional[Pubkey] = None,
    index: int = 0,
) -> bytes:
    creator = Pubkey.new_unique()
    lp_mint = Pubkey.new_unique()
    data = bytearray(8)
    data += bytes([254])
    data += struct.pack("<H", index)
    for pk in (creator, base_mint, quote_mint, lp_mint, base_account, quote_account):
        data += bytes(pk)
    data += struct.pack("<Q", 1_000)
    if coin_creator is not None:
        data += bytes(coin_creator)
    return bytes(data)


class FakeLedger:
    def __init__(self) -> None:
        self.accounts: Dict[str, bytes] = {}
        self.balances: Dict[str, TokenBalance] = {}
        self.statuses: Dict[str, SignatureStatus] = {}
        self.transactions: Dict[str, Any] = {}
        self.account_lookups = 0
        self.balance_lookups = 0
        # pubkey -> nº de lecturas que devuelven None antes de existir
        self.appear_after: Dict[str, int] = {}
        self._seen: Dict[str, int] = {}
        self.fail_accounts = False

    async def get_account_data(self, address: Any) -> Optional[bytes]:
        self.account_lookups += 1
        key = str(address)
        if self.fail_accounts:
            raise ConnectionError("rpc caído")
        self._seen[key] = self._seen.get(key, 0) + 1
        if self._seen[key] <= self.appear_after.get(key, 0):
            return None
        return self.accounts.get(key)

    async def get_token_balance(self, address: Any) -> Optional[TokenBalance]:
        self.balance_lookups += 1
        return self.balances.get(str(address))

    async def get_signature_status(self, signature: str) -> SignatureStatus:
        return self.statuses.get(signature, SignatureStatus(found=False))

    async def get_transaction(self, signature: str) -> Any:
        return self.transactions.get(signature)


class ManualScheduler(Scheduler):
    """Nada corre solo: los tests deciden cuándo vence cada temporizador."""

    def __init__(self) -> None:
        self.queue: List[Dict[str, Any]] = []
        self.loops: List[Dict[str, Any]] = []

    def call_later(self, delay: float, callback: Callable, name: str = "") -> ScheduledHandle:
        handle = ScheduledHandle(name)
        self.queue.append({"delay": delay, "callback": callback, "handle": handle, "name": name})
        return handle

    def every(self, interval: float, callback: Callable, name: str = "") -> ScheduledHandle:
        handle = ScheduledHandle(name)
        self.loops.append({"interval": interval, "callback": callback, "handle": handle})
        return handle

    def cancel_all(self) -> None:
        for item in self.queue + self.loops:
            item["handle"].cancel()
        self.queue = []

    @property
    def pending(self) -> List[Dict[str, Any]]:
        return [item for item in self.queue if not item["handle"].cancelled]

    async def run_pending(self) -> int:
        due, self.queue = self.queue, []
        ran = 0
        for item in due:
            if item["handle"].cancelled:
                continue
            await item["callback"]()
            ran += 1
        return ran

    async def run_all(self, max_rounds: int = 50) -> int:
        total = 0
        for _ in range(max_rounds):
            ran = await self.run_pending()
            if not ran and not self.queue:
                break
            total += ran
        return total


class FakeExecutor:
    """
    Executor scriptable: las ventas se liquidan a `price` SOL/token,
    `statuses` se consume en orden (después se usa `default_status`).
    """

    def __init__(self, price: float = 1e-6) -> None:
        self.price = price
        self.buys: List[SwapSubmission] = []
        self.sells: List[SwapSubmission] = []
        self.status_calls: List[str] = []
        self.statuses: List[ConfirmationState] = []
        self.default_status = ConfirmationState.CONFIRMED
        self.sell_errors: List[Exception] = []
        self.exact = True
        self.buy_tokens = 100_000.0

    async def buy(self, mint: str, sol_amount: float, slippage_percent: Optional[float] = None):
        sub = SwapSubmission(
            signature=f"SIM_buy{len(self.buys)}",
            side=TradeSide.BUY,
            mint=mint,
            pool_address="PoolAddr",
            token_amount_raw=int(round(self.buy_tokens * 10 ** 6)),
            quote_amount_raw=int(round(sol_amount * 1e9)),
            quote_limit_raw=int(round(sol_amount * 1e9)),
            token_decimals=6,
            simulated=True,
        )
        self.buys.append(sub)
        return sub

    async def sell(self, mint: str, token_amount: float, decimals: int = 6,
                   slippage_percent: Optional[float] = None):
        if self.sell_errors:
            raise self.sell_errors.pop(0)
        sub = SwapSubmission(
            signature=f"sig{len(self.sells)}",
            side=TradeSide.SELL,
            mint=mint,
            pool_address="PoolAddr",
            token_amount_raw=int(round(token_amount * 10 ** decimals)),
            quote_amount_raw=int(round(token_amount * self.price * 1e9)),
            quote_limit_raw=0,
            token_decimals=decimals,
        )
        self.sells.append(sub)
        return sub

    async def confirmation_status(self, signature: str) -> ConfirmationState:
        self.status_calls.append(signature)
        if self.statuses:
            return self.statuses.pop(0)
        return self.default_status

    async def settle(self, submission: SwapSubmission) -> SwapSettlement:
        return SwapSettlement(
            signature=submission.signature,
            side=submission.side,
            token_amount=submission.token_amount_raw / 10 ** submission.token_decimals,
            sol_amount=submission.quote_amount_raw / 1e9,
            fees_sol=0.0,
            exact=self.exact,
            source="event" if self.exact else "estimate",
        )


def failing_submission(message: str = "blockhash expirado") -> SubmissionFailed:
    return SubmissionFailed(message)


def make_config(**overrides: Any) -> BotConfig:
    values = dict(
        mode="simulation",
        rpc_url="http://localhost:8899",
        max_sell_retries=3,
        confirmation_delay=5.0,
        retry_delay=2.0,
    )
    values.update(overrides)
    return BotConfig(**values)


def make_engine(config: Optional[BotConfig] = None, executor: Optional[FakeExecutor] = None,
                store=None, history=None):
    scheduler = ManualScheduler()
    engine = PositionStateMachine(
        config=config or make_config(),
        executor=executor or FakeExecutor(),
        store=store,
        history=history,
        bus=EventBus(),
        scheduler=scheduler,
        sleep=_no_sleep,
    )
    return engine, scheduler


async def _no_sleep(_delay: float) -> None:
    return None


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def config(tmp_path) -> BotConfig:
    return make_config(
        positions_file=str(tmp_path / "positions.json"),
        history_file=str(tmp_path / "history.json"),
    )


@pytest.fixture
def store(config) -> JsonPositionStore:
    return JsonPositionStore(config.positions_file)


@pytest.fixture
def history(config) -> JsonTradeHistory:
    return JsonTradeHistory(config.history_file)


@pytest.fixture
def engine_and_scheduler(config, executor, store, history):
    return make_engine(config, executor, store=store, history=history)


@pytest.fixture
def engine(engine_and_scheduler) -> PositionStateMachine:
    return engine_and_scheduler[0]


@pytest.fixture
def scheduler(engine_and_scheduler) -> ManualScheduler:
    return engine_and_scheduler[1]
