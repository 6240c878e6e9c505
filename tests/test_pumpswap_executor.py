"""Construcción de swaps PumpSwap, modo simulación y liquidación."""

import base64
import struct

import pytest
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from spl.token.instructions import get_associated_token_address

from conftest import MINT_A, FakeLedger, make_config, pool_account_bytes
from errors import SubmissionFailed
from event_decoder import SELL_EVENT_DISCRIMINATOR
from ledger import SignatureStatus, TokenBalance, TransactionRecord
from models import ConfirmationState, SwapSubmission, TradeSide
from pool_resolver import WSOL_MINT, PoolResolver, derive_pool_address
from pumpswap_executor import (
    EVENT_AUTHORITY,
    GLOBAL_CONFIG,
    PUMPSWAP_BUY_METHOD,
    PUMPSWAP_PROGRAM_ID,
    PUMPSWAP_SELL_METHOD,
    GlobalConfigLayout,
    PoolLayout,
    PumpSwapExecutor,
    apply_slippage,
    build_swap_instruction,
    buy_base_out,
    buy_quote_in,
    derive_swap_accounts,
    estimate_settlement,
    sell_quote_out,
)


def _setup_pool(ledger: FakeLedger, base_raw: int = 1_000_000_000_000, quote_raw: int = 1_000_000_000):
    mint = Pubkey.from_string(MINT_A)
    pool = derive_pool_address(mint)
    base_account = Pubkey.new_unique()
    quote_account = Pubkey.new_unique()
    coin_creator = Pubkey.new_unique()
    ledger.accounts[str(pool)] = pool_account_bytes(
        mint, WSOL_MINT, base_account, quote_account, coin_creator=coin_creator
    )
    ledger.balances[str(base_account)] = TokenBalance(amount=base_raw, decimals=6)
    ledger.balances[str(quote_account)] = TokenBalance(amount=quote_raw, decimals=9)
    return pool, base_account, quote_account, coin_creator


def _executor(ledger, keypair=None, **config):
    resolver = PoolResolver(ledger, max_attempts=1)
    return PumpSwapExecutor(make_config(**config), ledger, resolver, keypair=keypair)


class TestMath:
    def test_sell_quote_out_constant_product(self):
        # k = 1e12; nuevo quote = ceil(1e12 / 2e6) = 500_000
        assert sell_quote_out(1_000_000, 1_000_000, 1_000_000) == 500_000

    def test_buy_rounds_in_favour_of_pool(self):
        # ceil(100*100 / 103) = 98 -> salen 2 tokens
        assert buy_base_out(100, 100, 3) == 2

    def test_buy_quote_in_inverts_buy_base_out(self):
        # 1e6 * 1e6 / (1e6 - 500_000) = 2e6 -> hacen falta 1e6 de quote
        assert buy_quote_in(1_000_000, 1_000_000, 500_000) == 1_000_000
        assert buy_quote_in(1_000, 1_000, 1_000) == 0

    def test_zero_reserves(self):
        assert sell_quote_out(0, 1_000, 10) == 0
        assert buy_base_out(1_000, 0, 10) == 0

    def test_slippage(self):
        assert apply_slippage(1_000, 5) == 950
        assert apply_slippage(1_000, 150) == 0


class TestLayouts:
    def test_pool_layout_parse(self):
        mint = Pubkey.from_string(MINT_A)
        base, quote, creator = Pubkey.new_unique(), Pubkey.new_unique(), Pubkey.new_unique()
        layout = PoolLayout.parse(pool_account_bytes(mint, WSOL_MINT, base, quote, creator, index=3))

        assert layout.index == 3
        assert layout.base_mint == mint
        assert layout.quote_mint == WSOL_MINT
        assert layout.pool_base_token_account == base
        assert layout.pool_quote_token_account == quote
        assert layout.lp_supply == 1_000
        assert layout.coin_creator == creator

    def test_pool_layout_without_coin_creator(self):
        mint = Pubkey.from_string(MINT_A)
        data = pool_account_bytes(mint, WSOL_MINT, Pubkey.new_unique(), Pubkey.new_unique())
        assert PoolLayout.parse(data).coin_creator == Pubkey.default()

    def test_pool_layout_too_short(self):
        with pytest.raises(ValueError):
            PoolLayout.parse(b"\x00" * 100)

    def test_global_config_skips_empty_recipients(self):
        recipient = Pubkey.new_unique()
        data = bytearray(8) + bytes(Pubkey.new_unique()) + struct.pack("<QQ", 20, 5) + b"\x00"
        data += bytes(Pubkey.default()) + bytes(recipient) + bytes(Pubkey.default()) * 6
        layout = GlobalConfigLayout.parse(bytes(data))

        assert layout.lp_fee_basis_points == 20
        assert layout.protocol_fee_basis_points == 5
        assert layout.protocol_fee_recipients == [recipient]


class TestInstruction:
    def _accounts(self):
        mint = Pubkey.from_string(MINT_A)
        layout = PoolLayout.parse(
            pool_account_bytes(
                mint, WSOL_MINT, Pubkey.new_unique(), Pubkey.new_unique(), Pubkey.new_unique()
            )
        )
        user = Pubkey.new_unique()
        return derive_swap_accounts(derive_pool_address(mint), layout, user, Pubkey.new_unique()), user

    def test_sell_instruction_data(self):
        accounts, _ = self._accounts()
        ix = build_swap_instruction(TradeSide.SELL, accounts, 5_000, 1_234)

        assert bytes(ix.data) == PUMPSWAP_SELL_METHOD + struct.pack("<QQ", 5_000, 1_234)
        assert ix.program_id == PUMPSWAP_PROGRAM_ID

    def test_buy_account_order(self):
        accounts, user = self._accounts()
        ix = build_swap_instruction(TradeSide.BUY, accounts, 1, 2)
        metas = ix.accounts

        assert bytes(ix.data)[:8] == PUMPSWAP_BUY_METHOD
        assert len(metas) == 19
        assert metas[1].pubkey == user and metas[1].is_signer
        assert metas[2].pubkey == GLOBAL_CONFIG
        assert metas[15].pubkey == EVENT_AUTHORITY
        assert metas[16].pubkey == PUMPSWAP_PROGRAM_ID
        assert metas[5].pubkey == get_associated_token_address(user, accounts.base_mint)
        assert metas[17].is_writable

    def test_creator_vault_derivation(self):
        accounts, _ = self._accounts()
        assert accounts.coin_creator_vault_ata == get_associated_token_address(
            accounts.coin_creator_vault_authority, WSOL_MINT
        )


class TestSimulationMode:
    async def test_sell_without_wallet_returns_simulated_signature(self):
        ledger = FakeLedger()
        _setup_pool(ledger)
        executor = _executor(ledger)

        submission = await executor.sell(MINT_A, 1_000.0, decimals=6)

        assert submission.simulated
        assert submission.signature.startswith("SIM_")
        assert submission.token_amount_raw == 1_000_000_000
        expected = sell_quote_out(1_000_000_000_000, 1_000_000_000, 1_000_000_000)
        assert submission.quote_amount_raw == expected
        assert submission.quote_limit_raw == apply_slippage(expected, 5.0)

        assert await executor.confirmation_status(submission.signature) == ConfirmationState.CONFIRMED
        settlement = await executor.settle(submission)
        assert settlement.exact is False
        assert settlement.source == "estimate"
        assert settlement.token_amount == pytest.approx(1_000.0)

    async def test_buy_estimates_tokens(self):
        ledger = FakeLedger()
        _setup_pool(ledger)
        executor = _executor(ledger)

        submission = await executor.buy(MINT_A, 0.1)

        expected = buy_base_out(1_000_000_000_000, 1_000_000_000, 100_000_000)
        assert submission.side == TradeSide.BUY
        assert submission.token_amount_raw == apply_slippage(expected, 5.0)
        assert submission.quote_limit_raw == 100_000_000
        assert 0 < submission.quote_amount_raw < submission.quote_limit_raw
        assert submission.token_decimals == 6

    async def test_buy_estimate_matches_exact_out_instruction(self, monkeypatch):
        ledger = FakeLedger()
        _setup_pool(ledger)
        executor = _executor(ledger)
        sent = {}

        async def fake_submit(pool_address, pool, side, base_amount, quote_limit):
            sent.update(base_amount=base_amount, quote_limit=quote_limit)
            return "SIM_test", True

        monkeypatch.setattr(executor, "_submit", fake_submit)
        submission = await executor.buy(MINT_A, 0.1, slippage_percent=10.0)
        settlement = estimate_settlement(submission)

        assert submission.token_amount_raw == sent["base_amount"]
        assert settlement.token_amount == pytest.approx(sent["base_amount"] / 10 ** 6)
        assert submission.quote_limit_raw == sent["quote_limit"] == 100_000_000
        assert settlement.sol_amount < 0.1

    async def test_zero_amount_rejected(self):
        executor = _executor(FakeLedger())
        with pytest.raises(SubmissionFailed):
            await executor.sell(MINT_A, 0.0)

    async def test_real_mode_requires_wallet(self):
        ledger = FakeLedger()
        _setup_pool(ledger)
        executor = _executor(ledger, mode="real")
        with pytest.raises(SubmissionFailed):
            await executor.sell(MINT_A, 10.0)


class TestSettlement:
    def _submission(self, signature="5sig"):
        return SwapSubmission(
            signature=signature,
            side=TradeSide.SELL,
            mint=MINT_A,
            pool_address="pool",
            token_amount_raw=1_000_000_000,
            quote_amount_raw=900_000,
            quote_limit_raw=800_000,
            token_decimals=6,
        )

    async def test_settles_from_event(self):
        ledger = FakeLedger()
        record = SELL_EVENT_DISCRIMINATOR + struct.pack(
            "<q13Q", 1, 1_000_000_000, 800_000, 0, 0, 0, 0, 950_000, 20, 1_900, 5, 475, 0, 947_625
        )
        ledger.transactions["5sig"] = TransactionRecord(
            signature="5sig",
            err=None,
            log_messages=["Program data: " + base64.b64encode(record).decode()],
        )
        settlement = await _executor(ledger, mode="real").settle(self._submission())

        assert settlement.exact
        assert settlement.source == "event"
        assert settlement.sol_amount == pytest.approx(0.000947625)
        assert settlement.token_amount == pytest.approx(1_000.0)
        assert settlement.fees_sol == pytest.approx(0.000002375)

    async def test_balance_delta_fallback(self):
        ledger = FakeLedger()
        keypair = Keypair()
        owner = str(keypair.pubkey())
        ledger.transactions["5sig"] = TransactionRecord(
            signature="5sig",
            err=None,
            log_messages=["Program log: Instruction: Sell"],
            fee=5_000,
            account_keys=[owner],
            pre_balances=[2_000_000_000],
            post_balances=[2_000_895_000],
            pre_token_balances={(owner, MINT_A): 1_000_000_000},
            post_token_balances={(owner, MINT_A): 0},
        )
        settlement = await _executor(ledger, keypair=keypair, mode="real").settle(self._submission())

        assert not settlement.exact
        assert settlement.source == "balance_delta"
        assert settlement.token_amount == pytest.approx(1_000.0)
        assert settlement.sol_amount == pytest.approx(0.0009)

    async def test_estimate_fallback_when_transaction_missing(self):
        settlement = await _executor(FakeLedger(), mode="real").settle(self._submission("other"))
        assert settlement.source == "estimate"
        assert settlement.sol_amount == pytest.approx(0.0009)
        assert not settlement.exact

    async def test_confirmation_states(self):
        ledger = FakeLedger()
        ledger.statuses["ok"] = SignatureStatus(found=True, confirmed=True)
        ledger.statuses["bad"] = SignatureStatus(found=True, err="InstructionError")
        ledger.statuses["slow"] = SignatureStatus(found=True, confirmed=False)
        executor = _executor(ledger, mode="real")

        assert await executor.confirmation_status("ok") == ConfirmationState.CONFIRMED
        assert await executor.confirmation_status("bad") == ConfirmationState.FAILED
        assert await executor.confirmation_status("slow") == ConfirmationState.PENDING
        assert await executor.confirmation_status("unknown") == ConfirmationState.PENDING
