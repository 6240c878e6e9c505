# pumpswap_executor.py
#
# Executor de swaps en PumpSwap (el AMM al que migran los tokens de pump.fun).
#
# Modo simulation:
#   - construye la TX
#   - la simula contra el RPC (no gasta SOL)
#   - devuelve una firma SIM_... que se liquida con la estimación
#
# Modo real:
#   - construye y envía la TX firmada con tu WALLET_PRIVATE_KEY
#   - los montos exactos salen luego del evento Buy/Sell de la TX

import asyncio
import logging
import struct
import time
import uuid
from dataclasses import dataclass
from typing import Any, List, Optional, Tuple

from solders.compute_budget import set_compute_unit_limit, set_compute_unit_price
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.system_program import ID as SYS_PROGRAM_ID
from solders.system_program import TransferParams, transfer
from solders.transaction import VersionedTransaction

from spl.token.constants import ASSOCIATED_TOKEN_PROGRAM_ID, TOKEN_PROGRAM_ID
from spl.token.instructions import (
    CloseAccountParams,
    SyncNativeParams,
    close_account,
    create_idempotent_associated_token_account,
    get_associated_token_address,
    sync_native,
)

from config import BotConfig
from errors import PriceUnavailable, SubmissionFailed
from event_decoder import find_trade_event
from ledger import TransactionRecord
from models import (
    ConfirmationState,
    PoolReserves,
    SwapSettlement,
    SwapSubmission,
    TradeSide,
)
from pool_resolver import PUMP_AMM_PROGRAM_ID, PoolResolver

logger = logging.getLogger(__name__)

# ----------------- CONSTANTES PUMPSWAP -----------------

PUMPSWAP_PROGRAM_ID = PUMP_AMM_PROGRAM_ID

# Métodos: bytes que van al principio de la instrucción (sighash Anchor)
PUMPSWAP_BUY_METHOD = bytes([0x66, 0x06, 0x3D, 0x12, 0x01, 0xDA, 0xEB, 0xEA])
PUMPSWAP_SELL_METHOD = bytes([0x33, 0xE6, 0x85, 0xA4, 0x01, 0x7F, 0x83, 0xAD])

GLOBAL_CONFIG, _ = Pubkey.find_program_address([b"global_config"], PUMPSWAP_PROGRAM_ID)
EVENT_AUTHORITY, _ = Pubkey.find_program_address([b"__event_authority"], PUMPSWAP_PROGRAM_ID)

LAMPORTS_PER_SOL = 1_000_000_000
PROTOCOL_FEE_CACHE_TTL = 300.0
SIMULATED_SIGNATURE_PREFIX = "SIM_"


# ----------------- LAYOUTS DE CUENTAS -----------------

@dataclass
class PoolLayout:
    pool_bump: int
    index: int
    creator: Pubkey
    base_mint: Pubkey
    quote_mint: Pubkey
    lp_mint: Pubkey
    pool_base_token_account: Pubkey
    pool_quote_token_account: Pubkey
    lp_supply: int
    coin_creator: Pubkey

    @classmethod
    def parse(cls, data: bytes) -> "PoolLayout":
        # 8 discriminador + u8 bump + u16 index + 6 pubkeys + u64 lp_supply
        if len(data) < 211:
            raise ValueError(f"Pool data length inválido: {len(data)}")

        def pk(offset: int) -> Pubkey:
            return Pubkey.from_bytes(bytes(data[offset:offset + 32]))

        pool_bump = data[8]
        (index,) = struct.unpack_from("<H", data, 9)
        (lp_supply,) = struct.unpack_from("<Q", data, 203)
        # pools antiguos no tienen coin_creator
        coin_creator = pk(211) if len(data) >= 243 else Pubkey.default()
        return cls(
            pool_bump=pool_bump,
            index=index,
            creator=pk(11),
            base_mint=pk(43),
            quote_mint=pk(75),
            lp_mint=pk(107),
            pool_base_token_account=pk(139),
            pool_quote_token_account=pk(171),
            lp_supply=lp_supply,
            coin_creator=coin_creator,
        )


@dataclass
class GlobalConfigLayout:
    admin: Pubkey
    lp_fee_basis_points: int
    protocol_fee_basis_points: int
    disable_flags: int
    protocol_fee_recipients: List[Pubkey]

    @classmethod
    def parse(cls, data: bytes) -> "GlobalConfigLayout":
        if len(data) < 57 + 8 * 32:
            raise ValueError(f"GlobalConfig data length inválido: {len(data)}")
        lp_fee, protocol_fee = struct.unpack_from("<QQ", data, 40)
        recipients = []
        for i in range(8):
            offset = 57 + i * 32
            recipient = Pubkey.from_bytes(bytes(data[offset:offset + 32]))
            if recipient != Pubkey.default():
                recipients.append(recipient)
        return cls(
            admin=Pubkey.from_bytes(bytes(data[8:40])),
            lp_fee_basis_points=lp_fee,
            protocol_fee_basis_points=protocol_fee,
            disable_flags=data[56],
            protocol_fee_recipients=recipients,
        )


# ----------------- MATEMÁTICA AMM (x * y = k) -----------------

def _ceil_div(a: int, b: int) -> int:
    return -(-a // b)


def buy_base_out(base_reserve: int, quote_reserve: int, quote_in: int) -> int:
    """Tokens que salen del pool por `quote_in` lamports."""
    if base_reserve <= 0 or quote_reserve <= 0 or quote_in <= 0:
        return 0
    k = base_reserve * quote_reserve
    new_base = _ceil_div(k, quote_reserve + quote_in)
    return max(base_reserve - new_base, 0)


def buy_quote_in(base_reserve: int, quote_reserve: int, base_out: int) -> int:
    """Lamports necesarios para sacar exactamente `base_out` tokens (sin fees)."""
    if base_reserve <= 0 or quote_reserve <= 0 or base_out <= 0 or base_out >= base_reserve:
        return 0
    k = base_reserve * quote_reserve
    return _ceil_div(k, base_reserve - base_out) - quote_reserve


def sell_quote_out(base_reserve: int, quote_reserve: int, base_in: int) -> int:
    """
    Lamports que salen del pool al vender `base_in` tokens:
        Δquote = quote_reserve - k / (base_reserve + Δbase)
    """
    if base_reserve <= 0 or quote_reserve <= 0 or base_in <= 0:
        return 0
    k = base_reserve * quote_reserve
    new_quote = _ceil_div(k, base_reserve + base_in)
    return max(quote_reserve - new_quote, 0)


def apply_slippage(amount: int, slippage_percent: float) -> int:
    """Mínimo aceptable tras descontar el slippage."""
    factor = max(0.0, 100.0 - slippage_percent) / 100.0
    return int(amount * factor)


# ----------------- CUENTAS DEL SWAP -----------------

@dataclass
class SwapAccounts:
    pool: Pubkey
    user: Pubkey
    base_mint: Pubkey
    quote_mint: Pubkey
    user_base_token_account: Pubkey
    user_quote_token_account: Pubkey
    pool_base_token_account: Pubkey
    pool_quote_token_account: Pubkey
    protocol_fee_recipient: Pubkey
    protocol_fee_recipient_token_account: Pubkey
    coin_creator_vault_ata: Pubkey
    coin_creator_vault_authority: Pubkey

    def metas(self) -> List[AccountMeta]:
        # Mismo orden que el IDL de pump_amm (buy y sell comparten cuentas)
        return [
            AccountMeta(pubkey=self.pool, is_signer=False, is_writable=False),
            AccountMeta(pubkey=self.user, is_signer=True, is_writable=True),
            AccountMeta(pubkey=GLOBAL_CONFIG, is_signer=False, is_writable=False),
            AccountMeta(pubkey=self.base_mint, is_signer=False, is_writable=False),
            AccountMeta(pubkey=self.quote_mint, is_signer=False, is_writable=False),
            AccountMeta(pubkey=self.user_base_token_account, is_signer=False, is_writable=True),
            AccountMeta(pubkey=self.user_quote_token_account, is_signer=False, is_writable=True),
            AccountMeta(pubkey=self.pool_base_token_account, is_signer=False, is_writable=True),
            AccountMeta(pubkey=self.pool_quote_token_account, is_signer=False, is_writable=True),
            AccountMeta(pubkey=self.protocol_fee_recipient, is_signer=False, is_writable=False),
            AccountMeta(
                pubkey=self.protocol_fee_recipient_token_account,
                is_signer=False,
                is_writable=True,
            ),
            AccountMeta(pubkey=TOKEN_PROGRAM_ID, is_signer=False, is_writable=False),
            AccountMeta(pubkey=TOKEN_PROGRAM_ID, is_signer=False, is_writable=False),
            AccountMeta(pubkey=SYS_PROGRAM_ID, is_signer=False, is_writable=False),
            AccountMeta(pubkey=ASSOCIATED_TOKEN_PROGRAM_ID, is_signer=False, is_writable=False),
            AccountMeta(pubkey=EVENT_AUTHORITY, is_signer=False, is_writable=False),
            AccountMeta(pubkey=PUMPSWAP_PROGRAM_ID, is_signer=False, is_writable=False),
            AccountMeta(pubkey=self.coin_creator_vault_ata, is_signer=False, is_writable=True),
            AccountMeta(
                pubkey=self.coin_creator_vault_authority, is_signer=False, is_writable=False
            ),
        ]


def derive_swap_accounts(
    pool_address: Pubkey,
    pool: PoolLayout,
    user: Pubkey,
    protocol_fee_recipient: Pubkey,
) -> SwapAccounts:
    coin_creator_vault_authority, _ = Pubkey.find_program_address(
        [b"creator_vault", bytes(pool.coin_creator)],
        PUMPSWAP_PROGRAM_ID,
    )
    return SwapAccounts(
        pool=pool_address,
        user=user,
        base_mint=pool.base_mint,
        quote_mint=pool.quote_mint,
        user_base_token_account=get_associated_token_address(user, pool.base_mint),
        user_quote_token_account=get_associated_token_address(user, pool.quote_mint),
        pool_base_token_account=pool.pool_base_token_account,
        pool_quote_token_account=pool.pool_quote_token_account,
        protocol_fee_recipient=protocol_fee_recipient,
        protocol_fee_recipient_token_account=get_associated_token_address(
            protocol_fee_recipient, pool.quote_mint
        ),
        coin_creator_vault_ata=get_associated_token_address(
            coin_creator_vault_authority, pool.quote_mint
        ),
        coin_creator_vault_authority=coin_creator_vault_authority,
    )


def build_swap_instruction(
    side: TradeSide, accounts: SwapAccounts, base_amount: int, quote_limit: int
) -> Instruction:
    """
    Datos: { method_id: [u8;8], base_amount: u64, quote_limit: u64 }
      buy:  base_amount_out, max_quote_amount_in
      sell: base_amount_in,  min_quote_amount_out
    """
    method = PUMPSWAP_BUY_METHOD if side == TradeSide.BUY else PUMPSWAP_SELL_METHOD
    data = method + struct.pack("<QQ", int(base_amount), int(quote_limit))
    return Instruction(PUMPSWAP_PROGRAM_ID, data, accounts.metas())


def estimate_settlement(submission: SwapSubmission) -> SwapSettlement:
    """Montos de la estimación previa al envío (exact=False)."""
    return SwapSettlement(
        signature=submission.signature,
        side=submission.side,
        token_amount=submission.token_amount_raw / (10 ** submission.token_decimals),
        sol_amount=submission.quote_amount_raw / LAMPORTS_PER_SOL,
        fees_sol=0.0,
        exact=False,
        source="estimate",
    )


# ----------------- EXECUTOR -----------------

class PumpSwapExecutor:
    """
    Executor para PumpSwap que:
    - Resuelve el pool con PoolResolver
    - Lee reservas y calcula montos con la fórmula de producto constante
    - Construye una única TX atómica (compute budget + ATAs + wrap + swap + unwrap)
    - Liquida montos exactos a partir del evento Buy/Sell emitido
    """

    def __init__(
        self,
        config: BotConfig,
        ledger: Any,
        resolver: PoolResolver,
        keypair: Optional[Keypair] = None,
    ) -> None:
        self._config = config
        self._ledger = ledger
        self._resolver = resolver
        self._keypair = keypair
        if keypair is None:
            logger.warning("WALLET_PRIVATE_KEY no configurado, PumpSwapExecutor sólo estima.")
        self._fee_recipient: Optional[Pubkey] = None
        self._fee_recipient_fetched_at = 0.0

    @property
    def simulation(self) -> bool:
        return self._config.mode != "real"

    @property
    def owner(self) -> Pubkey:
        if self._keypair is None:
            raise SubmissionFailed("WALLET_PRIVATE_KEY requerido para firmar.")
        return self._keypair.pubkey()

    # ------------- Helpers internos -------------

    async def fetch_pool(self, pool_address: Pubkey) -> PoolLayout:
        data = await self._ledger.get_account_data(pool_address)
        if data is None:
            raise PriceUnavailable(f"No se pudo leer la cuenta del pool {pool_address}.")
        return PoolLayout.parse(data)

    async def _protocol_fee_recipient(self) -> Pubkey:
        now = time.time()
        if (
            self._fee_recipient is not None
            and now - self._fee_recipient_fetched_at < PROTOCOL_FEE_CACHE_TTL
        ):
            return self._fee_recipient

        data = await self._ledger.get_account_data(GLOBAL_CONFIG)
        if data is None:
            raise SubmissionFailed("No se pudo leer GlobalConfig de PumpSwap.")
        layout = GlobalConfigLayout.parse(data)
        if not layout.protocol_fee_recipients:
            raise SubmissionFailed("GlobalConfig sin protocol fee recipients.")

        self._fee_recipient = layout.protocol_fee_recipients[0]
        self._fee_recipient_fetched_at = now
        return self._fee_recipient

    async def pool_reserves(self, pool: PoolLayout) -> PoolReserves:
        base, quote = await asyncio.gather(
            self._ledger.get_token_balance(pool.pool_base_token_account),
            self._ledger.get_token_balance(pool.pool_quote_token_account),
        )
        if base is None or quote is None:
            raise PriceUnavailable("No se pudieron leer las reservas del pool.")
        reserves = PoolReserves(
            base_reserve=base.amount,
            quote_reserve=quote.amount,
            base_decimals=base.decimals,
            quote_decimals=quote.decimals,
        )
        if not reserves.is_valid:
            raise PriceUnavailable("Reservas del pool en cero.")
        return reserves

    async def _prepare(self, mint: str) -> Tuple[Pubkey, PoolLayout, PoolReserves]:
        resolution = await self._resolver.resolve(mint)
        try:
            pool = await self.fetch_pool(resolution.pool_address)
            reserves = await self.pool_reserves(pool)
        except asyncio.TimeoutError as exc:
            raise SubmissionFailed(f"Timeout leyendo pool de {mint}") from exc
        return resolution.pool_address, pool, reserves

    def _compute_budget(self) -> List[Instruction]:
        return [
            set_compute_unit_limit(self._config.compute_unit_limit),
            set_compute_unit_price(self._config.compute_unit_price),
        ]

    def build_buy_instructions(
        self, accounts: SwapAccounts, base_amount_out: int, max_quote_in: int
    ) -> List[Instruction]:
        user = accounts.user
        return [
            *self._compute_budget(),
            create_idempotent_associated_token_account(user, user, accounts.base_mint),
            create_idempotent_associated_token_account(user, user, accounts.quote_mint),
            # wrap: SOL -> WSOL
            transfer(
                TransferParams(
                    from_pubkey=user,
                    to_pubkey=accounts.user_quote_token_account,
                    lamports=int(max_quote_in),
                )
            ),
            sync_native(
                SyncNativeParams(
                    program_id=TOKEN_PROGRAM_ID, account=accounts.user_quote_token_account
                )
            ),
            build_swap_instruction(TradeSide.BUY, accounts, base_amount_out, max_quote_in),
            # unwrap: cerrar WSOL y recuperar rent + sobrante
            close_account(
                CloseAccountParams(
                    program_id=TOKEN_PROGRAM_ID,
                    account=accounts.user_quote_token_account,
                    dest=user,
                    owner=user,
                )
            ),
        ]

    def build_sell_instructions(
        self, accounts: SwapAccounts, base_amount_in: int, min_quote_out: int
    ) -> List[Instruction]:
        user = accounts.user
        return [
            *self._compute_budget(),
            create_idempotent_associated_token_account(user, user, accounts.quote_mint),
            build_swap_instruction(TradeSide.SELL, accounts, base_amount_in, min_quote_out),
            close_account(
                CloseAccountParams(
                    program_id=TOKEN_PROGRAM_ID,
                    account=accounts.user_quote_token_account,
                    dest=user,
                    owner=user,
                )
            ),
        ]

    async def _compile(self, instructions: List[Instruction]) -> VersionedTransaction:
        blockhash = await self._ledger.get_latest_blockhash()
        message = MessageV0.try_compile(
            payer=self.owner,
            instructions=instructions,
            address_lookup_table_accounts=[],
            recent_blockhash=blockhash,
        )
        return VersionedTransaction(message, [self._keypair])

    async def _submit(self, pool_address: Pubkey, pool: PoolLayout, side: TradeSide,
                      base_amount: int, quote_limit: int) -> Tuple[str, bool]:
        """Devuelve (signature, simulated)."""
        if self.simulation and self._keypair is None:
            logger.info("[Executor] MODE=simulation sin wallet, sólo DRY_RUN interno.")
            return SIMULATED_SIGNATURE_PREFIX + uuid.uuid4().hex, True

        fee_recipient = await self._protocol_fee_recipient()
        accounts = derive_swap_accounts(pool_address, pool, self.owner, fee_recipient)
        if side == TradeSide.BUY:
            instructions = self.build_buy_instructions(accounts, base_amount, quote_limit)
        else:
            instructions = self.build_sell_instructions(accounts, base_amount, quote_limit)

        try:
            tx = await self._compile(instructions)
        except asyncio.TimeoutError as exc:
            raise SubmissionFailed("Timeout pidiendo blockhash") from exc

        if self.simulation:
            result = await self._ledger.simulate_transaction(tx)
            if result.get("err"):
                raise SubmissionFailed(f"Simulación falló: {result['err']}")
            logger.info(
                "[Executor] (SIM) %s simulado OK (%s CU)",
                side.value,
                result.get("units_consumed"),
            )
            return SIMULATED_SIGNATURE_PREFIX + uuid.uuid4().hex, True

        signature = await self._ledger.send_transaction(tx)
        return signature, False

    # ------------- API pública del executor -------------

    async def buy(
        self, mint: str, sol_amount: float, slippage_percent: Optional[float] = None
    ) -> SwapSubmission:
        slippage = self._config.slippage_percent if slippage_percent is None else slippage_percent
        quote_in = int(sol_amount * LAMPORTS_PER_SOL)
        if quote_in <= 0:
            raise SubmissionFailed("sol_amount debe ser > 0")

        pool_address, pool, reserves = await self._prepare(mint)
        expected_out = buy_base_out(reserves.base_reserve, reserves.quote_reserve, quote_in)
        min_out = apply_slippage(expected_out, slippage)
        if min_out <= 0:
            raise SubmissionFailed("token_amount calculado es 0; no tiene sentido comprar.")
        # la instrucción compra exactamente min_out tokens; el gasto estimado sale de ahí
        expected_spend = buy_quote_in(reserves.base_reserve, reserves.quote_reserve, min_out)

        signature, simulated = await self._submit(
            pool_address, pool, TradeSide.BUY, min_out, quote_in
        )
        logger.info(
            "[Executor] BUY %s enviado: %d tokens (~%d sin slippage) por ~%.6f SOL (max %.4f), signature=%s",
            mint,
            min_out,
            expected_out,
            expected_spend / LAMPORTS_PER_SOL,
            sol_amount,
            signature,
        )
        return SwapSubmission(
            signature=signature,
            side=TradeSide.BUY,
            mint=str(mint),
            pool_address=str(pool_address),
            token_amount_raw=min_out,
            quote_amount_raw=min(expected_spend, quote_in),
            quote_limit_raw=quote_in,
            token_decimals=reserves.base_decimals,
            simulated=simulated,
        )

    async def sell(
        self,
        mint: str,
        token_amount: float,
        decimals: int = 6,
        slippage_percent: Optional[float] = None,
    ) -> SwapSubmission:
        slippage = self._config.slippage_percent if slippage_percent is None else slippage_percent
        base_in = int(round(token_amount * (10 ** decimals)))
        if base_in <= 0:
            raise SubmissionFailed("amount calculado es 0; revisa token_amount/decimals")

        pool_address, pool, reserves = await self._prepare(mint)
        expected_quote = sell_quote_out(reserves.base_reserve, reserves.quote_reserve, base_in)
        min_quote_out = apply_slippage(expected_quote, slippage)

        signature, simulated = await self._submit(
            pool_address, pool, TradeSide.SELL, base_in, min_quote_out
        )
        logger.info(
            "[Executor] SELL %s enviado: %d tokens -> ~%.6f SOL (min %.6f), signature=%s",
            mint,
            base_in,
            expected_quote / LAMPORTS_PER_SOL,
            min_quote_out / LAMPORTS_PER_SOL,
            signature,
        )
        return SwapSubmission(
            signature=signature,
            side=TradeSide.SELL,
            mint=str(mint),
            pool_address=str(pool_address),
            token_amount_raw=base_in,
            quote_amount_raw=expected_quote,
            quote_limit_raw=min_quote_out,
            token_decimals=decimals,
            simulated=simulated,
        )

    async def confirmation_status(self, signature: str) -> ConfirmationState:
        """ConfirmationTimeout se propaga: el caller lo cuenta como no confirmado."""
        if signature.startswith(SIMULATED_SIGNATURE_PREFIX):
            return ConfirmationState.CONFIRMED

        status = await self._ledger.get_signature_status(signature)
        if not status.found:
            return ConfirmationState.PENDING
        if status.err is not None:
            logger.warning("[Executor] TX %s falló on-chain: %s", signature, status.err)
            return ConfirmationState.FAILED
        if status.confirmed:
            return ConfirmationState.CONFIRMED
        return ConfirmationState.PENDING

    async def settle(self, submission: SwapSubmission) -> SwapSettlement:
        """
        Montos finales del swap: evento on-chain (exacto) -> delta de balances
        -> estimación previa. Sólo el primero se marca exact=True.
        """
        if submission.simulated:
            return estimate_settlement(submission)

        try:
            record = await self._ledger.get_transaction(submission.signature)
        except Exception as exc:
            logger.warning(
                "[Executor] No se pudo leer la TX %s (%r), usando estimación",
                submission.signature,
                exc,
            )
            return estimate_settlement(submission)

        if record is None:
            return estimate_settlement(submission)

        event = find_trade_event(
            record.log_messages, record.inner_instruction_data, side=submission.side
        )
        if event is not None:
            return SwapSettlement(
                signature=submission.signature,
                side=submission.side,
                token_amount=event.base_amount / (10 ** submission.token_decimals),
                sol_amount=event.quote_amount / LAMPORTS_PER_SOL,
                fees_sol=event.total_fees / LAMPORTS_PER_SOL,
                exact=True,
                source="event",
                event=event,
            )

        logger.warning(
            "[Executor] Evento %s no encontrado en %s, montos NO exactos",
            submission.side.value,
            submission.signature,
        )
        from_balances = self._settlement_from_balances(record, submission)
        if from_balances is not None:
            return from_balances
        return estimate_settlement(submission)

    def _settlement_from_balances(
        self, record: TransactionRecord, submission: SwapSubmission
    ) -> Optional[SwapSettlement]:
        if self._keypair is None:
            return None
        user = str(self.owner)
        key = (user, submission.mint)
        pre = record.pre_token_balances.get(key, 0)
        post = record.post_token_balances.get(key, 0)
        token_delta = abs(post - pre)
        if token_delta == 0:
            return None

        idx = record.account_keys.index(user) if user in record.account_keys else 0
        if idx >= len(record.pre_balances) or idx >= len(record.post_balances):
            return None
        lamport_delta = record.post_balances[idx] - record.pre_balances[idx]
        if submission.side == TradeSide.SELL:
            sol_lamports = lamport_delta + record.fee
        else:
            sol_lamports = -lamport_delta - record.fee

        return SwapSettlement(
            signature=submission.signature,
            side=submission.side,
            token_amount=token_delta / (10 ** submission.token_decimals),
            sol_amount=max(sol_lamports, 0) / LAMPORTS_PER_SOL,
            fees_sol=record.fee / LAMPORTS_PER_SOL,
            exact=False,
            source="balance_delta",
        )

