# ledger.py
#
# Envoltorio fino sobre solana-py AsyncClient.
#
# Todo lo que el motor necesita del ledger pasa por aquí y sale convertido
# a tipos simples (bytes, int, dataclasses), así el resto del código no
# depende de la forma de las respuestas RPC. Cada llamada va acotada por
# rpc_timeout.

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import base58
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Commitment
from solana.rpc.types import TxOpts
from solders.hash import Hash
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction
from solders.transaction_status import TransactionConfirmationStatus

from errors import ConfirmationTimeout, SubmissionFailed

logger = logging.getLogger(__name__)


@dataclass
class TokenBalance:
    amount: int
    decimals: int


@dataclass
class SignatureStatus:
    found: bool
    confirmed: bool = False
    finalized: bool = False
    err: Optional[str] = None


@dataclass
class TransactionRecord:
    """Lo mínimo de una transacción confirmada que usa el executor."""

    signature: str
    err: Optional[str]
    log_messages: List[str] = field(default_factory=list)
    inner_instruction_data: List[bytes] = field(default_factory=list)
    fee: int = 0
    account_keys: List[str] = field(default_factory=list)
    pre_balances: List[int] = field(default_factory=list)
    post_balances: List[int] = field(default_factory=list)
    # (owner, mint) -> amount crudo
    pre_token_balances: Dict[tuple, int] = field(default_factory=dict)
    post_token_balances: Dict[tuple, int] = field(default_factory=dict)


def load_keypair(secret: str) -> Keypair:
    """
    Acepta la private key en base58 (formato Phantom) o como array JSON
    [1,2,3,...] (formato solana-keygen). Debe tener 64 bytes.
    """
    trimmed = secret.strip()
    if trimmed.startswith("[") and trimmed.endswith("]"):
        try:
            secret_bytes = bytes(json.loads(trimmed))
        except (ValueError, TypeError) as exc:
            raise ValueError(f"Private key en formato array inválida: {exc}") from exc
    else:
        try:
            secret_bytes = base58.b58decode(trimmed)
        except ValueError as exc:
            raise ValueError(f"Private key base58 inválida: {exc}") from exc

    if len(secret_bytes) != 64:
        raise ValueError(
            f"Longitud de private key inválida: {len(secret_bytes)} bytes (esperado 64)"
        )
    return Keypair.from_bytes(secret_bytes)


def _token_balance_map(balances: Any, account_keys: List[str]) -> Dict[tuple, int]:
    out: Dict[tuple, int] = {}
    for bal in balances or []:
        owner = getattr(bal, "owner", None)
        if owner is None:
            idx = getattr(bal, "account_index", None)
            owner = account_keys[idx] if idx is not None and idx < len(account_keys) else None
        try:
            amount = int(bal.ui_token_amount.amount)
        except (AttributeError, TypeError, ValueError):
            continue
        out[(str(owner), str(bal.mint))] = amount
    return out


class LedgerClient:
    def __init__(
        self,
        rpc_url: str,
        commitment: str = "confirmed",
        timeout: float = 10.0,
        client: Optional[AsyncClient] = None,
    ) -> None:
        self._commitment = Commitment(commitment)
        self._timeout = timeout
        self._client = client or AsyncClient(rpc_url, commitment=self._commitment)

    async def _call(self, coro: Any) -> Any:
        return await asyncio.wait_for(coro, timeout=self._timeout)

    # ------------- Lecturas -------------

    async def get_account_data(self, address: Pubkey) -> Optional[bytes]:
        resp = await self._call(self._client.get_account_info(address))
        if resp.value is None:
            return None
        return bytes(resp.value.data)

    async def get_token_balance(self, address: Pubkey) -> Optional[TokenBalance]:
        try:
            resp = await self._call(self._client.get_token_account_balance(address))
        except asyncio.TimeoutError:
            raise
        except Exception as exc:
            # cuenta inexistente o no-token: el RPC responde con error
            logger.debug("[Ledger] get_token_account_balance %s: %r", address, exc)
            return None
        if resp.value is None:
            return None
        return TokenBalance(amount=int(resp.value.amount), decimals=int(resp.value.decimals))

    async def get_latest_blockhash(self) -> Hash:
        resp = await self._call(self._client.get_latest_blockhash())
        return resp.value.blockhash

    # ------------- Envío -------------

    async def send_transaction(self, tx: VersionedTransaction) -> str:
        opts = TxOpts(skip_preflight=False, preflight_commitment=self._commitment, max_retries=2)
        try:
            resp = await self._call(self._client.send_transaction(tx, opts=opts))
        except asyncio.TimeoutError as exc:
            raise SubmissionFailed("Timeout enviando la transacción") from exc
        except Exception as exc:
            raise SubmissionFailed(f"RPC rechazó la transacción: {exc}") from exc
        return str(resp.value)

    async def simulate_transaction(self, tx: VersionedTransaction) -> Dict[str, Any]:
        try:
            resp = await self._call(self._client.simulate_transaction(tx, sig_verify=False))
        except asyncio.TimeoutError as exc:
            raise SubmissionFailed("Timeout simulando la transacción") from exc
        except Exception as exc:
            raise SubmissionFailed(f"Simulación rechazada: {exc}") from exc
        value = resp.value
        return {
            "err": str(value.err) if value.err is not None else None,
            "logs": list(value.logs or []),
            "units_consumed": value.units_consumed,
        }

    # ------------- Confirmación -------------

    async def get_signature_status(self, signature: str) -> SignatureStatus:
        try:
            resp = await self._call(
                self._client.get_signature_statuses(
                    [Signature.from_string(signature)], search_transaction_history=True
                )
            )
        except asyncio.TimeoutError as exc:
            raise ConfirmationTimeout(f"Timeout consultando estado de {signature}") from exc

        status = resp.value[0] if resp.value else None
        if status is None:
            return SignatureStatus(found=False)

        level = status.confirmation_status
        finalized = level == TransactionConfirmationStatus.Finalized
        confirmed = finalized or level == TransactionConfirmationStatus.Confirmed
        return SignatureStatus(
            found=True,
            confirmed=confirmed,
            finalized=finalized,
            err=str(status.err) if status.err is not None else None,
        )

    async def get_transaction(self, signature: str) -> Optional[TransactionRecord]:
        try:
            resp = await self._call(
                self._client.get_transaction(
                    Signature.from_string(signature),
                    encoding="json",
                    commitment=self._commitment,
                    max_supported_transaction_version=0,
                )
            )
        except asyncio.TimeoutError as exc:
            raise ConfirmationTimeout(f"Timeout leyendo transacción {signature}") from exc

        if resp.value is None:
            return None
        meta = resp.value.transaction.meta
        if meta is None:
            return None

        account_keys: List[str] = []
        message = getattr(resp.value.transaction.transaction, "message", None)
        for key in getattr(message, "account_keys", None) or []:
            account_keys.append(str(getattr(key, "pubkey", key)))

        inner_data: List[bytes] = []
        for group in meta.inner_instructions or []:
            for ix in group.instructions:
                data = getattr(ix, "data", None)
                if not data:
                    continue
                try:
                    inner_data.append(base58.b58decode(data))
                except ValueError:
                    continue

        return TransactionRecord(
            signature=signature,
            err=str(meta.err) if meta.err is not None else None,
            log_messages=list(meta.log_messages or []),
            inner_instruction_data=inner_data,
            fee=int(meta.fee or 0),
            account_keys=account_keys,
            pre_balances=list(meta.pre_balances or []),
            post_balances=list(meta.post_balances or []),
            pre_token_balances=_token_balance_map(meta.pre_token_balances, account_keys),
            post_token_balances=_token_balance_map(meta.post_token_balances, account_keys),
        )

    async def close(self) -> None:
        await self._client.close()
