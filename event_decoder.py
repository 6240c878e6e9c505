# event_decoder.py
"""
Decodificador de los eventos BuyEvent / SellEvent de PumpSwap.

El programa emite cada evento como un registro binario:
    [8 bytes discriminador][i64 timestamp][13 x u64 en orden IDL]
    [7 x Pubkey][u64 coin_creator_fee_basis_points][u64 coin_creator_fee]

El registro aparece en los logs como "Program data: <base64>" o como
datos de una instrucción interna (self-CPI) prefijados por EVENT_IX_TAG.
"""

import base64
import binascii
import logging
import struct
from typing import Iterable, List, Optional

from errors import EventDecodeFailed
from models import TradeEvent, TradeSide

logger = logging.getLogger(__name__)

BUY_EVENT_DISCRIMINATOR = bytes([103, 244, 82, 31, 44, 245, 119, 119])
SELL_EVENT_DISCRIMINATOR = bytes([62, 47, 55, 10, 165, 3, 220, 42])

# sha256("anchor:event")[:8], prefijo de los eventos emitidos vía CPI
EVENT_IX_TAG = bytes.fromhex("e445a52e51cb9a1d")

PROGRAM_DATA_PREFIX = "Program data: "

_NUMERIC_LAYOUT = struct.Struct("<q13Q")
NUMERIC_SIZE = 8 + _NUMERIC_LAYOUT.size           # 120 bytes
_PUBKEYS_SIZE = 7 * 32
_CREATOR_FEE_LAYOUT = struct.Struct("<QQ")
FULL_SIZE = NUMERIC_SIZE + _PUBKEYS_SIZE + _CREATOR_FEE_LAYOUT.size

_DISCRIMINATORS = {
    BUY_EVENT_DISCRIMINATOR: TradeSide.BUY,
    SELL_EVENT_DISCRIMINATOR: TradeSide.SELL,
}


def decode_trade_event(data: bytes) -> TradeEvent:
    if len(data) < 8:
        raise EventDecodeFailed(f"Registro demasiado corto: {len(data)} bytes")

    side = _DISCRIMINATORS.get(bytes(data[:8]))
    if side is None:
        raise EventDecodeFailed(f"Discriminador desconocido: {bytes(data[:8]).hex()}")

    if len(data) < NUMERIC_SIZE:
        raise EventDecodeFailed(
            f"Evento {side.value} truncado: {len(data)} bytes (mínimo {NUMERIC_SIZE})"
        )

    (
        timestamp,
        base_amount,
        quote_limit,
        user_base_reserves,
        user_quote_reserves,
        pool_base_reserves,
        pool_quote_reserves,
        quote_amount,
        lp_fee_bps,
        lp_fee,
        protocol_fee_bps,
        protocol_fee,
        _quote_with_lp_fee,
        user_quote_amount,
    ) = _NUMERIC_LAYOUT.unpack_from(data, 8)

    creator_fee_bps = 0
    creator_fee = 0
    if len(data) >= FULL_SIZE:
        creator_fee_bps, creator_fee = _CREATOR_FEE_LAYOUT.unpack_from(
            data, NUMERIC_SIZE + _PUBKEYS_SIZE
        )

    # Buy: quote_amount_in es lo que entra al pool antes de fees;
    # Sell: quote_amount_out es lo que sale del pool antes de fees.
    return TradeEvent(
        event_type=side,
        timestamp=timestamp,
        base_amount=base_amount,
        quote_amount=user_quote_amount,
        quote_limit=quote_limit,
        quote_amount_before_fees=quote_amount,
        user_base_token_reserves=user_base_reserves,
        user_quote_token_reserves=user_quote_reserves,
        pool_base_token_reserves=pool_base_reserves,
        pool_quote_token_reserves=pool_quote_reserves,
        lp_fee_basis_points=lp_fee_bps,
        lp_fee=lp_fee,
        protocol_fee_basis_points=protocol_fee_bps,
        protocol_fee=protocol_fee,
        coin_creator_fee_basis_points=creator_fee_bps,
        coin_creator_fee=creator_fee,
    )


def _candidate_records(
    log_messages: Iterable[str], inner_instruction_data: Iterable[bytes]
) -> List[bytes]:
    records: List[bytes] = []
    for line in log_messages or []:
        if not line.startswith(PROGRAM_DATA_PREFIX):
            continue
        payload = line[len(PROGRAM_DATA_PREFIX):].strip()
        try:
            records.append(base64.b64decode(payload, validate=True))
        except (binascii.Error, ValueError):
            continue

    for data in inner_instruction_data or []:
        if data[:8] == EVENT_IX_TAG:
            records.append(data[8:])
    return records


def find_trade_event(
    log_messages: Iterable[str],
    inner_instruction_data: Iterable[bytes] = (),
    side: Optional[TradeSide] = None,
) -> Optional[TradeEvent]:
    """
    Recorre los registros emitidos y devuelve el primer Buy/Sell (del lado
    pedido, si se indica). None si no hay ninguno reconocible.
    """
    for record in _candidate_records(log_messages, inner_instruction_data):
        try:
            event = decode_trade_event(record)
        except EventDecodeFailed:
            continue
        if side is None or event.event_type == side:
            return event
    logger.debug("[EventDecoder] Sin evento %s en los logs", side.value if side else "trade")
    return None
