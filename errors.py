# errors.py
"""
Errores tipados del motor de posiciones.

- Los transitorios (red / ledger) se reintentan localmente con un número
  acotado de intentos.
- EventDecodeFailed nunca aborta un trade: se cae a montos estimados.
- Las violaciones de invariantes (ej. segunda venta en vuelo) se devuelven
  como fallo tipado, no como excepción genérica.
"""


class TradingError(Exception):
    """Base de todos los errores del motor."""


class PoolNotFound(TradingError):
    """La dirección del pool se deriva pero la cuenta no existe (aún)."""

    def __init__(self, mint: str, pool_address: str, attempts: int) -> None:
        super().__init__(
            f"Pool {pool_address} para {mint} no encontrado tras {attempts} intentos"
        )
        self.mint = mint
        self.pool_address = pool_address
        self.attempts = attempts


class PriceUnavailable(TradingError):
    """Reservas en cero, timeout o pool ilegible: se salta este ciclo."""


class SubmissionFailed(TradingError):
    """La transacción fue rechazada antes de poder confirmarse."""


class ConfirmationTimeout(TradingError):
    """No se conoce el estado de la firma tras el tiempo de espera."""


class EventDecodeFailed(TradingError):
    """El registro binario no es un evento Buy/Sell reconocible."""


class RetryBudgetExhausted(TradingError):
    """Se agotaron los reintentos: la posición pasa a revisión manual."""


class SellRejected(TradingError):
    """Venta rechazada por invariante (posición no ACTIVE, cantidad 0...)."""


class PositionNotFound(TradingError):
    pass
