# storage.py
"""
Persistencia en disco:

- JsonPositionStore: posiciones vivas (se reescribe entero en cada transición).
- JsonTradeHistory: histórico append-only de trades archivados + resumen.

Las escrituras son atómicas (archivo temporal en el mismo directorio +
os.replace), así un crash a mitad de escritura nunca deja un JSON cortado.
"""

import json
import logging
import os
import tempfile
import time
from typing import Any, Dict, Iterable, List

from models import Position, PositionStatus, TradeRecord

logger = logging.getLogger(__name__)


def atomic_write_json(path: str, payload: Any) -> None:
    abs_path = os.path.abspath(path)
    directory = os.path.dirname(abs_path)
    os.makedirs(directory, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(prefix=".tmp_", suffix=".json", dir=directory)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2, ensure_ascii=False)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, abs_path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise


def read_json(path: str, default: Any) -> Any:
    if not os.path.exists(path):
        return default
    try:
        with open(path, "r", encoding="utf-8") as handle:
            return json.load(handle)
    except json.JSONDecodeError as exc:
        logger.error("[Storage] JSON corrupto en %s: %r", path, exc)
        return default


class JsonPositionStore:
    def __init__(self, path: str, history_size: int = 100) -> None:
        self.path = path
        self._history_size = history_size

    def load(self) -> Dict[str, Position]:
        raw = read_json(self.path, {})
        positions: Dict[str, Position] = {}
        for item in raw.get("positions", []):
            try:
                pos = Position.from_dict(item, history_size=self._history_size)
            except (TypeError, ValueError) as exc:
                logger.error("[Storage] Posición ilegible descartada: %r", exc)
                continue
            positions[pos.id] = pos
        logger.info("[Storage] %d posiciones cargadas de %s", len(positions), self.path)
        return positions

    def save(self, positions: Iterable[Position]) -> None:
        payload = {
            "updated_at": time.time(),
            "positions": [p.to_dict() for p in positions],
        }
        atomic_write_json(self.path, payload)


class JsonTradeHistory:
    def __init__(self, path: str) -> None:
        self.path = path
        raw = read_json(path, {})
        self._records: List[Dict[str, Any]] = list(raw.get("trades", []))
        self._summary: Dict[str, Any] = self._compute_summary(self._records)

    def append(self, record: TradeRecord) -> Dict[str, Any]:
        self._records.append(record.to_dict())
        # el resumen se recalcula desde la lista completa, nunca incremental
        self._summary = self._compute_summary(self._records)
        atomic_write_json(self.path, {"summary": self._summary, "trades": self._records})
        return self._summary

    def records(self) -> List[Dict[str, Any]]:
        return list(self._records)

    def summary(self) -> Dict[str, Any]:
        return dict(self._summary)

    @staticmethod
    def _compute_summary(records: List[Dict[str, Any]]) -> Dict[str, Any]:
        total_pnl = sum(float(r.get("realized_pnl", 0.0)) for r in records)
        manual = sum(
            1 for r in records if r.get("status") == PositionStatus.MANUAL_REVIEW_NEEDED.value
        )
        # una revisión manual no tiene resultado conocido: ni win ni loss
        settled = [
            float(r.get("realized_pnl", 0.0))
            for r in records
            if r.get("status") != PositionStatus.MANUAL_REVIEW_NEEDED.value
        ]
        wins = sum(1 for pnl in settled if pnl > 0)
        losses = len(settled) - wins
        total = len(records)
        return {
            "total_trades": total,
            "total_pnl": total_pnl,
            "wins": wins,
            "losses": losses,
            "win_rate": (wins / len(settled) * 100.0) if settled else 0.0,
            "manual_reviews": manual,
        }
