#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
🏥 HEALTH CHECK SERVER
======================
Servidor HTTP ligero para healthchecks y monitoreo del motor de posiciones
"""

import logging
from datetime import datetime
from typing import Any

from fastapi import FastAPI
from fastapi.responses import JSONResponse
import uvicorn

logger = logging.getLogger(__name__)


def create_app(engine: Any) -> FastAPI:
    """
    App FastAPI atada a un PositionStateMachine. Todo sale de sus
    snapshots, el servidor no toca el estado.
    """
    started_at = datetime.now()

    app = FastAPI(
        title="PumpSwap Position Bot",
        version="1.0",
        docs_url=None,  # Desactivar docs para producción
        redoc_url=None,
    )

    def _uptime() -> int:
        return int((datetime.now() - started_at).total_seconds())

    @app.get("/")
    async def root():
        return {
            "message": "🚀 PumpSwap Position Bot",
            "status": "healthy",
            "endpoints": {
                "health": "/health",
                "status": "/status",
                "positions": "/positions",
                "history": "/history",
            },
        }

    @app.get("/health")
    async def health_check():
        """
        IMPORTANTE: Retorna 200 SIEMPRE para evitar reinicios
        """
        return JSONResponse(
            status_code=200,
            content={
                "status": "healthy",
                "bot_active": engine.is_active(),
                "mode": engine.config.mode,
                "uptime_seconds": _uptime(),
                "timestamp": datetime.now().isoformat(),
            },
        )

    @app.get("/status")
    async def get_status():
        stats = engine.get_stats_snapshot()
        return JSONResponse({
            "bot": {
                "active": stats["active"],
                "mode": stats["mode"],
                "started_at": started_at.isoformat(),
                "uptime_seconds": _uptime(),
            },
            "positions": {
                "live": stats["num_positions"],
                "pending_sells": stats["pending_sells"],
            },
            "performance": {
                "total_trades": stats["total_trades"],
                "wins": stats["wins"],
                "losses": stats["losses"],
                "win_rate": round(stats["win_rate"], 2),
                "total_realized_pnl_sol": stats["total_realized_pnl_sol"],
                "manual_reviews": stats["manual_reviews"],
            },
        })

    @app.get("/positions")
    async def get_positions():
        return JSONResponse({"positions": engine.get_positions_snapshot()})

    @app.get("/history")
    async def get_history():
        history = engine.history
        if history is None:
            return JSONResponse({"summary": None, "trades": []})
        return JSONResponse({"summary": history.summary(), "trades": history.records()})

    @app.get("/ping")
    async def ping():
        """Ping simple para verificar que el servidor está vivo"""
        return {"ping": "pong", "timestamp": datetime.now().isoformat()}

    return app


async def start_health_server(engine: Any, port: int = 8080) -> None:
    """
    Iniciar servidor HTTP para healthchecks
    """
    try:
        config = uvicorn.Config(
            create_app(engine),
            host="0.0.0.0",
            port=port,
            log_level="warning",
            access_log=False,
            timeout_keep_alive=60,
        )
        server = uvicorn.Server(config)

        logger.info(f"✅ Health server iniciado en puerto {port}")
        logger.info(f"🏥 Healthcheck disponible en: http://0.0.0.0:{port}/health")

        await server.serve()

    except Exception as e:
        logger.error(f"❌ Error iniciando health server: {e}")
        raise
