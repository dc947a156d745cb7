import logging
import threading
from datetime import datetime, timedelta

from fastapi import FastAPI, HTTPException
import uvicorn

from compoundor.storage import Database

logger = logging.getLogger(__name__)


def create_app(db: Database) -> FastAPI:
    """Read-only HTTP view over the outcome history"""
    app = FastAPI(title="Bault Compoundor")

    @app.get("/health")
    def health():
        return {"status": "healthy", "timestamp": datetime.now().isoformat()}

    @app.get("/metrics")
    def metrics():
        try:
            today = db.get_daily_summary()
            yesterday = db.get_daily_summary(datetime.now() - timedelta(days=1))
        except Exception as e:
            logger.error(f"Metrics query failed: {e}")
            raise HTTPException(status_code=500, detail=str(e))
        yesterday.pop('vaults')
        return {"today": today, "yesterday": yesterday}

    @app.get("/recent_runs")
    def recent_runs(limit: int = 50):
        if limit < 1:
            raise HTTPException(status_code=400, detail="limit must be positive")
        return {"runs": db.recent_runs(limit)}

    @app.get("/vaults/{vault}/failures")
    def vault_failures(vault: str):
        return {"vault": vault, "consecutive_failures": db.get_consecutive_failures(vault)}

    return app


def start_metrics_server(db: Database, port: int = 8000) -> threading.Thread:
    config = uvicorn.Config(create_app(db), host="0.0.0.0", port=port, log_level="warning")
    server = uvicorn.Server(config)
    thread = threading.Thread(target=server.run, daemon=True, name="metrics")
    thread.start()
    logger.info(f"Metrics server listening on port {port}")
    return thread
