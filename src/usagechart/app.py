"""HTTP API for usagechart."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Query
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from .config import AGENTS_DIR
from .db import Database
from .models import DateRange
from .stats import collect_stats
from .sync import SyncError

logger = logging.getLogger("usagechart")

NO_STORE = {"Cache-Control": "no-store"}


def _error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code, headers=NO_STORE)


def create_app(db_path=None, agents_dir=None) -> FastAPI:
    db = Database(db_path)
    agents_dir = agents_dir or AGENTS_DIR

    @asynccontextmanager
    async def lifespan(app):
        await db.init()
        logger.info("usagechart serving %s (cache %s)", agents_dir, db.db_path)
        yield
        await db.close()

    app = FastAPI(title="usagechart", lifespan=lifespan)
    app.state.db = db
    app.state.agents_dir = agents_dir

    @app.get("/api/stats")
    async def api_stats(start: str | None = Query(None), end: str | None = Query(None)):
        try:
            date_range = DateRange(start=start, end=end)
        except ValidationError as exc:
            return _error(f"invalid date range: {exc.errors()[0]['msg']}", 400)

        try:
            stats = await collect_stats(db, agents_dir, date_range)
        except SyncError as exc:
            logger.error("Stats request failed: %s", exc)
            return _error(str(exc), 500)

        return JSONResponse(stats.model_dump(), headers=NO_STORE)

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "usagechart"}

    return app
