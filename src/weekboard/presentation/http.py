from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI, Query
from fastapi.responses import JSONResponse

from ..application.wiring import Runtime, build_runtime
from ..config import Settings

logger = logging.getLogger(__name__)

_NO_STORE = {"Cache-Control": "no-store"}


def _on(v: Optional[str]) -> bool:
    return (v or "0").strip() == "1"


def create_app(runtime: Optional[Runtime] = None, settings: Optional[Settings] = None) -> FastAPI:
    """
    GET /api/leaderboard?refresh=1&names=1 and GET /api/cron/leaderboard.
    Both always answer 200; callers branch on body["ok"].
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owned = runtime is None
        app.state.runtime = runtime or build_runtime(settings or Settings.from_env())
        try:
            yield
        finally:
            if owned:
                await app.state.runtime.aclose()

    app = FastAPI(title="weekboard", lifespan=lifespan)

    @app.get("/api/leaderboard")
    async def leaderboard(refresh: Optional[str] = Query(None), names: Optional[str] = Query(None)) -> JSONResponse:
        rt: Runtime = app.state.runtime
        body = await rt.service.read(refresh=_on(refresh), include_names=_on(names))
        return JSONResponse(body, status_code=200, headers=_NO_STORE)

    @app.get("/api/cron/leaderboard")
    async def cron_refresh() -> JSONResponse:
        rt: Runtime = app.state.runtime
        body = await rt.service.read(refresh=True)
        if not body.get("ok"):
            logger.warning("scheduled refresh failed: %s", body.get("error"))
        return JSONResponse(body, status_code=200, headers=_NO_STORE)

    return app
