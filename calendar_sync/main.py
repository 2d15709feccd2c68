from __future__ import annotations

import asyncio
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from calendar_sync.db import dispose_engine
from calendar_sync.db_init import init_db
from calendar_sync.errors import AuthExpired, ProviderError, RateLimited, StaleCalendarLink
from calendar_sync.logging_config import configure_logging
from calendar_sync.routes import calendar, oauth, routines, sync, tasks
from calendar_sync.services import outbound_dispatcher
from calendar_sync.settings import get_settings
from calendar_sync.workers import sync_worker

logger = logging.getLogger("calendar_sync")


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="Calendar Sync API", version="0.1.0")

    app.include_router(tasks.router)
    app.include_router(routines.router)
    app.include_router(calendar.router)
    app.include_router(sync.router)
    app.include_router(oauth.router)

    @app.on_event("startup")
    async def _startup():
        await init_db()
        await outbound_dispatcher.recover_in_flight()
        if get_settings().run_background_worker:
            app.state.sync_worker = asyncio.create_task(sync_worker.run_forever())

    @app.on_event("shutdown")
    async def _shutdown():
        worker = getattr(app.state, "sync_worker", None)
        if worker is not None:
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass
        await dispose_engine()

    @app.exception_handler(AuthExpired)
    async def _auth_expired_handler(request: Request, exc: AuthExpired):
        return JSONResponse(status_code=401, content={"detail": str(exc), "reconnect": True})

    @app.exception_handler(RateLimited)
    async def _rate_limited_handler(request: Request, exc: RateLimited):
        return JSONResponse(
            status_code=429,
            content={"detail": exc.message},
            headers={"Retry-After": str(int(exc.retry_after))},
        )

    @app.exception_handler(ProviderError)
    async def _provider_error_handler(request: Request, exc: ProviderError):
        logger.warning("Google Calendar request failed: %s", exc)
        return JSONResponse(status_code=502, content={"detail": str(exc)})

    @app.exception_handler(StaleCalendarLink)
    async def _stale_link_handler(request: Request, exc: StaleCalendarLink):
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception("Unhandled exception: %s", exc)
        return JSONResponse(status_code=500, content={"detail": "Internal error"})

    @app.get("/health")
    async def health():
        return {"ok": True}

    return app


app = create_app()
