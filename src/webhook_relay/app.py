from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI

from webhook_relay.config import Settings
from webhook_relay.database import open_db
from webhook_relay.dependencies import get_settings
from webhook_relay.logging_setup import configure_logging
from webhook_relay.router import admin, router


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        configure_logging(settings.log_level)
        app.state.ready = False
        app.state.db = await open_db(settings.db_path)
        app.state.http = httpx.AsyncClient(timeout=settings.webhook_timeout)
        app.state.ready = True
        yield
        await app.state.http.aclose()
        await app.state.db.close()

    app = FastAPI(lifespan=lifespan)
    app.state.settings = settings
    app.include_router(router)
    app.include_router(admin)
    return app
