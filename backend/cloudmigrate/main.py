import logging
import os
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from cloudmigrate.api.routes import router
from cloudmigrate.core.config import settings
from cloudmigrate.db.session import init_db


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


def create_app() -> FastAPI:
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
    app.include_router(router, prefix=settings.api_prefix)

    @app.get("/healthz")
    def healthz():
        return {"status": "ok", "env": settings.env}

    return app


def run() -> None:
    host = os.getenv("HOST", "127.0.0.1")
    port = int(os.getenv("PORT", "8000"))
    uvicorn.run("cloudmigrate.main:create_app", factory=True, host=host, port=port, reload=False)
