from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from shift_guardian.errors import (
    AlertNotActiveError,
    NotFoundError,
    PersistenceError,
    ShiftStateError,
    ValidationError,
)
from shift_guardian.ingest import LocationEngine
from shift_guardian.logging_config import get_logger
from shift_guardian.routes import router

logger = get_logger("api", "api.log")

# exception -> HTTP status; shift state conflicts are expected, not system errors
ERROR_STATUS = (
    (ValidationError, 400),
    (NotFoundError, 404),
    (ShiftStateError, 409),
    (AlertNotActiveError, 409),
    (PersistenceError, 503),
)


def _make_handler(status_code: int):
    async def handler(request: Request, exc: Exception):
        if status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        else:
            logger.info(f"{request.method} {request.url.path} -> {status_code}: {exc}")
        return JSONResponse(status_code=status_code, content={"error": str(exc)})
    return handler


async def _unexpected(request: Request, exc: Exception):
    logger.exception(f"{request.method} {request.url.path} crashed: {exc}")
    return JSONResponse(status_code=500, content={"error": "internal error"})


def create_app(engine: Optional[LocationEngine] = None) -> FastAPI:

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "engine", None) is None:
            from shift_guardian.database import create_tables
            from shift_guardian.notifier import RedisNotifier
            from shift_guardian.sql_store import SqlStore

            await create_tables()
            app.state.engine = LocationEngine(SqlStore(), RedisNotifier())
            logger.info("Engine started with PostgreSQL store and Redis notifier")
        yield

    app = FastAPI(title="Shift-Guardian", lifespan=lifespan)
    app.state.engine = engine
    app.include_router(router)
    for exc_type, status_code in ERROR_STATUS:
        app.add_exception_handler(exc_type, _make_handler(status_code))
    app.add_exception_handler(Exception, _unexpected)
    return app


app = create_app()

if __name__=="__main__":
    uvicorn.run("shift_guardian.main:app", host="0.0.0.0", port=8000, reload=False)
