"""FastAPI application entrypoint."""

from contextlib import asynccontextmanager

from fastapi import FastAPI

from src.core.config import settings
from src.core.database import create_schema, is_sqlite
from src.core.exceptions import register_exception_handlers
from src.core.logging import RequestLoggingMiddleware, configure_logging
from src.modules.appointments.router import admin_router as admin_appointments_router
from src.modules.appointments.router import router as appointments_router
from src.modules.checkin.router import admin_router as admin_checkin_router
from src.modules.checkin.router import front_desk_router
from src.modules.checkin.router import router as checkin_router


@asynccontextmanager
async def lifespan(_: FastAPI):
    if is_sqlite():
        await create_schema()
    yield


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(
        title=settings.app_name,
        debug=settings.debug,
        version="0.1.0",
        lifespan=lifespan,
    )
    app.add_middleware(RequestLoggingMiddleware)
    register_exception_handlers(app)

    @app.get("/health", tags=["system"])
    async def health_check() -> dict[str, str]:
        return {"status": "ok"}

    app.include_router(appointments_router)
    app.include_router(admin_appointments_router)
    app.include_router(checkin_router)
    app.include_router(admin_checkin_router)
    app.include_router(front_desk_router)

    return app


app = create_app()
