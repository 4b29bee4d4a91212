import asyncio
from contextlib import asynccontextmanager, suppress
from collections.abc import AsyncGenerator

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from dispatch_service.api.v1 import dispatches
from dispatch_service.config import settings
from dispatch_service.core.deps import get_services
from dispatch_service.core.errors import install_error_handlers
from dispatch_service.core.logging import RequestLoggingMiddleware, setup_logging
from dispatch_service.models.database import get_engine
from dispatch_service.services.container import DispatchServices


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    setup_logging(json_format=settings.log_json)
    services = app.dependency_overrides.get(get_services, get_services)()
    tracker_task = asyncio.create_task(services.tracker.run(services.store))
    yield
    tracker_task.cancel()
    with suppress(asyncio.CancelledError):
        await tracker_task
    services.bus.close()
    await get_engine().dispose()


def create_app() -> FastAPI:
    application = FastAPI(
        title=settings.app_name,
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in settings.cors_origins.split(",") if o.strip()],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    application.add_middleware(RequestLoggingMiddleware)
    install_error_handlers(application)

    application.include_router(
        dispatches.router, prefix="/api/v1/microgrids", tags=["dispatches"]
    )

    @application.get("/health")
    async def health_check(services: DispatchServices = Depends(get_services)) -> dict:
        result: dict = {"status": "ok", "services": {}}

        try:
            async with services.session_factory() as session:
                await session.execute(text("SELECT 1"))
            result["services"]["database"] = "ok"
        except Exception as e:
            result["services"]["database"] = f"error: {e}"
            result["status"] = "degraded"

        result["services"]["activation_tracker"] = {
            "interval_seconds": services.tracker.interval_seconds,
        }
        return result

    return application


app = create_app()
