from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from profile_audit.application import get_audit_service
from profile_audit.core.logger import configure_logging, logger
from profile_audit.core.settings import get_settings
from profile_audit.routes import subjects, tasks


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    service = get_audit_service()
    if service.cache.restore():
        logger.info("Resumed with active subject %s", service.cache.current_subject_id)
    yield
    await service.shutdown()


def create_app() -> FastAPI:
    settings = get_settings()
    configure_logging(settings.log_level, settings.logs_path or None)

    app = FastAPI(title="Profile Audit API", version="0.1.0", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(subjects.router, prefix="/api")
    app.include_router(tasks.router, prefix="/api")

    @app.get("/", include_in_schema=False)
    async def root() -> JSONResponse:
        """Provide a lightweight landing page for container checks."""
        return JSONResponse(
            {
                "message": "Profile Audit API",
                "docs": "/docs",
                "health": "/api/tasks",
            }
        )

    return app


app = create_app()
