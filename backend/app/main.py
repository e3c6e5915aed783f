import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.core.adjustments.router import router as adjustments_router
from app.core.approvals.router import router as approvals_router
from app.core.billing.router import router as billing_router
from app.core.errors import register_exception_handlers
from app.core.timesheets.router import router as timesheets_router
from app.settings import get_settings

settings = get_settings()

logging.basicConfig(
    level=logging.DEBUG if settings.APP_DEBUG else settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


def create_app() -> FastAPI:
    app = FastAPI(
        title="Timebill Platform API",
        version="0.1.0",
        docs_url="/docs" if settings.APP_DEBUG else None,
        redoc_url="/redoc" if settings.APP_DEBUG else None,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.APP_DEBUG else [],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_exception_handlers(app)

    app.include_router(timesheets_router)
    app.include_router(approvals_router)
    app.include_router(billing_router)
    app.include_router(adjustments_router)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app


app = create_app()
