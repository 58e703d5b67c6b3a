import logging

from fastapi import FastAPI

from .api.routes import jobs_router, payments_router, push_router, webhook_router
from .config import get_settings
from .firebase import init_firebase

logger = logging.getLogger("billing")


def create_app() -> FastAPI:
    settings = get_settings()
    logging.basicConfig(level=settings.log_level.upper())

    app = FastAPI(title="Candidate Billing", version="1.0.0")
    app.include_router(webhook_router)
    app.include_router(payments_router)
    app.include_router(jobs_router)
    app.include_router(push_router)

    @app.on_event("startup")
    def _startup() -> None:
        init_firebase(settings)
        logger.info("Billing service started")

    return app


app = create_app()
