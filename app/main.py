from __future__ import annotations

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.core.logging import configure_logging
from app.core.settings import S
from app.metrics import METRICS_ENABLED, metrics_endpoint, metrics_middleware, set_app_info
from app.routers.misc import router as misc_router
from app.routers.subscriptions import router as subscriptions_router
from app.routers.webhooks import router as webhooks_router

def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="Subscription Reconciler", version="0.1.0")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in S.cors_allow_origins.split(",") if o.strip()],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    if METRICS_ENABLED:
        app.middleware("http")(metrics_middleware)
        set_app_info(app.title, app.version)
        app.get("/metrics")(metrics_endpoint)

    app.include_router(misc_router)
    app.include_router(subscriptions_router)
    app.include_router(webhooks_router)

    return app

app = create_app()
