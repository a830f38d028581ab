# printflow/api/__init__.py
from fastapi import FastAPI

from printflow.api.routers import admin, checkout, health, orders, sessions, tracking, webhooks


def create_app(lifespan=None) -> FastAPI:
    app = FastAPI(title="printflow", version="1.0.0", lifespan=lifespan)

    app.include_router(health.router)
    app.include_router(sessions.router)
    app.include_router(checkout.router)
    app.include_router(orders.router)
    app.include_router(tracking.router)
    app.include_router(webhooks.router)
    app.include_router(admin.router)
    return app
