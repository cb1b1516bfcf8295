"""Storefront checkout service entrypoint."""

from fastapi import FastAPI

from services.checkout.app.db.init_db import init_db
from services.checkout.app.log import configure_logging
from services.checkout.app.routers.checkout import router as checkout_router
from services.checkout.app.routers.orders import router as orders_router

configure_logging()

app = FastAPI(title="Storefront Checkout API")

app.include_router(checkout_router)
app.include_router(orders_router)


@app.on_event("startup")
def _startup() -> None:
    init_db()


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}
