import logging

from fastapi import FastAPI

from storefront_payments import models  # noqa: F401  (registers tables)
from storefront_payments.config import get_settings
from storefront_payments.database import Base, engine
from storefront_payments.routes import admin_router, router
from storefront_payments.webhooks import router as webhook_router

logging.basicConfig(
    level=get_settings().log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(title="Storefront Payment Service")

app.include_router(router)
app.include_router(admin_router)
app.include_router(webhook_router)

Base.metadata.create_all(bind=engine)
