import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from app.api.billing import admin_router as billing_admin_router
from app.api.billing import router as billing_router
from app.errors import register_error_handlers
from app.logging import configure_logging
from app.services.collaborator import build_gateway
from app.services.events import build_dispatcher

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.billing_events = build_dispatcher(build_gateway())
    logger.info("Billing reconciliation API started")
    yield


configure_logging()
app = FastAPI(title="marketplace billing API", lifespan=lifespan)
register_error_handlers(app)

app.include_router(billing_router)
app.include_router(billing_admin_router)


@app.get("/health")
def health_check():
    return {"status": "ok"}
