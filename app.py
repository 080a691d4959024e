"""FastAPI application for the TenantBill billing service."""

import asyncio
import logging
import os
from contextlib import asynccontextmanager, suppress
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from billing.config import BillingSettings
from billing.errors import BillingError
from billing.services import BillingServices, build_services
from db import check_connection
from routers.billing import billing_error_handler, request_validation_handler
from routers.billing import router as billing_router

load_dotenv()

logging.basicConfig(
    level=os.getenv("BILLING_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)

logger = logging.getLogger(__name__)


async def _rollover_loop(services: BillingServices, interval_seconds: int) -> None:
    while True:
        await asyncio.sleep(interval_seconds)
        services.worker.enqueue("period_rollover")
        logger.debug("Queued periodic rollover")


def create_app(
    settings: Optional[BillingSettings] = None,
    services: Optional[BillingServices] = None,
) -> FastAPI:
    """Build the app. Pass ``services`` to run against pre-built components (tests)."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owns_services = services is None
        billing = services or build_services(settings or BillingSettings.from_env())
        billing.initialize()
        billing.start()
        app.state.billing = billing

        rollover_task = None
        interval = billing.settings.rollover_interval_seconds
        if interval > 0:
            rollover_task = asyncio.create_task(_rollover_loop(billing, interval))
            logger.info("Periodic rollover every %ss", interval)
        try:
            yield
        finally:
            if rollover_task is not None:
                rollover_task.cancel()
                with suppress(asyncio.CancelledError):
                    await rollover_task
            if owns_services:
                billing.close()
            else:
                billing.worker.stop()
            app.state.billing = None

    app = FastAPI(title="TenantBill", lifespan=lifespan)
    app.include_router(billing_router)
    app.add_exception_handler(BillingError, billing_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)

    @app.get("/health")
    def health():
        billing = getattr(app.state, "billing", None)
        database_ok = billing is not None and check_connection(billing.db_engine)
        return JSONResponse(
            status_code=200 if database_ok else 503,
            content={"status": "ok" if database_ok else "degraded", "database": database_ok},
        )

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn

    uvicorn.run("app:app", host=os.getenv("BILLING_HOST", "127.0.0.1"), port=int(os.getenv("BILLING_PORT", "8000")))
