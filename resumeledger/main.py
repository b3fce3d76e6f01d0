import logging
import os
import time
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

# Load env from resumeledger/.env
package_dir = os.path.dirname(os.path.abspath(__file__))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(package_dir, ".env"))

# Import after dotenv is loaded
from resumeledger.core.config import cors_origins, settings, validate_config  # noqa: E402
from resumeledger.core.logging import configure_logging  # noqa: E402
from resumeledger.core.middleware.metrics import MetricsMiddleware  # noqa: E402
from resumeledger.core.middleware.request_id import RequestIdMiddleware  # noqa: E402
from resumeledger.core.validation import validate_env  # noqa: E402
from resumeledger.core.errors import (  # noqa: E402
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from resumeledger.api import admin, billing, credits, health, metrics, wallet  # noqa: E402
from resumeledger.features.catalog.service import get_catalog  # noqa: E402
from resumeledger.features.gateway.service import close_providers  # noqa: E402

configure_logging(settings.ENV)
validate_env()
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("resumeledger")
    catalog = get_catalog()
    logger.info(f"Starting resumeledger (catalog {catalog.version}, {len(catalog.plans)} plans)")
    app.state.startup_time = time.time()
    try:
        yield
    finally:
        logging.getLogger("resumeledger").info("Stopping resumeledger...")
        close_providers()


app = FastAPI(title="resumeledger - Entitlement Ledger", lifespan=lifespan)

# Middlewares
app.add_middleware(RequestIdMiddleware)
app.add_middleware(MetricsMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router)
app.include_router(metrics.router)
app.include_router(billing.router)
app.include_router(credits.router)
app.include_router(wallet.router)
app.include_router(admin.router)
