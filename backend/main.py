import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv

# Load env from backend/.env
backend_dir = os.path.dirname(os.path.abspath(__file__))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(backend_dir, ".env"))

# Import after dotenv is loaded
from backend.core.config import settings, validate_config
from backend.core.logging import configure_logging
from backend.core.middleware.request_id import RequestIdMiddleware
from backend.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from backend.core.cache import get_redis_conn
from backend.core.database import create_all_tables, get_session_factory
from backend.core.services import build_services
from backend.api import billing, entitlements, health, quota

configure_logging(settings.ENV)
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("ecoscore")
    logger.info("Starting entitlement service...")
    if getattr(app.state, "services", None) is None:
        create_all_tables()
        app.state.services = build_services(get_session_factory(), get_redis_conn(settings), settings)
    try:
        yield
    finally:
        services = app.state.services
        if services.redis is not None:
            services.redis.close()
        logging.getLogger("ecoscore").info("Stopping entitlement service...")


app = FastAPI(title="EcoScore - Entitlements", lifespan=lifespan)

# Middlewares
app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

# CORS (adjust origins in production)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.FRONTEND_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.root_router, tags=["health"])
app.include_router(billing.router, prefix="/api", tags=["billing"])
app.include_router(quota.router, prefix="/api", tags=["quota"])
app.include_router(entitlements.router, prefix="/api", tags=["entitlements"])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("backend.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
