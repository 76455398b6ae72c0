"""
FloorLedger API — FastAPI Application Entry Point
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.requests import Request

from core.config import get_settings
from production.errors import InvalidRequest, PersistenceFailure

settings = get_settings()
logger = structlog.get_logger()

# Paths burned into controller firmware and the old operator UI
DEVICE_ROUTE_MAP = {
    "/alarm": "/api/v1/ingest/alarm",
    "/iot_test": "/api/v1/ingest/alarm",
    "/iot": "/api/v1/iot/config",
    "/set-product": "/api/v1/config/set-product",
    "/active-products": "/api/v1/config/active-products",
    "/machines": "/api/v1/machines",
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    logger.info("FloorLedger API starting up", version=settings.app_version, reconcile_mode=settings.reconcile_mode)
    yield
    logger.info("FloorLedger API shutting down")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Production event ingestion and stock-ledger reconciliation",
    lifespan=lifespan,
)


@app.middleware("http")
async def device_route_alias_middleware(request: Request, call_next):
    """
    Firmware compatibility layer:
      - /alarm, /iot_test -> /api/v1/ingest/alarm
      - /iot -> /api/v1/iot/config
      - /set-product, /active-products -> /api/v1/config/*
      - /machines -> /api/v1/machines
    """
    original_path = request.scope.get("path", "")
    rewritten_to: str | None = None

    for device_path, canonical_path in DEVICE_ROUTE_MAP.items():
        if original_path == device_path or original_path.startswith(f"{device_path}/"):
            suffix = original_path[len(device_path) :]
            request.scope["path"] = f"{canonical_path}{suffix}"
            rewritten_to = request.scope["path"]
            break

    response = await call_next(request)
    if rewritten_to:
        response.headers["Link"] = f'<{rewritten_to}>; rel="canonical"'
    return response


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"error": "invalid request", "detail": jsonable_encoder(exc.errors())},
    )


@app.exception_handler(InvalidRequest)
async def invalid_request_handler(request: Request, exc: InvalidRequest):
    return JSONResponse(status_code=400, content={"error": str(exc)})


@app.exception_handler(PersistenceFailure)
async def persistence_failure_handler(request: Request, exc: PersistenceFailure):
    logger.error("api.persistence_failure", path=request.url.path, error=str(exc))
    return JSONResponse(status_code=500, content={"error": "persistence failure, retry", "retry": True})


# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Import and register routers
from api.v1.routers import (
    active_config,
    anomalies,
    ingest,
    iot,
    ledger,
    machines,
    production_logs,
)

app.include_router(ingest.router)
app.include_router(active_config.router)
app.include_router(machines.router)
app.include_router(iot.router)
app.include_router(production_logs.router)
app.include_router(ledger.router)
app.include_router(anomalies.router)


@app.get("/health")
async def health_check():
    """Health check endpoint for load balancers."""
    return {"status": "healthy", "version": settings.app_version}
