from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import uvicorn
from fastapi import APIRouter, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from gateway.config import engine, settings
from gateway.errors import VALIDATION_ERROR, GatewayError
from gateway.middleware import RequestIdMiddleware
from gateway.models import Base
from gateway.routes import gateway, mandates, merchants
from gateway.schemas import ErrorDetail, ErrorResponse, HealthResponse
from gateway.tasks import background_sweep_loop

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    if settings.auto_create_schema:
        Base.metadata.create_all(bind=engine)
    task = asyncio.create_task(background_sweep_loop()) if settings.run_background_tasks else None
    yield
    if task is not None:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task


def _error_response(request: Request, status_code: int, detail: ErrorDetail) -> JSONResponse:
    detail.request_id = getattr(request.state, "request_id", "")
    return JSONResponse(status_code=status_code, content=ErrorResponse(error=detail).model_dump(mode="json"))


async def handle_gateway_error(request: Request, exc: GatewayError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s on %s: %s", exc.code, request.url.path, exc.message)
    return _error_response(
        request,
        exc.status_code,
        ErrorDetail(code=exc.code, message=exc.message, details=exc.details),
    )


async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg", ""), "type": err.get("type", "")}
        for err in exc.errors()
    ]
    return _error_response(
        request,
        400,
        ErrorDetail(code=VALIDATION_ERROR, message="Request validation failed", details={"errors": errors}),
    )


def create_app() -> FastAPI:
    app = FastAPI(
        title="AP2 Mandate Gateway",
        version="1.0.0",
        description=(
            "Lets merchants accept purchases made by AI shopping agents on a user's behalf, "
            "bounded by cart, intent and payment mandates the user has granted."
        ),
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        openapi_tags=[
            {"name": "Health", "description": "Service health check"},
            {"name": "Gateway", "description": "Signed authorization, cart, intent and payment operations"},
            {"name": "Merchants", "description": "Merchant registration and account management"},
            {"name": "Mandates", "description": "Operator management of user mandates"},
            {"name": "Intents", "description": "User approval of purchase intents"},
        ],
    )

    app.add_middleware(RequestIdMiddleware)
    app.add_exception_handler(GatewayError, handle_gateway_error)
    app.add_exception_handler(RequestValidationError, handle_validation_error)

    @app.get("/health", response_model=HealthResponse, tags=["Health"])
    def health() -> HealthResponse:
        return HealthResponse()

    api_router = APIRouter()
    api_router.include_router(gateway.router)
    api_router.include_router(merchants.router)
    api_router.include_router(mandates.router)

    app.include_router(api_router, prefix="/v1")
    app.include_router(api_router, prefix="/api/v1")

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run(
        "gateway.app:app",
        host=settings.host,
        port=settings.port,
        reload=False,
        log_level="info",
    )
