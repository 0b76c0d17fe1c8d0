"""FastAPI application factory"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from starlette.responses import Response

from trustrail.api import webhooks
from trustrail.api.middleware import RequestIDMiddleware, MetricsMiddleware
from trustrail.api.v1 import applications, payments, trust_wallets
from trustrail.infrastructure.observability.logging import setup_logging
from trustrail.jobs.scheduler import JobScheduler
from trustrail.config import settings

# Setup structured logging
setup_logging(settings.log_level)


def create_app(scheduler: Optional[JobScheduler] = None) -> FastAPI:
    """Create and configure FastAPI application"""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        jobs = None
        if settings.jobs_enabled:
            jobs = scheduler or JobScheduler()
            jobs.start()
        yield
        if jobs is not None:
            await jobs.stop()

    app = FastAPI(
        title="TrustRail",
        description="Installment origination, mandate orchestration and repayment tracking",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # Add middleware (order matters: last added = first executed)
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestIDMiddleware)

    @app.exception_handler(HTTPException)
    async def http_error(request: Request, exc: HTTPException):
        return JSONResponse(status_code=exc.status_code, content={"success": False, "message": exc.detail})

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=422,
            content={"success": False, "message": "Invalid request", "errors": jsonable_errors(exc)},
        )

    # Health check endpoint
    @app.get("/health")
    def health_check():
        return {"status": "ok", "service": settings.service_name}

    # Prometheus metrics endpoint
    @app.get("/metrics")
    def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    # Register API routers
    app.include_router(trust_wallets.router, prefix="/v1", tags=["trust-wallets"])
    app.include_router(applications.router, prefix="/v1", tags=["applications"])
    app.include_router(payments.router, prefix="/v1", tags=["payments"])
    app.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])

    return app


def jsonable_errors(exc: RequestValidationError):
    return [{"loc": list(err.get("loc", ())), "msg": err.get("msg", "")} for err in exc.errors()]


app = create_app()
