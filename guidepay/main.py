# guidepay/main.py
"""
FastAPI application exposing the provider webhook and Prometheus metrics.

Client-facing booking and checkout endpoints are mounted by the host
application, which calls the services directly.
"""

import logging

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse

from .core.config import settings
from .core.exceptions import DomainException
from .monitoring.prometheus_metrics import prometheus_metrics
from .monitoring.sentry import init_sentry
from .routes import webhooks

logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    init_sentry()

    app = FastAPI(title="guidepay", version="0.1.0")
    app.include_router(webhooks.router)

    @app.exception_handler(DomainException)
    async def domain_exception_handler(request: Request, exc: DomainException) -> JSONResponse:
        http_exc = exc.to_http_exception()
        return JSONResponse(status_code=http_exc.status_code, content={"detail": http_exc.detail})

    @app.get("/metrics", include_in_schema=False, response_class=Response, response_model=None)
    def get_prometheus_metrics() -> Response:
        return Response(
            content=prometheus_metrics.get_metrics(),
            media_type=prometheus_metrics.get_content_type(),
        )

    @app.get("/health", include_in_schema=False)
    def health() -> dict[str, str]:
        return {"status": "ok", "environment": settings.environment}

    logger.info(f"guidepay app created for environment {settings.environment}")
    return app


app = create_app()
