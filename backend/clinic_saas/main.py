"""FastAPI application entry point."""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response

from clinic_saas.core.config import settings
from clinic_saas.core.database import async_session_maker, create_all
from clinic_saas.core.errors import ServiceError, service_error_handler
from clinic_saas.core.logging import setup_logging
from clinic_saas.core.metrics import get_content_type, get_metrics, set_app_info
from clinic_saas.core.middleware import (
    CorrelationIdMiddleware,
    MetricsMiddleware,
    RequestLoggingMiddleware,
    TracingMiddleware,
)
from clinic_saas.core.redis import redis_client
from clinic_saas.core.tracing import setup_tracing, shutdown_tracing
from clinic_saas.modules.billing import PlanCatalog
from clinic_saas.modules.billing import router as billing_router
from clinic_saas.modules.tenant import build_rate_limiter


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables, seed the catalog and build the rate limiter."""
    await create_all()
    if settings.SEED_DEFAULT_PLANS:
        async with async_session_maker() as session:
            (await PlanCatalog(session).seed_default_plans()).unwrap()

    app.state.rate_limiter = None
    if settings.RATE_LIMIT_ENABLED:
        app.state.rate_limiter = build_rate_limiter(
            settings.RATE_LIMIT_BACKEND,
            settings.RATE_LIMIT_MAX_REQUESTS,
            settings.RATE_LIMIT_WINDOW_SECONDS,
            redis_client=redis_client if settings.RATE_LIMIT_BACKEND == "redis" else None,
        )

    yield

    shutdown_tracing()
    await redis_client.aclose()


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    description="""
## Clinic SaaS Billing API

Subscription, invoicing, payment and usage-metering core for a multi-tenant
clinic management platform.

### Tenant context

Tenant-scoped endpoints resolve the tenant from, in order: the `X-Tenant-ID`
header, the `X-Tenant-Slug` header, the authenticated identity, or the host
subdomain (`acme.clinic.example`).
    """,
    openapi_url=f"{settings.API_V1_PREFIX}/openapi.json",
    lifespan=lifespan,
    openapi_tags=[
        {
            "name": "health",
            "description": "Health check endpoints",
        },
        {
            "name": "billing",
            "description": "Plans, subscriptions, invoices, payments and usage",
        },
    ],
)

setup_logging(
    level="DEBUG" if settings.DEBUG else settings.LOG_LEVEL,
    json_format=settings.LOG_JSON,
    include_stack_trace=True,
)

setup_tracing(
    service_name=settings.PROJECT_NAME,
    service_version=settings.VERSION,
    environment="development" if settings.DEBUG else "production",
    enable_console_export=settings.DEBUG,
)

set_app_info(
    version=settings.VERSION,
    environment="development" if settings.DEBUG else "production",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(RequestLoggingMiddleware, log_request_body=False)
app.add_middleware(TracingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.add_middleware(MetricsMiddleware)

app.add_exception_handler(ServiceError, service_error_handler)

app.include_router(billing_router, prefix=settings.API_V1_PREFIX)


@app.get("/health", tags=["health"])
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy"}


@app.get("/metrics", include_in_schema=False)
async def metrics() -> Response:
    """Prometheus metrics in text exposition format."""
    return Response(content=get_metrics(), media_type=get_content_type())
