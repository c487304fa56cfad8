from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from redis.asyncio import Redis

from memecraft.config import settings
from memecraft.api.credits import router as credits_router
from memecraft.api.payments import router as payments_router
from memecraft.api.subscriptions import router as subscriptions_router
from memecraft.errors import MonetizationError, ProviderError
from memecraft.middleware.rate_limit import RateLimitMiddleware
from memecraft.payments.factory import PaymentProviderFactory

# Configure structlog
structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
        (
            structlog.dev.ConsoleRenderer()
            if settings.APP_ENV == "development"
            else structlog.processors.JSONRenderer()
        ),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(0),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
    cache_logger_on_first_use=True,
)

log = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    log.info("starting_up", env=settings.APP_ENV)
    redis = Redis.from_url(settings.REDIS_URL, decode_responses=True)
    try:
        await redis.ping()
        log.info("redis_connected", url=settings.REDIS_URL)
    except Exception as e:
        log.warning("redis_connection_failed", error=str(e))
    app.state.redis = redis
    app.state.payment_factory = PaymentProviderFactory.from_settings(settings)

    yield

    # Shutdown
    log.info("shutting_down")
    await redis.close()


app = FastAPI(
    title="Memecraft Monetization",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.APP_ENV == "development" else [],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RateLimitMiddleware)


@app.exception_handler(MonetizationError)
async def monetization_error_handler(request: Request, exc: MonetizationError):
    if isinstance(exc, ProviderError):
        log.error(
            "provider_error",
            provider=exc.provider,
            detail=exc.detail,
            path=request.url.path,
        )
    return JSONResponse(status_code=exc.status_code, content=exc.to_body())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = errors[0]["msg"] if errors else "Invalid request"
    return JSONResponse(
        status_code=400,
        content={"error": message, "code": "validation_failed"},
    )


app.include_router(payments_router)
app.include_router(subscriptions_router)
app.include_router(credits_router)


@app.get("/health")
async def health_check():
    return {"status": "healthy"}


@app.get("/health/payments")
async def payments_health(request: Request):
    """Probe every configured payment provider."""
    providers = await request.app.state.payment_factory.health_check()
    status = "healthy" if providers and all(providers.values()) else "degraded"
    return {"status": status, "providers": providers}
