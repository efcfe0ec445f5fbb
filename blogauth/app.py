from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from blogauth.api.error_handling import register_exception_handlers
from blogauth.api.routes import admin_router, router, users_router
from blogauth.config import get_settings
from blogauth.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

_settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    from blogauth.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info(
        "runtime_started",
        store=type(runtime.store).__name__,
        shared_rate_limits=runtime.rate_limiter is not None,
        captcha_enabled=runtime.captcha.enabled,
        email_configured=runtime.email.is_configured,
    )
    yield
    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Blog Auth", version=__version__, lifespan=lifespan)

# Cookie transport needs credentialed CORS, which rules out wildcard origins.
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o for o in _settings.cors_allow_origins if o != "*"],
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request: Request, call_next):
    """Tag the request with X-Request-ID (client-supplied or generated) for log correlation."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    response.headers.setdefault("Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'")
    if request.url.path.startswith("/api/"):
        response.headers.setdefault("Cache-Control", "no-store")
    if request.url.scheme == "https":
        response.headers.setdefault("Strict-Transport-Security", "max-age=63072000; includeSubDomains")
    return response


register_exception_handlers(app)
app.include_router(router)
app.include_router(users_router)
app.include_router(admin_router)


@app.get("/healthz", tags=["ops"])
async def healthz():
    from blogauth.service.runtime import get_runtime

    runtime = get_runtime()
    store_ok = await asyncio.to_thread(runtime.store.ping)
    body = {"status": "ok" if store_ok else "degraded", "store": store_ok, "version": __version__}
    return JSONResponse(status_code=200 if store_ok else 503, content=body)


def create_app() -> FastAPI:
    return app
