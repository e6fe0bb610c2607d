"""
Gateway Orchestrator API

Manages TLS certificates issued over the ACME DNS-01 challenge and the
NGINX configuration of a reverse-proxy gateway: HTTP proxy sites, TLS-SNI
stream routes and the main nginx.conf.

Every configuration change is rendered from stored records, tested with
nginx -t against a staged copy, and only then written to the live tree
and reloaded.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from config import ensure_directories, settings
from core.request_logger import RequestLoggerMiddleware
from endpoints import certificates, dns_providers, nginx, proxy, stream

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Gateway Orchestrator API starting up...")

    # Ensure required directories exist
    ensure_directories()

    # Initialize database
    from core.database import initialize_database

    await initialize_database()
    logger.info("Database initialized")

    # Certificates left pending by a crash can never finish
    from core.cert_manager import get_cert_manager

    cert_manager = get_cert_manager()
    recovered = await cert_manager.recover_interrupted()
    if recovered:
        logger.warning(f"Marked {recovered} interrupted certificate operation(s) as failed")

    # Write nginx.conf and the stream config if this is a fresh data dir
    from core.site_manager import get_site_manager

    site_manager = get_site_manager()
    site_manager.bootstrap()
    cert_manager.add_activation_listener(site_manager.refresh_certificate_sites)

    # Start certificate renewal scheduler
    from core.cert_scheduler import get_cert_scheduler

    cert_scheduler = get_cert_scheduler()
    try:
        await cert_scheduler.start()
        logger.info("Certificate renewal scheduler started")
    except Exception as e:
        logger.warning(f"Failed to start certificate scheduler: {e}")

    yield

    # Stop certificate scheduler
    try:
        await cert_scheduler.stop()
        logger.info("Certificate renewal scheduler stopped")
    except Exception as e:
        logger.warning(f"Error stopping certificate scheduler: {e}")

    logger.info("Gateway Orchestrator API shutting down...")


app = FastAPI(
    title="Gateway Orchestrator API",
    description="""
    ## Purpose

    Certificate lifecycle and configuration orchestration for an NGINX gateway.

    - **Certificates**: issue and renew over ACME DNS-01, with automatic renewal
    - **DNS providers**: encrypted credentials for AliDNS, Tencent Cloud and Cloudflare
    - **Proxy sites**: HTTP(S) reverse proxies with optional forward authentication
    - **Stream routes**: TLS passthrough by SNI server name

    ## Safety

    - Every generated configuration is tested with `nginx -t` before it goes live
    - A failed test leaves the live configuration untouched and sends no reload
    - A failed renewal keeps the previously installed certificate
    """,
    version="0.1.0",
    license_info={
        "name": "MIT",
    },
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

# Include API routers
app.include_router(certificates.router)
app.include_router(dns_providers.router)
app.include_router(proxy.router)
app.include_router(stream.router)
app.include_router(nginx.router)


# Security headers middleware
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(self, request: Request, call_next) -> Response:
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Cache-Control"] = "no-store"
        return response


app.add_middleware(SecurityHeadersMiddleware)

# Request logging middleware
app.add_middleware(RequestLoggerMiddleware)

# CORS middleware, restricted unless configured or in debug
_cors_origins = (
    [o.strip() for o in settings.cors_allowed_origins.split(",") if o.strip()]
    if settings.cors_allowed_origins
    else ["*"]
    if settings.api_debug
    else []
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get(
    "/",
    summary="API Status",
    description="Basic check that the API is running.",
    tags=["Health"],
)
async def root():
    return {
        "message": "Gateway Orchestrator API is running",
        "version": "0.1.0",
        "status": "healthy",
        "timestamp": datetime.now().isoformat(),
        "docs_url": "/docs",
        "openapi_url": "/openapi.json",
    }


@app.get(
    "/health",
    summary="Detailed Health Check",
    description="Gateway configuration test result, record counts and certificate status.",
    tags=["Health"],
)
async def health_check():
    """
    Detailed health check.

    Runs `nginx -t` against the live configuration and summarizes managed
    records. Certificates expiring within the renewal window are counted
    as `expiring_soon`.
    """
    from core.cert_manager import RENEWAL_THRESHOLD_DAYS, get_cert_manager
    from core.cert_scheduler import get_cert_scheduler
    from core.errors import GatewayError
    from core.reload_coordinator import get_reload_coordinator
    from core.site_manager import get_site_manager
    from models.certificate import CertificateStatus

    nginx_status = {"status": "unknown"}
    try:
        ok, output = await get_reload_coordinator().test()
        nginx_status = {"status": "valid" if ok else "invalid", "output": output}
    except GatewayError as e:
        nginx_status = {"status": "error", "message": e.message, "suggestion": e.suggestion}

    site_manager = get_site_manager()
    routes = site_manager.list_routes()

    ssl_status = {"total": 0, "active": 0, "expiring_soon": 0, "expired": 0, "error": 0}
    certs = await get_cert_manager().list_certificates()
    ssl_status["total"] = len(certs)
    for cert in certs:
        if cert.status == CertificateStatus.ACTIVE:
            ssl_status["active"] += 1
            days = cert.days_remaining
            if days is not None and days < RENEWAL_THRESHOLD_DAYS:
                ssl_status["expiring_soon"] += 1
        elif cert.status == CertificateStatus.EXPIRED:
            ssl_status["expired"] += 1
        elif cert.status == CertificateStatus.ERROR:
            ssl_status["error"] += 1

    healthy = nginx_status["status"] == "valid" and ssl_status["expired"] == 0
    return {
        "status": "healthy" if healthy else "degraded",
        "timestamp": datetime.now().isoformat(),
        "api": {"status": "running", "version": "0.1.0"},
        "nginx": nginx_status,
        "sites": {"total": len(site_manager.list_sites())},
        "stream_routes": {"total": len(routes), "enabled": len([r for r in routes if r.enabled])},
        "ssl": ssl_status,
        "renewal_jobs": get_cert_scheduler().get_next_run_times(),
    }


if __name__ == "__main__":
    uvicorn.run("main:app", host=settings.api_host, port=settings.api_port, reload=settings.api_debug)
