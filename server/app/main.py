"""Main application entry point."""

import logging
import time
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.responses import RedirectResponse

from .core.config import APP_VERSION, settings
from .core.config_validation import run_config_checks
from .api.routes import router
from .services.sidecar_client import SidecarClient

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger(__name__)

API_REFERENCE_URL = "/docs"


def _describe_authorization(value: str) -> str:
    """Reduce an Authorization header to its scheme and credential length."""

    scheme, _, credentials = value.partition(" ")
    return f"{scheme} <{len(credentials.strip())} chars>"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting %s", settings.app_name)
    logger.info(f"Version: {APP_VERSION}")
    logger.info(f"Debug mode: {settings.debug}")

    config_result = run_config_checks(force=True)

    if config_result.has_warnings:
        for issue in config_result.warnings:
            logger.warning("Configuration warning: %s", issue.message)
            if issue.hint:
                logger.warning("Hint: %s", issue.hint)

    if config_result.has_errors:
        for issue in config_result.errors:
            logger.error("Configuration error: %s", issue.message)
            if issue.hint:
                logger.error("Hint: %s", issue.hint)

    sidecar_url = settings.get_sidecar_url()
    if not sidecar_url:
        raise RuntimeError("Sidecar URL not set")

    app.state.sidecar_client = SidecarClient(sidecar_url)
    logger.info("Sidecar client configured for %s", sidecar_url)

    try:
        yield
    finally:
        logger.info("Shutting down application")
        await app.state.sidecar_client.aclose()
        app.state.sidecar_client = None
        logger.info("Application stopped")


app = FastAPI(
    title=settings.app_name,
    version=APP_VERSION,
    description="Diagnostic probes for integrated Windows authentication (Kerberos/SPNEGO) deployments",
    lifespan=lifespan,
)


@app.middleware("http")
async def audit_middleware(request: Request, call_next):
    """Log every request and the Negotiate headers exchanged with the caller."""
    start_time = time.time()

    client_ip = request.client.host if request.client else "unknown"
    user_agent = request.headers.get("user-agent", "unknown")

    if settings.debug:
        safe_headers = {
            k: (_describe_authorization(v) if k.lower() == "authorization" else v)
            for k, v in request.headers.items()
            if k.lower() != "cookie"
        }
        logger.debug("Request headers (sanitized): %s", safe_headers)

    logger.info(
        f"Request started: {request.method} {request.url.path} "
        f"from {client_ip} UA: {user_agent[:100]}"
    )

    try:
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"

        www_authenticate = response.headers.get("www-authenticate")
        if www_authenticate and settings.debug:
            logger.debug("Response WWW-Authenticate: %s", _describe_authorization(www_authenticate))

        process_time = time.time() - start_time
        logger.info(
            f"Request completed: {request.method} {request.url.path} "
            f"Status: {response.status_code} Time: {process_time:.4f}s"
        )

        return response

    except Exception as e:
        process_time = time.time() - start_time
        logger.error(
            f"Request failed: {request.method} {request.url.path} "
            f"Error: {str(e)[:200]} Time: {process_time:.4f}s"
        )
        raise


app.include_router(router)


@app.get("/", include_in_schema=False)
async def root():
    """Send browsers to the interactive API documentation."""
    return RedirectResponse(url=API_REFERENCE_URL, status_code=status.HTTP_302_FOUND)


def main():
    """Run the application."""
    uvicorn.run(
        "app.main:app",
        host=settings.host,
        port=settings.port,
        log_level="debug" if settings.debug else "info",
        reload=settings.debug,
        # Honour X-Forwarded-* from the ingress in front of the service
        proxy_headers=True,
        forwarded_allow_ips="*",
    )


if __name__ == "__main__":
    main()
