"""
Marketplace Payments Backend - FastAPI Application

Multi-provider checkout, webhook processing and template delivery for the
AI agent marketplace.
"""
from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import settings
from .exceptions import MarketplaceError
from .db.init_db import AsyncSessionLocal, initialize_database
from .providers import build_providers
from .services.email_service import EmailService
from .services.order_processor import OrderProcessor
from .services.scheduler import scheduler
from .services.webhook_router import WebhookRouter
from .api.payments import router as payments_router
from .api.templates import router as templates_router
from .api.invoices import router as invoices_router
from .api.orders import router as orders_router

VERSION = "1.0.0"

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    - Startup: initialize database, start the outbox retry scheduler
    - Shutdown: stop the scheduler, close provider and email HTTP clients
    """
    logger.info("Starting marketplace payments backend...")
    logger.info(f"Demo mode: {settings.demo_mode}, environment: {settings.environment}")

    try:
        await initialize_database()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise

    try:
        scheduler.start()
    except Exception as e:
        logger.error(f"Failed to start scheduler: {e}")
        if not settings.demo_mode:
            raise
        logger.warning("Continuing without outbox retries in demo mode")

    for name, provider in app.state.providers.items():
        if not provider.configured:
            logger.warning(f"Payment provider {name} is not configured")

    logger.info("Server startup complete")

    yield

    logger.info("Shutting down marketplace payments backend...")

    try:
        scheduler.shutdown(wait=True)
    except Exception as e:
        logger.error(f"Error during scheduler shutdown: {e}")

    for provider in app.state.providers.values():
        await provider.close()
    await app.state.email_service.close()


def create_app() -> FastAPI:
    """
    Build the FastAPI application with its provider adapters, order processor
    and webhook router attached to app.state.
    """
    app = FastAPI(
        title="Marketplace Payments API",
        description="Multi-provider payments, invoicing and template delivery",
        version=VERSION,
        lifespan=lifespan,
    )

    providers = build_providers(settings)
    email_service = EmailService(settings.email_config())
    processor = OrderProcessor(
        email_sender=email_service,
        api_url=settings.api_url,
        token_ttl_days=settings.token_ttl_days,
        session_factory=AsyncSessionLocal,
        outbox_max_attempts=settings.outbox_max_attempts
    )

    app.state.providers = providers
    app.state.email_service = email_service
    app.state.processor = processor
    app.state.webhook_router = WebhookRouter(providers, processor)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_url] if settings.is_production else ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(MarketplaceError)
    async def marketplace_error_handler(request: Request, exc: MarketplaceError):
        """
        Render pipeline errors as {error_code, message, details} with the
        status code the error carries.
        """
        logger.warning(
            f"Marketplace error: {exc.error_code} - {exc.message}",
            extra={"details": exc.details}
        )
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def general_error_handler(request: Request, exc: Exception):
        """
        Catch-all handler for unexpected errors.

        Logs the full exception but returns a generic message to the client.
        """
        logger.error(f"Unexpected error: {str(exc)}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "error_code": "internal_error",
                "message": "An unexpected error occurred",
                "details": {"error_type": type(exc).__name__} if settings.demo_mode else {}
            }
        )

    @app.get("/api/health")
    async def health_check():
        """Health check endpoint for monitoring and load balancers."""
        return {
            "status": "healthy",
            "version": VERSION,
            "demo_mode": settings.demo_mode,
            "providers": {name: p.configured for name, p in app.state.providers.items()},
        }

    app.include_router(payments_router, prefix="/api/payments", tags=["Payments"])
    app.include_router(templates_router, prefix="/api/templates", tags=["Templates"])
    app.include_router(invoices_router, prefix="/api/invoices", tags=["Invoices"])
    app.include_router(orders_router, prefix="/api/orders", tags=["Orders"])

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "marketplace.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.demo_mode,
        log_level=settings.log_level.lower()
    )
