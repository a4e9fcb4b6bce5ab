"""
CourtPay Backend - FastAPI Application

Payment gateway integration core for the court booking platform.
Serves payment creation, VNPay/PayOS callbacks, reconciliation and the
payment event stream, and runs the expiration sweeper in the background.
"""
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from typing import Optional
import logging

from .config import Settings, settings
from .exceptions import PaymentError
from .db.init_db import build_engine, build_session_factory, initialize_database
from .services.scheduler import start_scheduler, shutdown_scheduler
from .api.deps import PaymentServices, build_services
from .api.payments import router as payments_router
from .api.callbacks import router as callbacks_router
from .api.transactions import router as transactions_router
from .api.reconciliation import router as reconciliation_router
from .api.events import router as events_router


# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Credentials": "true",
}


def create_app(app_settings: Optional[Settings] = None, services: Optional[PaymentServices] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        app_settings: Settings to run with (defaults to the environment)
        services: Pre-built payment core; when given, the lifespan neither
            touches the configured database nor starts the scheduler
    """
    app_settings = app_settings or settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Application lifespan manager.

        Handles startup and shutdown events:
        - Startup: Validate gateway config, initialize database, start sweeper
        - Shutdown: Stop the scheduler, dispose the engine
        """
        if services is not None:
            yield
            return

        # Startup
        logger.info("Starting CourtPay backend server...")
        logger.info(f"Sandbox mode: {app_settings.sandbox_mode}")

        engine = build_engine(app_settings.database_path)
        try:
            await initialize_database(engine, app_settings.database_path)
            logger.info("Database initialized successfully")

            # ConfigurationError here stops the process before it serves traffic
            app.state.services = build_services(app_settings, build_session_factory(engine))
            logger.info("Gateway clients configured: vnpay, payos")

            if app_settings.sweeper_enabled:
                start_scheduler(app.state.services.sweeper, app_settings.sweep_interval_seconds)
                logger.info(f"Expiration sweeper scheduled every {app_settings.sweep_interval_seconds}s")
        except Exception as e:
            logger.error(f"Startup failed: {e}")
            await engine.dispose()
            raise

        logger.info("Server startup complete")

        yield

        # Shutdown
        logger.info("Shutting down CourtPay backend server...")

        try:
            shutdown_scheduler(wait=True)
            logger.info("Scheduler shutdown complete")
        except Exception as e:
            logger.error(f"Error during scheduler shutdown: {e}")

        await engine.dispose()

    app = FastAPI(
        title="CourtPay API",
        description="VNPay and PayOS payment gateway integration for court bookings",
        version="0.1.0",
        lifespan=lifespan,
    )
    if services is not None:
        app.state.services = services

    # Configure CORS middleware for frontend
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["*"],
    )

    @app.exception_handler(PaymentError)
    async def payment_error_handler(request: Request, exc: PaymentError):
        """
        Handle payment core errors with standardized response format.

        Status comes from the error class (404 unknown order, 409 conflicts,
        503 gateway unavailable, ...); body is PaymentError.to_dict().
        """
        logger.warning(
            f"Payment error: {exc.error_code} - {exc.message}",
            extra={"details": exc.details}
        )

        return JSONResponse(
            status_code=exc.http_status,
            content=exc.to_dict(),
            headers=CORS_HEADERS
        )

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        """
        Handle validation errors with user-friendly messages.

        Used for input validation failures not caught by Pydantic.
        """
        logger.warning(f"Validation error: {str(exc)}")

        return JSONResponse(
            status_code=400,
            content={
                "error_code": "validation_error",
                "message": str(exc),
                "details": {}
            },
            headers=CORS_HEADERS
        )

    @app.exception_handler(Exception)
    async def general_error_handler(request: Request, exc: Exception):
        """
        Catch-all handler for unexpected errors.

        Logs full exception for debugging but returns generic message to client.
        """
        logger.error(f"Unexpected error: {str(exc)}", exc_info=True)

        return JSONResponse(
            status_code=500,
            content={
                "error_code": "internal_error",
                "message": "An unexpected error occurred",
                "details": {"error_type": type(exc).__name__} if app_settings.sandbox_mode else {}
            },
            headers=CORS_HEADERS
        )

    @app.get("/api/health")
    async def health_check(request: Request):
        """
        Health check endpoint for monitoring and load balancers.

        Returns:
            Server status and version information
        """
        core = getattr(request.app.state, "services", None)
        return {
            "status": "healthy" if core is not None else "starting",
            "version": "0.1.0",
            "sandbox_mode": app_settings.sandbox_mode,
            "event_streams": core.event_bus.get_active_stream_count() if core else 0,
        }

    # Include API routers
    app.include_router(payments_router, prefix="/api", tags=["Payments"])
    app.include_router(callbacks_router, prefix="/api/payments", tags=["Callbacks"])
    app.include_router(transactions_router, prefix="/api/transactions", tags=["Transactions"])
    app.include_router(reconciliation_router, prefix="/api/reconciliation", tags=["Reconciliation"])
    app.include_router(events_router, prefix="/api/events", tags=["Events"])

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "courtpay.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.sandbox_mode,
        log_level=settings.log_level.lower()
    )
