"""
Hockey Store Backend - FastAPI Application

Checkout with M-Pesa STK push and asynchronous payment reconciliation.
"""
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from typing import Optional
import logging

from .config import Settings, settings as default_settings
from .exceptions import CheckoutValidationError, StoreError
from .db.init_db import Database
from .gateway.mpesa_client import MpesaClient
from .mocks.mpesa_gateway import MockMpesaGateway
from .services.callback_service import CallbackReconciler
from .services.scheduler import build_scheduler
from .api.checkout import router as checkout_router
from .api.orders import router as orders_router
from .api.payments import router as payments_router

logger = logging.getLogger(__name__)

VERSION = "0.1.0"


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


def build_gateway(settings: Settings, database: Database):
    """Daraja client, or the mock gateway with simulated callbacks in demo mode."""
    if settings.demo_mode:
        reconciler = CallbackReconciler(database)
        return MockMpesaGateway(callback_sink=reconciler.handle_callback)
    return MpesaClient(settings)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Handles startup and shutdown events:
    - Startup: open the store, build the gateway, start the sweep scheduler
    - Shutdown: stop the scheduler, close the gateway, drain the store
    """
    settings: Settings = app.state.settings

    # Startup
    logger.info("Starting Hockey Store backend server...")
    logger.info(f"Demo mode: {settings.demo_mode}")
    logger.info(f"M-Pesa environment: {settings.mpesa_env}")

    database = Database(settings.database_url)
    try:
        await database.create_all()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        await database.dispose()
        raise
    app.state.database = database

    gateway = build_gateway(settings, database)
    app.state.gateway = gateway

    scheduler = build_scheduler(database, settings)
    if scheduler is not None:
        scheduler.start()
    app.state.scheduler = scheduler

    logger.info("Server startup complete")

    yield

    # Shutdown
    logger.info("Shutting down Hockey Store backend server...")

    if scheduler is not None:
        try:
            await scheduler.shutdown(wait=True)
        except Exception as e:
            logger.error(f"Error during scheduler shutdown: {e}")

    try:
        await gateway.aclose()
    except Exception as e:
        logger.error(f"Error closing gateway client: {e}")

    await database.dispose()
    logger.info("Shutdown complete")


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Tests may skip the lifespan and set app.state.database / app.state.gateway
    themselves.
    """
    settings = settings or default_settings

    app = FastAPI(
        title="Hockey Store API",
        description="Checkout and M-Pesa payment reconciliation",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(StoreError)
    async def store_error_handler(request: Request, exc: StoreError):
        """
        Handle domain errors with the standard error response format.

        Status code comes from the error class.
        """
        logger.warning(
            f"{request.method} {request.url.path} -> {exc.status_code} {exc.error_code}: {exc.message}",
            extra={"details": exc.details}
        )
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_error_handler(request: Request, exc: RequestValidationError):
        """Reject malformed request bodies before any store access."""
        errors = exc.errors()
        logger.warning(f"Validation error on {request.url.path}: {errors}")

        first = errors[0] if errors else {}
        message = first.get("msg", "Invalid request")
        error = CheckoutValidationError(
            message.removeprefix("Value error, "),
            details={
                "errors": [
                    {"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")}
                    for e in errors
                ]
            }
        )
        return JSONResponse(status_code=error.status_code, content=error.to_dict())

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
                "success": False,
                "error_code": "internal_error",
                "message": "An unexpected error occurred",
                "details": {"error_type": type(exc).__name__} if settings.demo_mode else {}
            }
        )

    @app.get("/api/health")
    async def health_check():
        """
        Health check endpoint for monitoring and load balancers.

        Returns:
            Server status and version information
        """
        scheduler = getattr(app.state, "scheduler", None)
        return {
            "status": "healthy",
            "version": VERSION,
            "demo_mode": settings.demo_mode,
            "mpesa_env": settings.mpesa_env,
            "sweep_running": bool(scheduler and scheduler.running),
        }

    app.include_router(checkout_router, prefix="/api", tags=["Checkout"])
    app.include_router(payments_router, prefix="/api", tags=["Payments"])
    app.include_router(orders_router, tags=["Orders"])

    return app


configure_logging(default_settings)
app = create_app()


def run():
    """Console entry point: serve the app with uvicorn."""
    import uvicorn
    uvicorn.run(
        "hockeystore.main:app",
        host=default_settings.host,
        port=default_settings.port,
        reload=default_settings.demo_mode,
        log_level=default_settings.log_level.lower()
    )


if __name__ == "__main__":
    run()
