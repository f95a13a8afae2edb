import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import __version__
from .background_tasks import BackgroundTaskManager
from .config import SecurityEventType, SecuritySeverity, settings
from .database import DatabaseManager, MongoOracleStore
from .error_handling import CircuitBreakerTrippedError, InvalidAssetListError
from .routes import router
from .services import build_services

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Connect storage, wire the oracle components and run background tasks"""
    if getattr(app.state, "services", None) is not None:
        # services were injected by the caller, who owns their lifecycle
        yield
        return

    startup_start_time = time.time()
    logger.info("Starting Price Oracle")

    db_manager = DatabaseManager(settings)
    try:
        await db_manager.connect()
        services = build_services(
            settings,
            MongoOracleStore(db_manager.database),
            redis_client=db_manager.redis_client,
            db_manager=db_manager,
        )
        app.state.services = services

        background = BackgroundTaskManager(services)
        await background.start()
        app.state.background = background

        logger.info("✅ Price Oracle ready",
                    endpoints=len(services.endpoint_pool),
                    stream_enabled=services.stream is not None,
                    startup_time_seconds=round(time.time() - startup_start_time, 2))
    except Exception as e:
        logger.error("Failed to start Price Oracle", error=str(e))
        await db_manager.disconnect()
        raise

    yield

    logger.info("Shutting down Price Oracle")
    try:
        await background.stop()
        await services.aclose()
        await db_manager.disconnect()
        logger.info("Price Oracle shutdown complete")
    except Exception as e:
        logger.error("Error during shutdown", error=str(e))
    finally:
        app.state.services = None


def create_app(services=None) -> FastAPI:
    app = FastAPI(
        title="Price Oracle",
        description="Price aggregation, live price stream and liquidation risk triggers",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start_time = time.time()
        try:
            response = await call_next(request)
        except Exception as e:
            logger.error("Request failed",
                         method=request.method,
                         url=str(request.url),
                         error=str(e),
                         process_time=round(time.time() - start_time, 3))
            raise

        process_time = time.time() - start_time
        logger.info("Request completed",
                    method=request.method,
                    url=str(request.url),
                    status_code=response.status_code,
                    process_time=round(process_time, 3))
        response.headers["X-Process-Time"] = str(process_time)
        return response

    @app.exception_handler(InvalidAssetListError)
    async def invalid_asset_list_handler(request: Request, exc: InvalidAssetListError):
        return JSONResponse(
            status_code=400,
            content={"error": str(exc), "invalid_ids": exc.invalid_ids, "timestamp": _now_iso()},
        )

    @app.exception_handler(CircuitBreakerTrippedError)
    async def circuit_breaker_handler(request: Request, exc: CircuitBreakerTrippedError):
        return JSONResponse(
            status_code=503,
            content={"error": str(exc), "reason": exc.reason, "timestamp": _now_iso()},
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        logger.warning("HTTP exception",
                       method=request.method,
                       url=str(request.url),
                       status_code=exc.status_code,
                       detail=exc.detail)
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": exc.detail,
                "status_code": exc.status_code,
                "timestamp": _now_iso()
            }
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error("Unhandled exception",
                     method=request.method,
                     url=str(request.url),
                     error=str(exc),
                     error_type=type(exc).__name__)
        oracle = getattr(request.app.state, "services", None)
        if oracle is not None:
            oracle.security.emit(
                SecurityEventType.UNHANDLED_EXCEPTION,
                SecuritySeverity.MEDIUM,
                f"Unhandled {type(exc).__name__} on {request.method} {request.url.path}",
                error=str(exc),
            )
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "timestamp": _now_iso(),
                "request_id": id(request)
            }
        )

    app.include_router(router)

    @app.get("/")
    async def root():
        """Root endpoint with service information"""
        return {
            "service": "Price Oracle",
            "version": __version__,
            "status": "operational",
            "timestamp": _now_iso(),
            "endpoints": {
                "health": "/api/health",
                "prices": "/api/prices?ids={asset_id,...}",
                "price": "/api/prices/{asset_id}",
                "status": "/api/prices/status",
                "endpoints": "/api/prices/endpoints",
                "docs": "/docs"
            },
            "authentication": "Admin endpoints require the X-Admin-Key header",
        }

    return app


app = create_app()
