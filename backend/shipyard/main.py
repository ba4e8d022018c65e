from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager

from shipyard.core.config import settings
from shipyard.core.database import init_db, close_db
from shipyard.core.exceptions import ShipyardError, ValidationError, InternalError, error_response
from shipyard.core.logging_config import logger
from shipyard.core.middleware import RequestLoggingMiddleware
from shipyard.core.redis_client import redis_client
from shipyard.api.v1.router import api_router
from shipyard.services.active_sessions import ActiveSessionSweeper, get_active_session_service
from shipyard.services.conversation_cache import RedisConversationCache, set_conversation_cache


async def setup_conversation_cache():
    """Use Redis for the conversation cache when configured, else stay in memory"""
    if settings.CONVERSATION_CACHE_BACKEND != "redis":
        logger.info("[Startup] Conversation cache: in-memory")
        return

    try:
        await redis_client.connect()
    except Exception as e:
        logger.warning(f"[Startup] Redis unavailable, conversation cache stays in-memory: {e}")
        return

    set_conversation_cache(RedisConversationCache(redis_client))
    logger.info("[Startup] Conversation cache: redis")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup and shutdown"""
    # Startup
    logger.info("=" * 60)
    logger.info(f"Starting {settings.APP_NAME}...")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"API Version: {settings.API_VERSION}")
    logger.info("=" * 60)

    await init_db()
    logger.info("[Startup] Database tables ready")

    await setup_conversation_cache()

    sweeper = ActiveSessionSweeper(get_active_session_service())
    await sweeper.start()

    yield

    # Shutdown
    logger.info(f"Shutting down {settings.APP_NAME}...")

    await sweeper.stop()

    if redis_client.connected:
        await redis_client.disconnect()

    await close_db()


# Create FastAPI app
app = FastAPI(
    title=settings.APP_NAME,
    description="Conversational app builder: agent streaming, commits and deployments",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
    redirect_slashes=False
)

# Add middleware (order matters - last added runs first)
app.add_middleware(RequestLoggingMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=[
        "X-Request-ID",
        "X-Response-Time",
        "x-dailylimit-limit",
        "x-dailylimit-remaining",
        "x-dailylimit-usage",
        "x-dailylimit-reset",
    ],
)


# Exception handlers
@app.exception_handler(ShipyardError)
async def shipyard_exception_handler(request: Request, exc: ShipyardError):
    if exc.status_code >= 500:
        logger.error(f"{exc.kind}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content=error_response(exc),
        headers=exc.headers or None,
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(part) for part in first.get("loc", ()))
    error = ValidationError(first.get("msg", "Invalid request"), field=field or None)
    return JSONResponse(status_code=error.status_code, content=error_response(error))


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Global exception: {exc}", exc_info=True)
    error = InternalError(str(exc) if settings.DEBUG else "An error occurred")
    return JSONResponse(status_code=500, content=error_response(error))


# Root endpoint
@app.get("/", tags=["Root"])
async def root():
    """Root endpoint"""
    return {
        "message": f"Welcome to {settings.APP_NAME}",
        "version": "1.0.0",
        "docs": "/docs",
        "health": f"/api/{settings.API_VERSION}/health"
    }


# Include API router
app.include_router(api_router, prefix=f"/api/{settings.API_VERSION}")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "shipyard.main:app",
        host=settings.SERVER_HOST,
        port=settings.SERVER_PORT,
        reload=settings.DEBUG
    )
