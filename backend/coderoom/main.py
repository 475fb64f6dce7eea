from contextlib import asynccontextmanager
from fastapi import FastAPI, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from coderoom.config import settings
from coderoom.database import init_db, check_db, close_db
from coderoom.routers import auth_router, rooms_router, websocket_router
from coderoom.services.lifecycle import get_lifecycle, close_lifecycle
from coderoom.services.redis_state import get_redis_state, close_redis_state
from coderoom.utils.logging_config import setup_logging, fastapi_logger
from coderoom.utils.rate_limit import RateLimitHeaderMiddleware, close_rate_limiter
from coderoom.error_handlers import register_exception_handlers


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    # Setup logging first
    setup_logging()
    fastapi_logger.info(f"Starting {settings.APP_NAME}")
    await init_db()
    fastapi_logger.info("Database initialized")
    health = await get_redis_state().health_check()
    if health["redis_connected"]:
        fastapi_logger.info("Redis state service connected")
    else:
        fastapi_logger.warning("Redis not available, using in-memory fallback for state")
    # Expire sweep + socket heartbeat
    get_lifecycle().start()
    fastapi_logger.info("Room lifecycle tasks started")
    yield
    # Shutdown
    fastapi_logger.info("Shutting down application")
    # Flush pending room writes before the pool goes away
    await close_lifecycle()
    fastapi_logger.info("Room lifecycle stopped")
    await close_redis_state()
    fastapi_logger.info("Redis state service closed")
    await close_rate_limiter()
    fastapi_logger.info("Rate limiter connections closed")
    await close_db()


app = FastAPI(
    title=settings.APP_NAME,
    description="Real-time collaborative team coding rooms",
    version="1.0.0",
    lifespan=lifespan
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Rate Limit Headers Middleware (must be added after CORS)
if settings.RATE_LIMIT_ENABLED:
    app.add_middleware(RateLimitHeaderMiddleware)

# Global Exception Handlers
register_exception_handlers(app)

# API Routers
app.include_router(auth_router)
app.include_router(rooms_router)
app.include_router(websocket_router)


# Health Check
@app.get("/health")
async def health_check():
    redis_health = await get_redis_state().health_check()
    return {
        "status": "healthy",
        "service": settings.APP_NAME,
        "redis": redis_health
    }


@app.get("/ready")
async def readiness_check():
    redis_health = await get_redis_state().health_check()
    database_ok = await check_db()
    body = {
        "status": "ready" if database_ok else "not_ready",
        "database_connected": database_ok,
        "redis_connected": redis_health["redis_connected"]
    }
    if not database_ok:
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=body)
    return body


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("coderoom.main:app", host="0.0.0.0", port=8000, reload=True)
