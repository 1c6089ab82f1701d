import datetime
import logging
import time
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest

from simleague.api import admin, events, runs
from simleague.core.config import settings
from simleague.core.errors import ServiceError
from simleague.core.logging_config import setup_logging
from simleague.core.metrics import DATABASE_HEALTH, REDIS_HEALTH, init_fastapi_instrumentation
from simleague.db.session import check_schema, init_db

# Configure logging (JSON)
setup_logging()

logger = logging.getLogger(__name__)

app = FastAPI(
    title="SimLeague",
    description="Event and run lifecycle API for trading simulation competitions",
    version="1.0.0",
)

# Expose Prometheus HTTP metrics immediately (not only on startup)
try:
    init_fastapi_instrumentation(app)
except Exception as _e:
    logger.exception("Prometheus metrics init failed", extra={"error": str(_e)})

# CORS for the participant site and the simulator
_cors_origins = [o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if "*" in _cors_origins else _cors_origins,
    allow_credentials=False if "*" in _cors_origins else True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def startup_event():
    # Schema drift is fatal: refuse to serve instead of failing per request.
    if settings.AUTO_CREATE_TABLES:
        await init_db()
    await check_schema()
    logger.info("Database initialized successfully")


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    level = logging.ERROR if exc.status_code >= 500 else logging.INFO
    logger.log(
        level,
        "request_rejected",
        extra={
            "path": request.url.path,
            "method": request.method,
            "status_code": exc.status_code,
            "error": exc.kind,
            "reason": exc.message,
        },
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content={"error": "validation_failed", "message": "Request validation failed", "details": {"errors": errors}},
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    return JSONResponse(
        status_code=500,
        content={"error": "internal_error", "message": "Internal server error"},
    )


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    request_logger = logging.getLogger("request")
    start = time.perf_counter()
    request_id = request.headers.get("x-request-id") or str(uuid4())
    client = request.client.host if request.client else "-"
    try:
        response = await call_next(request)
        duration_ms = int((time.perf_counter() - start) * 1000)
        request_logger.info(
            "request_completed",
            extra={
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status_code": getattr(response, "status_code", 0),
                "duration_ms": duration_ms,
                "client": client,
            },
        )
        response.headers["x-request-id"] = request_id
        return response
    except Exception:
        duration_ms = int((time.perf_counter() - start) * 1000)
        request_logger.exception(
            "request_failed",
            extra={
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status_code": 500,
                "duration_ms": duration_ms,
                "client": client,
            },
        )
        raise


# Include API routes
app.include_router(events.router, prefix="/api/events", tags=["events"])
app.include_router(admin.router, prefix="/api/admin", tags=["admin"])
app.include_router(runs.router, prefix="/api/runs", tags=["runs"])


@app.get("/metrics")
def metrics():
    return Response(generate_latest(REGISTRY), media_type=CONTENT_TYPE_LATEST)


@app.get("/health")
async def health_check():
    """Liveness + Readiness: verify core dependencies (DB, Redis broker).

    Returns JSON with overall status and component statuses. If any component
    check fails, status is "unhealthy".
    """
    from sqlalchemy import text
    import redis.asyncio as aioredis

    statuses: dict[str, str] = {}
    # DB check
    try:
        from simleague.db.session import engine
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        statuses["database"] = "ok"
        DATABASE_HEALTH.set(1)
    except Exception as e:
        statuses["database"] = f"error: {e}"
        DATABASE_HEALTH.set(0)

    # Celery broker check (finalize hook)
    try:
        client = aioredis.from_url(settings.CELERY_BROKER_URL, socket_timeout=2)
        try:
            await client.ping()
        finally:
            await client.aclose()
        statuses["broker"] = "ok"
        REDIS_HEALTH.set(1)
    except Exception as e:
        statuses["broker"] = f"error: {e}"
        REDIS_HEALTH.set(0)

    healthy = all(v == "ok" for v in statuses.values())
    timestamp = datetime.datetime.now(datetime.timezone.utc).isoformat()
    if not healthy:
        logger.error(
            "health_check_failed",
            extra={"status": "unhealthy", "components": statuses, "timestamp": timestamp},
        )
    else:
        logger.info(
            "health_check_passed",
            extra={"status": "healthy", "components": statuses, "timestamp": timestamp},
        )

    return {"status": "healthy" if healthy else "unhealthy", "components": statuses, "timestamp": timestamp}
