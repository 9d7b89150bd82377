from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api.errors import error_response
from app.api.v1.api import api_router
from app.core.config import settings
from app.core.database import engine, init_db
from app.core.logging import configure_logging
from app.core.redis import redis_client
from app.scheduling.exceptions import SchedulingError

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    logger.info(
        "Application starting up",
        environment=settings.ENVIRONMENT,
        version=settings.VERSION,
    )
    await init_db()

    if redis_client.is_configured:
        try:
            await redis_client.init_redis()
        except Exception as e:
            logger.warning(
                "Redis unavailable, availability cache entries expire by TTL only",
                exc_info=e,
            )

    yield

    logger.info("Application shutting down")
    await redis_client.close()
    await engine.dispose()


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    debug=settings.DEBUG,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["Retry-After", "Idempotent-Replayed"],
)


@app.exception_handler(SchedulingError)
async def scheduling_exception_handler(request: Request, exc: SchedulingError):
    if exc.reason in ("unavailable", "lock_timeout"):
        logger.warning(
            "Scheduler temporarily unavailable",
            path=request.url.path,
            reason=exc.reason,
        )
    else:
        logger.info(
            "Scheduling request rejected",
            path=request.url.path,
            reason=exc.reason,
            detail=exc.detail,
        )
    return error_response(exc)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    logger.info("Request validation failed", path=request.url.path, errors=len(errors))
    detail = "; ".join(
        f"{'.'.join(str(part) for part in error.get('loc', ()))}: {error.get('msg')}"
        for error in errors
    )
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": "validation", "reason": "request", "detail": detail},
    )


app.include_router(api_router, prefix=settings.API_V1_STR)


@app.get("/health")
async def health_check():
    return {
        "status": "ok",
        "service": settings.PROJECT_NAME,
        "version": settings.VERSION,
        "environment": settings.ENVIRONMENT,
    }
