import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from redis.asyncio import RedisError
from sqlalchemy.exc import SQLAlchemyError

from taskboard.cache.layer import cache_layer
from taskboard.core.logging import configure_logging
from taskboard.queues.queue import TaskQueue
from taskboard.routers import tasks

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    await cache_layer.init_cache()
    try:
        app.state.task_queue = await TaskQueue.connect()
    except (RedisError, OSError) as e:
        # writes still succeed, status notifications are dropped
        logger.error(f"Task queue unavailable: {e}")
        app.state.task_queue = None
    yield
    if app.state.task_queue is not None:
        await app.state.task_queue.close()
    await cache_layer.close()


app = FastAPI(
    title="Task Management API",
    description="Async task management API with PostgreSQL, SQLModel and an arq job queue",
    swagger_ui_parameters={"displayRequestDuration": True},
    version="1.0.0",
    lifespan=lifespan,
)

# Include routers
app.include_router(tasks.router)


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError):
    logger.exception(f"Database error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Unable to process the request at this time"},
    )


@app.get("/")
async def root():
    return {
        "message": "Welcome to Task Management API",
        "docs": "/docs",
        "version": "1.0.0",
    }


@app.get("/health")
async def health_check():
    return {"status": "healthy"}
