import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from api.routes import get_connection_pool, get_transcript_insight_service, router
from config import get_settings
from utils.async_utils import shutdown_thread_pools
from utils.loguru_setup import logger, setup_context_preserving_task_factory, set_trace_context, reset_trace_context


@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    settings = get_settings()
    logger.info("Application starting up",
        environment=settings.environment,
        log_level=settings.log_level,
        persistence_backend=settings.persistence_backend,
        strict_invariants=settings.strict_invariants
    )

    setup_context_preserving_task_factory()

    try:
        yield
    finally:
        logger.info("Lifespan: Application is shutting down")
        await get_connection_pool().close()
        await get_transcript_insight_service().close()
        await shutdown_thread_pools()

app = FastAPI(title="Prospect Intelligence API", lifespan=lifespan)


@app.middleware("http")
async def logging_middleware(request: Request, call_next):
    request_id = request.headers.get('X-Request-ID', str(uuid.uuid4()))

    # Trace context for the entire request
    tokens = set_trace_context(trace_id=request_id)

    logger.info(
        "Request started",
        method=request.method,
        path=request.url.path,
        client_host=request.client.host if request.client else None
    )

    start_time = time.time()

    try:
        response = await call_next(request)

        logger.info(
            "Request completed",
            status_code=response.status_code,
            duration_ms=int((time.time() - start_time) * 1000)
        )
        response.headers['X-Request-ID'] = request_id
        return response

    except Exception as e:
        logger.opt(exception=True).error(
            f"Request failed: {e}",
            duration_ms=int((time.time() - start_time) * 1000)
        )

        return JSONResponse(
            status_code=500,
            content={
                "status": "error",
                "message": str(e),
                "type": type(e).__name__,
                "request_id": request_id
            }
        )
    finally:
        reset_trace_context(tokens)

app.include_router(router, prefix="/api/v1")

@app.get("/health")
async def health_check():
    return {"status": "healthy"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000)
