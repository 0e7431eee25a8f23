from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from pantry_jobs.config import get_settings
from pantry_jobs.database import init_db
from pantry_jobs.middleware.correlation import CorrelationMiddleware
from pantry_jobs.routes import health, jobs
from pantry_jobs.services.redis_client import init_redis, close_redis
from pantry_jobs.utils.logger import logger

settings = get_settings()

app = FastAPI(title=settings.app_name, version=settings.app_version)
app.state.limiter = jobs.limiter
app.state.workers = None
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

allowed_origins = [origin.strip() for origin in settings.allowed_origins.split(",") if origin.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-User-ID", "X-Correlation-ID"],
)
app.add_middleware(CorrelationMiddleware)


@app.on_event("startup")
async def startup_event():
    logger.info("Starting PantryJobs backend...")
    await init_db()
    await init_redis()

    if settings.run_worker_in_process:
        from pantry_jobs.worker import WorkerGroup, register_default_handlers

        register_default_handlers()
        app.state.workers = WorkerGroup()
        app.state.workers.start()
        logger.info("In-process workers started")

    logger.info(f"Backend ready at http://{settings.backend_host}:{settings.backend_port}")


@app.on_event("shutdown")
async def shutdown_event():
    if app.state.workers is not None:
        await app.state.workers.stop()
        app.state.workers = None
    await close_redis()
    logger.info("PantryJobs backend stopped")


app.include_router(health.router, tags=["Health"])
app.include_router(jobs.router, prefix="/jobs", tags=["Jobs"])


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "pantry_jobs.main:app",
        host=settings.backend_host,
        port=settings.backend_port,
        reload=settings.debug
    )
