import asyncio

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from imgflow.config import get_settings
from imgflow.database import init_db
from imgflow.middleware.correlation import CorrelationMiddleware
from imgflow.middleware.rate_limit import limiter
from imgflow.routes import files, settings as settings_routes, tasks
from imgflow.services.gateway import get_gateway
from imgflow.utils.logger import logger
from imgflow.worker import get_processor, run_cleanup, worker_loop

settings = get_settings()

app = FastAPI(title=settings.app_name, version=settings.app_version)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# CORS - Explicit origins for security
allowed_origins = [origin.strip() for origin in settings.allowed_origins.split(",")]
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "X-User-ID", "X-Internal-Secret", "X-Correlation-ID"],
)
app.add_middleware(CorrelationMiddleware)

_background: list = []


# Startup: Initialize database, requeue interrupted tasks, optional in-process worker
@app.on_event("startup")
async def startup_event():
    logger.info("Starting imgflow...")
    await init_db()

    processor = get_processor()
    if settings.recover_on_startup:
        # Nothing can be running yet in this process
        recovery = await processor.recover()
        if recovery["total"]:
            logger.info("startup.recovered", extra={"recovered": recovery["recovered"], "failed": recovery["failed"]})

    if settings.worker_enabled:
        _background.append(asyncio.create_task(worker_loop(processor)))
        _background.append(asyncio.create_task(run_cleanup()))
        logger.info("In-process worker enabled")

    logger.info(f"Backend ready at http://{settings.backend_host}:{settings.backend_port}")


@app.on_event("shutdown")
async def shutdown_event():
    for task in _background:
        task.cancel()
    _background.clear()


# Health check endpoint
@app.get("/health")
async def health_check():
    return {"status": "ok", "circuits": get_gateway().get_circuit_states()}


@app.get("/")
async def root():
    return {"status": "ok"}


# Register routes
app.include_router(tasks.router, prefix="/api/tasks", tags=["Tasks"])
app.include_router(settings_routes.router, prefix="/api/settings", tags=["Settings"])
app.include_router(files.router, prefix="/files", tags=["Files"])

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "imgflow.main:app",
        host=settings.backend_host,
        port=settings.backend_port,
        reload=settings.debug
    )
