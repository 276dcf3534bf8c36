import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import settings
from api import router
from models.database import init_database
from services.runtime import get_runtime
from utils.logger import get_logger, setup_logging

# Setup logging
setup_logging(level=settings.LOG_LEVEL, json_format=settings.LOG_JSON, log_file=settings.LOG_FILE)
logger = get_logger("main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    logger.info("Starting consensus signal engine admin API...")

    await init_database()
    logger.info("Database initialized")

    # Ingestion, detection, monitoring and notification loops are worker-owned.
    logger.info("API runtime running in read/admin mode for worker-owned loops")

    yield

    logger.info("Shutting down...")
    await get_runtime().close()
    logger.info("Shutdown complete")


app = FastAPI(
    title="Consensus Signal Engine",
    description="Multi-wallet consensus signals for perpetual futures, with SL/TP tracking and performance",
    version="1.0.0",
    lifespan=lifespan,
)


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled exception",
        path=request.url.path,
        method=request.method,
        error=str(exc),
        traceback=traceback.format_exc(),
    )
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# API routes
app.include_router(router, prefix="/api")


# Health checks
@app.get("/health")
async def health_check():
    """Basic health check - for load balancers"""
    return {"status": "ok"}


if __name__ == "__main__":
    import os
    import uvicorn

    port = int(os.environ.get("PORT", 8000))
    uvicorn.run(
        app,
        host="0.0.0.0",
        port=port,
        timeout_keep_alive=30,
    )
