from contextlib import asynccontextmanager
import traceback

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import settings
from api import router
from models.database import init_database
from services.errors import ValidationError
from services.fixtures import load_fixtures
from services.radar import RadarService
from utils.logger import setup_logging, get_logger
from utils.utcnow import utcnow

setup_logging(level=settings.LOG_LEVEL, json_format=settings.LOG_JSON, log_file=settings.LOG_FILE)
logger = get_logger("main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    logger.info("Starting Opportunity Radar...")

    try:
        await init_database()
    except Exception as e:
        logger.critical("Database initialization failed", error=str(e))
        raise

    fixtures = load_fixtures()
    app.state.radar = RadarService(fixtures=fixtures)
    logger.info(
        "Radar ready",
        llm_provider=settings.LLM_PROVIDER,
        news_provider=settings.NEWS_PROVIDER,
        strategies=len(fixtures.strategies),
        snapshots=len(fixtures.snapshots),
    )

    yield

    logger.info(
        "Shutting down Opportunity Radar",
        scans=len(app.state.radar.state.scans),
        tracked=len(app.state.radar.state.monitor),
    )


app = FastAPI(
    title="Opportunity Radar",
    description="Deterministic opportunity scans with LLM enrichment and re-evaluation monitoring",
    version="0.1.0",
    lifespan=lifespan,
)


@app.exception_handler(ValidationError)
async def validation_exception_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=400, content={"detail": exc.message, "field": exc.field})


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
    return JSONResponse(
        status_code=500, content={"detail": "Internal server error", "error": str(exc)}
    )


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router, prefix="/api", tags=["Radar"])


@app.get("/health")
async def health_check():
    """Basic health check - for load balancers"""
    return {"status": "ok"}


@app.get("/health/live")
async def liveness_check():
    return {"status": "alive", "timestamp": utcnow().isoformat()}


if __name__ == "__main__":
    import os
    import uvicorn

    port = int(os.environ.get("PORT", 8000))
    # Single worker: radar state is held in process.
    uvicorn.run(app, host="0.0.0.0", port=port, timeout_keep_alive=30)
