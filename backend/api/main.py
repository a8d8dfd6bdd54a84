"""
Offer Index API — FastAPI Application Entry Point
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.requests import Request

from core.config import get_settings
from db.session import build_engine, build_session_factory
from eligibility.cache import build_redis
from eligibility.errors import OfferIndexRowError, OfferIndexUnavailableError

settings = get_settings()
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    logger.info("Offer Index API starting up", version=settings.app_version, queue_enabled=settings.queue_enabled)
    engine = build_engine(settings)
    app.state.engine = engine
    app.state.session_factory = build_session_factory(engine)
    app.state.redis = build_redis(settings)
    try:
        yield
    finally:
        if app.state.redis is not None:
            await app.state.redis.aclose()
        await engine.dispose()
        logger.info("Offer Index API shutting down")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Per-user offer eligibility over a precomputed offer index",
    lifespan=lifespan,
)


@app.exception_handler(OfferIndexUnavailableError)
async def offer_index_unavailable_handler(request: Request, exc: OfferIndexUnavailableError):
    return JSONResponse(
        status_code=503,
        content={"detail": "Offer index temporarily unavailable"},
        headers={"Retry-After": "1"},
    )


@app.exception_handler(OfferIndexRowError)
async def offer_index_row_handler(request: Request, exc: OfferIndexRowError):
    logger.error("offers.malformed_row", path=request.url.path, error=str(exc))
    return JSONResponse(status_code=500, content={"detail": "Offer index returned malformed data"})


# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Import and register routers
from api.v1.routers import offer_index, offers

app.include_router(offers.router)
app.include_router(offer_index.router)


@app.get("/health")
async def health_check():
    """Health check endpoint for load balancers."""
    return {"status": "healthy", "version": settings.app_version}
