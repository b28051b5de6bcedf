"""
PatternLab — FastAPI Application Entry Point

Chart-pattern and candle-pattern analysis over crypto OHLC series.
All endpoints are mounted here.
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from patternlab.config import get_settings
from patternlab.routes import candles_router, health_router, patterns_router

log = structlog.get_logger("patternlab.startup")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle hooks."""
    settings = get_settings()
    log.info(
        "startup",
        env=settings.app_env,
        bitbank=settings.bitbank_api_base,
    )
    yield
    log.info("shutdown")


def create_app() -> FastAPI:
    """Application factory."""
    settings = get_settings()

    app = FastAPI(
        title="PatternLab",
        description="""# PatternLab API

Technical-pattern analysis for cryptocurrency OHLC candles.

## Features
- **Chart Patterns**: double tops/bottoms, head & shoulders, triangles, wedges
- **Lifecycle**: forming, near completion, completed with aftermath
- **Candle Pairs**: engulfing, harami, tweezer, dark cloud cover, piercing line
- **History**: forward-return statistics of past occurrences
""",
        version="1.0.0",
        debug=settings.app_debug,
        lifespan=lifespan,
        docs_url=None if settings.is_production else "/docs",
        redoc_url=None if settings.is_production else "/redoc",
        openapi_tags=[
            {"name": "Health", "description": "Service health check"},
            {"name": "Chart Patterns", "description": "Geometric pattern detection"},
            {"name": "Candle Patterns", "description": "Two-candle reversal formations"},
        ],
    )

    # ── Global Error Handlers ──
    from patternlab.error_handlers import register_error_handlers
    register_error_handlers(app)

    # ── CORS (configurable from settings) ──
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ── Custom Middleware ──
    from patternlab.middleware import RequestLoggerMiddleware
    app.add_middleware(RequestLoggerMiddleware)

    # ── Routes (unversioned) ──
    app.include_router(health_router, tags=["Health"])

    # ── Routes (v1 API) ──
    API_V1 = "/v1/api"
    app.include_router(patterns_router, prefix=API_V1, tags=["Chart Patterns"])
    app.include_router(candles_router, prefix=API_V1, tags=["Candle Patterns"])

    # ── API Version Header ──
    @app.middleware("http")
    async def add_api_version_header(request, call_next):
        response = await call_next(request)
        response.headers["X-API-Version"] = "v1"
        return response

    return app


app = create_app()
