"""
DentaShop Promotions Backend
FastAPI application entry point

- Structured DentaShopError responses via exception handler
- Error sanitization middleware for unhandled exceptions
- Health endpoint with DB ping
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from dentashop.api.routes import promotions
from dentashop.core.config import settings
from dentashop.core.database import AsyncSessionLocal, engine
from dentashop.core.error_handler import ErrorSanitizationMiddleware, dentashop_error_handler
from dentashop.core.exceptions import DentaShopError

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting {settings.APP_NAME} ({settings.ENVIRONMENT})")

    yield

    await engine.dispose()
    logger.info("Database engine disposed")


app = FastAPI(
    lifespan=lifespan,
    title=settings.APP_NAME,
    description="""
## DentaShop Promotions API

Promo code evaluation and promotion management for the DentaShop storefront.

### Promotion types
- **percentage**: percent off the cart, optionally capped
- **fixed_amount**: flat amount off, never above the cart total
- **free_shipping**: shipping waived by the order flow
- **buy_x_get_y**: cheapest eligible units free

### Authentication
Bearer JWT issued by the storefront auth service. Admin endpoints require
the `is_admin` claim.
    """,
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_tags=[
        {"name": "Health", "description": "Health check endpoints"},
        {"name": "Promotions", "description": "Promo code evaluation and promotion administration"},
    ],
)

app.add_exception_handler(DentaShopError, dentashop_error_handler)

app.add_middleware(ErrorSanitizationMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(promotions.router, prefix="/api/promotions", tags=["Promotions"])


@app.get("/", tags=["Health"])
async def root():
    return {
        "message": "DentaShop Promotions API",
        "version": "1.0.0",
        "status": "operational"
    }


@app.get("/health", tags=["Health"])
async def health_check():
    """
    Health check with an actual DB ping.
    Returns 503 if database is unreachable.
    """
    health_status = {
        "status": "healthy",
        "database": "unknown",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

    try:
        async with AsyncSessionLocal() as db:
            await db.execute(text("SELECT 1"))
        health_status["database"] = "connected"
    except Exception as e:
        logger.error(f"Health check DB ping failed: {type(e).__name__}: {e}")
        health_status["database"] = f"error: {type(e).__name__}"
        health_status["status"] = "unhealthy"
        return JSONResponse(status_code=503, content=health_status)

    return health_status
