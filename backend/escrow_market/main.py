import asyncio
import re
import uuid

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from escrow_market.config import settings
from escrow_market.routers import admin, orders, products, sellers
from escrow_market.services.errors import MarketplaceError
from escrow_market.utils.logger import logger

app = FastAPI(title="Escrow Marketplace API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def request_logger(request: Request, call_next):
    rid = uuid.uuid4().hex[:8]
    request.state.rid = rid
    logger.info("→ %s %s rid=%s", request.method, request.url.path, rid)
    try:
        resp = await call_next(request)
        logger.info("← %s status=%s rid=%s", request.url.path, resp.status_code, rid)
        resp.headers["X-Request-ID"] = rid
        return resp
    except Exception as e:
        logger.exception("Unhandled error rid=%s: %s", rid, str(e))
        error_resp = JSONResponse(
            {"error": "internal_error", "rid": rid, "message": str(e), "type": type(e).__name__},
            status_code=500
        )
        error_resp.headers["X-Request-ID"] = rid
        return error_resp


@app.exception_handler(MarketplaceError)
async def marketplace_error_handler(request: Request, exc: MarketplaceError):
    logger.warning(
        "%s %s rejected: %s (%s) rid=%s",
        request.method, request.url.path, exc.code, exc.message, getattr(request.state, "rid", "-"),
    )
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


app.include_router(orders.router)
app.include_router(sellers.router)
app.include_router(products.router)
app.include_router(admin.router)


@app.on_event("startup")
async def startup_event():
    logger.info("Escrow Marketplace API starting up...")

    database_url = settings.DATABASE_URL
    if "postgresql" in database_url:
        masked_url = re.sub(r'://([^:]+):([^@]+)@', r'://\1:****@', database_url)
        logger.info(f"📊 Database URL: {masked_url}")
        logger.info("🐘 Using PostgreSQL database; schema is managed by `alembic upgrade head`")
    else:
        from escrow_market.init_db import init_db
        init_db()

    if settings.START_BACKGROUND_WORKERS:
        from escrow_market.workers import run_auto_release_worker_loop

        logger.info("🔄 Starting escrow auto-release worker...")
        asyncio.create_task(run_auto_release_worker_loop())
    else:
        logger.info("Background workers disabled (START_BACKGROUND_WORKERS=false)")


@app.get("/healthz")
async def healthz():
    return {"status": "ok"}


@app.get("/healthz/db")
async def healthz_db():
    """Database health check endpoint"""
    try:
        from escrow_market.models_sqlalchemy import engine
        with engine.connect() as conn:
            result = conn.execute(text("SELECT 1"))
            result.fetchone()
        return {"status": "ok", "database": "connected"}
    except Exception as e:
        logger.exception("Database health check failed")
        error_detail = f"Database unavailable: {type(e).__name__}: {str(e)}"
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=error_detail
        )


@app.get("/")
async def root():
    return {
        "message": "Escrow Marketplace API",
        "version": "1.0.0",
        "docs": "/docs"
    }
