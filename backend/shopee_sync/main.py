import logging
import uuid

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from shopee_sync.config import settings
from shopee_sync.routers import orders_sync
from shopee_sync.utils.logger import logger


app = FastAPI(title="Shopee Orders Sync API", version="1.0.0")

origins = [o.strip() for o in settings.ALLOWED_ORIGINS.split(",") if o.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["*"],
    max_age=3600,
)


# Request logging middleware with request ID
@app.middleware("http")
async def request_logger(request: Request, call_next):
    rid = uuid.uuid4().hex[:8]
    request.state.rid = rid
    logging.info("→ %s %s rid=%s", request.method, request.url.path, rid)
    try:
        resp = await call_next(request)
        logging.info("← %s status=%s rid=%s", request.url.path, resp.status_code, rid)
        resp.headers["X-Request-ID"] = rid
        return resp
    except Exception as e:
        logging.exception("Unhandled error rid=%s: %s", rid, str(e))
        error_resp = JSONResponse(
            {"success": False, "error": "internal_error", "rid": rid, "message": str(e), "type": type(e).__name__},
            status_code=500,
        )
        error_resp.headers["X-Request-ID"] = rid
        return error_resp


app.include_router(orders_sync.router)


@app.on_event("startup")
async def startup_event():
    logger.info("Shopee orders sync API starting up...")
    if "postgresql" in settings.DATABASE_URL:
        logger.info("Using PostgreSQL database; run `alembic upgrade head` from backend/ to apply migrations")
    else:
        logger.info(f"Using local database {settings.DATABASE_URL}")


@app.get("/health")
async def health_check():
    return {"status": "healthy"}
