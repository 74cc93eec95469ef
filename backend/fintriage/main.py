import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from fintriage.api.v1.review import router as review_router
from fintriage.core.config import get_settings
from fintriage.core.dependencies import create_schema

settings = get_settings()

logger = logging.getLogger(__name__)

GENERIC_ERROR_DETAIL = "Ocorreu um erro interno"

app = FastAPI(
    title="fintriage API",
    version="0.1.0",
    docs_url="/docs" if settings.docs_enabled else None,
    openapi_url="/openapi.json" if settings.openapi_enabled else None,
)


@app.on_event("startup")
async def _startup_schema():
    if settings.database_auto_create:
        create_schema()
        logger.info("Ledger schema ensured")


if settings.cors_allow_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type"],
    )

app.include_router(review_router, prefix="/api/v1", tags=["review"])


@app.exception_handler(StarletteHTTPException)
async def _http_exception_handler(request: Request, exc: StarletteHTTPException):
    # 5xx details stay hidden unless explicitly enabled, except the failing action name.
    if exc.status_code >= 500 and not settings.expose_error_details:
        detail = GENERIC_ERROR_DETAIL
        if isinstance(exc.detail, dict) and exc.detail.get("action"):
            detail = {"action": exc.detail["action"], "detail": GENERIC_ERROR_DETAIL}
        return JSONResponse(status_code=exc.status_code, content={"detail": detail})
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled exception")
    if settings.expose_error_details:
        return JSONResponse(status_code=500, content={"detail": str(exc)})
    return JSONResponse(status_code=500, content={"detail": GENERIC_ERROR_DETAIL})


@app.middleware("http")
async def admin_no_store_middleware(request: Request, call_next):
    response = await call_next(request)
    if request.url.path.startswith("/api/v1/admin"):
        response.headers["Cache-Control"] = "no-store"
        response.headers["X-Content-Type-Options"] = "nosniff"
    return response


@app.get("/health")
async def health():
    return {"status": "ok", "review_queue": settings.enable_review_queue}
