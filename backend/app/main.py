from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import logging

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

from app.config import get_settings
from app.database import engine, Base
from app.errors import HTTP_STATUS_BY_KIND, LedgerError
from app.routes import api_router

logger = logging.getLogger(__name__)

settings = get_settings()


def _get_cors_origins() -> list[str]:
    """
    Determine allowed CORS origins.

    Falls back to the local frontend when CORS_ALLOW_ORIGINS is not set.
    """
    origins = [o.strip() for o in settings.cors_allow_origins.split(",") if o.strip()]
    if origins:
        return origins
    return ["http://localhost:3000"]


# Guarded dev helper; production schemas are managed outside the app
if settings.auto_create_tables:
    logger.warning("AUTO_CREATE_TABLES is enabled; creating tables via SQLAlchemy metadata.")
    Base.metadata.create_all(bind=engine)

app = FastAPI(
    title="Household Ledger API",
    description="API for the household ledger (income, expenses, sessions and linked accounts)",
    version="0.1.0",
    docs_url="/docs" if settings.api_docs_enabled else None,
    redoc_url="/redoc" if settings.api_docs_enabled else None,
    openapi_url="/openapi.json" if settings.api_docs_enabled else None,
)


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError):
    status_code = HTTP_STATUS_BY_KIND.get(exc.kind, 500)
    if status_code >= 500:
        logger.warning(f"{exc.kind.value} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=status_code,
        content={"detail": exc.message, "kind": exc.kind.value},
    )


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(status_code=500, content={"detail": "Internal server error."})


# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=_get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router, prefix="/api")


@app.get("/")
def root():
    payload = {"message": "Household Ledger API"}
    if settings.api_docs_enabled:
        payload["docs"] = "/docs"
    return payload


@app.get("/health")
@app.get("/api/health")
def health():
    return {"status": "healthy"}
