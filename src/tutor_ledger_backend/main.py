'''

'''
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager

from .database import engine as db_engine
from .database.engine import create_db_engine_and_session_factory, create_all_tables, dispose_db_engine
from .common.logger import log
from .common.config import settings
from .common.exceptions import (
    LedgerError,
    ValidationError,
    StateConflictError,
    NotFoundError,
    ConsistencyError,
)
from .services.notification_service import NotificationDispatcher
from .api import invoices, classes, guardians, audit

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Handles application startup and shutdown events.
    """
    # --- On App Startup ---
    log.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}...")
    create_db_engine_and_session_factory()
    if settings.AUTO_CREATE_TABLES:
        await create_all_tables(db_engine.engine)

    dispatcher = None
    if not settings.TEST_MODE:
        dispatcher = NotificationDispatcher(db_engine.AsyncSessionLocal)
        await dispatcher.start()

    yield # --- Application is now running ---

    # --- On App Shutdown ---
    if dispatcher:
        await dispatcher.stop()
    if not settings.TEST_MODE:
        log.info("Application lifespan shutdown...")
        await dispose_db_engine()
    else:
        log.info("Skipping database engine disposal in TEST_MODE.")


# ---- CREATING THE APP ----
app = FastAPI(
    title=settings.APP_NAME,
    description=settings.APP_DESCRIPTION,
    version=settings.APP_VERSION,
    lifespan=lifespan
)

# --- Add CORS Middleware ---
origins = [
    # URL of testing frontend
    "http://localhost",
    "http://localhost:3000",
]

# Extend with environment-specific origins
origins.extend(settings.BACKEND_CORS_ORIGINS)

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],)
# --- End of CORS Middleware ---

# --- Error mapping ---
def _error_body(exc: LedgerError) -> dict:
    return {"detail": exc.message, "error": type(exc).__name__, "details": exc.details}

@app.exception_handler(ConsistencyError)
async def consistency_error_handler(request: Request, exc: ConsistencyError):
    body = _error_body(exc)
    # the dry-run output lets an operator inspect the mismatch
    body["result"] = exc.result.model_dump(mode="json") if exc.result is not None else None
    return JSONResponse(status_code=status.HTTP_409_CONFLICT, content=body)

@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError):
    if isinstance(exc, ValidationError):
        status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    elif isinstance(exc, NotFoundError):
        status_code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, StateConflictError):
        status_code = status.HTTP_409_CONFLICT
    else:
        log.error(f"Unhandled ledger error: {exc.message}")
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    return JSONResponse(status_code=status_code, content=_error_body(exc))

@app.get("/")
async def health_check():
    return {"status": "ok", "message": f"{settings.APP_NAME} is running"}

app.include_router(invoices.router)
app.include_router(classes.router)
app.include_router(guardians.router)
app.include_router(audit.router)
