import asyncio
import logging
import traceback
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from backoffice.api import approvals, auth, bulk_transfers, inventory, inventory_transfers
from backoffice.config import settings
from backoffice.database import SessionLocal, atomic, init_db
from backoffice.errors import InternalError, ServiceError
from backoffice.schemas.common import ErrorDetail, ErrorResponse
from backoffice.services.approval_service import ApprovalRequestManager
from backoffice.services.webhook_service import build_resolution_payload, send_webhook

logger = logging.getLogger(__name__)


def expire_stale_requests() -> list[dict]:
    """One sweep over all tenants; returns webhook payloads for what it resolved."""
    db = SessionLocal()
    try:
        manager = ApprovalRequestManager(db)
        with atomic(db):
            manager.expire()
        return [build_resolution_payload(req) for req in manager.resolved]
    finally:
        db.close()


async def _expiry_loop(interval: int) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            payloads = await asyncio.to_thread(expire_stale_requests)
        except (ServiceError, SQLAlchemyError) as e:
            logger.error("Approval expiry sweep failed: %s", e)
            continue
        for payload in payloads:
            await send_webhook(payload)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    init_db()

    sweeper = None
    if settings.APPROVAL_SWEEP_INTERVAL_SECONDS > 0:
        sweeper = asyncio.create_task(_expiry_loop(settings.APPROVAL_SWEEP_INTERVAL_SECONDS))
        logger.info("Approval expiry sweep every %ds", settings.APPROVAL_SWEEP_INTERVAL_SECONDS)
    yield
    if sweeper:
        sweeper.cancel()
        with suppress(asyncio.CancelledError):
            await sweeper


app = FastAPI(
    title=settings.APP_NAME,
    description="Approval workflows and inventory transfers between stores",
    version="1.0.0",
    lifespan=lifespan,
)


def _error(status_code: int, kind: str, message: str) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(kind=kind, message=message))
    return JSONResponse(status_code=status_code, content=body.model_dump())


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return _error(exc.status_code, exc.kind, exc.message)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    details = "; ".join(
        f"{'.'.join(str(p) for p in err['loc'] if p != 'body')}: {err['msg']}" for err in exc.errors()
    )
    return _error(400, "validation_error", details or "Invalid request")


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError):
    logger.error("Database error: %s\n%s", exc, traceback.format_exc())
    err = InternalError("A storage error occurred")
    return _error(err.status_code, err.kind, err.message)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Return JSON for unhandled exceptions; details stay in the log."""
    logger.error("Unhandled error: %s\n%s", exc, traceback.format_exc())
    return _error(500, "system_error", "An unexpected error occurred")


app.include_router(auth.router, prefix="/api/v1")
app.include_router(approvals.router, prefix="/api/v1")
app.include_router(inventory_transfers.router, prefix="/api/v1")
app.include_router(bulk_transfers.router, prefix="/api/v1")
app.include_router(inventory.router, prefix="/api/v1")


@app.get("/health")
def health():
    return {"status": "ok"}
