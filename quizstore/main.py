from fastapi import FastAPI, HTTPException, Depends, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import hmac
import os
import logging
from typing import Optional

from quizstore import config, crud, schemas, logging_config
from quizstore.client import Client
from quizstore.database import init_db
from quizstore.errors import ClientError

logger = logging.getLogger("quizstore.api")
app = FastAPI(title="Quiz Store Admin API")

MAX_PAGE_SIZE = 1000

# CORS for the admin dashboard
frontend_origin = os.getenv("FRONTEND_ORIGIN", "http://localhost:5173")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[frontend_origin],
    allow_credentials=True,
    allow_methods=["GET"],
    allow_headers=["X-Admin-Key", "Content-Type"],
)

_client: Optional[Client] = None


# Dependency providing the shared client
def get_client() -> Client:
    global _client
    if _client is None:
        _client = Client()
    return _client


def require_admin(x_admin_key: Optional[str] = Header(None)):
    if not config.ADMIN_API_KEY:
        raise HTTPException(status_code=503, detail="Admin API is not configured")
    if not x_admin_key or not hmac.compare_digest(x_admin_key, config.ADMIN_API_KEY):
        raise HTTPException(status_code=401, detail="Unauthorized")


ERROR_STATUS = {
    "not_found": 404,
    "validation": 422,
    "unique_constraint": 409,
    "foreign_key_constraint": 409,
    "conflict": 409,
    "timeout": 503,
    "connection": 503,
}


@app.exception_handler(ClientError)
async def client_error_handler(request: Request, exc: ClientError):
    status_code = ERROR_STATUS.get(exc.kind, 500)
    if status_code == 500:
        logger.error("Unhandled data access error on %s: %s", request.url.path, exc.message)
    return JSONResponse(status_code=status_code, content={"error": exc.kind, "detail": exc.message})


@app.on_event("startup")
async def startup():
    logging_config.configure_logging()
    await init_db(get_client().engine)


@app.on_event("shutdown")
async def shutdown():
    if _client is not None:
        await _client.disconnect()


@app.get("/health")
async def health(client: Client = Depends(get_client)):
    """Database connectivity check"""
    try:
        await client.query_raw("SELECT 1 AS ok")
    except ClientError as e:
        logger.warning("Health check failed: %s", e.message)
        return JSONResponse(status_code=503, content={"status": "error", "database": "unreachable"})
    return {"status": "ok", "database": "connected"}


@app.get("/admin/health", dependencies=[Depends(require_admin)])
async def admin_health(client: Client = Depends(get_client)):
    return {
        "status": "ok",
        "users": await client.user.count(),
        "payments": await client.payment.count(),
        "refunds": await client.refund.count(),
    }


@app.get("/admin/payments", response_model=schemas.PaymentList, dependencies=[Depends(require_admin)])
async def list_payments(
    limit: int = Query(100, ge=1),
    offset: int = Query(0, ge=0),
    status: Optional[str] = None,
    client: Client = Depends(get_client),
):
    """
    Payments with their user, newest first. ``limit`` is capped at 1000.
    """
    limit = min(limit, MAX_PAGE_SIZE)
    payments = await crud.get_payments_with_users(client, limit=limit, offset=offset, status=status)
    return {"payments": payments, "limit": limit, "offset": offset}


@app.get("/admin/refunds", response_model=schemas.RefundList, dependencies=[Depends(require_admin)])
async def list_refunds(
    limit: int = Query(100, ge=1),
    offset: int = Query(0, ge=0),
    client: Client = Depends(get_client),
):
    limit = min(limit, MAX_PAGE_SIZE)
    refunds = await crud.get_refunds(client, limit=limit, offset=offset)
    return {"refunds": refunds, "limit": limit, "offset": offset}
