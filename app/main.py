# app/main.py
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from app.core.config import settings
from app.api.endpoints import price_check, facilitator, transactions
from app.x402.chain import ChainClient
from app.x402.errors import ErrorCode, X402Error
from app.x402.facilitator import PaymentVerifier
from app.x402.store import Store, create_store, load_merchants_file
import logging

# Configure basic logging
logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
logger = logging.getLogger(__name__)


async def x402_error_handler(request: Request, exc: X402Error) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Schema violations are protocol denials (400 VALIDATION_FAILED), not 422s."""
    errors = [
        {"loc": [str(part) for part in err.get("loc", ())], "msg": err.get("msg")}
        for err in exc.errors()
    ]
    logger.warning(f"Validation failed on {request.method} {request.url.path}: {errors}")
    return JSONResponse(
        status_code=400,
        content={
            "error": ErrorCode.VALIDATION_FAILED.value,
            "message": "Request validation failed",
            "details": errors,
        },
    )


def create_app(store: Optional[Store] = None, chain: Optional[ChainClient] = None) -> FastAPI:
    """
    Build the gateway application: price lookup, facilitator verify and
    the transaction ledger.

    Args:
        store: Persistence backend; built from X402_DATABASE_URL if not given
        chain: Chain RPC client; built from X402_RPC_URL if not given
    """
    if store is None:
        store = create_store(settings.X402_DATABASE_URL)
        if settings.X402_MERCHANTS_FILE:
            load_merchants_file(store, settings.X402_MERCHANTS_FILE)
    if chain is None:
        chain = ChainClient(settings.X402_RPC_URL, timeout=settings.X402_RPC_TIMEOUT_SECONDS)

    app = FastAPI(
        title=settings.PROJECT_NAME,
        openapi_url=f"{settings.API_PREFIX}/openapi.json"
    )
    app.state.store = store
    app.state.verifier = PaymentVerifier(
        store,
        chain,
        confirmations_required=settings.X402_CONFIRMATIONS_REQUIRED,
        replay_ttl_seconds=settings.X402_REPLAY_TTL_HOURS * 60 * 60,
    )

    app.add_exception_handler(X402Error, x402_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)

    # All routes live under API_PREFIX (/api by default)
    app.include_router(price_check.router, prefix=settings.API_PREFIX, tags=["pricing"])
    app.include_router(facilitator.router, prefix=f"{settings.API_PREFIX}/facilitator", tags=["facilitator"])
    app.include_router(transactions.router, prefix=f"{settings.API_PREFIX}/transactions", tags=["transactions"])

    @app.get("/", summary="Health Check", tags=["default"])
    def read_root():
        """ Basic health check endpoint. """
        logger.info("Root endpoint '/' accessed.")
        return {"status": "ok", "message": f"Welcome to {settings.PROJECT_NAME}"}

    return app


app = create_app()
