# app/api/endpoints/facilitator.py
from fastapi import APIRouter, Depends, Header
from fastapi.responses import JSONResponse
import logging

from app.api.dependencies import get_verifier
from app.api.models.payment import VerifyRequest, VerifyResponse
from app.x402.facilitator import PaymentVerifier

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "/verify",
    response_model=VerifyResponse,
    responses={
        400: {"description": "Malformed verify request (VALIDATION_FAILED)"},
        402: {"description": "Payment denied or awaiting confirmations"},
        403: {"description": "Merchant suspended or route disabled"},
        404: {"description": "Merchant or route not registered"},
        500: {"description": "FACILITATOR_FAULT"},
    },
)
def verify_payment(
    request: VerifyRequest,
    x_nonce: str = Header(..., min_length=1),
    x_merchant_id: str = Header(..., min_length=1),
    verifier: PaymentVerifier = Depends(get_verifier)
) -> JSONResponse:
    """
    Verify that a transaction pays for the challenge bound to `x-nonce`.

    Denials are answers, not errors: the status code tells the middleware
    whether the denial is final (4xx) and the body carries the reason.
    """
    logger.info(
        f"Verify request {x_merchant_id} {request.method} {request.path} proof={request.paymentProof}"
    )
    result = verifier.verify(
        proof=request.paymentProof,
        nonce=x_nonce,
        merchant_id=x_merchant_id,
        expected_amount=request.expectedAmount,
        currency=request.currency.value,
        path=request.path,
        method=request.method,
    )
    return JSONResponse(status_code=result.status_code, content=result.to_response())
