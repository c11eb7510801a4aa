# app/api/endpoints/price_check.py
from fastapi import APIRouter, Depends, HTTPException
import logging

from app.api.dependencies import get_store
from app.api.models.payment import PriceCheckRequest, PriceCheckResponse
from app.x402.errors import X402Error
from app.x402.pricing import lookup_route_price, quote_for
from app.x402.store import Store

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/price-check", response_model=PriceCheckResponse, response_model_exclude_none=True)
def price_check(
    request: PriceCheckRequest,
    store: Store = Depends(get_store)
) -> PriceCheckResponse:
    """
    Quote the price of a merchant route.

    The path is canonicalized the same way the facilitator does it, so a
    quote for "/premium/" and a verification for "/premium" hit the same
    route entry.

    Raises:
        X402Error: 404 MERCHANT_NOT_FOUND / ROUTE_NOT_REGISTERED,
            403 MERCHANT_SUSPENDED / ROUTE_DISABLED
        HTTPException: 500 if the route table cannot be read
    """
    try:
        merchant, route = lookup_route_price(store, request.merchantId, request.method, request.path)
    except X402Error:
        raise
    except Exception as e:
        logger.error(f"Failed to read route table for {request.merchantId}: {e}")
        raise HTTPException(status_code=500, detail="Failed to read merchant route table")

    quote = quote_for(merchant, route)
    logger.info(
        f"Price check {request.merchantId} {route.method} {route.path}: {quote.price} {quote.currency.value}"
    )
    return PriceCheckResponse(merchantId=merchant.merchant_id, **quote.model_dump(by_alias=True))
