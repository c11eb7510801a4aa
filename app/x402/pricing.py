# app/x402/pricing.py
"""
Route pricing for x402 payment challenges.

Two sides live here:
1. Gateway side: `lookup_route_price` resolves (merchant, method, path)
   against the merchant's authoritative route table in the store. The
   price-check endpoint and the facilitator both call it, so route
   matching can never diverge between quoting and verification.
2. Middleware side: `PriceClient` asks the gateway for a quote over HTTP,
   with bounded retry on transport failures and 5xx responses only.

Amounts stay decimal strings end to end; nothing here uses floats.
"""
import logging
from typing import Optional, Tuple

import requests
from pydantic import BaseModel, ConfigDict, Field

from app.x402.challenge import Currency, canonical_route, canonicalize_path
from app.x402.errors import ErrorCode, InfrastructureFault, PriceLookupError, ProtocolDenial
from app.x402.models import Merchant, MerchantRoute
from app.x402.retry import RetryPolicy
from app.x402.store import Store

logger = logging.getLogger(__name__)

PRICE_CHECK_PATH = "/api/price-check"
PRICING_VERSION = "1"


class PriceQuote(BaseModel):
    """Price of one route, as quoted by the merchant's pricing source."""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    price: str
    currency: Currency
    pay_to: str = Field(..., alias="payTo")
    network: str
    description: Optional[str] = None
    version: Optional[str] = None


def lookup_route_price(
    store: Store,
    merchant_id: str,
    method: str,
    path: str
) -> Tuple[Merchant, MerchantRoute]:
    """
    Resolve the authoritative route entry for a request.

    Args:
        store: Store holding merchant route tables
        merchant_id: Merchant identifier
        method: HTTP method (any case)
        path: Request path, canonicalized here

    Returns:
        (merchant, route) for an active merchant and an enabled route

    Raises:
        ProtocolDenial: MERCHANT_NOT_FOUND (404), MERCHANT_SUSPENDED (403),
            ROUTE_NOT_REGISTERED (404) or ROUTE_DISABLED (403)
    """
    route_name = canonical_route(method, path)

    merchant = store.get_merchant(merchant_id)
    if merchant is None:
        raise ProtocolDenial(
            ErrorCode.MERCHANT_NOT_FOUND,
            f"Merchant {merchant_id} not found",
            status_code=404
        )
    if not merchant.is_serving:
        raise ProtocolDenial(
            ErrorCode.MERCHANT_SUSPENDED,
            f"Merchant {merchant_id} is suspended or inactive",
            status_code=403
        )

    route = merchant.find_route(method, canonicalize_path(path))
    if route is None:
        raise ProtocolDenial(
            ErrorCode.ROUTE_NOT_REGISTERED,
            f"Route {route_name} is not registered for merchant {merchant_id}",
            status_code=404
        )
    if not route.active:
        raise ProtocolDenial(
            ErrorCode.ROUTE_DISABLED,
            f"Route {route_name} is disabled",
            status_code=403
        )

    return merchant, route


def quote_for(merchant: Merchant, route: MerchantRoute) -> PriceQuote:
    """Build the public quote for a resolved route."""
    return PriceQuote(
        price=route.price,
        currency=route.currency,
        pay_to=merchant.wallet_address,
        network=merchant.network,
        description=route.description,
        version=PRICING_VERSION,
    )


class PriceClient:
    """
    HTTP client for the gateway's price-check endpoint.

    Args:
        gateway_url: Base URL of the pricing gateway
        merchant_id: Merchant whose route table is queried
        retry: Retry policy for transport failures and 5xx responses
        timeout: Per-call timeout in seconds
        session: requests-compatible session (tests inject one)
    """

    def __init__(
        self,
        gateway_url: str,
        merchant_id: str,
        retry: Optional[RetryPolicy] = None,
        timeout: float = 15.0,
        session=None
    ):
        self.url = gateway_url.rstrip("/") + PRICE_CHECK_PATH
        self.merchant_id = merchant_id
        self.retry = retry or RetryPolicy()
        self.timeout = timeout
        self._session = session or requests.Session()

    def _post(self, method: str, path: str):
        response = self._session.post(
            self.url,
            json={"merchantId": self.merchant_id, "method": method, "path": path},
            timeout=self.timeout,
        )
        if response.status_code >= 500:
            raise requests.HTTPError(
                f"Price check returned {response.status_code}", response=response
            )
        return response

    def get_quote(self, method: str, path: str) -> PriceQuote:
        """
        Fetch the price for (method, path).

        Raises:
            PriceLookupError: The gateway answered with a denial (route
                disabled, not registered, merchant suspended...)
            InfrastructureFault: The gateway could not be reached or kept
                failing after retries
        """
        method = method.upper()
        path = canonicalize_path(path)
        try:
            response = self.retry.call(
                lambda: self._post(method, path),
                retry_on=(requests.RequestException,),
                description=f"x402: price check {method} {path}",
            )
        except requests.RequestException as e:
            raise InfrastructureFault(
                ErrorCode.PAYMENT_GATEWAY_ERROR,
                f"Pricing source unavailable: {e}",
                status_code=502
            ) from e

        try:
            body = response.json()
        except ValueError as e:
            raise InfrastructureFault(
                ErrorCode.PAYMENT_GATEWAY_ERROR,
                f"Pricing source returned invalid JSON (HTTP {response.status_code})",
                status_code=502
            ) from e

        if response.status_code >= 400:
            code = _error_code(body.get("error"))
            logger.warning(f"x402: price check denied for {method} {path}: {code.value}")
            raise PriceLookupError(
                code,
                body.get("message") or f"Price check failed with HTTP {response.status_code}",
                status_code=response.status_code,
            )

        return PriceQuote.model_validate(body)


def _error_code(value) -> ErrorCode:
    try:
        return ErrorCode(value)
    except ValueError:
        return ErrorCode.PAYMENT_GATEWAY_ERROR
