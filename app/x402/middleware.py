# app/x402/middleware.py
"""
FastAPI middleware that gates merchant routes behind x402 payments.

For each request to a protected route the middleware:
1. Canonicalizes (method, path)
2. Looks up the route price (TTL-cached, bounded retry)
3. Without a proof: mints a nonce and returns 402 with the challenge in
   headers and JSON body
4. With a proof and nonce: asks the facilitator to verify (bounded retry)
5. On success attaches a PaymentReceipt to `request.state.payment` and
   calls the route; otherwise returns 402 with the facilitator's reason
6. On infrastructure errors applies the configured FailureMode once

The payer identity comes from the facilitator only. The x-payment-payer
header sent by agents is logged and otherwise ignored.
"""
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable, List, Optional, Set, Tuple, Union

from fastapi import Request, Response
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from app.x402 import audit
from app.x402.cache import TTLCache
from app.x402.challenge import (
    EXPOSED_CHALLENGE_HEADERS,
    HEADER_NONCE,
    HEADER_PAYMENT_PAYER,
    HEADER_PAYMENT_PROOF,
    HEADER_ROUTE,
    NETWORKS,
    PaymentChallenge,
    canonical_route,
    canonicalize_path,
    chain_id_for_network,
    mint_nonce,
    split_route,
)
from app.x402.errors import ConfigurationError, ErrorCode, PriceLookupError
from app.x402.facilitator import FacilitatorClient
from app.x402.pricing import PriceClient, PriceQuote
from app.x402.retry import RetryPolicy

logger = logging.getLogger(__name__)


class FailureMode(str, Enum):
    """What to do with a protected request when verification infrastructure fails."""
    CLOSED = "closed"  # deny with 502
    OPEN = "open"      # admit without payment, log CRITICAL


@dataclass(frozen=True)
class MiddlewareConfig:
    """
    Merchant middleware configuration.

    Attributes:
        merchant_id: Merchant whose routes are protected
        gateway_url: Base URL of the pricing gateway
        facilitator_url: Base URL of the facilitator (advertised in challenges)
        network: Merchant network name (cronos-mainnet / cronos-testnet)
        cache_ttl: Price cache TTL in seconds
        fail_mode: Behaviour on infrastructure errors
        retry: Retry policy for price lookup and verify calls
        timeout: Per-call timeout in seconds
        challenge_ttl: Seconds until an issued challenge expires
    """
    merchant_id: str
    gateway_url: str
    facilitator_url: str
    network: str = "cronos-testnet"
    cache_ttl: float = 30.0
    fail_mode: FailureMode = FailureMode.CLOSED
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    timeout: float = 15.0
    challenge_ttl: int = 300

    def __post_init__(self):
        missing = [
            name for name in ("merchant_id", "gateway_url", "facilitator_url")
            if not (getattr(self, name) or "").strip()
        ]
        if missing:
            raise ConfigurationError(f"x402 middleware misconfigured, missing: {', '.join(missing)}")
        if self.network not in NETWORKS:
            raise ConfigurationError(f"Unknown network: {self.network}")
        try:
            object.__setattr__(self, "fail_mode", FailureMode(self.fail_mode))
        except ValueError:
            raise ConfigurationError(f"Unknown fail mode: {self.fail_mode}") from None


@dataclass(frozen=True)
class PaymentReceipt:
    """Verified payment attached to the request for the route handler."""
    tx_hash: str
    payer: str
    amount: str
    currency: str


RouteSpec = Union[str, Tuple[str, str]]


def parse_routes(routes: Iterable[RouteSpec]) -> Set[Tuple[str, str]]:
    """Normalize "METHOD /path" strings or (method, path) pairs."""
    parsed = set()
    for route in routes:
        if isinstance(route, str):
            parsed.add(split_route(route))
        else:
            method, path = route
            parsed.add((method.upper(), canonicalize_path(path)))
    return parsed


def get_client_ip(request: Request) -> str:
    """Extract client IP from request, handling proxies."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    if request.client:
        return request.client.host

    return "unknown"


def create_402_response(challenge: PaymentChallenge) -> JSONResponse:
    """402 carrying the challenge in both headers and body."""
    headers = challenge.to_headers()
    headers["Access-Control-Expose-Headers"] = ", ".join(EXPOSED_CHALLENGE_HEADERS)
    return JSONResponse(status_code=402, content=challenge.to_body(), headers=headers)


def create_denial_response(reason: ErrorCode, message: str, **details) -> JSONResponse:
    content = {
        "error": ErrorCode.PAYMENT_VERIFICATION_FAILED.value,
        "reason": reason.value,
        "message": message,
    }
    content.update(details)
    return JSONResponse(status_code=402, content=content)


class X402Middleware(BaseHTTPMiddleware):
    """
    x402 payment gate for a set of merchant routes.

    Requests to other routes pass through untouched. Collaborators default
    to HTTP clients built from the config; tests inject fakes.
    """

    def __init__(
        self,
        app,
        config: MiddlewareConfig,
        routes: List[RouteSpec],
        price_client: Optional[PriceClient] = None,
        facilitator_client: Optional[FacilitatorClient] = None,
        price_cache: Optional[TTLCache] = None
    ):
        super().__init__(app)
        if not routes:
            raise ConfigurationError("x402 middleware needs at least one protected route")
        self.config = config
        self.routes = parse_routes(routes)
        self.price_client = price_client or PriceClient(
            config.gateway_url, config.merchant_id, retry=config.retry, timeout=config.timeout
        )
        self.facilitator_client = facilitator_client or FacilitatorClient(
            config.facilitator_url, config.merchant_id, retry=config.retry, timeout=config.timeout
        )
        self.price_cache = price_cache if price_cache is not None else TTLCache(ttl_seconds=config.cache_ttl)

    def is_protected(self, method: str, path: str) -> bool:
        return (method, path) in self.routes

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Response]
    ) -> Response:
        method = request.method.upper()
        path = canonicalize_path(request.url.path)
        if not self.is_protected(method, path):
            return await call_next(request)

        route = canonical_route(method, path)
        client_ip = get_client_ip(request)

        try:
            outcome = await self._check_payment(request, method, path, client_ip)
        except Exception as e:
            return await self._apply_failure_mode(request, call_next, route, client_ip, e)

        if isinstance(outcome, Response):
            return outcome

        request.state.payment = outcome
        return await call_next(request)

    async def _check_payment(
        self,
        request: Request,
        method: str,
        path: str,
        client_ip: str
    ) -> Union[Response, PaymentReceipt]:
        route = canonical_route(method, path)

        try:
            quote = await run_in_threadpool(self.get_quote, method, path)
        except PriceLookupError as e:
            logger.warning(f"x402: no challenge for {route}: {e.code.value}")
            return JSONResponse(status_code=e.status_code, content=e.to_dict())

        proof = request.headers.get(HEADER_PAYMENT_PROOF)
        if not proof:
            return self._issue_challenge(quote, route, client_ip)

        nonce = request.headers.get(HEADER_NONCE)
        if not nonce:
            logger.warning(f"x402: proof without nonce from {client_ip} for {route}")
            return create_denial_response(ErrorCode.VALIDATION_FAILED, "x-nonce header is required with a payment proof")

        claimed_route = request.headers.get(HEADER_ROUTE)
        if claimed_route and _safe_route(claimed_route) != (method, path):
            logger.warning(f"x402: proof for {claimed_route} replayed against {route} from {client_ip}")
            return create_denial_response(ErrorCode.VALIDATION_FAILED, f"Proof was issued for {claimed_route}, not {route}")

        advisory_payer = request.headers.get(HEADER_PAYMENT_PAYER)
        if advisory_payer:
            logger.debug(f"x402: client claims payer {advisory_payer} (ignored)")

        result = await run_in_threadpool(
            self.facilitator_client.verify,
            proof,
            nonce,
            quote.price,
            quote.currency.value,
            path,
            method,
        )

        if not result.verified:
            reason = result.error or ErrorCode.PAYMENT_VERIFICATION_FAILED
            logger.warning(f"x402: payment {proof} for {route} denied: {reason.value}")
            details = dict(result.details)
            if result.confirmations is not None:
                details["confirmations"] = result.confirmations
            return create_denial_response(
                reason,
                result.message or "Payment verification failed",
                **details
            )

        logger.info(f"x402: payment verified for {route}: {result.tx_hash} from {result.payer}")
        return PaymentReceipt(
            tx_hash=result.tx_hash,
            payer=result.payer,
            amount=result.amount or quote.price,
            currency=result.currency or quote.currency.value,
        )

    def get_quote(self, method: str, path: str) -> PriceQuote:
        """Price for a route, served from the cache while fresh."""
        key = (self.config.merchant_id, method, path)
        quote = self.price_cache.get(key)
        if quote is None:
            quote = self.price_client.get_quote(method, path)
            self.price_cache.put(key, quote)
        return quote

    def _issue_challenge(self, quote: PriceQuote, route: str, client_ip: str) -> JSONResponse:
        challenge = PaymentChallenge(
            amount=quote.price,
            currency=quote.currency,
            pay_to=quote.pay_to,
            merchant_id=self.config.merchant_id,
            facilitator_url=self.config.facilitator_url,
            chain_id=chain_id_for_network(quote.network or self.config.network),
            route=route,
            nonce=mint_nonce(),
            expires_at=int(time.time()) + self.config.challenge_ttl,
            network=quote.network or self.config.network,
            description=quote.description,
        )
        logger.info(f"x402: 402 for {route} from {client_ip}: {challenge.amount} {challenge.currency.value}")
        audit.log_challenge_issued(
            client_ip=client_ip,
            merchant_id=challenge.merchant_id,
            route=route,
            nonce=challenge.nonce,
            amount=challenge.amount,
            currency=challenge.currency.value,
        )
        return create_402_response(challenge)

    async def _apply_failure_mode(
        self,
        request: Request,
        call_next: Callable[[Request], Response],
        route: str,
        client_ip: str,
        error: Exception
    ) -> Response:
        audit.log_verification_fault(
            stage="middleware",
            error_message=str(error),
            merchant_id=self.config.merchant_id,
            route=route,
            client_ip=client_ip,
        )

        if self.config.fail_mode == FailureMode.OPEN:
            logger.critical(
                f"x402: FAIL-OPEN admitting unpaid request to {route} from {client_ip}: {error}"
            )
            audit.log_fail_open_admitted(
                merchant_id=self.config.merchant_id,
                route=route,
                error_message=str(error),
                client_ip=client_ip,
            )
            request.state.payment = None
            return await call_next(request)

        logger.error(f"x402: payment infrastructure error for {route}, denying: {error}")
        return JSONResponse(
            status_code=502,
            content={
                "error": ErrorCode.PAYMENT_GATEWAY_ERROR.value,
                "message": "Payment verification is temporarily unavailable",
            },
        )


def _safe_route(route: str) -> Optional[Tuple[str, str]]:
    try:
        return split_route(route)
    except ValueError:
        return None
