# app/x402/challenge.py
"""
x402 payment challenge model and codec.

A challenge is issued by the merchant middleware with HTTP 402 and consumed
by the agent. It travels in two transports at once:
- Response headers (X-Payment-*, X-Nonce, X-Route...)
- A JSON body with a `paymentRequest` object, for clients that cannot read
  custom headers

This module also owns the helpers every party must agree on byte-for-byte:
path canonicalization, the replay key derivation and asset unit conversion.
"""
import hashlib
import re
import secrets
import time
from decimal import Decimal, InvalidOperation, localcontext
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from app.x402.errors import ChallengeParseError, UnsupportedCurrencyError


class Currency(str, Enum):
    """Assets accepted for x402 payments."""
    USDC = "USDC"  # stable-asset, ERC-20 transfer
    CRO = "CRO"    # native gas asset, plain value transfer


# Smallest unit precision per asset
ASSET_DECIMALS = {
    Currency.USDC: 6,
    Currency.CRO: 18,
}

NETWORKS = {
    "cronos-mainnet": 25,
    "cronos-testnet": 338,
}

# Confirmations required before a payment counts as final
DEFAULT_CONFIRMATIONS = {
    25: 6,
    338: 1,
}

# Payment challenge headers
HEADER_PAYMENT_REQUIRED = "X-Payment-Required"
HEADER_AMOUNT = "X-Payment-Amount"
HEADER_CURRENCY = "X-Payment-Currency"
HEADER_NETWORK = "X-Payment-Network"
HEADER_PAY_TO = "X-Payment-PayTo"
HEADER_MERCHANT_ID = "X-Merchant-ID"
HEADER_FACILITATOR_URL = "X-Facilitator-URL"
HEADER_DESCRIPTION = "X-Payment-Description"
HEADER_NONCE = "X-Nonce"
HEADER_CHAIN_ID = "X-Chain-ID"
HEADER_ROUTE = "X-Route"
HEADER_EXPIRES = "X-Payment-Expires"

# Retry request headers (agent -> middleware)
HEADER_PAYMENT_PROOF = "x-payment-proof"
HEADER_PAYMENT_PAYER = "x-payment-payer"

EXPOSED_CHALLENGE_HEADERS = [
    HEADER_PAYMENT_REQUIRED,
    HEADER_AMOUNT,
    HEADER_CURRENCY,
    HEADER_NETWORK,
    HEADER_PAY_TO,
    HEADER_MERCHANT_ID,
    HEADER_FACILITATOR_URL,
    HEADER_DESCRIPTION,
    HEADER_NONCE,
    HEADER_CHAIN_ID,
    HEADER_ROUTE,
    HEADER_EXPIRES,
]

_MULTI_SLASH = re.compile(r"/{2,}")


def canonicalize_path(path: str) -> str:
    """
    Canonicalize a request path.

    This is the only path normalizer in the system. The middleware, the
    price lookup and the facilitator all key on its output, so a route
    registered as "/premium" matches "/premium/", "premium" and
    "/premium?x=1" everywhere.

    Args:
        path: Raw request path, possibly with query string

    Returns:
        Path with a single leading slash and no trailing slash ("/" for root)
    """
    path = (path or "").split("?", 1)[0].split("#", 1)[0].strip()
    path = _MULTI_SLASH.sub("/", "/" + path)
    if len(path) > 1:
        path = path.rstrip("/") or "/"
    return path


def canonical_route(method: str, path: str) -> str:
    """Build the canonical "METHOD /path" route string."""
    return f"{method.upper()} {canonicalize_path(path)}"


def split_route(route: str) -> Tuple[str, str]:
    """Split a "METHOD /path" route into its canonical parts."""
    method, _, path = route.strip().partition(" ")
    if not method or not path:
        raise ValueError(f"Malformed route: {route!r}")
    return method.upper(), canonicalize_path(path)


def mint_nonce() -> str:
    """Mint a fresh, unguessable challenge nonce."""
    return secrets.token_hex(16)


def replay_key(merchant_id: str, method: str, path: str, nonce: str) -> str:
    """
    Derive the replay key for one challenge.

    The key binds a nonce to a merchant route: sha256(merchant:METHOD:/path:nonce).
    """
    material = f"{merchant_id}:{method.upper()}:{canonicalize_path(path)}:{nonce}"
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


def chain_id_for_network(network: str) -> int:
    """Map a network name to its chain id."""
    try:
        return NETWORKS[network]
    except KeyError:
        raise ValueError(f"Unknown network: {network}") from None


def parse_amount(amount: Any) -> Decimal:
    """Parse a decimal amount string; floats are refused."""
    if isinstance(amount, float):
        raise ValueError("Amounts must be decimal strings, not floats")
    try:
        value = Decimal(str(amount).strip())
    except (InvalidOperation, TypeError):
        raise ValueError(f"Invalid amount: {amount!r}") from None
    if not value.is_finite():
        raise ValueError(f"Invalid amount: {amount!r}")
    return value


def to_base_units(amount: Any, currency: Currency) -> int:
    """
    Convert a decimal amount to the asset's smallest unit.

    Args:
        amount: Decimal string (e.g. "1.5")
        currency: Asset, determines precision (USDC 6, CRO 18)

    Returns:
        Integer amount in smallest units

    Raises:
        ValueError: If the amount is not positive or has more precision
            than the asset supports
    """
    value = parse_amount(amount)
    if value <= 0:
        raise ValueError(f"Amount must be positive: {amount}")
    decimals = ASSET_DECIMALS[Currency(currency)]
    with localcontext() as ctx:
        ctx.prec = _exact_precision(value, decimals)
        scaled = value.scaleb(decimals)
        if scaled != scaled.to_integral_value():
            raise ValueError(f"Amount {amount} exceeds {decimals} decimals for {currency}")
        return int(scaled)


def from_base_units(units: int, currency: Currency) -> Decimal:
    """Convert smallest units back to a decimal amount."""
    decimals = ASSET_DECIMALS[Currency(currency)]
    units = Decimal(units)
    with localcontext() as ctx:
        ctx.prec = _exact_precision(units, decimals)
        value = units.scaleb(-decimals).normalize()
        return value.quantize(Decimal(1)) if value == value.to_integral_value() else value


def _exact_precision(value: Decimal, decimals: int) -> int:
    # Room for every digit of the value plus the shift, so nothing rounds
    _, digits, exponent = value.as_tuple()
    return max(28, len(digits) + abs(exponent) + decimals)


class PaymentChallenge(BaseModel):
    """
    A payment requirement issued with HTTP 402.

    Amount, currency, payee, merchant, chain, route and nonce are required;
    parsers never fill in defaults for them. The nonce is minted by the
    issuing server only. The facilitator URL is optional on the body
    transport, and a challenge without one is refused by the wallet policy.
    """
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    amount: str
    currency: Currency
    pay_to: str = Field(..., alias="payTo")
    merchant_id: str = Field(..., alias="merchantId")
    facilitator_url: Optional[str] = Field(None, alias="facilitatorUrl")
    chain_id: int = Field(..., alias="chainId")
    route: str
    nonce: str
    expires_at: Optional[int] = Field(None, alias="expiresAt")
    network: Optional[str] = None
    description: Optional[str] = None

    @field_validator("amount", mode="before")
    @classmethod
    def _validate_amount(cls, value: Any) -> str:
        if value is None or value == "":
            raise ValueError("amount is required")
        if parse_amount(value) <= 0:
            raise ValueError("amount must be positive")
        return str(value)

    @field_validator("pay_to", "merchant_id", "route", "nonce")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("must not be empty")
        return value.strip()

    @field_validator("facilitator_url")
    @classmethod
    def _blank_is_none(cls, value: Optional[str]) -> Optional[str]:
        return (value.strip() or None) if value is not None else None

    @property
    def amount_decimal(self) -> Decimal:
        return parse_amount(self.amount)

    @property
    def amount_units(self) -> int:
        return to_base_units(self.amount, self.currency)

    @property
    def payment_key(self) -> str:
        """Agent-side uniqueness key: merchant + route + nonce."""
        return f"{self.merchant_id}:{self.route}:{self.nonce}"

    def is_expired(self, now: Optional[float] = None) -> bool:
        """Challenges without an expiry never expire client-side."""
        if self.expires_at is None:
            return False
        return (now if now is not None else time.time()) >= self.expires_at

    def to_headers(self) -> Dict[str, str]:
        """Encode the challenge as 402 response headers."""
        headers = {
            HEADER_PAYMENT_REQUIRED: "true",
            HEADER_AMOUNT: self.amount,
            HEADER_CURRENCY: self.currency.value,
            HEADER_PAY_TO: self.pay_to,
            HEADER_MERCHANT_ID: self.merchant_id,
            HEADER_NONCE: self.nonce,
            HEADER_CHAIN_ID: str(self.chain_id),
            HEADER_ROUTE: self.route,
        }
        if self.facilitator_url:
            headers[HEADER_FACILITATOR_URL] = self.facilitator_url
        if self.expires_at is not None:
            headers[HEADER_EXPIRES] = str(self.expires_at)
        if self.network:
            headers[HEADER_NETWORK] = self.network
        if self.description:
            headers[HEADER_DESCRIPTION] = self.description
        return headers

    def to_body(self, message: str = "Payment required to access this resource") -> Dict[str, Any]:
        """Encode the challenge as the 402 JSON body (fallback transport)."""
        return {
            "error": "PAYMENT_REQUIRED",
            "message": message,
            "paymentRequest": self.model_dump(by_alias=True, mode="json", exclude_none=True),
        }

    @classmethod
    def from_headers(cls, headers: Mapping[str, str]) -> "PaymentChallenge":
        """
        Parse a challenge from 402 response headers.

        Header lookup is case-insensitive. Raises ChallengeParseError if any
        required header is missing or malformed.
        """
        lowered = {str(k).lower(): v for k, v in headers.items()}

        def get(name: str) -> Optional[str]:
            value = lowered.get(name.lower())
            return value.strip() if isinstance(value, str) and value.strip() else None

        required = {
            "amount": HEADER_AMOUNT,
            "currency": HEADER_CURRENCY,
            "payTo": HEADER_PAY_TO,
            "merchantId": HEADER_MERCHANT_ID,
            "chainId": HEADER_CHAIN_ID,
            "route": HEADER_ROUTE,
            "nonce": HEADER_NONCE,
        }
        missing = [header for header in required.values() if get(header) is None]
        if missing:
            raise ChallengeParseError(f"Malformed x402 payment headers, missing: {', '.join(missing)}")

        data = {field: get(header) for field, header in required.items()}
        data["facilitatorUrl"] = get(HEADER_FACILITATOR_URL)
        data["expiresAt"] = get(HEADER_EXPIRES)
        data["network"] = get(HEADER_NETWORK)
        data["description"] = get(HEADER_DESCRIPTION)
        return cls._validate(data, source="headers")

    @classmethod
    def from_body(cls, body: Any) -> "PaymentChallenge":
        """
        Parse a challenge from a 402 JSON body.

        The nonce must come from the server. A body without one is rejected
        rather than given a client-side value.
        """
        request = body.get("paymentRequest") if isinstance(body, dict) else None
        if not isinstance(request, dict):
            raise ChallengeParseError("Missing 'paymentRequest' in response body")
        if not request.get("nonce"):
            raise ChallengeParseError("Server did not provide a nonce in 'paymentRequest'")
        return cls._validate(request, source="body")

    @classmethod
    def _validate(cls, data: Dict[str, Any], source: str) -> "PaymentChallenge":
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            errors = e.errors()
            if len(errors) == 1 and errors[0]["loc"] == ("currency",) and errors[0]["type"] == "enum":
                raise UnsupportedCurrencyError(data.get("currency")) from e
            fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in errors)
            raise ChallengeParseError(f"Incomplete x402 challenge in {source}: {fields}") from e
