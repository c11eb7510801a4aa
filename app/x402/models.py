# app/x402/models.py
"""
Domain records owned by the gateway's store: merchants with their route
tables, verified transactions and per-merchant counters.
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.x402.challenge import Currency, NETWORKS, canonicalize_path, parse_amount

HttpMethod = Literal["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]
Network = Literal["cronos-mainnet", "cronos-testnet"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MerchantRoute(BaseModel):
    """A monetized route in a merchant's authoritative route table."""
    model_config = ConfigDict(populate_by_name=True)

    method: HttpMethod
    path: str
    price: str
    currency: Currency
    description: Optional[str] = None
    active: bool = True

    @field_validator("method", mode="before")
    @classmethod
    def _upper_method(cls, value: str) -> str:
        return value.upper() if isinstance(value, str) else value

    @field_validator("path")
    @classmethod
    def _canonical_path(cls, value: str) -> str:
        return canonicalize_path(value)

    @field_validator("price", mode="before")
    @classmethod
    def _valid_price(cls, value) -> str:
        if parse_amount(value) <= 0:
            raise ValueError("price must be positive")
        return str(value)


class Merchant(BaseModel):
    """A merchant and its monetized API routes."""
    model_config = ConfigDict(populate_by_name=True)

    merchant_id: str = Field(..., alias="merchantId")
    name: str
    wallet_address: str = Field(..., alias="walletAddress")
    network: Network = "cronos-testnet"
    routes: List[MerchantRoute] = Field(default_factory=list)
    active: bool = True
    suspended: bool = False

    @field_validator("wallet_address")
    @classmethod
    def _lower_address(cls, value: str) -> str:
        return value.lower()

    @property
    def chain_id(self) -> int:
        return NETWORKS[self.network]

    @property
    def is_serving(self) -> bool:
        return self.active and not self.suspended

    def find_route(self, method: str, path: str) -> Optional[MerchantRoute]:
        """Find the registered route for (method, path), active or not."""
        method = method.upper()
        path = canonicalize_path(path)
        for route in self.routes:
            if route.method == method and route.path == path:
                return route
        return None


class TransactionRecord(BaseModel):
    """Ledger entry for one verified payment. Written once, never updated."""
    model_config = ConfigDict(populate_by_name=True)

    tx_hash: str = Field(..., alias="txHash")
    merchant_id: str = Field(..., alias="merchantId")
    payer: str
    amount: str
    currency: Currency
    path: str
    method: str
    created_at: datetime = Field(default_factory=_utcnow, alias="createdAt")

    @field_validator("tx_hash", "payer")
    @classmethod
    def _lower(cls, value: str) -> str:
        return value.lower()


class MerchantStats(BaseModel):
    """Revenue and request counters for a merchant."""
    model_config = ConfigDict(populate_by_name=True)

    merchant_id: str = Field(..., alias="merchantId")
    total_revenue: Dict[str, Decimal] = Field(default_factory=dict, alias="totalRevenue")
    total_requests: int = Field(0, alias="totalRequests")
    last_active: Optional[datetime] = Field(None, alias="lastActive")
