# app/api/models/payment.py
from pydantic import BaseModel, Field, field_validator
from typing import Optional, List, Literal

from app.x402.challenge import Currency, parse_amount

HttpMethod = Literal["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


class PriceCheckRequest(BaseModel):
    """
    Request body for a route price lookup.
    """
    merchantId: str = Field(..., min_length=1, description="Merchant whose route table is queried")
    method: HttpMethod = Field(..., description="HTTP method of the protected route")
    path: str = Field(..., min_length=1, description="Request path; canonicalized by the gateway")

    @field_validator("method", mode="before")
    @classmethod
    def upper_method(cls, v):
        return v.upper() if isinstance(v, str) else v


class PriceCheckResponse(BaseModel):
    """
    Price quote for one route.
    """
    merchantId: str
    price: str = Field(..., description="Decimal price string in asset units")
    currency: Currency
    payTo: str = Field(..., description="Merchant wallet address receiving payment")
    network: str
    description: Optional[str] = None
    version: Optional[str] = None

    class Config:
        json_schema_extra = {
            "example": {
                "merchantId": "merchant-1",
                "price": "1.0",
                "currency": "USDC",
                "payTo": "0x1111111111111111111111111111111111111111",
                "network": "cronos-testnet",
                "description": "Premium market data",
                "version": "1"
            }
        }


class VerifyRequest(BaseModel):
    """
    Body of a facilitator verify call. The nonce and merchant id travel in
    the x-nonce and x-merchant-id headers.
    """
    paymentProof: str = Field(
        ...,
        pattern=r"^0x[0-9a-fA-F]{64}$",
        description="Transaction hash proving payment (32 bytes, hex)"
    )
    expectedAmount: str = Field(..., description="Price the middleware quoted, decimal string")
    currency: Currency
    path: str = Field(..., min_length=1)
    method: HttpMethod

    @field_validator("method", mode="before")
    @classmethod
    def upper_method(cls, v):
        return v.upper() if isinstance(v, str) else v

    @field_validator("expectedAmount", mode="before")
    @classmethod
    def validate_amount(cls, v):
        if parse_amount(v) <= 0:
            raise ValueError("expectedAmount must be positive")
        return str(v)


class VerifyResponse(BaseModel):
    """
    Facilitator verdict. Denials carry `error` and `message`;
    AWAITING_CONFIRMATIONS also carries `confirmations` and `requiredConfirmations`.
    """
    verified: bool
    txHash: Optional[str] = None
    payer: Optional[str] = None
    confirmations: Optional[int] = None
    requiredConfirmations: Optional[int] = None
    amount: Optional[str] = None
    currency: Optional[str] = None
    network: Optional[str] = None
    error: Optional[str] = None
    message: Optional[str] = None


class TransactionItem(BaseModel):
    txHash: str
    merchantId: str
    payer: str
    amount: str
    currency: Currency
    path: str
    method: str
    createdAt: str


class TransactionListResponse(BaseModel):
    """
    One page of a merchant's verified payments, newest first.
    """
    merchantId: str
    page: int
    limit: int
    total: int
    transactions: List[TransactionItem]
