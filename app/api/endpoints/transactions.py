# app/api/endpoints/transactions.py
from fastapi import APIRouter, Depends, HTTPException, Path, Query
import logging

from app.api.dependencies import get_store
from app.api.models.payment import TransactionItem, TransactionListResponse
from app.x402.errors import ErrorCode, ProtocolDenial
from app.x402.store import Store

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/{merchant_id}", response_model=TransactionListResponse)
def list_transactions(
    merchant_id: str = Path(..., description="Merchant identifier"),
    page: int = Query(1, ge=1, description="Page number, starting at 1"),
    limit: int = Query(10, ge=1, le=100, description="Records per page"),
    store: Store = Depends(get_store)
) -> TransactionListResponse:
    """
    List a merchant's verified payments, newest first, for reconciliation.

    Raises:
        X402Error: 404 MERCHANT_NOT_FOUND if the merchant is unknown
        HTTPException: 500 if the ledger cannot be read
    """
    if store.get_merchant(merchant_id) is None:
        raise ProtocolDenial(ErrorCode.MERCHANT_NOT_FOUND, f"Merchant {merchant_id} not found", status_code=404)

    try:
        total = store.count_transactions(merchant_id)
        records = store.list_transactions(merchant_id, offset=(page - 1) * limit, limit=limit)
    except Exception as e:
        logger.error(f"Failed to read transactions for {merchant_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to read transaction ledger")

    return TransactionListResponse(
        merchantId=merchant_id,
        page=page,
        limit=limit,
        total=total,
        transactions=[
            TransactionItem(
                txHash=record.tx_hash,
                merchantId=record.merchant_id,
                payer=record.payer,
                amount=record.amount,
                currency=record.currency,
                path=record.path,
                method=record.method,
                createdAt=record.created_at.isoformat(),
            )
            for record in records
        ],
    )
