# app/x402/facilitator.py
"""
Facilitator payment verification.

`PaymentVerifier` is the authority that decides whether a proof (a chain
transaction hash) pays for one challenge. Checks run in a fixed order and
the first failure wins:

1. Replay key claim (atomic unique insert)        -> REPLAY_DETECTED
2. Global tx hash reuse                           -> TX_REUSED
3. Merchant and route validation                  -> MERCHANT_*/ROUTE_*
4. Receipt lookup and chain id                    -> TX_NOT_FOUND_OR_FAILED / WRONG_NETWORK
5. Asset-specific payment matching                -> PAYMENT_VERIFICATION_FAILED
6. Confirmation threshold                         -> AWAITING_CONFIRMATIONS
7. Ledger insert and revenue counters

The payer always comes from chain data. AWAITING_CONFIRMATIONS and faults
are not final: the replay key bound to this proof is released so the same
(nonce, proof) pair can be retried. Every other denial keeps the nonce
consumed.

`FacilitatorClient` is the middleware's side of the verify call.
"""
import logging
import re
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

import requests

from app.core.config import settings
from app.x402 import audit
from app.x402.chain import ChainClient, decode_transfer_logs, hex_to_int
from app.x402.challenge import (
    DEFAULT_CONFIRMATIONS,
    NETWORKS,
    Currency,
    canonical_route,
    canonicalize_path,
    from_base_units,
    parse_amount,
    replay_key,
    to_base_units,
)
from app.x402.errors import DuplicateKeyError, ErrorCode, FacilitatorUnavailable, ProtocolDenial
from app.x402.models import TransactionRecord
from app.x402.pricing import lookup_route_price
from app.x402.retry import RetryPolicy
from app.x402.store import DEFAULT_REPLAY_TTL_SECONDS, Store

logger = logging.getLogger(__name__)

VERIFY_PATH = "/api/facilitator/verify"
TX_HASH_PATTERN = re.compile(r"^0x[0-9a-fA-F]{64}$")


def default_token_addresses() -> Dict[int, str]:
    """Stable-asset token contract per chain id, from settings."""
    return {
        NETWORKS["cronos-mainnet"]: settings.X402_USDC_ADDRESS_MAINNET.lower(),
        NETWORKS["cronos-testnet"]: settings.X402_USDC_ADDRESS_TESTNET.lower(),
    }


@dataclass
class VerificationResult:
    """Outcome of one verify call, on either side of the wire."""
    verified: bool
    status_code: int = 200
    tx_hash: Optional[str] = None
    payer: Optional[str] = None
    confirmations: Optional[int] = None
    amount: Optional[str] = None
    currency: Optional[str] = None
    network: Optional[str] = None
    error: Optional[ErrorCode] = None
    message: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def denial(cls, code: ErrorCode, message: str, status_code: int = 402, **details) -> "VerificationResult":
        return cls(verified=False, status_code=status_code, error=code, message=message, details=details)

    @property
    def is_final(self) -> bool:
        return self.verified or self.error not in (
            ErrorCode.AWAITING_CONFIRMATIONS,
            ErrorCode.FACILITATOR_FAULT,
        )

    def to_response(self) -> Dict[str, Any]:
        """Wire body of the verify endpoint (camelCase, None fields dropped)."""
        body = {
            "verified": self.verified,
            "txHash": self.tx_hash,
            "payer": self.payer,
            "confirmations": self.confirmations,
            "amount": self.amount,
            "currency": self.currency,
            "network": self.network,
            "error": self.error.value if self.error else None,
            "message": self.message,
        }
        body = {k: v for k, v in body.items() if v is not None}
        body.update(self.details)
        return body

    @classmethod
    def from_response(cls, status_code: int, body: Mapping[str, Any]) -> "VerificationResult":
        known = {"verified", "txHash", "payer", "confirmations", "amount", "currency", "network", "error", "message"}
        error = body.get("error")
        if error is not None:
            try:
                error = ErrorCode(error)
            except ValueError:
                error = ErrorCode.PAYMENT_VERIFICATION_FAILED
        return cls(
            verified=body.get("verified") is True,
            status_code=status_code,
            tx_hash=body.get("txHash"),
            payer=body.get("payer"),
            confirmations=body.get("confirmations"),
            amount=body.get("amount"),
            currency=body.get("currency"),
            network=body.get("network"),
            error=error,
            message=body.get("message"),
            details={k: v for k, v in body.items() if k not in known},
        )


class PaymentVerifier:
    """
    Authoritative on-chain payment verification.

    Args:
        store: Replay keys, ledger, merchants and counters
        chain: JSON-RPC client for the merchant's chain
        confirmations_required: Override; None uses the per-network default
        replay_ttl_seconds: Lifetime of a consumed replay key
        token_addresses: Stable-asset contract per chain id
    """

    def __init__(
        self,
        store: Store,
        chain: ChainClient,
        confirmations_required: Optional[int] = None,
        replay_ttl_seconds: int = DEFAULT_REPLAY_TTL_SECONDS,
        token_addresses: Optional[Dict[int, str]] = None
    ):
        self.store = store
        self.chain = chain
        self.confirmations_required = confirmations_required
        self.replay_ttl_seconds = replay_ttl_seconds
        self.token_addresses = {
            chain_id: address.lower()
            for chain_id, address in (token_addresses or default_token_addresses()).items()
        }

    def required_confirmations(self, chain_id: int) -> int:
        if self.confirmations_required is not None:
            return self.confirmations_required
        return DEFAULT_CONFIRMATIONS.get(chain_id, 1)

    def verify(
        self,
        proof: str,
        nonce: str,
        merchant_id: str,
        expected_amount: str,
        currency: str,
        path: str,
        method: str
    ) -> VerificationResult:
        """
        Verify that `proof` pays for the challenge identified by `nonce`.

        Never raises: faults come back as a FACILITATOR_FAULT result.
        """
        method = method.upper()
        path = canonicalize_path(path)
        route = canonical_route(method, path)

        if not proof or not TX_HASH_PATTERN.match(proof):
            return VerificationResult.denial(
                ErrorCode.VALIDATION_FAILED, "paymentProof must be a 32-byte hex hash", status_code=400
            )
        if not nonce:
            return VerificationResult.denial(ErrorCode.VALIDATION_FAILED, "x-nonce is required", status_code=400)
        try:
            asset = Currency(currency)
            expected = parse_amount(expected_amount)
            to_base_units(expected, asset)
        except ValueError as e:
            return VerificationResult.denial(ErrorCode.VALIDATION_FAILED, str(e), status_code=400)

        proof = proof.lower()
        key = replay_key(merchant_id, method, path, nonce)

        try:
            self.store.insert_replay_key(key, proof, self.replay_ttl_seconds)
        except DuplicateKeyError:
            result = VerificationResult.denial(
                ErrorCode.REPLAY_DETECTED, f"Nonce already used for {route}"
            )
            self._audit(merchant_id, route, proof, result)
            return result
        except Exception as e:
            logger.error(f"facilitator: replay key store failed for {route}: {e}")
            return self._fault(merchant_id, route, str(e))

        try:
            result = self._verify_claimed(proof, merchant_id, expected, asset, path, method)
        except Exception as e:
            logger.error(f"facilitator: verification of {proof} failed: {e}")
            self._release(key, proof)
            return self._fault(merchant_id, route, str(e))

        if not result.is_final:
            self._release(key, proof)
        self._audit(merchant_id, route, proof, result)
        return result

    def _verify_claimed(
        self,
        proof: str,
        merchant_id: str,
        expected: Decimal,
        asset: Currency,
        path: str,
        method: str
    ) -> VerificationResult:
        if self.store.transaction_exists(proof):
            return VerificationResult.denial(ErrorCode.TX_REUSED, "Transaction already used for another payment")

        try:
            merchant, route = lookup_route_price(self.store, merchant_id, method, path)
        except ProtocolDenial as e:
            return VerificationResult.denial(e.code, e.message, status_code=e.status_code)

        if route.currency != asset:
            return VerificationResult.denial(
                ErrorCode.PAYMENT_VERIFICATION_FAILED,
                f"Route is priced in {route.currency.value}, not {asset.value}"
            )
        required_units = to_base_units(max(expected, parse_amount(route.price)), asset)

        receipt = self.chain.get_transaction_receipt(proof)
        if not receipt or hex_to_int(receipt.get("status")) != 1:
            return VerificationResult.denial(
                ErrorCode.TX_NOT_FOUND_OR_FAILED, "Transaction not found or reverted"
            )
        tx = self.chain.get_transaction(proof)
        if not tx:
            return VerificationResult.denial(
                ErrorCode.TX_NOT_FOUND_OR_FAILED, "Transaction not found"
            )

        chain_id = hex_to_int(tx.get("chainId"))
        if chain_id is None:
            chain_id = self.chain.get_chain_id()
        if chain_id != merchant.chain_id:
            return VerificationResult.denial(
                ErrorCode.WRONG_NETWORK,
                f"Transaction is on chain {chain_id}, merchant expects {merchant.chain_id}"
            )

        payer = (receipt.get("from") or tx.get("from") or "").lower()
        if asset == Currency.USDC:
            paid_units = self._match_token_transfer(receipt, payer, merchant.wallet_address, merchant.chain_id)
        else:
            paid_units = self._match_native_transfer(tx, merchant.wallet_address)

        if paid_units is None or paid_units < required_units:
            return VerificationResult.denial(
                ErrorCode.PAYMENT_VERIFICATION_FAILED,
                f"No {asset.value} transfer of at least {from_base_units(required_units, asset)} "
                f"to {merchant.wallet_address} found in transaction"
            )

        block_number = hex_to_int(receipt.get("blockNumber"))
        confirmations = self.chain.get_block_number() - block_number
        required = self.required_confirmations(merchant.chain_id)
        if confirmations < required:
            return VerificationResult.denial(
                ErrorCode.AWAITING_CONFIRMATIONS,
                f"Transaction has {confirmations} of {required} required confirmations",
                confirmations=confirmations,
                requiredConfirmations=required,
            )

        amount = str(from_base_units(paid_units, asset))
        record = TransactionRecord(
            tx_hash=proof,
            merchant_id=merchant_id,
            payer=payer,
            amount=amount,
            currency=asset,
            path=path,
            method=method,
        )
        try:
            self.store.record_payment(record)
        except DuplicateKeyError:
            return VerificationResult.denial(ErrorCode.TX_REUSED, "Transaction already used for another payment")

        logger.info(
            f"facilitator: verified {proof} for {merchant_id} {method} {path}: "
            f"{amount} {asset.value} from {payer} ({confirmations} confirmations)"
        )
        return VerificationResult(
            verified=True,
            tx_hash=proof,
            payer=payer,
            confirmations=confirmations,
            amount=amount,
            currency=asset.value,
            network=merchant.network,
        )

    def _match_token_transfer(
        self,
        receipt: Dict[str, Any],
        payer: str,
        recipient: str,
        chain_id: int
    ) -> Optional[int]:
        """Largest matching Transfer value on the configured token, or None."""
        token = self.token_addresses.get(chain_id)
        if not token:
            logger.error(f"facilitator: no stable-asset token configured for chain {chain_id}")
            return None
        values = [
            transfer.value
            for transfer in decode_transfer_logs(receipt.get("logs"))
            if transfer.token == token and transfer.sender == payer and transfer.recipient == recipient
        ]
        return max(values) if values else None

    @staticmethod
    def _match_native_transfer(tx: Dict[str, Any], recipient: str) -> Optional[int]:
        if (tx.get("to") or "").lower() != recipient:
            return None
        return hex_to_int(tx.get("value")) or 0

    def _release(self, key: str, proof: str) -> None:
        try:
            self.store.release_replay_key(key, proof)
        except Exception as e:
            logger.error(f"facilitator: failed to release replay key for {proof}: {e}")

    def _fault(self, merchant_id: str, route: str, error_message: str) -> VerificationResult:
        audit.log_verification_fault(
            stage="facilitator",
            error_message=error_message,
            merchant_id=merchant_id,
            route=route,
        )
        return VerificationResult.denial(
            ErrorCode.FACILITATOR_FAULT, "Payment verification failed unexpectedly", status_code=500
        )

    @staticmethod
    def _audit(merchant_id: str, route: str, proof: str, result: VerificationResult) -> None:
        if result.verified:
            audit.log_payment_verified(
                merchant_id=merchant_id,
                route=route,
                tx_hash=proof,
                payer=result.payer,
                amount=result.amount,
                currency=result.currency,
                confirmations=result.confirmations,
            )
        else:
            logger.warning(f"facilitator: denied {proof} for {merchant_id} {route}: {result.error.value}")
            audit.log_payment_denied(
                merchant_id=merchant_id,
                route=route,
                reason=result.error.value,
                message=result.message,
                tx_hash=proof,
            )


class FacilitatorClient:
    """
    HTTP client for the facilitator's verify endpoint.

    2xx and 4xx responses are answers and come back as a
    VerificationResult; transport errors and 5xx are retried and finally
    raise FacilitatorUnavailable.
    """

    def __init__(
        self,
        facilitator_url: str,
        merchant_id: str,
        retry: Optional[RetryPolicy] = None,
        timeout: float = 15.0,
        session=None
    ):
        self.url = facilitator_url.rstrip("/") + VERIFY_PATH
        self.merchant_id = merchant_id
        self.retry = retry or RetryPolicy()
        self.timeout = timeout
        self._session = session or requests.Session()

    def _post(self, payload: Dict[str, Any], nonce: str):
        response = self._session.post(
            self.url,
            json=payload,
            headers={"x-nonce": nonce, "x-merchant-id": self.merchant_id},
            timeout=self.timeout,
        )
        if response.status_code >= 500:
            raise requests.HTTPError(
                f"Facilitator returned {response.status_code}", response=response
            )
        return response

    def verify(
        self,
        proof: str,
        nonce: str,
        expected_amount: str,
        currency: str,
        path: str,
        method: str
    ) -> VerificationResult:
        payload = {
            "paymentProof": proof,
            "expectedAmount": expected_amount,
            "currency": currency,
            "path": canonicalize_path(path),
            "method": method.upper(),
        }
        try:
            response = self.retry.call(
                lambda: self._post(payload, nonce),
                retry_on=(requests.RequestException,),
                description=f"x402: verify {proof}",
            )
            body = response.json()
        except (requests.RequestException, ValueError) as e:
            raise FacilitatorUnavailable(f"Facilitator unavailable: {e}") from e

        if not isinstance(body, dict):
            raise FacilitatorUnavailable(f"Facilitator returned unexpected body: {body!r}")
        return VerificationResult.from_response(response.status_code, body)
