# app/agent/wallet.py
"""
Agent wallet policy engine.

The wallet decides whether a challenge may be paid and pays it at most
once. Policy checks run in a fixed order and the first failing one wins:

0. Emergency stop
1. Route spoofing (challenge route vs. the route actually requested)
2. Currency allow-list
3. Chain id
4. Trusted facilitator origin
5. Merchant allow-list (when non-empty)
6. Daily spend cap
7. Per-transaction cap

The paid-set kept here only protects the agent's own budget. The
facilitator's replay key is the guard that protects merchants; the two
are independent and neither replaces the other.
"""
import logging
import threading
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Mapping, Optional, Tuple
from urllib.parse import urlparse

from app.agent.executor import PaymentExecutor
from app.agent.state import MemoryStateStore, StateStore
from app.x402 import audit
from app.x402.challenge import NETWORKS, Currency, PaymentChallenge, canonicalize_path, parse_amount, split_route
from app.x402.errors import AgentError, ChallengeParseError, ErrorCode, UnsupportedCurrencyError

logger = logging.getLogger(__name__)


def origin_of(url: str) -> str:
    """scheme://host[:port], lower-cased."""
    parsed = urlparse(url.strip())
    if not parsed.scheme or not parsed.netloc:
        return ""
    return f"{parsed.scheme}://{parsed.netloc}".lower()


def _amount(value: Any) -> Decimal:
    if isinstance(value, float):
        value = repr(value)
    return parse_amount(value)


@dataclass(frozen=True)
class WalletPolicy:
    """
    Spending policy of an agent wallet.

    Attributes:
        daily_limit: Maximum total spend per calendar day
        max_per_transaction: Maximum amount of one payment
        trusted_facilitators: Facilitator URLs (or origins) the agent accepts
        allowed_merchants: Merchant ids the agent may pay; empty allows any
        allowed_currencies: Assets the agent may pay with
        chain_id: Chain the agent's wallet lives on
    """
    daily_limit: Decimal = Decimal("5.0")
    max_per_transaction: Decimal = Decimal("5.0")
    trusted_facilitators: Tuple[str, ...] = ()
    allowed_merchants: Tuple[str, ...] = ()
    allowed_currencies: Tuple[str, ...] = (Currency.USDC.value, Currency.CRO.value)
    chain_id: int = NETWORKS["cronos-testnet"]

    def __post_init__(self):
        object.__setattr__(self, "daily_limit", _amount(self.daily_limit))
        object.__setattr__(self, "max_per_transaction", _amount(self.max_per_transaction))
        origins = tuple(o for o in (origin_of(url) for url in self.trusted_facilitators) if o)
        object.__setattr__(self, "trusted_facilitators", origins)
        object.__setattr__(self, "allowed_merchants", tuple(self.allowed_merchants))
        object.__setattr__(
            self, "allowed_currencies", tuple(str(getattr(c, "value", c)).upper() for c in self.allowed_currencies)
        )


@dataclass(frozen=True)
class PaymentContext:
    """What the agent knows about the request that produced a challenge."""
    expected_route: Optional[str] = None
    chain_id: Optional[int] = None


@dataclass(frozen=True)
class PolicyDecision:
    allow: bool
    reason: Optional[str] = None
    rule: Optional[str] = None
    code: Optional[ErrorCode] = field(default=None)

    @classmethod
    def deny(cls, rule: str, reason: str) -> "PolicyDecision":
        return cls(allow=False, reason=reason, rule=rule, code=ErrorCode.POLICY_REJECTED)


ALLOW = PolicyDecision(allow=True)


class AgentWallet:
    """
    One agent identity with its spending policy and persisted state.

    Args:
        executor: Submits chain transfers
        policy: Spending policy
        state_store: Where the spending state is persisted (memory by default)
        address: Wallet address; defaults to the executor's address
    """

    def __init__(
        self,
        executor: PaymentExecutor,
        policy: WalletPolicy,
        state_store: Optional[StateStore] = None,
        address: Optional[str] = None
    ):
        self.executor = executor
        self.policy = policy
        self.address = (address or executor.address).lower()
        self.state_store = state_store or MemoryStateStore()
        self.state = self.state_store.load(self.address)
        self._lock = threading.RLock()
        self._stopped = False

        if self.state.roll_over():
            self.state_store.save(self.address, self.state)
        logger.info(
            f"agent: wallet {self.address} loaded, spent today {self.state.spent_today}, "
            f"{len(self.state.paid)} recent payments"
        )

    @property
    def spent_today(self) -> Decimal:
        return self.state.spent_today

    @property
    def is_stopped(self) -> bool:
        return self._stopped

    def emergency_stop(self) -> None:
        """Refuse every further payment until resume() is called."""
        logger.critical(f"agent: EMERGENCY STOP engaged for wallet {self.address}")
        self._stopped = True

    def resume(self) -> None:
        logger.warning(f"agent: emergency stop released for wallet {self.address}")
        self._stopped = False

    @staticmethod
    def parse_challenge(
        headers: Optional[Mapping[str, str]] = None,
        body: Any = None
    ) -> PaymentChallenge:
        """
        Parse a 402 challenge, headers first, JSON body as fallback.

        Raises:
            ChallengeParseError: Neither transport carried a complete challenge
            UnsupportedCurrencyError: The challenge asks for an unknown asset
        """
        header_error = None
        if headers:
            try:
                return PaymentChallenge.from_headers(headers)
            except UnsupportedCurrencyError:
                raise
            except ChallengeParseError as e:
                header_error = e
                logger.debug(f"agent: header challenge unusable, trying body: {e}")

        if body is not None:
            try:
                return PaymentChallenge.from_body(body)
            except UnsupportedCurrencyError:
                raise
            except ChallengeParseError as e:
                if header_error is not None:
                    raise ChallengeParseError(f"{header_error}; {e}") from e
                raise

        raise header_error or ChallengeParseError("No x402 challenge in response")

    def should_pay(self, challenge: PaymentChallenge, context: Optional[PaymentContext] = None) -> PolicyDecision:
        """Evaluate the policy for a challenge. Has no effect on spending state."""
        with self._lock:
            self.state.roll_over()
            decision = self._evaluate(challenge, context or PaymentContext())

        audit.log_payment_attempt(
            wallet_address=self.address,
            merchant_id=challenge.merchant_id,
            route=challenge.route,
            amount=challenge.amount,
            currency=challenge.currency.value,
            approved=decision.allow,
            reason=decision.reason,
        )
        if decision.allow:
            logger.info(
                f"agent: approved {challenge.amount} {challenge.currency.value} "
                f"to {challenge.merchant_id} for {challenge.route}"
            )
        else:
            logger.warning(f"agent: blocked payment to {challenge.merchant_id}: {decision.reason}")
        return decision

    def _evaluate(self, challenge: PaymentChallenge, context: PaymentContext) -> PolicyDecision:
        policy = self.policy
        amount = challenge.amount_decimal

        if self._stopped:
            return PolicyDecision.deny("emergency_stop", "Emergency stop is engaged")

        if context.expected_route and _route_key(context.expected_route) != _route_key(challenge.route):
            return PolicyDecision.deny(
                "route_mismatch",
                f"Challenge route {challenge.route} does not match requested {context.expected_route}"
            )

        if challenge.currency.value not in policy.allowed_currencies:
            return PolicyDecision.deny("unsupported_currency", f"Currency {challenge.currency.value} not allowed")

        chain_id = context.chain_id if context.chain_id is not None else policy.chain_id
        if challenge.chain_id != chain_id:
            return PolicyDecision.deny("wrong_chain", f"Chain {challenge.chain_id} does not match {chain_id}")

        if origin_of(challenge.facilitator_url or "") not in policy.trusted_facilitators:
            return PolicyDecision.deny("untrusted_facilitator", f"Untrusted facilitator {challenge.facilitator_url}")

        if policy.allowed_merchants and challenge.merchant_id not in policy.allowed_merchants:
            return PolicyDecision.deny("merchant_not_allowed", f"Merchant {challenge.merchant_id} not allowlisted")

        if self.state.spent_today + amount > policy.daily_limit:
            return PolicyDecision.deny(
                "daily_limit",
                f"Daily limit exceeded: {self.state.spent_today} + {amount} > {policy.daily_limit}"
            )

        if amount > policy.max_per_transaction:
            return PolicyDecision.deny(
                "per_transaction_limit",
                f"Amount {amount} exceeds per-transaction limit {policy.max_per_transaction}"
            )

        return ALLOW

    def execute_payment(self, challenge: PaymentChallenge, context: Optional[PaymentContext] = None) -> str:
        """
        Pay a challenge exactly once.

        The paid-set check runs before the executor is touched. Spend caps
        are re-evaluated under the wallet lock so concurrent payments cannot
        overshoot the daily limit. State is persisted before the proof is
        returned.

        Returns:
            Transaction hash to present as x-payment-proof

        Raises:
            AgentError: REPLAY_DETECTED for an already paid challenge,
                POLICY_REJECTED if the policy no longer allows it,
                NETWORK_ERROR if the executor failed
        """
        key = challenge.payment_key
        with self._lock:
            self.state.roll_over()
            if self.state.has_paid(key):
                logger.warning(f"agent: duplicate payment blocked for {key}")
                raise AgentError(
                    f"Duplicate payment attempt blocked for {key}",
                    code=ErrorCode.REPLAY_DETECTED,
                )

            decision = self._evaluate(challenge, context or PaymentContext())
            if not decision.allow:
                raise AgentError(
                    f"Payment rejected by policy: {decision.reason}",
                    code=ErrorCode.POLICY_REJECTED,
                    reason=decision.reason,
                )

            try:
                tx_hash = self.executor.execute(challenge)
            except Exception as e:
                logger.error(f"agent: payment execution failed for {key}: {e}")
                raise AgentError(
                    f"Payment execution failed: {e}",
                    code=ErrorCode.NETWORK_ERROR,
                ) from e

            self.state.record_payment(key, challenge.amount_decimal)
            try:
                self.state_store.save(self.address, self.state)
            except Exception as e:
                logger.critical(f"agent: paid {tx_hash} for {key} but could not persist state: {e}")
                raise AgentError(
                    f"Payment {tx_hash} sent but wallet state could not be saved: {e}",
                    code=ErrorCode.PROTOCOL_ERROR,
                    details={"txHash": tx_hash},
                ) from e

        logger.info(f"agent: paid {challenge.amount} {challenge.currency.value} for {key}: {tx_hash}")
        audit.log_payment_executed(
            wallet_address=self.address,
            merchant_id=challenge.merchant_id,
            route=challenge.route,
            nonce=challenge.nonce,
            tx_hash=tx_hash,
            amount=challenge.amount,
            currency=challenge.currency.value,
        )
        return tx_hash


def _route_key(route: str) -> Tuple[str, str]:
    try:
        return split_route(route)
    except ValueError:
        return ("", canonicalize_path(route))
