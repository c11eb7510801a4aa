# app/agent/client.py
"""
HTTP client that pays x402 challenges on behalf of an agent.

One logical call performs at most one payment:

    request -> 200            return the response, nothing paid
    request -> 402 -> pay -> retry with proof -> 200   return the response
    request -> 402 -> pay -> retry -> 402              raise "Recursive 402 detected"

The only repeated request after a payment is the confirmation poll: when
the facilitator answers AWAITING_CONFIRMATIONS the same proof is re-sent,
without paying again, a bounded number of times.
"""
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlparse

import requests

from app.agent.wallet import AgentWallet, PaymentContext
from app.x402.challenge import (
    HEADER_MERCHANT_ID,
    HEADER_NONCE,
    HEADER_PAYMENT_PAYER,
    HEADER_PAYMENT_PROOF,
    HEADER_ROUTE,
    canonical_route,
)
from app.x402.errors import AgentError, ChallengeParseError, ErrorCode, UnsupportedCurrencyError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AgentConfig:
    """
    Attributes:
        timeout: Per-request timeout in seconds
        check_route: Refuse challenges whose route differs from the request
        confirmation_polls: Re-sends of the proof while AWAITING_CONFIRMATIONS
        confirmation_poll_interval: Seconds between those re-sends
    """
    timeout: float = 15.0
    check_route: bool = True
    confirmation_polls: int = 3
    confirmation_poll_interval: float = 2.0


def _json_or_none(response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


def _denial_reason(body: Any) -> Optional[str]:
    if isinstance(body, dict):
        return body.get("reason") or body.get("error")
    return None


class X402Client:
    """
    Drive the fetch -> 402 -> pay -> retry cycle.

    Args:
        wallet: Agent wallet holding the policy and the executor
        config: Client behaviour
        session: requests-compatible session (tests inject a fake)
        sleep: Sleep function used between confirmation polls
    """

    def __init__(
        self,
        wallet: AgentWallet,
        config: Optional[AgentConfig] = None,
        session=None,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.wallet = wallet
        self.config = config or AgentConfig()
        self._session = session or requests.Session()
        self._sleep = sleep

    def get(self, url: str, **kwargs):
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs):
        return self.request("POST", url, **kwargs)

    def request(self, method: str, url: str, headers: Optional[Dict[str, str]] = None, **kwargs):
        """
        Send a request, paying one x402 challenge if the server asks for it.

        Returns:
            The final response (any status other than 402)

        Raises:
            AgentError: POLICY_REJECTED when the wallet refuses to pay,
                PROTOCOL_ERROR for a malformed challenge or a 402 after payment,
                AWAITING_CONFIRMATIONS when polling ran out,
                NETWORK_ERROR on transport failure
        """
        method = method.upper()
        request_headers = dict(headers or {})
        payment_attempted = False
        polls_left = self.config.confirmation_polls
        proof = None

        while True:
            response = self._send(method, url, request_headers, **kwargs)
            if response.status_code != 402:
                return response

            body = _json_or_none(response)

            if payment_attempted:
                reason = _denial_reason(body)
                if reason == ErrorCode.AWAITING_CONFIRMATIONS.value:
                    if polls_left > 0:
                        polls_left -= 1
                        logger.info(f"agent: {proof} awaiting confirmations, polling again")
                        self._sleep(self.config.confirmation_poll_interval)
                        continue
                    raise AgentError(
                        f"Payment {proof} still awaiting confirmations",
                        code=ErrorCode.AWAITING_CONFIRMATIONS,
                        status=402,
                        details=body,
                    )
                logger.error(f"agent: 402 after paying {proof} for {method} {url}: {reason}")
                raise AgentError(
                    f"Recursive 402 detected after payment {proof}",
                    code=ErrorCode.PROTOCOL_ERROR,
                    reason=reason,
                    status=402,
                    details=body,
                )

            try:
                challenge = self.wallet.parse_challenge(headers=response.headers, body=body)
            except UnsupportedCurrencyError as e:
                logger.warning(f"agent: blocked payment for {method} {url}: {e}")
                raise AgentError(
                    f"Payment rejected by policy: {e}",
                    code=ErrorCode.POLICY_REJECTED,
                    reason=str(e),
                    status=402,
                    details={"rule": "unsupported_currency"},
                ) from e
            except ChallengeParseError as e:
                raise AgentError(
                    f"Malformed x402 challenge: {e}",
                    code=ErrorCode.PROTOCOL_ERROR,
                    status=402,
                    details=body,
                ) from e

            context = PaymentContext(
                expected_route=canonical_route(method, urlparse(url).path) if self.config.check_route else None
            )
            decision = self.wallet.should_pay(challenge, context)
            if not decision.allow:
                raise AgentError(
                    f"Payment rejected by policy: {decision.reason}",
                    code=ErrorCode.POLICY_REJECTED,
                    reason=decision.reason,
                    status=402,
                    details={"rule": decision.rule},
                )

            payment_attempted = True
            proof = self.wallet.execute_payment(challenge, context)
            request_headers.update({
                HEADER_PAYMENT_PROOF: proof,
                HEADER_NONCE: challenge.nonce,
                HEADER_MERCHANT_ID: challenge.merchant_id,
                HEADER_PAYMENT_PAYER: self.wallet.address,
                HEADER_ROUTE: challenge.route,
            })

    def _send(self, method: str, url: str, headers: Dict[str, str], **kwargs):
        kwargs.setdefault("timeout", self.config.timeout)
        try:
            return self._session.request(method, url, headers=headers, **kwargs)
        except requests.RequestException as e:
            logger.error(f"agent: {method} {url} failed: {e}")
            raise AgentError(f"Request failed: {e}", code=ErrorCode.NETWORK_ERROR) from e
