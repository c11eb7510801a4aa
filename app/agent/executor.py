# app/agent/executor.py
"""
Chain payment executor interface.

Signing and broadcasting live outside this package: an executor wraps
whatever wallet the agent operator uses and returns the transaction hash
of a submitted transfer.
"""
from abc import ABC, abstractmethod

from app.x402.challenge import PaymentChallenge


class PaymentExecutor(ABC):
    """Submits the transfer a challenge asks for."""

    @property
    @abstractmethod
    def address(self) -> str:
        """Address the payments are sent from."""

    @abstractmethod
    def execute(self, challenge: PaymentChallenge) -> str:
        """
        Pay `challenge.amount` of `challenge.currency` to `challenge.pay_to`
        on `challenge.chain_id`.

        Returns:
            Transaction hash (0x-prefixed hex)

        Raises:
            Exception: Any failure to submit; no payment is recorded
        """
