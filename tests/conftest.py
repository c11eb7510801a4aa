# tests/conftest.py
"""
Shared fixtures: an isolated audit log, an in-memory chain, a store
seeded with one merchant, and agent-side fakes (executor, challenges).
"""
import time

import pytest

from app.core.config import settings
from app.x402.chain import TRANSFER_TOPIC
from app.x402.challenge import PaymentChallenge
from app.x402.errors import ChainRpcError
from app.x402.facilitator import PaymentVerifier
from app.x402.models import Merchant
from app.x402.store import MemoryStore

MERCHANT_ID = "merchant-1"
MERCHANT_WALLET = "0x" + "11" * 20
PAYER = "0x" + "22" * 20


def _topic(address: str) -> str:
    return "0x" + "0" * 24 + address[2:].lower()


class FakeChain:
    """In-memory stand-in for ChainClient."""

    def __init__(self, chain_id: int = 338, block_number: int = 100):
        self.chain_id = chain_id
        self.block_number = block_number
        self.receipts = {}
        self.transactions = {}
        self.error = None

    def _check(self):
        if self.error:
            raise ChainRpcError(self.error)

    def get_transaction_receipt(self, tx_hash):
        self._check()
        return self.receipts.get(tx_hash.lower())

    def get_transaction(self, tx_hash):
        self._check()
        return self.transactions.get(tx_hash.lower())

    def get_block_number(self):
        self._check()
        return self.block_number

    def get_chain_id(self):
        self._check()
        return self.chain_id

    def add_token_payment(self, tx_hash, value, payer=PAYER, recipient=MERCHANT_WALLET,
                          block=90, token=None, chain_id=None, status="0x1"):
        token = (token or settings.X402_USDC_ADDRESS_TESTNET).lower()
        self.receipts[tx_hash.lower()] = {
            "transactionHash": tx_hash,
            "status": status,
            "blockNumber": hex(block),
            "from": payer,
            "to": token,
            "logs": [{
                "address": token,
                "topics": [TRANSFER_TOPIC, _topic(payer), _topic(recipient)],
                "data": hex(value),
            }],
        }
        self.transactions[tx_hash.lower()] = {
            "hash": tx_hash,
            "from": payer,
            "to": token,
            "value": "0x0",
            "chainId": hex(chain_id or self.chain_id),
        }

    def add_native_payment(self, tx_hash, value, payer=PAYER, recipient=MERCHANT_WALLET,
                           block=90, chain_id=None, status="0x1"):
        self.receipts[tx_hash.lower()] = {
            "transactionHash": tx_hash,
            "status": status,
            "blockNumber": hex(block),
            "from": payer,
            "to": recipient,
            "logs": [],
        }
        self.transactions[tx_hash.lower()] = {
            "hash": tx_hash,
            "from": payer,
            "to": recipient,
            "value": hex(value),
            "chainId": hex(chain_id or self.chain_id),
        }


def make_merchant(**overrides) -> Merchant:
    data = {
        "merchantId": MERCHANT_ID,
        "name": "Premium Data Co",
        "walletAddress": MERCHANT_WALLET,
        "network": "cronos-testnet",
        "routes": [
            {"method": "GET", "path": "/premium", "price": "1.0", "currency": "USDC",
             "description": "Premium market data"},
            {"method": "POST", "path": "/native", "price": "0.5", "currency": "CRO"},
            {"method": "GET", "path": "/retired", "price": "2.0", "currency": "USDC", "active": False},
        ],
    }
    data.update(overrides)
    return Merchant.model_validate(data)


@pytest.fixture(autouse=True)
def audit_log(tmp_path, monkeypatch):
    """Route the audit trail of every test into its own temp file."""
    path = tmp_path / "x402_audit.jsonl"
    monkeypatch.setattr(settings, "X402_AUDIT_LOG_PATH", str(path))
    monkeypatch.setattr(settings, "X402_AUDIT_ENABLED", True)
    return path


@pytest.fixture
def fake_chain():
    return FakeChain()


@pytest.fixture
def merchant():
    return make_merchant()


@pytest.fixture
def store(merchant):
    store = MemoryStore()
    store.save_merchant(merchant)
    return store


@pytest.fixture
def verifier(store, fake_chain):
    return PaymentVerifier(store, fake_chain)


@pytest.fixture
def merchant_factory():
    return make_merchant


class FakeExecutor:
    """Records payments instead of broadcasting them."""

    def __init__(self, address: str = PAYER, chain=None, error=None):
        self._address = address
        self.chain = chain
        self.error = error
        self.paid = []

    @property
    def address(self):
        return self._address

    def execute(self, challenge):
        if self.error:
            raise self.error
        tx_hash = "0x" + f"{len(self.paid) + 1:064x}"
        self.paid.append((tx_hash, challenge))
        if self.chain is not None:
            units = challenge.amount_units
            if challenge.currency.value == "USDC":
                self.chain.add_token_payment(tx_hash, units, payer=self._address, recipient=challenge.pay_to)
            else:
                self.chain.add_native_payment(tx_hash, units, payer=self._address, recipient=challenge.pay_to)
        return tx_hash


def make_challenge(**overrides) -> PaymentChallenge:
    data = {
        "amount": "1.0",
        "currency": "USDC",
        "payTo": MERCHANT_WALLET,
        "merchantId": MERCHANT_ID,
        "facilitatorUrl": "https://facilitator.example.com",
        "chainId": 338,
        "route": "GET /premium",
        "nonce": "n1",
        "expiresAt": int(time.time()) + 300,
        "network": "cronos-testnet",
    }
    data.update(overrides)
    return PaymentChallenge.model_validate(data)


@pytest.fixture
def executor():
    return FakeExecutor()


@pytest.fixture
def challenge_factory():
    return make_challenge
