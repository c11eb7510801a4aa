# app/x402/__init__.py
"""
x402 Payment Protocol Module.

Implements the x402 pay-per-request protocol on Cronos: a merchant route
answers HTTP 402 with a payment challenge, the client pays on-chain, and
the facilitator verifies the transaction before access is granted.

Key components:
- challenge: Challenge model, header/body codec, nonce and replay key
- middleware: FastAPI middleware gating merchant routes
- pricing: Route price lookup (gateway side) and price client (middleware side)
- facilitator: Authoritative on-chain verification and its HTTP client
- chain: JSON-RPC access to the chain
- store: Replay keys, transaction ledger, merchants and counters
- audit: JSON-lines audit trail

Configuration is loaded from environment variables via app.core.config.
"""

__version__ = "0.1.0"
