# app/agent/__init__.py
"""
x402 agent SDK.

Lets an autonomous client pay for x402-protected resources under a
spending policy:
- wallet: Challenge parsing, policy evaluation, exactly-once payment
- state: Persisted daily spend and paid-challenge set
- executor: Interface to whatever submits the chain transfer
- client: HTTP client running the fetch -> 402 -> pay -> retry cycle
"""
