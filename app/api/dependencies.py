# app/api/dependencies.py
from fastapi import Request

from app.x402.facilitator import PaymentVerifier
from app.x402.store import Store


def get_store(request: Request) -> Store:
    return request.app.state.store


def get_verifier(request: Request) -> PaymentVerifier:
    return request.app.state.verifier
