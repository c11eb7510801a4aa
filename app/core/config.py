# app/core/config.py
from typing import Optional

from pydantic_settings import BaseSettings
from functools import lru_cache
from dotenv import load_dotenv

# Load .env file if it exists
load_dotenv()

class Settings(BaseSettings):
    PROJECT_NAME: str = "x402 Payment Gateway"
    API_PREFIX: str = "/api"
    LOG_LEVEL: str = "INFO"

    # Chain access for the facilitator
    X402_RPC_URL: str = "https://evm-t3.cronos.org"
    X402_RPC_TIMEOUT_SECONDS: float = 15.0
    # Leave unset to use the per-network default (see app.x402.challenge)
    X402_CONFIRMATIONS_REQUIRED: Optional[int] = None

    # Token contracts (stable-asset payments)
    X402_USDC_ADDRESS_MAINNET: str = "0xc21223249CA28397B4B6541dfFaEcC539BfF0c59"
    X402_USDC_ADDRESS_TESTNET: str = "0xc01efAaF7C5C61bEbFAeb358E1161b537b8bC0e0"

    # Persistence
    X402_DATABASE_URL: str = ""  # sqlite:///path/to/x402.db, empty = in-memory
    X402_MERCHANTS_FILE: Optional[str] = None
    X402_REPLAY_TTL_HOURS: int = 24

    # Audit trail
    X402_AUDIT_ENABLED: bool = True
    X402_AUDIT_LOG_PATH: str = "logs/x402_audit.jsonl"

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Ignore extra fields from .env

@lru_cache() # Cache the settings object for performance
def get_settings() -> Settings:
    return Settings()

settings = get_settings()
