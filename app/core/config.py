# app/core/config.py
from pydantic_settings import BaseSettings
from pydantic import AnyHttpUrl # AnyHttpUrl stays in pydantic core
from typing import List, Optional
from functools import lru_cache
from dotenv import load_dotenv

# Load .env file if it exists
load_dotenv()

class Settings(BaseSettings):
    PROJECT_NAME: str = "x402 Mint Gateway"
    API_V1_STR: str = "/api/v1"

    # --- x402 payment settings ---
    X402_FACILITATOR_URL: AnyHttpUrl = "https://x402.org/facilitator"
    X402_PAY_TO_ADDRESS: Optional[str] = None
    # Order matters: the first network is the fallback requirement
    X402_NETWORKS: List[str] = ["base"]
    # Overrides the built-in USDC address table when set
    X402_ASSET_ADDRESS: Optional[str] = None
    X402_ASSET_DECIMALS: int = 6
    X402_ASSET_NAME: str = "USDC"
    X402_ASSET_VERSION: str = "2"
    X402_MAX_TIMEOUT_SECONDS: int = 60
    X402_DEFAULT_TIMEOUT_SECONDS: int = 30
    X402_STRICT_MATCHING: bool = False
    X402_REPLAY_TTL_SECONDS: int = 86400
    X402_AUDIT_ENABLED: bool = True
    X402_AUDIT_LOG_PATH: str = "logs/x402_audit.jsonl"

    # --- Gated mint action ---
    MINT_PRICE_ATOMIC: int = 100_000  # 0.1 USDC (6 decimals)
    MINT_MAX_QUANTITY: int = 10
    MINT_DESCRIPTION: str = "Mint JustApes NFT"
    MINT_RPC_URL: Optional[AnyHttpUrl] = None
    MINT_CONTRACT_ADDRESS: Optional[str] = None
    MINTER_PRIVATE_KEY: Optional[str] = None
    MINT_ACTION_TIMEOUT_SECONDS: int = 120
    MINT_GAS_LIMIT: int = 300_000

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Ignore extra fields from .env

@lru_cache() # Cache the settings object for performance
def get_settings() -> Settings:
    return Settings()

settings = get_settings()
