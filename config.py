from pathlib import Path
from typing import Optional
from pydantic_settings import BaseSettings

BASE_DIR = Path(__file__).resolve().parent


class Settings(BaseSettings):
    # Blockchain Configuration
    RPC_URL: str = "https://sepolia-rollup.arbitrum.io/rpc"
    NETWORK_NAME: str = "Arbitrum Sepolia"
    CHAIN_ID: int = 421614

    # Relayer wallet (signs every custody/price write) and contract owner wallet (grants verifiers)
    RELAYER_PRIVATE_KEY: str = ""
    OWNER_PRIVATE_KEY: str = ""

    # Smart Contract
    CONTRACT_ADDRESS: str = "0x0000000000000000000000000000000000000000"
    CONTRACT_ABI_PATH: str = str(BASE_DIR / "contracts" / "AgriTruthChain.json")
    EVENT_FROM_BLOCK: int = 0

    # API Configuration
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 3001
    DEBUG: bool = True
    # Serve from an in-process ledger instead of the RPC endpoint
    DEMO_MODE: bool = False

    # Gas Configuration
    GAS_LIMIT: int = 500000
    GAS_ESTIMATION_BUFFER: float = 1.2
    RECEIPT_TIMEOUT_SECONDS: int = 120
    CODE_CHECK_TTL_SECONDS: float = 30.0

    # Blockchain Explorer Configuration
    EXPLORER_BASE_URL: str = "https://sepolia.arbiscan.io"
    EXPLORER_TX_URL: str = "https://sepolia.arbiscan.io/tx"

    # Placeholder role accounts used when a batch or settlement does not name one
    DEFAULT_FARMER_ADDRESS: str = "0x1111111111111111111111111111111111111111"
    DEFAULT_DISTRIBUTOR_ADDRESS: str = "0x2222222222222222222222222222222222222222"
    DEFAULT_RETAILER_ADDRESS: str = "0x3333333333333333333333333333333333333333"
    DEFAULT_CONSUMER_ADDRESS: str = "0x4444444444444444444444444444444444444444"

    # Razorpay (test credentials by default)
    RAZORPAY_KEY_ID: str = ""
    RAZORPAY_KEY_SECRET: str = ""
    RAZORPAY_WEBHOOK_SECRET: str = ""

    # Data
    DATA_DIR: str = str(BASE_DIR / "data")
    MODERATION_STATE_PATH: str = str(BASE_DIR / "data" / "verifier_queue.json")
    # Empty keeps settlement markers in memory only
    SETTLEMENT_STATE_PATH: Optional[str] = None
    QR_CACHE_DIR: str = str(BASE_DIR / "data" / "qr")
    PUBLIC_BASE_URL: str = "http://localhost:5173"

    class Config:
        env_file = ".env"
        case_sensitive = True

# Global settings instance
settings = Settings()
