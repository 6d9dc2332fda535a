import os


class Config:
    """Base configuration for the Flask application."""

    # Security
    SECRET_KEY = os.environ.get("SECRET_KEY", "change-this-in-production")

    # Database
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", "sqlite:///helpchain.db"
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Logging
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Web3 / Blockchain
    ETH_RPC_URL = os.environ.get("ETH_RPC_URL", "")  # e.g. https://sepolia.infura.io/v3/<KEY>
    ETH_CHAIN_NAME = os.environ.get("ETH_CHAIN_NAME", "")
    CONTRACT_ADDRESS = os.environ.get("CONTRACT_ADDRESS", "")
    LEDGER_PRIVATE_KEY = os.environ.get("LEDGER_PRIVATE_KEY", "")
    # Seconds to wait for the RPC node and for the receipt of every mirrored call
    LEDGER_TIMEOUT = float(os.environ.get("LEDGER_TIMEOUT", "30"))

    # Delivery verification codes (0 disables the limit)
    OTP_TTL_SECONDS = int(os.environ.get("OTP_TTL_SECONDS", "900"))
    OTP_MAX_ATTEMPTS = int(os.environ.get("OTP_MAX_ATTEMPTS", "5"))
