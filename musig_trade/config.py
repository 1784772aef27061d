"""Application configuration."""

import os
from dataclasses import dataclass
from typing import Optional


@dataclass
class Config:
    """Application configuration loaded from environment variables."""

    # API settings
    host: str = "0.0.0.0"
    port: int = 8000

    # Bitcoin network: regtest, testnet, signet or mainnet
    network: str = "regtest"

    # Wallet
    wallet_seed: Optional[str] = None
    wallet_birth_height: int = 0
    wallet_poll_interval: float = 1.0

    # bitcoind JSON-RPC; the wallet only syncs when a URL is set
    bitcoind_rpc_url: Optional[str] = None
    bitcoind_rpc_user: Optional[str] = None
    bitcoind_rpc_password: Optional[str] = None
    bitcoind_cookie_file: Optional[str] = None

    # Trade protocol
    settled_trade_retention_seconds: Optional[float] = 86400.0
    required_confirmations: int = 1

    @classmethod
    def from_env(cls) -> "Config":
        """Load configuration from environment variables."""
        retention = os.getenv("SETTLED_TRADE_RETENTION_SECONDS", "86400")
        return cls(
            host=os.getenv("HOST", "0.0.0.0"),
            port=int(os.getenv("PORT", "8000")),
            network=os.getenv("NETWORK", "regtest"),
            wallet_seed=os.getenv("WALLET_SEED"),
            wallet_birth_height=int(os.getenv("WALLET_BIRTH_HEIGHT", "0")),
            wallet_poll_interval=float(os.getenv("WALLET_POLL_INTERVAL", "1.0")),
            bitcoind_rpc_url=os.getenv("BITCOIND_RPC_URL"),
            bitcoind_rpc_user=os.getenv("BITCOIND_RPC_USER"),
            bitcoind_rpc_password=os.getenv("BITCOIND_RPC_PASSWORD"),
            bitcoind_cookie_file=os.getenv("BITCOIND_COOKIE_FILE"),
            # Empty disables eviction
            settled_trade_retention_seconds=float(retention) if retention else None,
            required_confirmations=int(os.getenv("REQUIRED_CONFIRMATIONS", "1")),
        )

    def __post_init__(self):
        if self.network not in ("regtest", "testnet", "signet", "mainnet"):
            raise ValueError(f"unsupported network: {self.network}")
        if self.required_confirmations < 1:
            raise ValueError("required_confirmations must be at least 1")
        if self.wallet_seed and not 16 <= len(bytes.fromhex(self.wallet_seed)) <= 64:
            raise ValueError("wallet_seed must be 16 to 64 bytes of hex")
