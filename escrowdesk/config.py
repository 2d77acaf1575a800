from decimal import Decimal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    env: str = "development"
    log_level: str = "INFO"

    # Blockchain
    blockchain_network: str = "base_sepolia"  # "base_sepolia", "base_mainnet" or "local"
    blockchain_rpc_url: str = ""  # Auto-set from network if empty
    escrow_contract_address: str = ""  # Empty until the escrow contract is deployed

    # Wallet providers
    # Local signer keys announced by the configured provider (first key is the default account)
    wallet_private_keys: list[str] = []
    wallet_provider_kind: str = "generic_injected"  # Flags the configured provider announces
    preferred_provider_kind: str = ""  # Hint passed to connect() when several providers exist

    # Transactions
    tx_poll_interval_seconds: float = 2.0  # Receipt polling; there is no confirmation timeout
    chain_poll_interval_seconds: float = 4.0  # Provider watcher for account/chain changes
    gas_limit_multiplier: Decimal = Decimal("1.2")  # Applied to eth_estimateGas
    hydration_concurrency: int = 8  # Parallel getEscrow calls per refresh

    # Escrow creation
    min_description_length: int = 10

    # Notifications
    notify_webhook_url: str = ""  # Empty: notifications are only logged
    notify_webhook_secret: str = ""
    notify_timeout_seconds: int = 10

    @property
    def resolved_rpc_url(self) -> str:
        if self.blockchain_rpc_url:
            return self.blockchain_rpc_url
        return {
            "base_sepolia": "https://sepolia.base.org",
            "base_mainnet": "https://mainnet.base.org",
            "local": "http://127.0.0.1:8545",
        }[self.blockchain_network]

    @property
    def chain_id(self) -> int:
        return {"base_sepolia": 84532, "base_mainnet": 8453, "local": 31337}[self.blockchain_network]

    @property
    def contract_configured(self) -> bool:
        return bool(self.escrow_contract_address)

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
