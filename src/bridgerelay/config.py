"""Application configuration using pydantic-settings.

One relay process serves exactly one ledger pair (A, B) and one token.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

LEDGER_NAMES = ("A", "B")


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ======================
    # Ledger pair
    # ======================
    endpoint_url_a: str = Field(default="http://127.0.0.1:8545", description="Ledger A RPC URL")
    endpoint_url_b: str = Field(default="http://127.0.0.1:9545", description="Ledger B RPC URL")
    contract_address_a: str = Field(default="", description="Token contract on ledger A")
    contract_address_b: str = Field(default="", description="Token contract on ledger B")
    chain_id_a: Optional[int] = Field(default=None, description="Chain ID of ledger A (queried if unset)")
    chain_id_b: Optional[int] = Field(default=None, description="Chain ID of ledger B (queried if unset)")

    # ======================
    # Relay authority
    # ======================
    relay_credential: Optional[str] = Field(
        default=None, description="Hex private key of the relay mint authority"
    )

    # ======================
    # Database (relay journal)
    # ======================
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/bridgerelay.db",
        description="Database connection URL",
    )

    # ======================
    # Relay behaviour
    # ======================
    deduplicate: bool = Field(
        default=True, description="Journal relayed burns and skip redelivered events"
    )
    mint_max_attempts: int = Field(default=5, ge=1, description="Submission attempts per burn")
    retry_backoff_seconds: float = Field(default=2.0, ge=0, description="Initial retry backoff")
    inclusion_timeout: float = Field(default=120.0, gt=0, description="Seconds to wait for a receipt")
    poll_interval: float = Field(default=3.0, gt=0, description="Seconds between log polls")
    shutdown_timeout: float = Field(default=30.0, ge=0, description="Seconds to drain on stop")

    # ======================
    # API
    # ======================
    api_enabled: bool = Field(default=True, description="Serve the status API")
    api_host: str = Field(default="127.0.0.1", description="API server host")
    api_port: int = Field(default=8000, description="API server port")

    # ======================
    # Environment
    # ======================
    environment: str = Field(default="development", description="Runtime environment")
    debug: bool = Field(default=False, description="Enable debug mode")

    @field_validator("relay_credential")
    @classmethod
    def normalize_credential(cls, v: Optional[str]) -> Optional[str]:
        """Strip whitespace and add the 0x prefix to a hex key."""
        if v is None:
            return None
        v = v.strip()
        if not v:
            return None
        return v if v.startswith("0x") else f"0x{v}"

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() == "production"

    @property
    def has_credential(self) -> bool:
        """Check if the relay authority key is configured."""
        return bool(self.relay_credential)

    def get_endpoint_url(self, ledger: str) -> str:
        """Get RPC URL for ledger A or B."""
        urls = {"A": self.endpoint_url_a, "B": self.endpoint_url_b}
        return urls.get(ledger.upper(), "")

    def get_contract_address(self, ledger: str) -> str:
        """Get token contract address for ledger A or B."""
        addresses = {"A": self.contract_address_a, "B": self.contract_address_b}
        return addresses.get(ledger.upper(), "")

    def get_chain_id(self, ledger: str) -> Optional[int]:
        """Get configured chain ID for ledger A or B."""
        ids = {"A": self.chain_id_a, "B": self.chain_id_b}
        return ids.get(ledger.upper())

    def get_safe_dict(self) -> dict:
        """Return settings dict with secrets redacted."""
        return {
            "environment": self.environment,
            "debug": self.debug,
            "database_url": self._redact_url(self.database_url),
            "relay_credential": "***" if self.relay_credential else "(not set)",
            "ledgers": {
                name: {
                    "rpc": self._redact_url(self.get_endpoint_url(name)),
                    "contract": self.get_contract_address(name) or "(not set)",
                }
                for name in LEDGER_NAMES
            },
            "relay": {
                "deduplicate": self.deduplicate,
                "mint_max_attempts": self.mint_max_attempts,
                "retry_backoff_seconds": self.retry_backoff_seconds,
                "inclusion_timeout": self.inclusion_timeout,
                "poll_interval": self.poll_interval,
            },
            "api": {
                "enabled": self.api_enabled,
                "host": self.api_host,
                "port": self.api_port,
            },
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact the password part of a URL."""
        if "://" in url and "@" in url:
            proto, rest = url.split("://", 1)
            if "@" in rest:
                creds, host = rest.rsplit("@", 1)
                if ":" in creds:
                    user, _ = creds.split(":", 1)
                    return f"{proto}://{user}:***@{host}"
        return url


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
