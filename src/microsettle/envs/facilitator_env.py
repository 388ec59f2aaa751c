from __future__ import annotations

import os
from typing import Optional

from eth_account import Account
from pydantic import BaseModel, field_validator

from ..domain.chain.entities import ChainConfig
from ..domain.chain.registry import DEFAULT_CHAINS, ChainRegistry
from ..domain.identity.entities import MAX_SCOPE_LENGTH, IdentityPolicy

PREFIX = "FACILITATOR_"


class Settings(BaseModel):
    database_url: str = "redis://localhost:6379/0"
    store_required: bool = False

    api_host: str = "0.0.0.0"
    api_port: int = 3005
    api_workers: int = 1
    api_debug: bool = False
    api_cors_origins: list[str] = ["*"]

    app_name: str = "microsettle"
    app_version: str = "0.1.0"

    private_key: Optional[str] = None
    default_network: str = "celo"
    enabled_networks: list[str] = []
    rpc_urls: dict[int, str] = {}
    rpc_retries: int = 3
    rpc_backoff_seconds: float = 0.25
    rpc_timeout_seconds: float = 10.0
    confirmation_timeout_seconds: float = 60.0

    deferred_enabled: bool = True
    min_settlement_amount: int = 10_000_000
    min_voucher_count: int = 5
    estimated_gas_cost: int = 1
    min_profit_ratio: float = 2.0
    large_voucher_threshold: int = 1_000_000_000
    voucher_domain_name: str = "Microsettle Deferred Payment"

    identity_scopes: list[str] = ["microsettle"]
    identity_policy: IdentityPolicy = IdentityPolicy.OPTIONAL
    identity_verifier_url: Optional[str] = None
    identity_endpoint: Optional[str] = None

    maintenance_interval_seconds: float = 300.0

    @field_validator("private_key")
    @classmethod
    def validate_private_key(cls, v: Optional[str]) -> Optional[str]:
        if not v:
            return None
        try:
            Account.from_key(v)
        except Exception as e:
            raise ValueError(f"Invalid relayer private key: {e}") from e
        return v

    @field_validator("identity_policy", mode="before")
    @classmethod
    def validate_identity_policy(cls, v: object) -> object:
        if isinstance(v, str):
            v = v.strip().lower()
            if v not in {p.value for p in IdentityPolicy}:
                raise ValueError(
                    f"Identity policy must be one of: optional, required (got {v!r})"
                )
        return v

    @field_validator("identity_scopes")
    @classmethod
    def validate_identity_scopes(cls, v: list[str]) -> list[str]:
        for scope in v:
            if len(scope) > MAX_SCOPE_LENGTH:
                raise ValueError(
                    f"Scope {scope!r} is longer than {MAX_SCOPE_LENGTH} characters"
                )
            if ":" in scope:
                raise ValueError(f"Scope {scope!r} cannot contain ':'")
        return v

    def build_chain_registry(self) -> ChainRegistry:
        """Built-in chains, filtered by ENABLED_NETWORKS, with RPC overrides."""
        chains: list[ChainConfig] = []
        builtin = ChainRegistry(DEFAULT_CHAINS)
        enabled = {builtin.resolve(n).chain_id for n in self.enabled_networks}
        for chain in DEFAULT_CHAINS:
            if enabled and chain.chain_id not in enabled:
                continue
            rpc_url = self.rpc_urls.get(chain.chain_id)
            chains.append(chain.model_copy(update={"rpc_url": rpc_url}) if rpc_url else chain)
        return ChainRegistry(chains)


def _bool(name: str) -> Optional[bool]:
    value = os.environ.get(PREFIX + name)
    return value.strip().lower() in {"1", "true", "yes"} if value is not None else None


def _list(name: str) -> Optional[list[str]]:
    value = os.environ.get(PREFIX + name)
    if value is None:
        return None
    return [item.strip() for item in value.split(",") if item.strip()]


def _rpc_urls() -> dict[int, str]:
    marker = PREFIX + "RPC_URL_"
    return {
        int(key[len(marker):]): value
        for key, value in os.environ.items()
        if key.startswith(marker) and key[len(marker):].isdigit() and value
    }


def get_settings() -> Settings:
    raw: dict[str, object] = {
        "database_url": os.environ.get(PREFIX + "DATABASE_URL"),
        "store_required": _bool("STORE_REQUIRED"),
        "api_host": os.environ.get(PREFIX + "API_HOST"),
        "api_port": os.environ.get(PREFIX + "API_PORT"),
        "api_workers": os.environ.get(PREFIX + "API_WORKERS"),
        "api_debug": _bool("API_DEBUG"),
        "api_cors_origins": _list("API_CORS_ORIGINS"),
        "app_name": os.environ.get(PREFIX + "APP_NAME"),
        "app_version": os.environ.get(PREFIX + "APP_VERSION"),
        "private_key": os.environ.get(PREFIX + "PRIVATE_KEY"),
        "default_network": os.environ.get(PREFIX + "DEFAULT_NETWORK"),
        "enabled_networks": _list("ENABLED_NETWORKS"),
        "rpc_urls": _rpc_urls(),
        "rpc_retries": os.environ.get(PREFIX + "RPC_RETRIES"),
        "rpc_backoff_seconds": os.environ.get(PREFIX + "RPC_BACKOFF_SECONDS"),
        "rpc_timeout_seconds": os.environ.get(PREFIX + "RPC_TIMEOUT_SECONDS"),
        "confirmation_timeout_seconds": os.environ.get(
            PREFIX + "CONFIRMATION_TIMEOUT_SECONDS"
        ),
        "deferred_enabled": _bool("DEFERRED_ENABLED"),
        "min_settlement_amount": os.environ.get(PREFIX + "MIN_SETTLEMENT_AMOUNT"),
        "min_voucher_count": os.environ.get(PREFIX + "MIN_VOUCHER_COUNT"),
        "estimated_gas_cost": os.environ.get(PREFIX + "ESTIMATED_GAS_COST"),
        "min_profit_ratio": os.environ.get(PREFIX + "MIN_PROFIT_RATIO"),
        "large_voucher_threshold": os.environ.get(PREFIX + "LARGE_VOUCHER_THRESHOLD"),
        "voucher_domain_name": os.environ.get(PREFIX + "VOUCHER_DOMAIN_NAME"),
        "identity_scopes": _list("IDENTITY_SCOPES"),
        "identity_policy": os.environ.get(PREFIX + "IDENTITY_POLICY"),
        "identity_verifier_url": os.environ.get(PREFIX + "IDENTITY_VERIFIER_URL"),
        "identity_endpoint": os.environ.get(PREFIX + "IDENTITY_ENDPOINT"),
        "maintenance_interval_seconds": os.environ.get(
            PREFIX + "MAINTENANCE_INTERVAL_SECONDS"
        ),
    }
    # Unset variables keep the model defaults
    return Settings(**{k: v for k, v in raw.items() if v is not None})
