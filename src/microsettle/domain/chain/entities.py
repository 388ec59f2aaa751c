"""Chain domain entities: ChainConfig and TransactionReceipt."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ChainConfig(BaseModel):
    """Static description of a supported chain and its settlement asset."""

    model_config = ConfigDict(frozen=True)

    chain_id: int = Field(..., gt=0)
    name: str = Field(..., min_length=1)
    asset_address: str = Field(..., pattern=r"^0x[a-fA-F0-9]{40}$")
    # Must match the asset contract's own EIP-712 domain name.
    asset_name: str
    asset_version: str = "2"
    rpc_url: str
    explorer_url: str
    is_testnet: bool = False

    def explorer_tx_url(self, tx_hash: str) -> str:
        return f"{self.explorer_url.rstrip('/')}/tx/{tx_hash}"


class TransactionReceipt(BaseModel):
    """Subset of an on-chain receipt the facilitator cares about."""

    transaction_hash: str
    block_number: Optional[int] = None
    succeeded: bool
    gas_used: Optional[int] = None
