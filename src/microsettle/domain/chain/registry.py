"""Static registry of supported chains."""

from __future__ import annotations

from types import MappingProxyType
from typing import Iterable, Mapping, Optional, Union

from ..errors import UnsupportedChain
from .entities import ChainConfig


CELO_MAINNET = ChainConfig(
    chain_id=42220,
    name="celo",
    asset_address="0xcebA9300f2b948710d2653dD7B07f33A8B32118C",
    asset_name="USDC",
    rpc_url="https://forno.celo.org",
    explorer_url="https://celoscan.io",
    is_testnet=False,
)

CELO_SEPOLIA = ChainConfig(
    chain_id=11142220,
    name="celo-sepolia",
    asset_address="0x01C5C0122039549AD1493B8220cABEdD739BC44E",
    asset_name="USDC",
    rpc_url="https://celo-sepolia.g.alchemy.com",
    explorer_url="https://celo-sepolia.blockscout.com",
    is_testnet=True,
)

DEFAULT_CHAINS: tuple[ChainConfig, ...] = (CELO_MAINNET, CELO_SEPOLIA)

NETWORK_ALIASES: Mapping[str, int] = MappingProxyType(
    {
        "celo": CELO_MAINNET.chain_id,
        "celo-mainnet": CELO_MAINNET.chain_id,
        "celo-sepolia": CELO_SEPOLIA.chain_id,
        "celo-testnet": CELO_SEPOLIA.chain_id,
    }
)


class ChainRegistry:
    """Read-only lookup of ChainConfig by chain id or network name.

    Built once at startup; safe to share between concurrent requests.
    """

    def __init__(
        self,
        chains: Iterable[ChainConfig] = DEFAULT_CHAINS,
        aliases: Optional[Mapping[str, int]] = None,
    ):
        by_id = {chain.chain_id: chain for chain in chains}
        if not by_id:
            raise ValueError("ChainRegistry needs at least one chain")
        names = {chain.name: chain.chain_id for chain in by_id.values()}
        for alias, chain_id in (aliases or NETWORK_ALIASES).items():
            if chain_id in by_id:
                names.setdefault(alias, chain_id)
        self._by_id: Mapping[int, ChainConfig] = MappingProxyType(by_id)
        self._by_name: Mapping[str, int] = MappingProxyType(names)

    def resolve(self, chain: Union[int, str]) -> ChainConfig:
        """Return the config for a chain id or network name."""
        if isinstance(chain, str) and not chain.isdigit():
            chain_id = self._by_name.get(chain.lower())
            if chain_id is None:
                raise UnsupportedChain(f"Unsupported network: {chain}")
        else:
            chain_id = int(chain)
        config = self._by_id.get(chain_id)
        if config is None:
            raise UnsupportedChain(f"Unsupported chain id: {chain}")
        return config

    def is_supported(self, chain: Union[int, str]) -> bool:
        try:
            self.resolve(chain)
        except UnsupportedChain:
            return False
        return True

    def all(self) -> list[ChainConfig]:
        return list(self._by_id.values())

    def network_names(self) -> list[str]:
        return sorted(self._by_name)
