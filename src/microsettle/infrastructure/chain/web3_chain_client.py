"""EVM chain client backed by web3.py."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

from eth_account import Account
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import (
    ContractLogicError,
    TimeExhausted,
    TransactionNotFound,
    Web3RPCError,
)
from web3.providers.rpc.utils import ExceptionRetryConfiguration

from ...crypto.typed_data import hex_to_bytes
from ...domain.chain.entities import ChainConfig, TransactionReceipt
from ...domain.errors import ChainUnavailable, SettlementFailed, SettlementTimeout
from ...domain.payment.entities import PaymentAuthorization

logger = logging.getLogger(__name__)

EIP3009_ABI: list[dict[str, Any]] = [
    {
        "name": "transferWithAuthorization",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "from", "type": "address"},
            {"name": "to", "type": "address"},
            {"name": "value", "type": "uint256"},
            {"name": "validAfter", "type": "uint256"},
            {"name": "validBefore", "type": "uint256"},
            {"name": "nonce", "type": "bytes32"},
            {"name": "v", "type": "uint8"},
            {"name": "r", "type": "bytes32"},
            {"name": "s", "type": "bytes32"},
        ],
        "outputs": [],
    },
    {
        "name": "authorizationState",
        "type": "function",
        "stateMutability": "view",
        "inputs": [
            {"name": "authorizer", "type": "address"},
            {"name": "nonce", "type": "bytes32"},
        ],
        "outputs": [{"name": "", "type": "bool"}],
    },
]

# Only idempotent reads are retried; sending a transaction never is.
READ_METHODS = (
    "eth_chainId",
    "eth_blockNumber",
    "eth_call",
    "eth_estimateGas",
    "eth_gasPrice",
    "eth_maxPriorityFeePerGas",
    "eth_feeHistory",
    "eth_getBlockByNumber",
    "eth_getTransactionCount",
    "eth_getTransactionReceipt",
    "eth_getTransactionByHash",
)


def _tx_hex(value: Any) -> str:
    if isinstance(value, str):
        return value.lower() if value.startswith("0x") else f"0x{value.lower()}"
    return "0x" + bytes(value).hex()


class Web3ChainClient:
    """Submits EIP-3009 transfers from a relayer account and reads receipts.

    One provider per chain, created lazily. Transactions from the relayer
    are serialized per chain so each one gets the next account nonce.
    """

    def __init__(
        self,
        relayer_private_key: Optional[str],
        request_timeout: float = 10.0,
        retries: int = 3,
        backoff_factor: float = 0.25,
        poll_latency: float = 1.0,
    ):
        # Without a relayer key the client can still read, but never submit.
        self._account = Account.from_key(relayer_private_key) if relayer_private_key else None
        self._request_timeout = request_timeout
        self._retries = retries
        self._backoff_factor = backoff_factor
        self._poll_latency = poll_latency
        self._clients: dict[int, AsyncWeb3] = {}
        self._locks: dict[int, asyncio.Lock] = {}

    @property
    def relayer_address(self) -> Optional[str]:
        return self._account.address if self._account else None

    def _w3(self, chain: ChainConfig) -> AsyncWeb3:
        w3 = self._clients.get(chain.chain_id)
        if w3 is None:
            provider = AsyncHTTPProvider(
                chain.rpc_url,
                request_kwargs={"timeout": self._request_timeout},
                exception_retry_configuration=ExceptionRetryConfiguration(
                    retries=self._retries,
                    backoff_factor=self._backoff_factor,
                    method_allowlist=list(READ_METHODS),
                ),
            )
            w3 = AsyncWeb3(provider)
            self._clients[chain.chain_id] = w3
        return w3

    def _lock(self, chain: ChainConfig) -> asyncio.Lock:
        return self._locks.setdefault(chain.chain_id, asyncio.Lock())

    def _contract(self, chain: ChainConfig) -> Any:
        return self._w3(chain).eth.contract(
            address=Web3.to_checksum_address(chain.asset_address), abi=EIP3009_ABI
        )

    async def submit_transfer_with_authorization(
        self,
        chain: ChainConfig,
        authorization: PaymentAuthorization,
        v: int,
        r: bytes,
        s: bytes,
    ) -> str:
        account = self._account
        if account is None:
            raise ChainUnavailable("No relayer key configured for settlement")
        w3 = self._w3(chain)
        call = self._contract(chain).functions.transferWithAuthorization(
            Web3.to_checksum_address(authorization.payer),
            Web3.to_checksum_address(authorization.payee),
            authorization.amount,
            authorization.valid_after,
            authorization.valid_before,
            hex_to_bytes(authorization.nonce),
            v,
            r,
            s,
        )

        async with self._lock(chain):
            try:
                nonce = await w3.eth.get_transaction_count(
                    account.address, "pending"
                )
                tx = await call.build_transaction(
                    {
                        "from": account.address,
                        "nonce": nonce,
                        "chainId": chain.chain_id,
                    }
                )
            except ContractLogicError as e:
                raise SettlementFailed(f"Transfer would revert: {e}") from e
            except Web3RPCError as e:
                raise SettlementFailed(f"Node rejected the transfer: {e}") from e
            except Exception as e:
                raise ChainUnavailable(f"{chain.name} RPC unreachable: {e}") from e

            signed = account.sign_transaction(tx)
            tx_hash = _tx_hex(signed.hash)
            try:
                await w3.eth.send_raw_transaction(signed.raw_transaction)
            except Web3RPCError as e:
                raise SettlementFailed(
                    f"Node rejected the transfer: {e}", transaction_hash=tx_hash
                ) from e
            except Exception as e:
                # The node may have accepted the transaction before failing
                logger.warning(
                    "Outcome of %s on %s unknown after send error: %s",
                    tx_hash,
                    chain.name,
                    e,
                )
                raise SettlementTimeout(tx_hash) from e

        logger.info(
            "Submitted transferWithAuthorization %s on %s (relayer nonce %d)",
            tx_hash,
            chain.name,
            nonce,
        )
        return tx_hash

    @staticmethod
    def _receipt(tx_hash: str, receipt: Any) -> TransactionReceipt:
        return TransactionReceipt(
            transaction_hash=tx_hash,
            block_number=receipt.get("blockNumber"),
            succeeded=receipt.get("status") == 1,
            gas_used=receipt.get("gasUsed"),
        )

    async def wait_for_receipt(
        self, chain: ChainConfig, tx_hash: str, timeout: float
    ) -> TransactionReceipt:
        try:
            receipt = await self._w3(chain).eth.wait_for_transaction_receipt(
                tx_hash, timeout=timeout, poll_latency=self._poll_latency
            )
        except TimeExhausted as e:
            raise SettlementTimeout(tx_hash) from e
        except Exception as e:
            logger.warning("Lost track of %s on %s: %s", tx_hash, chain.name, e)
            raise SettlementTimeout(tx_hash) from e
        return self._receipt(tx_hash, receipt)

    async def get_receipt(
        self, chain: ChainConfig, tx_hash: str
    ) -> Optional[TransactionReceipt]:
        try:
            receipt = await self._w3(chain).eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        except Exception as e:
            raise ChainUnavailable(f"{chain.name} RPC unreachable: {e}") from e
        return self._receipt(tx_hash, receipt)

    async def authorization_used(
        self, chain: ChainConfig, payer: str, nonce: str
    ) -> bool:
        try:
            return bool(
                await self._contract(chain)
                .functions.authorizationState(
                    Web3.to_checksum_address(payer), hex_to_bytes(nonce)
                )
                .call()
            )
        except Exception as e:
            raise ChainUnavailable(f"{chain.name} RPC unreachable: {e}") from e
