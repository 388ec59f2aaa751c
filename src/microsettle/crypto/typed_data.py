"""EIP-712 typed data for transfer authorizations and payment vouchers.

Both schemas share one recovery routine; only the domain and message types
differ.
"""

from __future__ import annotations

import secrets
import time
from typing import Any, NamedTuple

from eth_account import Account
from eth_account.messages import SignableMessage, encode_typed_data
from web3 import Web3

from ..domain.chain.entities import ChainConfig
from ..domain.deferred.entities import Voucher
from ..domain.payment.entities import PaymentAuthorization

DEFAULT_VOUCHER_DOMAIN_NAME = "Microsettle Deferred Payment"
VOUCHER_DOMAIN_VERSION = "1"
DEFAULT_VOUCHER_VALIDITY_SECONDS = 3600

TRANSFER_WITH_AUTHORIZATION_TYPES: dict[str, list[dict[str, str]]] = {
    "TransferWithAuthorization": [
        {"name": "from", "type": "address"},
        {"name": "to", "type": "address"},
        {"name": "value", "type": "uint256"},
        {"name": "validAfter", "type": "uint256"},
        {"name": "validBefore", "type": "uint256"},
        {"name": "nonce", "type": "bytes32"},
    ]
}

PAYMENT_VOUCHER_TYPES: dict[str, list[dict[str, str]]] = {
    "PaymentVoucher": [
        {"name": "payer", "type": "address"},
        {"name": "payee", "type": "address"},
        {"name": "amount", "type": "uint256"},
        {"name": "nonce", "type": "bytes32"},
        {"name": "validUntil", "type": "uint256"},
    ]
}


class SignatureParts(NamedTuple):
    v: int
    r: bytes
    s: bytes


def hex_to_bytes(value: str) -> bytes:
    return bytes.fromhex(value[2:] if value.startswith("0x") else value)


def transfer_domain(chain: ChainConfig) -> dict[str, Any]:
    """Signing domain of the asset contract itself."""
    return {
        "name": chain.asset_name,
        "version": chain.asset_version,
        "chainId": chain.chain_id,
        "verifyingContract": Web3.to_checksum_address(chain.asset_address),
    }


def voucher_domain(
    chain: ChainConfig, name: str = DEFAULT_VOUCHER_DOMAIN_NAME
) -> dict[str, Any]:
    return {
        "name": name,
        "version": VOUCHER_DOMAIN_VERSION,
        "chainId": chain.chain_id,
        "verifyingContract": Web3.to_checksum_address(chain.asset_address),
    }


def transfer_message(chain: ChainConfig, auth: PaymentAuthorization) -> SignableMessage:
    return encode_typed_data(
        domain_data=transfer_domain(chain),
        message_types=TRANSFER_WITH_AUTHORIZATION_TYPES,
        message_data={
            "from": Web3.to_checksum_address(auth.payer),
            "to": Web3.to_checksum_address(auth.payee),
            "value": auth.amount,
            "validAfter": auth.valid_after,
            "validBefore": auth.valid_before,
            "nonce": hex_to_bytes(auth.nonce),
        },
    )


def voucher_message(
    chain: ChainConfig,
    voucher: Voucher,
    domain_name: str = DEFAULT_VOUCHER_DOMAIN_NAME,
) -> SignableMessage:
    return encode_typed_data(
        domain_data=voucher_domain(chain, domain_name),
        message_types=PAYMENT_VOUCHER_TYPES,
        message_data={
            "payer": Web3.to_checksum_address(voucher.payer),
            "payee": Web3.to_checksum_address(voucher.payee),
            "amount": voucher.amount,
            "nonce": hex_to_bytes(voucher.nonce),
            "validUntil": voucher.valid_until,
        },
    )


def recover_signer(message: SignableMessage, signature: str) -> str:
    """Recover the signing address, lowercased.

    Raises:
        ValueError: if the signature is malformed or unrecoverable.
    """
    raw = hex_to_bytes(signature)
    if len(raw) != 65:
        raise ValueError(f"Signature must be 65 bytes, got {len(raw)}")
    return Account.recover_message(message, signature=raw).lower()


def split_signature(signature: str) -> SignatureParts:
    """Split a 65-byte signature into the (v, r, s) triple the contract expects."""
    raw = hex_to_bytes(signature)
    if len(raw) != 65:
        raise ValueError(f"Signature must be 65 bytes, got {len(raw)}")
    v = raw[64]
    if v < 27:
        v += 27
    return SignatureParts(v=v, r=raw[:32], s=raw[32:64])


def sign_message(message: SignableMessage, private_key: str) -> str:
    signed = Account.sign_message(message, private_key=private_key)
    return "0x" + bytes(signed.signature).hex()


def sign_transfer_authorization(
    chain: ChainConfig, auth: PaymentAuthorization, private_key: str
) -> str:
    return sign_message(transfer_message(chain, auth), private_key)


def sign_voucher(
    chain: ChainConfig,
    voucher: Voucher,
    private_key: str,
    domain_name: str = DEFAULT_VOUCHER_DOMAIN_NAME,
) -> str:
    return sign_message(voucher_message(chain, voucher, domain_name), private_key)


def generate_nonce() -> str:
    """Random 32-byte nonce as 0x-prefixed hex."""
    return "0x" + secrets.token_hex(32)


def create_voucher(
    payer: str,
    payee: str,
    amount: int,
    validity_seconds: int = DEFAULT_VOUCHER_VALIDITY_SECONDS,
) -> Voucher:
    """Build an unsigned voucher with a fresh nonce."""
    return Voucher(
        payer=payer,
        payee=payee,
        amount=amount,
        nonce=generate_nonce(),
        valid_until=int(time.time()) + validity_seconds,
    )
