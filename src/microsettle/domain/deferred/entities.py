"""Deferred payment entities: vouchers, voucher records and settlements."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, field_serializer

from ..payment.entities import ADDRESS_PATTERN, BYTES32_PATTERN


class Voucher(BaseModel):
    """Off-chain promise to pay ``amount`` from payer to payee.

    Shapes are checked loosely here; business rules live in the voucher
    validators so that every broken rule can be reported at once.
    """

    payer: str
    payee: str
    amount: int
    nonce: str
    valid_until: int
    signature: Optional[str] = None

    @field_serializer("amount")
    def serialize_amount(self, value: int) -> str:
        return str(value)


class DeferredPaymentEnvelope(BaseModel):
    scheme: str = "deferred"
    network: str
    voucher: Voucher
    signature: str


class VoucherRecord(BaseModel):
    """A signed voucher accepted into the ledger."""

    id: UUID = Field(default_factory=uuid4)
    payer: str = Field(..., pattern=ADDRESS_PATTERN)
    payee: str = Field(..., pattern=ADDRESS_PATTERN)
    amount: int = Field(..., gt=0)
    nonce: str = Field(..., pattern=BYTES32_PATTERN)
    valid_until: int
    signature: str
    network: str
    chain_id: int
    scheme: Literal["deferred", "exact"] = "deferred"
    settled: bool = False
    settlement_tx_hash: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_serializer("id")
    def serialize_id(self, value: UUID) -> str:
        return str(value)

    @field_serializer("amount")
    def serialize_amount(self, value: int) -> str:
        return str(value)

    @field_serializer("created_at")
    def serialize_created_at(self, value: datetime) -> str:
        return value.isoformat()

    @classmethod
    def from_envelope(
        cls, envelope: DeferredPaymentEnvelope, chain_id: int
    ) -> "VoucherRecord":
        voucher = envelope.voucher
        return cls(
            payer=voucher.payer.lower(),
            payee=voucher.payee.lower(),
            amount=voucher.amount,
            nonce=voucher.nonce.lower(),
            valid_until=voucher.valid_until,
            signature=envelope.signature.lower(),
            network=envelope.network,
            chain_id=chain_id,
        )


class SettlementRecord(BaseModel):
    """One aggregated on-chain transfer, keyed by its transaction hash."""

    id: UUID = Field(default_factory=uuid4)
    tx_hash: str
    payer: str
    payee: str
    total_amount: int
    voucher_count: int
    voucher_ids: list[str]
    network: str
    scheme: Literal["deferred", "exact"] = "deferred"
    settled_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_serializer("id")
    def serialize_id(self, value: UUID) -> str:
        return str(value)

    @field_serializer("total_amount")
    def serialize_total_amount(self, value: int) -> str:
        return str(value)

    @field_serializer("settled_at")
    def serialize_settled_at(self, value: datetime) -> str:
        return value.isoformat()


class SettlementIntent(BaseModel):
    """Voucher ids pinned to a settlement authorization before submission.

    At most one intent exists per (chain, payer, payee).
    """

    chain_id: int
    network: str
    payer: str
    payee: str
    nonce: str
    total_amount: int
    voucher_ids: list[str]
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_serializer("total_amount")
    def serialize_total_amount(self, value: int) -> str:
        return str(value)

    @field_serializer("created_at")
    def serialize_created_at(self, value: datetime) -> str:
        return value.isoformat()


class AccumulatedBalance(BaseModel):
    """Unsettled voucher total for one payer -> payee pair. Derived, never stored."""

    payer: str
    payee: str
    total_amount: int
    voucher_count: int
    voucher_ids: list[str]


class ValidationReport(BaseModel):
    valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class SettlementCandidates(BaseModel):
    should_settle: bool
    candidates: list[VoucherRecord] = Field(default_factory=list)
    total_amount: int = 0
    reason: str
