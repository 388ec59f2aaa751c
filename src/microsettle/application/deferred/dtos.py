"""Data Transfer Objects for the deferred (voucher) payment API."""

from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from pydantic import AliasChoices, Field, ValidationError

from ...domain.deferred.entities import (
    AccumulatedBalance,
    DeferredPaymentEnvelope,
    SettlementRecord,
    Voucher,
    VoucherRecord,
)
from ...domain.errors import InvalidPaymentPayload
from ..facilitator.dtos import PaymentEnvelopeDTO, SettleResponseDTO
from ..shared.dtos import CamelDTO


class VoucherDTO(CamelDTO):
    payer: str
    payee: str
    amount: int
    nonce: str
    valid_until: int
    signature: Optional[str] = None


class DeferredEnvelopeDTO(CamelDTO):
    scheme: str = "deferred"
    network: str
    voucher: VoucherDTO
    signature: str

    def to_domain(self) -> DeferredPaymentEnvelope:
        try:
            return DeferredPaymentEnvelope(
                scheme=self.scheme,
                network=self.network,
                voucher=Voucher(**self.voucher.model_dump()),
                signature=self.signature,
            )
        except ValidationError as e:
            raise InvalidPaymentPayload(
                "; ".join(err["msg"] for err in e.errors())
            ) from e


class DeferredVerifyRequestDTO(CamelDTO):
    payment_envelope: DeferredEnvelopeDTO = Field(
        ..., validation_alias=AliasChoices("paymentEnvelope", "paymentPayload", "payment_envelope")
    )


class VoucherResponseDTO(CamelDTO):
    id: str
    payer: str
    payee: str
    amount: str
    nonce: str
    valid_until: int
    network: str
    settled: bool
    settlement_tx_hash: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_record(cls, record: VoucherRecord) -> "VoucherResponseDTO":
        return cls(
            id=str(record.id),
            payer=record.payer,
            payee=record.payee,
            amount=str(record.amount),
            nonce=record.nonce,
            valid_until=record.valid_until,
            network=record.network,
            settled=record.settled,
            settlement_tx_hash=record.settlement_tx_hash,
            created_at=record.created_at,
        )


class VoucherAcceptedDTO(CamelDTO):
    accepted: bool = True
    voucher: VoucherResponseDTO
    warnings: list[str] = Field(default_factory=list)


class VoucherRejectedDTO(CamelDTO):
    accepted: bool = False
    error_reason: str
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class DeferredSettleRequestDTO(CamelDTO):
    payee: str
    network: str
    authorization: Optional[PaymentEnvelopeDTO] = None


class AccumulatedBalanceDTO(CamelDTO):
    payer: str
    payee: str
    total_amount: str
    voucher_count: int
    voucher_ids: list[str]

    @classmethod
    def from_balance(cls, balance: AccumulatedBalance) -> "AccumulatedBalanceDTO":
        return cls(
            payer=balance.payer,
            payee=balance.payee,
            total_amount=str(balance.total_amount),
            voucher_count=balance.voucher_count,
            voucher_ids=balance.voucher_ids,
        )


class SettlementRecordDTO(CamelDTO):
    tx_hash: str
    payer: str
    payee: str
    total_amount: str
    voucher_count: int
    voucher_ids: list[str]
    network: str
    settled_at: datetime

    @classmethod
    def from_record(cls, record: SettlementRecord) -> "SettlementRecordDTO":
        return cls(
            tx_hash=record.tx_hash,
            payer=record.payer,
            payee=record.payee,
            total_amount=str(record.total_amount),
            voucher_count=record.voucher_count,
            voucher_ids=record.voucher_ids,
            network=record.network,
            settled_at=record.settled_at,
        )


class DeferredSettlementOutcomeDTO(CamelDTO):
    """Result of one coordinator run for a payee."""

    status: Literal["settled", "not_viable", "authorization_required"]
    reason: str
    network: str
    payee: str
    payer: Optional[str] = None
    total_amount: Optional[str] = None
    voucher_count: int = 0
    balances: list[AccumulatedBalanceDTO] = Field(default_factory=list)
    settlement: Optional[SettleResponseDTO] = None
    record: Optional[SettlementRecordDTO] = None
    warnings: list[str] = Field(default_factory=list)
