"""Tests for wire-format parsing of request DTOs."""

import base64
import json

import pytest
from pydantic import ValidationError

from microsettle.application.deferred.dtos import DeferredVerifyRequestDTO
from microsettle.application.facilitator.dtos import (
    PaymentEnvelopeDTO,
    PaymentRequirementsDTO,
    VerifyRequestDTO,
)
from microsettle.application.identity.dtos import IdentityProofDTO
from microsettle.domain.errors import InvalidPaymentPayload

PAYER = "0x" + "a1" * 20
PAYEE = "0x" + "b0" * 20
NONCE = "0x" + "ab" * 32
SIGNATURE = "0x" + "cd" * 65


def x402_envelope(**authorization) -> dict:
    fields = {
        "from": PAYER,
        "to": PAYEE,
        "value": "10000",
        "validAfter": 0,
        "validBefore": 1900000000,
        "nonce": NONCE,
    }
    fields.update(authorization)
    return {
        "x402Version": 1,
        "scheme": "exact",
        "network": "celo-sepolia",
        "payload": {"authorization": fields, "signature": SIGNATURE},
    }


class TestPaymentEnvelopeDTO:
    def test_payload_wrapper_is_flattened(self) -> None:
        dto = PaymentEnvelopeDTO.model_validate(x402_envelope())

        assert dto.signature == SIGNATURE
        assert dto.authorization.payer == PAYER
        assert dto.authorization.amount == 10000

    def test_plain_field_names_accepted(self) -> None:
        dto = PaymentEnvelopeDTO.model_validate(
            {
                "network": "celo",
                "authorization": {
                    "payer": PAYER,
                    "payee": PAYEE,
                    "amount": 5,
                    "valid_after": 1,
                    "valid_before": 2,
                    "nonce": NONCE,
                },
                "signature": SIGNATURE,
            }
        )

        envelope = dto.to_domain()

        assert envelope.authorization.amount == 5
        assert envelope.authorization.valid_after == 1

    def test_malformed_nonce_is_invalid_payload(self) -> None:
        dto = PaymentEnvelopeDTO.model_validate(x402_envelope(nonce="0x1234"))

        with pytest.raises(InvalidPaymentPayload):
            dto.to_domain()

    def test_missing_authorization_fails_validation(self) -> None:
        with pytest.raises(ValidationError):
            PaymentEnvelopeDTO.model_validate({"network": "celo", "signature": SIGNATURE})


class TestPaymentRequirementsDTO:
    def test_identity_flags_from_extra(self) -> None:
        dto = PaymentRequirementsDTO.model_validate(
            {
                "network": "celo",
                "payTo": PAYEE,
                "maxAmountRequired": "10000",
                "extra": {"identityRequired": True, "vendorUrl": "https://v.example"},
            }
        )

        assert dto.max_amount_required == 10000
        assert dto.identity_required() is True
        assert dto.vendor_url() == "https://v.example"

    def test_non_boolean_identity_flag_is_ignored(self) -> None:
        dto = PaymentRequirementsDTO.model_validate(
            {
                "network": "celo",
                "payTo": PAYEE,
                "amount": 1,
                "extra": {"identityRequired": "yes", "vendorUrl": 3},
            }
        )

        assert dto.identity_required() is None
        assert dto.vendor_url() is None


class TestVerifyRequestDTO:
    def test_accepts_payment_payload_key(self) -> None:
        dto = VerifyRequestDTO.model_validate(
            {
                "paymentPayload": x402_envelope(),
                "paymentRequirements": {
                    "network": "celo-sepolia",
                    "payTo": PAYEE,
                    "maxAmountRequired": "10000",
                },
            }
        )

        assert dto.payment_envelope.network == "celo-sepolia"
        assert dto.identity_proof is None


class TestIdentityProofDTO:
    def test_header_is_decoded(self) -> None:
        header = base64.b64encode(
            (json.dumps({"pi_a": ["1"]}) + "|" + json.dumps(["2"])).encode()
        ).decode()

        proof = IdentityProofDTO(scope="microsettle", header=header).to_domain()

        assert proof.proof == {"pi_a": ["1"]}
        assert proof.public_signals == ["2"]
        assert proof.attestation_id == 1

    @pytest.mark.parametrize(
        "header",
        [
            "%%%",
            base64.b64encode(b"no separator").decode(),
            base64.b64encode(b"{not json|[]").decode(),
        ],
    )
    def test_malformed_header(self, header) -> None:
        with pytest.raises(InvalidPaymentPayload, match="base64"):
            IdentityProofDTO(scope="microsettle", header=header).to_domain()

    def test_proof_source_required(self) -> None:
        with pytest.raises(ValidationError):
            IdentityProofDTO(scope="microsettle", proof={"a": 1})


class TestDeferredVerifyRequestDTO:
    def test_voucher_envelope(self) -> None:
        dto = DeferredVerifyRequestDTO.model_validate(
            {
                "paymentPayload": {
                    "network": "celo-sepolia",
                    "voucher": {
                        "payer": PAYER,
                        "payee": PAYEE,
                        "amount": "1000",
                        "nonce": NONCE,
                        "validUntil": 1900000000,
                    },
                    "signature": SIGNATURE,
                }
            }
        )

        envelope = dto.payment_envelope.to_domain()

        assert envelope.scheme == "deferred"
        assert envelope.voucher.amount == 1000
        assert envelope.voucher.valid_until == 1900000000
