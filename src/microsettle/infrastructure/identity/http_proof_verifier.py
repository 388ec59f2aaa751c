"""Remote zero-knowledge proof verification over HTTP."""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from ...domain.errors import IdentityServiceUnavailable
from ...domain.identity.entities import (
    DisclosurePolicy,
    IdentityProof,
    ProofVerificationOutcome,
)
from ..http.http_client import AsyncHttpClient

logger = logging.getLogger(__name__)

DISCLOSED_FIELDS = ("name", "gender", "dateOfBirth")


class HttpProofVerifier:
    """Forwards a proof and the disclosure policy to a verification service.

    One instance per scope. The service answers with ``isValidDetails`` and
    ``discloseOutput`` blocks; anything else is treated as a failed proof.
    Transport failures raise ``IdentityServiceUnavailable`` so they are never
    mistaken for an invalid proof.
    """

    def __init__(
        self,
        scope: str,
        client: AsyncHttpClient,
        endpoint: Optional[str] = None,
        path: str = "/verify",
    ):
        self.scope = scope
        self._client = client
        self._endpoint = endpoint
        self._path = path

    async def verify(
        self, proof: IdentityProof, policy: DisclosurePolicy
    ) -> ProofVerificationOutcome:
        body: dict[str, Any] = {
            "scope": self.scope,
            "endpoint": self._endpoint,
            "attestationId": proof.attestation_id,
            "proof": proof.proof,
            "publicSignals": proof.public_signals,
            "userContextData": proof.user_context_data or self.scope,
            "requirements": {
                "minimumAge": policy.minimum_age,
                "excludedCountries": list(policy.excluded_countries),
                "ofac": policy.ofac,
            },
        }
        try:
            data = await self._client.post_json(self._path, body)
        except httpx.HTTPStatusError as e:
            if e.response.status_code < 500:
                logger.info(
                    "Proof rejected by verifier for scope %s (HTTP %d)",
                    self.scope,
                    e.response.status_code,
                )
                return ProofVerificationOutcome(is_valid=False)
            raise IdentityServiceUnavailable(
                f"Proof verifier answered HTTP {e.response.status_code}"
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise IdentityServiceUnavailable(f"Proof verifier unreachable: {e}") from e

        return self._parse(data)

    @staticmethod
    def _parse(data: Any) -> ProofVerificationOutcome:
        if not isinstance(data, dict):
            return ProofVerificationOutcome(is_valid=False)
        details = data.get("isValidDetails") or {}
        disclosed = data.get("discloseOutput") or {}
        user_data = data.get("userData") or {}
        return ProofVerificationOutcome(
            is_valid=bool(details.get("isValid")),
            minimum_age_valid=bool(details.get("isMinimumAgeValid")),
            ofac_valid=bool(details.get("isOfacValid")),
            nullifier=disclosed.get("nullifier") or None,
            nationality=disclosed.get("nationality") or None,
            user_id=data.get("userId") or user_data.get("userIdentifier"),
            disclosed={k: disclosed[k] for k in DISCLOSED_FIELDS if disclosed.get(k)},
        )
