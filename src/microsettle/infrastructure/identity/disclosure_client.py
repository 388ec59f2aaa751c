"""Fetches a vendor's identity disclosure requirements."""

from __future__ import annotations

import logging
from typing import Optional

import httpx
from pydantic import ValidationError

from ...domain.identity.entities import DisclosurePolicy
from ..http.http_client import AsyncHttpClient

logger = logging.getLogger(__name__)

DISCOVERY_PATH = "/.well-known/x402"


class DisclosurePolicyClient:
    """Reads ``verification.requirements`` from a vendor's discovery document.

    Any failure falls back to the default policy. The result is a value
    passed to one verification call and never cached.
    """

    def __init__(self, client: AsyncHttpClient, default: Optional[DisclosurePolicy] = None):
        self._client = client
        self._default = default or DisclosurePolicy()

    async def fetch(self, vendor_url: Optional[str]) -> DisclosurePolicy:
        if not vendor_url:
            return self._default
        url = f"{vendor_url.rstrip('/')}{DISCOVERY_PATH}"
        try:
            document = await self._client.get_json(url)
            requirements = ((document or {}).get("verification") or {}).get(
                "requirements"
            )
        except (httpx.HTTPError, ValueError, AttributeError) as e:
            logger.warning("Could not fetch disclosure requirements from %s: %s", url, e)
            return self._default
        if not isinstance(requirements, dict):
            return self._default

        try:
            return DisclosurePolicy(
                minimum_age=requirements.get("minimumAge", self._default.minimum_age),
                excluded_countries=tuple(requirements.get("excludedCountries") or ()),
                ofac=bool(requirements.get("ofac", False)),
            )
        except ValidationError as e:
            logger.warning("Ignoring malformed disclosure requirements at %s: %s", url, e)
            return self._default
