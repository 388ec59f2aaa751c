"""FastAPI dependencies for the facilitator API."""

from __future__ import annotations

import logging
from typing import Optional, Union

from fastapi import Depends
from redis.exceptions import RedisError

from ..application.deferred.use_cases.settlement_coordinator import (
    DeferredSettlementCoordinator,
)
from ..application.deferred.use_cases.voucher_ledger import VoucherLedger
from ..application.facilitator.use_cases.facilitator import Facilitator
from ..application.facilitator.use_cases.settlement_executor import SettlementExecutor
from ..application.facilitator.use_cases.signature_verifier import SignatureVerifier
from ..application.identity.use_cases.identity_verification import (
    IdentityVerificationService,
)
from ..application.identity.verifier_registry import ScopedVerifierRegistry
from ..domain.chain.registry import ChainRegistry
from ..domain.deferred.voucher_repository import VoucherRepository
from ..domain.errors import StoreUnavailable
from ..domain.identity.nullifier_repository import NullifierRepository
from ..domain.payment.authorization_repository import AuthorizationRepository
from ..domain.shared import ChainClientProtocol, DisclosurePolicySource, StoreAvailability
from ..envs.facilitator_env import Settings, get_settings
from ..infrastructure.chain.web3_chain_client import Web3ChainClient
from ..infrastructure.database import DatabaseClient, get_database_client
from ..infrastructure.deferred.voucher_repository_impl import VoucherRepositoryImpl
from ..infrastructure.http.http_client import AsyncHttpClient
from ..infrastructure.identity.disclosure_client import DisclosurePolicyClient
from ..infrastructure.identity.http_proof_verifier import HttpProofVerifier
from ..infrastructure.identity.nullifier_repository_impl import NullifierRepositoryImpl
from ..infrastructure.payment.authorization_repository_impl import (
    AuthorizationRepositoryImpl,
)
from ..infrastructure.scripts import FACILITATOR_SCRIPTS
from ..infrastructure.storage import KeyValueStore, RedisKeyValueStore

logger = logging.getLogger(__name__)

# Process-wide singletons. Everything here is read-only after startup except
# the store and clients' own connection pools.
_store_availability: StoreAvailability = StoreAvailability.down("not initialized")
_key_value_store: Union[KeyValueStore, None] = None
_chain_registry: Union[ChainRegistry, None] = None
_chain_client: Union[Web3ChainClient, None] = None
_identity_http_client: Union[AsyncHttpClient, None] = None
_verifier_registry: Union[ScopedVerifierRegistry, None] = None


def set_store_availability(availability: StoreAvailability) -> None:
    global _store_availability
    _store_availability = availability


def get_store_availability() -> StoreAvailability:
    return _store_availability


def get_database_client_with_settings(
    settings: Settings = Depends(get_settings),
) -> DatabaseClient:
    """Get database client with settings."""
    return get_database_client(settings)


def get_key_value_store(
    db_client: DatabaseClient = Depends(get_database_client_with_settings),
) -> KeyValueStore:
    """Get the key-value store that holds the registered scripts."""
    global _key_value_store
    if _key_value_store is None:
        _key_value_store = RedisKeyValueStore(db_client)
    return _key_value_store


def get_chain_registry(settings: Settings = Depends(get_settings)) -> ChainRegistry:
    global _chain_registry
    if _chain_registry is None:
        _chain_registry = settings.build_chain_registry()
    return _chain_registry


def get_chain_client(settings: Settings = Depends(get_settings)) -> ChainClientProtocol:
    global _chain_client
    if _chain_client is None:
        _chain_client = Web3ChainClient(
            settings.private_key,
            request_timeout=settings.rpc_timeout_seconds,
            retries=settings.rpc_retries,
            backoff_factor=settings.rpc_backoff_seconds,
        )
    return _chain_client


def _identity_client(settings: Settings) -> AsyncHttpClient:
    global _identity_http_client
    if _identity_http_client is None:
        _identity_http_client = AsyncHttpClient(settings.identity_verifier_url or "")
    return _identity_http_client


def get_verifier_registry(
    settings: Settings = Depends(get_settings),
) -> ScopedVerifierRegistry:
    """One proof verifier per configured scope, built once."""
    global _verifier_registry
    if _verifier_registry is None:
        client = _identity_client(settings)
        _verifier_registry = ScopedVerifierRegistry.build(
            settings.identity_scopes,
            lambda scope: HttpProofVerifier(scope, client, settings.identity_endpoint),
        )
    return _verifier_registry


def get_disclosure_source(
    settings: Settings = Depends(get_settings),
) -> DisclosurePolicySource:
    return DisclosurePolicyClient(_identity_client(settings))


def get_authorization_repository(
    store: KeyValueStore = Depends(get_key_value_store),
    availability: StoreAvailability = Depends(get_store_availability),
) -> Optional[AuthorizationRepository]:
    return AuthorizationRepositoryImpl(store) if availability.available else None


def get_voucher_repository(
    store: KeyValueStore = Depends(get_key_value_store),
    availability: StoreAvailability = Depends(get_store_availability),
) -> Optional[VoucherRepository]:
    return VoucherRepositoryImpl(store) if availability.available else None


def get_nullifier_repository(
    store: KeyValueStore = Depends(get_key_value_store),
    availability: StoreAvailability = Depends(get_store_availability),
) -> Optional[NullifierRepository]:
    return NullifierRepositoryImpl(store) if availability.available else None


def get_signature_verifier(
    registry: ChainRegistry = Depends(get_chain_registry),
    settings: Settings = Depends(get_settings),
) -> SignatureVerifier:
    return SignatureVerifier(registry, settings.voucher_domain_name)


def get_settlement_executor(
    chain_client: ChainClientProtocol = Depends(get_chain_client),
    settings: Settings = Depends(get_settings),
) -> SettlementExecutor:
    return SettlementExecutor(chain_client, settings.confirmation_timeout_seconds)


def get_facilitator(
    registry: ChainRegistry = Depends(get_chain_registry),
    verifier: SignatureVerifier = Depends(get_signature_verifier),
    executor: SettlementExecutor = Depends(get_settlement_executor),
    chain_client: ChainClientProtocol = Depends(get_chain_client),
    authorizations: Optional[AuthorizationRepository] = Depends(
        get_authorization_repository
    ),
    availability: StoreAvailability = Depends(get_store_availability),
    settings: Settings = Depends(get_settings),
) -> Facilitator:
    """Get facilitator."""
    return Facilitator(
        registry,
        verifier,
        executor,
        chain_client,
        authorizations,
        availability,
        default_network=settings.default_network,
    )


def get_voucher_ledger(
    vouchers: Optional[VoucherRepository] = Depends(get_voucher_repository),
    registry: ChainRegistry = Depends(get_chain_registry),
    verifier: SignatureVerifier = Depends(get_signature_verifier),
    availability: StoreAvailability = Depends(get_store_availability),
    settings: Settings = Depends(get_settings),
) -> VoucherLedger:
    """Get voucher ledger."""
    return VoucherLedger(
        vouchers,
        registry,
        verifier,
        availability,
        large_voucher_threshold=settings.large_voucher_threshold,
        min_settlement_amount=settings.min_settlement_amount,
        min_voucher_count=settings.min_voucher_count,
        estimated_gas_cost=settings.estimated_gas_cost,
        min_profit_ratio=settings.min_profit_ratio,
    )


def get_settlement_coordinator(
    ledger: VoucherLedger = Depends(get_voucher_ledger),
    facilitator: Facilitator = Depends(get_facilitator),
) -> DeferredSettlementCoordinator:
    return DeferredSettlementCoordinator(ledger, facilitator)


def get_identity_service(
    verifiers: ScopedVerifierRegistry = Depends(get_verifier_registry),
    nullifiers: Optional[NullifierRepository] = Depends(get_nullifier_repository),
    availability: StoreAvailability = Depends(get_store_availability),
    disclosure_source: DisclosurePolicySource = Depends(get_disclosure_source),
    settings: Settings = Depends(get_settings),
) -> IdentityVerificationService:
    """Get identity verification service."""
    return IdentityVerificationService(
        verifiers,
        nullifiers,
        availability,
        disclosure_source,
        default_policy=settings.identity_policy,
    )


async def close_clients() -> None:
    global _identity_http_client
    if _identity_http_client is not None:
        await _identity_http_client.aclose()
        _identity_http_client = None


async def initialize_store(settings: Settings) -> StoreAvailability:
    """Ping Redis and register the scripts. Decides availability for the process."""
    store = get_key_value_store(get_database_client(settings))
    try:
        await store.ping()
        for name, script in FACILITATOR_SCRIPTS.items():
            await store.register_script(name, script)
    except (StoreUnavailable, RedisError) as e:
        if settings.store_required:
            raise
        logger.warning(
            "Store unavailable at startup, running without persistence: %s", e
        )
        availability = StoreAvailability.down(str(e))
    else:
        availability = StoreAvailability.up()
    set_store_availability(availability)
    return availability


def build_background_services(
    settings: Settings,
) -> tuple[IdentityVerificationService, VoucherLedger, DeferredSettlementCoordinator]:
    """The same wiring as the request dependencies, for work off the request path."""
    store = get_key_value_store(get_database_client(settings))
    availability = get_store_availability()
    registry = get_chain_registry(settings)
    chain_client = get_chain_client(settings)
    verifier = get_signature_verifier(registry, settings)
    facilitator = get_facilitator(
        registry,
        verifier,
        get_settlement_executor(chain_client, settings),
        chain_client,
        get_authorization_repository(store, availability),
        availability,
        settings,
    )
    ledger = get_voucher_ledger(
        get_voucher_repository(store, availability),
        registry,
        verifier,
        availability,
        settings,
    )
    identity = get_identity_service(
        get_verifier_registry(settings),
        get_nullifier_repository(store, availability),
        availability,
        get_disclosure_source(settings),
        settings,
    )
    return identity, ledger, get_settlement_coordinator(ledger, facilitator)
