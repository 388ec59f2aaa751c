"""Shared pytest fixtures for facilitator tests."""

from __future__ import annotations

import os
import time
from typing import AsyncGenerator, Callable, Optional

import pytest
import pytest_asyncio
from eth_account import Account

from microsettle.application.deferred.use_cases.settlement_coordinator import (
    DeferredSettlementCoordinator,
)
from microsettle.application.deferred.use_cases.voucher_ledger import VoucherLedger
from microsettle.application.facilitator.use_cases.facilitator import Facilitator
from microsettle.application.facilitator.use_cases.settlement_executor import (
    SettlementExecutor,
)
from microsettle.application.facilitator.use_cases.signature_verifier import (
    SignatureVerifier,
)
from microsettle.application.identity.use_cases.identity_verification import (
    IdentityVerificationService,
)
from microsettle.application.identity.verifier_registry import ScopedVerifierRegistry
from microsettle.crypto.typed_data import (
    create_voucher,
    generate_nonce,
    sign_transfer_authorization,
    sign_voucher,
)
from microsettle.domain.chain.entities import ChainConfig
from microsettle.domain.chain.registry import CELO_SEPOLIA, ChainRegistry
from microsettle.domain.deferred.entities import DeferredPaymentEnvelope
from microsettle.domain.identity.entities import IdentityProof
from microsettle.domain.payment.entities import PaymentAuthorization, PaymentEnvelope
from microsettle.domain.shared import StoreAvailability
from microsettle.infrastructure.database import DatabaseClient
from microsettle.infrastructure.deferred.voucher_repository_impl import (
    VoucherRepositoryImpl,
)
from microsettle.infrastructure.identity.nullifier_repository_impl import (
    NullifierRepositoryImpl,
)
from microsettle.infrastructure.payment.authorization_repository_impl import (
    AuthorizationRepositoryImpl,
)
from microsettle.infrastructure.scripts import FACILITATOR_SCRIPTS
from microsettle.infrastructure.storage import RedisKeyValueStore

from tests.fixtures import (
    FakeChainClient,
    InMemoryKeyValueStore,
    StaticDisclosureSource,
    StubProofVerifier,
    register_facilitator_scripts,
)

# Well-known throwaway keys; never fund these.
PAYER_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
OTHER_KEY = "0x8da4ef21b864d2cc526dbdb2a120bd2874c36c9d0a1fb7f8c63d7f7a8b41de8f"
PAYEE = "0x" + "b0" * 20
SCOPE = "microsettle"
NETWORK = CELO_SEPOLIA.name

PAYER = Account.from_key(PAYER_KEY).address.lower()
OTHER = Account.from_key(OTHER_KEY).address.lower()

EnvelopeFactory = Callable[..., PaymentEnvelope]
VoucherFactory = Callable[..., DeferredPaymentEnvelope]


@pytest.fixture
def chain() -> ChainConfig:
    return CELO_SEPOLIA


@pytest.fixture
def registry() -> ChainRegistry:
    return ChainRegistry()


@pytest.fixture
def make_envelope(chain: ChainConfig) -> EnvelopeFactory:
    """Build an EIP-3009 envelope signed by the payer key (or ``key``)."""

    def _make(
        amount: int = 10_000,
        payee: str = PAYEE,
        valid_after: int = 0,
        valid_before: Optional[int] = None,
        nonce: Optional[str] = None,
        key: str = PAYER_KEY,
        payer: Optional[str] = None,
    ) -> PaymentEnvelope:
        authorization = PaymentAuthorization(
            payer=payer or Account.from_key(key).address,
            payee=payee,
            amount=amount,
            valid_after=valid_after,
            valid_before=valid_before or int(time.time()) + 3600,
            nonce=nonce or generate_nonce(),
        )
        return PaymentEnvelope(
            network=chain.name,
            authorization=authorization,
            signature=sign_transfer_authorization(chain, authorization, key),
        )

    return _make


@pytest.fixture
def make_voucher(chain: ChainConfig) -> VoucherFactory:
    """Build a deferred envelope holding a voucher signed by the payer key."""

    def _make(
        amount: int = 1_000_000,
        payee: str = PAYEE,
        key: str = PAYER_KEY,
        validity_seconds: int = 3600,
    ) -> DeferredPaymentEnvelope:
        voucher = create_voucher(
            Account.from_key(key).address, payee, amount, validity_seconds
        )
        return DeferredPaymentEnvelope(
            network=chain.name,
            voucher=voucher,
            signature=sign_voucher(chain, voucher, key),
        )

    return _make


@pytest_asyncio.fixture
async def kv_store() -> InMemoryKeyValueStore:
    store = InMemoryKeyValueStore()
    await register_facilitator_scripts(store)
    return store


@pytest.fixture
def chain_client() -> FakeChainClient:
    return FakeChainClient()


@pytest.fixture
def verifier(registry: ChainRegistry) -> SignatureVerifier:
    return SignatureVerifier(registry)


@pytest.fixture
def executor(chain_client: FakeChainClient) -> SettlementExecutor:
    return SettlementExecutor(chain_client, confirmation_timeout=5)


@pytest.fixture
def authorization_repository(
    kv_store: InMemoryKeyValueStore,
) -> AuthorizationRepositoryImpl:
    return AuthorizationRepositoryImpl(kv_store)


@pytest.fixture
def facilitator(
    registry: ChainRegistry,
    verifier: SignatureVerifier,
    executor: SettlementExecutor,
    chain_client: FakeChainClient,
    authorization_repository: AuthorizationRepositoryImpl,
) -> Facilitator:
    return Facilitator(
        registry,
        verifier,
        executor,
        chain_client,
        authorization_repository,
        StoreAvailability.up(),
        default_network=NETWORK,
    )


@pytest.fixture
def unpersisted_facilitator(
    registry: ChainRegistry,
    verifier: SignatureVerifier,
    executor: SettlementExecutor,
    chain_client: FakeChainClient,
) -> Facilitator:
    return Facilitator(
        registry,
        verifier,
        executor,
        chain_client,
        None,
        StoreAvailability.down("redis unreachable"),
        default_network=NETWORK,
    )


@pytest.fixture
def voucher_repository(kv_store: InMemoryKeyValueStore) -> VoucherRepositoryImpl:
    return VoucherRepositoryImpl(kv_store)


@pytest.fixture
def ledger(
    voucher_repository: VoucherRepositoryImpl,
    registry: ChainRegistry,
    verifier: SignatureVerifier,
) -> VoucherLedger:
    return VoucherLedger(
        voucher_repository,
        registry,
        verifier,
        StoreAvailability.up(),
        min_settlement_amount=10_000_000,
        min_voucher_count=5,
        estimated_gas_cost=1,
    )


@pytest.fixture
def coordinator(ledger: VoucherLedger, facilitator: Facilitator) -> DeferredSettlementCoordinator:
    return DeferredSettlementCoordinator(ledger, facilitator)


@pytest.fixture
def proof_verifier() -> StubProofVerifier:
    return StubProofVerifier(SCOPE)


@pytest.fixture
def disclosure_source() -> StaticDisclosureSource:
    return StaticDisclosureSource()


@pytest.fixture
def nullifier_repository(kv_store: InMemoryKeyValueStore) -> NullifierRepositoryImpl:
    return NullifierRepositoryImpl(kv_store)


@pytest.fixture
def identity_service(
    proof_verifier: StubProofVerifier,
    nullifier_repository: NullifierRepositoryImpl,
    disclosure_source: StaticDisclosureSource,
) -> IdentityVerificationService:
    return IdentityVerificationService(
        ScopedVerifierRegistry({SCOPE: proof_verifier}),
        nullifier_repository,
        StoreAvailability.up(),
        disclosure_source,
    )


@pytest.fixture
def proof() -> IdentityProof:
    return IdentityProof(
        scope=SCOPE, proof={"a": ["1", "2"]}, public_signals=["3", "4"]
    )


class TestDatabaseSettings:
    """Test settings for Redis connection."""

    __test__ = False

    def __init__(self, database_url: str) -> None:
        self.database_url = database_url


@pytest_asyncio.fixture
async def redis_db_client() -> AsyncGenerator[DatabaseClient, None]:
    """Create a Redis database client for testing.

    Uses database 15 by default, or TEST_REDIS_URL if set.
    """
    import warnings

    test_redis_url = os.getenv("TEST_REDIS_URL", "redis://localhost:6379/15")
    settings = TestDatabaseSettings(database_url=test_redis_url)
    client = DatabaseClient(settings)
    client.initialize_database()

    # Test connection
    try:
        async with client.get_connection() as conn:
            await conn.ping()
    except Exception as e:
        warnings.warn(
            f"Redis not available at {test_redis_url}: {e}. "
            "Tests requiring Redis will be skipped.",
            UserWarning,
        )
        pytest.skip(f"Redis not available: {e}")

    yield client

    # Cleanup: flush test database
    try:
        async with client.get_connection() as conn:
            await conn.flushdb()
    except Exception:
        pass  # Ignore cleanup errors
    await client.close()


@pytest_asyncio.fixture
async def redis_store(redis_db_client: DatabaseClient) -> RedisKeyValueStore:
    """Create a Redis-backed key-value store with the scripts registered."""
    store = RedisKeyValueStore(redis_db_client)
    for name, script in FACILITATOR_SCRIPTS.items():
        await store.register_script(name, script)
    return store
