import pytest
from eth_account import Account

from cryptopay_core.api.dependencies import Container, get_container
from cryptopay_core.auth import Authenticator
from cryptopay_core.chains import LedgerClientConfig, SimulatedLedgerClient
from cryptopay_core.config import settings
from cryptopay_core.notifications import NotificationHub
from cryptopay_core.services import EngineConfig, SettlementEngine
from cryptopay_core.stores import InMemoryPaymentRequestStore, InMemoryTransactionStore

TEST_SECRET = "test-secret-key-that-is-long-enough-0123"


TEST_SETTINGS = {
    "database_url": None,
    "chain_mode": "simulation",
    "reconciliation_enabled": False,
    "confirmation_poll_interval": 0.01,
    "confirmation_timeout_seconds": 5.0,
}


def apply_test_settings(monkeypatch):
    """Force in-memory stores and the simulated chain; undone when ``monkeypatch`` is."""
    for name, value in TEST_SETTINGS.items():
        monkeypatch.setattr(settings, name, value)


@pytest.fixture(autouse=True)
def reset_container(monkeypatch):
    """Reset the dependency container before each test."""
    apply_test_settings(monkeypatch)

    Container.reset()
    # Clear lru_cache of get_container
    get_container.cache_clear()
    yield
    Container.reset()
    get_container.cache_clear()


@pytest.fixture
def alice_account():
    return Account.create()


@pytest.fixture
def bob_account():
    return Account.create()


@pytest.fixture
def carol_account():
    return Account.create()


def private_key_of(account) -> str:
    return "0x" + account.key.hex().removeprefix("0x")


@pytest.fixture
def ledger(alice_account, bob_account, carol_account):
    """Simulated chain with funded test wallets."""
    chain = SimulatedLedgerClient(LedgerClientConfig(poll_interval=0.01))
    for account in (alice_account, bob_account, carol_account):
        chain.fund(account.address, eth="10", cpx="1000")
    return chain


@pytest.fixture
def authenticator():
    return Authenticator(secret_key=TEST_SECRET)


@pytest.fixture
def alice(authenticator, alice_account):
    return authenticator.register("alice@example.com", "alice-password", alice_account.address)


@pytest.fixture
def bob(authenticator, bob_account):
    return authenticator.register("bob@example.com", "bob-password", bob_account.address)


@pytest.fixture
def carol(authenticator, carol_account):
    return authenticator.register("carol@example.com", "carol-password", carol_account.address)


@pytest.fixture
def admin(authenticator):
    return authenticator.register("admin@example.com", "admin-password", role="admin")


@pytest.fixture
def hub():
    return NotificationHub(retry_delays=[0, 0, 0])


@pytest.fixture
def transaction_store():
    return InMemoryTransactionStore()


@pytest.fixture
def request_store():
    return InMemoryPaymentRequestStore()


@pytest.fixture
def engine_config():
    return EngineConfig(frontend_url="https://pay.example.com", confirmations=1, confirmation_timeout=2.0)


@pytest.fixture
def engine(ledger, transaction_store, request_store, hub, engine_config, authenticator):
    return SettlementEngine(
        ledger,
        transaction_store,
        request_store,
        hub,
        config=engine_config,
        identities=authenticator,
    )


@pytest.fixture
def alice_key(alice_account):
    return private_key_of(alice_account)


@pytest.fixture
def bob_key(bob_account):
    return private_key_of(bob_account)


@pytest.fixture
def carol_key(carol_account):
    return private_key_of(carol_account)
