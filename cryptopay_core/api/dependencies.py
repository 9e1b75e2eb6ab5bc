"""Dependency injection for FastAPI routes."""

import logging
from datetime import timedelta
from functools import lru_cache
from typing import Any, Optional

from fastapi import Depends, Query
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from cryptopay_core.auth import Authenticator
from cryptopay_core.chains import LedgerClient, LedgerClientConfig, create_ledger_client
from cryptopay_core.config import settings
from cryptopay_core.database import get_session_factory
from cryptopay_core.exceptions import AuthenticationError, ForbiddenError
from cryptopay_core.logging_config import set_user_context
from cryptopay_core.models import Identity
from cryptopay_core.notifications import NotificationHub
from cryptopay_core.services import EngineConfig, ReconciliationService, SettlementEngine
from cryptopay_core.stores import (
    InMemoryPaymentRequestStore,
    InMemoryTransactionStore,
    PaymentRequestStore,
    SQLPaymentRequestStore,
    SQLTransactionStore,
    TransactionStore,
)

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


def ledger_config_from_settings() -> LedgerClientConfig:
    return LedgerClientConfig(
        rpc_url=settings.rpc_url,
        chain_id=settings.chain_id,
        token_address=settings.token_contract_address,
        gateway_address=settings.payment_gateway_contract_address,
        poll_interval=settings.confirmation_poll_interval,
        default_gas_price_gwei=settings.default_gas_price_gwei,
        request_timeout=settings.rpc_timeout_seconds,
    )


class Container:
    """
    Simple dependency container for services.

    Stores are SQL-backed when a database URL is configured, in-memory
    otherwise. The ledger client follows ``chain_mode``.
    """

    _instance = None

    def __init__(self):
        if settings.database_url:
            session_factory = get_session_factory()
            self._transactions: TransactionStore = SQLTransactionStore(session_factory)
            self._requests: PaymentRequestStore = SQLPaymentRequestStore(session_factory)
        else:
            self._transactions = InMemoryTransactionStore()
            self._requests = InMemoryPaymentRequestStore()

        self._ledger_config = ledger_config_from_settings()
        self._ledger = self._build_ledger(self._ledger_config)
        self._retired_ledgers: list[LedgerClient] = []
        self._hub = NotificationHub()
        self._authenticator = Authenticator(
            secret_key=settings.secret_key,
            token_ttl=timedelta(minutes=settings.access_token_expire_minutes),
        )
        self._engine = SettlementEngine(
            self._ledger,
            self._transactions,
            self._requests,
            self._hub,
            config=EngineConfig.from_settings(settings),
            identities=self._authenticator,
        )
        self._reconciliation = ReconciliationService(
            self._engine,
            stale_after=timedelta(seconds=settings.stale_processing_seconds),
            abandon_after=timedelta(seconds=settings.abandon_processing_seconds),
        )

    @staticmethod
    def _build_ledger(config: LedgerClientConfig) -> LedgerClient:
        return create_ledger_client(
            settings.chain_mode,
            config,
            fee_bps=settings.platform_fee_bps,
            fee_collector=settings.fee_collector_address,
        )

    @classmethod
    def get_instance(cls) -> "Container":
        """Get or create the singleton container."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        """Reset the container (useful for testing)."""
        cls._instance = None

    @property
    def ledger(self) -> LedgerClient:
        return self._engine.ledger

    @property
    def ledger_config(self) -> LedgerClientConfig:
        return self._ledger_config

    @property
    def transactions(self) -> TransactionStore:
        return self._transactions

    @property
    def requests(self) -> PaymentRequestStore:
        return self._requests

    @property
    def hub(self) -> NotificationHub:
        return self._hub

    @property
    def authenticator(self) -> Authenticator:
        return self._authenticator

    @property
    def engine(self) -> SettlementEngine:
        return self._engine

    @property
    def reconciliation(self) -> ReconciliationService:
        return self._reconciliation

    def replace_ledger_client(self, **changes: Any) -> LedgerClientConfig:
        """
        Rebuild the ledger client from an updated config and swap it in.

        In simulation mode the new client starts from an empty chain. The
        previous client stays open for operations still using it and is
        closed by ``close_ledgers``.
        """
        config = self._ledger_config.with_updates(**changes)
        previous = self._engine.replace_ledger_client(self._build_ledger(config))
        self._retired_ledgers.append(previous)
        self._ledger_config = config
        logger.info(f"Ledger configuration updated: {config.to_dict()}")
        return config

    async def close_ledgers(self) -> None:
        """Close the active ledger client and every client it replaced."""
        clients = [self._engine.ledger, *self._retired_ledgers]
        self._retired_ledgers = []
        for client in clients:
            await client.close()


@lru_cache()
def get_container() -> Container:
    """Get the dependency container."""
    return Container.get_instance()


def get_engine() -> SettlementEngine:
    """Dependency for the settlement engine."""
    return get_container().engine


def get_hub() -> NotificationHub:
    """Dependency for the notification hub."""
    return get_container().hub


def get_authenticator() -> Authenticator:
    """Dependency for the authenticator."""
    return get_container().authenticator


def get_ledger() -> LedgerClient:
    """Dependency for the active ledger client."""
    return get_container().ledger


def get_optional_identity(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    authenticator: Authenticator = Depends(get_authenticator),
) -> Optional[Identity]:
    if credentials is None:
        return None
    identity = authenticator.resolve(credentials.credentials)
    set_user_context(identity.user_id, identity.wallet_address)
    return identity


def get_current_identity(identity: Optional[Identity] = Depends(get_optional_identity)) -> Identity:
    """Dependency requiring a valid bearer token."""
    if identity is None:
        raise AuthenticationError("Access token required")
    return identity


def require_admin(identity: Identity = Depends(get_current_identity)) -> Identity:
    if not identity.is_admin:
        raise ForbiddenError("Administrator access required")
    return identity


def get_websocket_identity(
    token: Optional[str] = Query(None),
    authenticator: Authenticator = Depends(get_authenticator),
) -> Optional[Identity]:
    """Resolve the ``?token=`` query parameter of a WebSocket handshake; None when invalid."""
    if not token:
        return None
    try:
        return authenticator.resolve(token)
    except AuthenticationError:
        return None
