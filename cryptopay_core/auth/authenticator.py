"""Credential check and token resolution over an in-memory user registry."""

import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from cryptopay_core.exceptions import AuthenticationError, ValidationError
from cryptopay_core.models import Identity
from cryptopay_core.validators import validate_address
from .security import create_access_token, decode_access_token, hash_password, verify_password

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 8


@dataclass
class _UserRecord:
    identity: Identity
    password_hash: str


class Authenticator:
    """
    Turns credentials into bearer tokens and tokens back into identities.

    Usage:
        auth = Authenticator(secret_key=settings.secret_key)
        identity = auth.register("a@example.com", "s3cretpass", "0x...")
        token = auth.authenticate("a@example.com", "s3cretpass")
        assert auth.resolve(token) == identity
    """

    def __init__(self, secret_key: Optional[str] = None, token_ttl: Optional[timedelta] = None):
        self._secret_key = secret_key
        self._token_ttl = token_ttl
        self._users: dict[str, _UserRecord] = {}
        self._by_email: dict[str, str] = {}
        self._lock = threading.Lock()

    def register(
        self,
        email: str,
        password: str,
        wallet_address: Optional[str] = None,
        role: str = "user",
    ) -> Identity:
        email = (email or "").strip().lower()
        if "@" not in email:
            raise ValidationError("Invalid email address", field="email")
        if not password or len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"Password must be at least {MIN_PASSWORD_LENGTH} characters", field="password"
            )
        wallet = validate_address(wallet_address, field="walletAddress") if wallet_address else None

        with self._lock:
            if email in self._by_email:
                raise ValidationError("User already exists with this email", field="email")
            if wallet and any(u.identity.wallet_address == wallet for u in self._users.values()):
                raise ValidationError("Wallet address already registered", field="walletAddress")
            identity = Identity(
                user_id=f"usr_{uuid.uuid4().hex[:20]}",
                email=email,
                wallet_address=wallet,
                role=role,
            )
            self._users[identity.user_id] = _UserRecord(identity, hash_password(password))
            self._by_email[email] = identity.user_id

        logger.info(f"Registered user {identity.user_id}")
        return identity

    def authenticate(self, email: str, password: str) -> str:
        """Check credentials and return a bearer token."""
        user_id = self._by_email.get((email or "").strip().lower())
        record = self._users.get(user_id) if user_id else None
        if record is None or not verify_password(password or "", record.password_hash):
            raise AuthenticationError("Invalid credentials")
        return self.issue_token(record.identity)

    def issue_token(self, identity: Identity) -> str:
        return create_access_token(
            {"sub": identity.user_id, "role": identity.role},
            expires_delta=self._token_ttl,
            secret_key=self._secret_key,
        )

    def resolve(self, token: str) -> Identity:
        """Identity for a bearer token; raises AuthenticationError."""
        if not token:
            raise AuthenticationError("Access token required")
        claims = decode_access_token(token, secret_key=self._secret_key)
        record = self._users.get(claims.get("sub", ""))
        if record is None:
            raise AuthenticationError("Unknown user")
        return record.identity

    def get(self, user_id: Optional[str]) -> Optional[Identity]:
        record = self._users.get(user_id) if user_id else None
        return record.identity if record else None

    def get_by_wallet(self, address: Optional[str]) -> Optional[Identity]:
        if not address:
            return None
        address = address.lower()
        for record in self._users.values():
            if record.identity.wallet_address == address:
                return record.identity
        return None
