"""Tests for registration, login and bearer token resolution."""

from datetime import timedelta

import pytest

from cryptopay_core.auth import Authenticator
from cryptopay_core.exceptions import AuthenticationError, ValidationError

from conftest import TEST_SECRET


class TestRegistration:

    def test_register(self, authenticator, alice_account):
        identity = authenticator.register(" Dana@Example.com ", "long-password", alice_account.address)
        assert identity.email == "dana@example.com"
        assert identity.wallet_address == alice_account.address.lower()
        assert identity.role == "user"
        assert authenticator.get_by_wallet(alice_account.address) == identity

    def test_duplicate_email(self, authenticator, alice):
        with pytest.raises(ValidationError, match="already exists"):
            authenticator.register("ALICE@example.com", "another-password")

    def test_duplicate_wallet(self, authenticator, alice, alice_account):
        with pytest.raises(ValidationError, match="Wallet address already registered"):
            authenticator.register("eve@example.com", "eve-password", alice_account.address)

    @pytest.mark.parametrize("email,password,wallet", [
        ("not-an-email", "long-password", None),
        ("x@example.com", "short", None),
        ("x@example.com", "long-password", "0x1234"),
    ])
    def test_invalid_input(self, authenticator, email, password, wallet):
        with pytest.raises(ValidationError):
            authenticator.register(email, password, wallet)


class TestTokens:

    def test_login_and_resolve(self, authenticator, alice):
        token = authenticator.authenticate("alice@example.com", "alice-password")
        assert authenticator.resolve(token) == alice

    def test_wrong_password(self, authenticator, alice):
        with pytest.raises(AuthenticationError, match="Invalid credentials"):
            authenticator.authenticate("alice@example.com", "wrong-password")

    def test_unknown_email(self, authenticator):
        with pytest.raises(AuthenticationError, match="Invalid credentials"):
            authenticator.authenticate("nobody@example.com", "whatever-pass")

    def test_tampered_token(self, authenticator, alice):
        token = authenticator.issue_token(alice)
        with pytest.raises(AuthenticationError):
            authenticator.resolve(token[:-2] + ("AA" if not token.endswith("AA") else "BB"))

    def test_token_from_other_secret(self, alice):
        other = Authenticator(secret_key="a-completely-different-secret-value-42")
        with pytest.raises(AuthenticationError):
            other.resolve(Authenticator(secret_key=TEST_SECRET).issue_token(alice))

    def test_expired_token(self, alice):
        issuer = Authenticator(secret_key=TEST_SECRET, token_ttl=timedelta(seconds=-1))
        with pytest.raises(AuthenticationError, match="expired"):
            issuer.resolve(issuer.issue_token(alice))

    def test_token_for_unregistered_user(self, authenticator, alice):
        stranger = Authenticator(secret_key=TEST_SECRET)
        with pytest.raises(AuthenticationError, match="Unknown user"):
            stranger.resolve(authenticator.issue_token(alice))

    def test_empty_token(self, authenticator):
        with pytest.raises(AuthenticationError, match="Access token required"):
            authenticator.resolve("")
