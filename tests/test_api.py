"""HTTP API tests against the in-memory container and simulated chain."""

import pytest
import pytest_asyncio
from eth_account import Account
from fastapi import WebSocketDisconnect
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient

from cryptopay_core.api.dependencies import get_container
from cryptopay_core.api.main import create_app

from conftest import private_key_of


@pytest.fixture
def app():
    return create_app()


@pytest_asyncio.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


async def _register(client, email, account=None):
    body = {"email": email, "password": "correct-horse"}
    if account is not None:
        body["walletAddress"] = account.address
    response = await client.post("/api/auth/register", json=body)
    assert response.status_code == 201, response.text
    return response.json()["data"]["token"]


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


async def _send(client, token, sender, recipient, amount="0.1"):
    created = await client.post(
        "/api/wallet/transaction",
        json={"toAddress": recipient.address, "amount": amount, "currency": "ETH"},
        headers=_auth(token),
    )
    assert created.status_code == 201, created.text
    executed = await client.post(
        f"/api/transactions/{created.json()['data']['transaction']['id']}/execute",
        json={"privateKey": private_key_of(sender)},
        headers=_auth(token),
    )
    assert executed.status_code == 200, executed.text
    return executed.json()["data"]["transactionHash"]


@pytest.fixture
def payer_account():
    account = Account.create()
    get_container().ledger.fund(account.address, eth="5", cpx="100")
    return account


@pytest.fixture
def payee_account():
    return Account.create()


@pytest.mark.asyncio
class TestAuthRoutes:

    async def test_register_and_login(self, client, payee_account):
        await _register(client, "payee@example.com", payee_account)

        response = await client.post("/api/auth/login", json={"email": "payee@example.com", "password": "correct-horse"})
        assert response.status_code == 200
        token = response.json()["data"]["token"]

        me = await client.get("/api/auth/me", headers=_auth(token))
        assert me.json()["data"]["user"]["walletAddress"] == payee_account.address.lower()

    async def test_bad_login(self, client):
        response = await client.post("/api/auth/login", json={"email": "nobody@example.com", "password": "whatever-pass"})
        assert response.status_code == 401
        assert response.json() == {"success": False, "message": "Invalid credentials", "error": "AUTHENTICATION_ERROR"}

    async def test_token_required(self, client):
        response = await client.get("/api/transactions/payment-requests")
        assert response.status_code == 401
        assert response.json()["message"] == "Access token required"

    async def test_invalid_token(self, client):
        response = await client.get("/api/auth/me", headers=_auth("not-a-jwt"))
        assert response.status_code == 401


@pytest.mark.asyncio
class TestPaymentFlow:

    async def test_request_and_pay(self, client, payer_account, payee_account):
        """Test a payment request paid over HTTP is completed."""
        payee_token = await _register(client, "payee@example.com", payee_account)
        payer_token = await _register(client, "payer@example.com", payer_account)

        created = await client.post(
            "/api/transactions/payment-requests",
            json={"amount": "0.25", "currency": "ETH", "description": "Lunch"},
            headers=_auth(payee_token),
        )
        assert created.status_code == 201
        request_id = created.json()["data"]["paymentRequest"]["id"]

        public = await client.get(f"/api/transactions/payment-requests/{request_id}")
        assert public.status_code == 200
        assert public.json()["data"]["paymentRequest"]["status"] == "pending"

        paid = await client.post(
            f"/api/transactions/payment-requests/{request_id}/pay",
            json={"privateKey": private_key_of(payer_account)},
            headers=_auth(payer_token),
        )
        body = paid.json()
        assert paid.status_code == 200, body
        assert body["success"] is True
        assert body["data"]["status"] == "confirmed"

        again = await client.post(
            f"/api/transactions/payment-requests/{request_id}/pay",
            json={"privateKey": private_key_of(payer_account)},
            headers=_auth(payer_token),
        )
        assert again.status_code == 409
        assert again.json()["success"] is False

        listing = await client.get("/api/transactions/payment-requests", headers=_auth(payee_token))
        assert listing.json()["data"]["paymentRequests"][0]["status"] == "completed"

        history = await client.get(f"/api/wallet/history/{payer_account.address}", headers=_auth(payer_token))
        assert history.json()["data"]["pagination"]["total"] == 1

    async def test_private_key_not_echoed(self, client, payer_account, payee_account):
        payee_token = await _register(client, "payee@example.com", payee_account)
        payer_token = await _register(client, "payer@example.com", payer_account)
        created = await client.post(
            "/api/transactions/payment-requests",
            json={"amount": "1", "currency": "ETH", "description": "Rent"},
            headers=_auth(payee_token),
        )
        request_id = created.json()["data"]["paymentRequest"]["id"]
        bad_key = "0x" + "ab" * 31

        response = await client.post(
            f"/api/transactions/payment-requests/{request_id}/pay",
            json={"privateKey": bad_key},
            headers=_auth(payer_token),
        )

        assert response.status_code == 400
        assert bad_key not in response.text

    async def test_unknown_request(self, client):
        response = await client.get("/api/transactions/payment-requests/preq_missing")
        assert response.status_code == 404
        assert response.json()["error"] == "NOT_FOUND"

    async def test_validation_error_shape(self, client, payee_account):
        token = await _register(client, "payee@example.com", payee_account)
        response = await client.post(
            "/api/transactions/payment-requests", json={"currency": "ETH"}, headers=_auth(token)
        )
        body = response.json()
        assert response.status_code == 400
        assert body["error"] == "VALIDATION_ERROR"
        assert body["data"]["errors"]

    async def test_direct_transfer(self, client, payer_account, payee_account):
        payer_token = await _register(client, "payer@example.com", payer_account)
        created = await client.post(
            "/api/wallet/transaction",
            json={"toAddress": payee_account.address, "amount": "0.1", "currency": "ETH"},
            headers=_auth(payer_token),
        )
        assert created.status_code == 201
        tx_id = created.json()["data"]["transaction"]["id"]

        executed = await client.post(
            f"/api/transactions/{tx_id}/execute",
            json={"privateKey": private_key_of(payer_account)},
            headers=_auth(payer_token),
        )
        assert executed.status_code == 200, executed.text

        fetched = await client.get(f"/api/wallet/transaction/{tx_id}", headers=_auth(payer_token))
        assert fetched.json()["data"]["transaction"]["status"] == "confirmed"

        stats = await client.get("/api/transactions/stats?period=7d", headers=_auth(payer_token))
        assert stats.status_code == 200

    async def test_history_of_other_wallet_denied(self, client, payer_account, payee_account):
        token = await _register(client, "payer@example.com", payer_account)
        response = await client.get(f"/api/wallet/history/{payee_account.address}", headers=_auth(token))
        assert response.status_code == 403
        assert response.json()["message"] == "Access denied"


@pytest.mark.asyncio
class TestWalletAndContractRoutes:

    async def test_balance(self, client, payer_account):
        token = await _register(client, "payer@example.com", payer_account)
        response = await client.get(f"/api/wallet/balance/{payer_account.address}", headers=_auth(token))
        balances = response.json()["data"]["balances"]
        assert balances["eth"]["ether"] == "5"
        assert balances["cpx"]["ether"] == "100"

    async def test_estimate_gas(self, client, payer_account, payee_account):
        token = await _register(client, "payer@example.com", payer_account)
        response = await client.post(
            "/api/wallet/estimate-gas",
            json={"toAddress": payee_account.address, "amount": "1", "currency": "ETH"},
            headers=_auth(token),
        )
        data = response.json()["data"]
        assert data["gasEstimate"] == "21000"
        assert data["gasLimit"] == "25200"

    async def test_validate_address(self, client, payee_account):
        await _register(client, "payee@example.com", payee_account)
        response = await client.get(f"/api/wallet/validate/{payee_account.address}")
        data = response.json()["data"]
        assert data["isValid"] is True
        assert data["addressInfo"]["isRegistered"] is True

        invalid = await client.get("/api/wallet/validate/0x1234")
        assert invalid.json()["data"]["isValid"] is False

    async def test_config_update_requires_admin(self, client, payee_account):
        token = await _register(client, "payee@example.com", payee_account)
        response = await client.put("/api/contract/config", json={"chainId": 5}, headers=_auth(token))
        assert response.status_code == 403

    async def test_admin_config_update(self, client):
        container = get_container()
        admin = container.authenticator.register("ops@example.com", "ops-password", role="admin")
        token = container.authenticator.issue_token(admin)

        response = await client.put("/api/contract/config", json={"chainId": 5}, headers=_auth(token))
        assert response.status_code == 200, response.text

        current = await client.get("/api/contract/config", headers=_auth(token))
        assert current.json()["data"]["config"]["chainId"] == 5

    async def test_replaced_ledger_client_closed_on_shutdown(self, app, monkeypatch):
        """Test every ledger client swapped out by a config update is closed at shutdown."""
        closed = []

        def tracking(client, name):
            async def close():
                closed.append(name)
            monkeypatch.setattr(client, "close", close)

        async with app.router.lifespan_context(app):
            container = get_container()
            tracking(container.ledger, "original")
            container.replace_ledger_client(chain_id=5)
            tracking(container.ledger, "first replacement")
            container.replace_ledger_client(chain_id=6)
            tracking(container.ledger, "active")
            assert closed == []

        assert sorted(closed) == ["active", "first replacement", "original"]

    async def test_gas_price(self, client, payee_account):
        token = await _register(client, "payee@example.com", payee_account)
        response = await client.get("/api/contract/gas-price", headers=_auth(token))
        data = response.json()["data"]
        assert int(data["gasPrice"]["wei"]) > 0
        assert data["gasPrice"]["gwei"] == "20"

    async def test_block_number(self, client, payee_account):
        token = await _register(client, "payee@example.com", payee_account)
        first = await client.get("/api/contract/block-number", headers=_auth(token))
        second = await client.get("/api/contract/block-number", headers=_auth(token))
        assert first.status_code == 200
        assert second.json()["data"]["blockNumber"] >= first.json()["data"]["blockNumber"] > 0

    async def test_token_balance(self, client, payer_account):
        token = await _register(client, "payer@example.com", payer_account)
        response = await client.get(f"/api/contract/token/balance/{payer_account.address}", headers=_auth(token))
        data = response.json()["data"]
        assert data["address"] == payer_account.address.lower()
        assert data["balance"]["ether"] == "100"

        bad = await client.get("/api/contract/token/balance/0x1234", headers=_auth(token))
        assert bad.status_code == 400

    async def test_receipt_and_wait_for_sent_transaction(self, client, payer_account, payee_account):
        """Test a broadcast hash can be looked up and waited on by hash alone."""
        token = await _register(client, "payer@example.com", payer_account)
        tx_hash = await _send(client, token, payer_account, payee_account)

        receipt = await client.get(f"/api/contract/transaction/{tx_hash}/receipt", headers=_auth(token))
        assert receipt.status_code == 200, receipt.text
        view = receipt.json()["data"]["receipt"]
        assert view["transactionHash"] == tx_hash
        assert view["status"] == "success"
        assert view["gasUsed"] == "21000"

        waited = await client.post(
            f"/api/contract/transaction/{tx_hash}/wait",
            json={"confirmations": 2, "timeout": 2},
            headers=_auth(token),
        )
        assert waited.status_code == 200, waited.text
        assert waited.json()["data"]["receipt"]["blockNumber"] == view["blockNumber"]

    async def test_receipt_lookup_errors(self, client, payee_account):
        token = await _register(client, "payee@example.com", payee_account)
        missing = await client.get(f"/api/contract/transaction/0x{'ab' * 32}/receipt", headers=_auth(token))
        assert missing.status_code == 404
        assert missing.json()["error"] == "NOT_FOUND"

        malformed = await client.get("/api/contract/transaction/0x1234/receipt", headers=_auth(token))
        assert malformed.status_code == 400

    async def test_wait_bounds_and_timeout(self, client, payee_account):
        """Test confirmation waits are capped at 20 and time out with a distinct status."""
        token = await _register(client, "payee@example.com", payee_account)
        path = f"/api/contract/transaction/0x{'cd' * 32}/wait"

        too_many = await client.post(path, json={"confirmations": 21}, headers=_auth(token))
        assert too_many.status_code == 400

        timed_out = await client.post(path, json={"confirmations": 1, "timeout": 0.2}, headers=_auth(token))
        assert timed_out.status_code == 504
        assert timed_out.json()["error"] == "CONFIRMATION_TIMEOUT"

    async def test_webhooks(self, client, payee_account):
        token = await _register(client, "payee@example.com", payee_account)
        created = await client.post(
            "/api/notifications/webhooks",
            json={"url": "https://hooks.example.com/cp", "events": ["payment-received"]},
            headers=_auth(token),
        )
        assert created.status_code == 201, created.text

        listed = await client.get("/api/notifications/webhooks", headers=_auth(token))
        assert len(listed.json()["data"]["webhooks"]) == 1

        bad = await client.post("/api/notifications/webhooks", json={"url": "ftp://x"}, headers=_auth(token))
        assert bad.status_code == 400


@pytest.mark.asyncio
class TestHealth:

    async def test_root(self, client):
        response = await client.get("/")
        assert response.json()["service"] == "CryptoPay API"

    async def test_health(self, client):
        response = await client.get("/health")
        body = response.json()
        assert body["status"] == "healthy"
        assert body["components"]["ledger"] == "up"

    async def test_request_id_header(self, client):
        response = await client.get("/", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"


class TestNotificationSocket:

    def test_rejects_missing_token(self, app):
        client = TestClient(app)
        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect("/ws/notifications") as ws:
                ws.receive_json()

    def test_connected_message(self, app):
        container = get_container()
        identity = container.authenticator.register("ws@example.com", "ws-password")
        token = container.authenticator.issue_token(identity)

        client = TestClient(app)
        with client.websocket_connect(f"/ws/notifications?token={token}") as ws:
            message = ws.receive_json()
        assert message == {"event": "connected", "data": {"userId": identity.user_id}}
