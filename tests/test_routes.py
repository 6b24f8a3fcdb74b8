"""HTTP surface tests using FastAPI's TestClient with in-memory fakes."""

import pytest
from fastapi.testclient import TestClient

from provisioner.main import app
from provisioner.services.remote_job_client import CREATE_BUNDLE_ENDPOINT, CREATE_PRIMARY_ENDPOINT
from provisioner.services.session import SessionManager
from tests.fakes import make_account, times_out


@pytest.fixture
def client(monkeypatch, jobs, store, config):
    monkeypatch.setenv("ORCHESTRATOR_BASE_URL", "http://jobs.test")
    monkeypatch.setenv("SUPABASE_URL", "http://store.test")
    monkeypatch.setenv("SUPABASE_ANON_KEY", "anon-key")
    with TestClient(app) as c:
        app.state.session_manager = SessionManager(job_client=jobs, store=store, config=config)
        yield c


def connect(client, identity_key="wallet-X"):
    response = client.post("/session/connect", json={"identity_key": identity_key})
    assert response.status_code == 200
    return response.json()


class TestSession:
    def test_root(self, client):
        assert client.get("/").json() == {"message": "Provisioning orchestrator is running."}

    def test_no_session(self, client):
        response = client.get("/session")
        assert response.status_code == 409

    def test_connect_unregistered(self, client):
        body = connect(client)

        assert body["identity_key"] == "wallet-X"
        assert body["state"] == "unregistered"
        assert body["account"] is None

    def test_connect_existing(self, client, store):
        store.accounts["wallet-X"] = make_account(secondary_key="dev-pk")

        body = connect(client)

        assert body["state"] == "primary_created"
        assert body["account"]["secondary"]["status"] == "ready"

    def test_connect_store_failure(self, client, store):
        store.fail_next_reads = 1

        response = client.post("/session/connect", json={"identity_key": "wallet-X"})

        assert response.status_code == 502

    def test_connect_requires_identity(self, client):
        assert client.post("/session/connect", json={"identity_key": ""}).status_code == 422

    def test_disconnect(self, client):
        connect(client)

        assert client.post("/session/disconnect").json() == {"disconnected": True}
        assert client.get("/session").status_code == 409


class TestAccounts:
    def test_create_primary(self, client, jobs, store):
        def created(payload):
            store.accounts["wallet-X"] = make_account(eta_seconds=90)
            return {"distributor_public_key": "primary-pk", "dev_wallet_ready_in_seconds": 90}

        jobs.on(CREATE_PRIMARY_ENDPOINT, created)
        connect(client)

        first = client.post("/accounts/primary").json()
        second = client.post("/accounts/primary").json()

        assert first["outcome"] == "created"
        assert first["account"]["secondary"]["eta_seconds"] == 90
        assert first["operation"]["status"] == "succeeded"
        assert second["outcome"] == "already_provisioned"
        assert len(jobs.calls) == 1

    def test_verify_secondary_balance_not_ready(self, client, store):
        store.accounts["wallet-X"] = make_account()
        connect(client)

        response = client.post("/accounts/verify-secondary-balance")

        assert response.status_code == 409
        assert response.json()["category"] == "RESOURCE_NOT_READY"


class TestBundles:
    def test_create_and_list(self, client, jobs, store):
        store.accounts["wallet-X"] = make_account()
        jobs.on(CREATE_BUNDLE_ENDPOINT, lambda payload: {"bundler_id": 4})
        connect(client)

        created = client.post("/bundles", json={"units": 2, "idempotency_key": "b-1"}).json()
        listed = client.get("/bundles").json()

        assert created["bundle"]["id"] == "4"
        assert created["bundle"]["idempotency_key"] == "b-1"
        assert created["pending"] is False
        assert created["operation"]["timeout_seconds"] == 300.0
        assert listed["count"] == 1

    def test_timed_out_bundle_is_pending(self, client, jobs, store):
        store.accounts["wallet-X"] = make_account()
        jobs.on(CREATE_BUNDLE_ENDPOINT, times_out)
        connect(client)

        body = client.post("/bundles", json={"units": 1}).json()

        assert body["pending"] is True
        assert body["bundle"] is None
        assert body["operation"]["category"] == "TIMEOUT_UNKNOWN_OUTCOME"

    def test_invalid_units(self, client, store):
        store.accounts["wallet-X"] = make_account()
        connect(client)

        assert client.post("/bundles", json={"units": 0}).status_code == 422

    def test_insufficient_balance(self, client, store):
        store.accounts["wallet-X"] = make_account(balance="1")
        connect(client)

        response = client.post("/bundles", json={"units": 3})

        assert response.status_code == 422
        assert response.json()["category"] == "SERVER_REJECTED_VALIDATION"


class TestResources:
    def test_deferred_until_ready(self, client, store):
        store.accounts["wallet-X"] = make_account()
        connect(client)

        body = client.post(
            "/resources", json={"name": "Moon", "symbol": "MOON", "idempotency_key": "r-1"}
        ).json()

        assert body["deferred"] is True
        assert body["idempotency_key"] == "r-1"
        assert "secondary account is still being prepared" in body["message"]

    def test_symbol_too_long(self, client, store):
        store.accounts["wallet-X"] = make_account()
        connect(client)

        assert client.post("/resources", json={"name": "Moon", "symbol": "TOOLONG"}).status_code == 422

    def test_sell_percent_validation(self, client, store):
        store.accounts["wallet-X"] = make_account()
        connect(client)

        assert client.post("/resources/sell", json={"percent": 0}).status_code == 422


class TestNotifications:
    def test_missing_fields(self, client):
        response = client.post("/api/notifications", json={"type": "DEV_WALLET_READY"})
        assert response.status_code == 400

    def test_unknown_type(self, client):
        response = client.post(
            "/api/notifications", json={"type": "NOPE", "message": "x", "user_wallet_id": "wallet-X"}
        )
        assert response.status_code == 400

    def test_no_session_is_acknowledged(self, client):
        response = client.post(
            "/api/notifications",
            json={"type": "DEV_WALLET_READY", "message": "ready", "user_wallet_id": "wallet-X"},
        )
        assert response.json() == {"ok": True, "applied": False, "changed": []}

    def test_applied_to_active_session(self, client, store):
        store.accounts["wallet-X"] = make_account()
        connect(client)
        payload = {
            "type": "DEV_WALLET_READY",
            "message": "Dev wallet ready",
            "user_wallet_id": "wallet-X",
            "dev_public_key": "dev-pk",
        }

        first = client.post("/api/notifications", json=payload).json()
        second = client.post("/api/notifications", json=payload).json()
        events = client.get("/session/events").json()

        assert first["applied"] is True
        assert "secondary_public_key" in first["changed"]
        assert second["applied"] is False
        assert [e["name"] for e in events["events"]].count("account_ready") == 1
