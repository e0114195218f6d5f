"""Tests for the HTTP adapter and the operations CLI."""

from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from vaultsync.core import (
    ConcurrencyError,
    LedgerCallFailure,
    StoreWriteFailure,
    SyncService,
)
from vaultsync.main import create_app

from conftest import IDENTITY, OWNER, make_property

TX = "0xdead" + "0" * 60


@pytest.fixture
def client(service):
    return TestClient(create_app(service))


def property_body(**overrides):
    body = {
        "domainId": "P1",
        "identity": IDENTITY,
        "name": "Villa",
        "locality": "Whitefield",
        "propertyType": "residential",
        "owner": OWNER,
        "txHash": TX,
    }
    body.update(overrides)
    return body


class TestSyncRoutes:

    def test_sync_property(self, client, ledger):
        ledger.add_confirmed(TX, from_address="0x1", to="0x2")
        response = client.post("/api/sync/property", json=property_body())

        assert response.status_code == 200
        data = response.json()
        assert data["domainId"] == "P1"
        assert data["transactions"][0]["blockNumber"] == "100"
        assert data["transactions"][0]["observedAt"] == "2023-11-14T22:13:20.000Z"

    def test_empty_locality_is_422(self, client, store):
        response = client.post("/api/sync/property", json=property_body(locality=""))
        assert response.status_code == 422
        assert response.json()["detail"]["error"] == "ValidationError"
        assert store.count() == 0

    def test_missing_tx_hash_is_422(self, client):
        body = property_body()
        del body["txHash"]
        response = client.post("/api/sync/property", json=body)
        assert response.status_code == 422

    def test_unknown_receipt_is_404(self, client):
        response = client.post("/api/sync/property", json=property_body())
        assert response.status_code == 404
        assert response.json()["detail"]["domainId"] == "P1"

    def test_sync_document(self, client):
        response = client.post(
            "/api/sync/document",
            json={"domainId": "D1", "userHandle": "alice@x.com", "documentType": "passport"},
        )
        assert response.status_code == 201
        assert response.json()["identity"].startswith("0x")

    def test_restore(self, client, ledger, store):
        store.insert(make_property())
        ledger.put_property(IDENTITY, "P1", OWNER)

        response = client.post("/api/sync/restore")

        assert response.status_code == 200
        data = response.json()
        assert data["processed"] == 1
        assert data["errors"] == 0
        assert data["outcomes"][0]["registration"] == "Registered"

    def test_health(self, client):
        response = client.get("/api/sync/health")
        assert response.status_code == 200
        data = response.json()
        assert data["healthy"] is True
        assert data["checks"]["store"]["entity_count"] == 0

    def test_request_id_echoed(self, client):
        response = client.get("/health", headers={"X-Request-ID": "req-42"})
        assert response.headers["X-Request-ID"] == "req-42"


class TestErrorMapping:

    @pytest.fixture
    def failing(self):
        service = MagicMock(spec=SyncService)
        return service, TestClient(create_app(service))

    @pytest.mark.parametrize(
        "error,status_code",
        [
            (ConcurrencyError("version mismatch", domain_id="P1"), 409),
            (LedgerCallFailure("node unreachable"), 502),
            (StoreWriteFailure("replace failed"), 502),
        ],
    )
    def test_property_errors(self, failing, error, status_code):
        service, client = failing
        service.sync_property.side_effect = error

        response = client.post("/api/sync/property", json=property_body())

        assert response.status_code == status_code
        assert response.json()["detail"]["error"] == type(error).__name__

    def test_restore_enumeration_failure_is_502(self, failing):
        service, client = failing
        service.restore_ledger_state.side_effect = StoreWriteFailure("list failed")
        response = client.post("/api/sync/restore")
        assert response.status_code == 502

    def test_unhealthy_store_is_503(self, failing):
        service, client = failing
        service.store.count.side_effect = StoreWriteFailure("count failed")
        service.ledger.default_account.return_value = OWNER
        response = client.get("/api/sync/health")
        assert response.status_code == 503
        assert response.json()["checks"]["store"]["status"] == "unhealthy"


class TestCli:

    @pytest.fixture(autouse=True)
    def keep_logging(self, monkeypatch):
        """Leave pytest's log handlers in place."""
        monkeypatch.setattr("vaultsync.observability.setup_logging", lambda: None)

    def test_derive_id(self, capsys):
        from tools.restore import main
        from vaultsync.core import IdentityDeriver

        exit_code = main(["derive-id", "--domain-id", "P1", "--name", "Villa", "--locality", "Whitefield"])

        assert exit_code == 0
        expected = IdentityDeriver().derive_property_identity("P1", "Villa", "Whitefield")
        assert capsys.readouterr().out.strip() == expected

    def test_derive_id_rejects_empty(self, capsys):
        from tools.restore import main

        exit_code = main(["derive-id", "--domain-id", "P1", "--name", "", "--locality", "Whitefield"])

        assert exit_code == 1
        assert "name is required" in capsys.readouterr().err

    def test_no_command_prints_help(self, capsys):
        from tools.restore import main

        assert main([]) == 1
