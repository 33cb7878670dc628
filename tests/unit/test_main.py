"""Application wiring: lifespan startup with in-memory backends."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from decertify.main import app

MEMORY_CONFIG = """
instance_id: decertify-test
store:
  backend: memory
content_store:
  strategy: memory
ledger:
  strategy: memory
  default_fee: 42
issuance:
  verification_base_url: https://verify.decertify.test/v
  confirmation_timeout_s: 2
  confirmation_poll_interval_s: 0.01
  lease_ttl_s: 30
  reconcile_interval_s: 0
logging:
  level: WARNING
  format: json
"""


@pytest.fixture
def client(tmp_path, monkeypatch):
    path = tmp_path / "config.yaml"
    path.write_text(MEMORY_CONFIG)
    monkeypatch.setenv("DECERTIFY_CONFIG_PATH", str(path))
    with TestClient(app) as test_client:
        yield test_client


def test_health_with_memory_store(client):
    response = client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["instance_id"] == "decertify-test"
    assert body["redis"] == {"status": "not_configured"}


def test_request_issued_end_to_end(client, pdf_document):
    created = client.post(
        "/api/v1/requests",
        json={"issuer_id": "org-1", "subject_id": "S-7", "period": 2023, "category": "degree"},
        headers={"X-Actor-Id": "student-7", "X-Actor-Role": "requester"},
    )
    assert created.status_code == 201
    request_id = created.json()["data"]["id"]

    decided = client.post(
        f"/api/v1/requests/{request_id}/decision",
        data={"decision": "accepted"},
        files={"document": ("certificate.pdf", pdf_document, "application/pdf")},
        headers={"X-Actor-Id": "org-1", "X-Actor-Role": "issuer"},
    )

    assert decided.status_code == 200, decided.text
    data = decided.json()["data"]
    assert data["status"] == "issued"
    assert data["issuance_fee"] == 42

    verified = client.get(f"/api/v1/verify/{request_id}").json()["data"]
    assert verified["issued"] is True
    assert verified["content_id"] == data["content_id"]
