# proofledger/tests/test_service_http.py
import json

import pytest
from fastapi.testclient import TestClient

from proofledger.config import Settings
from proofledger.service_http import create_app
from proofledger.store import InMemoryLedgerStore

from payloads import record_payload, ticket_payload


@pytest.fixture
def client():
    app = create_app(store=InMemoryLedgerStore(), settings=Settings(max_body_bytes=2048))
    return TestClient(app)


def test_healthz_readyz_version(client):
    r = client.get("/healthz")
    assert r.status_code == 200
    assert r.json()["ok"] is True
    assert r.json()["backend"] == "memory"

    r = client.get("/readyz")
    assert r.status_code == 200
    assert r.json() == {"ready": True}

    r = client.get("/version")
    assert r.status_code == 200
    assert r.json()["config_hash"] == Settings(max_body_bytes=2048).config_hash()


def test_create_and_fetch_record(client):
    r = client.post("/v1/records", json=record_payload(), headers={"X-Client-Id": "scale-7"})
    assert r.status_code == 200
    body = r.json()
    assert body["success"] is True
    assert body["record"]["createdBy"] == "scale-7"

    key = body["recordId"]
    r = client.get(f"/v1/records/{key}")
    assert r.status_code == 200
    assert r.json() == body["record"]

    r = client.get("/v1/records")
    assert [row["Key"] for row in r.json()] == [key]

    r = client.get("/v1/records/by/parent_increment", params={"value": "1"})
    assert [row["Key"] for row in r.json()] == [key]

    r = client.get(f"/v1/history/{key}")
    assert [h["IsDelete"] for h in r.json()] == [False]


def test_business_failures_are_200(client):
    r = client.post("/v1/records", content="{bad json", headers={"content-type": "application/json"})
    assert r.status_code == 200
    assert r.json()["success"] is False

    r = client.post("/v1/tickets", json={"id": "T-1"})
    assert r.status_code == 200
    assert r.json()["missingFields"] == ["receivedWeight", "incrementId"]

    client.post("/v1/records", json=record_payload(parent_increment=77))
    r = client.post("/v1/records", json=record_payload(parent_increment=77, bulk_short_id="B-9"))
    assert r.status_code == 200
    assert r.json()["message"] == "Duplicate record found"


def test_missing_key_is_404(client):
    r = client.get("/v1/tickets/TICKET_nope")
    assert r.status_code == 404
    assert r.json()["message"] == "Ticket TICKET_nope does not exist"


def test_reconcile_flow(client):
    a = client.post("/v1/records", json=record_payload(press_increment=5, chained_weight=10, parent_increment=1)).json()
    b = client.post("/v1/records", json=record_payload(press_increment=5, chained_weight=8, parent_increment=2)).json()
    assert a["success"] and b["success"]
    assert client.post("/v1/tickets", json=ticket_payload(incrementId=5, receivedWeight=15)).json()["success"]

    r = client.post("/v1/reconcile/press")
    assert r.json() == {
        "success": True,
        "results": [{"incrementId": 5, "chainedWeight": 18.0, "receivedWeight": 15.0}],
        "deletedRecords": [],
    }

    r = client.post("/v1/reconcile/press", params={"deleteViolations": "true"})
    assert sorted(r.json()["deletedRecords"]) == sorted([a["recordId"], b["recordId"]])
    assert client.get(f"/v1/records/{a['recordId']}").status_code == 404

    r = client.post("/v1/reconcile/store", params={"deleteViolations": "true"})
    assert r.json()["results"] == []

    assert client.post("/v1/reconcile/bulk").status_code == 404


def test_tickets_by_field(client):
    client.post("/v1/tickets", json=ticket_payload(id="T-1", incrementId=5))
    client.post("/v1/tickets", json=ticket_payload(id="T-2", incrementId=6))
    r = client.get("/v1/tickets/by/incrementId", params={"value": "6"})
    assert [row["Key"] for row in r.json()] == ["TICKET_T-2"]
    r = client.get("/v1/tickets/by/incrementId", params={"value": "six"})
    assert r.json() == []


def test_body_too_large(client):
    big = json.dumps(record_payload(note="x" * 4096))
    r = client.post("/v1/records", content=big, headers={"content-type": "application/json"})
    assert r.status_code == 413


def test_request_id_echoed(client):
    r = client.get("/healthz", headers={"X-Request-Id": "req-123"})
    assert r.headers["x-request-id"] == "req-123"


def test_metrics_exposed(client):
    client.post("/v1/tickets", json=ticket_payload())
    r = client.get("/metrics")
    assert r.status_code == 200
    assert "proofledger_ingest_total" in r.text
    assert "proofledger_store_ops_total" in r.text


def test_invalid_utf8_body_rejected(client):
    body = b'{"sponsor_id": "\xff\xfe"}'
    r = client.post("/v1/records", content=body, headers={"Content-Type": "application/json"})
    assert r.status_code == 200
    out = r.json()
    assert out["success"] is False
    assert out["message"].startswith("Error creating proof record: payload is not UTF-8")
    assert client.get("/v1/records").json() == []
