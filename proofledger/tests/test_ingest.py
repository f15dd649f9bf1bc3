# proofledger/tests/test_ingest.py
import json
import re

import pytest

from proofledger.context import TxContext, static_identity
from proofledger.duplicates import DuplicateDetector
from proofledger.ingest import RecordIngestion, TicketIngestion, parse_payload
from proofledger.kinds import PROOF_RECORD
from proofledger.store import InMemoryLedgerStore, StoreError

from payloads import record_payload, ticket_payload


class _FailingPutStore(InMemoryLedgerStore):
    def put(self, key, value, *, tx_id=""):
        raise StoreError("disk full")


class _FailingQueryStore(InMemoryLedgerStore):
    def query(self, selector):
        raise StoreError("index unavailable")


def _boom():
    raise RuntimeError("no identity")


def test_create_record_success_stamps_and_roundtrip(ctx, store):
    payload = record_payload(extra_note="kept as is")
    out = RecordIngestion().create(ctx, json.dumps(payload))

    assert out["success"] is True
    assert out["message"] == "Record saved successfully"
    key = out["recordId"]
    assert re.fullmatch(r"PROOF_\d+_[0-9a-z]+", key)

    rec = out["record"]
    assert rec["recordId"] == key
    assert rec["docType"] == "proofRecord"
    assert rec["createdBy"] == "client-a"
    assert re.fullmatch(r"\d{4}-\d\d-\d\dT\d\d:\d\d:\d\dZ", rec["createdAt"])

    stored = json.loads(store.get(key))
    assert stored == rec
    for k, v in payload.items():
        assert stored[k] == v


@pytest.mark.parametrize("missing", list(PROOF_RECORD.required_fields))
def test_missing_required_field_rejected_without_write(ctx, store, missing):
    payload = record_payload(**{missing: ...})
    out = RecordIngestion().create(ctx, json.dumps(payload))
    assert out["success"] is False
    assert out["message"] == (
        "Error creating proof record: Invalid record data. Missing required fields."
    )
    assert out["missingFields"] == [missing]
    with store.query({}) as it:
        assert list(it) == []


def test_null_required_field_counts_as_missing(ctx):
    out = RecordIngestion().create(ctx, json.dumps(record_payload(bulk_name=None)))
    assert out["success"] is False
    assert out["missingFields"] == ["bulk_name"]


def test_malformed_json_is_soft_failure(ctx):
    out = RecordIngestion().create(ctx, "{not json")
    assert out["success"] is False
    assert out["message"].startswith("Error creating proof record: ")

    out = TicketIngestion().create(ctx, "[1, 2]")
    assert out["success"] is False
    assert out["message"] == "Error creating ticket: payload must be a JSON object"


def test_non_finite_numbers_rejected():
    fields, reason = parse_payload('{"a": NaN}')
    assert fields is None
    assert "NaN" in reason


def test_second_parent_only_record_is_duplicate(ctx):
    ing = RecordIngestion()
    first = ing.create(ctx, json.dumps(record_payload(parent_increment=9, bulk_short_id="B-1")))
    second = ing.create(ctx, json.dumps(record_payload(parent_increment=9, bulk_short_id="B-2")))
    assert first["success"] is True
    assert second["success"] is False
    assert second["message"] == "Duplicate record found"
    assert second["duplicateFields"] == ["press_increment", "parent_increment"]
    assert second["existingRecords"][0]["Key"] == first["recordId"]
    assert "recordId" not in second


def test_ticket_create_and_key(ctx, store):
    out = TicketIngestion().create(ctx, json.dumps(ticket_payload(id="T-7")))
    assert out["success"] is True
    assert out["message"] == "Ticket saved successfully"
    assert out["ticketKey"] == "TICKET_T-7"
    assert "recordId" not in out["ticket"]
    assert json.loads(store.get("TICKET_T-7"))["docType"] == "ticket"


def test_ticket_same_id_and_increment_is_duplicate(ctx):
    ing = TicketIngestion()
    ing.create(ctx, json.dumps(ticket_payload()))
    out = ing.create(ctx, json.dumps(ticket_payload(receivedWeight=99)))
    assert out["success"] is False
    assert out["message"] == "Duplicate ticket found"
    assert out["duplicateFields"] == ["incrementId", "id"]
    assert out["existingTickets"][0]["Key"] == "TICKET_T-1"


def test_ticket_same_id_other_increment_overwrites(ctx, store):
    ing = TicketIngestion()
    ing.create(ctx, json.dumps(ticket_payload(incrementId=5, receivedWeight=15)))
    out = ing.create(ctx, json.dumps(ticket_payload(incrementId=6, receivedWeight=20)))
    assert out["success"] is True
    assert out["ticketKey"] == "TICKET_T-1"
    current = json.loads(store.get("TICKET_T-1"))
    assert current["incrementId"] == 6
    with store.history("TICKET_T-1") as it:
        assert len(list(it)) == 2


def test_store_write_failure_is_soft():
    ctx = TxContext(store=_FailingPutStore())
    out = RecordIngestion().create(ctx, json.dumps(record_payload()))
    assert out["success"] is False
    assert out["message"] == "Error creating proof record: disk full"


def test_duplicate_check_failure_fail_open_accepts():
    ctx = TxContext(store=_FailingQueryStore())
    out = RecordIngestion().create(ctx, json.dumps(record_payload()))
    assert out["success"] is True


def test_duplicate_check_failure_fail_closed_rejects():
    ctx = TxContext(store=_FailingQueryStore())
    out = RecordIngestion(DuplicateDetector(fail_open=False)).create(ctx, json.dumps(record_payload()))
    assert out["success"] is False
    assert "duplicate check failed" in out["message"]


def test_identity_failure_gives_empty_created_by():
    ctx = TxContext(store=InMemoryLedgerStore(), identity=_boom)
    out = RecordIngestion().create(ctx, json.dumps(record_payload()))
    assert out["success"] is True
    assert out["record"]["createdBy"] == ""


def test_mapping_and_bytes_payloads_accepted():
    ctx = TxContext(store=InMemoryLedgerStore(), identity=static_identity("x"))
    assert RecordIngestion().create(ctx, record_payload(parent_increment=1))["success"]
    assert RecordIngestion().create(ctx, json.dumps(record_payload(parent_increment=2)).encode())["success"]


def _with_raw_number(doc, field, literal):
    text = json.dumps(doc)
    return text[:-1] + f', "{field}": {literal}}}'


@pytest.mark.parametrize(
    "field, literal",
    [("store_increment", "1e400"), ("parent_increment", "1" + "0" * 400), ("chained_weight", "-1e309")],
)
def test_out_of_range_numbers_rejected(ctx, store, field, literal):
    doc = record_payload()
    doc.pop(field, None)
    out = RecordIngestion().create(ctx, _with_raw_number(doc, field, literal))
    assert out["success"] is False
    assert out["message"].startswith("Error creating proof record: ")
    assert "out of range" in out["message"]
    with store.query({}) as it:
        assert list(it) == []


def test_non_finite_mapping_payload_is_soft_failure(ctx, store):
    out = RecordIngestion().create(ctx, record_payload(store_increment=float("inf")))
    assert out["success"] is False
    assert out["message"].startswith("Error creating proof record: ")
    with store.query({}) as it:
        assert list(it) == []


def test_huge_stored_increment_does_not_disable_duplicate_check(ctx, store):
    store.put(
        "PROOF_0_legacy",
        json.dumps({"docType": "proofRecord", "parent_increment": 10**400}).encode("utf-8"),
    )
    ing = RecordIngestion(detector=DuplicateDetector(fail_open=False))
    first = ing.create(ctx, json.dumps(record_payload(parent_increment=1)))
    second = ing.create(ctx, json.dumps(record_payload(parent_increment=1, bulk_short_id="B-2")))
    assert first["success"] is True
    assert second["message"] == "Duplicate record found"
    assert [r["Key"] for r in second["existingRecords"]] == [first["recordId"]]


@pytest.mark.parametrize("ticket_id", [{"a": 1}, [1, 2], 1.0, 7, ""])
def test_ticket_id_must_be_string(ctx, store, ticket_id):
    out = TicketIngestion().create(ctx, json.dumps(ticket_payload(id=ticket_id)))
    assert out["success"] is False
    assert out["message"] == "Error creating ticket: Invalid ticket data. Fields must be non-empty strings."
    assert out["invalidFields"] == ["id"]
    with store.query({}) as it:
        assert list(it) == []


def test_store_only_duplicate_reports_whole_group(ctx):
    ing = RecordIngestion()
    first = ing.create(ctx, json.dumps(record_payload(parent_increment=2, store_increment=4)))
    second = ing.create(
        ctx, json.dumps(record_payload(parent_increment=2, store_increment=4, bulk_short_id="B-9"))
    )
    assert first["success"] is True
    assert second["duplicateFields"] == ["store_increment", "press_increment", "parent_increment"]
