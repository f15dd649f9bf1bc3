# proofledger/tests/test_logging.py
import json
import logging
import sys

from proofledger.logging import JSONFormatter, bind, context, ensure_request_id, reset


def _record(msg="hello", **extra):
    rec = logging.LogRecord("proofledger.test", logging.INFO, __file__, 1, msg, None, None)
    for k, v in extra.items():
        setattr(rec, k, v)
    return rec


def test_envelope_and_picked_fields():
    reset()
    bind(req_id="r-1", caller="scale-7")
    try:
        line = JSONFormatter().format(_record(doc_type="ticket", key="TICKET_1", groups=3))
    finally:
        reset()
    evt = json.loads(line)
    for field in ("schema", "service", "version", "env", "instance", "ts", "lvl", "logger", "msg"):
        assert field in evt
    assert evt["msg"] == "hello"
    assert evt["req_id"] == "r-1"
    assert evt["caller"] == "scale-7"
    assert evt["doc_type"] == "ticket"
    assert evt["key"] == "TICKET_1"
    assert evt["meta"] == {"groups": 3}


def test_document_carrying_extras_dropped():
    evt = json.loads(JSONFormatter().format(_record(payload={"a": 1}, record={"b": 2})))
    assert "meta" not in evt


def test_exception_info():
    try:
        raise ValueError("bad weight")
    except ValueError:
        rec = logging.LogRecord("x", logging.ERROR, __file__, 1, "boom", None, sys.exc_info())
    evt = json.loads(JSONFormatter().format(rec))
    assert evt["exc_type"] == "ValueError"
    assert evt["exc_message"] == "bad weight"
    assert "Traceback" in evt["stack"]


def test_request_id_from_header_or_generated():
    reset()
    rid = ensure_request_id({"x-request-id": "abc"})
    assert rid == "abc"
    assert context()["req_id"] == "abc"
    reset()
    assert "req_id" not in context()
    assert len(ensure_request_id()) == 16
    reset()
