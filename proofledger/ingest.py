# FILE: proofledger/ingest.py
"""
Ingestion of proof records and tickets.

Both kinds follow one path, driven by the EntityKind:

    parse payload -> required fields -> duplicate policy -> key + stamps -> put

Every outcome, including malformed JSON, missing fields, a detected
duplicate and a failed write, is returned as a response dict with a
`success` flag. Nothing raises out of Ingestor.create().

Caller-supplied fields that the kind does not know about are stored
verbatim next to the system stamps (createdAt, createdBy, docType and,
for proof records, recordId).
"""
from __future__ import annotations

import json
import logging
import math
import time
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from prometheus_client import Counter, Histogram

from .context import TxContext
from .duplicates import DuplicateCheckError, DuplicateDetector
from .kinds import PROOF_RECORD, TICKET, EntityKind
from .kv import canonical_json_dumps
from .store import DOC_TYPE_FIELD

logger = logging.getLogger(__name__)

_INGEST = Counter(
    "proofledger_ingest_total",
    "Create calls by outcome",
    ["doc_type", "outcome"],
)
_INGEST_LAT = Histogram(
    "proofledger_ingest_latency_seconds",
    "Create call latency",
    ["doc_type"],
    buckets=(0.0005, 0.001, 0.002, 0.005, 0.01, 0.02, 0.05, 0.1, 0.5),
)

Payload = Union[str, bytes, bytearray, Mapping[str, Any]]


def rfc3339_now() -> str:
    """UTC, second precision, Z suffix."""
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _reject_constant(name: str) -> Any:
    raise ValueError(f"non-finite number {name} is not valid JSON")


def _parse_int(text: str) -> int:
    value = int(text)
    try:
        float(value)
    except OverflowError:
        raise ValueError(f"number {text[:32]} is out of range") from None
    return value


def _parse_float(text: str) -> float:
    value = float(text)
    if not math.isfinite(value):
        raise ValueError(f"number {text[:32]} is out of range")
    return value


def parse_payload(payload: Payload) -> Tuple[Optional[Dict[str, Any]], Optional[str]]:
    """Decode an open field map. Returns (fields, None) or (None, reason)."""
    if isinstance(payload, Mapping):
        return dict(payload), None
    if isinstance(payload, (bytes, bytearray)):
        try:
            payload = bytes(payload).decode("utf-8")
        except UnicodeDecodeError as e:
            return None, f"payload is not UTF-8: {e}"
    if not isinstance(payload, str):
        return None, "payload must be JSON text"
    try:
        doc = json.loads(
            payload,
            parse_constant=_reject_constant,
            parse_int=_parse_int,
            parse_float=_parse_float,
        )
    except ValueError as e:
        return None, str(e)
    if not isinstance(doc, dict):
        return None, "payload must be a JSON object"
    return doc, None


class Ingestor:
    def __init__(self, kind: EntityKind, *, detector: Optional[DuplicateDetector] = None):
        self.kind = kind
        self.detector = detector or DuplicateDetector()

    def _respond(self, outcome: str, **fields: Any) -> Dict[str, Any]:
        _INGEST.labels(self.kind.doc_type, outcome).inc()
        return self.kind.response_model(**fields).to_json_dict()

    def _error(self, outcome: str, reason: str, **fields: Any) -> Dict[str, Any]:
        return self._respond(
            outcome,
            success=False,
            message=f"Error creating {self.kind.label}: {reason}",
            **fields,
        )

    def create(self, ctx: TxContext, payload: Payload) -> Dict[str, Any]:
        t0 = time.perf_counter()
        try:
            return self._create(ctx, payload)
        except Exception as e:
            logger.exception(
                "unexpected failure during create",
                extra={"doc_type": self.kind.doc_type},
            )
            return self._error("error", str(e))
        finally:
            _INGEST_LAT.labels(self.kind.doc_type).observe(max(0.0, time.perf_counter() - t0))

    def _create(self, ctx: TxContext, payload: Payload) -> Dict[str, Any]:
        kind = self.kind

        fields, reason = parse_payload(payload)
        if fields is None:
            return self._error("malformed", reason or "invalid payload")

        missing = kind.missing_fields(fields)
        if missing:
            logger.info(
                "rejected: missing required fields",
                extra={"doc_type": kind.doc_type, "missing": list(missing)},
            )
            return self._error(
                "invalid",
                f"Invalid {kind.noun} data. Missing required fields.",
                missingFields=list(missing),
            )

        mistyped = kind.mistyped_fields(fields)
        if mistyped:
            logger.info(
                "rejected: fields must be non-empty strings",
                extra={"doc_type": kind.doc_type, "fields": list(mistyped)},
            )
            return self._error(
                "invalid",
                f"Invalid {kind.noun} data. Fields must be non-empty strings.",
                invalidFields=list(mistyped),
            )

        try:
            check = self.detector.find_duplicates(ctx, kind.doc_type, fields, kind.duplicate_policy)
        except DuplicateCheckError as e:
            return self._error("error", str(e))

        if check.is_duplicate:
            logger.info(
                "rejected: duplicate",
                extra={"doc_type": kind.doc_type, "fields": list(check.field_group)},
            )
            return self._respond(
                "duplicate",
                success=False,
                message=f"Duplicate {kind.noun} found",
                duplicateFields=list(check.field_group),
                **{kind.existing_field: check.existing},
            )

        key = kind.key_for(fields)
        doc = dict(fields)
        if kind.key_stamp:
            doc[kind.key_stamp] = key
        doc["createdAt"] = rfc3339_now()
        doc["createdBy"] = ctx.caller_identity()
        doc[DOC_TYPE_FIELD] = kind.doc_type

        try:
            raw = canonical_json_dumps(doc).encode("utf-8")
        except (TypeError, ValueError) as e:
            return self._error("error", str(e))

        try:
            if ctx.get(key) is not None:
                # Same key, different duplicate-policy fields: the write replaces it.
                logger.warning(
                    "overwriting existing entity at key",
                    extra={"doc_type": kind.doc_type, "key": key},
                )
            ctx.put(key, raw)
        except Exception as e:
            logger.error(
                "ledger write failed",
                extra={"doc_type": kind.doc_type, "key": key},
                exc_info=True,
            )
            return self._error("error", str(e))

        logger.info("entity created", extra={"doc_type": kind.doc_type, "key": key})
        return self._respond(
            "created",
            success=True,
            message=f"{kind.noun.capitalize()} saved successfully",
            **{kind.key_field: key, kind.entity_field: doc},
        )


def RecordIngestion(detector: Optional[DuplicateDetector] = None) -> Ingestor:
    return Ingestor(PROOF_RECORD, detector=detector)


def TicketIngestion(detector: Optional[DuplicateDetector] = None) -> Ingestor:
    return Ingestor(TICKET, detector=detector)
