# FILE: proofledger/queries.py
"""Read-only lookups over the ledger. All results are JSON text."""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, List

from .context import TxContext
from .kinds import EntityKind
from .store import DOC_TYPE_FIELD, EntityNotFound, drain_results

logger = logging.getLogger(__name__)


def _dumps(obj: Any) -> str:
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False)


def query_entity(ctx: TxContext, kind: EntityKind, key: str) -> str:
    """Stored value of key, verbatim. Raises EntityNotFound when absent."""
    raw = ctx.get(key)
    if not raw:
        raise EntityNotFound(f"{kind.label.capitalize()} {key} does not exist")
    return raw.decode("utf-8", errors="replace")


def query_all(ctx: TxContext, kind: EntityKind) -> str:
    with ctx.query({DOC_TYPE_FIELD: kind.doc_type}) as it:
        return _dumps(drain_results(it))


def parse_field_value(kind: EntityKind, field_name: str, value: str) -> Any:
    """Numeric fields of the kind are matched as numbers. Raises ValueError."""
    if field_name in kind.numeric_fields:
        return float(value)
    return value


def query_by_field(ctx: TxContext, kind: EntityKind, field_name: str, value: str) -> str:
    """
    Entities of one kind whose field equals value.

    Soft: an unparsable number or a failed query gives "[]".
    """
    try:
        parsed = parse_field_value(kind, field_name, value)
    except ValueError:
        logger.info(
            "by-field query value is not a number",
            extra={"doc_type": kind.doc_type, "field": field_name, "value": value},
        )
        return "[]"

    selector = {DOC_TYPE_FIELD: kind.doc_type, field_name: parsed}
    try:
        with ctx.query(selector) as it:
            return _dumps(drain_results(it))
    except Exception:
        logger.warning(
            "by-field query failed",
            extra={"doc_type": kind.doc_type, "field": field_name},
            exc_info=True,
        )
        return "[]"


def key_history(ctx: TxContext, key: str) -> str:
    """Every version of key, oldest first."""
    out: List[Dict[str, Any]] = []
    with ctx.history(key) as it:
        for entry in it:
            record: Any = None
            if not entry.is_delete:
                text = entry.value.decode("utf-8", errors="replace")
                try:
                    record = json.loads(text)
                except ValueError:
                    record = text
            out.append(
                {
                    "TxId": entry.tx_id,
                    "Timestamp": entry.timestamp,
                    "IsDelete": entry.is_delete,
                    "Record": record,
                }
            )
    return _dumps(out)
