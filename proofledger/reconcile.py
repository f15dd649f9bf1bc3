# FILE: proofledger/reconcile.py
"""
Weight reconciliation between proof records and tickets.

For one increment field of the proof records (press or store increment):

  - chained weights of all proof records sharing an increment are summed;
  - received weights of all tickets sharing that increment are reduced to
    their maximum (repeated weighings of the same load, only the largest
    counts);
  - an increment is a violation when the summed chained weight is positive,
    at least one ticket contributed, and the sum strictly exceeds the
    maximum received weight.

Violations are reported sorted by integer increment id with both weights
rounded to two decimals. With delete_violations the contributing proof
records are removed from the ledger.
"""
from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional, Tuple

from prometheus_client import Counter, Histogram

from .context import TxContext
from .kinds import PROOF_RECORD, TICKET
from .schemas import ComparisonResponse, ProofRecord, Ticket, Violation
from .store import DOC_TYPE_FIELD, drain_results

logger = logging.getLogger(__name__)

_RUNS = Counter(
    "proofledger_reconcile_runs_total",
    "Reconciliation runs by outcome",
    ["increment_field", "outcome"],
)
_VIOLATIONS = Counter(
    "proofledger_reconcile_violations_total",
    "Violating increments reported",
    ["increment_field"],
)
_DELETED = Counter(
    "proofledger_reconcile_deleted_records_total",
    "Proof records deleted as part of a violation",
    ["increment_field"],
)
_RUN_LAT = Histogram(
    "proofledger_reconcile_latency_seconds",
    "Reconciliation latency",
    ["increment_field"],
    buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0),
)


class IncrementField(str, enum.Enum):
    PRESS = "press_increment"
    STORE = "store_increment"


def round2(value: float) -> float:
    """Round to 2 decimals, half away from zero on value * 100."""
    scaled = Decimal(value * 100).quantize(Decimal(1), rounding=ROUND_HALF_UP)
    return float(scaled) / 100


def parse_delete_flag(text: Any) -> bool:
    # Only the exact text "true" enables deletion.
    return text == "true"


@dataclass
class GroupData:
    chained_weight_sum: float = 0.0
    received_weight_max: Optional[float] = None
    ticket_count: int = 0
    record_keys: List[str] = field(default_factory=list)

    def add_record(self, key: str, chained_weight: float) -> None:
        self.chained_weight_sum += chained_weight
        self.record_keys.append(key)

    def add_ticket(self, received_weight: float) -> None:
        if self.received_weight_max is None or received_weight > self.received_weight_max:
            self.received_weight_max = received_weight
        self.ticket_count += 1

    def is_violation(self) -> bool:
        return (
            self.chained_weight_sum > 0
            and self.ticket_count > 0
            and self.received_weight_max is not None
            and self.chained_weight_sum > self.received_weight_max
        )


@dataclass
class ReconcileResult:
    success: bool
    results: List[Violation] = field(default_factory=list)
    deleted_records: List[str] = field(default_factory=list)
    message: Optional[str] = None

    def to_json_dict(self) -> Dict[str, Any]:
        return ComparisonResponse(
            success=self.success,
            results=self.results,
            deletedRecords=self.deleted_records,
            message=self.message,
        ).to_json_dict()


class WeightReconciler:
    def __init__(self, ctx: TxContext):
        self.ctx = ctx

    def _scan(self, doc_type: str) -> List[Dict[str, Any]]:
        with self.ctx.query({DOC_TYPE_FIELD: doc_type}) as it:
            return drain_results(it)

    def group(
        self,
        increment_field: IncrementField,
        records: List[Dict[str, Any]],
        tickets: List[Dict[str, Any]],
    ) -> Dict[float, GroupData]:
        groups: Dict[float, GroupData] = {}

        for item in records:
            rec = ProofRecord.from_document(item.get("Record"))
            if rec is None:
                continue
            inc = rec.increment(increment_field.value)
            if inc is None or rec.chained_weight is None:
                continue
            groups.setdefault(inc, GroupData()).add_record(item["Key"], rec.chained_weight)

        for item in tickets:
            t = Ticket.from_document(item.get("Record"))
            if t is None or t.increment_id is None or t.received_weight is None:
                continue
            groups.setdefault(t.increment_id, GroupData()).add_ticket(t.received_weight)

        return groups

    def _delete_all(self, keys: List[str], increment_field: IncrementField) -> List[str]:
        deleted: List[str] = []
        for key in keys:
            try:
                self.ctx.delete(key)
            except Exception:
                logger.warning(
                    "failed to delete violating record",
                    extra={"key": key, "increment_field": increment_field.value},
                    exc_info=True,
                )
                continue
            deleted.append(key)
        return deleted

    def reconcile(self, increment_field: IncrementField, delete_violations: bool) -> ReconcileResult:
        increment_field = IncrementField(increment_field)
        label = increment_field.value
        t0 = time.perf_counter()
        try:
            try:
                records = self._scan(PROOF_RECORD.doc_type)
                tickets = self._scan(TICKET.doc_type)
            except Exception as e:
                logger.error(
                    "reconciliation scan failed",
                    extra={"increment_field": label},
                    exc_info=True,
                )
                _RUNS.labels(label, "error").inc()
                return ReconcileResult(success=False, message=f"Error comparing weights: {e}")

            groups = self.group(increment_field, records, tickets)

            violating: List[Tuple[float, GroupData]] = sorted(
                ((inc, g) for inc, g in groups.items() if g.is_violation()),
                key=lambda pair: (int(pair[0]), pair[0]),
            )
            results = [
                Violation(
                    incrementId=int(inc),
                    chainedWeight=round2(g.chained_weight_sum),
                    receivedWeight=round2(g.received_weight_max),
                )
                for inc, g in violating
            ]

            deleted: List[str] = []
            if delete_violations:
                for _, g in violating:
                    deleted.extend(self._delete_all(g.record_keys, increment_field))

            _RUNS.labels(label, "ok").inc()
            _VIOLATIONS.labels(label).inc(len(results))
            _DELETED.labels(label).inc(len(deleted))
            logger.info(
                "reconciliation finished",
                extra={
                    "increment_field": label,
                    "groups": len(groups),
                    "violations": len(results),
                    "deleted": len(deleted),
                },
            )
            return ReconcileResult(success=True, results=results, deleted_records=deleted)
        finally:
            _RUN_LAT.labels(label).observe(max(0.0, time.perf_counter() - t0))
