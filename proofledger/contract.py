# FILE: proofledger/contract.py
"""
Named-operation surface over the ledger.

Each operation takes a TxContext plus text arguments and returns JSON text,
so the contract can sit behind any transport that dispatches by name:

    contract = ProofRecordsContract()
    out = contract.invoke(ctx, "create_proof_record", payload_json)

Business failures come back inside the JSON (success=false). Point lookups
of a missing key raise EntityNotFound; an unknown operation name raises
UnknownOperation.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Callable, Optional, Tuple, Union

from .context import TxContext
from .duplicates import DuplicateDetector
from .ingest import Ingestor
from .kinds import PROOF_RECORD, TICKET
from .queries import key_history, query_all, query_by_field, query_entity
from .reconcile import IncrementField, WeightReconciler, parse_delete_flag
from .store import LedgerError

logger = logging.getLogger(__name__)


class UnknownOperation(LedgerError):
    pass


def _dumps(obj: Any) -> str:
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False)


class ProofRecordsContract:
    _OPERATIONS: Tuple[str, ...] = (
        "init_ledger",
        "create_proof_record",
        "query_proof_record",
        "query_all_proof_records",
        "query_records_by_field",
        "get_record_history",
        "create_ticket",
        "query_ticket",
        "query_all_tickets",
        "query_tickets_by_field",
        "compare_weights_by_press_increment",
        "compare_weights_by_store_increment",
    )

    def __init__(self, *, detector: Optional[DuplicateDetector] = None):
        self._records = Ingestor(PROOF_RECORD, detector=detector)
        self._tickets = Ingestor(TICKET, detector=detector)

    @classmethod
    def operations(cls) -> Tuple[str, ...]:
        return cls._OPERATIONS

    def invoke(self, ctx: TxContext, name: str, *args: Union[str, bytes]) -> Optional[str]:
        if name not in self._OPERATIONS:
            raise UnknownOperation(f"unknown operation: {name!r}")
        fn: Callable[..., Optional[str]] = getattr(self, name)
        logger.debug("invoke", extra={"op": name, "tx_id": ctx.tx_id})
        return fn(ctx, *args)

    # ---- ledger ----

    def init_ledger(self, ctx: TxContext) -> None:
        logger.info("ledger initialized", extra={"op": "init_ledger"})
        return None

    # ---- proof records ----

    def create_proof_record(self, ctx: TxContext, record_data: Union[str, bytes]) -> str:
        return _dumps(self._records.create(ctx, record_data))

    def query_proof_record(self, ctx: TxContext, record_id: str) -> str:
        return query_entity(ctx, PROOF_RECORD, record_id)

    def query_all_proof_records(self, ctx: TxContext) -> str:
        return query_all(ctx, PROOF_RECORD)

    def query_records_by_field(self, ctx: TxContext, field_name: str, field_value: str) -> str:
        return query_by_field(ctx, PROOF_RECORD, field_name, field_value)

    def get_record_history(self, ctx: TxContext, record_id: str) -> str:
        return key_history(ctx, record_id)

    # ---- tickets ----

    def create_ticket(self, ctx: TxContext, ticket_data: Union[str, bytes]) -> str:
        return _dumps(self._tickets.create(ctx, ticket_data))

    def query_ticket(self, ctx: TxContext, ticket_key: str) -> str:
        return query_entity(ctx, TICKET, ticket_key)

    def query_all_tickets(self, ctx: TxContext) -> str:
        return query_all(ctx, TICKET)

    def query_tickets_by_field(self, ctx: TxContext, field_name: str, field_value: str) -> str:
        return query_by_field(ctx, TICKET, field_name, field_value)

    # ---- reconciliation ----

    def _compare(self, ctx: TxContext, field: IncrementField, delete_violations: str) -> str:
        result = WeightReconciler(ctx).reconcile(field, parse_delete_flag(delete_violations))
        return _dumps(result.to_json_dict())

    def compare_weights_by_press_increment(self, ctx: TxContext, delete_violations: str = "false") -> str:
        return self._compare(ctx, IncrementField.PRESS, delete_violations)

    def compare_weights_by_store_increment(self, ctx: TxContext, delete_violations: str = "false") -> str:
        return self._compare(ctx, IncrementField.STORE, delete_violations)
