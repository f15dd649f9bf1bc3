# FILE: proofledger/kinds.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, FrozenSet, Mapping, Optional, Tuple, Type

from .duplicates import (
    PROOF_RECORD_DUPLICATE_POLICY,
    TICKET_DUPLICATE_POLICY,
    DuplicatePolicy,
)
from .kv import new_record_key, new_ticket_key
from .schemas import CreateRecordResponse, CreateTicketResponse


@dataclass(frozen=True)
class EntityKind:
    """
    One kind of ledger entity and everything kind-specific about it.

    doc_type:
        Value of the `docType` discriminator stamped on stored documents.
    label / noun:
        Used in response messages ("Error creating proof record: Invalid
        record data ...").
    key_for:
        Storage key derivation from the candidate field map.
    key_stamp:
        If set, the assigned key is also written into the document under
        this field name.
    key_field / entity_field / existing_field / response_model:
        Names used in the create response envelope.
    numeric_fields:
        Fields compared as numbers in by-field queries.
    text_fields:
        Required fields that must be non-empty JSON strings.
    """

    doc_type: str
    label: str
    noun: str
    required_fields: Tuple[str, ...]
    duplicate_policy: DuplicatePolicy
    key_for: Callable[[Mapping[str, Any]], str]
    key_field: str
    entity_field: str
    existing_field: str
    response_model: Type[Any]
    numeric_fields: FrozenSet[str] = frozenset()
    key_stamp: Optional[str] = None
    text_fields: Tuple[str, ...] = ()

    def missing_fields(self, fields: Mapping[str, Any]) -> Tuple[str, ...]:
        return tuple(f for f in self.required_fields if fields.get(f) is None)

    def mistyped_fields(self, fields: Mapping[str, Any]) -> Tuple[str, ...]:
        return tuple(
            f for f in self.text_fields if not isinstance(fields.get(f), str) or not fields[f]
        )


PROOF_RECORD = EntityKind(
    doc_type="proofRecord",
    label="proof record",
    noun="record",
    required_fields=(
        "sponsor_id",
        "proof_short_id",
        "collector_name",
        "bulk_name",
        "parent_increment",
        "chained_weight",
        "traceChainType",
        "bulk_short_id",
    ),
    duplicate_policy=PROOF_RECORD_DUPLICATE_POLICY,
    key_for=new_record_key,
    key_field="recordId",
    entity_field="record",
    existing_field="existingRecords",
    response_model=CreateRecordResponse,
    numeric_fields=frozenset(
        {"parent_increment", "store_increment", "press_increment", "chained_weight"}
    ),
    key_stamp="recordId",
)

TICKET = EntityKind(
    doc_type="ticket",
    label="ticket",
    noun="ticket",
    required_fields=("id", "receivedWeight", "incrementId"),
    duplicate_policy=TICKET_DUPLICATE_POLICY,
    key_for=lambda fields: new_ticket_key(fields["id"]),
    key_field="ticketKey",
    entity_field="ticket",
    existing_field="existingTickets",
    response_model=CreateTicketResponse,
    numeric_fields=frozenset({"incrementId", "receivedWeight"}),
    text_fields=("id",),
)

KINDS = {k.doc_type: k for k in (PROOF_RECORD, TICKET)}


def kind_for(doc_type: str) -> EntityKind:
    try:
        return KINDS[doc_type]
    except KeyError:
        raise ValueError(f"unknown docType: {doc_type!r}") from None
