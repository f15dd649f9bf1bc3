# FILE: proofledger/schemas.py
from __future__ import annotations

import math
from typing import Any, ClassVar, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator


# =============================================================================
# Numeric normalization
# =============================================================================


def json_number(value: Any) -> Optional[float]:
    """
    Normalize a value decoded from untyped JSON into a float.

    Accepts ints and finite floats only. Booleans, strings, containers,
    None and non-finite values give None; callers treat None as "skip".
    """
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    try:
        f = float(value)
    except (OverflowError, ValueError):
        return None
    if not math.isfinite(f):
        return None
    return f


# =============================================================================
# Create responses
# =============================================================================


class _Envelope(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    def to_json_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class CreateRecordResponse(_Envelope):
    """
    Result of a proof record create call.

    Optional fields are omitted from the JSON when not set, so a success
    carries recordId/record and a duplicate rejection carries
    duplicateFields/existingRecords.
    """

    success: bool
    message: str
    record_id: Optional[str] = Field(None, alias="recordId")
    record: Optional[Dict[str, Any]] = None
    missing_fields: Optional[List[str]] = Field(None, alias="missingFields")
    invalid_fields: Optional[List[str]] = Field(None, alias="invalidFields")
    duplicate_fields: Optional[List[str]] = Field(None, alias="duplicateFields")
    existing_records: Optional[List[Dict[str, Any]]] = Field(None, alias="existingRecords")


class CreateTicketResponse(_Envelope):
    success: bool
    message: str
    ticket_key: Optional[str] = Field(None, alias="ticketKey")
    ticket: Optional[Dict[str, Any]] = None
    missing_fields: Optional[List[str]] = Field(None, alias="missingFields")
    invalid_fields: Optional[List[str]] = Field(None, alias="invalidFields")
    duplicate_fields: Optional[List[str]] = Field(None, alias="duplicateFields")
    existing_tickets: Optional[List[Dict[str, Any]]] = Field(None, alias="existingTickets")


# =============================================================================
# Reconciliation
# =============================================================================


class Violation(BaseModel):
    """One increment whose summed chained weight exceeds the received weight."""

    model_config = ConfigDict(populate_by_name=True)

    increment_id: int = Field(..., alias="incrementId")
    chained_weight: float = Field(..., alias="chainedWeight")
    received_weight: float = Field(..., alias="receivedWeight")


class ComparisonResponse(_Envelope):
    success: bool
    results: List[Violation] = Field(default_factory=list)
    deleted_records: List[str] = Field(default_factory=list, alias="deletedRecords")
    message: Optional[str] = None


# =============================================================================
# Stored entity views
# =============================================================================


class _EntityView(BaseModel):
    """
    Typed core over an open stored document.

    Fields the view does not declare travel in model_extra and come back
    out of to_document() unchanged. Numeric core fields are normalized with
    json_number(); a value of the wrong JSON type reads as None.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    NUMERIC_FIELDS: ClassVar[Tuple[str, ...]] = ()

    @model_validator(mode="before")
    @classmethod
    def _normalize_numbers(cls, data: Any) -> Any:
        if isinstance(data, dict):
            data = dict(data)
            for name in cls.NUMERIC_FIELDS:
                if name in data:
                    data[name] = json_number(data[name])
        return data

    @classmethod
    def from_document(cls, doc: Any) -> Optional["_EntityView"]:
        if not isinstance(doc, dict):
            return None
        try:
            return cls.model_validate(doc)
        except ValidationError:
            return None

    def to_document(self) -> Dict[str, Any]:
        out = self.model_dump(by_alias=True, exclude_unset=True)
        out.update(self.model_extra or {})
        return out


class ProofRecord(_EntityView):
    NUMERIC_FIELDS: ClassVar[Tuple[str, ...]] = (
        "parent_increment",
        "store_increment",
        "press_increment",
        "chained_weight",
    )

    doc_type: Optional[str] = Field(None, alias="docType")
    record_id: Optional[str] = Field(None, alias="recordId")
    parent_increment: Optional[float] = None
    store_increment: Optional[float] = None
    press_increment: Optional[float] = None
    chained_weight: Optional[float] = None

    def increment(self, field_name: str) -> Optional[float]:
        return getattr(self, field_name, None)


class Ticket(_EntityView):
    NUMERIC_FIELDS: ClassVar[Tuple[str, ...]] = ("incrementId", "receivedWeight")

    doc_type: Optional[str] = Field(None, alias="docType")
    ticket_id: Any = Field(None, alias="id")
    increment_id: Optional[float] = Field(None, alias="incrementId")
    received_weight: Optional[float] = Field(None, alias="receivedWeight")
