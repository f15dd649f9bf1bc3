# FILE: proofledger/duplicates.py
"""
Conditional duplicate detection for incoming ledger entities.

A policy is an ordered list of field-group rules. Each rule names the fields
whose values must all be equal on an already-stored entity of the same kind,
and the presence conditions under which the rule applies to a candidate:

    FieldGroupRule(("press_increment", "parent_increment"),
                   when_absent=("store_increment",))

Evaluation:
  - eligible rules are tried in declaration order;
  - the selector for a rule is {docType} plus every field of the group that
    is non-null on the candidate (a field missing on the candidate is left
    out of the match, it is NOT required to be missing on the stored entity);
  - the first rule whose query returns anything wins, later rules are not
    tried.

Query failures are fail-open by default: they are logged and counted and the
candidate is treated as unique. Setting fail_open=False turns them into
DuplicateCheckError so ingestion rejects the candidate instead.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from prometheus_client import Counter

from .context import TxContext
from .store import DOC_TYPE_FIELD, LedgerError, drain_results

logger = logging.getLogger(__name__)

_DUP_FOUND = Counter(
    "proofledger_duplicates_found_total",
    "Candidates rejected as duplicates",
    ["doc_type"],
)
_DUP_FAIL_OPEN = Counter(
    "proofledger_duplicate_check_fail_open_total",
    "Duplicate checks that failed and were treated as no-duplicate",
    ["doc_type"],
)


class DuplicateCheckError(LedgerError):
    """Raised when a duplicate query fails and the policy is fail-closed."""


def _present(candidate: Mapping[str, Any], name: str) -> bool:
    return candidate.get(name) is not None


@dataclass(frozen=True)
class FieldGroupRule:
    fields: Tuple[str, ...]
    when_present: Tuple[str, ...] = ()
    when_absent: Tuple[str, ...] = ()

    def applies_to(self, candidate: Mapping[str, Any]) -> bool:
        return all(_present(candidate, f) for f in self.when_present) and not any(
            _present(candidate, f) for f in self.when_absent
        )

    def selector_fields(self, candidate: Mapping[str, Any]) -> Tuple[str, ...]:
        return tuple(f for f in self.fields if _present(candidate, f))


@dataclass(frozen=True)
class DuplicatePolicy:
    rules: Tuple[FieldGroupRule, ...]
    fail_open: bool = True


@dataclass
class DuplicateCheck:
    """
    Outcome of a duplicate check.

    field_group:
        The declared field group of the rule that matched. This is what callers
        report as duplicate fields.
    matched_fields:
        The subset of field_group that was actually compared (fields non-null
        on the candidate).
    existing:
        The conflicting stored entities as [{"Key": ..., "Record": ...}].
    """

    is_duplicate: bool
    field_group: Tuple[str, ...] = ()
    matched_fields: Tuple[str, ...] = ()
    existing: List[Dict[str, Any]] = field(default_factory=list)


class DuplicateDetector:
    def __init__(self, *, fail_open: Optional[bool] = None):
        self._fail_open = fail_open

    def _is_fail_open(self, policy: DuplicatePolicy) -> bool:
        return policy.fail_open if self._fail_open is None else self._fail_open

    def find_duplicates(
        self,
        ctx: TxContext,
        doc_type: str,
        candidate: Mapping[str, Any],
        policy: DuplicatePolicy,
    ) -> DuplicateCheck:
        for rule in policy.rules:
            if not rule.applies_to(candidate):
                continue
            matched = rule.selector_fields(candidate)
            if not matched:
                # A kind-only selector would flag every stored entity.
                continue
            selector: Dict[str, Any] = {DOC_TYPE_FIELD: doc_type}
            for f in matched:
                selector[f] = candidate[f]

            try:
                with ctx.query(selector) as it:
                    existing = drain_results(it)
            except Exception as e:
                if not self._is_fail_open(policy):
                    raise DuplicateCheckError(f"duplicate check failed: {e}") from e
                _DUP_FAIL_OPEN.labels(doc_type).inc()
                logger.warning(
                    "duplicate check query failed; treating as no duplicate",
                    extra={"doc_type": doc_type, "fields": list(matched)},
                    exc_info=True,
                )
                continue

            if existing:
                _DUP_FOUND.labels(doc_type).inc()
                return DuplicateCheck(
                    is_duplicate=True,
                    field_group=rule.fields,
                    matched_fields=matched,
                    existing=existing,
                )

        return DuplicateCheck(is_duplicate=False)


# Proof records: which increments a candidate carries decides which group is
# checked. Order matters; the first eligible group with a hit wins.
PROOF_RECORD_DUPLICATE_POLICY = DuplicatePolicy(
    rules=(
        FieldGroupRule(
            ("store_increment", "press_increment", "parent_increment"),
            when_present=("store_increment",),
        ),
        FieldGroupRule(
            ("press_increment", "parent_increment"),
            when_absent=("store_increment",),
        ),
        FieldGroupRule(
            ("parent_increment", "store_increment"),
            when_absent=("press_increment",),
        ),
        FieldGroupRule(
            ("parent_increment",),
            when_absent=("press_increment", "store_increment"),
        ),
    )
)

TICKET_DUPLICATE_POLICY = DuplicatePolicy(
    rules=(FieldGroupRule(("incrementId", "id")),),
)
