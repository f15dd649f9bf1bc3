# FILE: proofledger/context.py
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional

from .store import LedgerStore, QueryIterator

logger = logging.getLogger(__name__)


IdentityResolver = Callable[[], str]


def _anonymous() -> str:
    return ""


@dataclass
class TxContext:
    """
    Per-invocation view of the ledger.

    One context is built for each externally invoked operation and dropped
    when it returns. Every write made through it is tagged with `tx_id` in
    the key history. The identity resolver is whatever the host runtime
    provides (auth header, mTLS principal, ...); its failures never abort
    an operation.
    """

    store: LedgerStore
    identity: IdentityResolver = _anonymous
    tx_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def caller_identity(self) -> str:
        try:
            ident = self.identity()
        except Exception:
            logger.warning("caller identity lookup failed; using empty identity", exc_info=True)
            return ""
        return "" if ident is None else str(ident)

    # Thin pass-throughs so call sites never need the raw store.

    def get(self, key: str) -> Optional[bytes]:
        return self.store.get(key)

    def put(self, key: str, value: bytes) -> None:
        self.store.put(key, value, tx_id=self.tx_id)

    def delete(self, key: str) -> None:
        self.store.delete(key, tx_id=self.tx_id)

    def query(self, selector: Mapping[str, Any]) -> QueryIterator:
        return self.store.query(selector)

    def history(self, key: str) -> QueryIterator:
        return self.store.history(key)


def static_identity(principal: str) -> IdentityResolver:
    """Resolver that always returns `principal`."""

    def _resolve() -> str:
        return principal

    return _resolve


__all__ = ["TxContext", "IdentityResolver", "static_identity"]
