# proofledger/tests/conftest.py
from __future__ import annotations

import pytest

from proofledger.context import TxContext, static_identity
from proofledger.store import InMemoryLedgerStore, SQLiteLedgerStore


@pytest.fixture
def store():
    return InMemoryLedgerStore()


@pytest.fixture
def sqlite_store(tmp_path):
    s = SQLiteLedgerStore(str(tmp_path / "ledger.db"))
    yield s
    s.close()


@pytest.fixture(params=["memory", "sqlite"])
def any_store(request, tmp_path):
    if request.param == "memory":
        yield InMemoryLedgerStore()
        return
    s = SQLiteLedgerStore(str(tmp_path / "ledger.db"))
    yield s
    s.close()


@pytest.fixture
def ctx(store):
    return TxContext(store=store, identity=static_identity("client-a"))
