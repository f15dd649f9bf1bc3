# FILE: proofledger/service_http.py
from __future__ import annotations

import contextlib
import time
from typing import Any, Dict, Optional, Union

from fastapi import FastAPI, Query, Request, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.concurrency import run_in_threadpool

from . import __version__
from .config import Settings, get_settings
from .context import TxContext, static_identity
from .contract import ProofRecordsContract
from .duplicates import DuplicateDetector
from .logging import RequestLogMiddleware, get_logger
from .store import EntityNotFound, LedgerStore, make_store

_REQ_COUNTER = Counter(
    "proofledger_http_requests_total",
    "HTTP requests",
    ["route", "status"],
)
_REQ_LATENCY = Histogram(
    "proofledger_http_request_latency_seconds",
    "HTTP request latency in seconds",
    ["route"],
)

_INCREMENT_OPS = {
    "press": "compare_weights_by_press_increment",
    "store": "compare_weights_by_store_increment",
}


def _json_text(text: Optional[str], status_code: int = status.HTTP_200_OK) -> Response:
    return Response(content=text or "null", media_type="application/json", status_code=status_code)


def create_app(store: Optional[LedgerStore] = None, settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the HTTP surface of the ledger.

    Every ledger route runs one contract operation inside a fresh TxContext
    whose caller identity is the configured caller header. Business failures
    are 200 with success=false; unknown keys are 404; oversized bodies 413.

    `store` defaults to make_store(settings.store_dsn); a store created here
    is closed on shutdown, a store passed in is left to the caller.
    """
    settings = settings or get_settings().get()
    owns_store = store is None
    ledger: LedgerStore = store if store is not None else make_store(settings.store_dsn)

    logger = get_logger("proofledger.http", level=settings.log_level)
    contract = ProofRecordsContract(
        detector=DuplicateDetector(fail_open=settings.duplicate_fail_open)
    )

    @contextlib.asynccontextmanager
    async def lifespan(_app: FastAPI):
        logger.info(
            "service starting",
            extra={"config_hash": settings.config_hash(), "backend": ledger.backend},
        )
        yield
        if owns_store:
            ledger.close()

    app = FastAPI(
        title=settings.service_name,
        version=__version__,
        openapi_url="/openapi.json" if settings.enable_docs else None,
        docs_url="/docs" if settings.enable_docs else None,
        redoc_url="/redoc" if settings.enable_docs else None,
        lifespan=lifespan,
    )
    app.state.store = ledger
    app.state.contract = contract
    app.state.settings = settings

    @app.middleware("http")
    async def body_size_guard(request: Request, call_next):
        cl = request.headers.get("content-length")
        if cl is not None:
            try:
                cl_v = int(cl)
            except ValueError:
                return JSONResponse({"detail": "invalid content-length"}, status_code=400)
            if cl_v > settings.max_body_bytes:
                return JSONResponse({"detail": "body too large"}, status_code=413)

        t0 = time.perf_counter()
        response = await call_next(request)
        route = getattr(request.scope.get("route"), "path", "unmatched")
        _REQ_LATENCY.labels(route).observe(max(0.0, time.perf_counter() - t0))
        _REQ_COUNTER.labels(route, str(response.status_code)).inc()
        response.headers["X-Proofledger-Api-Version"] = settings.api_version
        return response

    app.add_middleware(RequestLogMiddleware, caller_header=settings.caller_header)

    @app.exception_handler(EntityNotFound)
    async def _not_found(_request: Request, exc: EntityNotFound) -> JSONResponse:
        return JSONResponse({"success": False, "message": str(exc)}, status_code=404)

    # -----------------------------------------------------------------------
    # Helpers
    # -----------------------------------------------------------------------

    def _ctx(request: Request) -> TxContext:
        return TxContext(
            store=ledger,
            identity=static_identity(request.headers.get(settings.caller_header, "")),
        )

    async def _body(request: Request) -> Optional[bytes]:
        raw = await request.body()
        if len(raw) > settings.max_body_bytes:
            return None
        return raw

    async def _invoke(request: Request, op: str, *args: Union[str, bytes]) -> Response:
        out = await run_in_threadpool(contract.invoke, _ctx(request), op, *args)
        return _json_text(out)

    async def _create(request: Request, op: str) -> Response:
        raw = await _body(request)
        if raw is None:
            return JSONResponse({"detail": "body too large"}, status_code=413)
        return await _invoke(request, op, raw)

    # -----------------------------------------------------------------------
    # Endpoints: health / ready / version / metrics
    # -----------------------------------------------------------------------

    @app.get("/metrics")
    def metrics() -> Response:
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    @app.get("/healthz")
    def healthz() -> Dict[str, Any]:
        return {
            "ok": True,
            "config_hash": settings.config_hash(),
            "api_version": settings.api_version,
            "backend": ledger.backend,
        }

    @app.get("/readyz")
    def readyz() -> Response:
        try:
            ledger.get("__readyz__")
        except Exception:
            logger.warning("readiness probe failed", exc_info=True)
            return JSONResponse({"ready": False}, status_code=503)
        return JSONResponse({"ready": True})

    @app.get("/version")
    def version() -> Dict[str, Any]:
        return {
            "version": __version__,
            "api_version": settings.api_version,
            "config_hash": settings.config_hash(),
            "config_origin": settings.config_origin,
        }

    # -----------------------------------------------------------------------
    # Endpoints: proof records
    # -----------------------------------------------------------------------

    @app.post("/v1/records")
    async def create_record(request: Request) -> Response:
        return await _create(request, "create_proof_record")

    @app.get("/v1/records")
    async def list_records(request: Request) -> Response:
        return await _invoke(request, "query_all_proof_records")

    @app.get("/v1/records/by/{field}")
    async def records_by_field(request: Request, field: str, value: str = Query(...)) -> Response:
        return await _invoke(request, "query_records_by_field", field, value)

    @app.get("/v1/records/{key}")
    async def get_record(request: Request, key: str) -> Response:
        return await _invoke(request, "query_proof_record", key)

    @app.get("/v1/history/{key}")
    async def record_history(request: Request, key: str) -> Response:
        return await _invoke(request, "get_record_history", key)

    # -----------------------------------------------------------------------
    # Endpoints: tickets
    # -----------------------------------------------------------------------

    @app.post("/v1/tickets")
    async def create_ticket(request: Request) -> Response:
        return await _create(request, "create_ticket")

    @app.get("/v1/tickets")
    async def list_tickets(request: Request) -> Response:
        return await _invoke(request, "query_all_tickets")

    @app.get("/v1/tickets/by/{field}")
    async def tickets_by_field(request: Request, field: str, value: str = Query(...)) -> Response:
        return await _invoke(request, "query_tickets_by_field", field, value)

    @app.get("/v1/tickets/{key}")
    async def get_ticket(request: Request, key: str) -> Response:
        return await _invoke(request, "query_ticket", key)

    # -----------------------------------------------------------------------
    # Endpoints: reconciliation
    # -----------------------------------------------------------------------

    @app.post("/v1/reconcile/{increment}")
    async def reconcile(
        request: Request,
        increment: str,
        delete_violations: str = Query("false", alias="deleteViolations"),
    ) -> Response:
        op = _INCREMENT_OPS.get(increment)
        if op is None:
            return JSONResponse(
                {"detail": f"unknown increment {increment!r}; expected press or store"},
                status_code=404,
            )
        return await _invoke(request, op, delete_violations)

    return app
