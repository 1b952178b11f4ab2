"""
Agency Desk — Operator API.

FastAPI application providing:
- Queue views (unassigned / assigned to me / all) per item kind
- Claim, release and reassign
- Validate / reject transactions, resolve / close support requests
- Transaction and request submission
- Commission quotes, totals and history
- Agent recharge requests and commission transfers
- Operation type catalog

Authentication is handled upstream: the gateway forwards the operator's
identity in the ``X-Actor-Id`` and ``X-Actor-Role`` headers.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from agency_desk.bootstrap import Desk, build_desk, configure_logging
from agency_desk.config import settings
from agency_desk.domain.errors import (
    DeskError,
    InsufficientCommissions,
    InvalidAmount,
    InvalidConfiguration,
    InvalidTransition,
    ItemNotFound,
    MissingProof,
    MissingReason,
    NoMatchingTier,
    NotOwner,
    OperationTypeUnavailable,
    StaleOwnership,
    Unauthorized,
)
from agency_desk.domain.schema import (
    Actor,
    ItemKind,
    ItemRef,
    OperationType,
    OperationTypeStatus,
    Role,
    parse_commission_config,
)
from agency_desk.governance.authorization import Capability
from agency_desk.ledger.client import LedgerError
from agency_desk.pricing.engine import describe_commission, resolve_commission
from agency_desk.queue.partition import partition, sort_recent_first

logger = logging.getLogger(__name__)


# ── Pydantic request models ────────────────────────────────────


class ReassignRequest(BaseModel):
    target_id: str
    target_role: Role


class RejectRequest(BaseModel):
    reason: str = ""


class ResolveRequest(BaseModel):
    response: str = ""


class CloseRequest(BaseModel):
    reason: str = ""
    detail: str | None = None


class TransactionSubmission(BaseModel):
    op_type_id: str
    principal_amount: Decimal
    fees: Decimal = Decimal("0")
    data: dict[str, Any] = Field(default_factory=dict)
    proof_url: str | None = None


class RequestSubmission(BaseModel):
    type: str = "general"
    subject: str = ""
    description: str | None = None
    attachment_url: str | None = None


class QuoteRequest(BaseModel):
    commission_config: dict[str, Any] | None = None
    principal_amount: Decimal


class RechargeSubmission(BaseModel):
    chef_id: str = ""
    amount: Decimal
    motive: str | None = None


class RechargeRejection(BaseModel):
    reason: str = ""


class CommissionTransferRequest(BaseModel):
    amount: Decimal
    transfer_id: str | None = None


class DeskState:
    """Mutable application state injected at startup."""

    def __init__(self) -> None:
        self.desk: Desk | None = None
        self.startup_time: datetime = datetime.now(timezone.utc)


state = DeskState()


# ── Application lifecycle ──────────────────────────────────────


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup & shutdown lifecycle — wire the desk unless one was injected."""
    owned = False
    if state.desk is None:
        configure_logging()
        state.desk = build_desk(settings)
        owned = True
    logger.info("Agency Desk API starting — currency %s", settings.currency_code)

    yield

    if owned and state.desk is not None:
        state.desk.close()
        state.desk = None
    logger.info("Agency Desk API shut down")


app = FastAPI(
    title="Agency Desk — Operator API",
    description="Validation queue and commission engine for the agency network",
    version="0.1.0",
    lifespan=lifespan,
)


# ── Error mapping ──────────────────────────────────────────────

_STATUS_CODES: dict[type[DeskError], int] = {
    StaleOwnership: 409,
    InvalidTransition: 409,
    OperationTypeUnavailable: 409,
    InsufficientCommissions: 409,
    NotOwner: 403,
    Unauthorized: 403,
    ItemNotFound: 404,
    MissingReason: 422,
    MissingProof: 422,
    InvalidAmount: 422,
    InvalidConfiguration: 422,
    NoMatchingTier: 422,
}


def status_code_for(exc: DeskError) -> int:
    for cls in type(exc).__mro__:
        if cls in _STATUS_CODES:
            return _STATUS_CODES[cls]
    return 400


@app.exception_handler(DeskError)
async def desk_error_handler(request: Request, exc: DeskError) -> JSONResponse:
    status_code = status_code_for(exc)
    logger.info("%s %s -> %d %s: %s", request.method, request.url.path, status_code, exc.code, exc)
    return JSONResponse(
        status_code=status_code,
        content={"error": exc.code, "detail": exc.message, "recoverable": exc.recoverable},
    )


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    logger.error("Ledger failure on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=502,
        content={"error": "LedgerError", "detail": str(exc), "recoverable": True},
    )


# ── Dependencies ───────────────────────────────────────────────


def get_desk() -> Desk:
    if state.desk is None:
        raise HTTPException(status_code=503, detail="Desk not initialized")
    return state.desk


def current_actor(
    x_actor_id: str | None = Header(default=None),
    x_actor_role: str | None = Header(default=None),
    x_actor_name: str = Header(default=""),
) -> Actor:
    if not x_actor_id or not x_actor_role:
        raise HTTPException(status_code=401, detail="Missing X-Actor-Id / X-Actor-Role headers")
    try:
        role = Role(x_actor_role)
    except ValueError:
        raise HTTPException(status_code=403, detail=f"Unknown role: {x_actor_role}") from None
    return Actor(id=x_actor_id, role=role, name=x_actor_name)


def _dump(model: BaseModel) -> dict[str, Any]:
    return model.model_dump(mode="json", by_alias=True)


# ── Routes: Queue ──────────────────────────────────────────────


@app.get("/api/queue/{kind}")
def api_queue(
    kind: ItemKind,
    view: str = "unassigned",
    status: str | None = None,
    limit: int = 200,
    actor: Actor = Depends(current_actor),
    desk: Desk = Depends(get_desk),
):
    """Queue view for the calling operator, most recent first, with tab counts."""
    items = sort_recent_first(desk.store.list_items(kind, status=status, limit=limit))
    queues = partition(items, actor)
    try:
        selected = queues.view(view)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from None
    return {
        "kind": kind.value,
        "view": view,
        "counts": queues.counts(),
        "items": [_dump(item) for item in selected],
    }


@app.get("/api/items/{kind}/{item_id}")
def api_item(kind: ItemKind, item_id: str, desk: Desk = Depends(get_desk)):
    item = desk.store.get(kind, item_id)
    if item is None:
        raise ItemNotFound(f"No item {kind.value}/{item_id}")
    return _dump(item)


# ── Routes: Assignment ─────────────────────────────────────────


@app.post("/api/items/{kind}/{item_id}/claim")
def api_claim(
    kind: ItemKind,
    item_id: str,
    actor: Actor = Depends(current_actor),
    desk: Desk = Depends(get_desk),
):
    item = desk.assignment.claim(ItemRef(kind=kind, id=item_id), actor)
    return _dump(item)


@app.post("/api/items/{kind}/{item_id}/release")
def api_release(
    kind: ItemKind,
    item_id: str,
    actor: Actor = Depends(current_actor),
    desk: Desk = Depends(get_desk),
):
    item = desk.assignment.release(ItemRef(kind=kind, id=item_id), actor)
    return _dump(item)


@app.post("/api/items/{kind}/{item_id}/reassign")
def api_reassign(
    kind: ItemKind,
    item_id: str,
    req: ReassignRequest,
    actor: Actor = Depends(current_actor),
    desk: Desk = Depends(get_desk),
):
    target = Actor(id=req.target_id, role=req.target_role)
    item = desk.assignment.reassign(ItemRef(kind=kind, id=item_id), actor, target)
    return _dump(item)


# ── Routes: Terminal transitions ───────────────────────────────


@app.post("/api/transactions/{item_id}/validate")
def api_validate(item_id: str, actor: Actor = Depends(current_actor), desk: Desk = Depends(get_desk)):
    outcome = desk.validation.validate(ItemRef(kind=ItemKind.TRANSACTION, id=item_id), actor)
    return _dump(outcome)


@app.post("/api/transactions/{item_id}/reject")
def api_reject(
    item_id: str,
    req: RejectRequest,
    actor: Actor = Depends(current_actor),
    desk: Desk = Depends(get_desk),
):
    outcome = desk.validation.reject(
        ItemRef(kind=ItemKind.TRANSACTION, id=item_id), actor, req.reason
    )
    return _dump(outcome)


@app.post("/api/requests/{item_id}/resolve")
def api_resolve(
    item_id: str,
    req: ResolveRequest,
    actor: Actor = Depends(current_actor),
    desk: Desk = Depends(get_desk),
):
    outcome = desk.validation.resolve(
        ItemRef(kind=ItemKind.REQUEST, id=item_id), actor, req.response
    )
    return _dump(outcome)


@app.post("/api/requests/{item_id}/close")
def api_close(
    item_id: str,
    req: CloseRequest,
    actor: Actor = Depends(current_actor),
    desk: Desk = Depends(get_desk),
):
    outcome = desk.validation.close(
        ItemRef(kind=ItemKind.REQUEST, id=item_id), actor, req.reason, req.detail
    )
    return _dump(outcome)


# ── Routes: Submission ─────────────────────────────────────────


@app.post("/api/transactions", status_code=201)
def api_submit_transaction(
    req: TransactionSubmission,
    actor: Actor = Depends(current_actor),
    desk: Desk = Depends(get_desk),
):
    txn = desk.submission.submit_transaction(
        actor,
        req.op_type_id,
        req.principal_amount,
        fees=req.fees,
        data=req.data,
        proof_url=req.proof_url,
    )
    return _dump(txn)


@app.post("/api/requests", status_code=201)
def api_submit_request(
    req: RequestSubmission,
    actor: Actor = Depends(current_actor),
    desk: Desk = Depends(get_desk),
):
    request = desk.submission.submit_request(
        actor, req.type, req.subject, req.description, req.attachment_url
    )
    return _dump(request)


# ── Routes: Operation types ────────────────────────────────────


@app.get("/api/operation-types")
def api_operation_types(status: OperationTypeStatus | None = None, desk: Desk = Depends(get_desk)):
    return [
        {**_dump(op_type), "commission_summary": describe_commission(op_type.commission_config)}
        for op_type in desk.store.list_operation_types(status)
    ]


@app.put("/api/operation-types/{op_type_id}")
def api_save_operation_type(
    op_type_id: str,
    payload: dict[str, Any],
    actor: Actor = Depends(current_actor),
    desk: Desk = Depends(get_desk),
):
    """Create or replace an operation type. Developers and the admin general only."""
    desk.authorization.require_capability(actor, Capability.CONFIGURE_OPERATION_TYPES)
    try:
        op_type = OperationType.model_validate({**payload, "id": op_type_id})
    except ValueError as exc:
        raise InvalidConfiguration(str(exc)) from None
    return _dump(desk.store.save_operation_type(op_type))


# ── Routes: Commissions ────────────────────────────────────────


@app.post("/api/commissions/quote")
def api_commission_quote(req: QuoteRequest, desk: Desk = Depends(get_desk)):
    """Preview the commission a configuration yields for one principal."""
    config = parse_commission_config(req.commission_config)
    commission = resolve_commission(config, req.principal_amount, desk.currency_decimals)
    return {
        "principal_amount": str(req.principal_amount),
        "commission": str(commission),
        "summary": describe_commission(config),
    }


@app.get("/api/commissions/totals")
def api_commission_totals(
    agent_id: list[str] | None = Query(default=None),
    desk: Desk = Depends(get_desk),
):
    totals = desk.reporting.commission_totals_by_agent(agent_id)
    return {"totals": {agent: str(total) for agent, total in totals.items()}}


@app.get("/api/commissions/{agent_id}")
def api_commission_summary(agent_id: str, limit: int = 50, desk: Desk = Depends(get_desk)):
    return _dump(desk.reporting.summary(agent_id, limit=limit))


@app.get("/api/commissions/{holder_id}/due")
def api_commissions_due(holder_id: str, desk: Desk = Depends(get_desk)):
    return {"holder_id": holder_id, "commissions_due": str(desk.funds.commissions_due(holder_id))}


@app.post("/api/commissions/transfers")
def api_transfer_commissions(
    req: CommissionTransferRequest,
    actor: Actor = Depends(current_actor),
    desk: Desk = Depends(get_desk),
):
    """Move due commissions onto the caller's balance. Chef d'agence only."""
    outcome = desk.funds.transfer_commissions(actor, req.amount, transfer_id=req.transfer_id)
    return _dump(outcome)


# ── Routes: Recharges ──────────────────────────────────────────


@app.post("/api/recharges", status_code=201)
def api_request_recharge(
    req: RechargeSubmission,
    actor: Actor = Depends(current_actor),
    desk: Desk = Depends(get_desk),
):
    recharge = desk.funds.request_recharge(actor, req.chef_id, req.amount, req.motive)
    return _dump(recharge)


@app.get("/api/recharges/pending")
def api_pending_recharges(actor: Actor = Depends(current_actor), desk: Desk = Depends(get_desk)):
    """Pending requests addressed to the calling chef."""
    return [_dump(recharge) for recharge in desk.funds.pending_recharges(actor)]


@app.get("/api/recharges/history")
def api_recharge_history(
    limit: int = 5,
    actor: Actor = Depends(current_actor),
    desk: Desk = Depends(get_desk),
):
    """The calling agent's most recent requests."""
    return [_dump(recharge) for recharge in desk.funds.recharge_history(actor.id, limit=limit)]


@app.post("/api/recharges/{recharge_id}/approve")
def api_approve_recharge(
    recharge_id: str,
    actor: Actor = Depends(current_actor),
    desk: Desk = Depends(get_desk),
):
    return _dump(desk.funds.approve_recharge(recharge_id, actor))


@app.post("/api/recharges/{recharge_id}/reject")
def api_reject_recharge(
    recharge_id: str,
    req: RechargeRejection,
    actor: Actor = Depends(current_actor),
    desk: Desk = Depends(get_desk),
):
    return _dump(desk.funds.reject_recharge(recharge_id, actor, req.reason))


# ── Health Check ───────────────────────────────────────────────


@app.get("/health")
async def health():
    """Health check endpoint."""
    return JSONResponse({
        "status": "healthy" if state.desk is not None else "starting",
        "uptime_seconds": (datetime.now(timezone.utc) - state.startup_time).total_seconds(),
        "store": type(state.desk.store).__name__ if state.desk else None,
        "ledger": type(state.desk.ledger).__name__ if state.desk else None,
        "currency": settings.currency_code,
    })


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "agency_desk.api.app:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )
