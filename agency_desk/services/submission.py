"""
Submission Service — new transactions and support requests enter the queue.

A transaction's commission is resolved here, once, from the operation
type's configuration at submission time. It is stored on the transaction
and never recomputed, even if the configuration changes later. When the
operation type impacts the agent's balance, the principal is reserved
through the ledger before the transaction becomes visible in the queue; if
the transaction then cannot be stored, the reservation is released again.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any

from agency_desk.domain.errors import (
    InvalidAmount,
    MissingProof,
    MissingReason,
    OperationTypeUnavailable,
)
from agency_desk.domain.schema import (
    Actor,
    OperationType,
    OperationTypeStatus,
    Request,
    SettlementAction,
    SettlementInstruction,
    Transaction,
    TransitionEvent,
)
from agency_desk.ledger.client import LedgerClient, LedgerError
from agency_desk.notifications.sink import Notifier
from agency_desk.pricing.engine import DEFAULT_CURRENCY_DECIMALS, resolve_commission
from agency_desk.store.base import ItemStore

logger = logging.getLogger(__name__)

_UNAVAILABLE_MESSAGES = {
    OperationTypeStatus.INACTIVE: "This service is temporarily unavailable for maintenance",
    OperationTypeStatus.ARCHIVED: "This service is no longer available",
}


def _to_amount(value: Decimal | int | str, name: str) -> Decimal:
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except ArithmeticError:
        raise InvalidAmount(f"{name} must be a number, got {value!r}") from None
    if not amount.is_finite() or amount < 0:
        raise InvalidAmount(f"{name} must be a non-negative number, got {value!r}")
    return amount


class SubmissionService:
    """Creates queue items on behalf of agents and requesters."""

    def __init__(
        self,
        store: ItemStore,
        ledger: LedgerClient,
        notifier: Notifier | None = None,
        currency_decimals: int = DEFAULT_CURRENCY_DECIMALS,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.notifier = notifier or Notifier()
        self.currency_decimals = currency_decimals

    def available_operation_type(self, op_type_id: str) -> OperationType:
        """
        Return the operation type if it accepts submissions.

        Raises:
            OperationTypeUnavailable: If it is unknown, inactive or archived.
        """
        op_type = self.store.get_operation_type(op_type_id)
        if op_type is None:
            raise OperationTypeUnavailable(
                f"Operation type {op_type_id} not found", status="not_found"
            )
        if op_type.status != OperationTypeStatus.ACTIVE:
            raise OperationTypeUnavailable(
                _UNAVAILABLE_MESSAGES[op_type.status], status=op_type.status.value
            )
        return op_type

    def submit_transaction(
        self,
        agent: Actor,
        op_type_id: str,
        principal_amount: Decimal | int | str,
        fees: Decimal | int | str = Decimal("0"),
        data: dict[str, Any] | None = None,
        proof_url: str | None = None,
    ) -> Transaction:
        """
        Submit a new operation for validation.

        Args:
            agent: The submitting agent (or chef d'agence acting as agent).
            op_type_id: The operation type being performed.
            principal_amount: Amount the operation moves.
            fees: Fees charged to the customer on top of the principal.
            data: Submitted form values, stored as-is.
            proof_url: Location of the uploaded proof document.

        Returns:
            The new UNASSIGNED transaction.

        Raises:
            OperationTypeUnavailable: If the type does not accept submissions.
            MissingProof: If the type requires a proof and none was given.
            InvalidAmount: If an amount is negative or not a number.
            InvalidConfiguration, NoMatchingTier: If the commission cannot be
                resolved; the transaction is not created.
        """
        op_type = self.available_operation_type(op_type_id)
        if op_type.proof_required and not (proof_url or "").strip():
            raise MissingProof(f"Operation type {op_type.name} requires a proof document")

        principal = _to_amount(principal_amount, "Principal amount")
        fee_amount = _to_amount(fees, "Fees")
        commission = resolve_commission(
            op_type.commission_config, principal, self.currency_decimals
        )

        txn = Transaction(
            agent_id=agent.id,
            op_type_id=op_type.id,
            principal_amount=principal,
            fees=fee_amount,
            total_amount=principal + fee_amount,
            commission_generated=commission,
            reserved_amount=principal if op_type.impacts_balance else Decimal("0"),
            data=dict(data or {}),
            proof_url=proof_url,
        )

        if op_type.impacts_balance:
            self.ledger.settle(
                SettlementInstruction(
                    item_id=txn.id,
                    action=SettlementAction.RESERVE,
                    amount=principal,
                    payee_id=agent.id,
                )
            )

        try:
            self.store.insert(txn)
        except Exception:
            if op_type.impacts_balance:
                self._undo_reservation(txn)
            raise
        logger.info(
            "Transaction submitted: id=%s op_type=%s principal=%s commission=%s",
            txn.id[:8], op_type.id, principal, commission,
        )
        self.notifier.notify(
            TransitionEvent(
                item_id=txn.id,
                kind=txn.kind,
                action="submit",
                actor_id=agent.id,
                to_status=txn.status.value,
                details={"op_type_id": op_type.id, "principal": str(principal)},
            )
        )
        return txn

    def _undo_reservation(self, txn: Transaction) -> None:
        """Release the hold of a transaction that could not be stored."""
        logger.warning("Insert failed for %s; releasing its reservation", txn.id[:8])
        try:
            self.ledger.settle(
                SettlementInstruction(
                    item_id=txn.id,
                    action=SettlementAction.RELEASE,
                    amount=txn.reserved_amount,
                    payee_id=txn.agent_id,
                )
            )
        except LedgerError as exc:
            logger.error(
                "Reservation for %s left in place, release failed: %s", txn.id, exc
            )

    def submit_request(
        self,
        requester: Actor,
        request_type: str,
        subject: str,
        description: str | None = None,
        attachment_url: str | None = None,
    ) -> Request:
        """Open a support request. ``subject`` is mandatory."""
        if not (subject or "").strip():
            raise MissingReason("A support request needs a subject")

        request = Request(
            requester_id=requester.id,
            type=request_type,
            subject=subject.strip(),
            description=description,
            attachment_url=attachment_url,
        )
        self.store.insert(request)
        logger.info("Request submitted: id=%s type=%s", request.id[:8], request_type)
        self.notifier.notify(
            TransitionEvent(
                item_id=request.id,
                kind=request.kind,
                action="submit",
                actor_id=requester.id,
                to_status=request.status.value,
            )
        )
        return request
