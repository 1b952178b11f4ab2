"""
Funds Service — recharge requests and commission transfers.

    request   agent       -> PENDING recharge addressed to its chef
    approve   chef        PENDING -> APPROVED   ledger: fund agent from chef
    reject    chef        PENDING -> REJECTED   (reason required)
    transfer  chef        commissions due -> operating balance   ledger: payout

Only the chef a recharge is addressed to may decide it, and a decision is
final. Approval settles first: a chef whose balance is short gets a
``LedgerError`` and the request stays PENDING. Repeating a decision that
already happened is a no-op success that re-delivers the same keyed
instruction.

A commission transfer is capped at the commissions still due, checked by
the store in the same statement that records the transfer. Passing the
same ``transfer_id`` again after a ledger failure re-delivers the payout
instead of recording a second transfer.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal

from pydantic import BaseModel

from agency_desk.domain.errors import (
    InsufficientCommissions,
    InvalidAmount,
    InvalidTransition,
    ItemNotFound,
    MissingReason,
    NotOwner,
)
from agency_desk.domain.schema import (
    Actor,
    CommissionTransfer,
    RechargeRequest,
    RechargeStatus,
    RecordKind,
    SettlementAction,
    SettlementInstruction,
    TransitionEvent,
)
from agency_desk.governance.authorization import (
    AuthorizationTable,
    Capability,
    authorization_table,
)
from agency_desk.ledger.client import LedgerClient, LedgerError
from agency_desk.notifications.sink import Notifier
from agency_desk.store.base import ItemStore

logger = logging.getLogger(__name__)


class RechargeOutcome(BaseModel):
    recharge: RechargeRequest
    changed: bool
    settlement: SettlementInstruction | None = None


class TransferOutcome(BaseModel):
    transfer: CommissionTransfer
    changed: bool
    settlement: SettlementInstruction
    commissions_due: Decimal


def _positive_amount(value: Decimal | int | str) -> Decimal:
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except ArithmeticError:
        raise InvalidAmount(f"Amount must be a number, got {value!r}") from None
    if not amount.is_finite() or amount <= 0:
        raise InvalidAmount(f"Amount must be greater than zero, got {value!r}")
    return amount


def funding_for(recharge: RechargeRequest) -> SettlementInstruction:
    """The ledger instruction an approved recharge emits."""
    return SettlementInstruction(
        item_id=recharge.id,
        action=SettlementAction.FUND,
        amount=recharge.amount,
        payee_id=recharge.agent_id,
        source_id=recharge.chef_id,
    )


def payout_for(transfer: CommissionTransfer) -> SettlementInstruction:
    return SettlementInstruction(
        item_id=transfer.id,
        action=SettlementAction.PAYOUT,
        amount=transfer.amount,
        payee_id=transfer.holder_id,
    )


class FundsService:
    """
    Balance movements between agents and their chef.

    Usage:
        funds = FundsService(store, ledger)
        recharge = funds.request_recharge(agent, chef_id, Decimal("50000"))
        funds.approve_recharge(recharge.id, chef)
        funds.transfer_commissions(chef, Decimal("1200"))
    """

    def __init__(
        self,
        store: ItemStore,
        ledger: LedgerClient,
        authorization: AuthorizationTable | None = None,
        notifier: Notifier | None = None,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.authorization = authorization or authorization_table
        self.notifier = notifier or Notifier()

    # ── Recharge requests ───────────────────────────────────────

    def request_recharge(
        self,
        agent: Actor,
        chef_id: str,
        amount: Decimal | int | str,
        motive: str | None = None,
    ) -> RechargeRequest:
        """
        Ask ``chef_id`` for operating balance.

        Raises:
            Unauthorized: If the actor is not an agent.
            InvalidAmount: If the amount is not strictly positive.
            MissingReason: If no chef is given.
        """
        self.authorization.require_capability(agent, Capability.REQUEST_RECHARGE)
        if not (chef_id or "").strip():
            raise MissingReason("The agency has no chef to address the request to")

        recharge = RechargeRequest(
            agent_id=agent.id,
            chef_id=chef_id.strip(),
            amount=_positive_amount(amount),
            motive=(motive or "").strip() or None,
        )
        self.store.insert_recharge(recharge)
        logger.info(
            "Recharge requested: id=%s agent=%s chef=%s amount=%s",
            recharge.id[:8], agent.id, recharge.chef_id, recharge.amount,
        )
        self._notify(recharge, "request", agent.id, None)
        return recharge

    def approve_recharge(self, recharge_id: str, chef: Actor) -> RechargeOutcome:
        """
        Approve a pending recharge, moving the amount from the chef to the agent.

        Raises:
            NotOwner: If the request is addressed to another chef.
            InvalidTransition: If it was already rejected.
            LedgerError: If the ledger refuses the funding; the request stays pending.
        """
        recharge = self._decidable(recharge_id, chef)
        if recharge.status != RechargeStatus.PENDING:
            return self._repeat(recharge, RechargeStatus.APPROVED)

        instruction = funding_for(recharge)
        self.ledger.settle(instruction)

        updated = self.store.decide_recharge(
            recharge.id,
            chef.id,
            RechargeStatus.APPROVED,
            {"processing_date": datetime.now(timezone.utc)},
        )
        if updated is None:
            current = self._load(recharge_id)
            if current.status == RechargeStatus.APPROVED:
                return RechargeOutcome(recharge=current, changed=False, settlement=instruction)
            self._reverse_funding(recharge)
            raise InvalidTransition(f"Recharge {recharge_id} was {current.status.value} meanwhile")

        logger.info("Recharge approved: %s by %s", recharge_id, chef.id)
        self._notify(updated, "approve", chef.id, RechargeStatus.PENDING.value)
        return RechargeOutcome(recharge=updated, changed=True, settlement=instruction)

    def reject_recharge(self, recharge_id: str, chef: Actor, reason: str) -> RechargeOutcome:
        """
        Reject a pending recharge. ``reason`` is mandatory.

        Raises:
            MissingReason: If ``reason`` is empty.
            NotOwner: If the request is addressed to another chef.
            InvalidTransition: If it was already approved.
        """
        text = (reason or "").strip()
        if not text:
            raise MissingReason("A rejection reason is required")

        recharge = self._decidable(recharge_id, chef)
        if recharge.status != RechargeStatus.PENDING:
            return self._repeat(recharge, RechargeStatus.REJECTED)

        updated = self.store.decide_recharge(
            recharge.id,
            chef.id,
            RechargeStatus.REJECTED,
            {"rejection_reason": text, "processing_date": datetime.now(timezone.utc)},
        )
        if updated is None:
            return self._repeat(self._load(recharge_id), RechargeStatus.REJECTED)

        logger.info("Recharge rejected: %s by %s", recharge_id, chef.id)
        self._notify(updated, "reject", chef.id, RechargeStatus.PENDING.value)
        return RechargeOutcome(recharge=updated, changed=True)

    def pending_recharges(self, chef: Actor) -> list[RechargeRequest]:
        return self.store.list_recharges(chef_id=chef.id, status=RechargeStatus.PENDING)

    def recharge_history(self, agent_id: str, limit: int = 5) -> list[RechargeRequest]:
        return self.store.list_recharges(agent_id=agent_id, limit=limit)

    # ── Commission transfers ────────────────────────────────────

    def commissions_due(self, holder_id: str) -> Decimal:
        return self.store.commissions_due(holder_id)

    def transfer_commissions(
        self,
        holder: Actor,
        amount: Decimal | int | str,
        transfer_id: str | None = None,
    ) -> TransferOutcome:
        """
        Move ``amount`` of the holder's due commissions onto its balance.

        Raises:
            Unauthorized: If the role may not transfer commissions.
            InvalidAmount: If the amount is not strictly positive.
            InsufficientCommissions: If the amount exceeds what is due.
            InvalidTransition: If ``transfer_id`` was used for another transfer.
        """
        self.authorization.require_capability(holder, Capability.TRANSFER_COMMISSIONS)
        value = _positive_amount(amount)

        if transfer_id is not None:
            existing = self.store.get_commission_transfer(transfer_id)
            if existing is not None:
                return self._repeat_transfer(existing, holder, value)

        transfer = CommissionTransfer(holder_id=holder.id, amount=value)
        if transfer_id is not None:
            transfer = transfer.model_copy(update={"id": transfer_id})

        recorded = self.store.record_commission_transfer(transfer)
        if recorded is None:
            due = self.store.commissions_due(holder.id)
            raise InsufficientCommissions(
                f"Cannot transfer {value}: only {due} in commissions is due"
            )

        logger.info("Commissions transferred: %s holder=%s amount=%s", transfer.id, holder.id, value)
        self.notifier.notify(
            TransitionEvent(
                item_id=transfer.id,
                kind=RecordKind.COMMISSION_TRANSFER,
                action="transfer",
                actor_id=holder.id,
                to_status="recorded",
                details={"amount": str(value)},
            )
        )
        instruction = payout_for(recorded)
        self.ledger.settle(instruction)
        return TransferOutcome(
            transfer=recorded,
            changed=True,
            settlement=instruction,
            commissions_due=self.store.commissions_due(holder.id),
        )

    # ── Internal ────────────────────────────────────────────────

    def _load(self, recharge_id: str) -> RechargeRequest:
        recharge = self.store.get_recharge(recharge_id)
        if recharge is None:
            raise ItemNotFound(f"No recharge request {recharge_id}")
        return recharge

    def _decidable(self, recharge_id: str, chef: Actor) -> RechargeRequest:
        self.authorization.require_capability(chef, Capability.DECIDE_RECHARGE)
        recharge = self._load(recharge_id)
        if recharge.chef_id != chef.id:
            raise NotOwner(f"Recharge {recharge_id} is addressed to another chef")
        return recharge

    def _repeat(self, recharge: RechargeRequest, target: RechargeStatus) -> RechargeOutcome:
        if recharge.status != target:
            raise InvalidTransition(
                f"Recharge {recharge.id} is already {recharge.status.value}; decisions are final"
            )
        logger.info("Repeated %s on recharge %s: no-op", target.value, recharge.id)
        instruction = None
        if target == RechargeStatus.APPROVED:
            instruction = funding_for(recharge)
            self.ledger.settle(instruction)
        return RechargeOutcome(recharge=recharge, changed=False, settlement=instruction)

    def _repeat_transfer(
        self, existing: CommissionTransfer, holder: Actor, amount: Decimal
    ) -> TransferOutcome:
        if existing.holder_id != holder.id or existing.amount != amount:
            raise InvalidTransition(f"Transfer {existing.id} was recorded with other values")
        logger.info("Repeated commission transfer %s: re-delivering payout", existing.id)
        instruction = payout_for(existing)
        self.ledger.settle(instruction)
        return TransferOutcome(
            transfer=existing,
            changed=False,
            settlement=instruction,
            commissions_due=self.store.commissions_due(holder.id),
        )

    def _reverse_funding(self, recharge: RechargeRequest) -> None:
        reversal = SettlementInstruction(
            item_id=f"{recharge.id}:reversal",
            action=SettlementAction.FUND,
            amount=recharge.amount,
            payee_id=recharge.chef_id,
            source_id=recharge.agent_id,
        )
        try:
            self.ledger.settle(reversal)
        except LedgerError as exc:
            logger.error("Funding of recharge %s could not be reversed: %s", recharge.id, exc)

    def _notify(
        self,
        recharge: RechargeRequest,
        action: str,
        actor_id: str,
        from_status: str | None,
    ) -> None:
        self.notifier.notify(
            TransitionEvent(
                item_id=recharge.id,
                kind=RecordKind.RECHARGE,
                action=action,
                actor_id=actor_id,
                from_status=from_status,
                to_status=recharge.status.value,
                details={
                    "agent_id": recharge.agent_id,
                    "chef_id": recharge.chef_id,
                    "amount": str(recharge.amount),
                    "rejection_reason": recharge.rejection_reason,
                },
            )
        )
