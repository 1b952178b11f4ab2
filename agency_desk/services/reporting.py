"""
Commission reporting.

Read-only views over commissions already recorded on validated
transactions. Nothing here recomputes a commission.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Sequence

from pydantic import BaseModel, Field

from agency_desk.domain.schema import Transaction
from agency_desk.store.base import ItemStore


class CommissionEntry(BaseModel):
    transaction_id: str
    op_type_id: str
    principal_amount: Decimal
    commission: Decimal
    created_at: str


class CommissionSummary(BaseModel):
    agent_id: str
    total: Decimal = Decimal("0")
    history: list[CommissionEntry] = Field(default_factory=list)


class ReportingService:
    def __init__(self, store: ItemStore) -> None:
        self.store = store

    def commission_totals_by_agent(self, agent_ids: Sequence[str] | None = None) -> dict[str, Decimal]:
        """Commission earned per agent. Agents asked for by id always appear, with 0 if none."""
        totals = self.store.commission_totals(agent_ids)
        if agent_ids is not None:
            return {agent_id: totals.get(agent_id, Decimal("0")) for agent_id in agent_ids}
        return totals

    def validated_commissions(self, agent_id: str, limit: int = 50) -> list[Transaction]:
        """Most recent validated transactions of ``agent_id`` that earned a commission."""
        return self.store.commission_history(agent_id, limit=limit)

    def summary(self, agent_id: str, limit: int = 50) -> CommissionSummary:
        history = self.validated_commissions(agent_id, limit=limit)
        return CommissionSummary(
            agent_id=agent_id,
            total=self.commission_totals_by_agent([agent_id])[agent_id],
            history=[_entry(txn) for txn in history],
        )


def _entry(txn: Transaction) -> CommissionEntry:
    return CommissionEntry(
        transaction_id=txn.id,
        op_type_id=txn.op_type_id,
        principal_amount=txn.principal_amount,
        commission=txn.commission_generated,
        created_at=txn.created_at.isoformat(),
    )
