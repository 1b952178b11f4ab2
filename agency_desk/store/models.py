"""
Store Models — SQLAlchemy tables for operation types, transactions,
support requests and balance movements.

Column names follow the domain schema so rows validate straight into the
Pydantic models. Recharge requests and commission transfers live beside
the queue tables. Generic column types (JSON, String ids) keep the adapter
portable between PostgreSQL and SQLite.
"""

from __future__ import annotations

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Index,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid4())


Money = Numeric(18, 4, asdecimal=True)


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for all desk tables."""
    pass


class OperationTypeDB(Base):
    """
    Operation types an agent can submit.

    Archived types stay in the table: historical transactions still
    reference them.
    """

    __tablename__ = "operation_types"

    id = Column(String(64), primary_key=True)
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=False, default="")
    impacts_balance = Column(Boolean, nullable=False, default=False)
    proof_required = Column(Boolean, nullable=False, default=False)
    status = Column(
        String(20), nullable=False, default="active",
        comment="active, inactive, or archived",
    )
    fields = Column(JSON, nullable=False, default=list)
    commission_config = Column(
        JSON, nullable=True,
        comment="Tagged union: none, fixed, percentage, tiers",
    )

    __table_args__ = (Index("ix_operation_type_status", "status"),)


class TransactionDB(Base):
    """
    A submitted operation awaiting validation.

    ``commission_generated`` and ``reserved_amount`` are written once at
    submission and never updated.
    """

    __tablename__ = "transactions"

    id = Column(String(36), primary_key=True, default=_new_id)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    status = Column(String(20), nullable=False, default="unassigned")
    assigned_to = Column(String(64), nullable=True)

    agent_id = Column(String(64), nullable=False)
    op_type_id = Column(String(64), nullable=False)
    principal_amount = Column(Money, nullable=False)
    fees = Column(Money, nullable=False, default=0)
    total_amount = Column(Money, nullable=False, default=0)
    commission_generated = Column(Money, nullable=False, default=0)
    reserved_amount = Column(Money, nullable=False, default=0)
    data = Column(JSON, nullable=False, default=dict)
    proof_url = Column(Text, nullable=True)
    validator_id = Column(String(64), nullable=True)
    rejection_reason = Column(Text, nullable=True)

    __table_args__ = (
        Index("ix_transaction_status", "status"),
        Index("ix_transaction_assigned_to", "assigned_to"),
        Index("ix_transaction_agent", "agent_id"),
        Index("ix_transaction_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<Transaction id={self.id[:8]} status={self.status} owner={self.assigned_to}>"


class RequestDB(Base):
    """A support request handled through the same claim protocol."""

    __tablename__ = "requests"

    id = Column(String(36), primary_key=True, default=_new_id)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    status = Column(String(20), nullable=False, default="unassigned")
    assigned_to = Column(String(64), nullable=True)

    requester_id = Column(String(64), nullable=False)
    type = Column(String(50), nullable=False)
    subject = Column(String(300), nullable=False)
    description = Column(Text, nullable=True)
    attachment_url = Column(Text, nullable=True)
    resolved_by_id = Column(String(64), nullable=True)
    response = Column(Text, nullable=True)
    resolution_date = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_request_status", "status"),
        Index("ix_request_assigned_to", "assigned_to"),
        Index("ix_request_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<Request id={self.id[:8]} status={self.status} owner={self.assigned_to}>"


class RechargeRequestDB(Base):
    """An agent's request for operating balance, addressed to its chef."""

    __tablename__ = "recharge_requests"

    id = Column(String(36), primary_key=True, default=_new_id)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    agent_id = Column(String(64), nullable=False)
    chef_id = Column(String(64), nullable=False)
    amount = Column(Money, nullable=False)
    status = Column(
        String(20), nullable=False, default="pending",
        comment="pending, approved, or rejected",
    )
    motive = Column(Text, nullable=True)
    rejection_reason = Column(Text, nullable=True)
    processing_date = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_recharge_chef_status", "chef_id", "status"),
        Index("ix_recharge_agent", "agent_id"),
    )

    def __repr__(self) -> str:
        return f"<RechargeRequest id={self.id[:8]} status={self.status} amount={self.amount}>"


class CommissionTransferDB(Base):
    """
    Commissions moved onto the holder's operating balance.

    Rows are append-only; the commissions still due to a holder are the
    validated commissions minus the sum of its transfers.
    """

    __tablename__ = "commission_transfers"

    id = Column(String(36), primary_key=True, default=_new_id)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    holder_id = Column(String(64), nullable=False)
    amount = Column(Money, nullable=False)

    __table_args__ = (Index("ix_commission_transfer_holder", "holder_id"),)
