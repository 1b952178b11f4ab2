"""
SQL Item Store — SQLAlchemy implementation of the data store contract.

Claims and terminal transitions are single ``UPDATE ... WHERE`` statements
whose WHERE clause carries the precondition. The row count tells whether the
precondition held at commit time; there is no read-modify-write window.

Usage:
    store = SqlItemStore(database_url)
    store.initialize()  # Create tables

    claimed = store.update_if(
        ItemKind.TRANSACTION, txn_id, expected_owner=None, new_owner=operator_id,
    )
    if claimed is None:
        ...  # someone else won the race
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Sequence

from sqlalchemy import DateTime, String, create_engine, func, insert, literal, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from agency_desk.domain.schema import (
    ITEM_MODELS,
    OPEN_STATUSES,
    ClaimableItem,
    CommissionTransfer,
    ItemKind,
    OperationType,
    OperationTypeStatus,
    RechargeRequest,
    RechargeStatus,
    Transaction,
    TransactionStatus,
    dump_commission_config,
)
from agency_desk.store.models import (
    Base,
    CommissionTransferDB,
    Money,
    OperationTypeDB,
    RechargeRequestDB,
    RequestDB,
    TransactionDB,
)

logger = logging.getLogger(__name__)

_TABLES = {
    ItemKind.TRANSACTION: TransactionDB,
    ItemKind.REQUEST: RequestDB,
}

_OPEN = sorted(OPEN_STATUSES)


class SqlItemStore:
    """
    Store for claimable items, operation types and balance movements.

    Every method opens its own short session; nothing is cached between
    calls, so every read reflects the latest committed state.
    """

    def __init__(
        self,
        database_url: str | None = None,
        engine: Engine | None = None,
        echo: bool = False,
    ) -> None:
        """
        Initialize the store.

        Args:
            database_url: SQLAlchemy connection string (sync driver).
            engine: An existing engine; takes precedence over the URL.
            echo: Log emitted SQL.
        """
        if engine is None:
            if not database_url:
                raise ValueError("SqlItemStore needs a database_url or an engine")
            engine = create_engine(database_url, echo=echo)
        self.engine = engine
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)

    @classmethod
    def in_memory(cls) -> SqlItemStore:
        """A private SQLite database shared by all threads of this process."""
        engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        store = cls(engine=engine)
        store.initialize()
        return store

    def initialize(self) -> None:
        """Create the schema if it does not exist."""
        Base.metadata.create_all(self.engine)

    def dispose(self) -> None:
        """Release pooled connections."""
        self.engine.dispose()

    # ── Items: reads ────────────────────────────────────────────

    def get(self, kind: ItemKind, item_id: str) -> ClaimableItem | None:
        table = _TABLES[ItemKind(kind)]
        with self.SessionLocal() as session:
            row = session.get(table, item_id)
            return _to_domain(kind, row) if row is not None else None

    def list_items(
        self,
        kind: ItemKind,
        status: str | None = None,
        assigned_to: str | None = None,
        limit: int | None = None,
    ) -> list[ClaimableItem]:
        """List items newest first, optionally filtered by status and owner."""
        table = _TABLES[ItemKind(kind)]
        stmt = select(table)
        if status is not None:
            stmt = stmt.where(table.status == _status_value(status))
        if assigned_to is not None:
            stmt = stmt.where(table.assigned_to == assigned_to)
        stmt = stmt.order_by(table.created_at.desc())
        if limit is not None:
            stmt = stmt.limit(limit)

        with self.SessionLocal() as session:
            rows = session.execute(stmt).scalars().all()
            return [_to_domain(kind, row) for row in rows]

    # ── Items: writes ───────────────────────────────────────────

    def insert(self, item: ClaimableItem) -> ClaimableItem:
        table = _TABLES[item.kind]
        values = item.model_dump()
        values["status"] = _status_value(item.status)

        with self.SessionLocal.begin() as session:
            session.add(table(**values))

        logger.info("Item inserted: %s", item.ref)
        return item

    def update_if(
        self,
        kind: ItemKind,
        item_id: str,
        expected_owner: str | None,
        new_owner: str | None,
        any_owner: bool = False,
    ) -> ClaimableItem | None:
        """
        Change the owner of an open item if it is still owned by ``expected_owner``.

        The status follows the owner: ASSIGNED with an owner, UNASSIGNED
        without. With ``any_owner`` the current owner is not checked, but the
        item must still be open.

        Returns:
            The updated item, or None if the precondition failed.
        """
        kind = ItemKind(kind)
        table = _TABLES[kind]
        new_status = "assigned" if new_owner is not None else "unassigned"

        stmt = update(table).where(table.id == item_id, table.status.in_(_OPEN))
        if not any_owner:
            if expected_owner is None:
                stmt = stmt.where(table.assigned_to.is_(None))
            else:
                stmt = stmt.where(table.assigned_to == expected_owner)
        stmt = stmt.values(assigned_to=new_owner, status=new_status).execution_options(
            synchronize_session=False
        )

        with self.SessionLocal.begin() as session:
            result = session.execute(stmt)
            if result.rowcount != 1:
                logger.info(
                    "Conditional owner update rejected: %s/%s expected=%s",
                    kind.value, item_id, "any" if any_owner else expected_owner,
                )
                return None
            row = session.get(table, item_id)
            updated = _to_domain(kind, row)

        logger.info(
            "Owner updated: %s/%s owner=%s status=%s",
            kind.value, item_id, new_owner, new_status,
        )
        return updated

    def set_terminal(
        self,
        kind: ItemKind,
        item_id: str,
        owner: str,
        new_status: str,
        payload: dict[str, Any],
    ) -> ClaimableItem | None:
        """
        Move an ASSIGNED item owned by ``owner`` to ``new_status``.

        ``payload`` holds the outcome columns written in the same statement
        (validator, rejection reason, response...).

        Returns:
            The updated item, or None if the item was not ASSIGNED to ``owner``.
        """
        kind = ItemKind(kind)
        table = _TABLES[kind]
        stmt = (
            update(table)
            .where(
                table.id == item_id,
                table.status == "assigned",
                table.assigned_to == owner,
            )
            .values(status=_status_value(new_status), **payload)
            .execution_options(synchronize_session=False)
        )

        with self.SessionLocal.begin() as session:
            result = session.execute(stmt)
            if result.rowcount != 1:
                logger.info(
                    "Terminal update rejected: %s/%s owner=%s status=%s",
                    kind.value, item_id, owner, new_status,
                )
                return None
            row = session.get(table, item_id)
            updated = _to_domain(kind, row)

        logger.info("Terminal status set: %s/%s -> %s", kind.value, item_id, new_status)
        return updated

    # ── Operation types ─────────────────────────────────────────

    def get_operation_type(self, op_type_id: str) -> OperationType | None:
        with self.SessionLocal() as session:
            row = session.get(OperationTypeDB, op_type_id)
            return _op_type_from_row(row) if row is not None else None

    def list_operation_types(
        self, status: OperationTypeStatus | None = None
    ) -> list[OperationType]:
        stmt = select(OperationTypeDB).order_by(OperationTypeDB.name)
        if status is not None:
            stmt = stmt.where(OperationTypeDB.status == OperationTypeStatus(status).value)
        with self.SessionLocal() as session:
            return [_op_type_from_row(row) for row in session.execute(stmt).scalars().all()]

    def save_operation_type(self, op_type: OperationType) -> OperationType:
        """Insert or replace an operation type."""
        row = OperationTypeDB(
            id=op_type.id,
            name=op_type.name,
            description=op_type.description,
            impacts_balance=op_type.impacts_balance,
            proof_required=op_type.proof_required,
            status=op_type.status.value,
            fields=[field.model_dump(mode="json", by_alias=True) for field in op_type.fields],
            commission_config=dump_commission_config(op_type.commission_config),
        )
        with self.SessionLocal.begin() as session:
            session.merge(row)

        logger.info("Operation type saved: %s (%s)", op_type.id, op_type.status.value)
        return op_type

    # ── Aggregates ──────────────────────────────────────────────

    def commission_totals(self, agent_ids: Sequence[str] | None = None) -> dict[str, Decimal]:
        """Sum of commissions on validated transactions, per agent."""
        stmt = (
            select(TransactionDB.agent_id, func.sum(TransactionDB.commission_generated))
            .where(TransactionDB.status == TransactionStatus.VALIDATED.value)
            .group_by(TransactionDB.agent_id)
        )
        if agent_ids is not None:
            stmt = stmt.where(TransactionDB.agent_id.in_(list(agent_ids)))

        with self.SessionLocal() as session:
            rows = session.execute(stmt).all()
        return {agent_id: Decimal(str(total or 0)) for agent_id, total in rows}

    def commission_history(self, agent_id: str, limit: int = 50) -> list[Transaction]:
        """Validated transactions of one agent that generated a commission."""
        stmt = (
            select(TransactionDB)
            .where(
                TransactionDB.agent_id == agent_id,
                TransactionDB.status == TransactionStatus.VALIDATED.value,
                TransactionDB.commission_generated > 0,
            )
            .order_by(TransactionDB.created_at.desc())
            .limit(limit)
        )
        with self.SessionLocal() as session:
            rows = session.execute(stmt).scalars().all()
            return [Transaction.model_validate(row) for row in rows]

    # ── Recharge requests ───────────────────────────────────────

    def insert_recharge(self, recharge: RechargeRequest) -> RechargeRequest:
        values = recharge.model_dump()
        values["status"] = _status_value(recharge.status)
        with self.SessionLocal.begin() as session:
            session.add(RechargeRequestDB(**values))

        logger.info("Recharge request inserted: %s", recharge.id)
        return recharge

    def get_recharge(self, recharge_id: str) -> RechargeRequest | None:
        with self.SessionLocal() as session:
            row = session.get(RechargeRequestDB, recharge_id)
            return RechargeRequest.model_validate(row) if row is not None else None

    def list_recharges(
        self,
        chef_id: str | None = None,
        agent_id: str | None = None,
        status: RechargeStatus | None = None,
        limit: int | None = None,
    ) -> list[RechargeRequest]:
        """List recharge requests newest first."""
        stmt = select(RechargeRequestDB)
        if chef_id is not None:
            stmt = stmt.where(RechargeRequestDB.chef_id == chef_id)
        if agent_id is not None:
            stmt = stmt.where(RechargeRequestDB.agent_id == agent_id)
        if status is not None:
            stmt = stmt.where(RechargeRequestDB.status == _status_value(status))
        stmt = stmt.order_by(RechargeRequestDB.created_at.desc())
        if limit is not None:
            stmt = stmt.limit(limit)

        with self.SessionLocal() as session:
            rows = session.execute(stmt).scalars().all()
            return [RechargeRequest.model_validate(row) for row in rows]

    def decide_recharge(
        self,
        recharge_id: str,
        chef_id: str,
        new_status: RechargeStatus,
        payload: dict[str, Any],
    ) -> RechargeRequest | None:
        """
        Move a PENDING request addressed to ``chef_id`` to ``new_status``.

        Returns:
            The updated request, or None if it was no longer pending.
        """
        stmt = (
            update(RechargeRequestDB)
            .where(
                RechargeRequestDB.id == recharge_id,
                RechargeRequestDB.chef_id == chef_id,
                RechargeRequestDB.status == RechargeStatus.PENDING.value,
            )
            .values(status=_status_value(new_status), **payload)
            .execution_options(synchronize_session=False)
        )

        with self.SessionLocal.begin() as session:
            result = session.execute(stmt)
            if result.rowcount != 1:
                logger.info(
                    "Recharge decision rejected: %s chef=%s status=%s",
                    recharge_id, chef_id, _status_value(new_status),
                )
                return None
            updated = RechargeRequest.model_validate(session.get(RechargeRequestDB, recharge_id))

        logger.info("Recharge %s -> %s", recharge_id, _status_value(new_status))
        return updated

    # ── Commission transfers ────────────────────────────────────

    def commissions_due(self, holder_id: str) -> Decimal:
        """Validated commissions of ``holder_id`` not yet transferred to its balance."""
        with self.SessionLocal() as session:
            due = session.execute(select(_commissions_due_expr(holder_id))).scalar()
        return Decimal(str(due or 0))

    def record_commission_transfer(self, transfer: CommissionTransfer) -> CommissionTransfer | None:
        """
        Record ``transfer`` if it does not exceed the commissions due.

        The cap check and the insert are one ``INSERT ... SELECT ... WHERE``
        statement, so concurrent transfers cannot overdraw the holder.

        Returns:
            The recorded transfer, or None if the amount exceeds what is due.
        """
        source = select(
            literal(transfer.id, String),
            literal(transfer.created_at, DateTime(timezone=True)),
            literal(transfer.holder_id, String),
            literal(transfer.amount, Money),
        ).where(_commissions_due_expr(transfer.holder_id) >= literal(transfer.amount, Money))
        stmt = insert(CommissionTransferDB).from_select(
            ["id", "created_at", "holder_id", "amount"], source
        )

        with self.SessionLocal.begin() as session:
            result = session.execute(stmt)
            if result.rowcount != 1:
                logger.info(
                    "Commission transfer rejected: holder=%s amount=%s",
                    transfer.holder_id, transfer.amount,
                )
                return None

        logger.info(
            "Commission transfer recorded: %s holder=%s amount=%s",
            transfer.id, transfer.holder_id, transfer.amount,
        )
        return transfer

    def get_commission_transfer(self, transfer_id: str) -> CommissionTransfer | None:
        with self.SessionLocal() as session:
            row = session.get(CommissionTransferDB, transfer_id)
            return CommissionTransfer.model_validate(row) if row is not None else None

    def list_commission_transfers(
        self, holder_id: str, limit: int | None = None
    ) -> list[CommissionTransfer]:
        stmt = (
            select(CommissionTransferDB)
            .where(CommissionTransferDB.holder_id == holder_id)
            .order_by(CommissionTransferDB.created_at.desc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        with self.SessionLocal() as session:
            rows = session.execute(stmt).scalars().all()
            return [CommissionTransfer.model_validate(row) for row in rows]


# ── Internal ────────────────────────────────────────────────────


def _commissions_due_expr(holder_id: str):
    earned = (
        select(func.coalesce(func.sum(TransactionDB.commission_generated), 0))
        .where(
            TransactionDB.agent_id == holder_id,
            TransactionDB.status == TransactionStatus.VALIDATED.value,
        )
        .scalar_subquery()
    )
    moved = (
        select(func.coalesce(func.sum(CommissionTransferDB.amount), 0))
        .where(CommissionTransferDB.holder_id == holder_id)
        .scalar_subquery()
    )
    return earned - moved


def _status_value(status: Any) -> str:
    return status.value if hasattr(status, "value") else str(status)


def _to_domain(kind: ItemKind, row: Any) -> ClaimableItem:
    return ITEM_MODELS[ItemKind(kind)].model_validate(row)


def _op_type_from_row(row: OperationTypeDB) -> OperationType:
    return OperationType(
        id=row.id,
        name=row.name,
        description=row.description or "",
        impacts_balance=row.impacts_balance,
        proof_required=row.proof_required,
        status=row.status,
        fields=row.fields or [],
        commission_config=row.commission_config,
    )
