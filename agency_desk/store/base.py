"""
Data store contract.

The desk core never keeps data of its own: the store owns transactions,
requests and operation types. The core needs two write primitives, both
atomic single-row conditional updates:

- ``update_if``: change the owner only if the current owner is the expected
  one and the item is still open
- ``set_terminal``: move an ASSIGNED item owned by ``owner`` to a terminal
  status, writing the outcome payload in the same step

Both return the updated item, or ``None`` when the precondition did not hold
at commit time. The store, not the core, is the serialization point.

Recharge decisions follow the same pattern (PENDING only), and a commission
transfer is recorded only if it fits within the commissions still due.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Protocol, Sequence

from agency_desk.domain.schema import (
    ClaimableItem,
    CommissionTransfer,
    ItemKind,
    OperationType,
    OperationTypeStatus,
    RechargeRequest,
    RechargeStatus,
    Transaction,
)


class ItemStore(Protocol):
    def get(self, kind: ItemKind, item_id: str) -> ClaimableItem | None: ...

    def list_items(
        self,
        kind: ItemKind,
        status: str | None = None,
        assigned_to: str | None = None,
        limit: int | None = None,
    ) -> list[ClaimableItem]: ...

    def insert(self, item: ClaimableItem) -> ClaimableItem: ...

    def update_if(
        self,
        kind: ItemKind,
        item_id: str,
        expected_owner: str | None,
        new_owner: str | None,
        any_owner: bool = False,
    ) -> ClaimableItem | None: ...

    def set_terminal(
        self,
        kind: ItemKind,
        item_id: str,
        owner: str,
        new_status: str,
        payload: dict[str, Any],
    ) -> ClaimableItem | None: ...

    def get_operation_type(self, op_type_id: str) -> OperationType | None: ...

    def list_operation_types(
        self, status: OperationTypeStatus | None = None
    ) -> list[OperationType]: ...

    def save_operation_type(self, op_type: OperationType) -> OperationType: ...

    def commission_totals(
        self, agent_ids: Sequence[str] | None = None
    ) -> dict[str, Decimal]: ...

    def commission_history(self, agent_id: str, limit: int = 50) -> list[Transaction]: ...

    def insert_recharge(self, recharge: RechargeRequest) -> RechargeRequest: ...

    def get_recharge(self, recharge_id: str) -> RechargeRequest | None: ...

    def list_recharges(
        self,
        chef_id: str | None = None,
        agent_id: str | None = None,
        status: RechargeStatus | None = None,
        limit: int | None = None,
    ) -> list[RechargeRequest]: ...

    def decide_recharge(
        self,
        recharge_id: str,
        chef_id: str,
        new_status: RechargeStatus,
        payload: dict[str, Any],
    ) -> RechargeRequest | None: ...

    def commissions_due(self, holder_id: str) -> Decimal: ...

    def record_commission_transfer(
        self, transfer: CommissionTransfer
    ) -> CommissionTransfer | None: ...

    def get_commission_transfer(self, transfer_id: str) -> CommissionTransfer | None: ...

    def list_commission_transfers(
        self, holder_id: str, limit: int | None = None
    ) -> list[CommissionTransfer]: ...
