"""
Agency Desk — Ledger service clients.

The ledger owns balance arithmetic. The desk only sends it settlement
instructions, each keyed by ``{item_id}:{action}``; the ledger applies an
instruction at most once per key, so re-delivering after a timeout or a
retried validation never settles twice.

Two implementations:
- ``InMemoryLedger``: keeps instructions in process (tests, local runs)
- ``HttpLedgerClient``: posts instructions to a remote ledger over HTTP
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol

import httpx

from agency_desk.domain.schema import SettlementAction, SettlementInstruction

logger = logging.getLogger(__name__)


class LedgerError(Exception):
    """Raised when the ledger refuses or cannot receive an instruction."""
    pass


@dataclass(frozen=True)
class SettlementReceipt:
    idempotency_key: str
    applied: bool  # False when the key had already been applied


class LedgerClient(Protocol):
    def settle(self, instruction: SettlementInstruction) -> SettlementReceipt: ...


class InMemoryLedger:
    """
    Process-local ledger.

    Tracks reservations, commissions and operating balances per payee so
    tests can assert on the effect of a settlement, not just on its
    delivery. A FUND instruction is refused when the source balance is
    short.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._applied: dict[str, SettlementInstruction] = {}
        self.instructions: list[SettlementInstruction] = []
        self.deliveries = 0
        self.reserved: dict[str, Decimal] = {}
        self.consumed: dict[str, Decimal] = {}
        self.commissions: dict[str, Decimal] = {}
        self.balances: dict[str, Decimal] = {}

    def settle(self, instruction: SettlementInstruction) -> SettlementReceipt:
        key = instruction.idempotency_key
        with self._lock:
            self.deliveries += 1
            if key in self._applied:
                logger.debug("Settlement already applied: %s", key)
                return SettlementReceipt(idempotency_key=key, applied=False)

            self._check(instruction)
            self._applied[key] = instruction
            self.instructions.append(instruction)
            self._apply(instruction)

        logger.info(
            "Settlement applied: key=%s amount=%s commission=%s payee=%s",
            key, instruction.amount, instruction.commission, instruction.payee_id,
        )
        return SettlementReceipt(idempotency_key=key, applied=True)

    def _apply(self, instruction: SettlementInstruction) -> None:
        payee = instruction.payee_id
        held = self.reserved.get(payee, Decimal("0"))

        if instruction.action == SettlementAction.RESERVE:
            self.reserved[payee] = held + instruction.amount
        elif instruction.action == SettlementAction.COMMIT:
            self.reserved[payee] = held - instruction.amount
            self.consumed[payee] = self.consumed.get(payee, Decimal("0")) + instruction.amount
            self.commissions[payee] = (
                self.commissions.get(payee, Decimal("0")) + instruction.commission
            )
        elif instruction.action == SettlementAction.RELEASE:
            self.reserved[payee] = held - instruction.amount
        elif instruction.action == SettlementAction.FUND:
            source = instruction.source_id
            self.balances[source] = self.balance_of(source) - instruction.amount
            self.balances[payee] = self.balance_of(payee) + instruction.amount
        elif instruction.action == SettlementAction.PAYOUT:
            self.commissions[payee] = (
                self.commissions.get(payee, Decimal("0")) - instruction.amount
            )
            self.balances[payee] = self.balance_of(payee) + instruction.amount

    def _check(self, instruction: SettlementInstruction) -> None:
        if instruction.action != SettlementAction.FUND:
            return
        if instruction.source_id is None:
            raise LedgerError(f"{instruction.idempotency_key}: fund needs a source")
        available = self.balance_of(instruction.source_id)
        if available < instruction.amount:
            raise LedgerError(
                f"Insufficient balance for {instruction.source_id}: "
                f"{available} < {instruction.amount}"
            )

    def credit(self, holder_id: str, amount: Decimal) -> None:
        """Add operating balance, e.g. to seed a chef before it funds agents."""
        with self._lock:
            self.balances[holder_id] = self.balance_of(holder_id) + Decimal(amount)

    def balance_of(self, holder_id: str) -> Decimal:
        return self.balances.get(holder_id, Decimal("0"))

    def for_item(self, item_id: str) -> list[SettlementInstruction]:
        return [i for i in self.instructions if i.item_id == item_id]


class HttpLedgerClient:
    """
    Remote ledger client.

    Posts each instruction to ``/v1/settlements`` with an
    ``Idempotency-Key`` header. A 409 means the key was already applied
    and counts as success.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._headers = {"Content-Type": "application/json"}
        if api_key:
            self._headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.Client(
            base_url=self.base_url,
            headers=self._headers,
            timeout=timeout,
            transport=transport,
        )

    def close(self) -> None:
        if not self._client.is_closed:
            self._client.close()

    def settle(self, instruction: SettlementInstruction) -> SettlementReceipt:
        key = instruction.idempotency_key
        try:
            resp = self._client.post(
                "/v1/settlements",
                json=instruction.model_dump(mode="json"),
                headers={"Idempotency-Key": key},
            )
        except httpx.HTTPError as exc:
            raise LedgerError(f"Ledger unreachable for {key}: {exc}") from exc

        if resp.status_code == 409:
            logger.debug("Settlement already applied remotely: %s", key)
            return SettlementReceipt(idempotency_key=key, applied=False)

        try:
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise LedgerError(
                f"Ledger rejected {key}: HTTP {resp.status_code} {resp.text[:200]}"
            ) from exc

        logger.info("Settlement sent: key=%s status=%d", key, resp.status_code)
        return SettlementReceipt(idempotency_key=key, applied=True)
