"""
Desk Schema — Pydantic models for every entity the desk core touches.

These models are the canonical shapes exchanged between the store, the
services and the operator API:

- Actors and their roles
- Operation types and their commission configuration (closed tagged union)
- Claimable items: transactions and support requests
- Settlement instructions sent to the ledger
- Transition events sent to the notification sink

Commission configurations arrive from the store as loosely-typed JSON blobs.
They are parsed once, at the boundary, into one of four variants; the
pricing engine never inspects untyped data.
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Annotated, Any, ClassVar, Literal, Union
from uuid import uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    computed_field,
    field_validator,
    model_validator,
)

from agency_desk.domain.errors import InvalidConfiguration


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid4())


# ════════════════════════════════════════════════════════════════
# Enumerations
# ════════════════════════════════════════════════════════════════


class Role(str, enum.Enum):
    """Roles in the agency network."""

    AGENT = "agent"
    CHEF_AGENCE = "chef_agence"
    SOUS_ADMIN = "sous_admin"
    ADMIN_GENERAL = "admin_general"
    DEVELOPPEUR = "developpeur"


OPERATOR_ROLES = frozenset({Role.CHEF_AGENCE, Role.SOUS_ADMIN, Role.ADMIN_GENERAL})


class ItemKind(str, enum.Enum):
    """The two kinds of claimable item. Values match the store's table names."""

    TRANSACTION = "transactions"
    REQUEST = "requests"


class TransactionStatus(str, enum.Enum):
    UNASSIGNED = "unassigned"
    ASSIGNED = "assigned"
    VALIDATED = "validated"
    REJECTED = "rejected"


class RequestStatus(str, enum.Enum):
    UNASSIGNED = "unassigned"
    ASSIGNED = "assigned"
    RESOLVED = "resolved"
    CLOSED = "closed"


OPEN_STATUSES = frozenset({"unassigned", "assigned"})


class RecordKind(str, enum.Enum):
    """Balance movements that are not queue items. Values match the store's table names."""

    RECHARGE = "recharges"
    COMMISSION_TRANSFER = "commission_transfers"


class RechargeStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class OperationTypeStatus(str, enum.Enum):
    """Lifecycle of an operation type. Only ACTIVE types accept submissions."""

    ACTIVE = "active"
    INACTIVE = "inactive"  # temporarily unavailable (maintenance)
    ARCHIVED = "archived"  # retired; still referenced by history


class CloseReason(str, enum.Enum):
    """Fixed catalog of reasons for closing a support request."""

    NOT_RELEVANT = "not_relevant"
    INSUFFICIENT_INFORMATION = "insufficient_information"
    RESOLVED_BY_USER = "resolved_by_user"
    DUPLICATE = "duplicate"
    OUT_OF_SCOPE = "out_of_scope"
    OTHER = "other"


CLOSE_REASON_LABELS: dict[CloseReason, str] = {
    CloseReason.NOT_RELEVANT: "Request not relevant",
    CloseReason.INSUFFICIENT_INFORMATION: "Insufficient information",
    CloseReason.RESOLVED_BY_USER: "Problem solved by the user",
    CloseReason.DUPLICATE: "Duplicate request",
    CloseReason.OUT_OF_SCOPE: "Outside support scope",
}


class SettlementAction(str, enum.Enum):
    """Instructions the ledger understands."""

    RESERVE = "reserve"  # hold principal against the agent's balance
    COMMIT = "commit"  # consume the reservation and credit the commission
    RELEASE = "release"  # restore the reservation
    FUND = "fund"  # move balance from source_id to payee_id
    PAYOUT = "payout"  # move the payee's due commissions to its balance


# ════════════════════════════════════════════════════════════════
# Actors
# ════════════════════════════════════════════════════════════════


class Actor(BaseModel):
    """Someone acting on the desk: an agent submitting or an operator validating."""

    model_config = ConfigDict(frozen=True)

    id: str
    role: Role
    name: str = ""

    @property
    def is_operator(self) -> bool:
        return self.role in OPERATOR_ROLES


# ════════════════════════════════════════════════════════════════
# Commission Configuration
# ════════════════════════════════════════════════════════════════


def parse_tier_commission(value: Any) -> tuple[bool, Decimal]:
    """
    Parse a tier's commission cell.

    Accepts a number (flat amount) or a string: ``"500"`` is a flat amount,
    ``"1.5%"`` is a rate in percent points. Spaces are ignored and a comma
    is accepted as decimal separator.

    Returns:
        Tuple of (is_percentage, value).

    Raises:
        ValueError: If the value is not a non-negative finite number.
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid tier commission: {value!r}")

    is_percentage = False
    if isinstance(value, Decimal):
        amount = value
    elif isinstance(value, int):
        amount = Decimal(value)
    elif isinstance(value, float):
        amount = Decimal(str(value))
    elif isinstance(value, str):
        text = value.replace(" ", "").replace(",", ".")
        if text.endswith("%"):
            is_percentage = True
            text = text[:-1]
        try:
            amount = Decimal(text)
        except InvalidOperation:
            raise ValueError(f"Invalid tier commission: {value!r}") from None
    else:
        raise ValueError(f"Invalid tier commission: {value!r}")

    if not amount.is_finite() or amount < 0:
        raise ValueError(f"Tier commission must be a non-negative number: {value!r}")
    return is_percentage, amount


class CommissionTier(BaseModel):
    """A half-open amount range ``[from, to)`` and its commission rule."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    from_: Decimal = Field(alias="from", ge=0)
    to: Decimal | None = Field(default=None, description="None means unbounded")
    commission: Decimal | str = Field(
        description="Flat amount, or a percentage string such as '1.5%'"
    )

    @field_validator("commission", mode="before")
    @classmethod
    def _normalize_commission(cls, value: Any) -> Decimal | str:
        is_percentage, amount = parse_tier_commission(value)
        return f"{amount}%" if is_percentage else amount

    @model_validator(mode="after")
    def _check_bounds(self) -> CommissionTier:
        if self.to is not None and self.to <= self.from_:
            raise ValueError(f"Tier upper bound {self.to} must exceed lower bound {self.from_}")
        return self

    @property
    def is_percentage(self) -> bool:
        return isinstance(self.commission, str)

    @property
    def value(self) -> Decimal:
        """The flat amount, or the rate in percent points."""
        return parse_tier_commission(self.commission)[1]

    def covers(self, principal: Decimal) -> bool:
        return self.from_ <= principal and (self.to is None or principal < self.to)


class NoCommission(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["none"] = "none"


class FixedCommission(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["fixed"] = "fixed"
    amount: Decimal = Field(ge=0)


class PercentageCommission(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["percentage"] = "percentage"
    rate: Decimal = Field(ge=0, description="Percent points: 1.5 means 1.5%")


class TieredCommission(BaseModel):
    """
    Tiered commission. Tiers must partition ``[0, ∞)``:

    - the first tier starts at 0
    - each tier ends where the next one starts (no gap, no overlap)
    - only the last tier is unbounded, and it must be
    """

    model_config = ConfigDict(frozen=True)

    type: Literal["tiers"] = "tiers"
    tiers: list[CommissionTier] = Field(min_length=1)

    @model_validator(mode="after")
    def _check_partition(self) -> TieredCommission:
        first = self.tiers[0]
        if first.from_ != 0:
            raise ValueError(f"First tier must start at 0, not {first.from_}")

        for current, following in zip(self.tiers, self.tiers[1:]):
            if current.to is None:
                raise ValueError("Only the last tier may be unbounded")
            if following.from_ < current.to:
                raise ValueError(
                    f"Tiers overlap: [{current.from_}, {current.to}) and "
                    f"[{following.from_}, ...)"
                )
            if following.from_ > current.to:
                raise ValueError(f"Gap between tiers: [{current.to}, {following.from_})")

        if self.tiers[-1].to is not None:
            raise ValueError("Last tier must be unbounded (to = null)")
        return self


CommissionConfig = Annotated[
    Union[NoCommission, FixedCommission, PercentageCommission, TieredCommission],
    Field(discriminator="type"),
]

_VARIANTS = (NoCommission, FixedCommission, PercentageCommission, TieredCommission)
_commission_adapter: TypeAdapter[Any] = TypeAdapter(CommissionConfig)

# "tiered" is accepted as an alias of the stored "tiers" tag.
_TYPE_ALIASES = {"tiered": "tiers"}


def normalize_commission_payload(payload: Any) -> Any:
    """Prepare a stored commission blob for validation. ``None`` reads as ``none``."""
    if payload is None:
        return {"type": "none"}
    if isinstance(payload, dict):
        if "type" not in payload:
            raise ValueError("Commission configuration has no 'type'")
        kind = payload["type"]
        if kind in _TYPE_ALIASES:
            payload = {**payload, "type": _TYPE_ALIASES[kind]}
    return payload


def parse_commission_config(payload: Any) -> NoCommission | FixedCommission | PercentageCommission | TieredCommission:
    """
    Parse a commission configuration at the boundary.

    Raises:
        InvalidConfiguration: Unknown variant, missing parameters, or
            tiers that do not partition ``[0, ∞)``.
    """
    if isinstance(payload, _VARIANTS):
        return payload
    try:
        return _commission_adapter.validate_python(normalize_commission_payload(payload))
    except (ValidationError, ValueError) as exc:
        raise InvalidConfiguration(f"Invalid commission configuration: {exc}") from exc


def dump_commission_config(config: Any) -> dict[str, Any]:
    """Serialize a configuration to its stored JSON shape."""
    return _commission_adapter.dump_python(config, mode="json", by_alias=True)


# ════════════════════════════════════════════════════════════════
# Operation Types
# ════════════════════════════════════════════════════════════════


class FormField(BaseModel):
    """A submission form field. Opaque to the core; consumed by form rendering."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str
    label: str
    name: str
    type: str = "text"
    required: bool = False
    obsolete: bool = False


class OperationType(BaseModel):
    """A kind of financial operation an agent can submit."""

    id: str
    name: str
    description: str = ""
    impacts_balance: bool = False
    proof_required: bool = False
    status: OperationTypeStatus = OperationTypeStatus.ACTIVE
    fields: list[FormField] = Field(default_factory=list)
    commission_config: CommissionConfig = Field(default_factory=NoCommission)

    @field_validator("commission_config", mode="before")
    @classmethod
    def _coerce_commission(cls, value: Any) -> Any:
        return normalize_commission_payload(value)


# ════════════════════════════════════════════════════════════════
# Claimable Items
# ════════════════════════════════════════════════════════════════


class ItemRef(BaseModel):
    """Reference to a claimable item in the store."""

    model_config = ConfigDict(frozen=True)

    kind: ItemKind
    id: str

    def __str__(self) -> str:
        return f"{self.kind.value}/{self.id}"


class ClaimableItem(BaseModel):
    """Fields shared by every item that moves through the validation queue."""

    model_config = ConfigDict(from_attributes=True)

    kind: ClassVar[ItemKind]

    id: str = Field(default_factory=_new_id)
    created_at: datetime = Field(default_factory=_utcnow)
    assigned_to: str | None = None

    @property
    def ref(self) -> ItemRef:
        return ItemRef(kind=self.kind, id=self.id)


class Transaction(ClaimableItem):
    """A financial operation submitted by an agent, awaiting validation."""

    kind: ClassVar[ItemKind] = ItemKind.TRANSACTION

    status: TransactionStatus = TransactionStatus.UNASSIGNED
    agent_id: str
    op_type_id: str
    principal_amount: Decimal
    fees: Decimal = Decimal("0")
    total_amount: Decimal = Decimal("0")
    commission_generated: Decimal = Decimal("0")
    reserved_amount: Decimal = Field(
        default=Decimal("0"),
        description="Principal held against the agent's balance at submission",
    )
    data: dict[str, Any] = Field(default_factory=dict)
    proof_url: str | None = None
    validator_id: str | None = None
    rejection_reason: str | None = None


class Request(ClaimableItem):
    """A support request raised by any user and handled by an operator."""

    kind: ClassVar[ItemKind] = ItemKind.REQUEST

    status: RequestStatus = RequestStatus.UNASSIGNED
    requester_id: str
    type: str
    subject: str
    description: str | None = None
    attachment_url: str | None = None
    resolved_by_id: str | None = None
    response: str | None = None
    resolution_date: datetime | None = None


ITEM_MODELS: dict[ItemKind, type[ClaimableItem]] = {
    ItemKind.TRANSACTION: Transaction,
    ItemKind.REQUEST: Request,
}


# ════════════════════════════════════════════════════════════════
# Balance Movements
# ════════════════════════════════════════════════════════════════


class RechargeRequest(BaseModel):
    """
    An agent asking its chef d'agence for operating balance.

    Addressed to one chef, who approves (the amount moves from the chef's
    balance to the agent's) or rejects it with a reason. Both outcomes are
    final.
    """

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=_new_id)
    created_at: datetime = Field(default_factory=_utcnow)
    agent_id: str
    chef_id: str
    amount: Decimal
    status: RechargeStatus = RechargeStatus.PENDING
    motive: str | None = None
    rejection_reason: str | None = None
    processing_date: datetime | None = None


class CommissionTransfer(BaseModel):
    """Commissions moved by their holder onto its operating balance."""

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=_new_id)
    created_at: datetime = Field(default_factory=_utcnow)
    holder_id: str
    amount: Decimal


# ════════════════════════════════════════════════════════════════
# Ledger & Notification Payloads
# ════════════════════════════════════════════════════════════════


class SettlementInstruction(BaseModel):
    """
    An idempotent instruction for the ledger.

    The ledger applies at most one instruction per idempotency key, so a
    retried delivery never settles twice.
    """

    model_config = ConfigDict(frozen=True)

    item_id: str
    action: SettlementAction
    amount: Decimal = Decimal("0")
    commission: Decimal = Decimal("0")
    payee_id: str
    source_id: str | None = None

    @computed_field
    @property
    def idempotency_key(self) -> str:
        return f"{self.item_id}:{self.action.value}"


class TransitionEvent(BaseModel):
    """Who did what to which item, and when."""

    item_id: str
    kind: ItemKind | RecordKind
    action: str
    actor_id: str
    from_status: str | None = None
    to_status: str
    occurred_at: datetime = Field(default_factory=_utcnow)
    details: dict[str, Any] = Field(default_factory=dict)


class Outcome(BaseModel):
    """Result of a terminal transition."""

    ref: ItemRef
    status: str
    changed: bool = Field(description="False when the call repeated an applied transition")
    item: Transaction | Request
    settlement: SettlementInstruction | None = None
