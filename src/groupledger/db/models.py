from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional


class ShareMode(str, Enum):
    EQUAL = "equal"
    WEIGHT = "weight"
    EXACT = "exact"


class SettlementStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class ResidualPolicy(str, Enum):
    FIRST_MEMBER = "first_member"
    SPREAD = "spread"


@dataclass(slots=True, frozen=True)
class Member:
    id: str
    group_id: str
    user_id: str
    display_name: str


@dataclass(slots=True, frozen=True)
class Expense:
    id: str
    group_id: str
    subtotal_cents: int
    deleted_at: Optional[datetime] = None


@dataclass(slots=True, frozen=True)
class ExpenseItem:
    id: str
    expense_id: str
    unit_value_cents: int
    quantity: Decimal = Decimal(1)


@dataclass(slots=True, frozen=True)
class Payer:
    expense_id: str
    member_id: str
    amount_cents: int


@dataclass(slots=True, frozen=True)
class Split:
    item_id: str
    member_id: str
    share_mode: ShareMode = ShareMode.EQUAL
    weight: Optional[Decimal] = None
    exact_amount_cents: Optional[int] = None


@dataclass(slots=True, frozen=True)
class Settlement:
    id: str
    group_id: str
    payer_member_id: str
    payee_member_id: str
    amount_cents: int
    status: SettlementStatus


@dataclass(slots=True, frozen=True)
class GroupLedger:
    """Everything balance-relevant for one group, read in a single snapshot."""

    group_id: str
    currency: str
    members: tuple[Member, ...] = ()
    expenses: tuple[Expense, ...] = ()
    items: tuple[ExpenseItem, ...] = ()
    payers: tuple[Payer, ...] = ()
    splits: tuple[Split, ...] = ()
    settlements: tuple[Settlement, ...] = ()


@dataclass(slots=True, frozen=True)
class MemberRef:
    member_id: str
    user_id: str
    display_name: str


@dataclass(slots=True, frozen=True)
class MemberBalance:
    member_id: str
    user_id: str
    display_name: str
    total_paid_cents: int
    total_owed_cents: int
    net_balance_cents: int
    total_paid: Decimal
    total_owed: Decimal
    net_balance: Decimal

    @property
    def ref(self) -> MemberRef:
        return MemberRef(self.member_id, self.user_id, self.display_name)


@dataclass(slots=True, frozen=True)
class SimplifiedDebt:
    from_member: MemberRef
    to_member: MemberRef
    amount_cents: int
    amount: Decimal


@dataclass(slots=True, frozen=True)
class GroupBalances:
    group_id: str
    currency: str
    member_balances: tuple[MemberBalance, ...]
    simplified_debts: tuple[SimplifiedDebt, ...]
    calculated_at: datetime
    rounding_adjustment_cents: int = 0


@dataclass(slots=True, frozen=True)
class Counterparty:
    member_id: str
    user_id: str
    display_name: str
    amount_cents: int
    amount: Decimal


@dataclass(slots=True, frozen=True)
class IndividualBalance:
    member_id: str
    user_id: str
    display_name: str
    total_paid_cents: int
    total_owed_cents: int
    net_balance_cents: int
    total_paid: Decimal
    total_owed: Decimal
    net_balance: Decimal
    owes_to: tuple[Counterparty, ...] = field(default_factory=tuple)
    owed_by: tuple[Counterparty, ...] = field(default_factory=tuple)
