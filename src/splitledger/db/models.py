from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional


class Role(str, Enum):
    ADMIN = "admin"
    MEMBER = "member"


class SplitType(str, Enum):
    DEFAULT = "default"
    CUSTOM = "custom"


class ExpenseStatus(str, Enum):
    ACTIVE = "active"
    SETTLED = "settled"


class InvitationStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    EXPIRED = "expired"


@dataclass(slots=True)
class User:
    id: int
    email: Optional[str]
    name: Optional[str]


@dataclass(slots=True)
class Group:
    id: int
    name: str
    description: Optional[str]
    created_by: int
    total_balance_cents: int
    custom_split_ratio: bool
    created_at: datetime


@dataclass(slots=True)
class Membership:
    group_id: int
    user_id: int
    balance_cents: int
    role: Role
    split_percent: Optional[Decimal]
    joined_at: datetime

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


@dataclass(slots=True)
class Expense:
    id: int
    group_id: int
    payer_id: int
    description: str
    amount_cents: int
    date: datetime
    split_type: SplitType
    note: Optional[str]
    status: ExpenseStatus
    created_at: datetime


@dataclass(slots=True)
class Split:
    expense_id: int
    user_id: int
    amount_cents: int
    settled: bool


@dataclass(slots=True)
class Invitation:
    id: int
    group_id: int
    email: str
    invited_by: int
    token: str
    status: InvitationStatus
    expires_at: datetime
    created_at: datetime

    def is_open(self, now: datetime) -> bool:
        return self.status == InvitationStatus.PENDING and self.expires_at >= now
