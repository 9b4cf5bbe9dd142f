from __future__ import annotations

import copy
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Mapping, Optional, Sequence

import pytest

from splitledger.config import Settings
from splitledger.db.models import (
    Expense,
    ExpenseStatus,
    Group,
    Invitation,
    InvitationStatus,
    Membership,
    Role,
    Split,
    SplitType,
    User,
)
from splitledger.ledger import LedgerService
from splitledger.services.errors import NotificationError

ALICE, BOB, CAROL, DAVE = 1, 2, 3, 4

START = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)


class MemoryStore:
    def __init__(self) -> None:
        self.users: dict[int, User] = {}
        self.groups: dict[int, Group] = {}
        self.members: dict[tuple[int, int], Membership] = {}
        self.expenses: dict[int, Expense] = {}
        self.splits: dict[tuple[int, int], Split] = {}
        self.invitations: dict[int, Invitation] = {}
        self.last_id = 0
        self.ticks = 0

    def next_id(self) -> int:
        self.last_id += 1
        return self.last_id

    def tick(self) -> datetime:
        self.ticks += 1
        return START + timedelta(seconds=self.ticks)

    def add_user(self, user_id: int, email: Optional[str], name: str) -> None:
        self.users[user_id] = User(id=user_id, email=email, name=name)

    def balances(self, group_id: int) -> dict[int, int]:
        return {m.user_id: m.balance_cents for (gid, _), m in self.members.items() if gid == group_id}


class MemoryRepository:
    """In-memory stand-in for LedgerRepository with the same method surface."""

    def __init__(self, store: MemoryStore) -> None:
        self.store = store

    async def get_user(self, user_id: int) -> Optional[User]:
        user = self.store.users.get(user_id)
        return replace(user) if user else None

    async def create_group(self, name: str, description: Optional[str], created_by: int) -> Group:
        group = Group(
            id=self.store.next_id(),
            name=name,
            description=description,
            created_by=created_by,
            total_balance_cents=0,
            custom_split_ratio=False,
            created_at=self.store.tick(),
        )
        self.store.groups[group.id] = group
        return replace(group)

    async def get_group(self, group_id: int, *, for_update: bool = False) -> Optional[Group]:
        group = self.store.groups.get(group_id)
        return replace(group) if group else None

    async def set_custom_split_ratio(self, group_id: int, value: bool) -> None:
        self.store.groups[group_id].custom_split_ratio = value

    async def adjust_group_total(self, group_id: int, delta_cents: int) -> None:
        self.store.groups[group_id].total_balance_cents += delta_cents

    async def reset_group_total(self, group_id: int) -> None:
        self.store.groups[group_id].total_balance_cents = 0

    async def list_user_groups(self, user_id: int) -> list[tuple[Group, Membership, int]]:
        result = []
        for (group_id, member_id), membership in self.store.members.items():
            if member_id != user_id:
                continue
            count = sum(1 for gid, _ in self.store.members if gid == group_id)
            result.append((replace(self.store.groups[group_id]), replace(membership), count))
        return sorted(result, key=lambda row: row[0].created_at)

    async def get_membership(self, group_id: int, user_id: int) -> Optional[Membership]:
        membership = self.store.members.get((group_id, user_id))
        return replace(membership) if membership else None

    async def list_members(self, group_id: int) -> list[Membership]:
        members = [replace(m) for (gid, _), m in self.store.members.items() if gid == group_id]
        return sorted(members, key=lambda m: (m.joined_at, m.user_id))

    async def add_member(
        self,
        group_id: int,
        user_id: int,
        role: Role,
        split_percent: Optional[Decimal],
    ) -> Membership:
        if (group_id, user_id) in self.store.members:
            raise RuntimeError("duplicate membership")
        membership = Membership(
            group_id=group_id,
            user_id=user_id,
            balance_cents=0,
            role=role,
            split_percent=split_percent,
            joined_at=self.store.tick(),
        )
        self.store.members[(group_id, user_id)] = membership
        return replace(membership)

    async def set_split_percents(self, group_id: int, percents: Mapping[int, Decimal]) -> None:
        for user_id, percent in percents.items():
            self.store.members[(group_id, user_id)].split_percent = percent

    async def adjust_member_balances(self, group_id: int, deltas: Mapping[int, int]) -> None:
        for user_id, delta in deltas.items():
            membership = self.store.members.get((group_id, user_id))
            if membership is not None:
                membership.balance_cents += delta

    async def reset_member_balances(self, group_id: int) -> None:
        for (gid, _), membership in self.store.members.items():
            if gid == group_id:
                membership.balance_cents = 0

    async def create_expense(
        self,
        group_id: int,
        payer_id: int,
        description: str,
        amount_cents: int,
        date: datetime,
        split_type: SplitType,
        note: Optional[str],
    ) -> Expense:
        expense = Expense(
            id=self.store.next_id(),
            group_id=group_id,
            payer_id=payer_id,
            description=description,
            amount_cents=amount_cents,
            date=date,
            split_type=split_type,
            note=note,
            status=ExpenseStatus.ACTIVE,
            created_at=self.store.tick(),
        )
        self.store.expenses[expense.id] = expense
        return replace(expense)

    async def get_expense(self, expense_id: int) -> Optional[Expense]:
        expense = self.store.expenses.get(expense_id)
        return replace(expense) if expense else None

    async def list_expenses(self, group_id: int) -> list[Expense]:
        expenses = [replace(e) for e in self.store.expenses.values() if e.group_id == group_id]
        return sorted(expenses, key=lambda e: (e.date, e.id), reverse=True)

    async def set_expense_status(self, expense_id: int, status: ExpenseStatus) -> None:
        self.store.expenses[expense_id].status = status

    async def delete_expense(self, expense_id: int) -> None:
        for key in [key for key in self.store.splits if key[0] == expense_id]:
            del self.store.splits[key]
        del self.store.expenses[expense_id]

    async def settle_active_expenses(self, group_id: int) -> int:
        settled = 0
        for expense in self.store.expenses.values():
            if expense.group_id != group_id or expense.status != ExpenseStatus.ACTIVE:
                continue
            for (expense_id, _), split in self.store.splits.items():
                if expense_id == expense.id:
                    split.settled = True
            expense.status = ExpenseStatus.SETTLED
            settled += 1
        return settled

    async def add_splits(self, expense_id: int, shares: Mapping[int, int]) -> None:
        for user_id, amount in shares.items():
            self.store.splits[(expense_id, user_id)] = Split(
                expense_id=expense_id,
                user_id=user_id,
                amount_cents=amount,
                settled=False,
            )

    async def list_splits(self, expense_id: int) -> list[Split]:
        return sorted(
            (replace(s) for (eid, _), s in self.store.splits.items() if eid == expense_id),
            key=lambda s: s.user_id,
        )

    async def list_group_splits(self, expense_ids: Sequence[int]) -> list[Split]:
        wanted = set(expense_ids)
        return sorted(
            (replace(s) for (eid, _), s in self.store.splits.items() if eid in wanted),
            key=lambda s: (s.expense_id, s.user_id),
        )

    async def get_split(self, expense_id: int, user_id: int) -> Optional[Split]:
        split = self.store.splits.get((expense_id, user_id))
        return replace(split) if split else None

    async def mark_split_settled(self, expense_id: int, user_id: int) -> None:
        self.store.splits[(expense_id, user_id)].settled = True

    async def count_unsettled_splits(self, expense_id: int) -> int:
        return sum(1 for (eid, _), s in self.store.splits.items() if eid == expense_id and not s.settled)

    async def create_invitation(
        self,
        group_id: int,
        email: str,
        invited_by: int,
        token: str,
        expires_at: datetime,
    ) -> Invitation:
        if await self.get_pending_invitation(group_id, email) is not None:
            raise RuntimeError("duplicate pending invitation")
        invitation = Invitation(
            id=self.store.next_id(),
            group_id=group_id,
            email=email,
            invited_by=invited_by,
            token=token,
            status=InvitationStatus.PENDING,
            expires_at=expires_at,
            created_at=self.store.tick(),
        )
        self.store.invitations[invitation.id] = invitation
        return replace(invitation)

    async def get_invitation(self, invitation_id: int) -> Optional[Invitation]:
        invitation = self.store.invitations.get(invitation_id)
        return replace(invitation) if invitation else None

    async def get_invitation_by_token(self, token: str) -> Optional[Invitation]:
        for invitation in self.store.invitations.values():
            if invitation.token == token:
                return replace(invitation)
        return None

    async def get_pending_invitation(self, group_id: int, email: str) -> Optional[Invitation]:
        for invitation in self.store.invitations.values():
            if (
                invitation.group_id == group_id
                and invitation.email == email
                and invitation.status == InvitationStatus.PENDING
            ):
                return replace(invitation)
        return None

    async def refresh_invitation(self, invitation_id: int, expires_at: datetime) -> Invitation:
        invitation = self.store.invitations[invitation_id]
        invitation.expires_at = expires_at
        return replace(invitation)

    async def set_invitation_status(self, invitation_id: int, status: InvitationStatus) -> None:
        self.store.invitations[invitation_id].status = status

    async def expire_invitations(self, now: datetime) -> int:
        expired = 0
        for invitation in self.store.invitations.values():
            if invitation.status == InvitationStatus.PENDING and invitation.expires_at < now:
                invitation.status = InvitationStatus.EXPIRED
                expired += 1
        return expired


class FakeDatabase:
    """Runs every transaction against the store, restoring it when the body raises."""

    def __init__(self, store: MemoryStore) -> None:
        self.store = store
        self.transactions = 0
        self.rollbacks = 0

    @asynccontextmanager
    async def transaction(self):
        snapshot = copy.deepcopy(self.store.__dict__)
        self.transactions += 1
        try:
            yield self.store
        except BaseException:
            self.store.__dict__.clear()
            self.store.__dict__.update(snapshot)
            self.rollbacks += 1
            raise


class RecordingNotifier:
    def __init__(self) -> None:
        self.messages = []
        self.fail = False

    async def send(self, message) -> None:
        if self.fail:
            raise NotificationError("mail server unavailable")
        self.messages.append(message)


class FakeClock:
    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def store() -> MemoryStore:
    store = MemoryStore()
    store.add_user(ALICE, "alice@example.com", "Alice")
    store.add_user(BOB, "bob@example.com", "Bob")
    store.add_user(CAROL, "carol@example.com", "Carol")
    store.add_user(DAVE, None, "Dave")
    return store


@pytest.fixture
def db(store: MemoryStore) -> FakeDatabase:
    return FakeDatabase(store)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        DATABASE_URL="postgresql://localhost/splitledger_test",
        APP_NAME="Split-it",
        SITE_URL="https://split.example/",
    )


@pytest.fixture
def ledger(db: FakeDatabase, notifier: RecordingNotifier, settings: Settings, clock: FakeClock) -> LedgerService:
    return LedgerService(
        db,
        notifier=notifier,
        settings=settings,
        repository_cls=MemoryRepository,
        clock=clock,
    )


@pytest.fixture
def make_group(ledger: LedgerService):
    async def _make(owner: int = ALICE, members: Sequence[int] = (BOB,), name: str = "Trip") -> int:
        created = await ledger.create_group(owner, name)
        assert created.success, created
        for member in members:
            added = await ledger.add_member(owner, created.value, member)
            assert added.success, added
        return created.value

    return _make
