from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, AsyncContextManager, AsyncIterator, Awaitable, Callable, Iterable, Optional, Protocol, TypeVar, Union

from splitledger.config import Settings, get_settings
from splitledger.db.models import Expense, ExpenseStatus, Group, Membership, Role, Split, SplitType
from splitledger.db.repo import Executor, LedgerRepository
from splitledger.logging import get_logger
from splitledger.notifications import Notifier, build_invite_message, build_notifier
from splitledger.services import balance, membership
from splitledger.services.authz import require_member
from splitledger.services.errors import InvalidInput, LedgerError, NotFound, NotificationError, Unauthenticated
from splitledger.services.result import Failure, Result, Success
from splitledger.services.settlement import Transfer, transfers_for_members
from splitledger.services.split import Amount, custom_split, default_split, from_cents, to_cents

T = TypeVar("T")
E = TypeVar("E", bound=Enum)


class TransactionalDatabase(Protocol):
    def transaction(self) -> AsyncContextManager[Executor]: ...


@dataclass(slots=True)
class SplitView:
    user_id: int
    amount_cents: int
    settled: bool

    @property
    def amount(self) -> Decimal:
        return from_cents(self.amount_cents)


@dataclass(slots=True)
class ExpenseView:
    id: int
    group_id: int
    description: str
    amount_cents: int
    date: datetime
    payer_id: int
    split_type: SplitType
    note: Optional[str]
    status: ExpenseStatus
    splits: list[SplitView] = field(default_factory=list)

    @property
    def amount(self) -> Decimal:
        return from_cents(self.amount_cents)


@dataclass(slots=True)
class ExpenseListing:
    expenses: list[ExpenseView]
    has_settled: bool


@dataclass(slots=True)
class GroupSummary:
    group_id: int
    name: str
    description: Optional[str]
    total_balance_cents: int
    member_count: int
    user_balance_cents: int
    role: Role


@dataclass(slots=True)
class GroupDetails:
    group_id: int
    name: str
    description: Optional[str]
    total_balance_cents: int
    custom_split_ratio: bool
    members: list[Membership]
    transfers: list[Transfer]


@dataclass(slots=True)
class InviteOutcome:
    invitation_id: int
    email: str
    expires_at: datetime
    delivered: bool


def _require_identity(user_id: Optional[int]) -> int:
    if user_id is None:
        raise Unauthenticated("Not authenticated")
    return user_id


def _as_enum(enum_cls: type[E], value: Union[E, str], label: str) -> E:
    try:
        return enum_cls(value)
    except ValueError as exc:
        raise InvalidInput(f"Unknown {label}: {value}") from exc


def _expense_view(expense: Expense, splits: Iterable[Split]) -> ExpenseView:
    return ExpenseView(
        id=expense.id,
        group_id=expense.group_id,
        description=expense.description,
        amount_cents=expense.amount_cents,
        date=expense.date,
        payer_id=expense.payer_id,
        split_type=expense.split_type,
        note=expense.note,
        status=expense.status,
        splits=[SplitView(user_id=s.user_id, amount_cents=s.amount_cents, settled=s.settled) for s in splits],
    )


class LedgerService:
    """Commands and queries of the shared-expense ledger.

    Each call runs in exactly one store transaction. Business failures come
    back as :class:`Failure`; a missing identity raises :class:`Unauthenticated`
    and storage errors propagate untouched.
    """

    def __init__(
        self,
        db: TransactionalDatabase,
        notifier: Optional[Notifier] = None,
        settings: Optional[Settings] = None,
        repository_cls: Callable[[Any], LedgerRepository] = LedgerRepository,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._db = db
        self._settings = settings or get_settings()
        self._notifier = notifier or build_notifier(self._settings)
        self._repository_cls = repository_cls
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._log = get_logger(__name__)

    @asynccontextmanager
    async def _unit(self) -> AsyncIterator[LedgerRepository]:
        async with self._db.transaction() as tx:
            yield self._repository_cls(tx)

    async def _run(
        self,
        event: str,
        user_id: Optional[int],
        work: Callable[[LedgerRepository, int], Awaitable[T]],
        **context: Any,
    ) -> Result[T]:
        caller = _require_identity(user_id)
        try:
            async with self._unit() as repo:
                value = await work(repo, caller)
        except LedgerError as exc:
            self._log.info("ledger.rejected", operation=event, user_id=caller, code=exc.code, reason=exc.message, **context)
            return Failure(message=exc.message, code=exc.code)
        self._log.info(event, user_id=caller, **context)
        return Success(value)

    @staticmethod
    async def _group(repo: LedgerRepository, group_id: int, *, lock: bool = True) -> Group:
        group = await repo.get_group(group_id, for_update=lock)
        if group is None:
            raise NotFound("Group not found")
        return group

    @staticmethod
    async def _locked_expense(repo: LedgerRepository, expense_id: int) -> Expense:
        expense = await repo.get_expense(expense_id)
        if expense is None:
            raise NotFound("Expense not found")
        await LedgerService._group(repo, expense.group_id)
        # re-read under the group lock
        expense = await repo.get_expense(expense_id)
        if expense is None:
            raise NotFound("Expense not found")
        return expense

    # groups and membership

    async def create_group(self, user_id: Optional[int], name: str, description: Optional[str] = None) -> Result[int]:
        async def work(repo: LedgerRepository, caller: int) -> int:
            group = await membership.create_group(repo, name, description, caller)
            return group.id

        return await self._run("group.create", user_id, work)

    async def add_member(
        self,
        user_id: Optional[int],
        group_id: int,
        member_id: int,
        role: Union[Role, str] = Role.MEMBER,
    ) -> Result[None]:
        async def work(repo: LedgerRepository, caller: int) -> None:
            group = await self._group(repo, group_id)
            await membership.add_member(repo, group, caller, member_id, _as_enum(Role, role, "role"))

        return await self._run("group.add_member", user_id, work, group_id=group_id, member_id=member_id)

    async def join_group(self, user_id: Optional[int], invitation_id: int) -> Result[int]:
        async def work(repo: LedgerRepository, caller: int) -> int:
            invitation = await repo.get_invitation(invitation_id)
            group = await membership.join_group(repo, invitation, caller, self._clock())
            return group.id

        return await self._run("group.join", user_id, work, invitation_id=invitation_id)

    async def join_group_by_token(self, user_id: Optional[int], token: str) -> Result[int]:
        async def work(repo: LedgerRepository, caller: int) -> int:
            invitation = await repo.get_invitation_by_token(token)
            group = await membership.join_group(repo, invitation, caller, self._clock())
            return group.id

        return await self._run("group.join", user_id, work)

    async def update_split_percents(
        self,
        user_id: Optional[int],
        group_id: int,
        entries: Iterable[tuple[int, Amount]],
    ) -> Result[None]:
        entries = list(entries)

        async def work(repo: LedgerRepository, caller: int) -> None:
            group = await self._group(repo, group_id)
            await membership.update_split_percents(repo, group, caller, entries)

        return await self._run("group.split_percents", user_id, work, group_id=group_id)

    async def send_invite(self, user_id: Optional[int], group_id: int, email: str) -> Result[InviteOutcome]:
        ttl = timedelta(days=self._settings.invite_ttl_days)

        async def work(repo: LedgerRepository, caller: int) -> membership.InviteDetails:
            group = await self._group(repo, group_id)
            return await membership.get_or_create_invite(repo, group, email, caller, self._clock(), ttl)

        created = await self._run("invite.create", user_id, work, group_id=group_id)
        if isinstance(created, Failure):
            return created

        details = created.value
        outcome = InviteOutcome(
            invitation_id=details.invitation_id,
            email=details.email,
            expires_at=details.expires_at,
            delivered=False,
        )
        # the invitation is committed at this point; delivery problems never undo it
        try:
            await self._notifier.send(build_invite_message(details, self._settings))
        except NotificationError as exc:
            self._log.warning(
                "invite.delivery_failed",
                group_id=group_id,
                invitation_id=details.invitation_id,
                error=str(exc),
            )
            return Success(outcome, warning="The invitation was saved, but the email could not be sent.")

        outcome.delivered = True
        self._log.info("invite.sent", group_id=group_id, invitation_id=details.invitation_id, reused=details.reused)
        return Success(outcome)

    # expenses

    async def create_expense(
        self,
        user_id: Optional[int],
        group_id: int,
        description: str,
        amount: Amount,
        split_type: Union[SplitType, str] = SplitType.DEFAULT,
        splits: Iterable[tuple[int, Amount]] = (),
        note: Optional[str] = None,
        date: Optional[datetime] = None,
    ) -> Result[int]:
        splits = list(splits)

        async def work(repo: LedgerRepository, caller: int) -> int:
            group = await self._group(repo, group_id)
            await require_member(repo, group.id, caller)

            title = description.strip()
            if not title:
                raise InvalidInput("Description is required")
            amount_cents = to_cents(amount)
            if amount_cents <= 0:
                raise InvalidInput("Amount must be greater than zero")
            kind = _as_enum(SplitType, split_type, "split type")

            members = await repo.list_members(group.id)
            if kind == SplitType.DEFAULT:
                shares = default_split(amount_cents, members, group.custom_split_ratio)
            else:
                shares = custom_split(amount_cents, splits, {member.user_id for member in members})

            draft = balance.ExpenseDraft(
                description=title,
                amount_cents=amount_cents,
                split_type=kind,
                date=date or self._clock(),
                note=(note.strip() or None) if note else None,
            )
            expense = await balance.apply_create(repo, group, caller, draft, shares)
            return expense.id

        return await self._run("expense.create", user_id, work, group_id=group_id)

    async def list_expenses(
        self,
        user_id: Optional[int],
        group_id: int,
        show_settled: bool = False,
    ) -> Result[ExpenseListing]:
        async def work(repo: LedgerRepository, caller: int) -> ExpenseListing:
            group = await self._group(repo, group_id, lock=False)
            await require_member(repo, group.id, caller)

            expenses = await repo.list_expenses(group.id)
            has_settled = any(expense.status == ExpenseStatus.SETTLED for expense in expenses)
            if not show_settled:
                expenses = [expense for expense in expenses if expense.status == ExpenseStatus.ACTIVE]

            by_expense: dict[int, list[Split]] = {}
            for split in await repo.list_group_splits([expense.id for expense in expenses]):
                by_expense.setdefault(split.expense_id, []).append(split)

            views = [_expense_view(expense, by_expense.get(expense.id, [])) for expense in expenses]
            return ExpenseListing(expenses=views, has_settled=has_settled)

        return await self._run("expense.list", user_id, work, group_id=group_id)

    async def settle_expense_split(
        self,
        user_id: Optional[int],
        expense_id: int,
        member_id: int,
    ) -> Result[ExpenseStatus]:
        async def work(repo: LedgerRepository, caller: int) -> ExpenseStatus:
            expense = await self._locked_expense(repo, expense_id)
            await require_member(repo, expense.group_id, caller)
            return await balance.apply_settle_split(repo, expense, caller, member_id)

        return await self._run("expense.settle_split", user_id, work, expense_id=expense_id, member_id=member_id)

    async def settle_group(self, user_id: Optional[int], group_id: int) -> Result[int]:
        async def work(repo: LedgerRepository, caller: int) -> int:
            group = await self._group(repo, group_id)
            await require_member(repo, group.id, caller)
            return await balance.apply_settle_group(repo, group.id)

        return await self._run("group.settle", user_id, work, group_id=group_id)

    async def delete_expense(self, user_id: Optional[int], expense_id: int) -> Result[None]:
        async def work(repo: LedgerRepository, caller: int) -> None:
            expense = await self._locked_expense(repo, expense_id)
            await require_member(repo, expense.group_id, caller)
            await balance.apply_delete(repo, expense, caller)

        return await self._run("expense.delete", user_id, work, expense_id=expense_id)

    # queries

    async def list_groups(self, user_id: Optional[int]) -> Result[list[GroupSummary]]:
        async def work(repo: LedgerRepository, caller: int) -> list[GroupSummary]:
            return [
                GroupSummary(
                    group_id=group.id,
                    name=group.name,
                    description=group.description,
                    total_balance_cents=group.total_balance_cents,
                    member_count=member_count,
                    user_balance_cents=own.balance_cents,
                    role=own.role,
                )
                for group, own, member_count in await repo.list_user_groups(caller)
            ]

        return await self._run("group.list", user_id, work)

    async def get_group(self, user_id: Optional[int], group_id: int) -> Result[GroupDetails]:
        async def work(repo: LedgerRepository, caller: int) -> GroupDetails:
            group = await self._group(repo, group_id, lock=False)
            await require_member(repo, group.id, caller)
            members = await repo.list_members(group.id)
            return GroupDetails(
                group_id=group.id,
                name=group.name,
                description=group.description,
                total_balance_cents=group.total_balance_cents,
                custom_split_ratio=group.custom_split_ratio,
                members=members,
                transfers=transfers_for_members(members),
            )

        return await self._run("group.get", user_id, work, group_id=group_id)

    async def check_group(self, user_id: Optional[int], group_id: int) -> Result[list[str]]:
        async def work(repo: LedgerRepository, caller: int) -> list[str]:
            group = await self._group(repo, group_id, lock=False)
            await require_member(repo, group.id, caller)
            expenses = await repo.list_expenses(group.id)
            splits = await repo.list_group_splits([expense.id for expense in expenses])
            members = await repo.list_members(group.id)
            return balance.find_inconsistencies(group, members, expenses, splits)

        return await self._run("group.check", user_id, work, group_id=group_id)
