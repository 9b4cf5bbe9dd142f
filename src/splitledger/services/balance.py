from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Iterable, Mapping, Optional, Sequence

from splitledger.db.models import Expense, ExpenseStatus, Group, Membership, Split, SplitType
from splitledger.logging import get_logger
from splitledger.services.authz import require_payer
from splitledger.services.errors import AlreadySettled, InvalidInput, InvalidSplit, NotFound
from splitledger.services.split import percents_sum_to_100

if TYPE_CHECKING:
    from splitledger.db.repo import LedgerRepository

log = get_logger(__name__)

# one cent, the tolerance for split sums
SPLIT_TOLERANCE_CENTS = 1


@dataclass(slots=True)
class ExpenseDraft:
    description: str
    amount_cents: int
    split_type: SplitType
    date: datetime
    note: Optional[str] = None


def creation_deltas(payer_id: int, amount_cents: int, shares: Mapping[int, int]) -> dict[int, int]:
    """Balance change per member caused by recording an expense.

    Every member owing a share is debited by it and the payer is credited with
    the whole amount, so the payer's net change is ``amount - own share``.
    """
    deltas: dict[int, int] = {}
    for user_id, share in shares.items():
        deltas[user_id] = deltas.get(user_id, 0) - share
    deltas[payer_id] = deltas.get(payer_id, 0) + amount_cents
    return deltas


def reversal_deltas(payer_id: int, amount_cents: int, shares: Mapping[int, int]) -> dict[int, int]:
    return {user_id: -delta for user_id, delta in creation_deltas(payer_id, amount_cents, shares).items()}


def resolve_status(splits: Iterable[Split]) -> ExpenseStatus:
    splits = list(splits)
    if splits and all(split.settled for split in splits):
        return ExpenseStatus.SETTLED
    return ExpenseStatus.ACTIVE


async def apply_create(
    repo: LedgerRepository,
    group: Group,
    payer_id: int,
    draft: ExpenseDraft,
    shares: Mapping[int, int],
) -> Expense:
    if draft.amount_cents <= 0:
        raise InvalidInput("Amount must be greater than zero")
    if abs(sum(shares.values()) - draft.amount_cents) > SPLIT_TOLERANCE_CENTS:
        raise InvalidSplit("Split amounts must sum to the total amount")

    expense = await repo.create_expense(
        group_id=group.id,
        payer_id=payer_id,
        description=draft.description,
        amount_cents=draft.amount_cents,
        date=draft.date,
        split_type=draft.split_type,
        note=draft.note,
    )
    await repo.add_splits(expense.id, shares)
    await repo.adjust_member_balances(group.id, creation_deltas(payer_id, draft.amount_cents, shares))
    await repo.adjust_group_total(group.id, draft.amount_cents)
    log.info("balance.create", group_id=group.id, expense_id=expense.id, amount_cents=draft.amount_cents)
    return expense


async def apply_settle_split(
    repo: LedgerRepository,
    expense: Expense,
    caller_id: int,
    member_id: int,
) -> ExpenseStatus:
    require_payer(expense, caller_id)

    split = await repo.get_split(expense.id, member_id)
    if split is None:
        raise NotFound("Split not found")
    if split.settled:
        raise AlreadySettled("Split is already settled")

    await repo.mark_split_settled(expense.id, member_id)

    if expense.status == ExpenseStatus.ACTIVE and await repo.count_unsettled_splits(expense.id) == 0:
        await repo.set_expense_status(expense.id, ExpenseStatus.SETTLED)
        # the group total only counts active expenses
        await repo.adjust_group_total(expense.group_id, -expense.amount_cents)
        log.info("balance.expense_settled", expense_id=expense.id)
        return ExpenseStatus.SETTLED
    return expense.status


async def apply_settle_group(repo: LedgerRepository, group_id: int) -> int:
    settled = await repo.settle_active_expenses(group_id)
    await repo.reset_member_balances(group_id)
    await repo.reset_group_total(group_id)
    log.info("balance.group_reset", group_id=group_id, settled_expenses=settled)
    return settled


async def apply_delete(repo: LedgerRepository, expense: Expense, caller_id: int) -> None:
    require_payer(expense, caller_id)

    splits = await repo.list_splits(expense.id)
    shares = {split.user_id: split.amount_cents for split in splits}
    await repo.adjust_member_balances(
        expense.group_id,
        reversal_deltas(expense.payer_id, expense.amount_cents, shares),
    )
    if expense.status == ExpenseStatus.ACTIVE:
        await repo.adjust_group_total(expense.group_id, -expense.amount_cents)
    await repo.delete_expense(expense.id)
    log.info("balance.delete", group_id=expense.group_id, expense_id=expense.id)


def find_inconsistencies(
    group: Group,
    members: Sequence[Membership],
    expenses: Sequence[Expense],
    splits: Sequence[Split],
) -> list[str]:
    problems: list[str] = []

    active_total = sum(expense.amount_cents for expense in expenses if expense.status == ExpenseStatus.ACTIVE)
    if group.total_balance_cents != active_total:
        problems.append(
            f"group total {group.total_balance_cents} differs from active expenses total {active_total}"
        )

    by_expense: dict[int, list[Split]] = {}
    for split in splits:
        by_expense.setdefault(split.expense_id, []).append(split)

    for expense in expenses:
        own = by_expense.get(expense.id, [])
        split_total = sum(split.amount_cents for split in own)
        if abs(split_total - expense.amount_cents) > SPLIT_TOLERANCE_CENTS:
            problems.append(f"expense {expense.id} splits sum to {split_total}, expected {expense.amount_cents}")
        if resolve_status(own) != expense.status:
            problems.append(f"expense {expense.id} is {expense.status.value} but its splits disagree")

    percents = [member.split_percent for member in members if member.split_percent is not None]
    if percents and not percents_sum_to_100(Decimal(p) for p in percents):
        problems.append("member split percentages do not sum to 100")

    return problems
