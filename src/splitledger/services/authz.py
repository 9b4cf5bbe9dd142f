from __future__ import annotations

from typing import Optional, Protocol

from splitledger.db.models import Expense, Membership
from splitledger.services.errors import Forbidden


class MembershipLookup(Protocol):
    async def get_membership(self, group_id: int, user_id: int) -> Optional[Membership]: ...


async def is_member(repo: MembershipLookup, group_id: int, user_id: int) -> bool:
    return await repo.get_membership(group_id, user_id) is not None


async def require_member(repo: MembershipLookup, group_id: int, user_id: int) -> Membership:
    membership = await repo.get_membership(group_id, user_id)
    if membership is None:
        raise Forbidden("You are not a member of this group")
    return membership


async def require_admin(repo: MembershipLookup, group_id: int, user_id: int) -> Membership:
    membership = await require_member(repo, group_id, user_id)
    if not membership.is_admin:
        raise Forbidden("Only group admins can perform this action")
    return membership


def require_payer(expense: Expense, user_id: int) -> None:
    if expense.payer_id != user_id:
        raise Forbidden("Only the person who paid can change this expense")
