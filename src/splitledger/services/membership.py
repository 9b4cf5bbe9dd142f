from __future__ import annotations

import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Iterable, Optional

from splitledger.db.models import Group, Invitation, InvitationStatus, Membership, Role
from splitledger.logging import get_logger
from splitledger.services.authz import is_member, require_admin, require_member
from splitledger.services.errors import AlreadyMember, InvalidInput, InvalidInvitation, InvalidSplit, NotFound
from splitledger.services.split import (
    ONE_HUNDRED,
    PERCENT_QUANTUM,
    Amount,
    equal_percents,
    percents_sum_to_100,
    to_decimal,
)

if TYPE_CHECKING:
    from splitledger.db.repo import LedgerRepository

log = get_logger(__name__)

INVITE_TOKEN_BYTES = 16
DEFAULT_INVITE_TTL = timedelta(days=7)

_EMAIL_RE = re.compile(r"[^@\s]+@[^@\s]+\.[^@\s]+")


@dataclass(slots=True)
class InviteDetails:
    invitation_id: int
    token: str
    group_id: int
    group_name: str
    email: str
    inviter_id: int
    inviter_email: Optional[str]
    inviter_name: Optional[str]
    is_admin: bool
    expires_at: datetime
    reused: bool = False


def normalize_email(email: str) -> str:
    clean = email.strip().lower()
    if not _EMAIL_RE.fullmatch(clean):
        raise InvalidInput("Please provide a valid email address")
    return clean


async def create_group(
    repo: LedgerRepository,
    name: str,
    description: Optional[str],
    creator_id: int,
) -> Group:
    name = name.strip()
    if not name:
        raise InvalidInput("Group name is required")
    description = description.strip() if description else None

    group = await repo.create_group(name, description or None, creator_id)
    await repo.add_member(group.id, creator_id, Role.ADMIN, ONE_HUNDRED)
    log.info("group.created", group_id=group.id, created_by=creator_id)
    return group


async def admit_member(repo: LedgerRepository, group: Group, user_id: int, role: Role) -> Membership:
    """Insert a membership, rebalancing default split ratios.

    Without custom ratios every member ends up with an equal share of 100%.
    With custom ratios the newcomer starts at 0% until an admin rebalances.
    """
    members = await repo.list_members(group.id)
    if any(member.user_id == user_id for member in members):
        raise AlreadyMember("User is already a member of this group")

    if group.custom_split_ratio:
        return await repo.add_member(group.id, user_id, role, Decimal(0))

    percents = equal_percents([member.user_id for member in members] + [user_id])
    new_percent = percents.pop(user_id)
    if percents:
        await repo.set_split_percents(group.id, percents)
    return await repo.add_member(group.id, user_id, role, new_percent)


async def join_group(
    repo: LedgerRepository,
    invitation: Optional[Invitation],
    user_id: int,
    now: datetime,
) -> Group:
    if invitation is None:
        raise InvalidInvitation("Invitation not found")
    if invitation.status == InvitationStatus.ACCEPTED:
        raise InvalidInvitation("This invitation has already been used")
    if not invitation.is_open(now):
        raise InvalidInvitation("This invitation has expired")

    user = await repo.get_user(user_id)
    if user is None or not user.email or user.email.strip().lower() != invitation.email:
        raise InvalidInvitation("This invitation was sent to a different email address")

    group = await repo.get_group(invitation.group_id, for_update=True)
    if group is None:
        raise InvalidInvitation("The group for this invitation no longer exists")
    if await is_member(repo, group.id, user_id):
        raise AlreadyMember("You are already a member of this group")

    await admit_member(repo, group, user_id, Role.MEMBER)
    await repo.set_invitation_status(invitation.id, InvitationStatus.ACCEPTED)
    log.info("group.joined", group_id=group.id, user_id=user_id, invitation_id=invitation.id)
    return group


async def add_member(
    repo: LedgerRepository,
    group: Group,
    actor_id: int,
    user_id: int,
    role: Role = Role.MEMBER,
) -> Membership:
    await require_admin(repo, group.id, actor_id)
    if await repo.get_user(user_id) is None:
        raise NotFound("User not found")
    membership = await admit_member(repo, group, user_id, role)
    log.info("group.member_added", group_id=group.id, user_id=user_id, role=role.value)
    return membership


async def update_split_percents(
    repo: LedgerRepository,
    group: Group,
    actor_id: int,
    entries: Iterable[tuple[int, Amount]],
) -> dict[int, Decimal]:
    await require_admin(repo, group.id, actor_id)

    member_ids = {member.user_id for member in await repo.list_members(group.id)}
    percents: dict[int, Decimal] = {}
    for user_id, raw_percent in entries:
        if user_id in percents:
            raise InvalidSplit("Each member can appear only once")
        if user_id not in member_ids:
            raise InvalidSplit("Split percentages can only be set for group members")
        value = to_decimal(raw_percent)
        if value < 0 or value > ONE_HUNDRED:
            raise InvalidSplit("Split percentages must be between 0 and 100")
        percents[user_id] = value.quantize(PERCENT_QUANTUM)

    if member_ids - percents.keys():
        raise InvalidSplit("Split percentages must be set for every member")
    if not percents_sum_to_100(percents.values()):
        raise InvalidSplit("Split percentages must sum to 100%")

    await repo.set_custom_split_ratio(group.id, True)
    await repo.set_split_percents(group.id, percents)
    log.info("group.split_percents_updated", group_id=group.id, members=len(percents))
    return percents


async def get_or_create_invite(
    repo: LedgerRepository,
    group: Group,
    email: str,
    inviter_id: int,
    now: datetime,
    ttl: timedelta = DEFAULT_INVITE_TTL,
) -> InviteDetails:
    membership = await require_member(repo, group.id, inviter_id)
    email = normalize_email(email)
    expires_at = now + ttl

    existing = await repo.get_pending_invitation(group.id, email)
    if existing is not None:
        invitation = await repo.refresh_invitation(existing.id, expires_at)
    else:
        invitation = await repo.create_invitation(
            group_id=group.id,
            email=email,
            invited_by=inviter_id,
            token=secrets.token_urlsafe(INVITE_TOKEN_BYTES),
            expires_at=expires_at,
        )

    inviter = await repo.get_user(inviter_id)
    return InviteDetails(
        invitation_id=invitation.id,
        token=invitation.token,
        group_id=group.id,
        group_name=group.name,
        email=email,
        inviter_id=inviter_id,
        inviter_email=inviter.email if inviter else None,
        inviter_name=inviter.name if inviter else None,
        is_admin=membership.is_admin,
        expires_at=invitation.expires_at,
        reused=existing is not None,
    )


async def expire_invitations(repo: LedgerRepository, now: datetime) -> int:
    expired = await repo.expire_invitations(now)
    if expired:
        log.info("invite.expired", count=expired)
    return expired
