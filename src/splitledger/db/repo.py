from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, AsyncIterator, Iterable, Mapping, Optional, Protocol, Sequence

import asyncpg

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
from splitledger.logging import get_logger, sql_logger


class Executor(Protocol):
    async def fetch(self, query: str, *args: Any) -> list[asyncpg.Record]: ...

    async def fetchrow(self, query: str, *args: Any) -> asyncpg.Record | None: ...

    async def fetchval(self, query: str, *args: Any) -> Any: ...

    async def execute(self, query: str, *args: Any) -> str: ...

    async def executemany(self, command: str, args: Iterable[Iterable[Any]]) -> None: ...


class Transaction:
    """Query methods bound to the connection of one open transaction."""

    def __init__(self, conn: asyncpg.Connection) -> None:
        self._conn = conn

    async def fetch(self, query: str, *args: Any) -> list[asyncpg.Record]:
        sql_logger.info("sql.fetch", query=query, args=args, tx=True)
        return await self._conn.fetch(query, *args)

    async def fetchrow(self, query: str, *args: Any) -> asyncpg.Record | None:
        sql_logger.info("sql.fetchrow", query=query, args=args, tx=True)
        return await self._conn.fetchrow(query, *args)

    async def fetchval(self, query: str, *args: Any) -> Any:
        sql_logger.info("sql.fetchval", query=query, args=args, tx=True)
        return await self._conn.fetchval(query, *args)

    async def execute(self, query: str, *args: Any) -> str:
        sql_logger.info("sql.execute", query=query, args=args, tx=True)
        return await self._conn.execute(query, *args)

    async def executemany(self, command: str, args: Iterable[Iterable[Any]]) -> None:
        sql_logger.info("sql.executemany", query=command, tx=True)
        await self._conn.executemany(command, args)


class Database:
    def __init__(self, dsn: str) -> None:
        self._dsn = dsn
        self._pool: asyncpg.Pool | None = None
        self._log = get_logger(__name__)

    async def connect(self) -> None:
        if self._pool is None:
            # asyncpg expects a plain postgresql/postgres scheme, without "+asyncpg"
            dsn = self._dsn.replace("+asyncpg", "")
            self._pool = await asyncpg.create_pool(dsn)
            self._log.info("db.pool.created")

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
            self._log.info("db.pool.closed")

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Transaction]:
        await self._ensure_pool()
        assert self._pool
        async with self._pool.acquire() as conn:
            async with conn.transaction(isolation="serializable"):
                yield Transaction(conn)

    async def _ensure_pool(self) -> None:
        if self._pool is None:
            await self.connect()


def _user(row: Mapping[str, Any]) -> User:
    return User(id=row["id"], email=row["email"], name=row["name"])


def _group(row: Mapping[str, Any]) -> Group:
    return Group(
        id=row["id"],
        name=row["name"],
        description=row["description"],
        created_by=row["created_by"],
        total_balance_cents=row["total_balance_cents"],
        custom_split_ratio=row["custom_split_ratio"],
        created_at=row["created_at"],
    )


def _membership(row: Mapping[str, Any]) -> Membership:
    return Membership(
        group_id=row["group_id"],
        user_id=row["user_id"],
        balance_cents=row["balance_cents"],
        role=Role(row["role"]),
        split_percent=row["split_percent"],
        joined_at=row["joined_at"],
    )


def _expense(row: Mapping[str, Any]) -> Expense:
    return Expense(
        id=row["id"],
        group_id=row["group_id"],
        payer_id=row["payer_id"],
        description=row["description"],
        amount_cents=row["amount_cents"],
        date=row["date"],
        split_type=SplitType(row["split_type"]),
        note=row["note"],
        status=ExpenseStatus(row["status"]),
        created_at=row["created_at"],
    )


def _split(row: Mapping[str, Any]) -> Split:
    return Split(
        expense_id=row["expense_id"],
        user_id=row["user_id"],
        amount_cents=row["amount_cents"],
        settled=row["settled"],
    )


def _invitation(row: Mapping[str, Any]) -> Invitation:
    return Invitation(
        id=row["id"],
        group_id=row["group_id"],
        email=row["email"],
        invited_by=row["invited_by"],
        token=row["token"],
        status=InvitationStatus(row["status"]),
        expires_at=row["expires_at"],
        created_at=row["created_at"],
    )


class LedgerRepository:
    """Table access for the ledger.

    Bound to the :class:`Transaction` of one ledger command; group rows are
    locked with ``for_update`` before any balance is read and rewritten.
    """

    def __init__(self, db: Executor) -> None:
        self.db = db

    # users

    async def get_user(self, user_id: int) -> Optional[User]:
        row = await self.db.fetchrow("SELECT * FROM users WHERE id = $1", user_id)
        return _user(row) if row else None

    # groups

    async def create_group(self, name: str, description: Optional[str], created_by: int) -> Group:
        row = await self.db.fetchrow(
            """
            INSERT INTO groups (name, description, created_by)
            VALUES ($1, $2, $3)
            RETURNING *
            """,
            name,
            description,
            created_by,
        )
        assert row is not None
        return _group(row)

    async def get_group(self, group_id: int, *, for_update: bool = False) -> Optional[Group]:
        query = "SELECT * FROM groups WHERE id = $1"
        if for_update:
            query += " FOR UPDATE"
        row = await self.db.fetchrow(query, group_id)
        return _group(row) if row else None

    async def set_custom_split_ratio(self, group_id: int, value: bool) -> None:
        await self.db.execute("UPDATE groups SET custom_split_ratio = $1 WHERE id = $2", value, group_id)

    async def adjust_group_total(self, group_id: int, delta_cents: int) -> None:
        await self.db.execute(
            "UPDATE groups SET total_balance_cents = total_balance_cents + $1 WHERE id = $2",
            delta_cents,
            group_id,
        )

    async def reset_group_total(self, group_id: int) -> None:
        await self.db.execute("UPDATE groups SET total_balance_cents = 0 WHERE id = $1", group_id)

    async def list_user_groups(self, user_id: int) -> list[tuple[Group, Membership, int]]:
        rows = await self.db.fetch(
            """
            SELECT g.*,
                   gm.group_id, gm.user_id, gm.balance_cents, gm.role, gm.split_percent, gm.joined_at,
                   (SELECT count(*) FROM group_members c WHERE c.group_id = g.id) AS member_count
            FROM group_members gm
            JOIN groups g ON g.id = gm.group_id
            WHERE gm.user_id = $1
            ORDER BY g.created_at
            """,
            user_id,
        )
        return [(_group(row), _membership(row), int(row["member_count"])) for row in rows]

    # memberships

    async def get_membership(self, group_id: int, user_id: int) -> Optional[Membership]:
        row = await self.db.fetchrow(
            "SELECT * FROM group_members WHERE group_id = $1 AND user_id = $2",
            group_id,
            user_id,
        )
        return _membership(row) if row else None

    async def list_members(self, group_id: int) -> list[Membership]:
        rows = await self.db.fetch(
            "SELECT * FROM group_members WHERE group_id = $1 ORDER BY joined_at, user_id",
            group_id,
        )
        return [_membership(row) for row in rows]

    async def add_member(
        self,
        group_id: int,
        user_id: int,
        role: Role,
        split_percent: Optional[Decimal],
    ) -> Membership:
        row = await self.db.fetchrow(
            """
            INSERT INTO group_members (group_id, user_id, role, split_percent)
            VALUES ($1, $2, $3, $4)
            RETURNING *
            """,
            group_id,
            user_id,
            role.value,
            split_percent,
        )
        assert row is not None
        return _membership(row)

    async def set_split_percents(self, group_id: int, percents: Mapping[int, Decimal]) -> None:
        await self.db.executemany(
            "UPDATE group_members SET split_percent = $1 WHERE group_id = $2 AND user_id = $3",
            ((percent, group_id, user_id) for user_id, percent in percents.items()),
        )

    async def adjust_member_balances(self, group_id: int, deltas: Mapping[int, int]) -> None:
        await self.db.executemany(
            """
            UPDATE group_members SET balance_cents = balance_cents + $1
            WHERE group_id = $2 AND user_id = $3
            """,
            ((delta, group_id, user_id) for user_id, delta in deltas.items() if delta),
        )

    async def reset_member_balances(self, group_id: int) -> None:
        await self.db.execute("UPDATE group_members SET balance_cents = 0 WHERE group_id = $1", group_id)

    # expenses

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
        row = await self.db.fetchrow(
            """
            INSERT INTO expenses (group_id, payer_id, description, amount_cents, date, split_type, note)
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            RETURNING *
            """,
            group_id,
            payer_id,
            description,
            amount_cents,
            date,
            split_type.value,
            note,
        )
        assert row is not None
        return _expense(row)

    async def get_expense(self, expense_id: int) -> Optional[Expense]:
        row = await self.db.fetchrow("SELECT * FROM expenses WHERE id = $1", expense_id)
        return _expense(row) if row else None

    async def list_expenses(self, group_id: int) -> list[Expense]:
        rows = await self.db.fetch(
            "SELECT * FROM expenses WHERE group_id = $1 ORDER BY date DESC, id DESC",
            group_id,
        )
        return [_expense(row) for row in rows]

    async def set_expense_status(self, expense_id: int, status: ExpenseStatus) -> None:
        await self.db.execute("UPDATE expenses SET status = $1 WHERE id = $2", status.value, expense_id)

    async def delete_expense(self, expense_id: int) -> None:
        await self.db.execute("DELETE FROM expense_splits WHERE expense_id = $1", expense_id)
        await self.db.execute("DELETE FROM expenses WHERE id = $1", expense_id)

    async def settle_active_expenses(self, group_id: int) -> int:
        await self.db.execute(
            """
            UPDATE expense_splits s SET settled = true
            FROM expenses e
            WHERE e.id = s.expense_id AND e.group_id = $1 AND e.status = 'active'
            """,
            group_id,
        )
        rows = await self.db.fetch(
            """
            UPDATE expenses SET status = 'settled'
            WHERE group_id = $1 AND status = 'active'
            RETURNING id
            """,
            group_id,
        )
        return len(rows)

    # splits

    async def add_splits(self, expense_id: int, shares: Mapping[int, int]) -> None:
        await self.db.executemany(
            """
            INSERT INTO expense_splits (expense_id, user_id, amount_cents)
            VALUES ($1, $2, $3)
            """,
            ((expense_id, user_id, amount) for user_id, amount in shares.items()),
        )

    async def list_splits(self, expense_id: int) -> list[Split]:
        rows = await self.db.fetch(
            "SELECT * FROM expense_splits WHERE expense_id = $1 ORDER BY user_id",
            expense_id,
        )
        return [_split(row) for row in rows]

    async def list_group_splits(self, expense_ids: Sequence[int]) -> list[Split]:
        if not expense_ids:
            return []
        rows = await self.db.fetch(
            "SELECT * FROM expense_splits WHERE expense_id = ANY($1::bigint[]) ORDER BY expense_id, user_id",
            list(expense_ids),
        )
        return [_split(row) for row in rows]

    async def get_split(self, expense_id: int, user_id: int) -> Optional[Split]:
        row = await self.db.fetchrow(
            "SELECT * FROM expense_splits WHERE expense_id = $1 AND user_id = $2",
            expense_id,
            user_id,
        )
        return _split(row) if row else None

    async def mark_split_settled(self, expense_id: int, user_id: int) -> None:
        await self.db.execute(
            "UPDATE expense_splits SET settled = true WHERE expense_id = $1 AND user_id = $2",
            expense_id,
            user_id,
        )

    async def count_unsettled_splits(self, expense_id: int) -> int:
        value = await self.db.fetchval(
            "SELECT count(*) FROM expense_splits WHERE expense_id = $1 AND settled = false",
            expense_id,
        )
        return int(value or 0)

    # invitations

    async def create_invitation(
        self,
        group_id: int,
        email: str,
        invited_by: int,
        token: str,
        expires_at: datetime,
    ) -> Invitation:
        row = await self.db.fetchrow(
            """
            INSERT INTO invitations (group_id, email, invited_by, token, expires_at)
            VALUES ($1, $2, $3, $4, $5)
            RETURNING *
            """,
            group_id,
            email,
            invited_by,
            token,
            expires_at,
        )
        assert row is not None
        return _invitation(row)

    async def get_invitation(self, invitation_id: int) -> Optional[Invitation]:
        row = await self.db.fetchrow("SELECT * FROM invitations WHERE id = $1", invitation_id)
        return _invitation(row) if row else None

    async def get_invitation_by_token(self, token: str) -> Optional[Invitation]:
        row = await self.db.fetchrow("SELECT * FROM invitations WHERE token = $1", token)
        return _invitation(row) if row else None

    async def get_pending_invitation(self, group_id: int, email: str) -> Optional[Invitation]:
        row = await self.db.fetchrow(
            """
            SELECT * FROM invitations
            WHERE group_id = $1 AND email = $2 AND status = 'pending'
            FOR UPDATE
            """,
            group_id,
            email,
        )
        return _invitation(row) if row else None

    async def refresh_invitation(self, invitation_id: int, expires_at: datetime) -> Invitation:
        row = await self.db.fetchrow(
            "UPDATE invitations SET expires_at = $1 WHERE id = $2 RETURNING *",
            expires_at,
            invitation_id,
        )
        assert row is not None
        return _invitation(row)

    async def set_invitation_status(self, invitation_id: int, status: InvitationStatus) -> None:
        await self.db.execute("UPDATE invitations SET status = $1 WHERE id = $2", status.value, invitation_id)

    async def expire_invitations(self, now: datetime) -> int:
        rows = await self.db.fetch(
            """
            UPDATE invitations SET status = 'expired'
            WHERE status = 'pending' AND expires_at < $1
            RETURNING id
            """,
            now,
        )
        return len(rows)
