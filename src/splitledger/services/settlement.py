from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Mapping

from splitledger.db.models import Membership
from splitledger.services.split import from_cents


@dataclass(slots=True, frozen=True)
class Transfer:
    from_user: int
    to_user: int
    amount_cents: int

    @property
    def amount(self) -> Decimal:
        return from_cents(self.amount_cents)


def _ranked(entries: Iterable[tuple[int, int]]) -> list[list[int]]:
    # largest amounts first, lower user id on ties
    return [[user_id, amount] for user_id, amount in sorted(entries, key=lambda x: (-x[1], x[0]))]


def suggest_transfers(balances: Mapping[int, int]) -> list[Transfer]:
    """Payments that would bring every balance back to zero.

    Debtors are matched greedily against creditors, biggest first. When the
    balances do not net to zero (a one-cent rounding gap) the unmatched
    residue is left out.
    """
    creditors = _ranked((user_id, balance) for user_id, balance in balances.items() if balance > 0)
    debtors = _ranked((user_id, -balance) for user_id, balance in balances.items() if balance < 0)

    transfers: list[Transfer] = []
    i, j = 0, 0
    while i < len(creditors) and j < len(debtors):
        creditor, debtor = creditors[i], debtors[j]
        amount = min(creditor[1], debtor[1])
        transfers.append(Transfer(from_user=debtor[0], to_user=creditor[0], amount_cents=amount))

        creditor[1] -= amount
        debtor[1] -= amount
        if creditor[1] == 0:
            i += 1
        if debtor[1] == 0:
            j += 1

    return transfers


def transfers_for_members(members: Iterable[Membership]) -> list[Transfer]:
    return suggest_transfers({member.user_id: member.balance_cents for member in members})
