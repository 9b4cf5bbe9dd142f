from __future__ import annotations

import math
from decimal import Decimal, InvalidOperation, ROUND_HALF_EVEN
from fractions import Fraction
from typing import Collection, Iterable, Mapping, NamedTuple, Sequence, Union

from splitledger.db.models import Membership
from splitledger.services.errors import InvalidInput, InvalidSplit, InvalidState

Amount = Union[Decimal, int, float, str]

CENT = Decimal("0.01")
TOLERANCE = Decimal("0.01")
ONE_HUNDRED = Decimal(100)
PERCENT_QUANTUM = Decimal("0.0001")
# 100% expressed in PERCENT_QUANTUM units
_PERCENT_UNITS = 1_000_000


class SplitEntry(NamedTuple):
    user_id: int
    amount: Amount


class PercentEntry(NamedTuple):
    user_id: int
    percent: Amount


def to_decimal(value: Amount) -> Decimal:
    if isinstance(value, bool):
        raise InvalidInput("Amount must be a number")
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except InvalidOperation as exc:
        raise InvalidInput(f"Not a valid number: {value!r}") from exc
    if not result.is_finite():
        raise InvalidInput(f"Not a valid number: {value!r}")
    return result


def to_cents(amount: Amount) -> int:
    value = to_decimal(amount)
    try:
        return int((value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_EVEN))
    except InvalidOperation as exc:
        raise InvalidInput(f"Amount is out of range: {amount!r}") from exc


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENT)


def _spread_remainder(shares: dict[int, int], order: Sequence[int], remainder: int) -> None:
    if remainder and not order:
        raise InvalidState("No share can absorb the rounding remainder")
    idx = 0
    step = 1 if remainder > 0 else -1
    while remainder != 0:
        shares[order[idx]] += step
        remainder -= step
        idx = (idx + 1) % len(order)


def split_amount(amount_cents: int, consumers: Sequence[int]) -> dict[int, int]:
    if amount_cents < 0:
        raise InvalidSplit("Amount must be non-negative")
    if not consumers:
        raise InvalidState("Cannot split an expense in a group without members")

    n = len(consumers)
    base_share = (Decimal(amount_cents) / Decimal(n)).quantize(Decimal("1"), rounding=ROUND_HALF_EVEN)

    shares = {consumer: int(base_share) for consumer in consumers}
    _spread_remainder(shares, list(consumers), amount_cents - sum(shares.values()))
    return shares


def split_by_percent(amount_cents: int, percents: Mapping[int, Decimal]) -> dict[int, int]:
    """Share of each member as ``amount * percent / sum(percents)``, in cents.

    Percentages are only required to sum to 100 within a tolerance, so they are
    normalised by their actual sum. Each share is floored and the leftover cents
    (fewer than the number of members) go to the largest fractional remainders.
    Shares add up to the amount, never go negative, and a 0% member owes nothing.
    """
    if amount_cents < 0:
        raise InvalidSplit("Amount must be non-negative")
    weights = {user_id: Fraction(percent) for user_id, percent in percents.items()}
    if any(weight < 0 for weight in weights.values()):
        raise InvalidSplit("Split percentages cannot be negative")
    total = sum(weights.values(), Fraction(0))
    if total <= 0:
        raise InvalidSplit("Split percentages must add up to more than zero")

    shares: dict[int, int] = {}
    remainders: dict[int, Fraction] = {}
    for user_id, weight in weights.items():
        exact = amount_cents * weight / total
        shares[user_id] = math.floor(exact)
        remainders[user_id] = exact - shares[user_id]

    leftover = amount_cents - sum(shares.values())
    ranked = sorted(weights, key=lambda user_id: (remainders[user_id], weights[user_id]), reverse=True)
    for user_id in ranked[:leftover]:
        shares[user_id] += 1
    return shares


def equal_percents(user_ids: Sequence[int]) -> dict[int, Decimal]:
    units = split_amount(_PERCENT_UNITS, user_ids)
    return {user_id: (Decimal(value) * PERCENT_QUANTUM).quantize(PERCENT_QUANTUM) for user_id, value in units.items()}


def percents_sum_to_100(values: Iterable[Decimal]) -> bool:
    return abs(sum(values, Decimal(0)) - ONE_HUNDRED) <= TOLERANCE


def default_split(amount_cents: int, members: Sequence[Membership], custom_split_ratio: bool) -> dict[int, int]:
    if not members:
        raise InvalidState("Cannot split an expense in a group without members")

    if not custom_split_ratio:
        return split_amount(amount_cents, [member.user_id for member in members])

    percents: dict[int, Decimal] = {}
    for member in members:
        if member.split_percent is None:
            raise InvalidSplit("Split percentages are not configured for every member")
        percents[member.user_id] = Decimal(member.split_percent)

    if not percents_sum_to_100(percents.values()):
        raise InvalidSplit("Split percentages must sum to 100%")
    return split_by_percent(amount_cents, percents)


def custom_split(
    amount_cents: int,
    entries: Iterable[tuple[int, Amount]],
    member_ids: Collection[int],
) -> dict[int, int]:
    amounts: dict[int, Decimal] = {}
    for user_id, raw_amount in entries:
        if user_id in amounts:
            raise InvalidSplit("Each member can appear only once in a split")
        if user_id not in member_ids:
            raise InvalidSplit("Splits can only include group members")
        value = to_decimal(raw_amount)
        if value < 0:
            raise InvalidSplit("Split amounts cannot be negative")
        amounts[user_id] = value

    if not amounts:
        raise InvalidSplit("At least one split is required")

    total = sum(amounts.values(), Decimal(0))
    expected = from_cents(amount_cents)
    if abs(total - expected) > TOLERANCE:
        raise InvalidSplit(f"Split amounts ({total}) must sum to the total amount ({expected})")

    shares = {user_id: to_cents(value) for user_id, value in amounts.items()}
    ranked = sorted(shares, key=lambda user_id: shares[user_id], reverse=True)
    order = [user_id for user_id in ranked if shares[user_id] > 0] or ranked
    _spread_remainder(shares, order, amount_cents - sum(shares.values()))
    return shares
