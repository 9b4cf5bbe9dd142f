from datetime import datetime, timezone
from decimal import Decimal

import pytest

from splitledger.db.models import Membership, Role
from splitledger.services.errors import InvalidInput, InvalidSplit, InvalidState
from splitledger.services.split import (
    custom_split,
    default_split,
    equal_percents,
    from_cents,
    split_amount,
    split_by_percent,
    to_cents,
)


def _member(user_id: int, percent: str | None = None) -> Membership:
    return Membership(
        group_id=1,
        user_id=user_id,
        balance_cents=0,
        role=Role.MEMBER,
        split_percent=Decimal(percent) if percent is not None else None,
        joined_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
    )


def test_split_amount_even():
    shares = split_amount(1000, [1, 2, 3, 4])
    assert shares == {1: 250, 2: 250, 3: 250, 4: 250}


def test_split_amount_remainder():
    shares = split_amount(1001, [1, 2, 3])
    assert sum(shares.values()) == 1001
    assert sorted(shares.values()) == [333, 334, 334]


def test_split_amount_without_members():
    with pytest.raises(InvalidState):
        split_amount(1000, [])


def test_split_by_percent_sixty_forty():
    assert split_by_percent(10000, {1: Decimal(60), 2: Decimal(40)}) == {1: 6000, 2: 4000}


def test_split_by_percent_rounding_goes_to_largest_share():
    shares = split_by_percent(100, {1: Decimal("33.3334"), 2: Decimal("33.3333"), 3: Decimal("33.3333")})
    assert shares == {1: 34, 2: 33, 3: 33}


def test_split_by_percent_zero_share_never_absorbs_rounding():
    shares = split_by_percent(101, {1: Decimal(50), 2: Decimal(50), 3: Decimal(0)})
    assert shares[3] == 0
    assert sum(shares.values()) == 101


def test_equal_percents_sum_to_exactly_100():
    percents = equal_percents([1, 2, 3])
    assert percents == {1: Decimal("33.3334"), 2: Decimal("33.3333"), 3: Decimal("33.3333")}
    assert sum(percents.values()) == Decimal(100)


def test_default_split_falls_back_to_equal_shares():
    members = [_member(1, "70"), _member(2, "30")]
    assert default_split(1000, members, custom_split_ratio=False) == {1: 500, 2: 500}


def test_default_split_uses_configured_percents():
    members = [_member(1, "60"), _member(2, "40")]
    assert default_split(10000, members, custom_split_ratio=True) == {1: 6000, 2: 4000}


def test_default_split_requires_every_percent():
    members = [_member(1, "100"), _member(2)]
    with pytest.raises(InvalidSplit):
        default_split(10000, members, custom_split_ratio=True)


def test_default_split_rejects_percents_not_summing_to_100():
    members = [_member(1, "60"), _member(2, "30")]
    with pytest.raises(InvalidSplit):
        default_split(10000, members, custom_split_ratio=True)


def test_default_split_without_members():
    with pytest.raises(InvalidState):
        default_split(10000, [], custom_split_ratio=False)


def test_custom_split_accepts_matching_total():
    assert custom_split(10000, [(1, "30"), (2, "70")], {1, 2}) == {1: 3000, 2: 7000}


def test_custom_split_rejects_mismatched_total():
    with pytest.raises(InvalidSplit):
        custom_split(10000, [(1, "20"), (2, "90")], {1, 2})


def test_custom_split_absorbs_cent_rounding():
    shares = custom_split(10000, [(1, "33.33"), (2, "33.33"), (3, "33.33")], {1, 2, 3})
    assert sum(shares.values()) == 10000
    assert shares == {1: 3334, 2: 3333, 3: 3333}


@pytest.mark.parametrize(
    "entries",
    [
        [(1, "50"), (3, "50")],
        [(1, "50"), (1, "50")],
        [(1, "150"), (2, "-50")],
        [],
    ],
)
def test_custom_split_rejects_bad_entries(entries):
    with pytest.raises(InvalidSplit):
        custom_split(10000, entries, {1, 2})


def test_currency_conversion():
    assert to_cents("12.345") == 1234
    assert to_cents(Decimal("0.015")) == 2
    assert to_cents(7) == 700
    assert from_cents(1234) == Decimal("12.34")
    with pytest.raises(InvalidInput):
        to_cents("twelve")


@pytest.mark.parametrize(
    "percents, amount",
    [
        (("100", "0.001", "0.009"), 100_000_000),
        (("50", "49.99", "0"), 123_456_789),
        (("33.3333", "33.3333", "33.3333"), 100),
        (("99.995", "0.005", "0.01"), 999_999_999),
        (("0.0001", "99.9999", "0.01"), 1),
    ],
)
def test_default_split_within_tolerance_stays_proportional(percents, amount):
    members = [_member(user_id, percent) for user_id, percent in enumerate(percents, start=1)]
    total = sum(Decimal(p) for p in percents)

    shares = default_split(amount, members, custom_split_ratio=True)

    assert sum(shares.values()) == amount
    assert all(share >= 0 for share in shares.values())
    for user_id, percent in enumerate(percents, start=1):
        assert abs(shares[user_id] - amount * Decimal(percent) / total) < 1
        if Decimal(percent) == 0:
            assert shares[user_id] == 0


def test_split_by_percent_normalises_by_actual_sum():
    shares = split_by_percent(100_000_000, {1: Decimal(100), 2: Decimal("0.001"), 3: Decimal("0.009")})
    assert shares == {1: 99_990_001, 2: 1000, 3: 8999}


def test_split_by_percent_rejects_all_zero_percents():
    with pytest.raises(InvalidSplit):
        split_by_percent(100, {1: Decimal(0), 2: Decimal(0)})
