from datetime import date

import pytest

from errors import ValidationError
from periods import (
    add_months,
    first_business_day,
    month_period,
    resolve_period,
    year_month,
)


def test_add_months_snaps_to_month_end() -> None:
    assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
    assert add_months(date(2023, 1, 31), 1) == date(2023, 2, 28)
    assert add_months(date(2024, 11, 15), 3) == date(2025, 2, 15)
    assert add_months(date(2024, 3, 31), -1) == date(2024, 2, 29)
    assert add_months(date(2024, 1, 10), -13) == date(2022, 12, 10)


def test_month_period_bounds() -> None:
    period = month_period(date(2024, 2, 14))
    assert period.slug == "2024-02"
    assert period.start == date(2024, 2, 1)
    assert period.end == date(2024, 2, 29)
    assert year_month(date(2024, 12, 31)) == "2024-12"


def test_first_business_day_skips_weekend() -> None:
    assert first_business_day(2024, 6) == date(2024, 6, 3)
    assert first_business_day(2024, 9) == date(2024, 9, 2)
    assert first_business_day(2024, 3) == date(2024, 3, 1)


def test_resolve_period_variants() -> None:
    today = date(2024, 3, 18)

    this_month = resolve_period("this_month", None, None, today=today)
    assert (this_month.start, this_month.end) == (date(2024, 3, 1), date(2024, 3, 31))

    last_month = resolve_period("last_month", None, None, today=today)
    assert (last_month.start, last_month.end) == (date(2024, 2, 1), date(2024, 2, 29))

    custom = resolve_period("custom", "2024-01-05", "2024-01-20", today=today)
    assert (custom.start, custom.end) == (date(2024, 1, 5), date(2024, 1, 20))

    with pytest.raises(ValidationError):
        resolve_period("custom", "2024-02-01", "2024-01-01", today=today)
    with pytest.raises(ValidationError):
        resolve_period("custom", "yesterday", "2024-01-01", today=today)
