"""Null-safe numeric helpers shared by the adapters, metrics engine and snapshots."""

from __future__ import annotations

import math
from typing import Iterable, Sequence

Number = int | float


def is_finite(value: Number | None) -> bool:
    return value is not None and not (isinstance(value, float) and not math.isfinite(value))


def safe_div(numerator: Number | None, denominator: Number | None) -> float | None:
    """Divide two optional numbers, returning ``None`` instead of raising.

    A missing operand, a zero denominator or a non-finite input all yield ``None``,
    so callers can chain ratios without guarding each step.
    """

    if not is_finite(numerator) or not is_finite(denominator) or denominator == 0:
        return None
    result = numerator / denominator
    return result if math.isfinite(result) else None


def safe_pct(numerator: Number | None, denominator: Number | None) -> float | None:
    ratio = safe_div(numerator, denominator)
    return ratio * 100 if ratio is not None else None


def pct_change(current: Number | None, previous: Number | None) -> float | None:
    """Percentage change from ``previous`` to ``current`` (``None`` if either is missing)."""

    if not is_finite(current):
        return None
    ratio = safe_div(current - previous if is_finite(previous) else None, previous)
    return ratio * 100 if ratio is not None else None


def sum_present(values: Iterable[Number | None]) -> float | None:
    present = [value for value in values if is_finite(value)]
    if not present:
        return None
    return float(sum(present))


def clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return min(high, max(low, value))


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def round_or_none(value: float | None, digits: int = 2) -> float | None:
    if not is_finite(value):
        return None
    return round(value, digits)


def mean_or_none(values: Sequence[float]) -> float | None:
    if not values:
        return None
    return sum(values) / len(values)


def monthly_mortgage_payment(
    home_value: float,
    *,
    annual_rate: float,
    term_years: int,
    down_payment_pct: float,
) -> float:
    """Fixed-rate amortized monthly payment, rounded to the cent.

    ``P = L * c(1 + c)^n / ((1 + c)^n - 1)`` where ``L`` is the financed amount,
    ``c`` the monthly rate and ``n`` the number of monthly payments.
    """

    loan_amount = home_value * (1 - down_payment_pct)
    monthly_rate = annual_rate / 12
    payments = term_years * 12
    if payments <= 0:
        raise ValueError("term_years must be positive")

    if monthly_rate == 0:
        return round(loan_amount / payments, 2)

    growth = (1 + monthly_rate) ** payments
    payment = loan_amount * (monthly_rate * growth) / (growth - 1)
    return round(payment, 2)


def linear_regression_forecast(
    values: Sequence[float],
    *,
    horizon: int = 12,
    min_points: int = 6,
) -> float | None:
    """Projected % change ``horizon`` steps past the last observation.

    Fits ``y = slope * x + intercept`` by ordinary least squares with ``x`` being the
    index position of each value, then compares the fitted value at the last position
    with the fitted value ``horizon`` positions later.
    """

    points = [float(value) for value in values if is_finite(value)]
    n = len(points)
    if n < min_points:
        return None

    sum_x = sum_y = sum_xy = sum_xx = 0.0
    for x, y in enumerate(points):
        sum_x += x
        sum_y += y
        sum_xy += x * y
        sum_xx += x * x

    denominator = n * sum_xx - sum_x * sum_x
    if denominator == 0:
        return None

    slope = (n * sum_xy - sum_x * sum_y) / denominator
    intercept = (sum_y - slope * sum_x) / n

    last_x = n - 1
    current = slope * last_x + intercept
    future = slope * (last_x + horizon) + intercept
    return pct_change(future, current)


__all__ = [
    "safe_div",
    "safe_pct",
    "pct_change",
    "sum_present",
    "clamp",
    "round_half_up",
    "round_or_none",
    "mean_or_none",
    "monthly_mortgage_payment",
    "linear_regression_forecast",
]
