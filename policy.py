"""Fine and renewal rules.

Pure functions only; callers pass in the dates and the configured rate.
"""
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP

BORROWED = 'borrowed'
RETURNED = 'returned'

CENTS = Decimal('0.01')


def _as_date(value):
    if isinstance(value, datetime):
        return value.date()
    return value


def days_overdue(due_date, return_date):
    """Whole days past ``due_date``; never negative."""
    return max(0, (_as_date(return_date) - _as_date(due_date)).days)


def compute_fine(due_date, return_date, rate_per_day):
    days = days_overdue(due_date, return_date)
    fine = Decimal(days) * Decimal(str(rate_per_day))
    return fine.quantize(CENTS, rounding=ROUND_HALF_UP)


def is_overdue(status, due_date, today=None):
    today = _as_date(today) if today is not None else date.today()
    return status == BORROWED and _as_date(due_date) < today


def can_renew(renewal_count, max_renewals):
    return renewal_count < max_renewals
