import math
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from circulation_desk.config import settings
from circulation_desk.models import as_utc

ONE_DAY = timedelta(days=1)


def days_overdue(due_date: datetime, return_date: datetime) -> int:
    """Whole days late, any started day counting as a full one."""
    delta = as_utc(return_date) - as_utc(due_date)
    if delta <= timedelta(0):
        return 0
    return math.ceil(delta / ONE_DAY)


def compute_fine(due_date: datetime, return_date: datetime, rate: Optional[Decimal] = None) -> Decimal:
    """Return the penalty for handing a loan back at ``return_date``.

    Zero when the copy comes back on or before the due date, otherwise
    ``days_overdue * rate`` rounded to cents.
    """
    rate = settings.fine_rate if rate is None else Decimal(str(rate))
    days = days_overdue(due_date, return_date)
    if days == 0:
        return Decimal("0.00")
    return (rate * days).quantize(Decimal("0.01"))
