"""Overdue fees for rentals.

The penalty is evaluated at query time and never persisted. It depends only on
the rental's line items, its due date, and the evaluation date:

* evaluated on or before the due date: nothing;
* up to ``hard_limit_days`` late: half of each line subtotal;
* later than that: the full retail value of each line minus what its
  subtotal already charged.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal

from .constants import DEFAULT_HARD_LIMIT_DAYS, SOFT_PENALTY_RATE
from .exceptions import BusinessRuleViolation
from .transactions import Transaction


@dataclass(frozen=True)
class PenaltyCalculator:
    hard_limit_days: int = DEFAULT_HARD_LIMIT_DAYS
    soft_rate: Decimal = SOFT_PENALTY_RATE

    def hard_limit(self, due_date: date) -> date:
        return due_date + timedelta(days=self.hard_limit_days)

    def calculate(self, rental: Transaction, now: date) -> Decimal:
        """Return the penalty owed for ``rental`` if evaluated on ``now``.

        Raises:
            BusinessRuleViolation: If ``rental`` has no due date.
        """

        due_date = rental.due_date
        if due_date is None:
            raise BusinessRuleViolation(
                f"{rental.kind.name.capitalize()} {rental.transaction_id} has no due date"
            )
        if isinstance(now, datetime):
            now = now.date()

        if now <= due_date:
            return Decimal("0")
        if now <= self.hard_limit(due_date):
            return sum((item.subtotal * self.soft_rate for item in rental.line_items), Decimal("0"))
        return sum((item.retail_value - item.subtotal for item in rental.line_items), Decimal("0"))
