from __future__ import annotations

from collections import defaultdict
from datetime import date
from decimal import Decimal
from typing import Iterable, Optional

from models import BudgetStatus, TransactionType
from periods import Period, local_today, month_label, month_period, trailing_months
from schemas import Budget, BudgetProgress, Transaction

WARNING_THRESHOLD = 80
OVER_THRESHOLD = 100


class InvalidBudgetError(ValueError):
    pass


def signed_amount(txn: Transaction) -> Decimal:
    """Income counts positive, expense negative."""
    if txn.type == TransactionType.income:
        return txn.amount
    return -txn.amount


def period_totals(
    transactions: Iterable[Transaction], period: Period
) -> tuple[Decimal, Decimal]:
    income = Decimal("0")
    expenses = Decimal("0")
    for txn in transactions:
        if not period.contains(txn.date):
            continue
        if txn.type == TransactionType.income:
            income += txn.amount
        else:
            expenses += txn.amount
    return income, expenses


def category_spending(transactions: Iterable[Transaction]) -> dict[str, Decimal]:
    # All-time totals; budget progress is the period-scoped view.
    totals: dict[str, Decimal] = defaultdict(Decimal)
    for txn in transactions:
        if txn.type == TransactionType.expense:
            totals[txn.category_id] += txn.amount
    return dict(totals)


def monthly_series(
    transactions: Iterable[Transaction],
    *,
    months: int = 6,
    today: Optional[date] = None,
) -> list[dict[str, object]]:
    txns = list(transactions)
    out: list[dict[str, object]] = []
    for period in trailing_months(months, today=today):
        income, expenses = period_totals(txns, period)
        out.append(
            {
                "month": month_label(period),
                "income": income,
                "expenses": expenses,
            }
        )
    return out


def budget_status(percentage: float) -> BudgetStatus:
    if percentage >= OVER_THRESHOLD:
        return BudgetStatus.over
    if percentage >= WARNING_THRESHOLD:
        return BudgetStatus.warning
    return BudgetStatus.good


def budget_progress(
    budget: Budget,
    transactions: Iterable[Transaction],
    *,
    today: Optional[date] = None,
) -> BudgetProgress:
    if budget.amount <= 0:
        raise InvalidBudgetError(f"Budget {budget.id} has a non-positive amount")

    # Every budget is measured against the current calendar month; the stored
    # period is a label only.
    period = month_period(today or local_today())
    spent = sum(
        (
            txn.amount
            for txn in transactions
            if txn.type == TransactionType.expense
            and txn.category_id == budget.category_id
            and period.contains(txn.date)
        ),
        Decimal("0"),
    )
    percentage = float(spent / budget.amount * 100)
    return BudgetProgress(
        **budget.model_dump(),
        spent=spent,
        remaining=budget.amount - spent,
        percentage=percentage,
        status=budget_status(percentage),
    )
