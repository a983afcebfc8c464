from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Iterable, Mapping

from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.engine import Connection

from billfold.currency_conversion import ExchangeRateResolver
from billfold.database import accounts, budgets, categories, transactions
from billfold.exceptions import ConflictError, NotFoundError, ValidationError
from billfold.reports import month_end, month_start, sum_converted_amounts

logger = logging.getLogger(__name__)

DUPLICATE_BUDGET = "A budget for this category and month already exists."


@dataclass(frozen=True)
class BudgetEvaluation:
    spent: int
    remaining: int
    status: str


def evaluate_budget(amount: int, spent: int) -> BudgetEvaluation:
    if amount <= 0:
        raise ValueError("Budget amount must be greater than zero.")
    remaining = amount - spent
    return BudgetEvaluation(
        spent=spent,
        remaining=remaining,
        status="ok" if spent <= amount else "over",
    )


def _budget_select():
    return select(budgets, categories.c.name.label("category_name")).select_from(
        budgets.join(categories, budgets.c.category_id == categories.c.id)
    )


def _expense_category(conn: Connection, user_id: int, category_id: int) -> Mapping:
    row = (
        conn.execute(
            select(categories.c.id, categories.c.type).where(
                categories.c.id == category_id, categories.c.user_id == user_id
            )
        )
        .mappings()
        .first()
    )
    if not row:
        raise NotFoundError("Category not found.")
    if row["type"] != "expense":
        raise ValidationError("Budgets can only be set on expense categories.")
    return row


def _spending(
    conn: Connection, user_id: int, category_ids: Iterable[int], month: date
) -> dict[int, dict[str, int]]:
    """Completed expenses per category for one month, grouped by account currency."""
    category_ids = list(category_ids)
    if not category_ids:
        return {}
    rows = (
        conn.execute(
            select(
                transactions.c.category_id,
                accounts.c.currency,
                func.sum(transactions.c.account_amount).label("total"),
            )
            .select_from(transactions.join(accounts, transactions.c.account_id == accounts.c.id))
            .where(
                transactions.c.user_id == user_id,
                transactions.c.category_id.in_(category_ids),
                transactions.c.type == "expense",
                transactions.c.status == "completed",
                transactions.c.date >= month_start(month),
                transactions.c.date <= month_end(month),
            )
            .group_by(transactions.c.category_id, accounts.c.currency)
        )
        .mappings()
        .all()
    )
    spending: dict[int, dict[str, int]] = {}
    for row in rows:
        spending.setdefault(row["category_id"], {})[row["currency"]] = int(row["total"] or 0)
    return spending


def _with_spending(
    conn: Connection, user_id: int, rows: list[Mapping], resolver: ExchangeRateResolver
) -> list[dict]:
    results = []
    by_month: dict[date, list[Mapping]] = {}
    for row in rows:
        by_month.setdefault(row["month"], []).append(row)
    spending = {
        month: _spending(conn, user_id, {row["category_id"] for row in month_rows}, month)
        for month, month_rows in by_month.items()
    }
    for row in rows:
        by_currency = spending[row["month"]].get(row["category_id"], {})
        spent = sum_converted_amounts(by_currency, row["currency"], resolver)
        evaluation = evaluate_budget(row["amount"], spent)
        results.append(
            {
                **row,
                "spent": evaluation.spent,
                "remaining": evaluation.remaining,
                "status": evaluation.status,
            }
        )
    return results


def list_budgets(
    conn: Connection, user_id: int, month: date, resolver: ExchangeRateResolver
) -> list[dict]:
    rows = (
        conn.execute(
            _budget_select()
            .where(budgets.c.user_id == user_id, budgets.c.month == month_start(month))
            .order_by(categories.c.name.asc(), budgets.c.id.asc())
        )
        .mappings()
        .all()
    )
    return _with_spending(conn, user_id, rows, resolver)


def get_budget(
    conn: Connection, user_id: int, budget_id: int, resolver: ExchangeRateResolver
) -> dict:
    row = (
        conn.execute(_budget_select().where(budgets.c.id == budget_id, budgets.c.user_id == user_id))
        .mappings()
        .first()
    )
    if not row:
        raise NotFoundError("Budget not found.")
    return _with_spending(conn, user_id, [row], resolver)[0]


def create_budget(
    conn: Connection,
    user_id: int,
    category_id: int,
    amount: int,
    month: date,
    currency: str,
    resolver: ExchangeRateResolver,
) -> dict:
    """Set the monthly limit for one expense category.

    ``month`` is normalized to the first day of its month. The storage
    constraint on (user, category, month) backs the duplicate check.
    """
    _expense_category(conn, user_id, category_id)
    month = month_start(month)
    existing = conn.execute(
        select(budgets.c.id).where(
            budgets.c.user_id == user_id,
            budgets.c.category_id == category_id,
            budgets.c.month == month,
        )
    ).first()
    if existing:
        raise ConflictError(DUPLICATE_BUDGET)
    budget_id = conn.execute(
        insert(budgets)
        .values(
            user_id=user_id,
            category_id=category_id,
            amount=amount,
            currency=currency,
            month=month,
        )
        .returning(budgets.c.id)
    ).scalar_one()
    logger.info("Created budget %s for category %s (%s)", budget_id, category_id, month)
    return get_budget(conn, user_id, budget_id, resolver)


def update_budget(
    conn: Connection, user_id: int, budget_id: int, amount: int, resolver: ExchangeRateResolver
) -> dict:
    result = conn.execute(
        update(budgets)
        .where(budgets.c.id == budget_id, budgets.c.user_id == user_id)
        .values(amount=amount, updated_at=func.now())
    )
    if result.rowcount == 0:
        raise NotFoundError("Budget not found.")
    return get_budget(conn, user_id, budget_id, resolver)


def delete_budget(conn: Connection, user_id: int, budget_id: int) -> None:
    result = conn.execute(
        delete(budgets).where(budgets.c.id == budget_id, budgets.c.user_id == user_id)
    )
    if result.rowcount == 0:
        raise NotFoundError("Budget not found.")


def category_budgeted(conn: Connection, user_id: int, category_id: int) -> bool:
    match = conn.execute(
        select(budgets.c.id)
        .where(budgets.c.user_id == user_id, budgets.c.category_id == category_id)
        .limit(1)
    ).first()
    return bool(match)


def delete_category_budgets(conn: Connection, user_id: int, category_id: int) -> int:
    result = conn.execute(
        delete(budgets).where(budgets.c.user_id == user_id, budgets.c.category_id == category_id)
    )
    return result.rowcount
