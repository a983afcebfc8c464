from __future__ import annotations

import calendar
from datetime import date, timedelta
from typing import Mapping

from sqlalchemy import select
from sqlalchemy.engine import Connection

from billfold.currency_conversion import ExchangeRateResolver
from billfold.database import accounts, categories, transactions

REPORT_PERIODS = {"daily", "weekly", "monthly"}
DEFAULT_PERIODS_COUNT = 6
SUMMARY_WINDOW_DAYS = 30
RECENT_TRANSACTIONS = 5
MAX_REPORT_BUCKETS = 366


def normalize_report_period(value: str) -> str:
    normalized = value.strip().lower()
    if normalized not in REPORT_PERIODS:
        raise ValueError("Invalid period. Use daily, weekly or monthly.")
    return normalized


def month_start(value: date) -> date:
    return value.replace(day=1)


def shift_month(value: date, months: int) -> date:
    month_index = (value.year * 12 + value.month - 1) + months
    year = month_index // 12
    month = month_index % 12 + 1
    return date(year, month, 1)


def month_end(value: date) -> date:
    return value.replace(day=calendar.monthrange(value.year, value.month)[1])


def get_report_bucket_start(value: date, period: str) -> date:
    if period == "weekly":
        return value - timedelta(days=value.weekday())
    if period == "monthly":
        return value.replace(day=1)
    return value


def add_report_interval(value: date, period: str) -> date:
    if period == "weekly":
        return value + timedelta(days=7)
    if period == "monthly":
        return shift_month(value, 1)
    return value + timedelta(days=1)


def report_bucket_starts(start_date: date, end_date: date, period: str) -> list[date]:
    starts = []
    cursor = get_report_bucket_start(start_date, period)
    while cursor <= end_date:
        if len(starts) == MAX_REPORT_BUCKETS:
            raise ValueError(f"Date range spans more than {MAX_REPORT_BUCKETS} {period} periods.")
        starts.append(cursor)
        cursor = add_report_interval(cursor, period)
    return starts


def bucket_label(value: date, period: str) -> str:
    if period == "monthly":
        return value.strftime("%b %Y")
    return value.strftime("%b %d")


def default_report_range(
    period: str, today: date, periods: int = DEFAULT_PERIODS_COUNT
) -> tuple[date, date]:
    """Range covering the last ``periods`` buckets, the current one included."""
    if period == "daily":
        return today - timedelta(days=periods - 1), today
    if period == "weekly":
        week_start = get_report_bucket_start(today, "weekly")
        return week_start - timedelta(weeks=periods - 1), week_start + timedelta(days=6)
    return shift_month(month_start(today), -(periods - 1)), month_end(today)


def sum_converted_amounts(
    amounts_by_currency: Mapping[str, int],
    target_currency: str,
    resolver: ExchangeRateResolver,
) -> int:
    return sum(
        resolver.convert_minor_units(amount, currency, target_currency)
        for currency, amount in amounts_by_currency.items()
    )


def _ledger_rows(
    conn: Connection,
    user_id: int,
    start_date: date,
    end_date: date,
    account_id: int | None = None,
    category_id: int | None = None,
    txn_type: str | None = None,
) -> list[Mapping]:
    conditions = [
        transactions.c.user_id == user_id,
        transactions.c.status == "completed",
        transactions.c.type.in_((txn_type,) if txn_type else ("income", "expense")),
        transactions.c.date >= start_date,
        transactions.c.date <= end_date,
    ]
    if account_id is not None:
        conditions.append(transactions.c.account_id == account_id)
    if category_id is not None:
        conditions.append(transactions.c.category_id == category_id)
    return (
        conn.execute(
            select(
                transactions.c.date,
                transactions.c.type,
                transactions.c.account_amount,
                transactions.c.category_id,
                accounts.c.currency.label("account_currency"),
                categories.c.name.label("category_name"),
            )
            .select_from(
                transactions.join(accounts, transactions.c.account_id == accounts.c.id).outerjoin(
                    categories, transactions.c.category_id == categories.c.id
                )
            )
            .where(*conditions)
            .order_by(transactions.c.date.asc(), transactions.c.id.asc())
        )
        .mappings()
        .all()
    )


def expenses_by_category(
    conn: Connection,
    user_id: int,
    start_date: date,
    end_date: date,
    report_currency: str,
    resolver: ExchangeRateResolver,
    account_id: int | None = None,
    category_id: int | None = None,
) -> list[dict]:
    totals: dict[int | None, dict[str, int]] = {}
    names: dict[int | None, str] = {}
    for row in _ledger_rows(
        conn, user_id, start_date, end_date, account_id, category_id, txn_type="expense"
    ):
        key = row["category_id"]
        names[key] = row["category_name"] or "Uncategorized"
        by_currency = totals.setdefault(key, {})
        currency = row["account_currency"]
        by_currency[currency] = by_currency.get(currency, 0) + row["account_amount"]

    results = [
        {
            "category_id": key,
            "name": names[key],
            "amount": sum_converted_amounts(by_currency, report_currency, resolver),
        }
        for key, by_currency in totals.items()
    ]
    results.sort(key=lambda item: (-item["amount"], item["name"]))
    return results


def income_vs_expenses(
    conn: Connection,
    user_id: int,
    period: str,
    start_date: date,
    end_date: date,
    report_currency: str,
    resolver: ExchangeRateResolver,
    account_id: int | None = None,
    category_id: int | None = None,
) -> dict:
    """Income and expense totals per bucket, converted to the report currency.

    Every bucket between the two dates is reported, empty ones included.
    """
    rows = _ledger_rows(conn, user_id, start_date, end_date, account_id, category_id)

    buckets: dict[date, dict[str, dict[str, int]]] = {
        bucket_start: {"income": {}, "expense": {}}
        for bucket_start in report_bucket_starts(start_date, end_date, period)
    }

    source_currencies: set[str] = set()
    for row in rows:
        bucket = buckets.setdefault(
            get_report_bucket_start(row["date"], period), {"income": {}, "expense": {}}
        )
        currency = row["account_currency"]
        source_currencies.add(currency)
        side = bucket[row["type"]]
        side[currency] = side.get(currency, 0) + row["account_amount"]

    data = []
    for bucket_start in sorted(buckets):
        income = sum_converted_amounts(buckets[bucket_start]["income"], report_currency, resolver)
        expenses = sum_converted_amounts(buckets[bucket_start]["expense"], report_currency, resolver)
        data.append(
            {
                "period": bucket_label(bucket_start, period),
                "start_date": bucket_start,
                "income": income,
                "expenses": expenses,
                "net": income - expenses,
            }
        )

    total_income = sum(item["income"] for item in data)
    total_expenses = sum(item["expenses"] for item in data)
    return {
        "data": data,
        "summary": {
            "total_income": total_income,
            "total_expenses": total_expenses,
            "net_amount": total_income - total_expenses,
            "currency": report_currency,
            "period_type": period,
            "periods_count": len(data),
        },
        "conversion": {
            "has_multiple_currencies": any(c != report_currency for c in source_currencies),
            "base_currency": report_currency,
            "source_currencies": sorted(source_currencies),
        },
    }


def summary(
    conn: Connection,
    user_id: int,
    report_currency: str,
    resolver: ExchangeRateResolver,
    today: date,
) -> dict:
    balances: dict[str, int] = {}
    for row in conn.execute(
        select(accounts.c.currency, accounts.c.balance).where(accounts.c.user_id == user_id)
    ).mappings():
        balances[row["currency"]] = balances.get(row["currency"], 0) + row["balance"]

    window_start = today - timedelta(days=SUMMARY_WINDOW_DAYS)
    income: dict[str, int] = {}
    expense: dict[str, int] = {}
    for row in _ledger_rows(conn, user_id, window_start, today):
        side = income if row["type"] == "income" else expense
        side[row["account_currency"]] = side.get(row["account_currency"], 0) + row["account_amount"]

    recent = (
        conn.execute(
            select(transactions)
            .where(transactions.c.user_id == user_id)
            .order_by(transactions.c.date.desc(), transactions.c.id.desc())
            .limit(RECENT_TRANSACTIONS)
        )
        .mappings()
        .all()
    )
    return {
        "currency": report_currency,
        "total_balance": sum_converted_amounts(balances, report_currency, resolver),
        "total_income": sum_converted_amounts(income, report_currency, resolver),
        "total_expense": sum_converted_amounts(expense, report_currency, resolver),
        "recent_transactions": recent,
    }
