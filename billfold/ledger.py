from __future__ import annotations

import logging
from collections import defaultdict
from datetime import date
from typing import Iterable, Mapping

from sqlalchemy import delete, func, insert, or_, select, update
from sqlalchemy.engine import Connection

from billfold.currency_conversion import ExchangeRateResolver
from billfold.database import accounts, categories, transactions
from billfold.exceptions import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

WRITABLE_FIELDS = (
    "account_id",
    "to_account_id",
    "category_id",
    "type",
    "amount",
    "currency",
    "date",
    "payee",
    "notes",
    "status",
)


def balance_deltas(row: Mapping) -> dict[int, int]:
    """Per-account balance change a stored transaction row contributes."""
    if row["status"] != "completed":
        return {}
    amount = row["account_amount"]
    if row["type"] == "income":
        return {row["account_id"]: amount}
    if row["type"] == "expense":
        return {row["account_id"]: -amount}
    deltas = {row["account_id"]: -amount}
    to_account_id = row["to_account_id"]
    if to_account_id is not None:
        to_amount = row["to_account_amount"]
        deltas[to_account_id] = deltas.get(to_account_id, 0) + (
            to_amount if to_amount is not None else amount
        )
    return deltas


def merge_deltas(*groups: Mapping[int, int], reverse: Iterable[Mapping[int, int]] = ()) -> dict[int, int]:
    merged: dict[int, int] = defaultdict(int)
    for group in groups:
        for account_id, delta in group.items():
            merged[account_id] += delta
    for group in reverse:
        for account_id, delta in group.items():
            merged[account_id] -= delta
    return {account_id: delta for account_id, delta in merged.items() if delta}


def apply_deltas(conn: Connection, deltas: Mapping[int, int]) -> None:
    # Fixed account order keeps concurrent writers from deadlocking on row locks.
    for account_id in sorted(deltas):
        delta = deltas[account_id]
        if not delta:
            continue
        conn.execute(
            update(accounts)
            .where(accounts.c.id == account_id)
            .values(balance=accounts.c.balance + delta)
        )


def get_owned_account(conn: Connection, user_id: int, account_id: int) -> Mapping:
    row = (
        conn.execute(
            select(accounts).where(accounts.c.id == account_id, accounts.c.user_id == user_id)
        )
        .mappings()
        .first()
    )
    if not row:
        raise NotFoundError("Account not found.")
    return row


def account_in_use(conn: Connection, user_id: int, account_id: int) -> bool:
    match = conn.execute(
        select(transactions.c.id)
        .where(
            transactions.c.user_id == user_id,
            or_(
                transactions.c.account_id == account_id,
                transactions.c.to_account_id == account_id,
            ),
        )
        .limit(1)
    ).first()
    return bool(match)


def category_in_use(conn: Connection, user_id: int, category_id: int) -> bool:
    match = conn.execute(
        select(transactions.c.id)
        .where(transactions.c.user_id == user_id, transactions.c.category_id == category_id)
        .limit(1)
    ).first()
    return bool(match)


def _check_category(conn: Connection, user_id: int, category_id: int | None, txn_type: str) -> None:
    if category_id is None:
        return
    category_type = conn.execute(
        select(categories.c.type).where(
            categories.c.id == category_id, categories.c.user_id == user_id
        )
    ).scalar_one_or_none()
    if category_type is None:
        raise NotFoundError("Category not found.")
    if txn_type in {"income", "expense"} and category_type != txn_type:
        raise ValidationError("Category type does not match transaction type.")


def _resolve_values(
    conn: Connection,
    user_id: int,
    values: Mapping,
    resolver: ExchangeRateResolver,
    fallback_currency: str | None = None,
    existing: Mapping | None = None,
) -> dict:
    data = {name: values.get(name) for name in WRITABLE_FIELDS}
    data["status"] = data["status"] or "completed"
    account = get_owned_account(conn, user_id, data["account_id"])
    to_account = None
    if data["type"] == "transfer":
        if data["to_account_id"] is None:
            raise ValidationError("Transfers require a to_account_id.")
        if data["to_account_id"] == data["account_id"]:
            raise ValidationError("Transfer accounts must be different.")
        to_account = get_owned_account(conn, user_id, data["to_account_id"])
    else:
        data["to_account_id"] = None
    _check_category(conn, user_id, data["category_id"], data["type"])

    currency = data["currency"] or fallback_currency or account["currency"]
    data["currency"] = currency
    if existing is not None and all(
        data[name] == existing[name] for name in ("account_id", "to_account_id", "amount", "currency")
    ):
        # Amounts converted when the row was written stay fixed.
        data["account_amount"] = existing["account_amount"]
        data["to_account_amount"] = existing["to_account_amount"]
        return data
    data["account_amount"] = resolver.convert_minor_units(
        data["amount"], currency, account["currency"]
    )
    data["to_account_amount"] = (
        resolver.convert_minor_units(data["amount"], currency, to_account["currency"])
        if to_account is not None
        else None
    )
    return data


def prefetch_rates(
    conn: Connection,
    user_id: int,
    values: Mapping,
    resolver: ExchangeRateResolver,
    transaction_id: int | None = None,
) -> None:
    """Warm the resolver with the rates a write of ``values`` will convert with.

    Meant for a read connection opened before the write unit, so a slow rate
    provider never runs while balance rows are locked.
    """
    currency = values.get("currency")
    if not currency and transaction_id is not None:
        existing = (
            conn.execute(
                select(transactions.c.account_id, transactions.c.currency).where(
                    transactions.c.id == transaction_id, transactions.c.user_id == user_id
                )
            )
            .mappings()
            .first()
        )
        if existing and existing["account_id"] == values.get("account_id"):
            currency = existing["currency"]
    account_ids = [
        values[name] for name in ("account_id", "to_account_id") if values.get(name) is not None
    ]
    if not currency or not account_ids:
        return
    targets = conn.execute(
        select(accounts.c.currency).where(accounts.c.id.in_(account_ids), accounts.c.user_id == user_id)
    ).scalars()
    for target in set(targets):
        resolver.get_rate(currency, target)


def create_transaction(
    conn: Connection, user_id: int, values: Mapping, resolver: ExchangeRateResolver
) -> Mapping:
    data = _resolve_values(conn, user_id, values, resolver)
    row = (
        conn.execute(insert(transactions).values(user_id=user_id, **data).returning(transactions))
        .mappings()
        .first()
    )
    apply_deltas(conn, balance_deltas(row))
    return row


def update_transaction(
    conn: Connection,
    user_id: int,
    transaction_id: int,
    values: Mapping,
    resolver: ExchangeRateResolver,
) -> Mapping:
    existing = get_transaction(conn, user_id, transaction_id, for_update=True)
    fallback_currency = None
    if values.get("account_id") == existing["account_id"]:
        fallback_currency = existing["currency"]
    data = _resolve_values(conn, user_id, values, resolver, fallback_currency, existing)
    row = (
        conn.execute(
            update(transactions)
            .where(transactions.c.id == transaction_id, transactions.c.user_id == user_id)
            .values(**data)
            .returning(transactions)
        )
        .mappings()
        .first()
    )
    apply_deltas(conn, merge_deltas(balance_deltas(row), reverse=[balance_deltas(existing)]))
    return row


def delete_transaction(conn: Connection, user_id: int, transaction_id: int) -> None:
    existing = get_transaction(conn, user_id, transaction_id, for_update=True)
    apply_deltas(conn, merge_deltas(reverse=[balance_deltas(existing)]))
    conn.execute(delete(transactions).where(transactions.c.id == transaction_id))


def delete_transactions(conn: Connection, user_id: int, transaction_ids: Iterable[int]) -> int:
    """Delete every listed transaction or none of them.

    Ids that are missing or owned by someone else fail the whole batch before
    any balance is touched.
    """
    wanted = set(transaction_ids)
    if not wanted:
        raise ValidationError("No transaction ids provided.")
    rows = (
        conn.execute(
            select(transactions)
            .where(transactions.c.id.in_(wanted), transactions.c.user_id == user_id)
            .with_for_update()
        )
        .mappings()
        .all()
    )
    if len(rows) != len(wanted):
        raise NotFoundError("Some transactions not found.")
    apply_deltas(conn, merge_deltas(reverse=[balance_deltas(row) for row in rows]))
    conn.execute(delete(transactions).where(transactions.c.id.in_(wanted)))
    logger.info("Deleted %d transactions for user %s", len(rows), user_id)
    return len(rows)


def get_transaction(
    conn: Connection, user_id: int, transaction_id: int, for_update: bool = False
) -> Mapping:
    stmt = select(transactions).where(
        transactions.c.id == transaction_id, transactions.c.user_id == user_id
    )
    if for_update:
        stmt = stmt.with_for_update()
    row = conn.execute(stmt).mappings().first()
    if not row:
        raise NotFoundError("Transaction not found.")
    return row


def list_transactions(
    conn: Connection,
    user_id: int,
    account_id: int | None = None,
    category_id: int | None = None,
    txn_type: str | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
    search: str | None = None,
    page: int = 1,
    limit: int = 100,
) -> list[Mapping]:
    conditions = [transactions.c.user_id == user_id]
    if account_id is not None:
        conditions.append(
            or_(transactions.c.account_id == account_id, transactions.c.to_account_id == account_id)
        )
    if category_id is not None:
        conditions.append(transactions.c.category_id == category_id)
    if txn_type:
        conditions.append(transactions.c.type == txn_type)
    if start_date is not None:
        conditions.append(transactions.c.date >= start_date)
    if end_date is not None:
        conditions.append(transactions.c.date <= end_date)
    if search:
        pattern = f"%{search.strip().lower()}%"
        conditions.append(
            or_(
                func.lower(transactions.c.payee).like(pattern),
                func.lower(func.coalesce(transactions.c.notes, "")).like(pattern),
            )
        )
    stmt = (
        select(transactions)
        .where(*conditions)
        .order_by(transactions.c.date.desc(), transactions.c.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return conn.execute(stmt).mappings().all()


def recalculate_balances(conn: Connection, user_id: int) -> int:
    """Rebuild every account balance from its initial balance and transactions.

    Returns the number of accounts whose stored balance was wrong.
    """
    account_rows = (
        conn.execute(
            select(accounts.c.id, accounts.c.initial_balance, accounts.c.balance)
            .where(accounts.c.user_id == user_id)
            .order_by(accounts.c.id.asc())
        )
        .mappings()
        .all()
    )
    txn_rows = (
        conn.execute(select(transactions).where(transactions.c.user_id == user_id))
        .mappings()
        .all()
    )
    totals = merge_deltas(*(balance_deltas(row) for row in txn_rows))

    updated = 0
    for account in account_rows:
        expected = (account["initial_balance"] or 0) + totals.get(account["id"], 0)
        if expected == account["balance"]:
            continue
        conn.execute(update(accounts).where(accounts.c.id == account["id"]).values(balance=expected))
        logger.info(
            "Account %s balance corrected from %s to %s", account["id"], account["balance"], expected
        )
        updated += 1
    return updated
