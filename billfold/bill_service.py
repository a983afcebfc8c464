from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from typing import Iterable, Mapping

from sqlalchemy import and_, func, insert, or_, select, update
from sqlalchemy.engine import Connection
from sqlalchemy.exc import IntegrityError

from billfold.bill_engine import (
    DEFAULT_POLICY,
    MANUAL_STATUSES,
    BillingPolicy,
    CardAccount,
    LedgerTransaction,
    apply_payment,
    bill_due_date,
    billing_period,
    calculate_bill,
    derive_bill_status,
    latest_closed_period,
)
from billfold.config import Settings
from billfold.database import Database, accounts, credit_card_bills, transactions
from billfold.exceptions import (
    BillfoldError,
    InvalidAccountTypeError,
    NotFoundError,
    ValidationError,
)
from billfold.ledger import get_owned_account

logger = logging.getLogger(__name__)

LATE_FEE_WARNING = "Late fees applied due to previous overdue bill"
UPCOMING_WINDOW_DAYS = 7
BILL_SORT_COLUMNS = {
    "due_date": credit_card_bills.c.due_date,
    "bill_amount": credit_card_bills.c.bill_amount,
    "created_at": credit_card_bills.c.created_at,
}


@dataclass
class BillGenerationResult:
    account_id: int
    success: bool
    bill: Mapping | None = None
    created: bool = False
    already_exists: bool = False
    error: str | None = None
    warnings: list[str] = field(default_factory=list)


def policy_from_settings(settings: Settings) -> BillingPolicy:
    return BillingPolicy(
        late_fee=settings.bill_late_fee,
        minimum_payment_floor=settings.bill_minimum_payment_floor,
        payment_mode=settings.bill_payment_mode,
    )


def _bill_select():
    return select(
        credit_card_bills,
        accounts.c.name.label("account_name"),
        accounts.c.currency.label("account_currency"),
    ).select_from(credit_card_bills.join(accounts, credit_card_bills.c.account_id == accounts.c.id))


def _find_bill(conn: Connection, account_id: int, period_start: date, period_end: date) -> Mapping | None:
    return (
        conn.execute(
            _bill_select().where(
                credit_card_bills.c.account_id == account_id,
                credit_card_bills.c.period_start == period_start,
                credit_card_bills.c.period_end == period_end,
            )
        )
        .mappings()
        .first()
    )


def get_bill(conn: Connection, user_id: int, bill_id: int, for_update: bool = False) -> Mapping:
    stmt = _bill_select().where(
        credit_card_bills.c.id == bill_id, credit_card_bills.c.user_id == user_id
    )
    if for_update:
        stmt = stmt.with_for_update(of=credit_card_bills)
    row = conn.execute(stmt).mappings().first()
    if not row:
        raise NotFoundError("Bill not found.")
    return row


def _previous_bill_status(conn: Connection, account_id: int, period_start: date, today: date) -> str | None:
    row = (
        conn.execute(
            select(
                credit_card_bills.c.bill_amount,
                credit_card_bills.c.paid_amount,
                credit_card_bills.c.due_date,
                credit_card_bills.c.status,
            )
            .where(
                credit_card_bills.c.account_id == account_id,
                credit_card_bills.c.period_end < period_start,
            )
            .order_by(credit_card_bills.c.period_end.desc())
            .limit(1)
        )
        .mappings()
        .first()
    )
    if not row:
        return None
    return derive_bill_status(
        row["bill_amount"], row["paid_amount"], row["due_date"], today, row["status"]
    )


def _card_transactions(
    conn: Connection, account: Mapping, period_start: date
) -> list[LedgerTransaction]:
    account_id = account["id"]
    rows = (
        conn.execute(
            select(transactions)
            .where(
                transactions.c.status == "completed",
                transactions.c.date >= period_start,
                or_(
                    transactions.c.account_id == account_id,
                    transactions.c.to_account_id == account_id,
                ),
            )
            .order_by(transactions.c.date.asc(), transactions.c.id.asc())
        )
        .mappings()
        .all()
    )
    # Stored legs were converted into the card currency when written.
    items = []
    for row in rows:
        if row["account_id"] == account_id:
            items.append(
                LedgerTransaction(
                    type=row["type"],
                    amount=row["account_amount"],
                    date=row["date"],
                    currency=account["currency"],
                )
            )
        else:
            to_amount = row["to_account_amount"]
            items.append(
                LedgerTransaction(
                    type=row["type"],
                    amount=to_amount if to_amount is not None else row["amount"],
                    date=row["date"],
                    currency=account["currency"],
                    incoming=True,
                )
            )
    return items


def generate_bill(
    db: Database,
    user_id: int,
    account_id: int,
    period_start: date | None = None,
    period_end: date | None = None,
    today: date | None = None,
    policy: BillingPolicy = DEFAULT_POLICY,
) -> BillGenerationResult:
    """Materialize the bill for one card and period, at most once.

    Without an explicit period the period closing next relative to ``today``
    is used. A bill that already exists for the period, including one
    inserted concurrently, is returned with ``already_exists`` set.
    """
    today = today or date.today()
    try:
        with db.begin() as conn:
            account = get_owned_account(conn, user_id, account_id)
            if account["type"] != "credit_card":
                raise InvalidAccountTypeError("Account is not a credit card.")
            if period_start is None or period_end is None:
                period_start, period_end = billing_period(account["bill_generation_day"], today)
            if period_start > period_end:
                raise ValidationError("period_start must be on or before period_end.")

            existing = _find_bill(conn, account_id, period_start, period_end)
            if existing:
                return BillGenerationResult(
                    account_id=account_id, success=True, bill=existing, already_exists=True
                )

            card = CardAccount(
                currency=account["currency"],
                balance=account["balance"],
                interest_rate=account["interest_rate"] or Decimal("0"),
                minimum_payment_percentage=account["minimum_payment_percentage"],
            )
            calculation = calculate_bill(
                card,
                _card_transactions(conn, account, period_start),
                period_start,
                period_end,
                previous_bill_status=_previous_bill_status(conn, account_id, period_start, today),
                policy=policy,
            )
            is_paid = calculation.total_amount == 0
            bill_id = conn.execute(
                insert(credit_card_bills)
                .values(
                    user_id=user_id,
                    account_id=account_id,
                    period_start=period_start,
                    period_end=period_end,
                    generation_date=today,
                    due_date=bill_due_date(period_end, account["bill_due_day"]),
                    bill_amount=calculation.total_amount,
                    minimum_payment=calculation.minimum_payment,
                    previous_balance=calculation.previous_balance,
                    new_charges=calculation.new_charges,
                    payments_credits=calculation.payments_credits,
                    interest_charged=calculation.interest_charges,
                    late_fees=calculation.late_fees,
                    interest_rate=account["interest_rate"],
                    transaction_count=calculation.transaction_count,
                    is_paid=is_paid,
                    paid_amount=0,
                    status="paid" if is_paid else "generated",
                )
                .returning(credit_card_bills.c.id)
            ).scalar_one()
            bill = get_bill(conn, user_id, bill_id)
    except IntegrityError:
        with db.begin() as conn:
            existing = _find_bill(conn, account_id, period_start, period_end)
        if existing is None:
            raise
        logger.info(
            "Bill for account %s %s..%s was created concurrently", account_id, period_start, period_end
        )
        return BillGenerationResult(
            account_id=account_id, success=True, bill=existing, already_exists=True
        )

    warnings = [LATE_FEE_WARNING] if calculation.late_fees else []
    logger.info(
        "Generated bill %s for account %s (%s..%s): amount=%s",
        bill_id,
        account_id,
        period_start,
        period_end,
        calculation.total_amount,
    )
    return BillGenerationResult(
        account_id=account_id, success=True, bill=bill, created=True, warnings=warnings
    )


def sweep(
    db: Database,
    user_id: int,
    today: date | None = None,
    policy: BillingPolicy = DEFAULT_POLICY,
) -> list[BillGenerationResult]:
    """Generate the latest closed bill for every credit card of the user."""
    today = today or date.today()
    with db.begin() as conn:
        cards = (
            conn.execute(
                select(accounts.c.id, accounts.c.bill_generation_day)
                .where(
                    accounts.c.user_id == user_id,
                    accounts.c.type == "credit_card",
                    accounts.c.bill_generation_day.isnot(None),
                )
                .order_by(accounts.c.id.asc())
            )
            .mappings()
            .all()
        )

    results = []
    for card in cards:
        period_start, period_end = latest_closed_period(card["bill_generation_day"], today)
        try:
            result = generate_bill(
                db,
                user_id,
                card["id"],
                period_start,
                period_end,
                today=today,
                policy=policy,
            )
        except BillfoldError as exc:
            logger.warning("Bill generation failed for account %s: %s", card["id"], exc.message)
            result = BillGenerationResult(account_id=card["id"], success=False, error=exc.message)
        except Exception as exc:
            logger.exception("Unexpected error generating bill for account %s", card["id"])
            result = BillGenerationResult(account_id=card["id"], success=False, error=str(exc))
        results.append(result)

    created = sum(1 for result in results if result.created)
    logger.info("Bill sweep for user %s: %d accounts, %d bills created", user_id, len(results), created)
    return results


def _is_latest_bill(conn: Connection, bill: Mapping) -> bool:
    latest_id = conn.execute(
        select(credit_card_bills.c.id)
        .where(credit_card_bills.c.account_id == bill["account_id"])
        .order_by(credit_card_bills.c.period_end.desc(), credit_card_bills.c.id.desc())
        .limit(1)
    ).scalar_one_or_none()
    return latest_id == bill["id"]


def record_payment(
    db: Database,
    user_id: int,
    bill_id: int,
    amount: int,
    paid_date: date | None = None,
    notes: str | None = None,
    mode: str | None = None,
    today: date | None = None,
    policy: BillingPolicy = DEFAULT_POLICY,
) -> Mapping:
    today = today or date.today()
    with db.begin() as conn:
        bill = get_bill(conn, user_id, bill_id, for_update=True)
        try:
            paid_amount = apply_payment(bill["paid_amount"], amount, mode or policy.payment_mode)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        status = derive_bill_status(
            bill["bill_amount"], paid_amount, bill["due_date"], today, bill["status"]
        )
        if amount > 0:
            paid_date = paid_date or today
        elif paid_amount > 0:
            paid_date = bill["paid_date"]
        else:
            paid_date = None
        values = {
            "paid_amount": paid_amount,
            "status": status,
            "is_paid": status == "paid",
            "paid_date": paid_date,
            "updated_at": func.now(),
        }
        if notes is not None:
            values["notes"] = notes.strip() or None
        conn.execute(update(credit_card_bills).where(credit_card_bills.c.id == bill_id).values(**values))
        if _is_latest_bill(conn, bill):
            conn.execute(
                update(accounts)
                .where(accounts.c.id == bill["account_id"])
                .values(current_bill_paid=status == "paid")
            )
        logger.info("Recorded payment of %s on bill %s (status %s)", amount, bill_id, status)
        return get_bill(conn, user_id, bill_id)


def update_bill(
    db: Database,
    user_id: int,
    bill_id: int,
    status: str | None = None,
    notes: str | None = None,
    today: date | None = None,
) -> Mapping:
    today = today or date.today()
    with db.begin() as conn:
        bill = get_bill(conn, user_id, bill_id, for_update=True)
        values: dict = {}
        if status is not None:
            if status not in MANUAL_STATUSES:
                raise ValidationError("Only 'generated' or 'sent' can be set manually.")
            derived = derive_bill_status(
                bill["bill_amount"], bill["paid_amount"], bill["due_date"], today, bill["status"]
            )
            if derived not in MANUAL_STATUSES:
                raise ValidationError(f"Bill status is '{derived}' and cannot be changed manually.")
            values["status"] = status
        if notes is not None:
            values["notes"] = notes.strip() or None
        if values:
            values["updated_at"] = func.now()
            conn.execute(
                update(credit_card_bills).where(credit_card_bills.c.id == bill_id).values(**values)
            )
        return get_bill(conn, user_id, bill_id)


def refresh_overdue(conn: Connection, user_id: int, today: date) -> int:
    result = conn.execute(
        update(credit_card_bills)
        .where(
            credit_card_bills.c.user_id == user_id,
            credit_card_bills.c.status.in_(MANUAL_STATUSES),
            credit_card_bills.c.paid_amount == 0,
            credit_card_bills.c.bill_amount > 0,
            credit_card_bills.c.due_date < today,
        )
        .values(status="overdue", updated_at=func.now())
    )
    if result.rowcount:
        logger.info("Marked %d bills overdue for user %s", result.rowcount, user_id)
    return result.rowcount


def list_bills(
    conn: Connection,
    user_id: int,
    account_id: int | None = None,
    statuses: Iterable[str] | None = None,
    due_from: date | None = None,
    due_to: date | None = None,
    amount_min: int | None = None,
    amount_max: int | None = None,
    search: str | None = None,
    page: int = 1,
    limit: int = 20,
    sort_by: str = "due_date",
    sort_order: str = "desc",
) -> tuple[list[Mapping], int]:
    sort_column = BILL_SORT_COLUMNS.get(sort_by)
    if sort_column is None:
        raise ValidationError("Invalid sort field.")
    if sort_order not in {"asc", "desc"}:
        raise ValidationError("Invalid sort order.")

    conditions = [credit_card_bills.c.user_id == user_id]
    if account_id is not None:
        conditions.append(credit_card_bills.c.account_id == account_id)
    statuses = [status for status in (statuses or []) if status]
    if statuses:
        conditions.append(credit_card_bills.c.status.in_(statuses))
    if due_from is not None:
        conditions.append(credit_card_bills.c.due_date >= due_from)
    if due_to is not None:
        conditions.append(credit_card_bills.c.due_date <= due_to)
    if amount_min is not None:
        conditions.append(credit_card_bills.c.bill_amount >= amount_min)
    if amount_max is not None:
        conditions.append(credit_card_bills.c.bill_amount <= amount_max)
    if search and search.strip():
        pattern = f"%{search.strip().lower()}%"
        conditions.append(
            or_(
                func.lower(func.coalesce(credit_card_bills.c.notes, "")).like(pattern),
                func.lower(accounts.c.name).like(pattern),
            )
        )

    total_count = conn.execute(
        select(func.count())
        .select_from(credit_card_bills.join(accounts, credit_card_bills.c.account_id == accounts.c.id))
        .where(and_(*conditions))
    ).scalar_one()
    order = sort_column.asc() if sort_order == "asc" else sort_column.desc()
    rows = (
        conn.execute(
            _bill_select()
            .where(and_(*conditions))
            .order_by(order, credit_card_bills.c.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        .mappings()
        .all()
    )
    return rows, int(total_count or 0)


def bills_summary(conn: Connection, user_id: int, today: date) -> dict:
    rows = (
        conn.execute(
            select(
                credit_card_bills.c.bill_amount,
                credit_card_bills.c.paid_amount,
                credit_card_bills.c.due_date,
                credit_card_bills.c.status,
            ).where(credit_card_bills.c.user_id == user_id)
        )
        .mappings()
        .all()
    )
    upcoming_limit = today + timedelta(days=UPCOMING_WINDOW_DAYS)
    total_outstanding = 0
    total_overdue = 0
    upcoming_due = 0
    paid = 0
    overdue = 0
    next_due_date = None
    for row in rows:
        status = derive_bill_status(
            row["bill_amount"], row["paid_amount"], row["due_date"], today, row["status"]
        )
        if status == "paid":
            paid += 1
            continue
        remaining = max(row["bill_amount"] - (row["paid_amount"] or 0), 0)
        total_outstanding += remaining
        if row["due_date"] < today:
            overdue += 1
            total_overdue += remaining
            continue
        if row["due_date"] <= upcoming_limit:
            upcoming_due += remaining
        if next_due_date is None or row["due_date"] < next_due_date:
            next_due_date = row["due_date"]

    return {
        "total_outstanding": total_outstanding,
        "total_overdue": total_overdue,
        "upcoming_due": upcoming_due,
        "bills_count": {
            "total": len(rows),
            "paid": paid,
            "unpaid": len(rows) - paid,
            "overdue": overdue,
        },
        "next_due_date": next_due_date,
    }


def _card_settings(row: Mapping, policy: BillingPolicy) -> dict:
    return {
        "account_id": row["id"],
        "bill_generation_day": row["bill_generation_day"],
        "bill_due_day": row["bill_due_day"],
        "interest_rate": row["interest_rate"] or Decimal("0"),
        "minimum_payment_percentage": (
            row["minimum_payment_percentage"]
            if row["minimum_payment_percentage"] is not None
            else policy.default_minimum_percentage
        ),
    }


def get_card_settings(
    conn: Connection, user_id: int, account_id: int, policy: BillingPolicy = DEFAULT_POLICY
) -> dict:
    account = get_owned_account(conn, user_id, account_id)
    if account["type"] != "credit_card":
        raise InvalidAccountTypeError("Account is not a credit card.")
    return _card_settings(account, policy)


def update_card_settings(
    conn: Connection,
    user_id: int,
    account_id: int,
    bill_generation_day: int,
    bill_due_day: int,
    interest_rate: Decimal | None = None,
    minimum_payment_percentage: Decimal | None = None,
    policy: BillingPolicy = DEFAULT_POLICY,
) -> dict:
    account = get_owned_account(conn, user_id, account_id)
    if account["type"] != "credit_card":
        raise InvalidAccountTypeError("Account is not a credit card.")
    values = {"bill_generation_day": bill_generation_day, "bill_due_day": bill_due_day}
    if interest_rate is not None:
        values["interest_rate"] = interest_rate
    if minimum_payment_percentage is not None:
        values["minimum_payment_percentage"] = minimum_payment_percentage
    row = (
        conn.execute(
            update(accounts).where(accounts.c.id == account_id).values(**values).returning(accounts)
        )
        .mappings()
        .first()
    )
    return _card_settings(row, policy)
