from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Iterable, Optional

ZERO = Decimal("0")
DEFAULT_GENERATION_DAY = 1
DEFAULT_DUE_DAY = 21
DEFAULT_MINIMUM_PERCENTAGE = Decimal("0.05")
LATE_FEE_STATUSES = {"overdue", "partial"}
MANUAL_STATUSES = {"generated", "sent"}
BILL_STATUSES = {"generated", "sent", "paid", "overdue", "partial"}

RateLookup = Callable[[str, str], Decimal]


@dataclass(frozen=True)
class BillingPolicy:
    late_fee: int = 3500
    minimum_payment_floor: int = 2500
    default_minimum_percentage: Decimal = DEFAULT_MINIMUM_PERCENTAGE
    payment_mode: str = "accumulate"


DEFAULT_POLICY = BillingPolicy()


@dataclass(frozen=True)
class CardAccount:
    currency: str
    balance: int
    interest_rate: Decimal = ZERO
    minimum_payment_percentage: Optional[Decimal] = None


@dataclass(frozen=True)
class LedgerTransaction:
    type: str
    amount: int
    date: date
    currency: Optional[str] = None
    incoming: bool = False


@dataclass(frozen=True)
class BillCalculation:
    total_amount: int
    minimum_payment: int
    interest_charges: int
    late_fees: int
    previous_balance: int
    new_charges: int
    payments_credits: int
    transaction_count: int


def billing_period(generation_day: Optional[int], reference: date) -> tuple[date, date]:
    """Return the inclusive (start, end) of the period that closes next.

    The period ends on the generation day of the reference month, or of the
    following month once that day has passed, and starts the day after the
    previous generation day. Days past a month's end clamp to its last day.
    """
    day = generation_day or DEFAULT_GENERATION_DAY
    end = shift_month_to_day(reference, 0, day)
    if reference.day > day:
        end = shift_month_to_day(reference, 1, day)
    start = shift_month_to_day(end, -1, day) + timedelta(days=1)
    return start, end


def latest_closed_period(generation_day: Optional[int], today: date) -> tuple[date, date]:
    start, end = billing_period(generation_day, today)
    if today >= end:
        return start, end
    return billing_period(generation_day, start - timedelta(days=1))


def bill_due_date(period_end: date, due_day: Optional[int]) -> date:
    # 1-31 is a calendar day in the month after the period; larger values are day offsets.
    value = due_day or DEFAULT_DUE_DAY
    if value <= 31:
        return shift_month_to_day(period_end, 1, value)
    return period_end + timedelta(days=value)


def calculate_bill(
    account: CardAccount,
    transactions: Iterable[LedgerTransaction],
    period_start: date,
    period_end: date,
    previous_bill_status: Optional[str] = None,
    rate_lookup: Optional[RateLookup] = None,
    policy: BillingPolicy = DEFAULT_POLICY,
) -> BillCalculation:
    if period_start > period_end:
        raise ValueError("period_start must be on or before period_end.")

    new_charges = 0
    payments_credits = 0
    transaction_count = 0
    net_since_start = 0
    for txn in sorted(transactions, key=lambda item: item.date):
        if txn.date < period_start:
            continue
        amount = _account_amount(txn, account.currency, rate_lookup)
        is_payment = _is_payment(txn)
        net_since_start += amount if is_payment else -amount
        if txn.date > period_end:
            continue
        transaction_count += 1
        if is_payment:
            payments_credits += amount
        else:
            new_charges += amount

    previous_balance = abs(account.balance - net_since_start)
    interest_rate = _coerce_decimal(account.interest_rate or ZERO)
    interest_charges = round_half_up(Decimal(previous_balance) * interest_rate / 12)
    late_fees = policy.late_fee if previous_bill_status in LATE_FEE_STATUSES else 0

    total_amount = max(
        0,
        previous_balance + new_charges + interest_charges + late_fees - payments_credits,
    )
    percentage = account.minimum_payment_percentage
    if percentage is None:
        percentage = policy.default_minimum_percentage
    minimum_payment = max(
        round_half_up(Decimal(total_amount) * _coerce_decimal(percentage)),
        policy.minimum_payment_floor,
    )

    return BillCalculation(
        total_amount=total_amount,
        minimum_payment=minimum_payment,
        interest_charges=interest_charges,
        late_fees=late_fees,
        previous_balance=previous_balance,
        new_charges=new_charges,
        payments_credits=payments_credits,
        transaction_count=transaction_count,
    )


def derive_bill_status(
    bill_amount: int,
    paid_amount: Optional[int],
    due_date: date,
    today: date,
    current_status: str = "generated",
) -> str:
    paid = paid_amount or 0
    if paid >= bill_amount:
        return "paid"
    if paid > 0:
        return "partial"
    if due_date < today:
        return "overdue"
    return current_status if current_status in MANUAL_STATUSES else "generated"


def apply_payment(current_paid: Optional[int], amount: int, mode: str = "accumulate") -> int:
    if amount < 0:
        raise ValueError("Payment amount must be a non-negative number.")
    if mode == "overwrite":
        return amount
    if mode != "accumulate":
        raise ValueError(f"Unsupported payment mode: {mode}")
    return (current_paid or 0) + amount


def shift_month_to_day(value: date, months: int, day: int) -> date:
    month_index = (value.year * 12 + value.month - 1) + months
    year = month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day, last_day))


def round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _is_payment(txn: LedgerTransaction) -> bool:
    txn_type = txn.type.strip().lower()
    if txn_type == "transfer":
        return txn.incoming
    return txn_type == "income"


def _account_amount(
    txn: LedgerTransaction, account_currency: str, rate_lookup: Optional[RateLookup]
) -> int:
    if rate_lookup is None or not txn.currency or txn.currency == account_currency:
        return txn.amount
    rate = rate_lookup(txn.currency, account_currency)
    return round_half_up(Decimal(txn.amount) * rate)


def _coerce_decimal(value: Decimal | float | int | str) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))
