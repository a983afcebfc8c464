from __future__ import annotations

import re
from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, Field, field_validator, model_validator

from billfold.bill_engine import DEFAULT_DUE_DAY, DEFAULT_MINIMUM_PERCENTAGE, MANUAL_STATUSES
from billfold.currency_conversion import normalize_currency

PAYEE_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9\s\-_&().,]+$")

CREDIT_CARD_FIELDS = (
    "credit_limit",
    "bill_generation_day",
    "bill_due_day",
    "interest_rate",
    "minimum_payment_percentage",
    "current_bill_paid",
)


class AccountType:
    values = {"checking", "savings", "credit_card", "cash", "investment"}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower().replace(" ", "_").replace("-", "_")
        if normalized not in cls.values:
            raise ValueError("Invalid account type.")
        return normalized


class TransactionType:
    values = {"income", "expense", "transfer"}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise ValueError("Invalid transaction type.")
        return normalized


class TransactionStatus:
    values = {"pending", "completed", "cancelled"}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise ValueError("Invalid transaction status.")
        return normalized


class CategoryType:
    values = {"income", "expense"}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise ValueError("Category type must be either 'income' or 'expense'.")
        return normalized


def _check_due_day(generation_day: int | None, due_day: int | None) -> None:
    if generation_day is not None and due_day is not None and due_day == generation_day:
        raise ValueError("Bill due day and bill generation day should be different.")


class UserSettingsPayload(BaseModel):
    home_currency: str | None = None

    @field_validator("home_currency")
    @classmethod
    def _currency(cls, value: str | None) -> str | None:
        return normalize_currency(value) if value else None


class UserSettingsResponse(BaseModel):
    id: int
    home_currency: str


class AccountPayload(BaseModel):
    name: str
    type: str
    currency: str
    initial_balance: int = 0
    credit_limit: int | None = Field(default=None, ge=0)
    bill_generation_day: int | None = Field(default=None, ge=1, le=31)
    bill_due_day: int | None = Field(default=None, ge=1, le=90)
    interest_rate: Decimal | None = Field(default=None, ge=0, le=1)
    minimum_payment_percentage: Decimal | None = Field(default=None, ge=0, le=1)
    current_bill_paid: bool | None = None

    @field_validator("name")
    @classmethod
    def _name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Account name required.")
        return value

    @field_validator("type")
    @classmethod
    def _type(cls, value: str) -> str:
        return AccountType.validate(value)

    @field_validator("currency")
    @classmethod
    def _currency(cls, value: str) -> str:
        return normalize_currency(value)

    @model_validator(mode="after")
    def _credit_card_fields(self) -> "AccountPayload":
        if self.type != "credit_card":
            provided = [name for name in CREDIT_CARD_FIELDS if getattr(self, name) is not None]
            if provided:
                raise ValueError(
                    "Credit card fields are only allowed for credit card accounts: "
                    + ", ".join(provided)
                )
            return self

        if self.credit_limit is None or self.bill_generation_day is None:
            raise ValueError(
                "Credit limit and bill generation day are required for credit card accounts."
            )
        if self.bill_due_day is None:
            self.bill_due_day = DEFAULT_DUE_DAY
        if self.interest_rate is None:
            self.interest_rate = Decimal("0")
        if self.minimum_payment_percentage is None:
            self.minimum_payment_percentage = DEFAULT_MINIMUM_PERCENTAGE
        if self.current_bill_paid is None:
            self.current_bill_paid = False
        _check_due_day(self.bill_generation_day, self.bill_due_day)
        return self


class AccountResponse(BaseModel):
    id: int
    user_id: int
    name: str
    type: str
    currency: str
    initial_balance: int
    balance: int
    credit_limit: int | None = None
    bill_generation_day: int | None = None
    bill_due_day: int | None = None
    interest_rate: Decimal | None = None
    minimum_payment_percentage: Decimal | None = None
    current_bill_paid: bool | None = None
    created_at: datetime | None = None


class CategoryPayload(BaseModel):
    name: str
    type: str

    @field_validator("name")
    @classmethod
    def _name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Category name required.")
        return value

    @field_validator("type")
    @classmethod
    def _type(cls, value: str) -> str:
        return CategoryType.validate(value)


class CategoryResponse(BaseModel):
    id: int
    user_id: int
    name: str
    type: str
    created_at: datetime | None = None


class BudgetPayload(BaseModel):
    category_id: int
    amount: int = Field(gt=0)
    month: date


class BudgetUpdatePayload(BaseModel):
    amount: int = Field(gt=0)


class BudgetResponse(BaseModel):
    id: int
    user_id: int
    category_id: int
    category_name: str
    amount: int
    currency: str
    month: date
    spent: int
    remaining: int
    status: str
    created_at: datetime | None = None
    updated_at: datetime | None = None


class PayeePayload(BaseModel):
    display_name: str
    description: str | None = Field(default=None, max_length=500)
    category: str | None = Field(default=None, max_length=50)
    is_active: bool | None = None

    @field_validator("display_name")
    @classmethod
    def _display_name(cls, value: str) -> str:
        value = value.strip()
        if not 2 <= len(value) <= 100:
            raise ValueError("Display name must be between 2 and 100 characters.")
        if not PAYEE_NAME_PATTERN.match(value):
            raise ValueError(
                "Display name can only contain letters, numbers, spaces, hyphens, "
                "underscores, ampersands, parentheses, commas and periods."
            )
        return value

    @field_validator("description", "category")
    @classmethod
    def _optional_text(cls, value: str | None) -> str | None:
        return value.strip() or None if value else None


class PayeeResponse(BaseModel):
    id: int
    user_id: int
    name: str
    display_name: str
    description: str | None = None
    category: str | None = None
    is_active: bool
    created_at: datetime | None = None
    updated_at: datetime | None = None


class TransactionPayload(BaseModel):
    account_id: int
    to_account_id: int | None = None
    category_id: int | None = None
    type: str
    amount: int = Field(gt=0)
    currency: str | None = None
    date: date
    payee: str
    notes: str | None = None
    status: str = "completed"

    @field_validator("type")
    @classmethod
    def _type(cls, value: str) -> str:
        return TransactionType.validate(value)

    @field_validator("status")
    @classmethod
    def _status(cls, value: str) -> str:
        return TransactionStatus.validate(value)

    @field_validator("payee")
    @classmethod
    def _payee(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Payee is required.")
        return value

    @field_validator("notes")
    @classmethod
    def _notes(cls, value: str | None) -> str | None:
        return value.strip() or None if value else None

    @field_validator("currency")
    @classmethod
    def _currency(cls, value: str | None) -> str | None:
        return normalize_currency(value) if value else None

    @model_validator(mode="after")
    def _transfer_target(self) -> "TransactionPayload":
        if self.type == "transfer":
            if self.to_account_id is None:
                raise ValueError("Transfers require a to_account_id.")
            if self.to_account_id == self.account_id:
                raise ValueError("Transfer accounts must be different.")
        elif self.to_account_id is not None:
            raise ValueError("Only transfers may set to_account_id.")
        return self


class TransactionResponse(BaseModel):
    id: int
    user_id: int
    account_id: int
    to_account_id: int | None = None
    category_id: int | None = None
    type: str
    amount: int
    currency: str
    account_amount: int
    to_account_amount: int | None = None
    date: date
    payee: str
    notes: str | None = None
    status: str
    created_at: datetime | None = None


class BulkDeletePayload(BaseModel):
    ids: list[int] = Field(min_length=1)


class BulkDeleteResponse(BaseModel):
    deleted_count: int


class RecalculateResponse(BaseModel):
    updated_count: int


class BillResponse(BaseModel):
    id: int
    user_id: int
    account_id: int
    account_name: str | None = None
    account_currency: str | None = None
    period_start: date
    period_end: date
    generation_date: date
    due_date: date
    bill_amount: int
    minimum_payment: int
    previous_balance: int
    new_charges: int
    payments_credits: int
    interest_charged: int
    late_fees: int
    interest_rate: Decimal | None = None
    transaction_count: int
    is_paid: bool
    paid_amount: int
    paid_date: date | None = None
    status: str
    notes: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class Pagination(BaseModel):
    page: int
    limit: int
    total_count: int
    total_pages: int
    has_next_page: bool
    has_prev_page: bool


class BillListResponse(BaseModel):
    bills: list[BillResponse]
    pagination: Pagination


class GenerateBillsPayload(BaseModel):
    account_id: int | None = None
    period_start: date | None = None
    period_end: date | None = None

    @model_validator(mode="after")
    def _period(self) -> "GenerateBillsPayload":
        if (self.period_start is None) != (self.period_end is None):
            raise ValueError("period_start and period_end must be provided together.")
        if self.period_start is not None and self.account_id is None:
            raise ValueError("An explicit period requires an account_id.")
        if self.period_start and self.period_end and self.period_start > self.period_end:
            raise ValueError("period_start must be on or before period_end.")
        return self


class BillGenerationResponse(BaseModel):
    account_id: int
    success: bool
    created: bool = False
    already_exists: bool = False
    error: str | None = None
    warnings: list[str] = []
    bill: BillResponse | None = None


class GenerateBillsResponse(BaseModel):
    results: list[BillGenerationResponse]


class BillPaymentPayload(BaseModel):
    amount: int = Field(ge=0)
    paid_date: date | None = None
    notes: str | None = Field(default=None, max_length=500)


class BillUpdatePayload(BaseModel):
    status: str | None = None
    notes: str | None = Field(default=None, max_length=500)

    @field_validator("status")
    @classmethod
    def _status(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip().lower()
        if normalized not in MANUAL_STATUSES:
            raise ValueError("Only 'generated' or 'sent' can be set manually.")
        return normalized


class BillCounts(BaseModel):
    total: int
    paid: int
    unpaid: int
    overdue: int


class BillSummaryResponse(BaseModel):
    total_outstanding: int
    total_overdue: int
    upcoming_due: int
    bills_count: BillCounts
    next_due_date: date | None = None


class CardSettingsPayload(BaseModel):
    bill_generation_day: int = Field(ge=1, le=31)
    bill_due_day: int = Field(ge=1, le=90)
    interest_rate: Decimal | None = Field(default=None, ge=0, le=1)
    minimum_payment_percentage: Decimal | None = Field(default=None, ge=0, le=1)

    @model_validator(mode="after")
    def _days(self) -> "CardSettingsPayload":
        _check_due_day(self.bill_generation_day, self.bill_due_day)
        return self


class CardSettingsResponse(BaseModel):
    account_id: int
    bill_generation_day: int
    bill_due_day: int
    interest_rate: Decimal
    minimum_payment_percentage: Decimal


class CategoryExpenseEntry(BaseModel):
    category_id: int | None = None
    name: str
    amount: int


class IncomeExpenseBucket(BaseModel):
    period: str
    start_date: date
    income: int
    expenses: int
    net: int


class IncomeExpenseSummary(BaseModel):
    total_income: int
    total_expenses: int
    net_amount: int
    currency: str
    period_type: str
    periods_count: int


class ConversionInfo(BaseModel):
    has_multiple_currencies: bool
    base_currency: str
    source_currencies: list[str]


class IncomeVsExpensesResponse(BaseModel):
    data: list[IncomeExpenseBucket]
    summary: IncomeExpenseSummary
    conversion: ConversionInfo


class SummaryResponse(BaseModel):
    currency: str
    total_balance: int
    total_income: int
    total_expense: int
    recent_transactions: list[TransactionResponse]


class ColumnAnalysis(BaseModel):
    data_type: str
    column_mappings: dict[str, str]
    confidence: int
    suggestions: list[str]
    warnings: list[str]
    detected_columns: list[str]


class ImportUploadResponse(BaseModel):
    import_id: int
    file_name: str
    file_size: int
    total_rows: int
    detected_columns: list[str]
    preview_rows: list[dict]


class ImportStepPayload(BaseModel):
    import_id: int


class ImportPreviewPayload(BaseModel):
    import_id: int
    column_mappings: dict[str, str] | None = None
    data_type: str | None = None

    @field_validator("data_type")
    @classmethod
    def _data_type(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip().lower()
        if normalized not in {"transactions", "accounts", "categories"}:
            raise ValueError("Data type must be transactions, accounts or categories.")
        return normalized


class RowIssue(BaseModel):
    row: int
    field: str
    message: str
    value: str | None = None


class ValidationStats(BaseModel):
    total_rows: int
    valid_rows: int
    invalid_rows: int
    error_count: int
    warning_count: int


class ValidationResult(BaseModel):
    is_valid: bool
    errors: list[RowIssue]
    warnings: list[RowIssue]
    stats: ValidationStats


class ImportPreviewResponse(BaseModel):
    import_id: int
    file_name: str
    data_type: str
    total_rows: int
    column_mappings: dict[str, str]
    mapped_rows: list[dict]
    validation: ValidationResult


class ImportExecuteResponse(BaseModel):
    import_id: int
    data_type: str
    imported_rows: int
    failed_rows: int
    errors: list[str]


class ImportHistoryEntry(BaseModel):
    id: int
    file_name: str
    status: str
    total_rows: int
    imported_rows: int
    failed_rows: int
    data_type: str | None = None
    confidence: int | None = None
    import_errors: list[str] = []
    created_at: datetime | None = None
    completed_at: datetime | None = None


class ImportHistoryResponse(BaseModel):
    imports: list[ImportHistoryEntry]
    pagination: Pagination
