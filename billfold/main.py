from __future__ import annotations

import logging
from datetime import date
from typing import Callable

import uvicorn
from fastapi import APIRouter, Body, Depends, FastAPI, File, Header, HTTPException, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import delete, insert, select, update
from sqlalchemy.exc import IntegrityError

from billfold import bill_service, budgets, csv_import, ledger, payees, reports
from billfold.bill_engine import BillingPolicy
from billfold.config import Settings
from billfold.csv_import import Advisor
from billfold.currency_conversion import ExchangeRateResolver, build_rate_resolver, normalize_currency
from billfold.database import Database, accounts, categories, credit_card_bills, users
from billfold.exceptions import BillfoldError, ConflictError, NotFoundError
from billfold.schemas import (
    AccountPayload,
    AccountResponse,
    BillGenerationResponse,
    BillListResponse,
    BillPaymentPayload,
    BillResponse,
    BillSummaryResponse,
    BillUpdatePayload,
    BudgetPayload,
    BudgetResponse,
    BudgetUpdatePayload,
    BulkDeletePayload,
    BulkDeleteResponse,
    CardSettingsPayload,
    CardSettingsResponse,
    CategoryExpenseEntry,
    CategoryPayload,
    CategoryResponse,
    ColumnAnalysis,
    GenerateBillsPayload,
    GenerateBillsResponse,
    ImportExecuteResponse,
    ImportHistoryEntry,
    ImportHistoryResponse,
    ImportPreviewPayload,
    ImportPreviewResponse,
    ImportStepPayload,
    ImportUploadResponse,
    IncomeVsExpensesResponse,
    Pagination,
    PayeePayload,
    PayeeResponse,
    RecalculateResponse,
    SummaryResponse,
    TransactionPayload,
    TransactionResponse,
    UserSettingsPayload,
    UserSettingsResponse,
)

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
ALLOWED_UPLOAD_TYPES = {"text/csv", "application/vnd.ms-excel"}

DEFAULT_CATEGORIES = [
    ("Salary", "income"),
    ("Other Income", "income"),
    ("Groceries", "expense"),
    ("Rent", "expense"),
    ("Dining", "expense"),
    ("Utilities", "expense"),
    ("Travel", "expense"),
    ("Subscriptions", "expense"),
    ("Other", "expense"),
]

router = APIRouter()


def get_db(request: Request) -> Database:
    return request.app.state.db


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_rates(request: Request) -> ExchangeRateResolver:
    return request.app.state.rates


def get_policy(request: Request) -> BillingPolicy:
    return request.app.state.policy


def get_today(request: Request) -> date:
    return request.app.state.clock()


def get_user_id(db: Database, x_user_id: str | None) -> int:
    """Resolve the caller from the identity header, provisioning new users."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing user identity.")
    try:
        user_id = int(x_user_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid user identity.") from exc
    if user_id <= 0:
        raise HTTPException(status_code=400, detail="Invalid user identity.")
    try:
        with db.begin() as conn:
            existing = conn.execute(select(users.c.id).where(users.c.id == user_id)).first()
            if not existing:
                conn.execute(insert(users).values(id=user_id))
                logger.info("Provisioned user %s", user_id)
    except IntegrityError:
        logger.info("User %s was provisioned by a concurrent request", user_id)
    return user_id


def resolve_report_currency(conn, user_id: int, settings: Settings) -> str:
    home_currency = conn.execute(
        select(users.c.home_currency).where(users.c.id == user_id)
    ).scalar_one_or_none()
    if home_currency:
        try:
            return normalize_currency(home_currency)
        except ValueError:
            logger.warning("User %s has an invalid home currency %r", user_id, home_currency)
    return settings.default_currency


def ensure_default_categories(conn, user_id: int) -> None:
    existing = conn.execute(
        select(categories.c.id).where(categories.c.user_id == user_id).limit(1)
    ).first()
    if existing:
        return
    conn.execute(
        insert(categories),
        [{"user_id": user_id, "name": name, "type": kind} for name, kind in DEFAULT_CATEGORIES],
    )


def paginate(page: int, limit: int, total_count: int) -> Pagination:
    total_pages = (total_count + limit - 1) // limit if total_count else 0
    return Pagination(
        page=page,
        limit=limit,
        total_count=total_count,
        total_pages=total_pages,
        has_next_page=page < total_pages,
        has_prev_page=page > 1,
    )


def _generation_response(result: bill_service.BillGenerationResult) -> BillGenerationResponse:
    return BillGenerationResponse(
        account_id=result.account_id,
        success=result.success,
        created=result.created,
        already_exists=result.already_exists,
        error=result.error,
        warnings=result.warnings,
        bill=BillResponse(**result.bill) if result.bill else None,
    )


@router.get("/health")
def health() -> dict:
    return {"status": "ok"}


@router.get("/users/me/settings", response_model=UserSettingsResponse)
def get_user_settings(
    x_user_id: str | None = Header(None, alias="x-user-id"),
    db: Database = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> UserSettingsResponse:
    user_id = get_user_id(db, x_user_id)
    with db.begin() as conn:
        home_currency = resolve_report_currency(conn, user_id, settings)
    return UserSettingsResponse(id=user_id, home_currency=home_currency)


@router.put("/users/me/settings", response_model=UserSettingsResponse)
def update_user_settings(
    payload: UserSettingsPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    db: Database = Depends(get_db),
) -> UserSettingsResponse:
    user_id = get_user_id(db, x_user_id)
    if payload.home_currency is None:
        raise HTTPException(status_code=400, detail="Home currency required.")
    with db.begin() as conn:
        row = (
            conn.execute(
                update(users)
                .where(users.c.id == user_id)
                .values(home_currency=payload.home_currency)
                .returning(users.c.id, users.c.home_currency)
            )
            .mappings()
            .first()
        )
    return UserSettingsResponse(id=row["id"], home_currency=row["home_currency"])


@router.get("/accounts", response_model=list[AccountResponse])
def list_accounts(
    x_user_id: str | None = Header(None, alias="x-user-id"),
    db: Database = Depends(get_db),
) -> list[AccountResponse]:
    user_id = get_user_id(db, x_user_id)
    with db.begin() as conn:
        rows = (
            conn.execute(
                select(accounts)
                .where(accounts.c.user_id == user_id)
                .order_by(accounts.c.created_at.desc(), accounts.c.id.desc())
            )
            .mappings()
            .all()
        )
    return [AccountResponse(**row) for row in rows]


@router.post("/accounts", response_model=AccountResponse, status_code=201)
def create_account(
    payload: AccountPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    db: Database = Depends(get_db),
) -> AccountResponse:
    user_id = get_user_id(db, x_user_id)
    values = payload.model_dump()
    with db.begin() as conn:
        row = (
            conn.execute(
                insert(accounts)
                .values(user_id=user_id, balance=payload.initial_balance, **values)
                .returning(accounts)
            )
            .mappings()
            .first()
        )
    logger.info("Created %s account %s for user %s", row["type"], row["id"], user_id)
    return AccountResponse(**row)


@router.post("/accounts/recalculate-balances", response_model=RecalculateResponse)
def recalculate_balances(
    x_user_id: str | None = Header(None, alias="x-user-id"),
    db: Database = Depends(get_db),
) -> RecalculateResponse:
    user_id = get_user_id(db, x_user_id)
    with db.begin() as conn:
        updated = ledger.recalculate_balances(conn, user_id)
    return RecalculateResponse(updated_count=updated)


@router.get("/accounts/{account_id}", response_model=AccountResponse)
def get_account(
    account_id: int,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    db: Database = Depends(get_db),
) -> AccountResponse:
    user_id = get_user_id(db, x_user_id)
    with db.begin() as conn:
        row = ledger.get_owned_account(conn, user_id, account_id)
    return AccountResponse(**row)


@router.put("/accounts/{account_id}", response_model=AccountResponse)
def update_account(
    account_id: int,
    payload: AccountPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    db: Database = Depends(get_db),
) -> AccountResponse:
    user_id = get_user_id(db, x_user_id)
    with db.begin() as conn:
        existing = ledger.get_owned_account(conn, user_id, account_id)
        if payload.currency != existing["currency"] and ledger.account_in_use(conn, user_id, account_id):
            raise ConflictError("Cannot change the currency of an account with transactions.")
        conn.execute(
            update(accounts).where(accounts.c.id == account_id).values(**payload.model_dump())
        )
        ledger.apply_deltas(conn, {account_id: payload.initial_balance - existing["initial_balance"]})
        row = ledger.get_owned_account(conn, user_id, account_id)
    return AccountResponse(**row)


@router.delete("/accounts/{account_id}")
def delete_account(
    account_id: int,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    db: Database = Depends(get_db),
) -> dict:
    user_id = get_user_id(db, x_user_id)
    with db.begin() as conn:
        ledger.get_owned_account(conn, user_id, account_id)
        if ledger.account_in_use(conn, user_id, account_id):
            raise ConflictError("Account has transactions.")
        has_bills = conn.execute(
            select(credit_card_bills.c.id).where(credit_card_bills.c.account_id == account_id).limit(1)
        ).first()
        if has_bills:
            raise ConflictError("Account has credit card bills.")
        conn.execute(delete(accounts).where(accounts.c.id == account_id))
    return {"status": "deleted"}


@router.get("/categories", response_model=list[CategoryResponse])
def list_categories(
    x_user_id: str | None = Header(None, alias="x-user-id"),
    db: Database = Depends(get_db),
) -> list[CategoryResponse]:
    user_id = get_user_id(db, x_user_id)
    with db.begin() as conn:
        ensure_default_categories(conn, user_id)
        rows = (
            conn.execute(
                select(categories)
                .where(categories.c.user_id == user_id)
                .order_by(categories.c.name.asc(), categories.c.id.asc())
            )
            .mappings()
            .all()
        )
    return [CategoryResponse(**row) for row in rows]


@router.post("/categories", response_model=CategoryResponse, status_code=201)
def create_category(
    payload: CategoryPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    db: Database = Depends(get_db),
) -> CategoryResponse:
    user_id = get_user_id(db, x_user_id)
    stmt = (
        insert(categories)
        .values(user_id=user_id, name=payload.name, type=payload.type)
        .returning(categories)
    )
    try:
        with db.begin() as conn:
            row = conn.execute(stmt).mappings().first()
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Category already exists.") from exc
    return CategoryResponse(**row)


def _owned_category(conn, user_id: int, category_id: int):
    row = (
        conn.execute(
            select(categories).where(
                categories.c.id == category_id, categories.c.user_id == user_id
            )
        )
        .mappings()
        .first()
    )
    if not row:
        raise NotFoundError("Category not found.")
    return row


@router.get("/categories/{category_id}", response_model=CategoryResponse)
def get_category(
    category_id: int,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    db: Database = Depends(get_db),
) -> CategoryResponse:
    user_id = get_user_id(db, x_user_id)
    with db.begin() as conn:
        row = _owned_category(conn, user_id, category_id)
    return CategoryResponse(**row)


@router.put("/categories/{category_id}", response_model=CategoryResponse)
def update_category(
    category_id: int,
    payload: CategoryPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    db: Database = Depends(get_db),
) -> CategoryResponse:
    user_id = get_user_id(db, x_user_id)
    try:
        with db.begin() as conn:
            existing = _owned_category(conn, user_id, category_id)
            if payload.type != existing["type"] and (
                ledger.category_in_use(conn, user_id, category_id)
                or budgets.category_budgeted(conn, user_id, category_id)
            ):
                raise ConflictError("Cannot change the type of a category in use.")
            row = (
                conn.execute(
                    update(categories)
                    .where(categories.c.id == category_id)
                    .values(name=payload.name, type=payload.type)
                    .returning(categories)
                )
                .mappings()
                .first()
            )
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Category already exists.") from exc
    return CategoryResponse(**row)


@router.delete("/categories/{category_id}")
def delete_category(
    category_id: int,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    db: Database = Depends(get_db),
) -> dict:
    user_id = get_user_id(db, x_user_id)
    with db.begin() as conn:
        _owned_category(conn, user_id, category_id)
        if ledger.category_in_use(conn, user_id, category_id):
            raise HTTPException(status_code=409, detail="Category is in use.")
        budgets.delete_category_budgets(conn, user_id, category_id)
        conn.execute(delete(categories).where(categories.c.id == category_id))
    return {"status": "deleted"}


@router.get("/budgets", response_model=list[BudgetResponse])
def list_budgets(
    month: date | None = None,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    db: Database = Depends(get_db),
    rates: ExchangeRateResolver = Depends(get_rates),
    today: date = Depends(get_today),
) -> list[BudgetResponse]:
    user_id = get_user_id(db, x_user_id)
    with db.begin() as conn:
        rows = budgets.list_budgets(conn, user_id, month or today, rates)
    return [BudgetResponse(**row) for row in rows]


@router.post("/budgets", response_model=BudgetResponse, status_code=201)
def create_budget(
    payload: BudgetPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    db: Database = Depends(get_db),
    settings: Settings = Depends(get_settings),
    rates: ExchangeRateResolver = Depends(get_rates),
) -> BudgetResponse:
    user_id = get_user_id(db, x_user_id)
    try:
        with db.begin() as conn:
            row = budgets.create_budget(
                conn,
                user_id,
                payload.category_id,
                payload.amount,
                payload.month,
                resolve_report_currency(conn, user_id, settings),
                rates,
            )
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail=budgets.DUPLICATE_BUDGET) from exc
    return BudgetResponse(**row)


@router.get("/budgets/{budget_id}", response_model=BudgetResponse)
def get_budget(
    budget_id: int,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    db: Database = Depends(get_db),
    rates: ExchangeRateResolver = Depends(get_rates),
) -> BudgetResponse:
    user_id = get_user_id(db, x_user_id)
    with db.begin() as conn:
        row = budgets.get_budget(conn, user_id, budget_id, rates)
    return BudgetResponse(**row)


@router.put("/budgets/{budget_id}", response_model=BudgetResponse)
def update_budget(
    budget_id: int,
    payload: BudgetUpdatePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    db: Database = Depends(get_db),
    rates: ExchangeRateResolver = Depends(get_rates),
) -> BudgetResponse:
    user_id = get_user_id(db, x_user_id)
    with db.begin() as conn:
        row = budgets.update_budget(conn, user_id, budget_id, payload.amount, rates)
    return BudgetResponse(**row)


@router.delete("/budgets/{budget_id}")
def delete_budget(
    budget_id: int,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    db: Database = Depends(get_db),
) -> dict:
    user_id = get_user_id(db, x_user_id)
    with db.begin() as conn:
        budgets.delete_budget(conn, user_id, budget_id)
    return {"status": "deleted"}


@router.get("/payees", response_model=list[PayeeResponse])
def list_payees(
    active: bool = False,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    db: Database = Depends(get_db),
) -> list[PayeeResponse]:
    user_id = get_user_id(db, x_user_id)
    with db.begin() as conn:
        rows = payees.list_payees(conn, user_id, active_only=active)
    return [PayeeResponse(**row) for row in rows]


@router.post("/payees", response_model=PayeeResponse, status_code=201)
def create_payee(
    payload: PayeePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    db: Database = Depends(get_db),
) -> PayeeResponse:
    user_id = get_user_id(db, x_user_id)
    try:
        with db.begin() as conn:
            row = payees.create_payee(conn, user_id, payload.model_dump())
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail=payees.DUPLICATE_PAYEE) from exc
    return PayeeResponse(**row)


@router.get("/payees/{payee_id}", response_model=PayeeResponse)
def get_payee(
    payee_id: int,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    db: Database = Depends(get_db),
) -> PayeeResponse:
    user_id = get_user_id(db, x_user_id)
    with db.begin() as conn:
        row = payees.get_payee(conn, user_id, payee_id)
    return PayeeResponse(**row)


@router.put("/payees/{payee_id}", response_model=PayeeResponse)
def update_payee(
    payee_id: int,
    payload: PayeePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    db: Database = Depends(get_db),
) -> PayeeResponse:
    user_id = get_user_id(db, x_user_id)
    try:
        with db.begin() as conn:
            row = payees.update_payee(conn, user_id, payee_id, payload.model_dump())
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail=payees.DUPLICATE_PAYEE) from exc
    return PayeeResponse(**row)


@router.patch("/payees/{payee_id}", response_model=PayeeResponse)
def toggle_payee(
    payee_id: int,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    db: Database = Depends(get_db),
) -> PayeeResponse:
    user_id = get_user_id(db, x_user_id)
    with db.begin() as conn:
        row = payees.toggle_payee_status(conn, user_id, payee_id)
    return PayeeResponse(**row)


@router.delete("/payees/{payee_id}")
def delete_payee(
    payee_id: int,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    db: Database = Depends(get_db),
) -> dict:
    user_id = get_user_id(db, x_user_id)
    with db.begin() as conn:
        payees.delete_payee(conn, user_id, payee_id)
    return {"status": "deleted"}


@router.get("/transactions", response_model=list[TransactionResponse])
def list_transactions(
    account_id: int | None = None,
    category_id: int | None = None,
    txn_type: str | None = Query(None, alias="type"),
    start_date: date | None = Query(None, alias="from"),
    end_date: date | None = Query(None, alias="to"),
    search: str | None = None,
    page: int = Query(1, ge=1),
    limit: int = Query(100, ge=1, le=500),
    x_user_id: str | None = Header(None, alias="x-user-id"),
    db: Database = Depends(get_db),
) -> list[TransactionResponse]:
    user_id = get_user_id(db, x_user_id)
    with db.begin() as conn:
        rows = ledger.list_transactions(
            conn,
            user_id,
            account_id=account_id,
            category_id=category_id,
            txn_type=txn_type.strip().lower() if txn_type else None,
            start_date=start_date,
            end_date=end_date,
            search=search,
            page=page,
            limit=limit,
        )
    return [TransactionResponse(**row) for row in rows]


@router.post("/transactions", response_model=TransactionResponse, status_code=201)
def create_transaction(
    payload: TransactionPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    db: Database = Depends(get_db),
    rates: ExchangeRateResolver = Depends(get_rates),
) -> TransactionResponse:
    user_id = get_user_id(db, x_user_id)
    values = payload.model_dump()
    with db.connect() as conn:
        ledger.prefetch_rates(conn, user_id, values, rates)
    with db.begin() as conn:
        row = ledger.create_transaction(conn, user_id, values, rates)
    return TransactionResponse(**row)


@router.delete("/transactions", response_model=BulkDeleteResponse)
def bulk_delete_transactions(
    payload: BulkDeletePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    db: Database = Depends(get_db),
) -> BulkDeleteResponse:
    user_id = get_user_id(db, x_user_id)
    with db.begin() as conn:
        deleted = ledger.delete_transactions(conn, user_id, payload.ids)
    return BulkDeleteResponse(deleted_count=deleted)


@router.get("/transactions/{transaction_id}", response_model=TransactionResponse)
def get_transaction(
    transaction_id: int,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    db: Database = Depends(get_db),
) -> TransactionResponse:
    user_id = get_user_id(db, x_user_id)
    with db.begin() as conn:
        row = ledger.get_transaction(conn, user_id, transaction_id)
    return TransactionResponse(**row)


@router.put("/transactions/{transaction_id}", response_model=TransactionResponse)
def update_transaction(
    transaction_id: int,
    payload: TransactionPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    db: Database = Depends(get_db),
    rates: ExchangeRateResolver = Depends(get_rates),
) -> TransactionResponse:
    user_id = get_user_id(db, x_user_id)
    values = payload.model_dump()
    with db.connect() as conn:
        ledger.prefetch_rates(conn, user_id, values, rates, transaction_id)
    with db.begin() as conn:
        row = ledger.update_transaction(conn, user_id, transaction_id, values, rates)
    return TransactionResponse(**row)


@router.delete("/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: int,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    db: Database = Depends(get_db),
) -> dict:
    user_id = get_user_id(db, x_user_id)
    with db.begin() as conn:
        ledger.delete_transaction(conn, user_id, transaction_id)
    return {"status": "deleted"}


@router.get("/credit-card-bills", response_model=BillListResponse)
def list_bills(
    account_id: int | None = None,
    status: list[str] | None = Query(None),
    due_from: date | None = None,
    due_to: date | None = None,
    amount_min: int | None = None,
    amount_max: int | None = None,
    search: str | None = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    sort_by: str = "due_date",
    sort_order: str = "desc",
    auto_generate: bool = False,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    db: Database = Depends(get_db),
    policy: BillingPolicy = Depends(get_policy),
    today: date = Depends(get_today),
) -> BillListResponse:
    user_id = get_user_id(db, x_user_id)
    if auto_generate:
        bill_service.sweep(db, user_id, today=today, policy=policy)
    with db.begin() as conn:
        bill_service.refresh_overdue(conn, user_id, today)
        rows, total_count = bill_service.list_bills(
            conn,
            user_id,
            account_id=account_id,
            statuses=status,
            due_from=due_from,
            due_to=due_to,
            amount_min=amount_min,
            amount_max=amount_max,
            search=search,
            page=page,
            limit=limit,
            sort_by=sort_by,
            sort_order=sort_order.strip().lower(),
        )
    return BillListResponse(
        bills=[BillResponse(**row) for row in rows],
        pagination=paginate(page, limit, total_count),
    )


@router.post("/credit-card-bills/generate", response_model=GenerateBillsResponse)
def generate_bills(
    payload: GenerateBillsPayload | None = Body(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
    db: Database = Depends(get_db),
    policy: BillingPolicy = Depends(get_policy),
    today: date = Depends(get_today),
) -> GenerateBillsResponse:
    user_id = get_user_id(db, x_user_id)
    payload = payload or GenerateBillsPayload()
    if payload.account_id is not None:
        results = [
            bill_service.generate_bill(
                db,
                user_id,
                payload.account_id,
                payload.period_start,
                payload.period_end,
                today=today,
                policy=policy,
            )
        ]
    else:
        results = bill_service.sweep(db, user_id, today=today, policy=policy)
    return GenerateBillsResponse(results=[_generation_response(result) for result in results])


@router.get("/credit-card-bills/summary", response_model=BillSummaryResponse)
def bills_summary(
    x_user_id: str | None = Header(None, alias="x-user-id"),
    db: Database = Depends(get_db),
    today: date = Depends(get_today),
) -> BillSummaryResponse:
    user_id = get_user_id(db, x_user_id)
    with db.begin() as conn:
        summary = bill_service.bills_summary(conn, user_id, today)
    return BillSummaryResponse(**summary)


@router.get("/credit-card-bills/{bill_id}", response_model=BillResponse)
def get_bill(
    bill_id: int,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    db: Database = Depends(get_db),
    today: date = Depends(get_today),
) -> BillResponse:
    user_id = get_user_id(db, x_user_id)
    with db.begin() as conn:
        bill_service.refresh_overdue(conn, user_id, today)
        row = bill_service.get_bill(conn, user_id, bill_id)
    return BillResponse(**row)


@router.put("/credit-card-bills/{bill_id}", response_model=BillResponse)
def update_bill(
    bill_id: int,
    payload: BillUpdatePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    db: Database = Depends(get_db),
    today: date = Depends(get_today),
) -> BillResponse:
    user_id = get_user_id(db, x_user_id)
    row = bill_service.update_bill(
        db, user_id, bill_id, status=payload.status, notes=payload.notes, today=today
    )
    return BillResponse(**row)


@router.post("/credit-card-bills/{bill_id}/payment", response_model=BillResponse)
def record_bill_payment(
    bill_id: int,
    payload: BillPaymentPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    db: Database = Depends(get_db),
    policy: BillingPolicy = Depends(get_policy),
    today: date = Depends(get_today),
) -> BillResponse:
    user_id = get_user_id(db, x_user_id)
    row = bill_service.record_payment(
        db,
        user_id,
        bill_id,
        payload.amount,
        paid_date=payload.paid_date,
        notes=payload.notes,
        today=today,
        policy=policy,
    )
    return BillResponse(**row)


@router.get("/credit-cards/{account_id}/settings", response_model=CardSettingsResponse)
def get_card_settings(
    account_id: int,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    db: Database = Depends(get_db),
    policy: BillingPolicy = Depends(get_policy),
) -> CardSettingsResponse:
    user_id = get_user_id(db, x_user_id)
    with db.begin() as conn:
        settings = bill_service.get_card_settings(conn, user_id, account_id, policy)
    return CardSettingsResponse(**settings)


@router.put("/credit-cards/{account_id}/settings", response_model=CardSettingsResponse)
def update_card_settings(
    account_id: int,
    payload: CardSettingsPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    db: Database = Depends(get_db),
    policy: BillingPolicy = Depends(get_policy),
) -> CardSettingsResponse:
    user_id = get_user_id(db, x_user_id)
    with db.begin() as conn:
        settings = bill_service.update_card_settings(
            conn,
            user_id,
            account_id,
            payload.bill_generation_day,
            payload.bill_due_day,
            interest_rate=payload.interest_rate,
            minimum_payment_percentage=payload.minimum_payment_percentage,
            policy=policy,
        )
    return CardSettingsResponse(**settings)


@router.get("/reports/expenses-by-category", response_model=list[CategoryExpenseEntry])
def expenses_by_category(
    start_date: date | None = Query(None, alias="from"),
    end_date: date | None = Query(None, alias="to"),
    account_id: int | None = None,
    category_id: int | None = None,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    db: Database = Depends(get_db),
    settings: Settings = Depends(get_settings),
    rates: ExchangeRateResolver = Depends(get_rates),
    today: date = Depends(get_today),
) -> list[CategoryExpenseEntry]:
    user_id = get_user_id(db, x_user_id)
    end_date = end_date or today
    start_date = start_date or reports.month_start(end_date)
    if start_date > end_date:
        raise HTTPException(status_code=400, detail="Start date must be on or before end date.")
    with db.begin() as conn:
        currency = resolve_report_currency(conn, user_id, settings)
        entries = reports.expenses_by_category(
            conn,
            user_id,
            start_date,
            end_date,
            currency,
            rates,
            account_id=account_id,
            category_id=category_id,
        )
    return [CategoryExpenseEntry(**entry) for entry in entries]


@router.get("/reports/income-vs-expenses", response_model=IncomeVsExpensesResponse)
def income_vs_expenses(
    period: str = "monthly",
    periods: int = Query(reports.DEFAULT_PERIODS_COUNT, ge=1, le=366),
    start_date: date | None = Query(None, alias="from"),
    end_date: date | None = Query(None, alias="to"),
    account_id: int | None = None,
    category_id: int | None = None,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    db: Database = Depends(get_db),
    settings: Settings = Depends(get_settings),
    rates: ExchangeRateResolver = Depends(get_rates),
    today: date = Depends(get_today),
) -> IncomeVsExpensesResponse:
    user_id = get_user_id(db, x_user_id)
    try:
        period = reports.normalize_report_period(period)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    default_start, default_end = reports.default_report_range(period, today, periods)
    start_date = start_date or default_start
    end_date = end_date or default_end
    if start_date > end_date:
        raise HTTPException(status_code=400, detail="Start date must be on or before end date.")
    try:
        reports.report_bucket_starts(start_date, end_date, period)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    with db.begin() as conn:
        currency = resolve_report_currency(conn, user_id, settings)
        result = reports.income_vs_expenses(
            conn,
            user_id,
            period,
            start_date,
            end_date,
            currency,
            rates,
            account_id=account_id,
            category_id=category_id,
        )
    return IncomeVsExpensesResponse(**result)


@router.get("/reports/summary", response_model=SummaryResponse)
def summary_report(
    x_user_id: str | None = Header(None, alias="x-user-id"),
    db: Database = Depends(get_db),
    settings: Settings = Depends(get_settings),
    rates: ExchangeRateResolver = Depends(get_rates),
    today: date = Depends(get_today),
) -> SummaryResponse:
    user_id = get_user_id(db, x_user_id)
    with db.begin() as conn:
        currency = resolve_report_currency(conn, user_id, settings)
        result = reports.summary(conn, user_id, currency, rates, today)
    return SummaryResponse(
        currency=result["currency"],
        total_balance=result["total_balance"],
        total_income=result["total_income"],
        total_expense=result["total_expense"],
        recent_transactions=[TransactionResponse(**row) for row in result["recent_transactions"]],
    )


@router.post("/import/upload", response_model=ImportUploadResponse, status_code=201)
def upload_import(
    file: UploadFile = File(...),
    x_user_id: str | None = Header(None, alias="x-user-id"),
    db: Database = Depends(get_db),
) -> ImportUploadResponse:
    user_id = get_user_id(db, x_user_id)
    file_name = file.filename or "upload.csv"
    if file.content_type not in ALLOWED_UPLOAD_TYPES and not file_name.lower().endswith(".csv"):
        raise HTTPException(status_code=400, detail="Invalid file type. Only CSV files are allowed.")
    raw = file.file.read(csv_import.MAX_FILE_SIZE + 1)
    if len(raw) > csv_import.MAX_FILE_SIZE:
        raise HTTPException(status_code=400, detail="File too large. Maximum size is 10MB.")
    try:
        headers, rows = csv_import.read_csv(raw.decode("utf-8-sig"))
    except UnicodeDecodeError as exc:
        raise HTTPException(status_code=400, detail="CSV file must be UTF-8 encoded.") from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with db.begin() as conn:
        record = csv_import.create_import(conn, user_id, file_name, len(raw), headers, rows)
    logger.info("Stored import %s (%s, %d rows)", record["id"], file_name, len(rows))
    return ImportUploadResponse(
        import_id=record["id"],
        file_name=file_name,
        file_size=len(raw),
        total_rows=len(rows),
        detected_columns=headers,
        preview_rows=rows[: csv_import.UPLOAD_PREVIEW_ROWS],
    )


@router.post("/import/analyze", response_model=ColumnAnalysis)
def analyze_import(
    payload: ImportStepPayload,
    request: Request,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    db: Database = Depends(get_db),
) -> ColumnAnalysis:
    user_id = get_user_id(db, x_user_id)
    advisor: Advisor | None = request.app.state.column_advisor
    try:
        return csv_import.analyze_import(db, user_id, payload.import_id, advisor)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@router.post("/import/preview", response_model=ImportPreviewResponse)
def preview_import(
    payload: ImportPreviewPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    db: Database = Depends(get_db),
    today: date = Depends(get_today),
) -> ImportPreviewResponse:
    user_id = get_user_id(db, x_user_id)
    with db.begin() as conn:
        preview = csv_import.preview_import(
            conn,
            user_id,
            payload.import_id,
            column_mappings=payload.column_mappings,
            data_type=payload.data_type,
            today=today,
        )
    return ImportPreviewResponse(**preview)


@router.post("/import/execute", response_model=ImportExecuteResponse)
def execute_import(
    payload: ImportStepPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    db: Database = Depends(get_db),
    rates: ExchangeRateResolver = Depends(get_rates),
) -> ImportExecuteResponse:
    user_id = get_user_id(db, x_user_id)
    result = csv_import.execute_import(db, user_id, payload.import_id, rates)
    return ImportExecuteResponse(**result)


@router.get("/import/history", response_model=ImportHistoryResponse)
def import_history(
    status: str | None = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    x_user_id: str | None = Header(None, alias="x-user-id"),
    db: Database = Depends(get_db),
) -> ImportHistoryResponse:
    user_id = get_user_id(db, x_user_id)
    with db.begin() as conn:
        rows, total_count = csv_import.import_history(conn, user_id, status, page, limit)
    imports = []
    for row in rows:
        analysis = row["analysis"] or {}
        imports.append(
            ImportHistoryEntry(
                id=row["id"],
                file_name=row["file_name"],
                status=row["status"],
                total_rows=row["total_rows"],
                imported_rows=row["imported_rows"],
                failed_rows=row["failed_rows"],
                data_type=analysis.get("data_type"),
                confidence=analysis.get("confidence"),
                import_errors=row["import_errors"] or [],
                created_at=row["created_at"],
                completed_at=row["completed_at"],
            )
        )
    return ImportHistoryResponse(imports=imports, pagination=paginate(page, limit, total_count))


@router.delete("/import/history/{import_id}")
def delete_import(
    import_id: int,
    x_user_id: str | None = Header(None, alias="x-user-id"),
    db: Database = Depends(get_db),
) -> dict:
    user_id = get_user_id(db, x_user_id)
    with db.begin() as conn:
        csv_import.delete_import(conn, user_id, import_id)
    return {"status": "deleted"}


async def handle_billfold_error(request: Request, exc: BillfoldError) -> JSONResponse:
    content: dict = {"detail": exc.message}
    if exc.errors:
        content["errors"] = exc.errors
    return JSONResponse(status_code=exc.status_code, content=content)


def create_app(
    settings: Settings | None = None,
    database: Database | None = None,
    rate_resolver: ExchangeRateResolver | None = None,
    column_advisor: Advisor | None = None,
    clock: Callable[[], date] = date.today,
) -> FastAPI:
    settings = settings or Settings.from_env()
    database = database or Database(settings.database_url)

    app = FastAPI(title="Billfold")
    app.state.settings = settings
    app.state.db = database
    app.state.rates = rate_resolver or build_rate_resolver(settings)
    app.state.policy = bill_service.policy_from_settings(settings)
    app.state.column_advisor = column_advisor
    app.state.clock = clock

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_origin],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(BillfoldError, handle_billfold_error)
    app.include_router(router)

    @app.on_event("startup")
    def init_db() -> None:
        database.create_all()

    return app


app = create_app()


def main() -> None:
    settings = app.state.settings
    logging.basicConfig(level=settings.log_level, format=LOG_FORMAT)
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
