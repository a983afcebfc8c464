from __future__ import annotations

import csv
import io
import json
import logging
import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Callable, Mapping

from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.engine import Connection
from sqlalchemy.exc import IntegrityError

from billfold.bill_engine import DEFAULT_DUE_DAY, DEFAULT_MINIMUM_PERCENTAGE, round_half_up
from billfold.currency_conversion import ExchangeRateResolver, normalize_currency
from billfold.database import Database, accounts, categories, import_records
from billfold.exceptions import BillfoldError, ImportStateError, NotFoundError
from billfold.ledger import create_transaction
from billfold.schemas import AccountType, ColumnAnalysis, RowIssue, ValidationResult, ValidationStats

logger = logging.getLogger(__name__)

MAX_FILE_SIZE = 10 * 1024 * 1024
UPLOAD_PREVIEW_ROWS = 5
PREVIEW_ROWS = 10
DATA_TYPES = {"transactions", "accounts", "categories", "unknown"}
IMPORTABLE_TYPES = {"transactions", "accounts", "categories"}
COMMON_IMPORT_CURRENCIES = {"USD", "EUR", "GBP", "JPY", "CAD", "AUD", "INR", "CNY"}

DATE_FORMATS = ("%Y-%m-%d", "%m/%d/%Y", "%m/%d/%y", "%m-%d-%Y", "%d/%m/%Y", "%d %b %Y", "%d %B %Y")
DATE_LIKE_PATTERNS = (
    re.compile(r"^\d{4}-\d{2}-\d{2}"),
    re.compile(r"^\d{1,2}/\d{1,2}/\d{2,4}"),
    re.compile(r"^\d{2}-\d{2}-\d{4}"),
)

# Order matters: a header matching several patterns maps to the last one.
TRANSACTION_PATTERNS = {
    "date": re.compile(r"date|time|when|day|created|posted", re.I),
    "amount": re.compile(r"amount|value|sum|total|price|cost|debit|credit|balance", re.I),
    "payee": re.compile(r"payee|merchant|vendor|description|desc|name|company|store", re.I),
    "type": re.compile(r"type|kind|class|income|expense", re.I),
    "category": re.compile(r"category", re.I),
    "account": re.compile(r"account|bank|card|wallet", re.I),
    "notes": re.compile(r"note|memo|comment|remark|detail", re.I),
}
ACCOUNT_PATTERNS = {
    "name": re.compile(r"name|title|account|label", re.I),
    "type": re.compile(r"type|kind|category|class", re.I),
    "currency": re.compile(r"currency|curr|money|symbol", re.I),
    "balance": re.compile(r"balance|amount|total|value", re.I),
}
CATEGORY_PATTERNS = {
    "name": re.compile(r"name|title|category|label", re.I),
    "type": re.compile(r"type|kind|income|expense", re.I),
}
MAX_SCORES = {"transactions": 6, "accounts": 4, "categories": 2, "unknown": 2}

REQUIRED_FIELDS = {
    "transactions": ("date", "amount", "payee", "account"),
    "accounts": ("name", "type", "currency"),
    "categories": ("name", "type"),
}

Advisor = Callable[[str], str]


def read_csv(contents: str) -> tuple[list[str], list[dict[str, str]]]:
    reader = csv.reader(io.StringIO(contents.lstrip("\ufeff")))
    try:
        header_row = next(reader)
    except StopIteration as exc:
        raise ValueError("CSV missing header row.") from exc
    headers = [clean_text(value) for value in header_row]
    if not any(headers):
        raise ValueError("CSV missing header row.")

    rows = []
    for raw in reader:
        row = row_to_dict(headers, raw)
        if is_blank_row(row):
            continue
        rows.append(row)
    if not rows:
        raise ValueError("CSV file is empty or contains no valid data.")
    return headers, rows


def row_to_dict(fieldnames: list[str], row: list[str]) -> dict[str, str]:
    if len(row) < len(fieldnames):
        row = row + [""] * (len(fieldnames) - len(row))
    if len(row) > len(fieldnames):
        row = row[: len(fieldnames)]
    return {name: value for name, value in zip(fieldnames, row) if name}


def parse_date(value: str | None) -> date | None:
    cleaned = clean_text(value)
    if not cleaned:
        return None
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(cleaned, fmt).date()
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(cleaned).date()
    except ValueError:
        return None


def parse_decimal(value: str | None) -> Decimal | None:
    cleaned = clean_text(value)
    if not cleaned:
        return None

    negative = False
    if cleaned.startswith("(") and cleaned.endswith(")"):
        negative = True
        cleaned = cleaned[1:-1]

    cleaned = re.sub(r"[\s$€£¥₹,]", "", cleaned)

    if cleaned.startswith("-"):
        negative = True
        cleaned = cleaned[1:]
    elif cleaned.startswith("+"):
        cleaned = cleaned[1:]

    try:
        amount = Decimal(cleaned)
    except InvalidOperation:
        return None
    if not amount.is_finite():
        return None
    return -amount if negative else amount


def to_minor_units(amount: Decimal) -> int:
    return round_half_up(amount * 100)


def clean_text(value: str | None) -> str:
    return value.strip() if value else ""


def is_blank_row(row: Mapping[str, str | None]) -> bool:
    return all(not clean_text(value) for value in row.values())


def is_date_like(value: str) -> bool:
    if not value:
        return False
    return any(pattern.match(value) for pattern in DATE_LIKE_PATTERNS) or parse_date(value) is not None


def build_advisor_prompt(headers: list[str], rows: list[dict[str, str]], file_name: str) -> str:
    sample = json.dumps(rows[0] if rows else {})
    return (
        f'Analyze CSV file "{file_name}" with headers: {", ".join(headers)}. Sample: {sample}.\n\n'
        "Respond with JSON only:\n"
        '{"data_type": "transactions|accounts|categories|unknown", '
        '"column_mappings": {"csv_column": "db_field"}, "confidence": 85, '
        '"suggestions": ["tip"], "warnings": ["warning"]}\n\n'
        "Database fields:\n"
        "- Transactions: date, type, amount, payee, account, category, notes\n"
        "- Accounts: name, type, currency, balance\n"
        "- Categories: name, type"
    )


def parse_advisor_response(text: str, headers: list[str]) -> ColumnAnalysis | None:
    """Pull the first JSON object out of free-form advisor text.

    Returns None when no usable object is present, which sends the caller
    to pattern matching.
    """
    match = re.search(r"\{.*\}", text or "", re.S)
    if not match:
        return None
    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict):
        return None

    data_type = parsed.get("data_type") or parsed.get("dataType") or "unknown"
    if data_type not in DATA_TYPES:
        data_type = "unknown"
    raw_mappings = parsed.get("column_mappings") or parsed.get("columnMappings") or {}
    mappings = {
        str(column): str(field)
        for column, field in (raw_mappings.items() if isinstance(raw_mappings, dict) else [])
        if column in headers and field
    }
    try:
        confidence = int(parsed.get("confidence") or 0)
    except (TypeError, ValueError):
        confidence = 0
    suggestions = parsed.get("suggestions")
    warnings = parsed.get("warnings")
    return ColumnAnalysis(
        data_type=data_type,
        column_mappings=mappings,
        confidence=max(0, min(100, confidence)),
        suggestions=[str(item) for item in suggestions] if isinstance(suggestions, list) else [],
        warnings=[str(item) for item in warnings] if isinstance(warnings, list) else [],
        detected_columns=headers,
    )


def analyze_columns(
    rows: list[dict[str, str]], file_name: str, advisor: Advisor | None = None
) -> ColumnAnalysis:
    if not rows:
        raise ValueError("No CSV data provided for analysis.")
    headers = list(rows[0].keys())
    if advisor is not None:
        try:
            response = advisor(build_advisor_prompt(headers, rows[:3], file_name))
        except Exception:
            logger.warning("Column advisor failed, falling back to pattern matching", exc_info=True)
        else:
            parsed = parse_advisor_response(response, headers)
            if parsed is not None:
                return parsed
            logger.info("Column advisor returned no usable mapping for %s", file_name)
    return pattern_analysis(rows, file_name)


def pattern_analysis(rows: list[dict[str, str]], file_name: str) -> ColumnAnalysis:
    headers = list(rows[0].keys()) if rows else []
    sample = rows[0] if rows else {}
    mappings: dict[str, str] = {}
    account_mappings: dict[str, str] = {}
    category_mappings: dict[str, str] = {}
    transaction_score = 0.0
    account_score = 0.0
    category_score = 0.0

    for header in headers:
        sample_value = clean_text(sample.get(header)).lower()
        for field, pattern in TRANSACTION_PATTERNS.items():
            if not pattern.search(header):
                continue
            mappings[header] = field
            transaction_score += 1
            if field == "amount" and parse_decimal(sample_value) is not None:
                transaction_score += 0.5
            if field == "date" and is_date_like(sample_value):
                transaction_score += 0.5
        for field, pattern in ACCOUNT_PATTERNS.items():
            if not pattern.search(header):
                continue
            account_mappings[header] = field
            account_score += 1
            if field == "type" and re.search(r"checking|savings|credit|cash|investment", sample_value):
                account_score += 0.5
        for field, pattern in CATEGORY_PATTERNS.items():
            if pattern.search(header):
                category_mappings[header] = field
                category_score += 1

    suggestions: list[str] = []
    warnings: list[str] = []
    if transaction_score >= 3:
        data_type = "transactions"
        suggestions.append("Detected transaction data - ensure date and amount formats are consistent")
        mapped_fields = set(mappings.values())
        for field, label in (("date", "date"), ("amount", "amount"), ("payee", "payee/description")):
            if field not in mapped_fields:
                warnings.append(f"No {label} column detected - this is required for transactions")
    elif account_score >= 2:
        data_type = "accounts"
        mappings = account_mappings
        suggestions.append("Detected account data - verify account types and currency codes")
    elif category_score >= 1:
        data_type = "categories"
        mappings = category_mappings
        suggestions.append("Detected category data - ensure category types are specified")
    else:
        data_type = "unknown"
        warnings.append("Could not determine data type automatically")
        suggestions.append("Please manually map columns to appropriate fields")

    lowered_name = file_name.lower()
    if data_type == "unknown":
        if any(hint in lowered_name for hint in ("transaction", "expense", "income")):
            data_type = "transactions"
            suggestions.append("File name suggests transaction data")
        elif any(hint in lowered_name for hint in ("account", "bank")):
            data_type = "accounts"
            mappings = account_mappings
            suggestions.append("File name suggests account data")

    score = {
        "transactions": transaction_score,
        "accounts": account_score,
        "categories": category_score,
    }.get(data_type, category_score)
    confidence = min(round(score / MAX_SCORES[data_type] * 100), 95)

    suggestions.append("Review column mappings before importing")
    if len(rows) > 1000:
        suggestions.append("Large dataset detected - import may take some time")

    return ColumnAnalysis(
        data_type=data_type,
        column_mappings=mappings,
        confidence=confidence,
        suggestions=suggestions,
        warnings=warnings,
        detected_columns=headers,
    )


def apply_mappings(row: Mapping[str, str], mappings: Mapping[str, str]) -> dict[str, str]:
    mapped: dict[str, str] = {}
    for column, field in mappings.items():
        if column in row:
            mapped[field] = row[column]
    return mapped


def validate_rows(
    rows: list[dict[str, str]],
    mappings: Mapping[str, str],
    data_type: str,
    today: date | None = None,
) -> ValidationResult:
    """Check rows against the mapped fields without touching storage.

    Row numbers are 1-based over data rows. Errors make a row invalid;
    warnings never do.
    """
    if data_type not in REQUIRED_FIELDS:
        raise ValueError(f"Unsupported data type: {data_type}")
    today = today or date.today()
    errors: list[RowIssue] = []
    warnings: list[RowIssue] = []
    valid_rows = 0

    for index, raw in enumerate(rows, start=1):
        row = apply_mappings(raw, mappings)
        row_errors: list[RowIssue] = []
        for field in REQUIRED_FIELDS[data_type]:
            if not clean_text(row.get(field)):
                row_errors.append(
                    RowIssue(
                        row=index,
                        field=field,
                        message=f"Required field '{field}' is missing or empty",
                        value=row.get(field),
                    )
                )
        if data_type == "transactions":
            _check_transaction_row(index, row, today, row_errors, warnings)
        elif data_type == "accounts":
            _check_account_row(index, row, row_errors, warnings)
        else:
            _check_category_row(index, row, row_errors, warnings)

        errors.extend(row_errors)
        if not row_errors:
            valid_rows += 1

    return ValidationResult(
        is_valid=valid_rows == len(rows),
        errors=errors,
        warnings=warnings,
        stats=ValidationStats(
            total_rows=len(rows),
            valid_rows=valid_rows,
            invalid_rows=len(rows) - valid_rows,
            error_count=len(errors),
            warning_count=len(warnings),
        ),
    )


def _check_transaction_row(
    index: int, row: dict[str, str], today: date, errors: list[RowIssue], warnings: list[RowIssue]
) -> None:
    raw_amount = clean_text(row.get("amount"))
    if raw_amount:
        amount = parse_decimal(raw_amount)
        if amount is None:
            errors.append(RowIssue(row=index, field="amount", message="Amount must be a valid number", value=raw_amount))
        elif amount == 0:
            warnings.append(RowIssue(row=index, field="amount", message="Amount is zero", value=raw_amount))

    raw_date = clean_text(row.get("date"))
    if raw_date:
        parsed = parse_date(raw_date)
        if parsed is None:
            errors.append(RowIssue(row=index, field="date", message="Date is not in a valid format", value=raw_date))
        elif parsed > today:
            warnings.append(RowIssue(row=index, field="date", message="Date is in the future", value=raw_date))
        elif parsed < _years_before(today, 10):
            warnings.append(
                RowIssue(row=index, field="date", message="Date is more than 10 years old", value=raw_date)
            )

    payee = clean_text(row.get("payee"))
    if payee and len(payee) < 2:
        warnings.append(RowIssue(row=index, field="payee", message="Payee name is very short", value=payee))
    if len(payee) > 100:
        warnings.append(
            RowIssue(row=index, field="payee", message="Payee name is very long (>100 characters)", value=payee)
        )


def _check_account_row(
    index: int, row: dict[str, str], errors: list[RowIssue], warnings: list[RowIssue]
) -> None:
    account_type = clean_text(row.get("type"))
    if account_type:
        try:
            AccountType.validate(account_type)
        except ValueError:
            errors.append(
                RowIssue(
                    row=index,
                    field="type",
                    message="Account type must be one of: " + ", ".join(sorted(AccountType.values)),
                    value=account_type,
                )
            )

    currency = clean_text(row.get("currency")).upper()
    if currency:
        try:
            normalize_currency(currency)
        except ValueError:
            errors.append(
                RowIssue(row=index, field="currency", message="Currency must be a 3-letter ISO 4217 code", value=currency)
            )
        else:
            if currency not in COMMON_IMPORT_CURRENCIES:
                warnings.append(
                    RowIssue(row=index, field="currency", message=f"Currency '{currency}' is not commonly supported", value=currency)
                )

    balance = clean_text(row.get("balance"))
    if balance and parse_decimal(balance) is None:
        errors.append(RowIssue(row=index, field="balance", message="Balance must be a valid number", value=balance))

    name = clean_text(row.get("name"))
    if name and len(name) < 2:
        errors.append(
            RowIssue(row=index, field="name", message="Account name must be at least 2 characters long", value=name)
        )
    if len(name) > 50:
        warnings.append(
            RowIssue(row=index, field="name", message="Account name is very long (>50 characters)", value=name)
        )


def _check_category_row(
    index: int, row: dict[str, str], errors: list[RowIssue], warnings: list[RowIssue]
) -> None:
    category_type = clean_text(row.get("type"))
    if category_type and category_type.lower() not in {"income", "expense"}:
        errors.append(
            RowIssue(
                row=index,
                field="type",
                message="Category type must be either 'Income' or 'Expense'",
                value=category_type,
            )
        )
    name = clean_text(row.get("name"))
    if name and len(name) < 2:
        errors.append(
            RowIssue(row=index, field="name", message="Category name must be at least 2 characters long", value=name)
        )
    if len(name) > 30:
        warnings.append(
            RowIssue(row=index, field="name", message="Category name is very long (>30 characters)", value=name)
        )


def _years_before(value: date, years: int) -> date:
    try:
        return value.replace(year=value.year - years)
    except ValueError:
        return value.replace(year=value.year - years, day=28)


def create_import(
    conn: Connection,
    user_id: int,
    file_name: str,
    file_size: int,
    headers: list[str],
    rows: list[dict[str, str]],
) -> Mapping:
    return (
        conn.execute(
            insert(import_records)
            .values(
                user_id=user_id,
                file_name=file_name,
                file_size=file_size,
                original_rows=rows,
                detected_columns=headers,
                status="pending",
                total_rows=len(rows),
                import_errors=[],
            )
            .returning(import_records)
        )
        .mappings()
        .first()
    )


def get_import(conn: Connection, user_id: int, import_id: int, for_update: bool = False) -> Mapping:
    stmt = select(import_records).where(
        import_records.c.id == import_id, import_records.c.user_id == user_id
    )
    if for_update:
        stmt = stmt.with_for_update()
    row = conn.execute(stmt).mappings().first()
    if not row:
        raise NotFoundError("Import record not found.")
    return row


def _require_status(record: Mapping, status: str, action: str) -> None:
    if record["status"] != status:
        raise ImportStateError(
            f"Import record is not ready for {action} (current status: {record['status']})."
        )


def _mark_failed(db: Database, import_id: int, errors: list[str], message: str) -> None:
    with db.begin() as conn:
        conn.execute(
            update(import_records)
            .where(import_records.c.id == import_id)
            .values(status="failed", import_errors=[*errors, message])
        )


def analyze_import(
    db: Database, user_id: int, import_id: int, advisor: Advisor | None = None
) -> ColumnAnalysis:
    with db.begin() as conn:
        record = get_import(conn, user_id, import_id, for_update=True)
        _require_status(record, "pending", "analysis")
        conn.execute(
            update(import_records).where(import_records.c.id == import_id).values(status="analyzing")
        )

    try:
        analysis = analyze_columns(record["original_rows"], record["file_name"], advisor)
    except ValueError as exc:
        _mark_failed(db, import_id, record["import_errors"] or [], f"Analysis failed: {exc}")
        raise

    with db.begin() as conn:
        conn.execute(
            update(import_records)
            .where(import_records.c.id == import_id)
            .values(status="ready", analysis=analysis.model_dump())
        )
    logger.info(
        "Import %s analyzed as %s (confidence %s)", import_id, analysis.data_type, analysis.confidence
    )
    return analysis


def _effective_mappings(record: Mapping) -> dict[str, str]:
    if record["confirmed_mappings"]:
        return dict(record["confirmed_mappings"])
    return dict((record["analysis"] or {}).get("column_mappings") or {})


def preview_import(
    conn: Connection,
    user_id: int,
    import_id: int,
    column_mappings: Mapping[str, str] | None = None,
    data_type: str | None = None,
    today: date | None = None,
) -> dict:
    record = get_import(conn, user_id, import_id, for_update=True)
    _require_status(record, "ready", "preview")

    analysis = dict(record["analysis"] or {})
    values: dict = {}
    if column_mappings is not None:
        values["confirmed_mappings"] = dict(column_mappings)
    if data_type is not None:
        analysis["data_type"] = data_type
        values["analysis"] = analysis
    if values:
        conn.execute(update(import_records).where(import_records.c.id == import_id).values(**values))
        record = get_import(conn, user_id, import_id)

    resolved_type = analysis.get("data_type", "unknown")
    if resolved_type not in IMPORTABLE_TYPES:
        raise ImportStateError("Data type could not be determined; choose one before previewing.")
    mappings = _effective_mappings(record)
    sample = record["original_rows"][:PREVIEW_ROWS]
    mapped_rows = [{**apply_mappings(row, mappings), "_original": row} for row in sample]
    return {
        "import_id": import_id,
        "file_name": record["file_name"],
        "data_type": resolved_type,
        "total_rows": record["total_rows"],
        "column_mappings": mappings,
        "mapped_rows": mapped_rows,
        "validation": validate_rows(sample, mappings, resolved_type, today),
    }


def execute_import(
    db: Database,
    user_id: int,
    import_id: int,
    resolver: ExchangeRateResolver,
) -> dict:
    """Create records from every row; bad rows are reported, not fatal.

    Each row is its own unit of work, so rows written before a failure stay.
    """
    with db.begin() as conn:
        record = get_import(conn, user_id, import_id, for_update=True)
        _require_status(record, "ready", "execution")
        conn.execute(
            update(import_records)
            .where(import_records.c.id == import_id)
            .values(status="importing", imported_rows=0, failed_rows=0, import_errors=[])
        )

    data_type = (record["analysis"] or {}).get("data_type", "unknown")
    mappings = _effective_mappings(record)
    rows = [apply_mappings(row, mappings) for row in record["original_rows"]]
    try:
        if data_type == "transactions":
            imported, failed, errors = _import_transactions(db, user_id, rows, resolver)
        elif data_type == "accounts":
            imported, failed, errors = _import_accounts(db, user_id, rows)
        elif data_type == "categories":
            imported, failed, errors = _import_categories(db, user_id, rows)
        else:
            raise ImportStateError(f"Unsupported data type: {data_type}")
    except Exception as exc:
        logger.exception("Import %s failed", import_id)
        _mark_failed(db, import_id, [], f"Import execution failed: {exc}")
        raise

    with db.begin() as conn:
        conn.execute(
            update(import_records)
            .where(import_records.c.id == import_id)
            .values(
                status="completed",
                imported_rows=imported,
                failed_rows=failed,
                import_errors=errors,
                completed_at=func.now(),
            )
        )
    logger.info("Import %s completed: %d imported, %d failed", import_id, imported, failed)
    return {
        "import_id": import_id,
        "data_type": data_type,
        "imported_rows": imported,
        "failed_rows": failed,
        "errors": errors,
    }


def _import_transactions(
    db: Database, user_id: int, rows: list[dict[str, str]], resolver: ExchangeRateResolver
) -> tuple[int, int, list[str]]:
    with db.begin() as conn:
        account_rows = conn.execute(
            select(accounts.c.id, accounts.c.name).where(accounts.c.user_id == user_id)
        ).mappings().all()
        category_rows = conn.execute(
            select(categories.c.id, categories.c.name, categories.c.type).where(
                categories.c.user_id == user_id
            )
        ).mappings().all()
    account_map = {row["name"].lower(): row["id"] for row in account_rows}
    category_map = {(row["name"].lower(), row["type"]): row["id"] for row in category_rows}

    imported = 0
    errors: list[str] = []
    failed = 0
    for index, row in enumerate(rows, start=1):
        if not all(clean_text(row.get(field)) for field in REQUIRED_FIELDS["transactions"]):
            errors.append(f"Row {index}: Missing required fields")
            failed += 1
            continue
        amount = parse_decimal(row["amount"])
        if amount is None:
            errors.append(f"Row {index}: Invalid amount: {row['amount']}")
            failed += 1
            continue
        txn_date = parse_date(row["date"])
        if txn_date is None:
            errors.append(f"Row {index}: Invalid date: {row['date']}")
            failed += 1
            continue
        account_id = account_map.get(clean_text(row["account"]).lower())
        if account_id is None:
            errors.append(f"Row {index}: Account '{clean_text(row['account'])}' not found")
            failed += 1
            continue
        minor_units = to_minor_units(abs(amount))
        if minor_units <= 0:
            errors.append(f"Row {index}: Amount must be greater than zero")
            failed += 1
            continue

        txn_type = clean_text(row.get("type")).lower()
        if txn_type not in {"income", "expense"}:
            txn_type = "income" if amount >= 0 else "expense"
        category_id = None
        category_name = clean_text(row.get("category"))
        if category_name:
            category_id = category_map.get((category_name.lower(), txn_type))
            if category_id is None:
                errors.append(
                    f"Row {index}: Warning - Category '{category_name}' not found, "
                    "transaction will be uncategorized"
                )

        values = {
            "account_id": account_id,
            "category_id": category_id,
            "type": txn_type,
            "amount": minor_units,
            "date": txn_date,
            "payee": clean_text(row["payee"])[:255],
            "notes": clean_text(row.get("notes"))[:500] or None,
            "status": "completed",
        }
        try:
            with db.begin() as conn:
                create_transaction(conn, user_id, values, resolver)
        except (BillfoldError, IntegrityError) as exc:
            errors.append(f"Row {index}: {getattr(exc, 'message', str(exc))}")
            failed += 1
            continue
        imported += 1
    return imported, failed, errors


def _import_accounts(db: Database, user_id: int, rows: list[dict[str, str]]) -> tuple[int, int, list[str]]:
    imported = 0
    failed = 0
    errors: list[str] = []
    for index, row in enumerate(rows, start=1):
        if not all(clean_text(row.get(field)) for field in REQUIRED_FIELDS["accounts"]):
            errors.append(f"Row {index}: Missing required fields (name, type, currency)")
            failed += 1
            continue
        name = clean_text(row["name"])
        try:
            account_type = AccountType.validate(row["type"])
            currency = normalize_currency(row["currency"])
        except ValueError as exc:
            errors.append(f"Row {index}: {exc}")
            failed += 1
            continue
        balance = 0
        if clean_text(row.get("balance")):
            parsed = parse_decimal(row["balance"])
            if parsed is None:
                errors.append(f"Row {index}: Invalid balance: {row['balance']}")
                failed += 1
                continue
            balance = to_minor_units(parsed)

        values = {
            "user_id": user_id,
            "name": name,
            "type": account_type,
            "currency": currency,
            "initial_balance": balance,
            "balance": balance,
        }
        if account_type == "credit_card":
            values.update(
                credit_limit=0,
                bill_generation_day=1,
                bill_due_day=DEFAULT_DUE_DAY,
                interest_rate=Decimal("0"),
                minimum_payment_percentage=DEFAULT_MINIMUM_PERCENTAGE,
                current_bill_paid=False,
            )
        with db.begin() as conn:
            existing = conn.execute(
                select(accounts.c.id).where(
                    accounts.c.user_id == user_id, func.lower(accounts.c.name) == name.lower()
                )
            ).first()
            if existing:
                errors.append(f"Row {index}: Account '{name}' already exists")
                failed += 1
                continue
            conn.execute(insert(accounts).values(**values))
        imported += 1
    return imported, failed, errors


def _import_categories(db: Database, user_id: int, rows: list[dict[str, str]]) -> tuple[int, int, list[str]]:
    imported = 0
    failed = 0
    errors: list[str] = []
    for index, row in enumerate(rows, start=1):
        if not all(clean_text(row.get(field)) for field in REQUIRED_FIELDS["categories"]):
            errors.append(f"Row {index}: Missing required fields (name, type)")
            failed += 1
            continue
        name = clean_text(row["name"])
        category_type = clean_text(row["type"]).lower()
        if category_type not in {"income", "expense"}:
            errors.append(f"Row {index}: Category type must be either 'Income' or 'Expense'")
            failed += 1
            continue
        try:
            with db.begin() as conn:
                conn.execute(
                    insert(categories).values(user_id=user_id, name=name, type=category_type)
                )
        except IntegrityError:
            errors.append(f"Row {index}: Category '{name}' already exists")
            failed += 1
            continue
        imported += 1
    return imported, failed, errors


def import_history(
    conn: Connection,
    user_id: int,
    status: str | None = None,
    page: int = 1,
    limit: int = 10,
) -> tuple[list[Mapping], int]:
    conditions = [import_records.c.user_id == user_id]
    if status:
        conditions.append(import_records.c.status == status)
    total_count = conn.execute(
        select(func.count()).select_from(import_records).where(*conditions)
    ).scalar_one()
    rows = (
        conn.execute(
            select(import_records)
            .where(*conditions)
            .order_by(import_records.c.created_at.desc(), import_records.c.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        .mappings()
        .all()
    )
    return rows, int(total_count or 0)


def delete_import(conn: Connection, user_id: int, import_id: int) -> None:
    result = conn.execute(
        delete(import_records).where(
            import_records.c.id == import_id, import_records.c.user_id == user_id
        )
    )
    if result.rowcount == 0:
        raise NotFoundError("Import record not found.")
