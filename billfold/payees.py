from __future__ import annotations

import logging
import re
from typing import Mapping

from sqlalchemy import delete, func, insert, or_, select, update
from sqlalchemy.engine import Connection

from billfold.database import payees
from billfold.exceptions import ConflictError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

DUPLICATE_PAYEE = "A payee with this name already exists."


def payee_slug(display_name: str) -> str:
    """Lowercase, hyphen-separated form of a display name used for uniqueness."""
    value = display_name.strip().lower()
    value = re.sub(r"[^a-z0-9\s-]", "", value)
    value = re.sub(r"\s+", "-", value)
    value = re.sub(r"-+", "-", value)
    return value.strip("-")


def _slug_or_error(display_name: str) -> str:
    slug = payee_slug(display_name)
    if not slug:
        raise ValidationError("Payee name must contain letters or numbers.")
    return slug


def name_taken(
    conn: Connection, user_id: int, display_name: str, exclude_id: int | None = None
) -> bool:
    conditions = [
        payees.c.user_id == user_id,
        or_(payees.c.display_name == display_name, payees.c.name == payee_slug(display_name)),
    ]
    if exclude_id is not None:
        conditions.append(payees.c.id != exclude_id)
    return bool(conn.execute(select(payees.c.id).where(*conditions).limit(1)).first())


def list_payees(conn: Connection, user_id: int, active_only: bool = False) -> list[Mapping]:
    conditions = [payees.c.user_id == user_id]
    if active_only:
        conditions.append(payees.c.is_active.is_(True))
    return (
        conn.execute(
            select(payees)
            .where(*conditions)
            .order_by(payees.c.display_name.asc(), payees.c.id.asc())
        )
        .mappings()
        .all()
    )


def get_payee(conn: Connection, user_id: int, payee_id: int) -> Mapping:
    row = (
        conn.execute(select(payees).where(payees.c.id == payee_id, payees.c.user_id == user_id))
        .mappings()
        .first()
    )
    if not row:
        raise NotFoundError("Payee not found.")
    return row


def create_payee(conn: Connection, user_id: int, values: Mapping) -> Mapping:
    display_name = values["display_name"]
    slug = _slug_or_error(display_name)
    if name_taken(conn, user_id, display_name):
        raise ConflictError(DUPLICATE_PAYEE)
    is_active = values.get("is_active")
    row = (
        conn.execute(
            insert(payees)
            .values(
                user_id=user_id,
                name=slug,
                display_name=display_name,
                description=values.get("description"),
                category=values.get("category"),
                is_active=True if is_active is None else is_active,
            )
            .returning(payees)
        )
        .mappings()
        .first()
    )
    logger.info("Created payee %s (%s) for user %s", row["id"], slug, user_id)
    return row


def update_payee(conn: Connection, user_id: int, payee_id: int, values: Mapping) -> Mapping:
    existing = get_payee(conn, user_id, payee_id)
    display_name = values["display_name"]
    slug = _slug_or_error(display_name)
    if name_taken(conn, user_id, display_name, exclude_id=payee_id):
        raise ConflictError(DUPLICATE_PAYEE)
    is_active = values.get("is_active")
    return (
        conn.execute(
            update(payees)
            .where(payees.c.id == payee_id)
            .values(
                name=slug,
                display_name=display_name,
                description=values.get("description"),
                category=values.get("category"),
                is_active=existing["is_active"] if is_active is None else is_active,
                updated_at=func.now(),
            )
            .returning(payees)
        )
        .mappings()
        .first()
    )


def toggle_payee_status(conn: Connection, user_id: int, payee_id: int) -> Mapping:
    existing = get_payee(conn, user_id, payee_id)
    return (
        conn.execute(
            update(payees)
            .where(payees.c.id == payee_id)
            .values(is_active=not existing["is_active"], updated_at=func.now())
            .returning(payees)
        )
        .mappings()
        .first()
    )


def delete_payee(conn: Connection, user_id: int, payee_id: int) -> None:
    get_payee(conn, user_id, payee_id)
    conn.execute(delete(payees).where(payees.c.id == payee_id))
