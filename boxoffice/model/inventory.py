# model/inventory.py
"""
Inventory store: one row per ticket instance, claimed and released with
conditional UPDATEs so concurrent callers can never be handed the same row.

Every function here is UN-GATED and runs on the caller's session, inside
the caller's transaction. The reservation engine, the reconciliation
processor and the sweeper own the transactional boundary.
"""

from __future__ import annotations
import hashlib
import hmac
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from sqlalchemy import bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import (
    CategoryExistsError, CategoryNotFoundError, InsufficientInventoryError,
)
from ..infra.sql import is_postgres
from .db import T_AVAILABLE, T_RESERVED, T_SOLD


# largest quantity worth sending to the store; ticket ids and counts are
# 32-bit columns on PostgreSQL
MAX_CLAIM = 2**31 - 1


@dataclass(frozen=True)
class Category:
    id: str
    name: str
    price: int
    capacity: int
    max_per_order: Optional[int]
    created_at: float


# ------------------------------------------------------------------------------
# SQL
# ------------------------------------------------------------------------------

# Lowest ids first, so no available ticket is skipped forever while others
# cycle. On PostgreSQL, SKIP LOCKED lets concurrent claimers for the same
# category walk past rows another transaction is flipping instead of
# queueing behind it; the outer status guard re-checks every row.
_SQL_CLAIM = """
    UPDATE tickets
    SET status='reserved', order_id=:order_id, reserved_at=:now
    WHERE id IN (
        SELECT id FROM tickets
        WHERE category_id=:category_id AND status='available'
        ORDER BY id
        LIMIT :qty
        {lock}
    )
      AND status='available'
    RETURNING id
"""

_SQL_RELEASE = text("""
    UPDATE tickets
    SET status='available', order_id=NULL, reserved_at=NULL
    WHERE id IN :ids
      AND status='reserved'
    RETURNING id
""").bindparams(bindparam("ids", expanding=True))

_SQL_RELEASE_OWNED = text("""
    UPDATE tickets
    SET status='available', order_id=NULL, reserved_at=NULL
    WHERE id IN :ids
      AND status='reserved'
      AND order_id=:order_id
    RETURNING id
""").bindparams(bindparam("ids", expanding=True))

_SQL_MARK_SOLD = text("""
    UPDATE tickets
    SET status='sold', sold_at=:now
    WHERE id IN :ids
      AND status='reserved'
    RETURNING id
""").bindparams(bindparam("ids", expanding=True))

_SQL_MARK_SOLD_OWNED = text("""
    UPDATE tickets
    SET status='sold', sold_at=:now
    WHERE id IN :ids
      AND status='reserved'
      AND order_id=:order_id
    RETURNING id
""").bindparams(bindparam("ids", expanding=True))

_SQL_RECLAIM_SOLD = text("""
    UPDATE tickets
    SET status='sold', order_id=:order_id, reserved_at=NULL, sold_at=:now
    WHERE id IN :ids
      AND status='available'
    RETURNING id
""").bindparams(bindparam("ids", expanding=True))

_SQL_UNDO_RECLAIM = text("""
    UPDATE tickets
    SET status='available', order_id=NULL, sold_at=NULL
    WHERE id IN :ids
      AND status='sold'
      AND order_id=:order_id
""").bindparams(bindparam("ids", expanding=True))


# ------------------------------------------------------------------------------
# Category definition (bulk ticket creation)
# ------------------------------------------------------------------------------

async def create_category(
    db: AsyncSession,
    *,
    category_id: str,
    name: str,
    price: int,
    capacity: int,
    max_per_order: Optional[int],
    now: float,
) -> Category:
    if capacity < 0:
        raise ValueError("capacity must be >= 0")
    if max_per_order is not None and max_per_order < 1:
        raise ValueError("max_per_order must be >= 1")

    row = (await db.execute(text("""
        INSERT INTO ticket_categories(
            id, name, price, capacity, max_per_order, created_at)
        VALUES(:id, :name, :price, :capacity, :mpo, :now)
        ON CONFLICT (id) DO NOTHING
        RETURNING id
    """), {
        "id": category_id, "name": name, "price": price,
        "capacity": capacity, "mpo": max_per_order, "now": now,
    })).first()
    if row is None:
        raise CategoryExistsError(f"category {category_id} already exists")

    if capacity:
        await db.execute(
            text("""
                INSERT INTO tickets(category_id, status)
                VALUES(:category_id, 'available')
            """),
            [{"category_id": category_id}] * capacity,
        )

    return Category(
        id=category_id, name=name, price=price, capacity=capacity,
        max_per_order=max_per_order, created_at=now,
    )


async def get_category(db: AsyncSession, category_id: str) -> Category:
    row = (await db.execute(text("""
        SELECT id, name, price, capacity, max_per_order, created_at
        FROM ticket_categories WHERE id=:id
    """), {"id": category_id})).mappings().first()
    if not row:
        raise CategoryNotFoundError(f"unknown ticket category {category_id}")
    return Category(
        id=row["id"],
        name=row["name"],
        price=int(row["price"]),
        capacity=int(row["capacity"]),
        max_per_order=row["max_per_order"],
        created_at=float(row["created_at"]),
    )


# ------------------------------------------------------------------------------
# Core operations
# ------------------------------------------------------------------------------

async def count_available(db: AsyncSession, category_id: str) -> int:
    return int((await db.execute(text("""
        SELECT COUNT(*) FROM tickets
        WHERE category_id=:c AND status='available'
    """), {"c": category_id})).scalar_one())


async def claim(
    db: AsyncSession,
    category_id: str,
    quantity: int,
    *,
    order_id: str,
    now: float,
) -> List[int]:
    """
    Flip exactly `quantity` available tickets of `category_id` to reserved
    for `order_id` and return their ids (ascending).

    All or nothing: when fewer rows could be flipped, raises
    InsufficientInventoryError and the caller's transaction must roll back,
    which undoes the rows that were flipped.
    """
    if quantity < 1:
        raise ValueError("quantity must be >= 1")
    if quantity > MAX_CLAIM:
        raise InsufficientInventoryError(category_id, quantity, 0)

    lock = "FOR UPDATE SKIP LOCKED" if is_postgres(db) else ""
    rows = (await db.execute(
        text(_SQL_CLAIM.format(lock=lock)),
        {
            "category_id": category_id,
            "qty": quantity,
            "order_id": order_id,
            "now": now,
        },
    )).all()
    ids = sorted(int(r[0]) for r in rows)
    if len(ids) < quantity:
        raise InsufficientInventoryError(category_id, quantity, len(ids))
    return ids


async def release(
    db: AsyncSession,
    ticket_ids: Sequence[int],
    *,
    order_id: Optional[str] = None,
) -> int:
    """reserved -> available. Returns the number of tickets released."""
    if not ticket_ids:
        return 0
    params: Dict[str, object] = {"ids": list(ticket_ids)}
    stmt = _SQL_RELEASE
    if order_id is not None:
        stmt = _SQL_RELEASE_OWNED
        params["order_id"] = order_id
    return len((await db.execute(stmt, params)).all())


async def mark_sold(
    db: AsyncSession,
    ticket_ids: Sequence[int],
    *,
    now: float,
    order_id: Optional[str] = None,
) -> int:
    """reserved -> sold. Returns the number of tickets flipped."""
    if not ticket_ids:
        return 0
    params: Dict[str, object] = {"ids": list(ticket_ids), "now": now}
    stmt = _SQL_MARK_SOLD
    if order_id is not None:
        stmt = _SQL_MARK_SOLD_OWNED
        params["order_id"] = order_id
    return len((await db.execute(stmt, params)).all())


async def reclaim_sold(
    db: AsyncSession,
    ticket_ids: Sequence[int],
    *,
    order_id: str,
    now: float,
) -> List[int]:
    """
    Late confirmation path: available -> sold for exactly `ticket_ids`.
    Returns the ids when all of them could be taken, [] otherwise (any
    partially taken rows are put back before returning).
    """
    if not ticket_ids:
        return []
    got = [int(r[0]) for r in (await db.execute(_SQL_RECLAIM_SOLD, {
        "ids": list(ticket_ids), "order_id": order_id, "now": now,
    })).all()]
    if len(got) == len(set(ticket_ids)):
        return sorted(got)
    if got:
        await db.execute(_SQL_UNDO_RECLAIM,
                         {"ids": got, "order_id": order_id})
    return []


# ------------------------------------------------------------------------------
# Read APIs (best effort, may be stale)
# ------------------------------------------------------------------------------

async def inventory_stats(db: AsyncSession, category_id: str) -> Dict[str, int]:
    category = await get_category(db, category_id)
    rows = (await db.execute(text("""
        SELECT status, COUNT(*) AS n FROM tickets
        WHERE category_id=:c
        GROUP BY status
    """), {"c": category_id})).all()
    counts = {str(status): int(n) for status, n in rows}
    available = counts.get(T_AVAILABLE, 0)
    return {
        "capacity": category.capacity,
        "available": available,
        "reserved": counts.get(T_RESERVED, 0),
        "sold": counts.get(T_SOLD, 0),
        "sold_out": available <= 0,
    }


async def tickets_of_order(db: AsyncSession, order_id: str) -> List[Dict]:
    rows = (await db.execute(text("""
        SELECT t.id, t.status, t.order_id
        FROM order_tickets ot
        JOIN tickets t ON t.id = ot.ticket_id
        WHERE ot.order_id=:oid
        ORDER BY t.id
    """), {"oid": order_id})).mappings().all()
    return [dict(r) for r in rows]


def ticket_code(ticket_id: int, order_id: str, secret: str) -> str:
    mac = hmac.new(
        secret.encode(), f"{ticket_id}:{order_id}".encode(), hashlib.sha256
    ).hexdigest()
    return f"TCK-{mac[:10].upper()}"
