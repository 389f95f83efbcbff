# model/ledger.py
"""
Order ledger: orders, the tickets they reserved, the callbacks applied to
them and the conflicts that need a human (or a refund job).

Like the inventory store, every function is UN-GATED and runs inside the
caller's transaction. `update_status` and `record_callback` are the two
atomic primitives the rest of the system leans on:

- update_status is a compare-and-swap on orders.status
- record_callback is an insert-if-absent on (correlation_token, receipt_id)
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import CURRENCY
from ..errors import IntegrityConflictError, OrderNotFoundError
from ..helpers import new_correlation_token
from .db import (
    O_EXPIRED, O_FAILED, O_PAID, O_PENDING, O_RESERVED,
)

# Forward edges of the order state machine. expired -> paid only happens
# when a late success callback manages to take the same tickets back, and
# is always recorded as a conflict (see reconciliation).
ALLOWED_TRANSITIONS = {
    (O_PENDING, O_RESERVED),
    (O_RESERVED, O_PAID),
    (O_RESERVED, O_FAILED),
    (O_RESERVED, O_EXPIRED),
    (O_EXPIRED, O_PAID),
}

# columns update_status may touch besides status/updated_at
_STATUS_FIELDS = ("receipt_id", "last_callback_digest", "result_code",
                  "result_desc")

CALLBACK_PROCESSING = "processing"


@dataclass
class OrderRecord:
    id: str
    buyer_id: str
    category_id: str
    quantity: int
    amount: int
    currency: str
    status: str
    correlation_token: str
    created_at: float
    updated_at: float
    receipt_id: Optional[str] = None
    result_code: Optional[int] = None
    result_desc: Optional[str] = None
    ticket_ids: List[int] = field(default_factory=list)


_SELECT_ORDER = """
    SELECT id, buyer_id, category_id, quantity, amount, currency, status,
           correlation_token, created_at, updated_at, receipt_id,
           result_code, result_desc
    FROM orders
"""


async def _to_record(db: AsyncSession, row) -> OrderRecord:
    return OrderRecord(
        id=row["id"],
        buyer_id=row["buyer_id"],
        category_id=row["category_id"],
        quantity=int(row["quantity"]),
        amount=int(row["amount"]),
        currency=row["currency"],
        status=row["status"],
        correlation_token=row["correlation_token"],
        created_at=float(row["created_at"]),
        updated_at=float(row["updated_at"]),
        receipt_id=row["receipt_id"],
        result_code=row["result_code"],
        result_desc=row["result_desc"],
        ticket_ids=await order_ticket_ids(db, row["id"]),
    )


# ------------------------------------------------------------------------------
# Orders
# ------------------------------------------------------------------------------

async def create_order(
    db: AsyncSession,
    *,
    order_id: str,
    buyer_id: str,
    category_id: str,
    quantity: int,
    ticket_ids: Sequence[int],
    amount: int,
    now: float,
    correlation_token: Optional[str] = None,
) -> OrderRecord:
    if len(ticket_ids) != quantity:
        raise IntegrityConflictError(
            f"order {order_id}: {len(ticket_ids)} tickets for "
            f"quantity {quantity}"
        )
    token = correlation_token or new_correlation_token()

    await db.execute(text("""
        INSERT INTO orders(
            id, buyer_id, category_id, quantity, amount, currency, status,
            correlation_token, created_at, updated_at)
        VALUES(
            :id, :buyer_id, :category_id, :quantity, :amount, :currency,
            :status, :token, :now, :now)
    """), {
        "id": order_id,
        "buyer_id": buyer_id,
        "category_id": category_id,
        "quantity": quantity,
        "amount": amount,
        "currency": CURRENCY,
        "status": O_RESERVED,
        "token": token,
        "now": now,
    })
    await db.execute(
        text("""
            INSERT INTO order_tickets(order_id, ticket_id)
            VALUES(:order_id, :ticket_id)
        """),
        [{"order_id": order_id, "ticket_id": t} for t in ticket_ids],
    )

    return OrderRecord(
        id=order_id,
        buyer_id=buyer_id,
        category_id=category_id,
        quantity=quantity,
        amount=amount,
        currency=CURRENCY,
        status=O_RESERVED,
        correlation_token=token,
        created_at=now,
        updated_at=now,
        ticket_ids=sorted(ticket_ids),
    )


async def update_status(
    db: AsyncSession,
    order_id: str,
    expected: str,
    new: str,
    *,
    now: float,
    **fields: Any,
) -> bool:
    """
    Compare-and-swap on the order status. Returns True when this call moved
    the order from `expected` to `new`, False when the order was not in
    `expected` anymore (somebody else won).
    """
    if (expected, new) not in ALLOWED_TRANSITIONS:
        raise ValueError(f"illegal order transition {expected} -> {new}")
    unknown = set(fields) - set(_STATUS_FIELDS)
    if unknown:
        raise ValueError(f"unknown order fields: {sorted(unknown)}")

    sets = ["status=:new", "updated_at=:now"]
    params: Dict[str, Any] = {
        "id": order_id, "expected": expected, "new": new, "now": now,
    }
    for name, value in fields.items():
        sets.append(f"{name}=:{name}")
        params[name] = value

    row = (await db.execute(text(f"""
        UPDATE orders
        SET {", ".join(sets)}
        WHERE id=:id AND status=:expected
        RETURNING id
    """), params)).first()
    return row is not None


async def get_order(db: AsyncSession, order_id: str) -> OrderRecord:
    row = (await db.execute(
        text(_SELECT_ORDER + " WHERE id=:id"), {"id": order_id}
    )).mappings().first()
    if not row:
        raise OrderNotFoundError(f"order {order_id} not found")
    return await _to_record(db, row)


async def find_order_by_token(
    db: AsyncSession, correlation_token: str
) -> Optional[OrderRecord]:
    row = (await db.execute(
        text(_SELECT_ORDER + " WHERE correlation_token=:t"),
        {"t": correlation_token},
    )).mappings().first()
    if not row:
        return None
    return await _to_record(db, row)


async def order_ticket_ids(db: AsyncSession, order_id: str) -> List[int]:
    rows = (await db.execute(text("""
        SELECT ticket_id FROM order_tickets
        WHERE order_id=:oid ORDER BY ticket_id
    """), {"oid": order_id})).all()
    return [int(r[0]) for r in rows]


async def list_expirable(
    db: AsyncSession, *, now: float, timeout: float, limit: int = 500
) -> List[str]:
    rows = (await db.execute(text("""
        SELECT id FROM orders
        WHERE status='reserved' AND created_at < :cutoff
        ORDER BY created_at
        LIMIT :lim
    """), {"cutoff": now - timeout, "lim": int(limit)})).all()
    return [r[0] for r in rows]


# ------------------------------------------------------------------------------
# Callback records (idempotency)
# ------------------------------------------------------------------------------

async def record_callback(
    db: AsyncSession,
    correlation_token: str,
    receipt_id: str,
    digest: str,
    result_code: int,
    *,
    now: float,
) -> bool:
    """
    Insert the CallbackRecord for (correlation_token, receipt_id).
    Returns True if one already existed (already processed).
    """
    row = (await db.execute(text("""
        INSERT INTO callback_records(
            correlation_token, receipt_id, digest, result_code, outcome,
            processed_at)
        VALUES(:t, :r, :d, :rc, :outcome, :now)
        ON CONFLICT (correlation_token, receipt_id) DO NOTHING
        RETURNING correlation_token
    """), {
        "t": correlation_token,
        "r": receipt_id,
        "d": digest,
        "rc": int(result_code),
        "outcome": CALLBACK_PROCESSING,
        "now": now,
    })).first()
    return row is None


async def get_callback(
    db: AsyncSession, correlation_token: str, receipt_id: str
) -> Optional[Dict[str, Any]]:
    row = (await db.execute(text("""
        SELECT correlation_token, receipt_id, digest, result_code, outcome,
               order_id, processed_at
        FROM callback_records
        WHERE correlation_token=:t AND receipt_id=:r
    """), {"t": correlation_token, "r": receipt_id})).mappings().first()
    return dict(row) if row else None


async def finish_callback(
    db: AsyncSession,
    correlation_token: str,
    receipt_id: str,
    *,
    outcome: str,
    order_id: Optional[str],
) -> None:
    # only legal inside the transaction that inserted the record
    await db.execute(text("""
        UPDATE callback_records
        SET outcome=:outcome, order_id=:order_id
        WHERE correlation_token=:t AND receipt_id=:r
          AND outcome=:processing
    """), {
        "outcome": outcome,
        "order_id": order_id,
        "t": correlation_token,
        "r": receipt_id,
        "processing": CALLBACK_PROCESSING,
    })


# ------------------------------------------------------------------------------
# Conflicts (compensation queue)
# ------------------------------------------------------------------------------

async def record_conflict(
    db: AsyncSession,
    *,
    order_id: Optional[str],
    correlation_token: str,
    receipt_id: str,
    kind: str,
    detail: str,
    now: float,
) -> int:
    row = (await db.execute(text("""
        INSERT INTO reconciliation_conflicts(
            order_id, correlation_token, receipt_id, kind, detail,
            created_at)
        VALUES(:oid, :t, :r, :kind, :detail, :now)
        RETURNING id
    """), {
        "oid": order_id, "t": correlation_token, "r": receipt_id,
        "kind": kind, "detail": detail, "now": now,
    })).first()
    return int(row[0])


async def list_conflicts(
    db: AsyncSession, *, unresolved_only: bool = True, limit: int = 200
) -> List[Dict[str, Any]]:
    where = "WHERE resolved_at IS NULL" if unresolved_only else ""
    rows = (await db.execute(text(f"""
        SELECT id, order_id, correlation_token, receipt_id, kind, detail,
               created_at, resolved_at
        FROM reconciliation_conflicts
        {where}
        ORDER BY created_at DESC, id DESC
        LIMIT :lim
    """), {"lim": max(1, min(int(limit), 500))})).mappings().all()
    return [dict(r) for r in rows]


async def resolve_conflict(
    db: AsyncSession, conflict_id: int, *, now: float
) -> bool:
    row = (await db.execute(text("""
        UPDATE reconciliation_conflicts
        SET resolved_at=:now
        WHERE id=:id AND resolved_at IS NULL
        RETURNING id
    """), {"id": conflict_id, "now": now})).first()
    return row is not None
