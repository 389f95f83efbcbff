# boxoffice/reconciliation.py
"""
Reconciliation processor: applies a validated payment callback to the
order it references.

Everything happens in one transaction, starting with the insert of the
CallbackRecord. A replay of the same (correlation token, receipt id) finds
the record and returns the outcome stored the first time without touching
orders or tickets. If anything fails halfway, the record rolls back with the
rest, so a later redelivery is processed from scratch.

The order status CAS decides races with the expiry sweeper: whoever moves
the order out of `reserved` first wins, the loser sees a failed CAS.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import (
    IntegrityConflictError, LateConfirmationConflict, OrderNotFoundError,
)
from .gateway import NormalizedCallback
from .helpers import now_ts
from .infra.sql import GatedStore
from .infra.timings import timeit
from .model import inventory, ledger
from .model.db import O_EXPIRED, O_FAILED, O_PAID, O_RESERVED
from .model.ledger import OrderRecord

OUTCOME_PAID = "paid"
OUTCOME_FAILED = "failed"
OUTCOME_PAID_AFTER_RECLAIM = "paid_after_reclaim"
OUTCOME_ORDER_NOT_FOUND = "order_not_found"
OUTCOME_LATE_CONFIRMATION = "late_confirmation"
OUTCOME_DUPLICATE_PAYMENT = "duplicate_payment"
OUTCOME_STALE_FAILURE = "stale_failure"

# money moved but no ticket is backing it: needs a refund or a human
ESCALATED_OUTCOMES = frozenset({
    OUTCOME_LATE_CONFIRMATION, OUTCOME_DUPLICATE_PAYMENT,
})


@dataclass(frozen=True)
class ReconciliationResult:
    outcome: str
    order_id: Optional[str]
    order_status: Optional[str]
    replayed: bool = False
    conflict_id: Optional[int] = None

    @property
    def escalated(self) -> bool:
        return self.outcome in ESCALATED_OUTCOMES


async def apply(
    store: GatedStore,
    callback: NormalizedCallback,
    *,
    now: Optional[float] = None,
) -> ReconciliationResult:
    """
    Apply `callback` exactly once.

    Raises (after the transaction has committed, so the callback record and
    any conflict entry are durable):
      - OrderNotFoundError when no order carries the correlation token
      - LateConfirmationConflict when a successful payment cannot be matched
        to tickets (order expired and tickets gone, order already failed, or
        a second payment for an order that is already paid)
    Replays never raise; they return the stored outcome with replayed=True.
    """
    now = now_ts() if now is None else now
    log = logger.bind(correlation_token=callback.correlation_token,
                      receipt_id=callback.receipt_id)

    async with timeit("reconciliation.apply"):
        async with store.transaction() as db:
            result = await _apply_in_tx(db, callback, now)

    if result.replayed:
        log.info("callback replay ignored, outcome was {}", result.outcome)
        return result

    if result.outcome == OUTCOME_ORDER_NOT_FOUND:
        log.warning("callback for unknown order (result code {})",
                    callback.result_code)
        raise OrderNotFoundError(
            f"no order for token {callback.correlation_token}"
        )
    if result.escalated:
        log.bind(order_id=result.order_id,
                 conflict_id=result.conflict_id).error(
            "payment confirmed but not backed by tickets: {}",
            result.outcome,
        )
        raise LateConfirmationConflict(result.order_id or "-", result.outcome)
    if result.outcome == OUTCOME_STALE_FAILURE:
        log.bind(order_id=result.order_id).warning(
            "failure callback for terminal order ({})", result.order_status
        )
    elif result.outcome == OUTCOME_PAID_AFTER_RECLAIM:
        log.bind(order_id=result.order_id,
                 conflict_id=result.conflict_id).warning(
            "late payment after expiry, tickets taken back: order {} -> {}",
            result.order_id, result.order_status,
        )
    else:
        log.bind(order_id=result.order_id).info(
            "order {} -> {}", result.order_id, result.order_status
        )
    return result


async def _apply_in_tx(
    db: AsyncSession, callback: NormalizedCallback, now: float
) -> ReconciliationResult:
    token, receipt = callback.correlation_token, callback.receipt_id

    already = await ledger.record_callback(
        db, token, receipt, callback.raw_digest, callback.result_code,
        now=now,
    )
    if already:
        return await _replayed(db, callback)

    order = await ledger.find_order_by_token(db, token)
    if order is None:
        conflict_id = None
        if callback.succeeded:
            conflict_id = await ledger.record_conflict(
                db, order_id=None, correlation_token=token,
                receipt_id=receipt, kind=OUTCOME_ORDER_NOT_FOUND,
                detail="successful payment for unknown correlation token",
                now=now,
            )
        await ledger.finish_callback(db, token, receipt,
                                     outcome=OUTCOME_ORDER_NOT_FOUND,
                                     order_id=None)
        return ReconciliationResult(
            outcome=OUTCOME_ORDER_NOT_FOUND, order_id=None,
            order_status=None, conflict_id=conflict_id,
        )

    fields: Dict[str, Any] = {
        "receipt_id": receipt,
        "last_callback_digest": callback.raw_digest,
        "result_code": callback.result_code,
        "result_desc": callback.result_desc,
    }

    conflict_id = None
    if callback.succeeded:
        if await ledger.update_status(db, order.id, O_RESERVED, O_PAID,
                                      now=now, **fields):
            await _sell(db, order, now)
            outcome, status = OUTCOME_PAID, O_PAID
        else:
            outcome, status, conflict_id = await _late_success(
                db, order, callback, fields, now
            )
    else:
        if await ledger.update_status(db, order.id, O_RESERVED, O_FAILED,
                                      now=now, **fields):
            await inventory.release(db, order.ticket_ids, order_id=order.id)
            outcome, status = OUTCOME_FAILED, O_FAILED
        else:
            current = await ledger.get_order(db, order.id)
            conflict_id = await ledger.record_conflict(
                db, order_id=order.id, correlation_token=token,
                receipt_id=receipt, kind=OUTCOME_STALE_FAILURE,
                detail=f"failure callback on {current.status} order",
                now=now,
            )
            outcome, status = OUTCOME_STALE_FAILURE, current.status

    await ledger.finish_callback(db, token, receipt, outcome=outcome,
                                 order_id=order.id)
    return ReconciliationResult(
        outcome=outcome, order_id=order.id, order_status=status,
        conflict_id=conflict_id,
    )


async def _replayed(
    db: AsyncSession, callback: NormalizedCallback
) -> ReconciliationResult:
    prev = await ledger.get_callback(db, callback.correlation_token,
                                     callback.receipt_id)
    if prev is None:
        # the insert conflicted, so the row exists in this snapshot
        raise IntegrityConflictError("callback record vanished")
    if prev["digest"] != callback.raw_digest:
        logger.bind(correlation_token=callback.correlation_token,
                    receipt_id=callback.receipt_id).warning(
            "replayed callback with a different payload digest"
        )
    status = None
    if prev["order_id"]:
        status = (await ledger.get_order(db, prev["order_id"])).status
    return ReconciliationResult(
        outcome=prev["outcome"], order_id=prev["order_id"],
        order_status=status, replayed=True,
    )


async def _sell(db: AsyncSession, order: OrderRecord, now: float) -> None:
    sold = await inventory.mark_sold(db, order.ticket_ids, now=now,
                                     order_id=order.id)
    if sold != order.quantity or len(order.ticket_ids) != order.quantity:
        raise IntegrityConflictError(
            f"order {order.id}: sold {sold} of {order.quantity} tickets"
        )


async def _late_success(
    db: AsyncSession,
    order: OrderRecord,
    callback: NormalizedCallback,
    fields: Dict[str, Any],
    now: float,
) -> Tuple[str, str, Optional[int]]:
    """Success callback that lost the CAS: the order already left
    `reserved`. Never drops the payment on the floor, and every path
    leaves a conflict entry behind."""
    current = await ledger.get_order(db, order.id)

    if current.status == O_EXPIRED:
        taken = await inventory.reclaim_sold(
            db, current.ticket_ids, order_id=order.id, now=now
        )
        if taken and len(taken) == current.quantity:
            if not await ledger.update_status(db, order.id, O_EXPIRED,
                                              O_PAID, now=now, **fields):
                raise IntegrityConflictError(
                    f"order {order.id} changed while reclaiming tickets"
                )
            conflict_id = await ledger.record_conflict(
                db, order_id=order.id,
                correlation_token=callback.correlation_token,
                receipt_id=callback.receipt_id,
                kind=OUTCOME_PAID_AFTER_RECLAIM,
                detail=(f"payment confirmed after expiry; tickets "
                        f"{taken} taken back, order expired -> paid"),
                now=now,
            )
            return OUTCOME_PAID_AFTER_RECLAIM, O_PAID, conflict_id
        kind = OUTCOME_LATE_CONFIRMATION
        detail = (f"payment confirmed after expiry; tickets "
                  f"{current.ticket_ids} no longer available")
    elif current.status == O_FAILED:
        # failed is final: a payment after a failure callback goes to a human
        kind = OUTCOME_LATE_CONFIRMATION
        detail = (f"payment confirmed after order failed "
                  f"(result code {current.result_code})")
    elif current.status == O_PAID:
        kind = OUTCOME_DUPLICATE_PAYMENT
        detail = (f"second payment receipt {callback.receipt_id} for order "
                  f"paid with {current.receipt_id}")
    else:
        raise IntegrityConflictError(
            f"order {order.id} in unexpected status {current.status}"
        )

    conflict_id = await ledger.record_conflict(
        db, order_id=order.id, correlation_token=callback.correlation_token,
        receipt_id=callback.receipt_id, kind=kind, detail=detail, now=now,
    )
    return kind, current.status, conflict_id
