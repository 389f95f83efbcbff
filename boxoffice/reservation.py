# boxoffice/reservation.py
"""
Reservation engine.

A reservation is one transaction: claim `quantity` tickets and write the
order that owns them. Either both land or neither does, so a crash between
the two can never leave reserved tickets without an order.
"""

from __future__ import annotations
from typing import Optional

from loguru import logger

from .errors import (
    InsufficientInventoryError, InvalidQuantityError, OutOfStockError,
    QuantityExceedsLimitError,
)
from .helpers import new_order_id, now_ts
from .infra.sql import GatedStore
from .infra.timings import timeit
from .model import inventory, ledger
from .model.ledger import OrderRecord


async def reserve(
    store: GatedStore,
    *,
    buyer_id: str,
    category_id: str,
    quantity: int,
    max_per_order: Optional[int] = None,
    unit_price: int = 0,
    capacity: Optional[int] = None,
    now: Optional[float] = None,
) -> OrderRecord:
    if quantity < 1:
        raise InvalidQuantityError("quantity must be at least 1")
    if max_per_order is not None and quantity > max_per_order:
        raise QuantityExceedsLimitError(quantity, max_per_order)
    if capacity is not None and quantity > capacity:
        # can never be satisfied, no need to touch the store
        raise OutOfStockError(category_id, quantity)

    now = now_ts() if now is None else now
    order_id = new_order_id()

    try:
        async with timeit("reservation.reserve"):
            async with store.transaction() as db:
                async with timeit("inventory.claim"):
                    ticket_ids = await inventory.claim(
                        db, category_id, quantity, order_id=order_id, now=now
                    )
                async with timeit("ledger.create_order"):
                    order = await ledger.create_order(
                        db,
                        order_id=order_id,
                        buyer_id=buyer_id,
                        category_id=category_id,
                        quantity=quantity,
                        ticket_ids=ticket_ids,
                        amount=unit_price * quantity,
                        now=now,
                    )
    except InsufficientInventoryError as e:
        logger.bind(category_id=category_id, buyer_id=buyer_id).info(
            "reservation refused: {}", e
        )
        raise OutOfStockError(category_id, quantity) from e

    logger.bind(
        order_id=order.id, correlation_token=order.correlation_token
    ).info("reserved {} ticket(s) {}", quantity, ticket_ids)
    return order


async def reserve_for_category(
    store: GatedStore,
    *,
    buyer_id: str,
    category_id: str,
    quantity: int,
    default_max_per_order: Optional[int] = None,
) -> OrderRecord:
    """Look the category up and reserve with its per-order limit and price."""
    async with store.transaction() as db:
        category = await inventory.get_category(db, category_id)

    max_per_order = category.max_per_order
    if max_per_order is None:
        max_per_order = default_max_per_order
    return await reserve(
        store,
        buyer_id=buyer_id,
        category_id=category_id,
        quantity=quantity,
        max_per_order=max_per_order,
        unit_price=category.price,
        capacity=category.capacity,
    )
