import asyncio

import pytest

from boxoffice import reservation
from boxoffice.errors import (
    CategoryNotFoundError, InvalidQuantityError, OutOfStockError,
    QuantityExceedsLimitError, StoreUnavailableError,
)
from boxoffice.infra.timings import aggregates
from boxoffice.model import ledger

from conftest import BrokenStore, add_category, stats


async def test_reserve_creates_order_with_exact_quantity(store):
    await add_category(store, capacity=10, price=1500)
    order = await reservation.reserve_for_category(
        store, buyer_id="b1", category_id="regular", quantity=3,
    )
    assert order.status == "reserved"
    assert order.amount == 4500
    assert len(order.ticket_ids) == 3

    async with store.transaction() as db:
        assert await ledger.order_ticket_ids(db, order.id) == order.ticket_ids
    s = await stats(store)
    assert (s["available"], s["reserved"]) == (7, 3)
    assert "reservation.reserve" in {a["kind"] for a in aggregates()}


async def test_concurrent_reservations_never_oversell(store):
    await add_category(store, capacity=5)

    async def attempt(n):
        try:
            return await reservation.reserve(
                store, buyer_id=f"b{n}", category_id="regular", quantity=1,
            )
        except OutOfStockError:
            return None

    results = await asyncio.gather(*(attempt(n) for n in range(20)))
    won = [r for r in results if r is not None]
    assert len(won) == 5

    ticket_ids = [t for r in won for t in r.ticket_ids]
    assert len(set(ticket_ids)) == 5

    s = await stats(store)
    assert (s["available"], s["reserved"]) == (0, 5)
    assert s["sold_out"] is True


async def test_concurrent_multi_ticket_reservations(store):
    await add_category(store, capacity=7)

    async def attempt(n):
        try:
            return await reservation.reserve(
                store, buyer_id=f"b{n}", category_id="regular", quantity=3,
            )
        except OutOfStockError:
            return None

    won = [r for r in await asyncio.gather(*(attempt(n) for n in range(6)))
           if r is not None]
    # 3 + 3 fit, a third order of 3 would need 9
    assert len(won) == 2
    s = await stats(store)
    assert (s["available"], s["reserved"]) == (1, 6)


async def test_out_of_stock_leaves_inventory_untouched(store):
    await add_category(store, capacity=2)
    with pytest.raises(OutOfStockError):
        await reservation.reserve(store, buyer_id="b1",
                                  category_id="regular", quantity=3)
    s = await stats(store)
    assert (s["available"], s["reserved"]) == (2, 0)


@pytest.mark.parametrize("quantity", [0, -1])
async def test_invalid_quantity(store, quantity):
    await add_category(store)
    with pytest.raises(InvalidQuantityError):
        await reservation.reserve(store, buyer_id="b1",
                                  category_id="regular", quantity=quantity)


async def test_category_limit_applies(store):
    await add_category(store, max_per_order=2)
    with pytest.raises(QuantityExceedsLimitError) as exc:
        await reservation.reserve_for_category(
            store, buyer_id="b1", category_id="regular", quantity=3,
        )
    assert exc.value.limit == 2
    assert (await stats(store))["reserved"] == 0


async def test_default_limit_used_when_category_has_none(store):
    await add_category(store)
    with pytest.raises(QuantityExceedsLimitError):
        await reservation.reserve_for_category(
            store, buyer_id="b1", category_id="regular", quantity=5,
            default_max_per_order=4,
        )


async def test_unknown_category(store):
    with pytest.raises(CategoryNotFoundError):
        await reservation.reserve_for_category(
            store, buyer_id="b1", category_id="vip", quantity=1,
        )


async def test_quantity_beyond_capacity_is_out_of_stock(store):
    await add_category(store, capacity=5)
    with pytest.raises(OutOfStockError):
        await reservation.reserve_for_category(
            store, buyer_id="b1", category_id="regular", quantity=6,
        )
    # no capacity hint: the store refuses before binding the number
    with pytest.raises(OutOfStockError):
        await reservation.reserve(
            store, buyer_id="b1", category_id="regular", quantity=10**20,
        )
    s = await stats(store)
    assert (s["available"], s["reserved"]) == (5, 0)


async def test_lost_connection_rolls_back_claim(store):
    await add_category(store, capacity=5)
    # claim goes through, writing the order loses the connection
    with pytest.raises(StoreUnavailableError) as exc:
        await reservation.reserve(
            BrokenStore(store, fail_on_call=2), buyer_id="b1",
            category_id="regular", quantity=2,
        )
    assert exc.value.retryable
    s = await stats(store)
    assert (s["available"], s["reserved"]) == (5, 0)
