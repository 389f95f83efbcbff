# boxoffice/sweeper.py
from __future__ import annotations
import asyncio
from dataclasses import dataclass, field
from typing import List, Optional

from loguru import logger

from .errors import BoxOfficeError
from .helpers import now_ts
from .infra.sql import GatedStore
from .infra.timings import timeit
from .model import inventory, ledger
from .model.db import O_EXPIRED, O_RESERVED


@dataclass
class SweepReport:
    candidates: int = 0
    expired: List[str] = field(default_factory=list)
    released_tickets: int = 0
    lost_races: int = 0


async def sweep(
    store: GatedStore,
    *,
    now: Optional[float] = None,
    timeout: float,
    batch_size: int = 500,
) -> SweepReport:
    """Expire reservations older than `timeout` seconds and put their
    tickets back on sale. One transaction per order; the candidate list is
    a plain read and may be stale, the CAS inside each transaction is what
    counts."""
    now = now_ts() if now is None else now
    report = SweepReport()

    async with timeit("sweeper.sweep"):
        async with store.transaction() as db:
            candidates = await ledger.list_expirable(
                db, now=now, timeout=timeout, limit=batch_size
            )
        report.candidates = len(candidates)

        for order_id in candidates:
            async with store.transaction() as db:
                if not await ledger.update_status(
                    db, order_id, O_RESERVED, O_EXPIRED, now=now
                ):
                    # a callback got there first
                    report.lost_races += 1
                    continue
                ticket_ids = await ledger.order_ticket_ids(db, order_id)
                released = await inventory.release(
                    db, ticket_ids, order_id=order_id
                )
            report.expired.append(order_id)
            report.released_tickets += released

    if report.expired or report.lost_races:
        logger.info(
            "sweep: {} expired, {} tickets released, {} lost races",
            len(report.expired), report.released_tickets, report.lost_races,
        )
    return report


async def run_sweeper(
    store: GatedStore,
    *,
    interval: float,
    timeout: float,
    batch_size: int = 500,
) -> None:
    logger.info("expiry sweeper running every {}s (timeout {}s)",
                interval, timeout)
    while True:
        try:
            await sweep(store, timeout=timeout, batch_size=batch_size)
        except BoxOfficeError as e:
            logger.warning("sweep pass failed: {}", e)
        except Exception:
            logger.exception("sweep pass crashed")
        await asyncio.sleep(interval)
