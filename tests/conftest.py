from contextlib import asynccontextmanager
from dataclasses import dataclass

import pytest
from sqlalchemy.exc import OperationalError

from boxoffice.config import Settings
from boxoffice.gateway import NormalizedCallback
from boxoffice.helpers import now_ts, sha256_hex
from boxoffice.infra import timings
from boxoffice.infra.sql import GatedStore, make_async_engine
from boxoffice.model import inventory
from boxoffice.model.db import create_schema


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite:///{tmp_path / 'boxoffice.db'}"


@pytest.fixture
def settings(db_url):
    return Settings(
        database_url=db_url,
        sweep_interval_seconds=0,
        reservation_ttl_seconds=300,
        log_level="WARNING",
    )


@pytest.fixture
async def store(db_url):
    engine, SessionAsync, gated = make_async_engine(db_url)
    async with engine.begin() as conn:
        await create_schema(conn)
    yield GatedStore(sessions=SessionAsync, gated=gated)
    await engine.dispose()


@pytest.fixture(autouse=True)
def _clean_timings():
    timings.reset()
    yield
    timings.reset()


async def add_category(store, category_id="regular", *, capacity=10,
                       price=1000, max_per_order=None):
    async with store.transaction() as db:
        return await inventory.create_category(
            db,
            category_id=category_id,
            name=category_id.title(),
            price=price,
            capacity=capacity,
            max_per_order=max_per_order,
            now=now_ts(),
        )


async def stats(store, category_id="regular"):
    async with store.transaction() as db:
        return await inventory.inventory_stats(db, category_id)


def callback(token, receipt="RCP0000001", code=0, desc="ok"):
    return NormalizedCallback(
        correlation_token=token,
        receipt_id=receipt,
        result_code=code,
        result_desc=desc,
        raw_digest=sha256_hex(f"{token}:{receipt}:{code}".encode()),
    )


class _FailingSession:
    """Session proxy whose n-th execute() fails like a dropped connection."""

    def __init__(self, db, fail_on_call):
        self._db = db
        self._left = fail_on_call

    def __getattr__(self, name):
        return getattr(self._db, name)

    async def execute(self, *args, **kwargs):
        self._left -= 1
        if self._left == 0:
            raise OperationalError(
                "execute", {}, ConnectionError("connection reset by peer")
            )
        return await self._db.execute(*args, **kwargs)


@dataclass
class BrokenStore:
    """Wraps a real store; every transaction loses its connection on the
    `fail_on_call`-th statement."""
    inner: GatedStore
    fail_on_call: int = 1

    @asynccontextmanager
    async def transaction(self):
        async with self.inner.transaction() as db:
            yield _FailingSession(db, self.fail_on_call)
