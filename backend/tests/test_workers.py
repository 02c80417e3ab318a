"""Tests for the deduction worker runtime."""

import asyncio
from decimal import Decimal

import pytest

from brewledger.db.session import make_session_factory
from brewledger.services.deduction_queue import DeductionQueue
from brewledger.services.deduction_workers import DeductionWorkerManager
from brewledger.services.stock_ledger import StockLedger

from conftest import LATTE, add_order, quantity_of, seed_cafe


@pytest.fixture
def file_factory(file_engine):
    return make_session_factory(file_engine)


@pytest.fixture
def file_cafe(file_factory):
    with file_factory() as db:
        return {name: ingredient.id for name, ingredient in seed_cafe(db).items()}


async def wait_for(predicate, timeout=5.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.02)


class TestDeductionWorkerManager:
    def test_start_and_stop(self, file_factory, notifier, engine_config, file_cafe):
        manager = DeductionWorkerManager(engine_config)

        async def scenario():
            await manager.start(file_factory, notifier)
            stats = manager.get_stats()
            await manager.stop()
            return stats

        stats = asyncio.run(scenario())

        assert stats["running"] is True
        assert stats["active_workers"] == 2
        assert manager.get_stats()["running"] is False
        assert manager.workers == []

    def test_workers_drain_the_queue(self, file_factory, notifier, engine_config, file_cafe):
        with file_factory() as db:
            add_order(db, "W-1", (LATTE, 1))
            add_order(db, "W-2", (LATTE, 1))
        queue = DeductionQueue(file_factory, notifier=notifier, config=engine_config)
        queue.enqueue("W-1")
        queue.enqueue("W-2")
        manager = DeductionWorkerManager(engine_config)

        async def scenario():
            await manager.start(file_factory, notifier)
            await wait_for(lambda: manager.stats["jobs_completed"] == 2)
            await manager.stop()

        asyncio.run(scenario())

        assert queue.get_status()["counts"]["completed"] == 2
        with file_factory() as db:
            assert quantity_of(db, file_cafe["milk"]) == Decimal("1600")

    def test_sweep_timer_alerts_once(self, file_factory, notifier, engine_config, file_cafe):
        with file_factory() as db:
            StockLedger(db, engine_config).adjust(file_cafe["vanilla"], -500)
        manager = DeductionWorkerManager(engine_config)

        async def scenario():
            await manager.start(file_factory, notifier)
            await wait_for(lambda: manager.stats["sweeps"] >= 3)
            await manager.stop()

        asyncio.run(scenario())

        assert len(notifier.low_stock_batches) == 1
        assert manager.stats["low_stock_alerts"] == 1
        assert manager.get_stats()["last_sweep_at"] is not None

    def test_run_sweep(self, session_factory, notifier, engine_config, db_session, cafe):
        StockLedger(db_session, engine_config).adjust(cafe["milk"].id, -1600)
        manager = DeductionWorkerManager(engine_config)
        manager.session_factory = session_factory
        manager.notifier = notifier

        result = asyncio.run(manager.run_sweep())

        assert result.transitions == 1
        assert manager.stats["sweeps"] == 1
