"""Concurrent deductions against a file-backed database."""

import threading
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

import pytest

from brewledger.core.exceptions import InsufficientStockError
from brewledger.db.session import make_session_factory
from brewledger.services.deduction_queue import DeductionQueue
from brewledger.services.recipe_resolver import RequiredIngredient
from brewledger.services.stock_ledger import StockLedger

from conftest import LATTE, RecordingNotifier, add_ingredient, add_order, add_recipe_row, quantity_of


@pytest.fixture
def file_factory(file_engine):
    return make_session_factory(file_engine)


@pytest.fixture
def milk(file_factory):
    """180 ml of milk; a latte uses 60 ml."""
    with file_factory() as db:
        milk = add_ingredient(db, "MILK", "Whole Milk", "ml", 180, reorder_level=50)
        add_recipe_row(db, LATTE, milk, actual=60)
        return milk.id


def run_together(count, fn):
    barrier = threading.Barrier(count)

    def task(i):
        barrier.wait()
        return fn(i)

    with ThreadPoolExecutor(max_workers=count) as pool:
        return list(pool.map(task, range(count)))


class TestLedgerConcurrency:
    def test_two_orders_race_for_the_last_milk(self, file_factory, engine_config, milk):
        def deduct(i):
            with file_factory() as db:
                try:
                    StockLedger(db, engine_config).apply_deduction(
                        f"order-{i}", [RequiredIngredient(milk, Decimal("120"), "ml")]
                    )
                    return "ok"
                except InsufficientStockError:
                    return "short"

        results = run_together(2, deduct)

        assert sorted(results) == ["ok", "short"]
        with file_factory() as db:
            assert quantity_of(db, milk) == Decimal("60")
            assert StockLedger(db, engine_config).reconcile() == []

    def test_same_order_applied_once(self, file_factory, engine_config, milk):
        def deduct(i):
            with file_factory() as db:
                return StockLedger(db, engine_config).apply_deduction(
                    "order-dup", [RequiredIngredient(milk, Decimal("60"), "ml")]
                ).already_applied

        results = run_together(4, deduct)

        assert results.count(False) == 1
        with file_factory() as db:
            assert quantity_of(db, milk) == Decimal("120")


class TestQueueConcurrency:
    def test_workers_never_oversell(self, file_factory, engine_config, milk):
        with file_factory() as db:
            for i in range(6):
                add_order(db, f"order-{i}", (LATTE, 1))
        notifier = RecordingNotifier()
        queue = DeductionQueue(file_factory, notifier=notifier, config=engine_config)
        for i in range(6):
            queue.enqueue(f"order-{i}")

        def drain(i):
            outcomes = []
            while True:
                outcome = queue.process_next(f"worker-{i}")
                if outcome is None:
                    return outcomes
                outcomes.append(outcome.status)

        statuses = [s for worker in run_together(4, drain) for s in worker]

        assert sorted(statuses) == ["completed"] * 3 + ["failed"] * 3
        counts = queue.get_status()["counts"]
        assert counts["completed"] == 3
        assert counts["failed"] == 3
        with file_factory() as db:
            assert quantity_of(db, milk) == Decimal("0")
            assert StockLedger(db, engine_config).reconcile() == []

    def test_two_latte_orders_share_the_last_milk(self, file_factory, engine_config, milk):
        with file_factory() as db:
            add_order(db, "order-a", (LATTE, 2))
            add_order(db, "order-b", (LATTE, 2))
        notifier = RecordingNotifier()
        queue = DeductionQueue(file_factory, notifier=notifier, config=engine_config)
        queue.enqueue("order-a")
        queue.enqueue("order-b")

        def drain(i):
            statuses = []
            while True:
                outcome = queue.process_next(f"worker-{i}")
                if outcome is None:
                    return statuses
                statuses.append(outcome.status)

        statuses = [s for worker in run_together(2, drain) for s in worker]

        assert sorted(statuses) == ["completed", "failed"]
        assert notifier.job_failures[0].error_code == "INSUFFICIENT_STOCK"
        with file_factory() as db:
            assert quantity_of(db, milk) == Decimal("60")
