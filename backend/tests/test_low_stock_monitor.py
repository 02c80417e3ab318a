"""Tests for the low-stock monitor."""

from decimal import Decimal

import pytest

from brewledger.core.alerting import AlertManager
from brewledger.models.low_stock_alert import StockStatus
from brewledger.services.low_stock_monitor import LowStockMonitor, classify
from brewledger.services.notification_service import AlertManagerNotifier
from brewledger.services.stock_ledger import StockLedger

from conftest import RecordingNotifier


class UnreachableNotifier(RecordingNotifier):
    def send_low_stock_batch(self, batch):
        raise ConnectionError("notification service unreachable")


@pytest.fixture
def monitor(db_session, notifier, cafe):
    return LowStockMonitor(db_session, notifier)


@pytest.fixture
def ledger(db_session, engine_config):
    return StockLedger(db_session, engine_config)


class TestClassify:
    @pytest.mark.parametrize("quantity,reorder_level,expected", [
        ("0", "10", StockStatus.CRITICAL),
        ("-1", "10", StockStatus.CRITICAL),
        ("0.001", "10", StockStatus.LOW),
        ("10", "10", StockStatus.LOW),
        ("10.001", "10", StockStatus.OK),
        ("5", "0", StockStatus.OK),
    ])
    def test_thresholds(self, quantity, reorder_level, expected):
        assert classify(Decimal(quantity), Decimal(reorder_level)) == expected


class TestSweep:
    def test_healthy_stock_sends_nothing(self, monitor, notifier, cafe):
        result = monitor.sweep()
        assert result.checked == len(cafe)
        assert result.transitions == 0
        assert notifier.low_stock_batches == []

    def test_alerts_once_per_transition(self, monitor, ledger, notifier, cafe):
        ledger.adjust(cafe["milk"].id, -1600)

        for _ in range(10):
            monitor.sweep()

        assert len(notifier.low_stock_batches) == 1
        item = notifier.low_stock_batches[0].items[0]
        assert item.ingredient_id == cafe["milk"].id
        assert item.status == "low"
        assert item.quantity == Decimal("400")

    def test_one_batch_per_pass(self, monitor, ledger, notifier, cafe):
        ledger.adjust(cafe["milk"].id, -1600)
        ledger.adjust(cafe["vanilla"].id, -500)

        monitor.sweep()

        assert len(notifier.low_stock_batches) == 1
        batch = notifier.low_stock_batches[0]
        assert batch.total_count == 2
        assert batch.critical_count == 1
        assert batch.low_stock_count == 1

    def test_recovery_then_relapse_alerts_again(self, monitor, ledger, notifier, cafe):
        ledger.adjust(cafe["milk"].id, -1600)
        monitor.sweep()

        ledger.adjust(cafe["milk"].id, 1000, reason="restock")
        result = monitor.sweep()
        assert result.recovered == 1
        assert len(notifier.low_stock_batches) == 1

        ledger.adjust(cafe["milk"].id, -1000)
        monitor.sweep()
        assert len(notifier.low_stock_batches) == 2

    def test_critical_to_low_alerts(self, monitor, ledger, notifier, cafe):
        ledger.adjust(cafe["vanilla"].id, -500)
        monitor.sweep()
        ledger.adjust(cafe["vanilla"].id, 50, reason="restock")
        monitor.sweep()

        statuses = [b.items[0].status for b in notifier.low_stock_batches]
        assert statuses == ["critical", "low"]

    def test_unavailable_ingredients_skipped(self, monitor, ledger, notifier, db_session, cafe):
        ledger.adjust(cafe["vanilla"].id, -500)
        cafe["vanilla"].is_available = False
        db_session.commit()

        monitor.sweep()

        assert notifier.low_stock_batches == []
        assert monitor.list_low_stock() == []

    def test_check_ingredients_limits_scope(self, monitor, ledger, notifier, cafe):
        ledger.adjust(cafe["milk"].id, -1600)
        ledger.adjust(cafe["vanilla"].id, -450)

        result = monitor.check_ingredients([cafe["milk"].id])

        assert result.checked == 1
        assert [i.ingredient_id for i in notifier.low_stock_batches[0].items] == [cafe["milk"].id]
        # Vanilla is still new to the monitor
        monitor.sweep()
        assert [i.ingredient_id for i in notifier.low_stock_batches[1].items] == [cafe["vanilla"].id]

    def test_failed_delivery_is_retried(self, db_session, ledger, notifier, cafe):
        ledger.adjust(cafe["milk"].id, -1600)

        with pytest.raises(ConnectionError):
            LowStockMonitor(db_session, UnreachableNotifier()).sweep()
        for _ in range(3):
            LowStockMonitor(db_session, notifier).sweep()

        assert len(notifier.low_stock_batches) == 1
        assert notifier.low_stock_batches[0].items[0].ingredient_id == cafe["milk"].id

    def test_check_nothing(self, monitor, notifier):
        assert monitor.check_ingredients([]).checked == 0


class TestListLowStock:
    def test_sees_changes_from_other_sessions(self, monitor, session_factory, engine_config, cafe):
        assert monitor.list_low_stock() == []
        with session_factory() as db:
            StockLedger(db, engine_config).adjust(cafe["milk"].id, -1600)

        items = monitor.list_low_stock()
        assert [i.ingredient_id for i in items] == [cafe["milk"].id]
        assert items[0].quantity == Decimal("400")
        assert items[0].status == "low"

    def test_lowest_first(self, monitor, ledger, cafe):
        ledger.adjust(cafe["milk"].id, -1600)
        ledger.adjust(cafe["vanilla"].id, -500)

        items = monitor.list_low_stock()

        assert [(i.ingredient_id, i.status) for i in items] == [
            (cafe["vanilla"].id, "critical"),
            (cafe["milk"].id, "low"),
        ]


class TestAlertManagerNotifier:
    def test_batch_becomes_admin_alert(self, db_session, ledger, cafe):
        manager = AlertManager()
        ledger.adjust(cafe["vanilla"].id, -500)

        LowStockMonitor(db_session, AlertManagerNotifier(manager)).sweep()

        alerts = manager.get_recent(source="inventory")
        assert len(alerts) == 1
        assert alerts[0]["level"] == "critical"
        assert "Vanilla Syrup" in alerts[0]["message"]
        payload = alerts[0]["data"]
        assert payload["criticalCount"] == 1
        assert payload["items"][0]["ingredientId"] == cafe["vanilla"].id
