"""Notification Service adapter.

The engine talks to the outside world only through a ``Notifier``. The
default ``AlertManagerNotifier`` forwards to the in-process alert buffer,
which logs every alert and backs the ops endpoints.
"""

from brewledger.core.alerting import AlertManager, alert_manager
from brewledger.schemas.notification import JobFailureAlert, LowStockBatch, StockClampedAlert


class Notifier:
    """Interface of the Notification Service collaborator."""

    def send_low_stock_batch(self, batch: LowStockBatch) -> None:
        raise NotImplementedError

    def send_job_failure(self, alert: JobFailureAlert) -> None:
        raise NotImplementedError

    def send_stock_clamped(self, alert: StockClampedAlert) -> None:
        raise NotImplementedError


class AlertManagerNotifier(Notifier):
    """Publishes engine notifications on the admin alert channel."""

    SOURCE = "inventory"

    def __init__(self, manager: AlertManager = alert_manager):
        self.manager = manager

    def send_low_stock_batch(self, batch: LowStockBatch) -> None:
        level = "critical" if batch.critical_count else "warning"
        names = ", ".join(item.name for item in batch.items[:5])
        if batch.total_count > 5:
            names += f" and {batch.total_count - 5} more"
        self.manager.alert(
            level,
            "Low stock",
            f"{batch.critical_count} out of stock, {batch.low_stock_count} low: {names}",
            source=self.SOURCE,
            data=batch.to_payload(),
        )

    def send_job_failure(self, alert: JobFailureAlert) -> None:
        self.manager.alert(
            "critical" if alert.status == "dead_letter" else "warning",
            f"Stock deduction {alert.status}",
            f"Order {alert.order_id}: {alert.reason}",
            source=self.SOURCE,
            data=alert.to_payload(),
        )

    def send_stock_clamped(self, alert: StockClampedAlert) -> None:
        self.manager.alert(
            "critical",
            "Stock clamped at zero",
            f"Order {alert.order_id} needed {alert.requested} {alert.unit} of {alert.name}, "
            f"only {alert.deducted} {alert.unit} was deducted",
            source=self.SOURCE,
            data=alert.to_payload(),
        )


def get_notifier() -> Notifier:
    return AlertManagerNotifier()
