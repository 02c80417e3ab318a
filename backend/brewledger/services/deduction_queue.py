"""Deduction Queue - durable, idempotent order-to-stock work queue.

One ``DeductionJob`` per order (``order_id`` is unique). Workers claim jobs
with a conditional UPDATE, so a job is only ever run by the worker that won
the claim, and a job abandoned in ``processing`` is reclaimed exactly once.

Outcomes of an attempt:
- success, or the ledger reports the order as already deducted -> completed
- permanent error (stock, recipe, unit conversion) -> failed + admin alert
- transient error -> pending again after exponential backoff, or
  dead_letter + admin alert once ``max_attempts`` is reached
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from brewledger.core.config import InventoryEngineSettings, settings
from brewledger.core.exceptions import InventoryEngineError, RecipeResolutionError, TransientDbError
from brewledger.db.session import is_sqlite
from brewledger.models.deduction_job import DeductionJob, JobStatus
from brewledger.models.order import OrderItem
from brewledger.schemas.notification import JobFailureAlert, StockClampedAlert
from brewledger.services.low_stock_monitor import LowStockMonitor
from brewledger.services.notification_service import Notifier, get_notifier
from brewledger.services.recipe_resolver import RecipeResolver
from brewledger.services.stock_ledger import DeductionResult, StockLedger

logger = logging.getLogger(__name__)

# Candidates inspected per claim attempt
CLAIM_BATCH_SIZE = 10
MAX_ERROR_LENGTH = 2000


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ProcessOutcome:
    order_id: str
    status: str
    attempts: int
    error: Optional[str] = None
    result: Optional[DeductionResult] = None


@dataclass
class CancelOutcome:
    order_id: str
    status: str
    reversed: bool = False


class DeductionQueue:
    """DB-backed queue of stock deductions.

    Every operation uses its own session from ``session_factory`` so the
    queue can be shared by worker threads.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        notifier: Optional[Notifier] = None,
        config: Optional[InventoryEngineSettings] = None,
    ):
        self.session_factory = session_factory
        self.notifier = notifier or get_notifier()
        self.config = config or settings.inventory

    def backoff_seconds(self, attempts: int) -> float:
        """Delay before the next attempt after ``attempts`` failed ones."""
        exponent = max(attempts - 1, 0)
        return min(self.config.backoff_base_seconds * (2 ** exponent), self.config.backoff_max_seconds)

    # ===== PRODUCERS =====

    def enqueue(self, order_id: str) -> DeductionJob:
        """Queue a deduction for an order. A second call returns the existing job."""
        order_id = str(order_id)
        with self.session_factory() as db:
            job = DeductionJob(
                order_id=order_id,
                status=JobStatus.PENDING.value,
                attempts=0,
                available_at=utcnow(),
            )
            db.add(job)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                existing = self._get(db, order_id)
                logger.info(
                    f"Deduction for order {order_id} already queued ({existing.status})",
                    extra={"order_id": order_id, "status": existing.status},
                )
                return existing

            db.refresh(job)
            logger.info(f"Queued stock deduction for order {order_id}", extra={"order_id": order_id})
            return job

    def cancel(self, order_id: str, wait_seconds: Optional[float] = None) -> CancelOutcome:
        """Cancel an order's deduction.

        A pending job becomes ``cancelled``. A job being processed is waited
        for and then re-evaluated; if the deduction completed, the stock is
        given back when ``auto_reverse_on_cancel`` is on. With no job at all a
        ``cancelled`` job is recorded so a late enqueue does nothing.
        """
        order_id = str(order_id)
        if wait_seconds is None:
            wait_seconds = self.config.cancel_wait_seconds
        deadline = time.monotonic() + wait_seconds

        while True:
            with self.session_factory() as db:
                job = self._get(db, order_id)

                if job is None:
                    db.add(DeductionJob(
                        order_id=order_id,
                        status=JobStatus.CANCELLED.value,
                        attempts=0,
                        last_error="Cancelled before it was queued",
                    ))
                    try:
                        db.commit()
                    except IntegrityError:
                        db.rollback()
                        continue
                    logger.info(f"Order {order_id} cancelled before queueing", extra={"order_id": order_id})
                    return CancelOutcome(order_id, JobStatus.CANCELLED.value)

                if job.status == JobStatus.PENDING.value:
                    if not self._transition(
                        db, job, JobStatus.CANCELLED, last_error="Cancelled by order lifecycle"
                    ):
                        continue
                    logger.info(f"Cancelled pending deduction for order {order_id}", extra={"order_id": order_id})
                    # A deduction can commit just before a transient failure
                    reversed_ = self._reverse_if_applied(db, order_id)
                    return CancelOutcome(order_id, JobStatus.CANCELLED.value, reversed_)

                if job.status == JobStatus.PROCESSING.value:
                    if time.monotonic() >= deadline:
                        raise TransientDbError(
                            f"Deduction for order {order_id} is still processing",
                            operation="cancel",
                        )
                else:
                    reversed_ = False
                    if job.status == JobStatus.COMPLETED.value:
                        reversed_ = self._reverse_if_applied(db, order_id)
                    return CancelOutcome(order_id, job.status, reversed_)

            time.sleep(self.config.cancel_poll_seconds)

    # ===== CONSUMERS =====

    def claim_next(self, worker_id: str) -> Optional[DeductionJob]:
        """Claim the oldest runnable job, or reclaim an abandoned one."""
        with self.session_factory() as db:
            now = utcnow()
            stale_before = now - timedelta(seconds=self.config.processing_timeout_seconds)
            query = (
                select(DeductionJob)
                .where(or_(
                    and_(
                        DeductionJob.status == JobStatus.PENDING.value,
                        or_(DeductionJob.available_at.is_(None), DeductionJob.available_at <= now),
                    ),
                    and_(
                        DeductionJob.status == JobStatus.PROCESSING.value,
                        DeductionJob.claimed_at < stale_before,
                    ),
                ))
                .order_by(DeductionJob.id)
                .limit(CLAIM_BATCH_SIZE)
            )
            if not is_sqlite(db.get_bind()):
                query = query.with_for_update(skip_locked=True)
            # Snapshot before any commit/rollback expires the rows
            candidates = [
                (job.id, job.order_id, job.status, job.attempts, job.claimed_by)
                for job in db.execute(query).scalars().all()
            ]

            for job_id, order_id, status, attempts, claimed_by in candidates:
                stale = status == JobStatus.PROCESSING.value
                if stale and attempts >= self.config.max_attempts:
                    if StockLedger(db, self.config).has_deduction(order_id):
                        # Worker died after its deduction committed
                        done = self._conditional_update(
                            db, job_id, status, attempts,
                            status=JobStatus.COMPLETED.value, last_error=None,
                            completed_at=now, updated_at=now,
                        )
                        if done:
                            logger.warning(
                                f"Completed abandoned deduction for order {order_id}, stock was already deducted",
                                extra={"order_id": order_id, "attempts": attempts},
                            )
                        continue
                    reason = f"Abandoned by {claimed_by} after {attempts} attempts"
                    dead = self._conditional_update(
                        db, job_id, status, attempts,
                        status=JobStatus.DEAD_LETTER.value, last_error=reason, updated_at=now,
                    )
                    if dead:
                        logger.error(
                            f"Dead-lettered abandoned deduction for order {order_id}",
                            extra={"order_id": order_id, "attempts": attempts},
                        )
                        self._notify(self.notifier.send_job_failure, JobFailureAlert(
                            order_id=order_id,
                            reason=reason,
                            status=JobStatus.DEAD_LETTER.value,
                            attempts=attempts,
                        ))
                    continue

                claimed = self._conditional_update(
                    db, job_id, status, attempts,
                    status=JobStatus.PROCESSING.value,
                    attempts=attempts + 1,
                    claimed_at=now,
                    claimed_by=worker_id,
                    updated_at=now,
                )
                if not claimed:
                    continue

                job = db.get(DeductionJob, job_id, populate_existing=True)
                if stale:
                    logger.warning(
                        f"{worker_id} reclaimed abandoned deduction for order {order_id}",
                        extra={"order_id": order_id, "attempts": job.attempts, "worker_id": worker_id},
                    )
                else:
                    logger.debug(
                        f"{worker_id} claimed deduction for order {order_id}",
                        extra={"order_id": order_id, "attempts": job.attempts, "worker_id": worker_id},
                    )
                return job

            db.rollback()
            return None

    def process_next(self, worker_id: str) -> Optional[ProcessOutcome]:
        """Claim and run one job. Returns None when nothing is runnable."""
        job = self.claim_next(worker_id)
        if job is None:
            return None
        return self.process(job, worker_id)

    def process(self, job: DeductionJob, worker_id: str) -> ProcessOutcome:
        """Run a claimed job to its next state."""
        order_id = job.order_id
        logger.info(
            f"Processing stock deduction for order {order_id} (attempt {job.attempts})",
            extra={"order_id": order_id, "attempts": job.attempts, "worker_id": worker_id},
        )

        with self.session_factory() as db:
            try:
                items = db.execute(
                    select(OrderItem).where(OrderItem.order_id == order_id).order_by(OrderItem.id)
                ).scalars().all()
                if not items:
                    raise RecipeResolutionError(f"Order {order_id} has no items")
                requirements = RecipeResolver(db, self.config).resolve_order(items)
                result = StockLedger(db, self.config).apply_deduction(order_id, requirements)
            except InventoryEngineError as e:
                db.rollback()
                if e.retryable:
                    return self._retry_or_dead_letter(db, job, e.message, e.error_code)
                return self._fail(db, job, e)
            except Exception as e:
                db.rollback()
                logger.exception(
                    f"Unexpected error deducting stock for order {order_id}",
                    extra={"order_id": order_id, "worker_id": worker_id},
                )
                return self._retry_or_dead_letter(db, job, f"{type(e).__name__}: {e}", None)

            if not self._transition(db, job, JobStatus.COMPLETED, last_error=None):
                logger.warning(
                    f"Deduction for order {order_id} applied but job was taken over",
                    extra={"order_id": order_id, "worker_id": worker_id},
                )
            else:
                logger.info(
                    f"Completed stock deduction for order {order_id}"
                    + (" (already applied)" if result.already_applied else ""),
                    extra={"order_id": order_id, "worker_id": worker_id},
                )

            for line in result.clamped_lines:
                self._notify(self.notifier.send_stock_clamped, StockClampedAlert(
                    order_id=order_id,
                    ingredient_id=line.ingredient_id,
                    name=line.name,
                    requested=line.requested,
                    deducted=line.deducted,
                    unit=line.unit,
                ))

            if result.lines:
                try:
                    LowStockMonitor(db, self.notifier).check_ingredients(result.ingredient_ids)
                except Exception:
                    db.rollback()
                    logger.exception(
                        f"Low-stock check after order {order_id} failed",
                        extra={"order_id": order_id},
                    )

            return ProcessOutcome(order_id, JobStatus.COMPLETED.value, job.attempts, result=result)

    # ===== ADMIN =====

    def get_job(self, order_id: str) -> Optional[DeductionJob]:
        with self.session_factory() as db:
            return self._get(db, str(order_id))

    def get_status(self, recent_limit: int = 20) -> Dict[str, Any]:
        """Job counts per status plus the most recently updated jobs."""
        with self.session_factory() as db:
            counts = {status.value: 0 for status in JobStatus}
            for status, count in db.execute(
                select(DeductionJob.status, func.count(DeductionJob.id)).group_by(DeductionJob.status)
            ).all():
                counts[status] = count
            recent = db.execute(
                select(DeductionJob)
                .order_by(DeductionJob.updated_at.desc(), DeductionJob.id.desc())
                .limit(recent_limit)
            ).scalars().all()
            return {"counts": counts, "total": sum(counts.values()), "recent": list(recent)}

    def retry_failed(self, include_dead_letter: bool = True, order_ids: Optional[List[str]] = None) -> int:
        """Reset failed (and dead-lettered) jobs to pending with a fresh attempt budget."""
        statuses = [JobStatus.FAILED.value]
        if include_dead_letter:
            statuses.append(JobStatus.DEAD_LETTER.value)
        now = utcnow()
        stmt = (
            update(DeductionJob)
            .where(DeductionJob.status.in_(statuses))
            .values(
                status=JobStatus.PENDING.value,
                attempts=0,
                available_at=now,
                claimed_at=None,
                claimed_by=None,
                last_error=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if order_ids is not None:
            stmt = stmt.where(DeductionJob.order_id.in_([str(o) for o in order_ids]))
        with self.session_factory() as db:
            count = db.execute(stmt).rowcount
            db.commit()
        logger.info(f"Reset {count} failed deduction jobs to pending", extra={"count": count})
        return count

    def cleanup_completed(self, days: Optional[int] = None) -> int:
        """Delete completed jobs older than ``days`` (default from settings)."""
        if days is None:
            days = self.config.completed_retention_days
        cutoff = utcnow() - timedelta(days=days)
        with self.session_factory() as db:
            count = db.execute(
                delete(DeductionJob)
                .where(
                    DeductionJob.status == JobStatus.COMPLETED.value,
                    DeductionJob.completed_at < cutoff,
                )
                .execution_options(synchronize_session=False)
            ).rowcount
            db.commit()
        logger.info(f"Removed {count} completed deduction jobs older than {days} days", extra={"count": count})
        return count

    # ===== HELPERS =====

    @staticmethod
    def _get(db: Session, order_id: str) -> Optional[DeductionJob]:
        return db.execute(
            select(DeductionJob)
            .where(DeductionJob.order_id == order_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    @staticmethod
    def _conditional_update(db: Session, job_id: int, expected_status: str, expected_attempts: int,
                            **values) -> bool:
        """UPDATE the job only if its status and attempt count are unchanged.

        ``attempts`` grows with every claim, so it works as a row version.
        Commits on success, rolls back otherwise.
        """
        changed = db.execute(
            update(DeductionJob)
            .where(
                DeductionJob.id == job_id,
                DeductionJob.status == expected_status,
                DeductionJob.attempts == expected_attempts,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        ).rowcount == 1
        if changed:
            db.commit()
        else:
            db.rollback()
        return changed

    def _transition(self, db: Session, job: DeductionJob, status: JobStatus, **values) -> bool:
        """Move ``job`` to ``status`` if nobody changed it since it was read."""
        now = utcnow()
        if status == JobStatus.COMPLETED:
            values["completed_at"] = now
        if values.get("last_error"):
            values["last_error"] = values["last_error"][:MAX_ERROR_LENGTH]
        changed = self._conditional_update(
            db, job.id, job.status, job.attempts, status=status.value, updated_at=now, **values
        )
        if changed:
            job.status = status.value
            for key, value in values.items():
                setattr(job, key, value)
        return changed

    def _fail(self, db: Session, job: DeductionJob, error: InventoryEngineError) -> ProcessOutcome:
        self._transition(db, job, JobStatus.FAILED, last_error=error.message)
        logger.error(
            f"Stock deduction for order {job.order_id} failed: {error.message}",
            extra={"order_id": job.order_id, "error_code": error.error_code, "attempts": job.attempts},
        )
        self._notify_failure(job, error.message, error.error_code)
        return ProcessOutcome(job.order_id, JobStatus.FAILED.value, job.attempts, error=error.message)

    def _retry_or_dead_letter(self, db: Session, job: DeductionJob, reason: str,
                              error_code: Optional[str]) -> ProcessOutcome:
        if job.attempts >= self.config.max_attempts:
            self._transition(db, job, JobStatus.DEAD_LETTER, last_error=reason)
            logger.error(
                f"Stock deduction for order {job.order_id} dead-lettered after {job.attempts} attempts: {reason}",
                extra={"order_id": job.order_id, "attempts": job.attempts},
            )
            self._notify_failure(job, reason, error_code)
            return ProcessOutcome(job.order_id, JobStatus.DEAD_LETTER.value, job.attempts, error=reason)

        delay = self.backoff_seconds(job.attempts)
        self._transition(
            db,
            job,
            JobStatus.PENDING,
            last_error=reason,
            available_at=utcnow() + timedelta(seconds=delay),
            claimed_at=None,
            claimed_by=None,
        )
        logger.warning(
            f"Stock deduction for order {job.order_id} will retry in {delay:.0f}s "
            f"(attempt {job.attempts}/{self.config.max_attempts}): {reason}",
            extra={"order_id": job.order_id, "attempts": job.attempts, "retry_in": delay},
        )
        return ProcessOutcome(job.order_id, JobStatus.PENDING.value, job.attempts, error=reason)

    def _reverse_if_applied(self, db: Session, order_id: str) -> bool:
        if not self.config.auto_reverse_on_cancel:
            return False
        ledger = StockLedger(db, self.config)
        if not ledger.has_deduction(order_id):
            return False
        result = ledger.reverse_deduction(order_id, note="Order cancelled")
        return bool(result.lines) or result.already_applied

    def _notify_failure(self, job: DeductionJob, reason: str, error_code: Optional[str]) -> None:
        self._notify(self.notifier.send_job_failure, JobFailureAlert(
            order_id=job.order_id,
            reason=reason,
            status=job.status,
            error_code=error_code,
            attempts=job.attempts,
        ))

    @staticmethod
    def _notify(send: Callable, payload) -> None:
        try:
            send(payload)
        except Exception:
            logger.exception(f"Notification {type(payload).__name__} could not be delivered")
