"""
Collections Job Module

Periodic passes over the loan book: overdue sweep with penalty accrual, EMI
reminders, due-today notices and the default check. Each pass is idempotent
and safe to re-run. Loans are processed concurrently on a thread pool while
work inside one loan is serialized by the loan's lock; a failing loan is
logged and reported without stopping the others.

Each loan's work runs as one unit of work with its events held back until
commit. A loan that overruns the per-loan timeout is reported as timed out,
its unit of work is rolled back instead of committed, and the job does not
wait for it.

The host owns scheduling: every pass is a plain callable taking an optional
as-of date.
"""

from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from datetime import date, timedelta
from threading import Lock
from typing import Callable, Dict, List, Optional, Tuple
import time
import uuid

from .config import EngineConfig, get_config
from .events import (
    EventDispatcher, EventPublisherMixin, DomainEvent,
    create_emi_reminder_event, create_loan_event
)
from .exceptions import LoanEngineError, LoanTaskTimeoutError
from .installments import InstallmentLifecycleManager
from .locking import LoanLockRegistry
from .logging_config import get_logger, log_action
from .models import Installment, InstallmentStatus, LoanStatus
from .repository import LoanRepository


logger = get_logger("emi_engine.collections")


class LoanTicket:
    """
    Commit permission for one loan task, shared between the task and the job

    The task calls checkpoint() between steps and once more right before it
    commits, holding the ticket lock through the commit. The job abandons a
    ticket when it stops waiting; an abandoned or expired ticket makes the
    next checkpoint raise LoanTaskTimeoutError.
    """

    def __init__(self, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        self.deadline: Optional[float] = None
        self.abandoned = False
        self.committed = False
        self.lock = Lock()

    def start(self) -> None:
        if self.deadline is None:
            self.deadline = time.monotonic() + self.timeout_seconds

    def checkpoint(self) -> None:
        expired = self.deadline is not None and time.monotonic() > self.deadline
        if self.abandoned or expired:
            raise LoanTaskTimeoutError(self.timeout_seconds)

    def abandon(self) -> bool:
        """Stop the task from committing; False if it already committed"""
        with self.lock:
            if self.committed:
                return False
            self.abandoned = True
            return True


# (installments or loans changed, events published)
LoanTask = Callable[[LoanTicket], Tuple[int, int]]


@dataclass
class JobResult:
    """Outcome of one collections pass"""
    job: str
    as_of: date
    correlation_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    processed: int = 0                  # Loans visited
    affected: int = 0                   # Installments or loans changed
    events: int = 0                     # Notification events published
    failures: Dict[str, str] = field(default_factory=dict)  # loan_id -> error

    @property
    def succeeded(self) -> bool:
        return not self.failures

    def to_dict(self) -> Dict:
        return {
            "job": self.job,
            "as_of": self.as_of.isoformat(),
            "correlation_id": self.correlation_id,
            "processed": self.processed,
            "affected": self.affected,
            "events": self.events,
            "failures": dict(self.failures)
        }


def _group_by_loan(installments: List[Installment]) -> Dict[str, List[str]]:
    grouped: Dict[str, List[str]] = {}
    for installment in installments:
        grouped.setdefault(installment.loan_id, []).append(installment.id)
    return grouped


class CollectionsJob(EventPublisherMixin):
    """
    Runs the daily collections passes across all loans
    """

    def __init__(
        self,
        repository: LoanRepository,
        lifecycle: InstallmentLifecycleManager,
        locks: Optional[LoanLockRegistry] = None,
        event_dispatcher: Optional[EventDispatcher] = None,
        config: Optional[EngineConfig] = None
    ):
        self.repository = repository
        self.lifecycle = lifecycle
        self.locks = locks or lifecycle.locks
        self.config = config or get_config()
        self.set_event_dispatcher(event_dispatcher)

    def run_overdue_sweep(self, as_of: Optional[date] = None) -> JobResult:
        """
        Mark every unpaid installment past its due date OVERDUE and accrue its penalty

        Running the sweep twice on the same day changes nothing the second time.
        """
        today = as_of or date.today()
        grouped = _group_by_loan(self.repository.find_overdue_installments(today))

        def sweep(installment_ids: List[str]) -> LoanTask:
            def task(ticket: LoanTicket):
                changed = 0
                for installment_id in installment_ids:
                    ticket.checkpoint()
                    if self.lifecycle.mark_overdue_with_penalty(installment_id, today):
                        changed += 1
                return changed, changed
            return task

        tasks = {loan_id: sweep(ids) for loan_id, ids in grouped.items()}
        return self._run("overdue_sweep", today, tasks)

    def run_reminder_pass(self, as_of: Optional[date] = None) -> JobResult:
        """
        Emit EMI reminders for PENDING installments due within the reminder window

        Read-only: no state changes.
        """
        today = as_of or date.today()
        window_end = today + timedelta(days=self.config.reminder_window_days)
        upcoming = [
            installment
            for installment in self.repository.find_due_in_range(today, window_end)
            if installment.status == InstallmentStatus.PENDING
        ]
        by_loan: Dict[str, List[Installment]] = {}
        for installment in upcoming:
            by_loan.setdefault(installment.loan_id, []).append(installment)

        def remind(installments: List[Installment]) -> LoanTask:
            def task(ticket: LoanTicket):
                for installment in installments:
                    ticket.checkpoint()
                    self.publish(create_emi_reminder_event(installment))
                return 0, len(installments)
            return task

        tasks = {loan_id: remind(items) for loan_id, items in by_loan.items()}
        return self._run("reminder_pass", today, tasks)

    def run_due_today_pass(self, as_of: Optional[date] = None) -> JobResult:
        """Move PENDING installments due today to DUE and emit due-today notices"""
        today = as_of or date.today()
        due_today = [
            installment
            for installment in self.repository.find_due_in_range(today, today)
            if installment.status == InstallmentStatus.PENDING
        ]
        grouped = _group_by_loan(due_today)

        def mark(installment_ids: List[str]) -> LoanTask:
            def task(ticket: LoanTicket):
                changed = 0
                for installment_id in installment_ids:
                    ticket.checkpoint()
                    if self.lifecycle.mark_due(installment_id, today):
                        changed += 1
                return changed, changed
            return task

        tasks = {loan_id: mark(ids) for loan_id, ids in grouped.items()}
        return self._run("due_today_pass", today, tasks)

    def run_default_check(self, as_of: Optional[date] = None) -> JobResult:
        """
        Move ACTIVE loans with an installment overdue beyond the default
        threshold to DEFAULTED

        A defaulted loan is never moved back by this check.
        """
        today = as_of or date.today()
        cutoff = today - timedelta(days=self.config.default_threshold_days)
        candidates = _group_by_loan(self.repository.find_overdue_installments(cutoff))

        def check(loan_id: str) -> LoanTask:
            def task(ticket: LoanTicket):
                with self.locks.hold(loan_id):
                    loan = self.repository.load_loan(loan_id)
                    if loan is None or loan.status != LoanStatus.ACTIVE:
                        return 0, 0

                    seriously_overdue = [
                        installment
                        for installment in self.repository.load_installments(loan_id)
                        if not installment.is_settled and installment.due_date < cutoff
                    ]
                    if not seriously_overdue:
                        return 0, 0

                    loan.status = LoanStatus.DEFAULTED
                    loan.touch()
                    with self.repository.atomic():
                        self.repository.save_loan(loan)

                oldest = seriously_overdue[0]
                log_action(
                    logger, "warning",
                    f"Loan {loan_id} defaulted: installment {oldest.installment_number} "
                    f"overdue by {oldest.days_overdue(today)} days",
                    action="loan.default",
                    resource=f"loan:{loan_id}",
                    loan_id=loan_id,
                    extra={"days_overdue": oldest.days_overdue(today)}
                )
                self.publish(create_loan_event(
                    DomainEvent.LOAN_DEFAULTED,
                    loan,
                    days_overdue=oldest.days_overdue(today)
                ))
                return 1, 1
            return task

        tasks = {loan_id: check(loan_id) for loan_id in candidates}
        return self._run("default_check", today, tasks)

    def run_daily_tasks(self, as_of: Optional[date] = None) -> Dict[str, JobResult]:
        """Run every daily pass in order for the same as-of date"""
        today = as_of or date.today()
        logger.info(f"Running daily collections tasks for {today.isoformat()}")
        results = {}
        for result in (
            self.run_overdue_sweep(today),
            self.run_reminder_pass(today),
            self.run_due_today_pass(today),
            self.run_default_check(today),
        ):
            results[result.job] = result
        return results

    def _run(self, job: str, as_of: date, tasks: Dict[str, LoanTask]) -> JobResult:
        result = JobResult(job=job, as_of=as_of)
        if not tasks:
            logger.debug(f"{job}: nothing to do for {as_of.isoformat()}")
            return result

        timeout = self.config.collections_loan_timeout_seconds
        tickets = {loan_id: LoanTicket(timeout) for loan_id in tasks}
        abandoned = False

        executor = ThreadPoolExecutor(
            max_workers=max(1, self.config.collections_max_workers),
            thread_name_prefix=f"emi-{job}"
        )
        try:
            futures = {
                loan_id: executor.submit(self._run_loan, loan_id, task, tickets[loan_id])
                for loan_id, task in tasks.items()
            }
            for loan_id, future in futures.items():
                try:
                    try:
                        affected, events = future.result(timeout=timeout)
                    except FutureTimeoutError:
                        if tickets[loan_id].abandon():
                            future.cancel()
                            abandoned = True
                            raise LoanTaskTimeoutError(timeout)
                        # Committed just before the deadline
                        affected, events = future.result()
                except LoanTaskTimeoutError as e:
                    result.failures[loan_id] = str(e)
                    logger.error(f"{job}: loan {loan_id} {e}, nothing committed")
                except Exception as e:
                    result.failures[loan_id] = f"{type(e).__name__}: {e}"
                    logger.error(f"{job}: loan {loan_id} failed: {e}")
                else:
                    result.affected += affected
                    result.events += events
                result.processed += 1
        finally:
            # Abandoned tasks roll back on their own
            executor.shutdown(wait=not abandoned, cancel_futures=True)

        log_action(
            logger, "error" if result.failures else "info",
            f"{job} finished: {result.processed} loans, {result.affected} changed, "
            f"{len(result.failures)} failed",
            action=f"collections.{job}",
            correlation_id=result.correlation_id,
            extra=result.to_dict()
        )
        return result

    def _run_loan(self, loan_id: str, task: LoanTask, ticket: LoanTicket) -> Tuple[int, int]:
        ticket.start()
        attempts = max(0, self.config.collections_max_retries) + 1
        for attempt in range(1, attempts + 1):
            try:
                ticket.checkpoint()
                with self.locks.hold(loan_id), self.deferred_events(), self.lifecycle.deferred_events():
                    self.repository.begin_transaction()
                    try:
                        outcome = task(ticket)
                        with ticket.lock:
                            ticket.checkpoint()
                            self.repository.commit()
                            ticket.committed = True
                    except Exception:
                        self.repository.rollback()
                        raise
                return outcome
            except LoanEngineError:
                # Never retried
                raise
            except Exception as e:
                if attempt == attempts:
                    raise
                logger.warning(
                    f"Transient failure on loan {loan_id} (attempt {attempt}/{attempts}): {e}"
                )
