"""
Reconciliation scheduling.

ReconciliationScheduler runs one evaluation cycle for one policy:
list certificates, evaluate expiry, dispatch notifications and compute
the next trigger. PolicyRunner schedules those cycles as APScheduler
jobs and applies backoff after failures.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from apscheduler.events import (
    EVENT_JOB_ERROR,
    EVENT_JOB_EXECUTED,
    EVENT_JOB_MAX_INSTANCES,
    JobEvent,
)
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.schedulers.base import BaseScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .certificates import CertificateSource
from .config_loader import NotificationPolicy
from .helpers import evaluate_expiry, select_certificates, format_expiration_status
from .logger import get_logger
from .notification import NotificationDispatcher, CycleCancelledError

DEFAULT_REQUEUE_AFTER = timedelta(hours=24)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SchedulerState(Enum):
    """State of a scheduler."""
    IDLE = "idle"
    EVALUATING = "evaluating"


@dataclass
class CycleResult:
    """Summary of one successful evaluation cycle."""
    policy: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    requeue_after: timedelta = DEFAULT_REQUEUE_AFTER
    certificates_discovered: int = 0
    evaluated: List[str] = field(default_factory=list)
    ignored: List[str] = field(default_factory=list)
    excluded: List[str] = field(default_factory=list)
    triggered: List[str] = field(default_factory=list)
    notified: Dict[str, List[str]] = field(default_factory=dict)

    @property
    def next_trigger_at(self) -> datetime:
        return (self.completed_at or self.started_at) + self.requeue_after

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "policy": self.policy,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "requeue_after_seconds": self.requeue_after.total_seconds(),
            "next_trigger_at": self.next_trigger_at.isoformat(),
            "certificates_discovered": self.certificates_discovered,
            "evaluated": self.evaluated,
            "ignored": self.ignored,
            "excluded": self.excluded,
            "triggered": self.triggered,
            "notified": self.notified,
        }


class ReconciliationScheduler:
    """
    Runs evaluation cycles for notification policies.

    Each cycle lists every certificate the source can observe, applies the
    policy's include/ignore lists, and dispatches notifications for each
    certificate within the expiry threshold, in listing order. A dispatch
    failure aborts the cycle and propagates; the caller decides when to
    retry. A successful cycle requests the next trigger after requeue_after.
    Nothing is remembered between cycles, so a certificate that is still
    expiring is notified again on every cycle.
    """

    def __init__(
        self,
        certificate_source: CertificateSource,
        dispatcher: NotificationDispatcher,
        clock: Optional[Callable[[], datetime]] = None,
        requeue_after: timedelta = DEFAULT_REQUEUE_AFTER,
    ):
        self.certificate_source = certificate_source
        self.dispatcher = dispatcher
        self.clock = clock or utc_now
        self.requeue_after = requeue_after
        self.state = SchedulerState.IDLE
        self.logger = get_logger()

    @staticmethod
    def _check_cancelled(cancel_event: Optional[threading.Event], where: str) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise CycleCancelledError(f"cycle cancelled {where}")

    def run_cycle(
        self,
        policy: NotificationPolicy,
        cancel_event: Optional[threading.Event] = None,
    ) -> CycleResult:
        """
        Run one evaluation cycle for a policy.

        Args:
            policy: Policy to evaluate
            cancel_event: Optional event checked between certificates

        Returns:
            CycleResult describing the cycle and the requested requeue delay

        Raises:
            CycleCancelledError: cancel_event was set during the cycle
            Exception: Any certificate listing, credential or transport error
        """
        self.state = SchedulerState.EVALUATING
        try:
            return self._run_cycle(policy, cancel_event)
        finally:
            self.state = SchedulerState.IDLE

    def _run_cycle(
        self,
        policy: NotificationPolicy,
        cancel_event: Optional[threading.Event],
    ) -> CycleResult:
        result = CycleResult(
            policy=policy.identity,
            started_at=self.clock(),
            requeue_after=self.requeue_after,
        )

        self.logger.subsection(f"Evaluating policy {policy.identity}")

        certificates = self.certificate_source.list_certificates()
        selection = select_certificates(
            certificates,
            include_list=policy.include_certificates,
            ignore_list=policy.ignore_certificates,
            name_extractor=lambda cert: cert.name,
        )
        result.certificates_discovered = selection.total_discovered
        result.ignored = selection.ignored
        result.excluded = selection.excluded

        self.logger.info(
            f"  Found {selection.total_discovered} certificate(s): "
            f"{len(selection.selected)} selected, {len(selection.ignored)} ignored, "
            f"{len(selection.excluded)} excluded"
        )

        for certificate in selection.selected:
            self._check_cancelled(cancel_event, f"before {certificate.identity}")

            now = self.clock()
            result.evaluated.append(certificate.identity)
            status = format_expiration_status(
                certificate.not_after, policy.expiry_threshold_days, now
            )

            if not evaluate_expiry(certificate.not_after, policy.expiry_threshold_days, now):
                self.logger.debug(f"    [{certificate.identity}] {status}")
                continue

            self.logger.info(f"    [{certificate.identity}] {status}")
            result.triggered.append(certificate.identity)

            try:
                dispatch = self.dispatcher.dispatch(policy, certificate, now, cancel_event)
            except CycleCancelledError:
                raise
            except Exception as e:
                self.logger.error(
                    f"  Cycle for policy {policy.identity} aborted at "
                    f"certificate {certificate.identity}: {e}"
                )
                raise

            result.notified[certificate.identity] = dispatch.channels_attempted

        result.completed_at = self.clock()
        self.logger.info(
            f"  Policy {policy.identity}: {len(result.triggered)} certificate(s) notified, "
            f"next evaluation at {result.next_trigger_at.isoformat()}"
        )
        return result


class ExponentialBackoff:
    """Retry delay that doubles after each consecutive failure, up to a maximum."""

    def __init__(self, initial: timedelta, maximum: timedelta):
        self.initial = initial
        self.maximum = maximum
        self.failures = 0

    def next_delay(self) -> timedelta:
        delay = self.initial * (2 ** self.failures)
        self.failures += 1
        return min(delay, self.maximum)

    def reset(self) -> None:
        self.failures = 0


@dataclass(eq=False)
class PolicyJob:
    """Per-policy state carried between runs of its scheduled job."""
    policy: NotificationPolicy
    scheduler: ReconciliationScheduler
    backoff: ExponentialBackoff
    cancel_event: threading.Event = field(default_factory=threading.Event)
    runs: int = 0
    last_error: Optional[Exception] = None

    @property
    def identity(self) -> str:
        return self.policy.identity


class PolicyRunner:
    """
    Runs each policy's cycles as an APScheduler job keyed by policy identity.

    Jobs use max_instances=1, so a policy never has two cycles in flight,
    even while a changed definition replaces a running one. A replacement
    skipped for that reason is run as soon as the running cycle releases
    its instance slot (EVENT_JOB_EXECUTED). Each run picks its own next run
    time: requeue_after after a successful cycle, the exponential backoff
    delay after a failed one. Different policies run concurrently on the
    scheduler's thread pool.
    """

    def __init__(
        self,
        scheduler_factory: Callable[[], ReconciliationScheduler],
        initial_backoff: timedelta = timedelta(seconds=60),
        max_backoff: timedelta = timedelta(hours=1),
        scheduler: Optional[BaseScheduler] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Args:
            scheduler_factory: Builds the ReconciliationScheduler for a new job
            initial_backoff: First retry delay after a failed cycle
            max_backoff: Upper bound for the retry delay
            scheduler: APScheduler instance (defaults to a UTC BackgroundScheduler)
            clock: Returns the current time; defaults to utc_now
        """
        self.scheduler_factory = scheduler_factory
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self.scheduler = scheduler or BackgroundScheduler(timezone=timezone.utc)
        self.clock = clock or utc_now
        self.jobs: Dict[str, PolicyJob] = {}
        self._running: Set[str] = set()
        self._deferred: Set[str] = set()
        self._lock = threading.Lock()
        self.logger = get_logger()
        self.scheduler.add_listener(
            self._on_job_event,
            EVENT_JOB_EXECUTED | EVENT_JOB_ERROR | EVENT_JOB_MAX_INSTANCES,
        )

    def start(self) -> None:
        self.scheduler.start()
        self.logger.info("Policy scheduler started")

    def sync(self, policies: List[NotificationPolicy]) -> None:
        """
        Reconcile scheduled jobs with the given policies.

        New policies get a job that runs immediately, removed policies have
        theirs removed and cancelled, and changed policies get their job
        replaced. A replaced or removed cycle that is still running is
        cancelled at its next checkpoint.
        """
        wanted = {policy.identity: policy for policy in policies}

        with self._lock:
            for identity in list(self.jobs):
                if identity not in wanted:
                    self.logger.info(f"Stopping evaluation of policy {identity}")
                    self.jobs.pop(identity).cancel_event.set()
                    try:
                        self.scheduler.remove_job(identity)
                    except JobLookupError:
                        self.logger.debug(f"Job for policy {identity} already removed")

            for identity, policy in wanted.items():
                current = self.jobs.get(identity)
                if current is not None:
                    if current.policy == policy:
                        continue
                    self.logger.info(f"Restarting evaluation of policy {identity} (definition changed)")
                    current.cancel_event.set()
                else:
                    self.logger.info(f"Starting evaluation of policy {identity}")

                job = PolicyJob(
                    policy=policy,
                    scheduler=self.scheduler_factory(),
                    backoff=ExponentialBackoff(self.initial_backoff, self.max_backoff),
                )
                self.jobs[identity] = job
                # Every run sets its own next_run_time; the interval only keeps
                # the job registered between runs.
                self.scheduler.add_job(
                    self._run_policy,
                    trigger=IntervalTrigger(
                        seconds=DEFAULT_REQUEUE_AFTER.total_seconds(),
                        timezone=timezone.utc,
                    ),
                    args=[job],
                    id=identity,
                    name=f"policy:{identity}",
                    max_instances=1,
                    coalesce=True,
                    misfire_grace_time=None,
                    replace_existing=True,
                    next_run_time=self.clock(),
                )

    def _run_policy(self, job: PolicyJob) -> None:
        with self._lock:
            self._running.add(job.identity)
        delay = None
        try:
            delay = self._run_cycle(job)
        finally:
            with self._lock:
                self._running.discard(job.identity)
                # A removed or replaced policy's job is no longer this run's to move
                if delay is not None and self.jobs.get(job.identity) is job:
                    self._modify_next_run(job.identity, self.clock() + delay)

    def _run_cycle(self, job: PolicyJob) -> Optional[timedelta]:
        job.runs += 1
        try:
            result = job.scheduler.run_cycle(job.policy, job.cancel_event)
        except CycleCancelledError:
            self.logger.info(f"Cycle for policy {job.identity} cancelled")
            return None
        except Exception as e:
            job.last_error = e
            delay = job.backoff.next_delay()
            self.logger.error(
                f"Cycle for policy {job.identity} failed: {e}; "
                f"retrying in {int(delay.total_seconds())}s"
            )
            return delay

        job.last_error = None
        job.backoff.reset()
        return result.requeue_after

    def _on_job_event(self, event: JobEvent) -> None:
        with self._lock:
            if self._should_run_now(event):
                self._modify_next_run(event.job_id, self.clock())

    def _should_run_now(self, event: JobEvent) -> bool:
        if event.job_id not in self.jobs:
            return False
        if event.code == EVENT_JOB_MAX_INSTANCES:
            if event.job_id in self._running:
                self.logger.info(
                    f"Policy {event.job_id} changed during a running cycle; "
                    f"new definition runs when it finishes"
                )
                self._deferred.add(event.job_id)
                return False
            # The previous run has returned but not yet released its slot
        elif event.job_id not in self._deferred:
            return False
        self._deferred.discard(event.job_id)
        return True

    def _modify_next_run(self, identity: str, next_run: datetime) -> None:
        try:
            self.scheduler.modify_job(identity, next_run_time=next_run)
        except JobLookupError:
            self.logger.debug(f"Job for policy {identity} no longer scheduled")

    def stop(self, wait: bool = True) -> None:
        """Cancel in-flight cycles and shut the scheduler down."""
        with self._lock:
            jobs = list(self.jobs.values())
            self.jobs.clear()
        for job in jobs:
            job.cancel_event.set()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)
        self.logger.info("Policy scheduler stopped")
