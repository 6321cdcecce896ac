#!/usr/bin/env python3
"""
Per-subscription fetch scheduler.

This module keeps one cron-driven job per subscription that has auto-fetch
enabled, a cron expression and an enabled subscription whose status is
active or error (errored subscriptions keep retrying). Jobs run on an
APScheduler ``AsyncIOScheduler`` and call the fetch orchestrator, which
re-reads the subscription's config at fire time. It supports:

- Dynamic add/replace/remove of jobs at runtime (``update_task_schedule``)
- Standard 5-field cron expressions, plus a leading seconds field (6 fields)
- A per-subscription in-flight guard that skips overlapping ticks
- Periodic reconciliation against the database for changes made elsewhere
- Status reporting and logging
"""

import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from config import config, get_logger
from errors import FeedIngestError, ValidationError
from models import DatabaseQueue
from telemetry import init_telemetry, get_tracer, trace_span

# Module-specific logger
logger = get_logger("scheduler")

# Initialize telemetry for the scheduler subsystem
init_telemetry("feed-ingestor-scheduler")
_tracer = get_tracer("scheduler")

RESYNC_JOB_ID = "scheduler-resync"

_CRON_WEEKDAYS = ("sun", "mon", "tue", "wed", "thu", "fri", "sat")


def job_id_for(subscription_id: int) -> str:
    return f"subscription-{subscription_id}"


def _weekday_index(token: str) -> int:
    token = token.strip().lower()
    if token.isdigit():
        value = int(token)
        if not 0 <= value <= 7:
            raise ValueError(f"day of week out of range: {token}")
        return value
    if token[:3] in _CRON_WEEKDAYS:
        return _CRON_WEEKDAYS.index(token[:3])
    raise ValueError(f"invalid day of week: {token}")


def _translate_day_of_week(value: str) -> str:
    """Convert a cron day-of-week field (0 or 7 = Sunday) to weekday names.

    APScheduler numbers weekdays from Monday, so numeric cron values cannot
    be passed through unchanged.
    """
    if value in ("*", "?"):
        return "*"
    names: List[str] = []
    for part in value.split(","):
        base, _, step = part.partition("/")
        step_size = int(step) if step else 1
        if base in ("*", "?"):
            start, end = 0, 6
        elif "-" in base:
            low, high = base.split("-", 1)
            start, end = _weekday_index(low), _weekday_index(high)
        else:
            start = _weekday_index(base)
            end = 6 if step else start
        if step_size < 1 or start > end:
            raise ValueError(f"invalid day of week: {part}")
        for index in range(start, end + 1, step_size):
            if _CRON_WEEKDAYS[index % 7] not in names:
                names.append(_CRON_WEEKDAYS[index % 7])
    return ",".join(names)


def build_cron_trigger(expression: Optional[str], tz) -> CronTrigger:
    """Parse a cron expression into an APScheduler trigger.

    Accepts ``minute hour day month day_of_week`` or, with a leading seconds
    field, ``second minute hour day month day_of_week``.

    Raises:
        ValidationError: If the expression is empty or malformed.
    """
    if not expression or not str(expression).strip():
        raise ValidationError("Cron expression is required")
    parts = str(expression).split()
    if len(parts) == 5:
        second = "0"
        minute, hour, day, month, day_of_week = parts
    elif len(parts) == 6:
        second, minute, hour, day, month, day_of_week = parts
    else:
        raise ValidationError(f"Invalid cron expression '{expression}': expected 5 or 6 fields, got {len(parts)}")
    try:
        return CronTrigger(
            second=second,
            minute=minute,
            hour=hour,
            day=day,
            month=month,
            day_of_week=_translate_day_of_week(day_of_week),
            timezone=tz,
        )
    except ValueError as e:
        raise ValidationError(f"Invalid cron expression '{expression}': {e}") from e


@dataclass
class ScheduledJob:
    """A live entry in the scheduler's job table."""

    id: str
    subscription_id: int
    cron_expression: str
    last_run: Optional[datetime] = None
    next_run: Optional[datetime] = None
    trigger: Optional[CronTrigger] = field(default=None, repr=False, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "subscription_id": self.subscription_id,
            "cron_expression": self.cron_expression,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "next_run": self.next_run.isoformat() if self.next_run else None,
        }


class SubscriptionScheduler:
    """Owns the periodic fetch jobs, one per schedulable subscription."""

    def __init__(self, db: DatabaseQueue, fetcher, timezone_name: Optional[str] = None,
                 resync_minutes: Optional[int] = None):
        """Initialize the scheduler.

        Args:
            db: Storage used to load subscriptions and configs
            fetcher: Fetch orchestrator (``FeedFetcher``) invoked on each tick
            timezone_name: IANA timezone cron expressions are evaluated in
            resync_minutes: Interval for reconciling jobs with the database (0 disables)
        """
        self.db = db
        self.fetcher = fetcher
        self.timezone_name = timezone_name or config.SCHEDULER_TIMEZONE
        try:
            self.timezone = ZoneInfo(self.timezone_name)
        except (ZoneInfoNotFoundError, ValueError):
            logger.error(f"Invalid scheduler timezone '{self.timezone_name}' - falling back to UTC")
            self.timezone_name = "UTC"
            self.timezone = timezone.utc
        self.resync_minutes = config.SCHEDULER_RESYNC_MINUTES if resync_minutes is None else resync_minutes

        self._scheduler = AsyncIOScheduler(timezone=self.timezone)
        self._jobs: Dict[int, ScheduledJob] = {}
        self._in_flight: Set[int] = set()
        self._lock = threading.RLock()
        self.is_initialized = False
        self._shutdown = False

    def start(self) -> None:
        """Start the underlying timer loop; must be called with a running event loop."""
        if self._shutdown:
            raise FeedIngestError("Scheduler has been shut down")
        if self._scheduler.running:
            return
        if self.resync_minutes > 0:
            self._scheduler.add_job(
                self.resync,
                trigger="interval",
                minutes=self.resync_minutes,
                id=RESYNC_JOB_ID,
                max_instances=1,
                coalesce=True,
                misfire_grace_time=None,
                replace_existing=True,
            )
        self._scheduler.start()
        logger.info(f"🚀 Scheduler started (timezone: {self.timezone_name})")

    async def _load_schedulable(self) -> Dict[int, str]:
        """subscription id -> cron expression, for every subscription that should have a job."""
        pairs = await self.db.execute('list_active_enabled_subscriptions_with_config')
        return {
            subscription.id: sub_config.cron_schedule.strip()
            for subscription, sub_config in pairs
            if sub_config is not None and sub_config.wants_schedule
        }

    @trace_span("scheduler.initialize", tracer_name="scheduler")
    async def initialize(self) -> int:
        """Create jobs for all persisted subscriptions that need one.

        Jobs that fail to schedule are logged and skipped.

        Returns:
            Number of live jobs after loading.
        """
        if self.is_initialized:
            logger.debug("Scheduler already initialized")
            return len(self._jobs)

        try:
            schedulable = await self._load_schedulable()
        except FeedIngestError as e:
            logger.error(f"❌ Failed to load subscriptions for scheduling: {e}")
            schedulable = {}

        for subscription_id, cron_expression in schedulable.items():
            try:
                self.schedule_subscription_task(subscription_id, cron_expression)
            except FeedIngestError as e:
                logger.error(f"❌ Could not schedule subscription {subscription_id}: {e}")

        self.is_initialized = True
        logger.info(f"📅 Scheduler initialized with {len(self._jobs)} subscription jobs")
        return len(self._jobs)

    def schedule_subscription_task(self, subscription_id: int, cron_expression: str) -> ScheduledJob:
        """Create (or replace) the job for a subscription.

        Raises:
            ValidationError: On a malformed expression; existing jobs are left untouched.
        """
        if self._shutdown:
            raise FeedIngestError("Scheduler has been shut down")
        trigger = build_cron_trigger(cron_expression, self.timezone)
        job_id = job_id_for(subscription_id)

        with self._lock:
            self._remove_job(subscription_id)
            self._scheduler.add_job(
                self.execute_subscription_fetch,
                trigger=trigger,
                args=[subscription_id],
                id=job_id,
                name=f"fetch {job_id}",
                max_instances=1,
                coalesce=True,
                misfire_grace_time=None,
                replace_existing=True,
            )
            job = ScheduledJob(
                id=job_id,
                subscription_id=subscription_id,
                cron_expression=cron_expression.strip(),
                next_run=trigger.get_next_fire_time(None, datetime.now(self.timezone)),
                trigger=trigger,
            )
            self._jobs[subscription_id] = job

        logger.info(f"⏰ Scheduled subscription {subscription_id} with '{job.cron_expression}' "
                    f"(next run: {job.next_run.isoformat() if job.next_run else 'never'})")
        return replace(job)

    def _remove_job(self, subscription_id: int) -> bool:
        job = self._jobs.pop(subscription_id, None)
        if job is None:
            return False
        try:
            self._scheduler.remove_job(job.id)
        except JobLookupError:
            logger.debug(f"Job {job.id} was not registered with the timer loop")
        return True

    def unschedule_task(self, job_id: str) -> bool:
        """Remove a job by id; unknown ids are ignored.

        Returns:
            True if a job was removed.
        """
        with self._lock:
            for subscription_id, job in list(self._jobs.items()):
                if job.id == job_id:
                    self._remove_job(subscription_id)
                    logger.info(f"🛑 Unscheduled {job_id}")
                    return True
        return False

    def update_task_schedule(self, subscription_id: int, cron_expression: Optional[str]) -> Optional[ScheduledJob]:
        """Replace a subscription's schedule, or remove it when ``cron_expression`` is empty.

        Raises:
            ValidationError: On a malformed expression (the current job is kept).
        """
        if cron_expression is not None and str(cron_expression).strip():
            build_cron_trigger(cron_expression, self.timezone)
            with self._lock:
                self.unschedule_task(job_id_for(subscription_id))
                return self.schedule_subscription_task(subscription_id, cron_expression)

        self.unschedule_task(job_id_for(subscription_id))
        return None

    async def sync_subscription(self, subscription_id: int) -> Optional[ScheduledJob]:
        """Bring one subscription's job in line with its persisted state.

        A job is kept only when the subscription exists, is enabled with status
        active or error,
        and its config has auto-fetch on with a cron expression.
        """
        subscription = await self.db.execute('get_subscription', subscription_id=subscription_id)
        sub_config = None
        if subscription is not None and subscription.is_fetchable:
            sub_config = await self.db.execute('get_subscription_config', subscription_id=subscription_id)
        cron_expression = sub_config.cron_schedule if sub_config and sub_config.wants_schedule else None
        return self.update_task_schedule(subscription_id, cron_expression)

    @trace_span("scheduler.resync", tracer_name="scheduler")
    async def resync(self) -> None:
        """Reconcile the job table with the database."""
        try:
            schedulable = await self._load_schedulable()
        except FeedIngestError as e:
            logger.error(f"Resync failed to load subscriptions: {e}")
            return

        with self._lock:
            current = {sid: job.cron_expression for sid, job in self._jobs.items()}
        for subscription_id in current.keys() - schedulable.keys():
            self.update_task_schedule(subscription_id, None)
        for subscription_id, cron_expression in schedulable.items():
            if current.get(subscription_id) == cron_expression:
                continue
            try:
                self.update_task_schedule(subscription_id, cron_expression)
            except ValidationError as e:
                logger.error(f"Resync could not schedule subscription {subscription_id}: {e}")

    @trace_span(
        "scheduler.tick",
        tracer_name="scheduler",
        attr_from_args=lambda self, subscription_id: {"subscription.id": int(subscription_id)},
    )
    async def execute_subscription_fetch(self, subscription_id: int):
        """Run one tick for a subscription.

        Errors are logged and never escape; the job keeps its cadence.

        Returns:
            The FetchResult, or None if the tick was skipped or failed.
        """
        now = datetime.now(self.timezone)
        with self._lock:
            if subscription_id in self._in_flight:
                logger.warning(f"⏭️ Fetch for subscription {subscription_id} still running, skipping tick")
                return None
            self._in_flight.add(subscription_id)
            job = self._jobs.get(subscription_id)
            if job is not None:
                job.last_run = now
                job.next_run = job.trigger.get_next_fire_time(now, now) if job.trigger else None

        logger.info(f"🔄 Fetching subscription {subscription_id}")
        try:
            result = await self.fetcher.fetch_subscription(subscription_id)
            if result.success:
                logger.info(f"✅ Subscription {subscription_id}: {result.new_items_count} new of {result.items_count} items")
            else:
                logger.warning(f"❌ Subscription {subscription_id} fetch failed: {result.error}")
            return result
        except Exception as e:
            logger.exception(f"💥 Unhandled error fetching subscription {subscription_id}: {e}")
            return None
        finally:
            with self._lock:
                self._in_flight.discard(subscription_id)

    def get_task_status(self, subscription_id: int) -> Optional[ScheduledJob]:
        with self._lock:
            job = self._jobs.get(subscription_id)
            return replace(job) if job else None

    def get_tasks(self) -> List[ScheduledJob]:
        with self._lock:
            return [replace(job) for job in sorted(self._jobs.values(), key=lambda j: j.subscription_id)]

    def get_status(self) -> Dict[str, Any]:
        """Snapshot of the scheduler; read-only."""
        tasks = self.get_tasks()
        return {
            "is_running": self.is_initialized and not self._shutdown,
            "task_count": len(tasks),
            "timezone": self.timezone_name,
            "tasks": [task.to_dict() for task in tasks],
        }

    def shutdown(self) -> None:
        """Stop every job and the timer loop; safe to call more than once."""
        with self._lock:
            if self._shutdown:
                return
            count = len(self._jobs)
            for subscription_id in list(self._jobs):
                self._remove_job(subscription_id)
            self._shutdown = True
            self.is_initialized = False
        if self._scheduler.running:
            # AsyncIOScheduler stops on its loop's next turn; a closed loop has nothing left to stop
            loop = getattr(self._scheduler, "_eventloop", None)
            if loop is not None and loop.is_closed():
                logger.debug("Scheduler event loop already closed")
            else:
                self._scheduler.shutdown(wait=False)
        logger.info(f"📶 Scheduler shut down ({count} jobs stopped)")
