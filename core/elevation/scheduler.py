"""
Scheduler - durable one-shot jobs with at-least-once firing.

Jobs live in the scheduled_jobs table so they survive restarts. Each job
carries a logical key ("principal@resource") and a unique job_key for the
particular registration; cancellation works on either, never on pattern
matching against names.

Firing is a periodic due-job scan (run_due). A job is claimed with a
compare-and-set on its status before its action runs; a job whose worker
died mid-run is reclaimed once it has been 'running' for longer than
``stale_after``. Failed actions are retried on later scans until
``max_attempts``. Actions must therefore be idempotent.

SchedulerWorker drives run_due from an APScheduler background thread,
independent of any HTTP request.
"""
from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable

from sqlalchemy import and_, or_
from sqlalchemy.exc import SQLAlchemyError

from core.elevation.errors import SchedulingError
from models import db, ScheduledJob

logger = logging.getLogger(__name__)

# Default seconds between due-job scans. Minute resolution is enough:
# cleanup_expired() covers anything a late scan misses.
DEFAULT_SCAN_INTERVAL_SECONDS = 60

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_STALE_AFTER = timedelta(minutes=10)
DEFAULT_BATCH_SIZE = 100

# handler(payload, job_key) -> any; raising marks the attempt failed.
ActionHandler = Callable[[dict[str, Any], str], Any]


def logical_key(principal: str, resource: str) -> str:
    return f'{principal}@{resource}'


class Scheduler:
    """Interface the grant manager depends on."""

    def register_action(self, name: str, handler: ActionHandler) -> None:
        raise NotImplementedError

    def schedule(self, key: str, run_at: datetime, action: str,
                 payload: dict[str, Any] | None = None,
                 scope: str | None = None) -> str:
        """Register a job; returns its job_key. Raises SchedulingError."""
        raise NotImplementedError

    def unschedule(self, job_key: str | None) -> bool:
        """Cancel one pending job. Unknown or already-fired keys are a no-op."""
        raise NotImplementedError

    def unschedule_key(self, key: str) -> int:
        """Cancel every pending job for a logical key."""
        raise NotImplementedError

    def unschedule_matching(self, scope: str | None = None,
                            action: str | None = None) -> int:
        """Cancel every pending job, optionally limited to a scope/action."""
        raise NotImplementedError

    def pending_count(self) -> int:
        raise NotImplementedError

    def pending_jobs(self) -> list[ScheduledJob]:
        raise NotImplementedError

    def run_due(self, now: datetime | None = None) -> list[dict[str, Any]]:
        raise NotImplementedError


class DatabaseScheduler(Scheduler):
    """Scheduler backed by the scheduled_jobs table."""

    def __init__(self, max_attempts: int = DEFAULT_MAX_ATTEMPTS,
                 stale_after: timedelta = DEFAULT_STALE_AFTER,
                 batch_size: int = DEFAULT_BATCH_SIZE,
                 clock: Callable[[], datetime] = datetime.utcnow) -> None:
        self.max_attempts = max_attempts
        self.stale_after = stale_after
        self.batch_size = batch_size
        self._clock = clock
        self._actions: dict[str, ActionHandler] = {}

    # --- registration ----------------------------------------------------

    def register_action(self, name, handler):
        self._actions[name] = handler

    def schedule(self, key, run_at, action, payload=None, scope=None):
        if action not in self._actions:
            raise SchedulingError(f'No handler registered for action "{action}"')

        job = ScheduledJob(
            job_key=uuid.uuid4().hex,
            logical_key=key,
            scope=scope,
            action=action,
            payload=payload or {},
            run_at=run_at,
            status=ScheduledJob.STATUS_PENDING,
            attempts=0,
            created_at=self._clock(),
        )
        try:
            db.session.add(job)
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            raise SchedulingError(
                f'Failed to schedule {action} job for {key}: {e}', key=key,
            ) from e

        logger.info('[elevation] scheduled %s for %s at %s (job %s)',
                    action, key, run_at.isoformat(), job.job_key)
        return job.job_key

    # --- cancellation ----------------------------------------------------

    def _cancel(self, q) -> int:
        try:
            count = q.filter(
                ScheduledJob.status == ScheduledJob.STATUS_PENDING,
            ).update({
                'status': ScheduledJob.STATUS_CANCELLED,
                'finished_at': self._clock(),
            }, synchronize_session=False)
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            raise SchedulingError(f'Failed to unschedule jobs: {e}') from e
        return count

    def unschedule(self, job_key):
        if not job_key:
            return False
        count = self._cancel(ScheduledJob.query.filter_by(job_key=job_key))
        if count:
            logger.info('[elevation] unscheduled job %s', job_key)
        return count > 0

    def unschedule_key(self, key):
        return self._cancel(ScheduledJob.query.filter_by(logical_key=key))

    def unschedule_matching(self, scope=None, action=None):
        q = ScheduledJob.query
        if scope is not None:
            q = q.filter_by(scope=scope)
        if action is not None:
            q = q.filter_by(action=action)
        return self._cancel(q)

    # --- introspection ---------------------------------------------------

    def pending_count(self):
        return ScheduledJob.query.filter_by(status=ScheduledJob.STATUS_PENDING).count()

    def pending_jobs(self):
        return ScheduledJob.query.filter_by(
            status=ScheduledJob.STATUS_PENDING,
        ).order_by(ScheduledJob.run_at.asc()).all()

    def get_job(self, job_key: str) -> ScheduledJob | None:
        return ScheduledJob.query.filter_by(job_key=job_key).first()

    # --- firing ----------------------------------------------------------

    def run_due(self, now=None):
        """Fire every due job once.

        Returns:
            list of {job_key, logical_key, action, status, error} per job
            that this call claimed.
        """
        now = now or self._clock()
        stale_cutoff = now - self.stale_after

        self._abandon_exhausted(stale_cutoff)

        due = ScheduledJob.query.filter(or_(
            and_(ScheduledJob.status == ScheduledJob.STATUS_PENDING,
                 ScheduledJob.run_at <= now),
            and_(ScheduledJob.status == ScheduledJob.STATUS_RUNNING,
                 ScheduledJob.claimed_at <= stale_cutoff,
                 ScheduledJob.attempts < self.max_attempts),
        )).order_by(ScheduledJob.run_at.asc()).limit(self.batch_size).all()

        # Snapshot before the session is expired by claim commits.
        candidates = [(j.id, j.status, j.attempts) for j in due]

        outcomes = []
        for job_id, observed_status, observed_attempts in candidates:
            outcome = self._run_one(job_id, observed_status, observed_attempts, now)
            if outcome is not None:
                outcomes.append(outcome)
        return outcomes

    def _abandon_exhausted(self, stale_cutoff):
        """Fail stale running jobs that have no attempts left."""
        try:
            count = ScheduledJob.query.filter(
                ScheduledJob.status == ScheduledJob.STATUS_RUNNING,
                ScheduledJob.claimed_at <= stale_cutoff,
                ScheduledJob.attempts >= self.max_attempts,
            ).update({
                'status': ScheduledJob.STATUS_FAILED,
                'last_error': f'abandoned while running after {self.max_attempts} attempts',
                'finished_at': self._clock(),
            }, synchronize_session=False)
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error('[elevation] could not fail exhausted jobs: %s', e)
            return 0
        if count:
            logger.error('[elevation] %d job(s) abandoned after %d attempts',
                         count, self.max_attempts)
        return count

    def _claim(self, job_id, observed_status, observed_attempts, now):
        try:
            claimed = ScheduledJob.query.filter_by(
                id=job_id, status=observed_status, attempts=observed_attempts,
            ).update({
                'status': ScheduledJob.STATUS_RUNNING,
                'claimed_at': now,
                'attempts': observed_attempts + 1,
            }, synchronize_session=False)
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error('[elevation] could not claim job id=%s: %s', job_id, e)
            return False
        return claimed == 1

    def _run_one(self, job_id, observed_status, observed_attempts, now):
        if not self._claim(job_id, observed_status, observed_attempts, now):
            # Another worker got it first.
            return None

        job = db.session.get(ScheduledJob, job_id)
        handler = self._actions.get(job.action)
        outcome = {
            'job_key': job.job_key,
            'logical_key': job.logical_key,
            'action': job.action,
            'attempt': job.attempts,
        }

        if handler is None:
            return self._settle(outcome, job_id, ScheduledJob.STATUS_FAILED,
                                f'No handler registered for action "{job.action}"')

        payload, job_key = dict(job.payload or {}), job.job_key
        try:
            outcome['result'] = handler(payload, job_key)
        except Exception as e:
            db.session.rollback()
            logger.exception('[elevation] job %s (%s) failed on attempt %s',
                             job_key, outcome['logical_key'], outcome['attempt'])
            retry = outcome['attempt'] < self.max_attempts
            status = ScheduledJob.STATUS_PENDING if retry else ScheduledJob.STATUS_FAILED
            return self._settle(outcome, job_id, status, str(e))

        return self._settle(outcome, job_id, ScheduledJob.STATUS_FIRED, None)

    def _settle(self, outcome, job_id, status, error):
        if self._finish(job_id, status, error):
            outcome.update(status=status, error=error)
        else:
            # Left 'running'; the stale-job reclaim picks it up again.
            outcome.update(status=ScheduledJob.STATUS_RUNNING,
                           error=error or 'could not record job outcome')
        return outcome

    def _finish(self, job_id, status, error):
        try:
            job = db.session.get(ScheduledJob, job_id)
            job.status = status
            job.last_error = error
            if status != ScheduledJob.STATUS_PENDING:
                job.finished_at = self._clock()
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error('[elevation] could not record %s for job id=%s: %s',
                         status, job_id, e)
            return False
        return True


class SchedulerWorker:
    """Runs the due-job scan (and periodic cleanup) on a background thread.

    Each tick runs inside its own Flask app context so it gets its own
    database session; nothing here is tied to a request.
    """

    def __init__(self, app, scheduler: Scheduler,
                 interval_seconds: int = DEFAULT_SCAN_INTERVAL_SECONDS,
                 cleanup: Callable[[], Any] | None = None,
                 cleanup_interval_minutes: int = 60) -> None:
        from apscheduler.schedulers.background import BackgroundScheduler

        self._app = app
        self._scheduler = scheduler
        self._interval_seconds = interval_seconds
        self._cleanup = cleanup
        self._cleanup_interval_minutes = cleanup_interval_minutes
        self._aps = BackgroundScheduler(
            timezone='UTC',
            job_defaults={'coalesce': True, 'max_instances': 1},
        )

    @property
    def running(self) -> bool:
        return self._aps.running

    def start(self) -> None:
        from apscheduler.triggers.interval import IntervalTrigger

        if self._aps.running:
            return
        self._aps.add_job(
            self.tick, IntervalTrigger(seconds=self._interval_seconds),
            id='elevation-due-scan', replace_existing=True,
        )
        if self._cleanup is not None:
            self._aps.add_job(
                self.run_cleanup, IntervalTrigger(minutes=self._cleanup_interval_minutes),
                id='elevation-cleanup', replace_existing=True,
            )
        self._aps.start()
        logger.info('[elevation] scheduler worker started (scan every %ss)',
                    self._interval_seconds)

    def shutdown(self, wait: bool = False) -> None:
        if self._aps.running:
            self._aps.shutdown(wait=wait)

    def tick(self) -> list[dict[str, Any]]:
        with self._app.app_context():
            try:
                outcomes = self._scheduler.run_due()
            except Exception:
                db.session.rollback()
                logger.exception('[elevation] due-job scan failed')
                return []
            if outcomes:
                logger.info('[elevation] scan fired %d job(s)', len(outcomes))
            return outcomes

    def run_cleanup(self) -> Any:
        with self._app.app_context():
            try:
                return self._cleanup()
            except Exception:
                db.session.rollback()
                logger.exception('[elevation] cleanup run failed')
                return None
