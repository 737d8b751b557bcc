"""
Scheduled jobs.

Each enabled job from the active configuration becomes an APScheduler job
driven by a ScheduleTrigger, which delegates fire-time maths to
JobSchedule. Every fire runs the job's named pipeline with a fresh
execution context bound to the snapshot current at that moment.

A job never runs concurrently with itself: APScheduler is told
`max_instances=1`, and fires it refuses are reported through the
EVENT_JOB_MAX_INSTANCES listener. Manual fires go through the same
in-flight guard. Either way the dropped fire is logged as a
JobOverlapSkipped record and counted in metrics.

Usage:
    scheduler = JobScheduler(store, runner)
    scheduler.start()          # inside a running event loop
    ...
    scheduler.shutdown()
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from apscheduler.events import EVENT_JOB_MAX_INSTANCES, JobSubmissionEvent
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.base import BaseTrigger

from conduit.errors import ConduitError, JobOverlapSkipped
from conduit.pipeline.context import ExecutionContext, PipelineOutcome
from conduit.pipeline.observability import PipelineMetrics, get_metrics

from .intervals import JobSchedule

if TYPE_CHECKING:
    from conduit.config.schemas import Job
    from conduit.config.store import ConfigStore, Snapshot
    from conduit.pipeline.runner import PipelineRunner

logger = logging.getLogger(__name__)

JOB_ID_PREFIX = "conduit-job:"


class ScheduleTrigger(BaseTrigger):
    """APScheduler trigger backed by a JobSchedule."""

    def __init__(self, schedule: JobSchedule):
        self.schedule = schedule

    def get_next_fire_time(
        self, previous_fire_time: datetime | None, now: datetime
    ) -> datetime | None:
        return self.schedule.next_fire(previous_fire_time, now)

    def __str__(self) -> str:
        freq = self.schedule.frequency
        every = sorted(freq.values) if freq.values is not None else freq.step
        start = self.schedule.start.isoformat()
        return f"schedule[{self.schedule.unit.value} {every} from {start}]"


def _job_id(name: str) -> str:
    return f"{JOB_ID_PREFIX}{name}"


class JobScheduler:
    """Keeps APScheduler in step with the configured jobs."""

    def __init__(
        self,
        store: "ConfigStore",
        runner: "PipelineRunner",
        *,
        metrics: PipelineMetrics | None = None,
        scheduler: AsyncIOScheduler | None = None,
    ):
        self.store = store
        self.runner = runner
        self.metrics = metrics or get_metrics()
        self._scheduler = scheduler
        self._in_flight: dict[str, datetime] = {}
        self._listening = False

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> None:
        if self.running:
            return
        if self._scheduler is None:
            self._scheduler = AsyncIOScheduler(timezone=UTC)
        self._scheduler.add_listener(self._on_max_instances, EVENT_JOB_MAX_INSTANCES)
        self._scheduler.start()
        if not self._listening:
            self.store.add_listener(self._on_reload)
            self._listening = True
        if self.store.loaded:
            self.reload(self.store.current())
        logger.info("Job scheduler started")

    def shutdown(self) -> None:
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("Job scheduler stopped")

    def _on_reload(self, snapshot: "Snapshot") -> None:
        if self.running:
            self.reload(snapshot)

    def reload(self, snapshot: "Snapshot") -> list[str]:
        """
        Replace scheduled jobs with those of `snapshot`.

        Returns:
            Names of the jobs that were scheduled
        """
        scheduler = self._scheduler
        if scheduler is None:
            return []

        for existing in scheduler.get_jobs():
            if existing.id.startswith(JOB_ID_PREFIX):
                scheduler.remove_job(existing.id)

        now = datetime.now(UTC)
        scheduled = []
        for job in snapshot.document.apis.jobs:
            if not job.enabled:
                logger.debug(f"Job '{job.name}' is disabled")
                continue
            trigger = ScheduleTrigger(JobSchedule.from_job(job))
            if trigger.get_next_fire_time(None, now) is None:
                logger.info(f"Job '{job.name}' has no future fire time; not scheduled")
                continue
            scheduler.add_job(
                self.fire,
                trigger=trigger,
                args=[job.name],
                id=_job_id(job.name),
                name=job.name,
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
            scheduled.append(job.name)
            logger.debug(f"Scheduled job '{job.name}' with {trigger}")

        logger.info(f"Scheduled {len(scheduled)} jobs for epoch {snapshot.epoch}")
        return scheduled

    def next_fire_time(self, job_name: str) -> datetime | None:
        if self._scheduler is None:
            return None
        entry = self._scheduler.get_job(_job_id(job_name))
        return entry.next_run_time if entry is not None else None

    # -------------------------------------------------------------------------
    # Firing
    # -------------------------------------------------------------------------

    def is_running(self, job_name: str) -> bool:
        return job_name in self._in_flight

    async def fire(
        self, job_name: str, scheduled_for: datetime | None = None
    ) -> PipelineOutcome | None:
        """
        Run a job's pipeline once.

        Returns:
            The outcome, or None when the fire was skipped because the
            previous run of the same job is still in flight

        Raises:
            ConduitError: If the job or its pipeline is not configured
        """
        scheduled_for = scheduled_for or datetime.now(UTC)
        if job_name in self._in_flight:
            self._skipped(
                JobOverlapSkipped(
                    job_name=job_name,
                    scheduled_for=scheduled_for,
                    running_since=self._in_flight[job_name],
                    metadata={"reason": "in_flight"},
                )
            )
            return None

        snapshot = self.store.current()
        job = snapshot.document.job(job_name)
        if job is None:
            raise ConduitError(f"Unknown job '{job_name}'")
        pipeline = snapshot.document.pipeline(job.pipeline)
        if pipeline is None:
            raise ConduitError(f"Job '{job_name}' names unknown pipeline '{job.pipeline}'")

        self._in_flight[job_name] = datetime.now(UTC)
        self.metrics.record_job_fire()
        try:
            ctx = ExecutionContext(
                args=self._job_args(job, scheduled_for),
                env=snapshot.document.env_map(),
                snapshot_epoch=snapshot.epoch,
                source=f"job:{job_name}",
            )
            outcome = await self.runner.run(pipeline, ctx)
        finally:
            del self._in_flight[job_name]

        if outcome.success:
            logger.info(f"Job '{job_name}' completed in {outcome.duration_ms:.0f}ms")
        else:
            logger.warning(
                f"Job '{job_name}' failed at step '{outcome.failed_step}': {outcome.error}"
            )
        return outcome

    def _job_args(self, job: "Job", scheduled_for: datetime) -> dict[str, Any]:
        return {
            "job": job.name,
            "scheduled_for": scheduled_for.isoformat(),
            "interval": job.interval.value,
        }

    def _on_max_instances(self, event: JobSubmissionEvent) -> None:
        if not event.job_id.startswith(JOB_ID_PREFIX):
            return
        job_name = event.job_id[len(JOB_ID_PREFIX) :]
        for run_time in event.scheduled_run_times or [None]:
            self._skipped(
                JobOverlapSkipped(
                    job_name=job_name,
                    scheduled_for=run_time,
                    running_since=self._in_flight.get(job_name),
                    metadata={"reason": "max_instances"},
                )
            )

    def _skipped(self, record: JobOverlapSkipped) -> None:
        self.metrics.record_job_fire(skipped=True)
        logger.info(
            f"Job '{record.job_name}' fire skipped, previous run still in flight: "
            f"{record.to_dict()}"
        )
