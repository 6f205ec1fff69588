import logging
from datetime import datetime, timedelta, timezone

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

RESEARCH_JOB_ID = "research_sweep"


class ResearchScheduler:
    """Runs the awaiting-search sweep on a fixed interval."""

    def __init__(self, orchestrator, *, scheduler=None):
        self.orchestrator = orchestrator
        self.scheduler = scheduler or BackgroundScheduler(timezone="UTC")

    def start(self, *, run_now=False):
        interval = self.orchestrator.ctx.config.research.interval_minutes
        start_date = datetime.now(timezone.utc) + (timedelta(seconds=5) if run_now else timedelta(minutes=interval))
        self.scheduler.add_job(
            self._tick,
            trigger=IntervalTrigger(minutes=interval, start_date=start_date),
            id=RESEARCH_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=30,
        )
        if not self.scheduler.running:
            self.scheduler.start()
        logging.info("Re-search sweep scheduled every %s minutes", interval)

    def next_run_iso(self):
        job = self.scheduler.get_job(RESEARCH_JOB_ID)
        if not job or not job.next_run_time:
            return None
        next_run = job.next_run_time
        if next_run.tzinfo is None:
            next_run = next_run.replace(tzinfo=timezone.utc)
        return next_run.astimezone(timezone.utc).isoformat()

    def shutdown(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)

    def _tick(self):
        try:
            self.orchestrator.requeue_awaiting_search()
        except Exception:
            logging.exception("Re-search sweep failed")
