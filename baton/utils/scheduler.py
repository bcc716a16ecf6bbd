"""
Thin wrapper over APScheduler's BackgroundScheduler.

Jobs run inside the Flask app context and are addressed by string ids so a
session can cancel exactly the jobs it owns.
"""
import atexit
import logging

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler

logger = logging.getLogger(__name__)

logging.getLogger('apscheduler').setLevel(logging.WARNING)
logging.getLogger('apscheduler.executors.default').setLevel(logging.ERROR)


class JobScheduler:

    def __init__(self, app):
        self.app = app
        self.scheduler = BackgroundScheduler(timezone='UTC')

    @property
    def running(self):
        return self.scheduler.running

    def start(self):
        if self.scheduler.running:
            return
        self.scheduler.start()
        atexit.register(self.shutdown)
        logger.info("[SCHED] Background scheduler started")

    def shutdown(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)

    def add_interval(self, job_id, func, seconds, args=(), start_date=None):
        """(Re)schedule ``func(*args)`` every ``seconds`` under ``job_id``."""
        self.cancel(job_id)
        return self.scheduler.add_job(
            self._run_in_context,
            trigger='interval',
            seconds=seconds,
            start_date=start_date,
            args=(func,) + tuple(args),
            id=job_id,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

    def cancel(self, job_id):
        try:
            self.scheduler.remove_job(job_id)
        except JobLookupError:
            return False
        logger.info("[SCHED] Cancelled %s", job_id)
        return True

    def has_job(self, job_id):
        return self.scheduler.get_job(job_id) is not None

    def job_ids(self):
        return [job.id for job in self.scheduler.get_jobs()]

    def _run_in_context(self, func, *args):
        with self.app.app_context():
            func(*args)
