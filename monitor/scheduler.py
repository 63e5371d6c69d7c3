"""Background interval timers for the engine, collector, and manager."""
import logging
import threading
import schedule

logger = logging.getLogger("alertengine.scheduler")


class IntervalScheduler:
    """Runs registered jobs on fixed intervals from a daemon thread.

    Each instance owns its own `schedule.Scheduler`, so several components can
    keep independent timers in the same process. A failing job is logged and
    retried on its next interval; it never stops the thread.
    """

    def __init__(self, name, tick_seconds=1.0):
        self.name = name
        self.tick_seconds = tick_seconds
        self._scheduler = schedule.Scheduler()
        self._stop_event = threading.Event()
        self._thread = None
        self._failures = {}

    @property
    def running(self):
        return self._thread is not None and self._thread.is_alive()

    def every(self, seconds, func, job_name=None):
        """Register `func` to run every `seconds` once the scheduler is started."""
        job_name = job_name or getattr(func, "__name__", "job")
        self._failures[job_name] = 0
        self._scheduler.every(seconds).seconds.do(self._run_job, job_name, func)
        logger.debug(f"[{self.name}] {job_name} every {seconds}s")

    def start(self):
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name=f"{self.name}-timer", daemon=True)
        self._thread.start()
        logger.info(f"[{self.name}] scheduler started")

    def stop(self):
        self._stop_event.set()
        self._scheduler.clear()
        if self._thread:
            if self._thread is not threading.current_thread():
                self._thread.join(timeout=5)
            self._thread = None
        logger.info(f"[{self.name}] scheduler stopped")

    def _run_loop(self):
        while not self._stop_event.wait(self.tick_seconds):
            self._scheduler.run_pending()

    def _run_job(self, job_name, func):
        try:
            func()
            self._failures[job_name] = 0
        except Exception as e:
            self._failures[job_name] += 1
            logger.error(
                f"[{self.name}] {job_name} failed ({self._failures[job_name]} consecutive): {e}",
                exc_info=True,
            )
            if self._failures[job_name] >= 5:
                logger.critical(f"[{self.name}] 5+ consecutive {job_name} failures!")
