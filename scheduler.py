"""
Centralized Scheduler: registers the periodic sync jobs.

Jobs:
  - Connectivity probe (every CONNECTIVITY_PROBE_INTERVAL seconds)
  - Sync queue drain + pending usage flush (every QUEUE_DRAIN_INTERVAL_MINUTES)
"""

from __future__ import annotations

from apscheduler.schedulers.background import BackgroundScheduler

from errors import SyncError


def init_scheduler(app, services):
    """Start the background scheduler for the sync jobs and return it."""
    scheduler = BackgroundScheduler(daemon=True)

    # 1. Connectivity probe; a flip to online triggers the reconnect replay
    def _probe():
        services.monitor.check_now()

    scheduler.add_job(
        func=_probe,
        trigger="interval",
        seconds=app.config.get("CONNECTIVITY_PROBE_INTERVAL", 30),
        id="connectivity_probe",
        replace_existing=True,
        max_instances=1,
    )

    # 2. Periodic drain for anything a reconnect did not replay
    def _drain():
        if not services.state.is_online:
            return
        try:
            result = services.queue.drain()
            if not result.stopped_offline:
                services.usage.flush_pending()
        except SyncError as e:
            app.logger.error("Scheduled queue drain failed: %s", e)
        else:
            if result.applied or result.failed:
                app.logger.info("Scheduled drain: %d applied, %d failed, %d remaining",
                                result.applied, result.failed, result.remaining)

    scheduler.add_job(
        func=_drain,
        trigger="interval",
        minutes=app.config.get("QUEUE_DRAIN_INTERVAL_MINUTES", 5),
        id="queue_drain",
        replace_existing=True,
        max_instances=1,
    )

    scheduler.start()
    app.logger.info("Sync scheduler started (connectivity probe, queue drain)")
    return scheduler
