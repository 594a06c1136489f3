"""
APScheduler configuration for periodic backups.

`backup --schedule "<crontab>" <source>` keeps the process in the
foreground and runs the normal backup workflow on every tick. Each run
still takes the lock, so a scheduled run never overlaps a manual one.
"""

import logging

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.executors.pool import ThreadPoolExecutor

from backupctl.config import Config
from backupctl.errors import InvalidArguments
from backupctl.backup.executor import execute_backup


logger = logging.getLogger(__name__)

SCHEDULED_JOB_ID = 'scheduled_backup'

# Global scheduler instance
scheduler = None


def parse_schedule(cron: str) -> CronTrigger:
    """
    Parse a five-field crontab expression.

    Raises:
        InvalidArguments: If the expression is not valid
    """
    try:
        return CronTrigger.from_crontab(cron)
    except ValueError as e:
        raise InvalidArguments(f"Invalid schedule {cron!r}: {e}") from e


def init_scheduler(config: Config, source_dir: str, cron: str, incremental: bool = False):
    """
    Initialize and configure APScheduler with a single backup job.

    Args:
        config: Run configuration
        source_dir: Directory to back up on every tick
        cron: Crontab expression, e.g. '0 2 * * *'
        incremental: Run incremental instead of full backups

    Returns:
        The scheduler instance
    """
    global scheduler

    if scheduler is not None:
        return scheduler

    trigger = parse_schedule(cron)

    executors = {
        'default': ThreadPoolExecutor(max_workers=1)
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending runs into one
        'max_instances': 1,  # Only one backup at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    scheduler = BlockingScheduler(executors=executors, job_defaults=job_defaults)

    mode = 'incremental' if incremental else 'full'
    scheduler.add_job(
        func=_execute_backup_wrapper,
        args=[config, source_dir, incremental],
        trigger=trigger,
        id=SCHEDULED_JOB_ID,
        name=f"Backup ({mode}): {source_dir}",
        replace_existing=True
    )

    logger.info(f"Scheduled {mode} backup of {source_dir} ({cron})")
    return scheduler


def start_scheduler():
    """
    Start the scheduler. Blocks until stop_scheduler() is called or the
    process is interrupted.
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if scheduler.running:
        logger.info("Scheduler already running")
        return

    logger.info("Scheduler started; press Ctrl+C to stop")
    scheduler.start()


def stop_scheduler():
    """Stop the scheduler."""
    if scheduler is not None and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")


def run_scheduler(config: Config, source_dir: str, cron: str, incremental: bool = False):
    """
    Initialize the scheduler and block until interrupted.

    Ctrl+C returns normally; SystemExit (raised by the SIGTERM handler) is
    re-raised after shutdown so the exit status is preserved.
    """
    init_scheduler(config, source_dir, cron, incremental)
    try:
        start_scheduler()
    except KeyboardInterrupt:
        stop_scheduler()
    except SystemExit:
        stop_scheduler()
        raise


def get_scheduled_jobs() -> list:
    """
    Get list of all scheduled jobs.

    Returns:
        List of dicts with job information
    """
    if scheduler is None:
        return []

    jobs = []
    for job in scheduler.get_jobs():
        next_run = getattr(job, 'next_run_time', None)
        jobs.append({
            'id': job.id,
            'name': job.name,
            'next_run': next_run.isoformat() if next_run else None,
            'trigger': str(job.trigger)
        })
    return jobs


def _execute_backup_wrapper(config: Config, source_dir: str, incremental: bool):
    """
    Run one scheduled backup.

    Failures are logged and the scheduler keeps running; the next tick
    tries again.
    """
    logger.info(f"Scheduler executing backup of {source_dir}")
    result = execute_backup(config, source_dir, incremental=incremental)
    if result.succeeded:
        logger.info(f"Scheduled backup completed: {result.build.name if result.build else source_dir}")
    else:
        logger.error(f"Scheduled backup failed: {result.error}")
    return result
