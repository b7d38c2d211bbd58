"""
APScheduler configuration and job scheduling for Landkeeper.

Manages:
- The scheduled backup cycle (cron expression from BACKUP_SCHEDULE_CRON)
- Manual backup triggers

Retention runs as part of every backup cycle, so it has no job of its own.
"""

import logging
from datetime import datetime, timedelta, timezone

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.executors.pool import ThreadPoolExecutor

from landkeeper.backup.executor import run_backup_cycle


logger = logging.getLogger(__name__)

BACKUP_JOB_ID = 'scheduled_backup'

# Global scheduler instance and the configuration its jobs run with
scheduler = None
scheduler_config = None


def init_scheduler(config, blocking: bool = False):
    """
    Initialize and configure APScheduler.

    A single worker thread and max_instances=1 keep scheduled backups
    from overlapping each other.

    Args:
        config: Configuration class
        blocking: Use a BlockingScheduler (standalone process) instead of
            a BackgroundScheduler (inside the web app)
    """
    global scheduler, scheduler_config

    if scheduler is not None:
        return scheduler

    scheduler_config = config

    jobstores = {
        'default': MemoryJobStore()
    }

    executors = {
        'default': ThreadPoolExecutor(max_workers=1)
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one instance of a job at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    scheduler_class = BlockingScheduler if blocking else BackgroundScheduler
    scheduler = scheduler_class(
        jobstores=jobstores,
        executors=executors,
        job_defaults=job_defaults,
        timezone=config.SCHEDULER_TIMEZONE
    )

    scheduler.add_job(
        func=_execute_backup_wrapper,
        trigger=CronTrigger.from_crontab(config.BACKUP_SCHEDULE_CRON, timezone=config.SCHEDULER_TIMEZONE),
        id=BACKUP_JOB_ID,
        name=f"Backup: {config.BACKUP_SCHEDULE_CRON}",
        replace_existing=True
    )

    logger.info(f"Scheduled backup job ({config.BACKUP_SCHEDULE_CRON}, {config.SCHEDULER_TIMEZONE})")
    return scheduler


def start_scheduler():
    """
    Start the APScheduler.

    With a BlockingScheduler this call only returns on shutdown.
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if scheduler.running:
        logger.info(f"Scheduler already running (state={scheduler.state})")
        return

    jobs = scheduler.get_jobs()
    logger.info(f"Starting APScheduler with {len(jobs)} jobs:")
    for job in jobs:
        logger.info(f"  - {job.id}: {job.name} ({job.trigger})")

    scheduler.start()
    logger.info(f"APScheduler started (state={scheduler.state})")


def stop_scheduler():
    """Stop the APScheduler and forget it."""
    global scheduler, scheduler_config

    if scheduler is not None and scheduler.running:
        scheduler.shutdown()
        logger.info("APScheduler stopped")

    scheduler = None
    scheduler_config = None


def _execute_backup_wrapper():
    """
    Run one backup cycle in scheduler context.

    Failures are logged; an exception must not kill the scheduler thread.
    """
    try:
        logger.info("Scheduler executing backup cycle")
        result = run_backup_cycle(scheduler_config)
        if result['success']:
            logger.info(f"Scheduled backup completed: {result['backup']}")
        else:
            logger.error(f"Scheduled backup failed at stage {result.get('stage')}: {result['error']}")
    except Exception as e:
        logger.exception(f"Scheduled backup crashed: {e}")


def trigger_backup_now():
    """
    Queue a one-off backup cycle on the scheduler.

    Raises:
        RuntimeError: If the scheduler is not initialized
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    now = datetime.now(timezone.utc)
    job = scheduler.add_job(
        func=_execute_backup_wrapper,
        trigger=DateTrigger(run_date=now + timedelta(seconds=1)),
        id=f"manual_{int(now.timestamp())}",
        name="Manual backup",
        replace_existing=False
    )

    logger.info("Manually triggered backup cycle")
    return job.id


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
        # Jobs added before start() have no next_run_time yet
        next_run = getattr(job, 'next_run_time', None)
        jobs.append({
            'id': job.id,
            'name': job.name,
            'next_run': next_run.isoformat() if next_run else None,
            'trigger': str(job.trigger)
        })

    return jobs


def is_scheduler_running() -> bool:
    return scheduler is not None and scheduler.running
