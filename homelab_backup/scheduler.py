"""
APScheduler configuration and job scheduling for homelab-backup.

Manages:
- The scheduled nightly backup (cron expression from BACKUP_SCHEDULE_CRON)
- Manual one-shot backup triggers
"""

import logging
from datetime import datetime, timedelta, timezone
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.jobstores.sqlalchemy import SQLAlchemyJobStore
from apscheduler.executors.pool import ThreadPoolExecutor

from homelab_backup.credentials import load_credentials, ConfigurationError
from homelab_backup.backup.executor import execute_backup

logger = logging.getLogger(__name__)

BACKUP_JOB_ID = 'scheduled_backup'

# Global scheduler instance and Flask app reference
scheduler = None
flask_app = None


def init_scheduler(app):
    """
    Initialize and configure APScheduler.

    Args:
        app: Flask app instance

    Raises:
        ValueError: If BACKUP_SCHEDULE_CRON is not a valid crontab expression
    """
    global scheduler, flask_app

    if scheduler is not None:
        return scheduler

    # Store Flask app reference for use in background threads
    flask_app = app

    jobstores = {
        'default': SQLAlchemyJobStore(url=app.config['SQLALCHEMY_DATABASE_URI'])
    }

    # One worker: backups never overlap
    executors = {
        'default': ThreadPoolExecutor(max_workers=1)
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one instance of a job at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    tz = app.config.get('SCHEDULER_TIMEZONE', 'UTC')
    scheduler = BackgroundScheduler(
        jobstores=jobstores,
        executors=executors,
        job_defaults=job_defaults,
        timezone=tz
    )

    cron = app.config['BACKUP_SCHEDULE_CRON']
    scheduler.add_job(
        func=_execute_backup_wrapper,
        trigger=CronTrigger.from_crontab(cron, timezone=tz),
        id=BACKUP_JOB_ID,
        name='Nightly Backup',
        replace_existing=True
    )
    logger.info(f"Scheduled backup: {cron} ({tz})")

    return scheduler


def start_scheduler():
    """
    Start the APScheduler.

    Should be called after Flask app is initialized.
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if scheduler.running:
        logger.info(f"Scheduler already running (state={scheduler.state})")
        return

    scheduler.start()
    logger.info("APScheduler started")

    for job in scheduler.get_jobs():
        next_run = job.next_run_time.isoformat() if job.next_run_time else 'N/A'
        logger.info(f"  - {job.id}: {job.name} (next run: {next_run})")


def stop_scheduler():
    """Stop the APScheduler."""
    global scheduler

    if scheduler and scheduler.running:
        scheduler.shutdown()
        logger.info("APScheduler stopped")
    scheduler = None


def _execute_backup_wrapper(dry_run: bool = False):
    """
    Run one backup inside the app context.

    Failures are already recorded in the run history by the executor;
    configuration errors are logged here so the scheduler thread survives.
    """
    with flask_app.app_context():
        env_file = flask_app.config['BACKUP_ENV_FILE']
        try:
            record = load_credentials(env_file)
        except ConfigurationError as e:
            logger.error(f"Scheduled backup skipped: {e}")
            return

        logger.info(f"Scheduler executing backup (env file: {env_file}, dry_run={dry_run})")
        history = execute_backup(record, dry_run=dry_run, temp_dir=flask_app.config['TEMP_DIR'])
        logger.info(f"Scheduled backup completed with status: {history.status}")


def trigger_backup_now(dry_run: bool = False) -> str:
    """
    Manually trigger a backup immediately.

    Returns:
        ID of the one-shot job

    Raises:
        RuntimeError: If the scheduler is not initialized
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    now = datetime.now(timezone.utc)
    job_id = f"manual_{int(now.timestamp())}"

    # 1 second delay to avoid race with scheduler start
    scheduler.add_job(
        func=_execute_backup_wrapper,
        args=[dry_run],
        trigger=DateTrigger(run_date=now + timedelta(seconds=1)),
        id=job_id,
        name='Manual Backup',
        replace_existing=False
    )

    logger.info(f"Manually triggered backup: {job_id}")
    return job_id


def get_next_backup_run():
    """Next fire time of the scheduled backup, or None if not scheduled."""
    if scheduler is None:
        return None

    job = scheduler.get_job(BACKUP_JOB_ID)
    if job is None:
        return None
    # Pending jobs (scheduler not started) have no next_run_time yet
    return getattr(job, 'next_run_time', None)


def get_scheduled_jobs() -> list:
    """
    Get list of all scheduled jobs.

    Returns:
        List of dicts with job information
    """
    if scheduler is None:
        return []

    return [
        {
            'id': job.id,
            'name': job.name,
            'next_run': job.next_run_time.isoformat() if getattr(job, 'next_run_time', None) else None,
            'trigger': str(job.trigger)
        }
        for job in scheduler.get_jobs()
    ]
