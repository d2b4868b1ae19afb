"""
APScheduler configuration for the backup jobs.

Manages:
- Nightly backup of all tenant containers on this node
- Retention policy enforcement
- Integrity verification
- Manual job triggers

Nightly backup and retention share a lock so retention never acts on a
listing while an upload run is in progress.
"""

import logging
import threading
from datetime import datetime, timedelta, timezone
from uuid import uuid4
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from apscheduler.executors.pool import ThreadPoolExecutor

from backvault import jobs


logger = logging.getLogger(__name__)

# Global scheduler instance and Flask app reference
scheduler = None
flask_app = None

backup_lock = threading.Lock()

NIGHTLY_JOB_ID = 'nightly_backup'
RETENTION_JOB_ID = 'retention_cleanup'
VERIFY_JOB_ID = 'backup_verification'


def init_scheduler(app):
    """
    Initialize and configure APScheduler.

    Args:
        app: Flask app instance
    """
    global scheduler, flask_app

    if scheduler is not None:
        return scheduler

    # Store Flask app reference for use in background threads
    flask_app = app

    executors = {
        'default': ThreadPoolExecutor(max_workers=3)
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one instance of a job at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    timezone_name = app.config.get('SCHEDULER_TIMEZONE', 'UTC')

    scheduler = BackgroundScheduler(
        executors=executors,
        job_defaults=job_defaults,
        timezone=timezone_name
    )

    scheduler.add_job(
        func=_run_nightly_backup,
        trigger=CronTrigger.from_crontab(app.config['NIGHTLY_BACKUP_CRON'], timezone=timezone_name),
        id=NIGHTLY_JOB_ID,
        name='Nightly Backup',
        replace_existing=True
    )

    scheduler.add_job(
        func=_run_retention,
        trigger=CronTrigger.from_crontab(app.config['RETENTION_CRON'], timezone=timezone_name),
        id=RETENTION_JOB_ID,
        name='Retention Cleanup',
        replace_existing=True
    )

    scheduler.add_job(
        func=_run_verification,
        trigger=CronTrigger.from_crontab(app.config['VERIFY_CRON'], timezone=timezone_name),
        id=VERIFY_JOB_ID,
        name='Backup Verification',
        replace_existing=True
    )

    return scheduler


def start_scheduler():
    """
    Start the APScheduler.

    Should be called after Flask app is initialized.
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if not scheduler.running:
        scheduler.start()
        logger.info(f"APScheduler started (state={scheduler.state}, running={scheduler.running})")

        for job in scheduler.get_jobs():
            next_run = job.next_run_time.isoformat() if job.next_run_time else 'N/A'
            logger.info(f"  - {job.id}: {job.name} (next run: {next_run})")
    else:
        logger.info(f"Scheduler already running (state={scheduler.state})")


def stop_scheduler():
    """Stop the APScheduler."""
    if scheduler and scheduler.running:
        scheduler.shutdown()
        logger.info("APScheduler stopped")


def _run_nightly_backup():
    """Scheduler wrapper for the nightly backup. Never raises."""
    with flask_app.app_context():
        with backup_lock:
            try:
                report = jobs.run_nightly_backup()
                logger.info(
                    f"Nightly backup job finished: {len(report.exported)} exported, "
                    f"{len(report.failed)} failed"
                )
            except Exception as e:
                logger.exception(f"Nightly backup job failed: {e}")


def _run_retention():
    """Scheduler wrapper for retention enforcement. Never raises."""
    with flask_app.app_context():
        with backup_lock:
            try:
                jobs.run_retention()
            except Exception as e:
                logger.exception(f"Retention job failed: {e}")


def _run_verification():
    """Scheduler wrapper for backup verification. Never raises."""
    with flask_app.app_context():
        try:
            report = jobs.run_verification()
            logger.info(
                f"Verification job finished: {report.passed}/{report.total_checked} passed"
            )
        except Exception as e:
            logger.exception(f"Verification job failed: {e}")


JOB_FUNCTIONS = {
    NIGHTLY_JOB_ID: _run_nightly_backup,
    RETENTION_JOB_ID: _run_retention,
    VERIFY_JOB_ID: _run_verification,
}


def trigger_job_now(job_id: str):
    """
    Queue an immediate one-off run of a backup job.

    Args:
        job_id: One of NIGHTLY_JOB_ID, RETENTION_JOB_ID, VERIFY_JOB_ID

    Raises:
        RuntimeError: If the scheduler is not initialized
        ValueError: If job_id is unknown
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized")

    if job_id not in JOB_FUNCTIONS:
        raise ValueError(f"Unknown job: {job_id}")

    now = datetime.now(timezone.utc)

    # 1 second delay avoids racing the scheduler's own wakeup
    scheduler.add_job(
        func=JOB_FUNCTIONS[job_id],
        trigger=DateTrigger(run_date=now + timedelta(seconds=1)),
        id=f"manual_{job_id}_{uuid4().hex}",
        name=f"Manual: {job_id}",
        replace_existing=False
    )

    logger.info(f"Manually triggered job: {job_id}")


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
            'next_run': job.next_run_time.isoformat() if job.next_run_time else None,
            'trigger': str(job.trigger)
        }
        for job in scheduler.get_jobs()
    ]


def is_scheduler_running() -> bool:
    return scheduler is not None and scheduler.running
