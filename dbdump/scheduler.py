"""
APScheduler configuration for recurring backup runs.

Runs the configured backup on a cron expression. Runs never overlap: one
worker, max_instances=1, and missed runs are coalesced into one.
"""

import logging

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.executors.pool import ThreadPoolExecutor

from dbdump.config import BackupConfig
from dbdump.backup.executor import run_backup


logger = logging.getLogger(__name__)

BACKUP_JOB_ID = 'dbdump_backup'


def scheduled_backup(config: BackupConfig) -> int:
    """
    Run one scheduled backup and log its outcome.

    Failures, including connection failures, are logged and do not stop the
    scheduler; the next run is attempted at the next fire time.

    Returns:
        Exit code of the run
    """
    outcome = run_backup(config)

    if outcome.exit_code == 0:
        logger.info("Scheduled backup completed successfully")
    else:
        logger.error(f"Scheduled backup failed with exit code {outcome.exit_code}")

    return outcome.exit_code


def init_scheduler(config: BackupConfig, cron: str) -> BlockingScheduler:
    """
    Create a scheduler that runs the backup on ``cron``.

    Args:
        config: Run configuration
        cron: Standard 5-field crontab expression (UTC)

    Returns:
        Configured (not started) BlockingScheduler

    Raises:
        ValueError: If the cron expression is invalid
    """
    executors = {
        'default': ThreadPoolExecutor(max_workers=1)
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one backup run at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    scheduler = BlockingScheduler(
        executors=executors,
        job_defaults=job_defaults,
        timezone='UTC'
    )

    trigger = CronTrigger.from_crontab(cron, timezone='UTC')

    scheduler.add_job(
        func=scheduled_backup,
        trigger=trigger,
        args=[config],
        id=BACKUP_JOB_ID,
        name=f"{config.engine.value} backup of {config.profile.ssh_host}",
        replace_existing=True
    )

    logger.info(f"Scheduled {config.engine.value} backup of {config.profile.ssh_host} with cron '{cron}' (UTC)")
    return scheduler


def run_scheduler(config: BackupConfig, cron: str):
    """Start the scheduler and block until interrupted."""
    scheduler = init_scheduler(config, cron)

    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Scheduler stopped")
