"""
APScheduler configuration for the backup cycle.

One cron-triggered job runs backup -> cloud sync -> retention, serialized
with every other mutating command through the run lock.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger

from hostguard.backup.executor import BackupResult, run_backup
from hostguard.backup.replicator import ReplicationResult, sync_pending_archives
from hostguard.backup.retention import enforce_retention
from hostguard.utils.runlock import RunLock, RunLockError

logger = logging.getLogger(__name__)

CYCLE_JOB_ID = 'backup_cycle'

# Global scheduler instance
scheduler = None


@dataclass
class CycleResult:
    backup: BackupResult
    replication: ReplicationResult
    retention: Dict[str, Any]
    upload_strict: bool = False

    @property
    def ok(self) -> bool:
        if self.upload_strict and self.replication.failures:
            return False
        return self.backup.ok and not self.retention['errors']


def run_cycle(config, upload_strict: Optional[bool] = None) -> CycleResult:
    """
    Backup, then sync every pending archive, then prune.

    Args:
        config: ConfigSnapshot
        upload_strict: Treat upload failures as a failed cycle
            (defaults to UPLOAD_STRICT)

    Returns:
        CycleResult
    """
    backup = run_backup(config)
    logger.info(backup.summary())

    replication = sync_pending_archives(config)
    logger.info(replication.summary())

    retention = enforce_retention(config)

    strict = config.flag('UPLOAD_STRICT') if upload_strict is None else upload_strict
    return CycleResult(backup=backup, replication=replication, retention=retention, upload_strict=strict)


def _execute_cycle_wrapper(config):
    """
    Scheduler job body: takes the run lock and never lets an error escape
    into APScheduler.
    """
    try:
        with RunLock(config.get('RUN_LOCK', '/run/hostguard.lock')):
            result = run_cycle(config)
        logger.info(f"Scheduled backup cycle finished (backup status: {result.backup.status.value})")
    except RunLockError as e:
        logger.warning(f"Skipping scheduled backup cycle: {e}")
    except Exception:
        logger.exception("Scheduled backup cycle failed")


def init_scheduler(config):
    """
    Initialize and configure APScheduler.

    Args:
        config: ConfigSnapshot

    Raises:
        ValueError: If BACKUP_SCHEDULE is not a valid crontab expression
    """
    global scheduler

    if scheduler is not None:
        return scheduler

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one instance of a job at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    scheduler = BlockingScheduler(job_defaults=job_defaults)

    schedule = config.get('BACKUP_SCHEDULE', '0 2 * * *')
    scheduler.add_job(
        func=_execute_cycle_wrapper,
        args=[config],
        trigger=CronTrigger.from_crontab(schedule),
        id=CYCLE_JOB_ID,
        name='Backup cycle',
        replace_existing=True
    )
    logger.info(f"Scheduled backup cycle: {schedule}")

    return scheduler


def start_scheduler():
    """
    Start the scheduler. Blocks until it is shut down.
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    for job in scheduler.get_jobs():
        next_run = getattr(job, 'next_run_time', None)
        logger.info(f"Job {job.id}: {job.name} (next run: {next_run.isoformat() if next_run else 'pending'})")

    scheduler.start()


def stop_scheduler():
    """Stop the scheduler."""
    global scheduler

    if scheduler and scheduler.running:
        scheduler.shutdown()
        logger.info("Scheduler stopped")
    scheduler = None
