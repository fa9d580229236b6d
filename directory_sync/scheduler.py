"""
Cron-driven scheduling of recurring sync jobs.

One task per tool config, keyed ``<tool_slug>-<config_id>``. Each firing
hands an incremental job to the orchestrator; scheduling the same config
again replaces its task.
"""

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from directory_sync.config import EngineSettings
from directory_sync.errors import SyncEngineError, ValidationError
from directory_sync.models import SYSTEM_ACTOR, JobType, SyncScope, ToolSyncConfig, TriggerSource

logger = logging.getLogger(__name__)


class SyncScheduler:
    """Fires scheduled sync jobs through a ``SyncJobOrchestrator``."""

    def __init__(self, orchestrator, repository, settings: Optional[EngineSettings] = None,
                 now_func: Optional[Callable[[], datetime]] = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.orchestrator = orchestrator
        self.repository = repository
        self.settings = settings or EngineSettings()
        try:
            self.timezone = ZoneInfo(self.settings.scheduler_timezone)
        except ZoneInfoNotFoundError:
            raise ValidationError(f"Unknown scheduler timezone: {self.settings.scheduler_timezone}")
        self._now = now_func or (lambda: datetime.now(self.timezone))
        self._sleep = sleep
        self._schedules: Dict[str, Dict[str, Any]] = {}
        self.running = False

    async def start(self):
        """Schedule every config with auto sync enabled. No-op when scheduling is disabled."""
        if not self.settings.scheduler_enabled:
            logger.info("Sync scheduler disabled; no jobs scheduled")
            return

        self.running = True
        for tool_config in await self.repository.list_tool_configs():
            if not tool_config.auto_sync_enabled or not tool_config.schedule_cron:
                continue
            try:
                self.schedule_sync(tool_config)
            except ValidationError as e:
                logger.error(f"Not scheduling {tool_config.schedule_key}: {e}")
        logger.info(f"Sync scheduler started with {len(self._schedules)} scheduled job(s)")

    @staticmethod
    def validate_cron(expression: Optional[str]):
        if not expression or not croniter.is_valid(expression):
            raise ValidationError(f"Invalid CRON expression: {expression}")

    def next_run_time(self, expression: str, after: datetime) -> datetime:
        return croniter(expression, after).get_next(datetime)

    def schedule_sync(self, tool_config: ToolSyncConfig) -> str:
        """
        Schedule recurring syncs for ``tool_config``, replacing any existing schedule.

        Returns:
            The schedule key

        Raises:
            ValidationError: If the config has no valid cron expression
        """
        self.validate_cron(tool_config.schedule_cron)
        key = tool_config.schedule_key

        existing = self._schedules.pop(key, None)
        if existing is not None:
            existing['task'].cancel()
            logger.info(f"Replacing schedule {key}")

        entry = {
            'key': key,
            'config_id': tool_config.id,
            'tool_slug': tool_config.tool_slug,
            'cron': tool_config.schedule_cron,
            'next_run': None,
            'last_run': None,
            'last_job_id': None,
        }
        entry['task'] = asyncio.create_task(self._run_schedule(entry), name=f"sync-schedule-{key}")
        self._schedules[key] = entry
        logger.info(f"Scheduled {key} with cron '{tool_config.schedule_cron}'")
        return key

    async def _run_schedule(self, entry: Dict[str, Any]):
        while True:
            now = self._now()
            next_run = self.next_run_time(entry['cron'], now)
            entry['next_run'] = next_run
            await self._sleep(max((next_run - now).total_seconds(), 0))

            entry['last_run'] = self._now()
            logger.info(f"Running scheduled sync {entry['key']}")
            try:
                job = await self.orchestrator.start_sync_job(
                    entry['config_id'],
                    scope=SyncScope.BOTH,
                    job_type=JobType.INCREMENTAL,
                    triggered_by=TriggerSource.SCHEDULE,
                    actor=SYSTEM_ACTOR,
                )
                entry['last_job_id'] = job.id
            except SyncEngineError as e:
                logger.error(f"Scheduled sync {entry['key']} could not start: {e}")
            except Exception:
                logger.exception(f"Scheduled sync {entry['key']} failed unexpectedly")

    def unschedule(self, config_id: str) -> bool:
        """Cancel the schedule of ``config_id``; False if it had none."""
        for key, entry in list(self._schedules.items()):
            if entry['config_id'] == config_id:
                entry['task'].cancel()
                del self._schedules[key]
                logger.info(f"Unscheduled {key}")
                return True
        return False

    async def stop(self):
        """Cancel every scheduled task."""
        self.running = False
        tasks = [entry['task'] for entry in self._schedules.values()]
        self._schedules.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Sync scheduler stopped")

    def get_schedule(self) -> List[Dict[str, Any]]:
        schedule = []
        for entry in self._schedules.values():
            schedule.append({
                'key': entry['key'],
                'config_id': entry['config_id'],
                'tool_slug': entry['tool_slug'],
                'cron': entry['cron'],
                'next_run': entry['next_run'].isoformat() if entry['next_run'] else None,
                'last_run': entry['last_run'].isoformat() if entry['last_run'] else None,
                'last_job_id': entry['last_job_id'],
            })
        return sorted(schedule, key=lambda item: item['key'])
