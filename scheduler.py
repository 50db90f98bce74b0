#!/usr/bin/env python3
"""
Sync Cycle Scheduler

Runs sync cycles on a recurring trigger defined in channels.yaml:

- Daily times ("HH:MM") in a configurable timezone
- A fixed interval in minutes between cycle starts
- Both at once (whichever comes first)

When channels.yaml defines neither, cycles run every FETCH_INTERVAL_MINUTES.
"""

import asyncio
from datetime import datetime, time, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from config import config, get_logger
from telemetry import trace_span
from utils import format_duration

logger = get_logger("scheduler")

# Back-off after an unexpected error in the loop
ERROR_RETRY_SECONDS = 60


class ScheduleEntry:
    """Represents a single daily scheduled time."""

    def __init__(self, time_str: str):
        """Initialize schedule entry from time string.

        Args:
            time_str: Time in format "HH:MM", "H:MM", etc.

        Raises:
            ValueError: If time format is invalid
        """
        self.time_str = time_str
        self.time = self._parse_time(time_str)

    def _parse_time(self, time_str: str) -> time:
        try:
            clean_time = str(time_str).strip().strip('"\'')

            parts = clean_time.split(':')
            if len(parts) != 2:
                raise ValueError(f"Time must be in HH:MM format, got: {time_str}")

            hour = int(parts[0])
            minute = int(parts[1])

            if not (0 <= hour <= 23):
                raise ValueError(f"Hour must be 0-23, got: {hour}")
            if not (0 <= minute <= 59):
                raise ValueError(f"Minute must be 0-59, got: {minute}")

            return time(hour=hour, minute=minute)

        except (ValueError, TypeError) as e:
            raise ValueError(f"Invalid time format '{time_str}': {e}")

    def next_occurrence(self, from_time: Optional[datetime] = None, tz=None) -> datetime:
        """Get the next occurrence of this time, returned in UTC.

        The reference time is converted to the schedule timezone, the next local
        occurrence is computed there, and the result is converted back to UTC.
        """
        if tz is None:
            tz = timezone.utc
        if from_time is None:
            from_time = datetime.now(timezone.utc)
        ref_local = from_time.astimezone(tz)
        candidate_local = datetime.combine(ref_local.date(), self.time, tzinfo=tz)
        if candidate_local <= ref_local:
            candidate_local = candidate_local + timedelta(days=1)
        return candidate_local.astimezone(timezone.utc)

    def __str__(self) -> str:
        return f"ScheduleEntry({self.time_str})"

    def __repr__(self) -> str:
        return self.__str__()


class SyncScheduler:
    """Recurring trigger for the sync orchestrator."""

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = config_path or config.CHANNELS_CONFIG_PATH
        self.schedule_entries: List[ScheduleEntry] = []
        self.interval_minutes: Optional[int] = None
        self.last_run: Optional[datetime] = None
        self.schedule_timezone_name = "UTC"
        self.schedule_timezone = timezone.utc
        self._set_timezone(config.SCHEDULER_TIMEZONE)
        self._load_schedule()

    def _set_timezone(self, tz_name: Optional[str]) -> bool:
        if not tz_name:
            return False
        try:
            self.schedule_timezone = ZoneInfo(str(tz_name))
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning(f"Invalid timezone '{tz_name}', keeping '{self.schedule_timezone_name}'")
            return False
        self.schedule_timezone_name = str(tz_name)
        return True

    def _load_schedule(self) -> None:
        """Load the schedule from channels.yaml.

        Two formats are accepted for ``schedule``:

            schedule:
              - time: "06:30"
              - time: "18:30"

            schedule:
              timezone: Europe/Lisbon
              times: ["06:30", "18:30"]

        ``interval_minutes`` may sit at the top level or inside the mapping form.
        """
        self.schedule_entries = []
        self.interval_minutes = None
        config_data: Dict[str, Any] = {}

        if Path(self.config_path).exists():
            try:
                with open(self.config_path, 'r') as f:
                    config_data = yaml.safe_load(f) or {}
            except (OSError, yaml.YAMLError) as e:
                logger.error(f"Error loading schedule from {self.config_path}: {e}")
                config_data = {}
        else:
            logger.warning(f"Config file not found: {self.config_path}")

        if not isinstance(config_data, dict):
            config_data = {}

        global_schedule = config_data.get('schedule')
        interval = config_data.get('interval_minutes')
        if isinstance(global_schedule, list):
            raw_entries = global_schedule
        elif isinstance(global_schedule, dict):
            tz_name = global_schedule.get('timezone') or global_schedule.get('tz')
            if tz_name and self._set_timezone(tz_name):
                logger.info(f"Using schedule timezone from config: {self.schedule_timezone_name}")
            raw_entries = global_schedule.get('times') or []
            if not isinstance(raw_entries, list):
                logger.error("Schedule 'times' must be a list, ignoring")
                raw_entries = []
            interval = global_schedule.get('interval_minutes', interval)
        else:
            raw_entries = []

        for entry in raw_entries:
            try:
                if isinstance(entry, dict) and 'time' in entry:
                    self.schedule_entries.append(ScheduleEntry(entry['time']))
                elif isinstance(entry, str):
                    self.schedule_entries.append(ScheduleEntry(entry))
                else:
                    logger.warning(f"Invalid schedule entry format: {entry}")
            except ValueError as e:
                logger.error(f"Failed to parse schedule entry {entry}: {e}")

        if interval is not None:
            try:
                minutes = int(interval)
            except (TypeError, ValueError):
                logger.error(f"Invalid interval_minutes '{interval}', ignoring")
            else:
                if minutes > 0:
                    self.interval_minutes = minutes
                else:
                    logger.error(f"interval_minutes must be positive, got {minutes}")

        if not self.schedule_entries and self.interval_minutes is None:
            self.interval_minutes = config.FETCH_INTERVAL_MINUTES

        if self.schedule_entries:
            times_str = ", ".join(entry.time_str for entry in self.schedule_entries)
            logger.info(f"Scheduled times ({self.schedule_timezone_name}): {times_str}")
        if self.interval_minutes:
            logger.info(f"Sync interval: every {self.interval_minutes} minutes")

    def get_next_run_time(self, from_time: Optional[datetime] = None) -> Optional[datetime]:
        """Earliest upcoming run across daily times and the interval."""
        if from_time is None:
            from_time = datetime.now(timezone.utc)

        candidates = [entry.next_occurrence(from_time, self.schedule_timezone) for entry in self.schedule_entries]
        if self.interval_minutes:
            if self.last_run is None:
                candidates.append(from_time)
            else:
                candidates.append(max(from_time, self.last_run + timedelta(minutes=self.interval_minutes)))

        return min(candidates) if candidates else None

    def seconds_until_next_run(self, from_time: Optional[datetime] = None) -> Optional[float]:
        if from_time is None:
            from_time = datetime.now(timezone.utc)
        next_run = self.get_next_run_time(from_time)
        if next_run is None:
            return None
        return (next_run - from_time).total_seconds()

    def get_schedule_status(self) -> Dict[str, Any]:
        now = datetime.now(timezone.utc)
        next_run = self.get_next_run_time(now)
        seconds_until = self.seconds_until_next_run(now)
        return {
            'current_time': now.isoformat(),
            'schedule_times': [entry.time_str for entry in self.schedule_entries],
            'interval_minutes': self.interval_minutes,
            'schedule_timezone': self.schedule_timezone_name,
            'last_run': self.last_run.isoformat() if self.last_run else None,
            'next_run_time': next_run.isoformat() if next_run else None,
            'seconds_until_next_run': seconds_until,
            'schedule_active': bool(self.schedule_entries or self.interval_minutes),
        }

    def print_schedule_status(self) -> None:
        status = self.get_schedule_status()

        print("\n🕐 Scheduler Status")
        print(f"⏰ Current time: {status['current_time']}")
        print(f"🌍 Timezone: {status['schedule_timezone']}")
        if status['schedule_times']:
            print(f"🎯 Daily times: {', '.join(status['schedule_times'])}")
        if status['interval_minutes']:
            print(f"🔁 Interval: every {status['interval_minutes']} minutes")
        if status['next_run_time']:
            print(f"⏭️ Next run: {status['next_run_time']}")
            print(f"⏳ Time until next run: {format_duration(status['seconds_until_next_run'])}")
        else:
            print("❌ No schedule configured")

    @trace_span("scheduler.main_loop", tracer_name="scheduler")
    async def run_scheduled(self, orchestrator, max_runs: Optional[int] = None) -> int:
        """Run sync cycles forever (or ``max_runs`` times).

        Errors inside a cycle are logged and the loop carries on. Cancellation
        stops the loop after the running cycle has let its in-flight channels
        finish.

        Returns:
            Number of cycles started.
        """
        runs = 0
        if config.SCHEDULER_RUN_IMMEDIATELY:
            logger.info("🎬 Running a sync cycle immediately on startup (SCHEDULER_RUN_IMMEDIATELY=true)")
            await self._run_cycle_with_span(orchestrator, datetime.now(timezone.utc))
            runs += 1

        while max_runs is None or runs < max_runs:
            try:
                next_time = self.get_next_run_time()
                if next_time is None:
                    logger.error("No next run time calculated, stopping scheduler")
                    break

                sleep_time = max(0.0, (next_time - datetime.now(timezone.utc)).total_seconds())
                if sleep_time:
                    logger.info(f"😴 Sleeping {format_duration(sleep_time)} until next sync cycle "
                                f"(timezone: {self.schedule_timezone_name})")
                await self._sleep_until(next_time, sleep_time)

                logger.info("⏰ Starting scheduled sync cycle")
                runs += 1
                await self._run_cycle_with_span(orchestrator, next_time)

            except asyncio.CancelledError:
                logger.info("📶 Scheduler cancelled, shutting down")
                break
            except Exception as e:
                logger.error(f"💥 Error in scheduled sync cycle: {e}")
                await asyncio.sleep(ERROR_RETRY_SECONDS)

        return runs

    @trace_span(
        "scheduler.sleep",
        tracer_name="scheduler",
        attr_from_args=lambda self, next_time, sleep_time: {
            "sleep.seconds": float(sleep_time),
            "scheduled.at": next_time.isoformat(),
        },
    )
    async def _sleep_until(self, next_time: datetime, sleep_time: float) -> None:
        await asyncio.sleep(sleep_time)

    @trace_span(
        "scheduler.cycle_run",
        tracer_name="scheduler",
        attr_from_args=lambda self, orchestrator, next_time: {"scheduled.at": next_time.isoformat()},
    )
    async def _run_cycle_with_span(self, orchestrator, next_time: datetime):
        self.last_run = datetime.now(timezone.utc)
        report = await orchestrator.run_cycle()
        logger.info(f"✅ Sync cycle finished in {format_duration(report.duration)}")
        return report


def create_scheduler(config_path: Optional[str] = None) -> SyncScheduler:
    return SyncScheduler(config_path)
