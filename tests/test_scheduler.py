from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from config import config
from scheduler import ScheduleEntry, SyncScheduler
from sync import CycleReport


def _write(tmp_path, text):
    path = tmp_path / "channels.yaml"
    path.write_text(text)
    return str(path)


def test_schedule_entry_parsing():
    assert ScheduleEntry("6:30").time.hour == 6
    assert ScheduleEntry('"18:05"').time.minute == 5
    for bad in ("24:00", "12:60", "noon", "1:2:3"):
        with pytest.raises(ValueError):
            ScheduleEntry(bad)


def test_next_occurrence_rolls_over_to_tomorrow():
    entry = ScheduleEntry("06:00")
    now = datetime(2026, 3, 1, 7, 0, tzinfo=timezone.utc)

    assert entry.next_occurrence(now) == datetime(2026, 3, 2, 6, 0, tzinfo=timezone.utc)


def test_next_occurrence_in_schedule_timezone():
    entry = ScheduleEntry("06:30")
    now = datetime(2026, 7, 1, 0, 0, tzinfo=timezone.utc)

    # Lisbon is UTC+1 in July
    assert entry.next_occurrence(now, ZoneInfo("Europe/Lisbon")) == datetime(2026, 7, 1, 5, 30, tzinfo=timezone.utc)


def test_load_mapping_schedule(tmp_path):
    path = _write(tmp_path, """
schedule:
  timezone: Europe/Lisbon
  times: ["06:30", {time: "18:30"}]
  interval_minutes: 45
""")
    scheduler = SyncScheduler(path)

    assert [e.time_str for e in scheduler.schedule_entries] == ["06:30", "18:30"]
    assert scheduler.interval_minutes == 45
    assert scheduler.schedule_timezone_name == "Europe/Lisbon"


def test_load_list_schedule_without_interval(tmp_path):
    path = _write(tmp_path, """
schedule:
  - time: "06:30"
  - bogus
  - time: "25:00"
""")
    scheduler = SyncScheduler(path)

    assert [e.time_str for e in scheduler.schedule_entries] == ["06:30"]
    assert scheduler.interval_minutes is None


def test_missing_file_falls_back_to_default_interval(tmp_path, monkeypatch):
    monkeypatch.setattr(config, 'FETCH_INTERVAL_MINUTES', 15)
    scheduler = SyncScheduler(str(tmp_path / "absent.yaml"))

    assert scheduler.schedule_entries == []
    assert scheduler.interval_minutes == 15


def test_next_run_uses_interval_after_last_run(tmp_path):
    scheduler = SyncScheduler(_write(tmp_path, "interval_minutes: 30\n"))
    now = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    assert scheduler.get_next_run_time(now) == now
    scheduler.last_run = now - timedelta(minutes=10)
    assert scheduler.get_next_run_time(now) == now + timedelta(minutes=20)


def test_next_run_picks_earliest_trigger(tmp_path):
    scheduler = SyncScheduler(_write(tmp_path, """
interval_minutes: 120
schedule:
  - time: "12:30"
"""))
    now = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
    scheduler.last_run = now

    assert scheduler.get_next_run_time(now) == datetime(2026, 3, 1, 12, 30, tzinfo=timezone.utc)
    assert scheduler.seconds_until_next_run(now) == 1800


class FakeOrchestrator:
    def __init__(self):
        self.cycles = 0

    async def run_cycle(self):
        self.cycles += 1
        return CycleReport()


@pytest.mark.asyncio
async def test_run_scheduled_runs_cycles(tmp_path, monkeypatch):
    monkeypatch.setattr(config, 'SCHEDULER_RUN_IMMEDIATELY', False)
    scheduler = SyncScheduler(_write(tmp_path, "interval_minutes: 60\n"))
    orchestrator = FakeOrchestrator()

    runs = await scheduler.run_scheduled(orchestrator, max_runs=1)

    assert runs == 1
    assert orchestrator.cycles == 1
    assert scheduler.last_run is not None


def test_schedule_status(tmp_path):
    scheduler = SyncScheduler(_write(tmp_path, 'schedule: ["06:00"]\n'))
    status = scheduler.get_schedule_status()

    assert status['schedule_active'] is True
    assert status['schedule_times'] == ["06:00"]
    assert status['next_run_time'] is not None
