"""
Automatic sync schedule tests.

The scheduler is never started here; jobs stay pending so nothing runs.
"""
import pytest

from app import scheduler as scheduler_module
from app.scheduler import AUTO_SYNC_JOB_ID, get_schedule, run_auto_sync, schedule_auto_sync, scheduler
from app.services.exceptions import SyncInProgressError

from conftest import _run


@pytest.fixture(autouse=True)
def clean_schedule():
    yield
    if scheduler.get_job(AUTO_SYNC_JOB_ID):
        scheduler.remove_job(AUTO_SYNC_JOB_ID)


def test_schedule_replaces_existing_job():
    schedule_auto_sync(15)
    info = schedule_auto_sync(30)

    assert info["enabled"] is True
    assert info["interval_minutes"] == 30
    assert [job.id for job in scheduler.get_jobs()].count(AUTO_SYNC_JOB_ID) == 1


def test_zero_interval_disables():
    schedule_auto_sync(15)

    info = schedule_auto_sync(0)

    assert info == {"enabled": False, "interval_minutes": None, "next_run_time": None}
    assert get_schedule()["enabled"] is False


class BusyEngine:

    async def run_full_sync(self):
        raise SyncInProgressError("full_sync")


class CountingEngine:

    def __init__(self):
        self.runs = 0

    async def run_full_sync(self):
        self.runs += 1
        return {"customers": {"synced": 1, "errors": []}, "payments": {"synced": 0, "errors": ["x"]}}


def test_overlapping_scheduled_run_is_skipped(monkeypatch):
    monkeypatch.setattr(scheduler_module, "build_engine", lambda: BusyEngine())

    _run(run_auto_sync())


def test_scheduled_run_builds_fresh_engine(monkeypatch):
    engines = []

    def build():
        engines.append(CountingEngine())
        return engines[-1]

    monkeypatch.setattr(scheduler_module, "build_engine", build)

    _run(run_auto_sync())
    _run(run_auto_sync())

    assert len(engines) == 2
    assert all(engine.runs == 1 for engine in engines)
