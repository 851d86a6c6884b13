"""
Runtime composition and scheduler backend tests
"""
from unittest.mock import MagicMock

from apscheduler.jobstores.base import JobLookupError

from guest_dashboard.config import Settings
from guest_dashboard.models.domain import AlertKind, ResourceKind
from guest_dashboard.persistence import AsyncPersistenceQueue
from guest_dashboard.runtime import EXPIRY_SWEEP_JOB, LOCATION_POLL_JOB, GuestDashboardRuntime
from guest_dashboard.scheduler_backend import APSchedulerBackend

from conftest import HOTEL_CENTER, make_catalog, make_zones, sample_at


class FixedProvider:
    def __init__(self, clock):
        self.clock = clock

    def current_sample(self):
        return sample_at(HOTEL_CENTER, self.clock)


class TestRuntime:
    def test_defaults_load_bundled_config(self, clock, scheduler):
        rt = GuestDashboardRuntime(Settings(PERSISTENCE_ENABLED=False), clock=clock, scheduler=scheduler)
        try:
            assert len(rt.zones) == 3
            assert {i.id for i in rt.inventory.list_items()} == {"bev-001", "bev-002", "snk-001", "amn-001"}
            assert len(rt.orchestrator.trigger_rules()) == 6
            assert rt.persistence is None
        finally:
            rt.close()

    def test_start_registers_sweep(self, runtime, scheduler):
        runtime.start()
        assert scheduler.has_job(EXPIRY_SWEEP_JOB)
        assert not scheduler.has_job(LOCATION_POLL_JOB)

    def test_periodic_sweep_raises_expired(self, runtime, scheduler):
        runtime.start()
        scheduler.advance(hours=48)
        kinds = {a.kind for a in runtime.inventory.alerts("bev-002")}
        assert AlertKind.EXPIRED in kinds

    def test_location_poll_job(self, settings, clock, scheduler, sink):
        rt = GuestDashboardRuntime(
            settings=settings,
            clock=clock,
            scheduler=scheduler,
            persistence=sink,
            location_provider=FixedProvider(clock),
            zones=make_zones(),
            trigger_rules=[],
            catalog=make_catalog(),
        )
        try:
            rt.start()
            assert scheduler.has_job(LOCATION_POLL_JOB)
            scheduler.advance(settings.LOCATION_POLL_SECONDS)
            assert rt.state.current_snapshot().is_inside("hotel-main")
        finally:
            rt.close()

    def test_close_removes_timers(self, runtime, scheduler):
        runtime.start()
        runtime.reservations.place_hold(ResourceKind.INVENTORY, "snk-001", "guest-1", quantity=1)
        runtime.close()
        assert scheduler.get_jobs() == []

    def test_context_manager(self, settings, clock, scheduler):
        with GuestDashboardRuntime(settings, clock=clock, scheduler=scheduler,
                                   zones=make_zones(), catalog=make_catalog()) as rt:
            assert scheduler.has_job(EXPIRY_SWEEP_JOB)
            assert rt.tracker.available
        assert not scheduler.has_job(EXPIRY_SWEEP_JOB)

    def test_persistence_from_settings(self, clock, scheduler):
        settings = Settings(PERSISTENCE_ENABLED=True, DATABASE_URL="sqlite:///:memory:")
        rt = GuestDashboardRuntime(settings, clock=clock, scheduler=scheduler, catalog=make_catalog())
        try:
            assert isinstance(rt.persistence, AsyncPersistenceQueue)
        finally:
            rt.close()

    def test_owned_scheduler_is_apscheduler(self, clock):
        rt = GuestDashboardRuntime(Settings(PERSISTENCE_ENABLED=False), clock=clock, catalog=make_catalog())
        try:
            assert isinstance(rt.scheduler, APSchedulerBackend)
        finally:
            rt.close()


class TestAPSchedulerBackend:
    def test_add_job_replaces_existing(self):
        mock_scheduler = MagicMock()
        backend = APSchedulerBackend(scheduler=mock_scheduler)
        func = lambda: None
        backend.add_job("hold-expiry:RSV-1", func, "date", run_date="2026-01-01T12:05:00+00:00")

        mock_scheduler.add_job.assert_called_once_with(
            func,
            trigger="date",
            id="hold-expiry:RSV-1",
            replace_existing=True,
            run_date="2026-01-01T12:05:00+00:00",
        )

    def test_remove_missing_job_is_ignored(self):
        mock_scheduler = MagicMock()
        mock_scheduler.remove_job.side_effect = JobLookupError("gone")
        backend = APSchedulerBackend(scheduler=mock_scheduler)
        backend.remove_job("gone")
        mock_scheduler.remove_job.assert_called_once_with("gone")

    def test_get_job_not_found(self):
        mock_scheduler = MagicMock()
        mock_scheduler.get_job.return_value = None
        backend = APSchedulerBackend(scheduler=mock_scheduler)
        assert backend.get_job("missing") is None
        assert not backend.has_job("missing")

    def test_get_jobs(self):
        mock_job = MagicMock()
        mock_job.id = "inventory-expiry-sweep"
        mock_job.trigger = "interval[1:00:00]"
        mock_job.next_run_time = None
        mock_scheduler = MagicMock()
        mock_scheduler.get_jobs.return_value = [mock_job]
        backend = APSchedulerBackend(scheduler=mock_scheduler)

        assert backend.get_jobs() == [
            {"id": "inventory-expiry-sweep", "trigger": "interval[1:00:00]", "next_run_time": None}
        ]

    def test_start_and_shutdown(self):
        mock_scheduler = MagicMock()
        mock_scheduler.running = False
        backend = APSchedulerBackend(scheduler=mock_scheduler)
        backend.start()
        mock_scheduler.start.assert_called_once()

        mock_scheduler.running = True
        backend.shutdown()
        mock_scheduler.shutdown.assert_called_once_with(wait=False)

    def test_default_scheduler_created(self):
        from apscheduler.schedulers.background import BackgroundScheduler
        backend = APSchedulerBackend()
        assert isinstance(backend.scheduler, BackgroundScheduler)
        assert not backend.running

