import time

from conftest import ledger_row
from expiration_sweeper import ExpirationSweeper
from models import ReservationStatus


def test_run_once_releases_expired_holds(manager, seller, admin, clock, episode):
    hold = manager.create_hold(seller, episode.id, "pre-roll", ttl=60)
    sweeper = ExpirationSweeper(manager, interval_seconds=60)

    assert sweeper.run_once() == 0
    clock.advance(minutes=2)
    assert sweeper.run_once() == 1
    assert manager.get_hold(admin, hold.id).status == ReservationStatus.EXPIRED
    assert ledger_row(manager, admin, episode.id, "pre-roll").available == 2


def test_background_thread_sweeps_and_stops(manager, seller, admin, clock, episode):
    hold = manager.create_hold(seller, episode.id, "post-roll", ttl=60)
    clock.advance(minutes=2)

    sweeper = ExpirationSweeper(manager, interval_seconds=0.05)
    sweeper.start()
    try:
        assert sweeper.running
        deadline = time.time() + 5
        while time.time() < deadline:
            if manager.get_hold(admin, hold.id).status == ReservationStatus.EXPIRED:
                break
            time.sleep(0.05)
    finally:
        sweeper.stop()

    assert not sweeper.running
    assert manager.get_hold(admin, hold.id).status == ReservationStatus.EXPIRED


def test_loop_survives_sweep_errors():
    calls = []

    class Flaky:
        def sweep_expired(self):
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("database unavailable")
            return 0

    sweeper = ExpirationSweeper(Flaky(), interval_seconds=0.01)
    sweeper.start()
    deadline = time.time() + 5
    while len(calls) < 3 and time.time() < deadline:
        time.sleep(0.01)
    sweeper.stop()

    assert len(calls) >= 3


def test_stop_before_start_is_noop(manager):
    sweeper = ExpirationSweeper(manager)
    sweeper.stop()
    assert not sweeper.running
