from datetime import date, datetime, timedelta, timezone

import pytest

from context import (
    APPROVE_HOLDS, MANAGE_EXCLUSIVITY, MANAGE_INVENTORY, VIEW_ALL_HOLDS, RequestContext,
)
from database_manager import DatabaseManager
from events import EventBus
from reservation_manager import ReservationManager
from schedule_binder import ScheduleBinder

ORG_ID = "org_test"
SHOW_ID = "show_s"
AIR_DATE = date(2030, 1, 15)


class FakeClock:
    """Deterministic stand-in for utcnow."""

    def __init__(self, start):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def db(tmp_path):
    manager = DatabaseManager(f"sqlite:///{tmp_path / 'inventory.db'}", retries=3, retry_backoff=0.01)
    yield manager
    manager.drop_all()


@pytest.fixture
def clock():
    return FakeClock(datetime(2030, 1, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def published():
    return []


@pytest.fixture
def bus(published):
    bus = EventBus()
    bus.subscribe_all(published.append)
    return bus


@pytest.fixture
def manager(db, bus, clock):
    return ReservationManager(db, bus=bus, clock=clock)


@pytest.fixture
def binder(manager):
    return ScheduleBinder(manager)


@pytest.fixture
def seller():
    return RequestContext.build(ORG_ID, "seller_1")


@pytest.fixture
def other_seller():
    return RequestContext.build(ORG_ID, "seller_2")


@pytest.fixture
def admin():
    return RequestContext.build(
        ORG_ID, "admin_1", [APPROVE_HOLDS, VIEW_ALL_HOLDS, MANAGE_EXCLUSIVITY, MANAGE_INVENTORY],
    )


@pytest.fixture
def show(db, manager, admin):
    # 90 minute episodes: 2 pre-roll, 3 mid-roll, 1 post-roll by the default thresholds
    return db.run_in_transaction(
        lambda session: manager.catalog.register_show(
            session, admin, SHOW_ID, name="Signal & Noise", category="technology",
            default_episode_length=90,
        )
    )


def make_episode(db, manager, show_id=SHOW_ID, air_date=AIR_DATE, length=None):
    return db.run_in_transaction(
        lambda session: manager.catalog.resolve_episode(session, ORG_ID, show_id, air_date, length)
    )


@pytest.fixture
def episode(db, manager, show):
    return make_episode(db, manager)


def ledger_row(manager, ctx, episode_id, placement):
    _, entries = manager.episode_inventory(ctx, episode_id)
    return next(entry for entry in entries if entry.placement_type.value == placement)


def assert_balanced(manager, ctx, episode_id):
    _, entries = manager.episode_inventory(ctx, episode_id)
    for entry in entries:
        assert entry.available >= 0 and entry.reserved >= 0 and entry.booked >= 0
        assert entry.total_slots == entry.available + entry.reserved + entry.booked
