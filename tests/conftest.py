# tests/conftest.py
import os
import sys
from datetime import date, datetime, time, timedelta, timezone
from pathlib import Path
from zoneinfo import ZoneInfo

# --- Part 1: Path Setup ---
# Must run before any application import so the flat packages (db, services, ...) resolve.
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))


# --- Part 2: Environment Loading ---
# Application modules read env at import time; tests never touch the developer database.
from dotenv import load_dotenv

load_dotenv(REPO_ROOT / ".env.test", override=False)
os.environ["DATABASE_URL"] = os.getenv("DATABASE_URL_TEST", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("HEALTH_SCHEDULER", "0")
os.environ.setdefault("CONFIG_PATH", str(REPO_ROOT / "tests" / "missing-config.yaml"))


# --- Part 3: Application Imports ---
import pytest
import pytest_asyncio
from sqlalchemy import func, select

from common.config_loader import CoreConfig
from db.models import AvailabilitySlot, Reservation, Restaurant, SeatingType, init_db
from db.session import make_engine, make_session_factory
from services.calendar_policy import WEEKDAYS
from services.reservation_service import ReservationCore

TZ = ZoneInfo("America/New_York")
# Monday 2026-06-01, 12:00 in New York
FIXED_NOW = datetime(2026, 6, 1, 16, 0, tzinfo=timezone.utc)
# Tuesday; open 17:00-22:00, last seating 21:00
DAY = date(2026, 6, 2)
HOURS = {d: {"open": "17:00", "close": "22:00"} for d in WEEKDAYS}


class Clock:
    """Injectable clock; tests move time forward explicitly."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def local_utc(day: date, hhmm: str) -> datetime:
    return datetime.combine(day, time.fromisoformat(hhmm), tzinfo=TZ).astimezone(timezone.utc)


# --- Part 4: Core Test Fixtures ---
@pytest.fixture
def clock():
    return Clock(FIXED_NOW)


@pytest_asyncio.fixture
async def engine(tmp_path):
    """
    A fresh file-backed SQLite database per test. File-backed (not :memory:) so the
    NullPool connections opened by concurrent tasks all see the same schema.
    """
    eng = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'reservations-test.db'}")
    await init_db(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def config():
    return CoreConfig()


@pytest_asyncio.fixture
async def restaurant(session_factory):
    async with session_factory() as db:
        r = Restaurant(
            name="Trattoria Prova",
            timezone="America/New_York",
            business_hours=dict(HOURS),
            settings={},
            is_active=True,
        )
        db.add(r)
        await db.commit()
        return r


@pytest_asyncio.fixture
async def core(session_factory, config, clock):
    c = ReservationCore(session_factory, config, clock=clock)
    yield c
    await c.aclose()


@pytest.fixture
def make_slot(session_factory, restaurant):
    async def _make(at="19:00", seating="indoor", capacity=4, booked=0, day=DAY, blocked=False, restaurant_id=None):
        async with session_factory() as db:
            s = AvailabilitySlot(
                restaurant_id=restaurant_id or restaurant.id,
                slot_datetime=local_utc(day, at),
                seating_type=SeatingType(seating),
                total_capacity=capacity,
                booked_count=booked,
                is_blocked=blocked,
            )
            db.add(s)
            await db.commit()
            return s

    return _make


@pytest.fixture
def booked_count(session_factory):
    async def _read(slot_id):
        async with session_factory() as db:
            return (
                await db.execute(select(AvailabilitySlot.booked_count).where(AvailabilitySlot.id == slot_id))
            ).scalar_one()

    return _read


@pytest.fixture
def reservation_count(session_factory):
    async def _count(restaurant_id):
        async with session_factory() as db:
            return (
                await db.execute(
                    select(func.count()).select_from(Reservation).where(Reservation.restaurant_id == restaurant_id)
                )
            ).scalar_one()

    return _count


@pytest.fixture
def booking_args(restaurant):
    """Keyword arguments for ReservationCore.create_booking; override per test."""

    def _args(**overrides):
        args = dict(
            restaurant_id=restaurant.id,
            customer_name="Ada Lovelace",
            phone="(555) 201-0001",
            email="ada@example.com",
            date=DAY.isoformat(),
            time="19:00",
            party_size=2,
            seating_pref="indoor",
            special_requests=None,
            sms_consent=False,
        )
        args.update(overrides)
        return args

    return _args
