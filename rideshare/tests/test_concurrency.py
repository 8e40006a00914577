"""
Concurrent bookings against one ride on a file-backed SQLite database.

The in-memory test engine shares a single connection, so this module
builds its own engine with one connection per session and write locking
enabled.
"""

import asyncio
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession

from rideshare.app.core.exceptions import InsufficientSeats
from rideshare.app.db.session import Base, enable_sqlite_write_locking
from rideshare.app.models.booking import Booking
from rideshare.app.models.enums import UserRole
from rideshare.app.models.ride import Ride
from rideshare.app.models.ride_enums import RideStatus, BookingStatus
from rideshare.app.models.user import User
from rideshare.app.services.booking_engine import BookingEngine


@pytest.fixture
async def file_sessions(tmp_path):
    engine = enable_sqlite_write_locking(
        create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'rides.db'}", connect_args={"timeout": 30})
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


async def seed(sessions, seats: int):
    driver = User(email="d@example.com", username="d", role=UserRole.DRIVER)
    riders = [
        User(email="a@example.com", username="a", role=UserRole.PASSENGER),
        User(email="b@example.com", username="b", role=UserRole.PASSENGER),
    ]
    async with sessions() as session:
        session.add_all([driver, *riders])
        await session.commit()
        ride = Ride(
            driver_id=driver.id,
            pickup_address="Umayyad Square", pickup_lat=33.513, pickup_lng=36.276,
            destination_address="Bab Touma", destination_lat=33.5138, destination_lng=36.3153,
            distance=4000, duration=600,
            offered_seats=seats, available_seats=seats,
            price_per_seat=Decimal("15000.00"),
            departure_time=datetime.utcnow() + timedelta(days=1),
        )
        session.add(ride)
        await session.commit()
    return ride.id, [rider.id for rider in riders]


async def attempt(sessions, engine, ride_id, user_id, seats):
    async with sessions() as session:
        try:
            booking = await engine.book(session, ride_id, user_id, seats)
            return booking.seats
        except InsufficientSeats as exc:
            return exc


async def test_two_bookings_race_for_the_last_seats(file_sessions, sink):
    ride_id, (first, second) = await seed(file_sessions, seats=2)
    engine = BookingEngine(notifier=sink)

    outcomes = await asyncio.gather(
        attempt(file_sessions, engine, ride_id, first, 1),
        attempt(file_sessions, engine, ride_id, second, 2),
    )

    winners = [outcome for outcome in outcomes if isinstance(outcome, int)]
    losers = [outcome for outcome in outcomes if isinstance(outcome, InsufficientSeats)]
    assert len(winners) == 1
    assert len(losers) == 1

    async with file_sessions() as session:
        ride = await session.get(Ride, ride_id)
        booked = await session.scalar(
            select(func.sum(Booking.seats)).where(Booking.ride_id == ride_id, Booking.status == BookingStatus.CONFIRMED)
        )
        bookings = await session.scalar(select(func.count(Booking.id)))

    assert bookings == 1
    assert booked == winners[0]
    assert ride.available_seats == 2 - winners[0]
    assert ride.status == (RideStatus.FULL if winners[0] == 2 else RideStatus.ACTIVE)


async def test_many_single_seat_bookings_never_oversell(file_sessions):
    driver = User(email="d@example.com", username="d", role=UserRole.DRIVER)
    riders = [User(email=f"r{i}@example.com", username=f"r{i}", role=UserRole.PASSENGER) for i in range(6)]
    async with file_sessions() as session:
        session.add_all([driver, *riders])
        await session.commit()
        ride = Ride(
            driver_id=driver.id,
            pickup_address="Mezzeh", pickup_lat=33.5003, pickup_lng=36.2463,
            destination_address="Bab Touma", destination_lat=33.5138, destination_lng=36.3153,
            distance=7000, duration=900,
            offered_seats=4, available_seats=4,
            price_per_seat=Decimal("10000.00"),
            departure_time=datetime.utcnow() + timedelta(days=1),
        )
        session.add(ride)
        await session.commit()
    engine = BookingEngine()

    outcomes = await asyncio.gather(*(
        attempt(file_sessions, engine, ride.id, rider.id, 1) for rider in riders
    ))

    assert sum(1 for outcome in outcomes if isinstance(outcome, int)) == 4
    async with file_sessions() as session:
        state = await session.get(Ride, ride.id)
    assert state.available_seats == 0
    assert state.status == RideStatus.FULL
