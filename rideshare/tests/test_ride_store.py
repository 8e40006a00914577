"""
RideStore: creation with geocoding, cancellation, completion and queries.
"""

from datetime import datetime, timedelta
from decimal import Decimal

import httpx
import pytest
from sqlalchemy import select, func

from rideshare.app.core.exceptions import (
    AlreadyCancelled,
    GeocodeNotFound,
    IdenticalEndpoints,
    InvalidDepartureTime,
    InvalidRideTransition,
    InvalidRouteSelection,
    MissingLocationData,
    NotOwner,
    ProviderUnavailable,
    RideNotFound,
)
from rideshare.app.models.booking import Booking
from rideshare.app.models.ride import Ride
from rideshare.app.models.ride_enums import RideStatus, BookingStatus
from rideshare.app.schemas.ride import RideCreate
from rideshare.app.services.booking_engine import BookingEngine
from rideshare.app.services.ride_store import RideStore


def ride_input(**overrides) -> RideCreate:
    data = {
        "pickup_address": "Umayyad Square, Damascus",
        "destination_address": "Bab Touma, Damascus",
        "departure_time": datetime.utcnow() + timedelta(days=1),
        "available_seats": 3,
        "price_per_seat": Decimal("15000"),
    }
    data.update(overrides)
    return RideCreate(**data)


async def count_rides(db) -> int:
    return await db.scalar(select(func.count(Ride.id)))


async def test_create_from_addresses(db_session, users, geocoder):
    ride = await RideStore(geocoder=geocoder).create(db_session, users["driver"].id, ride_input())

    assert ride.id is not None
    assert ride.status == RideStatus.ACTIVE
    assert ride.pickup_address == "Umayyad Square, Damascus"
    assert ride.pickup_point == (33.513, 36.276)
    assert ride.destination_point == (33.5138, 36.3153)
    assert ride.distance == 12000
    assert ride.duration == 900
    assert ride.offered_seats == ride.available_seats == 3
    assert ride.route_geometry[0] == [36.276, 33.513]
    assert ride.chosen_route_index is None


async def test_create_from_coordinates_uses_reverse_geocoded_label(db_session, users, geocoder, fake_ors):
    data = ride_input(pickup_address=None, pickup_lat=33.5, pickup_lng=36.2)

    ride = await RideStore(geocoder=geocoder).create(db_session, users["driver"].id, data)

    assert ride.pickup_address == "Street near 33.5,36.2"
    assert fake_ors.calls("/geocode/search") == 1
    assert fake_ors.calls("/geocode/reverse") == 1


async def test_reverse_geocode_failure_falls_back_to_coordinates(db_session, users, geocoder, fake_ors):
    fake_ors.overrides["/geocode/reverse"] = lambda request: httpx.Response(500)
    data = ride_input(pickup_address=None, pickup_lat=33.5, pickup_lng=36.2)

    ride = await RideStore(geocoder=geocoder).create(db_session, users["driver"].id, data)

    assert ride.pickup_address == "33.5, 36.2"


async def test_reverse_geocode_non_object_feature_falls_back_to_coordinates(db_session, users, geocoder, fake_ors):
    fake_ors.overrides["/geocode/reverse"] = lambda request: httpx.Response(200, json={"features": ["oops"]})
    data = ride_input(pickup_address=None, pickup_lat=33.5, pickup_lng=36.2)

    ride = await RideStore(geocoder=geocoder).create(db_session, users["driver"].id, data)

    assert ride.pickup_address == "33.5, 36.2"


async def test_encoded_route_geometry_is_stored_as_null(db_session, users, geocoder, fake_ors):
    fake_ors.overrides["directions"] = lambda request: httpx.Response(200, json={"features": [{
        "geometry": "encodedpolyline",
        "properties": {"summary": {"distance": 5000, "duration": 420}},
    }]})

    ride = await RideStore(geocoder=geocoder).create(db_session, users["driver"].id, ride_input())

    assert ride.route_geometry is None
    assert ride.distance == 5000
    assert await count_rides(db_session) == 1


async def test_unknown_address_writes_no_ride(db_session, users, geocoder):
    data = ride_input(destination_address="Nowhere Street 404")

    with pytest.raises(GeocodeNotFound) as exc_info:
        await RideStore(geocoder=geocoder).create(db_session, users["driver"].id, data)

    assert exc_info.value.message.startswith("Could not create ride: ")
    assert exc_info.value.details["stage"] == "ride_creation"
    assert await count_rides(db_session) == 0


async def test_provider_outage_writes_no_ride(db_session, users, geocoder, fake_ors):
    fake_ors.overrides["directions"] = lambda request: httpx.Response(504)

    with pytest.raises(ProviderUnavailable):
        await RideStore(geocoder=geocoder).create(db_session, users["driver"].id, ride_input())

    assert await count_rides(db_session) == 0


async def test_endpoint_without_location_data(db_session, users, geocoder):
    data = ride_input(pickup_address=None, pickup_lat=33.5)

    with pytest.raises(MissingLocationData) as exc_info:
        await RideStore(geocoder=geocoder).create(db_session, users["driver"].id, data)
    assert exc_info.value.details["endpoint"] == "pickup"


async def test_identical_endpoints_rejected(db_session, users, geocoder):
    data = ride_input(destination_address="Umayyad Square, Damascus")

    with pytest.raises(IdenticalEndpoints):
        await RideStore(geocoder=geocoder).create(db_session, users["driver"].id, data)
    assert await count_rides(db_session) == 0


async def test_malformed_geometry_is_dropped(db_session, users, geocoder, fake_ors):
    fake_ors.overrides["directions"] = lambda request: httpx.Response(200, json={"features": [{
        "geometry": {"coordinates": [[36.276, 33.513], ["bad"], [36.3153, 33.5138]]},
        "properties": {"summary": {"distance": 5000, "duration": 420}},
    }]})
    store = RideStore(geocoder=geocoder)

    first = await store.create(db_session, users["driver"].id, ride_input())
    second = await store.create(db_session, users["driver"].id, ride_input())

    assert first.route_geometry is None
    assert second.route_geometry is None
    assert first.distance == 5000
    assert await count_rides(db_session) == 2


async def test_chosen_route_alternative(db_session, users, geocoder):
    ride = await RideStore(geocoder=geocoder).create(db_session, users["driver"].id, ride_input(route_index=1))

    assert ride.chosen_route_index == 1
    assert ride.distance == 12500


async def test_route_index_outside_alternatives(db_session, users, geocoder):
    with pytest.raises(InvalidRouteSelection):
        await RideStore(geocoder=geocoder).create(db_session, users["driver"].id, ride_input(route_index=7))
    assert await count_rides(db_session) == 0


async def test_departure_too_soon(db_session, users, geocoder, fake_ors):
    data = ride_input(departure_time=datetime.utcnow() + timedelta(minutes=2))

    with pytest.raises(InvalidDepartureTime):
        await RideStore(geocoder=geocoder).create(db_session, users["driver"].id, data)
    assert fake_ors.requests == []


async def test_get_by_id_missing(db_session):
    with pytest.raises(RideNotFound):
        await RideStore().get_by_id(db_session, 12345)


async def test_cancel_twice(db_session, users, ride_factory):
    ride = await ride_factory(users["driver"])
    store = RideStore()

    await store.cancel(db_session, ride.id, users["driver"].id)
    with pytest.raises(AlreadyCancelled):
        await store.cancel(db_session, ride.id, users["driver"].id)

    refreshed = await store.get_by_id(db_session, ride.id)
    assert refreshed.status == RideStatus.CANCELLED


async def test_cancel_by_other_driver(db_session, users, ride_factory):
    ride = await ride_factory(users["driver"])

    with pytest.raises(NotOwner):
        await RideStore().cancel(db_session, ride.id, users["other_driver"].id)

    refreshed = await RideStore().get_by_id(db_session, ride.id)
    assert refreshed.status == RideStatus.ACTIVE


async def test_cancel_releases_bookings_and_notifies_passengers(db_session, users, ride_factory, sink):
    ride = await ride_factory(users["driver"], seats=3, price_per_seat=Decimal("10000.00"))
    engine = BookingEngine()
    await engine.book(db_session, ride.id, users["passenger"].id, 2)
    await engine.book(db_session, ride.id, users["passenger2"].id, 1, status=BookingStatus.PENDING)

    cancelled = await RideStore(notifier=sink).cancel(db_session, ride.id, users["driver"].id)

    assert cancelled.status == RideStatus.CANCELLED
    assert cancelled.available_seats == 3
    statuses = (await db_session.execute(select(Booking.status).where(Booking.ride_id == ride.id))).scalars().all()
    assert set(statuses) == {BookingStatus.CANCELLED}

    assert sink.kinds_for(users["passenger"].id) == ["ride_cancelled"]
    assert sink.kinds_for(users["passenger2"].id) == ["ride_cancelled"]
    refund = next(item for item in sink.sent if item["user_id"] == users["passenger"].id)["metadata"]["refund_amount"]
    assert Decimal(refund) == Decimal("20000.00")


async def test_cancelled_ride_cannot_be_finished(db_session, users, ride_factory):
    ride = await ride_factory(users["driver"])
    store = RideStore()
    await store.cancel(db_session, ride.id, users["driver"].id)

    with pytest.raises(AlreadyCancelled):
        await store.finish(db_session, ride.id, users["driver"].id)


async def test_finish_requires_a_confirmed_booking(db_session, users, ride_factory):
    ride = await ride_factory(users["driver"])

    with pytest.raises(InvalidRideTransition):
        await RideStore().finish(db_session, ride.id, users["driver"].id)


async def test_completion_after_driver_and_passengers_confirm(db_session, users, ride_factory, sink):
    ride = await ride_factory(users["driver"], seats=2)
    engine = BookingEngine()
    first = await engine.book(db_session, ride.id, users["passenger"].id, 1)
    second = await engine.book(db_session, ride.id, users["passenger2"].id, 1)

    store = RideStore(notifier=sink)
    finished = await store.finish(db_session, ride.id, users["driver"].id)
    assert finished.status == RideStatus.AWAITING_CONFIRMATION
    assert finished.finished_at is not None
    assert sink.kinds_for(users["driver"].id) == ["ride_finished"]

    await store.confirm_driver_completion(db_session, ride.id, users["driver"].id)
    await BookingEngine(notifier=sink).confirm_passenger(db_session, first.id, users["passenger"].id)
    assert (await store.get_by_id(db_session, ride.id)).status == RideStatus.AWAITING_CONFIRMATION

    await BookingEngine(notifier=sink).confirm_passenger(db_session, second.id, users["passenger2"].id)

    completed = await store.get_by_id(db_session, ride.id)
    assert completed.status == RideStatus.COMPLETED
    assert completed.passengers_confirmed is True
    bookings = (await db_session.execute(select(Booking).where(Booking.ride_id == ride.id))).scalars().all()
    assert {b.status for b in bookings} == {BookingStatus.COMPLETED}
    assert all(b.completed_at is not None for b in bookings)
    assert "ride_completed" in sink.kinds_for(users["passenger"].id)


async def test_list_upcoming_excludes_past_rides(db_session, users, ride_factory):
    later = await ride_factory(users["driver"], departure_time=datetime.utcnow() + timedelta(days=2))
    sooner = await ride_factory(users["driver"], departure_time=datetime.utcnow() + timedelta(hours=3))
    await ride_factory(users["driver"], departure_time=datetime.utcnow() - timedelta(hours=1))

    rides = await RideStore().list_upcoming(db_session)

    assert [ride.id for ride in rides] == [sooner.id, later.id]
    assert rides[0].driver.username == "driver"


async def test_list_for_driver_counts_bookings(db_session, users, ride_factory):
    busy = await ride_factory(users["driver"], seats=3, departure_time=datetime.utcnow() + timedelta(days=1))
    quiet = await ride_factory(users["driver"], departure_time=datetime.utcnow() + timedelta(days=3))
    await ride_factory(users["other_driver"])
    engine = BookingEngine()
    await engine.book(db_session, busy.id, users["passenger"].id, 1)
    await engine.book(db_session, busy.id, users["passenger2"].id, 1)

    rows = await RideStore().list_for_driver(db_session, users["driver"].id)

    assert [(ride.id, count) for ride, count in rows] == [(quiet.id, 0), (busy.id, 2)]


async def test_delete_removes_bookings(db_session, users, ride_factory):
    ride = await ride_factory(users["driver"])
    await BookingEngine().book(db_session, ride.id, users["passenger"].id, 1)

    await RideStore().delete(db_session, ride.id)

    assert await count_rides(db_session) == 0
    assert await db_session.scalar(select(func.count(Booking.id))) == 0


async def test_update_status_rejects_reopening_cancelled_ride(db_session, users, ride_factory):
    ride = await ride_factory(users["driver"], status=RideStatus.CANCELLED)

    with pytest.raises(AlreadyCancelled):
        await RideStore().update_status(db_session, ride.id, RideStatus.ACTIVE)


async def test_update_status_follows_transition_table(db_session, users, ride_factory):
    ride = await ride_factory(users["driver"])
    ride_id = ride.id
    await BookingEngine().book(db_session, ride_id, users["passenger"].id, 1)

    with pytest.raises(InvalidRideTransition):
        await RideStore().update_status(db_session, ride_id, RideStatus.COMPLETED)

    updated = await RideStore().update_status(db_session, ride_id, RideStatus.AWAITING_CONFIRMATION)
    assert updated.status == RideStatus.AWAITING_CONFIRMATION
    assert updated.finished_at is not None


async def test_update_status_cannot_finish_ride_without_confirmed_booking(db_session, users, ride_factory):
    ride = await ride_factory(users["driver"])
    ride_id = ride.id

    with pytest.raises(InvalidRideTransition):
        await RideStore().update_status(db_session, ride_id, RideStatus.AWAITING_CONFIRMATION)

    unchanged = await db_session.get(Ride, ride_id, populate_existing=True)
    assert unchanged.status == RideStatus.ACTIVE
    assert unchanged.finished_at is None
