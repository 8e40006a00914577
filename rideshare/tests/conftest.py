"""
Centralized Test Configuration.
"""

import json
from datetime import datetime, timedelta
from decimal import Decimal

import httpx
import pytest
from jose import jwt
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import StaticPool

from rideshare.app.main import app
from rideshare.app.db.session import get_db, Base
from rideshare.app.core.config import settings
from rideshare.app.core.reliability import CircuitBreaker
import rideshare.app.core.redis_client as redis_client_module
from rideshare.app.models.user import User
from rideshare.app.models.ride import Ride
from rideshare.app.models.enums import UserRole
from rideshare.app.models.ride_enums import RideStatus, BookingType
from rideshare.app.services.cache import CacheService
from rideshare.app.services.geocoding import GeocodingClient, get_geocoding_client
from rideshare.app.services.notification_service import NotificationSink

# Setup In-Memory Test Database
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# Event handler to enable foreign keys for SQLite
from sqlalchemy import event
from sqlalchemy.pool import Pool

@event.listens_for(Pool, "connect")
def set_sqlite_pragma(dbapi_conn, connection_record):
    """Enable foreign key constraints for SQLite."""
    if 'sqlite' in str(type(dbapi_conn)):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

engine = create_async_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestingSessionLocal = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False
)


# Mock Redis for reliability in CI/CD
class MockRedis:
    def __init__(self):
        self.store = {}
        self._closed = False

    async def ping(self):
        if self._closed:
            return False
        return True

    async def get(self, key):
        if self._closed:
            return None
        return self.store.get(key)

    async def set(self, key, value, ex=None):
        if self._closed:
            return False
        self.store[key] = value
        return True

    async def delete(self, key):
        if self._closed:
            return 0
        if key in self.store:
            del self.store[key]
            return 1
        return 0

    async def flushdb(self):
        if not self._closed:
            self.store = {}

    async def aclose(self):
        self._closed = True
        self.store = {}


class FakeOpenRouteService:
    """
    httpx.MockTransport handler standing in for OpenRouteService.

    Known addresses live in 'places'; routes are straight three-point lines
    between the requested coordinates. Set 'overrides[path]' to a callable
    returning an httpx.Response to change a single endpoint.
    """

    def __init__(self):
        self.requests = []
        self.places = {
            "Umayyad Square, Damascus": (33.513, 36.276),
            "Bab Touma, Damascus": (33.5138, 36.3153),
            "Mezzeh, Damascus": (33.5003, 36.2463),
        }
        self.overrides = {}

    def calls(self, prefix: str) -> int:
        return sum(1 for request in self.requests if request.url.path.startswith(prefix))

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path in self.overrides:
            return self.overrides[path](request)
        if path.startswith("/v2/directions/") and "directions" in self.overrides:
            return self.overrides["directions"](request)

        if path == "/geocode/search":
            text = request.url.params["text"]
            if text not in self.places:
                return httpx.Response(200, json={"features": []})
            return httpx.Response(200, json={"features": [self._feature(text, *self.places[text])]})

        if path == "/geocode/reverse":
            lat = request.url.params["point.lat"]
            lng = request.url.params["point.lon"]
            return httpx.Response(200, json={"features": [{"properties": {"label": f"Street near {lat},{lng}"}}]})

        if path == "/geocode/autocomplete":
            text = request.url.params["text"].lower()
            features = [self._feature(label, *point) for label, point in self.places.items() if label.lower().startswith(text)]
            return httpx.Response(200, json={"features": features})

        if path.startswith("/v2/directions/"):
            body = json.loads(request.content)
            (lng1, lat1), (lng2, lat2) = body["coordinates"]
            count = body.get("alternative_routes", {}).get("target_count", 1)
            features = [
                {
                    "geometry": {"coordinates": [[lng1, lat1], [(lng1 + lng2) / 2, (lat1 + lat2) / 2 + index * 0.001], [lng2, lat2]]},
                    "properties": {
                        "summary": {"distance": 12000.4 + index * 500, "duration": 900.0 + index * 60},
                        "way_points": [0, 2],
                    },
                }
                for index in range(count)
            ]
            return httpx.Response(200, json={"type": "FeatureCollection", "features": features})

        return httpx.Response(404, json={"error": "unknown path"})

    @staticmethod
    def _feature(label, lat, lng):
        return {"geometry": {"coordinates": [lng, lat]}, "properties": {"label": label}}


class RecordingSink(NotificationSink):
    def __init__(self, fail: bool = False):
        self.sent = []
        self.fail = fail

    async def notify(self, user_id, kind, title, body, metadata=None):
        if self.fail:
            raise RuntimeError("push gateway down")
        self.sent.append({"user_id": user_id, "kind": kind.value, "metadata": metadata or {}})

    def kinds_for(self, user_id):
        return [item["kind"] for item in self.sent if item["user_id"] == user_id]


# Redis Fixture (Session Scope)
@pytest.fixture(scope="session")
def redis_client_session():
    return MockRedis()

@pytest.fixture(scope="session", autouse=True)
def apply_overrides(redis_client_session):
    """Apply overrides once for the session."""
    original_client = redis_client_module.redis_client
    redis_client_module.redis_client = redis_client_session

    async def override_get_db():
        async with TestingSessionLocal() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    yield

    app.dependency_overrides = {}
    redis_client_module.redis_client = original_client

@pytest.fixture(autouse=True)
async def setup_database(redis_client_session):
    """Create tables before each test function and drop after."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    await redis_client_session.flushdb()

    yield

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
def fake_ors():
    return FakeOpenRouteService()


@pytest.fixture
async def geocoder(fake_ors):
    """GeocodingClient wired to the fake provider, no retry delays, no cache."""
    client = GeocodingClient(
        api_key="test-key",
        retry_backoffs=(0, 0),
        circuit_breaker=CircuitBreaker(failure_threshold=100),
        transport=httpx.MockTransport(fake_ors),
    )
    app.dependency_overrides[get_geocoding_client] = lambda: client
    yield client
    app.dependency_overrides.pop(get_geocoding_client, None)
    await client.aclose()


@pytest.fixture
def cached_geocoder_factory(fake_ors):
    def build(enabled: bool = True):
        return GeocodingClient(
            api_key="test-key",
            retry_backoffs=(0, 0),
            cache=CacheService(MockRedis(), ttl_seconds=60, enabled=enabled),
            transport=httpx.MockTransport(fake_ors),
        )
    return build


@pytest.fixture
async def client(geocoder):
    """Async client for testing."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

# Shared session for fixture data creation
@pytest.fixture
async def db_session():
    async with TestingSessionLocal() as session:
        yield session


@pytest.fixture
async def users():
    """
    driver, second driver, two passengers and an admin.

    Written through their own session, so the returned objects are
    detached and survive rollbacks in db_session.
    """
    people = {
        "driver": User(email="driver@example.com", username="driver", first_name="Sami", role=UserRole.DRIVER),
        "other_driver": User(email="driver2@example.com", username="driver2", role=UserRole.DRIVER),
        "passenger": User(email="p1@example.com", username="passenger", role=UserRole.PASSENGER),
        "passenger2": User(email="p2@example.com", username="passenger2", role=UserRole.PASSENGER),
        "admin": User(email="admin@example.com", username="admin", role=UserRole.ADMIN),
    }
    async with TestingSessionLocal() as session:
        session.add_all(people.values())
        await session.commit()
    return people


def auth_headers(user: User, expires_in: timedelta = timedelta(hours=1)) -> dict:
    """Bearer header with a token shaped like the auth service's."""
    payload = {
        "sub": user.username,
        "user_id": user.id,
        "role": user.role.value,
        "exp": datetime.utcnow() + expires_in,
    }
    token = jwt.encode(payload, settings.secret_key, algorithm=settings.algorithm)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def auth():
    return auth_headers


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def failing_sink():
    return RecordingSink(fail=True)


@pytest.fixture
def ride_factory():
    """Insert a ride row directly, bypassing geocoding. Returns a detached Ride."""
    async def build(
        driver: User,
        seats: int = 2,
        booking_type: BookingType = BookingType.DIRECT,
        departure_time: datetime = None,
        pickup=(33.513, 36.276),
        destination=(33.5138, 36.3153),
        route_geometry=None,
        status: RideStatus = RideStatus.ACTIVE,
        price_per_seat: Decimal = Decimal("15000.00"),
    ) -> Ride:
        ride = Ride(
            driver_id=driver.id,
            pickup_address="Pickup",
            pickup_lat=pickup[0],
            pickup_lng=pickup[1],
            destination_address="Destination",
            destination_lat=destination[0],
            destination_lng=destination[1],
            distance=4000,
            duration=600,
            route_geometry=route_geometry,
            offered_seats=seats,
            available_seats=seats,
            price_per_seat=price_per_seat,
            departure_time=departure_time or datetime.utcnow() + timedelta(days=1),
            booking_type=booking_type,
            status=status,
        )
        async with TestingSessionLocal() as session:
            session.add(ride)
            await session.commit()
        return ride
    return build
