"""
Ride search.

A SQL prefilter narrows rides to the requested date, seat count and
active status; the two spatial predicates from services/geo.py are then
evaluated per ride and combined with OR.
"""

import logging
from datetime import date, datetime, time, timedelta
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from rideshare.app.core.config import settings
from rideshare.app.models.ride import Ride
from rideshare.app.models.ride_enums import RideStatus
from rideshare.app.services.geo import Point, matches_endpoints, matches_corridor

logger = logging.getLogger(__name__)


class RideSearchService:

    def __init__(self, radius_meters: Optional[float] = None, buffer_degrees: Optional[float] = None):
        self.radius_meters = radius_meters if radius_meters is not None else settings.search_radius_meters
        self.buffer_degrees = buffer_degrees if buffer_degrees is not None else settings.corridor_buffer_degrees

    def matches(self, ride: Ride, source: Point, destination: Point) -> bool:
        return (
            matches_endpoints(ride.pickup_point, ride.destination_point, source, destination, self.radius_meters)
            or matches_corridor(ride.route_geometry, source, destination, self.buffer_degrees)
        )

    async def search(
        self,
        db: AsyncSession,
        on_date: date,
        seats_required: int,
        source: Point,
        destination: Point,
    ) -> List[Ride]:
        """Active rides departing on 'on_date' with enough seats that serve source -> destination."""
        day_start = datetime.combine(on_date, time.min)
        result = await db.execute(
            select(Ride)
            .where(
                Ride.departure_time >= day_start,
                Ride.departure_time < day_start + timedelta(days=1),
                Ride.available_seats >= seats_required,
                Ride.status == RideStatus.ACTIVE
            )
            .options(selectinload(Ride.driver))
            .order_by(Ride.departure_time.asc())
        )
        candidates = result.scalars().all()

        rides = [ride for ride in candidates if self.matches(ride, source, destination)]
        logger.debug("Ride search on %s: %s candidates, %s matches", on_date, len(candidates), len(rides))
        return rides
