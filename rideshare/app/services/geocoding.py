"""
Geocoding and routing client for OpenRouteService.

Resolves addresses to coordinates, coordinates to labels, and coordinate
pairs to route distance/duration/geometry. Calls are retried on transport
errors and 5xx responses, guarded by a circuit breaker, and cached.
"""

import logging
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional, Sequence

import httpx

from rideshare.app.core.config import settings
from rideshare.app.core.exceptions import (
    GeocodeMalformed,
    GeocodeNotFound,
    IdenticalEndpoints,
    InvalidCoordinates,
    ProviderUnavailable,
    RouteUnavailable,
)
from rideshare.app.core.reliability import CircuitBreaker, CircuitOpenError, retry_async
from rideshare.app.services.cache import CacheService, make_cache_key
from rideshare.app.services.geo import Point, are_identical_endpoints, is_valid_coordinate, is_number

logger = logging.getLogger(__name__)


@dataclass
class GeocodeResult:
    lat: float
    lng: float
    label: str


@dataclass
class RouteResult:
    distance: int  # meters
    duration: int  # seconds
    geometry: Optional[Any] = None  # raw provider polyline, validated by the caller


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


class _ServerError(Exception):
    """5xx from the provider; retried."""

    def __init__(self, response: httpx.Response):
        self.response = response
        super().__init__(f"HTTP {response.status_code}")


def _provider_error_message(response: httpx.Response) -> str:
    try:
        error = _as_dict(response.json()).get("error")
    except ValueError:
        return response.text[:200] or "Unknown API error"
    if isinstance(error, dict):
        return error.get("message") or "Unknown API error"
    return str(error or "Unknown API error")


class GeocodingClient:
    """OpenRouteService client (geocode, reverse geocode, autocomplete, directions)."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.openrouteservice.org",
        profile: str = "driving-car",
        timeout: float = 30.0,
        retry_backoffs: Sequence[float] = (0.5, 0.7),
        cache: Optional[CacheService] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.profile = profile
        self.retry_backoffs = tuple(retry_backoffs)
        self.cache = cache or CacheService(None, enabled=False)
        self.circuit_breaker = circuit_breaker or CircuitBreaker()
        self._http = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)

    async def aclose(self):
        await self._http.aclose()

    # ------------------------------------------------------------------ HTTP

    async def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        """
        Send one logical request.

        Returns 2xx/4xx responses to the caller. Transport failures and 5xx
        responses are retried and end in ProviderUnavailable.
        """
        async def attempt() -> httpx.Response:
            response = await self._http.request(method, path, **kwargs)
            if response.status_code >= 500:
                raise _ServerError(response)
            return response

        try:
            return await self.circuit_breaker.call(
                retry_async,
                attempt,
                backoffs=self.retry_backoffs,
                retry_on=(httpx.TransportError, _ServerError),
            )
        except CircuitOpenError:
            raise ProviderUnavailable("Routing provider temporarily disabled after repeated failures")
        except httpx.TimeoutException as exc:
            logger.error("OpenRouteService %s %s timed out: %s", method, path, exc)
            raise ProviderUnavailable("Routing provider timed out", details={"path": path})
        except httpx.TransportError as exc:
            logger.error("OpenRouteService %s %s connection failed: %s", method, path, exc)
            raise ProviderUnavailable("Routing provider unreachable", details={"path": path, "error": str(exc)})
        except _ServerError as exc:
            logger.error(
                "OpenRouteService %s %s failed with status %s",
                method, path, exc.response.status_code,
            )
            raise ProviderUnavailable(
                "Routing provider error",
                details={
                    "path": path,
                    "status": exc.response.status_code,
                    "error": _provider_error_message(exc.response),
                },
            )

    @staticmethod
    def _features(response: httpx.Response) -> List[Any]:
        try:
            data = response.json()
        except ValueError:
            return []
        features = _as_dict(data).get("features")
        return features if isinstance(features, list) else []

    def _raise_rejected(self, response: httpx.Response, path: str):
        message = _provider_error_message(response)
        logger.error("OpenRouteService %s rejected request (%s): %s", path, response.status_code, message)
        raise ProviderUnavailable(
            f"Routing provider rejected the request: {message}",
            details={"path": path, "status": response.status_code},
        )

    # ------------------------------------------------------------- Geocoding

    async def geocode(self, address: str) -> GeocodeResult:
        """Resolve free text to the top result's coordinates and label."""
        async def fetch() -> Dict[str, Any]:
            response = await self._send(
                "GET",
                "/geocode/search",
                params={"api_key": self.api_key, "text": address, "size": 1},
            )
            if response.is_error:
                self._raise_rejected(response, "/geocode/search")

            features = self._features(response)
            if not features:
                raise GeocodeNotFound(address)

            result = self._parse_feature(features[0], fallback_label=address)
            if result is None:
                raise GeocodeMalformed(address)
            return asdict(result)

        data = await self.cache.remember(make_cache_key("geocode", address), fetch)
        return GeocodeResult(**data)

    async def reverse_geocode(self, lat: float, lng: float) -> str:
        """Best-effort label for a coordinate; raises on any failure."""
        async def fetch() -> str:
            response = await self._send(
                "GET",
                "/geocode/reverse",
                params={"api_key": self.api_key, "point.lat": lat, "point.lon": lng, "size": 1},
            )
            if response.is_error:
                self._raise_rejected(response, "/geocode/reverse")

            features = self._features(response)
            label = _as_dict(_as_dict(features[0]).get("properties")).get("label") if features else None
            if not label or not isinstance(label, str):
                raise GeocodeNotFound(f"{lat},{lng}")
            return label

        return await self.cache.remember(make_cache_key("reverse", round(lat, 6), round(lng, 6)), fetch)

    async def autocomplete(self, text: str) -> List[GeocodeResult]:
        """Address suggestions; features without coordinates are skipped."""
        async def fetch() -> List[Dict[str, Any]]:
            response = await self._send(
                "GET",
                "/geocode/autocomplete",
                params={"api_key": self.api_key, "text": text},
            )
            if response.is_error:
                self._raise_rejected(response, "/geocode/autocomplete")

            results = []
            for feature in self._features(response):
                parsed = self._parse_feature(feature, fallback_label=text)
                if parsed is not None:
                    results.append(asdict(parsed))
            return results

        data = await self.cache.remember(make_cache_key("autocomplete", text), fetch)
        return [GeocodeResult(**item) for item in data]

    @staticmethod
    def _parse_feature(feature: Any, fallback_label: str) -> Optional[GeocodeResult]:
        if not isinstance(feature, dict):
            return None
        coordinates = _as_dict(feature.get("geometry")).get("coordinates")
        if (
            not isinstance(coordinates, (list, tuple))
            or len(coordinates) < 2
            or not is_valid_coordinate(coordinates[1], coordinates[0])
        ):
            return None

        label = _as_dict(feature.get("properties")).get("label")
        if not isinstance(label, str) or not label:
            label = fallback_label
        return GeocodeResult(lat=float(coordinates[1]), lng=float(coordinates[0]), label=label)

    # --------------------------------------------------------------- Routing

    async def route(self, origin: Point, destination: Point) -> RouteResult:
        """Primary route between two (lat, lng) points."""
        routes = await self.route_alternatives(origin, destination, count=1)
        return routes[0]

    async def route_alternatives(self, origin: Point, destination: Point, count: int = 3) -> List[RouteResult]:
        """Up to 'count' routes between two (lat, lng) points, best first."""
        for lat, lng in (origin, destination):
            if not is_valid_coordinate(lat, lng):
                raise InvalidCoordinates(lat, lng)
        if are_identical_endpoints(origin, destination):
            raise IdenticalEndpoints()

        path = f"/v2/directions/{self.profile}/geojson"

        async def fetch() -> List[Dict[str, Any]]:
            body: Dict[str, Any] = {
                "coordinates": [
                    [origin[1], origin[0]],
                    [destination[1], destination[0]],
                ]
            }
            if count > 1:
                body["alternative_routes"] = {
                    "target_count": count,
                    "weight_factor": 1.4,
                    "share_factor": 0.6,
                }

            response = await self._send(
                "POST",
                path,
                json=body,
                headers={"Authorization": self.api_key},
            )
            if response.status_code in (401, 403, 429):
                self._raise_rejected(response, path)
            if response.is_error:
                message = _provider_error_message(response)
                logger.error("OpenRouteService routing rejected (%s): %s", response.status_code, message)
                raise RouteUnavailable(f"Routing failed: {message}", details={"status": response.status_code})

            features = self._features(response)
            if not features:
                raise RouteUnavailable()
            return [asdict(self._parse_route(feature)) for feature in features[:count]]

        key = make_cache_key("route", self.profile, origin, destination, count)
        return [RouteResult(**item) for item in await self.cache.remember(key, fetch)]

    @staticmethod
    def _parse_route(feature: Any) -> RouteResult:
        if not isinstance(feature, dict):
            raise RouteUnavailable("Routing provider returned a malformed route")

        properties = feature.get("properties")
        summary = properties.get("summary") if isinstance(properties, dict) else None
        if not isinstance(summary, dict):
            raise RouteUnavailable("Routing provider returned a route without a summary")

        distance = summary.get("distance")
        duration = summary.get("duration")
        if not is_number(distance) or not is_number(duration) or distance < 0 or duration < 0:
            raise RouteUnavailable(
                "Routing provider returned a malformed route summary",
                details={"summary": summary},
            )

        geometry = feature.get("geometry")
        if not isinstance(geometry, dict):
            if geometry is not None:
                logger.warning("Dropping route geometry of type %s", type(geometry).__name__)
            geometry = {}
        return RouteResult(
            distance=int(round(distance)),
            duration=int(round(duration)),
            geometry=geometry.get("coordinates"),
        )



_client: Optional[GeocodingClient] = None


def get_geocoding_client() -> GeocodingClient:
    """
    FastAPI dependency returning the process-wide client.

    Built lazily from settings, backed by the shared Redis cache.
    """
    global _client
    if _client is None:
        from rideshare.app.core.redis_client import redis_client

        _client = GeocodingClient(
            api_key=settings.openroute_api_key,
            base_url=settings.openroute_base_url,
            profile=settings.openroute_profile,
            timeout=settings.provider_timeout_seconds,
            retry_backoffs=settings.provider_retry_backoff_seconds,
            cache=CacheService(
                redis_client,
                ttl_seconds=settings.geocode_cache_ttl_seconds,
                enabled=settings.geocode_cache_enabled,
            ),
            circuit_breaker=CircuitBreaker(
                failure_threshold=settings.provider_failure_threshold,
                reset_timeout=settings.provider_reset_timeout_seconds,
            ),
        )
    return _client


async def close_geocoding_client():
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None
