from __future__ import annotations
from typing import Literal
from pydantic import BaseModel


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class ErrorResponse(BaseModel):
    error: str


# ---------------------------------------------------------------------------
# Stop lookups
# ---------------------------------------------------------------------------

class StationName(BaseModel):
    name: str
    variants: int
    sample_stop_id: str
    avg_lat: float
    avg_lon: float


class StationNamesResponse(BaseModel):
    ok: bool = True
    count: int
    names: list[StationName]


class RouteSummary(BaseModel):
    route_id: str
    route_short_name: str | None
    route_long_name: str | None
    direction_id: int | None
    headsigns: list[str]
    start_stop_name: str | None
    end_stop_name: str | None


class StopResult(BaseModel):
    stop_id: str
    stop_name: str
    parent_station: str | None = None
    stop_lat: float
    stop_lon: float
    routes: list[RouteSummary] | None = None


class StopsResponse(BaseModel):
    stops: list[StopResult]


class StopRouteMatch(BaseModel):
    stop_id: str
    stop_name: str
    parent_station: str | None
    stop_lat: float
    stop_lon: float
    route_id: str
    route_short_name: str | None


class StopRouteMatchesResponse(BaseModel):
    stops: list[StopRouteMatch]


class RoutesByStopResponse(BaseModel):
    routes: list[RouteSummary]


class NearbyStop(BaseModel):
    stop_id: str
    stop_name: str
    stop_lat: float
    stop_lon: float
    distance_m: float


class NearbyStopsResponse(BaseModel):
    stops: list[NearbyStop]


# ---------------------------------------------------------------------------
# GET /api/next-departures
# ---------------------------------------------------------------------------

class Departure(BaseModel):
    trip_id: str
    service_id: str
    route_id: str
    route_short_name: str | None
    route_long_name: str | None
    trip_headsign: str | None
    stop_sequence: int
    departure_time: str | None   # HH:MM:SS, may exceed 24:00:00
    arrival_time: str | None
    day_offset: int              # 0 or 86400
    realtime_departure_time: str | None
    realtime_arrival_time: str | None
    realtime_departure_seconds: int
    delay_seconds: int | None
    delay_minutes: float | None
    realtime_updated: bool
    realtime_updated_at: int | None


class DeparturesResponse(BaseModel):
    departures: list[Departure]


# ---------------------------------------------------------------------------
# GET /api/trip-stop-times
# ---------------------------------------------------------------------------

class TripInfo(BaseModel):
    trip_id: str
    route_id: str
    route_short_name: str | None
    route_long_name: str | None
    service_id: str
    direction_id: int | None
    trip_headsign: str | None


class TripStop(BaseModel):
    stop_id: str
    stop_name: str | None
    stop_sequence: int
    arrival_time: str | None
    departure_time: str | None
    arrival_seconds: int | None
    departure_seconds: int | None
    realtime_arrival_time: str | None
    realtime_departure_time: str | None
    realtime_arrival_seconds: int | None
    realtime_departure_seconds: int | None
    arrival_delay_seconds: int | None
    departure_delay_seconds: int | None
    delay_seconds: int | None
    delay_minutes: float | None
    realtime_available: bool
    realtime_updated: bool
    realtime_updated_at: int | None


class Journey(BaseModel):
    from_stop_id: str
    from_stop_name: str | None
    from_stop_sequence: int
    to_stop_id: str
    to_stop_name: str | None
    to_stop_sequence: int
    scheduled_travel_seconds: int | None
    scheduled_travel_minutes: float | None
    realtime_travel_seconds: int | None
    realtime_travel_minutes: float | None
    delta_seconds: int | None


class TripStopTimesResponse(BaseModel):
    trip: TripInfo
    journey: Journey | None
    stops: list[TripStop]


# ---------------------------------------------------------------------------
# Shapes
# ---------------------------------------------------------------------------

ShapeSource = Literal["shapes_table", "generated_shapes", "stop_times"]


class ShapePointOut(BaseModel):
    lat: float
    lon: float
    seq: int


class ShapeResponse(BaseModel):
    shape_id: str | None = None
    route_id: str | None = None
    direction_id: int | None = None
    trip_id: str | None = None
    points: list[ShapePointOut]
    source: ShapeSource


class ShapeListEntry(BaseModel):
    shape_id: str
    pts_count: int | None = None
    route_id: str | None = None
    direction_id: int | None = None
    created_at: str | None = None


class ShapeListResponse(BaseModel):
    source: Literal["shapes_table", "generated_shapes", "none"]
    shapes: list[ShapeListEntry]


# ---------------------------------------------------------------------------
# GET /health, POST /admin/*
# ---------------------------------------------------------------------------

class HealthResponse(BaseModel):
    status: Literal["ok"]
    timestamp: str
    stops: int
    trips: int
    generated_shapes: int
    explicit_shapes: bool
    import_running: bool
    realtime_running: bool
    realtime_last_fetched_at: str | None


class AdminResponse(BaseModel):
    ok: bool
    message: str
