"""
Stop and route lookups used by clients to pick the stop_id / route_id
they then pass to the departure, itinerary and shape queries.

Stop names are not unique (platforms and poles of one station share a
name), so name lookups return every matching stop_id.
"""

import logging
import math
from collections import defaultdict
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from config import STOPS_NEAR_DEFAULT_RADIUS_KM, STOPS_NEAR_MAX_RESULTS
from db.models import Route, Stop, StopTime, Trip
from errors import BadInputError

logger = logging.getLogger(__name__)

KM_PER_DEGREE = 111


def station_names(session: Session) -> list[dict[str, Any]]:
    """Distinct stop names (case-insensitive) with variant count and centroid."""
    name_key = func.lower(Stop.stop_name)
    rows = session.execute(
        select(
            func.min(Stop.stop_name).label("name"),
            func.count().label("variants"),
            func.min(Stop.stop_id).label("sample_stop_id"),
            func.avg(Stop.stop_lat).label("avg_lat"),
            func.avg(Stop.stop_lon).label("avg_lon"),
        )
        .group_by(name_key)
        .order_by(func.lower(func.min(Stop.stop_name)))
    ).all()
    return [row._asdict() for row in rows]


def _stop_dict(stop: Stop) -> dict[str, Any]:
    return {
        "stop_id": stop.stop_id,
        "stop_name": stop.stop_name,
        "parent_station": stop.parent_station,
        "stop_lat": stop.stop_lat,
        "stop_lon": stop.stop_lon,
    }


def stops_by_name(session: Session, name: str | None, include_routes: bool = False) -> list[dict[str, Any]]:
    if not name:
        raise BadInputError("name", "name query param required")
    stops = session.scalars(
        select(Stop).where(Stop.stop_name.ilike(f"%{name}%")).order_by(Stop.stop_id)
    ).all()
    results = [_stop_dict(s) for s in stops]
    if not include_routes:
        return results

    summaries = _route_summaries(session, [s.stop_id for s in stops])
    for stop in results:
        stop["routes"] = summaries.get(stop["stop_id"], [])
    return results


def stop_ids_for_name_and_route(
    session: Session,
    name: str | None,
    route_id: str | None = None,
    route_short_name: str | None = None,
) -> list[dict[str, Any]]:
    """Stops matching name that are served by the given route."""
    if not name or (not route_id and not route_short_name):
        raise BadInputError("name", "name and route_id or route_short_name required")

    stmt = (
        select(
            StopTime.stop_id, Stop.stop_name, Stop.parent_station,
            Stop.stop_lat, Stop.stop_lon, Route.route_id, Route.route_short_name,
        )
        .join(Stop, Stop.stop_id == StopTime.stop_id)
        .join(Trip, Trip.trip_id == StopTime.trip_id)
        .join(Route, Route.route_id == Trip.route_id)
        .where(Stop.stop_name.ilike(f"%{name}%"))
    )
    if route_id:
        stmt = stmt.where(Route.route_id == route_id)
    else:
        stmt = stmt.where(Route.route_short_name == route_short_name)
    rows = session.execute(stmt.distinct().order_by(StopTime.stop_id)).all()
    return [row._asdict() for row in rows]


def routes_by_stop(session: Session, stop_id: str | None) -> list[dict[str, Any]]:
    """Route/direction combinations serving stop_id, by route short name."""
    if not stop_id:
        raise BadInputError("stop_id", "stop_id query param required")
    routes = _route_summaries(session, [stop_id]).get(stop_id, [])
    return sorted(routes, key=lambda r: (r["route_short_name"] or "", r["route_id"]))


def _route_summaries(session: Session, stop_ids: list[str]) -> dict[str, list[dict[str, Any]]]:
    """
    stop_id → [{route_id, route_short_name, route_long_name, direction_id,
                headsigns, start_stop_name, end_stop_name}]

    Terminal stop names come from a representative trip (lowest trip_id)
    of each route/direction at the stop.
    """
    if not stop_ids:
        return {}
    rows = session.execute(
        select(
            StopTime.stop_id, Route.route_id, Route.route_short_name, Route.route_long_name,
            Trip.direction_id, Trip.trip_headsign, Trip.trip_id,
        )
        .join(Trip, Trip.trip_id == StopTime.trip_id)
        .join(Route, Route.route_id == Trip.route_id)
        .where(StopTime.stop_id.in_(stop_ids))
    ).all()

    grouped: dict[tuple, dict[str, Any]] = {}
    for stop_id, route_id, short_name, long_name, direction_id, headsign, trip_id in rows:
        key = (stop_id, route_id, direction_id)
        entry = grouped.get(key)
        if entry is None:
            entry = grouped[key] = {
                "route_id": route_id,
                "route_short_name": short_name,
                "route_long_name": long_name or None,
                "direction_id": direction_id,
                "headsigns": [],
                "rep_trip_id": trip_id,
            }
        if headsign and headsign not in entry["headsigns"]:
            entry["headsigns"].append(headsign)
        entry["rep_trip_id"] = min(entry["rep_trip_id"], trip_id)

    terminals = _terminal_stop_names(session, {e["rep_trip_id"] for e in grouped.values()})

    by_stop: dict[str, list[dict[str, Any]]] = defaultdict(list)
    for (stop_id, _, _), entry in grouped.items():
        rep = entry.pop("rep_trip_id")
        entry["start_stop_name"], entry["end_stop_name"] = terminals.get(rep, (None, None))
        by_stop[stop_id].append(entry)
    return by_stop


def _terminal_stop_names(session: Session, trip_ids: set[str]) -> dict[str, tuple[str | None, str | None]]:
    """trip_id → (first stop name, last stop name) by stop_sequence."""
    if not trip_ids:
        return {}
    rows = session.execute(
        select(StopTime.trip_id, Stop.stop_name)
        .join(Stop, Stop.stop_id == StopTime.stop_id)
        .where(StopTime.trip_id.in_(sorted(trip_ids)))
        .order_by(StopTime.trip_id, StopTime.stop_sequence)
    ).all()
    terminals: dict[str, tuple[str | None, str | None]] = {}
    for trip_id, stop_name in rows:
        first = terminals[trip_id][0] if trip_id in terminals else stop_name
        terminals[trip_id] = (first, stop_name)
    return terminals


def stops_near(session: Session, lat: Any, lon: Any, radius_km: Any = None) -> list[dict[str, Any]]:
    """Stops within a bounding box around (lat, lon), nearest first."""
    try:
        lat = float(lat)
        lon = float(lon)
    except (TypeError, ValueError):
        raise BadInputError("lat", "lat and lon query params required")
    try:
        radius_km = STOPS_NEAR_DEFAULT_RADIUS_KM if radius_km in (None, "") else float(radius_km)
    except (TypeError, ValueError):
        raise BadInputError("radius", "radius must be a valid number")
    if math.isnan(lat) or math.isnan(lon):
        raise BadInputError("lat", "lat and lon query params required")

    delta = radius_km / KM_PER_DEGREE
    stops = session.scalars(
        select(Stop)
        .where(Stop.stop_lat.between(lat - delta, lat + delta))
        .where(Stop.stop_lon.between(lon - delta, lon + delta))
    ).all()

    annotated = [
        {
            "stop_id": s.stop_id,
            "stop_name": s.stop_name,
            "stop_lat": s.stop_lat,
            "stop_lon": s.stop_lon,
            "distance_m": haversine_metres(lat, lon, s.stop_lat, s.stop_lon),
        }
        for s in stops
    ]
    annotated.sort(key=lambda s: s["distance_m"])
    return annotated[:STOPS_NEAR_MAX_RESULTS]


def haversine_metres(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two (lat, lon) points in metres."""
    R = 6_371_000
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    return 2 * R * math.atan2(math.sqrt(a), math.sqrt(1 - a))
