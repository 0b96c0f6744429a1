"""
Joins static stop_times with the authoritative realtime delay for each
(trip_id, stop_id) pair.

A delay update is authoritative when it has the greatest created_timestamp
among the updates for its (trip_id, stop_id) that have no expiration or
expire strictly after "now". Absence of such a row is not an error; the
delay fields simply come back as None.

Two delay policies are exposed, one per consumer:

  departure_view_delay  (next departures)
      departure_delay, else arrival_delay, else None. The single resolved
      value shifts both reported times; "no data" stays None.

  itinerary_delays      (trip itinerary / journey segment)
      arrival uses arrival_delay, else departure_delay, else 0;
      departure uses departure_delay, else arrival_delay, else 0.

The two rules disagree on purpose and are kept separate.
"""

import logging
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import and_, func, or_, select
from sqlalchemy.orm import Session

from db.models import Route, Stop, StopTime, StopTimeUpdate, Trip

logger = logging.getLogger(__name__)


@dataclass
class OverlayRow:
    trip_id: str
    stop_id: str
    stop_sequence: int
    arrival_time: str | None
    departure_time: str | None
    service_id: str
    route_id: str
    direction_id: int | None
    trip_headsign: str | None
    route_short_name: str | None
    route_long_name: str | None
    arrival_delay: int | None
    departure_delay: int | None
    realtime_updated_at: int | None
    stop_name: str | None = None


def latest_delays_subquery(now_unix: int, *, stop_id: str | None = None, trip_id: str | None = None):
    """
    Subquery of authoritative delay rows, narrowed to one stop or one trip.

    Columns: trip_id, stop_id, arrival_delay, departure_delay, created_timestamp.
    """
    u = StopTimeUpdate
    not_expired = or_(u.expiration_timestamp.is_(None), u.expiration_timestamp > now_unix)

    latest = (
        select(u.trip_id, u.stop_id, func.max(u.created_timestamp).label("max_ts"))
        .where(not_expired)
    )
    if stop_id is not None:
        latest = latest.where(u.stop_id == stop_id)
    if trip_id is not None:
        latest = latest.where(u.trip_id == trip_id)
    latest = latest.group_by(u.trip_id, u.stop_id).subquery("latest")

    return (
        select(u.trip_id, u.stop_id, u.arrival_delay, u.departure_delay, u.created_timestamp)
        .join(latest, and_(
            u.trip_id == latest.c.trip_id,
            u.stop_id == latest.c.stop_id,
            u.created_timestamp == latest.c.max_ts,
        ))
        .where(not_expired)
        .subquery("rt")
    )


def _base_select(rt, *extra_columns):
    return (
        select(
            StopTime.trip_id,
            StopTime.stop_id,
            StopTime.stop_sequence,
            StopTime.arrival_time,
            StopTime.departure_time,
            Trip.service_id,
            Trip.route_id,
            Trip.direction_id,
            Trip.trip_headsign,
            Route.route_short_name,
            Route.route_long_name,
            rt.c.arrival_delay,
            rt.c.departure_delay,
            rt.c.created_timestamp.label("realtime_updated_at"),
            *extra_columns,
        )
        .join(Trip, Trip.trip_id == StopTime.trip_id)
        .outerjoin(Route, Route.route_id == Trip.route_id)
        .outerjoin(rt, and_(rt.c.trip_id == StopTime.trip_id, rt.c.stop_id == StopTime.stop_id))
    )


def _unique_rows(rows) -> list[OverlayRow]:
    # Two updates sharing the max created_timestamp would duplicate a stop_time.
    seen: set[tuple[str, int]] = set()
    result: list[OverlayRow] = []
    for row in rows:
        key = (row.trip_id, row.stop_sequence)
        if key in seen:
            continue
        seen.add(key)
        result.append(OverlayRow(**row._asdict()))
    return result


def overlay_for_stop(
    session: Session,
    stop_id: str,
    service_ids: Iterable[str],
    now_unix: int,
) -> list[OverlayRow]:
    """Stop_times at stop_id whose trip runs under one of service_ids."""
    service_ids = sorted(set(service_ids))
    if not service_ids:
        return []
    rt = latest_delays_subquery(now_unix, stop_id=stop_id)
    stmt = (
        _base_select(rt)
        .where(StopTime.stop_id == stop_id)
        .where(Trip.service_id.in_(service_ids))
    )
    rows = _unique_rows(session.execute(stmt))
    logger.debug("Overlay for stop %s: %d stop_times.", stop_id, len(rows))
    return rows


def overlay_for_trip(session: Session, trip_id: str, now_unix: int) -> list[OverlayRow]:
    """All stop_times of trip_id ordered by stop_sequence, with stop names."""
    rt = latest_delays_subquery(now_unix, trip_id=trip_id)
    stmt = (
        _base_select(rt, Stop.stop_name)
        .join(Stop, Stop.stop_id == StopTime.stop_id)
        .where(StopTime.trip_id == trip_id)
        .order_by(StopTime.stop_sequence)
    )
    return _unique_rows(session.execute(stmt))


def _first_present(*values: int | None) -> int | None:
    for value in values:
        if value is not None:
            return value
    return None


def departure_view_delay(row: OverlayRow) -> int | None:
    return _first_present(row.departure_delay, row.arrival_delay)


def itinerary_delays(row: OverlayRow) -> tuple[int, int]:
    """(effective arrival delay, effective departure delay) with cross-substitution."""
    arrival = _first_present(row.arrival_delay, row.departure_delay)
    departure = _first_present(row.departure_delay, row.arrival_delay)
    return arrival or 0, departure or 0


def shift(scheduled_seconds: int | None, delay_seconds: int | None) -> int | None:
    """Apply a delay to a scheduled time; an unknown time stays unknown."""
    if scheduled_seconds is None:
        return None
    return scheduled_seconds + (delay_seconds or 0)
