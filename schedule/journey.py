"""
Trip itinerary with an optional journey segment between two of its stops.

Each endpoint is given as a stop_id or a stop_sequence; the sequence wins
when both are present because loop routes visit the same stop_id twice.
"from" is searched from the start of the itinerary, "to" strictly after
the resolved "from" index, so "to" can never land before "from".

Segment durations:
  scheduled = to.arrival_seconds − from.departure_seconds
  realtime  = to.realtime_arrival_seconds − from.realtime_departure_seconds
  delta     = realtime − scheduled
Any missing input makes the derived value None.
"""

import logging
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from errors import BadInputError, NotFoundError
from realtime.overlay import OverlayRow, itinerary_delays, overlay_for_trip, shift
from schedule.times import format_seconds, seconds_to_minutes, time_to_seconds

logger = logging.getLogger(__name__)


def parse_sequence(raw: Any, param: str) -> int | None:
    if raw is None or raw == "":
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise BadInputError(param, f"{param} must be a valid number")


def trip_stop_times(
    session: Session,
    trip_id: str | None,
    from_stop_id: str | None = None,
    to_stop_id: str | None = None,
    from_stop_sequence: Any = None,
    to_stop_sequence: Any = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    Return {"trip", "journey", "stops"} for trip_id.

    "journey" is None unless both endpoints were supplied and resolved.

    Raises:
        BadInputError: trip_id missing or a sequence is not numeric.
        NotFoundError: unknown trip, or a supplied endpoint is not in the
                       itinerary (for "to": not after "from").
    """
    if not trip_id:
        raise BadInputError("trip_id", "trip_id query param required")
    from_sequence = parse_sequence(from_stop_sequence, "from_stop_sequence")
    to_sequence = parse_sequence(to_stop_sequence, "to_stop_sequence")
    from_stop_id = from_stop_id or None
    to_stop_id = to_stop_id or None
    now = now or datetime.now()

    rows = overlay_for_trip(session, trip_id, int(now.timestamp()))
    if not rows:
        raise NotFoundError("trip_id not found", {"trip_id": trip_id})

    stops = [_stop_entry(row) for row in rows]

    from_index = find_stop_index(stops, from_stop_id, from_sequence)
    to_index = find_stop_index(
        stops, to_stop_id, to_sequence,
        start=0 if from_index is None else from_index + 1,
    )

    if (from_stop_id or from_sequence is not None) and from_index is None:
        raise NotFoundError(
            "from stop not found in this trip",
            {"from_stop_id": from_stop_id, "from_stop_sequence": from_sequence},
        )
    if (to_stop_id or to_sequence is not None) and to_index is None:
        raise NotFoundError(
            "to stop not found after from stop in this trip",
            {"to_stop_id": to_stop_id, "to_stop_sequence": to_sequence},
        )

    journey = None
    if from_index is not None and to_index is not None:
        journey = journey_segment(stops[from_index], stops[to_index])

    first = rows[0]
    return {
        "trip": {
            "trip_id": first.trip_id,
            "route_id": first.route_id,
            "route_short_name": first.route_short_name,
            "route_long_name": first.route_long_name,
            "service_id": first.service_id,
            "direction_id": first.direction_id,
            "trip_headsign": first.trip_headsign,
        },
        "journey": journey,
        "stops": stops,
    }


def find_stop_index(
    stops: list[dict[str, Any]],
    stop_id: str | None,
    sequence: int | None,
    start: int = 0,
) -> int | None:
    """First index >= start matching sequence (preferred) or stop_id."""
    if sequence is not None:
        field, value = "stop_sequence", sequence
    elif stop_id:
        field, value = "stop_id", stop_id
    else:
        return None
    for index in range(start, len(stops)):
        if stops[index][field] == value:
            return index
    return None


def journey_segment(from_stop: dict[str, Any], to_stop: dict[str, Any]) -> dict[str, Any]:
    scheduled = _difference(to_stop["arrival_seconds"], from_stop["departure_seconds"])
    realtime = _difference(
        to_stop["realtime_arrival_seconds"], from_stop["realtime_departure_seconds"]
    )
    return {
        "from_stop_id": from_stop["stop_id"],
        "from_stop_name": from_stop["stop_name"],
        "from_stop_sequence": from_stop["stop_sequence"],
        "to_stop_id": to_stop["stop_id"],
        "to_stop_name": to_stop["stop_name"],
        "to_stop_sequence": to_stop["stop_sequence"],
        "scheduled_travel_seconds": scheduled,
        "scheduled_travel_minutes": seconds_to_minutes(scheduled),
        "realtime_travel_seconds": realtime,
        "realtime_travel_minutes": seconds_to_minutes(realtime),
        "delta_seconds": _difference(realtime, scheduled),
    }


def _difference(later: int | None, earlier: int | None) -> int | None:
    if later is None or earlier is None:
        return None
    return later - earlier


def _stop_entry(row: OverlayRow) -> dict[str, Any]:
    arrival_seconds = time_to_seconds(row.arrival_time)
    departure_seconds = time_to_seconds(row.departure_time)
    arrival_delay, departure_delay = itinerary_delays(row)
    realtime_arrival = shift(arrival_seconds, arrival_delay)
    realtime_departure = shift(departure_seconds, departure_delay)

    # Reported delay prefers arrival here, unlike the departures board.
    reported_delay = row.arrival_delay if row.arrival_delay is not None else row.departure_delay

    return {
        "stop_id": row.stop_id,
        "stop_name": row.stop_name,
        "stop_sequence": row.stop_sequence,
        "arrival_time": row.arrival_time,
        "departure_time": row.departure_time,
        "arrival_seconds": arrival_seconds,
        "departure_seconds": departure_seconds,
        "realtime_arrival_time": format_seconds(realtime_arrival),
        "realtime_departure_time": format_seconds(realtime_departure),
        "realtime_arrival_seconds": realtime_arrival,
        "realtime_departure_seconds": realtime_departure,
        "arrival_delay_seconds": row.arrival_delay,
        "departure_delay_seconds": row.departure_delay,
        "delay_seconds": reported_delay,
        "delay_minutes": seconds_to_minutes(reported_delay),
        "realtime_available": row.arrival_delay is not None or row.departure_delay is not None,
        "realtime_updated": (row.arrival_delay or 0) != 0 or (row.departure_delay or 0) != 0,
        "realtime_updated_at": row.realtime_updated_at,
    }
