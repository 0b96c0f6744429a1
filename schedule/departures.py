"""
Next departures from a stop, with realtime delays applied.

Candidate generation:
  - a stop_time whose service runs today          → day offset 0
  - a stop_time whose service runs tomorrow and
    whose scheduled departure is before 24:00:00  → day offset +86400

Times >= 24:00:00 belong to today's service day already (post-midnight
continuation), so they never get a second "tomorrow" candidate.

Candidates departing more than DEPARTURE_GRACE_SECONDS before now are
dropped; the rest are sorted by realtime departure and cut to `limit`.
All times are seconds relative to local midnight of "today".
"""

import logging
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.orm import Session

from config import DEFAULT_DEPARTURES_LIMIT, DEPARTURE_GRACE_SECONDS
from errors import BadInputError
from realtime.overlay import OverlayRow, departure_view_delay, overlay_for_stop, shift
from schedule.calendar import active_service_ids, format_ymd
from schedule.times import (
    SECONDS_PER_DAY,
    format_seconds,
    seconds_since_midnight,
    seconds_to_minutes,
    time_to_seconds,
)

logger = logging.getLogger(__name__)


def parse_limit(raw: Any) -> int:
    """Whole-string int parsing ("5.5" is rejected); zero or negative limits pass through."""
    if raw is None or raw == "":
        return DEFAULT_DEPARTURES_LIMIT
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise BadInputError("limit", "limit must be a valid number")


def next_departures(
    session: Session,
    stop_id: str | None,
    limit: Any = None,
    now: datetime | None = None,
) -> list[dict[str, Any]]:
    """
    Return up to `limit` upcoming departures from stop_id, soonest first.

    Args:
        session: SQLAlchemy session.
        stop_id: GTFS stop_id (required).
        limit:   Maximum result count; defaults to DEFAULT_DEPARTURES_LIMIT.
        now:     Query instant (local naive datetime); defaults to now.

    Raises:
        BadInputError: stop_id missing or limit not numeric.
    """
    if not stop_id:
        raise BadInputError("stop_id", "stop_id query param required")
    limit = parse_limit(limit)
    now = now or datetime.now()

    today_ids = active_service_ids(session, format_ymd(now.date()))
    tomorrow_ids = active_service_ids(session, format_ymd(now.date() + timedelta(days=1)))
    all_ids = today_ids | tomorrow_ids
    if not all_ids:
        logger.debug("No active services today or tomorrow; stop %s has no departures.", stop_id)
        return []

    rows = overlay_for_stop(session, stop_id, all_ids, int(now.timestamp()))

    not_before = seconds_since_midnight(now) - DEPARTURE_GRACE_SECONDS
    candidates = []
    for row in rows:
        for day_offset in _day_offsets(row, today_ids, tomorrow_ids):
            candidate = _candidate(row, day_offset)
            if candidate["realtime_departure_seconds"] is None:
                continue
            if candidate["realtime_departure_seconds"] < not_before:
                continue
            candidates.append(candidate)

    candidates.sort(key=lambda c: c["realtime_departure_seconds"])
    return [_public(c) for c in candidates[:max(limit, 0)]]


def _day_offsets(row: OverlayRow, today_ids: set[str], tomorrow_ids: set[str]) -> list[int]:
    offsets = []
    if row.service_id in today_ids:
        offsets.append(0)
    departure_seconds = time_to_seconds(row.departure_time)
    if (
        row.service_id in tomorrow_ids
        and departure_seconds is not None
        and departure_seconds < SECONDS_PER_DAY
    ):
        offsets.append(SECONDS_PER_DAY)
    return offsets


def _candidate(row: OverlayRow, day_offset: int) -> dict[str, Any]:
    delay = departure_view_delay(row)
    departure_seconds = time_to_seconds(row.departure_time)
    arrival_seconds = time_to_seconds(row.arrival_time)

    realtime_departure = shift(departure_seconds, delay)
    realtime_arrival = shift(arrival_seconds, delay)
    if realtime_departure is not None:
        realtime_departure += day_offset
    if realtime_arrival is not None:
        realtime_arrival += day_offset

    return {
        "row": row,
        "day_offset": day_offset,
        "delay_seconds": delay,
        "realtime_departure_seconds": realtime_departure,
        "realtime_arrival_seconds": realtime_arrival,
    }


def _public(candidate: dict[str, Any]) -> dict[str, Any]:
    row: OverlayRow = candidate["row"]
    delay = candidate["delay_seconds"]
    return {
        "trip_id": row.trip_id,
        "service_id": row.service_id,
        "route_id": row.route_id,
        "route_short_name": row.route_short_name,
        "route_long_name": row.route_long_name,
        "trip_headsign": row.trip_headsign,
        "stop_sequence": row.stop_sequence,
        "departure_time": row.departure_time,
        "arrival_time": row.arrival_time,
        "day_offset": candidate["day_offset"],
        "realtime_departure_time": format_seconds(candidate["realtime_departure_seconds"]),
        "realtime_arrival_time": format_seconds(candidate["realtime_arrival_seconds"]),
        "realtime_departure_seconds": candidate["realtime_departure_seconds"],
        "delay_seconds": delay,
        "delay_minutes": seconds_to_minutes(delay),
        "realtime_updated": delay is not None and delay != 0,
        "realtime_updated_at": row.realtime_updated_at,
    }
