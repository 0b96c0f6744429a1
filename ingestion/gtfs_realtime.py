"""
Polls the GTFS-Realtime TripUpdates feed and appends delay updates.

Each StopTimeUpdate carrying an arrival or departure delay becomes one
stop_time_updates row stamped with:
  created_timestamp    = poll time (unix seconds)
  expiration_timestamp = poll time + GTFS_RT_UPDATE_TTL_SECONDS

Rows are never updated in place. Query code picks the newest non-expired
row per (trip_id, stop_id); expired rows are pruned on each refresh.
"""

import logging
from datetime import datetime

import httpx
from google.transit import gtfs_realtime_pb2
from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from config import (
    GTFS_RT_API_KEY,
    GTFS_RT_TRIP_UPDATES_URL,
    GTFS_RT_UPDATE_TTL_SECONDS,
)
from db.models import StopTime, StopTimeUpdate

logger = logging.getLogger(__name__)

_last_fetched: datetime | None = None


def get_last_fetched() -> datetime | None:
    """Return the UTC timestamp of the last successful refresh, or None."""
    return _last_fetched


async def _fetch_feed(url: str) -> gtfs_realtime_pb2.FeedMessage | None:
    """Fetch and parse a GTFS-RT protobuf feed.

    Appends the API key as a ?key= query parameter when GTFS_RT_API_KEY is set.
    """
    if not url:
        return None
    params = {"key": GTFS_RT_API_KEY} if GTFS_RT_API_KEY else {}
    try:
        async with httpx.AsyncClient(timeout=15) as client:
            response = await client.get(url, params=params, headers={"Accept": "application/x-protobuf"})
            response.raise_for_status()
        feed = gtfs_realtime_pb2.FeedMessage()
        feed.ParseFromString(response.content)
        return feed
    except Exception as exc:
        logger.warning("Failed to fetch GTFS-RT feed %s: %s", url, exc)
        return None


def _event_delay(stu, event: str) -> int | None:
    if not stu.HasField(event):
        return None
    ev = getattr(stu, event)
    return ev.delay if ev.HasField("delay") else None


def build_delay_updates(
    feed: gtfs_realtime_pb2.FeedMessage,
    session: Session,
    now_unix: int,
) -> list[StopTimeUpdate]:
    """Convert a TripUpdates feed into unsaved StopTimeUpdate rows.

    Updates that name only a stop_sequence are mapped to the static stop_id.
    """
    expires_at = now_unix + GTFS_RT_UPDATE_TTL_SECONDS
    stop_by_sequence: dict[str, dict[int, str]] = {}
    records: list[StopTimeUpdate] = []
    unmatched = 0

    for entity in feed.entity:
        if not entity.HasField("trip_update"):
            continue
        tu = entity.trip_update
        trip_id = tu.trip.trip_id
        if not trip_id:
            continue

        for stu in tu.stop_time_update:
            arrival_delay = _event_delay(stu, "arrival")
            departure_delay = _event_delay(stu, "departure")
            if arrival_delay is None and departure_delay is None:
                continue

            stop_id = stu.stop_id
            if not stop_id and stu.HasField("stop_sequence"):
                if trip_id not in stop_by_sequence:
                    stop_by_sequence[trip_id] = dict(session.execute(
                        select(StopTime.stop_sequence, StopTime.stop_id)
                        .where(StopTime.trip_id == trip_id)
                    ).all())
                stop_id = stop_by_sequence[trip_id].get(stu.stop_sequence)
            if not stop_id:
                unmatched += 1
                continue

            records.append(StopTimeUpdate(
                trip_id=trip_id,
                stop_id=stop_id,
                arrival_delay=arrival_delay,
                departure_delay=departure_delay,
                created_timestamp=now_unix,
                expiration_timestamp=expires_at,
            ))

    if unmatched:
        logger.debug("Dropped %d stop time updates with no resolvable stop_id.", unmatched)
    return records


def prune_expired(session: Session, now_unix: int) -> int:
    result = session.execute(
        delete(StopTimeUpdate)
        .where(StopTimeUpdate.expiration_timestamp.is_not(None))
        .where(StopTimeUpdate.expiration_timestamp <= now_unix)
    )
    return result.rowcount or 0


async def refresh_realtime_delays(session: Session) -> int:
    """
    Fetch trip updates and append them as delay rows.

    Returns the number of rows written (0 when the feed is unavailable or
    not configured).
    """
    global _last_fetched
    feed = await _fetch_feed(GTFS_RT_TRIP_UPDATES_URL)
    if feed is None:
        return 0

    now = datetime.utcnow()
    now_unix = int(datetime.now().timestamp())
    records = build_delay_updates(feed, session, now_unix)
    pruned = prune_expired(session, now_unix)
    session.add_all(records)
    session.commit()

    _last_fetched = now
    logger.info(
        "GTFS-RT refresh complete: %d delay updates stored, %d expired pruned.",
        len(records), pruned,
    )
    return len(records)
