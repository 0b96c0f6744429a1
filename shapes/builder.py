"""
Rebuilds the generated_shapes cache.

For each distinct (route_id, direction_id) among trips, the trip with the
most stop_times is taken as representative and its ordered stop coordinates
are stored under shape_id "<route_id>__<direction_id or 'null'>". Existing
rows for the same shape_id are replaced. Safe to re-run.

Explicit geometry (shapes.txt) is not consulted here; the resolver always
prefers it over this cache.
"""

import json
import logging
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from db.models import GeneratedShape, StopTime, Trip
from shapes.resolver import trip_stop_points

logger = logging.getLogger(__name__)


def generated_shape_id(route_id: str, direction_id: int | None) -> str:
    return f"{route_id}__{'null' if direction_id is None else direction_id}"


def representative_trip_id(session: Session, route_id: str, direction_id: int | None) -> str | None:
    """Trip with the most stop_times for the pair; ties go to the lowest trip_id."""
    stmt = (
        select(StopTime.trip_id, func.count().label("cnt"))
        .join(Trip, Trip.trip_id == StopTime.trip_id)
        .where(Trip.route_id == route_id)
    )
    if direction_id is None:
        stmt = stmt.where(Trip.direction_id.is_(None))
    else:
        stmt = stmt.where(Trip.direction_id == direction_id)
    stmt = (
        stmt.group_by(StopTime.trip_id)
        .order_by(func.count().desc(), StopTime.trip_id)
        .limit(1)
    )
    row = session.execute(stmt).first()
    return row.trip_id if row else None


def rebuild_all(session: Session) -> int:
    """
    Recompute every cached route/direction shape.

    Returns the number of shapes written.
    """
    GeneratedShape.__table__.create(bind=session.get_bind(), checkfirst=True)

    pairs = session.execute(
        select(Trip.route_id, Trip.direction_id).distinct()
    ).all()

    written = 0
    skipped = 0
    now = datetime.utcnow().isoformat()
    for route_id, direction_id in pairs:
        trip_id = representative_trip_id(session, route_id, direction_id)
        if trip_id is None:
            skipped += 1
            continue
        points = trip_stop_points(session, trip_id)
        if not points:
            skipped += 1
            continue
        session.merge(GeneratedShape(
            shape_id=generated_shape_id(route_id, direction_id),
            route_id=route_id,
            direction_id=direction_id,
            points_json=json.dumps(points),
            created_at=now,
        ))
        written += 1

    session.commit()
    if skipped:
        logger.warning("Skipped %d route/direction pairs with no stop_times.", skipped)
    logger.info("Generated shape cache rebuilt: %d shapes written.", written)
    return written
