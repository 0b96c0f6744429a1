"""
Resolves a polyline for a shape_id, a (route_id, direction_id) pair, or a
trip_id. Tiers are tried in order and the first one with points wins:

  1. shapes            explicit geometry from shapes.txt
  2. generated_shapes  cache written by shapes.builder.rebuild_all()
  3. stop_times        the trip's own stop coordinates (trip key only)

Whether explicit geometry is loaded is decided at startup and after each
import, then handed to ShapeResolver; it is never probed per request.

Points are {"lat", "lon", "seq"} dicts ordered by seq.
"""

import json
import logging
from typing import Any

from sqlalchemy import exists, func, inspect as sa_inspect, select
from sqlalchemy.orm import Session

from db.models import GeneratedShape, ShapePoint, Stop, StopTime, Trip
from errors import BadInputError, NotFoundError

logger = logging.getLogger(__name__)

SOURCE_SHAPES = "shapes_table"
SOURCE_GENERATED = "generated_shapes"
SOURCE_STOP_TIMES = "stop_times"


def has_explicit_shapes(session: Session) -> bool:
    """
    True when the shapes table exists and holds at least one point.

    The table is always created with the schema, so its presence alone says
    nothing; a feed without shapes.txt leaves it empty. Resolved at startup
    and again after each static import, never per request.
    """
    if not sa_inspect(session.get_bind()).has_table(ShapePoint.__tablename__):
        return False
    return bool(session.scalar(select(exists().where(ShapePoint.shape_id.is_not(None)))))


def parse_direction(raw: Any) -> int | None:
    """None / "" / "null" mean "no direction"; anything else must be an int."""
    if raw is None or raw == "" or raw == "null":
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise BadInputError("direction_id", "direction_id must be a valid number")


def trip_stop_points(session: Session, trip_id: str) -> list[dict[str, Any]]:
    """A trip's stop coordinates in visiting order."""
    rows = session.execute(
        select(Stop.stop_lat, Stop.stop_lon, StopTime.stop_sequence)
        .join(Stop, Stop.stop_id == StopTime.stop_id)
        .where(StopTime.trip_id == trip_id)
        .order_by(StopTime.stop_sequence)
    ).all()
    return [{"lat": lat, "lon": lon, "seq": seq} for lat, lon, seq in rows]


class ShapeResolver:
    def __init__(self, session: Session, explicit_shapes: bool) -> None:
        self.session = session
        self.explicit_shapes = explicit_shapes

    # ------------------------------------------------------------------
    # Public lookups
    # ------------------------------------------------------------------

    def shape(self, shape_id: str | None) -> dict[str, Any]:
        if not shape_id:
            raise BadInputError("shape_id", "shape_id required")

        points = self._explicit_points(shape_id)
        if points:
            return {"shape_id": shape_id, "points": points, "source": SOURCE_SHAPES}

        points = self._generated_points(shape_id=shape_id)
        if points is not None:
            return {"shape_id": shape_id, "points": points, "source": SOURCE_GENERATED}

        raise NotFoundError("shape not found", {"shape_id": shape_id})

    def route_shape(self, route_id: str | None, direction_id: Any = None) -> dict[str, Any]:
        if not route_id:
            raise BadInputError("route_id", "route_id required")
        direction = parse_direction(direction_id)
        result = {"route_id": route_id, "direction_id": direction}

        shape_id = self._most_used_shape_id(route_id, direction)
        if shape_id is not None:
            points = self._explicit_points(shape_id)
            if points:
                return {**result, "shape_id": shape_id, "points": points, "source": SOURCE_SHAPES}

        points = self._generated_points(route_id=route_id, direction_id=direction)
        if points is not None:
            return {**result, "points": points, "source": SOURCE_GENERATED}

        raise NotFoundError(
            "shape not found for route/direction",
            {"route_id": route_id, "direction_id": direction},
        )

    def trip_shape(self, trip_id: str | None) -> dict[str, Any]:
        if not trip_id:
            raise BadInputError("trip_id", "trip_id required")
        trip = self.session.get(Trip, trip_id)
        if trip is None:
            raise NotFoundError("trip_id not found", {"trip_id": trip_id})

        if trip.shape_id:
            points = self._explicit_points(trip.shape_id)
            if points:
                return {
                    "trip_id": trip_id, "shape_id": trip.shape_id,
                    "points": points, "source": SOURCE_SHAPES,
                }
            points = self._generated_points(shape_id=trip.shape_id)
            if points is not None:
                return {
                    "trip_id": trip_id, "shape_id": trip.shape_id,
                    "points": points, "source": SOURCE_GENERATED,
                }

        return {
            "trip_id": trip_id,
            "points": trip_stop_points(self.session, trip_id),
            "source": SOURCE_STOP_TIMES,
        }

    def list_shapes(self) -> dict[str, Any]:
        """Explicit shape ids with point counts, else the generated cache."""
        if self.explicit_shapes:
            rows = self.session.execute(
                select(ShapePoint.shape_id, func.count().label("pts_count"))
                .group_by(ShapePoint.shape_id)
                .order_by(ShapePoint.shape_id)
            ).all()
            if rows:
                return {
                    "source": SOURCE_SHAPES,
                    "shapes": [{"shape_id": s, "pts_count": n} for s, n in rows],
                }

        cached = self.session.execute(
            select(
                GeneratedShape.shape_id,
                GeneratedShape.route_id,
                GeneratedShape.direction_id,
                GeneratedShape.created_at,
            ).order_by(GeneratedShape.route_id, GeneratedShape.shape_id)
        ).all()
        if cached:
            return {"source": SOURCE_GENERATED, "shapes": [row._asdict() for row in cached]}
        return {"source": "none", "shapes": []}

    # ------------------------------------------------------------------
    # Tiers
    # ------------------------------------------------------------------

    def _explicit_points(self, shape_id: str) -> list[dict[str, Any]]:
        if not self.explicit_shapes:
            return []
        rows = self.session.execute(
            select(ShapePoint.shape_pt_lat, ShapePoint.shape_pt_lon, ShapePoint.shape_pt_sequence)
            .where(ShapePoint.shape_id == shape_id)
            .order_by(ShapePoint.shape_pt_sequence)
        ).all()
        return [{"lat": lat, "lon": lon, "seq": seq} for lat, lon, seq in rows]

    def _most_used_shape_id(self, route_id: str, direction: int | None) -> str | None:
        """Shape used by the most trips of the route; ties fall to the DB's ordering.

        Without a direction every trip of the route counts.
        """
        if not self.explicit_shapes:
            return None
        stmt = (
            select(Trip.shape_id, func.count().label("cnt"))
            .where(Trip.route_id == route_id)
            .where(Trip.shape_id.is_not(None))
            .where(Trip.shape_id != "")
        )
        if direction is not None:
            stmt = stmt.where(Trip.direction_id == direction)
        stmt = stmt.group_by(Trip.shape_id).order_by(func.count().desc()).limit(1)
        row = self.session.execute(stmt).first()
        return row.shape_id if row else None

    def _generated_points(
        self,
        shape_id: str | None = None,
        route_id: str | None = None,
        direction_id: int | None = None,
    ) -> list[dict[str, Any]] | None:
        """Cached points, or None when there is no cache entry.

        A None direction matches only rows stored with a NULL direction.
        """
        stmt = select(GeneratedShape.points_json)
        if shape_id is not None:
            stmt = stmt.where(GeneratedShape.shape_id == shape_id)
        else:
            stmt = stmt.where(GeneratedShape.route_id == route_id)
            if direction_id is None:
                stmt = stmt.where(GeneratedShape.direction_id.is_(None))
            else:
                stmt = stmt.where(GeneratedShape.direction_id == direction_id)
        points_json = self.session.scalars(stmt.limit(1)).first()
        if not points_json:
            return None
        return json.loads(points_json)
