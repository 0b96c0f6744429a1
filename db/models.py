"""
SQLAlchemy ORM models for GTFS static data, realtime delay updates and the
generated shape cache.

GTFS time fields (arrival_time, departure_time) are stored as HH:MM:SS strings
because GTFS allows values >= 24:00:00 for trips crossing midnight.
Application code converts to integer seconds-past-midnight when needed.

Everything except StopTimeUpdate and GeneratedShape is written only by the
static importer and is read-only for the query layer.
"""

from sqlalchemy import (
    Boolean, Column, Float, ForeignKey, Index, Integer, String, Text
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


class Stop(Base):
    __tablename__ = "stops"

    stop_id = Column(String, primary_key=True)
    stop_name = Column(String, nullable=False)  # not unique: platforms share a name
    parent_station = Column(String, nullable=True)
    stop_lat = Column(Float, nullable=False)
    stop_lon = Column(Float, nullable=False)

    stop_times = relationship("StopTime", back_populates="stop")


class Route(Base):
    __tablename__ = "routes"

    route_id = Column(String, primary_key=True)
    route_short_name = Column(String)
    route_long_name = Column(String, nullable=True)
    route_type = Column(Integer)

    trips = relationship("Trip", back_populates="route")


class Trip(Base):
    __tablename__ = "trips"

    trip_id = Column(String, primary_key=True)
    route_id = Column(String, ForeignKey("routes.route_id"), index=True)
    service_id = Column(String, index=True)
    trip_headsign = Column(String, nullable=True)
    direction_id = Column(Integer, nullable=True)  # 0 / 1 / absent
    shape_id = Column(String, nullable=True, index=True)

    route = relationship("Route", back_populates="trips")
    stop_times = relationship("StopTime", back_populates="trip", order_by="StopTime.stop_sequence")


class StopTime(Base):
    __tablename__ = "stop_times"
    __table_args__ = (
        Index("ix_stop_times_trip_sequence", "trip_id", "stop_sequence", unique=True),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    trip_id = Column(String, ForeignKey("trips.trip_id"), index=True)
    arrival_time = Column(String)    # HH:MM:SS (may exceed 24:00:00)
    departure_time = Column(String)  # HH:MM:SS (may exceed 24:00:00)
    stop_id = Column(String, ForeignKey("stops.stop_id"), index=True)
    stop_sequence = Column(Integer)

    trip = relationship("Trip", back_populates="stop_times")
    stop = relationship("Stop", back_populates="stop_times")


class ServiceCalendar(Base):
    __tablename__ = "calendar"

    service_id = Column(String, primary_key=True)
    monday = Column(Boolean)
    tuesday = Column(Boolean)
    wednesday = Column(Boolean)
    thursday = Column(Boolean)
    friday = Column(Boolean)
    saturday = Column(Boolean)
    sunday = Column(Boolean)
    start_date = Column(String)  # YYYYMMDD
    end_date = Column(String)    # YYYYMMDD


class ServiceCalendarDate(Base):
    __tablename__ = "calendar_dates"

    id = Column(Integer, primary_key=True, autoincrement=True)
    service_id = Column(String, index=True)
    date = Column(String, index=True)  # YYYYMMDD
    exception_type = Column(Integer)   # 1 = service added, 2 = service removed


class StopTimeUpdate(Base):
    """One delay observation from the GTFS-RT feed. Rows are append-only;
    the newest non-expired row per (trip_id, stop_id) is authoritative."""
    __tablename__ = "stop_time_updates"
    __table_args__ = (
        Index("ix_stop_time_updates_trip_stop", "trip_id", "stop_id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    trip_id = Column(String, nullable=False)
    stop_id = Column(String, nullable=False, index=True)
    arrival_delay = Column(Integer, nullable=True)    # seconds, signed
    departure_delay = Column(Integer, nullable=True)  # seconds, signed
    created_timestamp = Column(Integer, nullable=False)      # unix seconds
    expiration_timestamp = Column(Integer, nullable=True)    # unix seconds


class ShapePoint(Base):
    __tablename__ = "shapes"

    shape_id = Column(String, primary_key=True)
    shape_pt_sequence = Column(Integer, primary_key=True)
    shape_pt_lat = Column(Float, nullable=False)
    shape_pt_lon = Column(Float, nullable=False)


class GeneratedShape(Base):
    """Stop-coordinate path cached per (route_id, direction_id)."""
    __tablename__ = "generated_shapes"

    shape_id = Column(String, primary_key=True)  # "<route_id>__<direction_id|null>"
    route_id = Column(String, index=True)
    direction_id = Column(Integer, nullable=True)
    points_json = Column(Text)
    created_at = Column(String)  # ISO 8601 timestamp
