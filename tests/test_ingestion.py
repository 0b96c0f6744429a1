"""
Tests for the static feed importer and the GTFS-RT delay conversion.

No network: the static feed is an in-memory zip and the realtime feed is
a FeedMessage built in the test.
"""

import io
import zipfile

import pytest
from google.transit import gtfs_realtime_pb2
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from config import GTFS_RT_UPDATE_TTL_SECONDS
from db.models import (
    Base, Route, ServiceCalendar, ServiceCalendarDate, ShapePoint, Stop, StopTime,
    StopTimeUpdate, Trip,
)
from ingestion.gtfs_realtime import build_delay_updates, prune_expired
from ingestion.gtfs_static import parse_and_store


@pytest.fixture
def db():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    Session = sessionmaker(bind=engine)
    session = Session()
    yield session
    session.close()
    engine.dispose()


FEED_FILES = {
    "stops.txt": (
        "stop_id,stop_name,stop_lat,stop_lon,parent_station\n"
        "S1,Mosson,43.616,3.819,STA\n"
        "S2,Odysseum,43.604,3.920,\n"
        "NODE,Generic node,,,\n"
    ),
    "routes.txt": (
        "route_id,route_short_name,route_long_name,route_type\n"
        "R1,1,Mosson - Odysseum,0\n"
    ),
    "trips.txt": (
        "route_id,service_id,trip_id,trip_headsign,direction_id,shape_id\n"
        "R1,WK,T1,Odysseum,0,SH1\n"
        "R1,WK,T2,Mosson,,\n"
        "BAD,WK,T3,Nowhere,0,\n"
    ),
    "stop_times.txt": (
        "trip_id,arrival_time,departure_time,stop_id,stop_sequence\n"
        "T1,08:00:00,08:00:00,S1,1\n"
        "T1,08:20:00,08:21:00,S2,2\n"
        "T2,25:10:00,25:10:00,S2,1\n"
        "T2,,,S1,2\n"
        "T3,09:00:00,09:00:00,S1,1\n"
    ),
    "calendar.txt": (
        "service_id,monday,tuesday,wednesday,thursday,friday,saturday,sunday,start_date,end_date\n"
        "WK,1,1,1,1,1,0,0,20260101,20261231\n"
    ),
    "calendar_dates.txt": (
        "service_id,date,exception_type\n"
        "WK,20260501,2\n"
    ),
    "shapes.txt": (
        "shape_id,shape_pt_lat,shape_pt_lon,shape_pt_sequence\n"
        "SH1,43.616,3.819,1\n"
        "SH1,43.604,3.920,2\n"
    ),
}


def _zip(files):
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for name, content in files.items():
            zf.writestr(name, content)
    return buf.getvalue()


class TestParseAndStore:

    def test_loads_every_table(self, db):
        parse_and_store(_zip(FEED_FILES), db)
        assert db.query(Stop).count() == 2
        assert db.query(Route).count() == 1
        assert db.query(Trip).count() == 2
        assert db.query(StopTime).count() == 4
        assert db.query(ServiceCalendar).count() == 1
        assert db.query(ServiceCalendarDate).count() == 1
        assert db.query(ShapePoint).count() == 2

    def test_optional_columns_become_null(self, db):
        parse_and_store(_zip(FEED_FILES), db)
        t2 = db.get(Trip, "T2")
        assert t2.direction_id is None
        assert t2.shape_id is None
        assert db.get(Trip, "T1").direction_id == 0
        assert db.get(Stop, "S1").parent_station == "STA"
        assert db.get(Stop, "S2").parent_station is None

    def test_times_kept_as_text(self, db):
        parse_and_store(_zip(FEED_FILES), db)
        after_midnight = db.query(StopTime).filter_by(trip_id="T2", stop_sequence=1).one()
        assert after_midnight.departure_time == "25:10:00"
        untimed = db.query(StopTime).filter_by(trip_id="T2", stop_sequence=2).one()
        assert untimed.arrival_time is None

    def test_calendar_flags(self, db):
        parse_and_store(_zip(FEED_FILES), db)
        wk = db.get(ServiceCalendar, "WK")
        assert wk.monday and wk.friday
        assert not wk.saturday

    def test_reimport_replaces_data(self, db):
        parse_and_store(_zip(FEED_FILES), db)
        db.expunge_all()
        parse_and_store(_zip(FEED_FILES), db)
        assert db.query(Trip).count() == 2
        assert db.query(ShapePoint).count() == 2

    def test_shapes_optional(self, db):
        files = {k: v for k, v in FEED_FILES.items() if k != "shapes.txt"}
        parse_and_store(_zip(files), db)
        assert db.query(ShapePoint).count() == 0

    def test_missing_required_file(self, db):
        files = {k: v for k, v in FEED_FILES.items() if k != "trips.txt"}
        with pytest.raises(ValueError, match="trips.txt"):
            parse_and_store(_zip(files), db)


NOW = 1_770_000_000


def _feed(*updates):
    """updates: (trip_id, stop_id, stop_sequence, arrival_delay, departure_delay)"""
    feed = gtfs_realtime_pb2.FeedMessage()
    feed.header.gtfs_realtime_version = "2.0"
    for i, (trip_id, stop_id, seq, arr, dep) in enumerate(updates):
        entity = feed.entity.add()
        entity.id = str(i)
        entity.trip_update.trip.trip_id = trip_id
        stu = entity.trip_update.stop_time_update.add()
        if stop_id:
            stu.stop_id = stop_id
        if seq is not None:
            stu.stop_sequence = seq
        if arr is not None:
            stu.arrival.delay = arr
        if dep is not None:
            stu.departure.delay = dep
    return feed


class TestBuildDelayUpdates:

    def test_stamps_and_ttl(self, db):
        rows = build_delay_updates(_feed(("T1", "S1", None, 60, 90)), db, NOW)
        assert len(rows) == 1
        row = rows[0]
        assert (row.trip_id, row.stop_id) == ("T1", "S1")
        assert (row.arrival_delay, row.departure_delay) == (60, 90)
        assert row.created_timestamp == NOW
        assert row.expiration_timestamp == NOW + GTFS_RT_UPDATE_TTL_SECONDS

    def test_single_event_delay(self, db):
        row = build_delay_updates(_feed(("T1", "S1", None, None, -30)), db, NOW)[0]
        assert row.arrival_delay is None
        assert row.departure_delay == -30

    def test_skips_updates_without_delay(self, db):
        assert build_delay_updates(_feed(("T1", "S1", None, None, None)), db, NOW) == []

    def test_maps_sequence_to_stop_id(self, db):
        parse_and_store(_zip(FEED_FILES), db)
        rows = build_delay_updates(_feed(("T1", "", 2, 120, None)), db, NOW)
        assert rows[0].stop_id == "S2"

    def test_drops_unresolvable_stop(self, db):
        assert build_delay_updates(_feed(("T1", "", 9, 120, None)), db, NOW) == []


def test_prune_expired(db):
    db.add_all([
        StopTimeUpdate(trip_id="T1", stop_id="S1", arrival_delay=60,
                       created_timestamp=NOW - 300, expiration_timestamp=NOW - 1),
        StopTimeUpdate(trip_id="T1", stop_id="S1", arrival_delay=90,
                       created_timestamp=NOW - 10, expiration_timestamp=NOW + 100),
        StopTimeUpdate(trip_id="T1", stop_id="S2", arrival_delay=30,
                       created_timestamp=NOW - 900, expiration_timestamp=None),
    ])
    db.commit()
    assert prune_expired(db, NOW) == 1
    db.commit()
    assert sorted(u.arrival_delay for u in db.query(StopTimeUpdate).all()) == [30, 90]
