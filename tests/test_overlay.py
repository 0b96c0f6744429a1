"""
Tests for realtime.overlay: authoritative delay selection and the two
delay policies.
"""

import pytest
from datetime import datetime

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from db.models import Base, Route, Stop, StopTime, StopTimeUpdate, Trip
from realtime.overlay import (
    OverlayRow,
    departure_view_delay,
    itinerary_delays,
    overlay_for_stop,
    overlay_for_trip,
    shift,
)

NOW = int(datetime(2026, 2, 9, 12, 0).timestamp())


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
    session.add(Route(route_id="R1", route_short_name="1", route_long_name="Line 1"))
    session.add(Stop(stop_id="S1", stop_name="Comedie", stop_lat=43.608, stop_lon=3.879))
    session.add(Stop(stop_id="S2", stop_name="Gare", stop_lat=43.604, stop_lon=3.880))
    session.add(Trip(trip_id="T1", route_id="R1", service_id="WK", direction_id=0, trip_headsign="Mosson"))
    session.add(StopTime(trip_id="T1", stop_id="S1", stop_sequence=1,
                         arrival_time="12:00:00", departure_time="12:01:00"))
    session.add(StopTime(trip_id="T1", stop_id="S2", stop_sequence=2,
                         arrival_time="12:05:00", departure_time="12:06:00"))
    session.commit()
    yield session
    session.close()
    engine.dispose()


def _update(session, created, arrival=None, departure=None, expires=None, trip="T1", stop="S1"):
    session.add(StopTimeUpdate(
        trip_id=trip, stop_id=stop,
        arrival_delay=arrival, departure_delay=departure,
        created_timestamp=created, expiration_timestamp=expires,
    ))
    session.commit()


def _row(arrival=None, departure=None) -> OverlayRow:
    return OverlayRow(
        trip_id="T1", stop_id="S1", stop_sequence=1,
        arrival_time="12:00:00", departure_time="12:01:00",
        service_id="WK", route_id="R1", direction_id=0, trip_headsign=None,
        route_short_name="1", route_long_name=None,
        arrival_delay=arrival, departure_delay=departure, realtime_updated_at=None,
    )


class TestOverlayForStop:

    def test_no_updates_gives_null_delays(self, db):
        rows = overlay_for_stop(db, "S1", {"WK"}, NOW)
        assert len(rows) == 1
        assert rows[0].arrival_delay is None
        assert rows[0].departure_delay is None
        assert rows[0].realtime_updated_at is None

    def test_latest_update_wins(self, db):
        _update(db, NOW - 60, departure=30)
        _update(db, NOW - 10, departure=120)
        rows = overlay_for_stop(db, "S1", {"WK"}, NOW)
        assert rows[0].departure_delay == 120
        assert rows[0].realtime_updated_at == NOW - 10

    def test_expired_update_ignored(self, db):
        _update(db, NOW - 60, departure=30)
        _update(db, NOW - 5, departure=999, expires=NOW)  # expiration not strictly after now
        rows = overlay_for_stop(db, "S1", {"WK"}, NOW)
        assert rows[0].departure_delay == 30

    def test_unexpired_update_used(self, db):
        _update(db, NOW - 5, arrival=45, expires=NOW + 1)
        rows = overlay_for_stop(db, "S1", {"WK"}, NOW)
        assert rows[0].arrival_delay == 45

    def test_update_for_other_stop_not_joined(self, db):
        _update(db, NOW - 5, departure=60, stop="S2")
        rows = overlay_for_stop(db, "S1", {"WK"}, NOW)
        assert rows[0].departure_delay is None

    def test_inactive_service_filtered(self, db):
        assert overlay_for_stop(db, "S1", {"SAT"}, NOW) == []

    def test_empty_service_set(self, db):
        assert overlay_for_stop(db, "S1", set(), NOW) == []

    def test_tied_created_timestamp_yields_single_row(self, db):
        _update(db, NOW - 5, departure=60)
        _update(db, NOW - 5, departure=90)
        rows = overlay_for_stop(db, "S1", {"WK"}, NOW)
        assert len(rows) == 1


class TestOverlayForTrip:

    def test_ordered_by_sequence_with_names(self, db):
        rows = overlay_for_trip(db, "T1", NOW)
        assert [r.stop_id for r in rows] == ["S1", "S2"]
        assert rows[1].stop_name == "Gare"
        assert rows[0].route_short_name == "1"

    def test_delays_per_stop(self, db):
        _update(db, NOW - 5, arrival=60, stop="S2")
        rows = overlay_for_trip(db, "T1", NOW)
        assert rows[0].arrival_delay is None
        assert rows[1].arrival_delay == 60

    def test_unknown_trip(self, db):
        assert overlay_for_trip(db, "NOPE", NOW) == []


class TestDelayPolicies:

    def test_departure_view_prefers_departure(self):
        assert departure_view_delay(_row(arrival=30, departure=90)) == 90

    def test_departure_view_falls_back_to_arrival(self):
        assert departure_view_delay(_row(arrival=30)) == 30

    def test_departure_view_none_when_absent(self):
        assert departure_view_delay(_row()) is None

    def test_departure_view_keeps_zero(self):
        assert departure_view_delay(_row(arrival=30, departure=0)) == 0

    def test_itinerary_cross_substitution(self):
        assert itinerary_delays(_row(arrival=60)) == (60, 60)
        assert itinerary_delays(_row(departure=-30)) == (-30, -30)

    def test_itinerary_independent_fields(self):
        assert itinerary_delays(_row(arrival=60, departure=120)) == (60, 120)

    def test_itinerary_defaults_to_zero(self):
        assert itinerary_delays(_row()) == (0, 0)


def test_shift():
    assert shift(100, 20) == 120
    assert shift(100, None) == 100
    assert shift(None, 20) is None
