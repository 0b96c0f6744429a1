"""
Downloads and parses the GTFS static feed into the local database.

Feed contents used:
  stops.txt          → Stop
  routes.txt         → Route
  trips.txt          → Trip
  stop_times.txt     → StopTime
  calendar.txt       → ServiceCalendar      (optional)
  calendar_dates.txt → ServiceCalendarDate  (optional)
  shapes.txt         → ShapePoint           (optional)

An import replaces the whole feed: every feed table is emptied first, so
a file missing from the new zip leaves its table empty. Rows that cannot
be used (stops without coordinates, trips on unknown routes, stop_times
on unknown trips or stops) are skipped and counted.
"""

import io
import logging
import zipfile
from typing import Any, Callable

import httpx
import pandas as pd
from sqlalchemy.orm import Session

from config import DATA_DIR, GTFS_STATIC_URL
from db.models import (
    Route, ServiceCalendar, ServiceCalendarDate, ShapePoint, Stop, StopTime, Trip,
)

logger = logging.getLogger(__name__)

GTFS_ZIP_PATH = DATA_DIR / "gtfs_static.zip"

# Children first, so deletes never trip a foreign key.
_FEED_TABLES = (StopTime, Trip, Route, Stop, ServiceCalendarDate, ServiceCalendar, ShapePoint)

_WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


async def download_gtfs_zip(url: str = GTFS_STATIC_URL) -> bytes:
    """Download GTFS zip from the given URL and cache it to disk."""
    if not url:
        raise ValueError("GTFS_STATIC_URL is not configured. Set it in your .env file.")
    logger.info("Downloading GTFS static feed from %s", url)
    async with httpx.AsyncClient(timeout=60) as client:
        response = await client.get(url, follow_redirects=True)
        response.raise_for_status()
    GTFS_ZIP_PATH.write_bytes(response.content)
    logger.info("Saved GTFS zip to %s (%d bytes)", GTFS_ZIP_PATH, len(response.content))
    return response.content


def _text(row: dict[str, str], column: str) -> str | None:
    value = row.get(column, "")
    return value if value != "" else None


def _int(row: dict[str, str], column: str) -> int | None:
    value = _text(row, column)
    return int(value) if value is not None else None


class _FeedLoader:
    """Builds model rows from feed records, remembering the ids it has loaded."""

    def __init__(self, session: Session) -> None:
        self.session = session
        self.stop_ids: set[str] = set()
        self.route_ids: set[str] = set()
        self.trip_ids: set[str] = set()

    def load(self, filename: str, df: pd.DataFrame, build: Callable[[dict[str, str]], Any]) -> int:
        records = []
        skipped = 0
        for row in df.to_dict("records"):
            record = build(row)
            if record is None:
                skipped += 1
                continue
            records.append(record)
        self.session.bulk_save_objects(records)
        if skipped:
            logger.warning("%s: skipped %d unusable rows.", filename, skipped)
        logger.info("%s: loaded %d rows.", filename, len(records))
        return len(records)

    def stop(self, row: dict[str, str]) -> Stop | None:
        # Generic nodes and boarding areas carry no coordinates.
        if _text(row, "stop_lat") is None or _text(row, "stop_lon") is None:
            return None
        self.stop_ids.add(row["stop_id"])
        return Stop(
            stop_id=row["stop_id"],
            stop_name=row.get("stop_name", ""),
            parent_station=_text(row, "parent_station"),
            stop_lat=float(row["stop_lat"]),
            stop_lon=float(row["stop_lon"]),
        )

    def route(self, row: dict[str, str]) -> Route:
        self.route_ids.add(row["route_id"])
        return Route(
            route_id=row["route_id"],
            route_short_name=row.get("route_short_name", ""),
            route_long_name=_text(row, "route_long_name"),
            route_type=_int(row, "route_type"),
        )

    def trip(self, row: dict[str, str]) -> Trip | None:
        if row["route_id"] not in self.route_ids:
            return None
        self.trip_ids.add(row["trip_id"])
        return Trip(
            trip_id=row["trip_id"],
            route_id=row["route_id"],
            service_id=row["service_id"],
            trip_headsign=_text(row, "trip_headsign"),
            direction_id=_int(row, "direction_id"),
            shape_id=_text(row, "shape_id"),
        )

    def stop_time(self, row: dict[str, str]) -> StopTime | None:
        # SQLite silently ignores FK violations; PostgreSQL raises immediately.
        if row["trip_id"] not in self.trip_ids or row["stop_id"] not in self.stop_ids:
            return None
        return StopTime(
            trip_id=row["trip_id"],
            arrival_time=_text(row, "arrival_time"),
            departure_time=_text(row, "departure_time"),
            stop_id=row["stop_id"],
            stop_sequence=int(row["stop_sequence"]),
        )

    @staticmethod
    def calendar(row: dict[str, str]) -> ServiceCalendar:
        return ServiceCalendar(
            service_id=row["service_id"],
            start_date=row["start_date"],
            end_date=row["end_date"],
            **{day: row.get(day) == "1" for day in _WEEKDAYS},
        )

    @staticmethod
    def calendar_date(row: dict[str, str]) -> ServiceCalendarDate:
        return ServiceCalendarDate(
            service_id=row["service_id"],
            date=row["date"],
            exception_type=int(row["exception_type"]),
        )

    @staticmethod
    def shape_point(row: dict[str, str]) -> ShapePoint:
        return ShapePoint(
            shape_id=row["shape_id"],
            shape_pt_sequence=int(row["shape_pt_sequence"]),
            shape_pt_lat=float(row["shape_pt_lat"]),
            shape_pt_lon=float(row["shape_pt_lon"]),
        )


def parse_and_store(zip_bytes: bytes, session: Session) -> None:
    """
    Extract GTFS zip and replace the stored feed with its contents.
    Nothing is committed unless every required file loads.
    """
    loader = _FeedLoader(session)
    with zipfile.ZipFile(io.BytesIO(zip_bytes)) as zf:
        names = set(zf.namelist())
        logger.info("GTFS zip contains: %s", sorted(names))

        def read(filename: str) -> pd.DataFrame:
            with zf.open(filename) as f:
                return pd.read_csv(f, dtype=str).fillna("")

        for model in _FEED_TABLES:
            session.query(model).delete()

        # Order matters: trips need routes, stop_times need trips and stops.
        steps = (
            ("stops.txt", loader.stop, True),
            ("routes.txt", loader.route, True),
            ("trips.txt", loader.trip, True),
            ("stop_times.txt", loader.stop_time, True),
            ("calendar.txt", loader.calendar, False),
            ("calendar_dates.txt", loader.calendar_date, False),
            ("shapes.txt", loader.shape_point, False),
        )
        for filename, build, required in steps:
            if filename not in names:
                if required:
                    raise ValueError(f"GTFS zip is missing {filename}")
                logger.info("%s not present in feed; table left empty.", filename)
                continue
            loader.load(filename, read(filename), build)

    session.commit()
    logger.info("GTFS static data committed to database.")


async def refresh_static_data(session: Session) -> None:
    """Download and ingest a fresh copy of GTFS static data."""
    zip_bytes = await download_gtfs_zip()
    parse_and_store(zip_bytes, session)
