"""
Resolves which GTFS service_ids run on a given calendar date.

  base   = calendar rows whose [start_date, end_date] contains the date
           and whose weekday flag is set
  active = (base − services REMOVED on that date) ∪ services ADDED on that date

An ADDED exception always wins, even when the service has no calendar row
or the date lies outside its range.
"""

import logging
from datetime import date, datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from db.models import ServiceCalendar, ServiceCalendarDate

logger = logging.getLogger(__name__)

EXCEPTION_ADDED = 1
EXCEPTION_REMOVED = 2

# Indexed by date.weekday() (Monday == 0)
_WEEKDAY_COLUMNS = (
    ServiceCalendar.monday,
    ServiceCalendar.tuesday,
    ServiceCalendar.wednesday,
    ServiceCalendar.thursday,
    ServiceCalendar.friday,
    ServiceCalendar.saturday,
    ServiceCalendar.sunday,
)


def format_ymd(d: date) -> str:
    return d.strftime("%Y%m%d")


def active_service_ids(session: Session, ymd: str) -> set[str]:
    """Return the set of service_ids active on ymd (YYYYMMDD)."""
    weekday_flag = _WEEKDAY_COLUMNS[datetime.strptime(ymd, "%Y%m%d").weekday()]

    base = set(session.scalars(
        select(ServiceCalendar.service_id)
        .where(ServiceCalendar.start_date <= ymd)
        .where(ServiceCalendar.end_date >= ymd)
        .where(weekday_flag.is_(True))
    ))

    added: set[str] = set()
    removed: set[str] = set()
    exceptions = session.execute(
        select(ServiceCalendarDate.service_id, ServiceCalendarDate.exception_type)
        .where(ServiceCalendarDate.date == ymd)
    ).all()
    for service_id, exception_type in exceptions:
        if exception_type == EXCEPTION_ADDED:
            added.add(service_id)
        elif exception_type == EXCEPTION_REMOVED:
            removed.add(service_id)

    active = (base - removed) | added
    logger.debug(
        "Services on %s: %d base, %d removed, %d added → %d active.",
        ymd, len(base), len(removed), len(added), len(active),
    )
    return active
