"""
FastAPI application entry point.

On startup:
  1. Initialise the database schema and check whether explicit shape
     geometry is loaded (re-checked after every static import).
  2. Run the one-time GTFS sync (static import + shape cache rebuild) when
     GTFS_STATIC_URL is configured.
  3. Start the APScheduler:
       - GTFS-RT delay refresh every GTFS_RT_POLL_SECONDS
         (only when GTFS_RT_TRIP_UPDATES_URL is set).
       - GTFS static import every GTFS_REFRESH_DAYS.
       - Shape cache rebuild daily at SHAPES_REBUILD_HOUR:00.
     Every job is max_instances=1 and additionally guarded by the
     orchestrator, so overlapping runs are skipped.

Endpoints:
  GET  /api/station-names
  GET  /api/stops-by-name?name=<str>&include_routes=<bool>
  GET  /api/stop-ids-for-name-and-route?name=<str>&route_id=<id>|route_short_name=<str>
  GET  /api/routes-by-stop?stop_id=<id>
  GET  /api/next-departures?stop_id=<id>&limit=<int>
  GET  /api/trip-stop-times?trip_id=<id>[&from_stop_id|from_stop_sequence][&to_stop_id|to_stop_sequence]
  GET  /api/stops-near?lat=<float>&lon=<float>&radius=<km>
  GET  /api/shapes
  GET  /api/shape?shape_id=<id>
  GET  /api/shape-by-route?route_id=<id>&direction_id=<0|1|null>
  GET  /api/shape-from-trip?trip_id=<id>
  GET  /health
  POST /admin/generate-shapes
  POST /admin/import-gtfs
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import Depends, FastAPI, HTTPException, Query, Request, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from sqlalchemy import func
from sqlalchemy.orm import Session

from api.schemas import (
    AdminResponse,
    DeparturesResponse,
    ErrorResponse,
    HealthResponse,
    NearbyStopsResponse,
    RoutesByStopResponse,
    ShapeListResponse,
    ShapeResponse,
    StationNamesResponse,
    StopRouteMatchesResponse,
    StopsResponse,
    TripStopTimesResponse,
)
from config import (
    API_HOST,
    API_PORT,
    CORS_ORIGINS,
    GTFS_REFRESH_DAYS,
    GTFS_RT_POLL_SECONDS,
    GTFS_RT_TRIP_UPDATES_URL,
    GTFS_STATIC_URL,
    INGEST_API_KEY,
    SHAPES_REBUILD_HOUR,
)
from db.models import GeneratedShape, Stop, Trip
from db.session import SessionLocal, get_session, init_db
from errors import BadInputError, NotFoundError
from ingestion.gtfs_realtime import get_last_fetched
from ingestion.jobs import SyncOrchestrator
from schedule import catalog
from schedule.departures import next_departures
from schedule.journey import trip_stop_times
from shapes.resolver import ShapeResolver

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

_ingest_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def _require_ingest_key(key: str | None = Security(_ingest_key_header)) -> None:
    """
    Optional API-key guard for the admin endpoints.

    If INGEST_API_KEY is not set the endpoints are open (local dev / testing).
    If it is set, the request must include the matching X-API-Key header.
    """
    if not INGEST_API_KEY:
        return  # no key configured → open
    if key != INGEST_API_KEY:
        raise HTTPException(status_code=401, detail="Invalid or missing X-API-Key header.")


scheduler = AsyncIOScheduler()
orchestrator = SyncOrchestrator(SessionLocal)


async def _scheduled_realtime_refresh() -> None:
    try:
        await orchestrator.run_realtime_refresh()
    except Exception as exc:
        logger.error("GTFS-RT refresh failed: %s", exc, exc_info=True)


async def _scheduled_import() -> None:
    """Static import followed by a shape cache rebuild so the cache tracks the feed."""
    try:
        if await orchestrator.run_import():
            orchestrator.run_shape_rebuild()
    except Exception as exc:
        logger.error("GTFS static import failed: %s", exc, exc_info=True)


async def _scheduled_shape_rebuild() -> None:
    try:
        orchestrator.run_shape_rebuild()
    except Exception as exc:
        logger.error("Shape cache rebuild failed: %s", exc, exc_info=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    init_db()
    logger.info("Database initialised.")
    orchestrator.refresh_capabilities()

    if GTFS_STATIC_URL:
        await orchestrator.startup_sync()
        scheduler.add_job(
            _scheduled_import,
            "interval",
            days=GTFS_REFRESH_DAYS,
            id="gtfs_static_import",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
    else:
        logger.info("GTFS static import disabled: GTFS_STATIC_URL not set.")

    scheduler.add_job(
        _scheduled_shape_rebuild,
        "cron",
        hour=SHAPES_REBUILD_HOUR,
        minute=0,
        id="shape_cache_rebuild",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )

    if GTFS_RT_TRIP_UPDATES_URL and GTFS_RT_POLL_SECONDS > 0:
        scheduler.add_job(
            _scheduled_realtime_refresh,
            "interval",
            seconds=GTFS_RT_POLL_SECONDS,
            id="gtfs_rt_refresh",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        logger.info("GTFS-RT refresh scheduled (every %ds).", GTFS_RT_POLL_SECONDS)
    else:
        logger.info("GTFS-RT refresh disabled: GTFS_RT_TRIP_UPDATES_URL not set.")

    scheduler.start()
    logger.info("Scheduler started.")

    yield

    # Shutdown
    if scheduler.running:
        scheduler.shutdown()


app = FastAPI(
    title="Transit Schedule API",
    description="Next departures, trip itineraries and route shapes from GTFS + GTFS-RT.",
    version="0.1.0",
    lifespan=lifespan,
    responses={
        400: {"model": ErrorResponse, "description": "Missing or unparseable parameter"},
        404: {"model": ErrorResponse, "description": "Key matched nothing"},
    },
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)


@app.exception_handler(BadInputError)
async def _bad_input_handler(request: Request, exc: BadInputError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"error": str(exc)})


@app.exception_handler(NotFoundError)
async def _not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"error": str(exc), **exc.details})


def get_shape_resolver(session: Session = Depends(get_session)) -> ShapeResolver:
    return ShapeResolver(session, explicit_shapes=orchestrator.explicit_shapes)


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

@app.get("/health", response_model=HealthResponse)
async def health(session: Session = Depends(get_session)) -> HealthResponse:
    """Liveness + data-freshness check."""
    last_fetched = get_last_fetched()
    return {
        "status": "ok",
        "timestamp": datetime.utcnow().isoformat(),
        "stops": session.query(func.count(Stop.stop_id)).scalar() or 0,
        "trips": session.query(func.count(Trip.trip_id)).scalar() or 0,
        "generated_shapes": session.query(func.count(GeneratedShape.shape_id)).scalar() or 0,
        "explicit_shapes": orchestrator.explicit_shapes,
        "import_running": orchestrator.import_guard.busy,
        "realtime_running": orchestrator.realtime_guard.busy,
        "realtime_last_fetched_at": last_fetched.isoformat() if last_fetched else None,
    }


# ---------------------------------------------------------------------------
# Stops and routes
# ---------------------------------------------------------------------------

@app.get("/api/station-names", response_model=StationNamesResponse)
async def station_names(session: Session = Depends(get_session)) -> StationNamesResponse:
    names = catalog.station_names(session)
    return {"ok": True, "count": len(names), "names": names}


@app.get("/api/stops-by-name", response_model=StopsResponse, response_model_exclude_none=True)
async def stops_by_name(
    name: str | None = Query(None, description="Stop name substring (case-insensitive)"),
    include_routes: bool = Query(False, description="Attach the routes serving each stop"),
    session: Session = Depends(get_session),
) -> StopsResponse:
    return {"stops": catalog.stops_by_name(session, name, include_routes=include_routes)}


@app.get("/api/stop-ids-for-name-and-route", response_model=StopRouteMatchesResponse)
async def stop_ids_for_name_and_route(
    name: str | None = Query(None),
    route_id: str | None = Query(None),
    route_short_name: str | None = Query(None),
    session: Session = Depends(get_session),
) -> StopRouteMatchesResponse:
    return {"stops": catalog.stop_ids_for_name_and_route(session, name, route_id, route_short_name)}


@app.get("/api/routes-by-stop", response_model=RoutesByStopResponse)
async def routes_by_stop(
    stop_id: str | None = Query(None),
    session: Session = Depends(get_session),
) -> RoutesByStopResponse:
    return {"routes": catalog.routes_by_stop(session, stop_id)}


@app.get("/api/stops-near", response_model=NearbyStopsResponse)
async def stops_near(
    lat: str | None = Query(None),
    lon: str | None = Query(None),
    radius: str | None = Query(None, description="Search radius in km (default 0.5)"),
    session: Session = Depends(get_session),
) -> NearbyStopsResponse:
    return {"stops": catalog.stops_near(session, lat, lon, radius)}


# ---------------------------------------------------------------------------
# Departures and itineraries
# ---------------------------------------------------------------------------

@app.get("/api/next-departures", response_model=DeparturesResponse)
async def get_next_departures(
    stop_id: str | None = Query(None, description="GTFS stop_id"),
    limit: str | None = Query(None, description="Maximum number of departures (default 10)"),
    session: Session = Depends(get_session),
) -> DeparturesResponse:
    """Upcoming departures from a stop, realtime delays applied."""
    return {"departures": next_departures(session, stop_id, limit)}


@app.get("/api/trip-stop-times", response_model=TripStopTimesResponse)
async def get_trip_stop_times(
    trip_id: str | None = Query(None),
    from_stop_id: str | None = Query(None),
    to_stop_id: str | None = Query(None),
    from_stop_sequence: str | None = Query(None),
    to_stop_sequence: str | None = Query(None),
    session: Session = Depends(get_session),
) -> TripStopTimesResponse:
    """Full itinerary of a trip, plus the journey between two of its stops."""
    return trip_stop_times(
        session,
        trip_id,
        from_stop_id=from_stop_id,
        to_stop_id=to_stop_id,
        from_stop_sequence=from_stop_sequence,
        to_stop_sequence=to_stop_sequence,
    )


# ---------------------------------------------------------------------------
# Shapes
# ---------------------------------------------------------------------------

@app.get("/api/shapes", response_model=ShapeListResponse)
async def list_shapes(resolver: ShapeResolver = Depends(get_shape_resolver)) -> ShapeListResponse:
    return resolver.list_shapes()


@app.get("/api/shape", response_model=ShapeResponse, response_model_exclude_none=True)
async def get_shape(
    shape_id: str | None = Query(None),
    resolver: ShapeResolver = Depends(get_shape_resolver),
) -> ShapeResponse:
    return resolver.shape(shape_id)


@app.get("/api/shape-by-route", response_model=ShapeResponse)
async def get_shape_by_route(
    route_id: str | None = Query(None),
    direction_id: str | None = Query(None, description="0, 1, or null"),
    resolver: ShapeResolver = Depends(get_shape_resolver),
) -> ShapeResponse:
    return resolver.route_shape(route_id, direction_id)


@app.get("/api/shape-from-trip", response_model=ShapeResponse, response_model_exclude_none=True)
async def get_shape_from_trip(
    trip_id: str | None = Query(None),
    resolver: ShapeResolver = Depends(get_shape_resolver),
) -> ShapeResponse:
    return resolver.trip_shape(trip_id)


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------

@app.post("/admin/generate-shapes", response_model=AdminResponse)
async def trigger_shape_generation(_: None = Depends(_require_ingest_key)) -> AdminResponse:
    """Rebuild the generated shape cache now. No-op if a rebuild is running."""
    written = orchestrator.run_shape_rebuild()
    if written is None:
        return {"ok": True, "message": "Shape generation already running."}
    return {"ok": True, "message": f"Shape generation complete: {written} shapes written."}


@app.post("/admin/import-gtfs", response_model=AdminResponse)
async def trigger_gtfs_import(_: None = Depends(_require_ingest_key)) -> AdminResponse:
    """Download and load the static feed now. No-op if an import is running."""
    try:
        ran = await orchestrator.run_import()
    except ValueError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    if not ran:
        return {"ok": True, "message": "GTFS import already running."}
    orchestrator.run_shape_rebuild()
    return {"ok": True, "message": "GTFS static data imported and shape cache rebuilt."}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=API_HOST, port=API_PORT)
