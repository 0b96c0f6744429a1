from pathlib import Path
from dotenv import load_dotenv
import os

load_dotenv()

BASE_DIR = Path(__file__).parent

# Data directory (gitignored)
DATA_DIR = BASE_DIR / "data"
DATA_DIR.mkdir(exist_ok=True)

# Database
DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{DATA_DIR}/transit.db")

# GTFS Static
GTFS_STATIC_URL: str = os.getenv("GTFS_STATIC_URL", "")
GTFS_REFRESH_DAYS: int = int(os.getenv("GTFS_REFRESH_DAYS", "30"))

# GTFS-Realtime
GTFS_RT_TRIP_UPDATES_URL: str = os.getenv("GTFS_RT_TRIP_UPDATES_URL", "")
GTFS_RT_API_KEY: str = os.getenv("GTFS_RT_API_KEY", "")  # appended as ?key= on each RT request
GTFS_RT_POLL_SECONDS: int = int(os.getenv("GTFS_RT_POLL_SECONDS", "15"))
# Lifetime stamped into each stored delay update; expired rows are ignored by queries.
GTFS_RT_UPDATE_TTL_SECONDS: int = int(os.getenv("GTFS_RT_UPDATE_TTL_SECONDS", "120"))

# Generated shape cache
SHAPES_REBUILD_HOUR: int = int(os.getenv("SHAPES_REBUILD_HOUR", "3"))

# Departures
DEFAULT_DEPARTURES_LIMIT: int = int(os.getenv("DEFAULT_DEPARTURES_LIMIT", "10"))
DEPARTURE_GRACE_SECONDS: int = int(os.getenv("DEPARTURE_GRACE_SECONDS", "60"))

# Stop lookups
STOPS_NEAR_DEFAULT_RADIUS_KM: float = float(os.getenv("STOPS_NEAR_DEFAULT_RADIUS_KM", "0.5"))
STOPS_NEAR_MAX_RESULTS: int = int(os.getenv("STOPS_NEAR_MAX_RESULTS", "100"))

# API
API_HOST: str = os.getenv("API_HOST", "0.0.0.0")
API_PORT: int = int(os.getenv("API_PORT", "8000"))
CORS_ORIGINS: list[str] = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
INGEST_API_KEY: str = os.getenv("INGEST_API_KEY", "")
