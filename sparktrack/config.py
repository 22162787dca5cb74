import os

# -----------------------------------------------------------------------------
# Config
# -----------------------------------------------------------------------------
# Serverless deployments only get a scratch /tmp; data does not survive restarts.
DATA_DIR = os.environ.get(
    "ANALYTICS_DATA_DIR",
    "/tmp" if os.environ.get("VERCEL") else os.path.join(os.getcwd(), "data"),
)

# "ip" or "ip+ua"
DEDUP_KEY = os.environ.get("ANALYTICS_DEDUP_KEY", "ip")
DEDUP_WINDOW_HOURS = float(os.environ.get("ANALYTICS_DEDUP_WINDOW_HOURS", "1"))

GEO_TIMEOUT = float(os.environ.get("ANALYTICS_GEO_TIMEOUT", "3.0"))
GEOIP_DB_PATH = os.environ.get("GEOIP_DB_PATH", "/geoip/GeoLite2-City.mmdb")

# empty token leaves the dashboard open
DASH_TOKEN = os.environ.get("ANALYTICS_DASH_TOKEN", "")

TRACKING_ENABLED = os.environ.get("ANALYTICS_TRACKING_ENABLED", "1").lower() not in ("0", "false", "no")
TRACKER_WORKERS = int(os.environ.get("ANALYTICS_TRACKER_WORKERS", "2"))
# visits waiting for a worker beyond this are dropped
TRACKER_MAX_PENDING = int(os.environ.get("ANALYTICS_TRACKER_MAX_PENDING", "100"))

LOG_LEVEL = os.environ.get("ANALYTICS_LOG_LEVEL", "INFO")


def defaults() -> dict:
    """
    Flask config mapping built from the environment.
    """
    return {
        "ANALYTICS_DATA_DIR": DATA_DIR,
        "ANALYTICS_DEDUP_KEY": DEDUP_KEY,
        "ANALYTICS_DEDUP_WINDOW_HOURS": DEDUP_WINDOW_HOURS,
        "ANALYTICS_GEO_TIMEOUT": GEO_TIMEOUT,
        "GEOIP_DB_PATH": GEOIP_DB_PATH,
        "ANALYTICS_DASH_TOKEN": DASH_TOKEN,
        "ANALYTICS_TRACKING_ENABLED": TRACKING_ENABLED,
        "ANALYTICS_TRACKER_WORKERS": TRACKER_WORKERS,
        "ANALYTICS_TRACKER_MAX_PENDING": TRACKER_MAX_PENDING,
    }
