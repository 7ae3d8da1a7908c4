import os
from dotenv import load_dotenv

load_dotenv()

DATABASE_URL   = os.getenv("DATABASE_URL", "postgresql+asyncpg://guardian:guardian@db:5432/guardian")
REDIS_URL      = os.getenv("REDIS_URL", "redis://redis:6379")
LOG_DIR        = os.getenv("LOG_DIR", "/logs")
LOG_LEVEL      = os.getenv("LOG_LEVEL", "INFO").upper()

SMTP_HOST      = os.getenv("SMTP_HOST")
SMTP_PORT      = int(os.getenv("SMTP_PORT", 465))
SMTP_USER      = os.getenv("SMTP_USER")
SMTP_PASSWORD  = os.getenv("SMTP_PASSWORD")
ALERT_SENDER   = os.getenv("ALERT_SENDER", SMTP_USER or "alerts@pairguardian.local")
APP_URL        = os.getenv("APP_URL", "")

# ----- alert thresholds (tuned against the flat-earth distance) -----
LIVENESS_MIN     = int(os.getenv("LIVENESS_THRESHOLD_MIN", 5))
MOVE_THRESHOLD_M = int(os.getenv("MOVE_THRESHOLD_M", 230))
ALERT_MARGIN_M   = int(os.getenv("ALERT_MARGIN_M", 500))
FIX_LAG_MPS      = float(os.getenv("FIX_LAG_MPS", 6))
WINDOW_SIZE      = int(os.getenv("WINDOW_SIZE", 7))

SWEEP_INTERVAL_SEC = int(os.getenv("SWEEP_INTERVAL_SEC", 60))
SWEEP_ENABLED      = os.getenv("SWEEP_ENABLED", "true").lower() in ("1", "true", "yes")

AREA_CODE_CACHE_SIZE = int(os.getenv("AREA_CODE_CACHE_SIZE", 4096))
