# ⚙️ CityFix Configuration
# Environment driven settings shared by the API, the services and the change watcher

import os
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Settings:
    """Runtime settings read once from the environment (.env supported)"""

    # Database
    mongo_uri = os.getenv("MONGO_URI", "mongodb://localhost:27017")
    db_name = os.getenv("MONGODB_NAME", "cityfix")

    # Auth
    secret_key = os.getenv("SECRET_KEY", "change-me-cityfix-dev-secret")
    algorithm = "HS256"
    access_token_expire_minutes = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", str(60 * 24)))

    # Media
    public_base_url = os.getenv("PUBLIC_BASE_URL", "http://localhost:8000").rstrip("/")

    # Push delivery (Expo)
    expo_push_url = os.getenv("EXPO_PUSH_URL", "https://exp.host/--/api/v2/push/send")
    expo_access_token = os.getenv("EXPO_ACCESS_TOKEN")
    push_dry_run = _env_bool("PUSH_DRY_RUN")
    push_timeout_seconds = float(os.getenv("PUSH_TIMEOUT_SECONDS", "15"))

    # Workers
    enable_change_watcher = _env_bool("ENABLE_CHANGE_WATCHER", "true")

    log_level = os.getenv("LOG_LEVEL", "INFO").upper()


settings = Settings()

# Evidence limits (per evidence set, before and after are checked independently)
MAX_VIDEO_BYTES = 15 * 1024 * 1024
MAX_PHOTOS = 4
MAX_VIDEOS = 1

# Expo accepts at most 100 messages per request
EXPO_CHUNK_SIZE = 100

# Duplicate detection windows
AUTO_MERGE_RADIUS_KM = 0.03  # 30 metres
AUTO_MERGE_TIME_HOURS = 12
MANUAL_REVIEW_RADIUS_KM = 0.05  # 50 metres
MANUAL_REVIEW_TIME_HOURS = 24

ADMIN_PAGE_SIZE = 20

# Collection names
REPORTS = "reports"
USERS = "users"
NOTIFICATIONS = "notifications"
LOGS = "logs"
CONFIG = "config"
