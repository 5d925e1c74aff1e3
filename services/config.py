import os
from dotenv import load_dotenv

load_dotenv()

REDIS_URL = os.getenv("REDIS_URL", "redis://redis:6379/0")
FEED_STREAM = os.getenv("FEED_STREAM", "feed.live")

DATABASE_PATH = os.getenv("DATABASE_PATH", "claims.db")

PRESENCE_GRACE_MINUTES = int(os.getenv("PRESENCE_GRACE_MINUTES", 15))
PRESENCE_SESSION_TTL_HOURS = int(os.getenv("PRESENCE_SESSION_TTL_HOURS", 8))

CLAIM_COOLDOWN_MINUTES = int(os.getenv("CLAIM_COOLDOWN_MINUTES", 60))
CLAIM_POLL_SECONDS = float(os.getenv("CLAIM_POLL_SECONDS", 10))
CLAIM_CODE_PREFIX = os.getenv("CLAIM_CODE_PREFIX", "GRB")

SCHEDULE_POLL_SECONDS = float(os.getenv("SCHEDULE_POLL_SECONDS", 60))
SCHEDULE_TIMEZONE = os.getenv("SCHEDULE_TIMEZONE", "America/New_York")
DEFAULT_OPEN_TIME = os.getenv("DEFAULT_OPEN_TIME", "09:00")

DROPS_TABLE = os.getenv("DROPS_TABLE", "drops")
PROFILES_TABLE = os.getenv("PROFILES_TABLE", "user_profiles")

API_HOST = os.getenv("API_HOST", "0.0.0.0")
API_PORT = int(os.getenv("API_PORT", 8000))
DEBUG = os.getenv("DEBUG", "false").lower() in ["1", "true", "yes"]
