import os
from datetime import timezone

from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./shelf.db")
SQL_ECHO = os.getenv("SQL_ECHO", "0").lower() in ("1", "true", "yes")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# streak "days" are counted on one reference clock, not per reader
STREAK_TIMEZONE = timezone.utc

# page size cap for list endpoints
MAX_PAGE_SIZE = int(os.getenv("MAX_PAGE_SIZE", "100"))
