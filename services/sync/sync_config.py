import os
from dotenv import load_dotenv

load_dotenv()

# Questrade rejects activity requests spanning more than 31 days
ACTIVITY_CHUNK_DAYS = int(os.getenv("ACTIVITY_CHUNK_DAYS", "31"))
ACTIVITY_REQUEST_DELAY_MS = int(os.getenv("ACTIVITY_REQUEST_DELAY_MS", "100"))
ACTIVITY_MAX_RETRIES = int(os.getenv("ACTIVITY_MAX_RETRIES", "3"))
ACTIVITY_RETRY_INITIAL_DELAY_S = float(os.getenv("ACTIVITY_RETRY_INITIAL_DELAY_S", "1"))
ACTIVITY_RETENTION_MONTHS = int(os.getenv("ACTIVITY_RETENTION_MONTHS", "24"))

SYNC_FULL_MONTHS = int(os.getenv("SYNC_FULL_MONTHS", "6"))
SYNC_INCREMENTAL_MONTHS = int(os.getenv("SYNC_INCREMENTAL_MONTHS", "1"))

SNAPSHOT_RETENTION_DAYS = int(os.getenv("SNAPSHOT_RETENTION_DAYS", "30"))
SECTOR_ALLOCATION_MIN_PERCENT = 0.5

STALE_DATA_DAYS = 7

# Questrade dates are sent at midnight Eastern with a fixed offset
QUESTRADE_DATE_SUFFIX = "T00:00:00-05:00"
