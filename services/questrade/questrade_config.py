import os
from dotenv import load_dotenv

load_dotenv()

QUESTRADE_AUTH_URL = os.getenv("QUESTRADE_AUTH_URL", "https://login.questrade.com").rstrip("/")
QUESTRADE_API_TIMEOUT = float(os.getenv("QUESTRADE_API_TIMEOUT", "30"))
QUESTRADE_AUTH_TIMEOUT = float(os.getenv("QUESTRADE_AUTH_TIMEOUT", "15"))

# Questrade does not report a refresh-token lifetime; manual tokens last about a week
REFRESH_TOKEN_TTL_DAYS = int(os.getenv("REFRESH_TOKEN_TTL_DAYS", "7"))
MIN_REFRESH_TOKEN_LENGTH = 20

TOKEN_ENCRYPTION_KEY = os.getenv("TOKEN_ENCRYPTION_KEY", "change-me-dev-only-questrade-key")
