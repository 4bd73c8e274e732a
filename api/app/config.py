import os

DATABASE_URL = os.getenv("DATABASE_URL", "postgresql+psycopg2://postgres:postgres@db:5432/travel_match")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

JWT_SECRET = os.getenv("JWT_SECRET", "")
ACCESS_TOKEN_TTL_MINUTES = int(os.getenv("ACCESS_TOKEN_TTL_MINUTES", "60"))
DEV_MODE = os.getenv("DEV_MODE", "false").lower() == "true"
# Only honoured when DEV_MODE is on.
DEV_BEARER_TOKEN = os.getenv("DEV_BEARER_TOKEN", "")

ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.getenv("ALLOWED_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000").split(",")
    if origin.strip()
]

CONVERSATION_API_URL = os.getenv("CONVERSATION_API_URL", "")
CONVERSATION_APP_ID = os.getenv("CONVERSATION_APP_ID", "")
CONVERSATION_APP_KEY = os.getenv("CONVERSATION_APP_KEY", "")
CONVERSATION_MASTER_KEY = os.getenv("CONVERSATION_MASTER_KEY", "")
CONVERSATION_TIMEOUT_SECONDS = float(os.getenv("CONVERSATION_TIMEOUT_SECONDS", "10"))
CONVERSATION_NAME = os.getenv("CONVERSATION_NAME", "Match Chat")

DEFAULT_CITY_SCOPE_MODE = "Strict"
PROFILE_MIN_AGE = 18
PROFILE_MAX_AGE = 120

SWEEP_BATCH_SIZE = int(os.getenv("SWEEP_BATCH_SIZE", "50"))

RL_MATCH_START_LIMIT = int(os.getenv("RL_MATCH_START_LIMIT", "30"))
RL_MATCH_POLL_LIMIT = int(os.getenv("RL_MATCH_POLL_LIMIT", "240"))
RL_WINDOW_SECONDS = int(os.getenv("RL_WINDOW_SECONDS", "60"))

API_HOST = os.getenv("API_HOST", "0.0.0.0")
API_PORT = int(os.getenv("API_PORT", "8000"))
