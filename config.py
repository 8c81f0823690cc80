import os
from dotenv import load_dotenv

load_dotenv()

REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/0")
STORE_BACKEND = os.environ.get("STORE_BACKEND", "redis").strip().lower()
KEY_PREFIX = os.environ.get("KEY_PREFIX", "alc")

PROCESSOR_WEBHOOK_URL = os.environ.get("PROCESSOR_WEBHOOK_URL", "")
PROCESSOR_CALLBACK_TOKEN = os.environ.get("PROCESSOR_CALLBACK_TOKEN", "")
DISPATCH_MAX_ATTEMPTS = int(os.environ.get("DISPATCH_MAX_ATTEMPTS", "3"))
DISPATCH_BASE_DELAY_SEC = float(os.environ.get("DISPATCH_BASE_DELAY_SEC", "0.3"))
DISPATCH_TIMEOUT_SEC = float(os.environ.get("DISPATCH_TIMEOUT_SEC", "30"))

POLL_INTERVAL_SEC = float(os.environ.get("POLL_INTERVAL_SEC", "2"))
MIN_FETCH_GAP_SEC = float(os.environ.get("MIN_FETCH_GAP_SEC", "1"))
PUSH_CONNECT_TIMEOUT_SEC = float(os.environ.get("PUSH_CONNECT_TIMEOUT_SEC", "5"))

REAPER_DEADLINE_SEC = int(os.environ.get("REAPER_DEADLINE_SEC", "300"))
REAPER_INTERVAL_SEC = int(os.environ.get("REAPER_INTERVAL_SEC", "120"))

OUTCOME_WAIT_MAX_SEC = float(os.environ.get("OUTCOME_WAIT_MAX_SEC", "55"))
