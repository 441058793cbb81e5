import os
from pathlib import Path

PROJECT_DIR = Path(__file__).resolve().parent.parent.parent
DATA_DIR = Path(os.environ.get("DATA_DIR", str(PROJECT_DIR / "data")))
SQLITE_PATH = DATA_DIR / "store.db"

PORT = int(os.environ.get("PORT", "19876"))
ROOT_PATH = os.environ.get("ROOT_PATH", "")
GENERATE_URL = os.environ.get("GENERATE_URL", "http://127.0.0.1:3000/api/generate")
MODELS_URL = os.environ.get("MODELS_URL", "https://openrouter.ai/api/v1/models")
ACCESS_PASSWORD = os.environ.get("ACCESS_PASSWORD", "")
HTTP_TIMEOUT_SECS = float(os.environ.get("HTTP_TIMEOUT_SECS", "120"))

HISTORY_LIMIT = 3
HISTORY_XML_PLACEHOLDER = "[Previously generated diagram XML omitted; already applied to the canvas]"
MODEL_CACHE_KEY = "openrouter-models"
MODEL_CACHE_TTL_SECS = 3600
DEFAULT_CHART_TYPE = "auto"
DEFAULT_CONVERSATION_TITLE = "Conversation"
CONVERSATION_TITLE_LENGTH = 30
