# settings.py
import logging
import os
import sys

from dotenv import load_dotenv

load_dotenv()


# -------------------------------------------------------
# RESOURCE PATH FIX (supports PyInstaller .exe)
# -------------------------------------------------------
def resource_path(filename):
    """
    Get absolute path to a bundled resource.
    Works for development (.py) AND when compiled into .exe.
    """
    if hasattr(sys, "_MEIPASS"):
        return os.path.join(sys._MEIPASS, filename)
    return os.path.join(os.path.abspath("."), filename)


def _env_float(name: str, default):
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logging.getLogger(__name__).warning("Ignoring non-numeric %s=%r", name, raw)
        return default


# -------------------------------------------------------
# FIREBASE CONFIG
# -------------------------------------------------------
# Keep the API key out of the source tree: set it in the environment or .env
FIREBASE_API_KEY = os.getenv("FIREBASE_API_KEY", "")
FIREBASE_PROJECT_ID = os.getenv("FIREBASE_PROJECT_ID", "")
SERVICE_ACCOUNT_PATH = os.getenv("FIREBASE_SERVICE_ACCOUNT") or resource_path("firebase_key.json")
STORAGE_BUCKET = os.getenv("FIREBASE_STORAGE_BUCKET", "")

# Speech-to-text endpoint used by the voice input on the complaint form
TRANSCRIBE_URL = os.getenv("CRTS_TRANSCRIBE_URL", "")

# -------------------------------------------------------
# CLIENT CONFIG
# -------------------------------------------------------
SESSION_FILE = os.getenv("CRTS_SESSION_FILE") or os.path.join(
    os.path.expanduser("~"), ".crts_session.json"
)
# Seconds before a cached read goes stale on its own; unset means only
# invalidation makes it stale
CACHE_MAX_AGE = _env_float("CRTS_CACHE_MAX_AGE", None)
HTTP_TIMEOUT = _env_float("CRTS_HTTP_TIMEOUT", 15.0)
LOG_LEVEL = os.getenv("CRTS_LOG_LEVEL", "INFO").upper()
THEME = os.getenv("CRTS_THEME", "cosmo")

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


def configure_logging(level=None):
    """Send application logs to the operator console."""
    level = level or LOG_LEVEL
    root_logger = logging.getLogger()
    if not any(getattr(h, "_crts", False) for h in root_logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._crts = True
        root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, level, logging.INFO))
    # firestore's watch thread is chatty at INFO
    logging.getLogger("google").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
