import json
import logging
import os
import sys
import time
from pathlib import Path
from typing import Any, Dict


logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    stream=sys.stdout,
)
logger = logging.getLogger("purchase_runner.settings")
DATA_DIR = Path(os.getenv("DATA_DIR", "./data")).resolve()


def _load_options() -> Dict[str, Any]:
    """Load persisted options from <DATA_DIR>/options.json."""
    options_path = DATA_DIR / "options.json"
    if not options_path.exists():
        logger.info("No options.json found; using environment variables or defaults")
        return {}
    try:
        options = json.loads(options_path.read_text(encoding="utf-8"))
        logger.info("Options loaded from %s", options_path)
        return options if isinstance(options, dict) else {}
    except Exception:
        logger.exception("Could not parse %s; using defaults", options_path)
        return {}


OPTIONS = _load_options()


def _setting(name: str, default: str = "") -> str:
    """Resolve a setting from the environment first, then options.json."""
    env_name = name.upper()
    if env_name in os.environ:
        return os.getenv(env_name, default)
    return str(OPTIONS.get(name.lower(), default))


def _flag(name: str, default: bool = False) -> bool:
    return _setting(name, "true" if default else "false").strip().lower() in {"1", "true", "yes", "on"}


def _selector_overrides() -> Dict[str, Any]:
    raw = os.getenv("SELECTORS")
    if raw is None:
        value = OPTIONS.get("selectors") or {}
        return value if isinstance(value, dict) else {}
    try:
        value = json.loads(raw)
    except ValueError:
        logger.exception("SELECTORS is not valid JSON; ignoring overrides")
        return {}
    return value if isinstance(value, dict) else {}


JOB_SECRET = _setting("job_secret", "")
TIMEZONE = _setting("timezone", "Asia/Tokyo")
HEADLESS = _flag("headless", False)
WEBHOOK_URL_STATUS = _setting("webhook_url_status", "")
WEBHOOK_URL_FINAL = _setting("webhook_url_final", "")
LOGIN_URL = _setting("login_url", "")
SELECTOR_OVERRIDES = _selector_overrides()
if LOGIN_URL:
    SELECTOR_OVERRIDES = {**SELECTOR_OVERRIDES, "login_url": LOGIN_URL}


def apply_timezone() -> None:
    """Set the process timezone used for naive sale start times."""
    os.environ["TZ"] = TIMEZONE
    if hasattr(time, "tzset"):
        time.tzset()
    logger.info("Timezone applied: %s", TIMEZONE)

