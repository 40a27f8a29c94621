import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional


logger = logging.getLogger("config")

DEFAULT_STUN_URLS = (
    "stun:stun.l.google.com:19302",
    "stun:stun1.l.google.com:19302",
)


def _parse_bool_env(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.lower() in ("1", "true", "yes", "on")


def _parse_list_env(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def _parse_float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("%s=%r is not a number, using %s", name, raw, default)
        return default


def _load_file_ice_config() -> Dict[str, Any]:
    """Attempt to load ICE configuration from JSON file."""
    search_paths = []

    env_path = os.getenv("ICE_CONFIG_PATH")
    if env_path:
        candidate = Path(env_path)
        if candidate.is_file():
            search_paths.append(candidate)
        else:
            logger.warning("ICE_CONFIG_PATH %s is not a file, falling back to defaults", candidate)

    repo_default = Path(__file__).resolve().parent.parent / "ice_config.json"
    if repo_default.is_file():
        search_paths.append(repo_default)

    for path in search_paths:
        try:
            with path.open("r", encoding="utf-8") as fp:
                data = json.load(fp)
                if isinstance(data, dict):
                    logger.info("Loaded ICE config from %s", path)
                    return data
                logger.warning("ICE config file %s does not contain a JSON object", path)
        except json.JSONDecodeError as exc:
            logger.error("Failed to parse ICE config %s: %s", path, exc)
        except OSError as exc:
            logger.error("Failed to read ICE config %s: %s", path, exc)

    return {}


def get_initial_ice_config() -> Dict[str, Any]:
    """Build initial STUN/TURN config.

    Priority order:
      1. Environment variables ``STUN_URLS``, ``USE_TURN``, ``TURN_URLS`` etc.
      2. JSON file specified in ``ICE_CONFIG_PATH`` (if valid).
      3. Repository ``ice_config.json`` fallback.
      4. Built-in defaults (public STUN, no TURN).
    """

    config: Dict[str, Any] = {
        "use_turn": False,
        "urls": list(DEFAULT_STUN_URLS),
        "turn_urls": [],
        "username": None,
        "credential": None,
    }

    file_config = _load_file_ice_config()
    if file_config:
        config.update({k: v for k, v in file_config.items() if k in config and v is not None})

    stun_urls = _parse_list_env(os.getenv("STUN_URLS"))
    if stun_urls:
        config["urls"] = stun_urls

    turn_urls = _parse_list_env(os.getenv("TURN_URLS"))
    if turn_urls:
        config["turn_urls"] = turn_urls

    if "USE_TURN" in os.environ:
        config["use_turn"] = _parse_bool_env(os.getenv("USE_TURN"), default=config["use_turn"])

    if "TURN_USERNAME" in os.environ:
        config["username"] = os.getenv("TURN_USERNAME") or None

    if "TURN_CREDENTIAL" in os.environ:
        config["credential"] = os.getenv("TURN_CREDENTIAL") or None

    return config


def get_relay_config() -> Dict[str, Any]:
    """Relay connection settings. An empty ``RELAY_URL`` means the in-process hub."""
    return {
        "url": os.getenv("RELAY_URL", "").strip() or None,
        "pool_name": os.getenv("WAITING_POOL_NAME", "public:waiting_pool"),
        "subscribe_timeout": _parse_float_env("RELAY_SUBSCRIBE_TIMEOUT", 10.0),
        "client_id": os.getenv("CLIENT_ID") or None,
    }


def get_media_config() -> Dict[str, Any]:
    """Get local media configuration from environment variables."""
    return {
        "source": os.getenv("MEDIA_SOURCE") or None,
        "format": os.getenv("MEDIA_FORMAT") or None,
        "width": int(os.getenv("MEDIA_WIDTH", "640")),
        "height": int(os.getenv("MEDIA_HEIGHT", "480")),
        "fps": int(os.getenv("MEDIA_FPS", "30")),
    }


def get_log_level() -> int:
    level_name = os.getenv("LOG_LEVEL", "INFO").upper()
    level = logging.getLevelName(level_name)
    return level if isinstance(level, int) else logging.INFO
