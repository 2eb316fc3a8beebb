import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from aiortc import RTCIceServer
import requests


logger = logging.getLogger("config")

DEFAULT_STUN_URLS = ["stun:stun.l.google.com:19302", "stun:stun1.l.google.com:19302"]
INITIATOR_POLICIES = ("newcomer", "lower_id")
MEDIA_BACKENDS = ("device", "synthetic")


def setup_logging():
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def _parse_bool_env(value: str, default: bool = False) -> bool:
    if value is None:
        return default
    return value.lower() in ("1", "true", "yes", "on")


def _parse_number_env(name: str, default, cast=int):
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return cast(raw)
    except ValueError:
        logger.warning("Invalid %s=%r, using %s", name, raw, default)
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
    """Build initial ICE/TURN config.

    Priority order:
      1. JSON file specified in ``ICE_CONFIG_PATH`` (if valid).
      2. Repository ``ice_config.json`` fallback.
      3. Environment variables ``USE_TURN``, ``TURN_URLS`` etc.
      4. Built-in defaults (public STUN servers).
    """

    config: Dict[str, Any] = {
        "use_turn": False,
        "urls": list(DEFAULT_STUN_URLS),
        "username": None,
        "credential": None,
        "relay_only": False,
    }

    file_config = _load_file_ice_config()
    if file_config:
        config.update({k: v for k, v in file_config.items() if v is not None})

    urls_raw = os.getenv("TURN_URLS")
    if urls_raw:
        urls: List[str] = [u.strip() for u in urls_raw.split(",") if u.strip()]
        if urls:
            config["urls"] = urls

    if "USE_TURN" in os.environ:
        config["use_turn"] = _parse_bool_env(os.getenv("USE_TURN"), default=config["use_turn"])

    if "TURN_USERNAME" in os.environ:
        config["username"] = os.getenv("TURN_USERNAME") or None

    if "TURN_CREDENTIAL" in os.environ:
        config["credential"] = os.getenv("TURN_CREDENTIAL") or None

    if "ICE_RELAY_ONLY" in os.environ:
        config["relay_only"] = _parse_bool_env(os.getenv("ICE_RELAY_ONLY"), default=config["relay_only"])

    return config


def build_ice_servers(config: Dict[str, Any]) -> List[RTCIceServer]:
    """Reachability hints handed to every peer connection.

    With ``relay_only`` only TURN urls are kept.
    """
    urls = [u for u in (config.get("urls") or []) if isinstance(u, str) and u.strip()]
    if config.get("relay_only"):
        urls = [u for u in urls if u.startswith(("turn:", "turns:"))]
    if not urls:
        return []

    stun = [u for u in urls if u.startswith("stun:")]
    turn = [u for u in urls if not u.startswith("stun:")]
    servers = []
    if stun:
        servers.append(RTCIceServer(urls=stun))
    if turn and config.get("use_turn", True):
        servers.append(RTCIceServer(
            urls=turn,
            username=config.get("username"),
            credential=config.get("credential"),
        ))
    return servers


def get_session_settings() -> Dict[str, Any]:
    """Settings for a meeting client (coordinator, relay client, local media)."""
    policy = os.getenv("INITIATOR_POLICY", "newcomer")
    if policy not in INITIATOR_POLICIES:
        logger.warning("Unknown INITIATOR_POLICY %r, using 'newcomer'", policy)
        policy = "newcomer"

    media_backend = os.getenv("MEDIA_BACKEND", "device")
    if media_backend not in MEDIA_BACKENDS:
        logger.warning("Unknown MEDIA_BACKEND %r, using 'device'", media_backend)
        media_backend = "device"

    relay_url = os.getenv("RELAY_URL", "ws://localhost:8105")
    return {
        "relay_url": relay_url,
        "relay_http_url": os.getenv("RELAY_HTTP_URL") or _http_url(relay_url),
        "initiator_policy": policy,
        "max_link_retries": _parse_number_env("LINK_MAX_RETRIES", 1),
        "relay_reconnect_delay": _parse_number_env("RELAY_RECONNECT_DELAY", 1.0, float),
        "relay_max_reconnect_delay": _parse_number_env("RELAY_MAX_RECONNECT_DELAY", 30.0, float),
        "media_backend": media_backend,
        "camera": {
            "width": _parse_number_env("CAMERA_WIDTH", 640),
            "height": _parse_number_env("CAMERA_HEIGHT", 480),
            "fps": _parse_number_env("CAMERA_FPS", 30),
        },
    }


def _http_url(ws_url: str) -> str:
    if ws_url.startswith("wss://"):
        return "https://" + ws_url[len("wss://"):]
    if ws_url.startswith("ws://"):
        return "http://" + ws_url[len("ws://"):]
    return ws_url


def fetch_ice_config(base_url: str, timeout: float = 5.0) -> Optional[Dict[str, Any]]:
    """ICE config published by the relay service, or None if it cannot be read."""
    try:
        response = requests.get(f"{base_url.rstrip('/')}/ice_config", timeout=timeout)
        response.raise_for_status()
        data = response.json()
    except (requests.exceptions.RequestException, ValueError) as e:
        logger.warning("Could not fetch ICE config from %s: %s", base_url, e)
        return None
    if not isinstance(data, dict):
        logger.warning("Relay ICE config is not a JSON object, ignoring it")
        return None
    return data
