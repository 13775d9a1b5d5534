"""
settings.py — Configuration, logging and theme defaults for the photo kiosk.

config.toml is loaded once into a plain dict and passed explicitly to every
function that needs it. Secrets come from the environment (.env).
"""

import copy
import logging
from collections import namedtuple
from pathlib import Path

import tomli
from dotenv import load_dotenv

load_dotenv()

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent / "config.toml"


# ---------------------------------------------------------------------------
# CONFIGURATION
# ---------------------------------------------------------------------------


def load_config(config_path=DEFAULT_CONFIG_PATH):
    with open(config_path, "rb") as f:
        config = tomli.load(f)
    return config


def ensure_directories(config):
    for dir_key in ("data_dir", "capture_dir"):
        Path(config["paths"][dir_key]).mkdir(parents=True, exist_ok=True)
    if config["storage"]["backend"] == "local":
        Path(config["storage"]["local_blob_dir"]).mkdir(parents=True, exist_ok=True)


# ---------------------------------------------------------------------------
# LOGGING
# ---------------------------------------------------------------------------


def setup_logging(config):
    level = getattr(logging, config["logging"]["log_level"].upper(), logging.INFO)
    handlers = []
    if config["logging"]["log_to_console"]:
        handlers.append(logging.StreamHandler())
    handlers.append(logging.FileHandler(config["logging"]["log_file"]))
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=handlers,
    )
    # httpx logs every request at INFO, including the API key query string
    logging.getLogger("httpx").setLevel(logging.WARNING)


# ---------------------------------------------------------------------------
# THEME AND FRAMES
# ---------------------------------------------------------------------------

Frame = namedtuple("Frame", ["id", "name", "url", "is_ai_generated"], defaults=[False])

INITIAL_FRAMES = [
    Frame(id="classic", name="Classic", url="frames/classic.png"),
]

CREDENTIAL_FIELDS = ("apiKey", "authDomain", "projectId", "storageBucket", "messagingSenderId", "appId")

DEFAULT_THEME = {
    "eventTitle": "AIYOGU PHOTO BOOTH",
    "eventSubtitle": "Snap a photo with Aiyogu",
    "logoUrl": "",
    "loadingIconUrl": "",
    "backgroundImageUrl": "",
    "primaryColor": "#10b981",
    "backgroundColor": "#020617",
    "fontFamily": "Inter",
    "preferredCameraId": None,
    "firebaseConfig": None,
    "captureButtonText": "TAKE PHOTO",
    "uploadButtonText": "UPLOAD",
    "congratsText": "Looking great!",
    "resultInstructions": "Scan the code to open the photo on your phone",
    "retakeButtonText": "RETAKE",
    "qrScanText": "SCAN QR CODE",
}

DEFAULT_STATS = {"totalPhotos": 0}
DEFAULT_LANGUAGE = "vi"
SUPPORTED_LANGUAGES = ("vi", "en")


def fill_theme_defaults(theme):
    """
    Return a complete theme: every missing or None field takes its default.
    This is the only place theme defaults are applied; consumers read the
    result and never patch fields themselves.
    """
    filled = copy.deepcopy(DEFAULT_THEME)
    for key, value in (theme or {}).items():
        if value is None and DEFAULT_THEME.get(key) is not None:
            continue
        filled[key] = value
    return filled


def frame_from_dict(data):
    return Frame(
        id=str(data["id"]),
        name=data.get("name", str(data["id"])),
        url=data.get("url", ""),
        is_ai_generated=bool(data.get("isAiGenerated", False)),
    )


def frame_to_dict(frame):
    return {
        "id": frame.id,
        "name": frame.name,
        "url": frame.url,
        "isAiGenerated": frame.is_ai_generated,
    }


def cloud_credentials(theme):
    """Firebase credentials from the theme, or None if they cannot be used."""
    creds = (theme or {}).get("firebaseConfig") or None
    if not creds:
        return None
    if not creds.get("apiKey") or not creds.get("projectId"):
        return None
    return {k: creds[k] for k in CREDENTIAL_FIELDS if creds.get(k)}
