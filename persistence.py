"""
persistence.py — Local-first configuration/stats with cloud reconciliation.

Every mutation is written to the local durable store (JSON files under
paths.data_dir) immediately. The cloud document is the source of truth but is
only ever reconciled best-effort: a cloud failure never blocks the kiosk.

Also owns the blob side: branding asset promotion on admin save, and the
per-session photo upload/delete.
"""

import json
import logging
import os
import threading
import time
import uuid
from collections import namedtuple
from datetime import datetime, timezone

import httpx

import cloud_store
from compositing import decode_data_uri
from errors import ConfigSyncFailed, DeleteFailed, UploadFailed
from settings import (
    DEFAULT_LANGUAGE,
    DEFAULT_STATS,
    INITIAL_FRAMES,
    SUPPORTED_LANGUAGES,
    cloud_credentials,
    fill_theme_defaults,
    frame_from_dict,
    frame_to_dict,
)

CloudAssetRef = namedtuple("CloudAssetRef", ["url", "storage_path"])

STORAGE_KEYS = {
    "frames": "frames.json",
    "stats": "stats.json",
    "theme": "theme.json",
    "language": "language.json",
    "selected_frame_id": "selected_frame.json",
}

THEME_ASSET_FIELDS = ("logoUrl", "loadingIconUrl", "backgroundImageUrl")

# Failures the remote stores can produce; anything else is a bug and propagates
STORE_ERRORS = (httpx.HTTPError, OSError, ValueError, KeyError)


# ---------------------------------------------------------------------------
# LOCAL DURABLE STORE
# ---------------------------------------------------------------------------


def _local_path(config, key):
    return os.path.join(config["paths"]["data_dir"], STORAGE_KEYS[key])


def read_local(config, key):
    path = _local_path(config, key)
    if not os.path.exists(path):
        return None
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except (OSError, ValueError) as exc:
        logging.error(f"Error parsing local {key}: {exc}")
        return None


def write_through(config, key, value):
    if key == "frames":
        value = [frame_to_dict(f) for f in value]
    cloud_store.write_json_atomic(_local_path(config, key), value)
    logging.debug(f"Local store updated: {key}")


def load_local_snapshot(config):
    """Last known-good kiosk data from disk, with defaults filled once."""
    frames = read_local(config, "frames")
    stats = read_local(config, "stats")
    theme = read_local(config, "theme")
    language = read_local(config, "language")
    selected = read_local(config, "selected_frame_id")

    frames = [frame_from_dict(f) for f in frames] if frames else list(INITIAL_FRAMES)
    if language not in SUPPORTED_LANGUAGES:
        language = DEFAULT_LANGUAGE
    if not any(f.id == selected for f in frames):
        selected = frames[0].id

    kiosk_data = {
        "frames": frames,
        "selected_frame_id": selected,
        "theme": fill_theme_defaults(theme),
        "stats": {**DEFAULT_STATS, **(stats or {})},
        "language": language,
    }
    logging.info(
        f"Loaded local snapshot: {len(frames)} frames, "
        f"totalPhotos={kiosk_data['stats']['totalPhotos']} language={language}"
    )
    return kiosk_data


def update_kiosk_field(kiosk_data, config, key, value):
    """Mutate one field in memory and write it through to disk."""
    kiosk_data[key] = value
    write_through(config, key, value)


def current_frame(kiosk_data):
    frames = kiosk_data["frames"]
    for frame in frames:
        if frame.id == kiosk_data["selected_frame_id"]:
            return frame
    return frames[0] if frames else None


# ---------------------------------------------------------------------------
# CLOUD RECONCILIATION
# ---------------------------------------------------------------------------


def storage_credentials(theme, config):
    """
    Credentials to hand to cloud_store, or None when the kiosk runs offline.
    The local backend needs none.
    """
    if config["storage"]["backend"] == "local":
        return cloud_credentials(theme) or {}
    return cloud_credentials(theme)


def snapshot_from_document(document):
    """Split a cloud document into frames/theme/stats. Absent fields are None."""
    frames = document.get("frames")
    return {
        "frames": [frame_from_dict(f) for f in frames] if frames else None,
        "theme": document.get("theme") or None,
        "stats": document.get("stats") or None,
    }


def merge_cloud_snapshot(local, cloud):
    """
    Field-by-field merge of a cloud snapshot into local kiosk data.
    Returns a new dict; absent cloud fields never erase local values.
    """
    merged = dict(local)

    if cloud.get("frames"):
        merged["frames"] = list(cloud["frames"])
        if not any(f.id == local.get("selected_frame_id") for f in merged["frames"]):
            merged["selected_frame_id"] = merged["frames"][0].id

    if cloud.get("theme"):
        theme = {**local["theme"], **cloud["theme"]}
        # Credentials missing in the cloud copy are kept from local
        theme["firebaseConfig"] = cloud["theme"].get("firebaseConfig") or local["theme"].get("firebaseConfig")
        merged["theme"] = fill_theme_defaults(theme)

    if cloud.get("stats"):
        merged["stats"] = {**DEFAULT_STATS, **cloud["stats"]}

    return merged


def fetch_cloud_snapshot(credentials, config, client=None):
    try:
        document = cloud_store.get_document(credentials, config, client=client)
        if document is None:
            return None
        return snapshot_from_document(document)
    except STORE_ERRORS as exc:
        raise ConfigSyncFailed(f"{type(exc).__name__}: {exc}") from exc


def sync_from_cloud(kiosk_data, config, client=None):
    """
    Reconcile kiosk_data with the cloud document. Returns True when a cloud
    snapshot was merged. The local snapshot stays authoritative on failure.
    """
    credentials = storage_credentials(kiosk_data["theme"], config)
    if credentials is None:
        logging.info("No cloud credentials configured, skipping cloud sync")
        return False

    try:
        cloud = fetch_cloud_snapshot(credentials, config, client=client)
    except ConfigSyncFailed as exc:
        logging.error(f"Failed to sync with cloud database: {exc}")
        return False
    if cloud is None:
        return False

    merged = merge_cloud_snapshot(kiosk_data, cloud)
    for key in ("frames", "selected_frame_id", "theme", "stats"):
        if merged[key] != kiosk_data.get(key):
            update_kiosk_field(kiosk_data, config, key, merged[key])
    logging.info("Synced configuration from cloud database")
    return True


def start_cloud_sync(kiosk_data, config):
    thread = threading.Thread(target=sync_from_cloud, args=(kiosk_data, config), daemon=True)
    thread.start()
    logging.info("Cloud sync thread launched")
    return thread


# ---------------------------------------------------------------------------
# STATS
# ---------------------------------------------------------------------------


def record_completed_session(kiosk_data, config, client=None):
    """
    Count one finished session: in memory and on disk first, then mirrored to
    the remote counter. The local count is never rolled back.
    """
    stats = {**kiosk_data["stats"]}
    stats["totalPhotos"] = int(stats.get("totalPhotos", 0)) + 1
    update_kiosk_field(kiosk_data, config, "stats", stats)
    logging.info(f"Photo count now {stats['totalPhotos']}")

    credentials = storage_credentials(kiosk_data["theme"], config)
    if credentials is None:
        return
    try:
        cloud_store.increment_counter(credentials, config, client=client)
    except STORE_ERRORS as exc:
        logging.error(f"Failed to increment cloud stats: {exc}")


# ---------------------------------------------------------------------------
# ASSET PROMOTION (admin save)
# ---------------------------------------------------------------------------


def is_embedded_payload(value):
    return isinstance(value, str) and value.startswith("data:")


def _promote(value, path, credentials, config, client=None):
    header = value.split(",", 1)[0]
    content_type = header[5:].split(";")[0] or "image/png"
    return cloud_store.put_blob(credentials, decode_data_uri(value), path, content_type, config, client=client)


def promote_embedded_assets(frames, theme, credentials, config, client=None):
    """
    Upload every embedded raster payload and rewrite it to its URL.
    Any upload failure propagates; nothing is half-saved.
    """
    promoted_frames = []
    for frame in frames:
        if is_embedded_payload(frame.url):
            url = _promote(frame.url, f"assets/frames/{frame.id}.png", credentials, config, client)
            frame = frame._replace(url=url)
            logging.info(f"Promoted frame {frame.id} to blob storage")
        promoted_frames.append(frame)

    promoted_theme = dict(theme)
    stamp = int(time.time() * 1000)
    for field in THEME_ASSET_FIELDS:
        if is_embedded_payload(theme.get(field)):
            name = field.replace("Url", "")
            # logo keeps a stable name; the others are stamped to defeat caches
            path = "assets/branding/logo.png" if field == "logoUrl" else f"assets/branding/{name}_{stamp}.png"
            promoted_theme[field] = _promote(theme[field], path, credentials, config, client)
            logging.info(f"Promoted theme asset {field}")
    return promoted_frames, promoted_theme


def save_system_configuration(kiosk_data, config, client=None):
    """
    Promote embedded assets, then persist the whole configuration document.
    Raises UploadFailed if anything could not be stored.
    """
    credentials = storage_credentials(kiosk_data["theme"], config)
    if credentials is None:
        raise UploadFailed("Missing cloud credentials")

    try:
        frames, theme = promote_embedded_assets(
            kiosk_data["frames"], kiosk_data["theme"], credentials, config, client=client
        )
        cloud_store.put_document(
            credentials,
            {
                "frames": [frame_to_dict(f) for f in frames],
                "theme": theme,
                "stats": kiosk_data["stats"],
                "updatedAt": datetime.now(timezone.utc).isoformat(),
            },
            config,
            client=client,
        )
    except STORE_ERRORS as exc:
        logging.error(f"Error saving configuration: {exc}")
        raise UploadFailed(str(exc)) from exc

    update_kiosk_field(kiosk_data, config, "frames", frames)
    update_kiosk_field(kiosk_data, config, "theme", theme)
    logging.info("System configuration saved to cloud")
    return frames, theme


# ---------------------------------------------------------------------------
# SESSION ASSETS
# ---------------------------------------------------------------------------


def new_photo_path(config):
    ts = int(time.time() * 1000)
    return f"{config['storage']['photo_prefix']}_{ts}_{uuid.uuid4().hex[:12]}.jpg"


def upload_session_composite(jpeg_bytes, credentials, config, client=None):
    if credentials is None:
        raise UploadFailed("cloud storage not configured")
    path = new_photo_path(config)
    try:
        url = cloud_store.put_blob(credentials, jpeg_bytes, path, "image/jpeg", config, client=client)
    except STORE_ERRORS as exc:
        logging.error(f"Cloud upload failed: {exc}")
        raise UploadFailed(str(exc)) from exc
    return CloudAssetRef(url=url, storage_path=path)


def delete_session_asset(asset_ref, credentials, config, client=None):
    try:
        cloud_store.delete_blob(credentials or {}, asset_ref.url, config, client=client)
    except STORE_ERRORS as exc:
        raise DeleteFailed(str(exc)) from exc
    logging.info(f"Deleted image from cloud: {asset_ref.storage_path}")
