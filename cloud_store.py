"""
cloud_store.py — Document store and blob store backends.

Selected via config.toml [storage] backend:
  - "firebase" : Firestore REST (config document, atomic counter) and
                 Firebase Storage REST (photos and branding assets)
  - "local"    : a JSON document file and a blob directory on this machine

All calls are synchronous; async callers go through run_in_executor.
HTTP failures propagate as httpx errors and are classified by persistence.py.
"""

import json
import logging
import os
import tempfile
import threading
import time
from pathlib import Path
from urllib.parse import quote, unquote, urlparse

import httpx

# One HTTP client per process, shared by every thread
_HTTP_CLIENT = None
_HTTP_CLIENT_LOCK = threading.Lock()

# Serializes read-modify-write of the local document file
_LOCAL_LOCK = threading.Lock()

COUNTER_FIELD = "stats.totalPhotos"


def get_http_client():
    global _HTTP_CLIENT
    if _HTTP_CLIENT is None:
        with _HTTP_CLIENT_LOCK:
            if _HTTP_CLIENT is None:
                _HTTP_CLIENT = httpx.Client()
                logging.info("Cloud HTTP client initialized")
    return _HTTP_CLIENT


def close_http_client():
    global _HTTP_CLIENT
    with _HTTP_CLIENT_LOCK:
        if _HTTP_CLIENT is not None:
            _HTTP_CLIENT.close()
            _HTTP_CLIENT = None


def _backend(config):
    backend = config["storage"]["backend"]
    if backend not in ("firebase", "local"):
        logging.error(f"Unknown storage backend: {backend!r}. Must be 'firebase' or 'local'.")
        raise ValueError(f"Unknown storage backend: {backend!r}")
    return backend


# ---------------------------------------------------------------------------
# FIRESTORE VALUE CODEC
# ---------------------------------------------------------------------------


def to_firestore_value(value):
    if value is None:
        return {"nullValue": None}
    if isinstance(value, bool):
        return {"booleanValue": value}
    if isinstance(value, int):
        return {"integerValue": str(value)}
    if isinstance(value, float):
        return {"doubleValue": value}
    if isinstance(value, str):
        return {"stringValue": value}
    if isinstance(value, (list, tuple)):
        return {"arrayValue": {"values": [to_firestore_value(v) for v in value]}}
    if isinstance(value, dict):
        return {"mapValue": {"fields": to_firestore_fields(value)}}
    raise TypeError(f"Cannot store {type(value).__name__} in Firestore")


def to_firestore_fields(data):
    return {str(k): to_firestore_value(v) for k, v in data.items()}


def from_firestore_value(value):
    if "nullValue" in value:
        return None
    if "booleanValue" in value:
        return bool(value["booleanValue"])
    if "integerValue" in value:
        return int(value["integerValue"])
    if "doubleValue" in value:
        return float(value["doubleValue"])
    if "stringValue" in value:
        return value["stringValue"]
    if "timestampValue" in value:
        return value["timestampValue"]
    if "arrayValue" in value:
        return [from_firestore_value(v) for v in value["arrayValue"].get("values", [])]
    if "mapValue" in value:
        return from_firestore_fields(value["mapValue"].get("fields", {}))
    logging.debug(f"Unsupported Firestore value skipped: {list(value)}")
    return None


def from_firestore_fields(fields):
    return {k: from_firestore_value(v) for k, v in fields.items()}


def _nested_fields(field_path, value):
    """'stats.totalPhotos', 1 -> Firestore fields for {"stats": {"totalPhotos": 1}}."""
    data = value
    for key in reversed(field_path.split(".")):
        data = {key: data}
    return to_firestore_fields(data)


# ---------------------------------------------------------------------------
# DOCUMENT STORE: FIREBASE
# ---------------------------------------------------------------------------


def _document_name(credentials, config):
    st_cfg = config["storage"]
    return (
        f"projects/{credentials['projectId']}/databases/(default)/documents/"
        f"{st_cfg['document_collection']}/{st_cfg['document_id']}"
    )


def _firestore_get(client, credentials, config):
    url = f"{config['storage']['firestore_base_url']}/{_document_name(credentials, config)}"
    response = client.get(
        url,
        params={"key": credentials["apiKey"]},
        timeout=config["timeouts"]["storage_timeout_seconds"],
    )
    if response.status_code == 404:
        logging.info("[firestore] Config document does not exist yet")
        return None
    response.raise_for_status()
    return from_firestore_fields(response.json().get("fields", {}))


def _firestore_put(client, credentials, document, config):
    url = f"{config['storage']['firestore_base_url']}/{_document_name(credentials, config)}"
    # No updateMask: the document is replaced wholesale
    response = client.patch(
        url,
        params={"key": credentials["apiKey"]},
        json={"fields": to_firestore_fields(document)},
        timeout=config["timeouts"]["storage_timeout_seconds"],
    )
    response.raise_for_status()
    return from_firestore_fields(response.json().get("fields", {}))


def _firestore_commit(client, credentials, writes, config):
    url = (
        f"{config['storage']['firestore_base_url']}/projects/{credentials['projectId']}"
        f"/databases/(default)/documents:commit"
    )
    return client.post(
        url,
        params={"key": credentials["apiKey"]},
        json={"writes": writes},
        timeout=config["timeouts"]["storage_timeout_seconds"],
    )


def _error_status(response):
    try:
        return response.json().get("error", {}).get("status", "")
    except ValueError:
        return ""


def _firestore_increment(client, credentials, field_path, amount, config):
    name = _document_name(credentials, config)
    increment_write = {
        "transform": {
            "document": name,
            "fieldTransforms": [{"fieldPath": field_path, "increment": {"integerValue": str(amount)}}],
        },
        "currentDocument": {"exists": True},
    }
    create_write = {
        "update": {"name": name, "fields": _nested_fields(field_path, amount)},
        "updateMask": {"fieldPaths": [field_path]},
        "currentDocument": {"exists": False},
    }

    response = _firestore_commit(client, credentials, [increment_write], config)
    if response.status_code != 404 and _error_status(response) != "NOT_FOUND":
        response.raise_for_status()
        logging.info(f"[firestore] Incremented {field_path} by {amount}")
        return

    logging.warning("[firestore] Counter document missing, creating it")
    response = _firestore_commit(client, credentials, [create_write], config)
    if response.status_code == 409 or _error_status(response) == "ALREADY_EXISTS":
        # Another kiosk created it between our two writes
        logging.info("[firestore] Counter document created concurrently, retrying increment")
        response = _firestore_commit(client, credentials, [increment_write], config)
    response.raise_for_status()
    logging.info(f"[firestore] {field_path} written ({amount})")


# ---------------------------------------------------------------------------
# DOCUMENT STORE: LOCAL
# ---------------------------------------------------------------------------


def _read_json(path):
    if not os.path.exists(path):
        return None
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def write_json_atomic(path, data):
    """Write via a uniquely named temp file in the same directory, then rename over path."""
    parent = Path(path).parent
    parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        "w", encoding="utf-8", dir=parent, prefix=f"{Path(path).name}.", suffix=".tmp", delete=False
    ) as f:
        json.dump(data, f, indent=2, ensure_ascii=False)
        tmp_path = f.name
    try:
        os.replace(tmp_path, path)
    except OSError:
        os.unlink(tmp_path)
        raise


def _local_try_increment(path, field_path, amount):
    """Increment in place. Returns False when the document does not exist."""
    with _LOCAL_LOCK:
        document = _read_json(path)
        if document is None:
            return False
        node = document
        keys = field_path.split(".")
        for key in keys[:-1]:
            node = node.setdefault(key, {})
        node[keys[-1]] = int(node.get(keys[-1], 0)) + amount
        write_json_atomic(path, document)
    return True


def _local_try_create(path, field_path, amount):
    """Create the document with the initial value. Returns False if it already exists."""
    with _LOCAL_LOCK:
        if os.path.exists(path):
            return False
        data = amount
        for key in reversed(field_path.split(".")):
            data = {key: data}
        write_json_atomic(path, data)
    return True


def _local_increment(path, field_path, amount):
    if _local_try_increment(path, field_path, amount):
        return
    logging.warning("[local] Counter document missing, creating it")
    if not _local_try_create(path, field_path, amount):
        _local_try_increment(path, field_path, amount)


# ---------------------------------------------------------------------------
# DOCUMENT STORE: UNIFIED
# ---------------------------------------------------------------------------


def get_document(credentials, config, client=None):
    """The raw config document as a dict, or None if it does not exist."""
    if _backend(config) == "local":
        with _LOCAL_LOCK:
            return _read_json(config["storage"]["local_document_file"])
    return _firestore_get(client or get_http_client(), credentials, config)


def put_document(credentials, document, config, client=None):
    """Replace the config document. Returns what the store now holds."""
    if _backend(config) == "local":
        with _LOCAL_LOCK:
            write_json_atomic(config["storage"]["local_document_file"], document)
        return document
    return _firestore_put(client or get_http_client(), credentials, document, config)


def increment_counter(credentials, config, field_path=COUNTER_FIELD, amount=1, client=None):
    """
    Atomically add to a counter field. A missing document is created with
    the increment as its value.
    """
    if _backend(config) == "local":
        _local_increment(config["storage"]["local_document_file"], field_path, amount)
        return
    _firestore_increment(client or get_http_client(), credentials, field_path, amount, config)


# ---------------------------------------------------------------------------
# BLOB STORE
# ---------------------------------------------------------------------------


def _storage_object_url(credentials, path, config):
    bucket = credentials["storageBucket"]
    return f"{config['storage']['storage_base_url']}/b/{bucket}/o/{quote(path, safe='')}"


def storage_path_from_url(url_or_path):
    """Object path for a download URL, gs:// URL, file URI or bare path."""
    if url_or_path.startswith(("http://", "https://")):
        parsed = urlparse(url_or_path)
        marker = "/o/"
        if marker in parsed.path:
            return unquote(parsed.path.split(marker, 1)[1])
        return unquote(parsed.path.lstrip("/"))
    if url_or_path.startswith("gs://"):
        return urlparse(url_or_path).path.lstrip("/")
    if url_or_path.startswith("file://"):
        return unquote(urlparse(url_or_path).path)
    return url_or_path


def put_blob(credentials, data, path, content_type, config, client=None):
    """Store bytes under path and return a retrieval URL."""
    t0 = time.time()
    if _backend(config) == "local":
        target = Path(config["storage"]["local_blob_dir"]) / path
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        url = target.resolve().as_uri()
        logging.info(f"[local] Stored blob {path} ({len(data)} bytes)")
        return url

    if not credentials.get("storageBucket"):
        raise ValueError("storageBucket missing from cloud credentials")
    client = client or get_http_client()
    bucket = credentials["storageBucket"]
    response = client.post(
        f"{config['storage']['storage_base_url']}/b/{bucket}/o",
        params={"name": path, "uploadType": "media"},
        content=data,
        headers={"Content-Type": content_type},
        timeout=config["timeouts"]["storage_timeout_seconds"],
    )
    response.raise_for_status()
    meta = response.json()
    url = f"{_storage_object_url(credentials, meta.get('name', path), config)}?alt=media"
    token = (meta.get("downloadTokens") or "").split(",")[0]
    if token:
        url += f"&token={token}"
    logging.info(f"[storage] Uploaded {path} ({len(data)} bytes) in {time.time() - t0:.2f}s")
    return url


def delete_blob(credentials, url_or_path, config, client=None):
    """Delete a blob. A blob that is already gone is not an error."""
    path = storage_path_from_url(url_or_path)
    if _backend(config) == "local":
        target = Path(path)
        if not target.is_absolute():
            target = Path(config["storage"]["local_blob_dir"]) / path
        if not target.exists():
            logging.info(f"[local] Blob already gone: {target}")
            return
        target.unlink()
        logging.info(f"[local] Deleted blob {target}")
        return

    client = client or get_http_client()
    response = client.delete(
        _storage_object_url(credentials, path, config),
        timeout=config["timeouts"]["storage_timeout_seconds"],
    )
    if response.status_code == 404:
        logging.info(f"[storage] Blob already gone: {path}")
        return
    response.raise_for_status()
    logging.info(f"[storage] Deleted {path}")
