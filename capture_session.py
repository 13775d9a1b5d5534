"""
capture_session.py — The kiosk session lifecycle.

IDLE -> COUNTING_DOWN -> CAPTURING -> REMIXING -> COMPOSITING -> UPLOADING
     -> READY -> RETAKING -> IDLE

The session is a plain dict owned by this module; the UI only reads it and
calls the transition functions below. Remote calls run off the UI loop and
their results are dropped if the session was reset meanwhile (session_id
guard). Remix and upload failures never abandon a session: every failure
path ends in READY.
"""

import asyncio
import logging
import threading
import time
import uuid
from collections import namedtuple

import compositing
import persistence
import remix_service
from errors import DeleteFailed, RasterDecodeError, RemixUnavailable, SessionStateError, UploadFailed

# ---------------------------------------------------------------------------
# STATES
# ---------------------------------------------------------------------------

IDLE = "IDLE"
COUNTING_DOWN = "COUNTING_DOWN"
CAPTURING = "CAPTURING"
REMIXING = "REMIXING"
COMPOSITING = "COMPOSITING"
UPLOADING = "UPLOADING"
READY = "READY"
RETAKING = "RETAKING"

SessionServices = namedtuple(
    "SessionServices",
    ["remix", "load_overlay", "upload", "delete", "record_photo", "target_ratio", "jpeg_quality", "auto_reset_seconds"],
)


def new_session():
    return {
        "state": IDLE,
        "session_id": uuid.uuid4().hex,
        "raw_capture": None,
        "remixed_raster": None,
        "final_composite": None,
        "cloud_asset_ref": None,
        "auto_reset_deadline": None,
        "countdown_started_at": None,
        "countdown_value": None,
        "capturing_since": None,
        "remix_failed": False,
        "upload_failed": False,
        "device_error": None,
    }


def _clear_session_fields(session):
    for key in ("raw_capture", "remixed_raster", "final_composite", "cloud_asset_ref",
                "auto_reset_deadline", "countdown_started_at", "countdown_value", "capturing_since"):
        session[key] = None
    session["remix_failed"] = False
    session["upload_failed"] = False


def _set_once(session, key, value):
    if session[key] is not None:
        raise SessionStateError(f"{key} already set for session {session['session_id']}")
    session[key] = value


def transition_to(session, new_state, **kwargs):
    old = session["state"]
    session["state"] = new_state
    logging.info(f"State: {old} -> {new_state} {kwargs if kwargs else ''}")
    if new_state != READY:
        session["auto_reset_deadline"] = None


def _is_current(session, session_id, expected_state):
    if session["session_id"] != session_id or session["state"] != expected_state:
        logging.warning(
            f"Discarding stale result for session {session_id[:8]} "
            f"(now {session['session_id'][:8]} in {session['state']})"
        )
        return False
    return True


# ---------------------------------------------------------------------------
# COUNTDOWN AND CAPTURE
# ---------------------------------------------------------------------------


def start_countdown(session, now, ticks=3, device_ready=True):
    """Begin a capture. Ignored unless IDLE with a device ready."""
    if session["state"] != IDLE or not device_ready:
        logging.debug(f"Capture trigger ignored in {session['state']} (device_ready={device_ready})")
        return False
    _clear_session_fields(session)
    session["session_id"] = uuid.uuid4().hex
    session["countdown_started_at"] = now
    session["countdown_value"] = ticks
    transition_to(session, COUNTING_DOWN, session_id=session["session_id"][:8])
    return True


def countdown_tick(session, now, ticks=3, tick_seconds=1.0):
    """
    Advance the cosmetic countdown. Returns True exactly once, when the
    countdown has run out and the session moved to CAPTURING.
    """
    if session["state"] != COUNTING_DOWN:
        return False
    elapsed = now - session["countdown_started_at"]
    done = int(elapsed // tick_seconds)
    if done < ticks:
        session["countdown_value"] = ticks - done
        return False
    session["countdown_value"] = None
    session["capturing_since"] = now
    transition_to(session, CAPTURING)
    return True


def poll_capture_timeout(session, now, timeout_seconds):
    """
    Give up on a capture whose device stays open but yields no frames.
    Returns True when the session was reset to IDLE.
    """
    started = session["capturing_since"]
    if session["state"] != CAPTURING or started is None or now - started < timeout_seconds:
        return False
    logging.error(f"No frame received within {timeout_seconds}s of capture, resetting")
    force_reset(session)
    session["device_error"] = "No image from the camera, please check the connection"
    return True


def _store_capture(session, raster):
    _set_once(session, "raw_capture", raster)
    h, w = raster.shape[:2]
    transition_to(session, REMIXING, capture=f"{w}x{h}")


def capture_frame(session, frame, selection, target_ratio=compositing.TARGET_RATIO):
    """Crop the grabbed frame to the output ratio and hand it to the remix step."""
    if session["state"] != CAPTURING:
        raise SessionStateError(f"capture_frame in {session['state']}")
    raster = compositing.crop_to_ratio(frame, target_ratio, mirror=selection.mirror_policy)
    _store_capture(session, raster)
    return raster


def ingest_upload(session, image_bytes, target_ratio=compositing.TARGET_RATIO):
    """
    Start a session from an uploaded image instead of the camera.
    Uploaded images are never mirrored. Returns False if not IDLE or the
    image cannot be decoded.
    """
    if session["state"] != IDLE:
        logging.debug(f"Upload ignored in {session['state']}")
        return False
    try:
        raster = compositing.decode_image(image_bytes)
    except RasterDecodeError as exc:
        logging.warning(f"Uploaded image rejected: {exc}")
        return False
    _clear_session_fields(session)
    session["session_id"] = uuid.uuid4().hex
    transition_to(session, CAPTURING, source="upload", session_id=session["session_id"][:8])
    _store_capture(session, compositing.crop_to_ratio(raster, target_ratio, mirror=False))
    return True


# ---------------------------------------------------------------------------
# PIPELINE: REMIX -> COMPOSITE -> UPLOAD -> READY
# ---------------------------------------------------------------------------


async def run_pipeline(session, services, now_fn=time.time):
    """Drive a captured session to READY. Returns False if it went stale."""
    session_id = session["session_id"]
    raw = session["raw_capture"]
    if session["state"] != REMIXING or raw is None:
        raise SessionStateError(f"run_pipeline in {session['state']}")

    # Remix; any failure falls back to the original capture
    remixed = None
    try:
        remixed = await services.remix(raw)
    except RemixUnavailable as exc:
        logging.warning(f"Remix unavailable, compositing original capture: {exc}")
    if not _is_current(session, session_id, REMIXING):
        return False
    if remixed is not None:
        remixed = compositing.crop_to_ratio(remixed, services.target_ratio, mirror=False)
        session["remixed_raster"] = remixed
    else:
        session["remix_failed"] = True
    transition_to(session, COMPOSITING, remixed=remixed is not None)

    overlay = await services.load_overlay()
    if not _is_current(session, session_id, COMPOSITING):
        return False
    base = remixed if remixed is not None else raw
    final = compositing.encode_jpeg(compositing.composite(base, overlay), services.jpeg_quality)
    _set_once(session, "final_composite", final)
    transition_to(session, UPLOADING, bytes=len(final))

    asset_ref = None
    try:
        asset_ref = await services.upload(final)
    except UploadFailed as exc:
        logging.warning(f"Upload failed, presenting local-only result: {exc}")
    if not _is_current(session, session_id, UPLOADING):
        if asset_ref is not None:
            await _delete_quietly(services, asset_ref)
        return False
    if asset_ref is not None:
        _set_once(session, "cloud_asset_ref", asset_ref)
    else:
        session["upload_failed"] = True

    try:
        await services.record_photo()
    except OSError as exc:
        logging.error(f"Could not record photo count locally: {exc}")
    if not _is_current(session, session_id, UPLOADING):
        return False

    session["auto_reset_deadline"] = now_fn() + services.auto_reset_seconds
    transition_to(session, READY, cloud=asset_ref is not None)
    return True


# ---------------------------------------------------------------------------
# RETAKE / AUTO-RESET
# ---------------------------------------------------------------------------


def begin_retake(session, reason="retake"):
    """Leave READY. Triggers anywhere else are ignored."""
    if session["state"] != READY:
        logging.debug(f"Retake ignored in {session['state']}")
        return False
    transition_to(session, RETAKING, reason=reason)
    return True


async def _delete_quietly(services, asset_ref):
    try:
        await services.delete(asset_ref)
    except DeleteFailed as exc:
        logging.error(f"Delete failed for {asset_ref.storage_path}: {exc}")


async def finish_retake(session, services):
    """Delete the uploaded photo (best effort), clear the session, go IDLE."""
    if session["state"] != RETAKING:
        raise SessionStateError(f"finish_retake in {session['state']}")
    asset_ref = session["cloud_asset_ref"]
    if asset_ref is not None:
        await _delete_quietly(services, asset_ref)
    _clear_session_fields(session)
    session["session_id"] = uuid.uuid4().hex
    transition_to(session, IDLE)


async def retake(session, services, reason="retake"):
    if not begin_retake(session, reason):
        return False
    await finish_retake(session, services)
    return True


def poll_auto_reset(session, now):
    """Start the automatic retake once the READY deadline has passed."""
    deadline = session["auto_reset_deadline"]
    if session["state"] != READY or deadline is None or now < deadline:
        return False
    return begin_retake(session, reason="timeout")


def seconds_until_reset(session, now):
    deadline = session["auto_reset_deadline"]
    if session["state"] != READY or deadline is None:
        return None
    return max(0, int(round(deadline - now)))


def force_reset(session):
    """
    Abandon whatever is in flight and return to IDLE (device change, config
    reload). Pending remote results are discarded by the session_id guard.
    """
    logging.warning(f"Forced reset from {session['state']}")
    _clear_session_fields(session)
    session["session_id"] = uuid.uuid4().hex
    transition_to(session, IDLE, forced=True)


def qr_payload(session, config):
    asset_ref = session["cloud_asset_ref"]
    if asset_ref is not None:
        return asset_ref.url
    return config["ui"]["qr_fallback_url"]


# ---------------------------------------------------------------------------
# WIRING
# ---------------------------------------------------------------------------


def build_services(kiosk_data, config):
    """Bind the pipeline steps to the remix client and the persistence layer."""

    async def remix(raster):
        return await remix_service.remix_capture(raster, config)

    async def load_overlay():
        frame = persistence.current_frame(kiosk_data)
        if frame is None:
            return None
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, compositing.load_overlay, frame.url, config)

    async def upload(jpeg_bytes):
        credentials = persistence.storage_credentials(kiosk_data["theme"], config)
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None, persistence.upload_session_composite, jpeg_bytes, credentials, config
        )

    async def delete(asset_ref):
        credentials = persistence.storage_credentials(kiosk_data["theme"], config)
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, persistence.delete_session_asset, asset_ref, credentials, config)

    async def record_photo():
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, persistence.record_completed_session, kiosk_data, config)

    return SessionServices(
        remix=remix,
        load_overlay=load_overlay,
        upload=upload,
        delete=delete,
        record_photo=record_photo,
        target_ratio=config["compositing"]["target_ratio"],
        jpeg_quality=config["compositing"]["jpeg_quality"],
        auto_reset_seconds=config["timeouts"]["auto_reset_seconds"],
    )


def run_in_background(coro_factory, name="pipeline"):
    """Run a coroutine on its own event loop in a daemon thread."""

    def _run():
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        try:
            loop.run_until_complete(coro_factory())
        finally:
            loop.close()

    t = threading.Thread(target=_run, name=name, daemon=True)
    t.start()
    logging.info(f"Background {name} thread launched")
    return t
