"""
Mascot Photo Kiosk — main.py
Walk-up photo booth: countdown, capture, mascot remix, frame overlay,
cloud upload, QR code, automatic reset.
Session lifecycle lives in capture_session.py; this file is the Streamlit UI.

Run with: uv run streamlit run main.py
"""

import io
import logging
import os
import time

import cv2
import pygame
import qrcode
import streamlit as st

import capture_session as cs
import device
import persistence
from errors import DeviceUnavailable, UploadFailed
from settings import SUPPORTED_LANGUAGES, ensure_directories, load_config, setup_logging

# ---------------------------------------------------------------------------
# CONFIGURATION
# ---------------------------------------------------------------------------

CONFIG = load_config()
setup_logging(CONFIG)
ensure_directories(CONFIG)

CAPTURE_ELIGIBLE = (cs.IDLE, cs.COUNTING_DOWN, cs.CAPTURING)
WORKER_STATES = (cs.REMIXING, cs.COMPOSITING, cs.UPLOADING, cs.RETAKING)

# ---------------------------------------------------------------------------
# SOUNDS
# ---------------------------------------------------------------------------

SOUND_FILES = {
    "TICK": "tick.mp3",
    "SHUTTER": "shutter.mp3",
    "DONE": "done.mp3",
}


def init_audio(config):
    if not config["ui"]["sounds_enabled"]:
        return False
    try:
        pygame.mixer.init()
    except pygame.error as exc:
        logging.warning(f"Audio unavailable, running silent: {exc}")
        return False
    return True


def play_sound(track, config):
    if not st.session_state.audio_ready:
        return
    path = os.path.join(config["ui"]["sounds_dir"], SOUND_FILES[track])
    if not os.path.exists(path):
        logging.debug(f"Sound file missing: {path}")
        return
    pygame.mixer.Sound(path).play()


# ---------------------------------------------------------------------------
# SESSION STATE
# ---------------------------------------------------------------------------


def init_session_state(config):
    if "kiosk" in st.session_state:
        return

    kiosk_data = persistence.load_local_snapshot(config)
    persistence.start_cloud_sync(kiosk_data, config)

    st.session_state.kiosk = cs.new_session()
    st.session_state.kiosk_data = kiosk_data
    st.session_state.services = cs.build_services(kiosk_data, config)
    st.session_state.device_handle = device.make_device_handle()
    st.session_state.available_devices = device.list_devices(config)
    st.session_state.worker = None
    st.session_state.last_upload = None
    st.session_state.audio_ready = init_audio(config)


def current_selection(config):
    preferred = st.session_state.kiosk_data["theme"].get("preferredCameraId")
    return device.make_device_selection(preferred, st.session_state.available_devices, config)


def refresh_devices(config):
    st.session_state.available_devices = device.list_devices(config)
    st.session_state.kiosk["device_error"] = None
    device.release(st.session_state.device_handle)
    logging.info("Device list refreshed by user")


def launch_worker(coro_factory, name):
    st.session_state.worker = cs.run_in_background(coro_factory, name=name)


def worker_busy():
    worker = st.session_state.worker
    return worker is not None and worker.is_alive()


# ---------------------------------------------------------------------------
# FRAME HANDLING
# ---------------------------------------------------------------------------


def ensure_device(session, config):
    """Hold the camera only while a capture is possible."""
    handle = st.session_state.device_handle
    if session["state"] not in CAPTURE_ELIGIBLE:
        device.release(handle)
        return None
    if session["device_error"]:
        return None
    try:
        device.acquire(handle, current_selection(config), config)
    except DeviceUnavailable as exc:
        session["device_error"] = "Please check the camera connection and permissions"
        logging.error(f"Device unavailable: {exc}")
        return None
    return handle


def save_capture_copy(session, config):
    ts = int(time.time() * 1000)
    filepath = os.path.join(config["paths"]["capture_dir"], f"photo_{ts}_{session['session_id'][:8]}.jpg")
    with open(filepath, "wb") as f:
        f.write(session["final_composite"])
    logging.info(f"Saved local copy: {filepath}")
    return filepath


def process_frame(session, frame, config):
    services = st.session_state.services

    if session["state"] == cs.COUNTING_DOWN:
        before = session["countdown_value"]
        fired = cs.countdown_tick(
            session, time.time(), config["countdown"]["ticks"], config["countdown"]["tick_seconds"]
        )
        if not fired and session["countdown_value"] != before:
            play_sound("TICK", config)

    if session["state"] == cs.CAPTURING:
        if frame is not None:
            play_sound("SHUTTER", config)
            cs.capture_frame(session, frame, current_selection(config), config["compositing"]["target_ratio"])
            launch_worker(lambda: cs.run_pipeline(session, services), "pipeline")
        elif st.session_state.device_handle["cap"] is None:
            cs.force_reset(session)
        elif cs.poll_capture_timeout(session, time.time(), config["timeouts"]["capture_timeout_seconds"]):
            device.release(st.session_state.device_handle)

    if cs.poll_auto_reset(session, time.time()):
        launch_worker(lambda: cs.finish_retake(session, services), "retake")

    # A worker that died mid-pipeline would leave the kiosk stuck
    if session["state"] in WORKER_STATES and not worker_busy():
        logging.error(f"Worker gone while {session['state']}, resetting")
        cs.force_reset(session)


# ---------------------------------------------------------------------------
# UI: STATUS DISPLAY
# ---------------------------------------------------------------------------


def get_status_display(session, config):
    """Returns (icon, title, subtitle, border_color, bg_color, text_color) for each state."""
    state = session["state"]
    theme = st.session_state.kiosk_data["theme"]

    if state == cs.IDLE:
        if session["device_error"]:
            return "error", "Camera Unavailable", session["device_error"], "#f97316", "#fff7ed", "#c2410c"
        return "camera", theme["eventTitle"], theme["eventSubtitle"], "transparent", "#f8fafc", "#1e293b"

    if state == cs.COUNTING_DOWN:
        return "camera", str(session["countdown_value"] or ""), "Smile!", "#3b82f6", "#eff6ff", "#1e40af"

    if state in (cs.CAPTURING, cs.REMIXING):
        return "spinner", "Looking for the mascot...", "Please wait a moment", "#3b82f6", "#eff6ff", "#1e40af"

    if state == cs.COMPOSITING:
        return "spinner", "Adding your frame...", "Almost there", "#3b82f6", "#eff6ff", "#1e40af"

    if state == cs.UPLOADING:
        return "spinner", "Uploading...", "Preparing your download code", "#3b82f6", "#eff6ff", "#1e40af"

    if state == cs.READY:
        remaining = cs.seconds_until_reset(session, time.time())
        sub = theme["resultInstructions"] if session["cloud_asset_ref"] else "Cloud upload unavailable"
        if remaining is not None:
            sub += f" ({remaining}s)"
        return "complete", theme["congratsText"], sub, "#16a34a", "#f0fdf4", "#166534"

    if state == cs.RETAKING:
        return "spinner", "Resetting...", "", "transparent", "#f8fafc", "#1e293b"

    return "camera", "Unknown State", "", "transparent", "#f8fafc", "#1e293b"


ICONS = {
    "camera": """<svg width="96" height="96" viewBox="0 0 24 24" fill="none" stroke="#3b82f6" stroke-width="1.5" stroke-linecap="round" stroke-linejoin="round">
        <path d="M23 19a2 2 0 0 1-2 2H3a2 2 0 0 1-2-2V8a2 2 0 0 1 2-2h4l2-3h6l2 3h4a2 2 0 0 1 2 2z"/><circle cx="12" cy="13" r="4"/>
    </svg>""",
    "spinner": """<svg width="96" height="96" viewBox="0 0 24 24" fill="none" stroke="#3b82f6" stroke-width="1.5" stroke-linecap="round" stroke-linejoin="round" style="animation: spin 1.5s linear infinite;">
        <path d="M21 12a9 9 0 1 1-6.219-8.56"/>
    </svg>""",
    "error": """<svg width="96" height="96" viewBox="0 0 24 24" fill="none" stroke="#f97316" stroke-width="1.5" stroke-linecap="round" stroke-linejoin="round">
        <circle cx="12" cy="12" r="10"/><line x1="12" y1="8" x2="12" y2="12"/><line x1="12" y1="16" x2="12.01" y2="16"/>
    </svg>""",
    "complete": """<svg width="96" height="96" viewBox="0 0 24 24" fill="none" stroke="#16a34a" stroke-width="1.5" stroke-linecap="round" stroke-linejoin="round">
        <path d="M22 11.08V12a10 10 0 1 1-5.93-9.14"/><polyline points="22 4 12 14.01 9 11.01"/>
    </svg>""",
}


def make_qr_png(payload):
    qr = qrcode.QRCode(error_correction=qrcode.constants.ERROR_CORRECT_M, box_size=8, border=2)
    qr.add_data(payload)
    qr.make(fit=True)
    buf = io.BytesIO()
    qr.make_image(fill_color="black", back_color="white").save(buf, format="PNG")
    return buf.getvalue()


# ---------------------------------------------------------------------------
# STREAMLIT UI
# ---------------------------------------------------------------------------


def render_controls(session, config):
    """Buttons are created once per script run; a click reruns the script."""
    services = st.session_state.services
    kiosk_data = st.session_state.kiosk_data
    theme = kiosk_data["theme"]

    with st.sidebar:
        language = st.selectbox(
            "Language", SUPPORTED_LANGUAGES, index=SUPPORTED_LANGUAGES.index(kiosk_data["language"])
        )
        if language != kiosk_data["language"]:
            persistence.update_kiosk_field(kiosk_data, config, "language", language)

        frame_ids = [f.id for f in kiosk_data["frames"]]
        if frame_ids:
            selected = st.selectbox(
                "Frame", frame_ids,
                index=frame_ids.index(kiosk_data["selected_frame_id"]) if kiosk_data["selected_frame_id"] in frame_ids else 0,
            )
            if selected != kiosk_data["selected_frame_id"]:
                persistence.update_kiosk_field(kiosk_data, config, "selected_frame_id", selected)

        st.caption(f"Photos taken: {kiosk_data['stats']['totalPhotos']}")
        if st.button("Refresh devices"):
            refresh_devices(config)
        if st.button("Reload from cloud"):
            if persistence.sync_from_cloud(kiosk_data, config):
                cs.force_reset(session)
                device.release(st.session_state.device_handle)
        if st.button("Save configuration"):
            try:
                persistence.save_system_configuration(kiosk_data, config)
                st.success("Configuration saved")
            except UploadFailed as exc:
                st.error(f"Save failed: {exc}")

    col_a, col_b = st.columns(2)
    with col_a:
        if st.button(theme["captureButtonText"], width="stretch"):
            handle_ready = st.session_state.device_handle["cap"] is not None
            cs.start_countdown(session, time.time(), config["countdown"]["ticks"], device_ready=handle_ready)
        if st.button(theme["retakeButtonText"], width="stretch"):
            if cs.begin_retake(session, reason="button"):
                launch_worker(lambda: cs.finish_retake(session, services), "retake")
    with col_b:
        uploaded = st.file_uploader(theme["uploadButtonText"], type=["jpg", "jpeg", "png", "webp"])
        upload_key = (uploaded.name, uploaded.size) if uploaded is not None else None
        if upload_key is not None and upload_key != st.session_state.last_upload and session["state"] == cs.IDLE:
            st.session_state.last_upload = upload_key
            if cs.ingest_upload(session, uploaded.getvalue(), config["compositing"]["target_ratio"]):
                launch_worker(lambda: cs.run_pipeline(session, services), "pipeline")


def run_kiosk():
    st.set_page_config(
        page_title="Mascot Photo Kiosk",
        page_icon="📸",
        layout="wide",
        initial_sidebar_state="collapsed",
    )

    config = CONFIG
    init_session_state(config)
    session = st.session_state.kiosk

    st.markdown("""
    <style>
        #MainMenu, footer, header { visibility: hidden; }
        .stApp { background-color: #f1f5f9; }
        [data-testid="stToolbar"] { display: none; }

        @keyframes spin {
            from { transform: rotate(0deg); }
            to { transform: rotate(360deg); }
        }

        .kiosk-card {
            background: white;
            border-radius: 1.5rem;
            box-shadow: 0 20px 60px rgba(0,0,0,0.08), 0 4px 16px rgba(0,0,0,0.04);
            padding: 3rem 2.5rem;
            min-height: 420px;
            display: flex;
            flex-direction: column;
            align-items: center;
            justify-content: center;
            border: 6px solid transparent;
        }
        .kiosk-title { font-size: 3rem; font-weight: 600; margin: 0 0 0.75rem 0; line-height: 1.2; }
        .kiosk-subtitle { font-size: 1.6rem; margin: 0; opacity: 0.75; }

        .debug-bar {
            background: #1e293b;
            color: #94a3b8;
            padding: 0.5rem 1rem;
            border-radius: 0.5rem;
            font-family: monospace;
            font-size: 0.85rem;
            margin-top: 0.75rem;
        }
    </style>
    """, unsafe_allow_html=True)

    render_controls(session, config)

    # --- Layout: camera/result left, status right ---
    col_cam, col_status = st.columns([3, 2], gap="large")
    with col_cam:
        camera_placeholder = st.empty()
    with col_status:
        status_placeholder = st.empty()
        qr_placeholder = st.empty()
        debug_placeholder = st.empty()

    shown_result_for = None

    # --- Main loop ---
    while True:
        handle = ensure_device(session, config)
        frame = device.read_frame(handle) if handle is not None else None

        process_frame(session, frame, config)
        state = session["state"]

        # --- Camera feed or result ---
        if state == cs.READY and session["final_composite"] is not None:
            if shown_result_for != session["session_id"]:
                camera_placeholder.image(session["final_composite"], width="stretch")
                qr_placeholder.image(make_qr_png(cs.qr_payload(session, config)), width=240)
                play_sound("DONE", config)
                save_capture_copy(session, config)
                shown_result_for = session["session_id"]
        else:
            if shown_result_for is not None:
                qr_placeholder.empty()
                shown_result_for = None
            if frame is not None and config["ui"]["show_camera_feed"]:
                display_frame = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
                if current_selection(config).mirror_policy:
                    display_frame = cv2.flip(display_frame, 1)
                camera_placeholder.image(display_frame, channels="RGB", width="stretch")

        # --- Status card ---
        icon_key, title, subtitle, border_color, bg_color, text_color = get_status_display(session, config)
        icon_svg = ICONS.get(icon_key, ICONS["camera"])
        border_style = f"border-color: {border_color};" if border_color != "transparent" else ""
        status_placeholder.markdown(f"""
<div class="kiosk-card" style="background: {bg_color}; {border_style}">
    <div class="kiosk-icon">{icon_svg}</div>
    <h1 class="kiosk-title" style="color: {text_color};">{title}</h1>
    <p class="kiosk-subtitle" style="color: {text_color};">{subtitle}</p>
</div>
""", unsafe_allow_html=True)

        if config["ui"]["show_debug_overlay"]:
            debug_placeholder.markdown(
                f'<div class="debug-bar">'
                f'State: {state} &nbsp;|&nbsp; '
                f'Session: {session["session_id"][:8]} &nbsp;|&nbsp; '
                f'Remix failed: {session["remix_failed"]} &nbsp;|&nbsp; '
                f'Upload failed: {session["upload_failed"]}'
                f'</div>',
                unsafe_allow_html=True,
            )

        time.sleep(1.0 / config["camera"]["fps_target"])


def shutdown():
    if "device_handle" in st.session_state:
        device.release(st.session_state.device_handle)


if __name__ == "__main__":
    try:
        run_kiosk()
    finally:
        shutdown()
