"""
test_kiosk.py — Unit and integration tests for capture, compositing and the
session lifecycle.
Run with: uv run pytest -v
"""

import asyncio

import cv2
import numpy as np
import pytest

import capture_session as cs
import device
from compositing import (
    composite,
    crop_rect,
    crop_to_ratio,
    decode_image,
    encode_jpeg,
    load_overlay,
)
from errors import DeleteFailed, RasterDecodeError, RemixUnavailable, SessionStateError, UploadFailed
from persistence import CloudAssetRef
from settings import load_config

CONFIG = load_config()

# ---------------------------------------------------------------------------
# TEST HELPERS
# ---------------------------------------------------------------------------


def make_solid_image(h, w, color):
    img = np.zeros((h, w, 3), dtype=np.uint8)
    img[:] = color
    return img


def make_gradient_image(h=100, w=200):
    """Each column holds its own x index, so crops and flips are easy to read."""
    row = np.arange(w, dtype=np.uint8)
    gray = np.tile(row, (h, 1))
    return cv2.merge([gray, gray, gray])


def make_border_overlay(h=50, w=40, border=5, color=(0, 0, 255)):
    """BGRA frame: opaque colored border, fully transparent center."""
    overlay = np.zeros((h, w, 4), dtype=np.uint8)
    overlay[:, :, :3] = color
    overlay[:border, :, 3] = 255
    overlay[-border:, :, 3] = 255
    overlay[:, :border, 3] = 255
    overlay[:, -border:, 3] = 255
    return overlay


def png_bytes(img):
    ok, buf = cv2.imencode(".png", img)
    assert ok
    return buf.tobytes()


class FakeCapture:
    def __init__(self, frame=None):
        self.frame = frame
        self.released = False

    def read(self):
        return self.frame is not None, self.frame

    def release(self):
        self.released = True


def make_services(remix=None, overlay=None, upload=None, delete=None, calls=None, auto_reset_seconds=20):
    """Pipeline services backed by plain Python fakes. calls records every remote call."""
    calls = calls if calls is not None else {"remix": 0, "upload": [], "delete": [], "record": 0}

    async def _remix(raster):
        calls["remix"] += 1
        if remix is None:
            raise RemixUnavailable("forced")
        return remix(raster)

    async def _load_overlay():
        return overlay

    async def _upload(data):
        calls["upload"].append(data)
        if upload is None:
            raise UploadFailed("forced")
        return upload(data)

    async def _delete(ref):
        calls["delete"].append(ref)
        if delete is not None:
            delete(ref)

    async def _record():
        calls["record"] += 1

    services = cs.SessionServices(
        remix=_remix,
        load_overlay=_load_overlay,
        upload=_upload,
        delete=_delete,
        record_photo=_record,
        target_ratio=0.8,
        jpeg_quality=100,
        auto_reset_seconds=auto_reset_seconds,
    )
    return services, calls


def captured_session(frame=None):
    """A session that has just grabbed a frame and is waiting on the remix."""
    session = cs.new_session()
    assert cs.start_countdown(session, now=0.0)
    assert cs.countdown_tick(session, now=3.0)
    selection = device.DeviceSelection(None, [], False)
    cs.capture_frame(session, frame if frame is not None else make_solid_image(1080, 1920, (10, 200, 10)), selection)
    return session


def fixed_upload(url="blob://abc", path="photos/abc.jpg"):
    return lambda data: CloudAssetRef(url=url, storage_path=path)


# ---------------------------------------------------------------------------
# CONFIG TESTS
# ---------------------------------------------------------------------------


def test_config():
    for section in ("camera", "countdown", "timeouts", "compositing", "remix",
                    "api", "storage", "paths", "logging", "ui"):
        assert section in CONFIG, f"Missing config section: {section}"


def test_config_storage_backend():
    assert CONFIG["storage"]["backend"] in ("firebase", "local")


def test_config_canonical_reset_timeout():
    assert CONFIG["timeouts"]["auto_reset_seconds"] == 20


# ---------------------------------------------------------------------------
# CROP TESTS
# ---------------------------------------------------------------------------


def test_crop_rect_landscape_source():
    assert crop_rect(1920, 1080) == (528, 0, 864, 1080)


def test_crop_rect_portrait_source():
    assert crop_rect(1080, 1920) == (0, 285, 1080, 1350)


def test_crop_rect_exact_ratio_is_identity():
    assert crop_rect(1080, 1350) == (0, 0, 1080, 1350)


def test_crop_ratio_holds_for_many_sizes():
    for w, h in [(1920, 1080), (3840, 2160), (640, 480), (1080, 1920), (1000, 1000),
                 (4056, 3040), (333, 777), (1281, 719), (801, 1000)]:
        x, y, cw, ch = crop_rect(w, h)
        assert abs(cw / ch - 0.8) < 0.01, f"{w}x{h} -> {cw}x{ch}"
        assert 0 <= x and x + cw <= w
        assert 0 <= y and y + ch <= h


def test_crop_rect_rejects_empty_raster():
    with pytest.raises(ValueError):
        crop_rect(0, 100)


def test_crop_to_ratio_output_shape():
    out = crop_to_ratio(make_solid_image(1080, 1920, (1, 2, 3)))
    assert out.shape == (1080, 864, 3)


def test_crop_to_ratio_without_mirror_keeps_orientation():
    out = crop_to_ratio(make_gradient_image(100, 200), mirror=False)
    assert out.shape[:2] == (100, 80)
    assert out[0, 0, 0] == 60
    assert out[0, -1, 0] == 139


def test_crop_to_ratio_mirror_flips_horizontally():
    out = crop_to_ratio(make_gradient_image(100, 200), mirror=True)
    assert out[0, 0, 0] == 139
    assert out[0, -1, 0] == 60


# ---------------------------------------------------------------------------
# COMPOSITE TESTS
# ---------------------------------------------------------------------------


def test_composite_without_overlay_returns_base():
    base = make_solid_image(100, 80, (10, 20, 30))
    assert composite(base, None) is base


def test_composite_stretches_overlay_to_base():
    base = make_solid_image(100, 80, (10, 20, 30))
    overlay = make_solid_image(10, 8, (0, 0, 255))
    out = composite(base, overlay)
    assert out.shape == base.shape
    assert (out == np.array([0, 0, 255], dtype=np.uint8)).all()


def test_composite_alpha_over():
    base = make_solid_image(100, 80, (10, 20, 30))
    out = composite(base, make_border_overlay(100, 80, border=10))
    assert tuple(out[50, 40]) == (10, 20, 30)
    assert tuple(out[2, 2]) == (0, 0, 255)


def test_composite_half_alpha_blends():
    base = make_solid_image(10, 8, (0, 0, 0))
    overlay = np.zeros((10, 8, 4), dtype=np.uint8)
    overlay[:, :, :3] = 200
    overlay[:, :, 3] = 128
    out = composite(base, overlay)
    assert abs(int(out[5, 4, 0]) - 100) <= 1


def test_load_overlay_missing_file():
    assert load_overlay("does/not/exist.png", CONFIG) is None


def test_load_overlay_empty_source():
    assert load_overlay("", CONFIG) is None


def test_load_overlay_data_uri_keeps_alpha():
    import base64

    uri = "data:image/png;base64," + base64.b64encode(png_bytes(make_border_overlay())).decode()
    overlay = load_overlay(uri, CONFIG)
    assert overlay is not None
    assert overlay.shape == (50, 40, 4)


def test_load_overlay_16bit_png_keeps_colors():
    import base64

    overlay = np.zeros((50, 40, 4), dtype=np.uint16)
    overlay[:, :, :3] = 2570
    overlay[:5, :, 3] = 65535
    uri = "data:image/png;base64," + base64.b64encode(png_bytes(overlay)).decode()

    loaded = load_overlay(uri, CONFIG)
    assert loaded.dtype == np.uint8
    assert loaded[0, 0, 3] == 255

    out = composite(make_solid_image(50, 40, (200, 200, 200)), loaded)
    assert tuple(out[0, 0]) == (10, 10, 10)
    assert tuple(out[30, 20]) == (200, 200, 200)


def test_load_overlay_corrupt_data_uri():
    assert load_overlay("data:image/png;base64,bm90IGFuIGltYWdl", CONFIG) is None


def test_decode_rejects_garbage():
    with pytest.raises(RasterDecodeError):
        decode_image(b"not an image")
    with pytest.raises(RasterDecodeError):
        decode_image(b"")


def test_encode_jpeg_max_quality():
    img = make_solid_image(50, 40, (100, 150, 200))
    data = encode_jpeg(img, quality=100)
    assert data[:2] == b"\xff\xd8"
    decoded = decode_image(data)
    assert decoded.shape == img.shape
    assert np.abs(decoded.astype(int) - img.astype(int)).max() <= 2


# ---------------------------------------------------------------------------
# DEVICE TESTS
# ---------------------------------------------------------------------------

DEVICES = [device.DeviceDescriptor("0", "Camera 0"), device.DeviceDescriptor("2", "Camera 2")]


def test_default_device_is_mirrored():
    selection = device.make_device_selection(None, DEVICES, CONFIG)
    assert selection.mirror_policy is True
    assert selection.preferred_device_id is None


def test_preferred_device_is_never_mirrored():
    selection = device.make_device_selection("2", DEVICES, CONFIG)
    assert selection.mirror_policy is False
    assert device.selected_device_id(selection, CONFIG) == "2"


def test_missing_preferred_device_falls_back_to_default():
    selection = device.make_device_selection("7", DEVICES, CONFIG)
    assert selection.preferred_device_id is None
    assert device.selected_device_id(selection, CONFIG) == str(CONFIG["camera"]["default_device_index"])
    assert selection.mirror_policy is False


def test_missing_preferred_device_capture_is_not_mirrored():
    session = cs.new_session()
    cs.start_countdown(session, now=0.0)
    cs.countdown_tick(session, now=3.0)
    selection = device.make_device_selection("7", [DEVICES[0]], CONFIG)
    raw = cs.capture_frame(session, make_gradient_image(100, 200), selection)
    assert raw[0, 0, 0] == 60


def test_acquire_reuses_open_device():
    opened = []

    def opener(selection, config):
        cap = FakeCapture()
        opened.append(cap)
        return cap

    handle = device.make_device_handle()
    selection = device.make_device_selection("2", DEVICES, CONFIG)
    device.acquire(handle, selection, CONFIG, opener=opener)
    device.acquire(handle, selection, CONFIG, opener=opener)
    assert len(opened) == 1


def test_acquire_releases_on_device_change():
    opened = []

    def opener(selection, config):
        cap = FakeCapture()
        opened.append(cap)
        return cap

    handle = device.make_device_handle()
    device.acquire(handle, device.make_device_selection("2", DEVICES, CONFIG), CONFIG, opener=opener)
    device.acquire(handle, device.make_device_selection("0", DEVICES, CONFIG), CONFIG, opener=opener)
    assert len(opened) == 2
    assert opened[0].released is True
    assert handle["device_id"] == "0"


def test_release_is_idempotent():
    cap = FakeCapture(make_solid_image(4, 4, (0, 0, 0)))
    handle = {"cap": cap, "device_id": "0", "selection": None}
    assert device.read_frame(handle) is not None
    device.release(handle)
    device.release(handle)
    assert cap.released is True
    assert device.read_frame(handle) is None


# ---------------------------------------------------------------------------
# STATE MACHINE: COUNTDOWN
# ---------------------------------------------------------------------------


def test_countdown_runs_three_ticks_then_captures():
    session = cs.new_session()
    assert cs.start_countdown(session, now=100.0) is True
    assert session["state"] == cs.COUNTING_DOWN

    assert cs.countdown_tick(session, now=100.2) is False
    assert session["countdown_value"] == 3
    assert cs.countdown_tick(session, now=101.0) is False
    assert session["countdown_value"] == 2
    assert cs.countdown_tick(session, now=102.5) is False
    assert session["countdown_value"] == 1
    assert cs.countdown_tick(session, now=103.0) is True
    assert session["state"] == cs.CAPTURING
    assert cs.countdown_tick(session, now=104.0) is False


def test_countdown_ignores_retrigger():
    session = cs.new_session()
    assert cs.start_countdown(session, now=0.0)
    sid = session["session_id"]
    assert cs.start_countdown(session, now=0.5) is False
    assert session["countdown_started_at"] == 0.0
    assert session["session_id"] == sid


def test_countdown_requires_device():
    session = cs.new_session()
    assert cs.start_countdown(session, now=0.0, device_ready=False) is False
    assert session["state"] == cs.IDLE


def test_capture_times_out_without_frames():
    session = cs.new_session()
    cs.start_countdown(session, now=0.0)
    assert cs.countdown_tick(session, now=3.0)
    handle = {"cap": FakeCapture(frame=None), "device_id": "0", "selection": None}

    assert device.read_frame(handle) is None
    assert cs.poll_capture_timeout(session, now=4.0, timeout_seconds=5) is False
    assert session["state"] == cs.CAPTURING
    assert cs.poll_capture_timeout(session, now=8.0, timeout_seconds=5) is True
    assert session["state"] == cs.IDLE
    assert session["device_error"]
    assert session["capturing_since"] is None


def test_capture_timeout_ignored_outside_capturing():
    session = cs.new_session()
    assert cs.poll_capture_timeout(session, now=1000.0, timeout_seconds=5) is False
    assert session["state"] == cs.IDLE
    assert session["device_error"] is None


def test_capture_frame_only_while_capturing():
    session = cs.new_session()
    with pytest.raises(SessionStateError):
        cs.capture_frame(session, make_solid_image(10, 10, (0, 0, 0)), device.DeviceSelection(None, [], False))


def test_capture_frame_applies_mirror_policy():
    session = cs.new_session()
    cs.start_countdown(session, now=0.0)
    cs.countdown_tick(session, now=3.0)
    raw = cs.capture_frame(session, make_gradient_image(100, 200), device.DeviceSelection(None, [], True))
    assert raw[0, 0, 0] == 139
    assert session["state"] == cs.REMIXING


def test_ingest_upload_is_never_mirrored():
    session = cs.new_session()
    assert cs.ingest_upload(session, png_bytes(make_gradient_image(100, 200))) is True
    assert session["state"] == cs.REMIXING
    assert session["raw_capture"][0, 0, 0] == 60


def test_ingest_upload_rejects_garbage():
    session = cs.new_session()
    assert cs.ingest_upload(session, b"garbage") is False
    assert session["state"] == cs.IDLE


def test_ingest_upload_only_from_idle():
    session = captured_session()
    assert cs.ingest_upload(session, png_bytes(make_gradient_image())) is False
    assert session["state"] == cs.REMIXING


# ---------------------------------------------------------------------------
# STATE MACHINE: PIPELINE
# ---------------------------------------------------------------------------


def test_pipeline_success_reaches_ready():
    remixed = make_solid_image(1024, 768, (200, 0, 0))
    services, calls = make_services(remix=lambda raster: remixed, upload=fixed_upload())
    session = captured_session()

    assert asyncio.run(cs.run_pipeline(session, services, now_fn=lambda: 1000.0)) is True
    assert session["state"] == cs.READY
    assert session["remixed_raster"] is not None
    assert abs(session["remixed_raster"].shape[1] / session["remixed_raster"].shape[0] - 0.8) < 0.01
    assert session["cloud_asset_ref"].url == "blob://abc"
    assert session["auto_reset_deadline"] == 1020.0
    assert calls["record"] == 1
    assert len(calls["upload"]) == 1
    assert calls["upload"][0] == session["final_composite"]


def test_remix_failure_composites_original_capture():
    original_color = (10, 200, 10)
    services, calls = make_services(remix=None, overlay=make_border_overlay(), upload=fixed_upload())
    session = captured_session(make_solid_image(1080, 1920, original_color))

    asyncio.run(cs.run_pipeline(session, services, now_fn=lambda: 0.0))

    assert session["state"] == cs.READY
    assert session["remixed_raster"] is None
    assert session["remix_failed"] is True
    assert calls["remix"] == 1
    assert calls["record"] == 1

    final = decode_image(session["final_composite"])
    assert final.shape == (1080, 864, 3)
    center = final[540, 432].astype(int)
    assert np.abs(center - np.array(original_color)).max() <= 3
    corner = final[2, 2].astype(int)
    assert np.abs(corner - np.array([0, 0, 255])).max() <= 3


def test_upload_failure_still_reaches_ready():
    services, calls = make_services(remix=lambda r: r, upload=None)
    session = captured_session()

    asyncio.run(cs.run_pipeline(session, services))

    assert session["state"] == cs.READY
    assert session["cloud_asset_ref"] is None
    assert session["upload_failed"] is True
    assert session["final_composite"] is not None
    assert calls["record"] == 1
    assert cs.qr_payload(session, CONFIG) == CONFIG["ui"]["qr_fallback_url"]


def test_reset_deadline_armed_before_ready():
    services, _ = make_services(remix=lambda r: r, upload=fixed_upload())
    session = captured_session()
    seen = []

    def now_fn():
        seen.append(session["state"])
        return 500.0

    asyncio.run(cs.run_pipeline(session, services, now_fn=now_fn))
    assert seen == [cs.UPLOADING]
    assert session["state"] == cs.READY
    assert session["auto_reset_deadline"] == 520.0


def test_qr_payload_uses_cloud_url():
    services, _ = make_services(remix=lambda r: r, upload=fixed_upload(url="https://cdn/x.jpg"))
    session = captured_session()
    asyncio.run(cs.run_pipeline(session, services))
    assert cs.qr_payload(session, CONFIG) == "https://cdn/x.jpg"


def test_pipeline_requires_capture():
    services, _ = make_services()
    with pytest.raises(SessionStateError):
        asyncio.run(cs.run_pipeline(cs.new_session(), services))


def test_stale_remix_result_is_discarded():
    session = captured_session()

    def remix_then_reset(raster):
        cs.force_reset(session)
        return raster

    services, calls = make_services(remix=remix_then_reset, upload=fixed_upload())
    assert asyncio.run(cs.run_pipeline(session, services)) is False
    assert session["state"] == cs.IDLE
    assert session["final_composite"] is None
    assert calls["upload"] == []
    assert calls["record"] == 0


def test_stale_upload_is_deleted():
    session = captured_session()
    ref = CloudAssetRef(url="blob://late", storage_path="photos/late.jpg")

    def upload_then_reset(data):
        cs.force_reset(session)
        return ref

    services, calls = make_services(remix=lambda r: r, upload=upload_then_reset)
    assert asyncio.run(cs.run_pipeline(session, services)) is False
    assert session["cloud_asset_ref"] is None
    assert calls["delete"] == [ref]
    assert calls["record"] == 0


# ---------------------------------------------------------------------------
# STATE MACHINE: RETAKE AND AUTO-RESET
# ---------------------------------------------------------------------------


def ready_session(uploaded=True, delete=None):
    upload = fixed_upload() if uploaded else None
    services, calls = make_services(remix=lambda r: r, upload=upload, delete=delete)
    session = captured_session()
    asyncio.run(cs.run_pipeline(session, services, now_fn=lambda: 1000.0))
    assert session["state"] == cs.READY
    return session, services, calls


def test_retake_deletes_uploaded_photo_once():
    session, services, calls = ready_session()
    ref = session["cloud_asset_ref"]

    assert asyncio.run(cs.retake(session, services)) is True

    assert calls["delete"] == [ref]
    assert calls["delete"][0].url == "blob://abc"
    assert session["state"] == cs.IDLE
    for key in ("raw_capture", "remixed_raster", "final_composite", "cloud_asset_ref", "auto_reset_deadline"):
        assert session[key] is None


def test_retake_without_upload_skips_delete():
    session, services, calls = ready_session(uploaded=False)
    asyncio.run(cs.retake(session, services))
    assert calls["delete"] == []
    assert session["state"] == cs.IDLE


def test_retake_proceeds_when_delete_fails():
    def failing_delete(ref):
        raise DeleteFailed("storage down")

    session, services, calls = ready_session(delete=failing_delete)
    asyncio.run(cs.retake(session, services))
    assert len(calls["delete"]) == 1
    assert session["state"] == cs.IDLE


def test_retake_ignored_outside_ready():
    session = captured_session()
    assert cs.begin_retake(session) is False
    assert session["state"] == cs.REMIXING


def test_auto_reset_fires_exactly_once():
    session, services, calls = ready_session()

    assert cs.poll_auto_reset(session, now=1005.0) is False
    assert cs.seconds_until_reset(session, now=1005.0) == 15
    assert cs.poll_auto_reset(session, now=1019.9) is False
    assert cs.poll_auto_reset(session, now=1020.0) is True
    assert session["state"] == cs.RETAKING
    assert session["auto_reset_deadline"] is None
    assert cs.poll_auto_reset(session, now=1030.0) is False

    asyncio.run(cs.finish_retake(session, services))
    assert len(calls["delete"]) == 1
    assert session["state"] == cs.IDLE
    assert cs.poll_auto_reset(session, now=2000.0) is False


def test_manual_retake_cancels_auto_reset():
    session, services, calls = ready_session()
    assert cs.begin_retake(session, reason="button") is True
    assert session["auto_reset_deadline"] is None
    assert cs.poll_auto_reset(session, now=5000.0) is False
    asyncio.run(cs.finish_retake(session, services))
    assert len(calls["delete"]) == 1


def test_new_session_after_retake():
    session, services, _ = ready_session()
    old_id = session["session_id"]
    asyncio.run(cs.retake(session, services))
    assert session["session_id"] != old_id
    assert cs.start_countdown(session, now=0.0) is True
