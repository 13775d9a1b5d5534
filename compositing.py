"""
compositing.py — Crop-to-ratio and frame overlay compositing.

Pure raster transforms on numpy BGR(A) arrays. The only I/O here is
load_overlay(), which turns a frame source into a raster before compositing.

Output canvas strategy: the crop keeps the source resolution (a 1920x1080
capture becomes 864x1080). Nothing is rescaled to a fixed 1080x1350 canvas.
"""

import base64
import logging
import os

import cv2
import httpx
import numpy as np

from errors import RasterDecodeError

TARGET_RATIO = 4 / 5


# ---------------------------------------------------------------------------
# DECODE / ENCODE
# ---------------------------------------------------------------------------


def decode_image(data, keep_alpha=False):
    """Decode image bytes to completion. Raises RasterDecodeError on failure."""
    if not data:
        raise RasterDecodeError("empty image payload")
    buf = np.frombuffer(data, dtype=np.uint8)
    flags = cv2.IMREAD_UNCHANGED if keep_alpha else cv2.IMREAD_COLOR
    img = cv2.imdecode(buf, flags)
    if img is None:
        raise RasterDecodeError(f"could not decode {len(data)} bytes")
    if img.dtype == np.uint16:
        img = (img >> 8).astype(np.uint8)
    if img.ndim == 2:
        img = cv2.cvtColor(img, cv2.COLOR_GRAY2BGR)
    return img


def decode_data_uri(uri):
    """Split a data: URI and return the raw payload bytes."""
    header, _, payload = uri.partition(",")
    if not header.startswith("data:") or not payload:
        raise RasterDecodeError("malformed data URI")
    if ";base64" in header:
        return base64.b64decode(payload)
    return payload.encode("utf-8")


def encode_jpeg(raster, quality=100):
    if raster.ndim == 3 and raster.shape[2] == 4:
        raster = cv2.cvtColor(raster, cv2.COLOR_BGRA2BGR)
    ok, buf = cv2.imencode(".jpg", raster, [cv2.IMWRITE_JPEG_QUALITY, int(quality)])
    if not ok:
        raise RasterDecodeError("JPEG encoding failed")
    return buf.tobytes()


# ---------------------------------------------------------------------------
# CROP
# ---------------------------------------------------------------------------


def crop_rect(width, height, target_ratio=TARGET_RATIO):
    """
    Centered crop rectangle (x, y, w, h) with w/h == target_ratio.
    A source wider than the target keeps its full height, a taller one keeps
    its full width.
    """
    if width <= 0 or height <= 0:
        raise ValueError(f"invalid raster size {width}x{height}")
    video_ratio = width / height
    if video_ratio > target_ratio:
        crop_h = height
        crop_w = height * target_ratio
        start_x = (width - crop_w) / 2
        start_y = 0.0
    else:
        crop_w = width
        crop_h = width / target_ratio
        start_x = 0.0
        start_y = (height - crop_h) / 2

    w = max(1, int(round(crop_w)))
    h = max(1, int(round(crop_h)))
    x = min(max(0, int(round(start_x))), width - w)
    y = min(max(0, int(round(start_y))), height - h)
    return x, y, w, h


def crop_to_ratio(raster, target_ratio=TARGET_RATIO, mirror=False):
    """Crop to the target ratio, flipping horizontally first when mirror is set."""
    h_src, w_src = raster.shape[:2]
    if mirror:
        raster = cv2.flip(raster, 1)
    x, y, w, h = crop_rect(w_src, h_src, target_ratio)
    logging.debug(f"Crop {w_src}x{h_src} -> x={x} y={y} {w}x{h} mirror={mirror}")
    return np.ascontiguousarray(raster[y:y + h, x:x + w])


# ---------------------------------------------------------------------------
# OVERLAY
# ---------------------------------------------------------------------------


def load_overlay(source, config, client=None):
    """
    Load a frame overlay (file path, data: URI or http(s) URL) keeping its
    alpha channel. Returns None if it cannot be loaded; compositing then
    degrades to the bare photo.
    """
    if not source:
        logging.warning("Frame overlay has no source, compositing without it")
        return None
    try:
        if source.startswith("data:"):
            data = decode_data_uri(source)
        elif source.startswith(("http://", "https://")):
            timeout = config["timeouts"]["storage_timeout_seconds"]
            if client is None:
                response = httpx.get(source, timeout=timeout, follow_redirects=True)
            else:
                response = client.get(source, timeout=timeout, follow_redirects=True)
            response.raise_for_status()
            data = response.content
        else:
            if not os.path.exists(source):
                logging.warning(f"Frame overlay not found: {source}")
                return None
            with open(source, "rb") as f:
                data = f.read()
        overlay = decode_image(data, keep_alpha=True)
    except (httpx.HTTPError, RasterDecodeError, OSError) as exc:
        logging.warning(f"Frame overlay failed to load ({source[:80]}): {exc}")
        return None
    logging.info(f"Loaded frame overlay {overlay.shape[1]}x{overlay.shape[0]} ({overlay.shape[2]} channels)")
    return overlay


def composite(base, overlay):
    """
    Stretch the overlay to the base size and alpha-blend it on top.
    Returns base unchanged when the overlay is missing.
    """
    if overlay is None:
        return base

    h, w = base.shape[:2]
    stretched = cv2.resize(overlay, (w, h), interpolation=cv2.INTER_LINEAR)

    if stretched.ndim == 3 and stretched.shape[2] == 4:
        alpha = stretched[:, :, 3:4].astype(np.float32) / 255.0
        color = stretched[:, :, :3].astype(np.float32)
    else:
        alpha = np.ones((h, w, 1), dtype=np.float32)
        color = stretched[:, :, :3].astype(np.float32)

    base_color = base[:, :, :3].astype(np.float32)
    blended = color * alpha + base_color * (1.0 - alpha)
    return np.clip(np.rint(blended), 0, 255).astype(np.uint8)
