"""
remix_service.py — Generative remix that puts the mascot into a capture.

One Gemini generateContent call per session over httpx. Every failure
(network, HTTP status, empty response, no image part, undecodable image) is
surfaced as RemixUnavailable; the caller composites the original capture
instead. There are no retries.
"""

import base64
import logging
import os
import time

import cv2
import httpx
from dotenv import load_dotenv

from compositing import decode_image, encode_jpeg
from errors import RasterDecodeError, RemixUnavailable

load_dotenv()

STYLES = ("mascot", "cyberpunk", "anime", "portrait")


# ---------------------------------------------------------------------------
# IMAGE PREPARATION
# ---------------------------------------------------------------------------


def downscale_for_remix(raster, max_width=1024, quality=80):
    """
    Shrink to at most max_width (keeping the ratio) and re-encode as JPEG.
    The re-encode always happens, even when no resize is needed.
    """
    h, w = raster.shape[:2]
    if w > max_width:
        new_h = int(round(h * max_width / w))
        raster = cv2.resize(raster, (max_width, new_h), interpolation=cv2.INTER_AREA)
        logging.debug(f"Remix input resized {w}x{h} -> {max_width}x{new_h}")
    return encode_jpeg(raster, quality)


# ---------------------------------------------------------------------------
# PROMPT BUILDERS
# ---------------------------------------------------------------------------


def build_remix_prompt(style, config):
    if style not in STYLES:
        raise ValueError(f"Unknown remix style: {style!r}")

    if style == "cyberpunk":
        return ("Transform the image into a futuristic Cyberpunk style with neon effects. "
                "Maintain 4:5 portrait ratio and the person's identity.")
    if style == "anime":
        return ("Transform this image into high-quality Japanese anime style. "
                "Maintain 4:5 portrait ratio and the person's pose.")
    if style == "portrait":
        return ("Realistic professional retouching: enhance lighting and colors. "
                "Maintain 4:5 portrait ratio.")

    name = config["remix"]["mascot_name"]
    description = config["remix"]["mascot_description"]
    return f"""ACT AS A PROFESSIONAL PHOTO EDITOR.
INPUT PHOTO RATIO IS EXACTLY 4:5.
TASK: ADD THE MASCOT "{name}" INTO THE PHOTO.

CRITICAL:
- KEEP THE ORIGINAL PERSON, BACKGROUND AND LIGHTING 100% THE SAME.
- OUTPUT MUST BE SUITABLE FOR A 4:5 CROP (CENTERED COMPOSITION).

MASCOT "{name}" DETAILS:
{description}.

PLACEMENT:
- Place {name} as a companion standing beside the person, never covering their face or body.
- {name} should occupy about 25-30% of the frame.
- Match the scene's lighting and shadows perfectly.
"""


# ---------------------------------------------------------------------------
# RESPONSE PARSING
# ---------------------------------------------------------------------------


def extract_image_part(result):
    """Return the first inline image payload (bytes) in the response, or None."""
    candidates = result.get("candidates")
    if not isinstance(candidates, list):
        return None
    for candidate in candidates:
        if not isinstance(candidate, dict) or not isinstance(candidate.get("content"), dict):
            continue
        parts = candidate["content"].get("parts")
        if not isinstance(parts, list):
            continue
        for part in parts:
            if not isinstance(part, dict):
                continue
            inline = part.get("inlineData") or part.get("inline_data")
            if isinstance(inline, dict) and isinstance(inline.get("data"), str) and inline["data"]:
                return base64.b64decode(inline["data"])
    return None


# ===========================================================================
#  BACKEND: GEMINI
# ===========================================================================


def _get_api_key(config):
    key = os.getenv(config["api"]["gemini_api_key_env"], "")
    if not key:
        logging.error(f"{config['api']['gemini_api_key_env']} not set!")
    return key


def _api_headers(config):
    return {
        "x-goog-api-key": _get_api_key(config),
        "Content-Type": "application/json",
    }


async def _gemini_generate(client, image_b64, prompt, config):
    model = config["api"]["remix_model"]
    logging.info(f"[gemini] Remix request with model={model}")
    t0 = time.time()

    payload = {
        "contents": [
            {
                "parts": [
                    {"inlineData": {"mimeType": "image/jpeg", "data": image_b64}},
                    {"text": prompt},
                ],
            }
        ],
        "generationConfig": {
            "responseModalities": ["IMAGE"],
            # 4:5 is not offered; 3:4 is the closest and the result is cropped again
            "imageConfig": {"aspectRatio": config["remix"]["aspect_ratio"]},
        },
    }

    response = await client.post(
        f"{config['api']['gemini_base_url']}/models/{model}:generateContent",
        json=payload,
        headers=_api_headers(config),
        timeout=config["timeouts"]["remix_timeout_seconds"],
    )
    response.raise_for_status()
    result = response.json()

    elapsed = time.time() - t0
    logging.info(f"[gemini] Remix done in {elapsed:.2f}s")
    return result


# ===========================================================================
#  ENTRY POINT
# ===========================================================================


async def remix_capture(raster, config, style=None, client=None):
    """
    Remix a capture. Returns the remixed raster or raises RemixUnavailable.
    """
    style = style or config["remix"]["style"]
    image_bytes = downscale_for_remix(raster, config["remix"]["max_width"], config["remix"]["jpeg_quality"])
    image_b64 = base64.b64encode(image_bytes).decode("utf-8")
    prompt = build_remix_prompt(style, config)
    logging.info(f"Remix: style={style} payload={len(image_bytes)} bytes")

    try:
        if client is None:
            async with httpx.AsyncClient() as own_client:
                result = await _gemini_generate(own_client, image_b64, prompt, config)
        else:
            result = await _gemini_generate(client, image_b64, prompt, config)
    except (httpx.HTTPError, ValueError) as exc:
        logging.warning(f"Remix request failed: {exc!r}")
        raise RemixUnavailable(str(exc)) from exc

    if not isinstance(result, dict):
        logging.warning(f"Remix response is not an object: {type(result).__name__}")
        raise RemixUnavailable("malformed remix response")

    try:
        data = extract_image_part(result)
    except ValueError as exc:
        logging.warning(f"Remix image payload is not valid base64: {exc}")
        raise RemixUnavailable(str(exc)) from exc
    if data is None:
        logging.warning("Remix response contained no image part")
        raise RemixUnavailable("no image in remix response")

    try:
        remixed = decode_image(data)
    except RasterDecodeError as exc:
        logging.warning(f"Remix image could not be decoded: {exc}")
        raise RemixUnavailable(str(exc)) from exc

    logging.info(f"Remix image received {remixed.shape[1]}x{remixed.shape[0]}")
    return remixed
