"""
device.py — Capture device selection, acquisition and release.

OpenCV addresses cameras by index; a device id is the index as a string.
The open stream is held in a DeviceHandle dict so it can be released
deterministically whenever the kiosk leaves a capture-eligible state or the
preferred device changes.
"""

import logging
import platform
from collections import namedtuple

import cv2

from errors import DeviceUnavailable

DeviceDescriptor = namedtuple("DeviceDescriptor", ["device_id", "label"])
DeviceSelection = namedtuple("DeviceSelection", ["preferred_device_id", "available_devices", "mirror_policy"])


def _backend():
    # DirectShow opens USB cameras far faster than MSMF on Windows kiosks
    return cv2.CAP_DSHOW if platform.system() == "Windows" else cv2.CAP_ANY


# ---------------------------------------------------------------------------
# DISCOVERY
# ---------------------------------------------------------------------------


def list_devices(config):
    """Probe camera indices and return the ones that open."""
    devices = []
    for index in range(config["camera"]["max_probe_devices"]):
        cap = cv2.VideoCapture(index, _backend())
        opened = cap.isOpened()
        cap.release()
        if opened:
            devices.append(DeviceDescriptor(device_id=str(index), label=f"Camera {index}"))
    logging.info(f"Devices found: {[d.device_id for d in devices]}")
    return devices


def make_device_selection(preferred_device_id, available_devices, config):
    """
    Resolve which device to use and whether to mirror it.
    A configured preferred device is an external/document camera and is
    never mirrored, even when it is missing and the default index is opened
    in its place. Without one, the default device is mirrored when it faces
    the user.
    """
    known = {d.device_id for d in available_devices}
    if preferred_device_id and preferred_device_id in known:
        return DeviceSelection(preferred_device_id, list(available_devices), False)
    if preferred_device_id:
        logging.warning(f"Preferred device {preferred_device_id} not present, using default unmirrored")
        return DeviceSelection(None, list(available_devices), False)
    mirror = bool(config["camera"]["default_device_front_facing"])
    return DeviceSelection(None, list(available_devices), mirror)


def refresh_selection(preferred_device_id, config):
    return make_device_selection(preferred_device_id, list_devices(config), config)


def selected_device_id(selection, config):
    if selection.preferred_device_id is not None:
        return selection.preferred_device_id
    return str(config["camera"]["default_device_index"])


# ---------------------------------------------------------------------------
# ACQUISITION
# ---------------------------------------------------------------------------


def open_device(selection, config):
    """Open the selected device with the configured resolution hint."""
    device_id = selected_device_id(selection, config)
    cap = cv2.VideoCapture(int(device_id), _backend())
    cap.set(cv2.CAP_PROP_FRAME_WIDTH, config["camera"]["capture_width"])
    cap.set(cv2.CAP_PROP_FRAME_HEIGHT, config["camera"]["capture_height"])

    if not cap.isOpened():
        cap.release()
        logging.error(f"Camera failed to open: device={device_id}")
        raise DeviceUnavailable(f"Cannot open camera {device_id}")

    logging.info(
        f"Camera opened: device={device_id} "
        f"resolution={cap.get(cv2.CAP_PROP_FRAME_WIDTH):.0f}x{cap.get(cv2.CAP_PROP_FRAME_HEIGHT):.0f} "
        f"mirror={selection.mirror_policy}"
    )
    return cap


def make_device_handle():
    return {"cap": None, "device_id": None, "selection": None}


def acquire(handle, selection, config, opener=open_device):
    """
    Make sure the handle holds an open stream for the selection.
    A different device than the one currently held is released first.
    """
    wanted = selected_device_id(selection, config)
    if handle["cap"] is not None and handle["device_id"] == wanted:
        handle["selection"] = selection
        return handle["cap"]
    if handle["cap"] is not None:
        logging.info(f"Device changed {handle['device_id']} -> {wanted}, releasing")
        release(handle)
    handle["cap"] = opener(selection, config)
    handle["device_id"] = wanted
    handle["selection"] = selection
    return handle["cap"]


def read_frame(handle):
    """Latest frame from the held stream, or None."""
    cap = handle["cap"]
    if cap is None:
        return None
    ret, frame = cap.read()
    if not ret:
        logging.warning("Camera read failed")
        return None
    return frame


def release(handle):
    """Release the held stream. Safe to call repeatedly."""
    cap = handle["cap"]
    if cap is None:
        return
    cap.release()
    logging.info(f"Camera released: device={handle['device_id']}")
    handle["cap"] = None
    handle["device_id"] = None
