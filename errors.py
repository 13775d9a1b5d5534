"""Error taxonomy for the capture pipeline."""


class KioskError(Exception):
    pass


class DeviceUnavailable(KioskError):
    """No capture device could be opened (missing, busy or permission denied)."""


class RemixUnavailable(KioskError):
    """The remix service failed; callers fall back to the original capture."""


class UploadFailed(KioskError):
    pass


class ConfigSyncFailed(KioskError):
    pass


class DeleteFailed(KioskError):
    pass


class RasterDecodeError(KioskError):
    pass


class SessionStateError(KioskError):
    """A session field was mutated in a way the lifecycle forbids."""
