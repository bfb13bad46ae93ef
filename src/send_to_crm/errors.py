"""Capture error taxonomy, importable without GTK."""


class CaptureError(Exception):
    """Raised when capture fails."""
    pass


class CaptureSourceUnavailable(CaptureError):
    """No enumerable screen source matches the target display."""
    pass


class PermissionDenied(CaptureError):
    """The OS screen-recording grant is missing."""
    pass
