"""Exceptions raised by govsync."""


class GovSyncError(Exception):
    """Base class for govsync errors."""


class SourceError(GovSyncError):
    """An upstream source (GitHub, Snapshot, Hats) returned an error or bad payload."""


class StepFailed(GovSyncError):
    """A pipeline step exhausted its retries."""

    def __init__(self, step_name: str, message: str):
        super().__init__(f"{step_name}: {message}")
        self.step_name = step_name
        self.message = message
