from __future__ import annotations


class PulseError(Exception):
    """Base class for errors raised by the presence pipeline."""


class ConfigurationError(PulseError):
    """Settings or office mappings that cannot be used as given."""


class SourceError(PulseError):
    """An upstream source could not be read; aborts that source's sync run."""

    def __init__(self, source: str, message: str) -> None:
        super().__init__(f"{source}: {message}")
        self.source = source


class SyncInProgressError(PulseError):
    """A sync run for the same source is already running in this process."""
