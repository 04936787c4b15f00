from __future__ import annotations

from pulse.core.config import Settings
from pulse.core.errors import ConfigurationError
from pulse.models.access_event import SOURCE_EZRADIUS, SOURCE_UNIFI
from pulse.sources.base import RawAccessEvent, SourceAdapter
from pulse.sources.ezradius import EzradiusSource
from pulse.sources.unifi_access import UnifiAccessSource


def build_adapter(source: str, settings: Settings, **kwargs) -> SourceAdapter:
    if source == SOURCE_UNIFI:
        if not settings.unifi_controllers:
            raise ConfigurationError("No UniFi Access controllers configured")
        return UnifiAccessSource.from_settings(settings, **kwargs)
    if source == SOURCE_EZRADIUS:
        if not settings.ezradius_configured:
            raise ConfigurationError("EZRADIUS_API_URL and EZRADIUS_API_KEY are required")
        return EzradiusSource.from_settings(settings, **kwargs)
    raise ConfigurationError(f"Unknown source: {source}")


__all__ = [
    "RawAccessEvent",
    "SourceAdapter",
    "UnifiAccessSource",
    "EzradiusSource",
    "build_adapter",
]
