from __future__ import annotations

import json
import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

from pulse.core.errors import ConfigurationError


@dataclass(frozen=True)
class UnifiController:
    name: str
    url: str
    token: str
    location_key: str


@dataclass(frozen=True)
class Settings:
    app_name: str
    environment: str
    log_level: str
    cors_allow_origins: list[str]
    database_url: str
    auto_create_schema: bool
    admin_secret_key: str | None

    # Upstream sources
    unifi_controllers: list[UnifiController]
    ezradius_api_url: str | None
    ezradius_api_key: str | None
    http_timeout_seconds: float
    sync_page_size: int
    sync_max_pages: int
    sync_overlap_minutes: int
    sync_initial_lookback_minutes: int
    office_location_map: dict[str, dict[str, str]]

    # Scheduling
    enable_scheduler: bool
    sync_interval_seconds: int
    aggregation_hour_utc: int
    aggregation_lookback_days: int
    aggregate_after_sync: bool

    # Directory (Microsoft Graph)
    azure_tenant_id: str | None
    azure_client_id: str | None
    azure_client_secret: str | None
    directory_group_id: str | None
    directory_sync_interval_seconds: int

    offices_seed_path: str | None = field(default=None)

    @property
    def ezradius_configured(self) -> bool:
        return bool(self.ezradius_api_url and self.ezradius_api_key)

    @property
    def directory_configured(self) -> bool:
        return bool(
            self.azure_tenant_id
            and self.azure_client_id
            and self.azure_client_secret
            and self.directory_group_id
        )

    def enabled_sources(self) -> list[str]:
        out: list[str] = []
        if self.unifi_controllers:
            out.append("unifi_access")
        if self.ezradius_configured:
            out.append("ezradius")
        return out


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def _load_unifi_controllers() -> list[UnifiController]:
    raw = os.getenv("UNIFI_CONTROLLERS_JSON", "").strip()
    controllers: list[UnifiController] = []
    if raw:
        try:
            items = json.loads(raw)
        except ValueError as exc:
            raise ConfigurationError(f"UNIFI_CONTROLLERS_JSON is not valid JSON: {exc}") from exc
        if not isinstance(items, list):
            raise ConfigurationError("UNIFI_CONTROLLERS_JSON must be a list of controllers")
        for it in items:
            name = str(it.get("name") or "").strip()
            url = str(it.get("url") or "").strip()
            token = str(it.get("token") or "").strip()
            if not name or not url or not token:
                raise ConfigurationError("Each UniFi controller needs name, url and token")
            controllers.append(
                UnifiController(
                    name=name,
                    url=url.rstrip("/"),
                    token=token,
                    location_key=str(it.get("location_key") or name).strip(),
                )
            )
        names = [c.name for c in controllers]
        if len(set(names)) != len(names):
            raise ConfigurationError("UniFi controller names must be unique")
        return controllers

    # Single-controller setup
    url = os.getenv("UNIFI_ACCESS_URL")
    token = os.getenv("UNIFI_ACCESS_TOKEN")
    if url and token:
        controllers.append(
            UnifiController(
                name="primary",
                url=url.rstrip("/"),
                token=token,
                location_key=os.getenv("UNIFI_ACCESS_LOCATION_KEY", "primary"),
            )
        )
    return controllers


def _load_office_location_map() -> dict[str, dict[str, str]]:
    # {"unifi_access": {"minneapolis": "<office id or name>"}, "ezradius": {...}}
    raw = os.getenv("OFFICE_LOCATION_MAP_JSON", "{}")
    try:
        data = json.loads(raw)
    except ValueError as exc:
        raise ConfigurationError(f"OFFICE_LOCATION_MAP_JSON is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError("OFFICE_LOCATION_MAP_JSON must be an object")
    out: dict[str, dict[str, str]] = {}
    for source, mapping in data.items():
        if not isinstance(mapping, dict):
            raise ConfigurationError(f"Office mapping for {source!r} must be an object")
        out[str(source)] = {str(k): str(v) for k, v in mapping.items()}
    return out


def _load_settings() -> Settings:
    load_dotenv()

    cors = os.getenv("CORS_ALLOW_ORIGINS")
    cors_allow_origins = [
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    ]
    if cors:
        try:
            cors_allow_origins = list(json.loads(cors))
        except ValueError:
            cors_allow_origins = [x.strip() for x in cors.split(",") if x.strip()]

    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        raise RuntimeError("DATABASE_URL env var is required")

    aggregation_hour_utc = int(os.getenv("AGGREGATION_HOUR_UTC", "2"))
    if not 0 <= aggregation_hour_utc <= 23:
        raise ConfigurationError("AGGREGATION_HOUR_UTC must be between 0 and 23")

    return Settings(
        app_name=os.getenv("APP_NAME", "Pulse Presence API"),
        environment=os.getenv("ENVIRONMENT", "dev"),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        cors_allow_origins=cors_allow_origins,
        database_url=database_url,
        auto_create_schema=_flag("AUTO_CREATE_SCHEMA", "0"),
        admin_secret_key=os.getenv("ADMIN_SECRET_KEY") or None,
        unifi_controllers=_load_unifi_controllers(),
        ezradius_api_url=(os.getenv("EZRADIUS_API_URL") or "").rstrip("/") or None,
        ezradius_api_key=os.getenv("EZRADIUS_API_KEY") or None,
        http_timeout_seconds=float(os.getenv("HTTP_TIMEOUT_SECONDS", "15")),
        sync_page_size=max(1, int(os.getenv("SYNC_PAGE_SIZE", "100"))),
        sync_max_pages=max(1, int(os.getenv("SYNC_MAX_PAGES", "50"))),
        sync_overlap_minutes=max(0, int(os.getenv("SYNC_OVERLAP_MINUTES", "10"))),
        sync_initial_lookback_minutes=max(1, int(os.getenv("SYNC_INITIAL_LOOKBACK_MINUTES", "60"))),
        office_location_map=_load_office_location_map(),
        enable_scheduler=_flag("ENABLE_SCHEDULER", "1"),
        sync_interval_seconds=max(30, int(os.getenv("SYNC_INTERVAL_SECONDS", "300"))),
        aggregation_hour_utc=aggregation_hour_utc,
        aggregation_lookback_days=max(1, int(os.getenv("AGGREGATION_LOOKBACK_DAYS", "2"))),
        aggregate_after_sync=_flag("AGGREGATE_AFTER_SYNC", "1"),
        azure_tenant_id=os.getenv("AZURE_TENANT_ID") or None,
        azure_client_id=os.getenv("AZURE_CLIENT_ID") or None,
        azure_client_secret=os.getenv("AZURE_CLIENT_SECRET") or None,
        directory_group_id=os.getenv("DIRECTORY_GROUP_ID") or None,
        directory_sync_interval_seconds=max(300, int(os.getenv("DIRECTORY_SYNC_INTERVAL_SECONDS", str(6 * 3600)))),
        offices_seed_path=os.getenv("OFFICES_SEED_PATH") or None,
    )


settings = _load_settings()
