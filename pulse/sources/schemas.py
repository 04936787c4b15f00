from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class UnifiAccessLogEntry(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str = Field(alias="_id")
    door_id: str | None = None
    door_name: str | None = None
    actor_id: str | None = None
    actor_type: str | None = None
    full_name: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    user_email: str | None = None
    event_type: str
    event_time: int
    result: str | None = None

    @property
    def display_name(self) -> str:
        if self.full_name:
            return self.full_name.strip()
        return f"{self.first_name or ''} {self.last_name or ''}".strip()


class UnifiUser(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    full_name: str | None = None
    user_email: str | None = None


class UnifiResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    code: str
    msg: str | None = None
    data: list[dict] = Field(default_factory=list)


class EzradiusAuthEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    username: str
    mac_address: str | None = None
    nas_ip: str | None = None
    event_type: str
    timestamp: str
    location_id: str | None = None


class EzradiusPagination(BaseModel):
    total: int = 0
    page: int = 1
    per_page: int = 0


class EzradiusResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    success: bool
    data: list[EzradiusAuthEvent] = Field(default_factory=list)
    pagination: EzradiusPagination | None = None
