from __future__ import annotations

from datetime import date, datetime, time
from typing import Optional, List, Dict, Any, Literal

from pydantic import BaseModel, Field


SyncDirection = Literal["bidirectional", "outbound_only", "inbound_only"]
SyncHealth = Literal["healthy", "degraded", "needs_attention"]


class EventTime(BaseModel):
    date_time: Optional[datetime] = None
    day: Optional[date] = None
    time_zone: Optional[str] = None

    @property
    def is_all_day(self) -> bool:
        return self.date_time is None and self.day is not None


class ExternalEvent(BaseModel):
    """A provider event as fetched; never persisted as-is."""

    id: str
    title: str = ""
    description: Optional[str] = None
    status: str = "confirmed"
    start: Optional[EventTime] = None
    end: Optional[EventTime] = None
    updated: Optional[datetime] = None
    private_properties: Dict[str, str] = Field(default_factory=dict)

    @property
    def is_cancelled(self) -> bool:
        return self.status == "cancelled"

    @classmethod
    def from_google(cls, raw: dict) -> "ExternalEvent":
        def _time(value: dict | None) -> EventTime | None:
            if not value:
                return None
            return EventTime(
                date_time=value.get("dateTime"),
                day=value.get("date"),
                time_zone=value.get("timeZone"),
            )

        extended = raw.get("extendedProperties") or {}
        return cls(
            id=str(raw.get("id") or ""),
            title=str(raw.get("summary") or ""),
            description=raw.get("description"),
            status=str(raw.get("status") or "confirmed"),
            start=_time(raw.get("start")),
            end=_time(raw.get("end")),
            updated=raw.get("updated"),
            private_properties={str(k): str(v) for k, v in (extended.get("private") or {}).items()},
        )


class TaskCreate(BaseModel):
    title: str
    description: Optional[str] = None
    scheduled_date: Optional[date] = None
    scheduled_start: Optional[time] = None
    scheduled_end: Optional[time] = None
    is_all_day: bool = False
    is_private: bool = False


class TaskPatch(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    scheduled_date: Optional[date] = None
    scheduled_start: Optional[time] = None
    scheduled_end: Optional[time] = None
    is_all_day: Optional[bool] = None
    is_private: Optional[bool] = None
    status: Optional[str] = None


class RoutineCreate(BaseModel):
    title: str
    description: Optional[str] = None
    frequency: str = "daily"
    days_of_week: Optional[List[int]] = None
    scheduled_time: Optional[time] = None
    duration_minutes: Optional[int] = None
    is_private: bool = False


class RoutinePatch(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    frequency: Optional[str] = None
    days_of_week: Optional[List[int]] = None
    scheduled_time: Optional[time] = None
    duration_minutes: Optional[int] = None
    is_active: Optional[bool] = None
    is_private: Optional[bool] = None


class SaveTokensRequest(BaseModel):
    access_token: str = Field(..., alias="accessToken")
    refresh_token: str = Field(..., alias="refreshToken")
    expires_in: int = Field(3600, alias="expiresIn")
    google_email: Optional[str] = Field(None, alias="googleEmail")

    model_config = {"populate_by_name": True}


class CalendarConfigPatch(BaseModel):
    is_enabled: Optional[bool] = None
    sync_direction: Optional[SyncDirection] = None
    calendar_id: Optional[str] = None
    timezone: Optional[str] = None
    version: Optional[int] = None


class CalendarConfigResponse(BaseModel):
    is_connected: bool
    is_enabled: bool = False
    sync_direction: SyncDirection = "bidirectional"
    calendar_id: str = "primary"
    timezone: Optional[str] = None
    google_email: Optional[str] = None
    sync_health: SyncHealth = "healthy"
    last_error: Optional[str] = None
    last_sync_at: Optional[str] = None
    version: Optional[int] = None


class SyncResult(BaseModel):
    fetched: int = 0
    created: int = 0
    updated: int = 0
    deleted: int = 0
    skipped: int = 0
    routine_updates: int = 0
    conflicts: int = 0
    cancelled: bool = False
    errors: List[str] = Field(default_factory=list)
    last_sync_at: Optional[str] = None


class SyncStatusResponse(BaseModel):
    connected: bool
    sync_health: SyncHealth = "healthy"
    last_error: Optional[str] = None
    last_inbound_sync_at: Optional[str] = None
    last_outbound_sync_at: Optional[str] = None
    pending: int = 0
    failed: int = 0
    warnings: List[Dict[str, Any]] = Field(default_factory=list)
