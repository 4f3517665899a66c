from __future__ import annotations

import os
from typing import Literal

from pydantic import BaseModel, Field

from deskbooking.models import TIME_OF_DAY_PATTERN


class Settings(BaseModel):
    store_backend: Literal["memory", "dynamodb"] = "memory"
    bookings_table_name: str = "bookings"
    resources_table_name: str = "resources"
    users_table_name: str = "users"
    metrics_namespace: str = "DeskBookingAPI"
    # meeting-room timetable grid
    room_day_start: str = Field(default="09:00", pattern=TIME_OF_DAY_PATTERN)
    room_day_end: str = Field(default="18:00", pattern=TIME_OF_DAY_PATTERN)
    room_slot_minutes: int = Field(default=30, gt=0)

    @classmethod
    def from_env(cls) -> Settings:
        values = {
            "store_backend": os.environ.get("STORE_BACKEND"),
            "bookings_table_name": os.environ.get("BOOKINGS_TABLE_NAME"),
            "resources_table_name": os.environ.get("RESOURCES_TABLE_NAME"),
            "users_table_name": os.environ.get("USERS_TABLE_NAME"),
            "metrics_namespace": os.environ.get("METRICS_NAMESPACE"),
            "room_day_start": os.environ.get("ROOM_DAY_START"),
            "room_day_end": os.environ.get("ROOM_DAY_END"),
            "room_slot_minutes": os.environ.get("ROOM_SLOT_MINUTES"),
        }
        return cls.model_validate({k: v for k, v in values.items() if v is not None})
