from __future__ import annotations

import datetime
from enum import Enum
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator

from deskbooking.timeutils import time_to_minutes, weekday_name

Weekday = Literal["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]

# zero-padded 24-hour clock, 00:00 through 23:59
TIME_OF_DAY_PATTERN = r"^([01]\d|2[0-3]):[0-5]\d$"


class ResourceType(str, Enum):
    DESK = "desk"
    MEETING_ROOM = "meeting_room"


class ResourceStatus(str, Enum):
    AVAILABLE = "available"
    MAINTENANCE = "maintenance"


class DeskStatus(str, Enum):
    """Displayed status of a resource on a given day."""

    AVAILABLE = "available"
    BOOKED = "booked"
    MAINTENANCE = "maintenance"


class Role(str, Enum):
    ADMIN = "admin"
    USER = "user"


class Resource(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    name: str = ""
    type: ResourceType
    map_id: str = Field(..., min_length=1)
    status: ResourceStatus = ResourceStatus.AVAILABLE
    # advisory only, meaningful for meeting rooms
    capacity: int | None = Field(default=None, ge=1)

    @property
    def is_meeting_room(self) -> bool:
        return self.type is ResourceType.MEETING_ROOM

    @property
    def under_maintenance(self) -> bool:
        return self.status is ResourceStatus.MAINTENANCE


class Team(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    name: str


class User(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    name: str = ""
    email: str = ""
    role: Role = Role.USER
    team_id: str | None = None
    is_team_leader: bool = False

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN


class TimeSlot(BaseModel):
    """Half-open [start_time, end_time) interval within a single day."""

    model_config = ConfigDict(frozen=True)

    start_time: str = Field(..., pattern=TIME_OF_DAY_PATTERN)
    end_time: str = Field(..., pattern=TIME_OF_DAY_PATTERN)

    @property
    def start_minutes(self) -> int:
        return time_to_minutes(self.start_time)

    @property
    def end_minutes(self) -> int:
        return time_to_minutes(self.end_time)

    @property
    def is_ordered(self) -> bool:
        return self.start_minutes < self.end_minutes

    def overlaps(self, other: TimeSlot) -> bool:
        # touching endpoints (09:00-10:00 and 10:00-11:00) do not overlap
        return self.start_minutes < other.end_minutes and self.end_minutes > other.start_minutes


def _check_recurrence(is_recurring: bool, recurring_days: frozenset[str]) -> None:
    if is_recurring and not recurring_days:
        raise ValueError("recurring_days is required for a recurring booking")
    if not is_recurring and recurring_days:
        raise ValueError("recurring_days is only allowed on a recurring booking")


class _BookingBase(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str
    resource_id: str
    user_id: str
    date: datetime.date
    is_recurring: bool = False
    recurring_days: frozenset[Weekday] = frozenset()

    @model_validator(mode="after")
    def _recurrence_is_consistent(self) -> _BookingBase:
        _check_recurrence(self.is_recurring, self.recurring_days)
        return self

    def occurs_on(self, day: datetime.date) -> bool:
        """True on the booking's own date and, when recurring, on every matching weekday."""
        if self.date == day:
            return True
        return self.is_recurring and weekday_name(day) in self.recurring_days

    def shares_a_day_with(self, day: datetime.date, recurring_days: frozenset[str] = frozenset()) -> bool:
        """Whether this booking and one dated ``day`` that recurs on ``recurring_days`` ever apply together."""
        if self.occurs_on(day) or weekday_name(self.date) in recurring_days:
            return True
        return self.is_recurring and not self.recurring_days.isdisjoint(recurring_days)


class DeskBooking(_BookingBase):
    """Whole-day booking of a desk. Carries no time slot."""

    kind: Literal["desk"] = "desk"


class MeetingRoomBooking(_BookingBase):
    kind: Literal["meeting_room"] = "meeting_room"
    time_slot: TimeSlot


Booking = Annotated[DeskBooking | MeetingRoomBooking, Field(discriminator="kind")]
booking_adapter: TypeAdapter[DeskBooking | MeetingRoomBooking] = TypeAdapter(Booking)


class BookingCreate(BaseModel):
    resource_id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    date: datetime.date
    is_recurring: bool = False
    recurring_days: frozenset[Weekday] = frozenset()
    # required for meeting rooms, forbidden for desks; checked against the resource type
    time_slot: TimeSlot | None = None

    @model_validator(mode="after")
    def _recurrence_is_consistent(self) -> BookingCreate:
        _check_recurrence(self.is_recurring, self.recurring_days)
        return self


class TimetableSlot(BaseModel):
    start_time: str
    end_time: str
    is_booked: bool
    booking_id: str | None = None
    user_id: str | None = None
