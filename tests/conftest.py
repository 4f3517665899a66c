from __future__ import annotations

import datetime
import os

os.environ.setdefault("AWS_DEFAULT_REGION", "us-east-1")
os.environ.setdefault("POWERTOOLS_SERVICE_NAME", "deskbooking")
os.environ.setdefault("POWERTOOLS_TRACE_DISABLED", "true")
os.environ.setdefault("STORE_BACKEND", "memory")

import pytest  # noqa: E402

from deskbooking.availability import AvailabilityEngine  # noqa: E402
from deskbooking.dal import InMemoryBookingStore  # noqa: E402
from deskbooking.models import (  # noqa: E402
    BookingCreate,
    Resource,
    ResourceStatus,
    ResourceType,
    Role,
    TimeSlot,
    User,
)
from deskbooking.service import BookingService  # noqa: E402

MONDAY = datetime.date(2024, 6, 10)
TUESDAY = datetime.date(2024, 6, 11)
PREVIOUS_MONDAY = datetime.date(2024, 6, 3)


def make_resources() -> list[Resource]:
    return [
        Resource(id="desk-1", name="Desk 1", type=ResourceType.DESK, map_id="floor-1"),
        Resource(id="desk-2", name="Desk 2", type=ResourceType.DESK, map_id="floor-1"),
        Resource(
            id="desk-broken",
            name="Desk 3",
            type=ResourceType.DESK,
            map_id="floor-1",
            status=ResourceStatus.MAINTENANCE,
        ),
        Resource(id="room-1", name="Fjord", type=ResourceType.MEETING_ROOM, map_id="floor-1", capacity=8),
        Resource(id="room-2", name="Glacier", type=ResourceType.MEETING_ROOM, map_id="floor-2", capacity=4),
    ]


def make_users() -> list[User]:
    return [
        User(id="alice", name="Alice", team_id="team-a", is_team_leader=True),
        User(id="bob", name="Bob", team_id="team-a"),
        User(id="carol", name="Carol", team_id="team-b"),
        User(id="admin", name="Admin", role=Role.ADMIN),
    ]


def desk_request(resource_id: str, user_id: str, day: datetime.date = MONDAY, **kwargs: object) -> BookingCreate:
    return BookingCreate(resource_id=resource_id, user_id=user_id, date=day, **kwargs)  # type: ignore[arg-type]


def room_request(
    resource_id: str, user_id: str, start: str, end: str, day: datetime.date = MONDAY, **kwargs: object
) -> BookingCreate:
    return BookingCreate(
        resource_id=resource_id,
        user_id=user_id,
        date=day,
        time_slot=TimeSlot(start_time=start, end_time=end),
        **kwargs,  # type: ignore[arg-type]
    )


@pytest.fixture()
def store() -> InMemoryBookingStore:
    return InMemoryBookingStore(resources=make_resources(), users=make_users())


@pytest.fixture()
def engine(store: InMemoryBookingStore) -> AvailabilityEngine:
    return AvailabilityEngine(store)


@pytest.fixture()
def service(store: InMemoryBookingStore, engine: AvailabilityEngine) -> BookingService:
    return BookingService(store, engine)


@pytest.fixture()
def users(store: InMemoryBookingStore) -> dict[str, User]:
    return {u.id: u for u in store.list_users()}
