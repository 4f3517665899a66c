from __future__ import annotations

import datetime
from typing import Annotated

from aws_lambda_powertools import Logger
from aws_lambda_powertools.metrics import Metrics, MetricUnit
from fastapi import Depends, FastAPI, Header, HTTPException, Query
from starlette.responses import Response

from deskbooking.availability import AvailabilityEngine
from deskbooking.config import Settings
from deskbooking.dal import build_store
from deskbooking.errors import BookingNotFoundError, DomainError, ErrorCode, ResourceNotFoundError
from deskbooking.models import (
    TIME_OF_DAY_PATTERN,
    Booking,
    BookingCreate,
    DeskStatus,
    Resource,
    TimeSlot,
    TimetableSlot,
    User,
)
from deskbooking.service import BookingService

logger = Logger()
settings = Settings.from_env()
metrics = Metrics(namespace=settings.metrics_namespace)

app = FastAPI(title="Desk Booking API", version="0.1.0")

_STATUS_CODES = {
    ErrorCode.RESOURCE_NOT_FOUND: 404,
    ErrorCode.BOOKING_NOT_FOUND: 404,
    ErrorCode.RESOURCE_UNAVAILABLE: 409,
    ErrorCode.DESK_LIMIT_EXCEEDED: 409,
    ErrorCode.SLOT_OVERLAP: 409,
    ErrorCode.INVALID_TIME_SLOT: 422,
    ErrorCode.WRITE_CONFLICT: 409,
}

_service: BookingService | None = None


def get_service() -> BookingService:
    global _service
    if _service is None:
        store = build_store(settings)
        engine = AvailabilityEngine(
            store,
            day_start=settings.room_day_start,
            day_end=settings.room_day_end,
            slot_minutes=settings.room_slot_minutes,
        )
        _service = BookingService(store, engine)
    return _service


ServiceDep = Annotated[BookingService, Depends(get_service)]
DateQuery = Annotated[datetime.date, Query(description="Calendar day, YYYY-MM-DD")]


def get_requester(service: ServiceDep, x_user_id: Annotated[str | None, Header()] = None) -> User:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    user = service.get_user(x_user_id)
    if user is None:
        logger.warning("Unknown requester", extra={"user_id": x_user_id})
        raise HTTPException(status_code=401, detail="Unknown user")
    return user


RequesterDep = Annotated[User, Depends(get_requester)]


def _http_error(exc: DomainError) -> HTTPException:
    return HTTPException(
        status_code=_STATUS_CODES.get(exc.code, 400),
        detail={"code": exc.code.value, "message": exc.message},
    )


def _require_resource(service: BookingService, resource_id: str) -> Resource:
    resource = service.get_resource(resource_id)
    if resource is None:
        raise _http_error(ResourceNotFoundError(resource_id))
    return resource


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/bookings", response_model=Booking, status_code=201)
def create_booking(payload: BookingCreate, service: ServiceDep, requester: RequesterDep) -> Booking:
    if payload.user_id != requester.id and not requester.is_admin:
        raise HTTPException(status_code=403, detail="Only an admin can book on behalf of another user")
    try:
        booking = service.add_booking(payload, requester)
    except DomainError as exc:
        metrics.add_metric(name="BookingRejected", value=1, unit=MetricUnit.Count)
        raise _http_error(exc) from exc
    metrics.add_metric(name="BookingCreated", value=1, unit=MetricUnit.Count)
    return booking


@app.get("/bookings/{booking_id}", response_model=Booking)
def get_booking(booking_id: str, service: ServiceDep) -> Booking:
    booking = service.get_booking(booking_id)
    if booking is None:
        raise _http_error(BookingNotFoundError(booking_id))
    return booking


@app.delete("/bookings/{booking_id}")
def cancel_booking(booking_id: str, service: ServiceDep, requester: RequesterDep) -> Response:
    booking = service.get_booking(booking_id)
    if booking is None:
        raise _http_error(BookingNotFoundError(booking_id))
    if booking.user_id != requester.id and not requester.is_admin:
        raise HTTPException(status_code=403, detail="Only the owner or an admin can cancel a booking")
    if service.cancel_booking(booking_id) is not None:
        metrics.add_metric(name="BookingCancelled", value=1, unit=MetricUnit.Count)
    return Response(status_code=204)


@app.get("/resources/{resource_id}/status")
def resource_status(resource_id: str, date: DateQuery, service: ServiceDep) -> dict[str, str]:
    _require_resource(service, resource_id)
    status = service.engine.get_desk_status(resource_id, date)
    return {"resource_id": resource_id, "date": date.isoformat(), "status": status.value}


@app.get("/resources/{resource_id}/availability")
def resource_availability(
    resource_id: str,
    date: DateQuery,
    service: ServiceDep,
    start_time: Annotated[str | None, Query(pattern=TIME_OF_DAY_PATTERN)] = None,
    end_time: Annotated[str | None, Query(pattern=TIME_OF_DAY_PATTERN)] = None,
) -> dict[str, bool]:
    _require_resource(service, resource_id)
    if (start_time is None) != (end_time is None):
        raise HTTPException(status_code=422, detail="start_time and end_time must be given together")
    slot = TimeSlot(start_time=start_time, end_time=end_time) if start_time and end_time else None
    if slot is not None and not slot.is_ordered:
        raise HTTPException(status_code=422, detail="start_time must be before end_time")
    return {"available": service.engine.is_desk_available(resource_id, date, slot)}


@app.get("/resources/{resource_id}/timetable", response_model=list[TimetableSlot])
def room_timetable(resource_id: str, date: DateQuery, service: ServiceDep) -> list[TimetableSlot]:
    resource = _require_resource(service, resource_id)
    if not resource.is_meeting_room:
        raise HTTPException(status_code=422, detail="Timetables exist only for meeting rooms")
    return service.engine.room_timetable(resource_id, date)


@app.get("/maps/{map_id}/statuses")
def map_statuses(map_id: str, date: DateQuery, service: ServiceDep) -> dict[str, DeskStatus]:
    return service.engine.get_map_statuses(map_id, date)


@app.get("/users/{user_id}/bookings", response_model=list[Booking])
def user_bookings(user_id: str, date: DateQuery, service: ServiceDep) -> list[Booking]:
    return service.engine.get_user_bookings_for_date(user_id, date)


@app.get("/teams/{team_id}/bookings", response_model=list[Booking])
def team_bookings(team_id: str, date: DateQuery, service: ServiceDep) -> list[Booking]:
    return service.engine.get_team_bookings(team_id, date)
