"""Booking command handler: the only place that creates or cancels bookings.

Availability is re-checked and the booking written while holding a lock
scoped to the resource, so two racing requests for the same desk or
overlapping room slots cannot both pass the check. Desk requests also
hold a lock scoped to (target user, date) so the one-desk-per-day rule
holds across different desks.

The locks only serialize writers within one process. Across processes the
store's write stamp catches a booking that landed after the check; the
check then runs again against the new state.
"""

from __future__ import annotations

import threading
import uuid
from collections.abc import Iterator
from contextlib import contextmanager

from aws_lambda_powertools import Logger, Tracer

from deskbooking.availability import AvailabilityEngine
from deskbooking.dal import BookingStore, StaleWriteError, WriteStamp
from deskbooking.errors import (
    BookingRejected,
    DeskLimitExceededError,
    DeskOccupiedError,
    InvalidTimeSlotError,
    ResourceNotFoundError,
    ResourceUnavailableError,
    SlotOverlapError,
    WriteConflictError,
)
from deskbooking.models import Booking, BookingCreate, DeskBooking, MeetingRoomBooking, Resource, User
from deskbooking.timeutils import date_key

logger = Logger()
tracer = Tracer()

MAX_WRITE_ATTEMPTS = 3


class _KeyedLocks:
    """One lock per key, dropped once nobody holds or waits for it."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}
        self._waiters: dict[str, int] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            with lock:
                yield
        finally:
            with self._guard:
                self._waiters[key] -= 1
                if not self._waiters[key]:
                    del self._waiters[key]
                    del self._locks[key]


class BookingService:
    def __init__(self, store: BookingStore, engine: AvailabilityEngine | None = None) -> None:
        self._store = store
        self.engine = engine or AvailabilityEngine(store)
        self._resource_locks = _KeyedLocks()
        self._user_day_locks = _KeyedLocks()

    @tracer.capture_method
    def add_booking(self, request: BookingCreate, requester: User) -> Booking:
        """Validate and persist a booking on behalf of ``request.user_id``.

        ``requester`` is the acting user; an admin requester skips the
        one-desk-per-day rule and may book for anyone.

        Raises:
            ResourceNotFoundError: The resource does not exist.
            ResourceUnavailableError: The resource is under maintenance.
            DeskLimitExceededError: The user already holds a desk that day, or the desk is taken.
            SlotOverlapError: The meeting-room slot overlaps an existing booking.
            InvalidTimeSlotError: Time slot missing, forbidden, or not start < end.
            WriteConflictError: Other writers kept changing the resource during the check.
        """
        try:
            resource = self._store.get_resource(request.resource_id)
            if resource is None:
                raise ResourceNotFoundError(request.resource_id)
            if resource.under_maintenance:
                raise ResourceUnavailableError(resource.id)
            if resource.is_meeting_room:
                booking = self._add_meeting_room_booking(resource, request)
            else:
                booking = self._add_desk_booking(resource, request, requester)
        except BookingRejected as exc:
            logger.info(
                "Booking rejected",
                extra={
                    "code": exc.code.value,
                    "resource_id": request.resource_id,
                    "user_id": request.user_id,
                    "requester_id": requester.id,
                    "date": date_key(request.date),
                },
            )
            raise

        logger.info(
            "Booking created",
            extra={"booking_id": booking.id, "resource_id": booking.resource_id, "user_id": booking.user_id},
        )
        return booking

    def _add_desk_booking(self, resource: Resource, request: BookingCreate, requester: User) -> DeskBooking:
        if request.time_slot is not None:
            raise InvalidTimeSlotError("Desk bookings cover the whole day and take no time slot")

        user_day = f"{request.user_id}#{date_key(request.date)}"
        with self._user_day_locks.hold(user_day), self._resource_locks.hold(resource.id):
            for _ in range(MAX_WRITE_ATTEMPTS):
                stamp = self._store.read_stamp(resource.id, request.user_id)
                self._ensure_bookable(resource.id)
                if not requester.is_admin and not self.engine.can_user_book_desk(request.user_id, request.date):
                    raise DeskLimitExceededError(request.user_id)
                if self.engine.find_conflicts(resource.id, request.date, request.recurring_days):
                    raise DeskOccupiedError(request.user_id, resource.id)

                booking = DeskBooking(
                    id=_new_booking_id(),
                    resource_id=resource.id,
                    user_id=request.user_id,
                    date=request.date,
                    is_recurring=request.is_recurring,
                    recurring_days=request.recurring_days,
                )
                if self._write(booking, stamp):
                    return booking
            raise WriteConflictError(resource.id)

    def _add_meeting_room_booking(self, resource: Resource, request: BookingCreate) -> MeetingRoomBooking:
        slot = request.time_slot
        if slot is None:
            raise InvalidTimeSlotError("Meeting room bookings require a time slot")
        if not slot.is_ordered:
            raise InvalidTimeSlotError("Start time must be before end time")

        with self._resource_locks.hold(resource.id):
            for _ in range(MAX_WRITE_ATTEMPTS):
                stamp = self._store.read_stamp(resource.id)
                self._ensure_bookable(resource.id)
                if self.engine.find_conflicts(resource.id, request.date, request.recurring_days, slot):
                    raise SlotOverlapError(resource.id)

                booking = MeetingRoomBooking(
                    id=_new_booking_id(),
                    resource_id=resource.id,
                    user_id=request.user_id,
                    date=request.date,
                    is_recurring=request.is_recurring,
                    recurring_days=request.recurring_days,
                    time_slot=slot,
                )
                if self._write(booking, stamp):
                    return booking
            raise WriteConflictError(resource.id)

    def _write(self, booking: Booking, stamp: WriteStamp) -> bool:
        try:
            self._store.add_booking(booking, expected=stamp)
        except StaleWriteError:
            logger.info(
                "Bookings changed during the availability check, checking again",
                extra={"resource_id": booking.resource_id, "user_id": booking.user_id},
            )
            return False
        return True

    def _ensure_bookable(self, resource_id: str) -> None:
        # re-read under the lock: status may have changed since the request started
        resource = self._store.get_resource(resource_id)
        if resource is None:
            raise ResourceNotFoundError(resource_id)
        if resource.under_maintenance:
            raise ResourceUnavailableError(resource_id)

    @tracer.capture_method
    def cancel_booking(self, booking_id: str) -> Booking | None:
        """Remove a booking by id. Unknown ids are ignored.

        Ownership is not checked here; callers authorize the cancellation.
        """
        booking = self._store.get_booking(booking_id)
        if booking is None:
            logger.debug("Cancel for unknown booking ignored", extra={"booking_id": booking_id})
            return None
        with self._resource_locks.hold(booking.resource_id):
            removed = self._store.remove_booking(booking_id)
        if removed is not None:
            logger.info("Booking cancelled", extra={"booking_id": booking_id, "resource_id": removed.resource_id})
        return removed

    def get_resource(self, resource_id: str) -> Resource | None:
        return self._store.get_resource(resource_id)

    def get_user(self, user_id: str) -> User | None:
        return self._store.get_user(user_id)

    def get_booking(self, booking_id: str) -> Booking | None:
        return self._store.get_booking(booking_id)


def _new_booking_id() -> str:
    return str(uuid.uuid4())
