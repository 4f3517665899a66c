"""Availability engine: pure reads over the current resources and bookings.

Desks are booked for the whole day; meeting rooms by half-open time slots.
A booking applies to a day when its date matches exactly or, for a
recurring booking, when the day's weekday is one of its recurring days.
"""

from __future__ import annotations

import datetime

from deskbooking.dal import BookingStore
from deskbooking.models import (
    Booking,
    DeskStatus,
    MeetingRoomBooking,
    ResourceType,
    TimeSlot,
    TimetableSlot,
)
from deskbooking.timeutils import minutes_to_time, time_to_minutes


class AvailabilityEngine:
    def __init__(
        self,
        store: BookingStore,
        *,
        day_start: str = "09:00",
        day_end: str = "18:00",
        slot_minutes: int = 30,
    ) -> None:
        self._store = store
        self._day_start = time_to_minutes(day_start)
        self._day_end = time_to_minutes(day_end)
        self._slot_minutes = slot_minutes

    def _bookings_on(self, resource_id: str, day: datetime.date) -> list[Booking]:
        return [b for b in self._store.list_bookings(resource_id=resource_id) if b.occurs_on(day)]

    def is_desk_available(self, resource_id: str, day: datetime.date, time_slot: TimeSlot | None = None) -> bool:
        """Whether the resource can take a booking on ``day``.

        A meeting room with a time slot is checked for overlap; anything else
        is checked for the whole day, ignoring time slots.
        """
        resource = self._store.get_resource(resource_id)
        if resource is None or resource.under_maintenance:
            return False
        if resource.is_meeting_room and time_slot is not None:
            return self.is_meeting_room_available_at_time(resource_id, day, time_slot)
        return not self._bookings_on(resource_id, day)

    def is_meeting_room_available_at_time(self, resource_id: str, day: datetime.date, time_slot: TimeSlot) -> bool:
        resource = self._store.get_resource(resource_id)
        if resource is None or resource.under_maintenance or not resource.is_meeting_room:
            return False
        return not any(
            time_slot.overlaps(b.time_slot)
            for b in self._bookings_on(resource_id, day)
            if isinstance(b, MeetingRoomBooking)
        )

    def find_conflicts(
        self,
        resource_id: str,
        day: datetime.date,
        recurring_days: frozenset[str] = frozenset(),
        time_slot: TimeSlot | None = None,
    ) -> list[Booking]:
        """Existing bookings a new booking of ``resource_id`` would collide with.

        A booking collides when the two ever apply on the same day, counting
        the new booking's recurring weekdays as well as its date. With a time
        slot, only meeting-room bookings whose slot overlaps it count.
        """
        conflicts = [
            b for b in self._store.list_bookings(resource_id=resource_id) if b.shares_a_day_with(day, recurring_days)
        ]
        if time_slot is None:
            return conflicts
        return [b for b in conflicts if isinstance(b, MeetingRoomBooking) and time_slot.overlaps(b.time_slot)]

    def get_desk_status(self, resource_id: str, day: datetime.date) -> DeskStatus:
        resource = self._store.get_resource(resource_id)
        if resource is None or resource.under_maintenance:
            return DeskStatus.MAINTENANCE
        if resource.is_meeting_room:
            # informational only: a "booked" room may still have free slots
            booked = any(b.date == day for b in self._store.list_bookings(resource_id=resource_id))
            return DeskStatus.BOOKED if booked else DeskStatus.AVAILABLE
        return DeskStatus.AVAILABLE if self.is_desk_available(resource_id, day) else DeskStatus.BOOKED

    def get_user_bookings_for_date(self, user_id: str, day: datetime.date) -> list[Booking]:
        return [b for b in self._store.list_bookings(user_id=user_id) if b.date == day]

    def can_user_book_desk(self, user_id: str, day: datetime.date) -> bool:
        """One desk per user per day; admins are exempt.

        Only bookings dated exactly ``day`` count. Recurring desk bookings
        made on another date do not use up the user's desk for ``day``.
        """
        user = self._store.get_user(user_id)
        if user is None:
            return False
        if user.is_admin:
            return True
        for booking in self.get_user_bookings_for_date(user_id, day):
            resource = self._store.get_resource(booking.resource_id)
            if resource is not None and resource.type is ResourceType.DESK:
                return False
        return True

    def get_booking_by_resource_and_date(self, resource_id: str, day: datetime.date) -> Booking | None:
        return next((b for b in self._store.list_bookings(resource_id=resource_id) if b.date == day), None)

    def get_team_bookings(self, team_id: str, day: datetime.date) -> list[Booking]:
        member_ids = {u.id for u in self._store.list_users(team_id=team_id)}
        return [b for b in self._store.list_bookings() if b.user_id in member_ids and b.date == day]

    def get_map_statuses(self, map_id: str, day: datetime.date) -> dict[str, DeskStatus]:
        return {r.id: self.get_desk_status(r.id, day) for r in self._store.list_resources(map_id=map_id)}

    def room_timetable(self, resource_id: str, day: datetime.date) -> list[TimetableSlot]:
        """The bookable grid of a meeting room for one day."""
        bookings = [b for b in self._bookings_on(resource_id, day) if isinstance(b, MeetingRoomBooking)]
        slots = []
        start = self._day_start
        while start + self._slot_minutes <= self._day_end:
            slot = TimeSlot(start_time=minutes_to_time(start), end_time=minutes_to_time(start + self._slot_minutes))
            holder = next((b for b in bookings if slot.overlaps(b.time_slot)), None)
            slots.append(
                TimetableSlot(
                    start_time=slot.start_time,
                    end_time=slot.end_time,
                    is_booked=holder is not None,
                    booking_id=holder.id if holder else None,
                    user_id=holder.user_id if holder else None,
                )
            )
            start += self._slot_minutes
        return slots

