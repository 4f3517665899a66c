"""Domain error codes for booking decisions.

Every rejection is an expected outcome: callers catch `BookingRejected`
and surface `code` and `message` to the user.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ErrorCode(Enum):
    RESOURCE_NOT_FOUND = "RESOURCE_NOT_FOUND"
    RESOURCE_UNAVAILABLE = "RESOURCE_UNAVAILABLE"
    DESK_LIMIT_EXCEEDED = "DESK_LIMIT_EXCEEDED"
    SLOT_OVERLAP = "SLOT_OVERLAP"
    INVALID_TIME_SLOT = "INVALID_TIME_SLOT"
    BOOKING_NOT_FOUND = "BOOKING_NOT_FOUND"
    WRITE_CONFLICT = "WRITE_CONFLICT"


@dataclass(frozen=True)
class DomainError(Exception):
    """Base domain error with code and user-safe message."""

    code: ErrorCode
    message: str

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


class BookingRejected(DomainError):
    """A booking request that the availability rules refuse."""


class ResourceNotFoundError(BookingRejected):
    def __init__(self, resource_id: str) -> None:
        super().__init__(code=ErrorCode.RESOURCE_NOT_FOUND, message="Resource not found")
        self.resource_id = resource_id


class ResourceUnavailableError(BookingRejected):
    def __init__(self, resource_id: str) -> None:
        super().__init__(code=ErrorCode.RESOURCE_UNAVAILABLE, message="Resource is under maintenance")
        self.resource_id = resource_id


class DeskLimitExceededError(BookingRejected):
    """Raised when a user already holds a desk booking on that date."""

    def __init__(self, user_id: str, message: str = "User already has a desk booked for this date") -> None:
        super().__init__(code=ErrorCode.DESK_LIMIT_EXCEEDED, message=message)
        self.user_id = user_id


class DeskOccupiedError(DeskLimitExceededError):
    """Raised when the desk itself is already taken on that date."""

    def __init__(self, user_id: str, resource_id: str) -> None:
        super().__init__(user_id, message="Desk is already booked for this date")
        self.resource_id = resource_id


class SlotOverlapError(BookingRejected):
    def __init__(self, resource_id: str) -> None:
        super().__init__(
            code=ErrorCode.SLOT_OVERLAP,
            message="Requested time overlaps an existing booking",
        )
        self.resource_id = resource_id


class InvalidTimeSlotError(BookingRejected):
    def __init__(self, message: str) -> None:
        super().__init__(code=ErrorCode.INVALID_TIME_SLOT, message=message)


class BookingNotFoundError(DomainError):
    def __init__(self, booking_id: str) -> None:
        super().__init__(code=ErrorCode.BOOKING_NOT_FOUND, message="Booking not found")
        self.booking_id = booking_id


class WriteConflictError(BookingRejected):
    """Raised when concurrent writes kept invalidating the availability check."""

    def __init__(self, resource_id: str) -> None:
        super().__init__(code=ErrorCode.WRITE_CONFLICT, message="Resource is busy, try again")
        self.resource_id = resource_id
