"""Stores for resources, users and bookings (repository pattern).

The availability engine and the command handler depend only on the
`BookingStore` interface. Stores own referential integrity: deleting a
resource or a map removes every booking that references it.

Every booking write bumps a version counter on its resource and its user.
A writer reads a `WriteStamp` before checking availability and passes it
back to `add_booking`, which refuses the write with `StaleWriteError` if
another booking landed in between, whichever process wrote it.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, TypedDict, cast

import boto3
from aws_lambda_powertools import Logger
from botocore.exceptions import ClientError

if TYPE_CHECKING:
    # Only for static type checking; not imported at runtime
    from mypy_boto3_dynamodb.service_resource import DynamoDBServiceResource
    from mypy_boto3_dynamodb.service_resource import Table as DynamoDBTable

    from deskbooking.config import Settings
else:
    DynamoDBServiceResource = Any  # type: ignore[assignment]
    DynamoDBTable = Any  # type: ignore[assignment]

from deskbooking.models import Booking, MeetingRoomBooking, Resource, User, booking_adapter
from deskbooking.timeutils import date_key

logger = Logger()


@dataclass(frozen=True)
class WriteStamp:
    """Booking write counters seen before an availability check."""

    resource_version: int
    # None when the stamp does not guard the user, or the user is unknown
    user_version: int | None = None


class StaleWriteError(Exception):
    """Another booking was written for the resource or user since the stamp was read."""

    def __init__(self, resource_id: str) -> None:
        super().__init__(f"Bookings of {resource_id} changed since they were checked")
        self.resource_id = resource_id


class BookingStore(ABC):
    """Interface for resource, user and booking persistence."""

    @abstractmethod
    def get_resource(self, resource_id: str) -> Resource | None:
        """Return a resource by ID, or None if not found."""
        ...

    @abstractmethod
    def list_resources(self, map_id: str | None = None) -> list[Resource]:
        """Return all resources, optionally only those on one floor map."""
        ...

    @abstractmethod
    def put_resource(self, resource: Resource) -> None:
        """Create or replace a resource."""
        ...

    @abstractmethod
    def delete_resource(self, resource_id: str) -> list[Booking]:
        """Delete a resource and its bookings; return the removed bookings."""
        ...

    @abstractmethod
    def get_user(self, user_id: str) -> User | None:
        ...

    @abstractmethod
    def list_users(self, team_id: str | None = None) -> list[User]:
        ...

    @abstractmethod
    def put_user(self, user: User) -> None:
        ...

    @abstractmethod
    def get_booking(self, booking_id: str) -> Booking | None:
        ...

    @abstractmethod
    def list_bookings(self, resource_id: str | None = None, user_id: str | None = None) -> list[Booking]:
        """Return bookings, filtered by resource and/or user when given."""
        ...

    @abstractmethod
    def read_stamp(self, resource_id: str, user_id: str | None = None) -> WriteStamp:
        """Current write versions of a resource and, when given, of a user."""
        ...

    @abstractmethod
    def add_booking(self, booking: Booking, expected: WriteStamp | None = None) -> None:
        """Persist a new booking. Visible to every later read.

        With ``expected``, the write and the version bumps happen atomically
        and only if the versions still match; otherwise `StaleWriteError`.
        """
        ...

    @abstractmethod
    def remove_booking(self, booking_id: str) -> Booking | None:
        """Delete a booking; return it, or None if it did not exist."""
        ...

    def delete_bookings_for_resource(self, resource_id: str) -> list[Booking]:
        removed = []
        for booking in self.list_bookings(resource_id=resource_id):
            if self.remove_booking(booking.id) is not None:
                removed.append(booking)
        return removed

    def delete_map(self, map_id: str) -> list[Booking]:
        """Delete every resource on a floor map with their bookings."""
        removed: list[Booking] = []
        for resource in self.list_resources(map_id=map_id):
            removed.extend(self.delete_resource(resource.id))
        logger.info("Deleted map", extra={"map_id": map_id, "bookings_removed": len(removed)})
        return removed


class InMemoryBookingStore(BookingStore):
    """Process-local store. Every operation is atomic under one lock."""

    def __init__(
        self,
        resources: list[Resource] | None = None,
        users: list[User] | None = None,
        bookings: list[Booking] | None = None,
    ) -> None:
        self._lock = threading.RLock()
        self._resources: dict[str, Resource] = {r.id: r for r in resources or []}
        self._users: dict[str, User] = {u.id: u for u in users or []}
        self._bookings: dict[str, Booking] = {b.id: b for b in bookings or []}
        self._versions: dict[str, int] = {}

    def get_resource(self, resource_id: str) -> Resource | None:
        with self._lock:
            return self._resources.get(resource_id)

    def list_resources(self, map_id: str | None = None) -> list[Resource]:
        with self._lock:
            return [r for r in self._resources.values() if map_id is None or r.map_id == map_id]

    def put_resource(self, resource: Resource) -> None:
        with self._lock:
            self._resources[resource.id] = resource

    def delete_resource(self, resource_id: str) -> list[Booking]:
        with self._lock:
            self._resources.pop(resource_id, None)
            return self.delete_bookings_for_resource(resource_id)

    def get_user(self, user_id: str) -> User | None:
        with self._lock:
            return self._users.get(user_id)

    def list_users(self, team_id: str | None = None) -> list[User]:
        with self._lock:
            return [u for u in self._users.values() if team_id is None or u.team_id == team_id]

    def put_user(self, user: User) -> None:
        with self._lock:
            self._users[user.id] = user

    def get_booking(self, booking_id: str) -> Booking | None:
        with self._lock:
            return self._bookings.get(booking_id)

    def list_bookings(self, resource_id: str | None = None, user_id: str | None = None) -> list[Booking]:
        with self._lock:
            return [
                b
                for b in self._bookings.values()
                if (resource_id is None or b.resource_id == resource_id)
                and (user_id is None or b.user_id == user_id)
            ]

    def read_stamp(self, resource_id: str, user_id: str | None = None) -> WriteStamp:
        with self._lock:
            user_version = None
            if user_id is not None and user_id in self._users:
                user_version = self._versions.get(f"user#{user_id}", 0)
            return WriteStamp(self._versions.get(f"resource#{resource_id}", 0), user_version)

    def add_booking(self, booking: Booking, expected: WriteStamp | None = None) -> None:
        with self._lock:
            if booking.id in self._bookings:
                raise ValueError(f"Duplicate booking id {booking.id}")
            if expected is not None:
                guarded_user = booking.user_id if expected.user_version is not None else None
                if self.read_stamp(booking.resource_id, guarded_user) != expected:
                    raise StaleWriteError(booking.resource_id)
            self._bookings[booking.id] = booking
            for key in (f"resource#{booking.resource_id}", f"user#{booking.user_id}"):
                self._versions[key] = self._versions.get(key, 0) + 1

    def remove_booking(self, booking_id: str) -> Booking | None:
        with self._lock:
            return self._bookings.pop(booking_id, None)


class BookingItem(TypedDict, total=False):
    booking_id: str
    kind: str
    resource_id: str
    user_id: str
    date: str
    is_recurring: bool
    recurring_days: list[str]
    start_time: str
    end_time: str


class DynamoDBBookingStore(BookingStore):
    """DynamoDB-backed store: one table each for resources, users and bookings.

    The bookings table is keyed on ``booking_id`` with ``resource_id_index``
    and ``user_id_index`` GSIs; resources carry a ``map_id_index`` and users
    a ``team_id_index``.
    """

    def __init__(
        self,
        bookings_table: DynamoDBTable,
        resources_table: DynamoDBTable,
        users_table: DynamoDBTable,
    ) -> None:
        self._bookings = bookings_table
        self._resources = resources_table
        self._users = users_table

    @classmethod
    def from_table_names(cls, bookings: str, resources: str, users: str) -> DynamoDBBookingStore:
        dynamodb: DynamoDBServiceResource = boto3.resource("dynamodb")
        return cls(dynamodb.Table(bookings), dynamodb.Table(resources), dynamodb.Table(users))

    def get_resource(self, resource_id: str) -> Resource | None:
        resp = cast(dict[str, Any], self._resources.get_item(Key={"resource_id": resource_id}))
        item = resp.get("Item")
        return _to_resource(item) if isinstance(item, dict) else None

    def list_resources(self, map_id: str | None = None) -> list[Resource]:
        if map_id is None:
            items = _scan_all(self._resources)
        else:
            items = _query_all(self._resources, "map_id_index", "map_id = :mid", {":mid": map_id})
        return [_to_resource(it) for it in items]

    def put_resource(self, resource: Resource) -> None:
        item: dict[str, Any] = {
            "resource_id": resource.id,
            "name": resource.name,
            "type": resource.type.value,
            "map_id": resource.map_id,
            "status": resource.status.value,
        }
        if resource.capacity is not None:
            item["capacity"] = resource.capacity
        _put_keeping_version(self._resources, "resource_id", item)

    def delete_resource(self, resource_id: str) -> list[Booking]:
        self._resources.delete_item(Key={"resource_id": resource_id})
        return self.delete_bookings_for_resource(resource_id)

    def get_user(self, user_id: str) -> User | None:
        resp = cast(dict[str, Any], self._users.get_item(Key={"user_id": user_id}))
        item = resp.get("Item")
        return _to_user(item) if isinstance(item, dict) else None

    def list_users(self, team_id: str | None = None) -> list[User]:
        if team_id is None:
            items = _scan_all(self._users)
        else:
            items = _query_all(self._users, "team_id_index", "team_id = :tid", {":tid": team_id})
        return [_to_user(it) for it in items]

    def put_user(self, user: User) -> None:
        item: dict[str, Any] = {
            "user_id": user.id,
            "name": user.name,
            "email": user.email,
            "role": user.role.value,
            "is_team_leader": user.is_team_leader,
        }
        if user.team_id is not None:
            item["team_id"] = user.team_id
        _put_keeping_version(self._users, "user_id", item)

    def get_booking(self, booking_id: str) -> Booking | None:
        resp = cast(dict[str, Any], self._bookings.get_item(Key={"booking_id": booking_id}))
        item = resp.get("Item")
        return _to_booking(cast(BookingItem, item)) if isinstance(item, dict) else None

    def list_bookings(self, resource_id: str | None = None, user_id: str | None = None) -> list[Booking]:
        if resource_id is not None:
            items = _query_all(self._bookings, "resource_id_index", "resource_id = :rid", {":rid": resource_id})
        elif user_id is not None:
            items = _query_all(self._bookings, "user_id_index", "user_id = :uid", {":uid": user_id})
        else:
            items = _scan_all(self._bookings)
        bookings = [_to_booking(cast(BookingItem, it)) for it in items]
        return [
            b
            for b in bookings
            if (resource_id is None or b.resource_id == resource_id) and (user_id is None or b.user_id == user_id)
        ]

    def read_stamp(self, resource_id: str, user_id: str | None = None) -> WriteStamp:
        resource = cast(dict[str, Any], self._resources.get_item(Key={"resource_id": resource_id})).get("Item")
        user_version = None
        if user_id is not None:
            user = cast(dict[str, Any], self._users.get_item(Key={"user_id": user_id})).get("Item")
            user_version = _version_of(user) if isinstance(user, dict) else None
        return WriteStamp(_version_of(resource) if isinstance(resource, dict) else 0, user_version)

    def add_booking(self, booking: Booking, expected: WriteStamp | None = None) -> None:
        item = _to_item(booking)
        logger.info("Writing booking", extra={"booking_id": booking.id, "resource_id": booking.resource_id})
        if expected is None:
            self._bookings.put_item(
                Item=item,  # type: ignore[arg-type]
                ConditionExpression="attribute_not_exists(booking_id)",
            )
            return

        transact_items: list[dict[str, Any]] = [
            {
                "Put": {
                    "TableName": self._bookings.name,
                    "Item": item,
                    "ConditionExpression": "attribute_not_exists(booking_id)",
                }
            },
            _version_bump(self._resources.name, "resource_id", booking.resource_id, expected.resource_version),
        ]
        if expected.user_version is not None:
            transact_items.append(_version_bump(self._users.name, "user_id", booking.user_id, expected.user_version))
        try:
            # the Table's client serializes plain Python values, as put_item does
            self._bookings.meta.client.transact_write_items(TransactItems=transact_items)  # type: ignore[arg-type]
        except ClientError as exc:
            reasons = exc.response.get("CancellationReasons", [])  # type: ignore[typeddict-item]
            # reasons line up with transact_items; index 0 is the booking put itself
            if any(r.get("Code") == "ConditionalCheckFailed" for r in reasons[1:]):
                raise StaleWriteError(booking.resource_id) from exc
            raise

    def remove_booking(self, booking_id: str) -> Booking | None:
        resp = cast(
            dict[str, Any],
            self._bookings.delete_item(Key={"booking_id": booking_id}, ReturnValues="ALL_OLD"),
        )
        attrs = resp.get("Attributes")
        return _to_booking(cast(BookingItem, attrs)) if isinstance(attrs, dict) and attrs else None


def _query_all(table: DynamoDBTable, index: str, condition: str, values: dict[str, Any]) -> list[dict[str, Any]]:
    items: list[dict[str, Any]] = []
    kwargs: dict[str, Any] = {
        "IndexName": index,
        "KeyConditionExpression": condition,
        "ExpressionAttributeValues": values,
    }
    while True:
        resp = cast(dict[str, Any], table.query(**kwargs))
        items.extend(it for it in resp.get("Items", []) if isinstance(it, dict))
        if "LastEvaluatedKey" not in resp:
            return items
        kwargs["ExclusiveStartKey"] = resp["LastEvaluatedKey"]


def _scan_all(table: DynamoDBTable) -> list[dict[str, Any]]:
    items: list[dict[str, Any]] = []
    kwargs: dict[str, Any] = {}
    while True:
        resp = cast(dict[str, Any], table.scan(**kwargs))
        items.extend(it for it in resp.get("Items", []) if isinstance(it, dict))
        if "LastEvaluatedKey" not in resp:
            return items
        kwargs["ExclusiveStartKey"] = resp["LastEvaluatedKey"]


def _put_keeping_version(table: DynamoDBTable, key_name: str, item: dict[str, Any]) -> None:
    # replacing a resource or user must not reset its booking write counter
    current = cast(dict[str, Any], table.get_item(Key={key_name: item[key_name]})).get("Item")
    if isinstance(current, dict) and "booking_version" in current:
        item["booking_version"] = current["booking_version"]
    table.put_item(Item=item)  # type: ignore[arg-type]


def _version_of(item: dict[str, Any]) -> int:
    return int(item.get("booking_version", 0))


def _version_bump(table_name: str, key_name: str, key: str, seen: int) -> dict[str, Any]:
    # a missing item fails the check too, so a deleted resource cannot take bookings
    values: dict[str, Any] = {":next": seen + 1}
    if seen:
        condition = f"attribute_exists({key_name}) AND booking_version = :seen"
        values[":seen"] = seen
    else:
        condition = f"attribute_exists({key_name}) AND attribute_not_exists(booking_version)"
    return {
        "Update": {
            "TableName": table_name,
            "Key": {key_name: key},
            "UpdateExpression": "SET booking_version = :next",
            "ConditionExpression": condition,
            "ExpressionAttributeValues": values,
        }
    }


def _to_item(booking: Booking) -> BookingItem:
    item: BookingItem = {
        "booking_id": booking.id,
        "kind": booking.kind,
        "resource_id": booking.resource_id,
        "user_id": booking.user_id,
        "date": date_key(booking.date),
        "is_recurring": booking.is_recurring,
    }
    if booking.recurring_days:
        item["recurring_days"] = sorted(booking.recurring_days)
    if isinstance(booking, MeetingRoomBooking):
        item["start_time"] = booking.time_slot.start_time
        item["end_time"] = booking.time_slot.end_time
    return item


def _to_booking(item: BookingItem) -> Booking:
    data: dict[str, Any] = {
        "id": item["booking_id"],
        "kind": item.get("kind", "desk"),
        "resource_id": item["resource_id"],
        "user_id": item["user_id"],
        "date": item["date"],
        "is_recurring": item.get("is_recurring", False),
        "recurring_days": item.get("recurring_days", []),
    }
    if "start_time" in item:
        data["time_slot"] = {"start_time": item["start_time"], "end_time": item["end_time"]}
    return booking_adapter.validate_python(data)


def _to_resource(item: dict[str, Any]) -> Resource:
    capacity = item.get("capacity")
    return Resource(
        id=item["resource_id"],
        name=item.get("name", ""),
        type=item["type"],
        map_id=item["map_id"],
        status=item.get("status", "available"),
        # DynamoDB hands numbers back as Decimal
        capacity=int(capacity) if capacity is not None else None,
    )


def _to_user(item: dict[str, Any]) -> User:
    return User(
        id=item["user_id"],
        name=item.get("name", ""),
        email=item.get("email", ""),
        role=item.get("role", "user"),
        team_id=item.get("team_id"),
        is_team_leader=bool(item.get("is_team_leader", False)),
    )


def build_store(settings: Settings) -> BookingStore:
    if settings.store_backend == "dynamodb":
        return DynamoDBBookingStore.from_table_names(
            settings.bookings_table_name,
            settings.resources_table_name,
            settings.users_table_name,
        )
    logger.warning("Using in-memory store; bookings are lost on restart")
    return InMemoryBookingStore()
