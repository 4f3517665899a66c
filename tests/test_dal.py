from __future__ import annotations

import datetime
from decimal import Decimal
from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from deskbooking import dal
from deskbooking.config import Settings
from deskbooking.dal import DynamoDBBookingStore, InMemoryBookingStore, StaleWriteError, WriteStamp
from deskbooking.models import (
    DeskBooking,
    MeetingRoomBooking,
    Resource,
    ResourceStatus,
    ResourceType,
    Role,
    TimeSlot,
    User,
)

MONDAY = datetime.date(2024, 6, 10)


class FakeTransactClient:
    """All-or-nothing TransactWriteItems over the FakeTables registered with it."""

    def __init__(self) -> None:
        self.tables: dict[str, FakeTable] = {}

    def transact_write_items(self, TransactItems):  # noqa NOSONAR
        failed = [self._fails(op) for op in TransactItems]
        if any(failed):
            raise ClientError(
                {
                    "Error": {"Code": "TransactionCanceledException", "Message": "cancelled"},
                    "CancellationReasons": [{"Code": "ConditionalCheckFailed" if f else "None"} for f in failed],
                },
                "TransactWriteItems",
            )
        for op in TransactItems:
            if "Put" in op:
                table = self.tables[op["Put"]["TableName"]]
                table.items[op["Put"]["Item"][table.key]] = dict(op["Put"]["Item"])
            else:
                update = op["Update"]
                table = self.tables[update["TableName"]]
                table.items[update["Key"][table.key]]["booking_version"] = update["ExpressionAttributeValues"][":next"]

    def _fails(self, op):
        if "Put" in op:
            table = self.tables[op["Put"]["TableName"]]
            return op["Put"]["Item"][table.key] in table.items
        update = op["Update"]
        table = self.tables[update["TableName"]]
        item = table.items.get(update["Key"][table.key])
        # no ":seen" means the counter must not exist yet
        return item is None or item.get("booking_version") != update["ExpressionAttributeValues"].get(":seen")


class FakeTable:
    def __init__(
        self, key: str, page_size: int | None = None, name: str = "", client: FakeTransactClient | None = None
    ):
        self.key = key
        self.page_size = page_size
        self.items: dict[str, dict[str, Any]] = {}
        self.name = name or key
        self.meta = SimpleNamespace(client=client)
        if client is not None:
            client.tables[self.name] = self

    def put_item(self, Item, ConditionExpression=None):  # noqa NOSONAR
        if ConditionExpression == f"attribute_not_exists({self.key})" and Item[self.key] in self.items:
            raise ClientError(
                {"Error": {"Code": "ConditionalCheckFailedException", "Message": "exists"}}, "PutItem"
            )
        self.items[Item[self.key]] = dict(Item)

    def get_item(self, Key):  # noqa NOSONAR
        item = self.items.get(Key[self.key])
        return {"Item": item} if item else {}

    def delete_item(self, Key, ReturnValues=None):  # noqa NOSONAR
        old = self.items.pop(Key[self.key], None)
        return {"Attributes": old} if old and ReturnValues == "ALL_OLD" else {}

    def query(self, **kwargs):
        attr = kwargs["KeyConditionExpression"].split("=")[0].strip()
        value = next(iter(kwargs["ExpressionAttributeValues"].values()))
        return self._page([it for it in self.items.values() if it.get(attr) == value], kwargs)

    def scan(self, **kwargs):
        return self._page(list(self.items.values()), kwargs)

    def _page(self, items, kwargs):
        start = kwargs.get("ExclusiveStartKey", {}).get("offset", 0)
        if self.page_size is None:
            return {"Items": items}
        end = start + self.page_size
        resp: dict[str, Any] = {"Items": items[start:end]}
        if end < len(items):
            resp["LastEvaluatedKey"] = {"offset": end}
        return resp


@pytest.fixture()
def tables() -> dict[str, FakeTable]:
    client = FakeTransactClient()
    return {
        "bookings": FakeTable("booking_id", page_size=2, name="bookings", client=client),
        "resources": FakeTable("resource_id", name="resources", client=client),
        "users": FakeTable("user_id", name="users", client=client),
    }


@pytest.fixture()
def ddb_store(tables: dict[str, FakeTable]) -> DynamoDBBookingStore:
    store = DynamoDBBookingStore(tables["bookings"], tables["resources"], tables["users"])
    store.put_resource(Resource(id="desk-1", type=ResourceType.DESK, map_id="floor-1"))
    store.put_resource(Resource(id="room-1", type=ResourceType.MEETING_ROOM, map_id="floor-1", capacity=6))
    store.put_resource(Resource(id="room-9", type=ResourceType.MEETING_ROOM, map_id="floor-9"))
    return store


def desk_booking(booking_id: str, resource_id: str = "desk-1", user_id: str = "alice", **kwargs: Any) -> DeskBooking:
    return DeskBooking(id=booking_id, resource_id=resource_id, user_id=user_id, date=MONDAY, **kwargs)


def room_booking(booking_id: str, resource_id: str = "room-1", user_id: str = "alice") -> MeetingRoomBooking:
    return MeetingRoomBooking(
        id=booking_id,
        resource_id=resource_id,
        user_id=user_id,
        date=MONDAY,
        time_slot=TimeSlot(start_time="09:00", end_time="10:30"),
    )


def test_booking_items_keep_their_variant(ddb_store: DynamoDBBookingStore, tables: dict[str, FakeTable]) -> None:
    desk = desk_booking("b1", is_recurring=True, recurring_days=frozenset({"monday", "friday"}))
    room = room_booking("b2")
    ddb_store.add_booking(desk)
    ddb_store.add_booking(room)

    assert tables["bookings"].items["b1"]["date"] == "2024-06-10"
    assert tables["bookings"].items["b1"]["recurring_days"] == ["friday", "monday"]
    assert "start_time" not in tables["bookings"].items["b1"]
    assert ddb_store.get_booking("b1") == desk
    assert ddb_store.get_booking("b2") == room
    assert ddb_store.get_booking("missing") is None


def test_add_booking_refuses_duplicate_id(ddb_store: DynamoDBBookingStore) -> None:
    ddb_store.add_booking(desk_booking("b1"))
    with pytest.raises(ClientError):
        ddb_store.add_booking(desk_booking("b1", user_id="bob"))


def test_list_bookings_by_resource_user_and_all(ddb_store: DynamoDBBookingStore) -> None:
    ddb_store.add_booking(desk_booking("b1"))
    ddb_store.add_booking(desk_booking("b2", user_id="bob"))
    ddb_store.add_booking(room_booking("b3"))
    ddb_store.add_booking(room_booking("b4", user_id="bob"))
    ddb_store.add_booking(room_booking("b5", resource_id="room-9", user_id="carol"))

    assert sorted(b.id for b in ddb_store.list_bookings(resource_id="room-1")) == ["b3", "b4"]
    assert sorted(b.id for b in ddb_store.list_bookings(user_id="bob")) == ["b2", "b4"]
    assert [b.id for b in ddb_store.list_bookings(resource_id="room-1", user_id="bob")] == ["b4"]
    # more items than one page
    assert sorted(b.id for b in ddb_store.list_bookings()) == ["b1", "b2", "b3", "b4", "b5"]


def test_stamped_write_bumps_resource_and_user_versions(
    ddb_store: DynamoDBBookingStore, tables: dict[str, FakeTable]
) -> None:
    ddb_store.put_user(User(id="alice"))
    stamp = ddb_store.read_stamp("desk-1", "alice")
    assert stamp == WriteStamp(resource_version=0, user_version=0)

    ddb_store.add_booking(desk_booking("b1"), expected=stamp)

    assert ddb_store.get_booking("b1") == desk_booking("b1")
    assert tables["resources"].items["desk-1"]["booking_version"] == 1
    assert tables["users"].items["alice"]["booking_version"] == 1
    assert ddb_store.read_stamp("desk-1", "alice") == WriteStamp(resource_version=1, user_version=1)


def test_outdated_stamp_refuses_the_whole_write(
    ddb_store: DynamoDBBookingStore, tables: dict[str, FakeTable]
) -> None:
    ddb_store.put_user(User(id="alice"))
    ddb_store.put_user(User(id="bob"))
    seen_by_bob = ddb_store.read_stamp("desk-1", "bob")
    ddb_store.add_booking(desk_booking("b1"), expected=ddb_store.read_stamp("desk-1", "alice"))

    with pytest.raises(StaleWriteError):
        ddb_store.add_booking(desk_booking("b2", user_id="bob"), expected=seen_by_bob)

    assert ddb_store.get_booking("b2") is None
    assert "booking_version" not in tables["users"].items["bob"]


def test_unknown_user_is_not_stamped(ddb_store: DynamoDBBookingStore) -> None:
    stamp = ddb_store.read_stamp("room-1", "ghost")
    assert stamp.user_version is None
    ddb_store.add_booking(room_booking("b1", user_id="ghost"), expected=stamp)
    assert ddb_store.read_stamp("room-1") == WriteStamp(resource_version=1)


def test_stamped_write_to_deleted_resource_is_refused(ddb_store: DynamoDBBookingStore) -> None:
    stamp = ddb_store.read_stamp("room-1")
    ddb_store.delete_resource("room-1")
    with pytest.raises(StaleWriteError):
        ddb_store.add_booking(room_booking("b1"), expected=stamp)


def test_duplicate_id_with_stamp_is_not_a_stale_write(ddb_store: DynamoDBBookingStore) -> None:
    ddb_store.add_booking(room_booking("b1"))
    with pytest.raises(ClientError) as excinfo:
        ddb_store.add_booking(room_booking("b1"), expected=ddb_store.read_stamp("room-1"))
    assert not isinstance(excinfo.value, StaleWriteError)


def test_replacing_a_resource_keeps_its_booking_version(ddb_store: DynamoDBBookingStore) -> None:
    ddb_store.add_booking(desk_booking("b1"), expected=ddb_store.read_stamp("desk-1"))
    ddb_store.put_resource(
        Resource(id="desk-1", type=ResourceType.DESK, map_id="floor-1", status=ResourceStatus.MAINTENANCE)
    )
    assert ddb_store.read_stamp("desk-1").resource_version == 1


def test_in_memory_store_refuses_outdated_stamp() -> None:
    store = InMemoryBookingStore(
        resources=[Resource(id="desk-1", type=ResourceType.DESK, map_id="floor-1")],
        users=[User(id="alice"), User(id="bob")],
    )
    seen_by_bob = store.read_stamp("desk-1", "bob")
    store.add_booking(desk_booking("b1"), expected=store.read_stamp("desk-1", "alice"))
    with pytest.raises(StaleWriteError):
        store.add_booking(desk_booking("b2", user_id="bob"), expected=seen_by_bob)
    assert store.read_stamp("desk-1", "bob") == WriteStamp(resource_version=1, user_version=0)
    assert store.read_stamp("desk-1", "carol").user_version is None


def test_remove_booking(ddb_store: DynamoDBBookingStore) -> None:
    booking = desk_booking("b1")
    ddb_store.add_booking(booking)
    assert ddb_store.remove_booking("b1") == booking
    assert ddb_store.remove_booking("b1") is None


def test_resources_round_trip_with_decimal_capacity(
    ddb_store: DynamoDBBookingStore, tables: dict[str, FakeTable]
) -> None:
    tables["resources"].items["room-1"]["capacity"] = Decimal(6)
    room = ddb_store.get_resource("room-1")
    assert room is not None
    assert room.capacity == 6  # noqa: PLR2004
    assert room.type is ResourceType.MEETING_ROOM
    assert room.status is ResourceStatus.AVAILABLE
    assert sorted(r.id for r in ddb_store.list_resources(map_id="floor-1")) == ["desk-1", "room-1"]
    assert len(ddb_store.list_resources()) == 3  # noqa: PLR2004
    assert ddb_store.get_resource("missing") is None


def test_users_round_trip(ddb_store: DynamoDBBookingStore) -> None:
    ddb_store.put_user(User(id="alice", name="Alice", team_id="team-a", is_team_leader=True))
    ddb_store.put_user(User(id="root", role=Role.ADMIN))
    alice = ddb_store.get_user("alice")
    root = ddb_store.get_user("root")
    assert alice is not None and alice.team_id == "team-a" and alice.is_team_leader
    assert root is not None and root.is_admin and root.team_id is None
    assert [u.id for u in ddb_store.list_users(team_id="team-a")] == ["alice"]
    assert ddb_store.get_user("nobody") is None


def test_delete_resource_cascades_to_bookings(ddb_store: DynamoDBBookingStore) -> None:
    ddb_store.add_booking(room_booking("b1"))
    ddb_store.add_booking(room_booking("b2", user_id="bob"))
    ddb_store.add_booking(desk_booking("b3"))

    removed = ddb_store.delete_resource("room-1")

    assert sorted(b.id for b in removed) == ["b1", "b2"]
    assert ddb_store.get_resource("room-1") is None
    assert [b.id for b in ddb_store.list_bookings()] == ["b3"]


def test_delete_map_cascades_to_resources_and_bookings(ddb_store: DynamoDBBookingStore) -> None:
    ddb_store.add_booking(room_booking("b1"))
    ddb_store.add_booking(desk_booking("b2"))
    ddb_store.add_booking(room_booking("b3", resource_id="room-9"))

    removed = ddb_store.delete_map("floor-1")

    assert sorted(b.id for b in removed) == ["b1", "b2"]
    assert [r.id for r in ddb_store.list_resources()] == ["room-9"]
    assert [b.id for b in ddb_store.list_bookings()] == ["b3"]


def test_in_memory_store_cascades_and_refuses_duplicates() -> None:
    store = InMemoryBookingStore(
        resources=[
            Resource(id="desk-1", type=ResourceType.DESK, map_id="floor-1"),
            Resource(id="desk-2", type=ResourceType.DESK, map_id="floor-2"),
        ]
    )
    store.add_booking(desk_booking("b1"))
    store.add_booking(desk_booking("b2", resource_id="desk-2"))
    with pytest.raises(ValueError):
        store.add_booking(desk_booking("b1"))

    assert [b.id for b in store.delete_map("floor-1")] == ["b1"]
    assert [r.id for r in store.list_resources()] == ["desk-2"]
    assert [b.id for b in store.list_bookings()] == ["b2"]


def test_build_store_picks_backend(monkeypatch: pytest.MonkeyPatch) -> None:
    assert isinstance(dal.build_store(Settings()), InMemoryBookingStore)

    fake_resource = MagicMock()
    monkeypatch.setattr(dal.boto3, "resource", fake_resource)
    store = dal.build_store(Settings(store_backend="dynamodb", bookings_table_name="bk"))
    assert isinstance(store, DynamoDBBookingStore)
    fake_resource.assert_called_once_with("dynamodb")
    fake_resource.return_value.Table.assert_any_call("bk")
