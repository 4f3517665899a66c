from __future__ import annotations

import json
from typing import Any

import boto3
from aws_lambda_powertools import Logger, Tracer
from aws_lambda_powertools.metrics import Metrics, MetricUnit
from aws_lambda_powertools.utilities.typing import LambdaContext

from deskbooking.config import Settings
from deskbooking.dal import BookingStore, DynamoDBBookingStore

logger = Logger()
tracer = Tracer()
settings = Settings.from_env()
metrics = Metrics(namespace=settings.metrics_namespace)

_events: Any = None
_store: BookingStore | None = None


def _get_events() -> Any:
    global _events
    if _events is None:
        _events = boto3.client("events")
    return _events


def _get_store() -> BookingStore:
    global _store
    if _store is None:
        _store = DynamoDBBookingStore.from_table_names(
            settings.bookings_table_name,
            settings.resources_table_name,
            settings.users_table_name,
        )
    return _store


@tracer.capture_lambda_handler
@metrics.log_metrics
def lambda_handler(event: dict[str, Any], context: LambdaContext) -> None:
    # Triggered by the resources table stream: a removed resource takes its bookings with it
    for record in event.get("Records", []):
        if record.get("eventName") != "REMOVE":
            continue

        old_image = record.get("dynamodb", {}).get("OldImage", {})
        resource_id = old_image.get("resource_id", {}).get("S")
        map_id = old_image.get("map_id", {}).get("S")
        if not resource_id:
            continue

        removed = _get_store().delete_bookings_for_resource(resource_id)
        metrics.add_metric(name="BookingsCascaded", value=len(removed), unit=MetricUnit.Count)

        detail = {
            "version": "1.0",
            "type": "ResourceRemoved",
            "resource_id": resource_id,
            "map_id": map_id,
            "booking_ids": sorted(b.id for b in removed),
        }
        logger.info("Removed bookings of deleted resource", extra=detail)

        _get_events().put_events(
            Entries=[
                {
                    "Source": "booking.resources",
                    "DetailType": "ResourceRemoved",
                    "Detail": json.dumps(detail),
                }
            ]
        )
