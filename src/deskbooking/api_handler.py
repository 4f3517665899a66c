from __future__ import annotations

from typing import Any

from aws_lambda_powertools import Logger, Tracer
from aws_lambda_powertools.logging import correlation_paths
from aws_lambda_powertools.utilities.typing import LambdaContext
from mangum import Mangum

from deskbooking.api import app, metrics

logger = Logger()
tracer = Tracer()
handler = Mangum(app, lifespan="off")


@logger.inject_lambda_context(correlation_id_path=correlation_paths.API_GATEWAY_HTTP)
@tracer.capture_lambda_handler
@metrics.log_metrics
def lambda_handler(event: dict[str, Any], context: LambdaContext) -> Any:
    # Normalize minimal API Gateway HTTP API v2.0 events for local/tests
    if isinstance(event, dict) and event.get("version") == "2.0":
        request_context = event.setdefault("requestContext", {})
        http_ctx = request_context.setdefault("http", {})
        http_ctx.setdefault("sourceIp", "127.0.0.1")
        http_ctx.setdefault("userAgent", "pytest")
        request_context.setdefault("stage", "$default")
        request_context.setdefault("requestId", "local")

    return handler(event, context)
